"""Tail Queue

Prints every message delivered on one of the OrbitSphere queues, acking each one.
Useful to inspect what the listener dispatches.

Usage:
    RABBITMQ_CONNECTION_URL=amqp://... python scripts/tail_queue.py terminate
"""

from __future__ import annotations

import asyncio
import os
import sys

# Update path to include src modules
sys.path.extend([".", "./src"])

from broker import BrokerTopology, DispatchQueues  # noqa: E402
from shared.message import DispatchMessage  # noqa: E402
from utils.logging import log  # noqa: E402


async def tail_queue(name: str) -> None:
    """Consume and print messages from queue `name` until interrupted"""
    topology = BrokerTopology(os.environ["RABBITMQ_CONNECTION_URL"])
    queues = DispatchQueues.build(topology)
    queue = getattr(queues, name)

    async def _print(message: DispatchMessage) -> None:
        log.info("Received message", queue=queue.name, message=message)

    try:
        await queue.consume(_print)
        await asyncio.Future()
    finally:
        # Closes the connection shared by all three queues
        await queues.close()


if __name__ == "__main__":
    queue_name = sys.argv[1] if len(sys.argv) > 1 else "rental"
    if queue_name not in DispatchQueues._fields:
        sys.exit(f"Unknown queue {queue_name}, expected one of {DispatchQueues._fields}")
    asyncio.run(tail_queue(queue_name))
