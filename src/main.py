from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any, Optional

from pydantic import ValidationError

from broker import BrokerTopology, DispatchQueues
from chain.contract import OrbitSphere
from chain.listener import ChainListener
from chain.processor import ChainProcessor
from chain.rpc import RPC
from shared import AsyncTask
from shared.config import Config, load_validated_config
from store import CheckpointStore
from utils import log, setup_logging
from utils.logging import log_ascii_status
from version import __version__


class ListenerLifecycle:
    """Entrypoint for the OrbitSphere listener lifecycle

    Owns every process-wide resource (chain RPC connection, broker connection,
    Redis client) and guarantees they are closed on every exit path.

    Attributes:
        _config (Config): Validated configuration
        _tasks (list[AsyncTask]): List of initialized tasks
        _asyncio_tasks (list[asyncio.Task[Any]]): List of `run_forever` asyncio tasks
        _rpc (Optional[RPC]): Chain RPC client
        _topology (Optional[BrokerTopology]): Shared broker topology
        _store (Optional[CheckpointStore]): Checkpoint store
        _shutdown_task (Optional[asyncio.Task[None]]): Shutdown started by a signal

    Public Methods:
        on_startup: Build all components from configuration
        lifecycle_main: Listener lifecycle

    Private Methods:
        _lifecycle_setup: Connect resources and run task setup
        _lifecycle_run: Run tasks until one fails or shutdown is requested
        _request_shutdown: Signal handler, starts `_shutdown` once
        _shutdown: Stop tasks at a safe boundary and wait for them
        _close_resources: Close RPC, broker and Redis connections
    """

    def __init__(self: ListenerLifecycle, config: Config) -> None:
        self._config = config
        self._tasks: list[AsyncTask] = []
        self._asyncio_tasks: list[asyncio.Task[Any]] = []
        self._rpc: Optional[RPC] = None
        self._topology: Optional[BrokerTopology] = None
        self._store: Optional[CheckpointStore] = None
        self._shutdown_task: Optional[asyncio.Task[None]] = None

    def on_startup(self: ListenerLifecycle) -> None:
        """Listener startup

        1. Setup logging
        2. Build RPC, contract client, broker topology, queues and store
        3. Initialize tasks
        """
        config = self._config

        # Setup logging
        setup_logging(config.log.path, config.log.max_file_size, config.log.backup_count)
        log.debug("Running startup", version=__version__)

        self._rpc = RPC(config.chain.rpc_url)
        orbitsphere = OrbitSphere(self._rpc, config.chain.contract_address)

        self._topology = BrokerTopology(config.broker.url, config.broker.prefetch_count)
        queues = DispatchQueues.build(self._topology)

        self._store = CheckpointStore.from_url(
            config.redis.url, config.redis.checkpoint_key
        )

        processor = ChainProcessor(queues, self._store)
        listener = ChainListener(
            self._rpc,
            orbitsphere,
            processor,
            config.chain.trail_head_blocks,
            config.chain.catch_up,
        )
        self._tasks.append(listener)

    async def _lifecycle_setup(self: ListenerLifecycle) -> None:
        """Connect resources (failing fast), then process async task setup"""
        assert self._rpc and self._topology and self._store
        log.debug("Running listener lifecycle setup")

        await self._store.ping()
        await self._rpc.initialize()
        await self._topology.ensure_ready()
        await asyncio.gather(*(task.setup() for task in self._tasks))

    async def _lifecycle_run(self: ListenerLifecycle) -> int:
        """Runs listener lifecycle

        Returns:
            int: Non-zero exit code if any task failed
        """
        log.info("Running listener lifecycle")

        # Run tasks in parallel
        self._asyncio_tasks = [
            asyncio.create_task(task.run_forever()) for task in self._tasks
        ]

        # Wait for any task crashes or exits
        done, _ = await asyncio.wait(
            self._asyncio_tasks, return_when=asyncio.FIRST_EXCEPTION
        )
        for task in done:
            exception = task.exception()

            # If exception occured, log and shutdown
            if exception:
                log.error("Task crashed", err=str(exception), exc_info=exception)
                log_ascii_status(f"Listener exited: {exception}", "failure")
                await self._shutdown()
                return 1

        # Normal shutdown, self._shutdown() has already been called
        return 0

    async def _shutdown(self: ListenerLifecycle) -> None:
        """Gracefully shutdown. Stops all tasks at their next checkpoint boundary
        and cleans up."""
        log.info("Shutting down listener")

        # Stop all tasks
        await asyncio.gather(*(task.stop() for task in self._tasks))

        # Wait for all task `run_forever` loops to stop
        await asyncio.gather(*self._asyncio_tasks, return_exceptions=True)

        # Cleanup all tasks
        await asyncio.gather(*(task.cleanup() for task in self._tasks))

        log.debug("Shutdown complete.")

    def _request_shutdown(self: ListenerLifecycle) -> None:
        """Starts a graceful shutdown, keeping a reference to the task"""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._shutdown())

    async def _close_resources(self: ListenerLifecycle) -> None:
        """Closes broker connection, RPC connection and Redis client"""
        if self._topology:
            await self._topology.shutdown()
        if self._rpc:
            await self._rpc.close()
        if self._store:
            await self._store.close()

    async def _main(self: ListenerLifecycle) -> int:
        """Setup, register signal handlers, run; resources closed on every path"""
        loop = asyncio.get_running_loop()
        try:
            await self._lifecycle_setup()

            # Register signal handlers for graceful shutdown
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._request_shutdown)

            log_ascii_status("Listener started", "success")
            return await self._lifecycle_run()
        finally:
            # Let a signal-initiated shutdown finish task cleanup first
            if self._shutdown_task is not None:
                await self._shutdown_task
            await self._close_resources()

    def lifecycle_main(self: ListenerLifecycle) -> None:
        """Listener lifecycle

        1. `_lifecycle_setup`: Connect resources, process async task setup
        2. `_lifecycle_run`: Run lifecycle
        3. On stop, `_shutdown` and `_close_resources`
        """
        try:
            exit_code = asyncio.run(self._main())
        except Exception as e:
            log.error("Listener failed to start", err=str(e), exc_info=True)
            log_ascii_status(f"Listener failed to start: {e}", "failure")
            exit_code = 1

        # Exit with exit code
        sys.exit(exit_code)


def main() -> None:
    """Load configuration (failing fast) and run the listener"""
    try:
        config = load_validated_config()
    except ValidationError as e:
        log_ascii_status(f"Invalid configuration:\n{e}", "failure")
        sys.exit(1)

    lifecycle = ListenerLifecycle(config)
    lifecycle.on_startup()
    lifecycle.lifecycle_main()


if __name__ == "__main__":
    main()
