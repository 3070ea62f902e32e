"""Mock implementations of all external-facing components."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Optional

from hexbytes import HexBytes
from redis.exceptions import ConnectionError as RedisConnectionError

from broker.errors import PublishRejected
from chain.errors import ChainRpcError
from shared.event import ChainEvent
from shared.message import Dispatch, RentalMessage, StopMessage, TerminateMessage
from store.checkpoint import Checkpoint, CheckpointWriteConflict

from tests.factories import block_hash


class MockCheckpointStore:
    """Implements the CheckpointStore interface in memory, with compare-and-set."""

    def __init__(self, initial: Optional[Checkpoint] = None) -> None:
        self.checkpoint = initial
        self.writes: list[Checkpoint] = []
        self.write_errors: list[Exception] = []

    async def read(self) -> Optional[Checkpoint]:
        return self.checkpoint

    async def write(self, checkpoint: Checkpoint) -> None:
        if self.write_errors:
            raise self.write_errors.pop(0)
        if (
            self.checkpoint is not None
            and checkpoint.block_number < self.checkpoint.block_number
        ):
            raise CheckpointWriteConflict(checkpoint, self.checkpoint)
        self.checkpoint = checkpoint
        self.writes.append(checkpoint)

    async def close(self) -> None:
        pass


class MockQueues:
    """Implements the DispatchQueues.send interface. Records every publish."""

    def __init__(self) -> None:
        self.published: list[tuple[str, object, Optional[float], Optional[str]]] = []
        self.fail_when: Optional[Callable[[Dispatch], bool]] = None
        self.attempts = 0

    async def send(self, dispatch: Dispatch, message_id: Optional[str] = None) -> None:
        self.attempts += 1
        # Yield like a real network call
        await asyncio.sleep(0)
        if self.fail_when is not None and self.fail_when(dispatch):
            raise PublishRejected("ROUTE_TO_TEST_QUEUE")
        self.published.append(
            (_queue_of(dispatch), dispatch.message, dispatch.deliver_at, message_id)
        )

    def messages(self, queue: str) -> list[object]:
        """Test helper: payloads published to one queue, in order."""
        return [message for name, message, _, _ in self.published if name == queue]

    def for_nft(self, nft_id: int) -> list[tuple[str, object]]:
        """Test helper: (queue, payload) published for one instance, in order."""
        return [
            (name, message)
            for name, message, _, _ in self.published
            if getattr(message, "nftId") == str(nft_id)
        ]


def _queue_of(dispatch: Dispatch) -> str:
    if isinstance(dispatch.message, RentalMessage):
        return "rental"
    if isinstance(dispatch.message, StopMessage):
        return "stop"
    assert isinstance(dispatch.message, TerminateMessage)
    return "terminate"


class MockRPC:
    """Implements the RPC interface used by ChainListener.

    Live subscriptions are fed through `emit()` and ended with `drop()`.
    """

    def __init__(self, head: int = 0) -> None:
        self.head = head
        self.reconnects = 0
        self.subscriptions = 0
        self.head_failures = 0
        self._feeds: dict[str, asyncio.Queue[Optional[ChainEvent]]] = {}
        self._current: Optional[str] = None
        self.subscribed = asyncio.Event()

    async def get_head_block_number(self) -> int:
        if self.head_failures:
            self.head_failures -= 1
            raise ChainRpcError("eth_blockNumber", ConnectionError("boom"))
        return self.head

    async def get_block_by_number(self, block_number: int) -> dict:
        return {"number": block_number, "hash": HexBytes(block_hash(block_number))}

    async def subscribe_logs(self, params: dict) -> str:
        self.subscriptions += 1
        subscription_id = f"sub-{self.subscriptions}"
        self._feeds[subscription_id] = asyncio.Queue()
        self._current = subscription_id
        self.subscribed.set()
        return subscription_id

    async def subscription_logs(
        self, subscription_id: str
    ) -> AsyncIterator[ChainEvent]:
        feed = self._feeds[subscription_id]
        while True:
            event = await feed.get()
            if event is None:
                return
            yield event

    def emit(self, *events: ChainEvent) -> None:
        """Test helper: deliver events on the current live subscription."""
        assert self._current is not None
        for event in events:
            self._feeds[self._current].put_nowait(event)

    def drop(self) -> None:
        """Test helper: end the current live subscription."""
        assert self._current is not None
        self.subscribed.clear()
        self._feeds[self._current].put_nowait(None)

    async def reconnect(self) -> None:
        self.reconnects += 1

    async def close(self) -> None:
        pass


class MockOrbitSphere:
    """Implements the OrbitSphere interface over an in-memory chain.

    Raw logs are ChainEvents already, so decode_log is the identity.
    """

    def __init__(self) -> None:
        self.chain: list[ChainEvent] = []
        self.failures = 0
        self.queries: list[tuple[int, int]] = []

    def add(self, *events: ChainEvent) -> None:
        """Test helper: append events to the chain."""
        self.chain.extend(events)

    def get_log_filter(
        self, from_block: Optional[int] = None, to_block: Optional[int] = None
    ) -> dict:
        return {"fromBlock": from_block, "toBlock": to_block}

    def decode_log(self, raw: ChainEvent) -> Optional[ChainEvent]:
        return raw

    async def get_events(self, from_block: int, to_block: int) -> list[ChainEvent]:
        self.queries.append((from_block, to_block))
        if self.failures:
            self.failures -= 1
            raise ChainRpcError("eth_getLogs", ConnectionError("boom"))
        return sorted(
            (e for e in self.chain if from_block <= e.block_number <= to_block),
            key=lambda e: e.position,
        )
