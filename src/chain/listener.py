"""ChainListener

Off-chain replay of on-chain OrbitSphere events.

Each session opens a live `logs` subscription, then closes the gap between the
durable checkpoint and the chain head with a catch-up scan, then drains the live
buffer. Live events that the catch-up already covered are suppressed by the
ChainProcessor. A lost subscription ends the session; the next session reconnects
and catches up from the checkpoint before resuming live mode.
"""

from __future__ import annotations

import asyncio
from itertools import groupby
from typing import Awaitable, Callable, Optional, TypeVar, cast

from eth_typing import BlockNumber
from redis.exceptions import RedisError
from reretry import retry  # type: ignore
from web3 import Web3

from chain.contract import OrbitSphere
from chain.errors import ChainRpcError
from chain.processor import ChainProcessor
from chain.rpc import RPC
from shared.config import ConfigCatchUp
from shared.event import ChainEvent
from shared.service import AsyncTask
from store.checkpoint import Checkpoint, CheckpointWriteConflict
from utils import log

T = TypeVar("T")

# Upper bound on how long the live loop waits before re-checking its state
LIVE_POLL_INTERVAL = 1.0

# Failures that end a session; the session is retried after a reconnect
SESSION_ERRORS = (ChainRpcError, RedisError, CheckpointWriteConflict)


class ListenerStopped(Exception):
    """Raised inside retry loops once the listener is stopped"""

    pass


def get_batches(start: int, end: int, batch_size: int) -> list[tuple[int, int]]:
    """
    Get inclusive block ranges of at most batch_size blocks covering [start, end].
    """
    if end < start:
        return []
    return [
        (i, min(i + batch_size - 1, end)) for i in range(start, end + 1, batch_size)
    ]


class ChainListener(AsyncTask):
    """Off-chain replay of on-chain OrbitSphere events.

    Public methods:
        setup: Inherited from AsyncTask. Loads or initializes the checkpoint.
        run_forever: Inherited from AsyncTask. Runs live + catch-up sessions.
        cleanup: Inherited from AsyncTask. Unused, resources are owned by caller.

    Private methods:
        _reconnect: Reconnects the RPC after a failed session
        _run_session: Subscribe, catch up, drain live events until the
            subscription is lost
        _catch_up: Scans (checkpoint, head] in batches and replays events
        _replay: Dispatches one batch of events in chain order
        _drain_live: Processes buffered live events until a catch-up is needed
        _read_subscription: Decodes subscription logs into the live buffer

    Private attributes:
        _rpc (RPC): RPC instance
        _orbitsphere (OrbitSphere): OrbitSphere contract client
        _processor (ChainProcessor): ChainProcessor instance
        _trail_head_blocks (int): How many blocks catch-up trails head by
        _catch_up_config (ConfigCatchUp): Catch-up configuration
        _live (asyncio.Queue[ChainEvent]): Bounded buffer of live events
        _needs_catch_up (bool): Set when the live path lost or failed an event
        _checkpoint_partial (bool): Set when the live path advanced the checkpoint,
            whose block may then hold events not yet dispatched
    """

    def __init__(
        self: ChainListener,
        rpc: RPC,
        orbitsphere: OrbitSphere,
        processor: ChainProcessor,
        trail_head_blocks: int,
        catch_up: ConfigCatchUp,
    ) -> None:
        """Initializes new ChainListener

        Args:
            rpc (RPC): RPC instance
            orbitsphere (OrbitSphere): OrbitSphere contract client
            processor (ChainProcessor): ChainProcessor instance
            trail_head_blocks (int): How many blocks catch-up trails head by
            catch_up (ConfigCatchUp): Catch-up configuration
        """

        # Initialize inherited AsyncTask
        super().__init__()

        self._rpc = rpc
        self._orbitsphere = orbitsphere
        self._processor = processor
        self._trail_head_blocks = trail_head_blocks
        self._catch_up_config = catch_up
        self._live: asyncio.Queue[ChainEvent] = asyncio.Queue(
            maxsize=catch_up.live_buffer_size
        )
        self._needs_catch_up = True
        self._checkpoint_partial = False
        log.info("Initialized ChainListener")

    async def _with_retry(
        self: ChainListener, operation: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        """Runs an RPC call, retrying ChainRpcError with exponential backoff

        Args:
            operation (str): name for logging
            call (Callable[[], Awaitable[T]]): RPC call

        Returns:
            T: call result

        Raises:
            ListenerStopped: Listener stopped while retrying
            ChainRpcError: Retries exhausted
        """
        config = self._catch_up_config

        @retry(  # type: ignore
            exceptions=ChainRpcError,
            tries=config.retry_tries,
            delay=config.retry_delay,
            backoff=config.retry_backoff,
            max_delay=config.retry_max_delay,
            logger=None,
        )
        async def _call_with_retry() -> T:
            if self._shutdown:
                raise ListenerStopped
            try:
                return await call()
            except ChainRpcError as e:
                log.warning(f"{operation} failed. Retrying...", err=str(e))
                raise e

        return cast(T, await _call_with_retry())

    async def _get_head_block(self: ChainListener) -> int:
        """Chain head minus trailing blocks"""
        head = await self._with_retry("get_head_block", self._rpc.get_head_block_number)
        return max(0, int(head) - self._trail_head_blocks)

    async def _get_block_hash(self: ChainListener, block_number: int) -> str:
        block = await self._with_retry(
            "get_block",
            lambda: self._rpc.get_block_by_number(BlockNumber(block_number)),
        )
        return Web3.to_hex(block["hash"])

    async def setup(self: ChainListener) -> None:
        """ChainListener startup

        Process:
            1. Load checkpoint from store
            2. If none, start from `start_block - 1` or the current head
            3. Else, compare the checkpoint hash with the chain (reorg warning)
        """
        checkpoint = await self._processor.load_checkpoint()

        if checkpoint is None:
            start_block = self._catch_up_config.start_block
            if start_block is None:
                initial = await self._get_head_block()
            else:
                initial = max(0, start_block - 1)
            block_hash = await self._get_block_hash(initial)
            await self._processor.initialize_checkpoint(
                Checkpoint(block_number=initial, block_hash=block_hash)
            )
            log.info("No checkpoint found, starting after block", block=initial)
            return

        chain_hash = await self._get_block_hash(checkpoint.block_number)
        if chain_hash.lower() != checkpoint.block_hash.lower():
            log.warning(
                "Checkpoint hash does not match chain, block may have been reorged",
                block=checkpoint.block_number,
                stored=checkpoint.block_hash,
                chain=chain_hash,
            )
        log.info("Resuming from checkpoint", block=checkpoint.block_number)

    async def _reconnect(self: ChainListener, error: Exception) -> None:
        """Drops and reopens the RPC connection after a failed session

        Args:
            error (Exception): session failure
        """
        log.error("Chain session interrupted", err=str(error), exc_info=error)
        try:
            await self._rpc.reconnect()
        except ChainRpcError as e:
            log.warning("Reconnect failed", err=str(e))

    async def run_forever(self: ChainListener) -> None:
        """Core ChainListener event loop

        Process:
            1. Run a session (subscribe, catch up, drain live events)
            2. On RPC or checkpoint store failure, reconnect and retry the session
                with exponential backoff
            3. On subscription loss, reconnect with a fresh backoff
            4. Repeat until stopped
        """
        log.info("Started ChainListener lifecycle")
        config = self._catch_up_config

        @retry(  # type: ignore
            exceptions=SESSION_ERRORS,
            delay=config.retry_delay,
            backoff=config.retry_backoff,
            max_delay=config.retry_max_delay,
            logger=None,
            fail_callback=self._reconnect,
        )
        async def _run_session_with_retry() -> None:
            if self._shutdown:
                raise ListenerStopped
            await self._run_session()

        while not self._shutdown:
            try:
                await _run_session_with_retry()
            except ListenerStopped:
                break

            if self._shutdown:
                break

            await self._sleep(config.retry_delay)
            try:
                await self._rpc.reconnect()
            except ChainRpcError as e:
                log.warning("Reconnect failed", err=str(e))

        log.info("Stopped ChainListener lifecycle")

    async def _run_session(self: ChainListener) -> None:
        """Runs one subscription session, until the subscription is lost or the
        listener is stopped

        Raises:
            ChainRpcError: Subscription could not be created, or catch-up retries
                were exhausted
            RedisError: Checkpoint store unreachable
            CheckpointWriteConflict: Checkpoint could not be advanced
        """
        subscription_id = await self._rpc.subscribe_logs(
            self._orbitsphere.get_log_filter()
        )

        # Fresh buffer per subscription
        self._live = asyncio.Queue(maxsize=self._catch_up_config.live_buffer_size)
        self._needs_catch_up = True
        reader = asyncio.create_task(self._read_subscription(subscription_id))

        try:
            while not self._shutdown:
                if not await self._catch_up():
                    if self._shutdown:
                        break
                    # Publish failed, retry from the checkpoint
                    await self._sleep(self._catch_up_config.retry_delay)
                    continue
                if not await self._drain_live(reader):
                    break
        finally:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def _catch_up(self: ChainListener) -> bool:
        """Replays all events in (checkpoint, head] in chain order. If the live
        path advanced the checkpoint, the checkpoint block itself is rescanned;
        events already dispatched there are skipped by the processor.

        Returns:
            bool: True if the checkpoint reached head, False if a publish failed or
                the listener was stopped
        """
        self._needs_catch_up = False
        head = await self._get_head_block()
        checkpoint = self._processor.checkpoint
        if checkpoint is None:
            start = head
        elif self._checkpoint_partial:
            # Live path may have dispatched only part of the checkpoint block
            start = checkpoint.block_number
            head = max(head, start)
        else:
            start = checkpoint.block_number + 1

        if start > head:
            log.debug("Already synced to head", head=head)
            return True

        log.info("Catching up", from_block=start, to_block=head)
        for from_block, to_block in get_batches(
            start, head, self._catch_up_config.batch_size
        ):
            events = await self._with_retry(
                "get_events",
                lambda: self._orbitsphere.get_events(from_block, to_block),
            )
            if not await self._replay(events, to_block):
                return False
            if self._shutdown:
                return False

        self._checkpoint_partial = False
        log.info("Caught up", head=head)
        return True

    async def _replay(
        self: ChainListener, events: list[ChainEvent], to_block: int
    ) -> bool:
        """Dispatches a batch of events, block by block, advancing the checkpoint
        after every fully dispatched block.

        After a failed publish the checkpoint stops advancing for the rest of the
        batch; events of other instances are still dispatched. If a later event
        belongs to an instance whose earlier event failed, the replay aborts so
        per-instance order is kept.

        Args:
            events (list[ChainEvent]): events in chain order
            to_block (int): last block of the batch (inclusive)

        Returns:
            bool: True if every event was dispatched and the checkpoint reached
                `to_block`
        """
        failed_nft_ids: set[int] = set()

        for block_number, group in groupby(events, key=lambda e: e.block_number):
            block_events = list(group)
            for event in block_events:
                if event.nft_id in failed_nft_ids:
                    log.error(
                        "Aborting catch-up to preserve instance order",
                        nft_id=event.nft_id,
                        block=block_number,
                    )
                    return False
                if not await self._processor.dispatch(event):
                    failed_nft_ids.add(event.nft_id)

            if not failed_nft_ids:
                await self._processor.advance(
                    block_number, block_events[-1].block_hash
                )

            # Checkpoint boundary
            if self._shutdown:
                return False

        if failed_nft_ids:
            log.warning(
                "Checkpoint halted after failed publishes",
                nft_ids=sorted(failed_nft_ids),
            )
            return False

        await self._processor.advance(to_block, await self._get_block_hash(to_block))
        return True

    async def _drain_live(
        self: ChainListener, reader: asyncio.Task[None]
    ) -> bool:
        """Processes buffered live events until a catch-up is due

        Args:
            reader (asyncio.Task[None]): subscription reader task

        Returns:
            bool: True if a catch-up is due, False if the subscription was lost or
                the listener was stopped
        """
        loop = asyncio.get_running_loop()
        last_activity = loop.time()
        period = self._catch_up_config.period

        while not self._shutdown:
            if self._needs_catch_up:
                return True

            if reader.done():
                error: Optional[BaseException] = (
                    None if reader.cancelled() else reader.exception()
                )
                log.warning(
                    "Live subscription lost", err=str(error) if error else None
                )
                return False

            # Periodic gap check, in case the subscription stalls silently
            idle = loop.time() - last_activity
            if idle >= period:
                log.debug("No live events, checking for gaps", idle=idle)
                return True

            try:
                event = await asyncio.wait_for(
                    self._live.get(), timeout=min(LIVE_POLL_INTERVAL, period - idle)
                )
            except asyncio.TimeoutError:
                continue

            last_activity = loop.time()
            if not await self._processor.dispatch(event):
                # Catch-up re-reads the failed event from the chain
                return True
            await self._processor.advance(event.block_number, event.block_hash)
            self._checkpoint_partial = True

        return False

    async def _read_subscription(self: ChainListener, subscription_id: str) -> None:
        """Decodes subscription logs into the bounded live buffer. A full buffer
        drops the event and schedules a catch-up, which re-reads it from the chain.

        Args:
            subscription_id (str): live subscription id

        Raises:
            ChainRpcError: Subscription failed
        """
        async for raw in self._rpc.subscription_logs(subscription_id):
            event = self._orbitsphere.decode_log(raw)
            if event is None:
                continue
            try:
                self._live.put_nowait(event)
            except asyncio.QueueFull:
                log.warning(
                    "Live buffer full, dropping event until catch-up",
                    variant=event.variant.name,
                    nft_id=event.nft_id,
                    block=event.block_number,
                )
                self._needs_catch_up = True

        log.warning("Live subscription ended", subscription_id=subscription_id)

    async def cleanup(self: ChainListener) -> None:
        """Stateless task, resources are closed by the lifecycle owner"""
        pass
