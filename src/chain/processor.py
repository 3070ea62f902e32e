"""ChainProcessor

Normalizes ChainEvents into queue dispatches, suppresses duplicates, publishes
through the DispatchQueues and advances the durable Checkpoint.

Event => dispatches:
    InstanceRented      -> rental message, plus a terminate message delayed until
                           the rental's `willBeEndOn`
    InstanceStopped     -> stop message
    InstanceTerminated  -> immediate terminate message
"""

from __future__ import annotations

from typing import Optional

from broker.errors import BrokerError
from broker.queue import DispatchQueues
from shared.event import (
    ChainEvent,
    DedupKey,
    InstanceRented,
    InstanceStopped,
    InstanceTerminated,
)
from shared.message import Dispatch, RentalMessage, StopMessage, TerminateMessage
from store.checkpoint import Checkpoint, CheckpointStore, CheckpointWriteConflict
from utils.logging import log


def normalize(event: ChainEvent) -> list[Dispatch]:
    """Maps a chain event to the queue dispatches it triggers, in publish order

    Args:
        event (ChainEvent): chain event

    Returns:
        list[Dispatch]: dispatches
    """
    nft_id = str(event.nft_id)
    match event:
        case InstanceRented():
            return [
                Dispatch(
                    RentalMessage(
                        tenant=event.tenant,
                        region=event.region,
                        sshPublicKey=event.ssh_public_key,
                        instanceType=event.instance_type,
                        nftId=nft_id,
                        terminateOn=event.will_be_end_on,
                    )
                ),
                Dispatch(
                    TerminateMessage(tenant=event.tenant, nftId=nft_id),
                    deliver_at=float(event.will_be_end_on),
                ),
            ]
        case InstanceStopped():
            return [Dispatch(StopMessage(tenant=event.tenant, nftId=nft_id))]
        case InstanceTerminated():
            return [Dispatch(TerminateMessage(tenant=event.tenant, nftId=nft_id))]
    raise ValueError(f"Unknown chain event {type(event).__name__}")


def message_id(event: ChainEvent, index: int) -> str:
    """Stable id of the `index`-th dispatch of an event: <variant>:<nftId>:<block>[:n]"""
    base = f"{event.variant.name}:{event.nft_id}:{event.block_number}"
    return base if index == 0 else f"{base}:{index}"


class ChainProcessor:
    """Publishes chain events exactly once and tracks the checkpoint.

    An event is skipped if it lies below the checkpoint, or if its
    (variant, nft_id, block_number) key was already dispatched. Keys are reserved
    before publishing, so overlapping live and catch-up paths never publish the
    same event twice; a key reserved by the other path reports "not dispatched"
    until that publish is confirmed. The seen-set only holds keys at or above
    the checkpoint block.

    Public methods:
        load_checkpoint: Reads the checkpoint from the store
        initialize_checkpoint: Writes a starting checkpoint if none exists
        dispatch: Publishes an event's messages, returns success
        advance: Moves the checkpoint forward (never backwards)

    Private attributes:
        _queues (DispatchQueues): rental / stop / terminate queues
        _store (CheckpointStore): durable checkpoint store
        _checkpoint (Optional[Checkpoint]): last known checkpoint
        _seen (set[DedupKey]): keys dispatched at or above the checkpoint block
        _in_flight (set[DedupKey]): keys currently being published
        _published (dict[DedupKey, int]): dispatches already published for keys
            whose publish partially failed
    """

    def __init__(
        self: ChainProcessor, queues: DispatchQueues, store: CheckpointStore
    ) -> None:
        """Initializes new ChainProcessor

        Args:
            queues (DispatchQueues): rental / stop / terminate queues
            store (CheckpointStore): durable checkpoint store
        """
        self._queues = queues
        self._store = store
        self._checkpoint: Optional[Checkpoint] = None
        self._seen: set[DedupKey] = set()
        self._in_flight: set[DedupKey] = set()
        self._published: dict[DedupKey, int] = {}
        log.info("Initialized ChainProcessor")

    @property
    def checkpoint(self: ChainProcessor) -> Optional[Checkpoint]:
        return self._checkpoint

    async def load_checkpoint(self: ChainProcessor) -> Optional[Checkpoint]:
        """Reads the checkpoint from the store

        Returns:
            Optional[Checkpoint]: stored checkpoint
        """
        self._checkpoint = await self._store.read()
        log.info(
            "Loaded checkpoint",
            block=self._checkpoint.block_number if self._checkpoint else None,
        )
        return self._checkpoint

    async def initialize_checkpoint(self: ChainProcessor, checkpoint: Checkpoint) -> None:
        """Writes a starting checkpoint when none exists yet

        Args:
            checkpoint (Checkpoint): starting position
        """
        if self._checkpoint is not None:
            return
        await self.advance(checkpoint.block_number, checkpoint.block_hash)

    def is_dispatched(self: ChainProcessor, event: ChainEvent) -> bool:
        """Whether an event is covered by the checkpoint or already dispatched"""
        if (
            self._checkpoint is not None
            and event.block_number < self._checkpoint.block_number
        ):
            return True
        return event.dedup_key in self._seen

    async def dispatch(self: ChainProcessor, event: ChainEvent) -> bool:
        """Publishes an event's messages unless it was already dispatched

        Args:
            event (ChainEvent): chain event

        Returns:
            bool: True if the event is dispatched (now or before), False if a
                publish failed and the event must be retried
        """
        key = event.dedup_key
        if self.is_dispatched(event):
            log.debug("Skipping duplicate event", key=key)
            return True
        if key in self._in_flight:
            # Owned by the other path, not yet confirmed
            log.debug("Event publish in flight", key=key)
            return False

        self._in_flight.add(key)
        try:
            dispatches = normalize(event)
            for index in range(self._published.get(key, 0), len(dispatches)):
                try:
                    await self._queues.send(
                        dispatches[index], message_id=message_id(event, index)
                    )
                except BrokerError as e:
                    log.error(
                        "Failed to publish event",
                        variant=event.variant.name,
                        nft_id=event.nft_id,
                        block=event.block_number,
                        err=str(e),
                    )
                    return False
                self._published[key] = index + 1
        finally:
            self._in_flight.discard(key)

        self._published.pop(key, None)
        self._seen.add(key)
        log.info(
            "Dispatched event",
            variant=event.variant.name,
            nft_id=event.nft_id,
            block=event.block_number,
        )
        return True

    async def advance(self: ChainProcessor, block_number: int, block_hash: str) -> None:
        """Moves the checkpoint to (block_number, block_hash) if that is ahead of
        the current checkpoint. On a compare-and-set conflict, adopts the stored
        checkpoint if another writer is further ahead, otherwise retries once.

        Args:
            block_number (int): fully processed block
            block_hash (str): hash of that block
        """
        if (
            self._checkpoint is not None
            and block_number <= self._checkpoint.block_number
        ):
            return

        checkpoint = Checkpoint(block_number=block_number, block_hash=block_hash)
        for attempt in range(2):
            try:
                await self._store.write(checkpoint)
                self._set_checkpoint(checkpoint)
                return
            except CheckpointWriteConflict as e:
                stored = await self._store.read()
                log.warning(
                    "Checkpoint write conflict",
                    attempted=block_number,
                    stored=stored.block_number if stored else None,
                    attempt=attempt,
                )
                if stored is not None and stored.block_number >= block_number:
                    self._set_checkpoint(stored)
                    return
                if attempt == 1:
                    raise e

    def _set_checkpoint(self: ChainProcessor, checkpoint: Checkpoint) -> None:
        """Updates the local checkpoint and prunes keys it now covers"""
        self._checkpoint = checkpoint
        self._seen = {
            key for key in self._seen if key[2] >= checkpoint.block_number
        }
        log.debug("Advanced checkpoint", block=checkpoint.block_number)
