"""
This module contains the following classes:

1. Checkpoint: Last block number (and hash) known to be fully dispatched.

2. CheckpointWriteConflict: Raised when a compare-and-set write is rejected.

3. CheckpointStore: Durable, single-row checkpoint in Redis. Writes are
    compare-and-set (WATCH / MULTI) and never regress the stored block number, so
    concurrent listener instances cannot move it backwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from utils import log


@dataclass(frozen=True)
class Checkpoint:
    """Last processed chain position"""

    block_number: int
    block_hash: str


class CheckpointWriteConflict(Exception):
    """Raised when a checkpoint write would regress the stored checkpoint, or the
    stored checkpoint changed concurrently. Callers should re-read and decide."""

    def __init__(
        self: CheckpointWriteConflict,
        attempted: Checkpoint,
        stored: Optional[Checkpoint],
    ) -> None:
        self.attempted = attempted
        self.stored = stored
        super().__init__(
            f"Checkpoint write rejected: attempted block {attempted.block_number}, "
            f"stored {stored.block_number if stored else 'changed concurrently'}"
        )


class CheckpointStore:
    """Durable checkpoint in a Redis hash.

    Public methods:
        read: Returns stored checkpoint, or None if never written
        write: Compare-and-set write, never regressing the stored block number
        close: Closes the Redis client

    Attributes:
        _client (redis.Redis): Async Redis client (decoded responses)
        _key (str): Hash key holding the checkpoint
    """

    def __init__(self: CheckpointStore, client: redis.Redis, key: str) -> None:
        """Initialize checkpoint store

        Args:
            client (redis.Redis): Async Redis client with decode_responses=True
            key (str): Hash key holding the checkpoint
        """
        self._client = client
        self._key = key

    @classmethod
    def from_url(cls, url: str, key: str) -> CheckpointStore:
        """Creates a store backed by a new Redis client

        Args:
            url (str): Redis URL
            key (str): Hash key holding the checkpoint

        Returns:
            CheckpointStore: store
        """
        return cls(redis.Redis.from_url(url, decode_responses=True), key)

    async def ping(self: CheckpointStore) -> None:
        """Checks connectivity

        Raises:
            RuntimeError: If connection to Redis fails
        """
        try:
            await self._client.ping()
        except RedisConnectionError as e:
            raise RuntimeError(
                "Could not connect to Redis. Please check your configuration."
            ) from e
        log.info("Initialized Redis client", key=self._key)

    @staticmethod
    def _parse(data: dict[str, str]) -> Optional[Checkpoint]:
        if not data:
            return None
        return Checkpoint(
            block_number=int(data["block_number"]), block_hash=data["block_hash"]
        )

    async def read(self: CheckpointStore) -> Optional[Checkpoint]:
        """Returns stored checkpoint

        Returns:
            Optional[Checkpoint]: checkpoint, or None if never written
        """
        return self._parse(await self._client.hgetall(self._key))

    async def write(self: CheckpointStore, checkpoint: Checkpoint) -> None:
        """Writes checkpoint unless it would regress the stored block number.
        Writing the stored block number again is allowed (hash refresh).

        Args:
            checkpoint (Checkpoint): checkpoint to store

        Raises:
            CheckpointWriteConflict: write would regress, or a concurrent writer
                modified the checkpoint between read and write
        """
        async with self._client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self._key)
                stored = self._parse(await pipe.hgetall(self._key))
                if stored is not None and checkpoint.block_number < stored.block_number:
                    raise CheckpointWriteConflict(checkpoint, stored)

                pipe.multi()
                pipe.hset(
                    self._key,
                    mapping={
                        "block_number": str(checkpoint.block_number),
                        "block_hash": checkpoint.block_hash,
                    },
                )
                await pipe.execute()
            except WatchError as e:
                raise CheckpointWriteConflict(checkpoint, None) from e

        log.debug(
            "Wrote checkpoint",
            block=checkpoint.block_number,
            hash=checkpoint.block_hash,
        )

    async def close(self: CheckpointStore) -> None:
        """Closes the Redis client"""
        await self._client.aclose()
