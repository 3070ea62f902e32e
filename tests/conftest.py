"""Shared fixtures for orbitsphere listener tests."""

from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from chain.listener import ChainListener
from chain.processor import ChainProcessor
from shared.config import ConfigCatchUp
from store.checkpoint import Checkpoint

from tests.factories import block_hash
from tests.mocks import MockCheckpointStore, MockOrbitSphere, MockQueues, MockRPC


def make_catch_up_config(**overrides) -> ConfigCatchUp:
    """Build a ConfigCatchUp with no backoff delays, suitable for testing."""
    defaults = dict(
        batch_size=5,
        retry_delay=0,
        retry_backoff=1,
        retry_max_delay=0,
        retry_tries=3,
        period=0.05,
        live_buffer_size=100,
    )
    defaults.update(overrides)
    return ConfigCatchUp(**defaults)


async def wait_until(condition: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll `condition` until it holds, failing the test after `timeout`."""

    async def _poll() -> None:
        while not condition():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def checkpoint_store():
    """In-memory checkpoint store positioned at block 100."""
    return MockCheckpointStore(Checkpoint(block_number=100, block_hash=block_hash(100)))


@pytest.fixture
def queues():
    return MockQueues()


@pytest.fixture
def rpc():
    return MockRPC(head=110)


@pytest.fixture
def orbitsphere():
    return MockOrbitSphere()


@pytest.fixture
def processor(queues, checkpoint_store):
    return ChainProcessor(queues, checkpoint_store)  # type: ignore[arg-type]


@pytest.fixture
def make_listener(rpc, orbitsphere, processor):
    """Factory for a ChainListener wired to the mocks."""

    def _make(trail_head_blocks: int = 0, **catch_up) -> ChainListener:
        return ChainListener(
            rpc,  # type: ignore[arg-type]
            orbitsphere,  # type: ignore[arg-type]
            processor,
            trail_head_blocks,
            make_catch_up_config(**catch_up),
        )

    return _make
