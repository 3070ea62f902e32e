"""Factory helpers for chain events used across tests."""

from __future__ import annotations

from shared.event import InstanceRented, InstanceStopped, InstanceTerminated

TENANT = "0x00000000000000000000000000000000000000AA"


def block_hash(block_number: int) -> str:
    """Deterministic fake block hash."""
    return "0x" + f"{block_number:064x}"


def make_rented(
    nft_id: int = 42,
    block_number: int = 101,
    log_index: int = 0,
    will_be_end_on: int = 4600,
    **overrides,
) -> InstanceRented:
    defaults = dict(
        region="us-east",
        nft_id=nft_id,
        instance_type="gpu.small",
        ssh_public_key="ssh-rsa AAAA",
        rented_on=1000,
        will_be_end_on=will_be_end_on,
        tenant=TENANT,
        total_cost=360,
        price_per_hour=1,
        block_number=block_number,
        block_hash=block_hash(block_number),
        log_index=log_index,
    )
    defaults.update(overrides)
    return InstanceRented(**defaults)


def make_stopped(
    nft_id: int = 42, block_number: int = 105, log_index: int = 0, **overrides
) -> InstanceStopped:
    defaults = dict(
        nft_id=nft_id,
        tenant=TENANT,
        block_number=block_number,
        block_hash=block_hash(block_number),
        log_index=log_index,
    )
    defaults.update(overrides)
    return InstanceStopped(**defaults)


def make_terminated(
    nft_id: int = 42, block_number: int = 108, log_index: int = 0, **overrides
) -> InstanceTerminated:
    defaults = dict(
        tenant=TENANT,
        nft_id=nft_id,
        actual_cost=120,
        time_consumed=7200,
        refund_amount=240,
        block_number=block_number,
        block_hash=block_hash(block_number),
        log_index=log_index,
    )
    defaults.update(overrides)
    return InstanceTerminated(**defaults)
