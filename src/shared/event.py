"""On-chain OrbitSphere events

Immutable records normalized from raw contract logs. Every event carries its
provenance (block number, block hash, log index, transaction hash) and the rented
instance's `nft_id`, which correlates events across variants and queues.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class EventVariant(Enum):
    """OrbitSphere emitted events (name -> human-readable ABI representation)"""

    InstanceRented = (
        "InstanceRented(bytes,uint256,bytes,bytes,uint256,uint256,address,uint256,"
        "uint256)"
    )
    InstanceStopped = "InstanceStopped(uint256,address)"
    InstanceTerminated = "InstanceTerminated(address,uint256,uint256,uint256,uint256)"


"""
DedupKey identifies a single event instance: (variant, nft_id, block_number)
"""
DedupKey = tuple[EventVariant, int, int]


@dataclass(frozen=True, kw_only=True)
class BaseChainEvent:
    """Provenance shared by every chain event"""

    block_number: int
    block_hash: str
    log_index: int = 0
    transaction_hash: str = ""

    @property
    def variant(self: BaseChainEvent) -> EventVariant:
        return EventVariant[type(self).__name__]

    @property
    def dedup_key(self: BaseChainEvent) -> DedupKey:
        return (self.variant, getattr(self, "nft_id"), self.block_number)

    @property
    def position(self: BaseChainEvent) -> tuple[int, int]:
        """Chain order of the event: (block_number, log_index)"""
        return (self.block_number, self.log_index)


@dataclass(frozen=True, kw_only=True)
class InstanceRented(BaseChainEvent):
    """Instance rented by a tenant until `will_be_end_on` (unix seconds)"""

    region: str
    nft_id: int
    instance_type: str
    ssh_public_key: str
    rented_on: int
    will_be_end_on: int
    tenant: str
    total_cost: int
    price_per_hour: int


@dataclass(frozen=True, kw_only=True)
class InstanceStopped(BaseChainEvent):
    """Instance stopped by its tenant"""

    nft_id: int
    tenant: str


@dataclass(frozen=True, kw_only=True)
class InstanceTerminated(BaseChainEvent):
    """Instance terminated and settled"""

    tenant: str
    nft_id: int
    actual_cost: int
    time_consumed: int
    refund_amount: int


# Type alias for any watched chain event
ChainEvent = Union[InstanceRented, InstanceStopped, InstanceTerminated]
