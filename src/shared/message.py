"""Dispatch messages

Wire payloads placed on the broker queues. Field names are part of the wire
contract and match the JSON keys exactly.
"""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class RentalMessage:
    """Provision an instance

    `region` and `instanceType` are indexed `bytes` event arguments, so the chain
    only records their keccak hash. Both carry that hash as a 0x hex string, not
    the original value; consumers resolve it against the known regions and
    instance types.
    """

    tenant: str
    region: str
    sshPublicKey: str
    instanceType: str
    nftId: str
    terminateOn: int


@dataclass(frozen=True)
class StopMessage:
    """Stop an instance"""

    tenant: str
    nftId: str


@dataclass(frozen=True)
class TerminateMessage:
    """Terminate and reclaim an instance"""

    tenant: str
    nftId: str


# Type alias for any queue payload
DispatchMessage = Union[RentalMessage, StopMessage, TerminateMessage]


@dataclass(frozen=True)
class Dispatch:
    """A message bound for one queue, optionally delayed until `deliver_at`
    (unix seconds)"""

    message: DispatchMessage
    deliver_at: Optional[float] = None
