from .errors import (
    BrokerError,
    BrokerUnavailable,
    DecodeError,
    PublishRejected,
    UnsupportedBrokerFeature,
)
from .queue import DispatchQueue, DispatchQueues
from .topology import BrokerTopology

__all__ = [
    "BrokerError",
    "BrokerTopology",
    "BrokerUnavailable",
    "DecodeError",
    "DispatchQueue",
    "DispatchQueues",
    "PublishRejected",
    "UnsupportedBrokerFeature",
]
