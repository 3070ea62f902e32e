"""Broker error taxonomy

Infrastructure errors (`BrokerUnavailable`, `PublishRejected`) are recoverable and
retried by the caller's policy. `UnsupportedBrokerFeature` is fatal at startup.
`DecodeError` marks a consumed message that can never be handled.
"""

from __future__ import annotations


class BrokerError(Exception):
    """Base class for broker errors"""

    pass


class BrokerUnavailable(BrokerError):
    """Connection or channel to the broker could not be established or was lost"""

    pass


class UnsupportedBrokerFeature(BrokerError):
    """Broker lacks a required capability (e.g. the delayed message exchange)"""

    def __init__(self: UnsupportedBrokerFeature, feature: str, reason: str) -> None:
        self.feature = feature
        super().__init__(f"Broker does not support {feature}: {reason}")


class PublishRejected(BrokerError):
    """Broker negatively acknowledged a publish"""

    def __init__(
        self: PublishRejected, routing_key: str, reason: str = "nack"
    ) -> None:
        self.routing_key = routing_key
        super().__init__(f"Publish to {routing_key} rejected: {reason}")


class DecodeError(BrokerError):
    """Consumed message body could not be decoded into its payload type"""

    pass
