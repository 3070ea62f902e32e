from __future__ import annotations


class ChainRpcError(Exception):
    """Transient chain node / network failure.

    Retried with backoff during catch-up. Raised from a live subscription, it marks
    the subscription as lost, which triggers a reconnect and a gap-closing catch-up.
    """

    def __init__(self: ChainRpcError, operation: str, cause: BaseException) -> None:
        self.operation = operation
        super().__init__(f"{operation} failed: {cause!r}")
