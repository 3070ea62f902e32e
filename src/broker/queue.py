"""DispatchQueue

Typed publish / consume facade over the shared ORBITSPHERE_EXCHANGE. One concrete
type serves all three queues, parameterized by queue name, routing key, payload
dataclass and whether delayed delivery is allowed.

Examples:
    >>> queues = DispatchQueues.build(BrokerTopology("amqp://localhost/"))

    >>> await queues.rental.publish(RentalMessage(...))

    >>> await queues.terminate.publish(
            TerminateMessage(tenant="0xAA", nftId="42"), deliver_at=1718000000
        )

    >>> await queues.stop.consume(handle_stop)

    >>> await queues.close()  # closes the shared connection for all queues
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict
from typing import Awaitable, Callable, Generic, NamedTuple, Optional, Type, TypeVar

import aio_pika
from aio_pika.abc import AbstractIncomingMessage

from broker.errors import DecodeError
from broker.topology import BrokerTopology
from shared.message import (
    Dispatch,
    DispatchMessage,
    RentalMessage,
    StopMessage,
    TerminateMessage,
)
from utils.constants import (
    DELAY_HEADER,
    QUEUE_BINDINGS,
    RENTAL_QUEUE,
    SCHEMA_VERSION,
    SCHEMA_VERSION_HEADER,
    STOP_QUEUE,
    TERMINATE_QUEUE,
)
from utils.logging import log
from utils.parser import ParseException, from_dict

T = TypeVar("T", RentalMessage, StopMessage, TerminateMessage)


def compute_delay_ms(deliver_at: float, now: float) -> int:
    """Milliseconds from `now` until `deliver_at`, clamped to >= 0

    Args:
        deliver_at (float): absolute delivery instant (unix seconds)
        now (float): current instant (unix seconds)

    Returns:
        int: delay in milliseconds
    """
    return max(0, round((deliver_at - now) * 1000))


class DispatchQueue(Generic[T]):
    """Publish / consume facade for one queue.

    Public methods:
        encode: Serializes a payload to JSON bytes
        decode: Deserializes JSON bytes to a payload, raising DecodeError
        publish: Publishes a payload, optionally delayed until `deliver_at`
        consume: Registers a handler, acking only on handler success
        close: Closes the shared broker connection (process-wide)

    Private attributes:
        _topology (BrokerTopology): Shared broker topology
        _queue_name (str): Queue name
        _routing_key (str): Routing key bound to the queue
        _message_type (Type[T]): Payload dataclass
        _supports_delay (bool): Whether `deliver_at` is allowed
        _clock (Callable[[], float]): Current unix time source
    """

    def __init__(
        self: DispatchQueue[T],
        topology: BrokerTopology,
        queue_name: str,
        message_type: Type[T],
        supports_delay: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initializes new DispatchQueue

        Args:
            topology (BrokerTopology): Shared broker topology
            queue_name (str): Queue name, one of QUEUE_BINDINGS
            message_type (Type[T]): Payload dataclass
            supports_delay (bool, optional): Allow delayed delivery. Defaults to False.
            clock (Callable[[], float], optional): Unix time source.
        """
        self._topology = topology
        self._queue_name = queue_name
        self._routing_key = QUEUE_BINDINGS[queue_name]
        self._message_type = message_type
        self._supports_delay = supports_delay
        self._clock = clock

    @property
    def name(self: DispatchQueue[T]) -> str:
        return self._queue_name

    @property
    def routing_key(self: DispatchQueue[T]) -> str:
        return self._routing_key

    def encode(self: DispatchQueue[T], message: T) -> bytes:
        """Serializes payload to JSON bytes. Field names are the wire contract."""
        return json.dumps(asdict(message), separators=(",", ":")).encode("utf-8")

    def decode(self: DispatchQueue[T], body: bytes) -> T:
        """Deserializes JSON bytes into the queue's payload type

        Args:
            body (bytes): message body

        Returns:
            T: payload

        Raises:
            DecodeError: body is not valid JSON or does not match the payload type
        """
        try:
            data = json.loads(body.decode("utf-8"))
            return from_dict(self._message_type, data)
        except (UnicodeDecodeError, json.JSONDecodeError, ParseException) as e:
            raise DecodeError(f"{self._queue_name}: {e}") from e

    async def publish(
        self: DispatchQueue[T],
        message: T,
        deliver_at: Optional[float] = None,
        message_id: Optional[str] = None,
    ) -> None:
        """Publishes payload to the queue's routing key. If `deliver_at` is set, the
        broker withholds routing until that instant via the `x-delay` header.

        Args:
            message (T): payload
            deliver_at (Optional[float]): absolute delivery instant (unix seconds)
            message_id (Optional[str]): id for consumer-side idempotency

        Raises:
            ValueError: payload type mismatch, or delay on a non-delay queue
            BrokerUnavailable: broker could not be reached
            PublishRejected: broker nacked the publish
        """
        if not isinstance(message, self._message_type):
            raise ValueError(
                f"{self._queue_name} expects {self._message_type.__name__}, "
                f"got {type(message).__name__}"
            )

        headers: dict[str, int] = {SCHEMA_VERSION_HEADER: SCHEMA_VERSION}
        if deliver_at is not None:
            if not self._supports_delay:
                raise ValueError(f"{self._queue_name} does not support delays")
            headers[DELAY_HEADER] = compute_delay_ms(deliver_at, self._clock())

        await self._topology.publish(
            aio_pika.Message(
                self.encode(message),
                headers=headers,
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                message_id=message_id,
            ),
            self._routing_key,
        )
        log.debug(
            "Published message",
            queue=self._queue_name,
            message_id=message_id,
            delay=headers.get(DELAY_HEADER),
        )

    async def consume(
        self: DispatchQueue[T], handler: Callable[[T], Awaitable[None]]
    ) -> str:
        """Registers `handler` for every delivered message. A message is acked only
        if `handler` returns without error, otherwise it is nacked and requeued for
        redelivery. Undecodable messages are requeued once, then dead-lettered.

        Args:
            handler (Callable[[T], Awaitable[None]]): idempotent message handler

        Returns:
            str: consumer tag
        """
        await self._topology.ensure_ready()
        queue = self._topology.get_queue(self._queue_name)

        async def on_message(incoming: AbstractIncomingMessage) -> None:
            await self._handle(incoming, handler)

        consumer_tag = await queue.consume(on_message, no_ack=False)
        log.info("Consuming queue", queue=self._queue_name, consumer_tag=consumer_tag)
        return consumer_tag

    async def _handle(
        self: DispatchQueue[T],
        incoming: AbstractIncomingMessage,
        handler: Callable[[T], Awaitable[None]],
    ) -> None:
        """Decodes and handles one delivery, settling it with the broker

        Args:
            incoming (AbstractIncomingMessage): delivered message
            handler (Callable[[T], Awaitable[None]]): message handler
        """
        try:
            payload = self.decode(incoming.body)
        except DecodeError as e:
            log.error(
                "Could not decode message",
                queue=self._queue_name,
                message_id=incoming.message_id,
                redelivered=incoming.redelivered,
                err=str(e),
            )
            # Poison message: one redelivery, then dead-letter
            await incoming.nack(requeue=not incoming.redelivered)
            return

        try:
            await handler(payload)
        except Exception as e:
            log.error(
                "Message handler failed",
                queue=self._queue_name,
                message_id=incoming.message_id,
                err=str(e),
                exc_info=True,
            )
            await incoming.nack(requeue=True)
            return

        await incoming.ack()

    async def close(self: DispatchQueue[T]) -> None:
        """Closes the shared broker connection. Process-wide: every queue built on
        the same topology is closed too."""
        await self._topology.shutdown()


class DispatchQueues(NamedTuple):
    """The three OrbitSphere queues, sharing one BrokerTopology"""

    rental: DispatchQueue[RentalMessage]
    stop: DispatchQueue[StopMessage]
    terminate: DispatchQueue[TerminateMessage]

    @classmethod
    def build(
        cls, topology: BrokerTopology, clock: Callable[[], float] = time.time
    ) -> DispatchQueues:
        """Builds rental, stop and terminate queues over one topology

        Args:
            topology (BrokerTopology): shared broker topology
            clock (Callable[[], float], optional): Unix time source.

        Returns:
            DispatchQueues: queues
        """
        return cls(
            rental=DispatchQueue(topology, RENTAL_QUEUE, RentalMessage, clock=clock),
            stop=DispatchQueue(topology, STOP_QUEUE, StopMessage, clock=clock),
            terminate=DispatchQueue(
                topology,
                TERMINATE_QUEUE,
                TerminateMessage,
                supports_delay=True,
                clock=clock,
            ),
        )

    def for_message(
        self: DispatchQueues, message: DispatchMessage
    ) -> DispatchQueue[RentalMessage] | DispatchQueue[StopMessage] | DispatchQueue[
        TerminateMessage
    ]:
        """Returns the queue that carries `message`'s payload type"""
        if isinstance(message, RentalMessage):
            return self.rental
        if isinstance(message, StopMessage):
            return self.stop
        return self.terminate

    async def send(
        self: DispatchQueues, dispatch: Dispatch, message_id: Optional[str] = None
    ) -> None:
        """Publishes one dispatch to the queue matching its payload

        Args:
            dispatch (Dispatch): message and optional delivery instant
            message_id (Optional[str]): id for consumer-side idempotency

        Raises:
            BrokerUnavailable: broker could not be reached
            PublishRejected: broker nacked the publish
        """
        queue = self.for_message(dispatch.message)
        await queue.publish(  # type: ignore[arg-type]
            dispatch.message, deliver_at=dispatch.deliver_at, message_id=message_id
        )

    async def close(self: DispatchQueues) -> None:
        """Closes the shared broker connection (process-wide)"""
        await self.rental.close()
