"""Tests for DispatchQueue publish headers, payload codec and consume settlement."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import aio_pika
import pytest

from broker.errors import DecodeError
from broker.queue import DispatchQueue, DispatchQueues, compute_delay_ms
from shared.message import Dispatch, RentalMessage, StopMessage, TerminateMessage
from utils.constants import (
    DELAY_HEADER,
    RENTAL_QUEUE,
    ROUTE_TO_RENTAL_QUEUE,
    ROUTE_TO_STOP_QUEUE,
    ROUTE_TO_TERMINATE_QUEUE,
    SCHEMA_VERSION_HEADER,
    STOP_QUEUE,
)

NOW = 1_000.0

RENTAL = RentalMessage(
    tenant="0xAA",
    region="us-east",
    sshPublicKey="ssh-rsa AAAA",
    instanceType="gpu.small",
    nftId="42",
    terminateOn=4600,
)


class FakeTopology:
    """Records publishes instead of talking to a broker"""

    def __init__(self) -> None:
        self.published: list[tuple[aio_pika.Message, str]] = []
        self.queue = MagicMock()
        self.queue.consume = AsyncMock(return_value="ctag-1")
        self.ensure_ready = AsyncMock()
        self.shutdown = AsyncMock()

    async def publish(self, message: aio_pika.Message, routing_key: str) -> None:
        self.published.append((message, routing_key))

    def get_queue(self, name: str):
        return self.queue


def incoming(body: bytes, redelivered: bool = False):
    message = MagicMock()
    message.body = body
    message.redelivered = redelivered
    message.message_id = "id-1"
    message.ack = AsyncMock()
    message.nack = AsyncMock()
    return message


@pytest.fixture
def topology():
    return FakeTopology()


@pytest.fixture
def queues(topology):
    return DispatchQueues.build(topology, clock=lambda: NOW)  # type: ignore[arg-type]


class TestComputeDelay:
    def test_future_instant(self):
        assert compute_delay_ms(NOW + 60, NOW) == 60_000

    def test_past_instant_clamps_to_zero(self):
        assert compute_delay_ms(NOW - 60, NOW) == 0

    def test_rounds_to_milliseconds(self):
        assert compute_delay_ms(NOW + 0.0014, NOW) == 1


class TestPublish:
    async def test_rental_payload_and_headers(self, queues, topology):
        await queues.rental.publish(RENTAL, message_id="InstanceRented:42:101")

        message, routing_key = topology.published[0]
        assert routing_key == ROUTE_TO_RENTAL_QUEUE
        assert json.loads(message.body) == {
            "tenant": "0xAA",
            "region": "us-east",
            "sshPublicKey": "ssh-rsa AAAA",
            "instanceType": "gpu.small",
            "nftId": "42",
            "terminateOn": 4600,
        }
        assert message.headers[SCHEMA_VERSION_HEADER] == 1
        assert DELAY_HEADER not in message.headers
        assert message.message_id == "InstanceRented:42:101"
        assert message.content_type == "application/json"
        assert int(message.delivery_mode) == int(aio_pika.DeliveryMode.PERSISTENT)

    async def test_terminate_delay_header(self, queues, topology):
        await queues.terminate.publish(
            TerminateMessage(tenant="0xAA", nftId="42"), deliver_at=NOW + 3600
        )

        message, routing_key = topology.published[0]
        assert routing_key == ROUTE_TO_TERMINATE_QUEUE
        assert message.headers[DELAY_HEADER] == 3_600_000
        assert json.loads(message.body) == {"tenant": "0xAA", "nftId": "42"}

    async def test_terminate_in_the_past_is_delivered_immediately(
        self, queues, topology
    ):
        await queues.terminate.publish(
            TerminateMessage(tenant="0xAA", nftId="42"), deliver_at=NOW - 5
        )

        message, _ = topology.published[0]
        assert message.headers[DELAY_HEADER] == 0

    async def test_delay_rejected_on_queue_without_delay(self, queues, topology):
        with pytest.raises(ValueError):
            await queues.rental.publish(RENTAL, deliver_at=NOW + 10)
        assert topology.published == []

    async def test_payload_type_mismatch_rejected(self, queues, topology):
        with pytest.raises(ValueError):
            await queues.stop.publish(RENTAL)  # type: ignore[arg-type]
        assert topology.published == []

    async def test_send_routes_by_payload_type(self, queues, topology):
        await queues.send(Dispatch(StopMessage(tenant="0xAA", nftId="7")), "id")
        await queues.send(
            Dispatch(TerminateMessage(tenant="0xAA", nftId="7"), deliver_at=NOW + 1)
        )

        assert [key for _, key in topology.published] == [
            ROUTE_TO_STOP_QUEUE,
            ROUTE_TO_TERMINATE_QUEUE,
        ]
        assert topology.published[1][0].headers[DELAY_HEADER] == 1000


class TestDecode:
    def test_decodes_valid_payload(self, queues):
        body = queues.rental.encode(RENTAL)

        assert queues.rental.decode(body) == RENTAL

    @pytest.mark.parametrize(
        "body",
        [b"not json", b"\xff\xfe", b"[1, 2]", b'{"tenant": "0xAA"}'],
    )
    def test_invalid_payload_raises(self, queues, body):
        with pytest.raises(DecodeError):
            queues.stop.decode(body)


class TestConsume:
    async def test_registers_manual_ack_consumer(self, queues, topology):
        tag = await queues.stop.consume(AsyncMock())

        assert tag == "ctag-1"
        topology.ensure_ready.assert_awaited()
        assert topology.queue.consume.call_args.kwargs["no_ack"] is False

    async def test_acks_after_handler_success(self, queues, topology):
        handler = AsyncMock()
        await queues.stop.consume(handler)
        on_message = topology.queue.consume.call_args.args[0]
        message = incoming(b'{"tenant":"0xAA","nftId":"7"}')

        await on_message(message)

        handler.assert_awaited_once_with(StopMessage(tenant="0xAA", nftId="7"))
        message.ack.assert_awaited_once()
        message.nack.assert_not_awaited()

    async def test_handler_failure_requeues(self, queues):
        handler = AsyncMock(side_effect=RuntimeError("provisioning failed"))
        message = incoming(b'{"tenant":"0xAA","nftId":"7"}')

        await queues.stop._handle(message, handler)

        message.nack.assert_awaited_once_with(requeue=True)
        message.ack.assert_not_awaited()

    async def test_undecodable_message_requeued_once_then_dead_lettered(self, queues):
        handler = AsyncMock()
        first = incoming(b"garbage")
        second = incoming(b"garbage", redelivered=True)

        await queues.stop._handle(first, handler)
        await queues.stop._handle(second, handler)

        first.nack.assert_awaited_once_with(requeue=True)
        second.nack.assert_awaited_once_with(requeue=False)
        handler.assert_not_awaited()


def test_queue_names_and_routing(topology):
    queue = DispatchQueue(topology, STOP_QUEUE, StopMessage)  # type: ignore[arg-type]

    assert queue.name == STOP_QUEUE
    assert queue.routing_key == ROUTE_TO_STOP_QUEUE
    assert DispatchQueues.build(topology).rental.name == RENTAL_QUEUE  # type: ignore[arg-type]


async def test_close_shuts_down_shared_topology(queues, topology):
    await queues.close()

    topology.shutdown.assert_awaited_once()
