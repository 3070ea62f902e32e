from typing import Any

# Broker topology
ORBITSPHERE_EXCHANGE = "ORBITSPHERE_EXCHANGE"
ORBITSPHERE_DEAD_LETTER_EXCHANGE = "ORBITSPHERE_DEAD_LETTER_EXCHANGE"

RENTAL_QUEUE = "RENTAL_QUEUE"
STOP_QUEUE = "STOP_QUEUE"
TERMINATE_QUEUE = "TERMINATE_QUEUE"
DEAD_LETTER_QUEUE = "DEAD_LETTER_QUEUE"

ROUTE_TO_RENTAL_QUEUE = "ROUTE_TO_RENTAL_QUEUE"
ROUTE_TO_STOP_QUEUE = "ROUTE_TO_STOP_QUEUE"
ROUTE_TO_TERMINATE_QUEUE = "ROUTE_TO_TERMINATE_QUEUE"

# Queue name => routing key, bound one-to-one on ORBITSPHERE_EXCHANGE
QUEUE_BINDINGS: dict[str, str] = {
    RENTAL_QUEUE: ROUTE_TO_RENTAL_QUEUE,
    STOP_QUEUE: ROUTE_TO_STOP_QUEUE,
    TERMINATE_QUEUE: ROUTE_TO_TERMINATE_QUEUE,
}

# Delayed message exchange (rabbitmq_delayed_message_exchange plugin)
DELAYED_EXCHANGE_TYPE = "x-delayed-message"
DELAYED_EXCHANGE_ROUTING_TYPE = "direct"
DELAY_HEADER = "x-delay"

# Wire payload version, carried as a header
SCHEMA_VERSION_HEADER = "x-schema-version"
SCHEMA_VERSION = 1

ORBITSPHERE_ABI: list[dict[str, Any]] = [
    {
        "anonymous": False,
        "inputs": [
            {
                "indexed": True,
                "internalType": "bytes",
                "name": "region",
                "type": "bytes",
            },
            {
                "indexed": True,
                "internalType": "uint256",
                "name": "nftId",
                "type": "uint256",
            },
            {
                "indexed": True,
                "internalType": "bytes",
                "name": "instanceType",
                "type": "bytes",
            },
            {
                "indexed": False,
                "internalType": "bytes",
                "name": "sshPublicKey",
                "type": "bytes",
            },
            {
                "indexed": False,
                "internalType": "uint256",
                "name": "rentedOn",
                "type": "uint256",
            },
            {
                "indexed": False,
                "internalType": "uint256",
                "name": "willBeEndOn",
                "type": "uint256",
            },
            {
                "indexed": False,
                "internalType": "address",
                "name": "tenant",
                "type": "address",
            },
            {
                "indexed": False,
                "internalType": "uint256",
                "name": "totalCost",
                "type": "uint256",
            },
            {
                "indexed": False,
                "internalType": "uint256",
                "name": "pricePerHour",
                "type": "uint256",
            },
        ],
        "name": "InstanceRented",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {
                "indexed": True,
                "internalType": "uint256",
                "name": "nftId",
                "type": "uint256",
            },
            {
                "indexed": True,
                "internalType": "address",
                "name": "tenant",
                "type": "address",
            },
        ],
        "name": "InstanceStopped",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {
                "indexed": True,
                "internalType": "address",
                "name": "tenant",
                "type": "address",
            },
            {
                "indexed": True,
                "internalType": "uint256",
                "name": "nftId",
                "type": "uint256",
            },
            {
                "indexed": False,
                "internalType": "uint256",
                "name": "actualCost",
                "type": "uint256",
            },
            {
                "indexed": False,
                "internalType": "uint256",
                "name": "timeConsumed",
                "type": "uint256",
            },
            {
                "indexed": False,
                "internalType": "uint256",
                "name": "refundAmount",
                "type": "uint256",
            },
        ],
        "name": "InstanceTerminated",
        "type": "event",
    },
]
