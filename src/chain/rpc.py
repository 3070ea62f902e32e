"""Ethereum JSON-RPC client

General interface over web3.py to expose commonly-used functions over a persistent
WebSocket connection.

Examples:
    >>> rpc = RPC("wss://my_rpc_url.com")
    >>> await rpc.initialize()

    >>> rpc.is_valid_address("0x123")
    False

    >>> rpc.get_checksum_address("0xd8da6bf26964af9d7eed9e03e53415d37aa96045")
    0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045

    >>> rpc.get_event_hash("InstanceStopped(uint256,address)")
    0x...

    >>> rpc.get_contract("0x...", [{ABI}])
    AsyncContract()

    >>> await rpc.get_head_block_number()
    1000

    >>> await rpc.get_block_by_number(1000)
    {"number": 1000, "hash": ...}

    >>> await rpc.get_event_logs({"address": 0x..., "fromBlock": 1, "toBlock": 10})
    [{...}]

    >>> subscription_id = await rpc.subscribe_logs({"address": 0x...})
    >>> async for log in rpc.subscription_logs(subscription_id):
    ...     print(log)
"""

from __future__ import annotations

import asyncio
from functools import cache
from typing import Any, AsyncIterator, Sequence, cast

from async_lru import alru_cache
from eth_typing import ABIElement, BlockNumber, ChecksumAddress
from hexbytes import HexBytes
import validators  # type: ignore
from web3 import AsyncWeb3, Web3, WebSocketProvider
from web3.contract.async_contract import AsyncContract
from web3.exceptions import Web3Exception
from web3.types import BlockData, FilterParams, LogReceipt
from websockets.exceptions import WebSocketException

from chain.errors import ChainRpcError
from utils.logging import log

# Failures that mean the node or the socket is unhealthy
TRANSIENT_ERRORS = (
    Web3Exception,
    WebSocketException,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


class RPC:
    """General interface over web3.py to expose commonly used functions.

    Public methods:
        initialize: Opens the WebSocket connection
        reconnect: Drops and reopens the WebSocket connection
        close: Closes the WebSocket connection
        is_valid_address: Checks if provided string is valid ETH address
        get_checksum_address: Returns checksum-validated ETH address
        get_event_hash: Converts event signature (str) to hashed event topic
        get_contract: Creates new AsyncContract object given contract params
        get_head_block_number: Returns latest chain block number
        get_block_by_number: Returns block data by block number
        get_event_logs: Returns event logs matching filter params
        subscribe_logs: Opens a live log subscription
        subscription_logs: Iterates logs delivered on a live subscription

    Private attributes:
        _web3 (AsyncWeb3): Async web3.py client over a persistent WebSocket
    """

    def __init__(self: RPC, rpc_url: str) -> None:
        """Initializes new Ethereum-compatible JSON-RPC client. Does not connect.

        Args:
            rpc_url (str): WS(s) RPC url

        Raises:
            ValueError: RPC URL is incorrectly formatted
        """

        # Validate URL is correctly formatted
        if not validators.url(
            rpc_url,
            simple_host=True,
            validate_scheme=lambda scheme: scheme in ("ws", "wss"),
        ):
            raise ValueError("Incorrect RPC URL format")

        # Long timeout is useful for wide historical log queries
        provider = WebSocketProvider(rpc_url, request_timeout=60 * 10)

        self._web3: AsyncWeb3 = AsyncWeb3(provider)
        self._url = rpc_url
        log.info("Initialized RPC", url=rpc_url)

    async def initialize(self: RPC) -> None:
        """Opens the WebSocket connection

        Raises:
            ChainRpcError: Connection could not be established
        """
        try:
            await self._web3.provider.connect()  # type: ignore[attr-defined]
        except TRANSIENT_ERRORS as e:
            raise ChainRpcError("connect", e) from e
        log.info("Connected RPC", url=self._url)

    async def reconnect(self: RPC) -> None:
        """Drops and reopens the WebSocket connection

        Raises:
            ChainRpcError: Connection could not be re-established
        """
        await self.close()
        await self.initialize()

    async def close(self: RPC) -> None:
        """Closes the WebSocket connection"""
        try:
            await self._web3.provider.disconnect()  # type: ignore[attr-defined]
        except TRANSIENT_ERRORS as e:
            log.warning("Error closing RPC connection", err=str(e))

    @cache
    def is_valid_address(self: RPC, address: str) -> bool:
        """Checks if an address is a correctly formatted Ethereum address

        Args:
            address (str): address

        Returns:
            bool: true if correctly formatted, else false
        """
        return self._web3.is_address(address)

    @cache
    def get_checksum_address(self: RPC, address: str) -> ChecksumAddress:
        """Returns a checksummed Ethereum address

        Args:
            address (str): stringified address

        Returns:
            ChecksumAddress: checksum-validated Ethereum address
        """
        return self._web3.to_checksum_address(address)

    @cache
    def get_event_hash(self: RPC, event_signature: str) -> HexBytes:
        """Gets hashed event signature (topic 0)

        Args:
            event_signature (str): human-readable event signature

        Returns:
            HexBytes: keccak-hashed event signature
        """
        return HexBytes(Web3.keccak(text=event_signature))

    def get_contract(
        self: RPC, address: ChecksumAddress, abi: list[Any]
    ) -> AsyncContract:
        """Given contract details, creates new instance of AsyncContract object

        Args:
            address (ChecksumAddress): contract address
            abi (list[object]): contract ABI

        Returns:
            AsyncContract: async-callable contract object
        """
        return self._web3.eth.contract(
            address=address, abi=cast(Sequence[ABIElement], abi)
        )

    async def get_head_block_number(self: RPC) -> BlockNumber:
        """Collects latest block number from chain

        Returns:
            BlockNumber: head block number

        Raises:
            ChainRpcError: Node request failed
        """
        try:
            return await self._web3.eth.get_block_number()
        except TRANSIENT_ERRORS as e:
            raise ChainRpcError("eth_blockNumber", e) from e

    @alru_cache(maxsize=256)
    async def get_block_by_number(self: RPC, block_number: BlockNumber) -> BlockData:
        """Collects block data by block number

        Args:
            block_number (BlockNumber): block number

        Returns:
            BlockData: block data

        Raises:
            ChainRpcError: Node request failed
        """
        try:
            return await self._web3.eth.get_block(block_number)
        except TRANSIENT_ERRORS as e:
            raise ChainRpcError("eth_getBlockByNumber", e) from e

    async def get_event_logs(self: RPC, params: FilterParams) -> list[LogReceipt]:
        """Collects all event logs matching filter parameters

        Args:
            params (FilterParams): filter parameters

        Returns:
            list[LogReceipt]: collected logs

        Raises:
            ChainRpcError: Node request failed
        """
        try:
            logs = await self._web3.eth.get_logs(params)
        except TRANSIENT_ERRORS as e:
            raise ChainRpcError("eth_getLogs", e) from e

        log.debug(
            "Collected event logs",
            from_block=params.get("fromBlock"),
            to_block=params.get("toBlock"),
            count=len(logs),
        )
        return list(logs)

    async def subscribe_logs(self: RPC, params: FilterParams) -> str:
        """Opens a live `logs` subscription

        Args:
            params (FilterParams): address / topics filter

        Returns:
            str: subscription id

        Raises:
            ChainRpcError: Subscription could not be created
        """
        try:
            subscription_id = await self._web3.eth.subscribe(
                "logs", params  # type: ignore[arg-type]
            )
        except TRANSIENT_ERRORS as e:
            raise ChainRpcError("eth_subscribe", e) from e

        log.info("Subscribed to logs", subscription_id=subscription_id)
        return str(subscription_id)

    async def subscription_logs(
        self: RPC, subscription_id: str
    ) -> AsyncIterator[LogReceipt]:
        """Iterates logs delivered on a live subscription. Ends (or raises) when
        the subscription is lost.

        Args:
            subscription_id (str): subscription id from `subscribe_logs`

        Yields:
            LogReceipt: delivered log

        Raises:
            ChainRpcError: WebSocket failed while waiting for logs
        """
        try:
            async for response in self._web3.socket.process_subscriptions():
                if str(response["subscription"]) != subscription_id:
                    continue
                yield cast(LogReceipt, response["result"])
        except TRANSIENT_ERRORS as e:
            raise ChainRpcError("eth_subscription", e) from e
