"""OrbitSphere contract client

Off-chain interface to the OrbitSphere rental contract: builds log filters for the
watched events and decodes raw logs into `ChainEvent` records.

Examples:
    >>> rpc = RPC("wss://my_rpc_url.com")
    >>> orbitsphere = OrbitSphere(rpc, "0x...")

    >>> orbitsphere.get_event_hashes()
    {EventVariant.InstanceRented: HexBytes("0x..."), ...}

    >>> orbitsphere.get_log_filter(100, 110)
    {"address": "0x...", "topics": [[...]], "fromBlock": 100, "toBlock": 110}

    >>> orbitsphere.decode_log(raw_log)
    InstanceStopped(block_number=105, ..., nft_id=42, tenant="0xAA...")

    >>> await orbitsphere.get_events(101, 110)
    [InstanceStopped(...)]
"""

from __future__ import annotations

from functools import cache
from typing import Any, Optional

from eth_abi.exceptions import DecodingError
from eth_typing import BlockNumber
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3Exception
from web3.types import EventData, FilterParams, LogReceipt

from chain.rpc import RPC
from shared.event import (
    ChainEvent,
    EventVariant,
    InstanceRented,
    InstanceStopped,
    InstanceTerminated,
)
from utils.constants import ORBITSPHERE_ABI
from utils.logging import log


def _to_text(value: Any) -> str:
    """Decodes a `bytes` event argument as UTF-8, falling back to hex"""
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return Web3.to_hex(value)
    return str(value)


def _to_topic_hex(value: Any) -> str:
    """Indexed dynamic `bytes` arguments only survive as their keccak hash topic"""
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return str(value)


class OrbitSphere:
    """Off-chain interface to the OrbitSphere contract.

    Public methods:
        get_event_hashes: Returns event => topic hash dictionary
        get_log_filter: Returns filter params for the watched events
        decode_log: Decodes a raw log into a ChainEvent, or None if not watched
        get_events: Returns decoded events in block range, in chain order

    Private attributes:
        _rpc (RPC): RPC instance
        _checksum_address (str): Checksum-validated contract address
        _contract (AsyncContract): OrbitSphere AsyncContract instance
    """

    def __init__(self: OrbitSphere, rpc: RPC, contract_address: str) -> None:
        """Initializes new OrbitSphere client

        Args:
            rpc (RPC): RPC instance
            contract_address (str): OrbitSphere contract address

        Raises:
            ValueError: Contract address is incorrectly formatted
        """

        # Check if contract address is a valid address
        if not rpc.is_valid_address(contract_address):
            raise ValueError("OrbitSphere address is incorrectly formatted")

        self._rpc = rpc
        self._checksum_address = rpc.get_checksum_address(contract_address)
        self._contract = rpc.get_contract(
            address=self._checksum_address,
            abi=ORBITSPHERE_ABI,
        )
        log.debug("Initialized OrbitSphere", address=self._checksum_address)

    @cache
    def get_event_hashes(self: OrbitSphere) -> dict[EventVariant, HexBytes]:
        """Gets event => topic hash dictionary

        Returns:
            dict[EventVariant, HexBytes]: event => topic hash
        """
        return dict(
            (event, self._rpc.get_event_hash(event.value)) for event in EventVariant
        )

    def get_log_filter(
        self: OrbitSphere,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> FilterParams:
        """Builds filter params matching any watched event on the contract

        Args:
            from_block (Optional[int]): first block (inclusive), omitted for live
            to_block (Optional[int]): last block (inclusive), omitted for live

        Returns:
            FilterParams: filter params
        """
        params: FilterParams = {
            "address": self._checksum_address,
            "topics": [[Web3.to_hex(h) for h in self.get_event_hashes().values()]],
        }
        if from_block is not None:
            params["fromBlock"] = BlockNumber(from_block)
        if to_block is not None:
            params["toBlock"] = BlockNumber(to_block)
        return params

    def _get_variant(self: OrbitSphere, raw: LogReceipt) -> Optional[EventVariant]:
        topics = raw.get("topics") or []
        if not topics:
            return None
        topic = HexBytes(topics[0])
        for variant, event_hash in self.get_event_hashes().items():
            if event_hash == topic:
                return variant
        return None

    def decode_log(self: OrbitSphere, raw: LogReceipt) -> Optional[ChainEvent]:
        """Decodes a raw log into its ChainEvent record

        Args:
            raw (LogReceipt): raw log from eth_getLogs or a live subscription

        Returns:
            Optional[ChainEvent]: decoded event, or None if the log is not a watched
                event or was removed by a reorg
        """
        if raw.get("removed"):
            log.warning(
                "Ignoring removed log",
                block=raw.get("blockNumber"),
                log_index=raw.get("logIndex"),
            )
            return None

        variant = self._get_variant(raw)
        if variant is None:
            log.debug("Ignoring unknown log", block=raw.get("blockNumber"))
            return None

        try:
            event: EventData = getattr(
                self._contract.events, variant.name
            )().process_log(raw)
        except (Web3Exception, DecodingError) as e:
            # Matches a watched topic but cannot be decoded, never dispatchable
            log.error(
                "Could not decode log",
                variant=variant.name,
                block=raw.get("blockNumber"),
                err=str(e),
            )
            return None
        args = event["args"]
        provenance = dict(
            block_number=int(event["blockNumber"]),
            block_hash=Web3.to_hex(event["blockHash"]),
            log_index=int(event["logIndex"]),
            transaction_hash=Web3.to_hex(event["transactionHash"]),
        )

        match variant:
            case EventVariant.InstanceRented:
                return InstanceRented(
                    region=_to_topic_hex(args["region"]),
                    nft_id=int(args["nftId"]),
                    instance_type=_to_topic_hex(args["instanceType"]),
                    ssh_public_key=_to_text(args["sshPublicKey"]),
                    rented_on=int(args["rentedOn"]),
                    will_be_end_on=int(args["willBeEndOn"]),
                    tenant=str(args["tenant"]),
                    total_cost=int(args["totalCost"]),
                    price_per_hour=int(args["pricePerHour"]),
                    **provenance,
                )
            case EventVariant.InstanceStopped:
                return InstanceStopped(
                    nft_id=int(args["nftId"]),
                    tenant=str(args["tenant"]),
                    **provenance,
                )
            case EventVariant.InstanceTerminated:
                return InstanceTerminated(
                    tenant=str(args["tenant"]),
                    nft_id=int(args["nftId"]),
                    actual_cost=int(args["actualCost"]),
                    time_consumed=int(args["timeConsumed"]),
                    refund_amount=int(args["refundAmount"]),
                    **provenance,
                )

    async def get_events(
        self: OrbitSphere, from_block: int, to_block: int
    ) -> list[ChainEvent]:
        """Collects watched events in [from_block, to_block], sorted by chain order

        Args:
            from_block (int): first block (inclusive)
            to_block (int): last block (inclusive)

        Returns:
            list[ChainEvent]: decoded events, ascending (block, log index)

        Raises:
            ChainRpcError: Node request failed
        """
        raw_logs = await self._rpc.get_event_logs(
            self.get_log_filter(from_block, to_block)
        )
        events = [
            event for event in (self.decode_log(raw) for raw in raw_logs) if event
        ]
        return sorted(events, key=lambda event: event.position)
