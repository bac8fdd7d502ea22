"""
Circles RPC client.

Thin async JSON-RPC wrapper around the Circles indexer: transfer-data events,
paginated transfer history, avatar lookups, pathfinder routes, balances and
Hub operator approvals.
Raw payloads are handed to the matching parse functions before they leave this
module.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from web3 import Web3

from coinflip.core.amounts import to_base_units
from coinflip.core.exceptions import CirclesRpcError
from coinflip.core.hub import PathTransfer, hub_contract
from coinflip.core.logger import get_logger
from coinflip.core.matching import (
    TRANSFER_DATA_EVENT,
    HistoryRow,
    TransferEvent,
    normalize_address,
    parse_history_row,
    parse_transfer_event,
)

logger = get_logger("circles")

MAX_UINT256 = 2 ** 256 - 1
HISTORY_ORDER = ("blockNumber", "transactionIndex", "logIndex")


@dataclass
class TransferPath:
    max_flow: int
    transfers: List[PathTransfer] = field(default_factory=list)


@dataclass
class EventsPage:
    events: List[TransferEvent] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None


@dataclass
class HistoryPage:
    rows: List[HistoryRow] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[Tuple[int, int, int]] = None


def generate_payment_link(base_url: str, recipient_address: str, amount_crc: str, data: str) -> str:
    """Wallet deep link that pre-fills recipient, amount and the round marker."""
    return (
        f"{base_url.rstrip('/')}/{recipient_address}/crc"
        f"?data={quote(data, safe='')}&amount={amount_crc}"
    )


def _to_int(value: Any) -> int:
    text = str(value).strip()
    return int(text, 16) if text.startswith("0x") else int(text)


def _parse_path_transfer(raw: Any) -> Optional[PathTransfer]:
    if not isinstance(raw, dict):
        return None
    sender = normalize_address(raw.get("from"))
    receiver = normalize_address(raw.get("to"))
    token_owner = normalize_address(raw.get("tokenOwner"))
    if not (sender and receiver and token_owner) or raw.get("value") is None:
        return None
    return PathTransfer(sender, receiver, token_owner, _to_int(raw["value"]))


def _predicate(column: str, filter_type: str, value: Any) -> dict:
    return {"Type": "FilterPredicate", "FilterType": filter_type, "Column": column, "Value": value}


def _conjunction(kind: str, predicates: List[dict]) -> dict:
    return {"Type": "Conjunction", "ConjunctionType": kind, "Predicates": predicates}


def _cursor_filter(cursor: Tuple[int, int, int]) -> dict:
    """Rows strictly older than `cursor` in (block, tx index, log index) order."""
    block, tx_index, log_index = cursor
    return _conjunction(
        "Or",
        [
            _predicate("blockNumber", "LessThan", block),
            _conjunction(
                "And",
                [
                    _predicate("blockNumber", "Equals", block),
                    _predicate("transactionIndex", "LessThan", tx_index),
                ],
            ),
            _conjunction(
                "And",
                [
                    _predicate("blockNumber", "Equals", block),
                    _predicate("transactionIndex", "Equals", tx_index),
                    _predicate("logIndex", "LessThan", log_index),
                ],
            ),
        ],
    )


class CirclesRpc:
    def __init__(
        self,
        rpc_url: str,
        timeout: float = 15.0,
        transfer_data_event: str = TRANSFER_DATA_EVENT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.transfer_data_event = transfer_data_event
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    async def aclose(self):
        await self._client.aclose()

    async def call(self, method: str, params: list) -> Any:
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            response = await self._client.post(self.rpc_url, json=body)
        except httpx.HTTPError as e:
            raise CirclesRpcError(f"{method} request failed: {e}") from e

        if response.status_code >= 400:
            raise CirclesRpcError(f"{method} failed: {response.status_code} {response.text}")

        try:
            payload = response.json()
        except ValueError as e:
            raise CirclesRpcError(f"{method} returned invalid JSON") from e

        if payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise CirclesRpcError(message or f"{method} returned an error")

        return payload.get("result")

    # ==================== Event feed ====================

    async def events_page(
        self, recipient: Optional[str] = None, cursor: Optional[str] = None
    ) -> EventsPage:
        """
        One page of transfer-data events, optionally filtered by recipient.

        `circles_events` takes `[address, fromBlock, toBlock, eventTypes]`. The
        leading slot is the recipient filter; an unfiltered read passes the
        page cursor there instead, and a recipient read is never paged.
        """
        params = [normalize_address(recipient) or cursor, None, None, [self.transfer_data_event]]
        result = await self.call("circles_events", params)

        if isinstance(result, list):
            raw_events, has_more, next_cursor = result, False, None
        elif isinstance(result, dict):
            raw_events = result.get("events") or []
            has_more = bool(result.get("hasMore"))
            next_cursor = result.get("nextCursor")
        else:
            raw_events, has_more, next_cursor = [], False, None

        events = [event for event in map(parse_transfer_event, raw_events) if event]
        return EventsPage(events=events, has_more=has_more, next_cursor=next_cursor)

    async def fetch_transfer_data_events(
        self, limit: int = 100, recipient: Optional[str] = None
    ) -> List[TransferEvent]:
        if normalize_address(recipient):
            page = await self.events_page(recipient=recipient)
            return page.events[:limit]

        events: List[TransferEvent] = []
        cursor = None
        while len(events) < limit:
            page = await self.events_page(cursor=cursor)
            events.extend(page.events)
            cursor = page.next_cursor
            if not page.has_more or not cursor:
                break
        return events[:limit]

    # ==================== Transaction history ====================

    async def transaction_history_page(
        self,
        avatar: str,
        limit: int = 50,
        cursor: Optional[Tuple[int, int, int]] = None,
    ) -> HistoryPage:
        """Transfers touching `avatar`, newest first."""
        address = normalize_address(avatar)
        filters = [
            _conjunction(
                "Or",
                [_predicate("from", "Equals", address), _predicate("to", "Equals", address)],
            )
        ]
        if cursor is not None:
            filters.append(_cursor_filter(cursor))

        query = {
            "Namespace": "V_Crc",
            "Table": "TransferSummary",
            "Columns": [],
            "Filter": filters,
            "Order": [{"Column": column, "SortOrder": "DESC"} for column in HISTORY_ORDER],
            "Limit": limit,
        }
        result = await self.call("circles_query", [query]) or {}

        columns = result.get("columns") or []
        raw_rows = [dict(zip(columns, values)) for values in result.get("rows") or []]
        rows = [row for row in map(parse_history_row, raw_rows) if row]

        has_more = len(raw_rows) >= limit
        next_cursor = rows[-1].cursor() if rows and has_more else None
        return HistoryPage(rows=rows, has_more=has_more and next_cursor is not None, next_cursor=next_cursor)

    # ==================== Avatars, pathfinder, balances ====================

    async def get_avatar_info(self, address: str) -> Optional[Dict[str, Any]]:
        result = await self.call("circles_getAvatarInfo", [normalize_address(address)])
        return result if isinstance(result, dict) and result else None

    async def find_path(self, source: str, sink: str, target_flow: int = MAX_UINT256) -> TransferPath:
        """
        Route up to `target_flow` atto-CRC from `source` to `sink` through the
        trust graph. Only unwrapped (ERC-1155) balances are routed, so every
        hop can be settled directly by the Hub.
        """
        result = await self.call(
            "circlesV2_findPath",
            [
                {
                    "Source": normalize_address(source),
                    "Sink": normalize_address(sink),
                    "TargetFlow": str(target_flow),
                    "WithWrap": False,
                }
            ],
        )
        result = result or {}
        if result.get("maxFlow") is None:
            raise CirclesRpcError("circlesV2_findPath returned no maxFlow")

        transfers = [t for t in map(_parse_path_transfer, result.get("transfers") or []) if t]
        return TransferPath(max_flow=_to_int(result["maxFlow"]), transfers=transfers)

    async def find_max_flow(self, source: str, sink: str) -> int:
        """Largest amount (atto-CRC) the pathfinder can route from source to sink."""
        return (await self.find_path(source, sink)).max_flow

    async def is_approved_for_all(self, hub_address: str, account: str, operator: str) -> bool:
        """`Hub.isApprovedForAll` read through the RPC node's eth_call."""
        calldata = hub_contract(hub_address).encode_abi(
            "isApprovedForAll",
            args=[Web3.to_checksum_address(account), Web3.to_checksum_address(operator)],
        )
        result = await self.call("eth_call", [{"to": hub_address, "data": calldata}, "latest"])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise CirclesRpcError("eth_call returned no data for isApprovedForAll")
        return int(result, 16) != 0 if len(result) > 2 else False

    async def get_total_balance(self, address: str) -> int:
        """Total CRC balance of `address` in atto-CRC."""
        result = await self.call("circlesV2_getTotalBalance", [normalize_address(address), False])
        text = str(result if result is not None else "").strip()
        if not text:
            raise CirclesRpcError("circlesV2_getTotalBalance returned no balance")
        if "." in text:
            return to_base_units(text, "balance")
        return _to_int(text)
