"""
Payment matching.

Correlates on-chain Circles transfers with a round's marker. The marker may
arrive as raw text, as hex without prefix, as 0x-hex, or as a Postgres bytea
literal (\\x...), so comparison happens against a set of candidate encodings.

External payloads are converted into `TransferEvent` / `HistoryRow` by the
parse_* functions first; anything malformed is skipped there.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Set, Tuple

TRANSFER_DATA_EVENT = "CrcV2_TransferData"

_HEX_BODY = re.compile(r"^[0-9a-f]+$")


@dataclass(frozen=True)
class TransferEvent:
    transaction_hash: str
    from_address: str
    to_address: str
    data: str = ""
    block_number: str = ""
    timestamp: str = ""
    transaction_index: str = ""
    log_index: str = ""


@dataclass(frozen=True)
class HistoryRow:
    transaction_hash: str
    from_address: str
    to_address: str
    amount_atto: int
    timestamp: int
    block_number: int = 0
    transaction_index: int = 0
    log_index: int = 0
    events: Tuple[dict, ...] = field(default_factory=tuple)

    def cursor(self) -> Tuple[int, int, int]:
        return (self.block_number, self.transaction_index, self.log_index)

    def to_transfer_event(self) -> TransferEvent:
        return TransferEvent(
            transaction_hash=self.transaction_hash,
            from_address=self.from_address,
            to_address=self.to_address,
            data="",
            block_number=str(self.block_number),
            timestamp=str(self.timestamp),
            transaction_index=str(self.transaction_index),
            log_index=str(self.log_index),
        )


class MarkerMatch(str, Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    MISSING = "missing"


# ==================== Normalization ====================

def _normalize_string(value: Any) -> str:
    return str(value if value is not None else "").strip().lower()


def normalize_address(value: Any) -> Optional[str]:
    trimmed = _normalize_string(value)
    if not trimmed:
        return None
    return trimmed if trimmed.startswith("0x") else f"0x{trimmed}"


def addresses_match(a: Any, b: Any) -> bool:
    left = normalize_address(a)
    right = normalize_address(b)
    return bool(left and right and left == right)


def normalize_hex(value: str) -> Optional[str]:
    """Return 0x-prefixed lowercase hex, or None if `value` is not hex-shaped."""
    trimmed = _normalize_string(value)
    if not trimmed:
        return None
    if trimmed.startswith("\\x"):
        return f"0x{trimmed[2:]}"
    if trimmed.startswith("0x"):
        return trimmed
    if _HEX_BODY.match(trimmed):
        return f"0x{trimmed}"
    return None


def utf8_to_hex(value: str) -> str:
    return value.encode("utf-8").hex()


def hex_to_utf8(hex_value: str) -> Optional[str]:
    body = hex_value[2:] if hex_value.startswith("0x") else hex_value
    if not body or len(body) % 2 != 0 or not _HEX_BODY.match(body.lower()):
        return None
    try:
        return bytes.fromhex(body).decode("utf-8")
    except UnicodeDecodeError:
        return None


def marker_candidates(expected: str) -> Set[str]:
    target = _normalize_string(expected)
    if not target:
        return set()
    target_hex = utf8_to_hex(target)
    candidates = {target, target_hex, f"0x{target_hex}"}
    if target.startswith("0x"):
        candidates.add(target[2:])
    return candidates


def data_matches_marker(data_field: Any, expected: str) -> bool:
    """True when any encoding of `data_field` equals any encoding of `expected`."""
    candidates = marker_candidates(expected)
    if not candidates:
        return False

    raw = _normalize_string(data_field)
    if not raw:
        return False
    if raw in candidates:
        return True

    as_hex = normalize_hex(raw)
    if as_hex:
        if as_hex in candidates or as_hex[2:] in candidates:
            return True
        decoded = hex_to_utf8(as_hex)
        if decoded and _normalize_string(decoded) in candidates:
            return True

    return False


# ==================== Parse boundary ====================

def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value if value is not None else "").strip().lower()
    if not text:
        return None
    try:
        return int(text, 16) if text.startswith("0x") else int(text)
    except ValueError:
        return None


def parse_transfer_event(raw: Any) -> Optional[TransferEvent]:
    """Accepts a circles_events entry ({event, values}) or a flat values dict."""
    if not isinstance(raw, dict):
        return None
    values = raw.get("values") if isinstance(raw.get("values"), dict) else raw

    tx_hash = str(values.get("transactionHash") or "").strip()
    to_address = str(values.get("to") or "").strip()
    if not tx_hash or not to_address:
        return None

    return TransferEvent(
        transaction_hash=tx_hash,
        from_address=str(values.get("from") or "").strip(),
        to_address=to_address,
        data=str(values.get("data") or ""),
        block_number=str(values.get("blockNumber") or ""),
        timestamp=str(values.get("timestamp") or ""),
        transaction_index=str(values.get("transactionIndex") or ""),
        log_index=str(values.get("logIndex") or ""),
    )


def parse_embedded_events(raw_events: Any) -> List[dict]:
    """History rows embed their sub-events either as a list or a JSON string."""
    if isinstance(raw_events, str):
        if not raw_events.strip():
            return []
        try:
            raw_events = json.loads(raw_events)
        except ValueError:
            return []
    if not isinstance(raw_events, list):
        return []
    return [entry for entry in raw_events if isinstance(entry, dict)]


def parse_history_row(raw: Any) -> Optional[HistoryRow]:
    if not isinstance(raw, dict):
        return None

    tx_hash = str(raw.get("transactionHash") or "").strip()
    from_address = str(raw.get("from") or "").strip()
    to_address = str(raw.get("to") or "").strip()
    amount = _to_int(raw.get("attoCircles"))
    if amount is None:
        amount = _to_int(raw.get("value"))
    timestamp = _to_int(raw.get("timestamp"))

    if not tx_hash or not from_address or not to_address or amount is None or timestamp is None:
        return None

    return HistoryRow(
        transaction_hash=tx_hash,
        from_address=from_address,
        to_address=to_address,
        amount_atto=amount,
        timestamp=timestamp,
        block_number=_to_int(raw.get("blockNumber")) or 0,
        transaction_index=_to_int(raw.get("transactionIndex")) or 0,
        log_index=_to_int(raw.get("logIndex")) or 0,
        events=tuple(parse_embedded_events(raw.get("events"))),
    )


# ==================== Matching ====================

def transfer_data_match_state(events: Iterable[dict], expected: str) -> MarkerMatch:
    transfer_data = [
        event
        for event in events
        if str(event.get("$type") or event.get("event") or "").strip() == TRANSFER_DATA_EVENT
    ]
    if not transfer_data:
        return MarkerMatch.MISSING

    # Any single matching sub-event is enough
    for event in transfer_data:
        data_field = event.get("Data", event.get("data", ""))
        if data_matches_marker(data_field, expected):
            return MarkerMatch.MATCH
    return MarkerMatch.MISMATCH


def event_matches(event: TransferEvent, expected: str, recipient: Optional[str] = None) -> bool:
    if not event.data:
        return False
    if normalize_address(recipient) and not addresses_match(event.to_address, recipient):
        return False
    return data_matches_marker(event.data, expected)


def history_row_matches(
    row: HistoryRow,
    player: str,
    recipient: str,
    min_amount_atto: int,
    created_after: int,
    expected: Optional[str] = None,
) -> bool:
    if not row.transaction_hash:
        return False
    if not addresses_match(row.from_address, player) or not addresses_match(row.to_address, recipient):
        return False
    if row.timestamp < created_after or row.amount_atto < min_amount_atto:
        return False
    if expected:
        # Rows without embedded transfer-data events are accepted on from/to/amount/time alone
        return transfer_data_match_state(row.events, expected) != MarkerMatch.MISMATCH
    return True
