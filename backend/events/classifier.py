"""
Event Classifier — Raw telemetry event → structured device event.

Telemetry events arrive as loosely-typed dicts whose meaning lives in a
free-text ``entry`` ("Main Door Open", "Cash Box Removed - $125.50", ...).
This module turns one raw record into a ParsedEvent:

    {
        "row_id": "42",
        "serial": "SN-1001",
        "imei": "356938035643809",
        "accountid": "acme",
        "eventtype": "Door",
        "eventid": "Main Door Open",
        "entry": "Main Door Open",
        "eventtimestamp": "2025-01-15 14:23:45",
        "reporttime": "2025-01-15T14:24:02Z"
    }

Classification is pure and total: malformed fields degrade to None or
False, never to an exception, so one bad record cannot fail a batch here.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

MONEY_ADDED_EVENT_ID = "Money Added"
CURRENCY_MARKER = "$"

DOOR_PHRASES = (
    "door open",
    "door closed",
    "main door",
    "upper door",
    "belly door",
    "cash door",
)
CASH_BOX_PHRASES = ("cash box removed", "cash box inserted")
CRITICAL_PHRASES = ("door open", "cash box removed")

_AMOUNT_RE = re.compile(r"\$\s*(\S+)")
_STATUS_SEPARATOR_RE = re.compile(r"[^a-z0-9]+")
_OFFSET_RE = re.compile(r"([zZ]|[+-]\d{2}:?\d{2})$")
_COMPACT_OFFSET_RE = re.compile(r"([+-]\d{2})(\d{2})$")
_FRACTION_RE = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class ParsedEvent:
    """A classified telemetry event, immutable once computed."""

    row_id: int | None
    device_id: str | None
    imei: str | None
    serial_number: str | None
    event_type: str | None
    event_id: str | None
    event_entry: str | None
    parsed_amount: float | None
    parsed_status: str | None
    is_door_event: bool
    is_cash_box_event: bool
    is_financial_event: bool
    event_timestamp: datetime | None
    report_timestamp: datetime | None
    severity: str

    @property
    def is_security_event(self) -> bool:
        return self.is_door_event or self.is_cash_box_event

    @property
    def category(self) -> str:
        """Catalog category for the (event_type, event_id) pair."""
        if self.is_financial_event:
            return "financial"
        if self.is_security_event:
            return "security"
        return "misc"

    @property
    def default_severity(self) -> str:
        """Catalog severity; security events default to critical."""
        return "critical" if self.is_security_event else "info"

    @property
    def raises_alert(self) -> bool:
        return self.severity == "critical" and self.is_security_event


# ──────────────────────────────────────────────────────────────────────────
# Field parsers
# ──────────────────────────────────────────────────────────────────────────


def _text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def extract_amount(entry: Any) -> float | None:
    """Parse the currency figure out of an entry, or None if there is none."""
    if not isinstance(entry, str) or CURRENCY_MARKER not in entry:
        return None
    match = _AMOUNT_RE.search(entry)
    if match is None:
        return None
    cleaned = match.group(1).replace(CURRENCY_MARKER, "").replace(",", "")
    try:
        amount = float(cleaned)
    except ValueError:
        return None
    if amount != amount or amount in (float("inf"), float("-inf")):
        return None
    return amount


def normalize_status(entry: Any) -> str | None:
    """'Main Door Open!' → 'main_door_open'."""
    if entry is None:
        return None
    slug = _STATUS_SEPARATOR_RE.sub("_", str(entry).strip().lower()).strip("_")
    return slug or None


def _entry_contains(entry: Any, phrases: tuple[str, ...]) -> bool:
    if entry is None:
        return False
    lowered = str(entry).lower()
    return any(phrase in lowered for phrase in phrases)


def is_door_event(entry: Any) -> bool:
    return _entry_contains(entry, DOOR_PHRASES)


def is_cash_box_event(entry: Any) -> bool:
    return _entry_contains(entry, CASH_BOX_PHRASES)


def is_financial_event(event_id: Any, entry: Any) -> bool:
    return event_id == MONEY_ADDED_EVENT_ID or (isinstance(entry, str) and CURRENCY_MARKER in entry)


def determine_severity(event_id: Any, entry: Any) -> str:
    if event_id == MONEY_ADDED_EVENT_ID:
        return "normal"
    if _entry_contains(entry, CRITICAL_PHRASES):
        return "critical"
    return "info"


def parse_row_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp as given. Offsets are converted to UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip().replace(" ", "T", 1)
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        # fromisoformat before 3.11 needs +HH:MM offsets and 3 or 6 fraction digits
        text = _COMPACT_OFFSET_RE.sub(r"\1:\2", text)
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        return parsed.astimezone(timezone.utc)
    return parsed


def parse_device_timestamp(value: Any) -> datetime | None:
    """Parse a device-reported timestamp, treating offset-less values as UTC."""
    if isinstance(value, str) and value.strip() and not _OFFSET_RE.search(value.strip()):
        value = value.strip() + "Z"
    parsed = parse_timestamp(value)
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ──────────────────────────────────────────────────────────────────────────
# Classification
# ──────────────────────────────────────────────────────────────────────────


def classify_event(raw: Mapping[str, Any]) -> ParsedEvent:
    """Classify one raw telemetry event. Never raises for mapping input."""
    entry = _text(raw.get("entry"))
    event_id = _text(raw.get("eventid"))
    serial = _text(raw.get("serial"))

    return ParsedEvent(
        row_id=parse_row_id(raw.get("row_id")),
        device_id=serial,
        imei=_text(raw.get("imei")),
        serial_number=serial,
        event_type=_text(raw.get("eventtype")),
        event_id=event_id,
        event_entry=entry,
        parsed_amount=extract_amount(entry),
        parsed_status=normalize_status(entry),
        is_door_event=is_door_event(entry),
        is_cash_box_event=is_cash_box_event(entry),
        is_financial_event=is_financial_event(event_id, entry),
        event_timestamp=parse_device_timestamp(raw.get("eventtimestamp")),
        report_timestamp=parse_timestamp(raw.get("reporttime")),
        severity=determine_severity(event_id, entry),
    )
