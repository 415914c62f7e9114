"""
Device Telemetry API Client

Read-only access to the fleet telemetry provider:
  - events  → raw event rows for an account and time window
  - devices → current device metadata snapshot

Authenticated with a static key in the ``x-api-key`` header. The client
does not retry; a failed request fails the sync cycle that made it.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from events.classifier import parse_device_timestamp, parse_timestamp

logger = structlog.get_logger()

API_KEY_HEADER = "x-api-key"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_WINDOW_HOURS = 24


def _as_utc(value: datetime | str) -> datetime:
    parsed = parse_timestamp(value) if isinstance(value, str) else value
    if parsed is None:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_api_timestamp(value: datetime) -> str:
    """Format as 2025-01-15T14:23:45.000Z, which the events endpoint expects."""
    return _as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def resolve_window(
    start_time: datetime | str | None,
    end_time: datetime | str | None,
    window_hours: int = DEFAULT_WINDOW_HOURS,
) -> tuple[datetime, datetime]:
    """Fill in a missing sync window: trailing `window_hours` ending at `end_time` (or now)."""
    end = _as_utc(end_time) if end_time is not None else datetime.now(timezone.utc)
    start = _as_utc(start_time) if start_time is not None else end - timedelta(hours=window_hours)
    return start, end


class TelemetryClient:
    """Client for the device telemetry API."""

    def __init__(
        self,
        *,
        base_url: str = "",
        events_url: str = "",
        devices_url: str = "",
        api_key: str = "",
        events_api_key: str = "",
        devices_api_key: str = "",
        default_account_id: str = "",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        window_hours: int = DEFAULT_WINDOW_HOURS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        base = base_url.rstrip("/")
        self.events_url = events_url or (f"{base}/events" if base else "")
        self.devices_url = devices_url or (f"{base}/devices" if base else "")
        self.events_headers = {API_KEY_HEADER: events_api_key or api_key}
        self.devices_headers = {API_KEY_HEADER: devices_api_key or api_key}
        self.default_account_id = default_account_id
        self.timeout = timeout
        self.window_hours = window_hours
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, transport: httpx.AsyncBaseTransport | None = None) -> "TelemetryClient":
        return cls(
            base_url=settings.telemetry_api_url,
            events_url=settings.telemetry_events_url,
            devices_url=settings.telemetry_devices_url,
            api_key=settings.telemetry_api_key,
            events_api_key=settings.telemetry_events_api_key,
            devices_api_key=settings.telemetry_devices_api_key,
            default_account_id=settings.telemetry_account_id,
            timeout=settings.telemetry_timeout_seconds,
            window_hours=settings.telemetry_event_window_hours,
            transport=transport,
        )

    async def _get_list(self, url: str, headers: dict[str, str], params: dict[str, str], endpoint: str) -> list[dict]:
        if not url:
            raise ValueError(f"Telemetry {endpoint} URL is not configured")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(url, headers=headers, params=params)
            response.raise_for_status()
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, list):
            logger.warning(
                "telemetry.unexpected_payload",
                endpoint=endpoint,
                payload_type=type(payload).__name__,
            )
            return []
        return payload

    async def get_events(
        self,
        account_id: str | None = None,
        start_time: datetime | str | None = None,
        end_time: datetime | str | None = None,
    ) -> list[dict]:
        """Fetch raw events for an account; defaults to the trailing 24 hours."""
        start, end = resolve_window(start_time, end_time, self.window_hours)
        params = {
            "accountId": account_id or self.default_account_id or "",
            "startDate": format_api_timestamp(start),
            "endDate": format_api_timestamp(end),
        }
        events = await self._get_list(self.events_url, self.events_headers, params, "events")
        logger.info("telemetry.events.fetched", account_id=params["accountId"], count=len(events))
        return events

    async def get_devices(self, account_id: str | None = None, row_limit: int | None = None) -> list[dict]:
        """Fetch the current device metadata snapshot."""
        params = {}
        account = account_id or self.default_account_id
        if account:
            params["accountId"] = account
        if row_limit:
            params["rowLimit"] = str(row_limit)
        devices = await self._get_list(self.devices_url, self.devices_headers, params, "devices")
        logger.info("telemetry.devices.fetched", account_id=account, count=len(devices))
        return devices


# ── Record mapping ─────────────────────────────────────────────────────────


def _blank_to_none(value: Any) -> Any:
    if value is None or value == "":
        return None
    return value


def _to_float(value: Any) -> float | None:
    value = _blank_to_none(value)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> int | None:
    number = _to_float(value)
    return int(number) if number is not None and math.isfinite(number) else None


def _to_str(value: Any) -> str | None:
    value = _blank_to_none(value)
    return None if value is None else str(value)


def map_device_record(record: dict) -> dict | None:
    """Map a telemetry device record to Device column values. None without a serial."""
    serial = _to_str(record.get("serial"))
    if serial is None:
        return None
    account = _to_str(record.get("accountid"))
    return {
        "device_id": serial,
        "serial_number": serial,
        "imei": _to_str(record.get("imei")),
        "company_id": account,
        "account_id": account,
        "nickname": _to_str(record.get("nickname")),
        "last_known_lat": _to_float(record.get("eventlat")),
        "last_known_lng": _to_float(record.get("eventlng")),
        "last_event_time": parse_device_timestamp(record.get("lastgpseventtimestamp")),
        "vehicle_stock": _to_str(record.get("vehiclestock")),
        "event_satellites": _to_float(record.get("eventsatellites")),
        "event_rssi": _to_int(record.get("eventrssi")),
        "event_voltage": _to_float(record.get("eventvoltage")),
        "activation_date": _to_str(record.get("activationdate")),
        "delivery_date": _to_str(record.get("deliverydate")),
        "group_name": _to_str(record.get("groupname")),
        "full_address": _to_str(record.get("fulladdress")),
        "country": _to_str(record.get("country")),
        "admin1": _to_str(record.get("admin1")),
        "admin2": _to_str(record.get("admin2")),
        "admin3": _to_str(record.get("admin3")),
        "city": _to_str(record.get("city")),
        "route": _to_str(record.get("route")),
        "street_number": _to_str(record.get("number")),
        "postal_code": _to_str(record.get("postalcode")),
    }
