"""
Integration clients package.

Read-only clients for the fleet telemetry provider plus the shared
sync result types every sync cycle reports with.

Usage:
    from integrations.telemetry import TelemetryClient

    client = TelemetryClient.from_settings(get_settings())
    events = await client.get_events(account_id="acme")
"""

from integrations.base import SyncResult, SyncStatus, SyncType
from integrations.telemetry import TelemetryClient, map_device_record

__all__ = [
    "SyncResult",
    "SyncStatus",
    "SyncType",
    "TelemetryClient",
    "map_device_record",
]
