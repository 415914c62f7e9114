"""
Telemetry event classification.

Usage:
    from events import classify_event

    parsed = classify_event(raw_event)
    if parsed.raises_alert:
        ...
"""

from events.classifier import (
    MONEY_ADDED_EVENT_ID,
    ParsedEvent,
    classify_event,
    parse_device_timestamp,
    parse_timestamp,
)

__all__ = [
    "MONEY_ADDED_EVENT_ID",
    "ParsedEvent",
    "classify_event",
    "parse_device_timestamp",
    "parse_timestamp",
]
