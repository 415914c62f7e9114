from datetime import datetime, timezone

import pytest

from events.classifier import (
    MONEY_ADDED_EVENT_ID,
    classify_event,
    determine_severity,
    extract_amount,
    is_financial_event,
    normalize_status,
    parse_device_timestamp,
    parse_row_id,
    parse_timestamp,
)


def test_door_open_is_critical_security_event():
    parsed = classify_event(
        {
            "row_id": "42",
            "serial": "SN-1001",
            "eventtype": "Door",
            "eventid": "Main Door Open",
            "entry": "Main Door Open",
            "eventtimestamp": "2025-01-15 14:23:45",
        }
    )
    assert parsed.row_id == 42
    assert parsed.device_id == "SN-1001"
    assert parsed.serial_number == "SN-1001"
    assert parsed.is_door_event is True
    assert parsed.is_cash_box_event is False
    assert parsed.is_financial_event is False
    assert parsed.severity == "critical"
    assert parsed.parsed_status == "main_door_open"
    assert parsed.category == "security"
    assert parsed.default_severity == "critical"
    assert parsed.raises_alert is True


def test_money_added_is_normal_financial_event():
    parsed = classify_event(
        {
            "row_id": 7,
            "serial": "SN-1001",
            "eventtype": "Bill Validator",
            "eventid": MONEY_ADDED_EVENT_ID,
            "entry": "Bill accepted $1,250.00",
        }
    )
    assert parsed.is_financial_event is True
    assert parsed.parsed_amount == 1250.0
    assert parsed.severity == "normal"
    assert parsed.category == "financial"
    assert parsed.raises_alert is False


def test_cash_box_removed_with_amount_is_financial_and_critical():
    parsed = classify_event({"row_id": 8, "serial": "SN-1", "entry": "Cash Box Removed - $125.50"})
    assert parsed.is_cash_box_event is True
    assert parsed.is_financial_event is True
    assert parsed.parsed_amount == 125.5
    assert parsed.severity == "critical"
    assert parsed.category == "financial"
    assert parsed.raises_alert is True


def test_closed_door_is_security_but_informational():
    parsed = classify_event({"row_id": 9, "serial": "SN-1", "eventid": "Door", "entry": "Upper Door Closed"})
    assert parsed.is_door_event is True
    assert parsed.severity == "info"
    assert parsed.category == "security"
    assert parsed.raises_alert is False


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"row_id": [1], "entry": 123, "eventid": None, "eventtimestamp": 5},
        {"row_id": "abc", "entry": {"nested": True}, "reporttime": "not a time"},
        {"row_id": True, "serial": 1001, "entry": "$", "eventtimestamp": ""},
    ],
)
def test_classify_event_never_raises_on_malformed_records(raw):
    parsed = classify_event(raw)
    assert parsed.row_id is None
    assert parsed.severity in {"critical", "normal", "info"}
    assert parsed.event_timestamp is None


def test_extract_amount_variants():
    assert extract_amount("Bill accepted $20.00") == 20.0
    assert extract_amount("Bill accepted $ 5") == 5.0
    assert extract_amount("Cash in $0.00") == 0.0
    assert extract_amount("Bill accepted $abc") is None
    assert extract_amount("Bill accepted $nan") is None
    assert extract_amount("No currency here") is None
    assert extract_amount(None) is None


def test_financial_flag_without_parsable_amount():
    assert is_financial_event(None, "Bill accepted $abc") is True
    assert is_financial_event(MONEY_ADDED_EVENT_ID, None) is True
    assert is_financial_event("Door", "Main Door Open") is False


def test_money_added_severity_wins_over_critical_phrases():
    assert determine_severity(MONEY_ADDED_EVENT_ID, "Cash Box Removed") == "normal"
    assert determine_severity("Door", "BELLY DOOR OPEN") == "critical"
    assert determine_severity("Power", "Power restored") == "info"


def test_normalize_status():
    assert normalize_status("Main Door Open!") == "main_door_open"
    assert normalize_status("  Cash Box  Removed - $125.50 ") == "cash_box_removed_125_50"
    assert normalize_status("   ") is None
    assert normalize_status(None) is None


def test_parse_row_id():
    assert parse_row_id(42) == 42
    assert parse_row_id("42") == 42
    assert parse_row_id(" 7 ") == 7
    assert parse_row_id(42.0) == 42
    assert parse_row_id(42.5) is None
    assert parse_row_id(True) is None
    assert parse_row_id("4x2") is None
    assert parse_row_id(None) is None


def test_device_timestamps_without_offset_are_utc():
    assert parse_device_timestamp("2025-01-15 14:23:45") == datetime(2025, 1, 15, 14, 23, 45, tzinfo=timezone.utc)
    assert parse_device_timestamp("2025-01-15T14:23:45.500Z") == datetime(
        2025, 1, 15, 14, 23, 45, 500000, tzinfo=timezone.utc
    )
    assert parse_device_timestamp("2025-01-15T16:23:45+02:00") == datetime(
        2025, 1, 15, 14, 23, 45, tzinfo=timezone.utc
    )
    assert parse_device_timestamp("yesterday") is None
    assert parse_device_timestamp(None) is None


def test_report_timestamps_keep_naive_values_naive():
    assert parse_timestamp("2025-01-15T14:24:02") == datetime(2025, 1, 15, 14, 24, 2)
    assert parse_timestamp("2025-01-15T14:24:02Z") == datetime(2025, 1, 15, 14, 24, 2, tzinfo=timezone.utc)
    assert parse_timestamp("garbage") is None


def test_receipt_event_has_no_flags_and_info_severity():
    parsed = classify_event({"row_id": 10, "serial": "SN-1", "eventid": "Printer", "entry": "Clear/Print Receipt"})
    assert parsed.is_door_event is False
    assert parsed.is_cash_box_event is False
    assert parsed.is_financial_event is False
    assert parsed.parsed_amount is None
    assert parsed.parsed_status == "clear_print_receipt"
    assert parsed.severity == "info"
    assert parsed.category == "misc"
    assert parsed.raises_alert is False


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2025-01-15T16:23:45+0200", datetime(2025, 1, 15, 14, 23, 45, tzinfo=timezone.utc)),
        ("2025-01-15 06:23:45-0800", datetime(2025, 1, 15, 14, 23, 45, tzinfo=timezone.utc)),
        ("2025-01-15T14:23:45.5Z", datetime(2025, 1, 15, 14, 23, 45, 500000, tzinfo=timezone.utc)),
        ("2025-01-15 14:23:45.1234567", datetime(2025, 1, 15, 14, 23, 45, 123456, tzinfo=timezone.utc)),
    ],
)
def test_device_timestamps_accept_compact_offsets_and_any_fraction_length(value, expected):
    assert parse_device_timestamp(value) == expected
