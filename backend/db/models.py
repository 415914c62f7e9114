"""
FleetWatch Database Models

7 tables for the gaming-device fleet telemetry store.
Every table except api_sync_logs is keyed by a natural id from the
telemetry API so ingestion can upsert without lookups.

Tables:
  Reference:
  1. companies          - Owning accounts (insert-if-absent)
  2. event_types        - (event_type, event_id) catalog, first classification wins

  Fleet:
  3. devices            - One row per serial, coalescing upserts
  4. device_events      - Classified events, unique on the source row_id

  Derived:
  5. financial_summary  - Cash-in per device per UTC day (additive)
  6. active_alerts      - Critical door / cash-box events (insert-once)

  Operations:
  7. api_sync_logs      - One append-only row per sync cycle
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


from sqlalchemy.orm import relationship

from db.session import Base

# ─── 1. Companies ──────────────────────────────────────────────────────────


class Company(Base):
    __tablename__ = "companies"

    company_id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    devices = relationship("Device", back_populates="company")


# ─── 2. Event Types ────────────────────────────────────────────────────────


class EventType(Base):
    __tablename__ = "event_types"

    event_type = Column(String(255), primary_key=True)
    event_id = Column(String(255), primary_key=True)
    category = Column(String(20), nullable=False, default="misc")
    severity = Column(String(20), nullable=False, default="info")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("category IN ('financial', 'security', 'misc')", name="ck_event_type_category"),
        CheckConstraint("severity IN ('critical', 'normal', 'info')", name="ck_event_type_severity"),
    )


# ─── 3. Devices ────────────────────────────────────────────────────────────


class Device(Base):
    __tablename__ = "devices"

    device_id = Column(String(255), primary_key=True)  # serial number
    imei = Column(String(64))
    serial_number = Column(String(255))
    company_id = Column(String(255), ForeignKey("companies.company_id"))
    account_id = Column(String(255))
    nickname = Column(String(255))

    # Location / telemetry snapshot
    last_known_lat = Column(Float)
    last_known_lng = Column(Float)
    last_event_time = Column(DateTime)
    vehicle_stock = Column(String(255))
    event_satellites = Column(Float)
    event_rssi = Column(Integer)
    event_voltage = Column(Float)

    # Provisioning
    activation_date = Column(String(64))
    delivery_date = Column(String(64))
    group_name = Column(String(255))

    # Reverse-geocoded address
    full_address = Column(Text)
    country = Column(String(100))
    admin1 = Column(String(255))
    admin2 = Column(String(255))
    admin3 = Column(String(255))
    city = Column(String(255))
    route = Column(String(255))
    street_number = Column(String(50))
    postal_code = Column(String(20))

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_devices_company", "company_id"),
        Index("ix_devices_last_event", "last_event_time"),
    )

    company = relationship("Company", back_populates="devices")
    events = relationship("DeviceEvent", back_populates="device")


# ─── 4. Device Events ──────────────────────────────────────────────────────


class DeviceEvent(Base):
    __tablename__ = "device_events"

    event_uuid = Column(GUID(), primary_key=True, default=uuid.uuid4)
    row_id = Column(BigInteger, nullable=False, unique=True)  # source-assigned dedup key
    device_id = Column(String(255), ForeignKey("devices.device_id"), nullable=False)
    imei = Column(String(64))
    serial_number = Column(String(255))
    company_id = Column(String(255), ForeignKey("companies.company_id"))
    account_id = Column(String(255))
    event_type = Column(String(255))
    event_id = Column(String(255))
    event_entry = Column(Text)
    parsed_amount = Column(Float)
    parsed_status = Column(String(255))
    is_door_event = Column(Boolean, nullable=False, default=False)
    is_financial_event = Column(Boolean, nullable=False, default=False)
    is_cash_box_event = Column(Boolean, nullable=False, default=False)
    event_timestamp = Column(DateTime)
    report_timestamp = Column(DateTime)
    severity = Column(String(20), nullable=False, default="info")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_device_events_device_time", "device_id", "event_timestamp"),
        Index("ix_device_events_company_time", "company_id", "event_timestamp"),
        CheckConstraint("severity IN ('critical', 'normal', 'info')", name="ck_device_event_severity"),
    )

    device = relationship("Device", back_populates="events")


# ─── 5. Financial Summary ──────────────────────────────────────────────────


class FinancialSummary(Base):
    __tablename__ = "financial_summary"

    device_id = Column(String(255), ForeignKey("devices.device_id"), primary_key=True)
    summary_date = Column(Date, primary_key=True)
    company_id = Column(String(255), ForeignKey("companies.company_id"))
    total_cash_in = Column(Float, nullable=False, default=0.0)
    transaction_count = Column(Integer, nullable=False, default=0)
    last_transaction_time = Column(DateTime)

    __table_args__ = (Index("ix_financial_summary_company_date", "company_id", "summary_date"),)


# ─── 6. Active Alerts ──────────────────────────────────────────────────────


class ActiveAlert(Base):
    __tablename__ = "active_alerts"

    event_uuid = Column(GUID(), ForeignKey("device_events.event_uuid"), primary_key=True)
    device_id = Column(String(255), ForeignKey("devices.device_id"), nullable=False)
    alert_type = Column(String(255), nullable=False)
    severity = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_active_alerts_device", "device_id"),
        CheckConstraint("severity IN ('critical', 'normal', 'info')", name="ck_active_alert_severity"),
    )


# ─── 7. API Sync Logs ──────────────────────────────────────────────────────


class ApiSyncLog(Base):
    __tablename__ = "api_sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sync_type = Column(String(50), nullable=False)  # "events" | "events_window"
    account_id = Column(String(255))
    rows_fetched = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False)
    error_message = Column(Text)
    sync_duration_seconds = Column(Float)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("ix_api_sync_logs_type_started", "sync_type", "started_at"),
        CheckConstraint("status IN ('success', 'partial', 'failed')", name="ck_api_sync_log_status"),
    )
