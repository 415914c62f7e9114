"""
Telemetry Sync Workers — Scheduled device fleet ingestion.

Workers:
  1. sync_device_events: Default window (trailing 24h) → normalized tables
  2. sync_device_events_window: On-demand backfill of a [start, end) window

One cycle:
  fetch devices + events → classify each event → upsert companies,
  event_types, devices → insert device_events (dedup on row_id) →
  bump financial_summary / raise active_alerts for newly inserted events →
  commit → one api_sync_logs row.
"""

import uuid
from collections.abc import Mapping
from datetime import datetime, timezone

import structlog
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.models import (
    ActiveAlert,
    ApiSyncLog,
    Company,
    Device,
    DeviceEvent,
    EventType,
    FinancialSummary,
)
from events.classifier import ParsedEvent, classify_event
from integrations.base import SyncResult, SyncStatus, SyncType
from integrations.telemetry import TelemetryClient, map_device_record
from workers.celery_app import celery_app

logger = structlog.get_logger()

UNKNOWN_ACCOUNT = "unknown"

# device_events.row_id is a BIGINT.
ROW_ID_MIN = -(2**63)
ROW_ID_MAX = 2**63 - 1

# Device columns that keep their stored value when the incoming one is NULL.
# device_id / serial_number are immutable, last_event_time only moves forward.
COALESCED_DEVICE_COLUMNS = (
    "imei",
    "company_id",
    "account_id",
    "nickname",
    "last_known_lat",
    "last_known_lng",
    "vehicle_stock",
    "event_satellites",
    "event_rssi",
    "event_voltage",
    "activation_date",
    "delivery_date",
    "group_name",
    "full_address",
    "country",
    "admin1",
    "admin2",
    "admin3",
    "city",
    "route",
    "street_number",
    "postal_code",
)


class InvalidEventError(ValueError):
    """A raw event that cannot be persisted (not an object, no usable row_id, or no serial)."""


# ──────────────────────────────────────────────────────────────────────────
# Dialect helpers (PostgreSQL in production, SQLite in tests)
# ──────────────────────────────────────────────────────────────────────────


def _dialect_name(db: AsyncSession) -> str:
    return db.get_bind().dialect.name


def _insert(db: AsyncSession, model):
    if _dialect_name(db) == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _latest(db: AsyncSession, existing, incoming):
    """Later of two timestamps, ignoring NULLs on either side."""
    greatest = func.greatest if _dialect_name(db) == "postgresql" else func.max
    return greatest(func.coalesce(existing, incoming), func.coalesce(incoming, existing))


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _text(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


# ──────────────────────────────────────────────────────────────────────────
# Upserts
# ──────────────────────────────────────────────────────────────────────────


async def _ensure_company(db: AsyncSession, company_id: str, name: str | None = None) -> None:
    stmt = (
        _insert(db, Company)
        .values(company_id=company_id, name=name or company_id)
        .on_conflict_do_nothing(index_elements=["company_id"])
    )
    await db.execute(stmt)


async def _ensure_event_type(db: AsyncSession, parsed: ParsedEvent) -> None:
    """First classification of an (event_type, event_id) pair wins."""
    if not parsed.event_type or not parsed.event_id:
        return
    stmt = (
        _insert(db, EventType)
        .values(
            event_type=parsed.event_type,
            event_id=parsed.event_id,
            category=parsed.category,
            severity=parsed.default_severity,
        )
        .on_conflict_do_nothing(index_elements=["event_type", "event_id"])
    )
    await db.execute(stmt)


async def upsert_device(db: AsyncSession, values: dict) -> None:
    """
    Coalescing upsert keyed by device_id.

    Each column present in `values` prefers the incoming value and falls
    back to the stored one when incoming is NULL. serial_number is only
    written on insert; last_event_time takes the later of the two.
    """
    values = dict(values)
    values["last_event_time"] = _naive_utc(values.get("last_event_time"))
    values.setdefault("serial_number", values["device_id"])

    stmt = _insert(db, Device).values(**values)
    table = Device.__table__
    set_ = {
        column: func.coalesce(stmt.excluded[column], table.c[column])
        for column in COALESCED_DEVICE_COLUMNS
        if column in values
    }
    set_["last_event_time"] = _latest(db, table.c.last_event_time, stmt.excluded.last_event_time)
    set_["updated_at"] = _utcnow()

    await db.execute(stmt.on_conflict_do_update(index_elements=["device_id"], set_=set_))


async def _insert_event(
    db: AsyncSession,
    parsed: ParsedEvent,
    company_id: str,
    account_id: str | None,
) -> uuid.UUID | None:
    """Insert a classified event. Returns None when the row_id already exists."""
    stmt = (
        _insert(db, DeviceEvent)
        .values(
            event_uuid=uuid.uuid4(),
            row_id=parsed.row_id,
            device_id=parsed.device_id,
            imei=parsed.imei,
            serial_number=parsed.serial_number,
            company_id=company_id,
            account_id=account_id,
            event_type=parsed.event_type,
            event_id=parsed.event_id,
            event_entry=parsed.event_entry,
            parsed_amount=parsed.parsed_amount,
            parsed_status=parsed.parsed_status,
            is_door_event=parsed.is_door_event,
            is_financial_event=parsed.is_financial_event,
            is_cash_box_event=parsed.is_cash_box_event,
            event_timestamp=_naive_utc(parsed.event_timestamp),
            report_timestamp=_naive_utc(parsed.report_timestamp),
            severity=parsed.severity,
        )
        .on_conflict_do_nothing(index_elements=["row_id"])
        .returning(DeviceEvent.event_uuid)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _apply_financial_summary(db: AsyncSession, parsed: ParsedEvent, company_id: str) -> bool:
    """Add one financial event to its device's daily total."""
    transaction_time = _naive_utc(parsed.event_timestamp or parsed.report_timestamp)
    if transaction_time is None:
        logger.warning("sync.events.financial_skipped", row_id=parsed.row_id, reason="no_timestamp")
        return False

    stmt = _insert(db, FinancialSummary).values(
        device_id=parsed.device_id,
        summary_date=transaction_time.date(),
        company_id=company_id,
        total_cash_in=parsed.parsed_amount,
        transaction_count=1,
        last_transaction_time=transaction_time,
    )
    table = FinancialSummary.__table__
    stmt = stmt.on_conflict_do_update(
        index_elements=["device_id", "summary_date"],
        set_={
            "total_cash_in": table.c.total_cash_in + stmt.excluded.total_cash_in,
            "transaction_count": table.c.transaction_count + 1,
            "last_transaction_time": _latest(db, table.c.last_transaction_time, stmt.excluded.last_transaction_time),
        },
    )
    await db.execute(stmt)
    return True


async def _raise_active_alert(db: AsyncSession, event_uuid: uuid.UUID, parsed: ParsedEvent) -> None:
    stmt = (
        _insert(db, ActiveAlert)
        .values(
            event_uuid=event_uuid,
            device_id=parsed.device_id,
            alert_type=parsed.event_id or parsed.parsed_status or "alert",
            severity=parsed.severity,
        )
        .on_conflict_do_nothing(index_elements=["event_uuid"])
    )
    await db.execute(stmt)


# ──────────────────────────────────────────────────────────────────────────
# Per-record ingestion
# ──────────────────────────────────────────────────────────────────────────


async def _ingest_device(db: AsyncSession, record: Mapping) -> bool:
    if not isinstance(record, Mapping):
        logger.warning("sync.devices.record_skipped", record_type=type(record).__name__)
        return False
    values = map_device_record(record)
    if values is None:
        return False
    if values["company_id"]:
        await _ensure_company(db, values["company_id"], _text(record.get("accountname")))
    await upsert_device(db, values)
    return True


async def _ingest_event(db: AsyncSession, raw: Mapping, sync_account_id: str | None) -> dict[str, bool]:
    if not isinstance(raw, Mapping):
        raise InvalidEventError(f"Event is not an object: {type(raw).__name__}")
    parsed = classify_event(raw)
    if parsed.row_id is None:
        raise InvalidEventError(f"Event has no numeric row_id: {raw.get('row_id')!r}")
    if not ROW_ID_MIN <= parsed.row_id <= ROW_ID_MAX:
        raise InvalidEventError(f"Event row_id out of range: {parsed.row_id}")
    if not parsed.device_id:
        raise InvalidEventError(f"Event {parsed.row_id} has no device serial")

    event_account = _text(raw.get("accountid"))
    company_id = event_account or sync_account_id or UNKNOWN_ACCOUNT

    await _ensure_company(db, company_id)
    await _ensure_event_type(db, parsed)
    await upsert_device(
        db,
        {
            "device_id": parsed.device_id,
            "imei": parsed.imei,
            "serial_number": parsed.serial_number,
            "company_id": company_id,
            "account_id": event_account,
            "last_event_time": parsed.event_timestamp,
        },
    )

    event_uuid = await _insert_event(db, parsed, company_id, event_account)
    outcome = {"inserted": event_uuid is not None, "financial": False, "alert": False}
    if event_uuid is None:
        return outcome

    if parsed.is_financial_event and parsed.parsed_amount is not None:
        outcome["financial"] = await _apply_financial_summary(db, parsed, company_id)
    if parsed.raises_alert:
        await _raise_active_alert(db, event_uuid, parsed)
        outcome["alert"] = True
    return outcome


async def _record_sync_log(db: AsyncSession, result: SyncResult) -> None:
    db.add(
        ApiSyncLog(
            sync_type=result.sync_type.value,
            account_id=result.account_id,
            rows_fetched=result.records_processed,
            records_failed=result.records_failed,
            status=result.status.value,
            error_message="; ".join(result.errors) if result.errors else None,
            sync_duration_seconds=result.duration_seconds,
            started_at=_naive_utc(result.started_at),
            completed_at=_naive_utc(result.completed_at),
        )
    )
    await db.commit()


# ──────────────────────────────────────────────────────────────────────────
# Sync cycle
# ──────────────────────────────────────────────────────────────────────────


async def run_event_sync_pipeline(
    db: AsyncSession,
    *,
    client: TelemetryClient,
    account_id: str,
    start_time: datetime | str | None = None,
    end_time: datetime | str | None = None,
    sync_type: SyncType | str = SyncType.EVENTS,
    device_row_limit: int | None = None,
    failure_policy: str = "abort",
) -> SyncResult:
    """
    Run one complete sync cycle inside the session's transaction.

    With failure_policy="abort" any error rolls back the whole cycle,
    writes a failed api_sync_logs row and re-raises. With "skip" each
    event runs in a SAVEPOINT; a bad event is rolled back alone and the
    cycle finishes as "partial".
    """
    sync_type = SyncType(sync_type)
    result = SyncResult(status=SyncStatus.SUCCESS, sync_type=sync_type, account_id=account_id)
    counts = {
        "devices_upserted": 0,
        "events_inserted": 0,
        "duplicates_skipped": 0,
        "financial_updates": 0,
        "alerts_raised": 0,
    }
    log = logger.bind(account_id=account_id, sync_type=sync_type.value)
    log.info("sync.events.started", start_time=str(start_time) if start_time else None, end_time=str(end_time) if end_time else None)

    try:
        devices = await client.get_devices(account_id=account_id, row_limit=device_row_limit)
        raw_events = await client.get_events(account_id=account_id, start_time=start_time, end_time=end_time)

        for record in devices:
            if await _ingest_device(db, record):
                counts["devices_upserted"] += 1

        for raw in raw_events:
            result.records_processed += 1
            if failure_policy == "skip":
                try:
                    async with db.begin_nested():
                        outcome = await _ingest_event(db, raw, account_id)
                except (InvalidEventError, SQLAlchemyError) as exc:
                    row_id = raw.get("row_id") if isinstance(raw, Mapping) else None
                    result.records_failed += 1
                    result.errors.append(f"row_id={row_id!r}: {exc}")
                    log.warning("sync.events.event_skipped", row_id=row_id, error=str(exc))
                    continue
            else:
                outcome = await _ingest_event(db, raw, account_id)

            if outcome["inserted"]:
                counts["events_inserted"] += 1
            else:
                counts["duplicates_skipped"] += 1
            counts["financial_updates"] += int(outcome["financial"])
            counts["alerts_raised"] += int(outcome["alert"])

        await db.commit()
    except Exception as exc:
        await db.rollback()
        result.status = SyncStatus.FAILED
        result.errors.append(str(exc) or type(exc).__name__)
        result.complete()
        try:
            await _record_sync_log(db, result)
        except SQLAlchemyError as log_exc:
            log.error("sync.events.log_write_failed", error=str(log_exc))
        log.error(
            "sync.events.failed",
            rows_fetched=result.records_processed,
            duration_seconds=result.duration_seconds,
            error=str(exc),
            exc_info=True,
        )
        raise

    if result.records_failed:
        result.status = SyncStatus.PARTIAL
    result.metadata.update(counts)
    result.complete()
    await _record_sync_log(db, result)

    log.info(
        "sync.events.completed",
        status=result.status.value,
        rows_fetched=result.records_processed,
        records_failed=result.records_failed,
        duration_seconds=result.duration_seconds,
        **counts,
    )
    return result


async def run_event_sync(
    account_id: str | None = None,
    *,
    start_time: datetime | str | None = None,
    end_time: datetime | str | None = None,
    sync_type: SyncType | str = SyncType.EVENTS,
    client: TelemetryClient | None = None,
    settings=None,
    session_factory: async_sessionmaker | None = None,
) -> SyncResult:
    """
    Run one cycle with a session and client built from settings.

    Without a session_factory a short-lived engine is created and disposed,
    which is what the Celery tasks need (each task runs its own event loop).
    """
    if settings is None:
        from core.config import get_settings

        settings = get_settings()

    account = account_id or settings.telemetry_account_id
    if not account:
        raise ValueError("No telemetry account: pass account_id or set TELEMETRY_ACCOUNT_ID")

    client = client or TelemetryClient.from_settings(settings)

    engine = None
    if session_factory is None:
        engine = create_async_engine(settings.database_url)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_factory() as db:
            return await run_event_sync_pipeline(
                db,
                client=client,
                account_id=account,
                start_time=start_time,
                end_time=end_time,
                sync_type=sync_type,
                device_row_limit=settings.sync_device_row_limit,
                failure_policy=settings.sync_failure_policy,
            )
    finally:
        if engine is not None:
            await engine.dispose()


# ──────────────────────────────────────────────────────────────────────────
# Celery tasks
# ──────────────────────────────────────────────────────────────────────────


@celery_app.task(
    name="workers.sync.sync_device_events",
    bind=True,
    acks_late=True,
)
def sync_device_events(self, account_id: str | None = None):
    """
    Sync the default window (trailing 24h) for an account.
    Scheduled via Celery Beat (every 15 minutes). A failed cycle is not
    retried here; the next beat covers the same window again.
    """
    import asyncio

    run_id = self.request.id or "manual"
    logger.info("sync.task.started", task="sync_device_events", account_id=account_id, run_id=run_id)

    try:
        result = asyncio.run(run_event_sync(account_id, sync_type=SyncType.EVENTS))
    except Exception as exc:
        logger.error("sync.task.failed", task="sync_device_events", account_id=account_id, run_id=run_id, error=str(exc))
        raise
    logger.info("sync.task.completed", task="sync_device_events", run_id=run_id, status=result.status.value)
    return result.as_dict()


@celery_app.task(
    name="workers.sync.sync_device_events_window",
    bind=True,
    acks_late=True,
)
def sync_device_events_window(
    self,
    account_id: str | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
):
    """Backfill events for an explicit [start_time, end_time) window (ISO-8601)."""
    import asyncio

    run_id = self.request.id or "manual"
    logger.info(
        "sync.task.started",
        task="sync_device_events_window",
        account_id=account_id,
        start_time=start_time,
        end_time=end_time,
        run_id=run_id,
    )

    try:
        result = asyncio.run(
            run_event_sync(
                account_id,
                start_time=start_time,
                end_time=end_time,
                sync_type=SyncType.EVENTS_WINDOW,
            )
        )
    except Exception as exc:
        logger.error(
            "sync.task.failed",
            task="sync_device_events_window",
            account_id=account_id,
            run_id=run_id,
            error=str(exc),
        )
        raise
    logger.info("sync.task.completed", task="sync_device_events_window", run_id=run_id, status=result.status.value)
    return result.as_dict()
