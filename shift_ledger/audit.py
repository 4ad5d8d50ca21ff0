from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from shift_ledger.models import IngestionAudit, Receipt
from shift_ledger.shift_window import as_utc, resolve_shift_day

logger = logging.getLogger(__name__)

AUDIT_STATUSES = ("success", "failed", "skipped")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def record_ingestion_audit(
    db: Session,
    shift_date: date,
    source: str,
    window_start: datetime,
    window_end: datetime,
    receipts: int = 0,
    line_items: int = 0,
    modifiers: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> IngestionAudit:
    if status not in AUDIT_STATUSES:
        raise ValueError(f"unknown audit status: {status}")
    row = IngestionAudit(
        shift_date=shift_date,
        source=source,
        window_start=window_start,
        window_end=window_end,
        receipts=receipts,
        line_items=line_items,
        modifiers=modifiers,
        duration_ms=duration_ms,
        status=status,
        error=error,
        created_at=_now(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    if status == "failed":
        logger.warning("ingestion failed for %s from %s: %s", shift_date, source, error)
    else:
        logger.info(
            "ingestion %s for %s from %s: %d receipts, %d items, %d modifiers",
            status,
            shift_date,
            source,
            receipts,
            line_items,
            modifiers,
        )
    return row


def latest_successful_sync(db: Session, shift_date: Optional[date] = None) -> Optional[IngestionAudit]:
    query = select(IngestionAudit).where(IngestionAudit.status == "success")
    if shift_date is not None:
        query = query.where(IngestionAudit.shift_date == shift_date)
    query = query.order_by(IngestionAudit.created_at.desc(), IngestionAudit.id.desc()).limit(1)
    return db.execute(query).scalars().first()


def list_ingestion_audits(db: Session, limit: int = 50) -> list[IngestionAudit]:
    query = select(IngestionAudit).order_by(IngestionAudit.id.desc()).limit(limit)
    return list(db.execute(query).scalars().all())


def serialize_audit(row: IngestionAudit) -> dict:
    return {
        "audit_id": row.id,
        "shift_date": row.shift_date.isoformat(),
        "source": row.source,
        "window_start": as_utc(row.window_start).isoformat(),
        "window_end": as_utc(row.window_end).isoformat(),
        "receipts": row.receipts,
        "line_items": row.line_items,
        "modifiers": row.modifiers,
        "duration_ms": row.duration_ms,
        "status": row.status,
        "error": row.error,
        "created_at": as_utc(row.created_at).isoformat(),
    }


def data_freshness(db: Session, now: datetime) -> dict:
    now = as_utc(now)
    last_sync = latest_successful_sync(db)
    last_receipt_at = db.execute(select(func.max(Receipt.created_at))).scalar()
    last_sync_age = None
    if last_sync is not None:
        last_sync_age = int((now - as_utc(last_sync.created_at)).total_seconds())
    return {
        "current_shift_date": resolve_shift_day(now).isoformat(),
        "last_successful_sync": serialize_audit(last_sync) if last_sync else None,
        "last_sync_age_seconds": last_sync_age,
        "last_receipt_at": as_utc(last_receipt_at).isoformat() if last_receipt_at else None,
        "last_receipt_shift_date": resolve_shift_day(last_receipt_at).isoformat()
        if last_receipt_at
        else None,
    }
