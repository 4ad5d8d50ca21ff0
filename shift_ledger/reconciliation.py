from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from shift_ledger.config import settings
from shift_ledger.errors import MissingDeclaration, error_payload
from shift_ledger.ledgers import get_entry, latest_submission, to_float
from shift_ledger.locks import shift_lock
from shift_ledger.models import ReconciliationRecord, SoldItem
from shift_ledger.runs import clear_run, record_run
from shift_ledger.shift_window import ShiftDayLike, as_utc, parse_shift_day

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

STATUS_OK = "OK"
STATUS_WARNING = "WARNING"
STATUS_FAIL = "FAIL"


def classify_sales_variance(
    variance: Decimal,
    warning_threshold: Optional[Decimal] = None,
    fail_threshold: Optional[Decimal] = None,
) -> str:
    warning_threshold = Decimal(
        warning_threshold if warning_threshold is not None else settings.reconciliation_warning_threshold
    )
    fail_threshold = Decimal(
        fail_threshold if fail_threshold is not None else settings.reconciliation_fail_threshold
    )
    magnitude = abs(Decimal(variance))
    if magnitude > fail_threshold:
        return STATUS_FAIL
    if magnitude > warning_threshold:
        return STATUS_WARNING
    return STATUS_OK


def _pos_sales(db: Session, shift_date: date) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(SoldItem.net_amount), 0)).where(SoldItem.shift_date == shift_date)
    ).scalar()
    return Decimal(str(total or 0)).quantize(CENT)


def _rebuild_shift(
    db: Session,
    shift_date: date,
    warning_threshold: Optional[Decimal],
    fail_threshold: Optional[Decimal],
) -> ReconciliationRecord:
    db.execute(
        delete(ReconciliationRecord).where(ReconciliationRecord.shift_date == shift_date),
        execution_options={"synchronize_session": False},
    )
    rolls = get_entry(db, "rolls", shift_date)
    meat = get_entry(db, "meat", shift_date)
    submission = latest_submission(db, shift_date)
    record = ReconciliationRecord(
        shift_date=shift_date,
        pos_sales=_pos_sales(db, shift_date),
        expected_buns=rolls.estimated if rolls is not None else None,
        buns_variance=rolls.variance if rolls is not None else None,
        expected_meat=meat.estimated if meat is not None else None,
        meat_variance=meat.variance if meat is not None else None,
        created_at=datetime.now(timezone.utc),
    )
    if submission is None:
        logger.warning("%s", MissingDeclaration(f"no staff submission for {shift_date}", shift_date))
        record.declared_sales = Decimal("0")
        record.sales_variance = Decimal("0")
        record.declared_buns = 0
        record.declared_meat = 0
        record.has_declaration = False
        record.status = STATUS_FAIL
    else:
        declared_sales = Decimal(str(submission.total_sales))
        record.declared_sales = declared_sales
        record.sales_variance = declared_sales - record.pos_sales
        record.declared_buns = submission.rolls_end or 0
        record.declared_meat = submission.meat_end_g or 0
        record.has_declaration = True
        record.status = classify_sales_variance(
            record.sales_variance, warning_threshold, fail_threshold
        )
    db.add(record)
    return record


def _clear_stale(db: Session, shift_dates: list[date], start: Optional[date], end: Optional[date]) -> int:
    query = select(ReconciliationRecord.shift_date).where(
        ReconciliationRecord.shift_date.not_in(shift_dates)
    )
    if start is not None:
        query = query.where(ReconciliationRecord.shift_date >= start)
    if end is not None:
        query = query.where(ReconciliationRecord.shift_date <= end)
    removed = 0
    for shift_date in db.execute(query).scalars().all():
        with shift_lock("reconciliation", shift_date):
            db.execute(
                delete(ReconciliationRecord).where(ReconciliationRecord.shift_date == shift_date),
                execution_options={"synchronize_session": False},
            )
            db.commit()
            clear_run(db, "reconciliation", shift_date)
        logger.info("removed reconciliation for %s: no sold items left", shift_date)
        removed += 1
    return removed


def rebuild_reconciliation(
    db: Session,
    start_day: Optional[ShiftDayLike] = None,
    end_day: Optional[ShiftDayLike] = None,
    warning_threshold: Optional[Decimal] = None,
    fail_threshold: Optional[Decimal] = None,
) -> dict:
    start = parse_shift_day(start_day) if start_day is not None else None
    end = parse_shift_day(end_day) if end_day is not None else None
    query = select(SoldItem.shift_date).distinct().order_by(SoldItem.shift_date)
    if start is not None:
        query = query.where(SoldItem.shift_date >= start)
    if end is not None:
        query = query.where(SoldItem.shift_date <= end)
    shift_dates = list(db.execute(query).scalars().all())

    result = {
        "shifts_processed": 0,
        "records_created": 0,
        "records_removed": _clear_stale(db, shift_dates, start, end),
        "statuses": {},
        "failed_shift": None,
        "error": None,
    }
    for shift_date in shift_dates:
        with shift_lock("reconciliation", shift_date):
            try:
                record = _rebuild_shift(db, shift_date, warning_threshold, fail_threshold)
                db.commit()
                status = record.status
            except Exception as exc:
                db.rollback()
                logger.exception("reconciliation failed for %s", shift_date)
                record_run(db, "reconciliation", shift_date, error=exc)
                result["failed_shift"] = shift_date.isoformat()
                result["error"] = error_payload(exc)
                return result
            record_run(db, "reconciliation", shift_date, metadata={"status": status})
        if status != STATUS_OK:
            logger.warning("reconciliation %s for %s", status, shift_date)
        result["shifts_processed"] += 1
        result["records_created"] += 1
        result["statuses"][shift_date.isoformat()] = status
    return result


def get_reconciliation(db: Session, shift_day: ShiftDayLike) -> Optional[ReconciliationRecord]:
    rows = db.execute(
        select(ReconciliationRecord).where(
            ReconciliationRecord.shift_date == parse_shift_day(shift_day)
        )
    ).scalars().all()
    return rows[0] if rows else None


def serialize_reconciliation(record: ReconciliationRecord) -> dict:
    return {
        "shift_date": record.shift_date.isoformat(),
        "pos_sales": float(record.pos_sales),
        "declared_sales": float(record.declared_sales),
        "sales_variance": float(record.sales_variance),
        "expected_buns": to_float(record.expected_buns),
        "declared_buns": record.declared_buns,
        "buns_variance": to_float(record.buns_variance),
        "expected_meat": to_float(record.expected_meat),
        "declared_meat": record.declared_meat,
        "meat_variance": to_float(record.meat_variance),
        "has_declaration": record.has_declaration,
        "status": record.status,
        "created_at": as_utc(record.created_at).isoformat(),
    }
