from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import date, datetime
from typing import Callable, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from shift_ledger.audit import record_ingestion_audit
from shift_ledger.config import settings
from shift_ledger.errors import DerivationFailed, ExternalSourceFailure, error_payload
from shift_ledger.ingestion import normalize_receipt_payload, upsert_receipts
from shift_ledger.ledgers import compute_all_ledgers
from shift_ledger.models import Receipt, SoldItem
from shift_ledger.reconciliation import rebuild_reconciliation
from shift_ledger.runs import record_run
from shift_ledger.shift_window import ShiftDayLike, iter_shift_days, parse_shift_day, shift_window
from shift_ledger.sold_items import derive_sold_items

logger = logging.getLogger(__name__)

# Called as (shift_date, window_start, window_end, timeout_seconds). The client
# must enforce the timeout itself; the worker thread is abandoned, not killed.
PosSync = Callable[[date, datetime, datetime, float], Iterable[dict]]


def _count_receipts(db: Session, shift_date: date) -> int:
    window_start, window_end = shift_window(shift_date)
    return db.execute(
        select(func.count(Receipt.id)).where(
            Receipt.created_at >= window_start, Receipt.created_at < window_end
        )
    ).scalar() or 0


def _has_sold_items(db: Session, shift_date: date) -> bool:
    return db.execute(
        select(SoldItem.id).where(SoldItem.shift_date == shift_date).limit(1)
    ).first() is not None


def _fetch(pos_sync: PosSync, shift_date: date, timeout: float) -> list[dict]:
    window_start, window_end = shift_window(shift_date)
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(lambda: list(pos_sync(shift_date, window_start, window_end, timeout)))
        return future.result(timeout=timeout)
    finally:
        executor.shutdown(wait=False)


def sync_shift(
    db: Session,
    shift_day: ShiftDayLike,
    pos_sync: PosSync,
    source: str = "pos_api",
    timeout: Optional[float] = None,
) -> dict:
    shift_date = parse_shift_day(shift_day)
    window_start, window_end = shift_window(shift_date)
    timeout = timeout if timeout is not None else settings.pos_sync_timeout_seconds
    started = time.monotonic()
    try:
        payloads = _fetch(pos_sync, shift_date, timeout)
        receipts = [normalize_receipt_payload(payload) for payload in payloads]
    except FuturesTimeout:
        failure = ExternalSourceFailure(source, f"timed out after {timeout}s", shift_date)
        cause = None
    except Exception as exc:
        failure = ExternalSourceFailure(source, str(exc), shift_date)
        cause = exc
    else:
        counts = upsert_receipts(db, receipts, source)
        record_ingestion_audit(
            db,
            shift_date=shift_date,
            source=source,
            window_start=window_start,
            window_end=window_end,
            receipts=counts["inserted"] + counts["skipped"],
            line_items=counts["line_items"],
            modifiers=counts["modifiers"],
            duration_ms=int((time.monotonic() - started) * 1000),
            status="success",
        )
        record_run(db, "ingest", shift_date, metadata=counts)
        return counts

    db.rollback()
    record_ingestion_audit(
        db,
        shift_date=shift_date,
        source=source,
        window_start=window_start,
        window_end=window_end,
        duration_ms=int((time.monotonic() - started) * 1000),
        status="failed",
        error=str(failure),
    )
    record_run(db, "ingest", shift_date, error=failure)
    raise failure from cause


def _derive(db: Session, shift_date: date) -> dict:
    derived = derive_sold_items(db, shift_date, shift_date)
    if derived["error"] is not None:
        raise DerivationFailed(derived["error"]["message"], shift_date)
    return derived


def ensure_shift(db: Session, shift_day: ShiftDayLike, pos_sync: Optional[PosSync] = None) -> dict:
    shift_date = parse_shift_day(shift_day)
    ingested = None
    derived = None
    if not _has_sold_items(db, shift_date):
        if _count_receipts(db, shift_date) == 0 and pos_sync is not None:
            ingested = sync_shift(db, shift_date, pos_sync)
        derived = _derive(db, shift_date)
    ledgers = compute_all_ledgers(db, shift_date)
    return {
        "shift_date": shift_date.isoformat(),
        "ingested": ingested,
        "sold_items": derived,
        "ledgers": {kind: entry.status for kind, entry in ledgers.items()},
    }


def run_shift_pipeline(db: Session, shift_day: ShiftDayLike, pos_sync: Optional[PosSync] = None) -> dict:
    shift_date = parse_shift_day(shift_day)
    step = "ingest"
    try:
        if pos_sync is not None:
            sync_shift(db, shift_date, pos_sync)
        step = "sold_items"
        derived = _derive(db, shift_date)
        step = "ledgers"
        ledgers = compute_all_ledgers(db, shift_date)
        step = "reconciliation"
        reconciled = rebuild_reconciliation(db, shift_date, shift_date)
        if reconciled["error"] is not None:
            raise DerivationFailed(reconciled["error"]["message"], shift_date)
    except Exception as exc:
        db.rollback()
        logger.error("shift %s failed at %s: %s", shift_date, step, exc)
        return {
            "shift_date": shift_date.isoformat(),
            "ok": False,
            "step": step,
            "error": error_payload(exc),
        }
    return {
        "shift_date": shift_date.isoformat(),
        "ok": True,
        "step": None,
        "error": None,
        "items_created": derived["items_created"],
        "ledgers": {kind: entry.status for kind, entry in ledgers.items()},
        "reconciliation": reconciled["statuses"].get(shift_date.isoformat()),
    }


def backfill(
    db: Session,
    start_day: ShiftDayLike,
    end_day: ShiftDayLike,
    pos_sync: Optional[PosSync] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> dict:
    start = parse_shift_day(start_day)
    end = parse_shift_day(end_day)
    if end < start:
        raise ValueError("end_day must not be before start_day")
    days = []
    cancelled = False
    for shift_date in iter_shift_days(start, end):
        if should_stop is not None and should_stop():
            cancelled = True
            logger.info("backfill cancelled before %s", shift_date)
            break
        days.append(run_shift_pipeline(db, shift_date, pos_sync))
    failed = [day for day in days if not day["ok"]]
    logger.info(
        "backfill %s..%s: %d ok, %d failed%s",
        start,
        end,
        len(days) - len(failed),
        len(failed),
        " (cancelled)" if cancelled else "",
    )
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "days": days,
        "succeeded": len(days) - len(failed),
        "failed": len(failed),
        "cancelled": cancelled,
    }
