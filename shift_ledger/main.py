from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from shift_ledger.audit import data_freshness, list_ingestion_audits, serialize_audit
from shift_ledger.backfill import PosSync, backfill, ensure_shift
from shift_ledger.config import settings
from shift_ledger.db import SessionLocal
from shift_ledger.errors import (
    ExternalSourceFailure,
    InvariantViolation,
    ShiftLedgerError,
    error_payload,
)
from shift_ledger.ingestion import normalize_receipt_payload, upsert_receipts
from shift_ledger.ledgers import (
    LEDGER_KINDS,
    approve_ledger,
    compute_and_upsert_ledger,
    confirm_baseline,
    get_entry,
    get_ledger_range,
    serialize_ledger,
    update_ledger_manual,
)
from shift_ledger.logging_config import configure_logging
from shift_ledger.reconciliation import (
    get_reconciliation,
    rebuild_reconciliation,
    serialize_reconciliation,
)
from shift_ledger.runs import runs_for_shift, step_state
from shift_ledger.shift_window import resolve_shift_day, shift_window
from shift_ledger.sold_items import DiscountPolicy, derive_sold_items
from shift_ledger.stock_variance import compute_shift_variance

configure_logging(settings.log_level)

app = FastAPI(title="Shift Ledger")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_pos_sync() -> Optional[PosSync]:
    # Deployments override this dependency with their POS client.
    return None


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ExternalSourceFailure):
        status_code = 502
    elif isinstance(exc, InvariantViolation):
        status_code = 500
    elif isinstance(exc, ShiftLedgerError):
        status_code = 409
    elif isinstance(exc, LookupError):
        status_code = 404
    else:
        status_code = 422
    return HTTPException(status_code=status_code, detail=error_payload(exc))


def _check_kind(kind: str) -> None:
    if kind not in LEDGER_KINDS:
        raise HTTPException(status_code=404, detail="ledger kind not found")


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.get("/api/v1/shift-days/resolve", tags=["Shift Days"])
def resolve_shift_day_route(at: datetime) -> dict:
    shift_date = resolve_shift_day(at)
    starts_at, ends_at = shift_window(shift_date)
    return {
        "data": {
            "shift_date": shift_date.isoformat(),
            "starts_at": starts_at.isoformat(),
            "ends_at": ends_at.isoformat(),
        },
        "meta": _meta(),
    }


class ReceiptBulkUpsert(BaseModel):
    model_config = {"json_schema_extra": {"example": {'source_system': 'loyverse', 'receipts': [{'receipt_number': '4-1057', 'created_at': '2025-10-19T13:05:00Z', 'line_items': [{'sku': '10004', 'quantity': 2, 'price': 189.0, 'line_modifiers': [{'name': 'Extra Cheese', 'money_amount': 20.0}]}]}]}}}
    source_system: str
    receipts: list[dict]


@app.post("/api/v1/ingest/pos/receipts:bulkUpsert", tags=["Ingestion - POS Receipts"])
def bulk_upsert_receipts(payload: ReceiptBulkUpsert, db: Session = Depends(get_db)) -> dict:
    receipts = []
    warnings: list[str] = []
    for index, raw in enumerate(payload.receipts):
        try:
            receipts.append(normalize_receipt_payload(raw))
        except ValueError as exc:
            warnings.append(f"receipt[{index}]: {exc}")
    counts = upsert_receipts(db, receipts, payload.source_system)
    counts["rejected"] = len(warnings)
    return {"data": counts, "meta": _meta(warnings=warnings)}


class SoldItemDerive(BaseModel):
    model_config = {"json_schema_extra": {"example": {'start_date': '2025-10-18', 'end_date': '2025-10-19', 'discount_policy': 'none'}}}
    start_date: date
    end_date: Optional[date] = None
    discount_policy: Optional[DiscountPolicy] = None


@app.post("/api/v1/sold-items:derive", tags=["Sold Items"])
def derive_sold_items_route(payload: SoldItemDerive, db: Session = Depends(get_db)) -> dict:
    try:
        result = derive_sold_items(db, payload.start_date, payload.end_date, payload.discount_policy)
    except ValueError as exc:
        raise _http_error(exc)
    return {"data": result, "meta": _meta()}


class ShiftDateInput(BaseModel):
    model_config = {"json_schema_extra": {"example": {'shift_date': '2025-10-19'}}}
    shift_date: date


@app.post("/api/v1/ledgers/{kind}:compute", tags=["Ledgers"])
def compute_ledger(kind: str, payload: ShiftDateInput, db: Session = Depends(get_db)) -> dict:
    _check_kind(kind)
    try:
        entry = compute_and_upsert_ledger(db, kind, payload.shift_date)
    except (ShiftLedgerError, ValueError) as exc:
        raise _http_error(exc)
    return {"data": serialize_ledger(entry), "meta": _meta()}


@app.get("/api/v1/ledgers/{kind}", tags=["Ledgers"])
def list_ledger(
    kind: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
) -> dict:
    _check_kind(kind)
    return {"data": get_ledger_range(db, kind, start_date, end_date), "meta": _meta()}


class LedgerManualUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'purchased_manual': 100, 'actual_end_manual': 28, 'notes': 'recounted by manager'}}}
    purchased_manual: Optional[Decimal] = None
    actual_end_manual: Optional[Decimal] = None
    notes: Optional[str] = None


@app.put("/api/v1/ledgers/{kind}/{shift_date}/manual", tags=["Ledgers"])
def update_ledger_manual_route(
    kind: str,
    shift_date: date,
    payload: LedgerManualUpdate,
    db: Session = Depends(get_db),
) -> dict:
    _check_kind(kind)
    try:
        entry = update_ledger_manual(
            db, kind, shift_date, payload.purchased_manual, payload.actual_end_manual, payload.notes
        )
    except LookupError as exc:
        raise _http_error(exc)
    return {"data": serialize_ledger(entry), "meta": _meta()}


class BaselineConfirm(BaseModel):
    model_config = {"json_schema_extra": {"example": {'starting': 50}}}
    starting: Decimal = Field(ge=0)


@app.post("/api/v1/ledgers/{kind}/{shift_date}:confirmBaseline", tags=["Ledgers"])
def confirm_baseline_route(
    kind: str,
    shift_date: date,
    payload: BaselineConfirm,
    db: Session = Depends(get_db),
) -> dict:
    _check_kind(kind)
    try:
        entry = confirm_baseline(db, kind, shift_date, payload.starting)
    except LookupError as exc:
        raise _http_error(exc)
    return {"data": serialize_ledger(entry), "meta": _meta()}


@app.post("/api/v1/ledgers/{kind}/{shift_date}:approve", tags=["Ledgers"])
def approve_ledger_route(kind: str, shift_date: date, db: Session = Depends(get_db)) -> dict:
    _check_kind(kind)
    try:
        entry = approve_ledger(db, kind, shift_date)
    except LookupError as exc:
        raise _http_error(exc)
    return {"data": serialize_ledger(entry), "meta": _meta()}


class ReconciliationRebuild(BaseModel):
    model_config = {"json_schema_extra": {"example": {'start_date': '2025-10-01', 'end_date': '2025-10-19'}}}
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    warning_threshold: Optional[Decimal] = None
    fail_threshold: Optional[Decimal] = None


@app.post("/api/v1/reconciliation:rebuild", tags=["Reconciliation"])
def rebuild_reconciliation_route(payload: ReconciliationRebuild, db: Session = Depends(get_db)) -> dict:
    result = rebuild_reconciliation(
        db,
        payload.start_date,
        payload.end_date,
        payload.warning_threshold,
        payload.fail_threshold,
    )
    return {"data": result, "meta": _meta()}


@app.get("/api/v1/reconciliation/{shift_date}", tags=["Reconciliation"])
def get_reconciliation_route(shift_date: date, db: Session = Depends(get_db)) -> dict:
    record = get_reconciliation(db, shift_date)
    if not record:
        raise HTTPException(status_code=404, detail="reconciliation not found")
    return {"data": serialize_reconciliation(record), "meta": _meta()}


@app.get("/api/v1/stock-variance/{shift_date}", tags=["Stock Variance"])
def stock_variance_route(shift_date: date, db: Session = Depends(get_db)) -> dict:
    rows = [
        {
            "name": row["name"],
            "expected": float(row["expected"]),
            "used": float(row["used"]),
            "variance": float(row["variance"]),
            "severity": row["severity"],
        }
        for row in compute_shift_variance(db, shift_date)
    ]
    return {"data": rows, "meta": _meta()}


@app.post("/api/v1/shifts:ensure", tags=["Shifts"])
def ensure_shift_route(
    payload: ShiftDateInput,
    db: Session = Depends(get_db),
    pos_sync: Optional[PosSync] = Depends(get_pos_sync),
) -> dict:
    try:
        result = ensure_shift(db, payload.shift_date, pos_sync)
    except ShiftLedgerError as exc:
        raise _http_error(exc)
    return {"data": result, "meta": _meta()}


class BackfillRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {'start_date': '2025-10-01', 'end_date': '2025-10-07'}}}
    start_date: date
    end_date: date


@app.post("/api/v1/shifts:backfill", tags=["Shifts"])
def backfill_route(
    payload: BackfillRequest,
    db: Session = Depends(get_db),
    pos_sync: Optional[PosSync] = Depends(get_pos_sync),
) -> dict:
    try:
        result = backfill(db, payload.start_date, payload.end_date, pos_sync)
    except ValueError as exc:
        raise _http_error(exc)
    warnings = [f"{day['shift_date']}: {day['error']['code']}" for day in result["days"] if not day["ok"]]
    return {"data": result, "meta": _meta(warnings=warnings)}


@app.get("/api/v1/ingestion/freshness", tags=["Ingestion Audit"])
def ingestion_freshness(db: Session = Depends(get_db)) -> dict:
    return {"data": data_freshness(db, datetime.now(timezone.utc)), "meta": _meta()}


@app.get("/api/v1/ingestion/audits", tags=["Ingestion Audit"])
def list_audits(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)) -> dict:
    return {"data": [serialize_audit(row) for row in list_ingestion_audits(db, limit)], "meta": _meta()}


@app.get("/api/v1/daily-state", tags=["Daily State"])
def get_daily_state(shift_date: date = Query(...), db: Session = Depends(get_db)) -> dict:
    runs = runs_for_shift(db, shift_date)
    ledgers = {}
    for kind in LEDGER_KINDS:
        state = step_state(runs, f"ledger:{kind}")
        entry = get_entry(db, kind, shift_date) if state == "COMPUTED" else None
        ledgers[kind] = {
            "state": state,
            "error": runs[f"ledger:{kind}"].error if state == "FAILED" else None,
            "ledger": serialize_ledger(entry) if entry else None,
        }
    reconciliation_state = step_state(runs, "reconciliation")
    record = get_reconciliation(db, shift_date) if reconciliation_state == "COMPUTED" else None
    starts_at, ends_at = shift_window(shift_date)
    return {
        "data": {
            "shift_date": shift_date.isoformat(),
            "starts_at": starts_at.isoformat(),
            "ends_at": ends_at.isoformat(),
            "sold_items": {"state": step_state(runs, "sold_items")},
            "ledgers": ledgers,
            "reconciliation": {
                "state": reconciliation_state,
                "error": runs["reconciliation"].error if reconciliation_state == "FAILED" else None,
                "record": serialize_reconciliation(record) if record else None,
            },
        },
        "meta": _meta(),
    }
