from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from shift_ledger.errors import error_payload
from shift_ledger.models import ShiftRun

STEPS = ("ingest", "sold_items", "ledger:rolls", "ledger:meat", "ledger:drinks", "reconciliation")


def record_run(
    db: Session,
    step: str,
    shift_date: date,
    error: Optional[BaseException] = None,
    metadata: Optional[dict] = None,
) -> ShiftRun:
    row = db.execute(
        select(ShiftRun).where(ShiftRun.step == step, ShiftRun.shift_date == shift_date)
    ).scalars().first()
    if row is None:
        row = ShiftRun(step=step, shift_date=shift_date)
        db.add(row)
    row.status = "FAILED" if error is not None else "OK"
    row.error_code = error_payload(error)["code"] if error is not None else None
    row.error = str(error) if error is not None else None
    row.metadata_json = metadata
    row.finished_at = datetime.now(timezone.utc)
    db.commit()
    return row


def runs_for_shift(db: Session, shift_date: date) -> dict[str, ShiftRun]:
    rows = db.execute(select(ShiftRun).where(ShiftRun.shift_date == shift_date)).scalars().all()
    return {row.step: row for row in rows}


def step_state(runs: dict[str, ShiftRun], step: str) -> str:
    run = runs.get(step)
    if run is None:
        return "NOT_COMPUTED"
    return "FAILED" if run.status == "FAILED" else "COMPUTED"


def clear_run(db: Session, step: str, shift_date: date) -> None:
    db.execute(
        delete(ShiftRun).where(ShiftRun.step == step, ShiftRun.shift_date == shift_date),
        execution_options={"synchronize_session": False},
    )
    db.commit()
