from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shift_ledger.config import settings
from shift_ledger.errors import InvariantViolation
from shift_ledger.locks import shift_lock
from shift_ledger.models import LedgerEntry, RecipeComponent, ShiftSubmission, SoldItem
from shift_ledger.purchases import get_drinks_purchases, get_meat_purchases, get_rolls_purchases
from shift_ledger.runs import record_run
from shift_ledger.shift_window import ShiftDayLike, as_utc, parse_shift_day, shift_window

logger = logging.getLogger(__name__)

BASELINE_KNOWN = "KNOWN"
BASELINE_UNKNOWN = "UNKNOWN"
BASELINE_CONFIRMED = "CONFIRMED"

STATUS_PENDING = "PENDING"
STATUS_UNKNOWN_BASELINE = "UNKNOWN_BASELINE"
STATUS_OK = "OK"
STATUS_ALERT = "ALERT"


@dataclass(frozen=True)
class LedgerKind:
    name: str
    ingredient: str
    declared_field: str
    waste_setting: str
    purchases: Callable[[Session, date], Decimal]
    multiplier_setting: Optional[str] = None

    def multiplier(self) -> Decimal:
        if self.multiplier_setting is None:
            return Decimal("1")
        return Decimal(getattr(settings, self.multiplier_setting))

    def waste_allowance(self) -> Decimal:
        return Decimal(getattr(settings, self.waste_setting))


LEDGER_KINDS: dict[str, LedgerKind] = {
    "rolls": LedgerKind(
        name="rolls",
        ingredient="bun",
        declared_field="rolls_end",
        waste_setting="rolls_waste_allowance",
        purchases=get_rolls_purchases,
    ),
    "meat": LedgerKind(
        name="meat",
        ingredient="patty",
        declared_field="meat_end_g",
        waste_setting="meat_waste_allowance_g",
        purchases=get_meat_purchases,
        multiplier_setting="meat_grams_per_patty",
    ),
    "drinks": LedgerKind(
        name="drinks",
        ingredient="drink",
        declared_field="drinks_end",
        waste_setting="drinks_waste_allowance",
        purchases=get_drinks_purchases,
    ),
}


def get_kind(kind: str) -> LedgerKind:
    try:
        return LEDGER_KINDS[kind]
    except KeyError:
        raise ValueError(f"unknown ledger kind: {kind}") from None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def to_float(value) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def latest_submission(db: Session, shift_date: date) -> Optional[ShiftSubmission]:
    return db.execute(
        select(ShiftSubmission)
        .where(ShiftSubmission.shift_date == shift_date, ShiftSubmission.deleted_at.is_(None))
        .order_by(ShiftSubmission.created_at.desc(), ShiftSubmission.id.desc())
        .limit(1)
    ).scalars().first()


def get_entry(db: Session, kind: str, shift_date: date) -> Optional[LedgerEntry]:
    rows = db.execute(
        select(LedgerEntry).where(LedgerEntry.kind == kind, LedgerEntry.shift_date == shift_date)
    ).scalars().all()
    if len(rows) > 1:
        logger.critical(
            "%d %s ledger rows for %s; the write path is not idempotent",
            len(rows),
            kind,
            shift_date,
        )
        raise InvariantViolation(
            f"{len(rows)} {kind} ledger rows for {shift_date.isoformat()}", shift_date
        )
    return rows[0] if rows else None


def estimate_consumption(db: Session, kind: LedgerKind, shift_date: date) -> tuple[Decimal, int, int]:
    per_recipe = dict(
        db.execute(
            select(RecipeComponent.recipe_id, func.sum(RecipeComponent.qty_per_unit))
            .where(RecipeComponent.ingredient == kind.ingredient)
            .group_by(RecipeComponent.recipe_id)
        ).all()
    )
    sold = db.execute(
        select(SoldItem.recipe_id, func.count(SoldItem.id))
        .where(SoldItem.shift_date == shift_date)
        .group_by(SoldItem.recipe_id)
    ).all()
    estimated = Decimal("0")
    units_sold = 0
    unmapped = 0
    for recipe_id, count in sold:
        if recipe_id is None:
            unmapped += count
            continue
        qty = per_recipe.get(recipe_id)
        if not qty:
            continue
        estimated += _decimal(qty) * count
        units_sold += count
    return estimated * kind.multiplier(), units_sold, unmapped


def _previous_end(db: Session, kind: LedgerKind, shift_date: date) -> Optional[Decimal]:
    previous_day = shift_date - timedelta(days=1)
    previous = get_entry(db, kind.name, previous_day)
    if previous is not None:
        previous_end = effective_actual_end(previous)
        if previous_end is not None:
            return previous_end
    submission = latest_submission(db, previous_day)
    if submission is not None:
        return _decimal(getattr(submission, kind.declared_field))
    return None


def effective_starting(entry: LedgerEntry) -> Decimal:
    if entry.starting_manual is not None:
        return _decimal(entry.starting_manual)
    return _decimal(entry.starting_implied) or Decimal("0")


def effective_purchased(entry: LedgerEntry) -> Decimal:
    if entry.purchased_manual is not None:
        return _decimal(entry.purchased_manual)
    return _decimal(entry.purchased) or Decimal("0")


def effective_actual_end(entry: LedgerEntry) -> Optional[Decimal]:
    if entry.actual_end_manual is not None:
        return _decimal(entry.actual_end_manual)
    return _decimal(entry.actual_end)


def _recompute(entry: LedgerEntry) -> None:
    actual_end = effective_actual_end(entry)
    if actual_end is None:
        entry.variance = None
        entry.status = STATUS_PENDING
        return
    entry.variance = (
        effective_starting(entry) + effective_purchased(entry) - _decimal(entry.estimated) - actual_end
    )
    if entry.baseline_status == BASELINE_UNKNOWN:
        entry.status = STATUS_UNKNOWN_BASELINE
    elif abs(entry.variance) <= _decimal(entry.waste_allowance):
        entry.status = STATUS_OK
    else:
        entry.status = STATUS_ALERT


def _upsert(db: Session, kind: LedgerKind, shift_date: date) -> LedgerEntry:
    estimated, units_sold, unmapped = estimate_consumption(db, kind, shift_date)
    purchased = kind.purchases(db, shift_date)
    submission = latest_submission(db, shift_date)
    declared_end = _decimal(getattr(submission, kind.declared_field)) if submission else None
    previous_end = _previous_end(db, kind, shift_date)

    now = _now()
    entry = get_entry(db, kind.name, shift_date)
    if entry is None:
        entry = LedgerEntry(kind=kind.name, shift_date=shift_date, created_at=now)
        db.add(entry)
    entry.estimated = estimated
    entry.units_sold = units_sold
    entry.unmapped_items = unmapped
    entry.purchased = purchased
    entry.actual_end = declared_end
    entry.waste_allowance = kind.waste_allowance()
    if entry.starting_manual is not None:
        entry.baseline_status = BASELINE_CONFIRMED
        entry.starting_implied = previous_end if previous_end is not None else Decimal("0")
    elif previous_end is None:
        entry.baseline_status = BASELINE_UNKNOWN
        entry.starting_implied = Decimal("0")
    else:
        entry.baseline_status = BASELINE_KNOWN
        entry.starting_implied = previous_end
    _recompute(entry)
    entry.updated_at = now
    db.commit()
    return entry


def compute_and_upsert_ledger(db: Session, kind: str, shift_day: ShiftDayLike) -> LedgerEntry:
    ledger_kind = get_kind(kind)
    shift_date = parse_shift_day(shift_day)
    step = f"ledger:{ledger_kind.name}"
    with shift_lock(step, shift_date):
        try:
            try:
                entry = _upsert(db, ledger_kind, shift_date)
            except IntegrityError:
                # Another process inserted the row first; update it instead.
                db.rollback()
                entry = _upsert(db, ledger_kind, shift_date)
        except Exception as exc:
            db.rollback()
            logger.error("%s ledger failed for %s: %s", ledger_kind.name, shift_date, exc)
            record_run(db, step, shift_date, error=exc)
            raise
        record_run(db, step, shift_date, metadata={"status": entry.status})
        db.refresh(entry)
    if entry.unmapped_items:
        logger.warning(
            "%s ledger %s: %d sold items without recipe mapping",
            ledger_kind.name,
            shift_date,
            entry.unmapped_items,
        )
    logger.info(
        "%s ledger %s: start=%s purchased=%s estimated=%s actual_end=%s variance=%s status=%s",
        ledger_kind.name,
        shift_date,
        effective_starting(entry),
        effective_purchased(entry),
        entry.estimated,
        effective_actual_end(entry),
        entry.variance,
        entry.status,
    )
    return entry


def compute_all_ledgers(db: Session, shift_day: ShiftDayLike) -> dict[str, LedgerEntry]:
    return {name: compute_and_upsert_ledger(db, name, shift_day) for name in LEDGER_KINDS}


def _require_entry(db: Session, kind: str, shift_date: date) -> LedgerEntry:
    entry = get_entry(db, get_kind(kind).name, shift_date)
    if entry is None:
        raise LookupError(f"no {kind} ledger for {shift_date.isoformat()}")
    return entry


def update_ledger_manual(
    db: Session,
    kind: str,
    shift_day: ShiftDayLike,
    purchased_manual: Optional[Decimal],
    actual_end_manual: Optional[Decimal],
    notes: Optional[str],
) -> LedgerEntry:
    shift_date = parse_shift_day(shift_day)
    with shift_lock(f"ledger:{kind}", shift_date):
        entry = _require_entry(db, kind, shift_date)
        entry.purchased_manual = purchased_manual
        entry.actual_end_manual = actual_end_manual
        entry.notes = notes
        _recompute(entry)
        entry.updated_at = _now()
        db.commit()
    db.refresh(entry)
    return entry


def confirm_baseline(db: Session, kind: str, shift_day: ShiftDayLike, starting: Decimal) -> LedgerEntry:
    shift_date = parse_shift_day(shift_day)
    with shift_lock(f"ledger:{kind}", shift_date):
        entry = _require_entry(db, kind, shift_date)
        entry.starting_manual = starting
        entry.baseline_status = BASELINE_CONFIRMED
        _recompute(entry)
        entry.updated_at = _now()
        db.commit()
    db.refresh(entry)
    logger.info("%s ledger %s: baseline confirmed at %s", kind, shift_date, starting)
    return entry


def approve_ledger(db: Session, kind: str, shift_day: ShiftDayLike) -> LedgerEntry:
    shift_date = parse_shift_day(shift_day)
    entry = _require_entry(db, kind, shift_date)
    entry.approved = True
    entry.updated_at = _now()
    db.commit()
    db.refresh(entry)
    return entry


def serialize_ledger(entry: LedgerEntry) -> dict:
    from_utc, to_utc = shift_window(entry.shift_date)
    return {
        "kind": entry.kind,
        "shift_date": entry.shift_date.isoformat(),
        "window": {"from": from_utc.isoformat(), "to": to_utc.isoformat()},
        "starting_implied": to_float(effective_starting(entry)),
        "baseline_status": entry.baseline_status,
        "purchased": to_float(effective_purchased(entry)),
        "units_sold": entry.units_sold,
        "estimated": to_float(entry.estimated),
        "actual_end": to_float(effective_actual_end(entry)),
        "variance": to_float(entry.variance),
        "waste_allowance": to_float(entry.waste_allowance),
        "status": entry.status,
        "unmapped_items": entry.unmapped_items,
        "approved": entry.approved,
        "purchased_manual": to_float(entry.purchased_manual),
        "actual_end_manual": to_float(entry.actual_end_manual),
        "notes": entry.notes,
        "updated_at": as_utc(entry.updated_at).isoformat(),
    }


def get_ledger_range(db: Session, kind: str, start_day: ShiftDayLike, end_day: ShiftDayLike) -> list[dict]:
    rows = db.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.kind == get_kind(kind).name,
            LedgerEntry.shift_date >= parse_shift_day(start_day),
            LedgerEntry.shift_date <= parse_shift_day(end_day),
        )
        .order_by(LedgerEntry.shift_date.desc())
    ).scalars().all()
    return [serialize_ledger(row) for row in rows]
