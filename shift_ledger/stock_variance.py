from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from shift_ledger.config import settings
from shift_ledger.models import StockConsumptionEvent, StockItem
from shift_ledger.shift_window import ShiftDayLike, shift_window


def classify_severity(
    variance: Decimal,
    green_limit: Optional[Decimal] = None,
    yellow_limit: Optional[Decimal] = None,
) -> str:
    green_limit = Decimal(green_limit if green_limit is not None else settings.variance_green_limit)
    yellow_limit = Decimal(yellow_limit if yellow_limit is not None else settings.variance_yellow_limit)
    magnitude = abs(variance)
    if magnitude <= green_limit:
        return "green"
    if magnitude <= yellow_limit:
        return "yellow"
    return "red"


def compute_shift_variance(
    db: Session,
    shift_day: ShiftDayLike,
    green_limit: Optional[Decimal] = None,
    yellow_limit: Optional[Decimal] = None,
) -> list[dict]:
    window_start, window_end = shift_window(shift_day)
    rows = db.execute(
        select(StockItem.id, StockItem.name, StockItem.quantity, StockConsumptionEvent.delta)
        .join(StockConsumptionEvent, StockConsumptionEvent.stock_item_id == StockItem.id)
        .where(
            StockConsumptionEvent.occurred_at >= window_start,
            StockConsumptionEvent.occurred_at < window_end,
        )
    ).all()

    per_item: dict[int, dict] = {}
    for item_id, name, quantity, delta in rows:
        entry = per_item.setdefault(
            item_id,
            {"name": name, "expected": Decimal(str(quantity or 0)), "used": Decimal("0")},
        )
        delta = Decimal(str(delta))
        if delta < 0:
            entry["used"] += -delta

    report = []
    for entry in per_item.values():
        variance = entry["used"] - entry["expected"]
        report.append(
            {
                "name": entry["name"],
                "expected": entry["expected"],
                "used": entry["used"],
                "variance": variance,
                "severity": classify_severity(variance, green_limit, yellow_limit),
            }
        )
    report.sort(key=lambda row: (-row["variance"], row["name"]))
    return report
