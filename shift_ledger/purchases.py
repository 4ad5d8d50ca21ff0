from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from shift_ledger.models import StockPurchase

STOCK_KINDS = ("rolls", "meat", "drinks")


def _purchased(db: Session, stock_kind: str, shift_date: date) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(StockPurchase.qty), 0)).where(
            StockPurchase.stock_kind == stock_kind,
            StockPurchase.shift_date == shift_date,
        )
    ).scalar()
    return Decimal(str(total or 0))


def get_rolls_purchases(db: Session, shift_date: date) -> Decimal:
    return _purchased(db, "rolls", shift_date)


def get_meat_purchases(db: Session, shift_date: date) -> Decimal:
    return _purchased(db, "meat", shift_date)


def get_drinks_purchases(db: Session, shift_date: date) -> Decimal:
    return _purchased(db, "drinks", shift_date)


PURCHASE_ADAPTERS = {
    "rolls": get_rolls_purchases,
    "meat": get_meat_purchases,
    "drinks": get_drinks_purchases,
}
