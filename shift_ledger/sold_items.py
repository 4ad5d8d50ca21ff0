from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Optional, Union

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from shift_ledger.config import settings
from shift_ledger.errors import MissingMapping, error_payload
from shift_ledger.locks import shift_lock
from shift_ledger.models import (
    Receipt,
    ReceiptLineItem,
    ReceiptModifier,
    RecipeSkuMap,
    SoldItem,
    SoldItemModifier,
)
from shift_ledger.runs import record_run
from shift_ledger.shift_window import ShiftDayLike, parse_shift_day, resolve_shift_day, shift_window

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class DiscountPolicy(str, Enum):
    NONE = "none"
    PRORATE = "prorate"
    FIRST_UNIT = "first_unit"


def allocate_discount(discount: Decimal, qty: int, policy: Union[DiscountPolicy, str]) -> list[Decimal]:
    policy = DiscountPolicy(policy)
    if qty <= 0:
        return []
    discount = Decimal(discount or 0)
    if policy is DiscountPolicy.NONE or discount == 0:
        return [Decimal("0")] * qty
    if policy is DiscountPolicy.FIRST_UNIT:
        return [discount] + [Decimal("0")] * (qty - 1)
    per_unit = (discount / qty).quantize(CENT, rounding=ROUND_DOWN)
    # Rounding remainder lands on the first unit.
    return [discount - per_unit * (qty - 1)] + [per_unit] * (qty - 1)


class RecipeResolver:
    def __init__(self, db: Session):
        self.db = db
        self._cache: dict[tuple[str, Optional[str]], Optional[int]] = {}

    def resolve(self, channel: str, sku: Optional[str]) -> Optional[int]:
        key = (channel, sku)
        if key not in self._cache:
            self._cache[key] = self._lookup(channel, sku)
        return self._cache[key]

    def _lookup(self, channel: str, sku: Optional[str]) -> Optional[int]:
        if not sku:
            return None
        row = self.db.execute(
            select(RecipeSkuMap.recipe_id).where(
                RecipeSkuMap.channel_sku == sku,
                RecipeSkuMap.channel.in_([channel, "*"]),
                RecipeSkuMap.active.is_(True),
            ).order_by(RecipeSkuMap.channel.desc(), RecipeSkuMap.id)
        ).first()
        return row[0] if row else None


def _clear_shift(db: Session, shift_date: date) -> None:
    sold_ids = select(SoldItem.id).where(SoldItem.shift_date == shift_date)
    db.execute(
        delete(SoldItemModifier).where(SoldItemModifier.sold_item_id.in_(sold_ids)),
        execution_options={"synchronize_session": False},
    )
    db.execute(
        delete(SoldItem).where(SoldItem.shift_date == shift_date),
        execution_options={"synchronize_session": False},
    )


def _replace_shift(
    db: Session,
    shift_date: date,
    lines: list[tuple[ReceiptLineItem, Receipt]],
    policy: DiscountPolicy,
    resolver: RecipeResolver,
) -> tuple[int, int]:
    _clear_shift(db, shift_date)
    modifiers_by_line: dict[int, list[ReceiptModifier]] = defaultdict(list)
    line_ids = [line.id for line, _ in lines]
    if line_ids:
        rows = db.execute(
            select(ReceiptModifier)
            .where(ReceiptModifier.line_item_id.in_(line_ids))
            .order_by(ReceiptModifier.id)
        ).scalars()
        for modifier in rows:
            modifiers_by_line[modifier.line_item_id].append(modifier)

    created = 0
    unmapped = 0
    for line, receipt in lines:
        recipe_id = resolver.resolve(receipt.channel, line.sku)
        if recipe_id is None:
            unmapped += line.qty
            logger.warning("%s", MissingMapping(receipt.channel, line.sku, shift_date))
        unit_price = Decimal(line.unit_price)
        discounts = allocate_discount(line.discount_amount, line.qty, policy)
        for unit_index, unit_discount in enumerate(discounts):
            sold = SoldItem(
                receipt_id=receipt.id,
                receipt_line_item_id=line.id,
                unit_index=unit_index,
                sold_at=receipt.created_at,
                shift_date=shift_date,
                channel=receipt.channel,
                external_sku=line.sku,
                recipe_id=recipe_id,
                unit_price=unit_price,
                gross_amount=unit_price,
                discount_amount=unit_discount,
                net_amount=unit_price - unit_discount,
            )
            db.add(sold)
            db.flush()
            for modifier in modifiers_by_line.get(line.id, []):
                db.add(
                    SoldItemModifier(
                        sold_item_id=sold.id,
                        name=modifier.name,
                        price_delta=modifier.price_delta,
                    )
                )
            created += 1
    return created, unmapped


def derive_sold_items(
    db: Session,
    start_day: ShiftDayLike,
    end_day: Optional[ShiftDayLike] = None,
    discount_policy: Union[DiscountPolicy, str, None] = None,
) -> dict:
    start = parse_shift_day(start_day)
    end = parse_shift_day(end_day) if end_day is not None else start
    if end < start:
        raise ValueError("end_day must not be before start_day")
    policy = DiscountPolicy(discount_policy or settings.discount_policy)

    window_start, _ = shift_window(start)
    _, window_end = shift_window(end)
    rows = db.execute(
        select(ReceiptLineItem, Receipt)
        .join(Receipt, ReceiptLineItem.receipt_id == Receipt.id)
        .where(Receipt.created_at >= window_start, Receipt.created_at < window_end)
        .order_by(Receipt.created_at, Receipt.id, ReceiptLineItem.id)
    ).all()
    grouped: dict[date, list[tuple[ReceiptLineItem, Receipt]]] = defaultdict(list)
    for line, receipt in rows:
        grouped[resolve_shift_day(receipt.created_at)].append((line, receipt))

    # Days whose receipts disappeared still get cleared.
    stale_days = db.execute(
        select(SoldItem.shift_date).where(SoldItem.shift_date.between(start, end)).distinct()
    ).scalars().all()
    shift_days = sorted(set(grouped) | set(stale_days))

    resolver = RecipeResolver(db)
    result = {
        "shifts_processed": 0,
        "items_created": 0,
        "unmapped_items": 0,
        "shift_dates": [],
        "failed_shift": None,
        "error": None,
    }
    for shift_date in shift_days:
        with shift_lock("sold_items", shift_date):
            try:
                created, unmapped = _replace_shift(
                    db, shift_date, grouped.get(shift_date, []), policy, resolver
                )
                db.commit()
            except Exception as exc:
                db.rollback()
                logger.exception("sold item derivation failed for %s", shift_date)
                record_run(db, "sold_items", shift_date, error=exc)
                result["failed_shift"] = shift_date.isoformat()
                result["error"] = error_payload(exc)
                return result
            record_run(
                db,
                "sold_items",
                shift_date,
                metadata={"items_created": created, "unmapped_items": unmapped},
            )
        logger.info(
            "derived %d sold items for %s (%d unmapped)", created, shift_date, unmapped
        )
        result["shifts_processed"] += 1
        result["items_created"] += created
        result["unmapped_items"] += unmapped
        result["shift_dates"].append(shift_date.isoformat())
    return result
