from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from shift_ledger.models import Receipt, ReceiptLineItem, ReceiptModifier
from shift_ledger.shift_window import as_utc

logger = logging.getLogger(__name__)

CHANNELS = {"IN_STORE", "GRAB", "FOODPANDA", "LINE_MAN", "ONLINE"}


class ModifierInput(BaseModel):
    name: str
    price_delta: Decimal = Decimal("0")


class LineItemInput(BaseModel):
    external_line_id: Optional[str] = None
    sku: Optional[str] = None
    item_name: Optional[str] = None
    category: Optional[str] = None
    qty: int = Field(default=1, ge=0)
    unit_price: Decimal
    discount_amount: Decimal = Decimal("0")
    net_amount: Optional[Decimal] = None
    modifiers: list[ModifierInput] = Field(default_factory=list)


class ReceiptInput(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "external_receipt_id": "LV-4-1057",
                "receipt_number": "4-1057",
                "channel": "IN_STORE",
                "created_at": "2025-10-19T20:05:00+07:00",
                "total_amount": 418.0,
                "discount_amount": 0.0,
                "line_items": [
                    {
                        "external_line_id": "L1",
                        "sku": "10004",
                        "item_name": "Single Smash Burger",
                        "category": "burger",
                        "qty": 2,
                        "unit_price": 189.0,
                        "modifiers": [{"name": "Extra Cheese", "price_delta": 20.0}],
                    }
                ],
            }
        }
    }
    external_receipt_id: str
    receipt_number: Optional[str] = None
    channel: str = "IN_STORE"
    created_at: datetime
    total_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    line_items: list[LineItemInput] = Field(default_factory=list)
    raw_payload: Optional[dict] = None


def _pick(payload: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def _money(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def normalize_channel(value: Optional[str]) -> str:
    if not value:
        return "IN_STORE"
    channel = str(value).strip().upper().replace(" ", "_")
    return channel if channel in CHANNELS else "OTHER"


def _normalize_modifier(payload: dict) -> ModifierInput:
    return ModifierInput(
        name=str(_pick(payload, "name", "option", "modifier_name", default="")),
        price_delta=_money(_pick(payload, "price_delta", "priceDelta", "money_amount", "price")),
    )


def _normalize_line(payload: dict) -> LineItemInput:
    modifiers = _pick(payload, "modifiers", "line_modifiers", default=[]) or []
    net = _pick(payload, "net_amount", "netAmount", "total_money", "total")
    return LineItemInput(
        external_line_id=_pick(payload, "external_line_id", "id", "line_id"),
        sku=_pick(payload, "sku", "external_sku", "item_sku"),
        item_name=_pick(payload, "item_name", "name"),
        category=_pick(payload, "category", "category_name"),
        qty=int(Decimal(str(_pick(payload, "qty", "quantity", default=1)))),
        unit_price=_money(_pick(payload, "unit_price", "unitPrice", "price")),
        discount_amount=_money(_pick(payload, "discount_amount", "total_discount", "discount")),
        net_amount=_money(net) if net is not None else None,
        modifiers=[_normalize_modifier(mod) for mod in modifiers if isinstance(mod, dict)],
    )


def normalize_receipt_payload(payload: dict) -> ReceiptInput:
    external_id = _pick(payload, "external_receipt_id", "receipt_id", "id", "receipt_number")
    if external_id is None:
        raise ValueError("receipt payload has no identifier")
    created_at = _pick(payload, "created_at", "datetime", "createdAtUTC", "receipt_date")
    if created_at is None:
        raise ValueError(f"receipt {external_id} has no timestamp")
    lines = _pick(payload, "line_items", "items", "lineItems", default=[]) or []
    return ReceiptInput(
        external_receipt_id=str(external_id),
        receipt_number=_pick(payload, "receipt_number", "number"),
        channel=normalize_channel(_pick(payload, "channel", "dining_option", "source")),
        created_at=created_at,
        total_amount=_money(_pick(payload, "total_amount", "total_money", "total")),
        discount_amount=_money(_pick(payload, "discount_amount", "total_discount", "discount_money")),
        line_items=[_normalize_line(line) for line in lines if isinstance(line, dict)],
        raw_payload=payload,
    )


def upsert_receipts(db: Session, receipts: Iterable[ReceiptInput], source_system: str) -> dict:
    inserted = 0
    skipped = 0
    line_count = 0
    modifier_count = 0
    now = datetime.now(timezone.utc)
    for receipt_payload in receipts:
        existing = db.execute(
            select(Receipt.id).where(
                Receipt.source_system == source_system,
                Receipt.external_receipt_id == receipt_payload.external_receipt_id,
            )
        ).first()
        if existing:
            skipped += 1
            continue
        receipt = Receipt(
            source_system=source_system,
            external_receipt_id=receipt_payload.external_receipt_id,
            receipt_number=receipt_payload.receipt_number,
            channel=receipt_payload.channel,
            created_at=as_utc(receipt_payload.created_at),
            total_amount=receipt_payload.total_amount,
            discount_amount=receipt_payload.discount_amount,
            raw_payload=receipt_payload.raw_payload,
            ingested_at=now,
        )
        db.add(receipt)
        db.flush()
        for line in receipt_payload.line_items:
            line_item = ReceiptLineItem(
                receipt_id=receipt.id,
                external_line_id=line.external_line_id,
                sku=line.sku,
                item_name=line.item_name,
                category=line.category,
                qty=line.qty,
                unit_price=line.unit_price,
                discount_amount=line.discount_amount,
                net_amount=line.net_amount,
            )
            db.add(line_item)
            db.flush()
            line_count += 1
            for modifier in line.modifiers:
                db.add(
                    ReceiptModifier(
                        line_item_id=line_item.id,
                        name=modifier.name,
                        price_delta=modifier.price_delta,
                    )
                )
                modifier_count += 1
        inserted += 1
    db.commit()
    logger.info(
        "receipts from %s: %d inserted, %d already known", source_system, inserted, skipped
    )
    return {
        "inserted": inserted,
        "skipped": skipped,
        "line_items": line_count,
        "modifiers": modifier_count,
    }
