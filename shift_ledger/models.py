from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from shift_ledger.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


# ---------------------------------------------------------------------------
# Inputs owned by other subsystems (POS ingestion, forms, recipes, purchasing)
# ---------------------------------------------------------------------------


class Receipt(Base):
    __tablename__ = "receipt"
    __table_args__ = (
        UniqueConstraint("source_system", "external_receipt_id", name="uq_receipt_source_external"),
        Index("ix_receipt_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    source_system: Mapped[str] = mapped_column(Text, nullable=False)
    external_receipt_id: Mapped[str] = mapped_column(Text, nullable=False)
    receipt_number: Mapped[str | None] = mapped_column(Text)
    channel: Mapped[str] = mapped_column(Text, nullable=False, default="IN_STORE")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_amount: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    discount_amount: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    raw_payload: Mapped[dict | None] = mapped_column(JSON_TYPE)
    ingested_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReceiptLineItem(Base):
    __tablename__ = "receipt_line_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    receipt_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("receipt.id"), nullable=False, index=True
    )
    external_line_id: Mapped[str | None] = mapped_column(Text)
    sku: Mapped[str | None] = mapped_column(Text)
    item_name: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(Text)
    qty: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    net_amount: Mapped[Numeric | None] = mapped_column(Numeric(12, 2))


class ReceiptModifier(Base):
    __tablename__ = "receipt_modifier"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    line_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("receipt_line_item.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price_delta: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)


class Recipe(Base):
    __tablename__ = "recipe"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class RecipeComponent(Base):
    __tablename__ = "recipe_component"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    recipe_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("recipe.id"), nullable=False, index=True
    )
    ingredient: Mapped[str] = mapped_column(Text, nullable=False)
    qty_per_unit: Mapped[Numeric] = mapped_column(Numeric(12, 3), nullable=False)
    uom: Mapped[str] = mapped_column(Text, nullable=False, default="unit")


class RecipeSkuMap(Base):
    __tablename__ = "recipe_sku_map"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(Text, nullable=False)
    channel_sku: Mapped[str] = mapped_column(Text, nullable=False)
    recipe_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("recipe.id"), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class ShiftSubmission(Base):
    __tablename__ = "shift_submission"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)
    total_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False)
    rolls_end: Mapped[int | None] = mapped_column(Integer)
    meat_end_g: Mapped[int | None] = mapped_column(Integer)
    drinks_end: Mapped[int | None] = mapped_column(Integer)
    completed_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    deleted_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class StockPurchase(Base):
    __tablename__ = "stock_purchase"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)
    stock_kind: Mapped[str] = mapped_column(Text, nullable=False)
    qty: Mapped[Numeric] = mapped_column(Numeric(12, 3), nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    reference: Mapped[str | None] = mapped_column(Text)
    recorded_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class StockItem(Base):
    __tablename__ = "stock_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    quantity: Mapped[Numeric] = mapped_column(Numeric(12, 3), nullable=False, default=0)
    uom: Mapped[str] = mapped_column(Text, nullable=False, default="unit")
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class StockConsumptionEvent(Base):
    __tablename__ = "stock_consumption_event"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    stock_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("stock_item.id"), nullable=False, index=True
    )
    delta: Mapped[Numeric] = mapped_column(Numeric(12, 3), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    occurred_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Derived tables owned by the engine
# ---------------------------------------------------------------------------


class SoldItem(Base):
    __tablename__ = "sold_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    receipt_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("receipt.id"), nullable=False
    )
    receipt_line_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("receipt_line_item.id"), nullable=False
    )
    unit_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sold_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)
    channel: Mapped[str] = mapped_column(Text, nullable=False)
    external_sku: Mapped[str | None] = mapped_column(Text)
    recipe_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("recipe.id"))
    unit_price: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False)
    gross_amount: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    net_amount: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False)


class SoldItemModifier(Base):
    __tablename__ = "sold_item_modifier"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    sold_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("sold_item.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price_delta: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)


class LedgerEntry(Base):
    __tablename__ = "ledger_entry"
    __table_args__ = (
        UniqueConstraint("kind", "shift_date", name="uq_ledger_entry_kind_shift_date"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False)
    starting_implied: Mapped[Numeric] = mapped_column(Numeric(12, 3), nullable=False, default=0)
    baseline_status: Mapped[str] = mapped_column(Text, nullable=False, default="KNOWN")
    starting_manual: Mapped[Numeric | None] = mapped_column(Numeric(12, 3))
    purchased: Mapped[Numeric] = mapped_column(Numeric(12, 3), nullable=False, default=0)
    purchased_manual: Mapped[Numeric | None] = mapped_column(Numeric(12, 3))
    units_sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated: Mapped[Numeric] = mapped_column(Numeric(12, 3), nullable=False, default=0)
    actual_end: Mapped[Numeric | None] = mapped_column(Numeric(12, 3))
    actual_end_manual: Mapped[Numeric | None] = mapped_column(Numeric(12, 3))
    variance: Mapped[Numeric | None] = mapped_column(Numeric(12, 3))
    waste_allowance: Mapped[Numeric] = mapped_column(Numeric(12, 3), nullable=False, default=0)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="PENDING")
    unmapped_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReconciliationRecord(Base):
    __tablename__ = "reconciliation_record"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False, unique=True)
    pos_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False)
    declared_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False)
    sales_variance: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False)
    expected_buns: Mapped[Numeric | None] = mapped_column(Numeric(12, 3))
    declared_buns: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    buns_variance: Mapped[Numeric | None] = mapped_column(Numeric(12, 3))
    expected_meat: Mapped[Numeric | None] = mapped_column(Numeric(12, 3))
    declared_meat: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meat_variance: Mapped[Numeric | None] = mapped_column(Numeric(12, 3))
    has_declaration: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class IngestionAudit(Base):
    __tablename__ = "ingestion_audit"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    window_start: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    receipts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    line_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    modifiers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class ShiftRun(Base):
    __tablename__ = "shift_run"
    __table_args__ = (
        UniqueConstraint("step", "shift_date", name="uq_shift_run_step_shift_date"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    step: Mapped[str] = mapped_column(Text, nullable=False)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    error_code: Mapped[str | None] = mapped_column(Text)
    error: Mapped[str | None] = mapped_column(Text)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON_TYPE)
    finished_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
