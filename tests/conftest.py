from datetime import date, datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shift_ledger import models
from shift_ledger.db import Base
from shift_ledger.ingestion import LineItemInput, ModifierInput, ReceiptInput, upsert_receipts

BKK = ZoneInfo("Asia/Bangkok")


def bkk(year: int, month: int, day: int, hour: int = 12, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=BKK)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def add_receipt(db):
    def _add(external_id: str, created_at: datetime, lines: list[dict], channel: str = "IN_STORE"):
        receipt = ReceiptInput(
            external_receipt_id=external_id,
            channel=channel,
            created_at=created_at,
            line_items=[
                LineItemInput(
                    external_line_id=f"{external_id}-L{index}",
                    sku=line.get("sku"),
                    item_name=line.get("name"),
                    qty=line.get("qty", 1),
                    unit_price=Decimal(str(line.get("unit_price", 0))),
                    discount_amount=Decimal(str(line.get("discount", 0))),
                    modifiers=[
                        ModifierInput(name=name, price_delta=Decimal(str(delta)))
                        for name, delta in line.get("modifiers", [])
                    ],
                )
                for index, line in enumerate(lines, start=1)
            ],
        )
        return upsert_receipts(db, [receipt], "test_pos")

    return _add


@pytest.fixture()
def add_recipe(db):
    def _add(name: str, sku: str, components: dict[str, str], channel: str = "IN_STORE") -> models.Recipe:
        recipe = models.Recipe(name=name, category="burger" if "bun" in components else "drink")
        db.add(recipe)
        db.flush()
        for ingredient, qty in components.items():
            db.add(
                models.RecipeComponent(
                    recipe_id=recipe.id, ingredient=ingredient, qty_per_unit=Decimal(str(qty))
                )
            )
        db.add(models.RecipeSkuMap(channel=channel, channel_sku=sku, recipe_id=recipe.id))
        db.commit()
        return recipe

    return _add


@pytest.fixture()
def add_submission(db):
    def _add(shift_date: date, total_sales, rolls_end=None, meat_end_g=None, drinks_end=None):
        row = models.ShiftSubmission(
            shift_date=shift_date,
            total_sales=Decimal(str(total_sales)),
            rolls_end=rolls_end,
            meat_end_g=meat_end_g,
            drinks_end=drinks_end,
            created_at=datetime.now(timezone.utc),
        )
        db.add(row)
        db.commit()
        return row

    return _add


@pytest.fixture()
def add_purchase(db):
    def _add(shift_date: date, stock_kind: str, qty, source: str = "expense"):
        row = models.StockPurchase(
            shift_date=shift_date,
            stock_kind=stock_kind,
            qty=Decimal(str(qty)),
            source=source,
            recorded_at=datetime.now(timezone.utc),
        )
        db.add(row)
        db.commit()
        return row

    return _add
