from datetime import datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

from shift_ledger.models import StockConsumptionEvent, StockItem
from shift_ledger.stock_variance import classify_severity, compute_shift_variance

BKK = ZoneInfo("Asia/Bangkok")


def _item(db, name: str, quantity, deltas: list, at: datetime) -> None:
    item = StockItem(name=name, quantity=Decimal(str(quantity)))
    db.add(item)
    db.flush()
    for delta in deltas:
        db.add(
            StockConsumptionEvent(
                stock_item_id=item.id,
                delta=Decimal(str(delta)),
                reason="sale",
                occurred_at=at.astimezone(timezone.utc),
            )
        )
    db.commit()


def test_severity_bands() -> None:
    assert classify_severity(Decimal("10")) == "green"
    assert classify_severity(Decimal("-10.5")) == "yellow"
    assert classify_severity(Decimal("30")) == "yellow"
    assert classify_severity(Decimal("31")) == "red"


def test_variance_per_ingredient_sorted_by_variance(db) -> None:
    in_shift = datetime(2025, 10, 19, 18, 0, tzinfo=BKK)
    _item(db, "Cheese", 20, [-15, -10, 5], in_shift)
    _item(db, "Buns", 10, [-50], in_shift)
    _item(db, "Lettuce", 30, [-10], in_shift)

    report = compute_shift_variance(db, "2025-10-19")

    assert [row["name"] for row in report] == ["Buns", "Cheese", "Lettuce"]
    by_name = {row["name"]: row for row in report}
    assert by_name["Cheese"]["used"] == Decimal("25")
    assert by_name["Cheese"]["variance"] == Decimal("5")
    assert by_name["Cheese"]["severity"] == "green"
    assert by_name["Buns"]["variance"] == Decimal("40")
    assert by_name["Buns"]["severity"] == "red"
    assert by_name["Lettuce"]["variance"] == Decimal("-20")
    assert by_name["Lettuce"]["severity"] == "yellow"


def test_events_outside_shift_are_ignored(db) -> None:
    _item(db, "Cheese", 5, [-4], datetime(2025, 10, 19, 2, 30, tzinfo=BKK))
    _item(db, "Buns", 5, [-4], datetime(2025, 10, 20, 3, 0, tzinfo=BKK))

    assert compute_shift_variance(db, "2025-10-19") == []
