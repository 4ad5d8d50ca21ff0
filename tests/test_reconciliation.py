from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import func, select

from shift_ledger.ledgers import compute_all_ledgers
from shift_ledger.models import Receipt, ReconciliationRecord
from shift_ledger.reconciliation import (
    classify_sales_variance,
    get_reconciliation,
    rebuild_reconciliation,
    serialize_reconciliation,
)
from shift_ledger.runs import runs_for_shift
from shift_ledger.sold_items import derive_sold_items

BKK = ZoneInfo("Asia/Bangkok")
DAY = date(2025, 10, 19)


@pytest.mark.parametrize(
    ("variance", "expected"),
    [
        ("0", "OK"),
        ("100", "OK"),
        ("-100", "OK"),
        ("100.01", "WARNING"),
        ("500", "WARNING"),
        ("500.01", "FAIL"),
        ("-600", "FAIL"),
    ],
)
def test_sales_variance_thresholds(variance: str, expected: str) -> None:
    assert classify_sales_variance(Decimal(variance)) == expected


def test_thresholds_can_be_overridden() -> None:
    assert classify_sales_variance(Decimal("60"), Decimal("50"), Decimal("200")) == "WARNING"
    assert classify_sales_variance(Decimal("250"), Decimal("50"), Decimal("200")) == "FAIL"


@pytest.fixture()
def sales_day(db, add_receipt, add_recipe):
    add_recipe("Single Smash", "10004", {"bun": 1, "patty": 1})
    add_receipt("R1", datetime(2025, 10, 19, 18, 0, tzinfo=BKK), [{"sku": "10004", "qty": 10, "unit_price": 200}])
    add_receipt("R2", datetime(2025, 10, 19, 21, 0, tzinfo=BKK), [{"sku": "10004", "qty": 5, "unit_price": 200}])
    derive_sold_items(db, DAY)


def test_matching_declaration_is_ok(db, sales_day, add_submission) -> None:
    add_submission(date(2025, 10, 18), 2900, rolls_end=30, meat_end_g=2250)
    add_submission(DAY, 3050, rolls_end=12, meat_end_g=900)
    compute_all_ledgers(db, DAY)

    result = rebuild_reconciliation(db, DAY, DAY)

    assert result["statuses"] == {"2025-10-19": "OK"}
    record = get_reconciliation(db, DAY)
    assert record.pos_sales == Decimal("3000")
    assert record.declared_sales == Decimal("3050")
    assert record.sales_variance == Decimal("50")
    assert record.expected_buns == Decimal("15")
    assert record.expected_meat == Decimal("1350")
    # Taken from the ledgers: 30 - 15 - 12 and 2250 - 1350 - 900.
    assert record.buns_variance == Decimal("3")
    assert record.meat_variance == Decimal("0")
    assert record.declared_buns == 12
    assert record.has_declaration is True


def test_missing_declaration_fails_with_zero_declared(db, sales_day) -> None:
    result = rebuild_reconciliation(db, DAY, DAY)

    assert result["records_created"] == 1
    record = get_reconciliation(db, DAY)
    assert record.pos_sales == Decimal("3000")
    assert record.declared_sales == Decimal("0")
    assert record.sales_variance == Decimal("0")
    assert record.has_declaration is False
    assert record.status == "FAIL"
    # No ledger computed yet.
    assert record.expected_buns is None
    assert record.buns_variance is None


def test_large_shortfall_fails(db, sales_day, add_submission) -> None:
    add_submission(DAY, 2400)

    rebuild_reconciliation(db, DAY, DAY)

    record = get_reconciliation(db, DAY)
    assert record.sales_variance == Decimal("-600")
    assert record.status == "FAIL"


def test_rebuild_replaces_previous_record(db, sales_day, add_submission) -> None:
    rebuild_reconciliation(db, DAY, DAY)
    add_submission(DAY, 3000)

    rebuild_reconciliation(db, DAY, DAY)

    count = db.execute(
        select(func.count(ReconciliationRecord.id)).where(ReconciliationRecord.shift_date == DAY)
    ).scalar()
    assert count == 1
    payload = serialize_reconciliation(get_reconciliation(db, DAY))
    assert payload["status"] == "OK"
    assert payload["has_declaration"] is True


def test_rebuild_without_range_covers_every_sold_day(db, add_receipt, add_submission) -> None:
    add_receipt("R1", datetime(2025, 10, 17, 18, 0, tzinfo=BKK), [{"sku": "A", "unit_price": 100}])
    add_receipt("R2", datetime(2025, 10, 19, 18, 0, tzinfo=BKK), [{"sku": "A", "unit_price": 100}])
    derive_sold_items(db, "2025-10-17", "2025-10-19")
    add_submission(date(2025, 10, 17), 100)

    result = rebuild_reconciliation(db)

    assert result["shifts_processed"] == 2
    assert result["statuses"] == {"2025-10-17": "OK", "2025-10-19": "FAIL"}


def test_day_without_sold_items_loses_its_record(db, sales_day) -> None:
    rebuild_reconciliation(db, DAY, DAY)
    for receipt in db.execute(select(Receipt)).scalars():
        receipt.created_at = datetime(2025, 9, 1, 12, 0)
    db.commit()
    assert derive_sold_items(db, DAY)["items_created"] == 0

    result = rebuild_reconciliation(db, DAY, DAY)

    assert result["records_removed"] == 1
    assert result["statuses"] == {}
    assert get_reconciliation(db, DAY) is None
    assert "reconciliation" not in runs_for_shift(db, DAY)


def test_stale_sweep_stays_inside_range(db, add_receipt) -> None:
    add_receipt("R1", datetime(2025, 10, 17, 18, 0, tzinfo=BKK), [{"sku": "A", "unit_price": 100}])
    derive_sold_items(db, "2025-10-17")
    rebuild_reconciliation(db)

    result = rebuild_reconciliation(db, DAY, DAY)

    assert result["records_removed"] == 0
    assert get_reconciliation(db, "2025-10-17") is not None
