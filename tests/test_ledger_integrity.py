import logging
import threading
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import MetaData, UniqueConstraint, create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shift_ledger.db import Base
from shift_ledger.errors import InvariantViolation
from shift_ledger.ledgers import compute_and_upsert_ledger, get_entry
from shift_ledger.models import LedgerEntry, ShiftRun, ShiftSubmission

DAY = date(2025, 10, 19)


def _session_without_ledger_key():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(
        bind=engine,
        tables=[table for table in Base.metadata.sorted_tables if table.name != "ledger_entry"],
    )
    loose = LedgerEntry.__table__.to_metadata(MetaData())
    for constraint in [c for c in loose.constraints if isinstance(c, UniqueConstraint)]:
        loose.constraints.discard(constraint)
    loose.create(bind=engine)
    return engine, sessionmaker(bind=engine, autoflush=False, autocommit=False)()


def test_duplicate_ledger_rows_are_fatal(caplog) -> None:
    engine, db = _session_without_ledger_key()
    try:
        now = datetime.now(timezone.utc)
        for _ in range(2):
            db.add(LedgerEntry(kind="rolls", shift_date=DAY, created_at=now, updated_at=now))
        db.commit()

        with caplog.at_level(logging.CRITICAL, logger="shift_ledger.ledgers"):
            with pytest.raises(InvariantViolation):
                get_entry(db, "rolls", DAY)
            with pytest.raises(InvariantViolation):
                compute_and_upsert_ledger(db, "rolls", DAY)

        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 2
        run = db.execute(select(ShiftRun).where(ShiftRun.step == "ledger:rolls")).scalar_one()
        assert run.status == "FAILED"
        assert run.error_code == InvariantViolation.code
    finally:
        db.close()
        engine.dispose()


def test_concurrent_recomputes_keep_one_row(tmp_path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    SessionTesting = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    seed = SessionTesting()
    now = datetime.now(timezone.utc)
    seed.add(ShiftSubmission(shift_date=date(2025, 10, 18), total_sales=Decimal("0"), rolls_end=30, created_at=now))
    seed.add(ShiftSubmission(shift_date=DAY, total_sales=Decimal("0"), rolls_end=28, created_at=now))
    seed.commit()
    seed.close()

    barrier = threading.Barrier(4)
    statuses: list[str] = []
    errors: list[Exception] = []

    def recompute() -> None:
        db = SessionTesting()
        try:
            barrier.wait()
            statuses.append(compute_and_upsert_ledger(db, "rolls", DAY).status)
        except Exception as exc:
            errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=recompute) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    try:
        assert errors == []
        assert statuses == ["OK"] * 4
        check = SessionTesting()
        try:
            count = check.execute(
                select(func.count(LedgerEntry.id)).where(
                    LedgerEntry.kind == "rolls", LedgerEntry.shift_date == DAY
                )
            ).scalar()
            assert count == 1
            runs = check.execute(select(func.count(ShiftRun.id))).scalar()
            assert runs == 1
        finally:
            check.close()
    finally:
        engine.dispose()
