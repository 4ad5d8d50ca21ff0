from __future__ import annotations

import argparse
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from shift_ledger.backfill import PosSync, backfill
from shift_ledger.config import settings
from shift_ledger.db import SessionLocal
from shift_ledger.logging_config import configure_logging
from shift_ledger.shift_window import resolve_shift_day


def nightly_recompute(
    db: Session,
    now: Optional[datetime] = None,
    days_back: int = 1,
    pos_sync: Optional[PosSync] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    end = resolve_shift_day(now) - timedelta(days=1)
    start = end - timedelta(days=max(days_back, 1) - 1)
    return backfill(db, start, end, pos_sync=pos_sync)


def main() -> None:
    parser = argparse.ArgumentParser(description="Recompute shift ledgers and reconciliation")
    parser.add_argument("--start", help="first shift date (YYYY-MM-DD)")
    parser.add_argument("--end", help="last shift date (YYYY-MM-DD)")
    parser.add_argument("--days-back", type=int, default=1)
    args = parser.parse_args()

    configure_logging(settings.log_level)
    db = SessionLocal()
    try:
        if args.start:
            result = backfill(db, args.start, args.end or args.start)
        else:
            result = nightly_recompute(db, days_back=args.days_back)
    finally:
        db.close()
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
