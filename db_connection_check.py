from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from shift_ledger.config import settings
from shift_ledger.db import Base
from shift_ledger import models  # noqa: F401


def main() -> None:
    database_url = settings.database_url
    print(f"SHIFT_LEDGER_DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        Base.metadata.create_all(bind=engine)
        print(f"Schema OK ({len(Base.metadata.tables)} tables)")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()
