from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from erp_stock.config import settings
from erp_stock.db import Base, SessionLocal, engine
from erp_stock.history import StockHistoryQuery
from erp_stock.repository import StockRepository


def main() -> int:
    print(f"DATABASE_URL={settings.database_url}")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return 1

    db = SessionLocal()
    try:
        mismatches = StockHistoryQuery(StockRepository(db)).find_inconsistent_balances()
    finally:
        db.close()
    if not mismatches:
        print("Stock balances match the ledger")
        return 0
    for check in mismatches:
        print(
            f"{check.stock_type} {check.item_id}: current_stock={check.current_stock} "
            f"ledger_total={check.ledger_total}"
        )
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
