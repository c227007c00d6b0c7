import logging
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from conftest import Seeder
from erp_stock.db import Base

from erp_stock.errors import (
    ConcurrentStockUpdateError,
    InsufficientStockError,
    LedgerImmutableError,
    NotFoundError,
    StockValidationError,
)
from erp_stock.history import StockHistoryQuery
from erp_stock.models import StockAllocation, StockType
from erp_stock.mutations import StockMutationService
from erp_stock.repository import StockRepository


class FlakyRepository(StockRepository):
    """Fails the first ``failures`` commits as if another writer got there first."""

    def __init__(self, db, failures: int):
        super().__init__(db)
        self.failures = failures

    def commit(self) -> None:
        if self.failures:
            self.failures -= 1
            raise StaleDataError("simulated concurrent update")
        super().commit()


class RacingRepository(StockRepository):
    """Runs ``compete`` on another session right before the first commit."""

    def __init__(self, db, compete):
        super().__init__(db)
        self.compete = compete

    def commit(self) -> None:
        if self.compete is not None:
            compete, self.compete = self.compete, None
            compete()
        super().commit()


class LockedDatabaseRepository(StockRepository):
    def commit(self) -> None:
        self.db.flush()
        raise OperationalError("COMMIT", {}, Exception("database is locked"))


def _ledger(db_session) -> list[StockAllocation]:
    return db_session.query(StockAllocation).order_by(StockAllocation.id).all()


def test_add_then_allocate_ingredient(repository, seed, db_session) -> None:
    ingredient = seed.ingredient("Turmeric")
    work_order = seed.work_order()
    service = StockMutationService(repository)

    updated = service.add_ingredient_stock(ingredient.id, 10)
    assert updated.id == ingredient.id
    assert updated.current_stock == Decimal("10")

    allocation = service.allocate_ingredient_stock(ingredient.id, work_order.id, 4)
    assert allocation.quantity_allocated == Decimal("4")

    db_session.refresh(ingredient)
    assert ingredient.current_stock == Decimal("6")

    rows = _ledger(db_session)
    assert [(row.stock_entry_type, row.quantity_allocated) for row in rows] == [
        ("INWARD", Decimal("10")),
        ("OUTWARD", Decimal("4")),
    ]
    assert rows[0].reference_id is None
    assert rows[1].stock_type == "INGREDIENT"
    assert rows[1].reference_type == "WORK_ORDER"
    assert rows[1].reference_id == str(work_order.id)


def test_allocate_more_than_on_hand_is_rejected(repository, seed, db_session) -> None:
    product = seed.product("Masala Pouch")
    order = seed.order()
    service = StockMutationService(repository)
    service.add_product_stock(product.id, 50)

    with pytest.raises(InsufficientStockError) as excinfo:
        service.allocate_product_stock(product.id, order.id, 100)

    assert excinfo.value.available == Decimal("50")
    assert excinfo.value.requested == Decimal("100")
    db_session.refresh(product)
    assert product.current_stock == Decimal("50")
    assert len(_ledger(db_session)) == 1


def test_allocating_the_whole_balance_leaves_zero(repository, seed, db_session) -> None:
    product = seed.product("Masala Pouch")
    order = seed.order()
    service = StockMutationService(repository)
    service.add_product_stock(product.id, 12)

    allocation = service.allocate_product_stock(product.id, order.id, 12)

    assert allocation.reference_type == "ORDER"
    db_session.refresh(product)
    assert product.current_stock == Decimal("0")


def test_add_stock_keeps_free_form_reference(repository, seed, db_session) -> None:
    product = seed.product("Masala Pouch")
    StockMutationService(repository).add_product_stock(product.id, "2.5", reference_id="GRN-0042")

    (row,) = _ledger(db_session)
    assert row.stock_type == "PRODUCT"
    assert row.reference_type is None
    assert row.reference_id == "GRN-0042"
    assert row.quantity_allocated == Decimal("2.5")


@pytest.mark.parametrize("quantity", [0, -3, "abc", None, float("nan"), True])
def test_non_positive_or_invalid_quantity_is_rejected(repository, seed, db_session, quantity) -> None:
    ingredient = seed.ingredient("Salt", unit="Gms")
    with pytest.raises(StockValidationError):
        StockMutationService(repository).add_ingredient_stock(ingredient.id, quantity)
    assert _ledger(db_session) == []


def test_missing_items_raise_not_found(repository, seed) -> None:
    service = StockMutationService(repository)
    work_order = seed.work_order()
    order = seed.order()

    with pytest.raises(NotFoundError):
        service.add_ingredient_stock(999, 1)
    with pytest.raises(NotFoundError):
        service.add_product_stock(999, 1)
    with pytest.raises(NotFoundError):
        service.allocate_ingredient_stock(999, work_order.id, 1)
    with pytest.raises(NotFoundError):
        service.allocate_product_stock(999, order.id, 1)


def test_allocation_requires_existing_reference(repository, seed) -> None:
    ingredient = seed.ingredient("Salt", stock=0)
    product = seed.product("Masala Pouch")
    service = StockMutationService(repository)
    service.add_ingredient_stock(ingredient.id, 5)
    service.add_product_stock(product.id, 5)

    with pytest.raises(NotFoundError):
        service.allocate_ingredient_stock(ingredient.id, 404, 1)
    with pytest.raises(NotFoundError):
        service.allocate_product_stock(product.id, 404, 1)
    with pytest.raises(StockValidationError):
        service.allocate_ingredient_stock(ingredient.id, None, 1)
    with pytest.raises(StockValidationError):
        service.allocate_product_stock(product.id, "", 1)


def test_balance_matches_ledger_after_mixed_sequence(repository, seed) -> None:
    ingredient = seed.ingredient("Cumin")
    work_order = seed.work_order()
    service = StockMutationService(repository)

    service.add_ingredient_stock(ingredient.id, 20)
    service.allocate_ingredient_stock(ingredient.id, work_order.id, "7.5")
    service.add_ingredient_stock(ingredient.id, 3)
    with pytest.raises(InsufficientStockError):
        service.allocate_ingredient_stock(ingredient.id, work_order.id, 100)
    service.allocate_ingredient_stock(ingredient.id, work_order.id, 15)

    check = StockHistoryQuery(repository).check_balance(StockType.INGREDIENT, ingredient.id)
    assert check.current_stock == Decimal("0.5")
    assert check.consistent


def test_version_conflict_is_retried(db_session, seed) -> None:
    ingredient = seed.ingredient("Chilli")
    repository = FlakyRepository(db_session, failures=2)

    updated = StockMutationService(repository, max_retries=3).add_ingredient_stock(ingredient.id, 8)

    assert updated.current_stock == Decimal("8")
    assert len(_ledger(db_session)) == 1


def test_exhausted_retries_write_nothing(db_session, seed) -> None:
    ingredient = seed.ingredient("Chilli", stock=0)
    repository = FlakyRepository(db_session, failures=10)

    with pytest.raises(ConcurrentStockUpdateError):
        StockMutationService(repository, max_retries=2).add_ingredient_stock(ingredient.id, 8)

    db_session.refresh(ingredient)
    assert ingredient.current_stock == Decimal("0")
    assert _ledger(db_session) == []


def test_ledger_rows_are_immutable(repository, seed, db_session) -> None:
    ingredient = seed.ingredient("Pepper")
    StockMutationService(repository).add_ingredient_stock(ingredient.id, 3)
    (row,) = _ledger(db_session)

    row.quantity_allocated = Decimal("30")
    with pytest.raises(LedgerImmutableError):
        db_session.commit()
    db_session.rollback()

    db_session.delete(row)
    with pytest.raises(LedgerImmutableError):
        db_session.commit()
    db_session.rollback()

    assert _ledger(db_session)[0].quantity_allocated == Decimal("3")


def test_allocation_losing_a_race_is_replayed_against_new_balance(tmp_path, caplog) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'stock.db'}")
    Base.metadata.create_all(bind=engine)
    SessionFactory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    first, second = SessionFactory(), SessionFactory()
    try:
        seed = Seeder(first)
        ingredient_id = seed.ingredient("Coriander").id
        work_order_id = seed.work_order().id
        StockMutationService(StockRepository(first)).add_ingredient_stock(ingredient_id, 5)

        def competing_allocation():
            StockMutationService(StockRepository(second)).allocate_ingredient_stock(ingredient_id, work_order_id, 4)

        service = StockMutationService(RacingRepository(first, competing_allocation), max_retries=3)
        with caplog.at_level(logging.WARNING, logger="erp_stock.mutations"):
            with pytest.raises(InsufficientStockError) as excinfo:
                service.allocate_ingredient_stock(ingredient_id, work_order_id, 4)

        assert excinfo.value.available == Decimal("1")
        assert "Concurrent update on INGREDIENT" in caplog.text
    finally:
        first.close()
        second.close()

    fresh = SessionFactory()
    try:
        check = StockHistoryQuery(StockRepository(fresh)).check_balance(StockType.INGREDIENT, ingredient_id)
        assert check.current_stock == Decimal("1")
        assert check.consistent
        assert len(_ledger(fresh)) == 2
    finally:
        fresh.close()
        engine.dispose()


def test_failed_commit_rolls_back_session(db_session, seed) -> None:
    ingredient = seed.ingredient("Fennel", stock=0)

    with pytest.raises(OperationalError):
        StockMutationService(LockedDatabaseRepository(db_session)).add_ingredient_stock(ingredient.id, 2)

    assert _ledger(db_session) == []
    db_session.refresh(ingredient)
    assert ingredient.current_stock == Decimal("0")
