"""Stock Mutation Service.

The only code path that changes ``current_stock``. Each operation appends one
ledger row and writes one balance inside a single transaction:

1. load the stock row fresh (``SELECT ... FOR UPDATE`` where supported)
2. validate and compute the new balance
3. append the ledger row
4. write the balance and commit both together

The balance rows carry a version counter, so a writer that raced us between
steps 1 and 4 makes the commit fail with ``StaleDataError``. The whole
transaction is rolled back and replayed, up to ``max_retries`` times.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from erp_stock.config import settings
from erp_stock.errors import (
    ConcurrentStockUpdateError,
    InsufficientStockError,
    NotFoundError,
    StockValidationError,
)
from erp_stock.models import ReferenceType, StockAllocation, StockEntryType, StockType
from erp_stock.repository import StockRepository

logger = logging.getLogger(__name__)


def _positive_quantity(quantity) -> Decimal:
    if isinstance(quantity, bool):
        raise StockValidationError("quantity must be a number")
    try:
        value = Decimal(str(quantity))
    except (InvalidOperation, ValueError, TypeError):
        raise StockValidationError(f"quantity {quantity!r} is not a number") from None
    if not value.is_finite() or value <= 0:
        raise StockValidationError(f"quantity must be greater than 0, got {quantity}")
    return value


def _required_reference(name: str, value) -> str:
    if value is None or str(value).strip() == "":
        raise StockValidationError(f"{name} is required")
    return str(value)


class StockMutationService:
    def __init__(self, repository: StockRepository, max_retries: Optional[int] = None):
        self.repository = repository
        self.max_retries = settings.stock_mutation_retries if max_retries is None else max_retries

    def add_ingredient_stock(self, ingredient_id: int, quantity, reference_id: Optional[str] = None):
        """Receive ``quantity`` of an ingredient and return the updated ingredient."""
        item, _ = self._apply(
            StockType.INGREDIENT,
            ingredient_id,
            StockEntryType.INWARD,
            _positive_quantity(quantity),
            reference_id=None if reference_id is None else str(reference_id),
        )
        return item

    def add_product_stock(self, product_id: int, quantity, reference_id: Optional[str] = None):
        """Receive ``quantity`` of a finished product and return the updated product."""
        item, _ = self._apply(
            StockType.PRODUCT,
            product_id,
            StockEntryType.INWARD,
            _positive_quantity(quantity),
            reference_id=None if reference_id is None else str(reference_id),
        )
        return item

    def allocate_product_stock(self, product_id: int, order_id: int, quantity) -> StockAllocation:
        """Consume product stock against an order."""
        reference_id = _required_reference("order_id", order_id)
        amount = _positive_quantity(quantity)
        if self.repository.get_order(order_id) is None:
            raise NotFoundError("order", order_id)
        _, allocation = self._apply(
            StockType.PRODUCT,
            product_id,
            StockEntryType.OUTWARD,
            amount,
            reference_type=ReferenceType.ORDER.value,
            reference_id=reference_id,
        )
        return allocation

    def allocate_ingredient_stock(self, ingredient_id: int, work_order_id: int, quantity) -> StockAllocation:
        """Consume ingredient stock against a work order."""
        reference_id = _required_reference("work_order_id", work_order_id)
        amount = _positive_quantity(quantity)
        if self.repository.get_work_order(work_order_id) is None:
            raise NotFoundError("work order", work_order_id)
        _, allocation = self._apply(
            StockType.INGREDIENT,
            ingredient_id,
            StockEntryType.OUTWARD,
            amount,
            reference_type=ReferenceType.WORK_ORDER.value,
            reference_id=reference_id,
        )
        return allocation

    def _apply(
        self,
        stock_type: StockType,
        item_id: int,
        entry_type: StockEntryType,
        quantity: Decimal,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ):
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            item = self.repository.lock_stock_item(stock_type, item_id)
            if item is None:
                self.repository.rollback()
                raise NotFoundError(stock_type.value.lower(), item_id)

            available = Decimal(item.current_stock or 0)
            if entry_type == StockEntryType.OUTWARD:
                if available < quantity:
                    item_name = item.name
                    self.repository.rollback()
                    logger.warning(
                        "Rejected %s allocation of %s for %s %s: only %s on hand",
                        stock_type.value,
                        quantity,
                        reference_type,
                        reference_id,
                        available,
                    )
                    raise InsufficientStockError(stock_type.value, item_id, item_name, available, quantity)
                new_balance = available - quantity
            else:
                new_balance = available + quantity

            allocation = self.repository.append_allocation(
                entry_type,
                stock_type,
                item_id,
                quantity,
                reference_type=reference_type,
                reference_id=reference_id,
            )
            item.current_stock = new_balance
            try:
                self.repository.commit()
            except StaleDataError:
                self.repository.rollback()
                logger.warning(
                    "Concurrent update on %s %s (attempt %d of %d), retrying",
                    stock_type.value,
                    item_id,
                    attempt,
                    attempts,
                )
                continue
            except SQLAlchemyError:
                self.repository.rollback()
                raise

            self.repository.refresh(item)
            self.repository.refresh(allocation)
            logger.info(
                "%s %s %s %s: %s -> %s (ledger row %s)",
                entry_type.value,
                quantity,
                stock_type.value,
                item_id,
                available,
                new_balance,
                allocation.id,
            )
            return item, allocation

        raise ConcurrentStockUpdateError(
            f"{stock_type.value.lower()} {item_id} was modified concurrently {attempts} times, giving up"
        )
