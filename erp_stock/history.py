import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal

from erp_stock.errors import NotFoundError
from erp_stock.models import ReferenceType, StockAllocation, StockEntryType, StockType
from erp_stock.repository import StockRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceCheck:
    stock_type: str
    item_id: int
    current_stock: Decimal
    ledger_total: Decimal

    @property
    def consistent(self) -> bool:
        return self.current_stock == self.ledger_total


class StockHistoryQuery:
    """Read-only projections over the stock allocation ledger."""

    def __init__(self, repository: StockRepository):
        self.repository = repository

    def get_ingredient_stock_history(self, ingredient_id: int) -> list[StockAllocation]:
        if self.repository.get_ingredient(ingredient_id) is None:
            raise NotFoundError("ingredient", ingredient_id)
        return self.repository.list_allocations_for_item(StockType.INGREDIENT, ingredient_id)

    def get_product_stock_history(self, product_id: int) -> list[StockAllocation]:
        if self.repository.get_product(product_id) is None:
            raise NotFoundError("product", product_id)
        return self.repository.list_allocations_for_item(StockType.PRODUCT, product_id)

    def get_stock_allocations_by_order(self, order_id: int) -> list[StockAllocation]:
        if self.repository.get_order(order_id) is None:
            raise NotFoundError("order", order_id)
        return self.repository.list_allocations_for_reference(ReferenceType.ORDER.value, str(order_id))

    def get_stock_allocations_by_work_order(self, work_order_id: int) -> list[StockAllocation]:
        if self.repository.get_work_order(work_order_id) is None:
            raise NotFoundError("work order", work_order_id)
        return self.repository.list_allocations_for_reference(ReferenceType.WORK_ORDER.value, str(work_order_id))

    def allocated_quantities(
        self, reference_type: ReferenceType, reference_id, stock_type: StockType
    ) -> dict[int, Decimal]:
        """OUTWARD totals per stock item for one order or work order."""
        totals: dict[int, Decimal] = defaultdict(Decimal)
        rows = self.repository.list_allocations_for_reference(ReferenceType(reference_type).value, str(reference_id))
        for row in rows:
            if row.stock_type == StockType(stock_type).value and row.stock_entry_type == StockEntryType.OUTWARD.value:
                totals[row.stock_item_id] += row.quantity_allocated
        return dict(totals)

    def check_balance(self, stock_type: StockType, item_id: int) -> BalanceCheck:
        stock_type = StockType(stock_type)
        item = self.repository.get_stock_item(stock_type, item_id)
        if item is None:
            raise NotFoundError(stock_type.value.lower(), item_id)
        rows = self.repository.list_allocations_for_item(stock_type, item_id)
        ledger_total = sum((row.signed_quantity for row in rows), Decimal("0"))
        return BalanceCheck(stock_type.value, item_id, Decimal(item.current_stock or 0), ledger_total)

    def find_inconsistent_balances(self) -> list[BalanceCheck]:
        mismatches = []
        for stock_type in StockType:
            totals = self.repository.signed_ledger_totals(stock_type)
            for item in self.repository.list_stock_items(stock_type):
                check = BalanceCheck(
                    stock_type.value,
                    item.id,
                    Decimal(item.current_stock or 0),
                    Decimal(totals.get(item.id) or 0),
                )
                if not check.consistent:
                    logger.error(
                        "%s %s balance %s does not match ledger total %s",
                        stock_type.value,
                        item.id,
                        check.current_stock,
                        check.ledger_total,
                    )
                    mismatches.append(check)
        return mismatches
