"""Data access for the stock accounting core.

Every query the services issue goes through ``StockRepository`` so that the
services can be handed any session, including one bound to an in-memory
SQLite database in tests.
"""

from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import Numeric, case, func, select
from sqlalchemy.orm import Session

from erp_stock.models import (
    Compound,
    CompoundIngredient,
    Ingredient,
    Order,
    OrderProduct,
    Product,
    ProductCompound,
    ProductIngredient,
    StockAllocation,
    StockEntryType,
    StockType,
    WorkOrder,
    WorkOrderProduct,
)

STOCK_MODELS = {
    StockType.INGREDIENT: Ingredient,
    StockType.PRODUCT: Product,
}


class StockRepository:
    def __init__(self, db: Session):
        self.db = db

    # Lookups

    def get_ingredient(self, ingredient_id: int) -> Optional[Ingredient]:
        return self.db.get(Ingredient, ingredient_id)

    def get_product(self, product_id: int) -> Optional[Product]:
        return self.db.get(Product, product_id)

    def get_compound(self, compound_id: int) -> Optional[Compound]:
        return self.db.get(Compound, compound_id)

    def get_work_order(self, work_order_id: int) -> Optional[WorkOrder]:
        return self.db.get(WorkOrder, work_order_id)

    def get_order(self, order_id: int) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def get_stock_item(self, stock_type: StockType, item_id: int):
        return self.db.get(STOCK_MODELS[StockType(stock_type)], item_id)

    def lock_stock_item(self, stock_type: StockType, item_id: int):
        """Load a balance row fresh from the database, locked where supported."""
        model = STOCK_MODELS[StockType(stock_type)]
        stmt = (
            select(model)
            .where(model.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    # Composition

    def list_work_order_products(self, work_order_id: int) -> list[WorkOrderProduct]:
        stmt = (
            select(WorkOrderProduct)
            .where(WorkOrderProduct.work_order_id == work_order_id)
            .order_by(WorkOrderProduct.id)
        )
        return list(self.db.execute(stmt).scalars())

    def list_order_products(self, order_id: int) -> list[OrderProduct]:
        stmt = select(OrderProduct).where(OrderProduct.order_id == order_id).order_by(OrderProduct.id)
        return list(self.db.execute(stmt).scalars())

    def list_product_ingredients(
        self, product_ids: Iterable[int]
    ) -> list[tuple[ProductIngredient, Ingredient]]:
        product_ids = list(product_ids)
        if not product_ids:
            return []
        stmt = (
            select(ProductIngredient, Ingredient)
            .join(Ingredient, Ingredient.id == ProductIngredient.ingredient_id)
            .where(ProductIngredient.product_id.in_(product_ids))
            .order_by(ProductIngredient.id)
        )
        return [tuple(row) for row in self.db.execute(stmt).all()]

    def list_product_compounds(self, product_ids: Iterable[int]) -> list[ProductCompound]:
        product_ids = list(product_ids)
        if not product_ids:
            return []
        stmt = (
            select(ProductCompound)
            .where(ProductCompound.product_id.in_(product_ids))
            .order_by(ProductCompound.id)
        )
        return list(self.db.execute(stmt).scalars())

    def list_compound_ingredients(
        self, compound_ids: Iterable[int]
    ) -> list[tuple[CompoundIngredient, Ingredient]]:
        compound_ids = list(compound_ids)
        if not compound_ids:
            return []
        stmt = (
            select(CompoundIngredient, Ingredient)
            .join(Ingredient, Ingredient.id == CompoundIngredient.ingredient_id)
            .where(CompoundIngredient.compound_id.in_(compound_ids))
            .order_by(CompoundIngredient.id)
        )
        return [tuple(row) for row in self.db.execute(stmt).all()]

    def ingredient_balances(self, ingredient_ids: Iterable[int]) -> dict[int, Decimal]:
        ingredient_ids = list(ingredient_ids)
        if not ingredient_ids:
            return {}
        stmt = select(Ingredient.id, Ingredient.current_stock).where(Ingredient.id.in_(ingredient_ids))
        return {row.id: row.current_stock for row in self.db.execute(stmt)}

    # Ledger

    def append_allocation(
        self,
        entry_type: StockEntryType,
        stock_type: StockType,
        stock_item_id: int,
        quantity: Decimal,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> StockAllocation:
        allocation = StockAllocation(
            stock_entry_type=StockEntryType(entry_type).value,
            stock_type=StockType(stock_type).value,
            stock_item_id=stock_item_id,
            reference_type=reference_type,
            reference_id=reference_id,
            quantity_allocated=quantity,
        )
        self.db.add(allocation)
        return allocation

    def list_allocations_for_item(self, stock_type: StockType, item_id: int) -> list[StockAllocation]:
        stmt = (
            select(StockAllocation)
            .where(
                StockAllocation.stock_type == StockType(stock_type).value,
                StockAllocation.stock_item_id == item_id,
            )
            .order_by(StockAllocation.allocation_date.desc(), StockAllocation.id.desc())
        )
        return list(self.db.execute(stmt).scalars())

    def list_allocations_for_reference(self, reference_type: str, reference_id: str) -> list[StockAllocation]:
        stmt = (
            select(StockAllocation)
            .where(
                StockAllocation.reference_type == reference_type,
                StockAllocation.reference_id == reference_id,
            )
            .order_by(StockAllocation.allocation_date.desc(), StockAllocation.id.desc())
        )
        return list(self.db.execute(stmt).scalars())

    def signed_ledger_totals(self, stock_type: StockType) -> dict[int, Decimal]:
        signed = case(
            (
                StockAllocation.stock_entry_type == StockEntryType.OUTWARD.value,
                -StockAllocation.quantity_allocated,
            ),
            else_=StockAllocation.quantity_allocated,
        )
        stmt = (
            select(StockAllocation.stock_item_id, func.sum(signed, type_=Numeric).label("total"))
            .where(StockAllocation.stock_type == StockType(stock_type).value)
            .group_by(StockAllocation.stock_item_id)
        )
        return {row.stock_item_id: row.total for row in self.db.execute(stmt)}

    def list_stock_items(self, stock_type: StockType) -> list:
        model = STOCK_MODELS[StockType(stock_type)]
        return list(self.db.execute(select(model).order_by(model.id)).scalars())

    # Transactions

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def refresh(self, instance) -> None:
        self.db.refresh(instance)
