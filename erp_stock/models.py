import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from erp_stock.db import Base
from erp_stock.errors import LedgerImmutableError

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StockEntryType(str, enum.Enum):
    INWARD = "INWARD"
    OUTWARD = "OUTWARD"


class StockType(str, enum.Enum):
    INGREDIENT = "INGREDIENT"
    PRODUCT = "PRODUCT"


class ReferenceType(str, enum.Enum):
    ORDER = "ORDER"
    WORK_ORDER = "WORK_ORDER"


class WorkOrderStatus(str, enum.Enum):
    CREATED = "CREATED"
    PROCURED = "PROCURED"
    IN_STOCK = "IN-STOCK"
    PROCESSED = "PROCESSED"
    SHIPPED = "SHIPPED"
    EXECUTED = "EXECUTED"
    COMPLETE = "COMPLETE"


class OrderStatus(str, enum.Enum):
    NEW = "NEW"
    IN_PROGRESS = "IN PROGRESS"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    BILLED = "BILLED"
    COMPLETE = "COMPLETE"
    CANCELED = "CANCELED"


def _in_clause(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class Ingredient(Base):
    __tablename__ = "ingredients"
    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ingredient_stock_non_negative"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit_of_measurement: Mapped[str | None] = mapped_column(Text)
    rate: Mapped[Decimal | None] = mapped_column(Numeric)
    current_stock: Mapped[Decimal] = mapped_column(Numeric, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __mapper_args__ = {"version_id_col": version}


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="product_stock_non_negative"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sale_price: Mapped[Decimal | None] = mapped_column(Numeric)
    gst: Mapped[Decimal | None] = mapped_column(Numeric)
    current_stock: Mapped[Decimal] = mapped_column(Numeric, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __mapper_args__ = {"version_id_col": version}


class Compound(Base):
    __tablename__ = "compounds"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit_of_measurement: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class ProductIngredient(Base):
    __tablename__ = "product_ingredients"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id"), nullable=False, index=True
    )
    ingredient_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ingredients.id"), nullable=False
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric, nullable=False, default=0)


class ProductCompound(Base):
    __tablename__ = "product_compounds"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id"), nullable=False, index=True
    )
    compound_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("compounds.id"), nullable=False
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric, nullable=False, default=0)


class CompoundIngredient(Base):
    __tablename__ = "compound_ingredients"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    compound_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("compounds.id"), nullable=False, index=True
    )
    ingredient_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ingredients.id"), nullable=False
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric, nullable=False, default=0)


class WorkOrder(Base):
    __tablename__ = "work_orders"
    __table_args__ = (
        CheckConstraint(_in_clause("status", WorkOrderStatus), name="work_order_status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=WorkOrderStatus.CREATED.value)
    description: Mapped[str | None] = mapped_column(Text)
    remarks: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class WorkOrderProduct(Base):
    __tablename__ = "work_order_products"
    __table_args__ = (
        CheckConstraint("pouch_size > 0", name="work_order_pouch_size_positive"),
        CheckConstraint("number_of_pouches > 0", name="work_order_pouches_positive"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    work_order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("work_orders.id"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id"), nullable=False
    )
    pouch_size: Mapped[Decimal] = mapped_column(Numeric, nullable=False)
    number_of_pouches: Mapped[int] = mapped_column(Integer, nullable=False)
    total_weight: Mapped[Decimal] = mapped_column(Numeric, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(_in_clause("status", OrderStatus), name="order_status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    client_name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=OrderStatus.NEW.value)
    remarks: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class OrderProduct(Base):
    __tablename__ = "order_products"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("orders.id"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id"), nullable=False
    )
    pouch_size: Mapped[Decimal] = mapped_column(Numeric, nullable=False)
    number_of_pouches: Mapped[int] = mapped_column(Integer, nullable=False)


class StockAllocation(Base):
    """One stock movement. Rows are append-only."""

    __tablename__ = "stock_allocation"
    __table_args__ = (
        CheckConstraint(_in_clause("stock_entry_type", StockEntryType), name="stock_entry_type"),
        CheckConstraint(_in_clause("stock_type", StockType), name="stock_type"),
        CheckConstraint("quantity_allocated > 0", name="stock_quantity_positive"),
        Index("ix_stock_allocation_item", "stock_type", "stock_item_id"),
        Index("ix_stock_allocation_reference", "reference_type", "reference_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    stock_entry_type: Mapped[str] = mapped_column(Text, nullable=False)
    stock_type: Mapped[str] = mapped_column(Text, nullable=False)
    # Ingredient or product id depending on stock_type.
    stock_item_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reference_type: Mapped[str | None] = mapped_column(Text)
    reference_id: Mapped[str | None] = mapped_column(Text)
    quantity_allocated: Mapped[Decimal] = mapped_column(Numeric, nullable=False)
    allocation_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    @property
    def signed_quantity(self) -> Decimal:
        if self.stock_entry_type == StockEntryType.OUTWARD.value:
            return -self.quantity_allocated
        return self.quantity_allocated


@event.listens_for(StockAllocation, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"stock allocation {target.id} is immutable")


@event.listens_for(StockAllocation, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"stock allocation {target.id} cannot be deleted")
