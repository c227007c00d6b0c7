import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erp_stock.db import Base
from erp_stock.models import (
    Compound,
    CompoundIngredient,
    Ingredient,
    Order,
    OrderProduct,
    Product,
    ProductCompound,
    ProductIngredient,
    WorkOrder,
    WorkOrderProduct,
)
from erp_stock.repository import StockRepository


def make_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db_session():
    engine = make_engine()
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def repository(db_session: Session) -> StockRepository:
    return StockRepository(db_session)


class Seeder:
    """Writes composition rows directly, bypassing the stock services."""

    def __init__(self, db: Session):
        self.db = db

    def _save(self, instance):
        self.db.add(instance)
        self.db.commit()
        self.db.refresh(instance)
        return instance

    def ingredient(self, name, unit="KG", stock=0, rate=None) -> Ingredient:
        return self._save(
            Ingredient(
                name=name,
                unit_of_measurement=unit,
                rate=None if rate is None else Decimal(str(rate)),
                current_stock=Decimal(str(stock)),
            )
        )

    def compound(self, name, ingredients=(), unit="KG") -> Compound:
        compound = self._save(Compound(name=name, unit_of_measurement=unit))
        for ingredient, quantity in ingredients:
            self.db.add(
                CompoundIngredient(
                    compound_id=compound.id, ingredient_id=ingredient.id, quantity=Decimal(str(quantity))
                )
            )
        self.db.commit()
        return compound

    def product(self, name, ingredients=(), compounds=(), stock=0) -> Product:
        product = self._save(Product(name=name, current_stock=Decimal(str(stock))))
        for ingredient, quantity in ingredients:
            self.db.add(
                ProductIngredient(
                    product_id=product.id, ingredient_id=ingredient.id, quantity=Decimal(str(quantity))
                )
            )
        for compound, quantity in compounds:
            self.db.add(
                ProductCompound(product_id=product.id, compound_id=compound.id, quantity=Decimal(str(quantity)))
            )
        self.db.commit()
        return product

    def work_order(self, name="WO-1", products=()) -> WorkOrder:
        work_order = self._save(WorkOrder(name=name))
        for product, pouch_size, number_of_pouches in products:
            self.db.add(
                WorkOrderProduct(
                    work_order_id=work_order.id,
                    product_id=product.id,
                    pouch_size=Decimal(str(pouch_size)),
                    number_of_pouches=number_of_pouches,
                    total_weight=Decimal(str(pouch_size)) * number_of_pouches / 1000,
                )
            )
        self.db.commit()
        return work_order

    def order(self, client_name="Savour Foods", products=()) -> Order:
        order = self._save(Order(client_name=client_name))
        for product, pouch_size, number_of_pouches in products:
            self.db.add(
                OrderProduct(
                    order_id=order.id,
                    product_id=product.id,
                    pouch_size=Decimal(str(pouch_size)),
                    number_of_pouches=number_of_pouches,
                )
            )
        self.db.commit()
        return order


@pytest.fixture
def seed(db_session: Session) -> Seeder:
    return Seeder(db_session)
