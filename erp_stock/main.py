from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

from erp_stock.costing import compound_rate
from erp_stock.db import SessionLocal
from erp_stock.errors import StockError
from erp_stock.history import BalanceCheck, StockHistoryQuery
from erp_stock.logging_config import configure_logging
from erp_stock.models import (
    Compound,
    CompoundIngredient,
    Ingredient,
    Order,
    OrderProduct,
    OrderStatus,
    Product,
    ProductCompound,
    ProductIngredient,
    ReferenceType,
    StockAllocation,
    StockType,
    WorkOrder,
    WorkOrderProduct,
    WorkOrderStatus,
)
from erp_stock.mutations import StockMutationService
from erp_stock.repository import StockRepository
from erp_stock.requirements import ProductLine, RequiredIngredient, RequirementResolver, WorkOrderIngredientStatus
from erp_stock.units import UnitOfMeasurement

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="ERP Stock")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_repository(db: Session = Depends(get_db)) -> StockRepository:
    return StockRepository(db)


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _float(value) -> Optional[float]:
    return float(value) if value is not None else None


@app.exception_handler(StockError)
async def stock_error_handler(request: Request, exc: StockError) -> JSONResponse:
    logger.info("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


def _ingredient_data(ingredient: Ingredient) -> dict:
    return {
        "ingredient_id": ingredient.id,
        "name": ingredient.name,
        "unit_of_measurement": ingredient.unit_of_measurement,
        "rate": _float(ingredient.rate),
        "current_stock": float(ingredient.current_stock),
        "active": ingredient.active,
    }


def _product_data(product: Product) -> dict:
    return {
        "product_id": product.id,
        "name": product.name,
        "sale_price": _float(product.sale_price),
        "gst": _float(product.gst),
        "current_stock": float(product.current_stock),
        "active": product.active,
    }


def _allocation_data(allocation: StockAllocation) -> dict:
    return {
        "stock_allocation_id": allocation.id,
        "stock_entry_type": allocation.stock_entry_type,
        "stock_type": allocation.stock_type,
        "stock_item_id": allocation.stock_item_id,
        "reference_type": allocation.reference_type,
        "reference_id": allocation.reference_id,
        "quantity_allocated": float(allocation.quantity_allocated),
        "allocation_date": allocation.allocation_date.isoformat(),
    }


def _required_data(item: RequiredIngredient) -> dict:
    data = {
        "ingredient_id": item.ingredient_id,
        "name": item.name,
        "unit_of_measurement": item.unit_of_measurement,
        "required_quantity": float(item.required_quantity),
        "current_stock": float(item.current_stock),
    }
    if isinstance(item, WorkOrderIngredientStatus):
        data["allocated_quantity"] = float(item.allocated_quantity)
        data["outstanding_quantity"] = float(item.outstanding_quantity)
        data["sufficient_stock"] = item.sufficient_stock
    return data


def _balance_data(check: BalanceCheck) -> dict:
    return {
        "stock_type": check.stock_type,
        "stock_item_id": check.item_id,
        "current_stock": float(check.current_stock),
        "ledger_total": float(check.ledger_total),
        "consistent": check.consistent,
    }


# Ingredients


class IngredientCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Salt', 'unit_of_measurement': 'Gms', 'rate': 20.0, 'active': True}}}
    name: str = Field(min_length=1)
    unit_of_measurement: Optional[UnitOfMeasurement] = None
    rate: Optional[Decimal] = Field(default=None, ge=0)
    active: bool = True


@app.post("/api/v1/ingredients", tags=["Ingredients"])
def create_ingredient(payload: IngredientCreate, db: Session = Depends(get_db)) -> dict:
    ingredient = Ingredient(
        name=payload.name,
        unit_of_measurement=payload.unit_of_measurement.value if payload.unit_of_measurement else None,
        rate=payload.rate,
        current_stock=Decimal("0"),
        active=payload.active,
    )
    db.add(ingredient)
    db.commit()
    db.refresh(ingredient)
    return {"data": _ingredient_data(ingredient), "meta": _meta()}


@app.get("/api/v1/ingredients/{ingredient_id}", tags=["Ingredients"])
def get_ingredient(ingredient_id: int, db: Session = Depends(get_db)) -> dict:
    ingredient = db.get(Ingredient, ingredient_id)
    if not ingredient:
        raise HTTPException(status_code=404, detail="ingredient not found")
    return {"data": _ingredient_data(ingredient), "meta": _meta()}


@app.get("/api/v1/ingredients", tags=["Ingredients"])
def list_ingredients(
    active: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Ingredient)
    if active is not None:
        query = query.filter(Ingredient.active == active)
    rows, next_cursor = _paginate_by_id(query, Ingredient, limit, cursor)
    return {"data": [_ingredient_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


# Compounds


class CompoundIngredientInput(BaseModel):
    ingredient_id: int
    quantity: Decimal = Field(gt=0)


class CompoundCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Spice Mix', 'unit_of_measurement': 'KG', 'ingredients': [{'ingredient_id': 1, 'quantity': 250}]}}}
    name: str = Field(min_length=1)
    unit_of_measurement: Optional[UnitOfMeasurement] = None
    active: bool = True
    ingredients: list[CompoundIngredientInput] = Field(min_length=1)


def _compound_data(compound: Compound, repository: StockRepository) -> dict:
    links = repository.list_compound_ingredients([compound.id])
    return {
        "compound_id": compound.id,
        "name": compound.name,
        "unit_of_measurement": compound.unit_of_measurement,
        "active": compound.active,
        "ingredients": [
            {"ingredient_id": link.ingredient_id, "name": ingredient.name, "quantity": float(link.quantity)}
            for link, ingredient in links
        ],
        "total_rate": float(compound_rate(repository, compound.id)),
    }


@app.post("/api/v1/compounds", tags=["Compounds"])
def create_compound(payload: CompoundCreate, repository: StockRepository = Depends(get_repository)) -> dict:
    db = repository.db
    for line in payload.ingredients:
        if repository.get_ingredient(line.ingredient_id) is None:
            raise HTTPException(status_code=404, detail=f"ingredient {line.ingredient_id} not found")
    compound = Compound(
        name=payload.name,
        unit_of_measurement=payload.unit_of_measurement.value if payload.unit_of_measurement else None,
        active=payload.active,
    )
    db.add(compound)
    db.flush()
    for line in payload.ingredients:
        db.add(CompoundIngredient(compound_id=compound.id, ingredient_id=line.ingredient_id, quantity=line.quantity))
    db.commit()
    db.refresh(compound)
    return {"data": _compound_data(compound, repository), "meta": _meta()}


@app.get("/api/v1/compounds/{compound_id}", tags=["Compounds"])
def get_compound(compound_id: int, repository: StockRepository = Depends(get_repository)) -> dict:
    compound = repository.get_compound(compound_id)
    if not compound:
        raise HTTPException(status_code=404, detail="compound not found")
    return {"data": _compound_data(compound, repository), "meta": _meta()}


# Products


class ProductIngredientInput(BaseModel):
    ingredient_id: int
    quantity: Decimal = Field(gt=0)


class ProductCompoundInput(BaseModel):
    compound_id: int
    quantity: Decimal = Field(default=Decimal("1"), gt=0)


class ProductCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Masala Pouch', 'sale_price': 120.0, 'gst': 5.0, 'ingredients': [{'ingredient_id': 1, 'quantity': 10}], 'compounds': [{'compound_id': 1, 'quantity': 1}]}}}
    name: str = Field(min_length=1)
    sale_price: Optional[Decimal] = Field(default=None, ge=0)
    gst: Optional[Decimal] = Field(default=None, ge=0)
    active: bool = True
    ingredients: list[ProductIngredientInput] = Field(default_factory=list)
    compounds: list[ProductCompoundInput] = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_composition(self) -> "ProductCreate":
        if not self.ingredients and not self.compounds:
            raise ValueError("a product needs at least one ingredient or compound")
        return self


@app.post("/api/v1/products", tags=["Products"])
def create_product(payload: ProductCreate, repository: StockRepository = Depends(get_repository)) -> dict:
    db = repository.db
    for line in payload.ingredients:
        if repository.get_ingredient(line.ingredient_id) is None:
            raise HTTPException(status_code=404, detail=f"ingredient {line.ingredient_id} not found")
    for line in payload.compounds:
        if repository.get_compound(line.compound_id) is None:
            raise HTTPException(status_code=404, detail=f"compound {line.compound_id} not found")
    product = Product(
        name=payload.name,
        sale_price=payload.sale_price,
        gst=payload.gst,
        current_stock=Decimal("0"),
        active=payload.active,
    )
    db.add(product)
    db.flush()
    for line in payload.ingredients:
        db.add(ProductIngredient(product_id=product.id, ingredient_id=line.ingredient_id, quantity=line.quantity))
    for line in payload.compounds:
        db.add(ProductCompound(product_id=product.id, compound_id=line.compound_id, quantity=line.quantity))
    db.commit()
    db.refresh(product)
    return {"data": _product_data(product), "meta": _meta()}


@app.get("/api/v1/products/{product_id}", tags=["Products"])
def get_product(product_id: int, db: Session = Depends(get_db)) -> dict:
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    return {"data": _product_data(product), "meta": _meta()}


# Work orders and orders


class ProductLineInput(BaseModel):
    product_id: int
    pouch_size: Decimal = Field(gt=0, description="grams per pouch")
    number_of_pouches: int = Field(gt=0)


class WorkOrderCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'WO-2026-014', 'status': 'CREATED', 'description': 'Weekly masala run', 'products': [{'product_id': 1, 'pouch_size': 500, 'number_of_pouches': 40}]}}}
    name: str = Field(min_length=1)
    status: WorkOrderStatus = WorkOrderStatus.CREATED
    description: Optional[str] = None
    remarks: Optional[str] = None
    products: list[ProductLineInput] = Field(default_factory=list)


def _work_order_data(work_order: WorkOrder, repository: StockRepository) -> dict:
    return {
        "work_order_id": work_order.id,
        "name": work_order.name,
        "status": work_order.status,
        "description": work_order.description,
        "remarks": work_order.remarks,
        "created_at": work_order.created_at.isoformat(),
        "products": [
            {
                "product_id": row.product_id,
                "pouch_size": float(row.pouch_size),
                "number_of_pouches": row.number_of_pouches,
                "total_weight": float(row.total_weight),
            }
            for row in repository.list_work_order_products(work_order.id)
        ],
    }


@app.post("/api/v1/work-orders", tags=["Work Orders"])
def create_work_order(payload: WorkOrderCreate, repository: StockRepository = Depends(get_repository)) -> dict:
    db = repository.db
    for line in payload.products:
        if repository.get_product(line.product_id) is None:
            raise HTTPException(status_code=404, detail=f"product {line.product_id} not found")
    work_order = WorkOrder(
        name=payload.name,
        status=payload.status.value,
        description=payload.description,
        remarks=payload.remarks,
    )
    db.add(work_order)
    db.flush()
    for line in payload.products:
        db.add(
            WorkOrderProduct(
                work_order_id=work_order.id,
                product_id=line.product_id,
                pouch_size=line.pouch_size,
                number_of_pouches=line.number_of_pouches,
                total_weight=line.pouch_size * line.number_of_pouches / 1000,
            )
        )
    db.commit()
    db.refresh(work_order)
    return {"data": _work_order_data(work_order, repository), "meta": _meta()}


@app.get("/api/v1/work-orders/{work_order_id}", tags=["Work Orders"])
def get_work_order(work_order_id: int, repository: StockRepository = Depends(get_repository)) -> dict:
    work_order = repository.get_work_order(work_order_id)
    if not work_order:
        raise HTTPException(status_code=404, detail="work order not found")
    return {"data": _work_order_data(work_order, repository), "meta": _meta()}


class OrderCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'client_name': 'Savour Foods', 'status': 'NEW', 'products': [{'product_id': 1, 'pouch_size': 250, 'number_of_pouches': 100}]}}}
    client_name: str = Field(min_length=1)
    status: OrderStatus = OrderStatus.NEW
    remarks: Optional[str] = None
    products: list[ProductLineInput] = Field(default_factory=list)


def _order_data(order: Order, repository: StockRepository) -> dict:
    allocated = StockHistoryQuery(repository).allocated_quantities(ReferenceType.ORDER, order.id, StockType.PRODUCT)
    return {
        "order_id": order.id,
        "client_name": order.client_name,
        "status": order.status,
        "remarks": order.remarks,
        "created_at": order.created_at.isoformat(),
        "products": [
            {
                "product_id": row.product_id,
                "pouch_size": float(row.pouch_size),
                "number_of_pouches": row.number_of_pouches,
                "allocated_quantity": float(allocated.get(row.product_id, 0)),
            }
            for row in repository.list_order_products(order.id)
        ],
    }


@app.post("/api/v1/orders", tags=["Orders"])
def create_order(payload: OrderCreate, repository: StockRepository = Depends(get_repository)) -> dict:
    db = repository.db
    for line in payload.products:
        if repository.get_product(line.product_id) is None:
            raise HTTPException(status_code=404, detail=f"product {line.product_id} not found")
    order = Order(client_name=payload.client_name, status=payload.status.value, remarks=payload.remarks)
    db.add(order)
    db.flush()
    for line in payload.products:
        db.add(
            OrderProduct(
                order_id=order.id,
                product_id=line.product_id,
                pouch_size=line.pouch_size,
                number_of_pouches=line.number_of_pouches,
            )
        )
    db.commit()
    db.refresh(order)
    return {"data": _order_data(order, repository), "meta": _meta()}


@app.get("/api/v1/orders/{order_id}", tags=["Orders"])
def get_order(order_id: int, repository: StockRepository = Depends(get_repository)) -> dict:
    order = repository.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    return {"data": _order_data(order, repository), "meta": _meta()}


# Stock mutations


class StockReceipt(BaseModel):
    model_config = {"json_schema_extra": {"example": {'quantity': 25.5, 'reference_id': 'GRN-0042'}}}
    quantity: Decimal = Field(gt=0)
    reference_id: Optional[str] = None


class IngredientAllocationCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'ingredient_id': 1, 'quantity': 4}}}
    ingredient_id: int
    quantity: Decimal = Field(gt=0)


class ProductAllocationCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'product_id': 1, 'quantity': 20}}}
    product_id: int
    quantity: Decimal = Field(gt=0)


@app.post("/api/v1/ingredients/{ingredient_id}/stock", tags=["Stock"])
def add_ingredient_stock(
    ingredient_id: int, payload: StockReceipt, repository: StockRepository = Depends(get_repository)
) -> dict:
    ingredient = StockMutationService(repository).add_ingredient_stock(
        ingredient_id, payload.quantity, reference_id=payload.reference_id
    )
    return {"data": _ingredient_data(ingredient), "meta": _meta()}


@app.post("/api/v1/products/{product_id}/stock", tags=["Stock"])
def add_product_stock(
    product_id: int, payload: StockReceipt, repository: StockRepository = Depends(get_repository)
) -> dict:
    product = StockMutationService(repository).add_product_stock(
        product_id, payload.quantity, reference_id=payload.reference_id
    )
    return {"data": _product_data(product), "meta": _meta()}


@app.post("/api/v1/orders/{order_id}/allocations", tags=["Stock"])
def allocate_product_stock(
    order_id: int, payload: ProductAllocationCreate, repository: StockRepository = Depends(get_repository)
) -> dict:
    allocation = StockMutationService(repository).allocate_product_stock(
        payload.product_id, order_id, payload.quantity
    )
    return {"data": _allocation_data(allocation), "meta": _meta()}


@app.post("/api/v1/work-orders/{work_order_id}/allocations", tags=["Stock"])
def allocate_ingredient_stock(
    work_order_id: int, payload: IngredientAllocationCreate, repository: StockRepository = Depends(get_repository)
) -> dict:
    allocation = StockMutationService(repository).allocate_ingredient_stock(
        payload.ingredient_id, work_order_id, payload.quantity
    )
    return {"data": _allocation_data(allocation), "meta": _meta()}


# Stock history


@app.get("/api/v1/ingredients/{ingredient_id}/stock-history", tags=["Stock History"])
def get_ingredient_stock_history(ingredient_id: int, repository: StockRepository = Depends(get_repository)) -> dict:
    rows = StockHistoryQuery(repository).get_ingredient_stock_history(ingredient_id)
    return {"data": [_allocation_data(row) for row in rows], "meta": _meta()}


@app.get("/api/v1/products/{product_id}/stock-history", tags=["Stock History"])
def get_product_stock_history(product_id: int, repository: StockRepository = Depends(get_repository)) -> dict:
    rows = StockHistoryQuery(repository).get_product_stock_history(product_id)
    return {"data": [_allocation_data(row) for row in rows], "meta": _meta()}


@app.get("/api/v1/orders/{order_id}/allocations", tags=["Stock History"])
def get_order_allocations(order_id: int, repository: StockRepository = Depends(get_repository)) -> dict:
    rows = StockHistoryQuery(repository).get_stock_allocations_by_order(order_id)
    return {"data": [_allocation_data(row) for row in rows], "meta": _meta()}


@app.get("/api/v1/work-orders/{work_order_id}/allocations", tags=["Stock History"])
def get_work_order_allocations(work_order_id: int, repository: StockRepository = Depends(get_repository)) -> dict:
    rows = StockHistoryQuery(repository).get_stock_allocations_by_work_order(work_order_id)
    return {"data": [_allocation_data(row) for row in rows], "meta": _meta()}


@app.get("/api/v1/stock/{stock_type}/{item_id}/balance-check", tags=["Stock History"])
def check_stock_balance(
    stock_type: StockType, item_id: int, repository: StockRepository = Depends(get_repository)
) -> dict:
    check = StockHistoryQuery(repository).check_balance(stock_type, item_id)
    warnings = [] if check.consistent else ["balance does not match ledger"]
    return {"data": _balance_data(check), "meta": _meta(warnings=warnings)}


# Requirements


class RequirementPreview(BaseModel):
    model_config = {"json_schema_extra": {"example": {'products': [{'product_id': 1, 'pouch_size': 1000, 'number_of_pouches': 5}]}}}
    products: list[ProductLineInput]


@app.get("/api/v1/work-orders/{work_order_id}/required-ingredients", tags=["Requirements"])
def get_required_ingredients(work_order_id: int, repository: StockRepository = Depends(get_repository)) -> dict:
    items = RequirementResolver(repository).resolve_required_ingredients(work_order_id)
    return {"data": [_required_data(item) for item in items], "meta": _meta()}


@app.get("/api/v1/work-orders/{work_order_id}/ingredient-status", tags=["Requirements"])
def get_ingredient_status(work_order_id: int, repository: StockRepository = Depends(get_repository)) -> dict:
    items = RequirementResolver(repository).ingredient_status(work_order_id)
    warnings = [f"insufficient stock for {item.name}" for item in items if not item.sufficient_stock]
    return {"data": [_required_data(item) for item in items], "meta": _meta(warnings=warnings)}


@app.post("/api/v1/required-ingredients:preview", tags=["Requirements"])
def preview_required_ingredients(
    payload: RequirementPreview, repository: StockRepository = Depends(get_repository)
) -> dict:
    lines = [ProductLine(line.product_id, line.pouch_size, line.number_of_pouches) for line in payload.products]
    items = RequirementResolver(repository).resolve_for_products(lines)
    return {"data": [_required_data(item) for item in items], "meta": _meta()}
