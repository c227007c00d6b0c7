"""Requirement Resolver.

Expands the products of a work order into the base ingredients needed to make
them. Ingredients reach a product either directly (product_ingredients) or
through one level of compounds (product_compounds -> compound_ingredients).
Link quantities are per kilogram of product, so every contribution is
``link quantity * product weight in kg`` converted with ``to_base_unit``.

Compound ingredients are not multiplied by the product->compound quantity
unless ``apply_compound_quantity`` is enabled.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from erp_stock.config import settings
from erp_stock.errors import NotFoundError, StockValidationError
from erp_stock.history import StockHistoryQuery
from erp_stock.models import Ingredient, ReferenceType, StockType
from erp_stock.repository import StockRepository
from erp_stock.units import base_unit_label, to_base_unit

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class ProductLine:
    product_id: int
    pouch_size: Decimal
    number_of_pouches: int

    @property
    def total_weight_kg(self) -> Decimal:
        # pouch size is in grams
        return _decimal(self.pouch_size) * _decimal(self.number_of_pouches) / 1000


@dataclass
class RequiredIngredient:
    ingredient_id: int
    name: str
    unit_of_measurement: str
    required_quantity: Decimal = ZERO
    current_stock: Decimal = ZERO


@dataclass
class WorkOrderIngredientStatus(RequiredIngredient):
    allocated_quantity: Decimal = ZERO

    @property
    def outstanding_quantity(self) -> Decimal:
        return max(self.required_quantity - self.allocated_quantity, ZERO)

    @property
    def sufficient_stock(self) -> bool:
        return self.current_stock >= self.outstanding_quantity


class RequirementResolver:
    def __init__(self, repository: StockRepository, apply_compound_quantity: Optional[bool] = None):
        self.repository = repository
        if apply_compound_quantity is None:
            apply_compound_quantity = settings.apply_compound_quantity
        self.apply_compound_quantity = apply_compound_quantity

    def resolve_required_ingredients(self, work_order_id: int) -> list[RequiredIngredient]:
        if self.repository.get_work_order(work_order_id) is None:
            raise NotFoundError("work order", work_order_id)
        lines = [
            ProductLine(row.product_id, row.pouch_size, row.number_of_pouches)
            for row in self.repository.list_work_order_products(work_order_id)
        ]
        return self._resolve(lines)

    def resolve_for_products(self, lines: Iterable[ProductLine]) -> list[RequiredIngredient]:
        """Resolve product lines that have not been saved on a work order yet."""
        lines = list(lines)
        for line in lines:
            if _decimal(line.pouch_size) <= 0 or _decimal(line.number_of_pouches) <= 0:
                raise StockValidationError(
                    f"product {line.product_id}: pouch size and number of pouches must be positive"
                )
            if self.repository.get_product(line.product_id) is None:
                raise NotFoundError("product", line.product_id)
        return self._resolve(lines)

    def ingredient_status(self, work_order_id: int) -> list[WorkOrderIngredientStatus]:
        """Required ingredients annotated with what is already allocated to the work order."""
        required = self.resolve_required_ingredients(work_order_id)
        allocated = StockHistoryQuery(self.repository).allocated_quantities(
            ReferenceType.WORK_ORDER, work_order_id, StockType.INGREDIENT
        )
        return [
            WorkOrderIngredientStatus(
                ingredient_id=item.ingredient_id,
                name=item.name,
                unit_of_measurement=item.unit_of_measurement,
                required_quantity=item.required_quantity,
                current_stock=item.current_stock,
                allocated_quantity=allocated.get(item.ingredient_id, ZERO),
            )
            for item in required
        ]

    def _resolve(self, lines: list[ProductLine]) -> list[RequiredIngredient]:
        if not lines:
            return []

        weights: dict[int, Decimal] = defaultdict(Decimal)
        for line in lines:
            weights[line.product_id] += line.total_weight_kg

        required: dict[int, RequiredIngredient] = {}

        for link, ingredient in self.repository.list_product_ingredients(weights):
            self._accumulate(required, ingredient, _decimal(link.quantity) * weights[link.product_id])

        product_compounds = self.repository.list_product_compounds(weights)
        compound_ingredients = defaultdict(list)
        compound_ids = {link.compound_id for link in product_compounds}
        for link, ingredient in self.repository.list_compound_ingredients(compound_ids):
            compound_ingredients[link.compound_id].append((link, ingredient))

        for product_compound in product_compounds:
            multiplier = weights[product_compound.product_id]
            if self.apply_compound_quantity:
                multiplier *= _decimal(product_compound.quantity)
            for link, ingredient in compound_ingredients[product_compound.compound_id]:
                self._accumulate(required, ingredient, _decimal(link.quantity) * multiplier)

        balances = self.repository.ingredient_balances(required.keys())
        for ingredient_id, item in required.items():
            item.current_stock = _decimal(balances.get(ingredient_id))

        logger.debug("Resolved %d ingredients for %d product lines", len(required), len(lines))
        return sorted(required.values(), key=lambda item: item.name.lower())

    @staticmethod
    def _accumulate(required: dict, ingredient: Ingredient, quantity: Decimal) -> None:
        amount = to_base_unit(quantity, ingredient.unit_of_measurement)
        item = required.get(ingredient.id)
        if item is None:
            item = RequiredIngredient(
                ingredient_id=ingredient.id,
                name=ingredient.name,
                unit_of_measurement=base_unit_label(ingredient.unit_of_measurement),
            )
            required[ingredient.id] = item
        item.required_quantity += amount
