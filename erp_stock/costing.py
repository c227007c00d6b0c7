from decimal import Decimal

from erp_stock.errors import NotFoundError
from erp_stock.repository import StockRepository
from erp_stock.units import to_base_unit


def compound_rate(repository: StockRepository, compound_id: int) -> Decimal:
    """Cost of one unit of a compound: sum of ingredient rate x quantity in base unit.

    Ingredients without a rate count as zero.
    """
    if repository.get_compound(compound_id) is None:
        raise NotFoundError("compound", compound_id)
    total = Decimal("0")
    for link, ingredient in repository.list_compound_ingredients([compound_id]):
        quantity = to_base_unit(Decimal(link.quantity or 0), ingredient.unit_of_measurement)
        total += Decimal(ingredient.rate or 0) * quantity
    return total
