from decimal import Decimal

import pytest

from erp_stock.costing import compound_rate
from erp_stock.errors import NotFoundError


def test_compound_rate_converts_grams(repository, seed) -> None:
    chilli = seed.ingredient("Chilli", unit="Gms", rate=200)
    cumin = seed.ingredient("Cumin", unit="KG", rate=10)
    water = seed.ingredient("Water", unit="Lit")
    compound = seed.compound("Spice Mix", ingredients=[(chilli, 250), (cumin, 2), (water, 5)])

    assert compound_rate(repository, compound.id) == Decimal("70")


def test_compound_rate_for_unknown_compound(repository) -> None:
    with pytest.raises(NotFoundError):
        compound_rate(repository, 3)
