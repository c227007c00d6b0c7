"""Ingredient unit handling.

Quantities recorded in grams are normalised to kilograms. Every other unit is
treated as already being in its base form and passes through unchanged, which
includes ``Mls`` (millilitres are not scaled to litres).
"""

import enum
import logging
from functools import lru_cache

logger = logging.getLogger(__name__)


class UnitOfMeasurement(str, enum.Enum):
    KG = "KG"
    GMS = "Gms"
    LIT = "Lit"
    MLS = "Mls"
    PACK = "Pack"
    DOZEN = "Dozen"
    UNITS = "Units"


GRAM_UNITS = {"g", "gms"}
KILOGRAM_UNITS = {"kg"}
KNOWN_UNITS = {unit.value.lower() for unit in UnitOfMeasurement} | GRAM_UNITS

BASE_UNIT = "kg"


@lru_cache(maxsize=None)
def _warn_unrecognized(unit: str) -> None:
    logger.warning("Unrecognized unit of measurement %r passed through unconverted", unit)


def to_base_unit(value, unit: str | None):
    if unit is None:
        return value
    normalized = unit.strip().lower()
    if normalized in GRAM_UNITS:
        return value / 1000
    if normalized not in KNOWN_UNITS:
        _warn_unrecognized(unit)
    return value


def base_unit_label(unit: str | None) -> str:
    """Unit a value carries after ``to_base_unit``.

    Only gram and kilogram quantities end up in ``kg``; any other declared unit
    (``Lit``, ``Mls``, ``Pack``, ...) is reported as is.
    """
    if unit is None:
        return BASE_UNIT
    normalized = unit.strip().lower()
    if normalized in GRAM_UNITS or normalized in KILOGRAM_UNITS:
        return BASE_UNIT
    return unit
