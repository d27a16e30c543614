from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from ..observability import UNRECOGNIZED_UNITS

logger = logging.getLogger(__name__)


class UnitType(str, Enum):
    GRAM = "GRAM"
    ML = "ML"
    COUNT = "COUNT"


UNIT_DEFINITIONS: Dict[str, Tuple[UnitType, float]] = {
    "g": (UnitType.GRAM, 1),
    "gram": (UnitType.GRAM, 1),
    "grams": (UnitType.GRAM, 1),
    "kg": (UnitType.GRAM, 1000),
    "ml": (UnitType.ML, 1),
    "l": (UnitType.ML, 1000),
    "tsp": (UnitType.ML, 5),
    "tbsp": (UnitType.ML, 15),
    "piece": (UnitType.COUNT, 1),
    "pieces": (UnitType.COUNT, 1),
    "clove": (UnitType.COUNT, 1),
    "cloves": (UnitType.COUNT, 1),
}
# canonical family names pass straight through
for _family in UnitType:
    UNIT_DEFINITIONS[_family.value.lower()] = (_family, 1)

FALLBACK_UNIT = UnitType.COUNT


@dataclass(frozen=True)
class NormalizedQuantity:
    unit: UnitType
    value: float


def normalize(raw_unit: Optional[str], value: float) -> NormalizedQuantity:
    """Convert a recipe quantity into one of the three canonical unit families.

    Unknown units are kept as ``COUNT`` with the value unchanged. That fallback
    can misstate requirements (an "oz" becomes a count), so every hit is logged
    and counted in ``pricequote_unrecognized_unit_total``.
    """
    key = raw_unit.strip().lower() if isinstance(raw_unit, str) else ""
    definition = UNIT_DEFINITIONS.get(key)
    if definition is None:
        label = key[:32] or "<none>"
        logger.warning("Unrecognized unit %r; treating as COUNT x1", label)
        UNRECOGNIZED_UNITS.labels(unit=label).inc()
        return NormalizedQuantity(FALLBACK_UNIT, value)
    family, multiplier = definition
    return NormalizedQuantity(family, value * multiplier)
