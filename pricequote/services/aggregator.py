from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from ..errors import BasketValidationError
from ..schemas import QuoteRequestItem, Recipe
from .catalog import (
    UNIT_MISMATCH,
    CanonicalCatalog,
    CanonicalItem,
    MissingItem,
    Unresolved,
)
from .units import UnitType, normalize

logger = logging.getLogger(__name__)


@dataclass
class Requirement:
    item: CanonicalItem
    value: float


@dataclass
class Aggregation:
    requirements: Dict[str, Requirement] = field(default_factory=dict)
    missing: List[MissingItem] = field(default_factory=list)

    @property
    def total_requested(self) -> int:
        return len(self.requirements) + len(self.missing)

    def add(
        self,
        catalog: CanonicalCatalog,
        ingredient_name: str,
        unit: UnitType,
        value: float,
    ) -> None:
        resolved = catalog.resolve(ingredient_name)
        if isinstance(resolved, Unresolved):
            self.missing.append(MissingItem(ingredient_name, resolved.reason))
            return
        if resolved.unit_type != unit:
            self.missing.append(MissingItem(ingredient_name, UNIT_MISMATCH))
            return
        existing = self.requirements.get(resolved.id)
        if existing is None:
            self.requirements[resolved.id] = Requirement(item=resolved, value=value)
        else:
            existing.value += value


def aggregate(
    menu_items: Sequence[Tuple[Recipe, float]],
    catalog: CanonicalCatalog,
) -> Aggregation:
    """Scale every recipe to its requested servings and sum requirements per canonical item.

    Totals are summed across the whole basket so that recipes sharing an
    ingredient share its packs. A zero or negative scaled quantity is kept as
    is; the caller decides servings.
    """
    aggregation = Aggregation()
    for recipe, servings in menu_items:
        if not math.isfinite(recipe.servings) or recipe.servings <= 0:
            raise BasketValidationError(f"Recipe {recipe.id} has invalid servings {recipe.servings!r}")
        if not math.isfinite(servings):
            raise BasketValidationError(f"Menu servings for recipe {recipe.id} must be finite")
        scale = servings / recipe.servings
        for ingredient in recipe.ingredients:
            if not math.isfinite(ingredient.quantity):
                raise BasketValidationError(
                    f"Ingredient {ingredient.lookup_name!r} in recipe {recipe.id} has a non-finite quantity"
                )
            normalized = normalize(ingredient.unit, ingredient.quantity * scale)
            aggregation.add(catalog, ingredient.lookup_name, normalized.unit, normalized.value)

    logger.debug(
        "Aggregated %d recipes into %d requirements (%d missing)",
        len(menu_items),
        len(aggregation.requirements),
        len(aggregation.missing),
    )
    return aggregation


def aggregate_request_items(
    items: Sequence[QuoteRequestItem],
    catalog: CanonicalCatalog,
) -> Aggregation:
    """Same accumulation for wire items that already carry a canonical unit family."""
    aggregation = Aggregation()
    for item in items:
        if not math.isfinite(item.required.value):
            raise BasketValidationError(f"Required quantity for {item.ingredientName!r} must be finite")
        aggregation.add(catalog, item.ingredientName, item.required.unit, item.required.value)
    return aggregation
