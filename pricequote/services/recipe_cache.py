from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

from ..errors import BasketValidationError
from ..schemas import MenuItem, Recipe

logger = logging.getLogger(__name__)

RecipeLoader = Callable[[str], Awaitable[Optional[Recipe]]]

DEFAULT_MAX_RECIPES = 5000


class RecipeCache:
    """Read-through recipe lookup by id, passed explicitly to whoever builds baskets."""

    def __init__(
        self,
        loader: Optional[RecipeLoader] = None,
        *,
        max_entries: int = DEFAULT_MAX_RECIPES,
    ) -> None:
        self._loader = loader
        self._max_entries = max_entries
        self._recipes: "OrderedDict[str, Recipe]" = OrderedDict()
        self._lock = threading.Lock()

    def populate(self, recipes: Iterable[Recipe]) -> int:
        count = 0
        with self._lock:
            for recipe in recipes:
                self._recipes[recipe.id] = recipe
                self._recipes.move_to_end(recipe.id)
                count += 1
            while len(self._recipes) > self._max_entries:
                self._recipes.popitem(last=False)
        return count

    def get(self, recipe_id: str) -> Optional[Recipe]:
        with self._lock:
            recipe = self._recipes.get(recipe_id)
            if recipe is not None:
                self._recipes.move_to_end(recipe_id)
            return recipe

    async def get_or_load(self, recipe_id: str) -> Optional[Recipe]:
        recipe = self.get(recipe_id)
        if recipe is not None or self._loader is None:
            return recipe
        recipe = await self._loader(recipe_id)
        if recipe is not None:
            self.populate([recipe])
        return recipe

    def __len__(self) -> int:
        return len(self._recipes)


async def build_menu_basket(
    menu: Sequence[MenuItem],
    cache: RecipeCache,
) -> List[Tuple[Recipe, float]]:
    """Pair each menu entry with its recipe; an unknown recipe id invalidates the basket."""
    basket: List[Tuple[Recipe, float]] = []
    unknown: List[str] = []
    for entry in menu:
        recipe = await cache.get_or_load(entry.recipeId)
        if recipe is None:
            unknown.append(entry.recipeId)
            continue
        basket.append((recipe, entry.servings))
    if unknown:
        raise BasketValidationError(f"Unknown recipe ids: {', '.join(sorted(set(unknown)))}")
    return basket
