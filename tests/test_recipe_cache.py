from __future__ import annotations

import asyncio

import pytest

from pricequote.errors import BasketValidationError
from pricequote.schemas import MenuItem, Recipe
from pricequote.services.recipe_cache import RecipeCache, build_menu_basket


def _recipe(recipe_id: str, servings: float = 2) -> Recipe:
    return Recipe(id=recipe_id, servings=servings)


def test_populate_and_get():
    cache = RecipeCache()
    assert cache.populate([_recipe("a"), _recipe("b")]) == 2

    assert cache.get("a").id == "a"
    assert cache.get("missing") is None
    assert len(cache) == 2


def test_least_recently_used_recipe_is_evicted():
    cache = RecipeCache(max_entries=2)
    cache.populate([_recipe("a"), _recipe("b")])
    cache.get("a")
    cache.populate([_recipe("c")])

    assert cache.get("b") is None
    assert cache.get("a") is not None
    assert cache.get("c") is not None


def test_loader_is_consulted_once():
    loads = []

    async def loader(recipe_id):
        loads.append(recipe_id)
        return _recipe(recipe_id) if recipe_id == "known" else None

    cache = RecipeCache(loader)

    async def run():
        first = await cache.get_or_load("known")
        second = await cache.get_or_load("known")
        missing = await cache.get_or_load("ghost")
        return first, second, missing

    first, second, missing = asyncio.run(run())

    assert first is second
    assert missing is None
    assert loads == ["known", "ghost"]


def test_build_menu_basket_pairs_recipes_with_servings():
    cache = RecipeCache()
    cache.populate([_recipe("a", 4), _recipe("b")])
    menu = [MenuItem(recipeId="a", servings=2), MenuItem(recipeId="b", servings=6)]

    basket = asyncio.run(build_menu_basket(menu, cache))

    assert [(recipe.id, servings) for recipe, servings in basket] == [("a", 2), ("b", 6)]


def test_build_menu_basket_rejects_unknown_recipes():
    cache = RecipeCache()
    cache.populate([_recipe("a")])
    menu = [
        MenuItem(recipeId="zeta", servings=2),
        MenuItem(recipeId="a", servings=2),
        MenuItem(recipeId="alpha", servings=1),
    ]

    with pytest.raises(BasketValidationError, match="alpha, zeta"):
        asyncio.run(build_menu_basket(menu, cache))
