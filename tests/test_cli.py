from __future__ import annotations

import json

import httpx
import pytest

from pricequote import cli
from pricequote.schemas import MenuItem, Recipe

RECIPES = [
    Recipe.model_validate(
        {
            "id": "carbonara",
            "servings": 2,
            "ingredients": [
                {"name": "Spaghetti", "quantity": 0.2, "unit": "kg"},
                {"name": "Eggs", "quantity": 3, "unit": "pieces"},
            ],
        }
    ),
    Recipe.model_validate(
        {
            "id": "pancakes",
            "servings": 4,
            "ingredients": [
                {"name": "Flour", "canonical_name": "plain flour", "quantity": 200, "unit": "g"},
                {"name": "eggs", "quantity": 2},
                {"name": "Eggs", "quantity": 20, "unit": "g"},
            ],
        }
    ),
]


def test_build_quote_items_scales_and_sums():
    menu = [MenuItem(recipeId="carbonara", servings=4), MenuItem(recipeId="pancakes", servings=2)]

    items = cli.build_quote_items(RECIPES, menu)

    by_key = {(i["ingredientName"].lower(), i["required"]["unit"]): i["required"]["value"] for i in items}
    assert by_key[("spaghetti", "GRAM")] == pytest.approx(400)
    assert by_key[("eggs", "COUNT")] == pytest.approx(7)
    assert by_key[("plain flour", "GRAM")] == pytest.approx(100)
    # a gram quantity of eggs is kept apart rather than summed with the count
    assert by_key[("eggs", "GRAM")] == pytest.approx(10)


def test_build_quote_items_skips_unknown_recipes():
    assert cli.build_quote_items(RECIPES, [MenuItem(recipeId="ghost", servings=2)]) == []


def test_quote_command_posts_aggregated_items(tmp_path, monkeypatch, capsys):
    menu_file = tmp_path / "menu.json"
    menu_file.write_text(
        json.dumps(
            {
                "stores": ["tesco"],
                "recipes": [RECIPES[0].model_dump(mode="json")],
                "menu": [{"recipeId": "carbonara", "servings": 2}],
            }
        ),
        encoding="utf-8",
    )
    captured = {}

    def fake_post(endpoint, payload, *, api_base, timeout):
        captured.update(endpoint=endpoint, payload=payload, api_base=api_base)
        return {"currency": "GBP", "quotes": []}

    monkeypatch.setattr(cli, "_post", fake_post)

    cli.main(["quote", "--menu", str(menu_file), "--postcode", "SW1A 1AA", "--api-base", "http://api.test/v1"])

    assert captured["endpoint"] == "/quote"
    assert captured["payload"]["stores"] == ["tesco"]
    assert captured["payload"]["postcode"] == "SW1A 1AA"
    assert len(captured["payload"]["items"]) == 2
    assert json.loads(capsys.readouterr().out)["currency"] == "GBP"


def test_quote_command_server_side(tmp_path, monkeypatch):
    menu_file = tmp_path / "menu.json"
    menu_file.write_text(
        json.dumps({"recipes": [], "menu": [{"recipeId": "carbonara", "servings": 2}]}),
        encoding="utf-8",
    )
    captured = {}
    monkeypatch.setattr(cli, "_post", lambda endpoint, payload, **kw: captured.update(endpoint=endpoint) or {})

    cli.main(["quote", "--menu", str(menu_file), "--store", "asda", "--server-side"])

    assert captured["endpoint"] == "/quote/menu"


def test_quote_command_requires_a_store(tmp_path):
    menu_file = tmp_path / "menu.json"
    menu_file.write_text(json.dumps({"menu": []}), encoding="utf-8")

    with pytest.raises(SystemExit):
        cli.main(["quote", "--menu", str(menu_file)])


def test_post_surfaces_http_errors(monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(422, json={"detail": "bad basket"}))
    real_client = httpx.Client

    monkeypatch.setattr(cli.httpx, "Client", lambda **kw: real_client(transport=transport, **kw))

    with pytest.raises(SystemExit, match="422"):
        cli._post("/quote", {}, api_base="http://api.test/v1", timeout=1.0)
