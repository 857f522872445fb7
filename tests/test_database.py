import pytest
from postgrest.exceptions import APIError

from database import (
    ValidationError,
    default_staple_ids,
    filter_recipes_by_ingredients,
    group_by_sector,
    grid_position,
    ingredient_names,
    sector_name,
)
from list_builder import build_list


def _grid(db):
    return [(s["name"], s["display_order"], s["grid_row"], s["grid_column"]) for s in db.get_sectors()]


def test_grid_position():
    assert grid_position(0) == {"display_order": 1, "grid_row": 1, "grid_column": 1}
    assert grid_position(4) == {"display_order": 5, "grid_row": 2, "grid_column": 2}


def test_sectors_fill_three_column_grid(db, sectors):
    assert _grid(db) == [
        ("Produce", 1, 1, 1),
        ("Dairy", 2, 1, 2),
        ("Bakery", 3, 1, 3),
        ("Meat", 4, 2, 1),
        ("Frozen", 5, 2, 2),
    ]


def test_move_sector_renumbers_grid(db, sectors):
    db.move_sector(sectors["Frozen"]["id"], 0)
    assert _grid(db) == [
        ("Frozen", 1, 1, 1),
        ("Produce", 2, 1, 2),
        ("Dairy", 3, 1, 3),
        ("Bakery", 4, 2, 1),
        ("Meat", 5, 2, 2),
    ]


def test_empty_names_are_rejected_before_any_write(db, fake):
    with pytest.raises(ValidationError):
        db.add_sector("   ")
    with pytest.raises(ValidationError, match="recipe name"):
        db.save_recipe(None, "", lines=[{"name": "Salt"}])
    with pytest.raises(ValidationError):
        db.save_staple(None, "", None)
    with pytest.raises(ValidationError):
        db.rename_shopping_list("any", " ")
    assert fake.writes == []


def test_backend_errors_propagate(db, fake):
    fake.fail_on("supermarket_sectors", "select")
    with pytest.raises(APIError):
        db.get_sectors()


def test_find_ingredient_is_case_insensitive_and_literal(db, sectors):
    db.create_ingredient("100% juice", sectors["Produce"]["id"])
    db.create_ingredient("Milk", sectors["Dairy"]["id"])
    assert db.find_ingredient("  milk ")["name"] == "Milk"
    assert db.find_ingredient("100% JUICE")["name"] == "100% juice"
    assert db.find_ingredient("100") is None
    assert db.find_ingredient("M_lk") is None


def test_save_recipe_reuses_ingredients_and_replaces_lines(db, sectors, catalog):
    ingredients = db.get_ingredients()
    assert sorted(i["name"] for i in ingredients) == ["Eggs", "Flour", "Milk", "Minced beef"]

    db.save_recipe(catalog["pancakes"], "Pancakes", instructions="Whisk", lines=[
        {"name": "eggs", "sector_id": sectors["Produce"]["id"], "quantity": "3", "unit": ""},
        {"name": "", "sector_id": None},
    ])
    pancakes = db.get_recipe(catalog["pancakes"])
    assert pancakes["instructions"] == "Whisk"
    assert [(ri["ingredient"]["name"], ri["quantity"]) for ri in pancakes["recipe_ingredients"]] == [("Eggs", "3")]
    assert len(db.get_ingredients()) == 4


def test_delete_recipe_removes_its_lines(db, fake, catalog):
    db.delete_recipe(catalog["bolognese"])
    assert db.get_recipe(catalog["bolognese"]) is None
    assert all(r["recipe_id"] != catalog["bolognese"] for r in fake.rows("recipe_ingredients"))


def test_deleted_sector_falls_back_to_other(db, sectors, catalog):
    db.delete_sector(sectors["Bakery"]["id"])
    bread = db.get_staple(catalog["bread"])
    assert bread["sector"] is None
    assert sector_name(bread) == "Other"


def test_rename_sector_shows_through_references(db, sectors, catalog):
    db.rename_sector(sectors["Bakery"]["id"], "Bread & Cakes")
    assert sector_name(db.get_staple(catalog["bread"])) == "Bread & Cakes"


def test_recipe_filters(db, catalog):
    recipes = db.get_recipes()
    assert ingredient_names(recipes) == ["Eggs", "Flour", "Milk", "Minced beef"]
    assert [r["name"] for r in filter_recipes_by_ingredients(recipes, ["Milk"])] == ["Bolognese", "Lasagne"]
    assert [r["name"] for r in filter_recipes_by_ingredients(recipes, ["Milk", "Eggs"])] == ["Lasagne"]
    assert filter_recipes_by_ingredients(recipes, []) == recipes


def test_default_staples(db, catalog):
    assert default_staple_ids(db.get_staples()) == [catalog["eggs_staple"]]


def test_recipes_newest_first(db, catalog):
    assert [r["name"] for r in db.get_recipes(order="created_at")] == ["Pancakes", "Lasagne", "Bolognese"]


def test_history_lifecycle(db, catalog):
    first = build_list(db, db.get_recipes(), db.get_staples(), [catalog["bolognese"]], [], name="First")
    second = build_list(db, db.get_recipes(), db.get_staples(), [catalog["pancakes"]], [], name="Second")
    assert [h["name"] for h in db.get_history()] == ["Second", "First"]

    db.complete_shopping_list(first["id"])
    assert db.get_shopping_list(first["id"])["completed_at"]
    assert db.get_shopping_list(second["id"])["completed_at"] is None

    db.rename_shopping_list(second["id"], "Renamed")
    assert db.get_shopping_list(second["id"])["name"] == "Renamed"

    db.delete_shopping_list(first["id"])
    assert [h["name"] for h in db.get_history()] == ["Renamed"]
    assert db.get_shopping_list_items(first["id"]) == []
    assert db.load_shopping_list(first["id"]) is None


def test_checked_state(db, catalog):
    created = build_list(db, db.get_recipes(), db.get_staples(), [catalog["pancakes"]], [catalog["bread"]])
    ids = [i["id"] for i in created["items"]]

    db.set_item_checked(ids[0], True)
    assert [i["is_checked"] for i in db.load_shopping_list(created["id"])["items"]] == [True, False, False]

    db.save_checked_state(created["id"], ids[1:])
    assert [i["is_checked"] for i in db.load_shopping_list(created["id"])["items"]] == [False, True, True]

    db.save_checked_state(created["id"], [])
    assert not any(i["is_checked"] for i in db.load_shopping_list(created["id"])["items"])


def test_load_shopping_list_groups_by_sector(db, sectors, catalog):
    created = build_list(db, db.get_recipes(), db.get_staples(), [catalog["bolognese"]], [catalog["bread"]])
    db.delete_sector(sectors["Meat"]["id"])
    loaded = db.load_shopping_list(created["id"])
    assert list(loaded["grouped"]) == ["Dairy", "Other", "Bakery"]
    assert [i["name"] for i in loaded["grouped"]["Other"]] == ["Minced beef"]


def test_failed_autosave_keeps_existing_checks(db, fake, catalog):
    created = build_list(db, db.get_recipes(), db.get_staples(), [catalog["pancakes"]], [catalog["bread"]])
    ids = [i["id"] for i in created["items"]]
    db.save_checked_state(created["id"], ids[:2])

    # the set-checked write goes through, clearing the rest fails
    fake.fail_on("shopping_list_items", "update", after=1)
    with pytest.raises(APIError):
        db.save_checked_state(created["id"], ids[1:])
    assert [i["is_checked"] for i in db.load_shopping_list(created["id"])["items"]] == [True, True, True]


def test_group_by_sector_is_shared_with_list_builder():
    import list_builder

    items = [{"name": "Milk", "sector": "Dairy"}, {"name": "Foil", "sector": None}, {"name": "Cheese", "sector": "Dairy"}]
    grouped = group_by_sector(items)
    assert list_builder.group_by_sector is group_by_sector
    assert list(grouped) == ["Dairy", "Other"]
    assert [i["name"] for i in grouped["Dairy"]] == ["Milk", "Cheese"]
