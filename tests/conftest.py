import os

import pytest

os.environ.setdefault("SESSION_SECRET", "test-secret")
os.environ["SUPABASE_JWT_SECRET"] = ""

from fastapi.testclient import TestClient  # noqa: E402

from database import Database  # noqa: E402
from fake_supabase import FakeSupabase  # noqa: E402

SECTOR_NAMES = ["Produce", "Dairy", "Bakery", "Meat", "Frozen"]


@pytest.fixture
def fake():
    return FakeSupabase()


@pytest.fixture
def db(fake):
    return Database(client=fake)


@pytest.fixture
def sectors(db):
    """Five sectors laid out on the 3-column grid, keyed by name."""
    return {name: db.add_sector(name) for name in SECTOR_NAMES}


@pytest.fixture
def catalog(db, sectors):
    """Bolognese, Lasagne and Pancakes plus two staples."""
    bolognese = db.save_recipe(None, "Bolognese", lines=[
        {"name": "Milk", "sector_id": sectors["Dairy"]["id"], "quantity": "400", "unit": "ml"},
        {"name": "Minced beef", "sector_id": sectors["Meat"]["id"], "quantity": "500", "unit": "g"},
    ])
    lasagne = db.save_recipe(None, "Lasagne", lines=[
        {"name": "Milk", "sector_id": sectors["Dairy"]["id"], "quantity": "200", "unit": "ml"},
        {"name": "Eggs", "sector_id": sectors["Dairy"]["id"], "quantity": "2", "unit": ""},
    ])
    pancakes = db.save_recipe(None, "Pancakes", lines=[
        {"name": "Eggs", "sector_id": sectors["Dairy"]["id"], "quantity": "2", "unit": ""},
        {"name": "Flour", "sector_id": sectors["Bakery"]["id"], "quantity": "250", "unit": "g"},
    ])
    eggs_staple = db.save_staple(None, "eggs", sectors["Dairy"]["id"], is_default=True)
    bread = db.save_staple(None, "Bread", sectors["Bakery"]["id"])
    return {
        "bolognese": bolognese,
        "lasagne": lasagne,
        "pancakes": pancakes,
        "eggs_staple": eggs_staple,
        "bread": bread,
    }


@pytest.fixture
def client(db, monkeypatch):
    """TestClient bound to the fake backend, already logged in."""
    import main

    async def fake_sign_in(email, password):
        if password != "secret":
            raise main.LoginError("Invalid login credentials")
        return "token", {"id": "user-1", "email": email}

    monkeypatch.setattr(main, "sign_in", fake_sign_in)
    main.app.dependency_overrides[main.get_db] = lambda: db
    with TestClient(main.app) as test_client:
        response = test_client.post(
            "/login", data={"email": "cook@example.com", "password": "secret"}, follow_redirects=False
        )
        assert response.status_code == 303
        yield test_client
    main.app.dependency_overrides.clear()
