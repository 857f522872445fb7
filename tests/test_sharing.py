from urllib.parse import unquote

import pytest

from sharing import grid_layout, list_text, render_pdf, share_link

SECTORS = [
    {"name": "Produce", "display_order": 1, "grid_row": 1, "grid_column": 1},
    {"name": "Bakery", "display_order": 3, "grid_row": 1, "grid_column": 3},
    {"name": "Dairy", "display_order": 2, "grid_row": 1, "grid_column": 2},
    {"name": "Meat", "display_order": 4, "grid_row": 2, "grid_column": 1},
]


def _item(name, quantity=None, checked=False):
    return {"name": name, "quantity": quantity, "is_checked": checked}


SHOPPING_LIST = {
    "name": "Weekend",
    "grouped": {
        "Dairy": [_item("Milk", "400ml (Bolognese)"), _item("Eggs", checked=True)],
        "Other": [_item("Foil")],
        "Produce": [_item("Carrots", "1kg (Soup)")],
    },
}


def test_grid_layout_orders_by_grid_position():
    assert grid_layout(SECTORS) == [["Produce", "Dairy", "Bakery"], ["Meat"]]


def test_grid_layout_appends_unknown_buckets_with_other_last():
    grouped = {"Other": [], "Household": [], "Dairy": []}
    assert grid_layout(SECTORS, grouped) == [["Produce", "Dairy", "Bakery"], ["Meat"], ["Household", "Other"]]


def test_list_text_skips_empty_sectors():
    text = list_text(SHOPPING_LIST, SECTORS)
    assert text == (
        "🛒 Shopping List - Weekend\n\n"
        "📍 Produce\n"
        "  ☐ Carrots (1kg (Soup))\n"
        "\n"
        "📍 Dairy\n"
        "  ☐ Milk (400ml (Bolognese))\n"
        "  ☐ Eggs\n"
        "\n"
        "📍 Other\n"
        "  ☐ Foil\n"
        "\n"
    )


def test_list_text_without_name():
    assert list_text({"grouped": {}}, SECTORS, name="") == "🛒 Shopping List\n\n"


def test_share_links():
    whatsapp = share_link("whatsapp", "Milk & eggs\n")
    assert whatsapp.startswith("https://wa.me/?text=")
    assert unquote(whatsapp.split("text=", 1)[1]) == "Milk & eggs\n"

    email = share_link("email", "Milk", subject="Weekend list")
    assert email == "mailto:?subject=Weekend%20list&body=Milk"

    with pytest.raises(ValueError):
        share_link("pigeon", "Milk")


def test_render_pdf():
    pdf = render_pdf(SHOPPING_LIST, SECTORS)
    assert pdf.startswith(b"%PDF")
