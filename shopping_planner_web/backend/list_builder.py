"""
List builder: turns selected recipes and staples into a consolidated,
sector-grouped shopping list and saves it.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from database import Database, OTHER_SECTOR, group_by_sector, sector_name

logger = logging.getLogger(__name__)

STAPLE_SOURCE = "Staple"


class ListBuildError(RuntimeError):
    """Saving a generated list failed; the message is meant for the user."""


def default_list_name(now: datetime = None) -> str:
    """e.g. "Shopping List - 19 Oct 2026, 14:05"."""
    now = now or datetime.now()
    return f"Shopping List - {now.day} {now.strftime('%b %Y, %H:%M')}"


def expand(recipes: List[Dict], staples: List[Dict],
           recipe_ids: Iterable[str], staple_ids: Iterable[str]) -> List[Dict]:
    """One raw requirement line per recipe ingredient and per selected staple."""
    recipe_ids = set(recipe_ids)
    staple_ids = set(staple_ids)
    lines = []

    for recipe in recipes:
        if recipe["id"] not in recipe_ids:
            continue
        for ri in recipe.get("recipe_ingredients") or []:
            ingredient = ri.get("ingredient")
            if not ingredient:
                continue
            lines.append({
                "name": ingredient["name"],
                "sector_id": ingredient.get("sector_id"),
                "sector": sector_name(ingredient),
                "quantity": ri.get("quantity"),
                "unit": ri.get("unit"),
                "source": recipe["name"],
            })

    for staple in staples:
        if staple["id"] not in staple_ids:
            continue
        lines.append({
            "name": staple["name"],
            "sector_id": staple.get("sector_id"),
            "sector": sector_name(staple),
            "quantity": None,
            "unit": None,
            "source": STAPLE_SOURCE,
        })

    return lines


def _requirement(line: Dict) -> Dict:
    requirement = {}
    if line.get("quantity"):
        requirement["quantity"] = line["quantity"]
        requirement["unit"] = line.get("unit") or ""
    if line.get("source"):
        requirement["source"] = line["source"]
    return requirement


def consolidate(lines: List[Dict]) -> List[Dict]:
    """Merge lines by trimmed, case-insensitive name.

    The first line of a name fixes the item's display name and sector; every
    line contributes its quantity/unit/source unless that exact requirement
    is already on the item.
    """
    consolidated: Dict[str, Dict] = {}
    for line in lines:
        key = line["name"].strip().lower()
        item = consolidated.get(key)
        if item is None:
            item = consolidated[key] = {
                "name": line["name"],
                "sector_id": line.get("sector_id"),
                "sector": line.get("sector") or OTHER_SECTOR,
                "requirements": [],
            }
        requirement = _requirement(line)
        if requirement and requirement not in item["requirements"]:
            item["requirements"].append(requirement)
    return list(consolidated.values())


def format_requirements(requirements: List[Dict]) -> Optional[str]:
    """Display string such as ``400ml (Bolognese), 200ml (Lasagne)``; None when empty."""
    parts = []
    for r in requirements:
        words = []
        if r.get("quantity"):
            words.append(f"{r['quantity']}{r.get('unit') or ''}")
        if r.get("source"):
            words.append(f"({r['source']})")
        if words:
            parts.append(" ".join(words))
    return ", ".join(parts) or None


def _save_items(db: Database, list_id: str, items: List[Dict]) -> List[Dict]:
    rows = [
        {
            "item_name": item["name"],
            "sector_id": item["sector_id"],
            "quantity": format_requirements(item["requirements"]),
            "is_checked": False,
        }
        for item in items
    ]
    saved = db.insert_shopping_list_items(list_id, rows)
    return [
        {
            **item,
            "quantity": row["quantity"],
            "id": saved[i]["id"] if i < len(saved) else None,
            "is_checked": False,
        }
        for i, (item, row) in enumerate(zip(items, rows))
    ]


def _save_links(db: Database, list_id: str, recipe_ids: List[str], staple_ids: List[str]):
    # Items are already written at this point; a failed link is logged, not rolled back.
    try:
        db.link_recipes(list_id, recipe_ids)
    except Exception as e:
        logger.error("Error saving recipe links for list %s: %s", list_id, e)
    try:
        db.link_staples(list_id, staple_ids)
    except Exception as e:
        logger.error("Error saving staple links for list %s: %s", list_id, e)


def build_list(db: Database, recipes: List[Dict], staples: List[Dict],
               recipe_ids: Iterable[str], staple_ids: Iterable[str],
               name: str = None) -> Dict:
    """Generate a new shopping list from the selections and save it.

    Returns ``{id, name, items, grouped, recipe_ids, staple_ids}`` where every
    item carries the id of its saved row.
    """
    recipe_ids = list(dict.fromkeys(recipe_ids))
    staple_ids = list(dict.fromkeys(staple_ids))
    items = consolidate(expand(recipes, staples, recipe_ids, staple_ids))
    name = (name or "").strip() or default_list_name()

    try:
        shopping_list = db.create_shopping_list(name)
        saved_items = _save_items(db, shopping_list["id"], items)
    except Exception as e:
        logger.exception("Error creating shopping list: %s", e)
        raise ListBuildError("Failed to create shopping list") from e

    _save_links(db, shopping_list["id"], recipe_ids, staple_ids)
    logger.info("Created shopping list %r with %d items from %d recipes and %d staples",
                name, len(saved_items), len(recipe_ids), len(staple_ids))
    return {
        "id": shopping_list["id"],
        "name": name,
        "created_at": shopping_list.get("created_at"),
        "items": saved_items,
        "grouped": group_by_sector(saved_items),
        "recipe_ids": recipe_ids,
        "staple_ids": staple_ids,
    }


def update_list(db: Database, list_id: str, recipes: List[Dict], staples: List[Dict],
                recipe_ids: Iterable[str], staple_ids: Iterable[str]) -> Dict:
    """Regenerate an existing list in place from new selections.

    Existing items and links are deleted and re-inserted; checked state is reset.
    """
    recipe_ids = list(dict.fromkeys(recipe_ids))
    staple_ids = list(dict.fromkeys(staple_ids))
    items = consolidate(expand(recipes, staples, recipe_ids, staple_ids))

    try:
        shopping_list = db.get_shopping_list(list_id)
        if not shopping_list:
            raise ListBuildError("Shopping list not found")
        db.delete_shopping_list_items(list_id)
        saved_items = _save_items(db, list_id, items)
        db.unlink_recipes(list_id)
        db.unlink_staples(list_id)
    except ListBuildError:
        raise
    except Exception as e:
        logger.exception("Error updating shopping list %s: %s", list_id, e)
        raise ListBuildError("Failed to update shopping list") from e

    _save_links(db, list_id, recipe_ids, staple_ids)
    logger.info("Updated shopping list %s with %d items", list_id, len(saved_items))
    return {
        **shopping_list,
        "items": saved_items,
        "grouped": group_by_sector(saved_items),
        "recipe_ids": recipe_ids,
        "staple_ids": staple_ids,
    }
