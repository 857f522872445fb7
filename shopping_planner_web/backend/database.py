"""
Database module for the shopping planner (Supabase backend).
Catalog (sectors, ingredients, recipes, staples), shopping lists and history.
"""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from dotenv import load_dotenv
from supabase import Client, create_client

load_dotenv(Path(__file__).resolve().parent.parent.parent / ".env", override=True)

logger = logging.getLogger(__name__)

OTHER_SECTOR = "Other"
SECTOR_COLUMNS = 3

RECIPE_SELECT = """
    *,
    recipe_ingredients (
        id,
        recipe_id,
        ingredient_id,
        quantity,
        unit,
        ingredient:ingredients (
            id,
            name,
            sector_id,
            sector:supermarket_sectors (
                id,
                name,
                display_order
            )
        )
    )
"""

STAPLE_SELECT = """
    *,
    sector:supermarket_sectors (
        id,
        name,
        display_order
    )
"""

ITEM_SELECT = """
    id,
    shopping_list_id,
    item_name,
    sector_id,
    quantity,
    is_checked,
    sector:supermarket_sectors (
        id,
        name
    )
"""

_client: Optional[Client] = None


class ValidationError(ValueError):
    """A required field is missing; raised before any backend call."""


def get_client() -> Client:
    """Return the shared Supabase client, creating it on first use."""
    global _client
    if _client is None:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_KEY")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_KEY environment variables must be set")
        # Prefer the service role key so RLS doesn't block server-side queries.
        service_key = os.environ.get("SUPABASE_SERVICE_KEY") or key
        _client = create_client(url, service_key)
    return _client


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first(res) -> Optional[Dict]:
    return res.data[0] if res.data else None


def _require(value: Optional[str], message: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(message)
    return value


def _ilike_exact(value: str) -> str:
    """Escape LIKE wildcards so ilike() behaves as a case-insensitive equality."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def sector_name(row: Optional[Dict]) -> str:
    """Name of the joined sector on a row, or "Other" if it doesn't resolve."""
    sector = (row or {}).get("sector") or {}
    return (sector.get("name") or "").strip() or OTHER_SECTOR


def group_by_sector(items: List[Dict]) -> Dict[str, List[Dict]]:
    """Partition items by sector name, keeping first-seen order."""
    grouped: Dict[str, List[Dict]] = {}
    for item in items:
        grouped.setdefault(item.get("sector") or OTHER_SECTOR, []).append(item)
    return grouped


def grid_position(index: int) -> Dict[str, int]:
    """display_order and grid cell for the sector at list position ``index``."""
    return {
        "display_order": index + 1,
        "grid_row": index // SECTOR_COLUMNS + 1,
        "grid_column": index % SECTOR_COLUMNS + 1,
    }


def ingredient_names(recipes: List[Dict]) -> List[str]:
    """All distinct ingredient names used by the given recipes, sorted."""
    names = set()
    for recipe in recipes:
        for ri in recipe.get("recipe_ingredients") or []:
            name = (ri.get("ingredient") or {}).get("name")
            if name:
                names.add(name)
    return sorted(names)


def filter_recipes_by_ingredients(recipes: List[Dict], names: Iterable[str]) -> List[Dict]:
    """Keep recipes that contain ALL of the given ingredient names."""
    wanted = [n for n in names if n]
    if not wanted:
        return recipes
    filtered = []
    for recipe in recipes:
        have = {
            (ri.get("ingredient") or {}).get("name")
            for ri in recipe.get("recipe_ingredients") or []
        }
        if all(name in have for name in wanted):
            filtered.append(recipe)
    return filtered


def default_staple_ids(staples: List[Dict]) -> List[str]:
    """IDs of staples that are selected by default when starting a new list."""
    return [s["id"] for s in staples if s.get("is_default")]


class Database:
    """Supabase-backed database handler for the shopping planner."""

    def __init__(self, client: Optional[Client] = None):
        self.db = client or get_client()

    # ========== SECTORS ==========

    def get_sectors(self) -> List[Dict]:
        """All sectors in display order."""
        res = (
            self.db.table("supermarket_sectors")
            .select("id, name, display_order, grid_row, grid_column")
            .order("display_order")
            .execute()
        )
        return res.data or []

    def add_sector(self, name: str) -> Dict:
        """Append a sector to the end of the list and the next free grid cell."""
        name = _require(name, "Please enter a sector name")
        sectors = self.get_sectors()
        max_order = max((s.get("display_order") or 0 for s in sectors), default=0)
        position = grid_position(len(sectors))
        position["display_order"] = max_order + 1
        res = self.db.table("supermarket_sectors").insert({"name": name, **position}).execute()
        logger.info("Added sector %r at row %d, column %d",
                    name, position["grid_row"], position["grid_column"])
        return res.data[0]

    def rename_sector(self, sector_id: str, name: str):
        """Rename a sector. Ingredients and staples reference it by id, so no cascade is needed."""
        name = _require(name, "Please enter a sector name")
        self.db.table("supermarket_sectors").update({"name": name}).eq("id", sector_id).execute()

    def delete_sector(self, sector_id: str):
        """Delete a sector. Rows that still reference it fall back to "Other" on display."""
        self.db.table("supermarket_sectors").delete().eq("id", sector_id).execute()

    def reorder_sectors(self, ordered_ids: List[str]):
        """Rewrite display order and grid position of every sector, in the given order."""
        for index, sector_id in enumerate(ordered_ids):
            self.db.table("supermarket_sectors").update(grid_position(index)).eq("id", sector_id).execute()

    def move_sector(self, sector_id: str, to_index: int) -> List[str]:
        """Move one sector to a new list position and renumber the rest."""
        ids = [s["id"] for s in self.get_sectors()]
        if sector_id not in ids:
            return ids
        ids.remove(sector_id)
        to_index = max(0, min(to_index, len(ids)))
        ids.insert(to_index, sector_id)
        self.reorder_sectors(ids)
        return ids

    def find_sector_by_name(self, name: str) -> Optional[Dict]:
        res = (
            self.db.table("supermarket_sectors")
            .select("id, name, display_order, grid_row, grid_column")
            .ilike("name", _ilike_exact(name.strip()))
            .limit(1)
            .execute()
        )
        return _first(res)

    def get_or_create_sector(self, name: str) -> Dict:
        return self.find_sector_by_name(name) or self.add_sector(name)

    # ========== INGREDIENTS ==========

    def get_ingredients(self) -> List[Dict]:
        res = (
            self.db.table("ingredients")
            .select("id, name, sector_id, sector:supermarket_sectors (id, name)")
            .order("name")
            .execute()
        )
        return res.data or []

    def find_ingredient(self, name: str) -> Optional[Dict]:
        """Look up a global ingredient by case-insensitive name."""
        res = (
            self.db.table("ingredients")
            .select("id, name, sector_id, sector:supermarket_sectors (id, name)")
            .ilike("name", _ilike_exact(name.strip()))
            .limit(1)
            .execute()
        )
        return _first(res)

    def create_ingredient(self, name: str, sector_id: Optional[str]) -> Dict:
        res = self.db.table("ingredients").insert({
            "name": name.strip(),
            "sector_id": sector_id,
        }).execute()
        return res.data[0]

    def update_ingredient_sector(self, ingredient_id: str, sector_id: Optional[str]):
        self.db.table("ingredients").update({"sector_id": sector_id}).eq("id", ingredient_id).execute()

    def get_or_create_ingredient(self, name: str, sector_id: Optional[str]) -> Dict:
        """Reuse an existing ingredient by name, or create it in the given sector."""
        return self.find_ingredient(name) or self.create_ingredient(name, sector_id)

    # ========== RECIPES ==========

    def get_recipes(self, order: str = "name") -> List[Dict]:
        """All recipes with their ingredients and each ingredient's sector."""
        q = self.db.table("recipes").select(RECIPE_SELECT)
        if order == "created_at":
            q = q.order("created_at", desc=True)
        else:
            q = q.order("name")
        return q.execute().data or []

    def get_recipe(self, recipe_id: str) -> Optional[Dict]:
        res = self.db.table("recipes").select(RECIPE_SELECT).eq("id", recipe_id).limit(1).execute()
        return _first(res)

    def find_recipe_by_name(self, name: str) -> Optional[Dict]:
        """Exact-name lookup, used by CSV import."""
        res = self.db.table("recipes").select(RECIPE_SELECT).eq("name", name).limit(1).execute()
        return _first(res)

    def create_recipe(self, name: str, image_url: str = None, instructions: str = None) -> Dict:
        res = self.db.table("recipes").insert({
            "name": name,
            "image_url": image_url or None,
            "instructions": instructions or None,
        }).execute()
        return res.data[0]

    def update_recipe(self, recipe_id: str, updates: Dict):
        self.db.table("recipes").update({**updates, "updated_at": _now()}).eq("id", recipe_id).execute()

    def delete_recipe(self, recipe_id: str):
        self.db.table("recipes").delete().eq("id", recipe_id).execute()

    def replace_recipe_ingredients(self, recipe_id: str, lines: List[Dict]):
        """Delete every ingredient line of a recipe, then insert ``lines``.

        Each line is ``{ingredient_id, quantity, unit}``. Not transactional: if
        the insert fails the recipe is left without ingredients.
        """
        self.db.table("recipe_ingredients").delete().eq("recipe_id", recipe_id).execute()
        self.insert_recipe_ingredients(recipe_id, lines)

    def insert_recipe_ingredients(self, recipe_id: str, lines: List[Dict]):
        rows = [
            {
                "recipe_id": recipe_id,
                "ingredient_id": line["ingredient_id"],
                "quantity": line.get("quantity") or None,
                "unit": line.get("unit") or None,
            }
            for line in lines
        ]
        if rows:
            self.db.table("recipe_ingredients").insert(rows).execute()

    def save_recipe(
        self,
        recipe_id: Optional[str],
        name: str,
        image_url: str = None,
        instructions: str = None,
        lines: List[Dict] = None,
    ) -> str:
        """Create or edit a recipe together with its ingredient lines.

        Lines are ``{name, sector_id, quantity, unit}``; ingredients are found by
        case-insensitive name or created in the line's sector. Returns the recipe id.
        """
        name = _require(name, "Please enter a recipe name")
        lines = [line for line in (lines or []) if (line.get("name") or "").strip()]

        fields = {
            "name": name,
            "image_url": (image_url or "").strip() or None,
            "instructions": (instructions or "").strip() or None,
        }
        if recipe_id:
            self.update_recipe(recipe_id, fields)
            self.db.table("recipe_ingredients").delete().eq("recipe_id", recipe_id).execute()
        else:
            recipe_id = self.create_recipe(**fields)["id"]

        resolved = []
        for line in lines:
            ingredient = self.get_or_create_ingredient(line["name"], line.get("sector_id") or None)
            resolved.append({
                "ingredient_id": ingredient["id"],
                "quantity": (line.get("quantity") or "").strip() or None,
                "unit": (line.get("unit") or "").strip() or None,
            })
        self.insert_recipe_ingredients(recipe_id, resolved)
        logger.info("Saved recipe %r with %d ingredients", name, len(resolved))
        return recipe_id

    # ========== STAPLES ==========

    def get_staples(self) -> List[Dict]:
        res = self.db.table("staples").select(STAPLE_SELECT).order("name").execute()
        return res.data or []

    def get_staple(self, staple_id: str) -> Optional[Dict]:
        res = self.db.table("staples").select(STAPLE_SELECT).eq("id", staple_id).limit(1).execute()
        return _first(res)

    def find_staple_by_name(self, name: str) -> Optional[Dict]:
        res = self.db.table("staples").select(STAPLE_SELECT).eq("name", name).limit(1).execute()
        return _first(res)

    def create_staple(self, name: str, sector_id: Optional[str], is_default: bool = False) -> Dict:
        res = self.db.table("staples").insert({
            "name": name,
            "sector_id": sector_id,
            "is_default": bool(is_default),
        }).execute()
        return res.data[0]

    def update_staple(self, staple_id: str, updates: Dict):
        self.db.table("staples").update({**updates, "updated_at": _now()}).eq("id", staple_id).execute()

    def save_staple(self, staple_id: Optional[str], name: str, sector_id: Optional[str],
                    is_default: bool = False) -> str:
        name = _require(name, "Please enter a staple name")
        if staple_id:
            self.update_staple(staple_id, {
                "name": name,
                "sector_id": sector_id or None,
                "is_default": bool(is_default),
            })
            return staple_id
        return self.create_staple(name, sector_id or None, is_default)["id"]

    def delete_staple(self, staple_id: str):
        self.db.table("staples").delete().eq("id", staple_id).execute()

    # ========== SHOPPING LISTS ==========

    def create_shopping_list(self, name: str) -> Dict:
        res = self.db.table("shopping_lists").insert({"name": name, "completed_at": None}).execute()
        return res.data[0]

    def rename_shopping_list(self, list_id: str, name: str):
        name = _require(name, "Please enter a name for your shopping list")
        self.db.table("shopping_lists").update({"name": name}).eq("id", list_id).execute()

    def get_shopping_list(self, list_id: str) -> Optional[Dict]:
        res = (
            self.db.table("shopping_lists")
            .select("id, name, created_at, completed_at")
            .eq("id", list_id)
            .limit(1)
            .execute()
        )
        return _first(res)

    def insert_shopping_list_items(self, list_id: str, items: List[Dict]) -> List[Dict]:
        """Insert item rows and return them, with ids, in the order given."""
        rows = [
            {
                "shopping_list_id": list_id,
                "item_name": item["item_name"],
                "sector_id": item.get("sector_id"),
                "quantity": item.get("quantity"),
                "is_checked": bool(item.get("is_checked", False)),
            }
            for item in items
        ]
        if not rows:
            return []
        res = self.db.table("shopping_list_items").insert(rows).execute()
        return res.data or []

    def delete_shopping_list_items(self, list_id: str):
        self.db.table("shopping_list_items").delete().eq("shopping_list_id", list_id).execute()

    def get_shopping_list_items(self, list_id: str) -> List[Dict]:
        res = (
            self.db.table("shopping_list_items")
            .select(ITEM_SELECT)
            .eq("shopping_list_id", list_id)
            .execute()
        )
        return res.data or []

    def set_item_checked(self, item_id: str, checked: bool):
        """Write one item's checked flag straight through."""
        self.db.table("shopping_list_items").update({"is_checked": bool(checked)}).eq("id", item_id).execute()

    def save_checked_state(self, list_id: str, checked_ids: Iterable[str]):
        """Write the whole list's checked state (periodic autosave, last write wins).

        Checks are set before the rest are cleared, so a failed second write
        leaves extra checks rather than losing them.
        """
        checked_ids = list(checked_ids)
        clear = (
            self.db.table("shopping_list_items")
            .update({"is_checked": False})
            .eq("shopping_list_id", list_id)
            .eq("is_checked", True)
        )
        if checked_ids:
            (
                self.db.table("shopping_list_items")
                .update({"is_checked": True})
                .eq("shopping_list_id", list_id)
                .in_("id", checked_ids)
                .execute()
            )
            clear = clear.not_.in_("id", checked_ids)
        clear.execute()

    def link_recipes(self, list_id: str, recipe_ids: List[str]):
        if recipe_ids:
            self.db.table("shopping_list_recipes").insert([
                {"shopping_list_id": list_id, "recipe_id": rid} for rid in recipe_ids
            ]).execute()

    def link_staples(self, list_id: str, staple_ids: List[str]):
        if staple_ids:
            self.db.table("shopping_list_staples").insert([
                {"shopping_list_id": list_id, "staple_id": sid} for sid in staple_ids
            ]).execute()

    def unlink_recipes(self, list_id: str):
        self.db.table("shopping_list_recipes").delete().eq("shopping_list_id", list_id).execute()

    def unlink_staples(self, list_id: str):
        self.db.table("shopping_list_staples").delete().eq("shopping_list_id", list_id).execute()

    def get_list_selection(self, list_id: str) -> Tuple[List[str], List[str]]:
        """Recipe and staple ids that produced a saved list."""
        recipes = (
            self.db.table("shopping_list_recipes")
            .select("recipe_id")
            .eq("shopping_list_id", list_id)
            .execute()
        )
        staples = (
            self.db.table("shopping_list_staples")
            .select("staple_id")
            .eq("shopping_list_id", list_id)
            .execute()
        )
        return (
            [r["recipe_id"] for r in recipes.data or []],
            [s["staple_id"] for s in staples.data or []],
        )

    # ========== HISTORY ==========

    def get_history(self) -> List[Dict]:
        """Saved shopping lists, newest first."""
        res = (
            self.db.table("shopping_lists")
            .select("id, name, created_at, completed_at")
            .order("created_at", desc=True)
            .execute()
        )
        return res.data or []

    def complete_shopping_list(self, list_id: str):
        self.db.table("shopping_lists").update({"completed_at": _now()}).eq("id", list_id).execute()

    def delete_shopping_list(self, list_id: str):
        self.db.table("shopping_lists").delete().eq("id", list_id).execute()

    def load_shopping_list(self, list_id: str) -> Optional[Dict]:
        """Reload a saved list in the same shape the list builder returns."""
        shopping_list = self.get_shopping_list(list_id)
        if not shopping_list:
            return None

        items = [
            {
                "id": row["id"],
                "name": row["item_name"],
                "sector_id": row.get("sector_id"),
                "sector": sector_name(row),
                "quantity": row.get("quantity"),
                "is_checked": bool(row.get("is_checked")),
            }
            for row in self.get_shopping_list_items(list_id)
        ]
        recipe_ids, staple_ids = self.get_list_selection(list_id)
        return {
            **shopping_list,
            "items": items,
            "grouped": group_by_sector(items),
            "recipe_ids": recipe_ids,
            "staple_ids": staple_ids,
        }
