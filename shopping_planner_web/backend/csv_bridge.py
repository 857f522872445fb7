"""
CSV import/export for recipes and staples.

Files are a minimal quoted-CSV dialect: a field is quoted only when it
contains a comma, a quote or a newline, and quotes inside are doubled.
Records are split on newlines before parsing, so a quoted field can't span
lines on import.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Sequence

from database import Database, OTHER_SECTOR, sector_name

logger = logging.getLogger(__name__)

RECIPE_COLUMNS = [
    "recipe_name",
    "recipe_image_url",
    "recipe_instructions",
    "ingredient_name",
    "ingredient_sector",
    "quantity",
    "unit",
]
RECIPE_REQUIRED = ["recipe_name", "ingredient_name", "ingredient_sector"]

# Older bulk-upload files; mapped onto the export column names
LEGACY_RECIPE_COLUMNS = {
    "name": "recipe_name",
    "ingredients": "ingredient_name",
    "sector": "ingredient_sector",
    "quantity": "quantity",
    "unit": "unit",
    "instructions": "recipe_instructions",
    "image_url": "recipe_image_url",
}

STAPLE_COLUMNS = ["name", "sector", "is_default"]
STAPLE_REQUIRED = ["name", "sector"]


class CsvImportError(ValueError):
    """The file can't be imported; raised before anything is written."""


@dataclass
class ImportResult:
    kind: str
    imported: int = 0
    updated: int = 0

    @property
    def message(self) -> str:
        parts = []
        if self.imported:
            parts.append(f"{self.imported} new")
        if self.updated:
            parts.append(f"{self.updated} updated")
        return f"{self.kind}: {', '.join(parts) or 'No changes needed'}"


# ========== PARSE / WRITE ==========

def parse_csv_line(line: str) -> List[str]:
    """Split one line into fields, honouring quotes and doubled quotes."""
    fields = []
    current = []
    in_quotes = False
    i = 0
    while i < len(line):
        char = line[i]
        if in_quotes:
            if char == '"':
                if line[i + 1:i + 2] == '"':
                    current.append('"')
                    i += 1
                else:
                    in_quotes = False
            else:
                current.append(char)
        elif char == '"':
            in_quotes = True
        elif char == ",":
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1
    fields.append("".join(current))
    return fields


def parse_csv(text: str) -> List[List[str]]:
    """Parse a whole file: blank lines are dropped, every line is trimmed."""
    lines = [line.strip() for line in text.split("\n")]
    return [parse_csv_line(line) for line in lines if line]


def escape_csv(value) -> str:
    value = "" if value is None else str(value)
    if "," in value or '"' in value or "\n" in value:
        return '"' + value.replace('"', '""') + '"'
    return value


def write_csv(header: Sequence[str], rows: List[Sequence]) -> str:
    lines = [",".join(header)]
    lines.extend(",".join(escape_csv(v) for v in row) for row in rows)
    return "\n".join(lines)


def export_filename(kind: str, today: date = None) -> str:
    """e.g. ``recipes-export-2026-10-19.csv``."""
    today = today or date.today()
    return f"{kind}-export-{today.isoformat()}.csv"


# ========== READ ==========

def _read_table(text: str, required: List[str], aliases: Dict[str, str] = None) -> List[Dict[str, str]]:
    rows = parse_csv(text or "")
    if len(rows) < 2:
        raise CsvImportError("CSV file is empty or has no data rows")

    header = [h.strip().lower() for h in rows[0]]
    if aliases and required[0] not in header:
        header = [aliases.get(h, h) for h in header]
    for col in required:
        if col not in header:
            raise CsvImportError(f"Missing required column: {col}")

    records = []
    for values in rows[1:]:
        record = {}
        for i, col in enumerate(header):
            record[col] = values[i].strip() if i < len(values) else ""
        records.append(record)
    return records


def read_recipe_rows(text: str) -> List[Dict[str, str]]:
    return _read_table(text, RECIPE_REQUIRED, LEGACY_RECIPE_COLUMNS)


def read_staple_rows(text: str) -> List[Dict[str, str]]:
    return _read_table(text, STAPLE_REQUIRED)


def group_recipe_rows(rows: List[Dict[str, str]]) -> Dict[str, Dict]:
    """Group rows by recipe name; the first row's image and instructions win."""
    recipes: Dict[str, Dict] = {}
    for row in rows:
        name = row.get("recipe_name", "")
        if not name:
            continue
        recipe = recipes.get(name)
        if recipe is None:
            recipe = recipes[name] = {
                "name": name,
                "image_url": row.get("recipe_image_url") or None,
                "instructions": row.get("recipe_instructions") or None,
                "ingredients": [],
            }
        ingredient = row.get("ingredient_name", "")
        if ingredient:
            recipe["ingredients"].append({
                "name": ingredient,
                "sector": row.get("ingredient_sector") or OTHER_SECTOR,
                "quantity": row.get("quantity") or None,
                "unit": row.get("unit") or None,
            })
    return recipes


def _fold(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def ingredient_key_set(lines: List[Dict]) -> List[str]:
    """Sorted ``name|sector|quantity|unit`` keys used to detect changed recipes.

    Names and sectors are matched case-insensitively on import, so they are
    compared the same way here.
    """
    return sorted(
        f"{_fold(i['name'])}|{_fold(i['sector'])}|{i.get('quantity') or ''}|{i.get('unit') or ''}"
        for i in lines
    )


def _stored_lines(recipe: Dict) -> List[Dict]:
    lines = []
    for ri in recipe.get("recipe_ingredients") or []:
        ingredient = ri.get("ingredient") or {}
        lines.append({
            "name": ingredient.get("name") or "",
            "sector": sector_name(ingredient) if ingredient else "",
            "quantity": ri.get("quantity"),
            "unit": ri.get("unit"),
        })
    return lines


def parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


# ========== IMPORT ==========

class _SectorCache:
    """Sector name → id for one import run, creating missing sectors on first use."""

    def __init__(self, db: Database):
        self.db = db
        self.ids: Dict[str, str] = {}

    def id_for(self, name: str) -> str:
        key = name.strip().lower()
        if key not in self.ids:
            self.ids[key] = self.db.get_or_create_sector(name)["id"]
        return self.ids[key]


def _resolve_ingredients(db: Database, sectors: _SectorCache, lines: List[Dict]) -> List[Dict]:
    resolved = []
    for line in lines:
        sector_id = sectors.id_for(line["sector"])
        ingredient = db.find_ingredient(line["name"])
        if not ingredient:
            ingredient = db.create_ingredient(line["name"], sector_id)
        elif ingredient.get("sector_id") != sector_id:
            db.update_ingredient_sector(ingredient["id"], sector_id)
        resolved.append({
            "ingredient_id": ingredient["id"],
            "quantity": line["quantity"],
            "unit": line["unit"],
        })
    return resolved


def import_recipes(db: Database, text: str) -> ImportResult:
    """Create new recipes and update changed ones; unchanged recipes cause no writes."""
    recipes = group_recipe_rows(read_recipe_rows(text))
    sectors = _SectorCache(db)
    result = ImportResult("Recipes")

    for recipe in recipes.values():
        existing = db.find_recipe_by_name(recipe["name"])
        if existing is None:
            created = db.create_recipe(recipe["name"], recipe["image_url"], recipe["instructions"])
            db.insert_recipe_ingredients(created["id"], _resolve_ingredients(db, sectors, recipe["ingredients"]))
            result.imported += 1
            continue

        changed = False
        if (recipe["image_url"] != existing.get("image_url")
                or recipe["instructions"] != existing.get("instructions")):
            db.update_recipe(existing["id"], {
                "image_url": recipe["image_url"],
                "instructions": recipe["instructions"],
            })
            changed = True

        if ingredient_key_set(recipe["ingredients"]) != ingredient_key_set(_stored_lines(existing)):
            db.replace_recipe_ingredients(existing["id"], _resolve_ingredients(db, sectors, recipe["ingredients"]))
            changed = True

        if changed:
            result.updated += 1

    logger.info("Recipe import finished: %s", result.message)
    return result


def import_staples(db: Database, text: str) -> ImportResult:
    """Insert new staples; update sector/is_default of existing ones only when they differ."""
    rows = read_staple_rows(text)
    sectors = _SectorCache(db)
    result = ImportResult("Staples")

    for row in rows:
        name = row.get("name", "")
        sector = row.get("sector", "")
        if not name or not sector:
            continue
        is_default = parse_bool(row.get("is_default"))

        existing = db.find_staple_by_name(name)
        if existing:
            # Sector ids are resolved case-insensitively, so compare names the same way
            if (_fold(sector_name(existing)) != _fold(sector)
                    or bool(existing.get("is_default")) != is_default):
                db.update_staple(existing["id"], {
                    "sector_id": sectors.id_for(sector),
                    "is_default": is_default,
                })
                result.updated += 1
            continue

        db.create_staple(name, sectors.id_for(sector), is_default)
        result.imported += 1

    logger.info("Staple import finished: %s", result.message)
    return result


# ========== EXPORT ==========

def export_recipes(db: Database) -> str:
    """One row per recipe ingredient; a recipe without ingredients gets one bare row."""
    rows = []
    for recipe in db.get_recipes():
        head = [recipe["name"], recipe.get("image_url") or "", recipe.get("instructions") or ""]
        lines = recipe.get("recipe_ingredients") or []
        if not lines:
            rows.append(head + ["", "", "", ""])
            continue
        for ri in lines:
            ingredient = ri.get("ingredient") or {}
            sector = (ingredient.get("sector") or {}).get("name") or ""
            rows.append(head + [
                ingredient.get("name") or "",
                sector,
                ri.get("quantity") or "",
                ri.get("unit") or "",
            ])
    return write_csv(RECIPE_COLUMNS, rows)


def export_staples(db: Database) -> str:
    rows = [
        [
            staple["name"],
            (staple.get("sector") or {}).get("name") or "",
            "true" if staple.get("is_default") else "false",
        ]
        for staple in db.get_staples()
    ]
    return write_csv(STAPLE_COLUMNS, rows)
