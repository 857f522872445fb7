#!/usr/bin/env python3
"""
Shopping Planner Web Application
FastAPI backend with htmx frontend
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware

from auth import LoginError, get_current_user, login_redirect, sign_in
from csv_bridge import (
    CsvImportError,
    export_filename,
    export_recipes,
    export_staples,
    import_recipes,
    import_staples,
)
from database import (
    Database,
    ValidationError,
    default_staple_ids,
    filter_recipes_by_ingredients,
    ingredient_names,
    sector_name,
)
from list_builder import ListBuildError, build_list, update_list
from sharing import grid_layout, list_text, render_pdf, share_link

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Shopping Planner")

_session_secret = os.environ.get("SESSION_SECRET")
if not _session_secret:
    raise RuntimeError("SESSION_SECRET environment variable is not set")
# HTTPS_ONLY=true adds the Secure flag to the session cookie (needed behind TLS)
_https_only = os.environ.get("HTTPS_ONLY", "false").lower() == "true"
app.add_middleware(
    SessionMiddleware,
    secret_key=_session_secret,
    https_only=_https_only,
    same_site="lax",
)

# Setup paths
BASE_DIR = Path(__file__).resolve().parent.parent
TEMPLATES_DIR = BASE_DIR / "frontend" / "templates"
STATIC_DIR = BASE_DIR / "frontend" / "static"

STATIC_DIR.mkdir(parents=True, exist_ok=True)

app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

# Autosave period for checked items on the list page, in seconds
AUTOSAVE_SECONDS = 60


def get_db() -> Database:
    return Database()


def _message(request: Request, text: str, status_code: int = 200, kind: str = "error") -> HTMLResponse:
    """Short user-facing message partial (errors, import results)."""
    return templates.TemplateResponse(
        request,
        "partials/message.html",
        {"kind": kind, "text": text},
        status_code=status_code,
    )


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=303)


# ---------------------------------------------------------------------------
# Auth routes
# ---------------------------------------------------------------------------

@app.get("/login", response_class=HTMLResponse)
async def login_page(request: Request):
    if get_current_user(request):
        return _redirect("/")
    return templates.TemplateResponse(request, "login.html", {"error": None})


@app.post("/login", response_class=HTMLResponse)
async def login_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
):
    try:
        access_token, user = await sign_in(email, password)
    except LoginError as e:
        return templates.TemplateResponse(request, "login.html", {"error": str(e)}, status_code=401)

    request.session["access_token"] = access_token
    request.session["user"] = user
    logger.info("User %s logged in", user["email"])
    return _redirect("/")


@app.post("/logout")
async def logout(request: Request):
    request.session.clear()
    return login_redirect()


@app.get("/health")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Selection page: pick recipes and staples, generate a list
# ---------------------------------------------------------------------------

def _selection_context(db: Database, ingredient_filters: List[str], selected_recipe_ids,
                       selected_staple_ids=None, editing_list: Optional[dict] = None) -> dict:
    recipes = db.get_recipes()
    staples = db.get_staples()
    sectors = db.get_sectors()
    if selected_staple_ids is None:
        selected_staple_ids = default_staple_ids(staples)
    return {
        "recipes": filter_recipes_by_ingredients(recipes, ingredient_filters),
        "all_ingredients": ingredient_names(recipes),
        "ingredient_filters": ingredient_filters,
        "staples": staples,
        "sectors": sectors,
        "sector_name": sector_name,
        "selected_recipe_ids": set(selected_recipe_ids),
        "selected_staple_ids": set(selected_staple_ids),
        "editing_list": editing_list,
    }


@app.get("/", response_class=HTMLResponse)
async def selection_page(
    request: Request,
    ingredient: List[str] = Query([]),
    db: Database = Depends(get_db),
):
    user = get_current_user(request)
    if not user:
        return login_redirect()
    try:
        context = _selection_context(db, ingredient, selected_recipe_ids=[])
    except Exception as e:
        logger.exception("Error loading selection page: %s", e)
        return _message(request, "Failed to load recipes and staples", 500)
    return templates.TemplateResponse(request, "selection.html", {"user": user, **context})


@app.get("/lists/{list_id}/edit", response_class=HTMLResponse)
async def edit_list_selection(request: Request, list_id: str, db: Database = Depends(get_db)):
    """Reopen a saved list's recipe and staple selections for editing."""
    user = get_current_user(request)
    if not user:
        return login_redirect()
    try:
        shopping_list = db.get_shopping_list(list_id)
        if not shopping_list:
            return _message(request, "Shopping list not found", 404)
        recipe_ids, staple_ids = db.get_list_selection(list_id)
        context = _selection_context(db, [], recipe_ids, staple_ids, editing_list=shopping_list)
    except Exception as e:
        logger.exception("Error loading list %s for editing: %s", list_id, e)
        return _message(request, "Failed to load shopping list", 500)
    return templates.TemplateResponse(request, "selection.html", {"user": user, **context})


async def _read_selection(request: Request):
    form = await request.form()
    return form.getlist("recipe_ids"), form.getlist("staple_ids"), form.get("name")


@app.post("/lists")
async def generate_list(request: Request, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    recipe_ids, staple_ids, name = await _read_selection(request)
    if not recipe_ids and not staple_ids:
        return _message(request, "Select at least one recipe or staple", 400)
    try:
        shopping_list = build_list(db, db.get_recipes(), db.get_staples(), recipe_ids, staple_ids, name=name)
    except ListBuildError as e:
        return _message(request, str(e), 500)
    except Exception as e:
        logger.exception("Error loading catalog for list generation: %s", e)
        return _message(request, "Failed to create shopping list", 500)
    return _redirect(f"/lists/{shopping_list['id']}")


@app.post("/lists/{list_id}/update")
async def update_existing_list(request: Request, list_id: str, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    recipe_ids, staple_ids, _ = await _read_selection(request)
    if not recipe_ids and not staple_ids:
        return _message(request, "Select at least one recipe or staple", 400)
    try:
        if not db.get_shopping_list(list_id):
            return _message(request, "Shopping list not found", 404)
        update_list(db, list_id, db.get_recipes(), db.get_staples(), recipe_ids, staple_ids)
    except ListBuildError as e:
        return _message(request, str(e), 500)
    except Exception as e:
        logger.exception("Error loading catalog for list update: %s", e)
        return _message(request, "Failed to update shopping list", 500)
    return _redirect(f"/lists/{list_id}")


# ---------------------------------------------------------------------------
# List viewer: sector grid and checked state
# ---------------------------------------------------------------------------

def _progress(items: List[dict]) -> dict:
    total = len(items)
    checked = sum(1 for i in items if i.get("is_checked"))
    return {"total": total, "checked": checked}


@app.get("/lists/{list_id}", response_class=HTMLResponse)
async def shopping_list_page(request: Request, list_id: str, db: Database = Depends(get_db)):
    user = get_current_user(request)
    if not user:
        return login_redirect()
    try:
        shopping_list = db.load_shopping_list(list_id)
        if not shopping_list:
            return _message(request, "Shopping list not found", 404)
        sectors = db.get_sectors()
    except Exception as e:
        logger.exception("Error loading shopping list %s: %s", list_id, e)
        return _message(request, "Failed to load shopping list", 500)

    return templates.TemplateResponse(request, "shopping_list.html", {
        "user": user,
        "shopping_list": shopping_list,
        "grid": grid_layout(sectors, shopping_list["grouped"]),
        "progress": _progress(shopping_list["items"]),
        "autosave_seconds": AUTOSAVE_SECONDS,
    })


@app.post("/lists/{list_id}/items/{item_id}/toggle", response_class=HTMLResponse)
async def toggle_item(request: Request, list_id: str, item_id: str, db: Database = Depends(get_db)):
    """Write an item's checked flag as soon as it changes."""
    if not get_current_user(request):
        return login_redirect()
    form = await request.form()
    checked = item_id in form.getlist("checked_ids")
    try:
        db.set_item_checked(item_id, checked)
        items = db.get_shopping_list_items(list_id)
    except Exception as e:
        logger.exception("Error toggling item %s: %s", item_id, e)
        return _message(request, "Failed to save item", 500)
    return templates.TemplateResponse(request, "partials/list_progress.html", {"progress": _progress(items)})


@app.post("/lists/{list_id}/autosave")
async def autosave_list(request: Request, list_id: str, db: Database = Depends(get_db)):
    """Periodic write-back of every item's checked state from the open list page."""
    if not get_current_user(request):
        return login_redirect()
    form = await request.form()
    try:
        db.save_checked_state(list_id, form.getlist("checked_ids"))
    except Exception as e:
        logger.exception("Error autosaving list %s: %s", list_id, e)
        return _message(request, "Failed to save list", 500)
    return Response(status_code=204)


@app.post("/lists/{list_id}/rename")
async def rename_list(request: Request, list_id: str, name: str = Form(""), db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        db.rename_shopping_list(list_id, name)
    except ValidationError as e:
        return _message(request, str(e), 400)
    except Exception as e:
        logger.exception("Error renaming list %s: %s", list_id, e)
        return _message(request, "Failed to save shopping list", 500)
    return _redirect(f"/lists/{list_id}")


@app.get("/lists/{list_id}/share")
async def share_list(request: Request, list_id: str, method: str = "whatsapp", db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        shopping_list = db.load_shopping_list(list_id)
        if not shopping_list:
            return _message(request, "Shopping list not found", 404)
        text = list_text(shopping_list, db.get_sectors())
    except Exception as e:
        logger.exception("Error sharing list %s: %s", list_id, e)
        return _message(request, "Failed to load shopping list", 500)
    try:
        link = share_link(method, text, subject=shopping_list.get("name"))
    except ValueError as e:
        return _message(request, str(e), 400)
    return _redirect(link)


@app.get("/lists/{list_id}/export-pdf")
async def export_list_pdf(request: Request, list_id: str, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        shopping_list = db.load_shopping_list(list_id)
        if not shopping_list:
            return _message(request, "Shopping list not found", 404)
        pdf = render_pdf(shopping_list, db.get_sectors())
    except Exception as e:
        logger.exception("Error exporting PDF for list %s: %s", list_id, e)
        return _message(request, "Failed to export shopping list", 500)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f"attachment; filename=shopping_list_{datetime.now().strftime('%Y%m%d')}.pdf"
        },
    )


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

@app.get("/history", response_class=HTMLResponse)
async def history_page(request: Request, db: Database = Depends(get_db)):
    user = get_current_user(request)
    if not user:
        return login_redirect()
    try:
        lists = db.get_history()
    except Exception as e:
        logger.exception("Error loading history: %s", e)
        return _message(request, "Failed to load shopping lists", 500)
    return templates.TemplateResponse(request, "history.html", {"user": user, "lists": lists})


@app.post("/history/{list_id}/complete")
async def complete_list(request: Request, list_id: str, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        db.complete_shopping_list(list_id)
    except Exception as e:
        logger.exception("Error completing list %s: %s", list_id, e)
        return _message(request, "Failed to mark list as completed", 500)
    return _redirect("/history")


@app.post("/history/{list_id}/delete")
async def delete_list(request: Request, list_id: str, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        db.delete_shopping_list(list_id)
    except Exception as e:
        logger.exception("Error deleting list %s: %s", list_id, e)
        return _message(request, "Failed to delete shopping list", 500)
    return _redirect("/history")


# ---------------------------------------------------------------------------
# Catalog: recipes and staples
# ---------------------------------------------------------------------------

@app.get("/catalog", response_class=HTMLResponse)
async def catalog_page(request: Request, db: Database = Depends(get_db)):
    user = get_current_user(request)
    if not user:
        return login_redirect()
    try:
        recipes = db.get_recipes(order="created_at")
        staples = db.get_staples()
        sectors = db.get_sectors()
    except Exception as e:
        logger.exception("Error loading catalog: %s", e)
        return _message(request, "Failed to load recipes and staples", 500)

    staples_by_sector = {}
    for staple in staples:
        staples_by_sector.setdefault(sector_name(staple), []).append(staple)
    order = {s["name"]: s.get("display_order") or 0 for s in sectors}
    staple_sectors = sorted(staples_by_sector, key=lambda name: order.get(name, 999))

    return templates.TemplateResponse(request, "catalog.html", {
        "user": user,
        "recipes": recipes,
        "staples_by_sector": staples_by_sector,
        "staple_sectors": staple_sectors,
        "sector_name": sector_name,
    })


def _recipe_form(request: Request, db: Database, recipe: dict, error: str = None, status_code: int = 200):
    try:
        sectors = db.get_sectors()
        ingredients = db.get_ingredients()
    except Exception as e:
        logger.exception("Error loading recipe form: %s", e)
        return _message(request, "Failed to load sectors", 500)
    return templates.TemplateResponse(request, "recipe_form.html", {
        "recipe": recipe,
        "sectors": sectors,
        "ingredients": ingredients,
        "sector_name": sector_name,
        "error": error,
    }, status_code=status_code)


@app.get("/recipes/new", response_class=HTMLResponse)
async def new_recipe(request: Request, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    blank = {"id": "", "name": "", "image_url": None, "instructions": None, "recipe_ingredients": []}
    return _recipe_form(request, db, blank)


@app.get("/recipes/{recipe_id}/edit", response_class=HTMLResponse)
async def edit_recipe(request: Request, recipe_id: str, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        recipe = db.get_recipe(recipe_id)
    except Exception as e:
        logger.exception("Error loading recipe %s: %s", recipe_id, e)
        return _message(request, "Failed to load recipe", 500)
    if not recipe:
        return _message(request, "Recipe not found", 404)
    return _recipe_form(request, db, recipe)


@app.post("/recipes/save")
async def save_recipe(request: Request, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    form = await request.form()
    names = form.getlist("ingredient_name")
    sector_ids = form.getlist("ingredient_sector_id")
    quantities = form.getlist("quantity")
    units = form.getlist("unit")
    lines = [
        {
            "name": name,
            "sector_id": sector_ids[i] if i < len(sector_ids) else None,
            "quantity": quantities[i] if i < len(quantities) else None,
            "unit": units[i] if i < len(units) else None,
        }
        for i, name in enumerate(names)
    ]
    recipe_id = form.get("recipe_id") or None
    try:
        db.save_recipe(
            recipe_id,
            form.get("name"),
            image_url=form.get("image_url"),
            instructions=form.get("instructions"),
            lines=lines,
        )
    except ValidationError as e:
        recipe = {
            "id": recipe_id or "",
            "name": form.get("name") or "",
            "image_url": form.get("image_url"),
            "instructions": form.get("instructions"),
            "recipe_ingredients": [],
        }
        return _recipe_form(request, db, recipe, error=str(e), status_code=400)
    except Exception as e:
        logger.exception("Error saving recipe: %s", e)
        return _message(request, "Failed to save recipe", 500)
    return _redirect("/catalog")


@app.post("/recipes/{recipe_id}/delete")
async def delete_recipe(request: Request, recipe_id: str, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        db.delete_recipe(recipe_id)
    except Exception as e:
        logger.exception("Error deleting recipe %s: %s", recipe_id, e)
        return _message(request, "Failed to delete recipe", 500)
    return _redirect("/catalog")


def _staple_form(request: Request, db: Database, staple: dict, error: str = None, status_code: int = 200):
    try:
        sectors = db.get_sectors()
    except Exception as e:
        logger.exception("Error loading staple form: %s", e)
        return _message(request, "Failed to load sectors", 500)
    return templates.TemplateResponse(request, "staple_form.html", {
        "staple": staple,
        "sectors": sectors,
        "error": error,
    }, status_code=status_code)


@app.get("/staples/new", response_class=HTMLResponse)
async def new_staple(request: Request, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    return _staple_form(request, db, {"id": "", "name": "", "sector_id": None, "is_default": False})


@app.get("/staples/{staple_id}/edit", response_class=HTMLResponse)
async def edit_staple(request: Request, staple_id: str, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        staple = db.get_staple(staple_id)
    except Exception as e:
        logger.exception("Error loading staple %s: %s", staple_id, e)
        return _message(request, "Failed to load staple", 500)
    if not staple:
        return _message(request, "Staple not found", 404)
    return _staple_form(request, db, staple)


@app.post("/staples/save")
async def save_staple(
    request: Request,
    staple_id: str = Form(""),
    name: str = Form(""),
    sector_id: str = Form(""),
    is_default: bool = Form(False),
    db: Database = Depends(get_db),
):
    if not get_current_user(request):
        return login_redirect()
    try:
        db.save_staple(staple_id or None, name, sector_id or None, is_default)
    except ValidationError as e:
        staple = {"id": staple_id, "name": name, "sector_id": sector_id, "is_default": is_default}
        return _staple_form(request, db, staple, error=str(e), status_code=400)
    except Exception as e:
        logger.exception("Error saving staple: %s", e)
        return _message(request, "Failed to save staple", 500)
    return _redirect("/catalog")


@app.post("/staples/{staple_id}/delete")
async def delete_staple(request: Request, staple_id: str, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        db.delete_staple(staple_id)
    except Exception as e:
        logger.exception("Error deleting staple %s: %s", staple_id, e)
        return _message(request, "Failed to delete staple", 500)
    return _redirect("/catalog")


# ---------------------------------------------------------------------------
# Sectors
# ---------------------------------------------------------------------------

@app.get("/sectors", response_class=HTMLResponse)
async def sectors_page(request: Request, db: Database = Depends(get_db)):
    user = get_current_user(request)
    if not user:
        return login_redirect()
    try:
        sectors = db.get_sectors()
    except Exception as e:
        logger.exception("Error loading sectors: %s", e)
        return _message(request, "Failed to load sectors", 500)
    return templates.TemplateResponse(request, "sectors.html", {
        "user": user,
        "sectors": sectors,
        "grid": grid_layout(sectors),
    })


@app.post("/sectors")
async def add_sector(request: Request, name: str = Form(""), db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        db.add_sector(name)
    except ValidationError as e:
        return _message(request, str(e), 400)
    except Exception as e:
        logger.exception("Error adding sector: %s", e)
        return _message(request, "Failed to add sector", 500)
    return _redirect("/sectors")


@app.post("/sectors/{sector_id}/rename")
async def rename_sector(request: Request, sector_id: str, name: str = Form(""), db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        db.rename_sector(sector_id, name)
    except ValidationError as e:
        return _message(request, str(e), 400)
    except Exception as e:
        logger.exception("Error renaming sector %s: %s", sector_id, e)
        return _message(request, f"Failed to update sector: {e}", 500)
    return _redirect("/sectors")


@app.post("/sectors/{sector_id}/move")
async def move_sector(request: Request, sector_id: str, to_index: int = Form(...), db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        db.move_sector(sector_id, to_index)
    except Exception as e:
        logger.exception("Error moving sector %s: %s", sector_id, e)
        return _message(request, "Failed to reorder sectors", 500)
    return _redirect("/sectors")


@app.post("/sectors/{sector_id}/delete")
async def delete_sector(request: Request, sector_id: str, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        db.delete_sector(sector_id)
    except Exception as e:
        logger.exception("Error deleting sector %s: %s", sector_id, e)
        return _message(request, "Failed to delete sector", 500)
    return _redirect("/sectors")


# ---------------------------------------------------------------------------
# Settings: CSV export/import
# ---------------------------------------------------------------------------

@app.get("/settings", response_class=HTMLResponse)
async def settings_page(request: Request):
    user = get_current_user(request)
    if not user:
        return login_redirect()
    return templates.TemplateResponse(request, "settings.html", {"user": user})


def _csv_download(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.get("/export/recipes.csv")
async def export_recipes_csv(request: Request, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        content = export_recipes(db)
    except Exception as e:
        logger.exception("Error exporting recipes: %s", e)
        return _message(request, "Failed to export recipes", 500)
    return _csv_download(content, export_filename("recipes"))


@app.get("/export/staples.csv")
async def export_staples_csv(request: Request, db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    try:
        content = export_staples(db)
    except Exception as e:
        logger.exception("Error exporting staples: %s", e)
        return _message(request, "Failed to export staples", 500)
    return _csv_download(content, export_filename("staples"))


async def _import_upload(request: Request, db: Database, file: UploadFile, kind: str, importer):
    if not (file.filename or "").lower().endswith(".csv"):
        return _message(request, "Please select a valid CSV file", 400)
    text = (await file.read()).decode("utf-8-sig")
    try:
        result = importer(db, text)
    except CsvImportError as e:
        return _message(request, str(e), 400)
    except Exception as e:
        logger.exception("Error importing %s: %s", kind, e)
        return _message(request, str(e) or f"Failed to import {kind}", 500)
    return _message(request, result.message, kind="success")


@app.post("/import/recipes", response_class=HTMLResponse)
async def import_recipes_csv(request: Request, file: UploadFile = File(...), db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    return await _import_upload(request, db, file, "recipes", import_recipes)


@app.post("/import/staples", response_class=HTMLResponse)
async def import_staples_csv(request: Request, file: UploadFile = File(...), db: Database = Depends(get_db)):
    if not get_current_user(request):
        return login_redirect()
    return await _import_upload(request, db, file, "staples", import_staples)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
