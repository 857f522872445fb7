#!/usr/bin/env python3
"""
Scripted CSV backup and restore of the recipe and staple catalog.

    shopping-catalog export recipes backup/recipes.csv
    shopping-catalog import staples staples.csv

Uses the same Supabase settings (.env) as the web app. Imports are
idempotent: re-running an import of an unchanged file writes nothing.
"""

import logging
import os
from pathlib import Path

import click

from csv_bridge import (
    CsvImportError,
    export_filename,
    export_recipes,
    export_staples,
    import_recipes,
    import_staples,
)
from database import Database

logger = logging.getLogger(__name__)

KINDS = click.Choice(["recipes", "staples"])
EXPORTERS = {"recipes": export_recipes, "staples": export_staples}
IMPORTERS = {"recipes": import_recipes, "staples": import_staples}


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose):
    """Export or import the shopping planner catalog as CSV."""
    level = "DEBUG" if verbose else os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format="%(levelname)s %(message)s")


@cli.command("export")
@click.argument("kind", type=KINDS)
@click.argument("path", required=False, type=click.Path(dir_okay=False, path_type=Path))
def export_cmd(kind, path):
    """Write KIND to PATH (default: <kind>-export-<date>.csv)."""
    path = path or Path(export_filename(kind))
    content = EXPORTERS[kind](Database())
    path.write_text(content, encoding="utf-8")
    logger.info("Exported %d %s rows to %s", content.count("\n"), kind, path)
    click.echo(str(path))


@cli.command("import")
@click.argument("kind", type=KINDS)
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def import_cmd(kind, path):
    """Import KIND from the CSV file at PATH."""
    text = path.read_text(encoding="utf-8-sig")
    try:
        result = IMPORTERS[kind](Database(), text)
    except CsvImportError as e:
        raise click.ClickException(str(e))
    click.echo(result.message)


if __name__ == "__main__":
    cli()
