"""
Shopping list rendering for sharing: sector grid layout, plain-text list,
WhatsApp/e-mail links and a printable PDF.
"""

from datetime import datetime
from io import BytesIO
from typing import Dict, List
from urllib.parse import quote

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from database import OTHER_SECTOR, SECTOR_COLUMNS


def grid_layout(sectors: List[Dict], grouped: Dict[str, List[Dict]] = None) -> List[List[str]]:
    """Sector names arranged in rows of the display grid.

    Configured sectors are placed by (grid_row, grid_column). Buckets in
    ``grouped`` that aren't configured sectors ("Other" included) follow
    as extra rows so nothing on the list goes missing.
    """
    placed = sorted(
        sectors,
        key=lambda s: (s.get("grid_row") or 0, s.get("grid_column") or 0, s.get("display_order") or 0),
    )
    rows: List[List[str]] = []
    current_row = None
    for sector in placed:
        if not rows or sector.get("grid_row") != current_row or len(rows[-1]) >= SECTOR_COLUMNS:
            rows.append([])
            current_row = sector.get("grid_row")
        rows[-1].append(sector["name"])

    known = {name for row in rows for name in row}
    extra = [name for name in (grouped or {}) if name not in known and name != OTHER_SECTOR]
    if grouped and OTHER_SECTOR in grouped and OTHER_SECTOR not in known:
        extra.append(OTHER_SECTOR)
    for i in range(0, len(extra), SECTOR_COLUMNS):
        rows.append(extra[i:i + SECTOR_COLUMNS])
    return rows


def list_text(shopping_list: Dict, sectors: List[Dict], name: str = None) -> str:
    """Plain-text checklist with one block per non-empty sector, in grid order."""
    name = name if name is not None else shopping_list.get("name")
    grouped = shopping_list.get("grouped") or {}

    text = f"🛒 Shopping List{f' - {name}' if name else ''}\n\n"
    for row in grid_layout(sectors, grouped):
        for sector in row:
            items = grouped.get(sector) or []
            if not items:
                continue
            text += f"📍 {sector}\n"
            for item in items:
                text += f"  ☐ {item['name']}"
                if item.get("quantity"):
                    text += f" ({item['quantity']})"
                text += "\n"
            text += "\n"
    return text


def share_link(method: str, text: str, subject: str = None) -> str:
    """Link that hands the text to WhatsApp or the user's mail client."""
    if method == "whatsapp":
        return f"https://wa.me/?text={quote(text, safe='')}"
    if method == "email":
        subject = subject or "Shopping List"
        return f"mailto:?subject={quote(subject, safe='')}&body={quote(text, safe='')}"
    raise ValueError(f"Unknown share method: {method}")


def render_pdf(shopping_list: Dict, sectors: List[Dict]) -> bytes:
    """A4 checklist of the unchecked items, grouped by sector."""
    grouped = shopping_list.get("grouped") or {}

    buffer = BytesIO()
    p = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4

    # Title
    p.setFont("Helvetica-Bold", 20)
    p.drawString(30*mm, height - 30*mm, shopping_list.get("name") or "Shopping List")

    # Date
    p.setFont("Helvetica", 10)
    p.drawString(30*mm, height - 40*mm, f"Printed: {datetime.now().strftime('%Y-%m-%d %H:%M')}")

    y = height - 55*mm

    for row in grid_layout(sectors, grouped):
        for sector in row:
            items = [i for i in grouped.get(sector) or [] if not i.get("is_checked")]
            if not items:
                continue

            # Sector header
            p.setFont("Helvetica-Bold", 14)
            p.drawString(30*mm, y, sector)
            y -= 7*mm

            p.setFont("Helvetica", 11)
            for item in items:
                p.rect(35*mm, y - 1*mm, 3.5*mm, 3.5*mm)
                text = item["name"]
                if item.get("quantity"):
                    text += f" - {item['quantity']}"
                p.drawString(41*mm, y, text)
                y -= 6*mm

                # New page if needed
                if y < 30*mm:
                    p.showPage()
                    y = height - 30*mm
                    p.setFont("Helvetica", 11)

            # Extra space after sector
            y -= 3*mm

    p.save()
    return buffer.getvalue()
