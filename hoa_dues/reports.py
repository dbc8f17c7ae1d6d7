"""XLSX export of account snapshots (one row per parcel)."""

from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path
from typing import Iterable

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from .models import AccountSnapshot

logger = logging.getLogger(__name__)

_CURRENCY_FORMAT = '"$"#,##0.00'
_HEADER_FILL = PatternFill(start_color="DDEBF7", end_color="DDEBF7", fill_type="solid")

REPORT_COLUMNS: list[tuple[str, int]] = [
    ("Parcel ID", 14),
    ("Location", 32),
    ("Owner", 32),
    ("Email", 32),
    ("Total Due", 14),
    ("Current Year Only", 18),
    ("Latest FY", 10),
    ("Latest FY Paid", 14),
]


def _row(snapshot: AccountSnapshot) -> list:
    owner = snapshot.current_owner
    prop = snapshot.property_rec
    latest = snapshot.latest_assessment
    return [
        snapshot.parcel_id,
        prop.parcel_location if prop else "",
        owner.mailing_name if owner else (prop.mailing_name if prop else ""),
        snapshot.dues_email_addr,
        float(snapshot.total_due),
        "Y" if snapshot.only_current_year_owed else "N",
        latest.fy if latest else None,
        ("Y" if latest.paid else "N") if latest else "",
    ]


def write_dues_report(
    accounts: Iterable[AccountSnapshot],
    path: str | Path,
    title: str = "Dues Report",
) -> Path:
    """Write accounts to an .xlsx workbook with a totals row.  Returns the path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    wb = Workbook()
    ws = wb.active
    ws.title = title[:31]

    for col, (header, width) in enumerate(REPORT_COLUMNS, start=1):
        cell = ws.cell(row=1, column=col, value=header)
        cell.font = Font(bold=True)
        cell.fill = _HEADER_FILL
        ws.column_dimensions[get_column_letter(col)].width = width
    ws.freeze_panes = "A2"

    total = Decimal("0")
    row_idx = 1
    for snapshot in accounts:
        row_idx += 1
        for col, value in enumerate(_row(snapshot), start=1):
            ws.cell(row=row_idx, column=col, value=value)
        ws.cell(row=row_idx, column=5).number_format = _CURRENCY_FORMAT
        total += snapshot.total_due

    count = row_idx - 1
    totals_row = row_idx + 2
    ws.cell(row=totals_row, column=1, value=f"{count} properties").font = Font(bold=True)
    total_cell = ws.cell(row=totals_row, column=5, value=float(total))
    total_cell.font = Font(bold=True)
    total_cell.number_format = _CURRENCY_FORMAT

    wb.save(path)
    logger.info("Wrote dues report: %d properties, total %s -> %s", count, total, path)
    return path
