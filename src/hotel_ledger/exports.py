"""Spreadsheet exports of derived ledger views.

Each export writes a single-sheet ``.xlsx`` workbook with a bold header row,
ready to hand to accounting. Values are written as numbers (not strings) so
the sheet can be summed directly.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Sequence

import openpyxl
from openpyxl.styles import Font

from . import log, reconciliation
from .data_manager import RecordRow


STOCK_STATE_COLUMNS: Sequence[str] = (
    "Item",
    "Category",
    "Collection",
    "Unit",
    "Opening",
    "Restocked",
    "Sold",
    "Issued",
    "Closing",
    "UnitPrice",
    "Anomaly",
)

ROLLUP_COLUMNS: Sequence[str] = (
    "Item",
    "Department",
    "Month",
    "OpenStart",
    "Restocked",
    "Sold",
    "CloseEnd",
    "SalesValue",
)

HISTORY_COLUMNS: Sequence[str] = (
    "RecordID",
    "ChainID",
    "Version",
    "RecordType",
    "Subject",
    "Status",
    "FinancialAmount",
    "SubmittedBy",
    "CreatedAt",
    "ReviewedBy",
    "RejectionReason",
    "Deleted",
)


def _number(value: Decimal) -> float | int:
    return int(value) if value == value.to_integral_value() else float(value)


def _write_sheet(
    destination: Path,
    title: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[object]],
    *,
    overwrite: bool,
) -> Path:
    """Create a one-sheet workbook at ``destination``.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing export: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    worksheet = workbook.active
    worksheet.title = title
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font

    count = 0
    for row in rows:
        worksheet.append(list(row))
        count += 1

    workbook.save(destination)
    log.info("Exported %d row(s) to '%s'", count, destination)
    return destination


def export_stock_state(
    rows: Sequence[reconciliation.StockStateRow],
    destination: Path,
    *,
    on_date: date,
    overwrite: bool = False,
) -> Path:
    """Write a daily stock sheet; closing figures are the raw (signed) balance."""

    return _write_sheet(
        destination,
        f"Stock {on_date.isoformat()}",
        STOCK_STATE_COLUMNS,
        (
            (
                row.item,
                row.category,
                row.collection,
                row.unit,
                _number(row.opening),
                _number(row.restocked),
                _number(row.sold),
                _number(row.issued),
                _number(row.closing),
                _number(row.unit_price),
                "YES" if row.anomaly else "",
            )
            for row in rows
        ),
        overwrite=overwrite,
    )


def export_monthly_rollup(
    rollups: Sequence[reconciliation.MonthlyRollup],
    destination: Path,
    *,
    overwrite: bool = False,
) -> Path:
    """Write one line per item/month rollup."""

    return _write_sheet(
        destination,
        "Monthly rollup",
        ROLLUP_COLUMNS,
        (
            (
                rollup.item,
                rollup.department,
                f"{rollup.year:04d}-{rollup.month:02d}",
                _number(rollup.open_start),
                _number(rollup.restocked),
                _number(rollup.sold),
                _number(rollup.close_end),
                _number(rollup.sales_value),
            )
            for rollup in rollups
        ),
        overwrite=overwrite,
    )


def export_history(records: Sequence[RecordRow], destination: Path, *, overwrite: bool = False) -> Path:
    """Write an audit trail of record versions, deleted ones included."""

    return _write_sheet(
        destination,
        "History",
        HISTORY_COLUMNS,
        (
            (
                record.id,
                record.chain_id,
                record.version_no,
                record.record_type,
                record.subject,
                record.status,
                _number(record.financial_amount),
                record.submitted_by,
                record.created_at.replace(tzinfo=None),
                record.reviewed_by,
                record.rejection_reason,
                "YES" if record.is_deleted else "",
            )
            for record in records
        ),
        overwrite=overwrite,
    )
