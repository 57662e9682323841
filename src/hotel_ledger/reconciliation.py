"""Stock reconciliation engine.

Stock is never stored as a counter. Every figure produced here is derived by
replaying the canonical (latest approved, non-deleted) stock movements for an
item and department:

* ``opening_stock``, ``stock_restock`` and incoming adjustments add
  ``quantity_in``;
* ``sold``, ``stock_issued``, ``consumed`` and outgoing adjustments subtract
  ``quantity_out``.

Opening stock for a date is the signed sum of everything strictly before that
date, so ``closing(d) == opening(d + 1)`` holds by construction. Raw balances
are never floored; display rows carry an anomaly flag instead, and only the
monthly rollup clamps its closing figure at zero.
"""

from __future__ import annotations

import calendar
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from . import data_manager, log
from .constants import Department, MovementType, RecordType
from .errors import InsufficientStockError, ValidationError
from .payloads import ConfigItem, StockMovement, parse_payload

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


ZERO = Decimal("0")
MOVEMENT_TYPES = tuple(kind.value for kind in MovementType)


@dataclass(frozen=True)
class DailyMovement:
    """Quantities that moved on a single day."""

    restocked: Decimal = ZERO
    sold: Decimal = ZERO
    issued: Decimal = ZERO

    @property
    def outgoing(self) -> Decimal:
        return self.sold + self.issued


@dataclass(frozen=True)
class StockStateRow:
    """One line of the daily stock sheet for a department."""

    item: str
    category: str
    collection: Optional[str]
    unit: str
    department: str
    opening: Decimal
    restocked: Decimal
    sold: Decimal
    issued: Decimal
    closing: Decimal
    unit_price: Decimal

    @property
    def anomaly(self) -> bool:
        """A negative balance means movements were entered out of order or lost."""

        return self.closing < ZERO

    @property
    def display_closing(self) -> Decimal:
        return max(ZERO, self.closing)


@dataclass(frozen=True)
class MonthlyRollup:
    item: str
    department: str
    year: int
    month: int
    open_start: Decimal
    restocked: Decimal
    sold: Decimal
    close_end: Decimal
    sales_value: Decimal


def _department(value: Department | str) -> Department:
    try:
        return value if isinstance(value, Department) else Department(str(value).upper())
    except ValueError as exc:
        raise ValidationError(f"Unknown department: {value}") from exc


# ---------------------------------------------------------------------------
# Replay arithmetic
# ---------------------------------------------------------------------------


def sum_opening(movements: Iterable[StockMovement], on_date: date) -> Decimal:
    """Net every movement dated strictly before ``on_date``."""

    return sum((movement.delta for movement in movements if movement.event_date < on_date), ZERO)


def sum_daily(movements: Iterable[StockMovement], on_date: date) -> DailyMovement:
    """Split the movements dated ``on_date`` into restocked, sold and issued."""

    restocked = sold = issued = ZERO
    for movement in movements:
        if movement.event_date != on_date:
            continue
        if movement.is_incoming:
            restocked += movement.quantity_in
        elif movement.movement_type is MovementType.SOLD:
            sold += movement.quantity_out
        else:
            issued += movement.quantity_out
    return DailyMovement(restocked=restocked, sold=sold, issued=issued)


def load_movements(
    session: Session,
    *,
    item: Optional[str] = None,
    department: Optional[Department] = None,
    exclude_chain_ids: Iterable[str] = (),
) -> List[StockMovement]:
    """Fetch and parse canonical movements, optionally for one item/department."""

    rows = data_manager.canonical_records(
        session,
        MOVEMENT_TYPES,
        subject=item,
        department=department.value if department is not None else None,
        exclude_chain_ids=exclude_chain_ids,
    )
    return [parse_payload(row.data) for row in rows]


def validate_outgoing_movement(
    session: Session,
    movement: StockMovement,
    *,
    exclude_chain_ids: Iterable[str] = (),
    pending_incoming: Decimal = ZERO,
    pending_outgoing: Decimal = ZERO,
) -> None:
    """Refuse an outgoing movement that the ledger cannot cover.

    Two conditions are enforced for the movement's item, department and day:
    the quantity taken must not exceed ``opening + restocked`` and the day's
    closing balance (after everything already approved that day) must not go
    below zero.

    Args:
        session (Session): Open session used to read the ledger snapshot.
        movement (StockMovement): Candidate movement.
        exclude_chain_ids (Iterable[str]): Chains to ignore, typically the
            chain being edited or approved.
        pending_incoming (Decimal): Restocks submitted in the same batch for
            the same item, department and day.
        pending_outgoing (Decimal): Outgoing quantities earlier in the same
            batch for the same item, department and day.

    Raises:
        InsufficientStockError: If either condition fails.
    """

    if movement.is_incoming:
        return

    history = load_movements(
        session,
        item=movement.item,
        department=movement.department,
        exclude_chain_ids=exclude_chain_ids,
    )
    opening = sum_opening(history, movement.event_date)
    day = sum_daily(history, movement.event_date)
    restocked = day.restocked + pending_incoming
    available = opening + restocked
    already_out = day.outgoing + pending_outgoing

    if movement.quantity_out > available or available - already_out - movement.quantity_out < ZERO:
        log.warning(
            "Rejected %s of %s '%s' in %s on %s (opening=%s restocked=%s already_out=%s)",
            movement.record_type,
            movement.quantity_out,
            movement.item,
            movement.department.value,
            movement.event_date,
            opening,
            restocked,
            already_out,
        )
        raise InsufficientStockError(
            movement.item,
            movement.department.value,
            requested=movement.quantity_out,
            available=max(ZERO, available - already_out),
            opening=opening,
            restocked=restocked,
        )


# ---------------------------------------------------------------------------
# Public reads
# ---------------------------------------------------------------------------


def opening_stock(context: RuntimeContext, item: str, department: Department | str, on_date: date) -> Decimal:
    """Return the signed opening balance of ``item`` in ``department`` on ``on_date``."""

    dept = _department(department)
    with data_manager.transaction(context.store) as session:
        movements = load_movements(session, item=item, department=dept)
    return sum_opening(movements, on_date)


def daily_movement(context: RuntimeContext, item: str, department: Department | str, on_date: date) -> DailyMovement:
    """Return what came in and went out for ``item`` on ``on_date``."""

    dept = _department(department)
    with data_manager.transaction(context.store) as session:
        movements = load_movements(session, item=item, department=dept)
    return sum_daily(movements, on_date)


def closing_stock(context: RuntimeContext, item: str, department: Department | str, on_date: date) -> Decimal:
    """Return ``opening + restocked - outgoing`` for ``on_date``.

    The result equals :func:`opening_stock` for the following day.
    """

    dept = _department(department)
    with data_manager.transaction(context.store) as session:
        movements = load_movements(session, item=item, department=dept)
    day = sum_daily(movements, on_date)
    return sum_opening(movements, on_date) + day.restocked - day.outgoing


def get_stock_state(
    context: RuntimeContext,
    on_date: date,
    department: Department | str,
    category: Optional[str] = None,
) -> List[StockStateRow]:
    """Build the stock sheet for every active catalogue item on ``on_date``.

    Items come from the canonical ``config_item`` projection, optionally
    narrowed to ``category`` (case-insensitive). Movements are loaded once for
    the department and grouped by item name, so the result reflects a single
    consistent snapshot.

    Args:
        context (RuntimeContext): Runtime context holding the store handle.
        on_date (date): Day being reconciled.
        department (Department | str): Stock-holding department.
        category (str | None): Optional category filter.

    Returns:
        list[StockStateRow]: One row per item, ordered by item name.
    """

    dept = _department(department)
    with data_manager.transaction(context.store) as session:
        item_rows = data_manager.canonical_records(session, [RecordType.CONFIG_ITEM.value])
        movements = load_movements(session, department=dept)

    by_item: Dict[str, List[StockMovement]] = defaultdict(list)
    for movement in movements:
        by_item[movement.item.lower()].append(movement)

    rows: List[StockStateRow] = []
    for item_row in item_rows:
        item: ConfigItem = parse_payload(item_row.data)
        if not item.active:
            continue
        if category is not None and item.category.lower() != category.strip().lower():
            continue
        history = by_item.get(item.name.lower(), [])
        opening = sum_opening(history, on_date)
        day = sum_daily(history, on_date)
        rows.append(
            StockStateRow(
                item=item.name,
                category=item.category,
                collection=item.collection,
                unit=item.unit,
                department=dept.value,
                opening=opening,
                restocked=day.restocked,
                sold=day.sold,
                issued=day.issued,
                closing=opening + day.restocked - day.outgoing,
                unit_price=item.unit_price,
            )
        )
    rows.sort(key=lambda row: row.item.lower())
    anomalies = [row.item for row in rows if row.anomaly]
    if anomalies:
        log.warning("Negative stock balances in %s on %s: %s", dept.value, on_date, ", ".join(anomalies))
    log.debug("Computed stock state for %s on %s (%d items)", dept.value, on_date, len(rows))
    return rows


def month_bounds(year: int, month: int) -> tuple[date, date]:
    """Return the first and last calendar day of a month."""

    if not 1 <= month <= 12:
        raise ValidationError(f"Month must be between 1 and 12, got {month}")
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def summarize_month(movements: Sequence[StockMovement], year: int, month: int) -> Dict[str, Decimal]:
    """Aggregate movements for a month; ``close_end`` is clamped at zero."""

    first, last = month_bounds(year, month)
    open_start = sum_opening(movements, first)
    restocked = sold = sales_value = ZERO
    for movement in movements:
        if not first <= movement.event_date <= last:
            continue
        if movement.is_incoming:
            restocked += movement.quantity_in
        else:
            sold += movement.quantity_out
        if movement.movement_type is MovementType.SOLD:
            sales_value += movement.total_value
    return {
        "open_start": open_start,
        "restocked": restocked,
        "sold": sold,
        "close_end": max(ZERO, open_start + restocked - sold),
        "sales_value": sales_value,
    }


def get_monthly_rollup(
    context: RuntimeContext,
    item: str,
    department: Department | str,
    year: int,
    month: int,
) -> MonthlyRollup:
    """Summarize a month of movements for one item in one department.

    ``sold`` counts every outgoing quantity (sales, issues, consumption and
    negative adjustments) while ``sales_value`` only sums ``total_value`` of
    actual sales, so turnover is never mistaken for revenue.
    """

    dept = _department(department)
    with data_manager.transaction(context.store) as session:
        movements = load_movements(session, item=item, department=dept)
    summary = summarize_month(movements, year, month)
    log.debug("Monthly rollup for '%s' in %s %04d-%02d: %s", item, dept.value, year, month, summary)
    return MonthlyRollup(item=item, department=dept.value, year=year, month=month, **summary)


def revenue_summary(context: RuntimeContext, start: date, end: date) -> Dict[str, Decimal]:
    """Sum canonical ``financial_amount`` per entity type for ``start..end``.

    Records without an ``event_date`` are dated by their creation day. The
    ``"total"`` key carries the grand total.
    """

    if end < start:
        raise ValidationError(f"Revenue range is inverted: {start} to {end}")
    with data_manager.transaction(context.store) as session:
        rows = data_manager.canonical_records(session)
    totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    for row in rows:
        day = row.event_date or row.created_at.date()
        if start <= day <= end:
            totals[row.entity_type] += row.financial_amount
    result = dict(totals)
    result["total"] = sum(result.values(), ZERO)
    return result
