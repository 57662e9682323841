"""Room availability, booking validation and guest folios.

A room is held by two populations: canonical ``room_booking`` records (active
or historical stays) and canonical ``room_reservation`` records. Pending,
rejected, expired and converted records never hold a room. Intervals are
half-open in practice: one guest may check out at 11:00 on the day the next
guest checks in at 14:00, and a check-out at exactly the next check-in time
does not overlap either.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from . import data_manager, log
from .constants import ConflictSource, RecordType
from .data_manager import ConfigSettings, RecordRow
from .errors import BookingConflictError, MissingRecordError, ValidationError
from .payloads import (
    PAYMENT_METHODS,
    CheckoutRecord,
    FolioAdjustment,
    RoomBooking,
    RoomReservation,
    StayExtension,
    parse_payload,
)

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


ZERO = Decimal("0")
CENT = Decimal("0.01")

Interval = Tuple[datetime, datetime]


@dataclass(frozen=True)
class BookingWindow:
    """Room and dates to test; times fall back to the configured defaults."""

    room_id: str
    check_in: date
    check_out: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None


@dataclass(frozen=True)
class ConflictResult:
    conflict: bool
    record_id: Optional[str] = None
    source: Optional[ConflictSource] = None
    interval: Optional[Interval] = None


def window_for(payload: Union[RoomBooking, RoomReservation]) -> BookingWindow:
    """Extract the room and dates a booking or reservation occupies."""

    if isinstance(payload, RoomBooking):
        return BookingWindow(
            room_id=payload.stay.room_id,
            check_in=payload.stay.check_in,
            check_out=payload.stay.check_out,
            start_time=payload.stay.check_in_time,
            end_time=payload.stay.check_out_time,
        )
    return BookingWindow(
        room_id=payload.room_id,
        check_in=payload.check_in_date,
        check_out=payload.check_out_date,
        start_time=payload.check_in_time,
        end_time=payload.check_out_time,
    )


def to_interval(window: BookingWindow, settings: ConfigSettings) -> Interval:
    """Combine dates and times into concrete datetimes.

    Raises:
        ValidationError: If the interval does not end after it starts.
    """

    start = datetime.combine(window.check_in, window.start_time or settings.check_in_time)
    end = datetime.combine(window.check_out, window.end_time or settings.check_out_time)
    if end <= start:
        raise ValidationError(
            f"Stay in room '{window.room_id}' ends at {end:%Y-%m-%d %H:%M}, "
            f"which is not after its start {start:%Y-%m-%d %H:%M}"
        )
    return start, end


def intervals_overlap(first: Interval, second: Interval) -> bool:
    """Strict overlap: touching endpoints do not count."""

    return first[0] < second[1] and first[1] > second[0]


def find_conflict(
    session: Session,
    settings: ConfigSettings,
    window: BookingWindow,
    *,
    exclude_ids: Iterable[str] = (),
    exclude_chain_ids: Iterable[str] = (),
) -> ConflictResult:
    """Search stays first, then reservations, for an interval overlapping ``window``.

    Args:
        session (Session): Open session.
        settings (ConfigSettings): Supplies default check-in/check-out times.
        window (BookingWindow): Candidate room and dates.
        exclude_ids (Iterable[str]): Record ids to ignore.
        exclude_chain_ids (Iterable[str]): Chains to ignore, such as the
            record being edited, approved or converted.

    Returns:
        ConflictResult: The first conflicting record, or ``conflict=False``.
    """

    target = to_interval(window, settings)
    excluded = list(exclude_ids)
    excluded_chains = list(exclude_chain_ids)
    populations = (
        (RecordType.ROOM_BOOKING, ConflictSource.ACTIVE_STAY),
        (RecordType.ROOM_RESERVATION, ConflictSource.RESERVATION),
    )
    for record_type, source in populations:
        rows = data_manager.canonical_records(
            session,
            [record_type.value],
            subject=window.room_id,
            exclude_ids=excluded,
            exclude_chain_ids=excluded_chains,
        )
        for row in rows:
            existing = to_interval(window_for(parse_payload(row.data)), settings)
            if intervals_overlap(target, existing):
                return ConflictResult(conflict=True, record_id=row.id, source=source, interval=existing)
    return ConflictResult(conflict=False)


def ensure_room_available(
    session: Session,
    settings: ConfigSettings,
    window: BookingWindow,
    *,
    exclude_ids: Iterable[str] = (),
    exclude_chain_ids: Iterable[str] = (),
) -> None:
    """Raise :class:`BookingConflictError` when ``window`` is already held."""

    result = find_conflict(
        session,
        settings,
        window,
        exclude_ids=exclude_ids,
        exclude_chain_ids=exclude_chain_ids,
    )
    if not result.conflict:
        return
    start, end = result.interval
    log.warning(
        "Room '%s' requested %s..%s conflicts with %s '%s'",
        window.room_id,
        window.check_in,
        window.check_out,
        result.source.value,
        result.record_id,
    )
    raise BookingConflictError(
        window.room_id,
        result.record_id,
        result.source.value,
        detail=f"held from {start:%Y-%m-%d %H:%M} to {end:%Y-%m-%d %H:%M}",
    )


def check_double_booking(
    context: RuntimeContext,
    window: BookingWindow,
    exclude_id: Optional[str] = None,
) -> ConflictResult:
    """Report whether ``window`` collides with an approved stay or reservation.

    ``exclude_id`` removes that record, and every version in its chain, from
    both populations so a record never conflicts with itself.
    """

    with data_manager.transaction(context.store) as session:
        exclude_ids: List[str] = []
        exclude_chain_ids: List[str] = []
        if exclude_id:
            exclude_ids.append(exclude_id)
            excluded = data_manager.get_record(session, exclude_id)
            if excluded is not None:
                exclude_chain_ids.append(excluded.chain_id)
        return find_conflict(
            session,
            context.settings,
            window,
            exclude_ids=exclude_ids,
            exclude_chain_ids=exclude_chain_ids,
        )


def validate_room_booking(booking: RoomBooking) -> None:
    """Check the arithmetic and required fields of a front-desk booking.

    Every problem is collected so the operator sees them all at once.

    Raises:
        ValidationError: Listing each failed rule, separated by ``"; "``.
    """

    errors: List[str] = []
    if not booking.guest.full_name:
        errors.append("Guest name is required")
    if not booking.guest.phone:
        errors.append("Guest phone is required")
    if not booking.stay.room_id:
        errors.append("Room is required")
    if booking.stay.adults < 0 or booking.stay.children < 0:
        errors.append("Guest counts must be non-negative")

    nights = (booking.stay.check_out - booking.stay.check_in).days
    if nights <= 0:
        errors.append("Check-out date must be after check-in date")

    pricing = booking.pricing
    if pricing is not None:
        if pricing.room_rate < ZERO or pricing.total_room_cost < ZERO or pricing.nights < 0:
            errors.append("Pricing values must be non-negative")
        if nights > 0 and pricing.nights != nights:
            errors.append(f"Nights ({pricing.nights}) do not match the stay dates ({nights})")
        expected_total = (pricing.room_rate * pricing.nights).quantize(CENT)
        if pricing.total_room_cost.quantize(CENT) != expected_total:
            errors.append(f"Total room cost {pricing.total_room_cost} should be {expected_total}")

    payment = booking.payment
    if payment is not None:
        if payment.paid_amount < ZERO or payment.balance < ZERO:
            errors.append("Payment values must be non-negative")
        if payment.payment_method.lower() not in {method.lower() for method in PAYMENT_METHODS}:
            errors.append(f"Payment method must be one of: {', '.join(PAYMENT_METHODS)}")
        if pricing is not None:
            if payment.paid_amount > pricing.total_room_cost:
                errors.append("Paid amount cannot exceed the total room cost")
            expected_balance = (pricing.total_room_cost - payment.paid_amount).quantize(CENT)
            if payment.balance.quantize(CENT) != expected_balance:
                errors.append(f"Balance {payment.balance} should be {expected_balance}")

    if errors:
        log.warning("Room booking for '%s' failed validation: %s", booking.stay.room_id, "; ".join(errors))
        raise ValidationError("; ".join(errors))


# ---------------------------------------------------------------------------
# Guest folio
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FolioEntry:
    """One debit or credit on a guest's bill."""

    record_id: str
    posted_at: datetime
    kind: str
    category: str
    amount: Decimal
    description: str


@dataclass(frozen=True)
class FolioSummary:
    booking_id: str
    entries: List[FolioEntry]
    total_charges: Decimal
    total_payments: Decimal

    @property
    def balance(self) -> Decimal:
        return self.total_charges - self.total_payments


def _naive(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(UTC).replace(tzinfo=None)


def _entry_time(row: RecordRow, on_date: Optional[date] = None) -> datetime:
    if on_date is not None:
        return datetime.combine(on_date, time.min)
    return _naive(row.created_at)


def folio_entries(booking_row: RecordRow, related: Iterable[RecordRow]) -> List[FolioEntry]:
    """Turn a booking and its related records into dated folio lines.

    Charges are the room cost, penalties, extensions and the room cost of any
    booking transferred onto this one. Credits are the booking's upfront
    payment, later payments, discounts, refunds and the final checkout
    payment.
    """

    booking: RoomBooking = parse_payload(booking_row.data)
    entries: List[FolioEntry] = []
    posted = _entry_time(booking_row)
    if booking.pricing is not None and booking.pricing.total_room_cost > ZERO:
        entries.append(
            FolioEntry(booking_row.id, posted, "debit", "room_charge", booking.pricing.total_room_cost,
                       f"Room {booking.stay.room_id}, {booking.pricing.nights} night(s)")
        )
    if booking.payment is not None and booking.payment.paid_amount > ZERO:
        entries.append(
            FolioEntry(booking_row.id, posted, "credit", "payment", booking.payment.paid_amount,
                       f"Payment at check-in ({booking.payment.payment_method})")
        )

    for row in related:
        payload = parse_payload(row.data)
        when = _entry_time(row)
        if isinstance(payload, RoomBooking):
            if payload.pricing is not None and payload.pricing.total_room_cost > ZERO:
                entries.append(
                    FolioEntry(row.id, when, "debit", "room_transfer", payload.pricing.total_room_cost,
                               f"Transfer to room {payload.stay.room_id}")
                )
        elif isinstance(payload, StayExtension):
            entries.append(
                FolioEntry(row.id, when, "debit", "stay_extension", payload.additional_cost,
                           f"Extension of {payload.nights_added} night(s) to {payload.new_check_out}")
            )
        elif isinstance(payload, CheckoutRecord):
            if payload.final_payment > ZERO:
                entries.append(
                    FolioEntry(row.id, _entry_time(row, payload.checkout_date), "credit", "final_payment",
                               payload.final_payment, "Payment at checkout")
                )
        elif isinstance(payload, FolioAdjustment):
            kind = "debit" if payload.record_type == RecordType.PENALTY_FEE.value else "credit"
            entries.append(
                FolioEntry(row.id, when, kind, payload.record_type, payload.amount,
                           payload.reason or payload.record_type.replace("_", " "))
            )
    entries.sort(key=lambda entry: entry.posted_at)
    return entries


FOLIO_RECORD_TYPES = (
    RecordType.PAYMENT_RECORD.value,
    RecordType.PENALTY_FEE.value,
    RecordType.DISCOUNT_APPLIED.value,
    RecordType.REFUND_RECORD.value,
    RecordType.STAY_EXTENSION.value,
    RecordType.CHECKOUT_RECORD.value,
)


def folio_summary(context: RuntimeContext, booking_id: str) -> FolioSummary:
    """Assemble the guest folio for ``booking_id`` from canonical records.

    Raises:
        MissingRecordError: If ``booking_id`` is not a live room booking.
    """

    with data_manager.transaction(context.store) as session:
        booking_row = data_manager.get_record(session, booking_id)
        if (
            booking_row is None
            or booking_row.is_deleted
            or booking_row.record_type != RecordType.ROOM_BOOKING.value
        ):
            raise MissingRecordError(f"Room booking '{booking_id}' not found")
        related = data_manager.canonical_records(session, FOLIO_RECORD_TYPES, subject=booking_id)
        transfers = [
            row
            for row in data_manager.canonical_records(session, [RecordType.ROOM_BOOKING.value])
            if row.data.get("booking_id") == booking_id and row.id != booking_id
        ]

    entries = folio_entries(booking_row, [*related, *transfers])
    charges = sum((entry.amount for entry in entries if entry.kind == "debit"), ZERO)
    payments = sum((entry.amount for entry in entries if entry.kind == "credit"), ZERO)
    return FolioSummary(booking_id=booking_id, entries=entries, total_charges=charges, total_payments=payments)
