"""Typed payload variants stored in ``operational_records.data``.

Every record carries a JSON document discriminated by its ``type`` tag. This
module turns those documents into frozen dataclasses (one per tag) and back,
so the rest of the package never pokes at raw dictionaries. Unknown tags are
preserved as :class:`RawPayload` rather than rejected, which keeps older or
newer clients readable.

Monetary and quantity fields are :class:`~decimal.Decimal` in memory and are
serialized as strings so the JSON column never holds binary floats.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, ClassVar, Dict, Mapping, Optional, Union

from .constants import Department, MovementType, RecordType, INCOMING_MOVEMENTS, OUTGOING_MOVEMENTS
from .errors import ValidationError


ZERO = Decimal("0")
PAYMENT_METHODS = ("transfer", "POS")
RESERVATION_PAYMENT_STATUSES = ("unpaid", "deposit_paid", "fully_paid")
FOLIO_ADJUSTMENT_TYPES = frozenset(
    {
        RecordType.PAYMENT_RECORD,
        RecordType.PENALTY_FEE,
        RecordType.DISCOUNT_APPLIED,
        RecordType.REFUND_RECORD,
    }
)


# ---------------------------------------------------------------------------
# Field coercion helpers
# ---------------------------------------------------------------------------


def _mapping(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"Field '{key}' must be an object")
    return value


def _text(data: Mapping[str, Any], key: str, *, required: bool = True, aliases: tuple[str, ...] = ()) -> Optional[str]:
    for candidate in (key, *aliases):
        value = data.get(candidate)
        if value is not None and str(value).strip():
            return str(value).strip()
    if required:
        raise ValidationError(f"Field '{key}' is required")
    return None


def _decimal(data: Mapping[str, Any], key: str, *, default: Optional[Decimal] = ZERO, aliases: tuple[str, ...] = ()) -> Decimal:
    raw = None
    for candidate in (key, *aliases):
        if data.get(candidate) is not None and data.get(candidate) != "":
            raw = data[candidate]
            break
    if raw is None:
        if default is None:
            raise ValidationError(f"Field '{key}' is required")
        return default
    if isinstance(raw, bool):
        raise ValidationError(f"Field '{key}' must be numeric, got {raw!r}")
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValidationError(f"Field '{key}' must be numeric, got {raw!r}") from exc


def _nonnegative(value: Decimal, label: str) -> Decimal:
    if value < ZERO:
        raise ValidationError(f"{label} must be a non-negative number, got {value}")
    return value


def _int(data: Mapping[str, Any], key: str, *, default: int = 0) -> int:
    raw = data.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Field '{key}' must be an integer, got {raw!r}") from exc


_TRUE_WORDS = frozenset({"true", "1", "yes"})
_FALSE_WORDS = frozenset({"false", "0", "no"})


def _flag(data: Mapping[str, Any], key: str, *, default: bool) -> bool:
    raw = data.get(key)
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (str, int)):
        word = str(raw).strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ValidationError(f"Field '{key}' must be true or false, got {raw!r}")


def _date(data: Mapping[str, Any], key: str, *, required: bool = True, aliases: tuple[str, ...] = ()) -> Optional[date]:
    raw = None
    for candidate in (key, *aliases):
        if data.get(candidate):
            raw = data[candidate]
            break
    if raw is None:
        if required:
            raise ValidationError(f"Field '{key}' is required")
        return None
    if isinstance(raw, date):
        return raw
    try:
        # Timestamps are accepted; only the calendar day is kept.
        return date.fromisoformat(str(raw)[:10])
    except ValueError as exc:
        raise ValidationError(f"Field '{key}' must be an ISO date, got {raw!r}") from exc


def _time(data: Mapping[str, Any], key: str) -> Optional[time]:
    raw = data.get(key)
    if not raw:
        return None
    if isinstance(raw, time):
        return raw
    try:
        return time.fromisoformat(str(raw))
    except ValueError as exc:
        raise ValidationError(f"Field '{key}' must be a HH:MM time, got {raw!r}") from exc


def _money(value: Decimal) -> str:
    return str(value)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _hhmm(value: Optional[time]) -> Optional[str]:
    return value.strftime("%H:%M") if value is not None else None


def _drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


# ---------------------------------------------------------------------------
# Front desk payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GuestInfo:
    """Identity of the guest attached to a stay or reservation."""

    full_name: str
    phone: str
    email: Optional[str] = None
    guest_id: Optional[str] = None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "GuestInfo":
        return cls(
            full_name=_text(data, "full_name", aliases=("name",)) or "",
            phone=_text(data, "phone") or "",
            email=_text(data, "email", required=False),
            guest_id=_text(data, "id", required=False),
        )

    def to_data(self) -> Dict[str, Any]:
        return {"full_name": self.full_name, "phone": self.phone, "email": self.email, "id": self.guest_id}


@dataclass(frozen=True)
class StayInfo:
    room_id: str
    check_in: date
    check_out: date
    check_in_time: Optional[time] = None
    check_out_time: Optional[time] = None
    adults: int = 1
    children: int = 0


@dataclass(frozen=True)
class Pricing:
    room_rate: Decimal
    nights: int
    total_room_cost: Decimal


@dataclass(frozen=True)
class PaymentInfo:
    paid_amount: Decimal
    payment_method: str
    balance: Decimal
    payment_date: Optional[date] = None


@dataclass(frozen=True)
class RoomBooking:
    """An active (or historical) stay in a room."""

    TYPE: ClassVar[RecordType] = RecordType.ROOM_BOOKING

    guest: GuestInfo
    stay: StayInfo
    pricing: Optional[Pricing] = None
    payment: Optional[PaymentInfo] = None
    booking_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def record_type(self) -> str:
        return self.TYPE.value

    @property
    def subject(self) -> str:
        return self.stay.room_id

    @property
    def index_date(self) -> date:
        return self.stay.check_in

    @property
    def department(self) -> Optional[Department]:
        return None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "RoomBooking":
        stay_data = _mapping(data, "stay")
        stay = StayInfo(
            room_id=_text(stay_data, "room_id") or "",
            check_in=_date(stay_data, "check_in"),
            check_out=_date(stay_data, "check_out"),
            check_in_time=_time(stay_data, "check_in_time"),
            check_out_time=_time(stay_data, "check_out_time"),
            adults=_int(stay_data, "adults", default=1),
            children=_int(stay_data, "children", default=0),
        )
        pricing = None
        pricing_data = _mapping(data, "pricing")
        if pricing_data:
            pricing = Pricing(
                room_rate=_decimal(pricing_data, "room_rate"),
                nights=_int(pricing_data, "nights"),
                total_room_cost=_decimal(pricing_data, "total_room_cost"),
            )
        payment = None
        payment_data = _mapping(data, "payment")
        if payment_data:
            payment = PaymentInfo(
                paid_amount=_decimal(payment_data, "paid_amount"),
                payment_method=_text(payment_data, "payment_method") or "",
                balance=_decimal(payment_data, "balance"),
                payment_date=_date(payment_data, "payment_date", required=False),
            )
        return cls(
            guest=GuestInfo.from_data(_mapping(data, "guest")),
            stay=stay,
            pricing=pricing,
            payment=payment,
            booking_id=_text(data, "booking_id", required=False),
            meta=dict(_mapping(data, "meta")),
        )

    def to_data(self) -> Dict[str, Any]:
        stay = _drop_none(
            {
                "room_id": self.stay.room_id,
                "check_in": _iso(self.stay.check_in),
                "check_out": _iso(self.stay.check_out),
                "check_in_time": _hhmm(self.stay.check_in_time),
                "check_out_time": _hhmm(self.stay.check_out_time),
                "adults": self.stay.adults,
                "children": self.stay.children,
            }
        )
        data: Dict[str, Any] = {"type": self.record_type, "guest": self.guest.to_data(), "stay": stay}
        if self.pricing is not None:
            data["pricing"] = {
                "room_rate": _money(self.pricing.room_rate),
                "nights": self.pricing.nights,
                "total_room_cost": _money(self.pricing.total_room_cost),
            }
        if self.payment is not None:
            data["payment"] = _drop_none(
                {
                    "paid_amount": _money(self.payment.paid_amount),
                    "payment_method": self.payment.payment_method,
                    "balance": _money(self.payment.balance),
                    "payment_date": _iso(self.payment.payment_date),
                }
            )
        if self.booking_id is not None:
            data["booking_id"] = self.booking_id
        if self.meta:
            data["meta"] = dict(self.meta)
        return data


@dataclass(frozen=True)
class RoomReservation:
    """A future hold on a room that may later be converted into a stay."""

    TYPE: ClassVar[RecordType] = RecordType.ROOM_RESERVATION

    reservation_code: str
    guest: GuestInfo
    room_id: str
    check_in_date: date
    check_out_date: date
    check_in_time: Optional[time] = None
    check_out_time: Optional[time] = None
    room_number: Optional[str] = None
    room_type: Optional[str] = None
    expected_nights: int = 0
    deposit_amount: Decimal = ZERO
    payment_status: str = "unpaid"
    notes: Optional[str] = None
    converted_to_booking_id: Optional[str] = None

    @property
    def record_type(self) -> str:
        return self.TYPE.value

    @property
    def subject(self) -> str:
        return self.room_id

    @property
    def index_date(self) -> date:
        return self.check_in_date

    @property
    def department(self) -> Optional[Department]:
        return None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "RoomReservation":
        check_in = _date(data, "check_in_date")
        check_out = _date(data, "check_out_date")
        if check_out <= check_in:
            raise ValidationError(
                f"Reservation check-out {check_out} must be after check-in {check_in}"
            )
        payment_status = _text(data, "payment_status", required=False) or "unpaid"
        if payment_status not in RESERVATION_PAYMENT_STATUSES:
            raise ValidationError(f"Unsupported reservation payment status: {payment_status}")
        return cls(
            reservation_code=_text(data, "reservation_code") or "",
            guest=GuestInfo.from_data(_mapping(data, "guest")),
            room_id=_text(data, "room_id") or "",
            check_in_date=check_in,
            check_out_date=check_out,
            check_in_time=_time(data, "check_in_time"),
            check_out_time=_time(data, "check_out_time"),
            room_number=_text(data, "room_number", required=False),
            room_type=_text(data, "room_type", required=False),
            expected_nights=_int(data, "expected_nights", default=(check_out - check_in).days),
            deposit_amount=_nonnegative(_decimal(data, "deposit_amount"), "deposit_amount"),
            payment_status=payment_status,
            notes=_text(data, "notes", required=False),
            converted_to_booking_id=_text(data, "converted_to_booking_id", required=False),
        )

    def to_data(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "type": self.record_type,
                "reservation_code": self.reservation_code,
                "guest": self.guest.to_data(),
                "room_id": self.room_id,
                "room_number": self.room_number,
                "room_type": self.room_type,
                "check_in_date": _iso(self.check_in_date),
                "check_out_date": _iso(self.check_out_date),
                "check_in_time": _hhmm(self.check_in_time),
                "check_out_time": _hhmm(self.check_out_time),
                "expected_nights": self.expected_nights,
                "deposit_amount": _money(self.deposit_amount),
                "payment_status": self.payment_status,
                "notes": self.notes,
                "converted_to_booking_id": self.converted_to_booking_id,
            }
        )


@dataclass(frozen=True)
class FolioAdjustment:
    """Payment, penalty, discount or refund posted against a stay."""

    record_type: str
    booking_id: str
    amount: Decimal
    reason: Optional[str] = None
    payment_method: Optional[str] = None

    @property
    def subject(self) -> str:
        return self.booking_id

    @property
    def index_date(self) -> Optional[date]:
        return None

    @property
    def department(self) -> Optional[Department]:
        return None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "FolioAdjustment":
        return cls(
            record_type=str(data["type"]),
            booking_id=_text(data, "booking_id") or "",
            amount=_nonnegative(_decimal(data, "amount", default=None), "amount"),
            reason=_text(data, "reason", required=False),
            payment_method=_text(data, "payment_method", required=False),
        )

    def to_data(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "type": self.record_type,
                "booking_id": self.booking_id,
                "amount": _money(self.amount),
                "reason": self.reason,
                "payment_method": self.payment_method,
            }
        )


@dataclass(frozen=True)
class StayExtension:
    TYPE: ClassVar[RecordType] = RecordType.STAY_EXTENSION

    booking_id: str
    nights_added: int
    new_check_out: date
    additional_cost: Decimal

    @property
    def record_type(self) -> str:
        return self.TYPE.value

    @property
    def subject(self) -> str:
        return self.booking_id

    @property
    def index_date(self) -> date:
        return self.new_check_out

    @property
    def department(self) -> Optional[Department]:
        return None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "StayExtension":
        extension = _mapping(data, "extension") or data
        return cls(
            booking_id=_text(data, "booking_id") or "",
            nights_added=_int(extension, "nights_added"),
            new_check_out=_date(extension, "new_check_out"),
            additional_cost=_nonnegative(_decimal(extension, "additional_cost"), "additional_cost"),
        )

    def to_data(self) -> Dict[str, Any]:
        return {
            "type": self.record_type,
            "booking_id": self.booking_id,
            "extension": {
                "nights_added": self.nights_added,
                "new_check_out": _iso(self.new_check_out),
                "additional_cost": _money(self.additional_cost),
            },
        }


@dataclass(frozen=True)
class CheckoutRecord:
    TYPE: ClassVar[RecordType] = RecordType.CHECKOUT_RECORD

    booking_id: str
    checkout_date: date
    final_payment: Decimal = ZERO

    @property
    def record_type(self) -> str:
        return self.TYPE.value

    @property
    def subject(self) -> str:
        return self.booking_id

    @property
    def index_date(self) -> date:
        return self.checkout_date

    @property
    def department(self) -> Optional[Department]:
        return None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "CheckoutRecord":
        checkout = _mapping(data, "checkout") or data
        return cls(
            booking_id=_text(data, "booking_id") or "",
            checkout_date=_date(checkout, "checkout_date"),
            final_payment=_nonnegative(_decimal(checkout, "final_payment"), "final_payment"),
        )

    def to_data(self) -> Dict[str, Any]:
        return {
            "type": self.record_type,
            "booking_id": self.booking_id,
            "checkout": {
                "checkout_date": _iso(self.checkout_date),
                "final_payment": _money(self.final_payment),
            },
        }


@dataclass(frozen=True)
class InterruptedStay:
    TYPE: ClassVar[RecordType] = RecordType.INTERRUPTED_STAY

    booking_id: str
    room_id: str
    interrupted_on: date
    reason: str
    credit_amount: Decimal = ZERO

    @property
    def record_type(self) -> str:
        return self.TYPE.value

    @property
    def subject(self) -> str:
        return self.room_id

    @property
    def index_date(self) -> date:
        return self.interrupted_on

    @property
    def department(self) -> Optional[Department]:
        return None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "InterruptedStay":
        return cls(
            booking_id=_text(data, "booking_id") or "",
            room_id=_text(data, "room_id") or "",
            interrupted_on=_date(data, "interrupted_on"),
            reason=_text(data, "reason") or "",
            credit_amount=_nonnegative(_decimal(data, "credit_amount"), "credit_amount"),
        )

    def to_data(self) -> Dict[str, Any]:
        return {
            "type": self.record_type,
            "booking_id": self.booking_id,
            "room_id": self.room_id,
            "interrupted_on": _iso(self.interrupted_on),
            "reason": self.reason,
            "credit_amount": _money(self.credit_amount),
        }


@dataclass(frozen=True)
class OperationalNote:
    TYPE: ClassVar[RecordType] = RecordType.OPERATIONAL_NOTE

    note: str
    note_date: Optional[date] = None

    @property
    def record_type(self) -> str:
        return self.TYPE.value

    @property
    def subject(self) -> Optional[str]:
        return None

    @property
    def index_date(self) -> Optional[date]:
        return self.note_date

    @property
    def department(self) -> Optional[Department]:
        return None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "OperationalNote":
        return cls(note=_text(data, "note") or "", note_date=_date(data, "date", required=False))

    def to_data(self) -> Dict[str, Any]:
        return _drop_none({"type": self.record_type, "note": self.note, "date": _iso(self.note_date)})


# ---------------------------------------------------------------------------
# Inventory configuration payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigCategory:
    TYPE: ClassVar[RecordType] = RecordType.CONFIG_CATEGORY

    name: str
    description: Optional[str] = None

    @property
    def record_type(self) -> str:
        return self.TYPE.value

    @property
    def subject(self) -> str:
        return self.name

    @property
    def index_date(self) -> Optional[date]:
        return None

    @property
    def department(self) -> Optional[Department]:
        return None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "ConfigCategory":
        return cls(name=_text(data, "name") or "", description=_text(data, "description", required=False))

    def to_data(self) -> Dict[str, Any]:
        return _drop_none({"type": self.record_type, "name": self.name, "description": self.description})


@dataclass(frozen=True)
class ConfigCollection:
    TYPE: ClassVar[RecordType] = RecordType.CONFIG_COLLECTION

    name: str
    category: str

    @property
    def record_type(self) -> str:
        return self.TYPE.value

    @property
    def subject(self) -> str:
        return self.name

    @property
    def index_date(self) -> Optional[date]:
        return None

    @property
    def department(self) -> Optional[Department]:
        return None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "ConfigCollection":
        return cls(name=_text(data, "name") or "", category=_text(data, "category") or "")

    def to_data(self) -> Dict[str, Any]:
        return {"type": self.record_type, "name": self.name, "category": self.category}


@dataclass(frozen=True)
class ConfigItem:
    """Catalogue entry for a stock item, unique by name."""

    TYPE: ClassVar[RecordType] = RecordType.CONFIG_ITEM

    name: str
    category: str
    collection: Optional[str] = None
    unit: str = "unit"
    unit_price: Decimal = ZERO
    active: bool = True

    @property
    def record_type(self) -> str:
        return self.TYPE.value

    @property
    def subject(self) -> str:
        return self.name

    @property
    def index_date(self) -> Optional[date]:
        return None

    @property
    def department(self) -> Optional[Department]:
        return None

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "ConfigItem":
        return cls(
            name=_text(data, "name", aliases=("item_name",)) or "",
            category=_text(data, "category") or "",
            collection=_text(data, "collection", required=False, aliases=("collection_name",)),
            unit=_text(data, "unit", required=False) or "unit",
            unit_price=_nonnegative(_decimal(data, "unit_price"), "unit_price"),
            active=_flag(data, "active", default=True),
        )

    def to_data(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "type": self.record_type,
                "name": self.name,
                "category": self.category,
                "collection": self.collection,
                "unit": self.unit,
                "unit_price": _money(self.unit_price),
                "active": self.active,
            }
        )


@dataclass(frozen=True)
class StockMovement:
    """A single quantity moving into or out of a department's stock."""

    movement_type: MovementType
    item: str
    department: Department
    event_date: date
    quantity_in: Decimal = ZERO
    quantity_out: Decimal = ZERO
    unit_price: Decimal = ZERO
    total_value: Decimal = ZERO
    staff_name: Optional[str] = None
    notes: Optional[str] = None

    @property
    def record_type(self) -> str:
        return self.movement_type.value

    @property
    def subject(self) -> str:
        return self.item

    @property
    def index_date(self) -> date:
        return self.event_date

    @property
    def is_incoming(self) -> bool:
        if self.movement_type is MovementType.ADJUSTMENT:
            return self.quantity_in > ZERO
        return self.movement_type in INCOMING_MOVEMENTS

    @property
    def delta(self) -> Decimal:
        """Signed change this movement applies to the on-hand balance."""

        return self.quantity_in if self.is_incoming else -self.quantity_out

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "StockMovement":
        movement_type = MovementType(data["type"])
        department_raw = _text(data, "department")
        try:
            department = Department(department_raw.upper())
        except ValueError as exc:
            raise ValidationError(f"Unknown department: {department_raw}") from exc

        # Older opening-stock forms send a single "quantity" field.
        legacy_quantity = _decimal(data, "quantity")
        quantity_in = _decimal(data, "quantity_in")
        quantity_out = _decimal(data, "quantity_out")
        if legacy_quantity and not quantity_in and not quantity_out:
            if movement_type in OUTGOING_MOVEMENTS:
                quantity_out = legacy_quantity
            else:
                quantity_in = legacy_quantity
        item = _text(data, "item", aliases=("item_name",)) or ""
        _nonnegative(quantity_in, f"quantity_in for '{item}'")
        _nonnegative(quantity_out, f"quantity_out for '{item}'")

        if movement_type in INCOMING_MOVEMENTS and (quantity_in <= ZERO or quantity_out != ZERO):
            raise ValidationError(f"{movement_type.value} for '{item}' needs a positive quantity_in only")
        if movement_type in OUTGOING_MOVEMENTS and (quantity_out <= ZERO or quantity_in != ZERO):
            raise ValidationError(f"{movement_type.value} for '{item}' needs a positive quantity_out only")
        if movement_type is MovementType.ADJUSTMENT and (quantity_in > ZERO) == (quantity_out > ZERO):
            raise ValidationError(f"Adjustment for '{item}' must set exactly one of quantity_in or quantity_out")

        unit_price = _nonnegative(_decimal(data, "unit_price"), "unit_price")
        if data.get("total_value") in (None, ""):
            total_value = unit_price * (quantity_in or quantity_out)
        else:
            total_value = _decimal(data, "total_value")
        return cls(
            movement_type=movement_type,
            item=item,
            department=department,
            event_date=_date(data, "event_date", aliases=("date",)),
            quantity_in=quantity_in,
            quantity_out=quantity_out,
            unit_price=unit_price,
            total_value=_nonnegative(total_value, "total_value"),
            staff_name=_text(data, "staff_name", required=False),
            notes=_text(data, "notes", required=False, aliases=("note",)),
        )

    def to_data(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "type": self.record_type,
                "item": self.item,
                "department": self.department.value,
                "event_date": _iso(self.event_date),
                "quantity_in": _money(self.quantity_in),
                "quantity_out": _money(self.quantity_out),
                "unit_price": _money(self.unit_price),
                "total_value": _money(self.total_value),
                "staff_name": self.staff_name,
                "notes": self.notes,
            }
        )


@dataclass(frozen=True)
class RawPayload:
    """Payload whose tag has no dedicated variant; stored as received."""

    record_type: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> Optional[str]:
        return None

    @property
    def index_date(self) -> Optional[date]:
        return None

    @property
    def department(self) -> Optional[Department]:
        return None

    def to_data(self) -> Dict[str, Any]:
        return {**self.fields, "type": self.record_type}


Payload = Union[
    RoomBooking,
    RoomReservation,
    FolioAdjustment,
    StayExtension,
    CheckoutRecord,
    InterruptedStay,
    OperationalNote,
    ConfigCategory,
    ConfigCollection,
    ConfigItem,
    StockMovement,
    RawPayload,
]


_PARSERS: Dict[str, Callable[[Mapping[str, Any]], Payload]] = {
    RecordType.ROOM_BOOKING.value: RoomBooking.from_data,
    RecordType.ROOM_RESERVATION.value: RoomReservation.from_data,
    RecordType.STAY_EXTENSION.value: StayExtension.from_data,
    RecordType.CHECKOUT_RECORD.value: CheckoutRecord.from_data,
    RecordType.INTERRUPTED_STAY.value: InterruptedStay.from_data,
    RecordType.OPERATIONAL_NOTE.value: OperationalNote.from_data,
    RecordType.CONFIG_CATEGORY.value: ConfigCategory.from_data,
    RecordType.CONFIG_COLLECTION.value: ConfigCollection.from_data,
    RecordType.CONFIG_ITEM.value: ConfigItem.from_data,
}
_PARSERS.update({kind.value: FolioAdjustment.from_data for kind in FOLIO_ADJUSTMENT_TYPES})
_PARSERS.update({kind.value: StockMovement.from_data for kind in MovementType})


def parse_payload(data: Mapping[str, Any]) -> Payload:
    """Convert a stored or submitted JSON document into its typed variant.

    Args:
        data (Mapping[str, Any]): Document carrying a ``type`` discriminant.

    Returns:
        Payload: Frozen dataclass matching the tag, or :class:`RawPayload`
            when the tag has no dedicated variant.

    Raises:
        ValidationError: If the tag is missing or a known variant is missing
            required fields or carries malformed values.
    """

    if not isinstance(data, Mapping):
        raise ValidationError("Record data must be an object")
    tag = data.get("type")
    if not tag:
        raise ValidationError("Record data is missing its 'type' tag")
    parser = _PARSERS.get(str(tag))
    if parser is None:
        return RawPayload(record_type=str(tag), fields={k: v for k, v in data.items() if k != "type"})
    return parser(data)


def serialize_payload(payload: Payload) -> Dict[str, Any]:
    """Return the JSON-safe document for ``payload``."""

    return payload.to_data()


def is_stock_movement(record_type: str) -> bool:
    return record_type in {kind.value for kind in MovementType}


__all__ = [
    "Payload",
    "GuestInfo",
    "StayInfo",
    "Pricing",
    "PaymentInfo",
    "RoomBooking",
    "RoomReservation",
    "FolioAdjustment",
    "StayExtension",
    "CheckoutRecord",
    "InterruptedStay",
    "OperationalNote",
    "ConfigCategory",
    "ConfigCollection",
    "ConfigItem",
    "StockMovement",
    "RawPayload",
    "parse_payload",
    "serialize_payload",
    "is_stock_movement",
]
