"""Business logic layer for the hotel ledger.

This module holds the approval state machine and every write the system
accepts. It consumes :mod:`hotel_ledger.data_manager` for all I/O and the
derived-read modules (:mod:`hotel_ledger.reconciliation` and
:mod:`hotel_ledger.booking`) for the stock and room checks that gate a write.

Each write runs inside a single store transaction. Validation happens before
the first row is touched, and any conditional ``UPDATE`` that loses a race
rolls the whole transaction back, so a failed operation never leaves a
partial batch behind.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from . import booking, data_manager, log, reconciliation
from .constants import (
    APPROVER_ROLES,
    AUTO_APPROVE_ROLES,
    CONFIG_RECORD_TYPES,
    ENTITY_ADMIN_ROLES,
    ENTITY_DEPARTMENTS,
    EXPECTED_SCHEMA_VERSION,
    EntityType,
    MovementType,
    RecordStatus,
    RecordType,
    Role,
)
from .data_manager import ConfigSettings, RecordRow, StoreHandle
from .errors import (
    AuthorizationError,
    DependencyError,
    MissingRecordError,
    SessionExpiredError,
    StateConflictError,
    TransientStoreError,
    ValidationError,
)
from .payloads import (
    ConfigCollection,
    ConfigItem,
    Payload,
    RoomBooking,
    RoomReservation,
    StayInfo,
    StockMovement,
    is_stock_movement,
    parse_payload,
    serialize_payload,
)


T = TypeVar("T")

CONFIG_TYPE_VALUES = frozenset(kind.value for kind in CONFIG_RECORD_TYPES)
# Records whose financial_amount is revenue and therefore never negative.
REVENUE_RECORD_TYPES = frozenset(
    {
        RecordType.ROOM_BOOKING.value,
        RecordType.ROOM_RESERVATION.value,
        RecordType.STAY_EXTENSION.value,
        RecordType.PENALTY_FEE.value,
        RecordType.PAYMENT_RECORD.value,
    }
)
CONVERT_ROLES = frozenset({Role.FRONT_DESK, *APPROVER_ROLES})
LIVE_STATUSES = (RecordStatus.PENDING, RecordStatus.APPROVED)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller: who is acting, and in which role."""

    user_id: str
    role: Role


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the store handle used by the BLL."""

    settings: ConfigSettings
    store: StoreHandle
    credential_validator: Optional[Callable[[Actor], bool]] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class SubmitCommand:
    """User intent for appending a new record (and optional companions).

    ``companions`` are submitted in the same batch as ``data`` and share its
    approval fate, e.g. the ``opening_stock`` that accompanies a new
    ``config_item``.
    """

    entity_type: EntityType
    data: Union[Mapping[str, Any], Payload]
    actor: Actor
    financial_amount: Decimal = Decimal("0")
    companions: Tuple[Union[Mapping[str, Any], Payload], ...] = ()
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class EditCommand:
    """User intent for superseding a record with a corrected version."""

    previous_id: str
    patch: Mapping[str, Any]
    actor: Actor
    financial_amount: Optional[Decimal] = None
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when omitted, the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    credential_validator: Optional[Callable[[Actor], bool]] = None,
) -> RuntimeContext:
    """Load configuration settings and open the record store.

    The helper resolves ``config.ini``, parses its settings, creates the
    SQLAlchemy engine exactly once, and verifies the ledger table exists. The
    resulting :class:`RuntimeContext` must be released with
    :func:`close_runtime_context`.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        credential_validator (Callable[[Actor], bool] | None): Hook consulted
            before each write retry; returning ``False`` means the caller's
            session has expired.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        RuntimeError: If the store has not been initialized.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.open_store(settings.database_url)
    try:
        data_manager.verify_schema(store)
    except RuntimeError:
        data_manager.close_store(store)
        raise
    log.info("Loaded runtime context for '%s'", settings.hotel_name)
    return RuntimeContext(settings=settings, store=store, credential_validator=credential_validator)


def close_runtime_context(context: RuntimeContext) -> None:
    """Dispose of the engine held by ``context``."""

    data_manager.close_store(context.store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Ledger schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Ledger schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )
    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def require_role(actor: Actor, allowed: Iterable[Role], action: str) -> None:
    """Raise :class:`AuthorizationError` unless ``actor.role`` is in ``allowed``."""

    if actor.role not in frozenset(allowed):
        log.warning("User '%s' (%s) is not allowed to %s", actor.user_id, actor.role.value, action)
        raise AuthorizationError(f"Role '{actor.role.value}' is not allowed to {action}")


def require_nonnegative_money(amount: Decimal, *, label: str = "Amount") -> None:
    """Validate that a monetary value is zero or positive.

    Raises:
        ValidationError: If ``amount`` is negative.
    """

    if amount < Decimal("0"):
        log.warning("Monetary value validation failed for %s: %s", label, amount)
        raise ValidationError(f"{label} must be zero or positive, got {amount}")


def require_reason(reason: Optional[str]) -> str:
    """Return the stripped rejection reason, refusing blank input."""

    if reason is None or not reason.strip():
        log.warning("Rejected a review without a reason")
        raise ValidationError("A rejection reason is required")
    return reason.strip()


def determine_initial_status(actor: Actor, payload: Payload, *, today: date) -> RecordStatus:
    """Decide whether a new record starts ``approved`` or ``pending``.

    Managers and admins are trusted outright. A reservation whose check-in is
    the day it is submitted (a walk-in) is approved immediately so the room is
    held at once. Supervisors are trusted for stock movements they record
    themselves. Everything else waits for review.
    """

    if actor.role in AUTO_APPROVE_ROLES:
        return RecordStatus.APPROVED
    if isinstance(payload, RoomReservation) and payload.check_in_date == today:
        return RecordStatus.APPROVED
    if isinstance(payload, StockMovement) and actor.role is Role.SUPERVISOR:
        return RecordStatus.APPROVED
    return RecordStatus.PENDING


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


def validate_credentials(context: RuntimeContext, actor: Actor) -> bool:
    """Ask the configured validator whether ``actor`` still holds a session."""

    if context.credential_validator is None:
        return True
    return bool(context.credential_validator(actor))


def run_with_retry(context: RuntimeContext, actor: Actor, operation: Callable[[], T], *, description: str) -> T:
    """Run a write, retrying transient store failures with linear backoff.

    Before every retry the caller's credential is re-validated. Validation,
    authorization and state-conflict errors propagate on the first attempt.

    Args:
        context (RuntimeContext): Supplies the retry policy and validator.
        actor (Actor): Caller whose credential is re-checked.
        operation (Callable[[], T]): Idempotent unit of work.
        description (str): Human-readable label used in log lines.

    Returns:
        T: Whatever ``operation`` returns.

    Raises:
        SessionExpiredError: If the credential no longer validates.
        TransientStoreError: If every attempt failed.
    """

    attempts = context.settings.retry_attempts
    for attempt in range(1, attempts):
        try:
            return operation()
        except SessionExpiredError:
            raise
        except TransientStoreError as exc:
            delay = context.settings.retry_backoff_seconds * attempt
            log.warning(
                "%s failed on attempt %d/%d (%s); retrying in %.1fs",
                description,
                attempt,
                attempts,
                exc,
                delay,
            )
            time.sleep(delay)
            if not validate_credentials(context, actor):
                log.warning("Session for '%s' expired while %s", actor.user_id, description)
                raise SessionExpiredError(
                    f"Session for '{actor.user_id}' expired while {description}; sign in again"
                ) from exc
    try:
        return operation()
    except TransientStoreError:
        log.error("%s failed after %d attempt(s)", description, attempts)
        raise


def _write(context: RuntimeContext, actor: Actor, description: str, work: Callable[[Session], T]) -> T:
    """Run ``work`` in one transaction under the retry policy."""

    def attempt() -> T:
        try:
            with data_manager.transaction(context.store) as session:
                return work(session)
        except IntegrityError as exc:
            log.warning("Write conflict while %s: %s", description, exc.orig)
            raise StateConflictError(
                f"Another change landed first while {description}; refresh and retry"
            ) from exc
        except OperationalError as exc:
            raise TransientStoreError(f"Record store unavailable while {description}: {exc.orig}") from exc

    return run_with_retry(context, actor, attempt, description=description)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _coerce_entity_type(value: Union[EntityType, str]) -> EntityType:
    try:
        return value if isinstance(value, EntityType) else EntityType(str(value))
    except ValueError as exc:
        raise ValidationError(f"Unknown entity type: {value}") from exc


def _coerce_payload(data: Union[Mapping[str, Any], Payload], entity_type: EntityType) -> Payload:
    """Parse submitted data, defaulting a movement's department from its entity."""

    if not isinstance(data, Mapping):
        return data
    document = dict(data)
    if is_stock_movement(str(document.get("type", ""))) and not document.get("department"):
        department = ENTITY_DEPARTMENTS.get(entity_type)
        if department is not None:
            document["department"] = department.value
    return parse_payload(document)


def _prevalidate(payload: Payload) -> None:
    """Store-independent rules checked before any transaction opens."""

    if isinstance(payload, RoomBooking):
        booking.validate_room_booking(payload)


def _guard_amount(payload: Payload, amount: Decimal) -> None:
    if payload.record_type in REVENUE_RECORD_TYPES:
        require_nonnegative_money(amount, label=f"financial_amount for {payload.record_type}")


def _require_record(session: Session, record_id: str) -> RecordRow:
    record = data_manager.get_record(session, record_id)
    if record is None or record.is_deleted:
        log.warning("Referenced record '%s' not found", record_id)
        raise MissingRecordError(f"Record '{record_id}' not found")
    return record


def _same_stock_key(first: StockMovement, second: StockMovement) -> bool:
    return (
        first.item.lower() == second.item.lower()
        and first.department is second.department
        and first.event_date == second.event_date
    )


def _batch_quantities(movement: StockMovement, batch: Sequence[Payload], position: int) -> Tuple[Decimal, Decimal]:
    """Same-day restocks in the batch, and outgoing quantities listed earlier in it."""

    incoming = outgoing = Decimal("0")
    for index, other in enumerate(batch):
        if index == position or not isinstance(other, StockMovement) or not _same_stock_key(movement, other):
            continue
        if other.is_incoming:
            incoming += other.quantity_in
        elif index < position:
            outgoing += other.quantity_out
    return incoming, outgoing


def _require_known_item(session: Session, movement: StockMovement, batch: Sequence[Payload]) -> None:
    for other in batch:
        if isinstance(other, ConfigItem) and other.name.lower() == movement.item.lower():
            return
    if not data_manager.canonical_records(session, [RecordType.CONFIG_ITEM.value], subject=movement.item):
        log.warning("Movement references unknown item '%s'", movement.item)
        raise ValidationError(f"Item '{movement.item}' is not an approved catalogue item")


def _require_unique_name(session: Session, payload: Payload, exclude_chain_ids: Iterable[str]) -> None:
    excluded = set(exclude_chain_ids)
    live = data_manager.live_records(session, payload.record_type, subject=payload.subject, statuses=LIVE_STATUSES)
    canonical = data_manager.canonical_records(session, [payload.record_type], subject=payload.subject)
    clashes = [row for row in [*live, *canonical] if row.chain_id not in excluded]
    if clashes:
        label = payload.record_type.replace("config_", "")
        log.warning("Duplicate %s name '%s' (existing record %s)", label, payload.subject, clashes[0].id)
        raise ValidationError(f"A {label} named '{payload.subject}' already exists")


def _check_against_store(
    context: RuntimeContext,
    session: Session,
    payload: Payload,
    *,
    batch: Sequence[Payload],
    position: int,
    exclude_ids: Iterable[str] = (),
    exclude_chain_ids: Iterable[str] = (),
) -> None:
    """Rules that need a consistent ledger snapshot: rooms, stock and names."""

    if isinstance(payload, (RoomBooking, RoomReservation)):
        booking.ensure_room_available(
            session,
            context.settings,
            booking.window_for(payload),
            exclude_ids=exclude_ids,
            exclude_chain_ids=exclude_chain_ids,
        )
    elif isinstance(payload, StockMovement):
        _require_known_item(session, payload, batch)
        incoming, outgoing = _batch_quantities(payload, batch, position)
        reconciliation.validate_outgoing_movement(
            session,
            payload,
            exclude_chain_ids=exclude_chain_ids,
            pending_incoming=incoming,
            pending_outgoing=outgoing,
        )
    elif payload.record_type in CONFIG_TYPE_VALUES:
        _require_unique_name(session, payload, exclude_chain_ids)


def _new_row(
    payload: Payload,
    *,
    entity_type: EntityType,
    status: RecordStatus,
    actor: Actor,
    created_at: datetime,
    batch_id: str,
    financial_amount: Decimal,
    original_id: Optional[str] = None,
    chain_id: Optional[str] = None,
    version_no: int = 1,
) -> RecordRow:
    record_id = str(uuid.uuid4())
    approved = status is RecordStatus.APPROVED
    return RecordRow(
        id=record_id,
        original_id=original_id,
        chain_id=chain_id or record_id,
        version_no=version_no,
        batch_id=batch_id,
        entity_type=entity_type.value,
        record_type=payload.record_type,
        subject=payload.subject,
        department=payload.department.value if payload.department is not None else None,
        event_date=payload.index_date,
        data=serialize_payload(payload),
        status=status.value,
        financial_amount=financial_amount,
        submitted_by=actor.user_id,
        created_at=created_at,
        reviewed_by=actor.user_id if approved else None,
        reviewed_at=created_at if approved else None,
    )


def merge_data(base: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``patch`` over ``base``; nested objects merge key by key."""

    merged = dict(base)
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_data(current, value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def submit_record(context: RuntimeContext, command: SubmitCommand) -> RecordRow:
    """Validate and append a new record, plus any companions, as one batch.

    The payload is parsed and checked before the store is touched: required
    fields, booking arithmetic and money guards. Inside the transaction the
    room-conflict, stock-availability and unique-name rules run against a
    consistent snapshot. The initial status follows
    :func:`determine_initial_status` and applies to every member of the batch.

    Companions of a different type than the primary record join its chain
    (``original_id`` points at the primary); companions of the same type start
    their own chain.

    Args:
        context (RuntimeContext): Runtime context providing the store handle.
        command (SubmitCommand): Structured intent describing the submission.

    Returns:
        RecordRow: The primary record as written.

    Raises:
        ValidationError: On malformed data or a failed business rule.
        InsufficientStockError: If an outgoing movement exceeds stock.
        BookingConflictError: If the room is already held.
        SessionExpiredError: If the caller's session expired during retries.
        TransientStoreError: If the store stayed unavailable.
    """

    entity_type = _coerce_entity_type(command.entity_type)
    payload = _coerce_payload(command.data, entity_type)
    companions = [_coerce_payload(companion, entity_type) for companion in command.companions]
    batch: List[Payload] = [payload, *companions]
    for candidate in batch:
        _prevalidate(candidate)
    _guard_amount(payload, command.financial_amount)

    timestamp = _resolve_timestamp(command.timestamp)
    status = determine_initial_status(command.actor, payload, today=timestamp.date())

    def work(session: Session) -> RecordRow:
        for position, candidate in enumerate(batch):
            _check_against_store(context, session, candidate, batch=batch, position=position)
        batch_id = str(uuid.uuid4())
        primary = _new_row(
            payload,
            entity_type=entity_type,
            status=status,
            actor=command.actor,
            created_at=timestamp,
            batch_id=batch_id,
            financial_amount=command.financial_amount,
        )
        data_manager.append_record(session, primary)
        linked_types = {primary.record_type}
        for companion in companions:
            linked = companion.record_type not in linked_types
            linked_types.add(companion.record_type)
            data_manager.append_record(
                session,
                _new_row(
                    companion,
                    entity_type=entity_type,
                    status=status,
                    actor=command.actor,
                    created_at=timestamp,
                    batch_id=batch_id,
                    financial_amount=Decimal("0"),
                    original_id=primary.id if linked else None,
                    chain_id=primary.id if linked else None,
                ),
            )
        return primary

    record = _write(context, command.actor, f"submitting {payload.record_type}", work)
    log.info(
        "Submitted %s record '%s' for %s (subject=%s, status=%s, companions=%d)",
        record.record_type,
        record.id,
        record.entity_type,
        record.subject,
        record.status,
        len(companions),
    )
    return record


def approve_record(
    context: RuntimeContext,
    record_id: str,
    actor: Actor,
    *,
    timestamp: Optional[datetime] = None,
) -> List[RecordRow]:
    """Approve a pending record together with every pending member of its batch.

    Stock and room rules are re-checked against the ledger as it stands now,
    because the world may have moved since the record was submitted. The
    transition is a conditional update; if any member is no longer pending the
    whole batch is rolled back.

    Args:
        context (RuntimeContext): Runtime context providing the store handle.
        record_id (str): Any member of the batch to approve.
        actor (Actor): Reviewer; must hold an approver role.
        timestamp (datetime | None): Review time, defaults to now.

    Returns:
        list[RecordRow]: The approved batch members.

    Raises:
        AuthorizationError: If the actor may not approve.
        MissingRecordError: If the record does not exist.
        StateConflictError: If the record (or a batch member) is not pending.
        InsufficientStockError: If approving would overdraw stock.
        BookingConflictError: If the room has since been taken.
    """

    require_role(actor, APPROVER_ROLES, "approve records")
    reviewed_at = _resolve_timestamp(timestamp)

    def work(session: Session) -> List[RecordRow]:
        record = _require_record(session, record_id)
        if record.status != RecordStatus.PENDING.value:
            log.warning("Cannot approve record '%s' in status '%s'", record_id, record.status)
            raise StateConflictError(f"Record '{record_id}' is {record.status}; only pending records can be approved")
        members = data_manager.batch_records(session, record.batch_id, statuses=[RecordStatus.PENDING])
        payloads = [parse_payload(member.data) for member in members]
        for position, (member, payload) in enumerate(zip(members, payloads)):
            _check_against_store(
                context,
                session,
                payload,
                batch=payloads,
                position=position,
                exclude_ids=[member.id],
                exclude_chain_ids=[member.chain_id],
            )
        ids = [member.id for member in members]
        updated = data_manager.transition_status(
            session,
            ids,
            from_statuses=[RecordStatus.PENDING],
            to_status=RecordStatus.APPROVED,
            reviewed_by=actor.user_id,
            reviewed_at=reviewed_at,
        )
        if updated != len(ids):
            log.warning("Approval of batch '%s' matched %d of %d records", record.batch_id, updated, len(ids))
            raise StateConflictError(f"Batch of record '{record_id}' changed during approval; refresh and retry")
        return [
            replace(member, status=RecordStatus.APPROVED.value, reviewed_by=actor.user_id, reviewed_at=reviewed_at)
            for member in members
        ]

    approved = _write(context, actor, f"approving record {record_id}", work)
    log.info("Approved %d record(s) in batch of '%s' by '%s'", len(approved), record_id, actor.user_id)
    return approved


def reject_record(
    context: RuntimeContext,
    record_id: str,
    actor: Actor,
    reason: Optional[str],
    *,
    timestamp: Optional[datetime] = None,
) -> List[RecordRow]:
    """Reject a pending record and its batch, storing the reviewer's reason.

    Raises:
        ValidationError: If ``reason`` is blank (checked before any store access).
        AuthorizationError: If the actor may not review.
        StateConflictError: If the record is not pending.
    """

    cleaned = require_reason(reason)
    require_role(actor, APPROVER_ROLES, "reject records")
    reviewed_at = _resolve_timestamp(timestamp)

    def work(session: Session) -> List[RecordRow]:
        record = _require_record(session, record_id)
        if record.status != RecordStatus.PENDING.value:
            log.warning("Cannot reject record '%s' in status '%s'", record_id, record.status)
            raise StateConflictError(f"Record '{record_id}' is {record.status}; only pending records can be rejected")
        members = data_manager.batch_records(session, record.batch_id, statuses=[RecordStatus.PENDING])
        ids = [member.id for member in members]
        updated = data_manager.transition_status(
            session,
            ids,
            from_statuses=[RecordStatus.PENDING],
            to_status=RecordStatus.REJECTED,
            reviewed_by=actor.user_id,
            reviewed_at=reviewed_at,
            rejection_reason=cleaned,
        )
        if updated != len(ids):
            raise StateConflictError(f"Batch of record '{record_id}' changed during rejection; refresh and retry")
        return [
            replace(
                member,
                status=RecordStatus.REJECTED.value,
                reviewed_by=actor.user_id,
                reviewed_at=reviewed_at,
                rejection_reason=cleaned,
            )
            for member in members
        ]

    rejected = _write(context, actor, f"rejecting record {record_id}", work)
    log.info("Rejected %d record(s) in batch of '%s' by '%s': %s", len(rejected), record_id, actor.user_id, cleaned)
    return rejected


def soft_delete_record(
    context: RuntimeContext,
    record_id: str,
    actor: Actor,
    *,
    timestamp: Optional[datetime] = None,
) -> int:
    """Withdraw a pending or rejected record (and its batch) from every view.

    Only the submitter or a reviewer may withdraw a record. Approved records
    are history; retiring an approved configuration entity goes through
    :func:`delete_approved_entity` instead.

    Returns:
        int: Number of rows marked deleted.

    Raises:
        StateConflictError: If the record is approved or otherwise terminal.
        AuthorizationError: If the actor neither submitted nor reviews it.
    """

    when = _resolve_timestamp(timestamp)
    deletable = (RecordStatus.PENDING, RecordStatus.REJECTED)

    def work(session: Session) -> int:
        record = _require_record(session, record_id)
        if record.status not in {status.value for status in deletable}:
            log.warning("Refused soft delete of %s record '%s'", record.status, record_id)
            raise StateConflictError(
                f"Record '{record_id}' is {record.status}; only pending or rejected records can be deleted"
                " (approved configuration entities are retired with delete_approved_entity)"
            )
        if actor.user_id != record.submitted_by and actor.role not in APPROVER_ROLES:
            log.warning("User '%s' tried to delete record '%s' submitted by '%s'", actor.user_id, record_id, record.submitted_by)
            raise AuthorizationError(f"Only the submitter or a reviewer may delete record '{record_id}'")
        members = data_manager.batch_records(session, record.batch_id, statuses=deletable)
        ids = [member.id for member in members]
        deleted = data_manager.soft_delete(session, ids, when=when, statuses=deletable)
        if deleted != len(ids):
            raise StateConflictError(f"Batch of record '{record_id}' changed during deletion; refresh and retry")
        return deleted

    deleted = _write(context, actor, f"deleting record {record_id}", work)
    log.info("Soft-deleted %d record(s) in batch of '%s' by '%s'", deleted, record_id, actor.user_id)
    return deleted


def _live_dependants(session: Session, record_type: str, name: str) -> List[RecordRow]:
    """Records that still reference a category, collection or item.

    Categories are held by collections and items, collections by items, and
    items by approved or pending stock movements.
    """

    wanted = name.strip().lower()
    dependants: List[RecordRow] = []
    if record_type == RecordType.CONFIG_CATEGORY.value:
        for row in data_manager.live_records(session, RecordType.CONFIG_COLLECTION.value, statuses=LIVE_STATUSES):
            collection: ConfigCollection = parse_payload(row.data)
            if collection.category.lower() == wanted:
                dependants.append(row)
        for row in data_manager.live_records(session, RecordType.CONFIG_ITEM.value, statuses=LIVE_STATUSES):
            item: ConfigItem = parse_payload(row.data)
            if item.category.lower() == wanted:
                dependants.append(row)
    elif record_type == RecordType.CONFIG_COLLECTION.value:
        for row in data_manager.live_records(session, RecordType.CONFIG_ITEM.value, statuses=LIVE_STATUSES):
            item = parse_payload(row.data)
            if item.collection is not None and item.collection.lower() == wanted:
                dependants.append(row)
    elif record_type == RecordType.CONFIG_ITEM.value:
        movement_types = [kind.value for kind in MovementType]
        dependants.extend(data_manager.canonical_records(session, movement_types, subject=name))
        seen = {row.id for row in dependants}
        for kind in movement_types:
            for row in data_manager.live_records(session, kind, subject=name, statuses=[RecordStatus.PENDING]):
                if row.id not in seen:
                    dependants.append(row)
    return dependants


def delete_approved_entity(
    context: RuntimeContext,
    record_id: str,
    actor: Actor,
    *,
    timestamp: Optional[datetime] = None,
) -> int:
    """Retire an approved category, collection or item by soft-deleting its chain.

    Deletion is refused while live collections, items or stock movements still
    reference the entity, so the catalogue never holds orphans.

    Returns:
        int: Number of versions marked deleted.

    Raises:
        AuthorizationError: If the actor is not a manager or admin.
        ValidationError: If the record is not a configuration entity.
        StateConflictError: If the record is not approved.
        DependencyError: If live dependants still reference it.
    """

    require_role(actor, ENTITY_ADMIN_ROLES, "delete approved entities")
    when = _resolve_timestamp(timestamp)

    def work(session: Session) -> int:
        record = _require_record(session, record_id)
        if record.record_type not in CONFIG_TYPE_VALUES:
            raise ValidationError(f"Record '{record_id}' is a {record.record_type}, not a configuration entity")
        if record.status != RecordStatus.APPROVED.value:
            raise StateConflictError(f"Record '{record_id}' is {record.status}; only approved entities can be retired")
        versions = data_manager.chain_records(session, record.chain_id, record_type=record.record_type)
        approved = [row for row in versions if row.status == RecordStatus.APPROVED.value and not row.is_deleted]
        name = approved[-1].subject or ""
        dependants = _live_dependants(session, record.record_type, name)
        if dependants:
            label = record.record_type.replace("config_", "")
            log.warning("Refused deletion of %s '%s': %d live dependant(s)", label, name, len(dependants))
            raise DependencyError(
                f"Cannot delete {label} '{name}': {len(dependants)} live record(s) still reference it "
                f"(e.g. {dependants[0].record_type} '{dependants[0].subject}')"
            )
        return data_manager.soft_delete(session, [row.id for row in versions if not row.is_deleted], when=when)

    deleted = _write(context, actor, f"deleting entity {record_id}", work)
    log.info("Retired configuration entity '%s' (%d version(s)) by '%s'", record_id, deleted, actor.user_id)
    return deleted


def edit_record(context: RuntimeContext, command: EditCommand) -> RecordRow:
    """Supersede a record with a corrected version in the same chain.

    ``previous_id`` must be the live head of its chain; editing anything older
    means another edit won the race. The patch is deep-merged over the previous
    data and re-validated exactly like a fresh submission, with the chain
    itself excluded from stock and room checks. A superseded pending version
    is soft-deleted in the same transaction, while a superseded approved
    version stays canonical until the correction is approved.

    Args:
        context (RuntimeContext): Runtime context providing the store handle.
        command (EditCommand): Previous version id, patch and editor.

    Returns:
        RecordRow: The new version.

    Raises:
        ValidationError: If the patch changes the record type or fails a rule.
        StateConflictError: If ``previous_id`` is not the live head or is in a
            terminal state, or another editor claimed the version number.
    """

    timestamp = _resolve_timestamp(command.timestamp)

    def work(session: Session) -> RecordRow:
        previous = _require_record(session, command.previous_id)
        if previous.status not in {status.value for status in LIVE_STATUSES}:
            log.warning("Refused edit of %s record '%s'", previous.status, previous.id)
            raise StateConflictError(f"Record '{previous.id}' is {previous.status} and can no longer be edited")
        head = data_manager.latest_version(session, previous.chain_id, previous.record_type)
        if head is None or head.id != previous.id:
            log.warning("Stale edit of '%s'; chain head is '%s'", previous.id, head.id if head else None)
            raise StateConflictError(
                f"Record '{previous.id}' has been superseded by version {head.version_no if head else '?'}; refresh and retry"
            )
        if "type" in command.patch and command.patch["type"] != previous.record_type:
            raise ValidationError(f"Edits cannot change the record type of '{previous.id}'")

        payload = parse_payload(merge_data(previous.data, command.patch))
        _prevalidate(payload)
        amount = command.financial_amount if command.financial_amount is not None else previous.financial_amount
        _guard_amount(payload, amount)
        _check_against_store(
            context,
            session,
            payload,
            batch=[payload],
            position=0,
            exclude_ids=[previous.id],
            exclude_chain_ids=[previous.chain_id],
        )
        row = _new_row(
            payload,
            entity_type=EntityType(previous.entity_type),
            status=determine_initial_status(command.actor, payload, today=timestamp.date()),
            actor=command.actor,
            created_at=timestamp,
            batch_id=str(uuid.uuid4()),
            financial_amount=amount,
            original_id=previous.chain_id,
            chain_id=previous.chain_id,
            version_no=data_manager.next_version_no(session, previous.chain_id, previous.record_type),
        )
        data_manager.append_record(session, row)
        if previous.status == RecordStatus.PENDING.value:
            data_manager.soft_delete(session, [previous.id], when=timestamp, statuses=[RecordStatus.PENDING])
        return row

    record = _write(context, command.actor, f"editing record {command.previous_id}", work)
    log.info(
        "Recorded version %d of %s chain '%s' as '%s' (status=%s)",
        record.version_no,
        record.record_type,
        record.chain_id,
        record.id,
        record.status,
    )
    return record


def convert_reservation_to_stay(
    context: RuntimeContext,
    reservation_id: str,
    actor: Actor,
    *,
    timestamp: Optional[datetime] = None,
) -> RecordRow:
    """Check a reserved guest in: create the stay and close the reservation.

    Both steps share one transaction. The room is re-checked with the
    reservation's own chain excluded, the approved ``room_booking`` is
    appended carrying the deposit as its financial amount, and the reservation
    moves ``approved -> converted`` only if it is still approved.

    Returns:
        RecordRow: The new room booking.

    Raises:
        AuthorizationError: If the actor may not check guests in.
        ValidationError: If the record is not a reservation.
        StateConflictError: If the reservation is not (or no longer) approved.
        BookingConflictError: If another stay now holds the room.
    """

    require_role(actor, CONVERT_ROLES, "convert reservations")
    converted_at = _resolve_timestamp(timestamp)

    def work(session: Session) -> RecordRow:
        reservation_row = _require_record(session, reservation_id)
        if reservation_row.record_type != RecordType.ROOM_RESERVATION.value:
            raise ValidationError(f"Record '{reservation_id}' is a {reservation_row.record_type}, not a reservation")
        if reservation_row.status != RecordStatus.APPROVED.value:
            log.warning("Refused conversion of %s reservation '%s'", reservation_row.status, reservation_id)
            raise StateConflictError(
                f"Reservation '{reservation_id}' is {reservation_row.status}; only approved reservations can be converted"
            )
        reservation: RoomReservation = parse_payload(reservation_row.data)
        stay = RoomBooking(
            guest=reservation.guest,
            stay=StayInfo(
                room_id=reservation.room_id,
                check_in=reservation.check_in_date,
                check_out=reservation.check_out_date,
                check_in_time=reservation.check_in_time,
                check_out_time=reservation.check_out_time,
            ),
            meta={
                "source_reservation_id": reservation_row.id,
                "reservation_code": reservation.reservation_code,
            },
        )
        booking.ensure_room_available(
            session,
            context.settings,
            booking.window_for(stay),
            exclude_ids=[reservation_row.id],
            exclude_chain_ids=[reservation_row.chain_id],
        )
        row = _new_row(
            stay,
            entity_type=EntityType.FRONT_DESK,
            status=RecordStatus.APPROVED,
            actor=actor,
            created_at=converted_at,
            batch_id=str(uuid.uuid4()),
            financial_amount=reservation.deposit_amount,
            original_id=reservation_row.chain_id,
            chain_id=reservation_row.chain_id,
            version_no=data_manager.next_version_no(session, reservation_row.chain_id, RecordType.ROOM_BOOKING.value),
        )
        data_manager.append_record(session, row)
        updated = data_manager.transition_status(
            session,
            [reservation_row.id],
            from_statuses=[RecordStatus.APPROVED],
            to_status=RecordStatus.CONVERTED,
            reviewed_by=actor.user_id,
            reviewed_at=converted_at,
            data=serialize_payload(replace(reservation, converted_to_booking_id=row.id)),
        )
        if updated != 1:
            raise StateConflictError(f"Reservation '{reservation_id}' changed during conversion; refresh and retry")
        return row

    stay_row = _write(context, actor, f"converting reservation {reservation_id}", work)
    log.info(
        "Converted reservation '%s' into stay '%s' for room '%s' (deposit=%s)",
        reservation_id,
        stay_row.id,
        stay_row.subject,
        stay_row.financial_amount,
    )
    return stay_row


def expire_reservation(
    context: RuntimeContext,
    reservation_id: str,
    actor: Actor,
    *,
    timestamp: Optional[datetime] = None,
) -> RecordRow:
    """Mark a no-show reservation ``expired`` so it stops holding the room."""

    require_role(actor, APPROVER_ROLES, "expire reservations")
    expired_at = _resolve_timestamp(timestamp)
    sources = (RecordStatus.PENDING, RecordStatus.APPROVED)

    def work(session: Session) -> RecordRow:
        record = _require_record(session, reservation_id)
        if record.record_type != RecordType.ROOM_RESERVATION.value:
            raise ValidationError(f"Record '{reservation_id}' is a {record.record_type}, not a reservation")
        if record.status not in {status.value for status in sources}:
            raise StateConflictError(f"Reservation '{reservation_id}' is {record.status} and cannot expire")
        updated = data_manager.transition_status(
            session,
            [record.id],
            from_statuses=sources,
            to_status=RecordStatus.EXPIRED,
            reviewed_by=actor.user_id,
            reviewed_at=expired_at,
        )
        if updated != 1:
            raise StateConflictError(f"Reservation '{reservation_id}' changed while expiring; refresh and retry")
        return replace(record, status=RecordStatus.EXPIRED.value, reviewed_by=actor.user_id, reviewed_at=expired_at)

    record = _write(context, actor, f"expiring reservation {reservation_id}", work)
    log.info("Expired reservation '%s' for room '%s' by '%s'", record.id, record.subject, actor.user_id)
    return record


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_record(context: RuntimeContext, record_id: str) -> RecordRow:
    """Return a live record by id.

    Raises:
        MissingRecordError: If the id is unknown or soft-deleted.
    """

    with data_manager.transaction(context.store) as session:
        return _require_record(session, record_id)


def list_latest(context: RuntimeContext, record_type: str, include_pending: bool = True) -> List[RecordRow]:
    """List one row per chain of ``record_type``.

    With ``include_pending`` the live head is returned (pending corrections
    included); otherwise only the canonical approved version is.
    """

    with data_manager.transaction(context.store) as session:
        if include_pending:
            return data_manager.live_records(session, record_type, statuses=LIVE_STATUSES)
        return data_manager.canonical_records(session, [record_type])


def record_history(context: RuntimeContext, record_id: str) -> List[RecordRow]:
    """Return every version in the record's chain, soft-deleted ones included."""

    with data_manager.transaction(context.store) as session:
        record = data_manager.get_record(session, record_id)
        if record is None:
            raise MissingRecordError(f"Record '{record_id}' not found")
        return data_manager.chain_records(session, record.chain_id, record_type=record.record_type)
