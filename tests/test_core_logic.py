"""Tests for the business logic layer: approval workflow, versions and retries."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import SUBMITTED_AT, movement, reservation, room_booking
from hotel_ledger import constants, core_logic, data_manager, reconciliation
from hotel_ledger.constants import EntityType, RecordStatus, Role
from hotel_ledger.errors import (
    AuthorizationError,
    BookingConflictError,
    DependencyError,
    InsufficientStockError,
    MissingRecordError,
    SessionExpiredError,
    StateConflictError,
    TransientStoreError,
    ValidationError,
)
from hotel_ledger.payloads import parse_payload


MARCH_1 = date(2024, 3, 1)
MARCH_2 = date(2024, 3, 2)
FEB_1 = date(2024, 2, 1)
FEB_3 = date(2024, 2, 3)


def _status(context, record_id):
    with data_manager.transaction(context.store) as session:
        return data_manager.get_record(session, record_id)


def _run_concurrently(*calls):
    """Release every call at once and collect each result or raised error."""

    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def _run(index, call):
        barrier.wait()
        try:
            outcomes[index] = call()
        except Exception as exc:
            outcomes[index] = exc

    threads = [threading.Thread(target=_run, args=(index, call)) for index, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and the store into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        database_url="sqlite:///ledger.db",
        hotel_name="Hotel",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    store = Mock(name="store")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_store = Mock(return_value=store)
    verify_schema = Mock()

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_store", open_store)
    monkeypatch.setattr(data_manager, "verify_schema", verify_schema)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.store is store
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_store.assert_called_once_with(parsed_settings.database_url)
    verify_schema.assert_called_once_with(store)


def test_load_runtime_context_requires_initialized_store(config_factory):
    """A store without the ledger table should be refused at load time."""

    bundle = config_factory(create_tables=False)
    with pytest.raises(RuntimeError, match="hotel-ledger-setup"):
        core_logic.load_runtime_context(bundle.config_path)


def test_ensure_schema_version_rejects_mismatch(runtime_context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_context = replace(runtime_context, settings=replace(runtime_context.settings, schema_version="0.9"))
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


# ---------------------------------------------------------------------------
# Initial status
# ---------------------------------------------------------------------------


def test_determine_initial_status_trusts_managers(manager):
    """Manager submissions skip the pending queue."""

    payload = parse_payload(movement("stock_restock", "Eggs", MARCH_1, quantity_in="5"))
    assert core_logic.determine_initial_status(manager, payload, today=MARCH_1) is RecordStatus.APPROVED


def test_determine_initial_status_keeps_staff_pending(storekeeper):
    """Ordinary staff submissions wait for review."""

    payload = parse_payload(movement("stock_restock", "Eggs", MARCH_1, quantity_in="5"))
    assert core_logic.determine_initial_status(storekeeper, payload, today=MARCH_1) is RecordStatus.PENDING


def test_determine_initial_status_approves_same_day_reservation(front_desk):
    """A walk-in reservation for today holds the room immediately."""

    payload = parse_payload(reservation("101", MARCH_1, MARCH_2))
    assert core_logic.determine_initial_status(front_desk, payload, today=MARCH_1) is RecordStatus.APPROVED
    assert core_logic.determine_initial_status(front_desk, payload, today=date(2024, 2, 1)) is RecordStatus.PENDING


def test_determine_initial_status_trusts_supervisor_movements(supervisor):
    """Supervisors self-approve stock movements but not catalogue changes."""

    restock = parse_payload(movement("stock_restock", "Eggs", MARCH_1, quantity_in="5"))
    item = parse_payload({"type": "config_item", "name": "Eggs", "category": "Provisions"})
    assert core_logic.determine_initial_status(supervisor, restock, today=MARCH_1) is RecordStatus.APPROVED
    assert core_logic.determine_initial_status(supervisor, item, today=MARCH_1) is RecordStatus.PENDING


# ---------------------------------------------------------------------------
# submit_record
# ---------------------------------------------------------------------------


def test_submit_record_by_staff_is_pending(seed_item, submit, storekeeper):
    """A storekeeper restock is appended as a pending version 1."""

    seed_item("Eggs")
    record = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), storekeeper)

    assert record.status == "pending"
    assert record.version_no == 1
    assert record.chain_id == record.id
    assert record.subject == "Eggs"
    assert record.department == "STORE"
    assert record.reviewed_by is None


def test_submit_record_by_manager_is_approved(runtime_context, seed_item, manager):
    """Manager submissions are approved and stamped with the reviewer."""

    item = seed_item("Eggs")

    stored = _status(runtime_context, item.id)
    assert stored.status == "approved"
    assert stored.reviewed_by == manager.user_id


def test_submit_record_links_companions_into_one_batch(runtime_context, seed_item):
    """An item and its opening stock share a batch and the item's chain."""

    item = seed_item("Eggs", opening="10")

    with data_manager.transaction(runtime_context.store) as session:
        members = data_manager.batch_records(session, item.batch_id)
    assert {member.record_type for member in members} == {"config_item", "opening_stock"}
    opening = next(member for member in members if member.record_type == "opening_stock")
    assert opening.original_id == item.id
    assert opening.chain_id == item.id
    assert opening.status == "approved"


def test_submit_record_defaults_department_from_entity(runtime_context, seed_item, submit, manager):
    """Kitchen movements without a department land in KITCHEN."""

    seed_item("Flour")
    data = movement("stock_restock", "Flour", MARCH_1, quantity_in="3")
    del data["department"]

    record = submit(data, manager, entity=EntityType.KITCHEN)

    assert record.department == "KITCHEN"


def test_submit_record_rejects_unknown_item(submit, manager):
    """Movements must reference an approved catalogue item."""

    with pytest.raises(ValidationError, match="Ghost"):
        submit(movement("stock_restock", "Ghost", MARCH_1, quantity_in="1"), manager)


def test_submit_record_rejects_duplicate_item_name(seed_item):
    """Item names are unique regardless of case."""

    seed_item("Eggs")
    with pytest.raises(ValidationError, match="already exists"):
        seed_item("eggs")


def test_submit_record_refuses_sale_beyond_stock(seed_item, submit, manager, bartender):
    """Selling more than opening plus restocked fails and names the item."""

    seed_item("Eggs", opening="10")
    submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), manager)

    with pytest.raises(InsufficientStockError) as excinfo:
        submit(movement("sold", "Eggs", MARCH_2, quantity_out="16"), bartender)

    assert excinfo.value.item == "Eggs"
    assert "Eggs" in str(excinfo.value)
    assert excinfo.value.available == Decimal("15")


def test_submit_record_allows_sale_of_all_stock(seed_item, submit, manager):
    """Taking exactly the available quantity is allowed."""

    seed_item("Eggs", opening="10")
    submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), manager)

    record = submit(movement("sold", "Eggs", MARCH_2, quantity_out="15"), manager)

    assert record.status == "approved"


def test_submit_record_rejects_negative_revenue(submit, front_desk):
    """Stays may not carry a negative financial amount."""

    with pytest.raises(ValidationError, match="financial_amount"):
        submit(room_booking("101", MARCH_1, MARCH_2), front_desk, entity=EntityType.FRONT_DESK, amount="-5")


def test_submit_record_refuses_overlapping_reservation(submit, manager, front_desk):
    """A reservation overlapping an approved stay is refused."""

    submit(room_booking("101", MARCH_1, date(2024, 3, 4)), manager, entity=EntityType.FRONT_DESK)

    with pytest.raises(BookingConflictError) as excinfo:
        submit(reservation("101", MARCH_2, date(2024, 3, 5)), front_desk, entity=EntityType.FRONT_DESK)

    assert excinfo.value.source == "active_stay"


def test_submit_record_approves_same_day_reservation(submit, front_desk):
    """A reservation starting on the submission day is approved at once."""

    record = submit(
        reservation("102", MARCH_1, MARCH_2),
        front_desk,
        entity=EntityType.FRONT_DESK,
        timestamp=datetime(2024, 3, 1, 8, 0, tzinfo=UTC),
    )

    assert record.status == "approved"


# ---------------------------------------------------------------------------
# approve_record / reject_record
# ---------------------------------------------------------------------------


def test_approve_record_requires_reviewer_role(monkeypatch, runtime_context, storekeeper):
    """Staff cannot approve, and the store is never opened."""

    transaction = Mock(name="transaction")
    monkeypatch.setattr(data_manager, "transaction", transaction)

    with pytest.raises(AuthorizationError):
        core_logic.approve_record(runtime_context, "any-id", storekeeper)
    transaction.assert_not_called()


def test_approve_record_transitions_pending(runtime_context, seed_item, submit, storekeeper, supervisor):
    """Approving a pending record stamps reviewer and time."""

    seed_item("Eggs")
    record = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), storekeeper)
    reviewed_at = datetime(2024, 3, 2, 12, 0, tzinfo=UTC)

    approved = core_logic.approve_record(runtime_context, record.id, supervisor, timestamp=reviewed_at)

    assert [row.id for row in approved] == [record.id]
    stored = _status(runtime_context, record.id)
    assert stored.status == "approved"
    assert stored.reviewed_by == supervisor.user_id


def test_approve_record_twice_conflicts(runtime_context, seed_item, submit, storekeeper, supervisor):
    """The second of two approvals loses with a state conflict."""

    seed_item("Eggs")
    record = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), storekeeper)
    core_logic.approve_record(runtime_context, record.id, supervisor)

    with pytest.raises(StateConflictError):
        core_logic.approve_record(runtime_context, record.id, supervisor)


def test_concurrent_approvals_of_one_record(runtime_context, seed_item, submit, storekeeper, supervisor):
    """Two reviewers approving the same record at once: one wins, one conflicts."""

    seed_item("Eggs")
    record = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), storekeeper)
    other_supervisor = core_logic.Actor("sup-2", Role.SUPERVISOR)

    outcomes = _run_concurrently(
        lambda: core_logic.approve_record(runtime_context, record.id, supervisor),
        lambda: core_logic.approve_record(runtime_context, record.id, other_supervisor),
    )

    approved = [outcome for outcome in outcomes if isinstance(outcome, list)]
    conflicts = [outcome for outcome in outcomes if isinstance(outcome, StateConflictError)]
    assert (len(approved), len(conflicts)) == (1, 1), outcomes
    assert _status(runtime_context, record.id).reviewed_by == approved[0][0].reviewed_by


def test_concurrent_approvals_cannot_double_book_a_room(runtime_context, submit, front_desk, supervisor, manager):
    """Two pending reservations for one room cannot both be approved at once."""

    first = submit(reservation("101", FEB_1, FEB_3, code="R-1"), front_desk, entity=EntityType.FRONT_DESK)
    second = submit(reservation("101", FEB_1, FEB_3, code="R-2"), front_desk, entity=EntityType.FRONT_DESK)
    assert (first.status, second.status) == ("pending", "pending")

    outcomes = _run_concurrently(
        lambda: core_logic.approve_record(runtime_context, first.id, supervisor),
        lambda: core_logic.approve_record(runtime_context, second.id, manager),
    )

    approved = [outcome for outcome in outcomes if isinstance(outcome, list)]
    conflicts = [outcome for outcome in outcomes if isinstance(outcome, BookingConflictError)]
    assert (len(approved), len(conflicts)) == (1, 1), outcomes
    statuses = sorted(_status(runtime_context, row.id).status for row in (first, second))
    assert statuses == ["approved", "pending"]


def test_approve_record_unknown_id(runtime_context, supervisor):
    """Unknown ids surface as a missing record."""

    with pytest.raises(MissingRecordError):
        core_logic.approve_record(runtime_context, "does-not-exist", supervisor)


def test_approve_record_approves_whole_batch(runtime_context, submit, storekeeper, supervisor):
    """Approving the item also approves its opening stock."""

    item = submit(
        {"type": "config_item", "name": "Rice", "category": "Provisions"},
        storekeeper,
        companions=(movement("opening_stock", "Rice", MARCH_1, quantity_in="20"),),
    )

    approved = core_logic.approve_record(runtime_context, item.id, supervisor)

    assert {row.record_type for row in approved} == {"config_item", "opening_stock"}
    assert reconciliation.opening_stock(runtime_context, "Rice", "STORE", MARCH_2) == Decimal("20")


def test_approve_record_rolls_back_partial_batch(monkeypatch, runtime_context, submit, storekeeper, supervisor):
    """If fewer rows transition than expected, nothing is approved."""

    item = submit(
        {"type": "config_item", "name": "Rice", "category": "Provisions"},
        storekeeper,
        companions=(movement("opening_stock", "Rice", MARCH_1, quantity_in="20"),),
    )
    monkeypatch.setattr(data_manager, "transition_status", Mock(return_value=1))

    with pytest.raises(StateConflictError):
        core_logic.approve_record(runtime_context, item.id, supervisor)

    monkeypatch.undo()
    with data_manager.transaction(runtime_context.store) as session:
        members = data_manager.batch_records(session, item.batch_id)
    assert {member.status for member in members} == {"pending"}


def test_approve_record_revalidates_stock(runtime_context, seed_item, submit, bartender, supervisor):
    """Two sales that fit alone cannot both be approved."""

    seed_item("Gin", opening="10", department="BAR")
    first = submit(movement("sold", "Gin", MARCH_2, quantity_out="6", department="BAR"), bartender, entity=EntityType.BAR)
    second = submit(movement("sold", "Gin", MARCH_2, quantity_out="6", department="BAR"), bartender, entity=EntityType.BAR)
    core_logic.approve_record(runtime_context, first.id, supervisor)

    with pytest.raises(InsufficientStockError, match="Gin"):
        core_logic.approve_record(runtime_context, second.id, supervisor)
    assert _status(runtime_context, second.id).status == "pending"


def test_reject_record_requires_reason_before_store(monkeypatch, runtime_context, supervisor):
    """A blank reason fails validation without touching the store."""

    transaction = Mock(name="transaction")
    monkeypatch.setattr(data_manager, "transaction", transaction)

    with pytest.raises(ValidationError):
        core_logic.reject_record(runtime_context, "any-id", supervisor, "   ")
    transaction.assert_not_called()


def test_reject_record_stores_reason(runtime_context, seed_item, submit, storekeeper, supervisor):
    """Rejection keeps the reviewer's reason on the record."""

    seed_item("Eggs")
    record = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), storekeeper)

    core_logic.reject_record(runtime_context, record.id, supervisor, " wrong quantity ")

    stored = _status(runtime_context, record.id)
    assert stored.status == "rejected"
    assert stored.rejection_reason == "wrong quantity"


def test_reject_record_refuses_approved(runtime_context, seed_item, supervisor):
    """Only pending records can be rejected."""

    item = seed_item("Eggs")
    with pytest.raises(StateConflictError):
        core_logic.reject_record(runtime_context, item.id, supervisor, "late")


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


def test_soft_delete_record_refuses_approved(runtime_context, seed_item, manager):
    """Approved records are history and point at delete_approved_entity."""

    item = seed_item("Eggs")
    with pytest.raises(StateConflictError, match="delete_approved_entity"):
        core_logic.soft_delete_record(runtime_context, item.id, manager)


def test_soft_delete_record_limited_to_submitter(runtime_context, seed_item, submit, storekeeper, bartender):
    """Other staff cannot withdraw someone else's submission."""

    seed_item("Eggs")
    record = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), storekeeper)

    with pytest.raises(AuthorizationError):
        core_logic.soft_delete_record(runtime_context, record.id, bartender)


def test_soft_delete_record_withdraws_pending(runtime_context, seed_item, submit, storekeeper):
    """The submitter may withdraw a pending record; it then disappears."""

    seed_item("Eggs")
    record = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), storekeeper)

    assert core_logic.soft_delete_record(runtime_context, record.id, storekeeper) == 1
    with pytest.raises(MissingRecordError):
        core_logic.get_record(runtime_context, record.id)


def test_delete_approved_entity_requires_admin(runtime_context, seed_item, supervisor):
    """Supervisors cannot retire catalogue entities."""

    item = seed_item("Eggs")
    with pytest.raises(AuthorizationError):
        core_logic.delete_approved_entity(runtime_context, item.id, supervisor)


def test_delete_approved_entity_refuses_live_dependants(runtime_context, submit, seed_item, manager):
    """A category with live items cannot be deleted until the items go."""

    category = submit({"type": "config_category", "name": "Provisions"}, manager)
    item = seed_item("Eggs", category="provisions")

    with pytest.raises(DependencyError, match="Eggs"):
        core_logic.delete_approved_entity(runtime_context, category.id, manager)

    core_logic.delete_approved_entity(runtime_context, item.id, manager)
    assert core_logic.delete_approved_entity(runtime_context, category.id, manager) == 1


def test_delete_approved_entity_refuses_item_with_movements(runtime_context, seed_item, manager):
    """An item with approved stock history cannot be retired."""

    item = seed_item("Flour", opening="10")

    with pytest.raises(DependencyError, match="opening_stock 'Flour'"):
        core_logic.delete_approved_entity(runtime_context, item.id, manager)

    assert _status(runtime_context, item.id).deleted_at is None


def test_delete_approved_entity_waits_for_pending_movements(runtime_context, seed_item, submit, storekeeper, manager):
    """A pending movement holds the item until it is withdrawn."""

    item = seed_item("Sugar")
    restock = submit(movement("stock_restock", "Sugar", MARCH_2, quantity_in="5"), storekeeper)

    with pytest.raises(DependencyError, match="stock_restock"):
        core_logic.delete_approved_entity(runtime_context, item.id, manager)

    core_logic.soft_delete_record(runtime_context, restock.id, storekeeper)
    assert core_logic.delete_approved_entity(runtime_context, item.id, manager) == 1


def test_delete_approved_entity_rejects_non_config(runtime_context, seed_item, submit, manager):
    """Only categories, collections and items can be retired."""

    seed_item("Eggs")
    restock = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), manager)
    with pytest.raises(ValidationError):
        core_logic.delete_approved_entity(runtime_context, restock.id, manager)


# ---------------------------------------------------------------------------
# edit_record
# ---------------------------------------------------------------------------


def _edit(context, previous_id, patch, actor, **kwargs):
    return core_logic.edit_record(
        context,
        core_logic.EditCommand(previous_id=previous_id, patch=patch, actor=actor, timestamp=SUBMITTED_AT, **kwargs),
    )


def test_edit_record_chain_latest_after_two_edits(runtime_context, seed_item, submit, manager):
    """Two successive edits make version 3 the head of the chain."""

    seed_item("Eggs")
    original = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), manager)
    second = _edit(runtime_context, original.id, {"quantity_in": "6"}, manager)
    third = _edit(runtime_context, second.id, {"quantity_in": "7"}, manager)

    assert (second.version_no, third.version_no) == (2, 3)
    assert third.chain_id == original.id
    assert third.original_id == original.id
    with data_manager.transaction(runtime_context.store) as session:
        head = data_manager.latest_version(session, original.id, "stock_restock")
    assert head.id == third.id
    assert reconciliation.daily_movement(runtime_context, "Eggs", "STORE", MARCH_2).restocked == Decimal("7")


def test_edit_record_rejects_stale_previous(runtime_context, seed_item, submit, manager):
    """Editing a superseded version is a state conflict."""

    seed_item("Eggs")
    original = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), manager)
    _edit(runtime_context, original.id, {"quantity_in": "6"}, manager)

    with pytest.raises(StateConflictError, match="superseded"):
        _edit(runtime_context, original.id, {"quantity_in": "9"}, manager)


def test_edit_record_cannot_change_type(runtime_context, seed_item, submit, manager):
    """The type tag is fixed for the life of a chain."""

    seed_item("Eggs")
    original = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), manager)

    with pytest.raises(ValidationError):
        _edit(runtime_context, original.id, {"type": "sold"}, manager)


def test_edit_record_supersedes_pending_version(runtime_context, seed_item, submit, storekeeper):
    """Editing a pending record soft-deletes the version it replaces."""

    seed_item("Eggs")
    original = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), storekeeper)

    edited = _edit(runtime_context, original.id, {"quantity_in": "4"}, storekeeper)

    assert edited.status == "pending"
    assert _status(runtime_context, original.id).is_deleted


def test_edit_record_correction_keeps_approved_canonical(runtime_context, seed_item, submit, manager, storekeeper, supervisor):
    """A pending correction does not replace the approved version until approved."""

    seed_item("Eggs")
    original = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), manager)
    correction = _edit(runtime_context, original.id, {"quantity_in": "8"}, storekeeper)

    assert correction.status == "pending"
    assert reconciliation.daily_movement(runtime_context, "Eggs", "STORE", MARCH_2).restocked == Decimal("5")

    core_logic.approve_record(runtime_context, correction.id, supervisor)
    assert reconciliation.daily_movement(runtime_context, "Eggs", "STORE", MARCH_2).restocked == Decimal("8")


def test_edit_record_refuses_rejected(runtime_context, seed_item, submit, storekeeper, supervisor):
    """Rejected records cannot be edited."""

    seed_item("Eggs")
    record = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), storekeeper)
    core_logic.reject_record(runtime_context, record.id, supervisor, "duplicate")

    with pytest.raises(StateConflictError):
        _edit(runtime_context, record.id, {"quantity_in": "6"}, storekeeper)


def test_rejected_correction_leaves_approved_version_live(runtime_context, seed_item, storekeeper, supervisor, manager):
    """A refused correction neither hides nor locks the version it tried to replace."""

    item = seed_item("Flour")
    correction = _edit(runtime_context, item.id, {"unit_price": "3.00"}, storekeeper)
    core_logic.reject_record(runtime_context, correction.id, supervisor, "wrong price")

    assert [row.id for row in core_logic.list_latest(runtime_context, "config_item")] == [item.id]
    with pytest.raises(ValidationError, match="already exists"):
        seed_item("flour")

    edited = _edit(runtime_context, item.id, {"unit_price": "2.75"}, manager)
    assert (edited.version_no, edited.status) == (3, "approved")


def test_pending_rename_keeps_approved_name_reserved(runtime_context, seed_item, storekeeper):
    """The approved name stays taken while a rename waits for review."""

    item = seed_item("Flour")
    _edit(runtime_context, item.id, {"name": "Bread flour"}, storekeeper)

    with pytest.raises(ValidationError, match="already exists"):
        seed_item("Flour")


def test_edit_record_maps_version_race_to_conflict(monkeypatch, runtime_context, seed_item, submit, manager):
    """A duplicate version number from a concurrent editor becomes a state conflict."""

    seed_item("Eggs")
    original = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), manager)
    monkeypatch.setattr(data_manager, "next_version_no", Mock(return_value=1))

    with pytest.raises(StateConflictError):
        _edit(runtime_context, original.id, {"quantity_in": "6"}, manager)


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------


def _approved_reservation(submit, manager, *, deposit="50"):
    return submit(
        reservation("201", date(2024, 4, 1), date(2024, 4, 3), deposit=deposit),
        manager,
        entity=EntityType.FRONT_DESK,
        amount=deposit,
    )


def test_convert_reservation_to_stay(runtime_context, submit, manager, front_desk):
    """Conversion creates an approved stay and closes the reservation."""

    booked = _approved_reservation(submit, manager)

    stay = core_logic.convert_reservation_to_stay(runtime_context, booked.id, front_desk)

    assert stay.record_type == "room_booking"
    assert stay.status == "approved"
    assert stay.financial_amount == Decimal("50")
    assert stay.original_id == booked.chain_id
    assert stay.data["meta"]["source_reservation_id"] == booked.id
    closed = _status(runtime_context, booked.id)
    assert closed.status == "converted"
    assert closed.data["converted_to_booking_id"] == stay.id


def test_convert_reservation_twice_conflicts(runtime_context, submit, manager, front_desk):
    """A converted reservation cannot be converted again."""

    booked = _approved_reservation(submit, manager)
    core_logic.convert_reservation_to_stay(runtime_context, booked.id, front_desk)

    with pytest.raises(StateConflictError):
        core_logic.convert_reservation_to_stay(runtime_context, booked.id, front_desk)


def test_convert_reservation_is_atomic(monkeypatch, runtime_context, submit, manager, front_desk):
    """If the reservation transition fails, the stay is not created."""

    booked = _approved_reservation(submit, manager)
    monkeypatch.setattr(data_manager, "transition_status", Mock(return_value=0))

    with pytest.raises(StateConflictError):
        core_logic.convert_reservation_to_stay(runtime_context, booked.id, front_desk)

    monkeypatch.undo()
    assert core_logic.list_latest(runtime_context, "room_booking") == []
    assert _status(runtime_context, booked.id).status == "approved"


def test_convert_reservation_requires_front_desk(runtime_context, submit, manager, bartender):
    """Bar staff cannot check guests in."""

    booked = _approved_reservation(submit, manager)
    with pytest.raises(AuthorizationError):
        core_logic.convert_reservation_to_stay(runtime_context, booked.id, bartender)


def test_convert_pending_reservation_refused(runtime_context, submit, front_desk):
    """Only approved reservations convert."""

    pending = submit(reservation("201", date(2024, 4, 1), date(2024, 4, 3)), front_desk, entity=EntityType.FRONT_DESK)
    with pytest.raises(StateConflictError):
        core_logic.convert_reservation_to_stay(runtime_context, pending.id, front_desk)


def test_expire_reservation(runtime_context, submit, manager, supervisor):
    """An expired reservation stops holding its room."""

    booked = _approved_reservation(submit, manager)

    expired = core_logic.expire_reservation(runtime_context, booked.id, supervisor)

    assert expired.status == "expired"
    with pytest.raises(StateConflictError):
        core_logic.expire_reservation(runtime_context, booked.id, supervisor)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@pytest.fixture
def retry_context(runtime_context):
    settings = replace(runtime_context.settings, retry_attempts=3, retry_backoff_seconds=0.4)
    return replace(runtime_context, settings=settings)


def test_run_with_retry_recovers_from_transient_failure(monkeypatch, retry_context, storekeeper):
    """A transient failure is retried after a linear backoff."""

    sleep = Mock()
    monkeypatch.setattr(core_logic.time, "sleep", sleep)
    operation = Mock(side_effect=[TransientStoreError("locked"), "ok"])

    result = core_logic.run_with_retry(retry_context, storekeeper, operation, description="testing")

    assert result == "ok"
    assert operation.call_count == 2
    sleep.assert_called_once_with(pytest.approx(0.4))


def test_run_with_retry_gives_up_after_attempts(monkeypatch, retry_context, storekeeper):
    """After the configured attempts the transient error surfaces."""

    sleep = Mock()
    monkeypatch.setattr(core_logic.time, "sleep", sleep)
    operation = Mock(side_effect=TransientStoreError("down"))

    with pytest.raises(TransientStoreError):
        core_logic.run_with_retry(retry_context, storekeeper, operation, description="testing")

    assert operation.call_count == 3
    assert [call.args[0] for call in sleep.call_args_list] == [pytest.approx(0.4), pytest.approx(0.8)]


def test_run_with_retry_checks_credentials(monkeypatch, retry_context, storekeeper):
    """An expired credential stops the retry loop."""

    monkeypatch.setattr(core_logic.time, "sleep", Mock())
    validator = Mock(return_value=False)
    context = replace(retry_context, credential_validator=validator)
    operation = Mock(side_effect=TransientStoreError("token expired"))

    with pytest.raises(SessionExpiredError):
        core_logic.run_with_retry(context, storekeeper, operation, description="testing")

    operation.assert_called_once()
    validator.assert_called_once_with(storekeeper)


def test_run_with_retry_does_not_retry_validation(monkeypatch, retry_context, storekeeper):
    """Validation errors propagate on the first attempt."""

    sleep = Mock()
    monkeypatch.setattr(core_logic.time, "sleep", sleep)
    operation = Mock(side_effect=ValidationError("bad"))

    with pytest.raises(ValidationError):
        core_logic.run_with_retry(retry_context, storekeeper, operation, description="testing")

    operation.assert_called_once()
    sleep.assert_not_called()


def test_submit_record_maps_operational_error(monkeypatch, retry_context, manager):
    """Store outages become TransientStoreError after retries."""

    monkeypatch.setattr(core_logic.time, "sleep", Mock())
    transaction = Mock(side_effect=OperationalError("INSERT", {}, Exception("database is locked")))
    monkeypatch.setattr(data_manager, "transaction", transaction)
    command = core_logic.SubmitCommand(
        entity_type=EntityType.STOREKEEPER,
        data={"type": "config_category", "name": "Provisions"},
        actor=manager,
        timestamp=SUBMITTED_AT,
    )

    with pytest.raises(TransientStoreError, match="database is locked"):
        core_logic.submit_record(retry_context, command)
    assert transaction.call_count == 3


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def test_list_latest_distinguishes_pending(runtime_context, submit, manager, storekeeper):
    """Pending chains appear only when pending rows are requested."""

    submit({"type": "config_category", "name": "Provisions"}, manager)
    submit({"type": "config_category", "name": "Linen"}, storekeeper)

    with_pending = core_logic.list_latest(runtime_context, "config_category")
    approved_only = core_logic.list_latest(runtime_context, "config_category", include_pending=False)

    assert sorted(row.subject for row in with_pending) == ["Linen", "Provisions"]
    assert [row.subject for row in approved_only] == ["Provisions"]


def test_record_history_includes_deleted_versions(runtime_context, seed_item, submit, storekeeper):
    """History shows every version, including withdrawn ones."""

    seed_item("Eggs")
    original = submit(movement("stock_restock", "Eggs", MARCH_2, quantity_in="5"), storekeeper)
    edited = _edit(runtime_context, original.id, {"quantity_in": "4"}, storekeeper)

    history = core_logic.record_history(runtime_context, edited.id)

    assert [row.version_no for row in history] == [1, 2]
    assert history[0].is_deleted and not history[1].is_deleted


def test_merge_data_merges_nested_objects():
    """Nested patch objects merge key by key."""

    merged = core_logic.merge_data({"stay": {"room_id": "1", "check_in": "a"}, "x": 1}, {"stay": {"room_id": "2"}})
    assert merged == {"stay": {"room_id": "2", "check_in": "a"}, "x": 1}


def test_actor_role_must_be_role_enum():
    """Actors carry the role enum used by authorization checks."""

    actor = core_logic.Actor("u", Role("manager"))
    assert actor.role is Role.MANAGER
