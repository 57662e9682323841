"""Shared pytest fixtures and utilities for hotel ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from hotel_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from hotel_ledger.constants import EntityType, Role  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DatabaseUrl = {database_url}\n"
    "HotelName = {hotel_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "CheckInTime = 14:00\n"
    "CheckOutTime = 11:00\n\n"
    "[Retry]\n"
    "Attempts = 3\n"
    "BackoffSeconds = 0\n"
)

# Submissions default to a moment well before any stay in the fixtures, so
# the same-day reservation rule only fires when a test asks for it.
SUBMITTED_AT = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    database_path: Path
    schema_version: str
    hotel_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/database bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        hotel_name: str = "Test Hotel",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        create_tables: bool = True,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        database_path = bundle_dir / "ledger.db"
        database_url = "sqlite:///ledger.db" if make_relative else f"sqlite:///{database_path}"
        if create_tables:
            handle = data_manager.open_store(f"sqlite:///{database_path}")
            data_manager.create_schema(handle)
            data_manager.close_store(handle)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                database_url=database_url,
                hotel_name=hotel_name,
                schema_version=schema_version,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            database_path=database_path,
            schema_version=schema_version,
            hotel_name=hotel_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> Iterator[core_logic.RuntimeContext]:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    try:
        yield context
    finally:
        core_logic.close_runtime_context(context)


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture
def storekeeper() -> core_logic.Actor:
    return core_logic.Actor("store-1", Role.STOREKEEPER)


@pytest.fixture
def bartender() -> core_logic.Actor:
    return core_logic.Actor("bar-1", Role.BAR)


@pytest.fixture
def front_desk() -> core_logic.Actor:
    return core_logic.Actor("desk-1", Role.FRONT_DESK)


@pytest.fixture
def supervisor() -> core_logic.Actor:
    return core_logic.Actor("sup-1", Role.SUPERVISOR)


@pytest.fixture
def manager() -> core_logic.Actor:
    return core_logic.Actor("mgr-1", Role.MANAGER)


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def movement(
    kind: str,
    item: str,
    on: date,
    *,
    quantity_in: str = "0",
    quantity_out: str = "0",
    department: str = "STORE",
    unit_price: str = "0",
) -> Dict[str, Any]:
    """Build a stock movement document."""

    return {
        "type": kind,
        "item": item,
        "department": department,
        "event_date": on.isoformat(),
        "quantity_in": quantity_in,
        "quantity_out": quantity_out,
        "unit_price": unit_price,
    }


def reservation(room: str, check_in: date, check_out: date, *, code: str = "R-1", deposit: str = "0") -> Dict[str, Any]:
    """Build a room reservation document."""

    return {
        "type": "room_reservation",
        "reservation_code": code,
        "guest": {"full_name": "Ada Guest", "phone": "0800000000"},
        "room_id": room,
        "check_in_date": check_in.isoformat(),
        "check_out_date": check_out.isoformat(),
        "deposit_amount": deposit,
        "payment_status": "deposit_paid" if Decimal(deposit) > 0 else "unpaid",
    }


def room_booking(
    room: str,
    check_in: date,
    check_out: date,
    *,
    rate: str = "100",
    paid: str = "0",
    method: str = "POS",
) -> Dict[str, Any]:
    """Build a consistent room booking document."""

    nights = (check_out - check_in).days
    total = Decimal(rate) * nights
    return {
        "type": "room_booking",
        "guest": {"full_name": "Bo Guest", "phone": "0700000000"},
        "stay": {"room_id": room, "check_in": check_in.isoformat(), "check_out": check_out.isoformat()},
        "pricing": {"room_rate": rate, "nights": nights, "total_room_cost": str(total)},
        "payment": {"paid_amount": paid, "payment_method": method, "balance": str(total - Decimal(paid))},
    }


@pytest.fixture
def submit(runtime_context: core_logic.RuntimeContext) -> Callable[..., data_manager.RecordRow]:
    """Submit a document through the public API with sensible defaults."""

    def _submit(
        data: Dict[str, Any],
        actor: core_logic.Actor,
        *,
        entity: EntityType = EntityType.STOREKEEPER,
        amount: str = "0",
        companions: tuple = (),
        timestamp: Optional[datetime] = None,
    ) -> data_manager.RecordRow:
        return core_logic.submit_record(
            runtime_context,
            core_logic.SubmitCommand(
                entity_type=entity,
                data=data,
                actor=actor,
                financial_amount=Decimal(amount),
                companions=companions,
                timestamp=timestamp or SUBMITTED_AT,
            ),
        )

    return _submit


@pytest.fixture
def seed_item(submit, manager) -> Callable[..., data_manager.RecordRow]:
    """Create an approved catalogue item, optionally with opening stock."""

    def _seed(
        name: str,
        *,
        category: str = "Provisions",
        collection: Optional[str] = None,
        opening: Optional[str] = None,
        on: date = date(2024, 3, 1),
        department: str = "STORE",
    ) -> data_manager.RecordRow:
        companions = ()
        if opening is not None:
            companions = (movement("opening_stock", name, on, quantity_in=opening, department=department),)
        data = {"type": "config_item", "name": name, "category": category, "unit": "pcs", "unit_price": "2.50"}
        if collection is not None:
            data["collection"] = collection
        return submit(data, manager, companions=companions)

    return _seed


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="hotel-ledger", description="Hotel ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
