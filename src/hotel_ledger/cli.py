"""Command-line entry points for the hotel ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Payloads are passed as JSON documents so every record type the ledger
understands can be submitted without a dedicated sub-command.
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from datetime import date, time
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import booking, core_logic, exports, log, reconciliation, set_level
from .constants import Department, EntityType, Role
from .errors import (
    AuthorizationError,
    BookingConflictError,
    StateConflictError,
    TransientStoreError,
    ValidationError,
)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="hotel-ledger",
        description="Command-line tools for the hotel operational ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to searching upward from the current directory).",
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output to the console.")
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as submissions and reviews."""
    specs = {
        "submit": register_submit_command(subparsers),
        "approve": register_approve_command(subparsers),
        "reject": register_reject_command(subparsers),
        "delete": register_delete_command(subparsers),
        "delete-entity": register_delete_entity_command(subparsers),
        "edit": register_edit_command(subparsers),
        "convert": register_convert_command(subparsers),
        "expire": register_expire_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as stock sheets and folios."""
    specs = {
        "stock": register_stock_command(subparsers),
        "rollup": register_rollup_command(subparsers),
        "check-room": register_check_room_command(subparsers),
        "history": register_history_command(subparsers),
        "folio": register_folio_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_actor_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--actor", required=True, help="User id of the person performing the action.")
    parser.add_argument("--role", required=True, choices=[member.value for member in Role])


def _add_record_argument(parser: argparse.ArgumentParser, flag: str = "--record-id") -> None:
    parser.add_argument(flag, required=True, dest="record_id")


def register_submit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``submit``."""
    name = "submit"
    help_text = "Submit a new operational record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entity", required=True, choices=[member.value for member in EntityType])
        parser.add_argument("--data", required=True, help="JSON document with a 'type' tag.")
        parser.add_argument(
            "--companion",
            action="append",
            default=[],
            help="Additional JSON document submitted in the same batch (repeatable).",
        )
        parser.add_argument("--amount", default="0", help="Signed financial amount of the record.")
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_submit)


def register_approve_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``approve``."""
    name = "approve"
    help_text = "Approve a pending record and its batch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_argument(parser)
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_approve)


def register_reject_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reject``."""
    name = "reject"
    help_text = "Reject a pending record and its batch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_argument(parser)
        parser.add_argument("--reason", required=True)
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reject)


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    name = "delete"
    help_text = "Withdraw a pending or rejected record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_argument(parser)
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete)


def register_delete_entity_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-entity``."""
    name = "delete-entity"
    help_text = "Retire an approved category, collection or item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_argument(parser)
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_entity)


def register_edit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit``."""
    name = "edit"
    help_text = "Submit a corrected version of a record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_argument(parser)
        parser.add_argument("--data", required=True, help="JSON patch merged over the previous version.")
        parser.add_argument("--amount", default=None, help="Replacement financial amount.")
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit)


def register_convert_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``convert``."""
    name = "convert"
    help_text = "Check in the guest of an approved reservation."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_argument(parser, "--reservation-id")
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_convert)


def register_expire_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expire``."""
    name = "expire"
    help_text = "Mark a no-show reservation as expired."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_argument(parser, "--reservation-id")
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expire)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display the stock sheet for a department and day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", required=True, help="Day to reconcile (YYYY-MM-DD).")
        parser.add_argument("--department", required=True, choices=[member.value for member in Department])
        parser.add_argument("--category", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_rollup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``rollup``."""
    name = "rollup"
    help_text = "Display the monthly rollup for one item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item", required=True)
        parser.add_argument("--department", required=True, choices=[member.value for member in Department])
        parser.add_argument("--month", required=True, help="Month to summarize (YYYY-MM).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_rollup_report)


def register_check_room_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``check-room``."""
    name = "check-room"
    help_text = "Check whether a room is free for a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--room", required=True)
        parser.add_argument("--check-in", required=True)
        parser.add_argument("--check-out", required=True)
        parser.add_argument("--check-in-time", default=None)
        parser.add_argument("--check-out-time", default=None)
        parser.add_argument("--exclude-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_check_room)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display every version of a record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def register_folio_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``folio``."""
    name = "folio"
    help_text = "Display the guest folio for a stay."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_record_argument(parser, "--booking-id")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_folio_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export a stock sheet, rollup or record history to .xlsx."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", required=True, choices=["stock", "rollup", "history"])
        parser.add_argument("--output", required=True, type=Path)
        parser.add_argument("--date", default=None)
        parser.add_argument("--department", default=None, choices=[member.value for member in Department])
        parser.add_argument("--category", default=None)
        parser.add_argument("--item", action="append", default=[], help="Item for a rollup (repeatable).")
        parser.add_argument("--month", default=None)
        parser.add_argument("--record-id", default=None)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def parse_json_object(raw: str, option: str) -> Dict[str, Any]:
    """Decode a JSON object passed on the command line."""
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{option} is not valid JSON: {exc.msg}") from exc
    if not isinstance(value, dict):
        raise ValidationError(f"{option} must be a JSON object")
    return value


def parse_decimal(raw: str, option: str) -> Decimal:
    """Decode a decimal amount passed on the command line."""
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValidationError(f"{option} must be a number, got {raw!r}") from exc


def parse_date(raw: Optional[str], option: str) -> date:
    """Decode a YYYY-MM-DD date passed on the command line."""
    if not raw:
        raise ValidationError(f"{option} is required")
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"{option} must be YYYY-MM-DD, got {raw!r}") from exc


def parse_month(raw: Optional[str]) -> Tuple[int, int]:
    """Decode a YYYY-MM month passed on the command line."""
    try:
        year, month = (int(part) for part in (raw or "").split("-"))
    except ValueError as exc:
        raise ValidationError(f"--month must be YYYY-MM, got {raw!r}") from exc
    return year, month


def translate_actor(args: argparse.Namespace) -> core_logic.Actor:
    """Translate CLI args into the acting user."""
    return core_logic.Actor(user_id=args.actor, role=Role(args.role))


def translate_submit(args: argparse.Namespace) -> core_logic.SubmitCommand:
    """Translate CLI args into a submit command object."""
    return core_logic.SubmitCommand(
        entity_type=EntityType(args.entity),
        data=parse_json_object(args.data, "--data"),
        actor=translate_actor(args),
        financial_amount=parse_decimal(args.amount, "--amount"),
        companions=tuple(parse_json_object(raw, "--companion") for raw in args.companion),
    )


def translate_edit(args: argparse.Namespace) -> core_logic.EditCommand:
    """Translate CLI args into an edit command object."""
    return core_logic.EditCommand(
        previous_id=args.record_id,
        patch=parse_json_object(args.data, "--data"),
        actor=translate_actor(args),
        financial_amount=parse_decimal(args.amount, "--amount") if args.amount is not None else None,
    )


def translate_booking_window(args: argparse.Namespace) -> booking.BookingWindow:
    """Translate CLI args into a booking window."""
    return booking.BookingWindow(
        room_id=args.room,
        check_in=parse_date(args.check_in, "--check-in"),
        check_out=parse_date(args.check_out, "--check-out"),
        start_time=_parse_clock(args.check_in_time, "--check-in-time"),
        end_time=_parse_clock(args.check_out_time, "--check-out-time"),
    )


def _parse_clock(raw: Optional[str], option: str) -> Optional[time]:
    if not raw:
        return None
    try:
        return time.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"{option} must be HH:MM, got {raw!r}") from exc


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _print_rows(rows: Sequence[Sequence[object]]) -> None:
    widths = [max(len(str(row[index])) for row in rows) for index in range(len(rows[0]))]
    for row in rows:
        print("  ".join(str(value).ljust(width) for value, width in zip(row, widths)).rstrip())


def run_submit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the submit workflow via the BLL."""
    command = translate_submit(args)
    record = core_logic.submit_record(context, command)
    print(f"{record.id} {record.record_type} {record.status}")
    return 0


def run_approve(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the approve workflow via the BLL."""
    approved = core_logic.approve_record(context, args.record_id, translate_actor(args))
    print(f"Approved {len(approved)} record(s)")
    return 0


def run_reject(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reject workflow via the BLL."""
    rejected = core_logic.reject_record(context, args.record_id, translate_actor(args), args.reason)
    print(f"Rejected {len(rejected)} record(s)")
    return 0


def run_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the soft delete workflow via the BLL."""
    deleted = core_logic.soft_delete_record(context, args.record_id, translate_actor(args))
    print(f"Deleted {deleted} record(s)")
    return 0


def run_delete_entity(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the entity retirement workflow via the BLL."""
    deleted = core_logic.delete_approved_entity(context, args.record_id, translate_actor(args))
    print(f"Retired entity ({deleted} version(s))")
    return 0


def run_edit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit workflow via the BLL."""
    record = core_logic.edit_record(context, translate_edit(args))
    print(f"{record.id} version {record.version_no} {record.status}")
    return 0


def run_convert(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reservation conversion workflow via the BLL."""
    stay = core_logic.convert_reservation_to_stay(context, args.record_id, translate_actor(args))
    print(f"Checked in: stay {stay.id} in room {stay.subject}")
    return 0


def run_expire(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reservation expiry workflow via the BLL."""
    record = core_logic.expire_reservation(context, args.record_id, translate_actor(args))
    print(f"Reservation {record.id} {record.status}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock sheet workflow."""
    on_date = parse_date(args.date, "--date")
    rows = reconciliation.get_stock_state(context, on_date, args.department, args.category)
    if not rows:
        print("No active items.")
        return 0
    table: List[Sequence[object]] = [("Item", "Opening", "Restocked", "Sold", "Issued", "Closing", "")]
    for row in rows:
        table.append(
            (row.item, row.opening, row.restocked, row.sold, row.issued, row.display_closing, "!" if row.anomaly else "")
        )
    _print_rows(table)
    return 0


def run_rollup_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the monthly rollup workflow."""
    year, month = parse_month(args.month)
    rollup = reconciliation.get_monthly_rollup(context, args.item, args.department, year, month)
    print(
        f"{rollup.item} {rollup.year:04d}-{rollup.month:02d}: open {rollup.open_start}, "
        f"restocked {rollup.restocked}, sold {rollup.sold}, close {rollup.close_end}, "
        f"sales value {rollup.sales_value}"
    )
    return 0


def run_check_room(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the double-booking check."""
    result = booking.check_double_booking(context, translate_booking_window(args), args.exclude_id)
    if result.conflict:
        print(f"Conflict: {result.source.value} {result.record_id}")
    else:
        print("Available")
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the record history workflow."""
    versions = core_logic.record_history(context, args.record_id)
    table: List[Sequence[object]] = [("Version", "Record", "Status", "Deleted", "Submitted by")]
    for version in versions:
        table.append((version.version_no, version.id, version.status, "yes" if version.is_deleted else "", version.submitted_by))
    _print_rows(table)
    return 0


def run_folio_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the guest folio workflow."""
    summary = booking.folio_summary(context, args.record_id)
    for entry in summary.entries:
        sign = "+" if entry.kind == "debit" else "-"
        print(f"{entry.posted_at:%Y-%m-%d %H:%M} {sign}{entry.amount} {entry.category}: {entry.description}")
    print(f"Charges {summary.total_charges}, payments {summary.total_payments}, balance {summary.balance}")
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the spreadsheet export workflow."""
    if args.kind == "stock":
        if not args.department:
            raise ValidationError("--department is required for a stock export")
        on_date = parse_date(args.date, "--date")
        rows = reconciliation.get_stock_state(context, on_date, args.department, args.category)
        path = exports.export_stock_state(rows, args.output, on_date=on_date, overwrite=args.force)
    elif args.kind == "rollup":
        if not args.department or not args.item:
            raise ValidationError("--department and at least one --item are required for a rollup export")
        year, month = parse_month(args.month)
        rollups = [
            reconciliation.get_monthly_rollup(context, item, args.department, year, month) for item in args.item
        ]
        path = exports.export_monthly_rollup(rollups, args.output, overwrite=args.force)
    else:
        if not args.record_id:
            raise ValidationError("--record-id is required for a history export")
        versions = core_logic.record_history(context, args.record_id)
        path = exports.export_history(versions, args.output, overwrite=args.force)
    print(f"Wrote {path}")
    return 0


WRITE_COMMAND_NAMES = frozenset(
    {"submit", "approve", "reject", "delete", "delete-entity", "edit", "convert", "expire"}
)


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (ValidationError, BookingConflictError, AuthorizationError)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, StateConflictError):
        log.error("%s", error)
        return 4
    if isinstance(error, TransientStoreError):
        log.error("%s", error)
        return 5
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if args.verbose:
        set_level(logging.DEBUG)
    context: Optional[core_logic.RuntimeContext] = None
    try:
        context = load_runtime_context(getattr(args, "config", None))
        if args.command in WRITE_COMMAND_NAMES:
            core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        if context is not None:
            core_logic.close_runtime_context(context)
