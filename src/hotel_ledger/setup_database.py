"""Utility for initializing a hotel ledger installation.

The module doubles as a script (``hotel-ledger-setup``) and as a library used
by tests or other tooling. It writes a ``config.ini`` when one is missing and
creates the ``operational_records`` table in the configured store.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from pathlib import Path
from typing import Sequence

from . import data_manager, log
from .constants import DEFAULT_CHECK_IN_TIME, DEFAULT_CHECK_OUT_TIME, EXPECTED_SCHEMA_VERSION


DEFAULT_DATABASE_URL = "sqlite:///hotel_ledger.db"
DEFAULT_HOTEL_NAME = "Hotel"


def write_default_config(
    destination: Path,
    *,
    database_url: str = DEFAULT_DATABASE_URL,
    hotel_name: str = DEFAULT_HOTEL_NAME,
    overwrite: bool = False,
) -> Path:
    """Write a ``config.ini`` with the standard sections.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing configuration: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)

    parser = configparser.ConfigParser()
    parser.optionxform = str
    parser["System"] = {
        "DatabaseUrl": database_url,
        "HotelName": hotel_name,
        "SchemaVersion": EXPECTED_SCHEMA_VERSION,
    }
    parser["Defaults"] = {
        "CheckInTime": DEFAULT_CHECK_IN_TIME.strftime("%H:%M"),
        "CheckOutTime": DEFAULT_CHECK_OUT_TIME.strftime("%H:%M"),
    }
    parser["Retry"] = {"Attempts": "3", "BackoffSeconds": "0.4"}
    with destination.open("w", encoding="utf-8") as handle:
        parser.write(handle)
    log.info("Wrote configuration to '%s'", destination)
    return destination


def run_from_config(config_path: Path) -> str:
    """Create the schema for the store named in ``config_path``.

    Returns:
        str: The resolved database URL.
    """

    config_path = config_path.expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    handle = data_manager.open_store(settings.database_url)
    try:
        data_manager.create_schema(handle)
    finally:
        data_manager.close_store(handle)
    return settings.database_url


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the hotel ledger record store")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument("--database-url", default=DEFAULT_DATABASE_URL, help="Store URL for a new config.ini.")
    parser.add_argument("--hotel-name", default=DEFAULT_HOTEL_NAME, help="Hotel name for a new config.ini.")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Rewrite config.ini even if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Hotel Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        if args.force or not config_path.exists():
            write_default_config(
                config_path,
                database_url=args.database_url,
                hotel_name=args.hotel_name,
                overwrite=args.force,
            )
        database_url = run_from_config(config_path)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write configuration: {exc}")
        return 1

    print(f"\n[SUCCESS] Ledger schema ready at '{database_url}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
