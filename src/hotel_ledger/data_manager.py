"""Data access layer for the hotel ledger.

This module owns every interaction with the durable record store. Business
rules belong in :mod:`hotel_ledger.core_logic`; the helpers here only read,
append, and conditionally update rows.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Store lifecycle: creating the SQLAlchemy engine and session factory when a
   process starts, and disposing of them when it stops.
3. Record operations: appending versions, resolving the latest version of a
   chain, soft deletes, conditional status transitions, and the canonical
   (latest approved, non-deleted) projection every derived read relies on.

Concurrency is delegated to the store itself: version numbers are protected by
a unique constraint and status transitions are ``UPDATE ... WHERE status = ?``
statements whose row counts tell the caller whether it won the race. Whole
transactions are serialized as well, so checks made against the ledger still
hold when the write commits.
"""

from __future__ import annotations

import configparser
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    event,
    func,
    inspect,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from . import log
from .constants import DEFAULT_CHECK_IN_TIME, DEFAULT_CHECK_OUT_TIME, RecordStatus


CONFIG_FILE_NAME = "config.ini"
RECORDS_TABLE = "operational_records"
# Versions in these states never become the head of their chain.
REFUSED_STATUSES = (RecordStatus.REJECTED, RecordStatus.EXPIRED)
SQLITE_BUSY_TIMEOUT_SECONDS = 30

JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY_TYPE = Numeric(12, 2)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    database_url: str
    hotel_name: str
    schema_version: str
    check_in_time: time = DEFAULT_CHECK_IN_TIME
    check_out_time: time = DEFAULT_CHECK_OUT_TIME
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.4


class Base(DeclarativeBase):
    pass


class OperationalRecord(Base):
    """ORM mapping for the single append-only ledger table."""

    __tablename__ = RECORDS_TABLE
    __table_args__ = (
        UniqueConstraint("chain_id", "record_type", "version_no", name="uq_operational_records_chain_version"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'expired', 'converted')",
            name="ck_operational_records_status",
        ),
        CheckConstraint("version_no >= 1", name="ck_operational_records_version"),
        Index("ix_operational_records_projection", "record_type", "status", "deleted_at"),
        Index("ix_operational_records_subject", "record_type", "subject"),
        Index("ix_operational_records_batch", "batch_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    original_id: Mapped[Optional[str]] = mapped_column(String(36))
    chain_id: Mapped[str] = mapped_column(String(36), nullable=False)
    version_no: Mapped[int] = mapped_column(Integer, nullable=False)
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    record_type: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(255))
    department: Mapped[Optional[str]] = mapped_column(String(16))
    event_date: Mapped[Optional[date]] = mapped_column(Date)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON_TYPE, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    financial_amount: Mapped[Decimal] = mapped_column(MONEY_TYPE, nullable=False)
    submitted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64))
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


@dataclass(frozen=True)
class RecordRow:
    """Detached, immutable view of one ``operational_records`` row."""

    id: str
    original_id: Optional[str]
    chain_id: str
    version_no: int
    batch_id: str
    entity_type: str
    record_type: str
    subject: Optional[str]
    department: Optional[str]
    event_date: Optional[date]
    data: Dict[str, Any]
    status: str
    financial_amount: Decimal
    submitted_by: str
    created_at: datetime
    reviewed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class StoreHandle:
    """Engine plus session factory, created once per process."""

    engine: Engine
    session_factory: sessionmaker = field(repr=False)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that tells the ledger where its store lives.

    If the caller provides ``explicit_path`` the value is returned immediately
    so that tests and scripts can target a specific file. Otherwise the search
    walks from the current working directory toward the filesystem root and
    returns the first ``CONFIG_FILE_NAME`` it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The caller's path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for candidate_dir in (current, *current.parents):
        candidate = candidate_dir / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def resolve_database_url(raw_url: str, base_path: Optional[Path] = None) -> str:
    """Anchor relative SQLite file URLs to ``base_path``.

    ``sqlite:///ledger.db`` in a config file means "next to the config file",
    not "next to wherever the process happens to be started". Other URLs,
    in-memory SQLite, and absolute paths are returned unchanged.
    """

    prefix = "sqlite:///"
    if not raw_url.startswith(prefix):
        return raw_url
    location = raw_url[len(prefix):]
    if not location or location.startswith(":memory:") or Path(location).is_absolute():
        return raw_url
    anchor = base_path if base_path is not None else Path.cwd()
    return f"{prefix}{(anchor / location).resolve()}"


def _parse_clock(raw: str, option: str) -> time:
    try:
        return time.fromisoformat(raw.strip())
    except ValueError as exc:
        raise KeyError(f"Invalid time for {option}: {raw!r}") from exc


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Defaults]`` and ``[Retry]`` fall
    back to the standard check-in/check-out times and a three-attempt retry
    policy with 0.4 second linear backoff.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative SQLite
            database paths. Defaults to :func:`Path.cwd`.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing, or a value
            cannot be interpreted.
    """

    try:
        database_url = parser.get("System", "DatabaseUrl")
        hotel_name = parser.get("System", "HotelName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    check_in_raw = parser.get("Defaults", "CheckInTime", fallback=DEFAULT_CHECK_IN_TIME.strftime("%H:%M"))
    check_out_raw = parser.get("Defaults", "CheckOutTime", fallback=DEFAULT_CHECK_OUT_TIME.strftime("%H:%M"))
    try:
        attempts = parser.getint("Retry", "Attempts", fallback=3)
        backoff = parser.getfloat("Retry", "BackoffSeconds", fallback=0.4)
    except ValueError as exc:
        raise KeyError(f"Invalid retry configuration: {exc}") from exc
    if attempts < 1:
        raise KeyError("Retry Attempts must be at least 1")

    return ConfigSettings(
        database_url=resolve_database_url(database_url, base_path),
        hotel_name=hotel_name,
        schema_version=schema_version,
        check_in_time=_parse_clock(check_in_raw, "CheckInTime"),
        check_out_time=_parse_clock(check_out_raw, "CheckOutTime"),
        retry_attempts=attempts,
        retry_backoff_seconds=backoff,
    )


# ---------------------------------------------------------------------------
# Store lifecycle
# ---------------------------------------------------------------------------


def open_store(database_url: str) -> StoreHandle:
    """Create the engine and session factory for ``database_url``.

    SQLite connections are shared across threads and in-memory databases are
    pinned to a single connection so every session sees the same data.

    Transactions are serialized so that a business rule checked against the
    ledger still holds when the write lands: SQLite transactions take the
    database write lock as they begin, and PostgreSQL runs at ``SERIALIZABLE``
    isolation, where a losing transaction fails with a retryable
    :class:`~sqlalchemy.exc.OperationalError`.

    Args:
        database_url (str): SQLAlchemy URL of the record store.

    Returns:
        StoreHandle: Handle to pass to :func:`transaction` and, at shutdown,
            :func:`close_store`.
    """

    options: Dict[str, Any] = {"pool_pre_ping": True}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        options["connect_args"] = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            options["poolclass"] = StaticPool
    elif database_url.startswith("postgresql"):
        options["isolation_level"] = "SERIALIZABLE"
    engine = create_engine(database_url, **options)
    if is_sqlite:
        _lock_sqlite_on_begin(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    log.debug("Opened record store at '%s'", engine.url.render_as_string(hide_password=True))
    return StoreHandle(engine=engine, session_factory=session_factory)


def _lock_sqlite_on_begin(engine: Engine) -> None:
    """Emit ``BEGIN IMMEDIATE`` instead of letting pysqlite defer ``BEGIN``.

    pysqlite only opens a transaction at the first write, so two writers could
    both read the ledger before either holds the lock.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def create_schema(handle: StoreHandle) -> None:
    """Create the ledger table and its constraints if they are missing."""

    Base.metadata.create_all(handle.engine)
    log.info("Ensured ledger schema on '%s'", handle.engine.url.render_as_string(hide_password=True))


def verify_schema(handle: StoreHandle) -> None:
    """Fail fast when the store has not been initialized.

    Raises:
        RuntimeError: If ``operational_records`` does not exist.
    """

    if not inspect(handle.engine).has_table(RECORDS_TABLE):
        raise RuntimeError(
            f"Record store has no '{RECORDS_TABLE}' table; run hotel-ledger-setup first"
        )


def close_store(handle: StoreHandle) -> None:
    """Release pooled connections held by ``handle``."""

    handle.engine.dispose()
    log.debug("Closed record store")


@contextmanager
def transaction(handle: StoreHandle) -> Iterator[Session]:
    """Yield a session whose work commits on success and rolls back on error."""

    with handle.session_factory() as session:
        with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Record operations
# ---------------------------------------------------------------------------


def to_record_row(model: OperationalRecord) -> RecordRow:
    """Detach an ORM instance into a :class:`RecordRow`.

    Money is normalized to :class:`~decimal.Decimal` because some drivers hand
    back floats for ``NUMERIC`` columns.
    """

    amount = model.financial_amount
    return RecordRow(
        id=model.id,
        original_id=model.original_id,
        chain_id=model.chain_id,
        version_no=model.version_no,
        batch_id=model.batch_id,
        entity_type=model.entity_type,
        record_type=model.record_type,
        subject=model.subject,
        department=model.department,
        event_date=model.event_date,
        data=dict(model.data or {}),
        status=model.status,
        financial_amount=amount if isinstance(amount, Decimal) else Decimal(str(amount or 0)),
        submitted_by=model.submitted_by,
        created_at=model.created_at,
        reviewed_by=model.reviewed_by,
        rejection_reason=model.rejection_reason,
        reviewed_at=model.reviewed_at,
        deleted_at=model.deleted_at,
    )


def append_record(session: Session, row: RecordRow) -> RecordRow:
    """Insert ``row`` and flush so constraint violations surface immediately.

    Raises:
        sqlalchemy.exc.IntegrityError: If another writer already claimed the
            same ``(chain_id, record_type, version_no)``.
    """

    session.add(OperationalRecord(**asdict(row)))
    session.flush()
    return row


def get_record(session: Session, record_id: str) -> Optional[RecordRow]:
    """Return the row for ``record_id`` (deleted or not), or ``None``."""

    model = session.get(OperationalRecord, record_id)
    return to_record_row(model) if model is not None else None


def latest_version(session: Session, chain_id: str, record_type: str) -> Optional[RecordRow]:
    """Return the live head of a chain: highest version, then newest, not deleted.

    Rejected and expired versions are skipped, so a refused correction leaves
    the version it tried to replace as the head.
    """

    stmt = (
        select(OperationalRecord)
        .where(
            OperationalRecord.chain_id == chain_id,
            OperationalRecord.record_type == record_type,
            OperationalRecord.deleted_at.is_(None),
            OperationalRecord.status.not_in([status.value for status in REFUSED_STATUSES]),
        )
        .order_by(OperationalRecord.version_no.desc(), OperationalRecord.created_at.desc())
        .limit(1)
    )
    model = session.scalars(stmt).first()
    return to_record_row(model) if model is not None else None


def next_version_no(session: Session, chain_id: str, record_type: str) -> int:
    """Return one past the highest version ever written for the chain.

    Deleted versions are counted so that a number is never reused.
    """

    stmt = select(func.max(OperationalRecord.version_no)).where(
        OperationalRecord.chain_id == chain_id,
        OperationalRecord.record_type == record_type,
    )
    current = session.scalar(stmt)
    return (current or 0) + 1


def chain_records(session: Session, chain_id: str, *, record_type: Optional[str] = None) -> List[RecordRow]:
    """Return every version in a chain, deleted ones included, oldest first."""

    stmt = select(OperationalRecord).where(OperationalRecord.chain_id == chain_id)
    if record_type is not None:
        stmt = stmt.where(OperationalRecord.record_type == record_type)
    stmt = stmt.order_by(OperationalRecord.record_type, OperationalRecord.version_no, OperationalRecord.created_at)
    return [to_record_row(model) for model in session.scalars(stmt)]


def batch_records(session: Session, batch_id: str, *, statuses: Optional[Iterable[RecordStatus]] = None) -> List[RecordRow]:
    """Return the live members of a submission batch."""

    stmt = select(OperationalRecord).where(
        OperationalRecord.batch_id == batch_id,
        OperationalRecord.deleted_at.is_(None),
    )
    if statuses is not None:
        stmt = stmt.where(OperationalRecord.status.in_([status.value for status in statuses]))
    stmt = stmt.order_by(OperationalRecord.created_at, OperationalRecord.id)
    return [to_record_row(model) for model in session.scalars(stmt)]


def soft_delete(
    session: Session,
    record_ids: Sequence[str],
    *,
    when: datetime,
    statuses: Optional[Iterable[RecordStatus]] = None,
) -> int:
    """Stamp ``deleted_at`` on live rows, optionally only those in ``statuses``.

    Returns:
        int: Number of rows that were actually marked.
    """

    if not record_ids:
        return 0
    stmt = update(OperationalRecord).where(
        OperationalRecord.id.in_(list(record_ids)),
        OperationalRecord.deleted_at.is_(None),
    )
    if statuses is not None:
        stmt = stmt.where(OperationalRecord.status.in_([status.value for status in statuses]))
    result = session.execute(
        stmt.values(deleted_at=when).execution_options(synchronize_session=False)
    )
    return result.rowcount


def transition_status(
    session: Session,
    record_ids: Sequence[str],
    *,
    from_statuses: Iterable[RecordStatus],
    to_status: RecordStatus,
    reviewed_by: str,
    reviewed_at: datetime,
    rejection_reason: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> int:
    """Conditionally move live rows from one of ``from_statuses`` to ``to_status``.

    The ``WHERE`` clause repeats the expected source state, so when two
    reviewers race only one ``UPDATE`` matches. Callers compare the returned
    row count with ``len(record_ids)`` to detect a lost race.

    Args:
        session (Session): Open session inside a transaction.
        record_ids (Sequence[str]): Rows to transition.
        from_statuses (Iterable[RecordStatus]): Acceptable source states.
        to_status (RecordStatus): Target state.
        reviewed_by (str): Actor performing the transition.
        reviewed_at (datetime): Transition timestamp.
        rejection_reason (str | None): Stored for rejections.
        data (dict | None): Replacement payload, used by conversions to record
            the booking they produced.

    Returns:
        int: Number of rows updated.
    """

    if not record_ids:
        return 0
    values: Dict[str, Any] = {
        "status": to_status.value,
        "reviewed_by": reviewed_by,
        "reviewed_at": reviewed_at,
    }
    if rejection_reason is not None:
        values["rejection_reason"] = rejection_reason
    if data is not None:
        values["data"] = data
    stmt = (
        update(OperationalRecord)
        .where(
            OperationalRecord.id.in_(list(record_ids)),
            OperationalRecord.status.in_([status.value for status in from_statuses]),
            OperationalRecord.deleted_at.is_(None),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount


def live_records(
    session: Session,
    record_type: str,
    *,
    subject: Optional[str] = None,
    statuses: Optional[Iterable[RecordStatus]] = None,
) -> List[RecordRow]:
    """Return the live head of every chain of ``record_type``.

    A chain whose versions are all soft-deleted, rejected or expired
    contributes nothing. When ``statuses`` is given, heads in other states are
    filtered out after the head has been chosen, so an older approved version
    never stands in for a newer pending one.
    """

    heads = (
        select(
            OperationalRecord.chain_id.label("chain_id"),
            func.max(OperationalRecord.version_no).label("version_no"),
        )
        .where(
            OperationalRecord.record_type == record_type,
            OperationalRecord.deleted_at.is_(None),
            OperationalRecord.status.not_in([status.value for status in REFUSED_STATUSES]),
        )
        .group_by(OperationalRecord.chain_id)
        .subquery()
    )
    stmt = select(OperationalRecord).join(
        heads,
        and_(
            OperationalRecord.chain_id == heads.c.chain_id,
            OperationalRecord.version_no == heads.c.version_no,
        ),
    ).where(OperationalRecord.record_type == record_type, OperationalRecord.deleted_at.is_(None))
    if subject is not None:
        stmt = stmt.where(func.lower(OperationalRecord.subject) == subject.strip().lower())
    if statuses is not None:
        stmt = stmt.where(OperationalRecord.status.in_([status.value for status in statuses]))
    stmt = stmt.order_by(OperationalRecord.subject, OperationalRecord.created_at)
    return [to_record_row(model) for model in session.scalars(stmt)]


def canonical_records(
    session: Session,
    record_types: Optional[Iterable[str]] = None,
    *,
    subject: Optional[str] = None,
    department: Optional[str] = None,
    exclude_ids: Iterable[str] = (),
    exclude_chain_ids: Iterable[str] = (),
) -> List[RecordRow]:
    """Return the canonical version of every matching chain.

    The canonical version is the highest-numbered version that is both
    ``approved`` and not soft-deleted. Filters on subject and department are
    applied to that version only, so an edit that renamed an item or moved it
    to another department is never counted under its old values.

    Args:
        session (Session): Open session.
        record_types (Iterable[str] | None): Tags to include; ``None`` means
            every tag.
        subject (str | None): Case-insensitive subject match (item name or
            room id).
        department (str | None): Department code for stock movements.
        exclude_ids (Iterable[str]): Record ids to leave out.
        exclude_chain_ids (Iterable[str]): Chains to leave out entirely.

    Returns:
        list[RecordRow]: Rows ordered by ``event_date`` then ``created_at``.
    """

    approved_heads = select(
        OperationalRecord.chain_id.label("chain_id"),
        OperationalRecord.record_type.label("record_type"),
        func.max(OperationalRecord.version_no).label("version_no"),
    ).where(
        OperationalRecord.status == RecordStatus.APPROVED.value,
        OperationalRecord.deleted_at.is_(None),
    )
    types = list(record_types) if record_types is not None else None
    if types is not None:
        approved_heads = approved_heads.where(OperationalRecord.record_type.in_(types))
    heads = approved_heads.group_by(OperationalRecord.chain_id, OperationalRecord.record_type).subquery()

    stmt = select(OperationalRecord).join(
        heads,
        and_(
            OperationalRecord.chain_id == heads.c.chain_id,
            OperationalRecord.record_type == heads.c.record_type,
            OperationalRecord.version_no == heads.c.version_no,
        ),
    )
    if subject is not None:
        stmt = stmt.where(func.lower(OperationalRecord.subject) == subject.strip().lower())
    if department is not None:
        stmt = stmt.where(OperationalRecord.department == department)
    excluded = list(exclude_ids)
    if excluded:
        stmt = stmt.where(OperationalRecord.id.not_in(excluded))
    excluded_chains = list(exclude_chain_ids)
    if excluded_chains:
        stmt = stmt.where(OperationalRecord.chain_id.not_in(excluded_chains))
    stmt = stmt.order_by(OperationalRecord.event_date, OperationalRecord.created_at)
    return [to_record_row(model) for model in session.scalars(stmt)]
