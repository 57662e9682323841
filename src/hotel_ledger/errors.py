"""Exception hierarchy raised by the ledger layers.

Callers are expected to branch on the class rather than on message text:
validation and authorization failures are never retried, state conflicts
mean "refresh and try again", and transient errors are retried by
:func:`hotel_ledger.core_logic.run_with_retry` before they surface.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for every domain error raised by the ledger."""


class ValidationError(LedgerError):
    """Raised when caller input is incomplete or violates a business rule."""


class MissingRecordError(ValidationError):
    """Raised when a referenced record is unknown or soft-deleted."""


class InsufficientStockError(ValidationError):
    """Raised when an outgoing movement would take more stock than is available."""

    def __init__(
        self,
        item: str,
        department: str,
        *,
        requested: Decimal,
        available: Decimal,
        opening: Decimal,
        restocked: Decimal,
    ) -> None:
        self.item = item
        self.department = department
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for '{item}' in {department}: requested {requested} "
            f"exceeds available {available} (opening {opening} + restocked {restocked})"
        )


class AuthorizationError(LedgerError):
    """Raised when an actor's role is below the tier a transition requires."""


class StateConflictError(LedgerError):
    """Raised when a record is no longer in the state an operation expected."""


class DependencyError(StateConflictError):
    """Raised when an approved entity still has live dependants."""


class TransientStoreError(LedgerError):
    """Raised for store failures that may succeed when retried."""


class SessionExpiredError(TransientStoreError):
    """Raised when the caller's credential no longer validates between retries."""


class BookingConflictError(LedgerError):
    """Raised when a room is already held for an overlapping interval."""

    def __init__(self, room_id: str, record_id: str, source: str, detail: Optional[str] = None) -> None:
        self.room_id = room_id
        self.record_id = record_id
        self.source = source
        label = "an active stay" if source == "active_stay" else "an approved reservation"
        message = f"Room '{room_id}' is already held by {label} (record {record_id})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


__all__ = [
    "LedgerError",
    "ValidationError",
    "MissingRecordError",
    "InsufficientStockError",
    "AuthorizationError",
    "StateConflictError",
    "DependencyError",
    "TransientStoreError",
    "SessionExpiredError",
    "BookingConflictError",
]
