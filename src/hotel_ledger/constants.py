"""Enumerations shared across the hotel ledger modules.

The record store, the approval workflow, the reconciliation engine and the
CLI all speak in terms of these closed sets, so they live in one place.
"""

from __future__ import annotations

from datetime import time
from enum import Enum


# Schema version the configuration file must declare before any write.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_CHECK_IN_TIME = time(14, 0)
DEFAULT_CHECK_OUT_TIME = time(11, 0)


class EntityType(str, Enum):
    """Department that owns an operational record."""

    FRONT_DESK = "front_desk"
    KITCHEN = "kitchen"
    BAR = "bar"
    STOREKEEPER = "storekeeper"


class RecordStatus(str, Enum):
    """Lifecycle states of an operational record."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CONVERTED = "converted"


class Role(str, Enum):
    """Staff roles known to the approval workflow."""

    FRONT_DESK = "front_desk"
    KITCHEN = "kitchen"
    BAR = "bar"
    STOREKEEPER = "storekeeper"
    SUPERVISOR = "supervisor"
    MANAGER = "manager"
    ADMIN = "admin"


class Department(str, Enum):
    """Stock-holding departments used by the reconciliation engine."""

    STORE = "STORE"
    KITCHEN = "KITCHEN"
    BAR = "BAR"


class RecordType(str, Enum):
    """Discriminant values carried in ``data["type"]``."""

    ROOM_BOOKING = "room_booking"
    ROOM_RESERVATION = "room_reservation"
    CONFIG_CATEGORY = "config_category"
    CONFIG_COLLECTION = "config_collection"
    CONFIG_ITEM = "config_item"
    OPENING_STOCK = "opening_stock"
    STOCK_RESTOCK = "stock_restock"
    SOLD = "sold"
    STOCK_ISSUED = "stock_issued"
    CONSUMED = "consumed"
    ADJUSTMENT = "adjustment"
    INTERRUPTED_STAY = "interrupted_stay"
    OPERATIONAL_NOTE = "operational_note"
    REFUND_RECORD = "refund_record"
    PAYMENT_RECORD = "payment_record"
    PENALTY_FEE = "penalty_fee"
    DISCOUNT_APPLIED = "discount_applied"
    STAY_EXTENSION = "stay_extension"
    CHECKOUT_RECORD = "checkout_record"


class MovementType(str, Enum):
    """Record types that move stock in or out of a department."""

    OPENING_STOCK = "opening_stock"
    STOCK_RESTOCK = "stock_restock"
    SOLD = "sold"
    STOCK_ISSUED = "stock_issued"
    CONSUMED = "consumed"
    ADJUSTMENT = "adjustment"


class ConflictSource(str, Enum):
    """Population in which a double-booking conflict was found."""

    ACTIVE_STAY = "active_stay"
    RESERVATION = "reservation"


INCOMING_MOVEMENTS = frozenset({MovementType.OPENING_STOCK, MovementType.STOCK_RESTOCK})
OUTGOING_MOVEMENTS = frozenset({MovementType.SOLD, MovementType.STOCK_ISSUED, MovementType.CONSUMED})

CONFIG_RECORD_TYPES = frozenset(
    {RecordType.CONFIG_CATEGORY, RecordType.CONFIG_COLLECTION, RecordType.CONFIG_ITEM}
)

# Roles allowed to move a pending record to approved or rejected.
APPROVER_ROLES = frozenset({Role.SUPERVISOR, Role.MANAGER, Role.ADMIN})
# Roles whose submissions skip the pending queue entirely.
AUTO_APPROVE_ROLES = frozenset({Role.MANAGER, Role.ADMIN})
# Roles allowed to retire approved configuration entities.
ENTITY_ADMIN_ROLES = frozenset({Role.MANAGER, Role.ADMIN})

ENTITY_DEPARTMENTS = {
    EntityType.STOREKEEPER: Department.STORE,
    EntityType.KITCHEN: Department.KITCHEN,
    EntityType.BAR: Department.BAR,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_CHECK_IN_TIME",
    "DEFAULT_CHECK_OUT_TIME",
    "EntityType",
    "RecordStatus",
    "Role",
    "Department",
    "RecordType",
    "MovementType",
    "ConflictSource",
    "INCOMING_MOVEMENTS",
    "OUTGOING_MOVEMENTS",
    "CONFIG_RECORD_TYPES",
    "APPROVER_ROLES",
    "AUTO_APPROVE_ROLES",
    "ENTITY_ADMIN_ROLES",
    "ENTITY_DEPARTMENTS",
]
