from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import NotFound, PersistenceError
from .payload import BOOKING_LINK_COLUMNS, booking_table, normalize_trip_role
from .schema import RowWriter, SchemaSnapshot, as_int, as_text, read_row

_log = logging.getLogger("travel.payments")

VALIDATIONS_TABLE = "payment_validations"
STATUS_PAID = "Lunas"
VALIDATION_APPROVED = "Sukses"


class ValidationIncomplete(ValueError):
    """An approved validation cannot be synced (no booking or no trip role)."""


def mark_booking_paid(s: Session, snap: SchemaSnapshot, booking_id: int, method: str = "") -> int:
    caps = booking_table(snap)
    if caps is None or not caps.has("id"):
        raise NotFound("booking table")
    if not read_row(s, caps, booking_id, ("id",)):
        raise NotFound("booking", booking_id)
    w = RowWriter(caps)
    if method:
        w.set("payment_method", method)
    w.set("payment_status", STATUS_PAID)
    w.touch("updated_at")
    try:
        return w.update(s, {"id": booking_id})
    except SQLAlchemyError as e:
        raise PersistenceError(caps.name, "update", e) from e


def confirm_cash(s: Session, booking_id: int) -> int:
    """Record a cash payment on the booking row; the caller syncs in the same transaction."""
    snap = SchemaSnapshot(s)
    n = mark_booking_paid(s, snap, booking_id, method="cash")
    _log.info("cash payment confirmed", extra={"booking_id": booking_id})
    return n


def approve_validation(s: Session, validation_id: int) -> int:
    """
    Approve a payment validation and mark its booking paid. Returns the
    booking id to sync.
    """
    snap = SchemaSnapshot(s)
    caps = snap.caps(VALIDATIONS_TABLE)
    if caps is None or not caps.has("id"):
        raise NotFound(VALIDATIONS_TABLE)
    link = caps.first_of(*BOOKING_LINK_COLUMNS)
    row = read_row(s, caps, validation_id, ("id", "trip_role", *BOOKING_LINK_COLUMNS))
    if not row:
        raise NotFound("payment validation", validation_id)

    booking_id = as_int(row.get(link.lower())) if link else 0
    if booking_id <= 0:
        raise ValidationIncomplete(f"payment validation {validation_id} has no booking")
    role = normalize_trip_role(row.get("trip_role"))
    if not as_text(role):
        raise ValidationIncomplete(f"payment validation {validation_id} has no trip role")

    w = RowWriter(caps)
    w.set(("payment_status", "status"), VALIDATION_APPROVED)
    w.set("trip_role", role)
    w.touch("updated_at")
    try:
        w.update(s, {"id": validation_id})
    except SQLAlchemyError as e:
        raise PersistenceError(VALIDATIONS_TABLE, "update", e) from e
    mark_booking_paid(s, snap, booking_id)
    _log.info("payment validation approved", extra={"booking_id": booking_id})
    return booking_id
