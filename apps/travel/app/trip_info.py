from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .assignment import Assignment
from .config import PUBLIC_API_BASE_URL, waybill_api_path
from .errors import PersistenceError, SchemaMismatch
from .payload import BookingSyncPayload
from .schema import RowWriter, SchemaSnapshot, find_row_id

TABLE = "trip_information"


def trip_waybill_path(trip_id: int) -> str:
    path = f"/api/trip-information/{int(trip_id)}/surat-jalan"
    return f"{PUBLIC_API_BASE_URL}{path}" if PUBLIC_API_BASE_URL else path


def find_trip_information_id(s: Session, snap: SchemaSnapshot, trip_number: str) -> Optional[int]:
    caps = snap.caps(TABLE)
    if caps is None or not trip_number or not caps.has("trip_number"):
        return None
    return find_row_id(s, caps, {"trip_number": trip_number})


def upsert_trip_information(
    s: Session,
    snap: SchemaSnapshot,
    p: BookingSyncPayload,
    assignment: Assignment,
    passenger_count: int = 0,
) -> Optional[int]:
    """
    One waybill row per trip number. Driver, vehicle and the waybill
    reference are merged so a later sync never blanks them out; the
    booking's waybill API path only fills an empty reference.
    """
    caps = snap.caps(TABLE)
    if caps is None:
        return None
    if not caps.has("trip_number"):
        raise SchemaMismatch(TABLE, "no trip_number column")

    key = p.trip_key
    w = RowWriter(caps)
    w.set("trip_number", key)
    w.set_text(("departure_date", "trip_date"), p.trip_date)
    w.set_text(("departure_time", "trip_time"), p.trip_time)
    w.set_text("route_from", p.route_from)
    w.set_text("route_to", p.route_to)
    w.set_text("category", p.service_type)
    w.set_text("driver_name", assignment.driver_name)
    w.set_text("vehicle_code", assignment.vehicle_label)
    w.set_text(("vehicle_type", "vehicle_name"), assignment.vehicle_type or assignment.vehicle_code)
    w.set_text("license_plate", assignment.license_plate)
    w.set_default("e_surat_jalan", waybill_api_path(p.booking_id))
    w.set_count("passenger_count", passenger_count)
    w.touch("updated_at")

    try:
        existing = find_row_id(s, caps, {"trip_number": key})
        if existing:
            w.update(s, {"id": existing})
            return existing
        w.set("booking_id", p.booking_id)
        w.touch("created_at")
        new_id = w.insert(s)
        return new_id or find_row_id(s, caps, {"trip_number": key})
    except SQLAlchemyError as e:
        raise PersistenceError(TABLE, "upsert", e) from e


def propagate_assignment(s: Session, snap: SchemaSnapshot, trip_number: str, assignment: Assignment) -> int:
    """Copy a driver/vehicle assignment onto the waybill row of a trip."""
    caps = snap.caps(TABLE)
    if caps is None or not trip_number or not caps.has("trip_number") or assignment.empty:
        return 0
    w = RowWriter(caps)
    w.set_text("driver_name", assignment.driver_name)
    w.set_text("vehicle_code", assignment.vehicle_label)
    w.set_text(("vehicle_type", "vehicle_name"), assignment.vehicle_type)
    w.set_text("vehicle", assignment.vehicle_type or assignment.vehicle_code)
    w.set_text("license_plate", assignment.license_plate)
    w.touch("updated_at")
    try:
        return w.update(s, {"trip_number": trip_number})
    except SQLAlchemyError as e:
        raise PersistenceError(TABLE, "update", e) from e
