from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import passengers, trip_info
from .assignment import DEPARTURE_TABLE, RETURN_TABLE, find_settings_row, read_assignment
from .errors import NotFound, PersistenceError
from .payload import BOOKING_LINK_COLUMNS, ROLE_DEPARTURE, ROLE_RETURN, parse_seats_flexible, seats_csv
from .schema import RowWriter, SchemaSnapshot, TableCaps, as_int, as_text, read_row
from .settings_sync import copy_departure_meta, settings_booking_ids

_log = logging.getLogger("travel.settings")

KIND_DEPARTURE = "departure"
KIND_RETURN = "return"

_KINDS = {
    KIND_DEPARTURE: (DEPARTURE_TABLE, "departure_status", "Berangkat", ROLE_DEPARTURE),
    KIND_RETURN: (RETURN_TABLE, "return_status", "Pulang", ROLE_RETURN),
}

# Patch key -> candidate columns. Empty strings never clear these.
_MERGE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "booking_name": ("booking_name", "customer_name"),
    "phone": ("phone",),
    "pickup_address": ("pickup_address",),
    "driver_name": ("driver_name", "driver"),
    "vehicle_code": ("vehicle_code", "car_code"),
    "vehicle_type": ("vehicle_type", "vehicle_name"),
    "license_plate": ("license_plate",),
    "surat_jalan_file": ("surat_jalan_file",),
    "surat_jalan_file_name": ("surat_jalan_file_name",),
    "route_from": ("route_from",),
    "route_to": ("route_to",),
    "trip_number": ("trip_number",),
}

# Patch key -> candidate columns, written as given. Both settings tables
# keep their schedule under departure_date/departure_time.
_PLAIN_FIELDS: Dict[str, Tuple[str, ...]] = {
    "departure_date": ("departure_date", "trip_date", "date"),
    "departure_time": ("departure_time", "trip_time", "time"),
    "service_type": ("service_type", "category"),
    "passenger_list": ("passenger_list",),
}

# Schedule keys only a return row accepts.
_RETURN_FIELDS: Dict[str, Tuple[str, ...]] = {
    "return_date": ("return_date", "trip_date", "date"),
    "return_time": ("return_time", "trip_time", "time"),
}

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")


def snake_key(key: str) -> str:
    """departureStatus -> departure_status; snake_case passes through."""
    return _CAMEL_RE.sub(r"_\1", key.strip()).lower()


def _status_column(caps: TableCaps, kind: str) -> str:
    return caps.first_of(_KINDS[kind][1], "status") or ""


def _build_writer(caps: TableCaps, kind: str, patch: Dict[str, Any]) -> RowWriter:
    w = RowWriter(caps)
    for key, value in patch.items():
        if key in _MERGE_FIELDS:
            w.set_text(_MERGE_FIELDS[key], value)
        elif key in _PLAIN_FIELDS:
            w.set(_PLAIN_FIELDS[key], as_text(value))
        elif key in _RETURN_FIELDS:
            if kind == KIND_RETURN:
                w.set(_RETURN_FIELDS[key], as_text(value))
        elif key in ("status", "departure_status", "return_status"):
            col = _status_column(caps, kind)
            if col:
                w.set(col, as_text(value))
        elif key == "seat_numbers":
            seats = value if isinstance(value, (list, tuple)) else parse_seats_flexible(value)
            w.set("seat_numbers", seats_csv(seats))
        elif key == "passenger_count":
            w.set("passenger_count", as_int(value))
        elif key in BOOKING_LINK_COLUMNS:
            bid = as_int(value)
            if bid > 0:
                w.set(key, bid)
    return w


def _linked_bookings(s: Session, caps: TableCaps, row: Dict[str, Any], trip_number: str) -> List[int]:
    for link in BOOKING_LINK_COLUMNS:
        bid = as_int(row.get(link))
        if bid > 0:
            return [bid]
    return settings_booking_ids(s, caps, trip_number)[:1]


def apply_settings_patch(s: Session, kind: str, row_id: int, patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a partial update to a departure or return settings row. Only
    keys present in `patch` are considered. When the row ends up marked
    Berangkat / Pulang its driver and vehicle are pushed onto the trip's
    waybill row and onto the passengers of the linked booking.
    """
    if kind not in _KINDS:
        raise ValueError(f"unknown settings kind: {kind!r}")
    table_name, _, marked_status, trip_role = _KINDS[kind]
    snap = SchemaSnapshot(s)
    caps = snap.caps(table_name)
    if caps is None or not caps.has("id"):
        raise NotFound(table_name)
    if not read_row(s, caps, row_id, ("id",)):
        raise NotFound(table_name, row_id)

    normalized = {snake_key(str(k)): v for k, v in (patch or {}).items()}
    w = _build_writer(caps, kind, normalized)
    if len(w):
        w.touch("updated_at")
    try:
        changed = w.update(s, {"id": row_id}) if len(w) else 0
    except SQLAlchemyError as e:
        raise PersistenceError(table_name, "update", e) from e

    status_col = _status_column(caps, kind)
    wanted = ["trip_number", *BOOKING_LINK_COLUMNS]
    if status_col:
        wanted.append(status_col)
    row = read_row(s, caps, row_id, wanted)
    trip_number = as_text(row.get("trip_number"))
    status = as_text(row.get(status_col.lower())) if status_col else ""

    booking_ids = _linked_bookings(s, caps, row, trip_number)
    if kind == KIND_RETURN and trip_number:
        copy_departure_meta(s, snap, trip_number, booking_ids[0] if booking_ids else 0)

    out: Dict[str, Any] = {
        "id": row_id,
        "kind": kind,
        "updated": bool(changed),
        "status": status,
        "trip_number": trip_number,
        "propagated": {},
    }
    if status.lower() != marked_status.lower():
        return out

    assignment = read_assignment(s, caps, row_id)
    if assignment.empty:
        other = snap.caps(DEPARTURE_TABLE) if kind == KIND_RETURN else None
        dep_id = find_settings_row(s, other, trip_number=trip_number) if other is not None else None
        if dep_id:
            assignment = read_assignment(s, other, dep_id)

    role_filter = trip_role if kind == KIND_RETURN else ""
    out["propagated"] = {
        trip_info.TABLE: trip_info.propagate_assignment(s, snap, trip_number, assignment),
        "passengers": passengers.propagate_assignment(
            s, snap, booking_ids, assignment, trip_role=role_filter, trip_number=trip_number
        ),
    }
    _log.info(
        "settings row marked %s",
        status,
        extra={"table": table_name, "trip_key": trip_number, "booking_id": booking_ids[0] if booking_ids else None},
    )
    return out
