from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .aggregate import TripAggregate
from .assignment import (
    DEPARTURE_TABLE,
    RETURN_TABLE,
    Assignment,
    find_settings_row,
    load_assignment,
    read_assignment,
)
from .config import waybill_api_path
from .errors import PersistenceError, SchemaMismatch
from .payload import (
    BOOKING_LINK_COLUMNS,
    BookingSyncPayload,
    SeatPassenger,
    parse_seats_flexible,
    sort_seats,
)
from .schema import RowWriter, SchemaSnapshot, TableCaps, as_int, as_text, find_row_id, read_row
from .trip_info import trip_waybill_path

_log = logging.getLogger("travel.settings")

DATE_COLUMNS = ("departure_date", "trip_date", "return_date", "date")
TIME_COLUMNS = ("departure_time", "trip_time", "return_time", "time")
CATEGORY_COLUMNS = ("service_type", "category")
STATUS_COLUMNS = ("departure_status", "return_status", "status")


def passenger_list_text(seat_passengers: Sequence[SeatPassenger]) -> str:
    """One line per seat: "1A - Nerry"."""
    lines: List[str] = []
    for sp in sorted(seat_passengers, key=lambda x: x.seat_code):
        if sp.seat_code and sp.name:
            lines.append(f"{sp.seat_code} - {sp.name}")
        elif sp.seat_code or sp.name:
            lines.append(sp.seat_code or sp.name)
    return "\n".join(lines)


def merge_passenger_list(existing: Any, new: str) -> str:
    lines = [ln for ln in as_text(existing).splitlines() if ln.strip()]
    for ln in new.splitlines():
        if ln.strip() and ln not in lines:
            lines.append(ln)
    return "\n".join(lines)


def find_existing_settings(s: Session, caps: TableCaps, p: BookingSyncPayload) -> Optional[int]:
    """
    Locate the trip's settings row: by trip number when the table has
    one, else by the (date, time, route, category) tuple, else by
    (date, category), else by booking linkage. A row created for the
    booking before it had a trip number is adopted rather than shadowed.
    """
    link = caps.first_of(*BOOKING_LINK_COLUMNS)
    if caps.has("trip_number"):
        found = find_row_id(s, caps, {"trip_number": p.trip_key}, coalesce=("trip_number",))
        if found or not link or p.booking_id <= 0:
            return found
        return find_row_id(s, caps, {link: p.booking_id, "trip_number": ""}, coalesce=("trip_number",))

    date_col = caps.first_of(*DATE_COLUMNS)
    time_col = caps.first_of(*TIME_COLUMNS)
    cat_col = caps.first_of(*CATEGORY_COLUMNS)
    route_from, route_to = caps.actual("route_from"), caps.actual("route_to")
    if date_col and time_col and route_from and route_to and cat_col:
        match = {
            date_col: p.trip_date,
            time_col: p.trip_time,
            route_from: p.route_from,
            route_to: p.route_to,
            cat_col: p.service_type,
        }
        return find_row_id(s, caps, match, coalesce=match.keys())
    if date_col and cat_col:
        match = {date_col: p.trip_date, cat_col: p.service_type}
        return find_row_id(s, caps, match, coalesce=match.keys())
    if link:
        return find_row_id(s, caps, {link: p.booking_id})
    raise SchemaMismatch(caps.name, "no trip identity or booking linkage column")


def waybill_reference(trip_info_id: Optional[int], booking_id: int) -> tuple[str, str]:
    if trip_info_id:
        return trip_waybill_path(trip_info_id), f"SuratJalan-TRIP-{trip_info_id}"
    return waybill_api_path(booking_id) + "?scope=trip", f"SuratJalan-BOOKING-{booking_id}"


def upsert_settings(
    s: Session,
    snap: SchemaSnapshot,
    p: BookingSyncPayload,
    agg: TripAggregate,
    *,
    table_name: str,
    seat_passengers: Sequence[SeatPassenger] = (),
    trip_info_id: Optional[int] = None,
) -> Optional[int]:
    """
    Create or refresh the one settings row of this booking's trip in
    `departure_settings` or `return_settings`. Populated fields are only
    replaced by non-empty values; seat numbers accumulate across
    bookings of the same trip.
    """
    caps = snap.caps(table_name)
    if caps is None:
        return None

    assignment = Assignment()
    if table_name == RETURN_TABLE:
        # Return legs inherit the crew recorded on the outbound row.
        assignment = load_assignment(s, snap, p, table_name=RETURN_TABLE)

    try:
        row_id = find_existing_settings(s, caps, p)
        old: Dict[str, Any] = {}
        if row_id:
            old = read_row(s, caps, row_id, ("seat_numbers", "passenger_list"))

        seats = list(parse_seats_flexible(old.get("seat_numbers"))) + list(agg.seats or p.seats)
        merged = sort_seats(seats)
        seat_text = ", ".join(merged)
        count = len(merged)
        if count == 0:
            count = max(agg.count, len(seat_passengers))

        list_text = merge_passenger_list(old.get("passenger_list"), passenger_list_text(seat_passengers))
        surat_url, surat_name = waybill_reference(trip_info_id, p.booking_id)

        w = RowWriter(caps)
        w.set_text("trip_number", p.trip_key)
        w.set_text(("booking_name", "customer_name"), p.passenger_name)
        w.set_text("phone", p.passenger_phone)
        w.set_text("pickup_address", p.pickup_location)
        w.set_text(caps.first_of(*DATE_COLUMNS) or "departure_date", p.trip_date)
        w.set_text(caps.first_of(*TIME_COLUMNS) or "departure_time", p.trip_time)
        w.set_text("route_from", p.route_from)
        w.set_text("route_to", p.route_to)
        w.set_text(CATEGORY_COLUMNS, p.service_type)
        w.set_text("seat_numbers", seat_text)
        w.set_count("passenger_count", count)
        w.set_text("passenger_list", list_text)
        w.set_default("surat_jalan_file", surat_url)
        w.set_default("surat_jalan_file_name", surat_name)
        w.set_text(("driver_name", "driver"), assignment.driver_name)
        w.set_text(("vehicle_code", "car_code"), assignment.vehicle_code)
        w.set_text(("vehicle_type", "vehicle_name"), assignment.vehicle_type)
        w.set_text("license_plate", assignment.license_plate)
        w.touch("updated_at")

        if row_id:
            w.update(s, {"id": row_id})
            _log.debug("settings row refreshed", extra={"table": caps.name, "trip_key": p.trip_key})
            return row_id

        link = caps.first_of(*BOOKING_LINK_COLUMNS)
        if link:
            w.set(link, p.booking_id)
        w.set(caps.first_of(*STATUS_COLUMNS) or "status", "")
        w.touch("created_at")
        new_id = w.insert(s)
        _log.info("settings row created", extra={"table": caps.name, "trip_key": p.trip_key, "booking_id": p.booking_id})
        return new_id
    except SQLAlchemyError as e:
        raise PersistenceError(caps.name, "upsert", e) from e


def copy_departure_meta(s: Session, snap: SchemaSnapshot, trip_number: str, booking_id: int = 0) -> int:
    """
    Copy driver/vehicle from the departure row onto the return row of
    the same trip, filling only fields the return row lacks.
    """
    dep, ret = snap.caps(DEPARTURE_TABLE), snap.caps(RETURN_TABLE)
    if dep is None or ret is None:
        return 0
    dep_id = find_settings_row(s, dep, trip_number=trip_number, booking_id=booking_id)
    ret_id = find_settings_row(s, ret, trip_number=trip_number, booking_id=booking_id)
    if not dep_id or not ret_id:
        return 0
    a = read_assignment(s, dep, dep_id)
    w = RowWriter(ret)
    w.set_default(("driver_name", "driver"), a.driver_name)
    w.set_default(("vehicle_code", "car_code"), a.vehicle_code)
    w.set_default(("vehicle_type", "vehicle_name"), a.vehicle_type)
    w.set_default("license_plate", a.license_plate)
    if not len(w):
        return 0
    w.touch("updated_at")
    return w.update(s, {"id": ret_id})


def settings_booking_ids(s: Session, caps: TableCaps, trip_number: str) -> List[int]:
    """Bookings linked to settings rows sharing a trip number, newest first."""
    link = caps.first_of(*BOOKING_LINK_COLUMNS)
    if not link or not trip_number or not caps.has("trip_number"):
        return []
    stmt = select(caps.table.c[link]).where(caps.col("trip_number") == trip_number)
    if caps.has("id"):
        stmt = stmt.order_by(caps.col("id").desc())
    out: List[int] = []
    for (bid,) in s.execute(stmt).all():
        n = as_int(bid)
        if n > 0 and n not in out:
            out.append(n)
    return out
