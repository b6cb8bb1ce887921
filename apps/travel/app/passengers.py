from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .aggregate import TripAggregate
from .assignment import Assignment
from .config import waybill_api_path
from .errors import PersistenceError, SchemaMismatch
from .fares import resolve_fare
from .payload import BOOKING_LINK_COLUMNS, BookingSyncPayload, SeatPassenger
from .schema import RowWriter, SchemaSnapshot, TableCaps, find_row_id, read_row

_log = logging.getLogger("travel.passengers")

PASSENGER_TABLES = ("passengers", "passenger_seats")
SEAT_COLUMNS = ("selected_seats", "seat_code", "seat_number")
DATE_COLUMNS = ("date", "departure_date", "trip_date")
TIME_COLUMNS = ("departure_time", "trip_time")
PHONE_COLUMNS = ("passenger_phone", "phone")


def booking_hint(booking_id: int) -> str:
    return f"BOOKING_ID:{booking_id}"


def eticket_invoice_hint(booking_id: int) -> str:
    return f"ETICKET_INVOICE_FROM_BOOKING:{booking_id}"


def notes_hint(p: BookingSyncPayload) -> str:
    """Machine-readable line appended to passenger notes."""
    return json.dumps(
        {
            "booking_id": p.booking_id,
            "hint": booking_hint(p.booking_id),
            "eticket_invoice": eticket_invoice_hint(p.booking_id),
            "surat_jalan_api": waybill_api_path(p.booking_id),
            "trip": f"{p.trip_date} {p.trip_time}".strip(),
            "route": f"{p.route_from}-{p.route_to}",
        },
        separators=(",", ":"),
    )


def _mentions_booking(notes: str, booking_id: int) -> bool:
    if re.search(rf"BOOKING_ID:{booking_id}\b", notes):
        return True
    for line in notes.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            blob = json.loads(line)
        except ValueError:
            continue
        if isinstance(blob, dict) and str(blob.get("booking_id", "")) == str(booking_id):
            return True
    return False


def merge_notes(existing: Optional[str], booking_id: int, hint: str) -> str:
    """
    Append `hint` to free-text notes unless they already carry a hint for
    this booking. Whatever staff typed is kept as-is.
    """
    text = (existing or "").strip()
    if not text:
        return hint
    if _mentions_booking(text, booking_id):
        return existing or ""
    return f"{text}\n{hint}"


@dataclass
class PassengerSyncResult:
    table: str = ""
    inserted: int = 0
    updated: int = 0

    def as_dict(self) -> Dict[str, object]:
        return {"table": self.table, "inserted": self.inserted, "updated": self.updated}


def passenger_table(snap: SchemaSnapshot) -> Optional[TableCaps]:
    return snap.first_table(*PASSENGER_TABLES)


def seat_amount(
    p: BookingSyncPayload, agg: TripAggregate, paid_price: int = 0
) -> int:
    """
    Fare recorded for one seat: the seat's own paid price, else the
    booking total split over the booking's seats, else the stored price
    per seat, else the trip aggregate, else the route fare.
    """
    if paid_price > 0:
        return paid_price
    if p.total_amount > 0:
        return int(round(p.total_amount / p.seat_count))
    if p.price_per_seat > 0:
        return p.price_per_seat
    if agg.dept_total > 0 and agg.dept_count > 0:
        return int(round(agg.dept_total / agg.dept_count))
    return resolve_fare(p.route_from, p.route_to)


def _find_existing(s: Session, caps: TableCaps, p: BookingSyncPayload, seat: str, phone: str) -> Optional[int]:
    seat_col = caps.first_of(*SEAT_COLUMNS)
    link = caps.first_of(*BOOKING_LINK_COLUMNS)
    if link and seat_col:
        match = {link: p.booking_id, seat_col: seat}
        soft = [seat_col]
        if caps.has("trip_role"):
            match["trip_role"] = p.trip_role
            soft.append("trip_role")
        return find_row_id(s, caps, match, coalesce=soft)
    date_col = caps.first_of(*DATE_COLUMNS)
    time_col = caps.first_of(*TIME_COLUMNS)
    phone_col = caps.first_of(*PHONE_COLUMNS)
    if date_col and time_col and phone_col and seat_col:
        match = {date_col: p.trip_date, time_col: p.trip_time, phone_col: phone, seat_col: seat}
        return find_row_id(s, caps, match, coalesce=match.keys())
    raise SchemaMismatch(caps.name, "no booking linkage or (date, time, phone, seat) key")


def upsert_passengers(
    s: Session,
    snap: SchemaSnapshot,
    p: BookingSyncPayload,
    agg: TripAggregate,
    assignment: Assignment,
    seat_passengers: Sequence[SeatPassenger] = (),
) -> PassengerSyncResult:
    """
    One row per (booking, seat[, trip role]). Rows are never deleted; a
    re-run updates what is there and leaves staff notes intact.
    """
    caps = passenger_table(snap)
    if caps is None:
        return PassengerSyncResult()
    result = PassengerSyncResult(table=caps.name)

    by_seat: Dict[str, SeatPassenger] = {sp.seat_code: sp for sp in seat_passengers if sp.seat_code}
    seats: List[str] = list(p.seats) or [""]
    hint = notes_hint(p)
    dest = p.dropoff_location or p.route_to
    eticket = p.eticket_ref or eticket_invoice_hint(p.booking_id)

    try:
        for seat in seats:
            sp = by_seat.get(seat) or SeatPassenger(seat_code=seat)
            name = sp.name or p.passenger_name or p.customer_name
            phone = sp.phone or p.passenger_phone or p.customer_phone
            amount = seat_amount(p, agg, sp.paid_price)

            row_id = _find_existing(s, caps, p, seat, phone)
            w = RowWriter(caps)
            w.set_text(("passenger_name", "name"), name)
            w.set_text(PHONE_COLUMNS, phone)
            w.set_text(caps.first_of(*DATE_COLUMNS) or "date", p.trip_date)
            w.set_text(caps.first_of(*TIME_COLUMNS) or "departure_time", p.trip_time)
            w.set_text(("pickup_address", "pickup_location"), p.pickup_location)
            w.set_text(("destination", "dropoff_address", "dropoff_location"), dest)
            w.set_count(caps.first_of("total_amount", "total", "fare") or "total_amount", amount)
            w.set_text(SEAT_COLUMNS, seat)
            w.set_text(("service_type", "category"), p.service_type)
            w.set_text("trip_role", p.trip_role)
            w.set_text("trip_number", p.trip_key)
            w.set_text("eticket_photo", eticket)
            w.set_text("eticket_invoice_hint", eticket_invoice_hint(p.booking_id))
            w.set_text("booking_hint", booking_hint(p.booking_id))
            w.set_text("surat_jalan_api", waybill_api_path(p.booking_id))
            w.set_text(("driver_name", "driver"), assignment.driver_name)
            w.set_text("vehicle_code", assignment.vehicle_label)
            w.set_text(("vehicle_type", "vehicle_name"), assignment.vehicle_type or assignment.vehicle_code)
            w.touch("updated_at")

            if row_id:
                if caps.has("notes"):
                    old = read_row(s, caps, row_id, ("notes",)).get("notes")
                    old_text = "" if old is None else str(old)
                    merged = merge_notes(old_text, p.booking_id, hint)
                    if merged != old_text:
                        w.set("notes", merged)
                w.update(s, {"id": row_id})
                result.updated += 1
                continue

            w.set(BOOKING_LINK_COLUMNS, p.booking_id)
            w.set("notes", merge_notes("", p.booking_id, hint))
            w.touch("created_at")
            w.insert(s)
            result.inserted += 1
    except SQLAlchemyError as e:
        raise PersistenceError(caps.name, "upsert", e) from e

    _log.debug(
        "passengers synced (%d new, %d updated)",
        result.inserted,
        result.updated,
        extra={"booking_id": p.booking_id, "table": caps.name},
    )
    return result


def propagate_assignment(
    s: Session,
    snap: SchemaSnapshot,
    booking_ids: Sequence[int],
    assignment: Assignment,
    trip_role: str = "",
    trip_number: str = "",
) -> int:
    """
    Copy driver/vehicle onto the passenger rows of the given bookings,
    and onto every row already stamped with `trip_number`.
    """
    caps = passenger_table(snap)
    if caps is None or assignment.empty:
        return 0
    link = caps.first_of(*BOOKING_LINK_COLUMNS)
    targets: List[Dict[str, object]] = []
    if link:
        targets.extend({link: bid} for bid in booking_ids if bid > 0)
    if trip_number and caps.has("trip_number"):
        targets.append({"trip_number": trip_number})
    touched = 0
    try:
        for where in targets:
            w = RowWriter(caps)
            w.set_text(("driver_name", "driver"), assignment.driver_name)
            w.set_text("vehicle_code", assignment.vehicle_label)
            w.set_text(("vehicle_type", "vehicle_name"), assignment.vehicle_type or assignment.vehicle_code)
            w.touch("updated_at")
            if trip_role and caps.has("trip_role"):
                where["trip_role"] = trip_role
            touched += w.update(s, where)
    except SQLAlchemyError as e:
        raise PersistenceError(caps.name, "update", e) from e
    return touched
