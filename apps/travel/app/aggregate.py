from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence

from sqlalchemy import String, cast, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .fares import is_paid_success, resolve_fare, stop_key
from .payload import (
    ROUTE_FROM_COLUMNS,
    ROUTE_TO_COLUMNS,
    SEAT_COLUMNS,
    TOTAL_COLUMNS,
    booking_table,
    load_booking_seats,
    lookup_invoice_total,
    normalize_seats_unique,
    parse_seats_flexible,
    sort_seats,
)
from .schema import SchemaSnapshot, as_int, as_text, savepoint
from .trip_lock import date_only, time_hhmm

_log = logging.getLogger("travel.aggregate")


@dataclass
class TripAggregate:
    """
    Paid seats of one trip slot. `seats`/`count` cover bookings in the
    trip's own direction; `ret_*` covers bookings travelling the opposite
    way in the same slot.
    """

    seats: List[str] = field(default_factory=list)
    count: int = 0
    dept_count: int = 0
    dept_total: int = 0
    ret_count: int = 0
    ret_total: int = 0
    booking_ids: List[int] = field(default_factory=list)
    degraded: bool = False


def _fallback(own_seats: Sequence[str]) -> TripAggregate:
    seats = normalize_seats_unique(own_seats)
    return TripAggregate(seats=seats, count=len(seats), degraded=True)


def aggregate_trip(
    s: Session,
    snap: SchemaSnapshot,
    *,
    trip_date: str,
    trip_time: str,
    route_from: str = "",
    route_to: str = "",
    category: str = "",
    own_seats: Sequence[str] = (),
) -> TripAggregate:
    """
    Union of seats over every paid booking of the slot (date, time,
    route, category). Best-effort: when the slot cannot be scanned the
    caller's own seats come back unchanged.
    """
    day = date_only(trip_date)
    hhmm = time_hhmm(trip_time)
    caps = booking_table(snap)
    if caps is None or not day or not caps.has("trip_date") or not caps.has("id"):
        return _fallback(own_seats)

    picks = {
        "id": caps.actual("id"),
        "trip_time": caps.actual("trip_time"),
        "seats": caps.first_of(*SEAT_COLUMNS),
        "route_from": caps.first_of(*ROUTE_FROM_COLUMNS),
        "route_to": caps.first_of(*ROUTE_TO_COLUMNS),
        "total": caps.first_of(*TOTAL_COLUMNS),
        "category": caps.actual("category"),
        "payment_status": caps.actual("payment_status"),
        "payment_method": caps.actual("payment_method"),
    }
    cols = [caps.table.c[a].label(k) for k, a in picks.items() if a]
    stmt = (
        select(*cols)
        .where(func.substr(cast(caps.col("trip_date"), String), 1, 10) == day)
        .order_by(caps.col("id").asc())
    )
    try:
        with savepoint(s):
            rows = [dict(r) for r in s.execute(stmt).mappings().all()]
            seat_rows = {}
            if not picks["seats"]:
                seat_rows = load_booking_seats(s, snap, [int(r["id"]) for r in rows])
    except Exception as e:
        _log.warning("trip aggregation failed: %s", e, extra={"step": "aggregate"})
        return _fallback(own_seats)

    want_from, want_to = stop_key(route_from), stop_key(route_to)
    has_route = bool(want_from and want_to)
    want_category = category.strip().lower()

    agg = TripAggregate()
    union: set = set()
    for r in rows:
        if hhmm and picks["trip_time"] and time_hhmm(r.get("trip_time")) != hhmm:
            continue
        if not is_paid_success(r.get("payment_status"), r.get("payment_method")):
            continue
        row_category = as_text(r.get("category")).lower()
        if want_category and row_category and row_category != want_category:
            continue

        bid = int(r["id"])
        if picks["seats"]:
            seats = normalize_seats_unique(parse_seats_flexible(r.get("seats")))
        else:
            seats = seat_rows.get(bid, [])
        cnt = len(seats) or 1

        total = as_int(r.get("total"))
        if total <= 0:
            try:
                total = lookup_invoice_total(s, snap, bid)
            except SQLAlchemyError:
                total = 0
        if total <= 0:
            total = resolve_fare(r.get("route_from"), r.get("route_to")) * cnt

        rf, rt = stop_key(r.get("route_from")), stop_key(r.get("route_to"))
        if not has_route or (rf == want_from and rt == want_to):
            union.update(seats)
            agg.dept_count += cnt
            agg.dept_total += total
            agg.booking_ids.append(bid)
        elif rf == want_to and rt == want_from:
            agg.ret_count += cnt
            agg.ret_total += total

    agg.seats = sort_seats(union)
    agg.count = len(agg.seats)
    return agg
