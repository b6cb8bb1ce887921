from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from travel_shared import bind_request_id, get_request_id

from . import config, events
from .aggregate import aggregate_trip
from .assignment import DEPARTURE_TABLE, RETURN_TABLE, load_assignment
from .errors import NotFound, PersistenceError, SchemaMismatch, TransientQueryError
from .finance import TABLE as FINANCE_TABLE
from .finance import upsert_trip_finance
from .passengers import upsert_passengers
from .payload import ROLE_DEPARTURE, ROLE_RETURN, load_seat_passengers, read_booking_payload
from .schema import SchemaSnapshot, savepoint
from .settings_sync import upsert_settings
from .trip_info import TABLE as TRIP_INFO_TABLE
from .trip_info import upsert_trip_information
from .trip_lock import trip_lock

_log = logging.getLogger("travel.sync")

STATUS_SYNCED = "synced"
STATUS_SKIPPED = "skipped"

REASON_NOT_PAID = "payment_not_confirmed"
REASON_UNKNOWN_ROLE = "unknown_trip_role"

# Per-table outcome recorded on SyncResult.tables.
WRITTEN = "written"
ABSENT = "absent"
MISMATCH = "schema_mismatch"
FAILED = "failed"


class SyncResult(BaseModel):
    booking_id: int
    status: str
    reason: str = ""
    trip_key: str = ""
    trip_role: str = ""
    seats: List[str] = Field(default_factory=list)
    passenger_count: int = 0
    lock: Optional[Dict[str, Any]] = None
    tables: Dict[str, str] = Field(default_factory=dict)


def settings_table_for(trip_role: str) -> Optional[str]:
    """Settings table written for a trip role; None for roles outside the two legs."""
    if trip_role in ("", ROLE_DEPARTURE):
        return DEPARTURE_TABLE
    if trip_role == ROLE_RETURN:
        return RETURN_TABLE
    return None


def _secondary(s: Session, table: str, booking_id: int, fn: Callable[[], Any]) -> tuple[str, Any]:
    """Run a non-essential upsert; its failure is logged and does not fail the sync."""
    try:
        with savepoint(s):
            got = fn()
    except SchemaMismatch as e:
        _log.warning("%s", e, extra={"booking_id": booking_id, "table": table, "reason": MISMATCH})
        return MISMATCH, None
    except PersistenceError as e:
        _log.warning("secondary write failed: %s", e, extra={"booking_id": booking_id, "table": table})
        return FAILED, None
    return (WRITTEN if got else ABSENT), got


def sync_booking(s: Session, booking_id: int, *, lock_timeout: Optional[float] = None) -> SyncResult:
    """
    Mirror one paid booking into the operational tables (waybill record,
    departure/return settings, passengers, trip ledger). Runs inside the
    caller's transaction; the caller commits.
    """
    if booking_id <= 0:
        raise NotFound("booking", booking_id)
    snap = SchemaSnapshot(s)
    p = read_booking_payload(s, snap, booking_id)

    if not p.is_paid:
        _log.info(
            "sync skipped: payment not confirmed (%s/%s)",
            p.payment_status or "-",
            p.payment_method or "-",
            extra={"booking_id": booking_id, "reason": REASON_NOT_PAID},
        )
        return SyncResult(
            booking_id=booking_id,
            status=STATUS_SKIPPED,
            reason=REASON_NOT_PAID,
            trip_key=p.trip_key,
            trip_role=p.trip_role,
        )

    key = p.trip_key
    result = SyncResult(booking_id=booking_id, status=STATUS_SYNCED, trip_key=key, trip_role=p.trip_role)

    try:
        with savepoint(s):
            seat_passengers = load_seat_passengers(s, snap, booking_id)
    except TransientQueryError as e:
        _log.warning("%s", e, extra={"booking_id": booking_id, "step": "seat_passengers"})
        seat_passengers = []

    agg = aggregate_trip(
        s,
        snap,
        trip_date=p.trip_date,
        trip_time=p.trip_time,
        route_from=p.route_from,
        route_to=p.route_to,
        category=p.category,
        own_seats=p.seats,
    )
    assignment = load_assignment(s, snap, p)

    status, trip_info_id = _secondary(
        s,
        TRIP_INFO_TABLE,
        booking_id,
        lambda: upsert_trip_information(s, snap, p, assignment, passenger_count=agg.count),
    )
    result.tables[TRIP_INFO_TABLE] = status

    settings_table = settings_table_for(p.trip_role)
    timeout = config.TRIP_LOCK_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout
    if settings_table is None:
        result.reason = REASON_UNKNOWN_ROLE
        _log.info(
            "settings step skipped for trip role %r",
            p.trip_role,
            extra={"booking_id": booking_id, "reason": REASON_UNKNOWN_ROLE},
        )
    else:
        with trip_lock(s, key, timeout) as lock:
            result.lock = lock.as_dict()
            try:
                row_id = upsert_settings(
                    s,
                    snap,
                    p,
                    agg,
                    table_name=settings_table,
                    seat_passengers=seat_passengers,
                    trip_info_id=trip_info_id,
                )
                result.tables[settings_table] = WRITTEN if row_id else ABSENT
            except SchemaMismatch as e:
                _log.warning("%s", e, extra={"booking_id": booking_id, "table": settings_table})
                result.tables[settings_table] = MISMATCH

    try:
        ps = upsert_passengers(s, snap, p, agg, assignment, seat_passengers)
        result.tables[ps.table or "passengers"] = WRITTEN if ps.table else ABSENT
    except SchemaMismatch as e:
        _log.warning("%s", e, extra={"booking_id": booking_id, "table": e.table})
        result.tables[e.table] = MISMATCH

    status, _ = _secondary(s, FINANCE_TABLE, booking_id, lambda: upsert_trip_finance(s, snap, p, agg, assignment))
    result.tables[FINANCE_TABLE] = status

    result.seats = agg.seats
    result.passenger_count = agg.count
    _log.info("booking synced", extra={"booking_id": booking_id, "trip_key": key})
    return result


def emit_result(res: SyncResult) -> None:
    kind = "booking_synced" if res.status == STATUS_SYNCED else "booking_sync_skipped"
    events.emit_event(kind, res.model_dump())


def run_sync(engine: Engine, booking_id: int) -> SyncResult:
    """Sync in a transaction of its own; commits on success, rolls back and re-raises on error."""
    with Session(engine) as s:
        with s.begin():
            res = sync_booking(s, booking_id)
    emit_result(res)
    return res


def run_sync_background(engine: Engine, booking_id: int, *, request_id: str = "") -> Optional[SyncResult]:
    """
    Fire-and-forget variant: failures are logged and published, never
    raised. Log lines carry `request_id` (the request that scheduled the
    sync) or a fresh id.
    """
    bind_request_id(request_id)
    try:
        return run_sync(engine, booking_id)
    except Exception as e:
        _log.exception("background sync failed", extra={"booking_id": booking_id})
        events.emit_event("sync_failed", {"booking_id": booking_id, "error": str(e), "request_id": get_request_id()})
        return None
