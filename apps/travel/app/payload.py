from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import NotFound, TransientQueryError
from .fares import is_paid_success, resolve_fare
from .schema import SchemaSnapshot, TableCaps, as_int, as_text, savepoint
from .trip_lock import date_only, time_hhmm, trip_key

_log = logging.getLogger("travel.payload")

BOOKING_TABLES = ("bookings", "reguler_bookings")
BOOKING_LINK_COLUMNS = ("booking_id", "reguler_booking_id")

ROUTE_FROM_COLUMNS = ("from_city", "route_from")
ROUTE_TO_COLUMNS = ("to_city", "route_to")
TOTAL_COLUMNS = ("total_amount", "total", "grand_total", "total_invoice", "invoice_total", "amount", "nominal")
SEAT_COLUMNS = ("selected_seats", "seats_json")
ETICKET_COLUMNS = ("eticket_photo", "e_ticket_photo", "eticket_url", "eticket")
INVOICE_TABLES = ("booking_invoices", "invoices")
INVOICE_TOTAL_COLUMNS = ("total_amount", "grand_total", "total", "amount", "nominal")

_PLAIN_COLUMNS = (
    "category",
    "trip_role",
    "trip_date",
    "trip_time",
    "pickup_location",
    "dropoff_location",
    "booking_for",
    "passenger_name",
    "passenger_phone",
    "customer_name",
    "customer_phone",
    "passenger_count",
    "payment_method",
    "payment_status",
    "created_at",
    "price_per_seat",
)

ROLE_DEPARTURE = "Keberangkatan"
ROLE_RETURN = "Kepulangan"

_ROLE_ALIASES = {
    "keberangkatan": ROLE_DEPARTURE,
    "berangkat": ROLE_DEPARTURE,
    "pergi": ROLE_DEPARTURE,
    "departure": ROLE_DEPARTURE,
    "kepulangan": ROLE_RETURN,
    "pulang": ROLE_RETURN,
    "return": ROLE_RETURN,
}

_SEAT_SPLIT_RE = re.compile(r"[,;\n\t]+")


def normalize_trip_role(value: Any) -> str:
    raw = as_text(value)
    return _ROLE_ALIASES.get(raw.lower(), raw)


def _name(value: Any) -> str:
    """Display name with the 'self' placeholder read as empty."""
    v = as_text(value)
    return "" if v.lower() == "self" else v


def parse_seats_flexible(raw: Any) -> List[str]:
    """
    Seat tokens from any of the encodings found in booking rows:
    a JSON array, a JSON-encoded string, or a delimited string
    ("1A, 1B", "1A;1B", "1A 1B").
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [as_text(x) for x in raw if as_text(x)]
    s = str(raw).strip()
    if not s:
        return []
    if s[0] in "[\"":
        try:
            decoded = json.loads(s)
        except ValueError:
            decoded = None
        if isinstance(decoded, list):
            return [as_text(x) for x in decoded if as_text(x)]
        if isinstance(decoded, str):
            s = decoded
    out: List[str] = []
    for part in _SEAT_SPLIT_RE.split(s):
        out.extend(tok for tok in part.split() if tok)
    return out


def normalize_seats_unique(seats: Sequence[Any]) -> List[str]:
    """Upper-case, trimmed, de-duplicated; first occurrence wins."""
    seen = set()
    out: List[str] = []
    for seat in seats:
        code = as_text(seat).upper()
        if code and code not in seen:
            seen.add(code)
            out.append(code)
    return out


_SEAT_ORDER_RE = re.compile(r"^(\d+)(.*)$")


def _seat_order(code: str):
    m = _SEAT_ORDER_RE.match(code)
    if m:
        return (0, int(m.group(1)), m.group(2))
    return (1, 0, code)


def sort_seats(seats: Sequence[Any]) -> List[str]:
    """Unique seat codes in cabin order: 1A, 2B, 10A, then non-numeric codes."""
    return sorted(normalize_seats_unique(seats), key=_seat_order)


def seats_csv(seats: Sequence[Any]) -> str:
    return ", ".join(sort_seats(seats))


class BookingSyncPayload(BaseModel):
    booking_id: int
    source_table: str = "bookings"
    category: str = ""
    trip_role: str = ""
    route_from: str = ""
    route_to: str = ""
    trip_date: str = ""
    trip_time: str = ""
    pickup_location: str = ""
    dropoff_location: str = ""
    passenger_name: str = ""
    passenger_phone: str = ""
    customer_name: str = ""
    customer_phone: str = ""
    seats: List[str] = Field(default_factory=list)
    passenger_count: int = 0
    price_per_seat: int = 0
    total_amount: int = 0
    payment_method: str = ""
    payment_status: str = ""
    created_at: str = ""
    eticket_ref: str = ""

    @property
    def seat_count(self) -> int:
        if self.seats:
            return len(self.seats)
        if self.passenger_count > 0:
            return self.passenger_count
        return 1

    @property
    def trip_key(self) -> str:
        return trip_key(self.trip_date, self.trip_time, self.route_from, self.route_to)

    @property
    def is_paid(self) -> bool:
        return is_paid_success(self.payment_status, self.payment_method)

    @property
    def service_type(self) -> str:
        return self.category or "Reguler"


# ---- Secondary tables ----

@dataclass(frozen=True)
class SeatPassenger:
    seat_code: str
    name: str = ""
    phone: str = ""
    paid_price: int = 0


def _link_column(caps: TableCaps) -> Optional[str]:
    return caps.first_of(*BOOKING_LINK_COLUMNS)


def latest_validation(s: Session, snap: SchemaSnapshot, booking_id: int) -> Dict[str, Any]:
    """Newest payment_validations row for a booking, or {}."""
    caps = snap.caps("payment_validations")
    if caps is None:
        return {}
    link = _link_column(caps)
    if not link:
        return {}
    wanted = [c for c in ("customer_name", "customer_phone", "trip_role", "payment_status", "status") if caps.has(c)]
    if not wanted:
        return {}
    stmt = select(*[caps.col(c) for c in wanted]).where(caps.col(link) == booking_id)
    if caps.has("id"):
        stmt = stmt.order_by(caps.col("id").desc())
    try:
        row = s.execute(stmt.limit(1)).mappings().first()
    except SQLAlchemyError as e:
        raise TransientQueryError("payment_validations lookup", e) from e
    return {k.lower(): v for k, v in dict(row).items()} if row else {}


def load_seat_passengers(s: Session, snap: SchemaSnapshot, booking_id: int) -> List[SeatPassenger]:
    """Per-seat rows of booking_passengers, in insertion order."""
    caps = snap.caps("booking_passengers")
    if caps is None or not caps.has("booking_id"):
        return []
    name_col = caps.first_of("passenger_name", "name")
    phone_col = caps.first_of("passenger_phone", "phone")
    cols = [caps.col(c) for c in ("seat_code",) if caps.has(c)]
    cols += [caps.table.c[c] for c in (name_col, phone_col) if c]
    if caps.has("paid_price"):
        cols.append(caps.col("paid_price"))
    if not cols:
        return []
    stmt = select(*cols).where(caps.col("booking_id") == booking_id)
    if caps.has("id"):
        stmt = stmt.order_by(caps.col("id").asc())
    try:
        rows = s.execute(stmt).mappings().all()
    except SQLAlchemyError as e:
        raise TransientQueryError("booking_passengers lookup", e) from e
    out: List[SeatPassenger] = []
    for r in rows:
        r = {k.lower(): v for k, v in dict(r).items()}
        out.append(
            SeatPassenger(
                seat_code=as_text(r.get("seat_code")).upper(),
                name=_name(r.get(name_col.lower())) if name_col else "",
                phone=as_text(r.get(phone_col.lower())) if phone_col else "",
                paid_price=as_int(r.get("paid_price")),
            )
        )
    return out


def load_booking_seats(s: Session, snap: SchemaSnapshot, booking_ids: Sequence[int]) -> Dict[int, List[str]]:
    caps = snap.caps("booking_seats")
    if caps is None or not caps.has("booking_id") or not caps.has("seat_code") or not booking_ids:
        return {}
    stmt = select(caps.col("booking_id"), caps.col("seat_code")).where(caps.col("booking_id").in_(list(booking_ids)))
    if caps.has("id"):
        stmt = stmt.order_by(caps.col("id").asc())
    try:
        rows = s.execute(stmt).all()
    except SQLAlchemyError as e:
        raise TransientQueryError("booking_seats lookup", e) from e
    out: Dict[int, List[str]] = {}
    for bid, seat in rows:
        out.setdefault(int(bid), []).append(as_text(seat))
    return {k: normalize_seats_unique(v) for k, v in out.items()}


def lookup_invoice_total(s: Session, snap: SchemaSnapshot, booking_id: int) -> int:
    """Latest positive invoice total linked to a booking; 0 when none."""
    if booking_id <= 0:
        return 0
    for name in INVOICE_TABLES:
        caps = snap.caps(name)
        if caps is None:
            continue
        total_col = caps.first_of(*INVOICE_TOTAL_COLUMNS)
        if not total_col:
            continue
        for link in BOOKING_LINK_COLUMNS:
            if not caps.has(link):
                continue
            stmt = select(caps.table.c[total_col]).where(caps.col(link) == booking_id)
            if caps.has("id"):
                stmt = stmt.order_by(caps.col("id").desc())
            try:
                with savepoint(s):
                    raw = s.execute(stmt.limit(1)).scalar()
            except SQLAlchemyError as e:
                _log.warning("invoice lookup on %s failed: %s", name, e, extra={"booking_id": booking_id, "table": name})
                continue
            total = as_int(raw)
            if total > 0:
                return total
    return 0


# ---- Resolver chains ----

class _Lookup:
    """Per-extraction context shared by resolver strategies."""

    def __init__(self, s: Session, snap: SchemaSnapshot, booking_id: int, row: Dict[str, Any]):
        self.s = s
        self.snap = snap
        self.booking_id = booking_id
        self.row = row
        self._validation: Optional[Dict[str, Any]] = None
        self._seat_passengers: Optional[List[SeatPassenger]] = None

    def validation(self) -> Dict[str, Any]:
        if self._validation is None:
            self._validation = {}
            with savepoint(self.s):
                self._validation = latest_validation(self.s, self.snap, self.booking_id)
        return self._validation

    def seat_passengers(self) -> List[SeatPassenger]:
        if self._seat_passengers is None:
            self._seat_passengers = []
            with savepoint(self.s):
                self._seat_passengers = load_seat_passengers(self.s, self.snap, self.booking_id)
        return self._seat_passengers


@dataclass(frozen=True)
class Resolver:
    name: str
    available: Callable[[_Lookup], bool]
    lookup: Callable[[_Lookup], Any]


def resolve_first(ctx: _Lookup, chain: Sequence[Resolver], default: Any = "") -> Any:
    for r in chain:
        if not r.available(ctx):
            continue
        try:
            value = r.lookup(ctx)
        except (TransientQueryError, SQLAlchemyError) as e:
            _log.warning("resolver %s failed: %s", r.name, e, extra={"booking_id": ctx.booking_id})
            continue
        if value not in (None, "", 0, []):
            return value
    return default


def _row(col: str, fn: Callable[[Any], Any] = as_text) -> Resolver:
    return Resolver(f"row.{col}", lambda c: col in c.row, lambda c: fn(c.row.get(col)))


def _has_validations(c: _Lookup) -> bool:
    return c.snap.has_table("payment_validations")


def _has_seat_passengers(c: _Lookup) -> bool:
    return c.snap.has_column("booking_passengers", "booking_id")


def _first_seat_name(c: _Lookup) -> str:
    for sp in c.seat_passengers():
        if sp.name:
            return sp.name
    return ""


def _booking_seats(c: _Lookup) -> List[str]:
    with savepoint(c.s):
        return load_booking_seats(c.s, c.snap, [c.booking_id]).get(c.booking_id, [])


TRIP_ROLE_CHAIN = (
    _row("trip_role", normalize_trip_role),
    Resolver("payment_validations.trip_role", _has_validations, lambda c: normalize_trip_role(c.validation().get("trip_role"))),
)

NAME_CHAIN = (
    _row("passenger_name", _name),
    _row("booking_for", _name),
    _row("customer_name", _name),
    Resolver("payment_validations.customer_name", _has_validations, lambda c: _name(c.validation().get("customer_name"))),
    Resolver("booking_passengers.passenger_name", _has_seat_passengers, _first_seat_name),
)

PHONE_CHAIN = (
    _row("passenger_phone"),
    _row("customer_phone"),
    Resolver("payment_validations.customer_phone", _has_validations, lambda c: as_text(c.validation().get("customer_phone"))),
)

SEAT_CHAIN = (
    _row("selected_seats", lambda v: normalize_seats_unique(parse_seats_flexible(v))),
    _row("seats_json", lambda v: normalize_seats_unique(parse_seats_flexible(v))),
    Resolver("booking_seats.seat_code", lambda c: c.snap.has_column("booking_seats", "seat_code"), _booking_seats),
)


# ---- Extraction ----

def booking_table(snap: SchemaSnapshot) -> Optional[TableCaps]:
    return snap.first_table(*BOOKING_TABLES)


def read_booking_payload(s: Session, snap: SchemaSnapshot, booking_id: int) -> BookingSyncPayload:
    """
    Read one booking through whichever columns the booking table offers
    and resolve it into a normalized payload. Read-only; runs inside the
    caller's transaction.
    """
    if booking_id <= 0:
        raise NotFound("booking", booking_id)
    caps = booking_table(snap)
    if caps is None or not caps.has("id"):
        raise NotFound("booking table")

    picked: Dict[str, str] = {}
    for logical in _PLAIN_COLUMNS + SEAT_COLUMNS:
        actual = caps.actual(logical)
        if actual:
            picked[logical] = actual
    for logical, candidates in (
        ("route_from", ROUTE_FROM_COLUMNS),
        ("route_to", ROUTE_TO_COLUMNS),
        ("total", TOTAL_COLUMNS),
        ("eticket", ETICKET_COLUMNS),
    ):
        actual = caps.first_of(*candidates)
        if actual:
            picked[logical] = actual

    cols = [caps.col("id")] + [caps.table.c[a].label(logical) for logical, a in picked.items()]
    stmt = select(*cols).where(caps.col("id") == booking_id).limit(1)
    row = s.execute(stmt).mappings().first()
    if row is None:
        raise NotFound("booking", booking_id)
    data = dict(row)

    ctx = _Lookup(s, snap, booking_id, data)
    p = BookingSyncPayload(
        booking_id=booking_id,
        source_table=caps.name,
        category=as_text(data.get("category")),
        route_from=as_text(data.get("route_from")),
        route_to=as_text(data.get("route_to")),
        trip_date=date_only(data.get("trip_date")),
        trip_time=time_hhmm(data.get("trip_time")) or as_text(data.get("trip_time")),
        pickup_location=as_text(data.get("pickup_location")),
        dropoff_location=as_text(data.get("dropoff_location")),
        customer_name=_name(data.get("customer_name")),
        customer_phone=as_text(data.get("customer_phone")),
        passenger_count=max(0, as_int(data.get("passenger_count"))),
        payment_method=as_text(data.get("payment_method")),
        payment_status=as_text(data.get("payment_status")),
        created_at=as_text(data.get("created_at")),
        eticket_ref=as_text(data.get("eticket")),
    )
    p.trip_role = resolve_first(ctx, TRIP_ROLE_CHAIN)
    p.passenger_name = resolve_first(ctx, NAME_CHAIN)
    p.passenger_phone = resolve_first(ctx, PHONE_CHAIN)
    p.seats = list(resolve_first(ctx, SEAT_CHAIN, default=[]))

    stored_price = as_int(data.get("price_per_seat"))
    p.price_per_seat = stored_price if stored_price > 0 else resolve_fare(p.route_from, p.route_to)

    total = as_int(data.get("total"))
    if total <= 0 and p.price_per_seat > 0:
        total = p.price_per_seat * p.seat_count
    if total <= 0:
        total = lookup_invoice_total(s, snap, booking_id)
    p.total_amount = max(0, total)
    return p
