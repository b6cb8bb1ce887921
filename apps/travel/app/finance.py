from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .aggregate import TripAggregate
from .assignment import Assignment
from .errors import PersistenceError, SchemaMismatch
from .fares import resolve_fare
from .payload import BookingSyncPayload
from .schema import RowWriter, SchemaSnapshot, TableCaps, as_int, as_text, find_row_id, read_row
from .trip_lock import date_only

_log = logging.getLogger("travel.finance")

TABLE = "trips"

# Reguler trips only pay the 15% admin cut above this fare.
ADMIN_THRESHOLD = 430_000
REGULER_ADMIN_PERCENT = 15.0
DEFAULT_ADMIN_PERCENT = 10.0

FEE_COLUMNS = ("bbm_fee", "meal_fee", "courier_fee", "tol_parkir_fee")
PAID_LEDGER_STATUS = "Lunas"


def _money(x: float) -> int:
    # round() is half-to-even.
    return int(round(x))


def admin_percent(category: str, passenger_fare: int, package_fare: int = 0, override: Optional[float] = None) -> float:
    if override is not None:
        return max(0.0, float(override))
    if (category or "").strip().lower() == "reguler":
        total = passenger_fare + package_fare
        if passenger_fare > ADMIN_THRESHOLD or package_fare > ADMIN_THRESHOLD or total > ADMIN_THRESHOLD:
            return REGULER_ADMIN_PERCENT
        return 0.0
    return DEFAULT_ADMIN_PERCENT


def admin_cut(category: str, passenger_fare: int, package_fare: int = 0, override: Optional[float] = None) -> int:
    """
    Agency admin cut for one leg. An explicit override percent wins
    (0 when <= 0); Reguler legs pay 15% only above the threshold; every
    other category pays a flat 10%.
    """
    pct = admin_percent(category, passenger_fare, package_fare, override)
    if pct <= 0:
        return 0
    return _money((passenger_fare + package_fare) * pct / 100.0)


@dataclass(frozen=True)
class Split:
    pool: int
    residual: int
    driver_fee: int
    net_profit: int


def compute_split(
    dept_total: int,
    dept_admin: int,
    ret_total: int,
    ret_admin: int,
    other_income: int = 0,
    fuel: int = 0,
    meal: int = 0,
    courier: int = 0,
    toll: int = 0,
) -> Split:
    pool = (dept_total - dept_admin) + (ret_total - ret_admin) + other_income
    residual = max(0, pool - (fuel + meal + courier + toll))
    fee = _money(residual / 3)
    return Split(pool=pool, residual=residual, driver_fee=fee, net_profit=residual - fee)


@dataclass(frozen=True)
class TripCalc:
    dept_total: int
    ret_total: int
    dept_admin_percent: float
    ret_admin_percent: float
    dept_admin: int
    ret_admin: int
    pool: int
    residual: int
    driver_fee: int
    net_profit: int
    total_nominal: int

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _override(row: Mapping[str, Any], key: str) -> Optional[float]:
    raw = row.get(key)
    if raw is None or as_text(raw) == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def compute_trip_calc(row: Mapping[str, Any]) -> TripCalc:
    """Financial split of one ledger row (keys as in the `trips` table)."""
    r = {str(k).lower(): v for k, v in row.items()}
    dept_pass, dept_pkg = as_int(r.get("dept_passenger_fare")), as_int(r.get("dept_package_fare"))
    ret_pass, ret_pkg = as_int(r.get("ret_passenger_fare")), as_int(r.get("ret_package_fare"))
    dept_total, ret_total = dept_pass + dept_pkg, ret_pass + ret_pkg
    dept_ov, ret_ov = _override(r, "dept_admin_percent_override"), _override(r, "ret_admin_percent_override")

    dept_pct = admin_percent(as_text(r.get("dept_category")), dept_pass, dept_pkg, dept_ov)
    ret_pct = admin_percent(as_text(r.get("ret_category")), ret_pass, ret_pkg, ret_ov)
    dept_admin = admin_cut(as_text(r.get("dept_category")), dept_pass, dept_pkg, dept_ov)
    ret_admin = admin_cut(as_text(r.get("ret_category")), ret_pass, ret_pkg, ret_ov) if ret_total else 0
    other = as_int(r.get("other_income"))
    split = compute_split(
        dept_total,
        dept_admin,
        ret_total,
        ret_admin,
        other,
        as_int(r.get("bbm_fee")),
        as_int(r.get("meal_fee")),
        as_int(r.get("courier_fee")),
        as_int(r.get("tol_parkir_fee")),
    )
    return TripCalc(
        dept_total=dept_total,
        ret_total=ret_total,
        dept_admin_percent=dept_pct,
        ret_admin_percent=ret_pct if ret_total else 0.0,
        dept_admin=dept_admin,
        ret_admin=ret_admin,
        pool=split.pool,
        residual=split.residual,
        driver_fee=split.driver_fee,
        net_profit=split.net_profit,
        total_nominal=dept_total + ret_total + other,
    )


# ---- Ledger upsert ----

def day_month_year(trip_date: str) -> Tuple[int, int, int]:
    try:
        d = date.fromisoformat(date_only(trip_date))
    except ValueError:
        d = date.today()
    return d.day, d.month, d.year


def build_order_number(s: Session, caps: TableCaps, car_code: str, day: int, month: int, year: int) -> str:
    """LKT/NN/CARCODE, NN counting this car's ledger rows of the day."""
    cc = car_code.strip().upper()
    if not cc:
        return ""
    seq = 1
    if caps.has("car_code"):
        stmt = select(func.count()).select_from(caps.table).where(caps.col("car_code") == cc)
        if caps.has("day") and caps.has("month") and caps.has("year"):
            stmt = stmt.where(caps.col("day") == day, caps.col("month") == month, caps.col("year") == year)
        seq = as_int(s.execute(stmt).scalar()) + 1
    return f"LKT/{max(seq, 1):02d}/{cc}"


def _find_ledger_row(
    s: Session, caps: TableCaps, trip_key: str, car_code: str, day: int, month: int, year: int, p: BookingSyncPayload
) -> Optional[int]:
    if caps.has("trip_key"):
        return find_row_id(s, caps, {"trip_key": trip_key})
    has_dmy = caps.has("day") and caps.has("month") and caps.has("year")
    has_route = has_dmy and caps.has("dept_origin") and caps.has("dept_dest")
    if has_dmy and caps.has("car_code") and car_code:
        found = find_row_id(s, caps, {"day": day, "month": month, "year": year, "car_code": car_code.upper()})
        if found or not has_route:
            return found
    if has_route:
        match = {"day": day, "month": month, "year": year, "dept_origin": p.route_from, "dept_dest": p.route_to}
        soft = ["dept_origin", "dept_dest"]
        if car_code and caps.has("car_code"):
            # Adopt a row keyed before the car was assigned, never another car's row.
            match["car_code"] = ""
            soft.append("car_code")
        return find_row_id(s, caps, match, coalesce=soft)
    raise SchemaMismatch(TABLE, "no trip_key, car_code or route columns to key the ledger row")


def upsert_trip_finance(
    s: Session,
    snap: SchemaSnapshot,
    p: BookingSyncPayload,
    agg: TripAggregate,
    assignment: Assignment,
) -> Optional[int]:
    """
    Refresh the ledger row of this booking's trip. Fares and counts never
    go down, a Lunas row stays Lunas, and fees entered by staff are kept.
    """
    caps = snap.caps(TABLE)
    if caps is None:
        return None

    day, month, year = day_month_year(p.trip_date)
    car_code = assignment.vehicle_code.upper()

    dept_count = agg.dept_count or p.seat_count
    dept_fare = agg.dept_total or p.total_amount
    if dept_fare <= 0 and p.price_per_seat > 0:
        dept_fare = p.price_per_seat * dept_count
    if dept_fare <= 0:
        dept_fare = resolve_fare(p.route_from, p.route_to) * dept_count

    try:
        row_id = _find_ledger_row(s, caps, p.trip_key, car_code, day, month, year, p)
        old: Dict[str, Any] = {}
        if row_id:
            old = read_row(s, caps, row_id, caps.columns.values())

        merged = dict(old)
        for col, new in (
            ("dept_passenger_fare", dept_fare),
            ("dept_passenger_count", dept_count),
            ("ret_passenger_fare", agg.ret_total),
            ("ret_passenger_count", agg.ret_count),
        ):
            merged[col] = max(as_int(old.get(col)), new)
        for side in ("dept_category", "ret_category"):
            if not as_text(merged.get(side)):
                merged[side] = p.service_type
        calc = compute_trip_calc(merged)

        old_status = as_text(old.get("payment_status"))
        status = PAID_LEDGER_STATUS if p.is_paid else (as_text(p.payment_status) or PAID_LEDGER_STATUS)
        if old_status.lower() == PAID_LEDGER_STATUS.lower():
            status = old_status

        w = RowWriter(caps)
        w.set("trip_key", p.trip_key)
        w.set("day", day)
        w.set("month", month)
        w.set("year", year)
        w.set_text("car_code", car_code)
        w.set_text("driver_name", assignment.driver_name)
        w.set_text("vehicle_name", assignment.vehicle_type)
        w.set_text("dept_origin", p.route_from)
        w.set_text("dept_dest", p.route_to)
        w.set_text("dept_category", p.service_type)
        w.set_max("dept_passenger_count", dept_count)
        w.set_max("dept_passenger_fare", dept_fare)
        w.set_max("ret_passenger_count", agg.ret_count)
        w.set_max("ret_passenger_fare", agg.ret_total)
        w.set("dept_admin", calc.dept_admin)
        w.set("ret_admin", calc.ret_admin)
        w.set(("driver_fee", "fee_sopir"), calc.driver_fee)
        w.set(("net_profit", "profit_netto"), calc.net_profit)
        w.set("payment_status", status)
        w.touch("updated_at")

        if row_id:
            if not as_text(old.get("order_no")):
                w.set_text("order_no", build_order_number(s, caps, car_code, day, month, year))
            w.update(s, {"id": row_id})
            return row_id

        w.set_text("order_no", build_order_number(s, caps, car_code, day, month, year))
        for c in ("other_income",) + FEE_COLUMNS:
            w.set(c, 0)
        w.touch("created_at")
        new_id = w.insert(s)
        _log.info("ledger row created", extra={"trip_key": p.trip_key, "booking_id": p.booking_id, "table": TABLE})
        return new_id
    except SQLAlchemyError as e:
        raise PersistenceError(TABLE, "upsert", e) from e


# ---- Reporting ----

def monthly_report(s: Session, year: int, month: int) -> Dict[str, Any]:
    """Ledger rows of one month with their computed split and totals."""
    snap = SchemaSnapshot(s)
    caps = snap.caps(TABLE)
    out: Dict[str, Any] = {"year": year, "month": month, "trips": [], "totals": {}}
    if caps is None or not (caps.has("month") and caps.has("year")):
        return out
    stmt = select(caps.table).where(caps.col("month") == month, caps.col("year") == year)
    if caps.has("day"):
        stmt = stmt.order_by(caps.col("day").asc())
    if caps.has("id"):
        stmt = stmt.order_by(caps.col("id").asc())
    rows: List[Dict[str, Any]] = []
    totals = {
        "dept_total": 0,
        "ret_total": 0,
        "admin": 0,
        "driver_fee": 0,
        "net_profit": 0,
        "total_nominal": 0,
    }
    for r in s.execute(stmt).mappings().all():
        row = {str(k).lower(): v for k, v in dict(r).items()}
        calc = compute_trip_calc(row)
        rows.append(
            {
                "id": row.get("id"),
                "order_no": as_text(row.get("order_no")),
                "day": as_int(row.get("day")),
                "car_code": as_text(row.get("car_code")),
                "driver_name": as_text(row.get("driver_name")),
                "payment_status": as_text(row.get("payment_status")),
                "calc": calc.as_dict(),
            }
        )
        totals["dept_total"] += calc.dept_total
        totals["ret_total"] += calc.ret_total
        totals["admin"] += calc.dept_admin + calc.ret_admin
        totals["driver_fee"] += calc.driver_fee
        totals["net_profit"] += calc.net_profit
        totals["total_nominal"] += calc.total_nominal
    out["trips"] = rows
    out["totals"] = totals
    return out
