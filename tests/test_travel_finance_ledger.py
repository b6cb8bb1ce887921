from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

import apps.travel.app.finance as finance  # type: ignore[import]
import apps.travel.app.sync as sync  # type: ignore[import]
from apps.travel.app.aggregate import TripAggregate  # type: ignore[import]
from apps.travel.app.assignment import Assignment  # type: ignore[import]
from apps.travel.app.errors import SchemaMismatch  # type: ignore[import]
from apps.travel.app.payload import BookingSyncPayload  # type: ignore[import]
from apps.travel.app.schema import SchemaSnapshot  # type: ignore[import]
from travel_db import FULL_SCHEMA, add_booking, create_tables, fetch_all, insert_row

KEY = "TRIP-20250101-0800-PEKANBARU-BANGKINANG"


def _sync(engine, booking_id: int):
    with Session(engine) as s, s.begin():
        return sync.sync_booking(s, booking_id, lock_timeout=0)


def test_ledger_row_from_two_bookings(engine):
    create_tables(engine, *FULL_SCHEMA)
    b1 = add_booking(engine, selected_seats='["1A","2B"]')
    add_booking(engine, selected_seats='["2B","3C"]')
    _sync(engine, b1)
    rows = fetch_all(engine, "trips")
    assert len(rows) == 1
    row = rows[0]
    assert row["trip_key"] == KEY
    assert (row["day"], row["month"], row["year"]) == (1, 1, 2025)
    assert row["dept_passenger_count"] == 4
    assert row["dept_passenger_fare"] == 400000
    assert row["dept_admin"] == 0
    assert row["driver_fee"] == 133333
    assert row["net_profit"] == 266667
    assert row["payment_status"] == "Lunas"
    assert row["bbm_fee"] == 0


def test_order_number_uses_car_code(engine):
    create_tables(engine, *FULL_SCHEMA)
    b1 = add_booking(engine)
    insert_row(engine, "departure_settings", trip_number=KEY, driver_name="Agus", vehicle_code="bm1234")
    insert_row(engine, "trips", order_no="LKT/01/BM1234", car_code="BM1234", day=1, month=1, year=2025, trip_key="OTHER")
    _sync(engine, b1)
    row = fetch_all(engine, "trips")[1]
    assert row["car_code"] == "BM1234"
    assert row["driver_name"] == "Agus"
    assert row["order_no"] == "LKT/02/BM1234"


def test_existing_fees_and_higher_fares_are_kept(engine):
    create_tables(engine, *FULL_SCHEMA)
    b1 = add_booking(engine)
    insert_row(
        engine,
        "trips",
        trip_key=KEY,
        order_no="LKT/01/X",
        dept_category="Reguler",
        dept_passenger_fare=500000,
        dept_passenger_count=5,
        bbm_fee=30000,
        payment_status="Lunas",
    )
    _sync(engine, b1)
    row = fetch_all(engine, "trips")[0]
    assert row["dept_passenger_fare"] == 500000
    assert row["dept_passenger_count"] == 5
    assert row["bbm_fee"] == 30000
    assert row["order_no"] == "LKT/01/X"
    assert row["dept_admin"] == 75000
    assert row["driver_fee"] == 131667
    assert row["net_profit"] == 263333
    assert row["payment_status"] == "Lunas"


def test_ledger_without_any_key_columns(engine):
    create_tables(engine, "CREATE TABLE trips (id INTEGER PRIMARY KEY AUTOINCREMENT, order_no TEXT)")
    p = BookingSyncPayload(booking_id=1, trip_date="2025-01-01", trip_time="08:00", route_from="A", route_to="B")
    with Session(engine) as s:
        with pytest.raises(SchemaMismatch):
            finance.upsert_trip_finance(s, SchemaSnapshot(s), p, TripAggregate(), Assignment())


def test_ledger_keyed_by_car_and_day(engine):
    create_tables(
        engine,
        "CREATE TABLE trips (id INTEGER PRIMARY KEY AUTOINCREMENT, order_no TEXT, day INTEGER, month INTEGER,"
        " year INTEGER, car_code TEXT, dept_passenger_fare INTEGER, dept_passenger_count INTEGER)",
    )
    p = BookingSyncPayload(
        booking_id=1, trip_date="2025-01-01", trip_time="08:00", route_from="Pekanbaru", route_to="Bangkinang", seats=["1A"]
    )
    agg = TripAggregate(seats=["1A"], count=1, dept_count=1, dept_total=100000)
    with Session(engine) as s, s.begin():
        snap = SchemaSnapshot(s)
        first = finance.upsert_trip_finance(s, snap, p, agg, Assignment(vehicle_code="bm7"))
        again = finance.upsert_trip_finance(s, snap, p, agg, Assignment(vehicle_code="BM7"))
    assert first == again
    rows = fetch_all(engine, "trips")
    assert len(rows) == 1
    assert rows[0]["order_no"] == "LKT/01/BM7"


def test_car_assigned_between_syncs_keeps_one_ledger_row(engine):
    create_tables(
        engine,
        "CREATE TABLE trips (id INTEGER PRIMARY KEY AUTOINCREMENT, order_no TEXT, day INTEGER, month INTEGER,"
        " year INTEGER, car_code TEXT, dept_origin TEXT, dept_dest TEXT, dept_passenger_fare INTEGER,"
        " dept_passenger_count INTEGER)",
    )
    p = BookingSyncPayload(
        booking_id=1, trip_date="2025-01-01", trip_time="08:00", route_from="Pekanbaru", route_to="Bangkinang", seats=["1A"]
    )
    agg = TripAggregate(seats=["1A"], count=1, dept_count=1, dept_total=100000)
    with Session(engine) as s, s.begin():
        snap = SchemaSnapshot(s)
        first = finance.upsert_trip_finance(s, snap, p, agg, Assignment())
        later = finance.upsert_trip_finance(s, snap, p, agg, Assignment(vehicle_code="BM7"))
        other_car = finance.upsert_trip_finance(s, snap, p, agg, Assignment(vehicle_code="BM8"))
    assert first == later
    assert other_car != first
    rows = fetch_all(engine, "trips")
    assert [(r["car_code"], r["order_no"]) for r in rows] == [("BM7", "LKT/01/BM7"), ("BM8", "LKT/01/BM8")]


def test_monthly_report(engine):
    create_tables(engine, *FULL_SCHEMA)
    b1 = add_booking(engine)
    _sync(engine, b1)
    insert_row(engine, "trips", trip_key="X", day=5, month=2, year=2025, dept_passenger_fare=999)
    with Session(engine) as s:
        report = finance.monthly_report(s, 2025, 1)
    assert len(report["trips"]) == 1
    assert report["trips"][0]["calc"]["dept_total"] == 200000
    assert report["totals"]["driver_fee"] == 66667
    assert report["totals"]["net_profit"] == 133333


def test_monthly_report_without_ledger(engine):
    with Session(engine) as s:
        report = finance.monthly_report(s, 2025, 1)
    assert report["trips"] == []
