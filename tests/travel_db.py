"""
Raw DDL for the back-office tables the sync engine writes to.

Each test creates only the tables it needs so different schema shapes
(optional columns present or missing, legacy table names) get exercised.
"""

from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy import text

BOOKINGS = """
CREATE TABLE bookings (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  category TEXT,
  trip_role TEXT,
  from_city TEXT,
  to_city TEXT,
  trip_date TEXT,
  trip_time TEXT,
  pickup_location TEXT,
  dropoff_location TEXT,
  passenger_name TEXT,
  passenger_phone TEXT,
  customer_name TEXT,
  customer_phone TEXT,
  selected_seats TEXT,
  passenger_count INTEGER,
  price_per_seat INTEGER,
  total_amount INTEGER,
  payment_method TEXT,
  payment_status TEXT,
  created_at TEXT,
  updated_at TEXT
)
"""

# Legacy shape: other table name, route_* columns, no seats column.
REGULER_BOOKINGS = """
CREATE TABLE reguler_bookings (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  route_from TEXT,
  route_to TEXT,
  trip_date TEXT,
  trip_time TEXT,
  customer_name TEXT,
  customer_phone TEXT,
  total INTEGER,
  payment_method TEXT,
  payment_status TEXT
)
"""

BOOKING_SEATS = """
CREATE TABLE booking_seats (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  booking_id INTEGER,
  seat_code TEXT
)
"""

BOOKING_PASSENGERS = """
CREATE TABLE booking_passengers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  booking_id INTEGER,
  seat_code TEXT,
  passenger_name TEXT,
  passenger_phone TEXT,
  paid_price INTEGER
)
"""

PAYMENT_VALIDATIONS = """
CREATE TABLE payment_validations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  booking_id INTEGER,
  customer_name TEXT,
  customer_phone TEXT,
  trip_role TEXT,
  payment_status TEXT,
  updated_at TEXT
)
"""

BOOKING_INVOICES = """
CREATE TABLE booking_invoices (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  booking_id INTEGER,
  total_amount INTEGER
)
"""

_SETTINGS_COLUMNS = """
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  booking_id INTEGER,
  trip_number TEXT,
  booking_name TEXT,
  phone TEXT,
  pickup_address TEXT,
  departure_date TEXT,
  departure_time TEXT,
  route_from TEXT,
  route_to TEXT,
  service_type TEXT,
  seat_numbers TEXT,
  passenger_count INTEGER,
  passenger_list TEXT,
  surat_jalan_file TEXT,
  surat_jalan_file_name TEXT,
  driver_name TEXT,
  vehicle_code TEXT,
  vehicle_type TEXT,
  license_plate TEXT,
  {status} TEXT,
  created_at TEXT,
  updated_at TEXT
"""

DEPARTURE_SETTINGS = "CREATE TABLE departure_settings (" + _SETTINGS_COLUMNS.format(status="departure_status") + ")"
RETURN_SETTINGS = "CREATE TABLE return_settings (" + _SETTINGS_COLUMNS.format(status="return_status") + ")"

PASSENGERS = """
CREATE TABLE passengers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  booking_id INTEGER,
  passenger_name TEXT,
  passenger_phone TEXT,
  date TEXT,
  departure_time TEXT,
  pickup_address TEXT,
  destination TEXT,
  total_amount INTEGER,
  selected_seats TEXT,
  service_type TEXT,
  trip_role TEXT,
  trip_number TEXT,
  eticket_photo TEXT,
  notes TEXT,
  driver_name TEXT,
  vehicle_code TEXT,
  vehicle_type TEXT,
  created_at TEXT,
  updated_at TEXT
)
"""

TRIP_INFORMATION = """
CREATE TABLE trip_information (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  booking_id INTEGER,
  trip_number TEXT,
  departure_date TEXT,
  departure_time TEXT,
  route_from TEXT,
  route_to TEXT,
  category TEXT,
  driver_name TEXT,
  vehicle_code TEXT,
  vehicle_type TEXT,
  license_plate TEXT,
  e_surat_jalan TEXT,
  passenger_count INTEGER,
  created_at TEXT,
  updated_at TEXT
)
"""

TRIPS = """
CREATE TABLE trips (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  trip_key TEXT,
  order_no TEXT,
  day INTEGER,
  month INTEGER,
  year INTEGER,
  car_code TEXT,
  driver_name TEXT,
  vehicle_name TEXT,
  dept_origin TEXT,
  dept_dest TEXT,
  dept_category TEXT,
  dept_passenger_count INTEGER,
  dept_passenger_fare INTEGER,
  ret_passenger_count INTEGER,
  ret_passenger_fare INTEGER,
  other_income INTEGER,
  bbm_fee INTEGER,
  meal_fee INTEGER,
  courier_fee INTEGER,
  tol_parkir_fee INTEGER,
  dept_admin INTEGER,
  ret_admin INTEGER,
  driver_fee INTEGER,
  net_profit INTEGER,
  payment_status TEXT,
  created_at TEXT,
  updated_at TEXT
)
"""

FULL_SCHEMA = (
    BOOKINGS,
    BOOKING_PASSENGERS,
    PAYMENT_VALIDATIONS,
    DEPARTURE_SETTINGS,
    RETURN_SETTINGS,
    PASSENGERS,
    TRIP_INFORMATION,
    TRIPS,
)


def create_tables(engine, *ddl: str) -> None:
    with engine.begin() as conn:
        for stmt in ddl:
            conn.execute(text(stmt))


def insert_row(engine, table: str, **values: Any) -> int:
    cols = ", ".join(values)
    params = ", ".join(f":{k}" for k in values)
    with engine.begin() as conn:
        res = conn.execute(text(f"INSERT INTO {table} ({cols}) VALUES ({params})"), values)
        return int(res.lastrowid)


def fetch_all(engine, table: str) -> List[Dict[str, Any]]:
    with engine.connect() as conn:
        rows = conn.execute(text(f"SELECT * FROM {table} ORDER BY id")).mappings().all()
    return [dict(r) for r in rows]


def add_booking(engine, **overrides: Any) -> int:
    values: Dict[str, Any] = {
        "category": "Reguler",
        "trip_role": "Keberangkatan",
        "from_city": "Pekanbaru",
        "to_city": "Bangkinang",
        "trip_date": "2025-01-01",
        "trip_time": "08:00",
        "pickup_location": "Jl. Sudirman 1",
        "dropoff_location": "Terminal Bangkinang",
        "passenger_name": "Nerry",
        "passenger_phone": "08120000001",
        "selected_seats": '["1A","2B"]',
        "price_per_seat": 100000,
        "total_amount": 200000,
        "payment_method": "transfer",
        "payment_status": "Lunas",
    }
    values.update(overrides)
    return insert_row(engine, "bookings", **values)
