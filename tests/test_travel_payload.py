from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

import apps.travel.app.payload as payload  # type: ignore[import]
from apps.travel.app.errors import NotFound  # type: ignore[import]
from apps.travel.app.schema import SchemaSnapshot  # type: ignore[import]
from travel_db import (
    BOOKING_INVOICES,
    BOOKING_PASSENGERS,
    BOOKING_SEATS,
    BOOKINGS,
    PAYMENT_VALIDATIONS,
    REGULER_BOOKINGS,
    add_booking,
    create_tables,
    insert_row,
)


def _read(engine, booking_id: int) -> payload.BookingSyncPayload:
    with Session(engine) as s:
        return payload.read_booking_payload(s, SchemaSnapshot(s), booking_id)


def test_reads_booking_row(engine):
    create_tables(engine, BOOKINGS)
    bid = add_booking(engine, selected_seats='["1a","2B","1A"]', trip_time="08:00:00")
    p = _read(engine, bid)
    assert p.source_table == "bookings"
    assert p.seats == ["1A", "2B"]
    assert p.trip_role == payload.ROLE_DEPARTURE
    assert p.passenger_name == "Nerry"
    assert p.passenger_phone == "08120000001"
    assert p.trip_key == "TRIP-20250101-0800-PEKANBARU-BANGKINANG"
    assert p.total_amount == 200000
    assert p.is_paid


def test_missing_booking_raises_not_found(engine):
    create_tables(engine, BOOKINGS)
    with pytest.raises(NotFound):
        _read(engine, 999)
    with pytest.raises(NotFound):
        _read(engine, 0)


def test_legacy_table_with_fallbacks(engine):
    create_tables(engine, REGULER_BOOKINGS, BOOKING_SEATS, PAYMENT_VALIDATIONS)
    bid = insert_row(
        engine,
        "reguler_bookings",
        route_from="Pekanbaru",
        route_to="Bangkinang",
        trip_date="2025-01-01",
        trip_time="08:00",
        customer_name="self",
        customer_phone="0813",
        total=0,
        payment_method="cash",
        payment_status="",
    )
    insert_row(engine, "booking_seats", booking_id=bid, seat_code="3c")
    insert_row(engine, "booking_seats", booking_id=bid, seat_code="4D")
    insert_row(engine, "payment_validations", booking_id=bid, customer_name="Old", trip_role="berangkat")
    insert_row(engine, "payment_validations", booking_id=bid, customer_name="Sari", trip_role="pulang")

    p = _read(engine, bid)
    assert p.source_table == "reguler_bookings"
    assert p.seats == ["3C", "4D"]
    # newest validation wins
    assert p.trip_role == payload.ROLE_RETURN
    assert p.passenger_name == "Sari"
    assert p.passenger_phone == "0813"
    assert p.price_per_seat == 100000
    assert p.total_amount == 200000
    assert p.is_paid


def test_total_falls_back_to_invoice(engine):
    create_tables(engine, BOOKINGS, BOOKING_INVOICES)
    bid = add_booking(engine, from_city="Nowhere", to_city="Elsewhere", price_per_seat=0, total_amount=0)
    insert_row(engine, "booking_invoices", booking_id=bid, total_amount=175000)
    p = _read(engine, bid)
    assert p.price_per_seat == 0
    assert p.total_amount == 175000


def test_seat_passengers_supply_name(engine):
    create_tables(engine, BOOKINGS, BOOKING_PASSENGERS)
    bid = add_booking(engine, passenger_name="", customer_name="")
    insert_row(engine, "booking_passengers", booking_id=bid, seat_code="1a", passenger_name="Rina", paid_price=90000)
    p = _read(engine, bid)
    assert p.passenger_name == "Rina"
    with Session(engine) as s:
        rows = payload.load_seat_passengers(s, SchemaSnapshot(s), bid)
    assert rows == [payload.SeatPassenger(seat_code="1A", name="Rina", phone="", paid_price=90000)]
