from __future__ import annotations

from sqlalchemy.orm import Session

import apps.travel.app.aggregate as aggregate  # type: ignore[import]
from apps.travel.app.schema import SchemaSnapshot  # type: ignore[import]
from travel_db import BOOKING_SEATS, BOOKINGS, REGULER_BOOKINGS, add_booking, create_tables, insert_row


def _aggregate(engine, **kw):
    args = dict(
        trip_date="2025-01-01",
        trip_time="08:00",
        route_from="Pekanbaru",
        route_to="Bangkinang",
        category="Reguler",
    )
    args.update(kw)
    with Session(engine) as s:
        return aggregate.aggregate_trip(s, SchemaSnapshot(s), **args)


def test_union_of_paid_seats_is_sorted_and_unique(engine):
    create_tables(engine, BOOKINGS)
    add_booking(engine, selected_seats='["1A","2B"]')
    add_booking(engine, selected_seats='["2B","3C"]')
    agg = _aggregate(engine)
    assert agg.seats == ["1A", "2B", "3C"]
    assert agg.count == 3
    assert agg.booking_ids == [1, 2]
    assert not agg.degraded


def test_unpaid_other_slots_and_directions(engine):
    create_tables(engine, BOOKINGS)
    add_booking(engine, selected_seats='["1A","2B"]')
    add_booking(engine, selected_seats='["2B","3C"]', total_amount=150000)
    add_booking(engine, selected_seats='["4D"]', payment_method="transfer", payment_status="")
    add_booking(engine, selected_seats='["5E"]', trip_time="09:00")
    add_booking(engine, selected_seats='["6F"]', trip_date="2025-01-02")
    add_booking(engine, selected_seats='["7G"]', category="Dropping")
    add_booking(engine, selected_seats='["8H"]', from_city="Bangkinang", to_city="Pekanbaru", total_amount=100000)
    agg = _aggregate(engine)
    assert agg.seats == ["1A", "2B", "3C"]
    assert agg.dept_count == 4
    assert agg.dept_total == 350000
    assert agg.ret_count == 1
    assert agg.ret_total == 100000


def test_missing_totals_use_route_fare(engine):
    create_tables(engine, BOOKINGS)
    add_booking(engine, selected_seats='["1A","2B"]', total_amount=0)
    agg = _aggregate(engine)
    assert agg.dept_total == 200000


def test_seats_from_booking_seats_table(engine):
    create_tables(engine, REGULER_BOOKINGS, BOOKING_SEATS)
    for seats in (("1A", "2B"), ("2B", "3C")):
        bid = insert_row(
            engine,
            "reguler_bookings",
            route_from="Pekanbaru",
            route_to="Bangkinang",
            trip_date="2025-01-01",
            trip_time="08:00",
            payment_method="cash",
            payment_status="",
            total=200000,
        )
        for seat in seats:
            insert_row(engine, "booking_seats", booking_id=bid, seat_code=seat)
    agg = _aggregate(engine, category="")
    assert agg.seats == ["1A", "2B", "3C"]
    assert agg.count == 3


def test_without_booking_table_own_seats_come_back(engine):
    agg = _aggregate(engine, own_seats=["2b", "1A"])
    assert agg.degraded
    assert agg.seats == ["2B", "1A"]
    assert agg.count == 2
