from __future__ import annotations

import json

import apps.travel.app.passengers as passengers  # type: ignore[import]
import apps.travel.app.payload as payload  # type: ignore[import]
import apps.travel.app.settings_sync as settings_sync  # type: ignore[import]


def test_parse_seats_flexible_encodings():
    assert payload.parse_seats_flexible('["1a", " 2B"]') == ["1a", "2B"]
    assert payload.parse_seats_flexible("1A, 1B;2C\n3D\t4E") == ["1A", "1B", "2C", "3D", "4E"]
    assert payload.parse_seats_flexible("1A 1B") == ["1A", "1B"]
    assert payload.parse_seats_flexible('"1A,2B"') == ["1A", "2B"]
    assert payload.parse_seats_flexible(None) == []
    assert payload.parse_seats_flexible("") == []


def test_seats_unique_upper_and_ordered():
    assert payload.normalize_seats_unique(["2b", "1A", "2B", " "]) == ["2B", "1A"]
    assert payload.sort_seats(["10A", "2B", "X", "1A", "2b"]) == ["1A", "2B", "10A", "X"]
    assert payload.seats_csv(["3C", "1A"]) == "1A, 3C"


def test_trip_role_aliases():
    assert payload.normalize_trip_role("pulang") == payload.ROLE_RETURN
    assert payload.normalize_trip_role(" Keberangkatan ") == payload.ROLE_DEPARTURE
    assert payload.normalize_trip_role("") == ""


def _payload(booking_id: int = 42) -> payload.BookingSyncPayload:
    return payload.BookingSyncPayload(
        booking_id=booking_id,
        route_from="Pekanbaru",
        route_to="Bangkinang",
        trip_date="2025-01-01",
        trip_time="08:00",
        seats=["1A"],
    )


def test_notes_hint_is_machine_readable():
    hint = passengers.notes_hint(_payload())
    blob = json.loads(hint)
    assert blob["booking_id"] == 42
    assert blob["hint"] == "BOOKING_ID:42"
    assert blob["eticket_invoice"] == "ETICKET_INVOICE_FROM_BOOKING:42"
    assert blob["surat_jalan_api"].endswith("/bookings/42/surat-jalan")


def test_notes_append_keeps_staff_text_and_is_idempotent():
    hint = passengers.notes_hint(_payload())
    once = passengers.merge_notes("VIP customer", 42, hint)
    assert once.startswith("VIP customer\n{")
    assert "BOOKING_ID:42" in once
    twice = passengers.merge_notes(once, 42, hint)
    assert twice == once
    assert twice.count("BOOKING_ID:42") == 1


def test_notes_hint_for_other_booking_is_appended():
    first = passengers.merge_notes("", 4, passengers.notes_hint(_payload(4)))
    merged = passengers.merge_notes(first, 42, passengers.notes_hint(_payload(42)))
    assert "BOOKING_ID:4\"" in merged
    assert "BOOKING_ID:42" in merged


def test_passenger_list_text():
    rows = [
        payload.SeatPassenger(seat_code="2B", name="Budi"),
        payload.SeatPassenger(seat_code="1A", name="Nerry"),
        payload.SeatPassenger(seat_code="3C"),
    ]
    assert settings_sync.passenger_list_text(rows) == "1A - Nerry\n2B - Budi\n3C"
    assert settings_sync.merge_passenger_list("1A - Nerry", "1A - Nerry\n2B - Budi") == "1A - Nerry\n2B - Budi"


def test_payload_defaults():
    p = payload.BookingSyncPayload(booking_id=1, passenger_count=3)
    assert p.seat_count == 3
    assert p.service_type == "Reguler"
    assert payload.BookingSyncPayload(booking_id=2).seat_count == 1
