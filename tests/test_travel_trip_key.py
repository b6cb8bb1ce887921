from __future__ import annotations

from datetime import date, datetime

import apps.travel.app.trip_lock as tl  # type: ignore[import]


def test_trip_key_canonical_form():
    key = tl.trip_key("2025-01-01", "08:00", "Pekanbaru", "Bangkinang")
    assert key == "TRIP-20250101-0800-PEKANBARU-BANGKINANG"


def test_trip_key_same_trip_from_different_spellings():
    a = tl.trip_key("2025-01-01", "08:00", "Pekanbaru", "Bangkinang")
    b = tl.trip_key("2025-01-01 00:00:00", "8.00", "pekan-baru", " bangkinang ")
    c = tl.trip_key(datetime(2025, 1, 1, 6, 30), "08:00:00", "PEKAN BARU", "Bangkinang")
    assert a == b == c


def test_trip_key_defaults():
    assert tl.trip_key("2025-02-03", "", "A", "B") == "TRIP-20250203-0000-A-B"
    today = date.today().strftime("%Y%m%d")
    assert tl.trip_key("", "07:15", "A", "B") == f"TRIP-{today}-0715-A-B"


def test_time_and_date_normalization():
    assert tl.time_hhmm("7:05") == "07:05"
    assert tl.time_hhmm("25:00") == ""
    assert tl.time_hhmm(None) == ""
    assert tl.date_only(date(2025, 3, 9)) == "2025-03-09"
    assert tl.date_only("2025-03-09T10:00:00Z") == "2025-03-09"
    assert tl.stop_code("Simpang D./x") == "SIMPANGDX"
