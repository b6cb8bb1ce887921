from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

# Canonical stops: normalized key -> display name.
_STOPS: Dict[str, str] = {
    "skpd": "SKPD",
    "simpangd": "Simpang D",
    "skpc": "SKPC",
    "simpangkumu": "Simpang Kumu",
    "muararumbai": "Muara Rumbai",
    "surautinggi": "Surau Tinggi",
    "pasirpengaraian": "Pasir Pengaraian",
    "ujungbatu": "Ujung Batu",
    "tandun": "Tandun",
    "silam": "Silam",
    "petapahan": "Petapahan",
    "suram": "Suram",
    "aliantan": "Aliantan",
    "kuok": "Kuok",
    "bangkinang": "Bangkinang",
    "kabun": "Kabun",
    "pekanbaru": "Pekanbaru",
}

_ALIASES = {
    "pku": "pekanbaru",
    "ub": "ujungbatu",
    "pasipengaraian": "pasirpengaraian",
}

# Rokan Hulu cluster; every stop in it prices the same towards a hub.
CLUSTER_A = frozenset(
    {"skpd", "simpangd", "skpc", "simpangkumu", "muararumbai", "surautinggi", "pasirpengaraian"}
)

CLUSTER_HUB_FARES = {
    "pekanbaru": 150_000,
    "kabun": 120_000,
    "tandun": 100_000,
    "petapahan": 130_000,
    "suram": 120_000,
    "aliantan": 120_000,
    "bangkinang": 130_000,
}

PAIR_FARES = {
    frozenset({"bangkinang", "pekanbaru"}): 100_000,
    frozenset({"ujungbatu", "pekanbaru"}): 130_000,
    frozenset({"suram", "pekanbaru"}): 120_000,
    frozenset({"petapahan", "pekanbaru"}): 100_000,
}

# Older flat-rate table, keyed on lowercase names as typed by staff.
_LEGACY_GROUP = frozenset(
    {"skpd", "simpang d", "skpc", "simpang kumu", "muara rumbai", "surau tinggi", "pasirpengaraian"}
)
_LEGACY_PAIRS = {
    frozenset({"bangkinang", "pekanbaru"}): 100_000,
    frozenset({"ujung batu", "pekanbaru"}): 130_000,
    frozenset({"suram", "pekanbaru"}): 120_000,
    frozenset({"petapahan", "pekanbaru"}): 100_000,
}

PAID_STATUSES = frozenset({"sukses", "lunas", "paid"})


def stop_key(name: Any) -> str:
    k = str(name or "").strip().lower()
    for ch in (" ", "-", "."):
        k = k.replace(ch, "")
    return _ALIASES.get(k, k)


def canonical_stop(name: Any) -> Optional[Tuple[str, str]]:
    """(display name, key) for a known stop, None otherwise."""
    k = stop_key(name)
    if k in _STOPS:
        return _STOPS[k], k
    return None


def display_stop(name: Any) -> str:
    """Display name of a stop ("pku" -> "Pekanbaru"); unknown stops come back trimmed."""
    got = canonical_stop(name)
    return got[0] if got else str(name or "").strip()


def fare_per_seat(route_from: Any, route_to: Any) -> int:
    a, b = stop_key(route_from), stop_key(route_to)
    if not a or not b or a == b:
        return 0
    pair = PAIR_FARES.get(frozenset({a, b}))
    if pair:
        return pair
    if a in CLUSTER_A or b in CLUSTER_A:
        other = a if b in CLUSTER_A else b
        return CLUSTER_HUB_FARES.get(other, 0)
    return 0


def legacy_fare(route_from: Any, route_to: Any) -> int:
    f = str(route_from or "").strip().lower()
    t = str(route_to or "").strip().lower()
    if not f or not t:
        return 0
    if f in _LEGACY_GROUP or t in _LEGACY_GROUP:
        other = f if t in _LEGACY_GROUP else t
        fare = CLUSTER_HUB_FARES.get(other, 0)
        if fare:
            return fare
    return _LEGACY_PAIRS.get(frozenset({f, t}), 0)


def resolve_fare(route_from: Any, route_to: Any, stored: Any = 0) -> int:
    """Rule table first, then the legacy table, then whatever the booking stored."""
    fare = fare_per_seat(route_from, route_to)
    if fare > 0:
        return fare
    fare = legacy_fare(route_from, route_to)
    if fare > 0:
        return fare
    try:
        return max(0, int(float(stored or 0)))
    except (TypeError, ValueError):
        return 0


def is_paid_success(payment_status: Any, payment_method: Any) -> bool:
    status = str(payment_status or "").strip().lower()
    method = str(payment_method or "").strip().lower()
    if method == "cash":
        return status == "" or status in PAID_STATUSES
    return status in PAID_STATUSES
