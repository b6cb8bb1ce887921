from __future__ import annotations

import os


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_int(key: str, default: int) -> int:
    try:
        return int(_env_or(key, str(default)).strip())
    except ValueError:
        return default


DB_URL = _env_or("TRAVEL_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/travel.db"))
ENV = _env_or("ENV", "dev").lower()

# Advisory lock wait per trip key.
TRIP_LOCK_TIMEOUT_SECONDS = max(0, _env_int("TRIP_LOCK_TIMEOUT_SECONDS", 5))

WAYBILL_API_PREFIX = _env_or("WAYBILL_API_PREFIX", "reguler").strip().strip("/") or "reguler"
PUBLIC_API_BASE_URL = _env_or("PUBLIC_API_BASE_URL", "").strip().rstrip("/")

EVENTS_ENABLED = _env_or("EVENTS_ENABLED", "false").lower() == "true"
EVENTS_REDIS_URL = _env_or("EVENTS_REDIS_URL", "redis://localhost:6379/0")

ENABLE_DOCS = ENV in ("dev", "test") or os.getenv("ENABLE_API_DOCS_IN_PROD", "").lower() in (
    "1",
    "true",
    "yes",
    "on",
)


def is_prod_env() -> bool:
    # Read at call time so tests can flip ENV with monkeypatch.
    return (os.getenv("ENV") or "dev").strip().lower() in ("prod", "production", "staging")


def waybill_api_path(booking_id: int) -> str:
    path = f"/api/{WAYBILL_API_PREFIX}/bookings/{int(booking_id)}/surat-jalan"
    return f"{PUBLIC_API_BASE_URL}{path}" if PUBLIC_API_BASE_URL else path
