from __future__ import annotations

import hashlib
import logging
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterator

from sqlalchemy import text
from sqlalchemy.orm import Session

from .errors import LockTimeout

_log = logging.getLogger("travel.lock")

_TIME_RE = re.compile(r"(\d{1,2})\s*[:.]\s*(\d{2})")
_STOP_STRIP_RE = re.compile(r"[\s\-._/]+")

# MySQL rejects GET_LOCK names longer than 64 characters.
_MYSQL_LOCK_NAME_MAX = 64
_PG_POLL_SECONDS = 0.1

STATUS_ACQUIRED = "acquired"
STATUS_TIMEOUT = "timeout"
STATUS_UNSUPPORTED = "unsupported"
STATUS_ERROR = "error"


# ---- Trip identity ----

def date_only(value: Any) -> str:
    """'YYYY-MM-DD' prefix of a date, datetime or date-like string; '' when unknown."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    s = str(value).strip()
    return s[:10] if len(s) >= 10 else s


def time_hhmm(value: Any) -> str:
    """'HH:MM' for anything that looks like a clock time, else ''."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%H:%M")
    m = _TIME_RE.search(str(value))
    if not m:
        return ""
    hh, mm = int(m.group(1)), int(m.group(2))
    if hh > 23 or mm > 59:
        return ""
    return f"{hh:02d}:{mm:02d}"


def stop_code(name: Any) -> str:
    return _STOP_STRIP_RE.sub("", str(name or "")).upper()


def trip_key(trip_date: Any, trip_time: Any, route_from: Any, route_to: Any) -> str:
    """
    Canonical identity of one physical departure:
      TRIP-YYYYMMDD-HHMM-FROM-TO

    An unknown date resolves to today, an unknown time to 00:00.
    """
    digits = re.sub(r"\D", "", date_only(trip_date))
    if not digits:
        digits = date.today().strftime("%Y%m%d")
    hhmm = (time_hhmm(trip_time) or "00:00").replace(":", "")
    return f"TRIP-{digits}-{hhmm}-{stop_code(route_from)}-{stop_code(route_to)}"


# ---- Advisory lock ----

@dataclass(frozen=True)
class LockOutcome:
    key: str
    status: str
    waited_seconds: float = 0.0
    detail: str = ""

    @property
    def acquired(self) -> bool:
        return self.status == STATUS_ACQUIRED

    def raise_for_status(self) -> None:
        if self.status == STATUS_TIMEOUT:
            raise LockTimeout(self.key, self.waited_seconds)

    def as_dict(self) -> dict:
        return {
            "key": self.key,
            "status": self.status,
            "acquired": self.acquired,
            "waited_seconds": round(self.waited_seconds, 3),
        }


def mysql_lock_name(key: str) -> str:
    if len(key) <= _MYSQL_LOCK_NAME_MAX:
        return key
    return "trip:" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:40]


def _dialect_name(s: Session) -> str:
    try:
        return s.get_bind().dialect.name
    except Exception:
        return ""


def acquire_trip_lock(s: Session, key: str, timeout: float = 5) -> LockOutcome:
    """
    Try to take the advisory lock named after `key` on the session's
    connection. Never raises: the outcome says whether exclusivity was
    obtained and callers proceed either way.
    """
    timeout = max(0.0, float(timeout))
    dialect = _dialect_name(s)
    started = time.monotonic()
    try:
        if dialect in ("mysql", "mariadb"):
            got = s.execute(
                text("SELECT GET_LOCK(:name, :timeout)"),
                {"name": mysql_lock_name(key), "timeout": int(timeout)},
            ).scalar()
            waited = time.monotonic() - started
            if got is None:
                outcome = LockOutcome(key, STATUS_ERROR, waited, "GET_LOCK returned NULL")
            elif int(got) == 1:
                outcome = LockOutcome(key, STATUS_ACQUIRED, waited)
            else:
                outcome = LockOutcome(key, STATUS_TIMEOUT, waited)
        elif dialect == "postgresql":
            deadline = started + timeout
            while True:
                got = s.execute(
                    text("SELECT pg_try_advisory_xact_lock(hashtext(:key))"),
                    {"key": key},
                ).scalar()
                if got:
                    outcome = LockOutcome(key, STATUS_ACQUIRED, time.monotonic() - started)
                    break
                if time.monotonic() >= deadline:
                    outcome = LockOutcome(key, STATUS_TIMEOUT, time.monotonic() - started)
                    break
                time.sleep(_PG_POLL_SECONDS)
        else:
            outcome = LockOutcome(key, STATUS_UNSUPPORTED, 0.0, dialect)
    except Exception as e:
        outcome = LockOutcome(key, STATUS_ERROR, time.monotonic() - started, str(e))

    if outcome.status == STATUS_ACQUIRED:
        _log.debug("trip lock acquired", extra={"trip_key": key, "lock_status": outcome.status})
    elif outcome.status == STATUS_UNSUPPORTED:
        _log.info(
            "advisory locks unavailable on %s; proceeding without exclusivity",
            outcome.detail or "this database",
            extra={"trip_key": key, "lock_status": outcome.status},
        )
    else:
        _log.warning(
            "trip lock not acquired (%s after %.1fs); proceeding without exclusivity %s",
            outcome.status,
            outcome.waited_seconds,
            outcome.detail,
            extra={"trip_key": key, "lock_status": outcome.status},
        )
    return outcome


def release_trip_lock(s: Session, outcome: LockOutcome) -> None:
    if not outcome.acquired:
        return
    # Postgres xact locks end with the transaction.
    if _dialect_name(s) not in ("mysql", "mariadb"):
        return
    try:
        s.execute(text("SELECT RELEASE_LOCK(:name)"), {"name": mysql_lock_name(outcome.key)})
    except Exception as e:
        _log.warning("trip lock release failed: %s", e, extra={"trip_key": outcome.key})


@contextmanager
def trip_lock(s: Session, key: str, timeout: float = 5) -> Iterator[LockOutcome]:
    outcome = acquire_trip_lock(s, key, timeout)
    try:
        yield outcome
    finally:
        release_trip_lock(s, outcome)
