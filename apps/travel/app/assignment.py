from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .payload import BOOKING_LINK_COLUMNS, ROLE_RETURN, BookingSyncPayload
from .schema import SchemaSnapshot, TableCaps, as_text, find_row_id, read_row, savepoint

_log = logging.getLogger("travel.assignment")

DRIVER_COLUMNS = ("driver_name", "driver")
VEHICLE_CODE_COLUMNS = ("vehicle_code", "car_code")
VEHICLE_TYPE_COLUMNS = ("vehicle_type", "vehicle_name", "vehicle")

DEPARTURE_TABLE = "departure_settings"
RETURN_TABLE = "return_settings"


@dataclass(frozen=True)
class Assignment:
    """Driver and vehicle recorded for a trip on its settings row."""

    driver_name: str = ""
    vehicle_code: str = ""
    vehicle_type: str = ""
    license_plate: str = ""

    @property
    def empty(self) -> bool:
        return not (self.driver_name or self.vehicle_code or self.vehicle_type or self.license_plate)

    @property
    def vehicle_label(self) -> str:
        return self.vehicle_code or self.vehicle_type

    def fill_from(self, other: "Assignment") -> "Assignment":
        return Assignment(
            driver_name=self.driver_name or other.driver_name,
            vehicle_code=self.vehicle_code or other.vehicle_code,
            vehicle_type=self.vehicle_type or other.vehicle_type,
            license_plate=self.license_plate or other.license_plate,
        )


def settings_table_for_role(trip_role: str) -> str:
    return RETURN_TABLE if trip_role == ROLE_RETURN else DEPARTURE_TABLE


def read_assignment(s: Session, caps: TableCaps, row_id: int) -> Assignment:
    cols = {
        "driver": caps.first_of(*DRIVER_COLUMNS),
        "code": caps.first_of(*VEHICLE_CODE_COLUMNS),
        "type": caps.first_of(*VEHICLE_TYPE_COLUMNS),
        "plate": caps.actual("license_plate"),
    }
    row = read_row(s, caps, row_id, [c for c in cols.values() if c])

    def pick(key: str) -> str:
        c = cols[key]
        return as_text(row.get(c.lower())) if c else ""

    return Assignment(
        driver_name=pick("driver"),
        vehicle_code=pick("code").upper(),
        vehicle_type=pick("type"),
        license_plate=pick("plate"),
    )


def find_settings_row(
    s: Session, caps: TableCaps, *, trip_number: str = "", booking_id: int = 0
) -> Optional[int]:
    if trip_number and caps.has("trip_number"):
        got = find_row_id(s, caps, {"trip_number": trip_number}, latest=True)
        if got:
            return got
    if booking_id > 0:
        for link in BOOKING_LINK_COLUMNS:
            if caps.has(link):
                got = find_row_id(s, caps, {link: booking_id}, latest=True)
                if got:
                    return got
    return None


def vehicle_type_for_driver(s: Session, snap: SchemaSnapshot, driver_name: str) -> str:
    """Vehicle type registered on the driver's account, if any."""
    name = driver_name.strip().lower()
    if not name:
        return ""
    for table_name, name_cols in (("driver_accounts", ("driver_name", "name")), ("drivers", ("name", "driver_name"))):
        caps = snap.caps(table_name)
        if caps is None or not caps.has("vehicle_type"):
            continue
        name_col = caps.first_of(*name_cols)
        if not name_col:
            continue
        stmt = (
            select(caps.col("vehicle_type"))
            .where(func.lower(func.trim(caps.table.c[name_col])) == name)
            .limit(1)
        )
        try:
            with savepoint(s):
                got = as_text(s.execute(stmt).scalar())
        except SQLAlchemyError as e:
            _log.warning("driver vehicle lookup on %s failed: %s", table_name, e)
            continue
        if got:
            return got
    return ""


def load_assignment(
    s: Session, snap: SchemaSnapshot, p: BookingSyncPayload, *, table_name: str = ""
) -> Assignment:
    """
    Driver/vehicle already recorded for this booking's trip. The return
    leg falls back to the departure row when its own row has nothing.
    """
    tables = [table_name] if table_name else [settings_table_for_role(p.trip_role)]
    if tables[0] == RETURN_TABLE:
        tables.append(DEPARTURE_TABLE)
    out = Assignment()
    for name in tables:
        caps = snap.caps(name)
        if caps is None:
            continue
        try:
            with savepoint(s):
                row_id = find_settings_row(s, caps, trip_number=p.trip_key, booking_id=p.booking_id)
                if row_id:
                    out = out.fill_from(read_assignment(s, caps, row_id))
        except SQLAlchemyError as e:
            _log.warning("assignment lookup on %s failed: %s", name, e, extra={"booking_id": p.booking_id})
        if out.driver_name and out.vehicle_label:
            break
    if not out.vehicle_type and out.driver_name:
        out = replace(out, vehicle_type=vehicle_type_for_driver(s, snap, out.driver_name))
    return out
