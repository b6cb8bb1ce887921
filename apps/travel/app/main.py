from fastapi import FastAPI, HTTPException, Depends, APIRouter, Request, BackgroundTasks, Body, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from typing import Any, Dict, Optional
import logging
import os
from travel_shared import (
    RequestIDMiddleware,
    add_standard_health,
    bind_engine_lifecycle,
    get_request_id,
    setup_json_logging,
)
from starlette.middleware.trustedhost import TrustedHostMiddleware
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session

from . import config, events
from .confirmations import ValidationIncomplete, approve_validation, confirm_cash
from .errors import NotFound, SyncError
from .fares import display_stop, fare_per_seat, legacy_fare, resolve_fare
from .finance import compute_trip_calc, monthly_report
from .patches import KIND_DEPARTURE, KIND_RETURN, apply_settings_patch
from .sync import SyncResult, emit_result, run_sync_background, sync_booking


DB_URL = config.DB_URL

if DB_URL.startswith("sqlite"):
    engine = create_engine(DB_URL, pool_pre_ping=True, connect_args={"check_same_thread": False})
else:
    engine = create_engine(DB_URL, pool_pre_ping=True)


def get_session():
    with Session(engine) as s:
        yield s


def _db_ok() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


app = FastAPI(
    title="Travel Sync API",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None,
)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
add_standard_health(app, db_check=_db_ok)

_allowed_hosts_raw = (os.getenv("ALLOWED_HOSTS") or "").strip()
if _allowed_hosts_raw:
    _allowed_hosts = [h.strip() for h in _allowed_hosts_raw.split(",") if h.strip()]
    # Local health checks keep working with a minimal list.
    for _extra in ("localhost", "127.0.0.1", "testserver"):
        if _extra not in _allowed_hosts:
            _allowed_hosts.append(_extra)
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=_allowed_hosts)

router = APIRouter()
bind_engine_lifecycle(app, lambda: engine)


# ---- Error mapping ----

def _error_payload(detail: str, status_code: int) -> JSONResponse:
    rid = get_request_id()
    if config.is_prod_env() and status_code >= 500:
        return JSONResponse(status_code=status_code, content={"detail": "internal error", "request_id": rid})
    return JSONResponse(status_code=status_code, content={"detail": detail, "request_id": rid})


@app.exception_handler(NotFound)
async def _not_found_handler(request: Request, exc: NotFound):
    return _error_payload(str(exc), 404)


@app.exception_handler(SyncError)
async def _sync_error_handler(request: Request, exc: SyncError):
    logging.getLogger("travel.errors").error("sync failed: %s", exc, exc_info=exc)
    return _error_payload(str(exc), 500)


@app.exception_handler(HTTPException)
async def _http_exception_handler(request: Request, exc: HTTPException):
    if config.is_prod_env() and int(exc.status_code or 500) >= 500:
        return _error_payload("internal error", exc.status_code)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logging.getLogger("travel.errors").exception("unhandled exception")
    return _error_payload(str(exc), 500)


# ---- Schemas ----

class TripRowIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    dept_category: str = "Reguler"
    dept_passenger_fare: int = 0
    dept_package_fare: int = 0
    dept_admin_percent_override: Optional[float] = None
    ret_category: str = "Reguler"
    ret_passenger_fare: int = 0
    ret_package_fare: int = 0
    ret_admin_percent_override: Optional[float] = None
    other_income: int = 0
    bbm_fee: int = 0
    meal_fee: int = 0
    courier_fee: int = 0
    tol_parkir_fee: int = 0


# ---- Sync triggers ----

def _sync_in_background(booking_id: int, request_id: str) -> None:
    run_sync_background(engine, booking_id, request_id=request_id)


@router.post("/bookings/{booking_id}/sync", response_model=SyncResult)
def sync_booking_now(booking_id: int, s: Session = Depends(get_session)):
    with s.begin():
        res = sync_booking(s, booking_id)
    emit_result(res)
    return res


@router.post("/bookings/{booking_id}/confirm-cash", response_model=SyncResult)
def confirm_cash_payment(booking_id: int, s: Session = Depends(get_session)):
    with s.begin():
        confirm_cash(s, booking_id)
        res = sync_booking(s, booking_id)
    emit_result(res)
    return res


@router.post("/payment-validations/{validation_id}/approve")
def approve_payment_validation(validation_id: int, background: BackgroundTasks, s: Session = Depends(get_session)):
    try:
        with s.begin():
            booking_id = approve_validation(s, validation_id)
    except ValidationIncomplete as e:
        raise HTTPException(status_code=400, detail=str(e))
    background.add_task(_sync_in_background, booking_id, get_request_id())
    return {"ok": True, "validation_id": validation_id, "booking_id": booking_id, "sync": "scheduled"}


# ---- Settings ----

def _patch_settings(kind: str, row_id: int, patch: Dict[str, Any], s: Session) -> Dict[str, Any]:
    with s.begin():
        out = apply_settings_patch(s, kind, row_id, patch)
    if out.get("propagated"):
        events.emit_event("settings_marked", out)
    return out


@router.patch("/departure-settings/{row_id}")
def patch_departure_settings(row_id: int, patch: Dict[str, Any] = Body(...), s: Session = Depends(get_session)):
    return _patch_settings(KIND_DEPARTURE, row_id, patch, s)


@router.patch("/return-settings/{row_id}")
def patch_return_settings(row_id: int, patch: Dict[str, Any] = Body(...), s: Session = Depends(get_session)):
    return _patch_settings(KIND_RETURN, row_id, patch, s)


# ---- Fares & finance ----

@router.get("/fares")
def get_fare(route_from: str = Query(..., alias="from"), route_to: str = Query(..., alias="to")):
    return {
        "from": route_from,
        "to": route_to,
        "from_stop": display_stop(route_from),
        "to_stop": display_stop(route_to),
        "fare_per_seat": fare_per_seat(route_from, route_to),
        "legacy_fare": legacy_fare(route_from, route_to),
        "fare": resolve_fare(route_from, route_to),
    }


@router.post("/finance/calc")
def finance_calc(body: TripRowIn):
    return compute_trip_calc(body.model_dump()).as_dict()


@router.get("/finance/reports/monthly")
def finance_monthly(
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    s: Session = Depends(get_session),
):
    return monthly_report(s, year, month)


app.include_router(router)
