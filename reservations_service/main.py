import logging
from datetime import date
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from common.cache import get_cached_json, room_calendar_key, set_cached_json

from . import models, occupancy, reservations, schemas
from .auth import get_current_user_claims
from .config import LOG_LEVEL
from .database import Base, engine, get_db
from .errors import ReservationError
from .logging_config import setup_logging
from .rate_limiter import write_rate_limiter

setup_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create tables
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Study Room Reservations Service", version="1.0.0")
router_v1 = APIRouter(prefix="/api/v1")

SERVICE_NAME = "reservations"


def _error_response(request: Request, status_code: int, detail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "service": SERVICE_NAME,
            "path": request.url.path,
            "method": request.method,
            "status_code": status_code,
            "detail": detail,
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return _error_response(request, 422, errors)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error on %s %s",
        request.method,
        request.url.path,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@app.get("/")
def root():
    """
    Health-check endpoint for the Reservations service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": SERVICE_NAME, "status": "running"}


# ---------- Reservations ----------


@router_v1.get("/reservations", response_model=List[schemas.ReservationRead])
def list_my_reservations(
    status_filter: Optional[models.ReservationStatus] = Query(default=None, alias="status"),
    date_from: Optional[date] = Query(default=None, alias="from"),
    date_to: Optional[date] = Query(default=None, alias="to"),
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    List reservations that belong to the authenticated user.

    Parameters
    ----------
    status_filter : Optional[ReservationStatus]
        Only reservations in this status (query parameter ``status``).
    date_from, date_to : Optional[date]
        Inclusive date range (query parameters ``from`` and ``to``).

    Returns
    -------
    List[ReservationRead]
        Reservations ordered by date and start time.
    """
    return reservations.list_user_reservations(
        db,
        claims["user_id"],
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
    )


@router_v1.post(
    "/reservations",
    response_model=schemas.ReservationRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(write_rate_limiter)],
)
def create_reservation(
    reservation_in: schemas.ReservationCreate,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Create a pending reservation for the authenticated user.

    Raises
    ------
    HTTP 400
        Capacity exceeded or end time not after start time.
    HTTP 404
        Room or building not found.
    HTTP 409
        The time slot is already booked.
    """
    return reservations.create_reservation(
        db,
        user_id=claims["user_id"],
        room_id=reservation_in.room_id,
        building_id=reservation_in.building_id,
        reservation_date=reservation_in.reservation_date,
        start_time=reservation_in.start_time,
        end_time=reservation_in.end_time,
        purpose=reservation_in.purpose,
        number_of_people=reservation_in.number_of_people,
        notes=reservation_in.notes,
    )


@router_v1.get("/reservations/{reservation_id}", response_model=schemas.ReservationRead)
def get_reservation(
    reservation_id: int,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    return reservations.get_reservation(db, reservation_id, claims["user_id"], claims["role"])


@router_v1.put(
    "/reservations/{reservation_id}",
    response_model=schemas.ReservationRead,
    dependencies=[Depends(write_rate_limiter)],
)
def update_reservation(
    reservation_id: int,
    update_data: schemas.ReservationUpdate,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Update a reservation's time, headcount, notes or status.

    Access
    ------
    - Owner of the reservation, or an admin.

    Behavior
    --------
    - Only pending reservations can be modified, unless the update
      confirms the reservation.
    - New times are re-checked for conflicts.
    """
    return reservations.update_reservation(
        db,
        reservation_id,
        claims["user_id"],
        claims["role"],
        update_data,
    )


@router_v1.delete(
    "/reservations/{reservation_id}",
    response_model=schemas.ReservationRead,
    dependencies=[Depends(write_rate_limiter)],
)
def cancel_reservation(
    reservation_id: int,
    reason: Optional[str] = Query(default=None, max_length=500),
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Cancel (soft-delete) a pending or confirmed reservation.

    The record is kept with status cancelled, the reason, time and
    acting user.
    """
    return reservations.cancel_reservation(
        db,
        reservation_id,
        claims["user_id"],
        claims["role"],
        reason=reason,
    )


@router_v1.post("/reservations/{reservation_id}/no-show", response_model=schemas.ReservationRead)
def mark_no_show(
    reservation_id: int,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    return reservations.mark_no_show(db, reservation_id, claims["user_id"], claims["role"])


# ---------- Rooms ----------


@router_v1.get("/rooms/{room_id}/reservations", response_model=List[schemas.ReservationRead])
def list_room_reservations(
    room_id: int,
    on_date: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    _: Dict = Depends(get_current_user_claims),
):
    """
    Pending and confirmed reservations of a room, for calendar views.

    Cached per room and day; any reservation change on the room drops
    the cached entries.
    """
    cache_key = room_calendar_key(room_id, on_date)
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    items = reservations.list_room_reservations(db, room_id, on_date)
    data = [schemas.ReservationRead.model_validate(r).model_dump(mode="json") for r in items]
    set_cached_json(cache_key, data, ttl_seconds=60)
    return data


@router_v1.get("/rooms/{room_id}/occupancy", response_model=schemas.RoomOccupancyRead)
def get_room_occupancy(
    room_id: int,
    db: Session = Depends(get_db),
    _: Dict = Depends(get_current_user_claims),
):
    return occupancy.room_occupancy(db, room_id)


@router_v1.put("/rooms/{room_id}/maintenance", response_model=schemas.RoomRead)
def set_room_maintenance(
    room_id: int,
    update_data: schemas.RoomMaintenanceUpdate,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Flag a room as under maintenance or back in service.

    Access
    ------
    - Allowed roles: admin, staff.
    """
    return occupancy.set_room_maintenance(
        db,
        room_id,
        claims["user_id"],
        claims["role"],
        update_data.under_maintenance,
    )


# ---------- Sign-ins ----------


@router_v1.post(
    "/signins",
    response_model=schemas.SignInWithOccupancy,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(write_rate_limiter)],
)
def check_in(
    check_in_data: schemas.CheckInRequest,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Check in to a reserved room.

    Raises
    ------
    HTTP 400
        Reservation not pending/confirmed, wrong room, or already checked in.
    HTTP 403
        Reservation belongs to another user.
    HTTP 404
        Reservation or room not found.
    """
    sign_in = occupancy.check_in(
        db,
        reservation_id=check_in_data.reservation_id,
        room_id=check_in_data.room_id,
        building_id=check_in_data.building_id,
        user_id=claims["user_id"],
        notes=check_in_data.notes,
    )
    return schemas.SignInWithOccupancy(
        **schemas.SignInRead.model_validate(sign_in).model_dump(),
        room_occupancy=sign_in.room.current_occupancy,
    )


@router_v1.post(
    "/signins/{sign_in_id}/checkout",
    response_model=schemas.SignInWithOccupancy,
    dependencies=[Depends(write_rate_limiter)],
)
def check_out(
    sign_in_id: int,
    check_out_data: Optional[schemas.CheckOutRequest] = None,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Check out of a room and complete the reservation.

    Returns the closed sign-in with its actual duration in minutes.
    """
    sign_in = occupancy.check_out(
        db,
        sign_in_id,
        user_id=claims["user_id"],
        notes=check_out_data.notes if check_out_data else None,
    )
    return schemas.SignInWithOccupancy(
        **schemas.SignInRead.model_validate(sign_in).model_dump(),
        room_occupancy=sign_in.room.current_occupancy,
    )


@router_v1.get("/signins/history", response_model=List[schemas.SignInRead])
def sign_in_history(
    status_filter: Optional[models.SignInStatus] = Query(default=None, alias="status"),
    date_from: Optional[date] = Query(default=None, alias="from"),
    date_to: Optional[date] = Query(default=None, alias="to"),
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    return occupancy.list_sign_in_history(
        db,
        claims["user_id"],
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
    )


@router_v1.get("/signins/{sign_in_id}", response_model=schemas.SignInRead)
def get_sign_in(
    sign_in_id: int,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    return occupancy.get_sign_in(db, sign_in_id, claims["user_id"], claims["role"])


@router_v1.put("/signins/{sign_in_id}", response_model=schemas.SignInRead)
def update_sign_in(
    sign_in_id: int,
    update_data: schemas.SignInUpdate,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Edit a sign-in record.

    Access
    ------
    - Owner or admin may edit notes.
    - Only an admin may mark an active sign-in as abandoned, which
      releases the room occupancy.
    """
    return occupancy.update_sign_in(
        db,
        sign_in_id,
        claims["user_id"],
        claims["role"],
        notes=update_data.notes,
        status=update_data.status,
    )


app.include_router(router_v1)
