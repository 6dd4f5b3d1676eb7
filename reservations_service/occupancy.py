import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.cache import (
    get_cached_json,
    invalidate_room_calendar,
    invalidate_room_occupancy,
    room_occupancy_key,
    set_cached_json,
)

from . import models, schemas
from .conflicts import lock_room
from .database import transaction
from .errors import ForbiddenError, NotFoundError, ValidationError
from .reservations import can_transition, get_reservation_or_404, is_admin
from .timerange import minutes_between

logger = logging.getLogger(__name__)

MAINTENANCE_ROLES = (models.UserRole.ADMIN, models.UserRole.STAFF)

ALREADY_CHECKED_IN = "Already checked in for this reservation"


def _increment_occupancy(db: Session, room_id: int) -> None:
    db.query(models.Room).filter(models.Room.id == room_id).update(
        {
            models.Room.current_occupancy: models.Room.current_occupancy + 1,
            models.Room.updated_at: models.utcnow(),
        },
        synchronize_session=False,
    )


def _decrement_occupancy(db: Session, room_id: int) -> None:
    # floored at zero
    db.query(models.Room).filter(models.Room.id == room_id).update(
        {
            models.Room.current_occupancy: case(
                (models.Room.current_occupancy > 0, models.Room.current_occupancy - 1),
                else_=0,
            ),
            models.Room.updated_at: models.utcnow(),
        },
        synchronize_session=False,
    )


def _close_sign_in(sign_in: models.SignIn, status: models.SignInStatus, now: datetime) -> None:
    sign_in.sign_out_time = now
    sign_in.status = status
    sign_in.actual_duration = minutes_between(sign_in.sign_in_time, now)


def _active_sign_in(db: Session, reservation_id: int) -> Optional[models.SignIn]:
    return (
        db.query(models.SignIn)
        .filter(models.SignIn.reservation_id == reservation_id)
        .filter(models.SignIn.status == models.SignInStatus.ACTIVE)
        .first()
    )


def get_sign_in_or_404(db: Session, sign_in_id: int) -> models.SignIn:
    sign_in = db.query(models.SignIn).filter(models.SignIn.id == sign_in_id).first()
    if sign_in is None:
        raise NotFoundError("Check-in record not found")
    return sign_in


# ---------- Check-in / check-out ----------


def check_in(
    db: Session,
    reservation_id: int,
    room_id: int,
    building_id: int,
    user_id: int,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.SignIn:
    """
    Start physical occupancy of a reserved room.

    Behavior
    --------
    - The reservation must belong to the user and be pending or confirmed.
    - Room and building must be the ones on the reservation.
    - Only one active sign-in per reservation; a partial unique index
      backs this check against concurrent requests.
    - The new sign-in and the room occupancy increment are committed
      together or not at all.

    Parameters
    ----------
    db : Session
        Database session.
    reservation_id : int
        Reservation being used.
    room_id, building_id : int
        Where the user is checking in.
    user_id : int
        Authenticated user.
    notes : Optional[str]
        Free-text check-in notes.
    now : Optional[datetime]
        Sign-in time; defaults to the current UTC time.

    Returns
    -------
    SignIn
        The new active sign-in record.

    Raises
    ------
    NotFoundError
        Reservation or room missing.
    ForbiddenError
        Reservation belongs to someone else.
    ValidationError
        Wrong reservation status, mismatched room or already checked in.
    """
    now = now or models.utcnow()

    try:
        with transaction(db):
            reservation = get_reservation_or_404(db, reservation_id, lock=True)
            if reservation.user_id != user_id:
                raise ForbiddenError("Unauthorized")

            if reservation.status not in models.ACTIVE_RESERVATION_STATUSES:
                raise ValidationError("Can only check in for pending or confirmed reservations")

            room = lock_room(db, room_id)
            if room is None:
                raise NotFoundError("Room not found")
            if room.id != reservation.room_id or building_id != reservation.building_id:
                raise ValidationError("Check-in location does not match the reservation")

            if _active_sign_in(db, reservation.id) is not None:
                raise ValidationError(ALREADY_CHECKED_IN)

            sign_in = models.SignIn(
                reservation_id=reservation.id,
                user_id=user_id,
                room_id=room.id,
                building_id=building_id,
                sign_in_time=now,
                notes=notes or "",
                status=models.SignInStatus.ACTIVE,
            )
            db.add(sign_in)
            db.flush()
            _increment_occupancy(db, room.id)
    except IntegrityError as exc:
        logger.warning("Concurrent check-in rejected for reservation %s", reservation_id)
        raise ValidationError(ALREADY_CHECKED_IN) from exc

    db.refresh(sign_in)
    invalidate_room_occupancy(room_id)
    logger.info(
        "User %s checked in to room %s (reservation %s, sign-in %s)",
        user_id,
        room_id,
        reservation_id,
        sign_in.id,
    )
    return sign_in


def check_out(
    db: Session,
    sign_in_id: int,
    user_id: int,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.SignIn:
    """
    End physical occupancy started by check_in.

    Closes the sign-in with its actual duration, releases one unit of room
    occupancy (never below zero), and completes the linked reservation,
    copying the check-in/check-out times onto it. All in one transaction.

    Raises
    ------
    NotFoundError
        Sign-in missing.
    ForbiddenError
        Sign-in belongs to someone else.
    ValidationError
        Sign-in is not active.
    """
    now = now or models.utcnow()

    with transaction(db):
        sign_in = get_sign_in_or_404(db, sign_in_id)
        if sign_in.user_id != user_id:
            raise ForbiddenError("Unauthorized")
        if sign_in.status != models.SignInStatus.ACTIVE:
            raise ValidationError("Check-in is not active")

        # reservation before room, same order as check_in
        reservation = (
            db.query(models.Reservation)
            .filter(models.Reservation.id == sign_in.reservation_id)
            .with_for_update()
            .first()
        )
        lock_room(db, sign_in.room_id)

        _close_sign_in(sign_in, models.SignInStatus.COMPLETED, now)
        if notes:
            sign_in.notes = notes

        _decrement_occupancy(db, sign_in.room_id)

        if reservation is not None:
            if can_transition(reservation.status, models.ReservationStatus.COMPLETED):
                reservation.status = models.ReservationStatus.COMPLETED
            else:
                logger.warning(
                    "Reservation %s is %s at check-out, status left unchanged",
                    reservation.id,
                    reservation.status.value,
                )
            reservation.check_in_time = sign_in.sign_in_time
            reservation.check_out_time = sign_in.sign_out_time

    db.refresh(sign_in)
    invalidate_room_occupancy(sign_in.room_id)
    invalidate_room_calendar(sign_in.room_id)
    logger.info(
        "User %s checked out of room %s after %s min (sign-in %s)",
        user_id,
        sign_in.room_id,
        sign_in.actual_duration,
        sign_in.id,
    )
    return sign_in


# ---------- Sign-in records ----------


def get_sign_in(
    db: Session,
    sign_in_id: int,
    caller_id: int,
    caller_role: str,
) -> models.SignIn:
    sign_in = get_sign_in_or_404(db, sign_in_id)
    if sign_in.user_id != caller_id and not is_admin(caller_role):
        raise ForbiddenError("Unauthorized")
    return sign_in


def list_sign_in_history(
    db: Session,
    user_id: int,
    status: Optional[models.SignInStatus] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[models.SignIn]:
    """
    List a user's sign-ins, newest first.

    date_from and date_to are inclusive calendar days on sign_in_time.
    """
    q = db.query(models.SignIn).filter(models.SignIn.user_id == user_id)

    if status is not None:
        q = q.filter(models.SignIn.status == status)
    if date_from is not None:
        q = q.filter(models.SignIn.sign_in_time >= datetime.combine(date_from, time.min))
    if date_to is not None:
        q = q.filter(
            models.SignIn.sign_in_time < datetime.combine(date_to + timedelta(days=1), time.min)
        )

    return q.order_by(models.SignIn.sign_in_time.desc()).all()


def update_sign_in(
    db: Session,
    sign_in_id: int,
    caller_id: int,
    caller_role: str,
    notes: Optional[str] = None,
    status: Optional[models.SignInStatus] = None,
    now: Optional[datetime] = None,
) -> models.SignIn:
    """
    Edit a sign-in record.

    Behavior
    --------
    - Owner or admin may change notes.
    - Only an admin may change the status, and only from active to
      abandoned. Abandoning closes the record and releases the room
      occupancy in the same transaction; the reservation is left as is.
    """
    now = now or models.utcnow()
    released = False

    with transaction(db):
        sign_in = get_sign_in_or_404(db, sign_in_id)
        if sign_in.user_id != caller_id and not is_admin(caller_role):
            raise ForbiddenError("Unauthorized")

        if status is not None and status != sign_in.status:
            if not is_admin(caller_role):
                raise ForbiddenError("Only administrators can change check-in status")
            if sign_in.status != models.SignInStatus.ACTIVE or status != models.SignInStatus.ABANDONED:
                raise ValidationError("Only active check-ins can be marked abandoned")

            lock_room(db, sign_in.room_id)
            _close_sign_in(sign_in, models.SignInStatus.ABANDONED, now)
            _decrement_occupancy(db, sign_in.room_id)
            released = True

        if notes is not None:
            sign_in.notes = notes

    db.refresh(sign_in)
    if released:
        invalidate_room_occupancy(sign_in.room_id)
        logger.info("Sign-in %s abandoned by admin %s", sign_in.id, caller_id)
    return sign_in


# ---------- Rooms ----------


def room_occupancy(db: Session, room_id: int) -> schemas.RoomOccupancyRead:
    """
    Live occupancy snapshot of a room with its active sign-ins.

    Cached in Redis (when configured) until the next occupancy change.
    """
    cache_key = room_occupancy_key(room_id)
    cached = get_cached_json(cache_key)
    if cached is not None:
        return schemas.RoomOccupancyRead.model_validate(cached)

    room = db.query(models.Room).filter(models.Room.id == room_id).first()
    if room is None:
        raise NotFoundError("Room not found")

    active = (
        db.query(models.SignIn)
        .filter(models.SignIn.room_id == room_id)
        .filter(models.SignIn.status == models.SignInStatus.ACTIVE)
        .order_by(models.SignIn.sign_in_time.asc())
        .all()
    )
    snapshot = schemas.RoomOccupancyRead(
        room_id=room.id,
        capacity=room.capacity,
        current_occupancy=room.current_occupancy,
        occupancy_status=room.occupancy_status,
        active_sign_ins=[schemas.SignInRead.model_validate(s) for s in active],
        count=len(active),
    )
    set_cached_json(cache_key, snapshot.model_dump(mode="json"), ttl_seconds=30)
    return snapshot


def set_room_maintenance(
    db: Session,
    room_id: int,
    caller_id: int,
    caller_role: str,
    under_maintenance: bool,
) -> models.Room:
    """
    Flag or unflag a room as under maintenance (admin/staff).

    An occupied room still reports occupied until everyone has checked out.
    """
    if caller_role not in MAINTENANCE_ROLES:
        raise ForbiddenError("Not enough permissions")

    with transaction(db):
        room = lock_room(db, room_id)
        if room is None:
            raise NotFoundError("Room not found")
        room.under_maintenance = under_maintenance

    db.refresh(room)
    invalidate_room_occupancy(room_id)
    logger.info(
        "Room %s maintenance set to %s by user %s",
        room_id,
        under_maintenance,
        caller_id,
    )
    return room
