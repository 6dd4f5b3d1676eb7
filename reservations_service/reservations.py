import logging
from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from common.cache import invalidate_room_calendar

from . import models, schemas
from .conflicts import has_conflict, lock_room
from .database import transaction
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .timerange import parse_hhmm

logger = logging.getLogger(__name__)

Status = models.ReservationStatus

ALLOWED_TRANSITIONS = {
    # pending -> completed happens when a pending reservation is checked out
    Status.PENDING: {Status.CONFIRMED, Status.CANCELLED, Status.COMPLETED, Status.NO_SHOW},
    Status.CONFIRMED: {Status.CANCELLED, Status.COMPLETED, Status.NO_SHOW},
}

UPDATABLE_STATUSES = (Status.CONFIRMED, Status.CANCELLED)


def _parse_time(value: str) -> int:
    try:
        return parse_hhmm(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def is_admin(role: str) -> bool:
    return role == models.UserRole.ADMIN


def can_transition(current: Status, new: Status) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def get_reservation_or_404(db: Session, reservation_id: int, lock: bool = False) -> models.Reservation:
    """
    Fetch a reservation or raise NotFoundError.

    With lock=True the row is held with SELECT ... FOR UPDATE until the
    surrounding transaction ends. Writers lock the reservation before the
    room so concurrent status changes and check-ins serialize.
    """
    q = db.query(models.Reservation).filter(models.Reservation.id == reservation_id)
    if lock:
        q = q.with_for_update()
    reservation = q.first()
    if reservation is None:
        raise NotFoundError("Reservation not found")
    return reservation


def _ensure_owner_or_admin(reservation: models.Reservation, caller_id: int, caller_role: str) -> None:
    if reservation.user_id != caller_id and not is_admin(caller_role):
        logger.warning(
            "User %s (%s) denied access to reservation %s",
            caller_id,
            caller_role,
            reservation.id,
        )
        raise ForbiddenError("Unauthorized")


def _ensure_capacity(room: models.Room, number_of_people: int) -> None:
    if number_of_people > room.capacity:
        raise ValidationError(
            f"Room capacity is {room.capacity}, requested {number_of_people}"
        )


def _stamp_cancellation(
    reservation: models.Reservation,
    caller_id: int,
    reason: Optional[str],
) -> None:
    reservation.status = Status.CANCELLED
    reservation.cancel_reason = reason or ""
    reservation.cancelled_at = models.utcnow()
    reservation.cancelled_by = caller_id


# ---------- Create ----------


def create_reservation(
    db: Session,
    user_id: int,
    room_id: int,
    building_id: int,
    reservation_date: date,
    start_time: str,
    end_time: str,
    purpose: models.ReservationPurpose,
    number_of_people: int,
    notes: Optional[str] = None,
) -> models.Reservation:
    """
    Create a pending reservation for a user.

    Behavior
    --------
    - The room row is locked for the whole check-then-insert sequence.
    - Validates that the room and building exist and belong together.
    - Validates the headcount against the room capacity.
    - Rejects empty or inverted time ranges.
    - Rejects ranges overlapping a pending/confirmed reservation of the
      same room on the same date.

    Parameters
    ----------
    db : Session
        Database session.
    user_id : int
        Owner of the new reservation.
    room_id, building_id : int
        Where the reservation takes place.
    reservation_date : date
        Calendar day of the reservation.
    start_time, end_time : str
        "HH:MM" bounds of the half-open interval [start, end).
    purpose : ReservationPurpose
        Declared purpose.
    number_of_people : int
        Expected headcount.
    notes : Optional[str]
        Free-text notes.

    Returns
    -------
    Reservation
        The persisted reservation, status pending.

    Raises
    ------
    ValidationError
        Missing fields, malformed times, capacity exceeded or non-positive duration.
    NotFoundError
        Room or building missing.
    ConflictError
        The slot overlaps another active reservation.
    """
    if not all([room_id, building_id, reservation_date, start_time, end_time, purpose, number_of_people]):
        raise ValidationError("Missing required fields")
    if number_of_people < 1:
        raise ValidationError("number_of_people must be at least 1")

    start_minute = _parse_time(start_time)
    end_minute = _parse_time(end_time)

    with transaction(db):
        room = lock_room(db, room_id)
        if room is None:
            raise NotFoundError("Room not found")

        building = db.query(models.Building).filter(models.Building.id == building_id).first()
        if building is None:
            raise NotFoundError("Building not found")
        if room.building_id != building.id:
            raise ValidationError("Room does not belong to this building")

        _ensure_capacity(room, number_of_people)

        if end_minute - start_minute <= 0:
            raise ValidationError("End time must be after start time")

        if has_conflict(db, room_id, reservation_date, start_minute, end_minute):
            logger.warning(
                "Rejected reservation for room %s on %s %s-%s: slot taken",
                room_id,
                reservation_date,
                start_time,
                end_time,
            )
            raise ConflictError("Time slot is already booked")

        reservation = models.Reservation(
            user_id=user_id,
            room_id=room_id,
            building_id=building_id,
            reservation_date=reservation_date,
            start_minute=start_minute,
            end_minute=end_minute,
            purpose=purpose,
            number_of_people=number_of_people,
            notes=notes,
            status=Status.PENDING,
        )
        db.add(reservation)

    db.refresh(reservation)
    invalidate_room_calendar(room_id)
    logger.info(
        "Reservation %s created by user %s for room %s on %s %s-%s",
        reservation.id,
        user_id,
        room_id,
        reservation_date,
        reservation.start_time,
        reservation.end_time,
    )
    return reservation


# ---------- Update ----------


def update_reservation(
    db: Session,
    reservation_id: int,
    caller_id: int,
    caller_role: str,
    patch: schemas.ReservationUpdate,
) -> models.Reservation:
    """
    Apply a partial update to a reservation.

    Behavior
    --------
    - Owner or admin only.
    - Only pending reservations may be modified, unless the same patch
      confirms the reservation.
    - A new time range is re-checked for conflicts, ignoring the
      reservation itself.
    - A new headcount is re-checked against the room capacity.
    - Status may only be set to confirmed or cancelled, and only along a
      legal lifecycle transition.

    Raises
    ------
    NotFoundError
        Reservation missing.
    ForbiddenError
        Caller is neither owner nor admin.
    ValidationError
        Reservation not modifiable, illegal status, bad times or capacity exceeded.
    ConflictError
        The new time range overlaps another active reservation.
    """
    with transaction(db):
        reservation = get_reservation_or_404(db, reservation_id, lock=True)
        _ensure_owner_or_admin(reservation, caller_id, caller_role)

        if reservation.status != Status.PENDING and patch.status != Status.CONFIRMED:
            raise ValidationError("Can only modify pending reservations")

        if patch.status is not None:
            if patch.status not in UPDATABLE_STATUSES:
                raise ValidationError("Status can only be set to confirmed or cancelled")
            if patch.status != reservation.status and not can_transition(reservation.status, patch.status):
                raise ValidationError(
                    f"Cannot change status from {reservation.status.value} to {patch.status.value}"
                )

        room = lock_room(db, reservation.room_id)

        if patch.start_time or patch.end_time:
            new_start = _parse_time(patch.start_time) if patch.start_time else reservation.start_minute
            new_end = _parse_time(patch.end_time) if patch.end_time else reservation.end_minute

            if new_end <= new_start:
                raise ValidationError("End time must be after start time")

            if has_conflict(
                db,
                reservation.room_id,
                reservation.reservation_date,
                new_start,
                new_end,
                exclude_reservation_id=reservation.id,
            ):
                raise ConflictError("New time slot is already booked")

            reservation.start_minute = new_start
            reservation.end_minute = new_end

        if patch.number_of_people is not None:
            _ensure_capacity(room, patch.number_of_people)
            reservation.number_of_people = patch.number_of_people

        if patch.notes is not None:
            reservation.notes = patch.notes

        if patch.status == Status.CANCELLED:
            _stamp_cancellation(reservation, caller_id, None)
        elif patch.status is not None:
            reservation.status = patch.status

    db.refresh(reservation)
    invalidate_room_calendar(reservation.room_id)
    logger.info("Reservation %s updated by user %s", reservation.id, caller_id)
    return reservation


# ---------- Cancel / no-show ----------


def cancel_reservation(
    db: Session,
    reservation_id: int,
    caller_id: int,
    caller_role: str,
    reason: Optional[str] = None,
) -> models.Reservation:
    """
    Cancel a pending or confirmed reservation.

    Records the reason, time and acting user. Completed, cancelled and
    no-show reservations cannot be cancelled.
    """
    with transaction(db):
        reservation = get_reservation_or_404(db, reservation_id, lock=True)
        _ensure_owner_or_admin(reservation, caller_id, caller_role)

        if reservation.status not in models.ACTIVE_RESERVATION_STATUSES:
            raise ValidationError("Cannot cancel completed or already cancelled reservations")

        _stamp_cancellation(reservation, caller_id, reason)

    db.refresh(reservation)
    invalidate_room_calendar(reservation.room_id)
    logger.info("Reservation %s cancelled by user %s", reservation.id, caller_id)
    return reservation


def mark_no_show(
    db: Session,
    reservation_id: int,
    caller_id: int,
    caller_role: str,
) -> models.Reservation:
    """Administratively close a pending or confirmed reservation nobody used."""
    if not is_admin(caller_role):
        raise ForbiddenError("Only administrators can mark no-shows")

    with transaction(db):
        reservation = get_reservation_or_404(db, reservation_id, lock=True)
        if not can_transition(reservation.status, Status.NO_SHOW):
            raise ValidationError(
                f"Cannot mark a {reservation.status.value} reservation as no-show"
            )
        reservation.status = Status.NO_SHOW

    db.refresh(reservation)
    invalidate_room_calendar(reservation.room_id)
    logger.info("Reservation %s marked no-show by admin %s", reservation.id, caller_id)
    return reservation


# ---------- Queries ----------


def get_reservation(
    db: Session,
    reservation_id: int,
    caller_id: int,
    caller_role: str,
) -> models.Reservation:
    reservation = get_reservation_or_404(db, reservation_id)
    _ensure_owner_or_admin(reservation, caller_id, caller_role)
    return reservation


def list_user_reservations(
    db: Session,
    user_id: int,
    status: Optional[Status] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[models.Reservation]:
    """
    List a user's reservations, optionally filtered by status and date range.

    Results are ordered by date, then start time.
    """
    q = db.query(models.Reservation).filter(models.Reservation.user_id == user_id)

    if status is not None:
        q = q.filter(models.Reservation.status == status)
    if date_from is not None:
        q = q.filter(models.Reservation.reservation_date >= date_from)
    if date_to is not None:
        q = q.filter(models.Reservation.reservation_date <= date_to)

    return q.order_by(
        models.Reservation.reservation_date.asc(),
        models.Reservation.start_minute.asc(),
    ).all()


def list_room_reservations(
    db: Session,
    room_id: int,
    on_date: Optional[date] = None,
) -> List[models.Reservation]:
    """Pending and confirmed reservations of a room, for calendar views."""
    room = db.query(models.Room).filter(models.Room.id == room_id).first()
    if room is None:
        raise NotFoundError("Room not found")

    q = (
        db.query(models.Reservation)
        .filter(models.Reservation.room_id == room_id)
        .filter(models.Reservation.status.in_(models.ACTIVE_RESERVATION_STATUSES))
    )
    if on_date is not None:
        q = q.filter(models.Reservation.reservation_date == on_date)

    return q.order_by(
        models.Reservation.reservation_date.asc(),
        models.Reservation.start_minute.asc(),
    ).all()
