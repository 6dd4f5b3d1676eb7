from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from . import models


def lock_room(db: Session, room_id: int) -> Optional[models.Room]:
    """
    Load a room and hold a row lock on it until the transaction ends.

    Every read-check-write sequence on a room's reservations or occupancy
    starts here, so two concurrent requests for the same room are
    serialized by the database instead of both passing the conflict check.
    On SQLite, which has no row locks, FOR UPDATE is not emitted and the
    database-wide write lock applies instead.

    Parameters
    ----------
    db : Session
        Database session.
    room_id : int
        Room identifier.

    Returns
    -------
    Optional[Room]
        The locked room, or None if it does not exist.
    """
    return (
        db.query(models.Room)
        .filter(models.Room.id == room_id)
        .with_for_update()
        .first()
    )


def has_conflict(
    db: Session,
    room_id: int,
    reservation_date: date,
    start_minute: int,
    end_minute: int,
    exclude_reservation_id: Optional[int] = None,
) -> bool:
    """
    Check if a proposed interval overlaps any active reservation of the room.

    Two half-open intervals [s1, e1) and [s2, e2) overlap unless
    e1 <= s2 or s1 >= e2, so reservations that only touch at a boundary
    do not conflict. Only reservations on the same calendar date with
    status pending or confirmed are considered.

    The caller must pass start_minute < end_minute; the ordering is not
    re-validated here.

    Parameters
    ----------
    db : Session
        Database session.
    room_id : int
        Room identifier.
    reservation_date : date
        Calendar day of the proposed reservation.
    start_minute : int
        Proposed inclusive start, minutes after midnight.
    end_minute : int
        Proposed exclusive end, minutes after midnight.
    exclude_reservation_id : Optional[int]
        If provided, ignore this reservation (used when updating it).

    Returns
    -------
    bool
        True if at least one overlapping reservation exists.
    """
    q = (
        db.query(models.Reservation)
        .filter(models.Reservation.room_id == room_id)
        .filter(models.Reservation.reservation_date == reservation_date)
        .filter(models.Reservation.status.in_(models.ACTIVE_RESERVATION_STATUSES))
        .filter(models.Reservation.end_minute > start_minute)
        .filter(models.Reservation.start_minute < end_minute)
    )

    if exclude_reservation_id is not None:
        q = q.filter(models.Reservation.id != exclude_reservation_id)

    return db.query(q.exists()).scalar()
