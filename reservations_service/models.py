from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base
from .timerange import format_minutes


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class UserRole(str, PyEnum):
    STUDENT = "student"
    STAFF = "staff"
    ADMIN = "admin"


class OccupancyStatus(str, PyEnum):
    """
    Live state of a room.

    Values
    ------
    available
        Nobody is checked in and the room is open.
    occupied
        At least one active check-in.
    maintenance
        Manually taken out of use and currently empty.
    """
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


class ReservationPurpose(str, PyEnum):
    STUDYING = "studying"
    GROUP_PROJECT = "group-project"
    MEETING = "meeting"
    EXAM_PREP = "exam-prep"
    OTHER = "other"


class ReservationStatus(str, PyEnum):
    """
    Enumeration of reservation lifecycle states.

    Values
    ------
    pending
        Created, waiting for confirmation. Holds the slot.
    confirmed
        Confirmed by the owner or an administrator. Holds the slot.
    cancelled
        Released by the owner or an administrator. Terminal.
    completed
        Closed by a check-out. Terminal.
    no-show
        Marked by an administrator when nobody turned up. Terminal.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no-show"


# Statuses that block the time slot for other reservations.
ACTIVE_RESERVATION_STATUSES = (ReservationStatus.PENDING, ReservationStatus.CONFIRMED)


class SignInStatus(str, PyEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class Building(Base):
    """
    SQLAlchemy model representing a campus building.

    Only existence is relevant to reservations; building management
    lives in a separate service.
    """
    __tablename__ = "buildings"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    code = Column(String(20), unique=True, nullable=False, index=True)

    rooms = relationship("Room", back_populates="building")


class Room(Base):
    """
    SQLAlchemy model representing a study room and its live occupancy.

    Attributes
    ----------
    id : int
        Primary key.
    building_id : int
        Building that owns the room.
    room_number : str
        Room label inside the building (e.g. '2.14').
    capacity : int
        Maximum number of people allowed in a reservation.
    current_occupancy : int
        Number of active check-ins. Only ever changed with an atomic SQL
        increment/decrement.
    under_maintenance : bool
        Manual flag set by staff to take the room out of use.
    updated_at : datetime
        Last time the room row was modified.
    """
    __tablename__ = "rooms"
    __table_args__ = (
        CheckConstraint("capacity >= 1", name="ck_rooms_capacity_positive"),
        CheckConstraint("current_occupancy >= 0", name="ck_rooms_occupancy_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    building_id = Column(Integer, ForeignKey("buildings.id"), nullable=False, index=True)
    room_number = Column(String(50), nullable=False)
    capacity = Column(Integer, nullable=False)
    current_occupancy = Column(Integer, nullable=False, default=0)
    under_maintenance = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    building = relationship("Building", back_populates="rooms")

    @property
    def occupancy_status(self) -> OccupancyStatus:
        if (self.current_occupancy or 0) > 0:
            return OccupancyStatus.OCCUPIED
        if self.under_maintenance:
            return OccupancyStatus.MAINTENANCE
        return OccupancyStatus.AVAILABLE


class Reservation(Base):
    """
    SQLAlchemy model representing a room reservation.

    Times are stored as minute-of-day offsets on a calendar date and form
    the half-open interval [start_minute, end_minute).

    Attributes
    ----------
    id : int
        Primary key.
    user_id : int
        Identifier of the user who owns the reservation.
    room_id : int
        Reserved room.
    building_id : int
        Building containing the room.
    reservation_date : date
        Calendar day of the reservation.
    start_minute : int
        Inclusive start, minutes after midnight.
    end_minute : int
        Exclusive end, minutes after midnight.
    purpose : ReservationPurpose
        Why the room is being booked.
    number_of_people : int
        Expected headcount.
    status : ReservationStatus
        Lifecycle state.
    cancel_reason, cancelled_at, cancelled_by
        Set only when the reservation is cancelled.
    check_in_time, check_out_time
        Copied from the sign-in record on check-out.
    """
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("end_minute > start_minute", name="ck_reservations_time_order"),
        CheckConstraint("number_of_people >= 1", name="ck_reservations_people_positive"),
        Index("ix_reservations_room_date_status", "room_id", "reservation_date", "status"),
        Index("ix_reservations_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False)
    building_id = Column(Integer, ForeignKey("buildings.id"), nullable=False)
    reservation_date = Column(Date, nullable=False)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
    purpose = Column(
        Enum(ReservationPurpose, values_callable=_enum_values, name="reservation_purpose"),
        nullable=False,
    )
    number_of_people = Column(Integer, nullable=False)
    status = Column(
        Enum(ReservationStatus, values_callable=_enum_values, name="reservation_status"),
        nullable=False,
        default=ReservationStatus.PENDING,
    )
    notes = Column(Text, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, nullable=True)
    check_in_time = Column(DateTime, nullable=True)
    check_out_time = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    room = relationship("Room")
    building = relationship("Building")

    @property
    def duration(self) -> int:
        return self.end_minute - self.start_minute

    @property
    def start_time(self) -> str:
        return format_minutes(self.start_minute)

    @property
    def end_time(self) -> str:
        return format_minutes(self.end_minute)


class SignIn(Base):
    """
    SQLAlchemy model recording a physical check-in against a reservation.

    At most one active sign-in may exist per reservation; the partial unique
    index below enforces it in the database.

    Attributes
    ----------
    id : int
        Primary key.
    reservation_id : int
        Reservation being used.
    user_id : int
        User who checked in.
    room_id, building_id : int
        Where the user checked in.
    sign_in_time : datetime
        Set when the record is created.
    sign_out_time : datetime
        Null until the record is closed.
    actual_duration : int
        Minutes between sign-in and sign-out; set when the record is closed.
    status : SignInStatus
        active, completed (checked out) or abandoned (closed by an admin).
    """
    __tablename__ = "signins"
    __table_args__ = (
        Index(
            "uq_signins_active_reservation",
            "reservation_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False, index=True)
    building_id = Column(Integer, ForeignKey("buildings.id"), nullable=False)
    sign_in_time = Column(DateTime, nullable=False, default=utcnow)
    sign_out_time = Column(DateTime, nullable=True)
    actual_duration = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(
        Enum(SignInStatus, values_callable=_enum_values, name="signin_status"),
        nullable=False,
        default=SignInStatus.ACTIVE,
    )
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    reservation = relationship("Reservation")
    room = relationship("Room")
