from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import (
    OccupancyStatus,
    ReservationPurpose,
    ReservationStatus,
    SignInStatus,
)
from .timerange import parse_hhmm


class ReservationCreate(BaseModel):
    """
    Schema for creating a new reservation.

    Times are 24-hour "HH:MM" strings on reservation_date.
    """
    room_id: int = Field(..., ge=1)
    building_id: int = Field(..., ge=1)
    reservation_date: date
    start_time: str = Field(..., examples=["14:00"])
    end_time: str = Field(..., examples=["16:00"])
    purpose: ReservationPurpose
    number_of_people: int = Field(..., ge=1)
    notes: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_hhmm(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_hhmm(value)
        return value


class ReservationUpdate(BaseModel):
    """
    Schema for partially updating an existing reservation.

    All fields are optional; only provided values will be applied.
    """
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    number_of_people: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = None
    status: Optional[ReservationStatus] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_hhmm(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_hhmm(value)
        return value


class ReservationRead(BaseModel):
    """
    Schema returned when reading reservation information.

    duration, start_time and end_time are derived from the stored
    minute offsets.
    """
    id: int
    user_id: int
    room_id: int
    building_id: int
    reservation_date: date
    start_time: str
    end_time: str
    duration: int
    purpose: ReservationPurpose
    number_of_people: int
    status: ReservationStatus
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CheckInRequest(BaseModel):
    reservation_id: int = Field(..., ge=1)
    room_id: int = Field(..., ge=1)
    building_id: int = Field(..., ge=1)
    notes: Optional[str] = None


class CheckOutRequest(BaseModel):
    notes: Optional[str] = None


class SignInUpdate(BaseModel):
    """
    Schema for editing a sign-in record.

    Owners may change notes; only administrators may change the status.
    """
    notes: Optional[str] = None
    status: Optional[SignInStatus] = None


class SignInRead(BaseModel):
    id: int
    reservation_id: int
    user_id: int
    room_id: int
    building_id: int
    sign_in_time: datetime
    sign_out_time: Optional[datetime] = None
    actual_duration: Optional[int] = None
    notes: Optional[str] = None
    status: SignInStatus

    model_config = ConfigDict(from_attributes=True)


class SignInWithOccupancy(SignInRead):
    """Sign-in record returned by check-in/check-out, with the room's new headcount."""
    room_occupancy: int


class RoomRead(BaseModel):
    id: int
    building_id: int
    room_number: str
    capacity: int
    current_occupancy: int
    under_maintenance: bool
    occupancy_status: OccupancyStatus

    model_config = ConfigDict(from_attributes=True)


class RoomMaintenanceUpdate(BaseModel):
    under_maintenance: bool


class RoomOccupancyRead(BaseModel):
    """
    Live occupancy snapshot of a room.

    Includes the active sign-ins that account for current_occupancy.
    """
    room_id: int
    capacity: int
    current_occupancy: int
    occupancy_status: OccupancyStatus
    active_sign_ins: List[SignInRead]
    count: int
