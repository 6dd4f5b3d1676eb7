from fastapi import status


class ReservationError(Exception):
    """
    Base class for domain errors raised by the reservation and occupancy logic.

    Each subclass carries the HTTP status code the API layer reports it with,
    so route handlers never have to translate error types themselves.

    Attributes
    ----------
    detail : str
        Human-readable message returned to the caller.
    status_code : int
        HTTP status used when the error reaches the API layer.
    """
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(ReservationError):
    """Malformed or out-of-range input, or an illegal state transition."""
    status_code = status.HTTP_400_BAD_REQUEST


class ForbiddenError(ReservationError):
    """Caller is neither the owner nor holds a role allowed to act."""
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(ReservationError):
    """A referenced reservation, room, building or sign-in does not exist."""
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(ReservationError):
    """Requested time slot overlaps an existing active reservation."""
    status_code = status.HTTP_409_CONFLICT
