"""Typed failures raised by the scheduling and consultation services."""

from fastapi import HTTPException, status


class SchedulingError(Exception):
    """Base class; status_code is the HTTP status routes translate it into."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    """Malformed availability template or booking request."""

    status_code = status.HTTP_400_BAD_REQUEST


class SlotUnavailable(SchedulingError):
    """Another caller holds or has booked the requested slot."""

    status_code = status.HTTP_409_CONFLICT


class ExpiredHold(SchedulingError):
    status_code = status.HTTP_409_CONFLICT


class PaymentFailed(SchedulingError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class InvalidTransition(SchedulingError):
    """The appointment is not in a state that allows the requested change."""

    status_code = status.HTTP_409_CONFLICT


class CancellationDenied(InvalidTransition):
    pass


class NotFound(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND


class Forbidden(SchedulingError):
    status_code = status.HTTP_403_FORBIDDEN


class MessageAppendFailed(SchedulingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def to_http_exception(exc: SchedulingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)
