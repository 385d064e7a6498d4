"""Domain errors raised by the scheduling core.

Every error carries the HTTP status the calling surface should answer with,
so routes can let them propagate to the single handler in ``main``.
"""

from fastapi import status


class BookingError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = 'Unexpected booking failure.'

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Invalid request.'


class InvalidTimeFormat(ValidationError):
    default_detail = 'Times must be formatted as HH:MM or HH:MM:SS.'


class ServiceUnavailable(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Some services were not found or are inactive.'


class Forbidden(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'Forbidden.'


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Not found.'


class SlotConflict(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This time slot is no longer available.'


class InvalidTransition(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This appointment can no longer be changed.'


class ScheduleMisconfigured(BookingError):
    default_detail = 'Business hours are misconfigured: closing time must be after opening time.'


class PersistenceFailure(BookingError):
    default_detail = 'The request could not be completed. No changes were saved.'


class GatewayFailure(BookingError):
    """Notification delivery failed. Logged by the dispatcher, never returned to callers."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = 'Notification gateway failure.'
