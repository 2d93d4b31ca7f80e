"""Domain errors raised by the booking core.

Routes translate these into ``HTTPException`` using ``status_code``.
"""


class BookingError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidTimeFormat(BookingError):
    status_code = 400


class PastDateRejected(BookingError):
    status_code = 400


class SlotUnavailable(BookingError):
    status_code = 409


class InvalidStateTransition(BookingError):
    status_code = 409


class NotFound(BookingError):
    status_code = 404


class PackageExhausted(BookingError):
    status_code = 400


class StorageUnavailable(BookingError):
    """Durable storage could not be reached. Safe to retry."""
    status_code = 503


class ExternalCollaboratorFailed(BookingError):
    """A calendar or email call failed. Never fatal to a booking."""
    status_code = 502
