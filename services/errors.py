from contextlib import contextmanager

from google.api_core.exceptions import GoogleAPICallError

class BookingError(ValueError):
    """Base class for failures of a booking or ride operation"""
    status_code = 400

    @property
    def error(self) -> str:
        return type(self).__name__

class RideNotFound(BookingError):
    status_code = 404

class RequestNotFound(BookingError):
    status_code = 404

class RideNotBookable(BookingError):
    status_code = 409

class DuplicateRequest(RideNotBookable):
    pass

class PreferenceMismatch(BookingError):
    status_code = 403

class RideFull(BookingError):
    status_code = 409

class InvalidTransition(BookingError):
    status_code = 409

class ScheduleConflict(BookingError):
    status_code = 409

class IncompleteRideData(BookingError):
    status_code = 422

class PermissionDenied(BookingError):
    status_code = 403

class NetworkFailure(BookingError):
    """The document store could not be reached or rejected the write"""
    status_code = 503

@contextmanager
def store_errors(action: str):
    """Translate Firestore API failures into NetworkFailure"""
    try:
        yield
    except GoogleAPICallError as exc:
        raise NetworkFailure(f"Error {action}: {exc}") from exc
