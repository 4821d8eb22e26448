"""
Booking policies for rides and ride requests.

Everything in this module is pure: functions take the current Ride and
RideRequest snapshots and either return a decision or raise a BookingError.
The persisted operations in ride_service and request_service call these
before writing to Firestore.
"""
from datetime import datetime, timedelta
from typing import Iterable

from models import (
    Ride, RideRequest, RideStatus, RideRequestStatus, RequiredGender, Gender,
    UserProfile, RIDE_DATETIME_FORMAT,
)
from .errors import (
    RideNotBookable, PreferenceMismatch, RideFull, InvalidTransition,
    IncompleteRideData, DuplicateRequest, PermissionDenied,
)

RIDE_TRANSITIONS = {
    RideStatus.AVAILABLE: {RideStatus.FULL, RideStatus.ON_HOLD, RideStatus.IN_PROGRESS, RideStatus.CANCELLED},
    RideStatus.FULL: {RideStatus.AVAILABLE, RideStatus.ON_HOLD, RideStatus.IN_PROGRESS, RideStatus.CANCELLED},
    RideStatus.ON_HOLD: {RideStatus.IN_PROGRESS, RideStatus.CANCELLED},
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED, RideStatus.CANCELLED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

REQUEST_TRANSITIONS = {
    RideRequestStatus.WAITING: {RideRequestStatus.ACCEPTED, RideRequestStatus.REJECTED, RideRequestStatus.CANCELLED},
    RideRequestStatus.ACCEPTED: {RideRequestStatus.CHECKED_IN, RideRequestStatus.CANCELLED},
    RideRequestStatus.CHECKED_IN: {RideRequestStatus.CHECKED_OUT},
    RideRequestStatus.REJECTED: set(),
    RideRequestStatus.CHECKED_OUT: set(),
    RideRequestStatus.CANCELLED: set(),
}

BOOKABLE_STATUSES = {RideStatus.AVAILABLE, RideStatus.FULL}
STALE_CANDIDATE_STATUSES = BOOKABLE_STATUSES
TERMINAL_RIDE_STATUSES = {RideStatus.COMPLETED, RideStatus.CANCELLED}

# Requests that still count against the (ride, passenger) pair
LIVE_REQUEST_STATUSES = {
    RideRequestStatus.WAITING, RideRequestStatus.ACCEPTED,
    RideRequestStatus.CHECKED_IN, RideRequestStatus.CHECKED_OUT,
}
# Requests occupying a seat
SEAT_HOLDING_STATUSES = {RideRequestStatus.ACCEPTED, RideRequestStatus.CHECKED_IN}
PASSENGER_STATUSES = {RideRequestStatus.ACCEPTED, RideRequestStatus.CHECKED_IN, RideRequestStatus.CHECKED_OUT}

GENDER_FOR_REQUIREMENT = {
    RequiredGender.MALE_ONLY: Gender.MALE,
    RequiredGender.FEMALE_ONLY: Gender.FEMALE,
}


def parse_ride_datetime(value: str) -> datetime:
    """Parse a `DD/MM/YYYY HH:mm` departure string into a naive local datetime."""
    try:
        return datetime.strptime(value.strip(), RIDE_DATETIME_FORMAT)
    except (AttributeError, ValueError):
        raise IncompleteRideData(f"Invalid ride date/time: {value!r}")


def format_ride_datetime(value: datetime) -> str:
    return value.strftime(RIDE_DATETIME_FORMAT)


def is_valid_ride_transition(current: RideStatus, target: RideStatus) -> bool:
    return target in RIDE_TRANSITIONS.get(current, set())


def is_valid_request_transition(current: RideRequestStatus, target: RideRequestStatus) -> bool:
    return target in REQUEST_TRANSITIONS.get(current, set())


def ensure_ride_transition(ride: Ride, target: RideStatus) -> None:
    if not is_valid_ride_transition(ride.status, target):
        raise InvalidTransition(f"Ride {ride.id} cannot go from {ride.status.value} to {target.value}")


def ensure_request_transition(request: RideRequest, target: RideRequestStatus) -> None:
    if not is_valid_request_transition(request.status, target):
        raise InvalidTransition(
            f"Request {request.id} cannot go from {request.status.value} to {target.value}")


def gender_matches(required: RequiredGender, gender: Gender | None) -> bool:
    if required == RequiredGender.EITHER:
        return True
    return gender == GENDER_FOR_REQUIREMENT[required]


def check_booking(ride: Ride, passenger: UserProfile, existing: Iterable[RideRequest]) -> bool:
    """
    Decide whether `passenger` may request a seat on `ride`.

    Returns True when the request must be created as a waitlist entry. A ride
    without free seats is never refused: the request joins its waitlist.
    """
    if ride.status not in BOOKABLE_STATUSES:
        raise RideNotBookable(f"Ride {ride.id} is {ride.status.value} and cannot be booked")
    if ride.driver_id == passenger.id:
        raise PermissionDenied("Drivers cannot book their own ride")
    if not gender_matches(ride.required_gender, passenger.gender):
        raise PreferenceMismatch(f"This ride is {ride.required_gender.value}")
    for request in existing:
        if request.user_id == passenger.id and request.status in LIVE_REQUEST_STATUSES:
            raise DuplicateRequest("You already have a request for this ride")

    return ride.available_seats <= 0


def ensure_can_accept(ride: Ride, request: RideRequest) -> None:
    if ride.available_seats <= 0:
        raise RideFull(f"Ride {ride.id} has no available seats")
    if ride.status in TERMINAL_RIDE_STATUSES:
        raise RideNotBookable(f"Ride {ride.id} is {ride.status.value}")
    ensure_request_transition(request, RideRequestStatus.ACCEPTED)


def ensure_can_check_in(ride: Ride, request: RideRequest) -> None:
    if ride.status in TERMINAL_RIDE_STATUSES:
        raise RideNotBookable(f"Ride {ride.id} is {ride.status.value}")
    ensure_request_transition(request, RideRequestStatus.CHECKED_IN)


def grace_period_end(ride: Ride, grace_minutes: int) -> datetime:
    return ride.departure_at + timedelta(minutes=grace_minutes)


def is_stale(ride: Ride, now: datetime, grace_minutes: int) -> bool:
    """True when the ride missed its departure by more than the grace period."""
    return ride.status in STALE_CANDIDATE_STATUSES and now > grace_period_end(ride, grace_minutes)


def is_ride_time(ride: Ride, now: datetime, grace_minutes: int, requires_grace: bool = False) -> bool:
    start_at = grace_period_end(ride, grace_minutes) if requires_grace else ride.departure_at
    return now >= start_at


def ensure_can_start(ride: Ride, now: datetime, grace_minutes: int, requires_grace: bool = False) -> None:
    ensure_ride_transition(ride, RideStatus.IN_PROGRESS)
    if not is_ride_time(ride, now, grace_minutes, requires_grace):
        raise InvalidTransition(f"Ride {ride.id} cannot start before {ride.ride_datetime}")


def seats_after_release(ride: Ride) -> int:
    return min(ride.available_seats + 1, ride.total_seats)


def status_for_seats(ride: Ride, available_seats: int) -> RideStatus:
    """Keep `available` and `full` in step with the seat counter."""
    if ride.status == RideStatus.AVAILABLE and available_seats <= 0:
        return RideStatus.FULL
    if ride.status == RideStatus.FULL and available_seats > 0:
        return RideStatus.AVAILABLE
    return ride.status


def has_schedule_conflict(departure: datetime, existing: Iterable[datetime], window_minutes: int) -> bool:
    window = timedelta(minutes=window_minutes)
    return any(abs(departure - other) < window for other in existing)


def next_week(ride: Ride) -> datetime:
    return ride.departure_at + timedelta(days=7)
