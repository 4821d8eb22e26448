from datetime import datetime, timedelta

import pytest

from config import Settings
from models import Location, Ride, RideStatus, RequiredGender, RideRequest, RideRequestStatus
from services.context import ServiceContext
from services.events import EventBus
from services.notifications import Notifier
from fakes import FakeFirestore

NOW = datetime(2026, 10, 19, 8, 0)


class Clock:
    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def db():
    return FakeFirestore()


@pytest.fixture
def settings():
    return Settings(_env_file=None, WATCHDOG_ENABLED=False, REDIS_URL="")


@pytest.fixture
def ctx(db, settings, clock):
    return ServiceContext(
        rides_ref=db.collection("rides"),
        requests_ref=db.collection("ride_requests"),
        users_ref=db.collection("users"),
        ratings_ref=db.collection("ratings"),
        notifier=Notifier(db.collection("notifications"), settings.REMINDER_LEAD_MINUTES),
        settings=settings,
        events=EventBus(),
        clock=clock,
    )


@pytest.fixture
def notifications(db):
    """Notifications queued so far, as a list of documents"""
    collection = db.collection("notifications")
    return lambda: list(collection.all().values())


@pytest.fixture
def add_user(db):
    def _add(user_id: str, name: str, gender: str | None = None):
        db.collection("users").document(user_id).set({"name": name, "gender": gender})
        return user_id
    return _add


@pytest.fixture
def add_ride(db):
    """Store a ride directly, bypassing creation checks"""
    def _add(ride_id: str = "1", departure: datetime = NOW + timedelta(hours=2), **fields):
        data = {
            "id": ride_id,
            "driver_id": "driver-1",
            "origin": Location(address="Campus Gate", latitude=24.72, longitude=46.62),
            "destination": Location(address="City Mall", latitude=24.75, longitude=46.70),
            "ride_datetime": departure.strftime("%d/%m/%Y %H:%M"),
            "departure_at": departure,
            "status": RideStatus.AVAILABLE,
            "available_seats": 3,
            "total_seats": 3,
            "required_gender": RequiredGender.EITHER,
            "ride_number": int(ride_id) if ride_id.isdigit() else 1,
            "ride_days": ["Monday"],
        }
        data.update(fields)
        ride = Ride(**data)
        db.collection("rides").document(ride_id).set(ride.model_dump(exclude={"id"}))
        return ride
    return _add


@pytest.fixture
def add_request(db):
    """Store a ride request directly in a given status"""
    def _add(ride: Ride, user_id: str, status: RideRequestStatus = RideRequestStatus.WAITING, **fields):
        request = RideRequest(ride_id=ride.id, user_id=user_id, driver_id=ride.driver_id,
                              status=status, **fields)
        db.collection("ride_requests").document(request.id).set(request.model_dump())
        return request
    return _add
