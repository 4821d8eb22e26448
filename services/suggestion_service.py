from models import Ride, RideStatus, SuggestedRide
from collections import Counter
from datetime import datetime
from google.cloud import firestore
import logging

from .context import ServiceContext
from .errors import store_errors
from .helpers import haversine, route_key
from .ride_service import ride_from_snapshot, get_passenger_rides

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5
MAX_DISTANCE_KM = 20
PREFERRED_ROUTES = 3
HISTORY_LIMIT = 20
CANDIDATE_LIMIT = 10
RECURRING_STATUSES = [
    RideStatus.AVAILABLE, RideStatus.FULL, RideStatus.IN_PROGRESS,
    RideStatus.COMPLETED, RideStatus.ON_HOLD,
]

def _rides(query) -> list[Ride]:
    rides = []
    for doc in query.stream():
        try:
            rides.append(ride_from_snapshot(doc))
        except Exception as exc:
            logger.warning(f"Skipping malformed ride document {doc.id}: {exc}")
    return rides

async def get_past_rides(ctx: ServiceContext, user_id: str, now: datetime) -> list[Ride]:
    """Rides the user already drove or booked"""
    query = ctx.rides_ref.where("driver_id", "==", user_id).where(
        "departure_at", "<=", now).order_by(
        "departure_at", direction=firestore.Query.DESCENDING).limit(HISTORY_LIMIT)
    with store_errors("reading past rides"):
        driven = _rides(query)
    return driven + await get_passenger_rides(ctx, user_id, HISTORY_LIMIT)

def preferred_routes(rides: list[Ride]) -> dict[tuple[str, str], int]:
    """The user's most frequent (origin, destination) pairs with their counts"""
    counts = Counter(
        route_key(ride.origin.address, ride.destination.address)
        for ride in rides
        if ride.origin.address.strip() and ride.destination.address.strip()
    )
    return dict(counts.most_common(PREFERRED_ROUTES))

async def get_candidate_rides(ctx: ServiceContext, now: datetime) -> list[Ride]:
    future = ctx.rides_ref.where("status", "==", RideStatus.AVAILABLE.value).where(
        "departure_at", ">=", now).order_by("departure_at").limit(CANDIDATE_LIMIT)
    recurring = ctx.rides_ref.where("is_recurring", "==", True).where(
        "status", "in", [status.value for status in RECURRING_STATUSES]).limit(CANDIDATE_LIMIT)
    with store_errors("reading suggested rides"):
        candidates = {ride.id: ride for ride in _rides(future)}
        for ride in _rides(recurring):
            candidates.setdefault(ride.id, ride)
        if not candidates:
            fallback = ctx.rides_ref.where("status", "==", RideStatus.AVAILABLE.value).limit(CANDIDATE_LIMIT)
            candidates = {ride.id: ride for ride in _rides(fallback)}
    return list(candidates.values())

def score_ride(ride: Ride, routes: dict[tuple[str, str], int],
               location: tuple[float, float] | None) -> SuggestedRide:
    priority = 0.0
    route_count = routes.get(route_key(ride.origin.address, ride.destination.address))
    if route_count:
        priority += route_count * 100
    if ride.is_recurring:
        priority += 50

    distance = None
    if location is not None:
        distance = haversine(location, (ride.origin.latitude, ride.origin.longitude))
        if distance <= MAX_DISTANCE_KM:
            priority += (MAX_DISTANCE_KM - distance) * 10
        else:
            priority -= distance
    return SuggestedRide(
        ride=ride,
        distance_km=round(distance, 2) if distance is not None else None,
        priority=round(priority, 2),
    )

async def suggest_rides(ctx: ServiceContext, user_id: str,
                        latitude: float | None = None, longitude: float | None = None) -> list[SuggestedRide]:
    """Rank open rides for a user by their usual routes, recurrence and distance"""
    now = ctx.now()
    routes = preferred_routes(await get_past_rides(ctx, user_id, now))
    location = (latitude, longitude) if latitude is not None and longitude is not None else None

    scored = [
        score_ride(ride, routes, location)
        for ride in await get_candidate_rides(ctx, now)
        if ride.driver_id != user_id
    ]
    scored.sort(key=lambda s: s.priority, reverse=True)
    return scored[:MAX_SUGGESTIONS]
