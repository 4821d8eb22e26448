from models import (
    Ride, RideCreate, RideStatus, RideRequest, RideRequestStatus,
    RideSearchFilters, RidePage, UserRides, FinishRideResult,
)
from datetime import datetime, timedelta
from typing import Callable, Iterable
from google.api_core.exceptions import AlreadyExists, FailedPrecondition, GoogleAPICallError
from google.cloud import firestore
import logging

from . import booking
from .context import ServiceContext
from .errors import (
    RideNotFound, PermissionDenied, IncompleteRideData, ScheduleConflict,
    NetworkFailure, store_errors,
)
from .events import RideUpdated, RequestUpdated

logger = logging.getLogger(__name__)

RIDE_NUMBER_RETRIES = 5
USER_RIDES_LIMIT = 20

def ride_from_snapshot(doc) -> Ride:
    ride_data = doc.to_dict()
    ride_data["id"] = doc.id
    return Ride.model_validate(ride_data)

def request_from_snapshot(doc) -> RideRequest:
    request_data = doc.to_dict()
    request_data["id"] = doc.id
    return RideRequest.model_validate(request_data)

async def publish_ride(ctx: ServiceContext, ride: Ride) -> None:
    """Publish a RideUpdated event carrying the ride's current passengers"""
    try:
        passengers = await list_ride_requests(ctx, ride.id, booking.PASSENGER_STATUSES)
    except NetworkFailure as exc:
        logger.warning(f"Could not list passengers of ride {ride.id}: {exc}")
        passengers = []
    ctx.events.publish(RideUpdated(
        ride_id=ride.id,
        driver_id=ride.driver_id,
        status=ride.status,
        available_seats=ride.available_seats,
        passenger_ids=[p.user_id for p in passengers],
    ))

async def get_ride(ctx: ServiceContext, ride_id: str) -> Ride:
    """Get a ride by its ID"""
    with store_errors("reading ride"):
        ride_doc = ctx.rides_ref.document(ride_id).get()
    if not ride_doc.exists:
        raise RideNotFound(f"Ride {ride_id} not found")
    return ride_from_snapshot(ride_doc)

async def get_driver_ride(ctx: ServiceContext, ride_id: str, driver_id: str) -> Ride:
    """Get a ride, checking that `driver_id` owns it"""
    ride = await get_ride(ctx, ride_id)
    if ride.driver_id != driver_id:
        raise PermissionDenied("You don't have permission to manage this ride")
    return ride

async def list_ride_requests(ctx: ServiceContext, ride_id: str,
                             statuses: Iterable[RideRequestStatus] | None = None) -> list[RideRequest]:
    """Requests for a ride, optionally restricted to some statuses"""
    query = ctx.requests_ref.where("ride_id", "==", ride_id)
    if statuses is not None:
        query = query.where("status", "in", [status.value for status in statuses])
    with store_errors("reading ride requests"):
        return [request_from_snapshot(doc) for doc in query.stream()]

async def update_ride(ctx: ServiceContext, ride_id: str,
                      decide: Callable[[Ride], dict | None]) -> tuple[Ride, bool]:
    """
    Read-decide-write on a ride document.

    `decide` receives the ride as currently stored and returns the fields to
    write, None to leave the ride alone, or raises. The write is conditioned on
    the snapshot's update time, so a concurrent change makes it fail and the
    whole read-decide-write is retried. Returns the ride and whether it changed.
    """
    ride_ref = ctx.rides_ref.document(ride_id)
    for attempt in range(ctx.settings.RIDE_UPDATE_RETRIES):
        with store_errors("reading ride"):
            snapshot = ride_ref.get()
        if not snapshot.exists:
            raise RideNotFound(f"Ride {ride_id} not found")
        ride = ride_from_snapshot(snapshot)
        updates = decide(ride)
        if updates is None:
            return ride, False
        updates["updated_at"] = ctx.now()
        try:
            ride_ref.update(updates, option=firestore.Client.write_option(last_update_time=snapshot.update_time))
        except FailedPrecondition:
            logger.info(f"Ride {ride_id} changed during update, retry {attempt + 1}")
            continue
        except GoogleAPICallError as exc:
            raise NetworkFailure(f"Error updating ride: {exc}") from exc
        updated = ride.model_copy(update=updates)
        if updated.status != ride.status:
            logger.info(f"Ride {ride.id}: {ride.status.value} -> {updated.status.value}")
        await publish_ride(ctx, updated)
        return updated, True
    raise NetworkFailure(f"Ride {ride_id} is being updated concurrently, try again")

async def set_ride_status(ctx: ServiceContext, ride: Ride, target: RideStatus) -> Ride:
    """Move a ride to `target`, enforcing the ride state machine on the stored ride"""
    def move(current: Ride) -> dict:
        booking.ensure_ride_transition(current, target)
        return {"status": target}
    updated, _ = await update_ride(ctx, ride.id, move)
    return updated

async def update_request(ctx: ServiceContext, request: RideRequest, updates: dict,
                         option=None) -> RideRequest:
    """Write fields of a request; a status change is published as RequestUpdated"""
    updates["updated_at"] = ctx.now()
    with store_errors("updating ride request"):
        ctx.requests_ref.document(request.id).update(updates, option=option)
    updated = request.model_copy(update=updates)
    if updated.status != request.status:
        logger.info(f"Request {request.id}: {request.status.value} -> {updated.status.value}")
        ctx.events.publish(RequestUpdated(
            ride_id=updated.ride_id,
            request_id=updated.id,
            user_id=updated.user_id,
            status=updated.status,
        ))
    return updated

async def notify_passengers(ctx: ServiceContext, ride: Ride, title: str, body: str,
                            statuses: Iterable[RideRequestStatus] = booking.SEAT_HOLDING_STATUSES) -> list[str]:
    passengers = await list_ride_requests(ctx, ride.id, statuses)
    return await ctx.notifier.send_ride_status([p.user_id for p in passengers], title, body, ride.id)

# Creation

def validate_new_ride(payload: RideCreate, now: datetime, settings) -> datetime:
    """Check a ride offer and return its departure time"""
    if not payload.origin.address.strip() or not payload.destination.address.strip():
        raise IncompleteRideData("Origin and destination are required")
    if not payload.ride_days:
        raise IncompleteRideData("Select at least one ride day")
    try:
        datetime.strptime(payload.ride_date, "%d/%m/%Y")
    except ValueError:
        raise IncompleteRideData("Date must be formatted DD/MM/YYYY")
    try:
        datetime.strptime(payload.ride_time, "%H:%M")
    except ValueError:
        raise IncompleteRideData("Time must be formatted HH:MM")
    departure = booking.parse_ride_datetime(f"{payload.ride_date} {payload.ride_time}")

    if departure < now:
        raise IncompleteRideData("The ride date is in the past")
    if departure <= now + timedelta(minutes=settings.MIN_LEAD_MINUTES):
        raise IncompleteRideData(
            f"The ride must leave at least {settings.MIN_LEAD_MINUTES} minutes from now")
    if not 1 <= payload.available_seats <= settings.MAX_SEATS:
        raise IncompleteRideData(f"Seats must be between 1 and {settings.MAX_SEATS}")
    if payload.required_gender is None:
        raise IncompleteRideData("Select the required passenger gender")
    return departure

async def next_ride_number(ctx: ServiceContext) -> int:
    query = ctx.rides_ref.order_by("ride_number", direction=firestore.Query.DESCENDING).limit(1)
    with store_errors("reading ride numbers"):
        latest = list(query.stream())
    if not latest:
        return 1
    return (latest[0].to_dict().get("ride_number") or 0) + 1

async def insert_ride(ctx: ServiceContext, fields: dict) -> Ride:
    """
    Persist a new ride under the next free ride number.

    The document key is the ride number, so two drivers racing for the same
    number collide on `create()` and the loser recomputes it.
    """
    for _ in range(RIDE_NUMBER_RETRIES):
        number = await next_ride_number(ctx)
        now = ctx.now()
        ride = Ride(id=str(number), ride_number=number, created_at=now, updated_at=now, **fields)
        ride_data = ride.model_dump(exclude={"id"})
        try:
            with store_errors("creating ride"):
                ctx.rides_ref.document(ride.id).create(ride_data)
        except NetworkFailure as exc:
            if isinstance(exc.__cause__, AlreadyExists):
                logger.info(f"Ride number {number} taken, retrying")
                continue
            raise
        logger.info(f"Created ride {ride.id} for driver {ride.driver_id}")
        await publish_ride(ctx, ride)
        return ride
    raise NetworkFailure("Could not allocate a ride number")

async def create_ride(ctx: ServiceContext, driver_id: str, payload: RideCreate) -> Ride:
    """Validate a driver's ride offer and persist it"""
    departure = validate_new_ride(payload, ctx.now(), ctx.settings)

    # A driver cannot have two open rides within the conflict window
    open_rides = ctx.rides_ref.where("driver_id", "==", driver_id).where(
        "status", "in", [status.value for status in booking.BOOKABLE_STATUSES])
    with store_errors("checking schedule"):
        existing = [ride_from_snapshot(doc).departure_at for doc in open_rides.stream()]
    if booking.has_schedule_conflict(departure, existing, ctx.settings.CONFLICT_WINDOW_MINUTES):
        raise ScheduleConflict("You already have a ride scheduled around the same time")

    return await insert_ride(ctx, {
        "driver_id": driver_id,
        "origin": payload.origin,
        "destination": payload.destination,
        "destination_street": payload.destination_street,
        "ride_datetime": booking.format_ride_datetime(departure),
        "departure_at": departure,
        "status": RideStatus.AVAILABLE,
        "available_seats": payload.available_seats,
        "total_seats": payload.available_seats,
        "is_recurring": payload.is_recurring,
        "ride_days": payload.ride_days,
        "no_smoking": payload.no_smoking,
        "no_music": payload.no_music,
        "no_children": payload.no_children,
        "required_gender": payload.required_gender,
    })

# Driver lifecycle

async def start_ride(ctx: ServiceContext, ride_id: str, driver_id: str) -> Ride:
    ride = await get_driver_ride(ctx, ride_id, driver_id)
    booking.ensure_can_start(ride, ctx.now(), ctx.settings.GRACE_MINUTES, ctx.settings.START_REQUIRES_GRACE)
    ride = await set_ride_status(ctx, ride, RideStatus.IN_PROGRESS)
    await notify_passengers(
        ctx, ride, "Your ride has started",
        f"The driver started your ride from {ride.origin.address} to {ride.destination.address}")
    return ride

async def finish_ride(ctx: ServiceContext, ride_id: str, driver_id: str,
                      repeat_next_week: bool = False) -> FinishRideResult:
    """Complete a ride, optionally cloning a recurring ride one week ahead"""
    ride = await get_driver_ride(ctx, ride_id, driver_id)
    ride = await set_ride_status(ctx, ride, RideStatus.COMPLETED)
    await notify_passengers(
        ctx, ride, "Your ride is finished",
        f"Your ride from {ride.origin.address} to {ride.destination.address} is complete",
        statuses=booking.PASSENGER_STATUSES)

    next_ride = None
    if repeat_next_week and ride.is_recurring:
        next_ride = await clone_for_next_week(ctx, ride)
    return FinishRideResult(ride=ride, next_ride=next_ride)

async def clone_for_next_week(ctx: ServiceContext, ride: Ride) -> Ride:
    departure = booking.next_week(ride)
    next_ride = await insert_ride(ctx, {
        **ride.model_dump(include={
            "driver_id", "origin", "destination", "destination_street", "total_seats",
            "ride_days", "no_smoking", "no_music", "no_children", "required_gender",
        }),
        "ride_datetime": booking.format_ride_datetime(departure),
        "departure_at": departure,
        "status": RideStatus.AVAILABLE,
        "available_seats": ride.total_seats,
        "is_recurring": True,
    })
    await ctx.notifier.send(
        ride.driver_id, "New ride created",
        f"Next week's ride from {ride.origin.address} to {ride.destination.address} "
        f"is scheduled for {next_ride.ride_datetime}",
        next_ride.id)
    return next_ride

async def cancel_ride(ctx: ServiceContext, ride_id: str, driver_id: str) -> Ride:
    """Cancel a ride, drop its waiting requests and tell its passengers"""
    ride = await get_driver_ride(ctx, ride_id, driver_id)
    ride = await set_ride_status(ctx, ride, RideStatus.CANCELLED)

    live = await list_ride_requests(ctx, ride.id, [RideRequestStatus.WAITING, *booking.SEAT_HOLDING_STATUSES])
    for request in live:
        if request.status == RideRequestStatus.WAITING:
            await update_request(ctx, request, {"status": RideRequestStatus.CANCELLED})
        await ctx.notifier.cancel(request.notification_id)
        await ctx.notifier.cancel(request.driver_notification_id)

    await ctx.notifier.send_ride_status(
        [r.user_id for r in live if r.status in booking.SEAT_HOLDING_STATUSES],
        "Ride cancelled",
        f"Your ride from {ride.origin.address} to {ride.destination.address} was cancelled",
        ride.id)
    return ride

async def get_ride_passengers(ctx: ServiceContext, ride_id: str) -> list[RideRequest]:
    return await list_ride_requests(ctx, ride_id, booking.PASSENGER_STATUSES)

# Listing

def _matches_text(value: str, needle: str | None) -> bool:
    return needle is None or needle.strip().lower() in value.lower()

async def search_rides(ctx: ServiceContext, filters: RideSearchFilters,
                       cursor: str | None = None, limit: int | None = None) -> RidePage:
    """
    Page through rides ordered by departure.

    Equality filters run in Firestore; address and date filters are applied
    to each page in memory, so a page may hold fewer than `limit` rides.
    """
    limit = limit or ctx.settings.SEARCH_PAGE_SIZE
    query = ctx.rides_ref
    if filters.status:
        query = query.where("status", "in", [status.value for status in filters.status])
    if filters.required_gender:
        query = query.where("required_gender", "==", filters.required_gender.value)
    for flag in ("no_smoking", "no_music", "no_children"):
        value = getattr(filters, flag)
        if value is not None:
            query = query.where(flag, "==", value)
    query = query.order_by("departure_at")

    with store_errors("searching rides"):
        if cursor:
            cursor_doc = ctx.rides_ref.document(cursor).get()
            if cursor_doc.exists:
                query = query.start_after(cursor_doc)
        docs = list(query.limit(limit).stream())

    rides = []
    for doc in docs:
        try:
            ride = ride_from_snapshot(doc)
        except Exception as exc:
            logger.warning(f"Skipping malformed ride document {doc.id}: {exc}")
            continue
        if not _matches_text(ride.origin.address, filters.origin):
            continue
        if not _matches_text(ride.destination.address, filters.destination):
            continue
        if filters.date and not ride.ride_datetime.startswith(filters.date):
            continue
        rides.append(ride)

    next_cursor = docs[-1].id if len(docs) == limit else None
    return RidePage(rides=rides, next_cursor=next_cursor)

async def get_driver_rides(ctx: ServiceContext, driver_id: str, limit: int = USER_RIDES_LIMIT) -> list[Ride]:
    query = ctx.rides_ref.where("driver_id", "==", driver_id).order_by(
        "departure_at", direction=firestore.Query.DESCENDING).limit(limit)
    with store_errors("reading driver rides"):
        return [ride_from_snapshot(doc) for doc in query.stream()]

async def get_passenger_rides(ctx: ServiceContext, user_id: str, limit: int = USER_RIDES_LIMIT) -> list[Ride]:
    query = ctx.requests_ref.where("user_id", "==", user_id).where(
        "status", "in", [status.value for status in booking.PASSENGER_STATUSES]).limit(limit)
    with store_errors("reading passenger rides"):
        ride_ids = list(dict.fromkeys(doc.to_dict()["ride_id"] for doc in query.stream()))
    rides = []
    for ride_id in ride_ids:
        try:
            rides.append(await get_ride(ctx, ride_id))
        except RideNotFound:
            logger.warning(f"Request of {user_id} points at missing ride {ride_id}")
    return rides

async def get_user_rides(ctx: ServiceContext, user_id: str) -> UserRides:
    """A user's rides as driver and passenger, split into upcoming and past"""
    cached = await ctx.cache.get_user_rides(user_id)
    if cached:
        return cached

    rides = {ride.id: ride for ride in await get_driver_rides(ctx, user_id)}
    for ride in await get_passenger_rides(ctx, user_id):
        rides.setdefault(ride.id, ride)

    now = ctx.now()
    upcoming = [r for r in rides.values()
                if r.departure_at >= now and r.status not in booking.TERMINAL_RIDE_STATUSES]
    past = [r for r in rides.values() if r not in upcoming]
    result = UserRides(
        upcoming=sorted(upcoming, key=lambda r: r.departure_at),
        past=sorted(past, key=lambda r: r.departure_at, reverse=True),
    )
    await ctx.cache.set_user_rides(user_id, result)
    return result
