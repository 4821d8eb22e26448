from models import (
    Ride, RideRequest, RideRequestStatus, UserProfile, NotificationType, CheckOutResult,
)
from typing import Callable
from google.api_core.exceptions import FailedPrecondition
from google.cloud import firestore
import logging

from . import booking
from .context import ServiceContext
from .errors import RequestNotFound, PermissionDenied, InvalidTransition, NetworkFailure, store_errors
from .events import RequestCreated
from .ride_service import get_ride, list_ride_requests, request_from_snapshot, update_ride, update_request

logger = logging.getLogger(__name__)

DEFAULT_PASSENGER_NAME = "Passenger"

async def get_user_profile(ctx: ServiceContext, user_id: str) -> UserProfile:
    """Profile of a user; unknown users get an empty profile"""
    with store_errors("reading user profile"):
        user_doc = ctx.users_ref.document(user_id).get()
    if not user_doc.exists:
        return UserProfile(id=user_id)
    return UserProfile.model_validate({**user_doc.to_dict(), "id": user_id})

async def _request_snapshot(ctx: ServiceContext, request_id: str):
    with store_errors("reading ride request"):
        request_doc = ctx.requests_ref.document(request_id).get()
    if not request_doc.exists:
        raise RequestNotFound(f"Request {request_id} not found")
    return request_doc

async def get_ride_request_by_id(ctx: ServiceContext, request_id: str) -> RideRequest:
    """Get a specific ride request by ID"""
    return request_from_snapshot(await _request_snapshot(ctx, request_id))

async def get_ride_requests_by_rider(ctx: ServiceContext, user_id: str) -> list[RideRequest]:
    """Get all ride requests created by a specific passenger"""
    query = ctx.requests_ref.where("user_id", "==", user_id)
    with store_errors("reading ride requests"):
        return [request_from_snapshot(doc) for doc in query.stream()]

async def get_pending_requests(ctx: ServiceContext, ride_id: str, driver_id: str) -> list[RideRequest]:
    """Waiting requests for a driver's ride, seat requests before waitlist entries"""
    ride = await get_ride(ctx, ride_id)
    if ride.driver_id != driver_id:
        raise PermissionDenied("You don't have permission to view these requests")
    pending = await list_ride_requests(ctx, ride_id, [RideRequestStatus.WAITING])
    return sorted(pending, key=lambda r: (r.is_waitlist, r.created_at))

def _check_owner(request: RideRequest, user_id: str, role: str) -> RideRequest:
    owner = request.driver_id if role == "driver" else request.user_id
    if owner != user_id:
        raise PermissionDenied("You don't have permission to handle this request")
    return request

async def update_seats(ctx: ServiceContext, ride_id: str, decide: Callable[[Ride], int]) -> Ride:
    """
    Atomically rewrite a ride's seat counter.

    `decide` receives the current ride and returns the new seat count (or
    raises); `available` and `full` follow the new count.
    """
    def seats_update(ride: Ride) -> dict:
        seats = decide(ride)
        return {"available_seats": seats, "status": booking.status_for_seats(ride, seats)}
    updated, _ = await update_ride(ctx, ride_id, seats_update)
    return updated

async def reserve_seat(ctx: ServiceContext, request: RideRequest) -> Ride:
    def take(ride: Ride) -> int:
        booking.ensure_can_accept(ride, request)
        return ride.available_seats - 1
    return await update_seats(ctx, request.ride_id, take)

async def release_seat(ctx: ServiceContext, ride_id: str) -> Ride:
    return await update_seats(ctx, ride_id, booking.seats_after_release)

# Passenger operations

async def request_booking(ctx: ServiceContext, ride_id: str, passenger_id: str) -> RideRequest:
    """Create a seat request, or a waitlist entry when the ride is full"""
    ride = await get_ride(ctx, ride_id)
    passenger = await get_user_profile(ctx, passenger_id)
    existing = await list_ride_requests(ctx, ride_id)
    is_waitlist = booking.check_booking(ride, passenger, existing)

    now = ctx.now()
    request = RideRequest(
        ride_id=ride.id,
        user_id=passenger.id,
        driver_id=ride.driver_id,
        passenger_name=passenger.name,
        is_waitlist=is_waitlist,
        created_at=now,
        updated_at=now,
    )
    with store_errors("creating ride request"):
        ctx.requests_ref.document(request.id).set(request.model_dump())
    logger.info(f"Passenger {passenger.id} requested ride {ride.id} (waitlist={is_waitlist})")
    ctx.events.publish(RequestCreated(
        ride_id=ride.id,
        request_id=request.id,
        user_id=passenger.id,
        is_waitlist=is_waitlist,
    ))

    # Best-effort from here on: the request stands even if notifications fail
    reminder_id = await ctx.notifier.schedule_driver_reminder(ride)
    await ctx.notifier.send_ride_request(ride, passenger.name or DEFAULT_PASSENGER_NAME, is_waitlist)
    if reminder_id:
        try:
            request = await update_request(ctx, request, {"driver_notification_id": reminder_id})
        except NetworkFailure as exc:
            logger.warning(f"Could not link reminder {reminder_id} to request {request.id}: {exc}")
    return request

async def cancel_request(ctx: ServiceContext, request_id: str, passenger_id: str) -> RideRequest:
    """Cancel a passenger's request; cancelling twice is a no-op"""
    request = _check_owner(await get_ride_request_by_id(ctx, request_id), passenger_id, "passenger")
    if request.status == RideRequestStatus.CANCELLED:
        return request
    booking.ensure_request_transition(request, RideRequestStatus.CANCELLED)

    held_seat = request.status in booking.SEAT_HOLDING_STATUSES
    cancelled = await update_request(ctx, request, {"status": RideRequestStatus.CANCELLED})
    await ctx.notifier.cancel(request.notification_id)
    await ctx.notifier.cancel(request.driver_notification_id)

    ride = await get_ride(ctx, request.ride_id)
    if held_seat and ride.status not in booking.TERMINAL_RIDE_STATUSES:
        ride = await release_seat(ctx, ride.id)

    await ctx.notifier.send(
        ride.driver_id, "Booking cancelled",
        f"{request.passenger_name or DEFAULT_PASSENGER_NAME} cancelled their booking for the ride "
        f"from {ride.origin.address} to {ride.destination.address}",
        ride.id)
    return cancelled

async def check_in(ctx: ServiceContext, request_id: str, passenger_id: str) -> RideRequest:
    request = _check_owner(await get_ride_request_by_id(ctx, request_id), passenger_id, "passenger")
    ride = await get_ride(ctx, request.ride_id)
    booking.ensure_can_check_in(ride, request)
    checked_in = await update_request(ctx, request, {"status": RideRequestStatus.CHECKED_IN})
    await ctx.notifier.send(
        ride.driver_id, "Passenger arrived",
        f"{request.passenger_name or DEFAULT_PASSENGER_NAME} checked in for the ride "
        f"from {ride.origin.address} to {ride.destination.address}",
        ride.id)
    return checked_in

async def check_out(ctx: ServiceContext, request_id: str, passenger_id: str) -> CheckOutResult:
    """Check a passenger out and prompt them to rate the driver"""
    request = _check_owner(await get_ride_request_by_id(ctx, request_id), passenger_id, "passenger")
    booking.ensure_request_transition(request, RideRequestStatus.CHECKED_OUT)
    ride = await get_ride(ctx, request.ride_id)

    await ctx.notifier.cancel(request.notification_id)
    checked_out = await update_request(ctx, request, {"status": RideRequestStatus.CHECKED_OUT})
    await ctx.notifier.send_check_out(ride, request.passenger_name or DEFAULT_PASSENGER_NAME)
    return CheckOutResult(request=checked_out, rating_prompt=not checked_out.has_rating)

# Driver operations

async def accept_request(ctx: ServiceContext, request_id: str, driver_id: str) -> RideRequest:
    """
    Accept a waiting request, taking one seat from the ride.

    The request write is conditioned on the request not having changed since
    it was read; if another accept or a cancel got there first, the seat taken
    here is given back.
    """
    request_doc = await _request_snapshot(ctx, request_id)
    request = _check_owner(request_from_snapshot(request_doc), driver_id, "driver")
    ride = await reserve_seat(ctx, request)

    passenger = await get_user_profile(ctx, request.user_id)
    driver = await get_user_profile(ctx, driver_id)
    reminder_id = await ctx.notifier.schedule_passenger_reminder(ride, request.user_id, driver.name)
    try:
        accepted = await update_request(ctx, request, {
            "status": RideRequestStatus.ACCEPTED,
            "passenger_name": passenger.name or request.passenger_name,
            "notification_id": reminder_id,
        }, option=firestore.Client.write_option(last_update_time=request_doc.update_time))
    except NetworkFailure as exc:
        await ctx.notifier.cancel(reminder_id)
        await release_seat(ctx, ride.id)
        if isinstance(exc.__cause__, FailedPrecondition):
            raise InvalidTransition(f"Request {request.id} changed while it was being accepted") from exc
        raise

    await ctx.notifier.send(
        request.user_id, "Booking accepted!",
        f"Your booking for the ride from {ride.origin.address} to {ride.destination.address} was accepted",
        ride.id)
    await ctx.notifier.mark_read(
        driver_id, ride.id, NotificationType.RIDE_REQUEST,
        {"status": RideRequestStatus.ACCEPTED.value, "passenger_name": accepted.passenger_name})
    return accepted

async def reject_request(ctx: ServiceContext, request_id: str, driver_id: str) -> RideRequest:
    request = _check_owner(await get_ride_request_by_id(ctx, request_id), driver_id, "driver")
    booking.ensure_request_transition(request, RideRequestStatus.REJECTED)
    ride = await get_ride(ctx, request.ride_id)

    await ctx.notifier.cancel(request.driver_notification_id)
    rejected = await update_request(ctx, request, {"status": RideRequestStatus.REJECTED})
    await ctx.notifier.send(
        request.user_id, "Booking declined",
        f"Your booking for the ride from {ride.origin.address} to {ride.destination.address} was declined",
        ride.id)
    return rejected
