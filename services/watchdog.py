"""
Lifecycle watchdog.

Rides still `available` or `full` more than the grace period after their
scheduled departure are put `on-hold`. The periodic task runs in the service
process, so the demotion happens whether or not any client is looking at the
ride; `GET /rides/{id}` applies the same check on read.
"""
import asyncio
import logging
from datetime import datetime

from models import Ride, RideStatus
from . import booking
from .context import ServiceContext
from .errors import BookingError
from .ride_service import ride_from_snapshot, get_ride, update_ride, notify_passengers

logger = logging.getLogger(__name__)

async def put_on_hold(ctx: ServiceContext, ride: Ride, now: datetime) -> Ride | None:
    """
    Put a ride on hold if the stored ride is still stale.

    Returns the demoted ride, or None when the stored ride is no longer stale.
    """
    def hold(current: Ride) -> dict | None:
        if not booking.is_stale(current, now, ctx.settings.GRACE_MINUTES):
            return None
        return {"status": RideStatus.ON_HOLD}

    ride, changed = await update_ride(ctx, ride.id, hold)
    if not changed:
        return None
    title = "Ride on hold"
    body = (f"The ride from {ride.origin.address} to {ride.destination.address} was not started "
            f"within {ctx.settings.GRACE_MINUTES} minutes of its scheduled time")
    await ctx.notifier.send(ride.driver_id, title, body, ride.id)
    await notify_passengers(ctx, ride, title, body)
    return ride

async def demote_if_stale(ctx: ServiceContext, ride: Ride, now: datetime | None = None) -> Ride:
    """Put `ride` on hold if it missed its grace period; returns the current ride"""
    now = now or ctx.now()
    if not booking.is_stale(ride, now, ctx.settings.GRACE_MINUTES):
        return ride
    # `ride` may be an old copy, so the decision is made again on the stored ride
    return await put_on_hold(ctx, ride, now) or await get_ride(ctx, ride.id)

async def demote_stale_rides(ctx: ServiceContext, now: datetime | None = None) -> list[Ride]:
    """One watchdog pass over every bookable ride. Returns the rides put on hold."""
    now = now or ctx.now()
    query = ctx.rides_ref.where("status", "in", [status.value for status in booking.STALE_CANDIDATE_STATUSES])
    demoted = []
    for doc in query.stream():
        try:
            ride = ride_from_snapshot(doc)
            if booking.is_stale(ride, now, ctx.settings.GRACE_MINUTES):
                held = await put_on_hold(ctx, ride, now)
                if held is not None:
                    demoted.append(held)
        except BookingError as exc:
            logger.warning(f"Watchdog could not demote ride {doc.id}: {exc}")
        except Exception as exc:
            logger.error(f"Watchdog skipped ride document {doc.id}: {exc}")
    if demoted:
        logger.info(f"Watchdog put {len(demoted)} ride(s) on hold")
    return demoted

async def run_watchdog(ctx: ServiceContext) -> None:
    """Run watchdog passes every WATCHDOG_INTERVAL_SECONDS until cancelled"""
    interval = ctx.settings.WATCHDOG_INTERVAL_SECONDS
    logger.info(f"Ride watchdog started, interval {interval}s")
    while True:
        try:
            await demote_stale_rides(ctx)
        except Exception as exc:
            logger.error(f"Watchdog pass failed: {exc}")
        await asyncio.sleep(interval)
