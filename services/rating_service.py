from models import (
    Rating, RatingScores, RatingSummary, RideDetails, RideRequestStatus,
)
import logging

from .context import ServiceContext
from .errors import PermissionDenied, InvalidTransition, store_errors
from .request_service import get_ride_request_by_id, get_user_profile, DEFAULT_PASSENGER_NAME
from .ride_service import get_ride

logger = logging.getLogger(__name__)

SCORE_FIELDS = ("overall", "driving", "behavior", "punctuality", "cleanliness")

async def submit_rating(ctx: ServiceContext, request_id: str, passenger_id: str,
                        scores: RatingScores) -> Rating:
    """Record a passenger's rating of the driver after checkout"""
    request = await get_ride_request_by_id(ctx, request_id)
    if request.user_id != passenger_id:
        raise PermissionDenied("You can only rate your own rides")
    if request.status != RideRequestStatus.CHECKED_OUT:
        raise InvalidTransition("Rides can only be rated after checking out")
    if request.has_rating:
        raise InvalidTransition("This ride has already been rated")

    ride = await get_ride(ctx, request.ride_id)
    passenger = await get_user_profile(ctx, passenger_id)
    passenger_name = passenger.name or request.passenger_name or DEFAULT_PASSENGER_NAME
    rating = Rating(
        **scores.model_dump(),
        ride_id=ride.id,
        request_id=request.id,
        driver_id=ride.driver_id,
        passenger_id=passenger_id,
        passenger_name=passenger_name,
        ride_details=RideDetails(
            origin_address=ride.origin.address,
            destination_address=ride.destination.address,
            ride_datetime=ride.ride_datetime,
        ),
        created_at=ctx.now(),
    )
    with store_errors("saving rating"):
        ctx.ratings_ref.document(rating.id).set(rating.model_dump())
        ctx.requests_ref.document(request.id).update({
            "has_rating": True,
            "rating": scores.overall,
            "updated_at": ctx.now(),
        })
    logger.info(f"Passenger {passenger_id} rated ride {ride.id}: {scores.overall}")

    await ctx.notifier.send(
        ride.driver_id, "New rating!",
        f"{passenger_name} rated your ride {scores.overall} stars",
        ride.id)
    return rating

async def get_driver_rating_summary(ctx: ServiceContext, driver_id: str) -> RatingSummary:
    query = ctx.ratings_ref.where("driver_id", "==", driver_id)
    with store_errors("reading ratings"):
        ratings = [doc.to_dict() for doc in query.stream()]
    if not ratings:
        return RatingSummary(driver_id=driver_id, count=0)
    averages = {
        field: round(sum(r[field] for r in ratings) / len(ratings), 2)
        for field in SCORE_FIELDS
    }
    return RatingSummary(driver_id=driver_id, count=len(ratings), **averages)
