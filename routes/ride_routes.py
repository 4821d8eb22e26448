from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from typing import List
from models import (
    Ride, RideCreate, RideStatus, RequiredGender, RideRequest, RideSearchFilters, RidePage,
    UserRides, SuggestedRide, FinishRideResult,
)
from services.context import ServiceContext
from services.ride_service import (
    create_ride, get_ride, start_ride, finish_ride, cancel_ride, search_rides,
    get_user_rides, get_ride_passengers,
)
from services.suggestion_service import suggest_rides
from services.watchdog import demote_if_stale
from .dependencies import get_context, get_user_id

router = APIRouter()

KEEP_ALIVE_SECONDS = 15

class FinishRideOptions(BaseModel):
    repeat_next_week: bool = False

@router.post("/rides", response_model=Ride, status_code=201)
async def offer_ride(payload: RideCreate, ctx: ServiceContext = Depends(get_context),
                     user_id: str = Depends(get_user_id)):
    return await create_ride(ctx, user_id, payload)

@router.get("/rides/search", response_model=RidePage)
async def search(
    status: List[RideStatus] | None = Query(default=None),
    required_gender: RequiredGender | None = None,
    no_smoking: bool | None = None,
    no_music: bool | None = None,
    no_children: bool | None = None,
    origin: str | None = None,
    destination: str | None = None,
    date: str | None = Query(default=None, description="DD/MM/YYYY"),
    cursor: str | None = None,
    limit: int | None = Query(default=None, ge=1, le=100),
    ctx: ServiceContext = Depends(get_context),
):
    filters = RideSearchFilters(
        status=status, required_gender=required_gender, no_smoking=no_smoking,
        no_music=no_music, no_children=no_children, origin=origin,
        destination=destination, date=date,
    )
    return await search_rides(ctx, filters, cursor, limit)

@router.get("/rides/suggested", response_model=List[SuggestedRide])
async def suggested(
    latitude: float | None = Query(default=None, ge=-90, le=90),
    longitude: float | None = Query(default=None, ge=-180, le=180),
    ctx: ServiceContext = Depends(get_context),
    user_id: str = Depends(get_user_id),
):
    return await suggest_rides(ctx, user_id, latitude, longitude)

@router.get("/rides/user/{user_id}", response_model=UserRides)
async def user_rides(user_id: str, ctx: ServiceContext = Depends(get_context),
                     caller_id: str = Depends(get_user_id)):
    if caller_id != user_id:
        raise HTTPException(status_code=403, detail="Unauthorized to view these rides")
    return await get_user_rides(ctx, user_id)

@router.get("/rides/{ride_id}", response_model=Ride)
async def ride_details(ride_id: str, ctx: ServiceContext = Depends(get_context)):
    ride = await ctx.cache.get_ride(ride_id)
    if ride is None:
        ride = await get_ride(ctx, ride_id)
        await ctx.cache.set_ride(ride)
    # A cached ride is advisory: demote_if_stale re-reads Firestore before any write
    return await demote_if_stale(ctx, ride)

@router.get("/rides/{ride_id}/passengers", response_model=List[RideRequest])
async def passengers(ride_id: str, ctx: ServiceContext = Depends(get_context)):
    return await get_ride_passengers(ctx, ride_id)

@router.get("/rides/{ride_id}/events")
async def ride_events(ride_id: str, request: Request, ctx: ServiceContext = Depends(get_context)):
    """Server-sent events for one ride until the client disconnects"""
    await get_ride(ctx, ride_id)

    async def stream():
        subscription = ctx.events.subscribe(ride_id)
        try:
            while not await request.is_disconnected():
                event = await subscription.get(timeout=KEEP_ALIVE_SECONDS)
                if event is None:
                    if subscription.closed:
                        break
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"
        finally:
            subscription.close()

    return StreamingResponse(stream(), media_type="text/event-stream")

@router.post("/rides/{ride_id}/start", response_model=Ride)
async def start(ride_id: str, ctx: ServiceContext = Depends(get_context),
                user_id: str = Depends(get_user_id)):
    return await start_ride(ctx, ride_id, user_id)

@router.post("/rides/{ride_id}/finish", response_model=FinishRideResult)
async def finish(ride_id: str, options: FinishRideOptions | None = None,
                 ctx: ServiceContext = Depends(get_context), user_id: str = Depends(get_user_id)):
    repeat = options.repeat_next_week if options else False
    return await finish_ride(ctx, ride_id, user_id, repeat_next_week=repeat)

@router.post("/rides/{ride_id}/cancel", response_model=Ride)
async def cancel(ride_id: str, ctx: ServiceContext = Depends(get_context),
                 user_id: str = Depends(get_user_id)):
    return await cancel_ride(ctx, ride_id, user_id)
