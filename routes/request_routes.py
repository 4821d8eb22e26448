from fastapi import APIRouter, Depends, HTTPException
from typing import List
from models import RideRequest, CheckOutResult
from services.context import ServiceContext
from services.request_service import (
    request_booking, accept_request, reject_request, cancel_request, check_in, check_out,
    get_ride_request_by_id, get_ride_requests_by_rider, get_pending_requests,
)
from .dependencies import get_context, get_user_id

router = APIRouter()

@router.post("/rides/{ride_id}/requests", response_model=RideRequest, status_code=201)
async def book_ride(ride_id: str, ctx: ServiceContext = Depends(get_context),
                    user_id: str = Depends(get_user_id)):
    return await request_booking(ctx, ride_id, user_id)

@router.get("/rides/{ride_id}/requests", response_model=List[RideRequest])
async def pending_requests(ride_id: str, ctx: ServiceContext = Depends(get_context),
                           user_id: str = Depends(get_user_id)):
    return await get_pending_requests(ctx, ride_id, user_id)

@router.get("/requests/rider/{rider_id}", response_model=List[RideRequest])
async def get_rider_requests(rider_id: str, ctx: ServiceContext = Depends(get_context),
                             user_id: str = Depends(get_user_id)):
    if user_id != rider_id:
        raise HTTPException(status_code=403, detail="Unauthorized to view these requests")
    return await get_ride_requests_by_rider(ctx, rider_id)

@router.get("/requests/{request_id}", response_model=RideRequest)
async def get_request(request_id: str, ctx: ServiceContext = Depends(get_context),
                      user_id: str = Depends(get_user_id)):
    ride_request = await get_ride_request_by_id(ctx, request_id)
    # Verify user has permission to view this request
    if user_id != ride_request.user_id and user_id != ride_request.driver_id:
        raise HTTPException(status_code=403, detail="Unauthorized to view this request")
    return ride_request

@router.put("/requests/{request_id}/accept", response_model=RideRequest)
async def accept(request_id: str, ctx: ServiceContext = Depends(get_context),
                 user_id: str = Depends(get_user_id)):
    return await accept_request(ctx, request_id, user_id)

@router.put("/requests/{request_id}/reject", response_model=RideRequest)
async def reject(request_id: str, ctx: ServiceContext = Depends(get_context),
                 user_id: str = Depends(get_user_id)):
    return await reject_request(ctx, request_id, user_id)

@router.put("/requests/{request_id}/cancel", response_model=RideRequest)
async def cancel(request_id: str, ctx: ServiceContext = Depends(get_context),
                 user_id: str = Depends(get_user_id)):
    return await cancel_request(ctx, request_id, user_id)

@router.put("/requests/{request_id}/check-in", response_model=RideRequest)
async def checkin(request_id: str, ctx: ServiceContext = Depends(get_context),
                  user_id: str = Depends(get_user_id)):
    return await check_in(ctx, request_id, user_id)

@router.put("/requests/{request_id}/check-out", response_model=CheckOutResult)
async def checkout(request_id: str, ctx: ServiceContext = Depends(get_context),
                   user_id: str = Depends(get_user_id)):
    return await check_out(ctx, request_id, user_id)
