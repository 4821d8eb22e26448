from fastapi import APIRouter, Depends
from models import Rating, RatingScores, RatingSummary
from services.context import ServiceContext
from services.rating_service import submit_rating, get_driver_rating_summary
from .dependencies import get_context, get_user_id

router = APIRouter()

@router.post("/requests/{request_id}/rating", response_model=Rating, status_code=201)
async def rate_driver(request_id: str, scores: RatingScores,
                      ctx: ServiceContext = Depends(get_context), user_id: str = Depends(get_user_id)):
    return await submit_rating(ctx, request_id, user_id, scores)

@router.get("/ratings/driver/{driver_id}", response_model=RatingSummary)
async def driver_ratings(driver_id: str, ctx: ServiceContext = Depends(get_context)):
    return await get_driver_rating_summary(ctx, driver_id)
