from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from config import settings
from firebase_client import lifespan
from routes import ride_routes, request_routes, rating_routes
from services.errors import BookingError
import logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    logger.info(f"{request.method} {request.url.path} refused: {exc.error}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": exc.error},
    )

@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

@app.get("/health", include_in_schema=False)
async def health_check():
    return {"status": "ok"}

app.include_router(ride_routes.router, tags=["Rides"])
app.include_router(request_routes.router, tags=["Requests"])
app.include_router(rating_routes.router, tags=["Ratings"])

if __name__ == "__main__":
    import uvicorn
    logger.info(f"PORT {settings.PORT}")
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
