from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI
import asyncio
import logging
import firebase_admin
from firebase_admin import credentials, firestore
from config import settings
from redis_client import get_redis, close_redis
from services.cache import RideCache, invalidate_on_events
from services.context import ServiceContext
from services.events import EventBus
from services.notifications import Notifier
from services.watchdog import run_watchdog

logger = logging.getLogger(__name__)

def build_context(db, redis=None) -> ServiceContext:
    return ServiceContext(
        rides_ref=db.collection("rides"),
        requests_ref=db.collection("ride_requests"),
        users_ref=db.collection("users"),
        ratings_ref=db.collection("ratings"),
        notifier=Notifier(db.collection("notifications"), settings.REMINDER_LEAD_MINUTES),
        settings=settings,
        events=EventBus(),
        cache=RideCache(redis, settings.CACHE_TTL_SECONDS),
    )

@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    db = None
    firebase_app = None
    ctx = None
    tasks = []
    try:
        cred = credentials.Certificate(settings.CREDENTIALS_PATH)
        firebase_app = firebase_admin.initialize_app(cred, {
            'databaseURL': settings.DATABASE_URL
        })
        db = firestore.client(app=firebase_app, database_id=settings.FIRESTORE_DATABASE_ID)
        ctx = build_context(db, get_redis(settings.REDIS_URL))
        logger.info("Firebase Admin SDK initialized successfully.")
    except Exception as e:
        logger.error(f"Error initializing Firebase Admin SDK: {e}")

    if ctx is not None:
        if ctx.cache.enabled:
            tasks.append(asyncio.create_task(invalidate_on_events(ctx.events, ctx.cache)))
        if settings.WATCHDOG_ENABLED:
            tasks.append(asyncio.create_task(run_watchdog(ctx)))

    app.state.ctx = ctx
    app.state.db = db
    app.state.firebase_app = firebase_app
    yield

    # --- Shutdown ---
    for task in tasks:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    if ctx is not None:
        ctx.events.close()
    await close_redis()
    try:
        if db:
            logger.info("Closing Firestore client...")
            db.close()
        if firebase_app:
            firebase_admin.delete_app(firebase_app)
            logger.info("Firebase Admin SDK app deleted successfully.")
    except Exception as e:
        logger.error(f"Error deleting Firebase Admin SDK app: {e}")
