"""
Short-lived cache of ride payloads, keyed `ride_<rideId>` and `rides_<userId>`.

The cache is a read-path optimisation only. Any Redis failure is logged and
treated as a miss, and every mutation of a ride or request drops the keys it
affects (see `invalidate_on_events`).
"""
import logging

from models import Ride, UserRides
from .events import EventBus, RideUpdated, RequestCreated, RequestUpdated

logger = logging.getLogger(__name__)

def ride_key(ride_id: str) -> str:
    return f"ride_{ride_id}"

def user_rides_key(user_id: str) -> str:
    return f"rides_{user_id}"

class RideCache:
    def __init__(self, redis, ttl_seconds: int = 300):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    async def _get(self, key: str) -> str | None:
        if not self.enabled:
            return None
        try:
            return await self.redis.get(key)
        except Exception as exc:
            logger.warning(f"Cache read failed for {key}: {exc}")
            return None

    async def _set(self, key: str, value: str) -> None:
        if not self.enabled:
            return
        try:
            await self.redis.setex(key, self.ttl_seconds, value)
        except Exception as exc:
            logger.warning(f"Cache write failed for {key}: {exc}")

    async def delete(self, *keys: str) -> None:
        if not self.enabled or not keys:
            return
        try:
            await self.redis.delete(*keys)
        except Exception as exc:
            logger.warning(f"Cache delete failed for {keys}: {exc}")

    async def get_ride(self, ride_id: str) -> Ride | None:
        cached = await self._get(ride_key(ride_id))
        return Ride.model_validate_json(cached) if cached else None

    async def set_ride(self, ride: Ride) -> None:
        await self._set(ride_key(ride.id), ride.model_dump_json())

    async def get_user_rides(self, user_id: str) -> UserRides | None:
        cached = await self._get(user_rides_key(user_id))
        return UserRides.model_validate_json(cached) if cached else None

    async def set_user_rides(self, user_id: str, rides: UserRides) -> None:
        await self._set(user_rides_key(user_id), rides.model_dump_json())


def keys_for_event(event) -> list[str]:
    if isinstance(event, RideUpdated):
        return [ride_key(event.ride_id), user_rides_key(event.driver_id),
                *(user_rides_key(user_id) for user_id in event.passenger_ids)]
    if isinstance(event, (RequestCreated, RequestUpdated)):
        return [user_rides_key(event.user_id)]
    return []


async def invalidate_on_events(bus: EventBus, cache: RideCache) -> None:
    """Drop cached payloads as mutations are published. Runs until cancelled."""
    subscription = bus.subscribe()
    try:
        async for event in subscription:
            await cache.delete(*keys_for_event(event))
    finally:
        subscription.close()
