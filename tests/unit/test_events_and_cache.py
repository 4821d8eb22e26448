"""
Tests for the ride event stream, the Redis read cache and the notifier.
"""
import asyncio

import pytest

from models import NotificationType, RideRequestStatus, RideStatus
from services.cache import RideCache, invalidate_on_events, keys_for_event
from services.events import EventBus, RequestUpdated, RideUpdated
from services.notifications import Notifier
from services.ride_service import cancel_ride, get_user_rides


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.fail = False

    async def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        if self.fail:
            raise ConnectionError("redis down")
        self.values[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        for key in keys:
            self.values.pop(key, None)


def ride_event(ride_id="1", status=RideStatus.FULL):
    return RideUpdated(ride_id=ride_id, driver_id="driver-1", status=status, available_seats=0)


@pytest.mark.asyncio
class TestEventBus:
    async def test_subscriber_gets_its_ride_only(self):
        bus = EventBus()
        subscription = bus.subscribe("1")
        bus.publish(ride_event("2"))
        bus.publish(ride_event("1"))

        event = await subscription.get(timeout=1)

        assert event.ride_id == "1"
        assert await subscription.get(timeout=0.01) is None

    async def test_global_subscriber_gets_everything(self):
        bus = EventBus()
        subscription = bus.subscribe()
        bus.publish(ride_event("1"))
        bus.publish(ride_event("2"))
        assert [(await subscription.get(timeout=1)).ride_id for _ in range(2)] == ["1", "2"]

    async def test_closed_subscription_stops_receiving(self):
        bus = EventBus()
        subscription = bus.subscribe("1")
        subscription.close()
        bus.publish(ride_event("1"))

        assert bus.subscriber_count == 0
        assert await subscription.get(timeout=0.01) is None

    async def test_context_manager_closes(self):
        bus = EventBus()
        async with bus.subscribe("1") as subscription:
            assert bus.subscriber_count == 1
        assert subscription.closed
        assert bus.subscriber_count == 0

    async def test_close_wakes_a_blocked_reader(self):
        bus = EventBus()
        subscription = bus.subscribe("1")
        reader = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)
        bus.close()
        assert await asyncio.wait_for(reader, 1) is None

    async def test_async_iteration_ends_on_close(self):
        bus = EventBus()
        subscription = bus.subscribe("1")
        bus.publish(ride_event("1"))
        bus.publish(ride_event("1", RideStatus.AVAILABLE))

        received = []
        async for event in subscription:
            received.append(event.status)
            if len(received) == 2:
                subscription.close()

        assert received == [RideStatus.FULL, RideStatus.AVAILABLE]

    async def test_slow_subscriber_drops_overflow(self):
        bus = EventBus(maxsize=1)
        subscription = bus.subscribe("1")
        bus.publish(ride_event("1", RideStatus.FULL))
        bus.publish(ride_event("1", RideStatus.AVAILABLE))

        assert (await subscription.get(timeout=1)).status == RideStatus.FULL
        assert await subscription.get(timeout=0.01) is None


@pytest.mark.asyncio
class TestRideCache:
    async def test_disabled_cache_is_a_miss(self, add_ride):
        cache = RideCache(None)
        await cache.set_ride(add_ride())
        assert not cache.enabled
        assert await cache.get_ride("1") is None

    async def test_ride_round_trip_with_ttl(self, add_ride):
        redis = FakeRedis()
        cache = RideCache(redis, ttl_seconds=120)
        ride = add_ride()

        await cache.set_ride(ride)

        assert redis.ttls["ride_1"] == 120
        assert await cache.get_ride("1") == ride

    async def test_redis_failure_is_a_miss(self, add_ride):
        redis = FakeRedis()
        cache = RideCache(redis)
        await cache.set_ride(add_ride())
        redis.fail = True
        assert await cache.get_ride("1") is None

    async def test_event_keys(self):
        assert keys_for_event(ride_event("4")) == ["ride_4", "rides_driver-1"]
        update = RequestUpdated(ride_id="4", request_id="r", user_id="p-1", status=RideRequestStatus.ACCEPTED)
        assert keys_for_event(update) == ["rides_p-1"]

    async def test_ride_event_keys_include_passengers(self):
        event = ride_event("4").model_copy(update={"passenger_ids": ["p-1", "p-2"]})
        assert keys_for_event(event) == ["ride_4", "rides_driver-1", "rides_p-1", "rides_p-2"]

    async def test_mutations_invalidate_cached_rides(self, add_ride):
        redis = FakeRedis()
        cache = RideCache(redis)
        bus = EventBus()
        await cache.set_ride(add_ride())

        task = asyncio.create_task(invalidate_on_events(bus, cache))
        await asyncio.sleep(0)
        bus.publish(ride_event("1"))
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert "ride_1" not in redis.values
        assert bus.subscriber_count == 0

    async def test_user_rides_are_cached(self, ctx, add_ride):
        ctx.cache = RideCache(FakeRedis())
        add_ride()

        first = await get_user_rides(ctx, "driver-1")
        ctx.rides_ref.broken = True
        second = await get_user_rides(ctx, "driver-1")

        assert second == first

    async def test_ride_change_drops_passenger_rides(self, ctx, add_ride, add_request):
        ctx.cache = RideCache(FakeRedis())
        ride = add_ride()
        add_request(ride, "p-1", status=RideRequestStatus.ACCEPTED)
        assert [r.status for r in (await get_user_rides(ctx, "p-1")).upcoming] == [RideStatus.AVAILABLE]

        task = asyncio.create_task(invalidate_on_events(ctx.events, ctx.cache))
        await asyncio.sleep(0)
        await cancel_ride(ctx, ride.id, "driver-1")
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        rides = await get_user_rides(ctx, "p-1")
        assert [r.status for r in rides.upcoming + rides.past] == [RideStatus.CANCELLED]


@pytest.mark.asyncio
class TestNotifier:
    async def test_send_writes_notification(self, db):
        notifier = Notifier(db.collection("notifications"))
        notification_id = await notifier.send("p-1", "Hi", "Body", "1", data={"extra": True})

        stored = db.collection("notifications").all()[notification_id]
        assert stored["user_id"] == "p-1"
        assert stored["data"] == {"rideId": "1", "extra": True}
        assert stored["status"] == "sent"
        assert stored["read"] is False

    async def test_reminder_lead_time(self, db, add_ride):
        notifier = Notifier(db.collection("notifications"), reminder_lead_minutes=45)
        ride = add_ride()
        reminder_id = await notifier.schedule_driver_reminder(ride)

        stored = db.collection("notifications").all()[reminder_id]
        assert stored["type"] == NotificationType.RIDE_REMINDER
        assert (ride.departure_at - stored["scheduled_for"]).total_seconds() == 45 * 60

    async def test_cancel_unknown_ids(self, db):
        notifier = Notifier(db.collection("notifications"))
        assert await notifier.cancel(None) is False
        assert await notifier.cancel("notif_missing") is False

    async def test_failures_are_swallowed(self, db):
        collection = db.collection("notifications")
        collection.broken = True
        notifier = Notifier(collection)
        assert await notifier.send("p-1", "Hi", "Body", "1") is None
        assert await notifier.send_ride_status(["p-1", "p-2"], "Hi", "Body", "1") == []
        assert await notifier.mark_read("p-1", "1", NotificationType.RIDE_REQUEST) == 0
