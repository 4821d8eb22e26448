"""
In-process event stream for ride and request changes.

Services publish a typed event after every persisted mutation. Consumers
(the SSE route, the cache invalidator) hold one Subscription each and close
it when they are done; a closed subscription never receives further events.
"""
import asyncio
import logging
from datetime import datetime
from typing import List, Literal, Union

from pydantic import BaseModel, Field

from models import RideStatus, RideRequestStatus

logger = logging.getLogger(__name__)

class RideUpdated(BaseModel):
    type: Literal["ride_updated"] = "ride_updated"
    ride_id: str
    driver_id: str
    status: RideStatus
    available_seats: int
    passenger_ids: List[str] = Field(default_factory=list)
    at: datetime = Field(default_factory=datetime.now)

class RequestCreated(BaseModel):
    type: Literal["request_created"] = "request_created"
    ride_id: str
    request_id: str
    user_id: str
    is_waitlist: bool
    at: datetime = Field(default_factory=datetime.now)

class RequestUpdated(BaseModel):
    type: Literal["request_updated"] = "request_updated"
    ride_id: str
    request_id: str
    user_id: str
    status: RideRequestStatus
    at: datetime = Field(default_factory=datetime.now)

RideEvent = Union[RideUpdated, RequestCreated, RequestUpdated]


class Subscription:
    def __init__(self, bus: "EventBus", ride_id: str | None, maxsize: int):
        self._bus = bus
        self.ride_id = ride_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def matches(self, event: RideEvent) -> bool:
        return self.ride_id is None or self.ride_id == event.ride_id

    def deliver(self, event: RideEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Dropping %s for slow subscriber on ride %s", event.type, self.ride_id)

    async def get(self, timeout: float | None = None) -> RideEvent | None:
        """Next event, or None if the subscription was closed or the timeout passed."""
        if self.closed:
            return None
        try:
            event = await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if self.closed:
            return None
        return event

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)
            # Wake a reader blocked in get()
            try:
                self.queue.put_nowait(None)
            except asyncio.QueueFull:
                pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> RideEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.close()


class EventBus:
    def __init__(self, maxsize: int = 100):
        self._subscriptions: list[Subscription] = []
        self._maxsize = maxsize

    def subscribe(self, ride_id: str | None = None) -> Subscription:
        """Subscribe to one ride's events, or to every event when `ride_id` is None."""
        subscription = Subscription(self, ride_id, self._maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: RideEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
