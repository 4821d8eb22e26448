from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from config import Settings
from .cache import RideCache
from .events import EventBus
from .notifications import Notifier

@dataclass
class ServiceContext:
    """Collections and collaborators shared by the ride services"""
    rides_ref: Any
    requests_ref: Any
    users_ref: Any
    ratings_ref: Any
    notifier: Notifier
    settings: Settings
    events: EventBus = field(default_factory=EventBus)
    cache: RideCache = field(default_factory=lambda: RideCache(None))
    clock: Callable[[], datetime] = datetime.now

    def now(self) -> datetime:
        return self.clock()
