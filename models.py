from pydantic import BaseModel, Field, AfterValidator
from datetime import datetime
from typing import List, Dict, Any, Annotated
from enum import Enum
from uuid import uuid4

RIDE_DATETIME_FORMAT = "%d/%m/%Y %H:%M"

def _drop_tz(value: datetime) -> datetime:
    # Firestore hands timestamps back as aware UTC; rides run on naive local time
    return value.replace(tzinfo=None) if value.tzinfo else value

LocalDatetime = Annotated[datetime, AfterValidator(_drop_tz)]

class Location(BaseModel):
    address: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

class RideStatus(str, Enum):
    AVAILABLE = "available"
    FULL = "full"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ON_HOLD = "on-hold"
    CANCELLED = "cancelled"

class RideRequestStatus(str, Enum):
    WAITING = "waiting"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    CANCELLED = "cancelled"

class RequiredGender(str, Enum):
    MALE_ONLY = "male only"
    FEMALE_ONLY = "female only"
    EITHER = "either"

class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"

class UserProfile(BaseModel):
    """Profile fields supplied by the identity provider and stored in `users`"""
    id: str
    name: str | None = None
    gender: Gender | None = None
    image_url: str | None = None

class Ride(BaseModel):
    """A scheduled trip offered by a driver"""
    id: str
    driver_id: str
    origin: Location
    destination: Location
    destination_street: str | None = None
    ride_datetime: str
    departure_at: LocalDatetime
    status: RideStatus = RideStatus.AVAILABLE
    available_seats: int = Field(..., ge=0)
    total_seats: int = Field(..., ge=1)
    is_recurring: bool = False
    ride_days: List[str] = Field(default_factory=list)
    no_smoking: bool = False
    no_music: bool = False
    no_children: bool = False
    required_gender: RequiredGender = RequiredGender.EITHER
    ride_number: int
    created_at: LocalDatetime = Field(default_factory=datetime.now)
    updated_at: LocalDatetime = Field(default_factory=datetime.now)

class RideCreate(BaseModel):
    """Payload submitted by a driver to offer a ride"""
    origin: Location
    destination: Location
    destination_street: str | None = None
    ride_date: str
    ride_time: str
    available_seats: int
    is_recurring: bool = False
    ride_days: List[str] = Field(default_factory=list)
    no_smoking: bool = False
    no_music: bool = False
    no_children: bool = False
    required_gender: RequiredGender | None = None

class RideRequest(BaseModel):
    """A passenger's attempt to claim a seat on a ride"""
    id: str = Field(default_factory=lambda: f"req_{uuid4().hex}")
    ride_id: str
    user_id: str
    driver_id: str
    status: RideRequestStatus = RideRequestStatus.WAITING
    is_waitlist: bool = False
    passenger_name: str | None = None
    notification_id: str | None = None
    driver_notification_id: str | None = None
    rating: int | None = None
    has_rating: bool = False
    created_at: LocalDatetime = Field(default_factory=datetime.now)
    updated_at: LocalDatetime = Field(default_factory=datetime.now)

class RideDetails(BaseModel):
    origin_address: str
    destination_address: str
    ride_datetime: str

class RatingScores(BaseModel):
    """Scores a passenger gives the driver after checking out"""
    overall: int = Field(..., ge=1, le=5)
    driving: int = Field(..., ge=1, le=5)
    behavior: int = Field(..., ge=1, le=5)
    punctuality: int = Field(..., ge=1, le=5)
    cleanliness: int = Field(..., ge=1, le=5)
    comment: str | None = None

class Rating(RatingScores):
    id: str = Field(default_factory=lambda: f"rating_{uuid4().hex}")
    ride_id: str
    request_id: str
    driver_id: str
    passenger_id: str
    passenger_name: str
    ride_details: RideDetails
    created_at: LocalDatetime = Field(default_factory=datetime.now)

class RatingSummary(BaseModel):
    driver_id: str
    count: int
    overall: float | None = None
    driving: float | None = None
    behavior: float | None = None
    punctuality: float | None = None
    cleanliness: float | None = None

class NotificationType(str, Enum):
    RIDE_REQUEST = "ride_request"
    RIDE_STATUS = "ride_status"
    RIDE_REMINDER = "ride_reminder"
    CHECK_OUT = "check_out"

class Notification(BaseModel):
    """A notification queued for the platform push service"""
    id: str = Field(default_factory=lambda: f"notif_{uuid4().hex}")
    user_id: str
    title: str
    body: str
    type: NotificationType = NotificationType.RIDE_STATUS
    data: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    status: str = "sent"
    scheduled_for: LocalDatetime | None = None
    created_at: LocalDatetime = Field(default_factory=datetime.now)

class RideSearchFilters(BaseModel):
    status: List[RideStatus] | None = None
    required_gender: RequiredGender | None = None
    no_smoking: bool | None = None
    no_music: bool | None = None
    no_children: bool | None = None
    origin: str | None = None
    destination: str | None = None
    date: str | None = None

class RidePage(BaseModel):
    rides: List[Ride]
    next_cursor: str | None = None

class UserRides(BaseModel):
    upcoming: List[Ride]
    past: List[Ride]

class SuggestedRide(BaseModel):
    ride: Ride
    distance_km: float | None = None
    priority: float

class FinishRideResult(BaseModel):
    ride: Ride
    next_ride: Ride | None = None

class CheckOutResult(BaseModel):
    request: RideRequest
    rating_prompt: bool
