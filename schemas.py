"""
Database Schemas for the Slowest Cafe WiFi API

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (Cafe -> "cafe").

We will use these collections:
- cafe: listed cafes with their ratings and speed test history
- user: registered users, their preferences and favorite cafes
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Amenity = Literal["wifi", "power-outlets", "quiet", "outdoor-seating", "parking", "food", "beverages", "restroom"]
Theme = Literal["light", "dark", "auto"]

MAX_SPEED_TESTS = 50
SPEED_AVERAGE_WINDOW = 10

HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class WifiSpeed(BaseModel):
    download: float = Field(0, ge=0, le=1000, description="Mbps")
    upload: float = Field(0, ge=0, le=1000, description="Mbps")
    ping: float = Field(0, ge=0, le=1000, description="ms")
    last_tested: Optional[datetime] = None


class DayHours(BaseModel):
    open: str = Field(..., pattern=HHMM)
    close: str = Field(..., pattern=HHMM)


class WeeklyHours(BaseModel):
    monday: Optional[DayHours] = None
    tuesday: Optional[DayHours] = None
    wednesday: Optional[DayHours] = None
    thursday: Optional[DayHours] = None
    friday: Optional[DayHours] = None
    saturday: Optional[DayHours] = None
    sunday: Optional[DayHours] = None


class RatingSummary(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class RatingEntry(BaseModel):
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=500)
    created_at: datetime


class SpeedTestEntry(BaseModel):
    user_id: Optional[str] = None
    download: float = Field(..., ge=0, le=1000)
    upload: float = Field(0, ge=0, le=1000)
    ping: float = Field(0, ge=0, le=1000)
    device_type: str = Field("unknown", max_length=50)
    timestamp: datetime


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[longitude, latitude]")


class Cafe(BaseModel):
    name: str = Field(..., min_length=3, max_length=100)
    address: str = Field(..., min_length=10, max_length=200)
    contact: int = Field(..., ge=1000000000, le=9999999999, description="10 digit phone number")
    description: Optional[str] = Field(None, max_length=500)
    wifi_speed: WifiSpeed = Field(default_factory=WifiSpeed)
    amenities: List[Amenity] = Field(default_factory=list)
    hours: Optional[WeeklyHours] = None
    rating: RatingSummary = Field(default_factory=RatingSummary)
    ratings: List[RatingEntry] = Field(default_factory=list)
    speed_tests: List[SpeedTestEntry] = Field(default_factory=list)
    location: Optional[GeoPoint] = None
    is_active: bool = True
    added_by: Optional[str] = Field(None, description="Reference to user _id")


class Preferences(BaseModel):
    notifications: bool = True
    theme: Theme = "auto"


class User(BaseModel):
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")
    first_name: Optional[str] = Field(None, max_length=50)
    last_name: Optional[str] = Field(None, max_length=50)
    bio: Optional[str] = Field(None, max_length=200)
    location: Optional[str] = Field(None, max_length=100)
    is_active: bool = True
    last_login: Optional[datetime] = None
    preferences: Preferences = Field(default_factory=Preferences)
    favorites: List[str] = Field(default_factory=list, description="Cafe _id references")
    token_version: int = 0
