import logging
import math
import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import errors
from auth import get_current_user, optional_user, require_admin
from database import create_document, get_db, sanitize, to_obj_id, utcnow
from schemas import (
    MAX_SPEED_TESTS,
    SPEED_AVERAGE_WINDOW,
    Amenity,
    Cafe as CafeSchema,
    GeoPoint,
    RatingEntry,
    SpeedTestEntry,
    WeeklyHours,
)

logger = logging.getLogger(__name__)

router = APIRouter()

CAFE = "cafe"
EARTH_RADIUS_KM = 6371
SLOW_WIFI_MBPS = 5
DEFAULT_PAGE_SIZE = 50

SORT_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "name": "name",
    "rating": "rating.average",
    "download": "wifi_speed.download",
    "upload": "wifi_speed.upload",
    "ping": "wifi_speed.ping",
    "distance": None,
}
ASCENDING_BY_DEFAULT = {"name", "distance"}


# Helpers

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometers, rounded to 2 decimals."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_KM * c, 2)


def distance_from(cafe: Dict[str, Any], latitude: float, longitude: float) -> Optional[float]:
    coords = (cafe.get("location") or {}).get("coordinates")
    if not coords or len(coords) != 2:
        return None
    cafe_lng, cafe_lat = coords
    return haversine_km(latitude, longitude, cafe_lat, cafe_lng)


def average_wifi_speed(history: List[Dict[str, Any]], window: int = SPEED_AVERAGE_WINDOW) -> Dict[str, float]:
    recent = history[-window:]
    if not recent:
        return {"download": 0, "upload": 0, "ping": 0}
    n = len(recent)
    return {
        metric: round(sum(t.get(metric) or 0 for t in recent) / n, 2)
        for metric in ("download", "upload", "ping")
    }


def upsert_rating(ratings: List[Dict[str, Any]], entry: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Replace the entry of the same user in place, or append a new one."""
    for i, r in enumerate(ratings):
        if r.get("user_id") == entry["user_id"]:
            return list(ratings[:i]) + [entry] + list(ratings[i + 1:])
    return list(ratings) + [entry]


def summarize_ratings(ratings: List[Dict[str, Any]]) -> Dict[str, Any]:
    if not ratings:
        return {"average": 0, "count": 0}
    return {"average": sum(r["rating"] for r in ratings) / len(ratings), "count": len(ratings)}


def enrich(cafe: Dict[str, Any], distance: Optional[float] = None) -> Dict[str, Any]:
    out = sanitize(cafe)
    speed = out.get("wifi_speed") or {}
    download = speed.get("download") or 0
    out["average_wifi_speed"] = ((download + (speed.get("upload") or 0)) / 2) or 0
    out["is_slow_wifi"] = download < SLOW_WIFI_MBPS
    if distance is not None:
        out["distance_km"] = distance
    return out


def find_cafe(db: Database, cafe_id: Any, projection: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    cafe = db[CAFE].find_one({"_id": to_obj_id(cafe_id, "cafe ID")}, projection)
    if not cafe:
        raise errors.NotFound("Cafe not found")
    return cafe


def find_duplicate(db: Database, name: str, address: str, exclude_id=None) -> Optional[Dict[str, Any]]:
    filt: Dict[str, Any] = {
        "name": {"$regex": f"^{re.escape(name)}$", "$options": "i"},
        "address": {"$regex": f"^{re.escape(address)}$", "$options": "i"},
    }
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    return db[CAFE].find_one(filt, {"_id": 1})


def record_speed_test(db: Database, cafe: Dict[str, Any], entry: Dict[str, Any]) -> Dict[str, Any]:
    """Append a speed test to the cafe and refresh its wifi_speed averages.

    The append is a single $push so concurrent submissions never drop a
    sample; only the recomputed average is last-write-wins.
    """
    updated = db[CAFE].find_one_and_update(
        {"_id": cafe["_id"]},
        {"$push": {"speed_tests": {"$each": [entry], "$slice": -MAX_SPEED_TESTS}}},
        projection={"speed_tests": 1},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise errors.NotFound("Cafe not found")
    wifi_speed = average_wifi_speed(updated.get("speed_tests") or [])
    now = utcnow()
    wifi_speed["last_tested"] = now
    db[CAFE].update_one({"_id": cafe["_id"]}, {"$set": {"wifi_speed": wifi_speed, "updated_at": now}})
    return wifi_speed


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_contact(value: Any) -> int:
    text = str(value).strip()
    if not re.fullmatch(r"[1-9]\d{9}", text):
        raise ValueError("Contact must be exactly 10 digits")
    return int(text)


# Request Models

class CafeCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=3, max_length=100)
    address: str = Field(..., min_length=10, max_length=200)
    contact: int
    description: Optional[str] = Field(None, max_length=500)
    amenities: List[Amenity] = Field(default_factory=list)
    hours: Optional[WeeklyHours] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @field_validator("contact", mode="before")
    @classmethod
    def check_contact(cls, v):
        return parse_contact(v)

    @model_validator(mode="after")
    def check_coordinates(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self


class CafeUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    id: str = Field(..., alias="_id")
    name: Optional[str] = Field(None, min_length=3, max_length=100)
    address: Optional[str] = Field(None, min_length=10, max_length=200)
    contact: Optional[int] = None
    description: Optional[str] = Field(None, max_length=500)
    amenities: Optional[List[Amenity]] = None
    hours: Optional[WeeklyHours] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    is_active: Optional[bool] = None

    @field_validator("contact", mode="before")
    @classmethod
    def check_contact(cls, v):
        return None if v is None else parse_contact(v)

    @model_validator(mode="after")
    def check_coordinates(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self


class CafeDelete(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    soft: bool = False


class BulkDeleteRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


class RateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    cafe_id: str = Field(..., alias="cafeId")
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=500)


class SpeedTestSubmit(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cafe_id: str = Field(..., alias="cafeId")
    download: float = Field(..., ge=0, le=1000)
    upload: float = Field(0, ge=0, le=1000)
    ping: float = Field(0, ge=0, le=1000)
    device_type: str = Field("unknown", alias="deviceType", max_length=50)
    timestamp: Optional[datetime] = None


# Listing

@router.get("/cafes")
def list_cafes(
    search: Optional[str] = Query(None, max_length=100),
    min_rating: Optional[float] = Query(None, alias="minRating", ge=0, le=5),
    max_rating: Optional[float] = Query(None, alias="maxRating", ge=0, le=5),
    min_speed: Optional[float] = Query(None, alias="minSpeed", ge=0),
    max_speed: Optional[float] = Query(None, alias="maxSpeed", ge=0),
    latitude: Optional[float] = Query(None, ge=-90, le=90),
    longitude: Optional[float] = Query(None, ge=-180, le=180),
    radius: float = Query(10, gt=0, le=20000, description="kilometers"),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: Optional[Literal["asc", "desc"]] = Query(None, alias="sortOrder"),
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=100),
    include_inactive: bool = Query(False, alias="includeInactive"),
    db: Database = Depends(get_db),
    current_user=Depends(optional_user),
):
    """
    List cafes with free-text search, rating and download-speed ranges, an
    optional radius filter around latitude/longitude, sorting and pagination.

    Without page and limit the response is a bare array; otherwise it is
    {"cafes": [...], "pagination": {...}}.
    """
    if sort_by not in SORT_FIELDS:
        raise errors.ValidationError(f"sortBy must be one of: {', '.join(SORT_FIELDS)}")
    if (latitude is None) != (longitude is None):
        raise errors.ValidationError("latitude and longitude must be provided together")
    has_origin = latitude is not None
    if sort_by == "distance" and not has_origin:
        raise errors.ValidationError("sortBy=distance requires latitude and longitude")

    filt: Dict[str, Any] = {}
    if not include_inactive:
        filt["is_active"] = True
    if search and search.strip():
        pattern = re.escape(search.strip())
        filt["$or"] = [{field: {"$regex": pattern, "$options": "i"}} for field in ("name", "address", "description")]
    if min_rating is not None or max_rating is not None:
        filt["rating.average"] = {}
        if min_rating is not None:
            filt["rating.average"]["$gte"] = min_rating
        if max_rating is not None:
            filt["rating.average"]["$lte"] = max_rating
    if min_speed is not None or max_speed is not None:
        filt["wifi_speed.download"] = {}
        if min_speed is not None:
            filt["wifi_speed.download"]["$gte"] = min_speed
        if max_speed is not None:
            filt["wifi_speed.download"]["$lte"] = max_speed

    order = sort_order or ("asc" if sort_by in ASCENDING_BY_DEFAULT else "desc")
    direction = ASCENDING if order == "asc" else DESCENDING
    sort_field = SORT_FIELDS[sort_by]
    sort_spec = [(sort_field or "created_at", direction), ("_id", direction)]

    per_page = limit or DEFAULT_PAGE_SIZE
    current_page = page or 1
    skip = (current_page - 1) * per_page
    projection = {"speed_tests": 0}

    if has_origin:
        nearby = []
        for cafe in db[CAFE].find(filt, projection).sort(sort_spec):
            distance = distance_from(cafe, latitude, longitude)
            if distance is not None and distance <= radius:
                nearby.append((distance, cafe))
        if sort_by == "distance":
            nearby.sort(key=lambda pair: pair[0], reverse=order == "desc")
        total = len(nearby)
        cafes = [enrich(cafe, distance) for distance, cafe in nearby[skip:skip + per_page]]
    else:
        total = db[CAFE].count_documents(filt)
        cursor = db[CAFE].find(filt, projection).sort(sort_spec).skip(skip).limit(per_page)
        cafes = [enrich(cafe) for cafe in cursor]

    if current_user:
        favorites = set(current_user.get("favorites") or [])
        for cafe in cafes:
            cafe["is_favorite"] = cafe["id"] in favorites

    if page is None and limit is None:
        return cafes

    total_pages = math.ceil(total / per_page)
    return {
        "message": "Cafes retrieved successfully",
        "cafes": cafes,
        "pagination": {
            "current_page": current_page,
            "total_pages": total_pages,
            "total_cafes": total,
            "has_next_page": current_page < total_pages,
            "has_prev_page": current_page > 1,
            "limit": per_page,
        },
    }


@router.get("/cafes/stats")
def cafe_stats(db: Database = Depends(get_db)):
    total = db[CAFE].count_documents({})
    recent = db[CAFE].count_documents({"created_at": {"$gte": utcnow() - timedelta(days=30)}})
    # group by the first word of the address
    counter = Counter()
    for cafe in db[CAFE].find({}, {"address": 1}):
        words = (cafe.get("address") or "").split()
        counter[words[0] if words else "Unknown"] += 1
    return {
        "message": "Statistics retrieved successfully",
        "stats": {
            "total_cafes": total,
            "recent_cafes": recent,
            "top_locations": [{"location": loc, "count": n} for loc, n in counter.most_common(5)],
            "average_per_day": round(total / 30, 1),
        },
    }


def cafe_analytics(db: Database, base: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    base = base or {}
    total = db[CAFE].count_documents(base)
    active = db[CAFE].count_documents({**base, "is_active": True})
    averages = list(db[CAFE].aggregate([
        {"$match": base},
        {"$group": {
            "_id": None,
            "avg_rating": {"$avg": "$rating.average"},
            "avg_download": {"$avg": "$wifi_speed.download"},
        }},
    ]))
    avg = averages[0] if averages else {}
    top_rated = db[CAFE].find(
        {**base, "rating.average": {"$gte": 4}}, {"name": 1, "rating": 1}
    ).sort("rating.average", DESCENDING).limit(5)
    recent = db[CAFE].count_documents({**base, "created_at": {"$gte": utcnow() - timedelta(days=30)}})

    # group by the last comma-separated part of the address (city / area)
    areas = Counter()
    for cafe in db[CAFE].find(base, {"address": 1}):
        area = (cafe.get("address") or "").split(",")[-1].strip()
        areas[area or "Unknown"] += 1

    return {
        "summary": {
            "total_cafes": total,
            "active_cafes": active,
            "inactive_cafes": total - active,
            "average_rating": round(avg.get("avg_rating") or 0, 2),
            "average_wifi_speed": round(avg.get("avg_download") or 0, 2),
            "recent_additions": recent,
        },
        "top_rated": [sanitize(c) for c in top_rated],
        "location_distribution": [{"area": area, "count": n} for area, n in areas.most_common(10)],
    }


@router.get("/cafes/analytics")
def get_cafe_analytics(db: Database = Depends(get_db)):
    return {"message": "Analytics retrieved successfully", "analytics": cafe_analytics(db)}


# Create / Update / Delete

@router.post("/cafes", status_code=201)
def add_cafe(payload: CafeCreate, db: Database = Depends(get_db), current_user=Depends(get_current_user)):
    if find_duplicate(db, payload.name, payload.address):
        raise errors.DuplicateEntry()
    location = None
    if payload.latitude is not None:
        location = GeoPoint(coordinates=[payload.longitude, payload.latitude])
    cafe_doc = CafeSchema(
        name=payload.name,
        address=payload.address,
        contact=payload.contact,
        description=payload.description or None,
        amenities=payload.amenities,
        hours=payload.hours,
        location=location,
        added_by=current_user["id"],
    )
    try:
        cafe_id = create_document(db, CAFE, cafe_doc)
    except DuplicateKeyError:
        raise errors.DuplicateEntry()
    logger.info("Cafe %s (%s) added by %s", cafe_id, payload.name, current_user["id"])
    return enrich(find_cafe(db, cafe_id))


@router.put("/cafes")
def update_cafe(payload: CafeUpdate, db: Database = Depends(get_db), current_user=Depends(get_current_user)):
    existing = find_cafe(db, payload.id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True, exclude={"id", "latitude", "longitude"})
    if payload.latitude is not None:
        changes["location"] = GeoPoint(coordinates=[payload.longitude, payload.latitude]).model_dump()
    if not changes:
        raise errors.ValidationError("No fields to update")

    name = changes.get("name", existing["name"])
    address = changes.get("address", existing["address"])
    if ("name" in changes or "address" in changes) and find_duplicate(db, name, address, exclude_id=existing["_id"]):
        raise errors.DuplicateEntry("Another cafe with this name and address already exists!")

    changes["updated_at"] = utcnow()
    try:
        updated = db[CAFE].find_one_and_update(
            {"_id": existing["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise errors.DuplicateEntry("Another cafe with this name and address already exists!")
    if not updated:
        raise errors.NotFound("Cafe not found")
    return enrich(updated)


@router.delete("/cafes/bulk")
def bulk_delete_cafes(payload: BulkDeleteRequest, db: Database = Depends(get_db), admin=Depends(require_admin)):
    if any(not isinstance(i, str) or not re.fullmatch(r"[0-9a-fA-F]{24}", i) for i in payload.ids):
        raise errors.ValidationError("All IDs must be valid MongoDB ObjectIds")
    result = db[CAFE].delete_many({"_id": {"$in": [to_obj_id(i) for i in payload.ids]}})
    logger.info("Admin (%s) bulk deleted %d cafes", admin["level"], result.deleted_count)
    return {
        "message": f"{result.deleted_count} cafes deleted successfully",
        "deleted_count": result.deleted_count,
    }


@router.delete("/cafes")
def delete_cafe(payload: CafeDelete, db: Database = Depends(get_db), current_user=Depends(get_current_user)):
    oid = to_obj_id(payload.id, "cafe ID")
    if payload.soft:
        deleted = db[CAFE].find_one_and_update(
            {"_id": oid},
            {"$set": {"is_active": False, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    else:
        deleted = db[CAFE].find_one_and_delete({"_id": oid})
    if not deleted:
        raise errors.NotFound("Cafe not found!")
    logger.info("Cafe %s %s by %s", payload.id, "deactivated" if payload.soft else "deleted", current_user["id"])
    return {"message": "Cafe deleted successfully!", "deleted_cafe": sanitize(deleted)}


# Single cafe

@router.get("/cafes/{cafe_id}")
def get_cafe(cafe_id: str, db: Database = Depends(get_db)):
    return enrich(find_cafe(db, cafe_id))


@router.get("/cafes/{cafe_id}/reviews")
def get_cafe_reviews(
    cafe_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Database = Depends(get_db),
):
    cafe = find_cafe(db, cafe_id, {"name": 1, "rating": 1, "ratings": 1})
    reviews = sorted(cafe.get("ratings") or [], key=lambda r: r.get("created_at") or datetime.min, reverse=True)
    skip = (page - 1) * limit
    page_reviews = [dict(r) for r in reviews[skip:skip + limit]]

    user_ids = [ObjectId(r["user_id"]) for r in page_reviews if ObjectId.is_valid(r.get("user_id") or "")]
    users = {
        str(u["_id"]): {"email": u.get("email"), "first_name": u.get("first_name"), "last_name": u.get("last_name")}
        for u in db["user"].find({"_id": {"$in": user_ids}}, {"email": 1, "first_name": 1, "last_name": 1})
    } if user_ids else {}
    for r in page_reviews:
        r["user"] = users.get(r.get("user_id"))

    return {
        "cafe": {"id": str(cafe["_id"]), "name": cafe["name"], "rating": cafe.get("rating")},
        "reviews": page_reviews,
        "pagination": {
            "current_page": page,
            "total_reviews": len(reviews),
            "total_pages": math.ceil(len(reviews) / limit),
        },
    }


# Ratings and speed tests

@router.post("/cafes/rate")
def rate_cafe(payload: RateRequest, db: Database = Depends(get_db), current_user=Depends(get_current_user)):
    cafe = find_cafe(db, payload.cafe_id)
    entry = RatingEntry(
        user_id=current_user["id"],
        rating=payload.rating,
        review=payload.review or None,
        created_at=utcnow(),
    ).model_dump()
    ratings = upsert_rating(cafe.get("ratings") or [], entry)
    summary = summarize_ratings(ratings)
    db[CAFE].update_one(
        {"_id": cafe["_id"]},
        {"$set": {"ratings": ratings, "rating": summary, "updated_at": utcnow()}},
    )
    return {
        "message": "Rating submitted successfully",
        "rating": summary,
        "cafe": {"id": str(cafe["_id"]), "name": cafe["name"], "rating": summary},
    }


@router.post("/cafes/speed-test")
def submit_speed_test(payload: SpeedTestSubmit, db: Database = Depends(get_db), current_user=Depends(optional_user)):
    cafe = find_cafe(db, payload.cafe_id)
    entry = SpeedTestEntry(
        user_id=current_user["id"] if current_user else None,
        download=payload.download,
        upload=payload.upload,
        ping=payload.ping,
        device_type=payload.device_type or "unknown",
        timestamp=naive_utc(payload.timestamp) or utcnow(),
    ).model_dump()
    wifi_speed = record_speed_test(db, cafe, entry)
    return {
        "message": "Speed test result submitted successfully",
        "cafe": {"id": str(cafe["_id"]), "name": cafe["name"], "wifi_speed": wifi_speed},
        "is_slow_wifi": wifi_speed["download"] < SLOW_WIFI_MBPS,
    }
