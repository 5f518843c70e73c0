import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import errors
from auth import (
    get_current_user,
    hash_password,
    refresh_tokens,
    require_admin,
    token_pair,
    validate_password_strength,
    verify_password,
)
from cafes import CAFE, find_cafe
from database import create_document, get_db, sanitize, to_obj_id, utcnow
from schemas import Theme, User as UserSchema

logger = logging.getLogger(__name__)

router = APIRouter()

USER = "user"
ACTIVITY_RANGES = {"7d": 7, "30d": 30, "90d": 90}


# Request Models
class Credentials(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=72)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="refreshToken")


class PreferencesUpdate(BaseModel):
    notifications: Optional[bool] = None
    theme: Optional[Theme] = None


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[EmailStr] = None
    first_name: Optional[str] = Field(None, max_length=50)
    last_name: Optional[str] = Field(None, max_length=50)
    bio: Optional[str] = Field(None, max_length=200)
    location: Optional[str] = Field(None, max_length=100)
    preferences: Optional[PreferencesUpdate] = None


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., max_length=72)


class AccountDelete(BaseModel):
    password: str = Field(..., min_length=1)


class FavoriteToggle(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cafe_id: str = Field(..., alias="cafeId")


def load_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db[USER].find_one({"_id": to_obj_id(user_id)})
    if not user:
        raise errors.NotFound("User not found")
    return user


def days_since(value: Optional[datetime]) -> Optional[int]:
    if not value:
        return None
    return max(0, (utcnow() - value).days)


# Auth Routes
@router.post("/signup", status_code=201)
def signup(payload: Credentials, db: Database = Depends(get_db)):
    email = payload.email.lower()
    validate_password_strength(payload.password)
    if db[USER].find_one({"email": email}):
        raise errors.AlreadyExists("User already exists!")
    user_doc = UserSchema(
        email=email,
        password_hash=hash_password(payload.password),
        last_login=utcnow(),
    )
    try:
        user_id = create_document(db, USER, user_doc)
    except DuplicateKeyError:
        raise errors.AlreadyExists("User already exists!")
    user = load_user(db, user_id)
    logger.info("New user %s signed up", user_id)
    return {"message": "User created successfully!", **token_pair(user), "user": sanitize(user)}


@router.post("/login")
def login(payload: Credentials, db: Database = Depends(get_db)):
    user = db[USER].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise errors.InvalidCredentials()
    if not user.get("is_active", True):
        raise errors.AccountDeactivated()
    now = utcnow()
    db[USER].update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
    user["last_login"] = now
    return {"message": "Login successful!", **token_pair(user), "user": sanitize(user)}


@router.post("/refresh-token")
def refresh_token(payload: RefreshRequest, db: Database = Depends(get_db)):
    return refresh_tokens(db, payload.refresh_token)


# Profile Routes
@router.get("/profile")
def get_profile(db: Database = Depends(get_db), current_user=Depends(get_current_user)):
    user_id = current_user["id"]
    user_cafes = [
        sanitize(c) for c in db[CAFE].find(
            {"added_by": user_id}, {"name": 1, "address": 1, "rating": 1, "created_at": 1}
        )
    ]
    user_ratings = []
    for cafe in db[CAFE].find({"ratings.user_id": user_id}, {"name": 1, "ratings": 1}):
        for r in cafe.get("ratings") or []:
            if r.get("user_id") == user_id:
                user_ratings.append({
                    "cafe_id": str(cafe["_id"]),
                    "cafe_name": cafe["name"],
                    "rating": r["rating"],
                    "review": r.get("review"),
                    "created_at": r.get("created_at"),
                })

    given = [r["rating"] for r in user_ratings]
    stats = {
        "cafes_added": len(user_cafes),
        "ratings_given": len(user_ratings),
        "average_rating_given": round(sum(given) / len(given), 2) if given else 0,
        "joined_days_ago": days_since(current_user.get("created_at")),
        "last_active_days_ago": days_since(current_user.get("last_login")),
    }
    return {
        "message": "Profile retrieved successfully",
        "user": {**current_user, "stats": stats, "cafes": user_cafes, "ratings": user_ratings},
    }


@router.put("/profile")
def update_profile(payload: ProfileUpdate, db: Database = Depends(get_db), current_user=Depends(get_current_user)):
    user_oid = to_obj_id(current_user["id"])
    changes = payload.model_dump(exclude_unset=True, exclude={"preferences"})
    if payload.email:
        email = payload.email.lower()
        if db[USER].find_one({"email": email, "_id": {"$ne": user_oid}}):
            raise errors.EmailTaken()
        changes["email"] = email
    elif "email" in changes:
        del changes["email"]
    if payload.preferences is not None:
        changes["preferences"] = {
            **(current_user.get("preferences") or {}),
            **payload.preferences.model_dump(exclude_none=True),
        }
    if not changes:
        raise errors.ValidationError("No fields to update")
    changes["updated_at"] = utcnow()
    try:
        updated = db[USER].find_one_and_update(
            {"_id": user_oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise errors.EmailTaken("Email already exists")
    return {"message": "Profile updated successfully", "user": sanitize(updated)}


@router.put("/change-password")
def change_password(payload: PasswordChange, db: Database = Depends(get_db), current_user=Depends(get_current_user)):
    validate_password_strength(payload.new_password)
    user = load_user(db, current_user["id"])
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise errors.IncorrectPassword("Current password is incorrect")
    if verify_password(payload.new_password, user["password_hash"]):
        raise errors.SamePassword()
    now = utcnow()
    db[USER].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password_hash": hash_password(payload.new_password), "password_changed_at": now, "updated_at": now},
            "$inc": {"token_version": 1},
        },
    )
    logger.info("User %s changed their password", current_user["id"])
    return {"message": "Password changed successfully", "hint": "Please log in again with your new password"}


@router.delete("/account")
def delete_account(payload: AccountDelete, db: Database = Depends(get_db), current_user=Depends(get_current_user)):
    user = load_user(db, current_user["id"])
    if not verify_password(payload.password, user.get("password_hash", "")):
        raise errors.IncorrectPassword()
    db[USER].delete_one({"_id": user["_id"]})
    logger.info("User %s deleted their account", current_user["id"])
    return {"message": "Account deleted successfully"}


@router.get("/activity")
def get_activity(
    time_range: Literal["7d", "30d", "90d"] = Query("30d", alias="timeRange"),
    db: Database = Depends(get_db),
    current_user=Depends(get_current_user),
):
    user_id = current_user["id"]
    start = utcnow() - timedelta(days=ACTIVITY_RANGES[time_range])

    cafes_added = [
        sanitize(c) for c in db[CAFE].find(
            {"added_by": user_id, "created_at": {"$gte": start}}, {"name": 1, "address": 1, "created_at": 1}
        ).sort("created_at", DESCENDING)
    ]

    ratings_given = []
    for cafe in db[CAFE].find({"ratings.user_id": user_id}, {"name": 1, "ratings": 1}):
        for r in cafe.get("ratings") or []:
            if r.get("user_id") == user_id and r.get("created_at") and r["created_at"] >= start:
                ratings_given.append({
                    "cafe_id": str(cafe["_id"]),
                    "cafe_name": cafe["name"],
                    "rating": r["rating"],
                    "review": r.get("review"),
                    "created_at": r["created_at"],
                })

    speed_tests = []
    for cafe in db[CAFE].find({"speed_tests.user_id": user_id}, {"name": 1, "speed_tests": 1}):
        tests = [
            t for t in cafe.get("speed_tests") or []
            if t.get("user_id") == user_id and t.get("timestamp") and t["timestamp"] >= start
        ]
        if tests:
            speed_tests.append({"cafe_id": str(cafe["_id"]), "cafe_name": cafe["name"], "tests": tests})

    return {
        "message": "User activity retrieved successfully",
        "time_range": time_range,
        "activity": {
            "cafes_added": cafes_added,
            "ratings_given": ratings_given,
            "speed_tests_submitted": speed_tests,
            "summary": {
                "total_cafes": len(cafes_added),
                "total_ratings": len(ratings_given),
                "total_speed_tests": sum(len(c["tests"]) for c in speed_tests),
            },
        },
    }


# Favorites
@router.post("/favorites")
def toggle_favorite(payload: FavoriteToggle, db: Database = Depends(get_db), current_user=Depends(get_current_user)):
    cafe = find_cafe(db, payload.cafe_id, {"name": 1})
    cafe_id = str(cafe["_id"])
    user = load_user(db, current_user["id"])
    favorites = list(user.get("favorites") or [])
    if cafe_id in favorites:
        favorites.remove(cafe_id)
        action = "removed"
    else:
        favorites.append(cafe_id)
        action = "added"
    db[USER].update_one({"_id": user["_id"]}, {"$set": {"favorites": favorites, "updated_at": utcnow()}})
    return {
        "message": f"Cafe {action} {'to' if action == 'added' else 'from'} favorites",
        "action": action,
        "cafe": {"id": cafe_id, "name": cafe["name"]},
        "total_favorites": len(favorites),
    }


@router.get("/favorites")
def list_favorites(db: Database = Depends(get_db), current_user=Depends(get_current_user)):
    ids = [f for f in current_user.get("favorites") or [] if ObjectId.is_valid(f)]
    found = {
        str(c["_id"]): sanitize(c)
        for c in db[CAFE].find(
            {"_id": {"$in": [ObjectId(i) for i in ids]}, "is_active": True},
            {"name": 1, "address": 1, "rating": 1, "wifi_speed": 1, "is_active": 1},
        )
    } if ids else {}
    favorites = [found[i] for i in ids if i in found]
    return {"message": "Favorites retrieved successfully", "favorites": favorites, "count": len(favorites)}


# Admin Routes
@router.get("")
def list_users(db: Database = Depends(get_db), admin=Depends(require_admin)):
    return [sanitize(u) for u in db[USER].find({}, {"password_hash": 0}).sort("created_at", DESCENDING)]
