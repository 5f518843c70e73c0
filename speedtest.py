"""
WiFi speed tests: on-demand measurements, per-cafe history, comparisons and
the speed leaderboard.

Measurements come from a provider. With SPEEDTEST_TOKEN set, the fast.com API
is used; otherwise (or when it fails) results are simulated.
"""
import logging
import random
import time
from datetime import timedelta
from typing import Any, Dict, List, Literal, Optional

import requests
from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

import errors
from auth import get_current_user
from cafes import CAFE, find_cafe, record_speed_test
from config import SPEEDTEST_TIMEOUT, SPEEDTEST_TOKEN
from database import get_db, utcnow
from schemas import SpeedTestEntry

logger = logging.getLogger(__name__)

router = APIRouter()

FAST_API_URL = "https://api.fast.com/netflix/speedtest/v2"
CHUNK_SIZE = 64 * 1024
MAX_MEASURABLE = 1000

# shared by every request so connections to the fast.com servers are pooled
http_session = requests.Session()


# Providers

class SimulatedSpeedTest:
    """Pseudo-random results in the range of a painfully slow cafe connection."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def measure(self) -> Dict[str, Any]:
        return {
            "download": round(self.rng.uniform(1, 11), 2),
            "upload": round(self.rng.uniform(0.5, 5.5), 2),
            "ping": round(self.rng.uniform(10, 60)),
            "jitter": round(self.rng.uniform(1, 11)),
            "test_timestamp": utcnow(),
            "simulated": True,
        }


class FastComSpeedTest:
    """Download measurement against the fast.com target servers."""

    def __init__(self, token: str, url_count: int = 3, timeout: float = SPEEDTEST_TIMEOUT,
                 session: Optional[requests.Session] = None, rng: Optional[random.Random] = None):
        self.token = token
        self.url_count = url_count
        self.timeout = timeout
        self.session = session or requests.Session()
        self.rng = rng or random.Random()
        self.ping_ms = 0.0

    def targets(self) -> List[str]:
        resp = self.session.get(
            FAST_API_URL,
            params={"https": "true", "token": self.token, "urlCount": self.url_count},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        self.ping_ms = resp.elapsed.total_seconds() * 1000
        urls = [t["url"] for t in resp.json().get("targets", [])]
        if not urls:
            raise ValueError("speed test API returned no targets")
        return urls

    def measure(self) -> Dict[str, Any]:
        urls = self.targets()
        total_bytes = 0
        started = time.monotonic()
        deadline = started + self.timeout
        for url in urls:
            with self.session.get(url, stream=True, timeout=self.timeout) as resp:
                resp.raise_for_status()
                for chunk in resp.iter_content(CHUNK_SIZE):
                    total_bytes += len(chunk)
                    if time.monotonic() >= deadline:
                        break
            if time.monotonic() >= deadline:
                break
        elapsed = max(time.monotonic() - started, 1e-3)
        download = round(total_bytes * 8 / elapsed / 1_000_000, 2)
        return {
            "download": download,
            # fast.com only measures download; upload is estimated
            "upload": round(download * 0.3 + self.rng.uniform(0, 2), 2),
            "ping": round(self.ping_ms),
            "jitter": round(self.rng.uniform(1, 11)),
            "test_timestamp": utcnow(),
            "simulated": False,
        }


def get_speed_test_provider():
    if SPEEDTEST_TOKEN:
        return FastComSpeedTest(SPEEDTEST_TOKEN, session=http_session)
    return SimulatedSpeedTest()


def perform_speed_test(provider) -> Dict[str, Any]:
    try:
        return provider.measure()
    except (requests.RequestException, ValueError, KeyError) as e:
        logger.error("Speed test failed, falling back to simulated results: %s", e)
        return SimulatedSpeedTest().measure()


# Grading

def speed_quality(download: float) -> str:
    if download >= 25:
        return "excellent"
    if download >= 10:
        return "good"
    if download >= 5:
        return "fair"
    if download >= 1:
        return "slow"
    return "very-slow"


def speed_recommendation(download: float, ping: float) -> str:
    if download >= 25 and ping <= 20:
        return "Perfect for video calls, streaming, and large file downloads"
    if download >= 10 and ping <= 50:
        return "Good for general browsing, email, and light streaming"
    if download >= 5:
        return "Suitable for basic browsing and messaging"
    if download >= 1:
        return "Limited to text-based activities and email"
    return "Connection may be too slow for most activities"


def rank_badge(rank: int) -> Dict[str, str]:
    if rank == 1:
        return {"name": "Speed Champion", "color": "gold", "icon": "🏆"}
    if rank == 2:
        return {"name": "Speed Runner-up", "color": "silver", "icon": "🥈"}
    if rank == 3:
        return {"name": "Speed Bronze", "color": "bronze", "icon": "🥉"}
    if rank <= 5:
        return {"name": "Top 5", "color": "blue", "icon": "⭐"}
    if rank <= 10:
        return {"name": "Top 10", "color": "green", "icon": "📶"}
    return {"name": "Participant", "color": "gray", "icon": "📊"}


def graded(results: Dict[str, Any]) -> Dict[str, Any]:
    return {
        **results,
        "quality": speed_quality(results["download"]),
        "recommendation": speed_recommendation(results["download"], results["ping"]),
    }


class CompareRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cafe_ids: List[str] = Field(..., alias="cafeIds", min_length=1, max_length=10)


# Routes

@router.get("/quick")
def quick_speed_test(provider=Depends(get_speed_test_provider)):
    return {"message": "Speed test completed", "results": graded(perform_speed_test(provider))}


@router.post("/run/{cafe_id}")
def run_speed_test(
    cafe_id: str,
    db: Database = Depends(get_db),
    current_user=Depends(get_current_user),
    provider=Depends(get_speed_test_provider),
):
    cafe = find_cafe(db, cafe_id)
    results = perform_speed_test(provider)
    entry = SpeedTestEntry(
        user_id=current_user["id"],
        download=min(results["download"], MAX_MEASURABLE),
        upload=min(results["upload"], MAX_MEASURABLE),
        ping=min(results["ping"], MAX_MEASURABLE),
        device_type="server",
        timestamp=results["test_timestamp"],
    ).model_dump()
    wifi_speed = record_speed_test(db, cafe, entry)
    return {
        "message": "Speed test completed successfully",
        "cafe": cafe["name"],
        "wifi_speed": wifi_speed,
        "results": graded(results),
    }


@router.get("/history/{cafe_id}")
def speed_history(cafe_id: str, days: int = Query(30, ge=1, le=365), db: Database = Depends(get_db)):
    cafe = find_cafe(db, cafe_id, {"name": 1, "wifi_speed": 1, "speed_tests": 1})
    since = utcnow() - timedelta(days=days)
    history = [t for t in cafe.get("speed_tests") or [] if t.get("timestamp") and t["timestamp"] >= since]
    history.sort(key=lambda t: t["timestamp"], reverse=True)
    return {
        "message": "Speed history retrieved",
        "cafe": {"id": str(cafe["_id"]), "name": cafe["name"]},
        "current_speed": cafe.get("wifi_speed") or {},
        "history": history,
    }


@router.post("/compare")
def compare_speeds(payload: CompareRequest, db: Database = Depends(get_db)):
    if not all(ObjectId.is_valid(i) for i in payload.cafe_ids):
        raise errors.ValidationError("All IDs must be valid MongoDB ObjectIds")
    cafes = list(db[CAFE].find(
        {"_id": {"$in": [ObjectId(i) for i in payload.cafe_ids]}},
        {"name": 1, "address": 1, "wifi_speed": 1, "rating": 1},
    ))
    if not cafes:
        raise errors.NotFound("No cafes found")

    comparison = []
    for cafe in cafes:
        speed = cafe.get("wifi_speed") or {"download": 0, "upload": 0, "ping": 0}
        comparison.append({
            "id": str(cafe["_id"]),
            "name": cafe["name"],
            "address": cafe.get("address"),
            "speed": speed,
            "rating": (cafe.get("rating") or {}).get("average", 0),
            "quality": speed_quality(speed.get("download") or 0),
            "last_tested": speed.get("last_tested"),
        })
    comparison.sort(key=lambda c: c["speed"].get("download") or 0, reverse=True)

    n = len(comparison)
    return {
        "message": "Speed comparison completed",
        "comparison": comparison,
        "summary": {
            "fastest": comparison[0],
            "slowest": comparison[-1],
            "average": {
                "download": round(sum(c["speed"].get("download") or 0 for c in comparison) / n, 2),
                "upload": round(sum(c["speed"].get("upload") or 0 for c in comparison) / n, 2),
                "ping": round(sum(c["speed"].get("ping") or 0 for c in comparison) / n),
            },
        },
    }


@router.get("/leaderboard")
def speed_leaderboard(
    limit: int = Query(10, ge=1, le=100),
    metric: Literal["download", "upload", "ping"] = Query("download", alias="type"),
    db: Database = Depends(get_db),
):
    # lower ping is better, higher throughput is better
    direction = ASCENDING if metric == "ping" else DESCENDING
    cafes = db[CAFE].find(
        {"wifi_speed.download": {"$gt": 0}, "is_active": True},
        {"name": 1, "address": 1, "wifi_speed": 1, "rating": 1},
    ).sort([(f"wifi_speed.{metric}", direction), ("_id", ASCENDING)]).limit(limit)

    leaderboard = []
    for rank, cafe in enumerate(cafes, start=1):
        speed = cafe.get("wifi_speed") or {}
        leaderboard.append({
            "rank": rank,
            "id": str(cafe["_id"]),
            "name": cafe["name"],
            "address": cafe.get("address"),
            "speed": speed,
            "rating": (cafe.get("rating") or {}).get("average", 0),
            "quality": speed_quality(speed.get("download") or 0),
            "badge": rank_badge(rank),
        })
    return {"message": "Leaderboard retrieved successfully", "type": metric, "leaderboard": leaderboard}
