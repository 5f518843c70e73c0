from __future__ import annotations

import os
import uuid

os.environ.setdefault("BCRYPT_ROUNDS", "10")

import mongomock  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from database import get_db, utcnow  # noqa: E402
from main import app  # noqa: E402
from ratelimit import MemoryRateLimitStore, RateLimiter, get_rate_limiter  # noqa: E402
from speedtest import get_speed_test_provider  # noqa: E402

PASSWORD = "Abcdef12"


class FixedSpeedTest:
	"""Deterministic provider: always a slow connection."""

	def measure(self):
		return {
			"download": 3.5,
			"upload": 1.25,
			"ping": 42,
			"jitter": 4,
			"test_timestamp": utcnow(),
			"simulated": True,
		}


@pytest.fixture
def db():
	return mongomock.MongoClient()[f"cafe_wifi_{uuid.uuid4().hex[:8]}"]


@pytest.fixture
def limiter() -> RateLimiter:
	return RateLimiter(MemoryRateLimitStore())


@pytest.fixture
def client(db, limiter):
	app.dependency_overrides[get_db] = lambda: db
	app.dependency_overrides[get_rate_limiter] = lambda: limiter
	app.dependency_overrides[get_speed_test_provider] = lambda: FixedSpeedTest()
	yield TestClient(app)
	app.dependency_overrides.clear()


@pytest.fixture
def signup(client):
	def _signup(email: str = "a@b.com", password: str = PASSWORD) -> dict:
		resp = client.post("/api/users/signup", json={"email": email, "password": password})
		assert resp.status_code == 201, resp.text
		return resp.json()
	return _signup


@pytest.fixture
def user(signup) -> dict:
	return signup()


@pytest.fixture
def auth_headers(user) -> dict:
	return {"Authorization": f"Bearer {user['token']}"}


@pytest.fixture
def admin_headers() -> dict:
	return {"X-Admin-Key": "admin123"}


@pytest.fixture
def make_cafe(client, auth_headers):
	counter = {"n": 0}

	def _make(name: str | None = None, address: str | None = None, headers: dict | None = None, **extra) -> dict:
		counter["n"] += 1
		payload = {
			"name": name or f"Cafe Number {counter['n']}",
			"address": address or f"{counter['n']} Long Enough Street, Springfield",
			"contact": "1234567890",
			**extra,
		}
		resp = client.post("/api/cafes", json=payload, headers=headers or auth_headers)
		assert resp.status_code == 201, resp.text
		return resp.json()
	return _make
