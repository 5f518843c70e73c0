"""
Runtime settings for the Slowest Cafe WiFi API.

Values come from the environment (a local .env file is loaded first) and are
read once at import time.
"""
import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _split(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "slowest_cafe_wifi")

# Auth
SECRET_KEY = os.getenv("JWT_SECRET", "supersecretkey")
ALGORITHM = "HS256"
TOKEN_ISSUER = "slowest-cafe-wifi"
TOKEN_AUDIENCE = "cafe-users"
ACCESS_TOKEN_EXPIRE_DAYS = 7
REFRESH_TOKEN_EXPIRE_DAYS = 30
BCRYPT_ROUNDS = max(10, int(os.getenv("BCRYPT_ROUNDS", 12)))

# Admin shared secrets
ADMIN_KEYS = _split(os.getenv("ADMIN_KEYS", "admin123,super-admin-2024"))
if os.getenv("ADMIN_KEY"):
    ADMIN_KEYS.append(os.environ["ADMIN_KEY"])
SUPER_ADMIN_KEY = os.getenv("SUPER_ADMIN_KEY", "super-admin-2024")

# CORS
CORS_ORIGINS = _split(os.getenv("CORS_ORIGINS", ""))
for _name in ("CORS_ORIGIN1", "CORS_ORIGIN2"):
    if os.getenv(_name):
        CORS_ORIGINS.append(os.environ[_name])
if "http://localhost:5173" not in CORS_ORIGINS:
    CORS_ORIGINS.append("http://localhost:5173")

# Speed tests
SPEEDTEST_TOKEN = os.getenv("SPEEDTEST_TOKEN")
SPEEDTEST_TIMEOUT = float(os.getenv("SPEEDTEST_TIMEOUT", 10))
