import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import cafes
import speedtest
import users
from auth import check_admin_key, client_ip, issue_token, require_admin
from config import CORS_ORIGINS, ENV, LOG_LEVEL, PORT
from database import get_db, ensure_indexes
from ratelimit import RateLimiter, get_rate_limiter

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(get_db())
    yield


# App and CORS
app = FastAPI(title="Slowest Cafe WiFi API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"],
    allow_headers=["*"],
)

app.include_router(cafes.router, prefix="/api", tags=["Cafes"])
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(speedtest.router, prefix="/api/speedtest", tags=["Speed Tests"])


# Error handlers
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    body = {"error": exc.detail}
    code = getattr(exc, "code", None)
    if code:
        body["code"] = code
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        body["retry_after"] = retry_after
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "header")]
        details.append({"field": ".".join(loc) or None, "message": err.get("msg", "Invalid value")})
    message = details[0]["message"] if len(details) == 1 else "Validation failed"
    return JSONResponse(status_code=400, content={"error": message, "code": "VALIDATION_ERROR", "errors": details})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={"error": "Duplicate entry", "code": "DUPLICATE_ENTRY"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = {"error": "Internal server error"}
    if ENV == "development":
        body["detail"] = str(exc)
    return JSONResponse(status_code=500, content=body)


# Admin Routes
class AdminVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    admin_key: Optional[str] = Field(None, alias="adminKey")


@app.post("/api/admin/verify", tags=["Admin"])
def admin_verify(
    payload: AdminVerifyRequest,
    request: Request,
    x_admin_key: Optional[str] = Header(None),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    ip = client_ip(request)
    level = check_admin_key(payload.admin_key or x_admin_key, ip, limiter)
    limiter.reset(f"admin:{ip}")
    token = issue_token("admin", "admin", {"level": level})
    return {"message": "Admin access granted", "is_admin": True, "level": level, "token": token}


@app.get("/api/admin/dashboard", tags=["Admin"])
def admin_dashboard(db: Database = Depends(get_db), admin=Depends(require_admin)):
    ratings = list(db[cafes.CAFE].aggregate([
        {"$group": {"_id": None, "total": {"$sum": "$rating.count"}}},
    ]))
    return {
        "level": admin["level"],
        "total_users": db[users.USER].count_documents({}),
        "active_users": db[users.USER].count_documents({"is_active": True}),
        "total_ratings": ratings[0]["total"] if ratings else 0,
        "analytics": cafes.cafe_analytics(db),
    }


# Utility endpoints
@app.get("/")
def root():
    return {"message": "Backend is running..."}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["database_name"] = db.name
        response["collections"] = db.list_collection_names()[:10]
        response["connection_status"] = "Connected"
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
