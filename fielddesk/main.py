"""FastAPI application."""
import logging

import redis
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .database import get_db
from .problem_details import install_problem_handlers
from .routers import auth, codes, envelopes, evidence, technicians, tickets
from .transport import Transport, get_transport

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

_INSECURE_SECRET = "change-me-in-production"

# Production safety checks (fail closed on insecure config).
if settings.ENV.lower() == "production" and not settings.cors_origins:
    raise RuntimeError("ALLOWED_ORIGINS must be set in production (explicit frontend origin required).")
if settings.ENV.lower() == "production" and any(origin.strip() == "*" for origin in settings.cors_origins):
    raise RuntimeError("ALLOWED_ORIGINS must be explicit in production (no wildcard when using credentials).")
if settings.ENV.lower() == "production" and _INSECURE_SECRET in (settings.SECRET_KEY, settings.JWT_SECRET_KEY):
    raise RuntimeError("SECRET_KEY and JWT_SECRET_KEY must be changed in production.")

# Create app
app = FastAPI(
    title="FieldDesk Ticket Service",
    version="1.0.0",
    description="Field-service tickets, technician assignment and outbound messaging"
)

install_problem_handlers(app)

# CORS
cors_headers = ["Authorization", "Content-Type"]
if settings.ENV.lower() != "production":
    cors_headers = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=cors_headers,
)

# Include routers
app.include_router(tickets.router, prefix="/api/v1")
app.include_router(technicians.router, prefix="/api/v1")
app.include_router(envelopes.router, prefix="/api/v1")
app.include_router(codes.router, prefix="/api/v1")
app.include_router(auth.router, prefix="/api/v1")
app.include_router(evidence.router, prefix="/api/v1")


_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, socket_timeout=2)
    return _redis_client


@app.get("/api/v1/system/health")
def health_check(db: Session = Depends(get_db), transport: Transport = Depends(get_transport)):
    """Health check endpoint. Degraded dependencies are reported, not raised."""
    database = "ok"
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unavailable")
        database = "unavailable"

    redis_status = "ok"
    try:
        _get_redis().ping()
    except RedisError:
        logger.warning("Health check: redis unavailable", exc_info=True)
        redis_status = "unavailable"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "version": "1.0.0",
        "database": database,
        "redis": redis_status,
        "transport": "connected" if transport.is_connected() else "disconnected",
    }


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": "FieldDesk Ticket Service API",
        "version": "1.0.0",
        "docs": "/docs"
    }
