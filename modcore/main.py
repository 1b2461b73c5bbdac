"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from modcore.cache import build_cache, build_rbac_cache
from modcore.core.config import settings
from modcore.core.exceptions import (
    AuthorizationError,
    ModcoreError,
    ResourceNotFoundError,
    ValidationError,
)
from modcore.core.middleware import setup_middleware
from modcore.core.rate_limiter import RateLimiter
from modcore.db.session import get_db
from modcore.schemas.schemas import HealthOut
from modcore.services.rbac_service import RBACService

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("modcore")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the cache, RBAC service and rate limiter; close them on shutdown."""
    logger.info("🚀 Starting %s", settings.APP_NAME)

    cache = build_cache(settings)
    if cache.ping():
        logger.info("✅ Cache tiers reachable")
    else:
        logger.warning("⚠️  One or more cache tiers not available")

    app.state.cache = cache
    app.state.rbac = RBACService(
        cache=build_rbac_cache(cache, settings),
        cache_ttl=settings.RBAC_CACHE_TTL,
    )
    app.state.rate_limiter = RateLimiter(
        max_requests=settings.RATE_LIMIT_REQUESTS,
        window=settings.RATE_LIMIT_WINDOW,
        sweep_interval=settings.RATE_LIMIT_SWEEP_INTERVAL,
    )

    yield

    logger.info("🔻 Shutting down %s", settings.APP_NAME)
    app.state.rate_limiter.close()
    try:
        cache.close()
    except ModcoreError as e:
        logger.warning("⚠️  Cache did not close cleanly: %s", e)


app = FastAPI(
    title="modcore API",
    description="RBAC permission resolution and multi-tier caching core",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Middleware
setup_middleware(app)


@app.exception_handler(ModcoreError)
async def modcore_exception_handler(request: Request, exc: ModcoreError):
    status_code = 400
    if isinstance(exc, ResourceNotFoundError):
        status_code = 404
    elif isinstance(exc, ValidationError):
        status_code = 422
    elif isinstance(exc, AuthorizationError):
        status_code = 403
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message},
    )


@app.get("/api/health", response_model=HealthOut)
def health(request: Request, db: Session = Depends(get_db)):
    """Report database and cache reachability."""
    database = "ok"
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Health check: database unavailable: %s", e)
        database = "unavailable"

    cache = getattr(request.app.state, "cache", None)
    cache_status = "ok" if cache is not None and cache.ping() else "unavailable"

    overall = "ok" if database == "ok" and cache_status == "ok" else "degraded"
    return HealthOut(status=overall, database=database, cache=cache_status)
