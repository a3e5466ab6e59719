"""
playstake.api.main — FastAPI application entry point
======================================================

Run with::

    uvicorn playstake.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from playstake.api.deps import get_codec, get_config, get_engine  # noqa: E402
from playstake.api.rate_limit import configure_rate_limiter  # noqa: E402
from playstake.api.routes.admin import router as admin_router  # noqa: E402
from playstake.api.routes.admin import wallets_router as admin_wallets_router  # noqa: E402
from playstake.api.routes.challenges import router as challenges_router  # noqa: E402
from playstake.api.routes.wallet import router as wallet_router  # noqa: E402
from playstake.database.engine import init_db  # noqa: E402
from playstake.database.store import SqlDocumentStore  # noqa: E402
from playstake.engine.errors import RateLimitError, ValidationError, WagerError  # noqa: E402
from playstake.services.challenge_service import ChallengeService  # noqa: E402
from playstake.services.expiration_service import ExpirationScheduler  # noqa: E402
from playstake.services.notifications import StoreNotificationSink  # noqa: E402

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine, start the sweep."""
    engine = get_engine()
    init_db(engine)
    config = get_config()
    codec = get_codec()
    configure_rate_limiter(engine=engine, limits=config.rate_limits)

    scheduler: ExpirationScheduler | None = None
    if config.scheduler_enabled:
        store = SqlDocumentStore(engine)
        service = ChallengeService(store, codec, config, notifier=StoreNotificationSink(store))
        scheduler = ExpirationScheduler(service, config.sweep_interval_minutes * 60)
        scheduler.start()

    logger.info("PlayStake API started — engine ready (%s)", engine.url.database)
    yield
    if scheduler is not None:
        await scheduler.stop()
    logger.info("PlayStake API shutting down")


app = FastAPI(
    title="PlayStake Challenge API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WagerError)
async def wager_error_handler(request: Request, exc: WagerError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()}, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and query strings render like any other ValidationError."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:]) or None
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Malformed request."
    return await wager_error_handler(request, ValidationError(message, field=field))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": {"error": "internal_error", "message": "Internal server error."}},
    )


# Mount routers
app.include_router(challenges_router, prefix="/api")
app.include_router(wallet_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(admin_wallets_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
