"""
Counselbot API

FastAPI application entry point: webhook for the messaging channel,
administrative scheduling endpoints and the reminder sweeper.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from counselbot import __version__
from counselbot.api.routes import appointments, availability, health, payments, webhook
from counselbot.config import settings
from counselbot.core.dialogue.session import get_session_repository
from counselbot.core.scheduling import (
    ConflictError,
    ExhaustionError,
    NotFoundError,
    ReminderSweeper,
    ValidationError,
    get_reminder_scheduler,
)
from counselbot.infra.database import close_db, init_db
from counselbot.infra.messaging import get_telegram_client
from counselbot.infra.payments import get_payment_client
from counselbot.infra.redis import close_redis, get_redis


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")

    health.set_start_time()

    # Initialize database (only in development - use migrations in production)
    if settings.is_development:
        try:
            await init_db()
            logger.info("Database tables initialized")
        except Exception as e:
            logger.warning(f"Database init skipped: {e}")

    if settings.session_backend == "redis":
        if await get_redis() is None:
            logger.warning("Redis unavailable - dialogue sessions fall back to memory")

    sweeper = None
    if settings.reminder_sweep_enabled:
        sweeper = ReminderSweeper(
            get_reminder_scheduler(),
            sessions=await get_session_repository(),
        )
        await sweeper.start()

    logger.info(f"Application ready at http://{settings.host}:{settings.port}")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    if sweeper is not None:
        await sweeper.stop()

    await get_telegram_client().close()
    await get_payment_client().close()

    await close_redis()

    await close_db()
    logger.info("Database connections closed")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Counselbot API",
    description="""
    Conversational booking of counseling sessions.

    ## Features
    - 💬 Guided booking, support, mentorship, book-order and review dialogues over Telegram
    - 📅 Conflict-free provider calendars (working hours, absence days, slots)
    - ⏰ Day-before and hour-before reminders, delivered once
    - 💳 Payment confirmation callbacks
    """,
    version=__version__,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, error: str, reason: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": reason},
    )


@app.exception_handler(ValidationError)
async def scheduling_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Outside working hours, bad status and similar."""
    return _error(status.HTTP_400_BAD_REQUEST, "Validation error", exc.reason)


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, "Conflict", exc.reason)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, "Not found", exc.reason)


@app.exception_handler(ExhaustionError)
async def exhaustion_handler(request: Request, exc: ExhaustionError) -> JSONResponse:
    """The appointment code space is full. Needs an operator."""
    logger.critical(f"{request.method} {request.url.path} failed: {exc.reason}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", exc.reason)


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # ctx may hold exception instances
    return [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "detail": jsonable_errors(exc),
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    detail = str(exc) if settings.is_development else "Internal server error"

    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", detail)


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    """Log request duration in debug mode."""
    start_time = time.time()
    try:
        return await call_next(request)
    finally:
        if settings.debug:
            duration = time.time() - start_time
            logger.debug(
                f"{request.method} {request.url.path} "
                f"completed in {duration:.3f}s"
            )


app.include_router(health.router)
app.include_router(appointments.router)
app.include_router(availability.router)
app.include_router(payments.router)
app.include_router(webhook.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    """
    Root endpoint.

    Returns basic API information.
    """
    return {
        "name": settings.app_name,
        "version": __version__,
        "status": "running",
        "environment": settings.app_env,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "counselbot.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
