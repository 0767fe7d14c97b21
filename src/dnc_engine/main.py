"""
FastAPI application entry point.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

import redis.asyncio as redis
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dnc_engine.config import Settings, get_settings
from dnc_engine.dnc.audit import AuditLog
from dnc_engine.dnc.filters import build_membership_filter
from dnc_engine.dnc.gate import CallBlockingGate
from dnc_engine.dnc.lifecycle import LoggingLeadLifecycle
from dnc_engine.dnc.llm import HttpLLMGateway
from dnc_engine.dnc.optout import OptOutDetector, TranscriptOptOutHandler
from dnc_engine.dnc.router import router as dnc_router
from dnc_engine.dnc.service import ComplianceService
from dnc_engine.dnc.store import ComplianceStore
from dnc_engine.shared.cache import DecisionCache, NullDecisionCache, RedisDecisionCache
from dnc_engine.shared.database import DatabaseManager
from dnc_engine.shared.exceptions import AppError, RateLimitExceededError
from dnc_engine.shared.logging import correlation_id_var, get_logger, setup_logging
from dnc_engine.shared.ratelimit import InMemoryRateLimitBackend, RateLimiter, RedisRateLimitBackend

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def build_components(
    app: FastAPI,
    settings: Settings,
    db: DatabaseManager,
    redis_client: redis.Redis | None = None,
) -> None:
    """Construct the engine components and attach them to ``app.state``."""
    store = ComplianceStore(
        db,
        scrub_max_batch=settings.dnc_scrub_max_batch,
        scrub_chunk_size=settings.dnc_scrub_chunk_size,
    )
    audit_log = AuditLog(db)
    membership_filter = build_membership_filter(settings, redis_client)

    decision_cache: DecisionCache = NullDecisionCache()
    if settings.dnc_decision_cache_enabled and redis_client is not None:
        decision_cache = RedisDecisionCache(redis_client)

    service = ComplianceService(
        store,
        membership_filter,
        audit_log,
        decision_cache,
        LoggingLeadLifecycle(),
        decision_cache_ttl_seconds=settings.dnc_decision_cache_ttl_seconds,
        sync_rebuild_threshold=settings.dnc_filter_sync_rebuild_threshold,
        rebuild_delay_seconds=settings.dnc_filter_rebuild_delay_seconds,
        rebuild_replay_margin_seconds=settings.dnc_filter_rebuild_replay_margin_seconds,
    )
    gate = CallBlockingGate(
        service,
        audit_log,
        audit_allowed_checks=settings.dnc_audit_allowed_checks,
        min_justification_length=settings.dnc_override_min_justification_length,
    )
    detector = OptOutDetector(HttpLLMGateway.from_settings(settings))

    if settings.dnc_rate_limit_backend == "redis" and redis_client is not None:
        rate_backend = RedisRateLimitBackend(redis_client)
    else:
        rate_backend = InMemoryRateLimitBackend()

    app.state.db = db
    app.state.compliance_store = store
    app.state.audit_log = audit_log
    app.state.membership_filter = membership_filter
    app.state.compliance_service = service
    app.state.call_gate = gate
    app.state.optout_detector = detector
    app.state.optout_handler = TranscriptOptOutHandler(
        detector, service, min_confidence=settings.dnc_optout_min_confidence
    )
    app.state.rate_limiter = RateLimiter(rate_backend, settings.dnc_rate_limit_window_seconds)


def _needs_redis(settings: Settings) -> bool:
    return (
        settings.dnc_filter_location == "redis"
        or settings.dnc_decision_cache_enabled
        or settings.dnc_rate_limit_backend == "redis"
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info(
        "Application starting",
        extra={
            "env": settings.app_env,
            "filter_backend": settings.dnc_filter_backend,
            "filter_location": settings.dnc_filter_location,
        },
    )

    db = DatabaseManager(settings.database_url, echo=settings.debug)
    redis_client = redis.from_url(settings.redis_url) if _needs_redis(settings) else None

    if settings.database_auto_create:
        await db.create_all()

    build_components(app, settings, db, redis_client)
    service: ComplianceService = app.state.compliance_service

    try:
        await service.rebuild_filter()
    except AppError:
        logger.exception("Initial filter build failed; checks use the store until the next rebuild")

    rebuild_task: asyncio.Task[None] | None = None
    if settings.dnc_filter_rebuild_interval_seconds > 0:
        rebuild_task = asyncio.create_task(
            service.run_periodic_rebuild(settings.dnc_filter_rebuild_interval_seconds)
        )
        app.state.rebuild_task = rebuild_task
        logger.info("Periodic filter rebuild enabled; background task created")

    yield

    logger.info("Shutting down application")

    if rebuild_task is not None:
        rebuild_task.cancel()
        try:
            await rebuild_task
        except asyncio.CancelledError:
            pass
        logger.info("Periodic filter rebuild stopped")

    await service.close()
    if redis_client is not None:
        await redis_client.aclose()
    await db.close()
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="DNC Compliance Engine API",
        description="Do-Not-Call list management and call-time compliance checks",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(AppError)
    async def _app_error(_: Request, exc: AppError) -> JSONResponse:
        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.to_payload()},
            headers=headers,
        )

    # Request validation (FastAPI/Pydantic) -> 400 with the field errors
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    @app.middleware("http")
    async def bind_request_id(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        token = correlation_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(dnc_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
