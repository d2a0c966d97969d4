from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from payledger import db
from payledger.config import AppInfo, Settings, get_settings
from payledger.core.logging import get_logger, setup_logging
from payledger.core.runtime_state import set_scheduler_active
import payledger.models  # registers the tables
from payledger.routers import get_api_router
from payledger.services.cache import CacheService, CacheTTLs, create_redis_client
from payledger.services.gateway import RazorpayGateway
from payledger.services.ledger import PaymentLedgerService
from payledger.services.reconciliation import run_reconciliation_once
from payledger.services.scheduler_lock import (
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from payledger.utils.errors import GENERIC_ERROR_MESSAGE, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _current_settings() -> Settings:
    return get_settings()


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    """Configure optional observability using a fresh snapshot of the settings."""

    runtime_settings = _current_settings()
    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="payledger")
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_gateway_secrets(settings: Settings) -> None:
    """Fail fast when gateway or webhook secrets are missing outside dev."""

    missing = []
    if not (settings.razorpay_key_id and settings.razorpay_key_secret):
        missing.append("RAZORPAY_KEY_ID/RAZORPAY_KEY_SECRET")
    if not (settings.razorpay_webhook_secret or settings.razorpay_webhook_secret_next):
        missing.append("RAZORPAY_WEBHOOK_SECRET")
    if not missing:
        return

    env_lower = settings.app_env.lower()
    if env_lower not in ALLOWED_CREATE_ENV:
        logger.error(
            "Gateway secrets are missing; configure them before startup.",
            extra={"env": settings.app_env, "missing": missing},
        )
        raise RuntimeError("Missing gateway secrets in non-dev environment.")
    logger.warning(
        "Gateway secrets are not configured; allowed in dev only.",
        extra={"env": settings.app_env, "missing": missing},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(_current_settings().LOG_LEVEL)
    settings = _current_settings()
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_gateway_secrets(settings)

    db.init_engine()
    env_lower = settings.app_env.lower()
    if settings.ALLOW_DB_CREATE_ALL and env_lower in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    redis_client = create_redis_client(settings)
    cache = CacheService(redis_client, CacheTTLs.from_settings(settings))
    if not cache.ping():
        logger.warning("Redis unreachable at startup; running without cache.", extra={"env": settings.app_env})
    ledger = PaymentLedgerService(cache=cache, gateway=RazorpayGateway(settings), settings=settings)
    app.state.cache = cache
    app.state.ledger = ledger

    # Enable SCHEDULER_ENABLED on one runner only; the DB lock guards against overlap.
    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock()
        if lock_acquired:
            global scheduler
            scheduler = AsyncIOScheduler()
            scheduler.start()
            scheduler.add_job(
                run_reconciliation_once,
                "interval",
                args=[ledger],
                minutes=settings.RECONCILIATION_INTERVAL_MINUTES,
                id="reconcile-payments",
                replace_existing=True,
                max_instances=1,
            )
            scheduler.add_job(
                refresh_scheduler_lock,
                "interval",
                seconds=60,
                id="scheduler-lock-heartbeat",
                replace_existing=True,
            )
            set_scheduler_active(True)
        else:
            logger.warning(
                "Scheduler disabled because lock is already held by another instance.",
                extra={"env": settings.app_env},
            )
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        cache.close()
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", GENERIC_ERROR_MESSAGE)
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    content = error_response(
        "VALIDATION_ERROR", "Request validation failed.", {"errors": jsonable_errors(exc)}
    )
    return JSONResponse(status_code=422, content=content)


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


__all__ = ["app"]
