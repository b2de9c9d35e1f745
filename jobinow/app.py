from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from jobinow.api.error_handling import register_exception_handlers
from jobinow.api.routes import router
from jobinow.api.schemas import Envelope, HealthResponse
from jobinow.config import Settings
from jobinow.logging import get_logger, set_correlation_id
from jobinow.storage.errors import PersistenceError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_expiry_task: asyncio.Task | None = None


async def _run_token_expiry_sweep(interval_seconds: int) -> None:
    """Background loop flagging tokens past their own expiry as expired."""
    from jobinow.service.runtime import get_runtime

    interval = max(interval_seconds, 30)
    try:
        while True:
            try:
                runtime = get_runtime()
                await asyncio.to_thread(runtime.sessions.expire_stale_tokens)
            except asyncio.CancelledError:
                raise
            except PersistenceError as exc:
                logger.warning(
                    "token_expiry_sweep_failed",
                    error=exc.message,
                    retryable=exc.retryable,
                )
            except Exception as exc:
                logger.error(
                    "token_expiry_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("token_expiry_sweep_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry sweep on startup; close store and cache on shutdown."""
    global _expiry_task
    from jobinow.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.token_sweep_interval_seconds > 0:
        _expiry_task = asyncio.create_task(
            _run_token_expiry_sweep(runtime.settings.token_sweep_interval_seconds)
        )

    yield

    if _expiry_task:
        _expiry_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _expiry_task
        _expiry_task = None
    await get_runtime().close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Jobinow Sessions", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:4200",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:4200",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    A client-supplied X-Request-ID is reused, otherwise a UUID is generated.
    The id is bound for structured logging and echoed in the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=Envelope)
async def health():
    """Report store and cache reachability plus the build id."""
    from jobinow.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    if runtime.cache is not None:
        cache_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        cache_status = "healthy" if cache_ok else "unhealthy"
    else:
        cache_ok = True
        cache_status = "not_configured"

    healthy = store_ok and cache_ok
    return Envelope(
        status="ok",
        data=HealthResponse(
            status="healthy" if healthy else "unhealthy",
            store="healthy" if store_ok else "unhealthy",
            cache=cache_status,
            build_sha=__build__,
        ),
    )


def create_app() -> FastAPI:
    return app
