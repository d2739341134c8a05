import logging
import sys
from contextlib import asynccontextmanager

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from ntpof_auth.api import auth, system
from ntpof_auth.api.transport import SESSION_CORS_HEADERS, SESSION_EXPOSED_HEADERS
from ntpof_auth.config import Settings, load_settings
from ntpof_auth.core.errors import AuthError
from ntpof_auth.core.rate_limit import limiter
from ntpof_auth.db.session import init_db
from ntpof_auth.services.http_client import close_http_client
from ntpof_auth.services.sweep import schedule_sweep
from ntpof_auth.state import build_services

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("ntpof_auth").setLevel(level.upper())


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, enable_hsts: bool = False):
        super().__init__(app)
        self.enable_hsts = enable_hsts

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        if self.enable_hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"message": exc.public_message})


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = app.state.services
    settings = services.settings
    await init_db(services.engine)

    scheduler = AsyncIOScheduler()
    schedule_sweep(scheduler, services.store, settings.session_sweep_interval_minutes)
    scheduler.start()
    logger.info(
        "%s auth service up: api=%s%s website=%s%s db=%s",
        settings.app_name,
        settings.api_domain,
        settings.api_base_path,
        settings.website_domain,
        settings.website_base_path,
        settings.masked_database_url,
    )
    yield
    scheduler.shutdown(wait=False)
    await close_http_client(services.http_client)
    await services.engine.dispose()


def create_app(settings: Settings | None = None, http_client: httpx.AsyncClient | None = None) -> FastAPI:
    """Build the application. Raises ConfigurationError when required settings are missing."""
    settings = settings or load_settings()
    services = build_services(settings, http_client=http_client)

    app = FastAPI(
        title=f"{settings.app_name} Auth API",
        description="Session management and third-party sign-in",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.enable_hsts)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.website_domain],
        allow_credentials=True,
        allow_methods=["GET", "PUT", "POST", "DELETE"],
        allow_headers=["content-type", *SESSION_CORS_HEADERS],
        expose_headers=SESSION_EXPOSED_HEADERS,
    )
    app.include_router(auth.router, prefix=settings.api_base_path)
    app.include_router(system.router)

    app.mount("/metrics", make_asgi_app())
    return app
