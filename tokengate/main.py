from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pythonjsonlogger import jsonlogger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .api import routes_tokens, routes_v1
from .auth.routes_auth import router as auth_router
from .auth.seed import seed_admin
from .auth.vault import CredentialStore
from .config import Settings, settings as default_settings
from .database import Base, engine
from .errors import ApiError
from .rate_limit import ip_limiter
from .responses import api_error_handler, validation_error_handler
from .services import build_services
from . import models as _models  # noqa: F401  register tables

# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------

_LOG_HANDLER_NAME = "tokengate"


def _configure_logging(settings: Settings) -> None:
    """Configure structured JSON logging when log_format=json (default)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    # create_app may run more than once per process (tests)
    if any(h.get_name() == _LOG_HANDLER_NAME for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_LOG_HANDLER_NAME)
    if settings.log_format == "json":
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                "%(asctime)s %(name)s %(levelname)s %(message)s",
                rename_fields={"asctime": "timestamp", "levelname": "level"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CredentialStore] = None,
) -> FastAPI:
    """
    Build an application with its own access-control state.

    ``settings`` drives the vault, limiters, lockout policy, JWT signing,
    seeding, log level and CORS of this app. Process-wide fields are read
    from the environment-loaded settings at import time and are not
    affected: ``database_url``, ``log_sql`` (one engine per process),
    ``login_ip_rate_limit`` (bound by the slowapi decorator on the login
    route) and ``log_format`` (the first app installs the log handler).
    """
    settings = settings or default_settings
    _configure_logging(settings)
    services = build_services(settings, store=store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=engine)
        seed_admin(settings)
        yield
        services.close()

    app = FastAPI(
        title="Tokengate",
        version="0.1.0",
        description=(
            "API access control: bearer token issuance and verification, "
            "per-token request throttling and login lockout."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.services = services

    # Per-IP limits (slowapi)
    app.state.limiter = ip_limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    app.include_router(auth_router)
    app.include_router(routes_tokens.router)
    app.include_router(routes_v1.router)

    @app.get("/health", tags=["meta"])
    def health() -> dict:
        return {"status": "healthy"}

    return app


app = create_app()
