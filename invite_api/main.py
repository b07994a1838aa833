"""FastAPI application entry point for the invite code service.

This module configures and initializes the FastAPI application with middleware,
lifecycle management, error rendering and route registration.

Application Lifecycle Diagram
===========================
::
    ┌─────────────┐
    │  uvicorn    │
    │  startup    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ create_app()│
    │ CORS, errors│
    │ routes      │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ lifespan()  │
    │ startup:    │
    │ init_db()   │
    │ ServiceMgr  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Serve HTTP  │
    │ requests    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ lifespan()  │
    │ shutdown:   │
    │ cleanup()   │
    │ close_db()  │
    └─────────────┘

How to Use
===========
**Step 1 — Run with uvicorn**::
    SYSTEM_SALT=... uvicorn invite_api.main:app --host 0.0.0.0 --port 8000

**Step 2 — Make API calls**::
    curl -X POST http://localhost:8000/api/invite/create \
         -H "Content-Type: application/json" \
         -d '{"referrer_email": "admin@example.com", "max_uses": 5}'

    curl -X POST http://localhost:8000/api/invite/use \
         -H "Content-Type: application/json" \
         -d '{"code": "K7QX-2N5R", "email": "user@example.com"}'

Key Behaviours
===============
- Database tables are created automatically on startup.
- The ServiceManager is created in the lifespan and stored on app.state.
- Every InviteError becomes an ApiEnvelope with the error's HTTP status;
  contended and rate-limited responses carry Retry-After.
- Request validation errors are also returned as an ApiEnvelope (422).
- Any other exception is logged and returned as a 500 ApiEnvelope.
- X-RateLimit-* headers survive on error responses.
- Prometheus metrics are exposed at /metrics.
"""

__all__ = ["app", "create_app"]

import logging
import math
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from invite_api.config import get_settings
from invite_api.database import close_db, init_db
from invite_api.dependencies import ServiceManager
from invite_api.exceptions import InviteContendedError, InviteError, RateLimitedError
from invite_api.routes import router
from invite_api.schemas import ApiEnvelope

logger = logging.getLogger("inviteapi")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    manager = ServiceManager(get_settings())
    await manager.initialize()
    app.state.service_manager = manager
    yield
    # Shutdown
    await manager.cleanup()
    await close_db()


async def invite_error_handler(request: Request, exc: InviteError) -> JSONResponse:
    headers: dict[str, str] = dict(getattr(request.state, "rate_limit_headers", {}))
    if isinstance(exc, InviteContendedError):
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_ms / 1000)))
    elif isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)

    envelope = ApiEnvelope(failed=True, code=exc.status_code, message=exc.message, data={"error": exc.kind})
    return JSONResponse(status_code=exc.status_code, content=envelope.model_dump(mode="json"), headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    envelope = ApiEnvelope(failed=True, code=500, message="Internal server error", data={"error": "error"})
    return JSONResponse(status_code=500, content=envelope.model_dump(mode="json"))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]
    envelope = ApiEnvelope(
        failed=True,
        code=422,
        message=", ".join(error["msg"] for error in errors),
        data={"errors": errors},
    )
    return JSONResponse(status_code=422, content=envelope.model_dump(mode="json"))


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description="Issue and redeem checksummed invite codes",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(InviteError, invite_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=False,
        should_respect_env_var=False,
    ).instrument(app).expose(app)

    app.include_router(router)
    return app


app = create_app()
