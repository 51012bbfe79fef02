"""
FastAPI application for the Git Gateway.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .db.base import init_database
from .envelope import failure, require_api_token
from .errors import GatewayError, ValidationError, classify_error
from .logging_config import configure_logging
from .middleware import InputValidatorMiddleware, ValidatorConfig
from .repositories.routes import router as repositories_router
from .transactions.routes import router as transactions_router
from .webhooks.routes import inbound_router as inbound_webhooks_router
from .webhooks.routes import router as webhook_events_router

# Initialize structured logging
logger = structlog.get_logger()

settings = get_settings()

SERVICE_NAME = "git-gateway"
VERSION = importlib.metadata.version("git-gateway")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging()
    logger.info("Starting Git Gateway", git_root=settings.git_root)

    try:
        await init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error("Failed to start application", error=str(e))
        raise

    yield

    logger.info("Git Gateway shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="HTTP gateway over bare Git repositories with webhook triggers",
    version=VERSION,
    lifespan=lifespan,
)

if settings.validator_enabled:
    app.add_middleware(InputValidatorMiddleware, config=ValidatorConfig.from_settings())

# Added last so CORS wraps the validator and rejections still carry CORS headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Error handling
# =============================================================================


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request failed",
            path=request.url.path,
            code=exc.code,
            error=exc.message,
            details=exc.details,
        )
    return JSONResponse(failure(exc), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    body = failure(ValidationError("request validation failed", details={"errors": errors}))
    body["code"] = 422
    return JSONResponse(body, status_code=422)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = classify_error(exc)
    logger.error(
        "unhandled error",
        path=request.url.path,
        error_type=exc.__class__.__name__,
        error=str(exc),
        exc_info=exc,
    )
    return JSONResponse(failure(error), status_code=error.status_code)


# =============================================================================
# Health
# =============================================================================


def health_payload() -> dict:
    return {"service": SERVICE_NAME, "status": "ok", "version": VERSION}


@app.get("/health", tags=["system"])
async def health() -> dict:
    """Liveness check; never requires a token."""
    return health_payload()


@app.get("/api/v1/health", tags=["system"])
async def api_health() -> dict:
    return health_payload()


# =============================================================================
# Routers
# =============================================================================

api_router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_token)])
api_router.include_router(repositories_router)
api_router.include_router(webhook_events_router)
api_router.include_router(transactions_router)
app.include_router(api_router)

# Inbound forge webhooks authenticate by signature instead of the bearer token
app.include_router(inbound_webhooks_router, prefix="/api/v1")
