import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from freight_escrow.api.router import api_router
from freight_escrow.config import settings
from freight_escrow.core.observability import (
    escrow_error_handler,
    global_exception_handler,
    request_logging_middleware,
    request_validation_handler,
)
from freight_escrow.services.errors import EscrowError

api_prefix = (
    settings.api_prefix
    if settings.api_prefix.startswith("/")
    else f"/{settings.api_prefix}"
    if settings.api_prefix
    else ""
)

logger = logging.getLogger("freight_escrow")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.enable_docs else None,
    redoc_url="/redoc" if settings.enable_docs else None,
    openapi_url=(f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
    if settings.enable_docs
    else None,
)

# Expose logger for middleware without creating circular imports.
app.state.logger = logger

app.add_exception_handler(EscrowError, escrow_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Request-level logging + request correlation id.
app.middleware("http")(request_logging_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=api_prefix)


@app.on_event("startup")
def _log_runtime_config():
    logger.info(
        "runtime_config",
        extra={
            "environment": settings.environment,
            "currency": settings.currency,
            "auto_release_after_hours": settings.auto_release_after_hours,
            "stripe_configured": bool(settings.stripe_secret_key),
            "rate_limit_backend": "redis" if settings.rate_limit_redis_url else "memory",
        },
    )


@app.get("/", tags=["meta"])
def root():
    docs_path = (
        (f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
        if settings.enable_docs
        else None
    )
    return {"message": "Freight Escrow API", "docs": docs_path}
