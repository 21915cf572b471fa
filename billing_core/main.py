"""
FastAPI application for the billing core.

Provides REST API for:
- Plans, subscriptions and hosted checkout
- Payment and invoice history
- Plan-violation checks
- Provider webhooks (Stripe, Flutterwave)
- Dunning administration
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from billing_core.config import get_settings
from billing_core.errors import BillingError, ErrorKind
from billing_core.observability.logging import configure_logging, get_logger
from billing_core.observability.metrics import generate_metrics
from billing_core.observability.middleware import StructuredLoggingMiddleware
from billing_core.routers import billing_router
from billing_core.services.billing_service import BillingService, get_billing_service
from billing_core.storage.seed import seed_plans

settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)

# HTTP status per error kind
ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.CONFIGURATION: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.PRECONDITION: status.HTTP_412_PRECONDITION_FAILED,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.UPSTREAM: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown:
    - Validate configuration
    - Initialize the billing database and seed default plans
    - Build the provider registry and billing service
    - Drop expired webhook idempotency records
    """
    settings = get_settings()

    logger.info("=== Billing Service Starting ===")

    service = None
    try:
        settings.validate_configuration()

        service = await get_billing_service()
        logger.info("✓ Billing database initialized", path=settings.database.path)

        created = await seed_plans(service.db)
        logger.info("✓ Plans seeded", created=created)

        logger.info(
            "✓ Payment providers ready",
            providers=[p.value for p in service.registry.configured()],
        )

        removed = await service.webhooks.cleanup_ledger()
        logger.info("✓ Webhook ledger cleaned", removed=removed)

        logger.info("=== Service Ready ===")

        yield  # Application runs here

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")

        if service is not None:
            for provider_type in service.registry.configured():
                service.registry.resolve(provider_type).close()
            service.db.close()
            logger.info("✓ Database connection closed")

        logger.info("=== Shutdown complete ===")


# Create FastAPI app
app = FastAPI(
    title="Billing Core API",
    description="Provider-agnostic subscription billing (Stripe, Flutterwave)",
    version=settings.logging.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(StructuredLoggingMiddleware)

# Include routers
app.include_router(billing_router)


# Exception handler for billing errors
@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Map BillingError kinds to HTTP statuses."""
    status_code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)

    if status_code >= 500:
        logger.error(
            "Billing error",
            path=request.url.path,
            method=request.method,
            kind=exc.kind.value,
            error=exc.message,
        )
    else:
        logger.warning(
            "Billing request rejected",
            path=request.url.path,
            method=request.method,
            kind=exc.kind.value,
            error=exc.message,
        )

    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "kind": exc.kind.value},
    )


@app.get("/health", tags=["Health"])
async def health_check(service: BillingService = Depends(get_billing_service)):
    """Liveness and configured payment providers."""
    return {
        "status": "healthy",
        "service": settings.logging.service_name,
        "providers": [p.value for p in service.registry.configured()],
    }


@app.get("/metrics", tags=["Monitoring"])
async def metrics():
    """Prometheus metrics endpoint."""
    body, content_type = generate_metrics()
    return Response(content=body, media_type=content_type)


@app.get("/", tags=["Root"])
async def root():
    return {
        "service": "Billing Core",
        "version": settings.logging.service_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "billing_core.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
    )
