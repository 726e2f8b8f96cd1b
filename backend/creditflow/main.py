"""FastAPI application entry point."""

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from creditflow.core.config import settings
from creditflow.core.logging import setup_logging
from creditflow.core.metrics import get_content_type, get_metrics, set_app_info
from creditflow.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from creditflow.core.tracing import setup_tracing
from creditflow.modules.billing import router as billing_router
from creditflow.modules.integration import router as integration_router

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Credit metering and subscription billing

* **Plans** - catalogue with monthly credit grants and feature limits
* **Subscriptions** - lifecycle, renewal and Stripe synchronisation
* **Credits** - append-only ledger with atomic allocation and deduction
* **Usage** - metered actions charged against the ledger
* **Integrations** - external data sources billed per query
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    openapi_tags=[
        {"name": "health", "description": "Health and metrics endpoints"},
        {"name": "billing", "description": "Plans, subscriptions, credits and usage"},
        {"name": "integrations", "description": "Data source integrations and saved queries"},
    ],
)

setup_logging(
    level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
    json_format=True,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
    enable_console_export=settings.DEBUG,
)

set_app_info(
    version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware, log_request_body=False)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
app.include_router(integration_router, prefix=settings.API_V1_PREFIX)
