"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response

from paysub.core.config import settings
from paysub.core.container import ServiceContainer, get_container, set_container
from paysub.core.exceptions import register_exception_handlers
from paysub.core.logging import setup_logging
from paysub.core.metrics import get_content_type, get_metrics, set_app_info
from paysub.core.middleware import CorrelationIdMiddleware
from paysub.modules.notification.router import router as notification_router
from paysub.modules.payment.router import router as payment_router
from paysub.modules.subscription.router import router as subscription_router
from paysub.modules.webhook.router import router as webhook_router


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the API.

    Args:
        container: Pre-built services (tests). When omitted the process-wide
            container is built from settings and closed on shutdown.
    """
    owns_container = container is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.container = container or get_container()
        try:
            yield
        finally:
            if owns_container:
                await app.state.container.aclose()
                set_container(None)

    setup_logging(
        level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
        include_stack_trace=True,
    )
    set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Subscription billing and payment reconciliation for Peach Payments.",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    app.add_middleware(CorrelationIdMiddleware)
    register_exception_handlers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Liveness probe; does not touch the gateway."""
        return {"status": "healthy"}

    @app.get("/health/gateway", tags=["health"])
    async def gateway_health(request: Request, response: Response) -> dict[str, str]:
        """Readiness probe; authenticates against the gateway."""
        if await request.app.state.container.gateway.health_check():
            return {"status": "healthy", "gateway": "reachable"}
        response.status_code = 503
        return {"status": "degraded", "gateway": "unreachable"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=get_metrics(), media_type=get_content_type())

    app.include_router(webhook_router, prefix=settings.API_V1_PREFIX)
    app.include_router(payment_router, prefix=settings.API_V1_PREFIX)
    app.include_router(subscription_router, prefix=settings.API_V1_PREFIX)
    app.include_router(notification_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
