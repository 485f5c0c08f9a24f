"""
Main FastAPI application.

WHY: This is the entry point for the subscription engine. It wires the
service container, exception handlers, routers and the background job
scheduler.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from subscription_engine.api import entitlements, notifications, plans, scheduler, subscriptions, webhooks
from subscription_engine.core.config import Settings, settings as default_settings
from subscription_engine.core.deps import ServiceContainer
from subscription_engine.core.exception_handlers import register_exception_handlers
from subscription_engine.db.session import build_engine, build_session_factory, init_models, session_scope
from subscription_engine.services.billing_provider import BillingProvider, get_billing_provider
from subscription_engine.services.event_bus import EventBus
from subscription_engine.services.plan_catalog import seed_default_plans

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker] = None,
    provider: Optional[BillingProvider] = None,
    event_bus: Optional[EventBus] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    WHY: Factory pattern lets tests run the whole API against a SQLite
    session factory, the no-op billing provider and a recording event bus.

    Args:
        settings: Configuration (defaults to the environment)
        session_factory: Session factory (defaults to one for DATABASE_URL)
        provider: Billing provider (defaults to BILLING_PROVIDER)
        event_bus: Event bus (defaults to an in-process bus)

    Returns:
        Configured FastAPI application instance

    Raises:
        ValidationError: If BILLING_PROVIDER is unknown or lacks credentials
    """
    config = settings or default_settings

    engine: Optional[AsyncEngine] = None
    if session_factory is None:
        engine = build_engine(config)
        session_factory = build_session_factory(engine)

    container = ServiceContainer(
        config=config,
        session_factory=session_factory,
        provider=provider or get_billing_provider(config),
        event_bus=event_bus or EventBus(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.AUTO_CREATE_SCHEMA and engine is not None:
            await init_models(engine)
            async with session_scope(session_factory) as session:
                await seed_default_plans(session)

        # WHY: Jobs only run in one process. Replicas set SCHEDULER_ENABLED=false.
        if config.SCHEDULER_ENABLED:
            container.scheduler.start()
        logger.info(f"{config.PROJECT_NAME} started (billing provider: {config.BILLING_PROVIDER})")
        try:
            yield
        finally:
            container.scheduler.shutdown()
            if engine is not None:
                await engine.dispose()

    app = FastAPI(
        title=config.PROJECT_NAME,
        description="Subscription lifecycle and entitlement engine",
        version=config.VERSION,
        docs_url=f"{config.API_V1_PREFIX}/docs",
        redoc_url=f"{config.API_V1_PREFIX}/redoc",
        openapi_url=f"{config.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container

    # Register exception handlers
    # WHY: Exception handlers ensure consistent error responses across the API
    # and prevent sensitive data leaks in error messages (OWASP A04)
    register_exception_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check endpoint
    # WHY: Load balancers and monitoring tools need a simple endpoint
    # to verify the service is running.
    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        return {
            "status": "healthy",
            "version": config.VERSION,
            "billing_provider": config.BILLING_PROVIDER,
            "scheduler": {"running": container.scheduler.running},
        }

    for module in (subscriptions, entitlements, plans, notifications, webhooks, scheduler):
        app.include_router(module.router, prefix=config.API_V1_PREFIX)

    return app


# Create app instance
# WHY: Creating the app instance here allows it to be imported by uvicorn.
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "subscription_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.DEBUG,
        log_level="info" if default_settings.DEBUG else "warning",
    )
