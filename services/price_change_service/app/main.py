from contextlib import asynccontextmanager

from fastapi import FastAPI

from services.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    close_redis_connections,
    configure_logging,
    create_schema,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
    resolve_redis,
)
from services.common.kafka import KafkaProducerStub

from .access import SessionStore
from .api.audit import router as audit_router
from .api.health import router as health_router
from .api.price_changes import router as price_changes_router
from .connectors import ConnectorFactory
from .errors import PriceChangeError, price_change_error_handler
from .events import PriceChangeEventPublisher
from .models import Base

SERVICE_NAME = "Price Change Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./price_change_service.db"


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create the Price Change Service FastAPI application."""

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)

    redis_client = resolve_redis(resolved_settings)
    session_store = SessionStore(redis_client, ttl_seconds=resolved_settings.session_ttl_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        kafka_producer: KafkaProducerStub | None = None
        connector_factory: ConnectorFactory | None = None
        app.state.session_factory = session_factory
        app.state.session_store = session_store
        try:
            if resolved_settings.database_auto_create:
                await create_schema(database_url, Base.metadata)
            connector_factory = ConnectorFactory(
                bridge_url=resolved_settings.connector_bridge_url,
                timeout_seconds=resolved_settings.connector_timeout_seconds,
            )
            kafka_producer = KafkaProducerStub(bootstrap_servers=resolved_settings.kafka_bootstrap_servers)
            await kafka_producer.connect()
            app.state.connector_factory = connector_factory
            app.state.kafka_producer = kafka_producer
            app.state.event_publisher = PriceChangeEventPublisher(kafka_producer)
            yield
        finally:
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.session_store = None  # type: ignore[assignment]
            app.state.connector_factory = None
            app.state.kafka_producer = None
            app.state.event_publisher = None
            if connector_factory is not None:
                await connector_factory.close()
            if kafka_producer is not None:
                await kafka_producer.close()
            session_store.clear()
            await dispose_engines()
            if redis_client is not None:
                await close_redis_connections()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.add_exception_handler(PriceChangeError, price_change_error_handler)
    app.include_router(health_router)
    app.include_router(price_changes_router)
    app.include_router(audit_router)
    return app


app = create_app()
