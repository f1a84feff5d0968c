"""Shared utilities for the pricing platform services."""

from .config import DEFAULT_APP_NAME, ServiceSettings
from .instrumentation import build_app
from .logging import configure_logging
from .database import (
    create_engine,
    create_schema,
    dispose_engines,
    get_session_factory,
    lifespan_session,
    resolve_database_url,
)
from .cache import close_redis_connections, resolve_redis
from .kafka import KafkaConsumerStub, KafkaProducerStub

__all__ = [
    "ServiceSettings",
    "build_app",
    "configure_logging",
    "DEFAULT_APP_NAME",
    "create_engine",
    "create_schema",
    "dispose_engines",
    "get_session_factory",
    "lifespan_session",
    "resolve_database_url",
    "resolve_redis",
    "close_redis_connections",
    "KafkaProducerStub",
    "KafkaConsumerStub",
]
