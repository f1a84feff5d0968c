"""Dependency helpers for the price change service."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi import Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import ServiceSettings, lifespan_session

from .access import ProjectAccess, SessionStore, resolve_project_access
from .audit import CORRELATION_HEADER, resolve_correlation_id
from .connectors import ConnectorFactory
from .errors import ProjectRequired
from .lifecycle import LifecycleEngine
from .models import ProjectRole
from .repository import PriceChangeRepository

PROJECT_HEADER = "X-Calibr-Project"


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_repository(session: AsyncSession = Depends(get_session)) -> PriceChangeRepository:
    return PriceChangeRepository(session)


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_connector_factory(request: Request) -> ConnectorFactory | None:
    return getattr(request.app.state, "connector_factory", None)


def get_event_publisher(request: Request) -> Any:
    return getattr(request.app.state, "event_publisher", None)


def get_correlation_id(
    header_value: str | None = Header(default=None, alias=CORRELATION_HEADER),
) -> str:
    return resolve_correlation_id(header_value)


def get_project_slug(
    project_header: str | None = Header(default=None, alias=PROJECT_HEADER),
    project_query: str | None = Query(default=None, alias="project"),
) -> str:
    slug = (project_header or project_query or "").strip()
    if not slug:
        raise ProjectRequired()
    return slug


def require_project_access(min_role: ProjectRole) -> Callable[..., Awaitable[ProjectAccess]]:
    """Build a dependency that authenticates the caller and checks their project role."""

    async def dependency(
        authorization: str | None = Header(default=None),
        project_slug: str = Depends(get_project_slug),
        repository: PriceChangeRepository = Depends(get_repository),
        sessions: SessionStore = Depends(get_session_store),
    ) -> ProjectAccess:
        return await resolve_project_access(
            repository,
            sessions,
            authorization=authorization,
            project_slug=project_slug,
            min_role=min_role,
        )

    return dependency


def get_lifecycle_engine(
    request: Request,
    repository: PriceChangeRepository = Depends(get_repository),
    connectors: ConnectorFactory | None = Depends(get_connector_factory),
    event_publisher: Any = Depends(get_event_publisher),
) -> LifecycleEngine:
    settings: ServiceSettings = request.app.state.settings
    return LifecycleEngine(
        repository,
        connectors,
        event_publisher=event_publisher,
        default_target=settings.default_connector_target,
    )
