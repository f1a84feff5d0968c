"""Session validation and project role checks for lifecycle requests."""

from __future__ import annotations

import json
import secrets
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from .errors import Forbidden, NotFound, Unauthorized
from .models import Membership, Project, ProjectRole
from .repository import PriceChangeRepository

ROLE_ORDER: dict[ProjectRole, int] = {
    ProjectRole.VIEWER: 0,
    ProjectRole.EDITOR: 1,
    ProjectRole.ADMIN: 2,
    ProjectRole.OWNER: 3,
}


def role_satisfies(role: str | ProjectRole, min_role: ProjectRole) -> bool:
    try:
        resolved = ProjectRole(role)
    except ValueError:
        return False
    return ROLE_ORDER[resolved] >= ROLE_ORDER[min_role]


@dataclass(slots=True)
class AuthSession:
    token: str
    user_id: str
    tenant_id: str | None
    expires_at: float


class SessionStore:
    """Bearer sessions with a fixed lifetime.

    One store is built per application and handed to request handlers through
    dependencies. Sessions live in Redis when a client is given, otherwise in
    process memory.
    """

    def __init__(
        self,
        redis_client: Any | None = None,
        *,
        ttl_seconds: int = 3600,
        key_prefix: str = "price_change_session",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self._ttl = max(ttl_seconds, 1)
        self._key_prefix = key_prefix
        self._clock = clock
        self._sessions: dict[str, AuthSession] = {}

    def _key(self, token: str) -> str:
        return f"{self._key_prefix}:{token}"

    async def create(self, *, user_id: str, tenant_id: str | None = None) -> AuthSession:
        session = AuthSession(
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            tenant_id=tenant_id,
            expires_at=self._clock() + self._ttl,
        )
        if self._redis is not None:
            await self._redis.setex(self._key(session.token), self._ttl, json.dumps(asdict(session)))
        else:
            self._sessions[session.token] = session
        return session

    async def get(self, token: str) -> AuthSession | None:
        if self._redis is not None:
            raw = await self._redis.get(self._key(token))
            if raw is None:
                return None
            session = AuthSession(**json.loads(raw))
        else:
            session = self._sessions.get(token)
            if session is None:
                return None
        if session.expires_at <= self._clock():
            await self.revoke(token)
            return None
        return session

    async def revoke(self, token: str) -> None:
        if self._redis is not None:
            await self._redis.delete(self._key(token))
        else:
            self._sessions.pop(token, None)

    def clear(self) -> None:
        self._sessions.clear()


@dataclass(slots=True)
class ProjectAccess:
    session: AuthSession
    project: Project
    membership: Membership

    @property
    def role(self) -> str:
        return self.membership.role

    @property
    def user_id(self) -> str:
        return self.session.user_id


def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer ") :].strip()
    return token or None


async def resolve_project_access(
    repository: PriceChangeRepository,
    sessions: SessionStore,
    *,
    authorization: str | None,
    project_slug: str,
    min_role: ProjectRole,
) -> ProjectAccess:
    token = bearer_token(authorization)
    if token is None:
        raise Unauthorized("Missing bearer token")
    session = await sessions.get(token)
    if session is None:
        raise Unauthorized("Invalid session token")

    project = await repository.get_project_by_slug(project_slug)
    if project is None:
        raise NotFound("Project not found")

    membership = await repository.get_membership(user_id=session.user_id, project_id=project.id)
    if membership is None:
        raise Forbidden("You need access to this project.")
    if not role_satisfies(membership.role, min_role):
        raise Forbidden(f"Requires {min_role.value.lower()} or higher permissions.")
    return ProjectAccess(session=session, project=project, membership=membership)
