"""
Environment Store

Narrow persistence interface the orchestrator needs. Record creation and
validation belong to the platform API; this layer only reads clusters and
users and updates environments and terminal sessions.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import Cluster, Environment, User, TerminalSession
from ..utils.resource_naming import get_tmux_session_name
from .orchestration.state import SessionStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnvironmentStore(ABC):
    """Persistence collaborator used by the orchestration services."""

    @abstractmethod
    async def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        pass

    @abstractmethod
    async def get_environment(self, environment_id: str) -> Optional[Environment]:
        pass

    @abstractmethod
    async def get_owned_environment(self, environment_id: str, user_id: str) -> Optional[Environment]:
        """Return the environment only if ``user_id`` owns it."""
        pass

    @abstractmethod
    async def update_environment(self, environment_id: str, **values: Any) -> None:
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def upsert_terminal_session(self, environment_id: str, session_id: str) -> None:
        """Create the session record, or mark an existing one ACTIVE and stamp activity."""
        pass

    @abstractmethod
    async def mark_terminal_session(self, environment_id: str, session_id: str, status: SessionStatus) -> None:
        pass

    @abstractmethod
    async def terminate_terminal_sessions(self, environment_id: str) -> None:
        pass

    @abstractmethod
    async def record_environment_activity(self, environment_id: str) -> None:
        pass


class SQLAlchemyEnvironmentStore(EnvironmentStore):
    """EnvironmentStore backed by the async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        async with self._session_factory() as db:
            return await db.get(Cluster, cluster_id)

    async def get_environment(self, environment_id: str) -> Optional[Environment]:
        async with self._session_factory() as db:
            return await db.get(Environment, environment_id)

    async def get_owned_environment(self, environment_id: str, user_id: str) -> Optional[Environment]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Environment).where(
                    Environment.id == environment_id,
                    Environment.user_id == user_id,
                )
            )
            return result.scalar_one_or_none()

    async def update_environment(self, environment_id: str, **values: Any) -> None:
        values = {k: (v.value if isinstance(v, Enum) else v) for k, v in values.items()}
        async with self._session_factory() as db:
            await db.execute(
                update(Environment)
                .where(Environment.id == environment_id)
                .values(**values)
            )
            await db.commit()

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session_factory() as db:
            return await db.get(User, user_id)

    async def upsert_terminal_session(self, environment_id: str, session_id: str) -> None:
        now = _utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                select(TerminalSession).where(TerminalSession.session_id == session_id)
            )
            session = result.scalar_one_or_none()
            if session is None:
                db.add(TerminalSession(
                    environment_id=environment_id,
                    session_id=session_id,
                    status=SessionStatus.ACTIVE.value,
                    tmux_session_name=get_tmux_session_name(environment_id),
                    started_at=now,
                    last_activity_at=now,
                ))
            else:
                session.status = SessionStatus.ACTIVE.value
                session.ended_at = None
                session.last_activity_at = now
            await db.commit()

    async def mark_terminal_session(self, environment_id: str, session_id: str, status: SessionStatus) -> None:
        status = SessionStatus(status)
        async with self._session_factory() as db:
            await db.execute(
                update(TerminalSession)
                .where(
                    TerminalSession.environment_id == environment_id,
                    TerminalSession.session_id == session_id,
                )
                .values(
                    status=status.value,
                    ended_at=None if status is SessionStatus.ACTIVE else _utcnow(),
                )
            )
            await db.commit()

    async def terminate_terminal_sessions(self, environment_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(TerminalSession)
                .where(
                    TerminalSession.environment_id == environment_id,
                    TerminalSession.status != SessionStatus.TERMINATED.value,
                )
                .values(status=SessionStatus.TERMINATED.value, ended_at=_utcnow())
            )
            await db.commit()

    async def record_environment_activity(self, environment_id: str) -> None:
        await self.update_environment(environment_id, last_activity_at=_utcnow())


def create_store(session_factory: Optional[async_sessionmaker] = None) -> SQLAlchemyEnvironmentStore:
    """Build the default store; imports the engine lazily so tests can swap it."""
    if session_factory is None:
        from ..database import AsyncSessionLocal
        session_factory = AsyncSessionLocal
    return SQLAlchemyEnvironmentStore(session_factory)
