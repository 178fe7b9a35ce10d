"""
SQLAlchemy implementation of RunnerStore.

Each entity is stored as a JSON document alongside the handful of
columns the controller filters on. The default URL targets SQLite via
aiosqlite; any SQLAlchemy async driver works.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import JSON, Boolean, DateTime, Integer, String, delete, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from ..models.credential import Credential, GitHubApp, WebhookConfig
from ..models.runner import Pool, Runner, RunnerStatus, utcnow
from .base import RunnerStore, UpdateGuard

ModelT = TypeVar("ModelT", bound=BaseModel)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetimes on backends (SQLite) that drop the offset."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class CredentialRow(Base):
    __tablename__ = "credentials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class GitHubAppRow(Base):
    __tablename__ = "github_app"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class WebhookConfigRow(Base):
    __tablename__ = "webhook_configs"

    credential_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class PoolRow(Base):
    __tablename__ = "pools"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(64), unique=True)
    credential_id: Mapped[str] = mapped_column(String(36), index=True)
    enabled: Mapped[bool] = mapped_column(Boolean, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class RunnerRow(Base):
    __tablename__ = "runners"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    credential_id: Mapped[str] = mapped_column(String(36), index=True)
    pool_id: Mapped[Optional[str]] = mapped_column(String(36), index=True, nullable=True)
    github_runner_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    ephemeral: Mapped[bool] = mapped_column(Boolean)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    @classmethod
    def from_model(cls, runner: Runner) -> "RunnerRow":
        return cls(
            id=runner.id,
            credential_id=runner.credential_id,
            pool_id=runner.pool_id,
            github_runner_id=runner.github_runner_id,
            status=runner.status.value,
            ephemeral=runner.ephemeral,
            created_at=runner.created_at,
            data=runner.model_dump(mode="json"),
        )


def _load(model: Type[ModelT], row: Any) -> Optional[ModelT]:
    if row is None:
        return None
    return model.model_validate(row.data)


class SQLRunnerStore(RunnerStore):
    """
    Async SQLAlchemy store.

    Writes that read-modify-write a runner are serialized with a lock so
    interleaved coroutines cannot lose each other's updates.
    """

    def __init__(self, database_url: str, engine: Optional[AsyncEngine] = None) -> None:
        super().__init__()
        self.database_url = database_url
        self._engine = engine or create_async_engine(database_url)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        url = make_url(self.database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.logger.info("Store initialized", url=url.render_as_string(hide_password=True))

    async def close(self) -> None:
        await self._engine.dispose()

    async def _merge(self, row: Base) -> None:
        async with self._sessions.begin() as session:
            await session.merge(row)

    async def _delete(self, table: Any, key_column: Any, key: Any) -> bool:
        async with self._sessions.begin() as session:
            result = await session.execute(delete(table).where(key_column == key))
            return result.rowcount > 0

    # Credentials

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        async with self._sessions() as session:
            return _load(Credential, await session.get(CredentialRow, credential_id))

    async def get_credential_by_name(self, name: str) -> Optional[Credential]:
        async with self._sessions() as session:
            row = (await session.execute(
                select(CredentialRow).where(CredentialRow.name == name)
            )).scalar_one_or_none()
            return _load(Credential, row)

    async def list_credentials(self) -> List[Credential]:
        async with self._sessions() as session:
            rows = (await session.execute(select(CredentialRow))).scalars().all()
            return [Credential.model_validate(row.data) for row in rows]

    async def save_credential(self, credential: Credential) -> Credential:
        await self._merge(CredentialRow(
            id=credential.id,
            name=credential.name,
            data=credential.model_dump(mode="json"),
        ))
        return credential

    async def delete_credential(self, credential_id: str) -> bool:
        return await self._delete(CredentialRow, CredentialRow.id, credential_id)

    # GitHub App and webhooks

    async def get_github_app(self) -> Optional[GitHubApp]:
        async with self._sessions() as session:
            return _load(GitHubApp, await session.get(GitHubAppRow, 1))

    async def save_github_app(self, app: GitHubApp) -> GitHubApp:
        await self._merge(GitHubAppRow(id=1, data=app.model_dump(mode="json")))
        return app

    async def get_webhook_config(self, credential_id: str) -> Optional[WebhookConfig]:
        async with self._sessions() as session:
            return _load(WebhookConfig, await session.get(WebhookConfigRow, credential_id))

    async def save_webhook_config(self, config: WebhookConfig) -> WebhookConfig:
        await self._merge(WebhookConfigRow(
            credential_id=config.credential_id,
            data=config.model_dump(mode="json"),
        ))
        return config

    # Pools

    async def get_pool(self, pool_id: str) -> Optional[Pool]:
        async with self._sessions() as session:
            return _load(Pool, await session.get(PoolRow, pool_id))

    async def get_pool_by_name(self, name: str) -> Optional[Pool]:
        async with self._sessions() as session:
            row = (await session.execute(
                select(PoolRow).where(PoolRow.name == name)
            )).scalar_one_or_none()
            return _load(Pool, row)

    async def list_pools(self,
                         enabled_only: bool = False,
                         credential_id: Optional[str] = None) -> List[Pool]:
        query = select(PoolRow).order_by(PoolRow.created_at)
        if enabled_only:
            query = query.where(PoolRow.enabled.is_(True))
        if credential_id is not None:
            query = query.where(PoolRow.credential_id == credential_id)
        async with self._sessions() as session:
            rows = (await session.execute(query)).scalars().all()
            return [Pool.model_validate(row.data) for row in rows]

    async def save_pool(self, pool: Pool) -> Pool:
        await self._merge(PoolRow(
            id=pool.id,
            name=pool.name,
            credential_id=pool.credential_id,
            enabled=pool.enabled,
            created_at=pool.created_at,
            data=pool.model_dump(mode="json"),
        ))
        return pool

    async def delete_pool(self, pool_id: str) -> bool:
        return await self._delete(PoolRow, PoolRow.id, pool_id)

    # Runners

    async def get_runner(self, runner_id: str) -> Optional[Runner]:
        async with self._sessions() as session:
            return _load(Runner, await session.get(RunnerRow, runner_id))

    async def get_runner_by_github_id(self, github_runner_id: int) -> Optional[Runner]:
        async with self._sessions() as session:
            row = (await session.execute(
                select(RunnerRow).where(RunnerRow.github_runner_id == github_runner_id).limit(1)
            )).scalar_one_or_none()
            return _load(Runner, row)

    async def list_runners(self,
                           pool_id: Optional[str] = None,
                           credential_id: Optional[str] = None,
                           ephemeral: Optional[bool] = None,
                           statuses: Optional[Iterable[RunnerStatus]] = None,
                           exclude_statuses: Optional[Iterable[RunnerStatus]] = None) -> List[Runner]:
        query = select(RunnerRow).order_by(RunnerRow.created_at)
        if pool_id is not None:
            query = query.where(RunnerRow.pool_id == pool_id)
        if credential_id is not None:
            query = query.where(RunnerRow.credential_id == credential_id)
        if ephemeral is not None:
            query = query.where(RunnerRow.ephemeral.is_(ephemeral))
        if statuses is not None:
            query = query.where(RunnerRow.status.in_([RunnerStatus(s).value for s in statuses]))
        if exclude_statuses:
            query = query.where(RunnerRow.status.not_in([RunnerStatus(s).value for s in exclude_statuses]))
        async with self._sessions() as session:
            rows = (await session.execute(query)).scalars().all()
            return [Runner.model_validate(row.data) for row in rows]

    async def insert_runner(self, runner: Runner) -> Runner:
        async with self._sessions.begin() as session:
            session.add(RunnerRow.from_model(runner))
        return runner

    async def update_runner(self,
                            runner_id: str,
                            guard: Optional[UpdateGuard] = None,
                            **changes: Any) -> Optional[Runner]:
        async with self._write_lock:
            async with self._sessions.begin() as session:
                row = await session.get(RunnerRow, runner_id)
                if row is None:
                    return None
                current = Runner.model_validate(row.data)
                if guard is not None:
                    extra = guard(current)
                    if extra is None:
                        return None
                    changes = {**extra, **changes}
                changes.setdefault("updated_at", utcnow())
                runner = Runner.model_validate({**current.model_dump(), **changes})
                fresh = RunnerRow.from_model(runner)
                row.pool_id = fresh.pool_id
                row.github_runner_id = fresh.github_runner_id
                row.status = fresh.status
                row.ephemeral = fresh.ephemeral
                row.data = fresh.data
                return runner

    async def delete_runner(self, runner_id: str) -> bool:
        return await self._delete(RunnerRow, RunnerRow.id, runner_id)
