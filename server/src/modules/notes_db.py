import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    update,
)
from sqlalchemy.dialects.postgresql import TSVECTOR
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from server.src.modules.notes_errors import StorageTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./notes.db"
DEFAULT_STORAGE_TIMEOUT = 8.0
SEARCH_VECTOR_TYPE = Text().with_variant(TSVECTOR(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def normalize_database_url(raw_url: str | None) -> str:
    url = (raw_url or "").strip() or DEFAULT_DATABASE_URL
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


class Base(DeclarativeBase):
    pass


class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )


class Page(Base):
    __tablename__ = "pages"
    __table_args__ = (
        UniqueConstraint("workspace_id", "slug", name="ux_page_workspace_slug"),
        Index("ix_page_workspace_updated", "workspace_id", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    slug: Mapped[str] = mapped_column(String(80), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    search_vector: Mapped[Any] = mapped_column(SEARCH_VECTOR_TYPE, nullable=True)


class PageVersion(Base):
    __tablename__ = "page_versions"
    __table_args__ = (
        UniqueConstraint("page_id", "version", name="ux_page_version"),
    )

    # Integer key so snapshots can be written with INSERT ... SELECT.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(80), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    author_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class PermissionRule(Base):
    __tablename__ = "permission_rules"
    __table_args__ = (
        Index("ix_permission_rule_scope", "workspace_id", "page_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    page_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("pages.id", ondelete="CASCADE"), nullable=True
    )
    role_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    can_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_write: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )


def build_engine(database_url: str | None = None, *, echo: bool = False) -> AsyncEngine:
    url = normalize_database_url(database_url)
    kwargs: dict[str, Any] = {"future": True, "echo": echo}
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:")):
        # one shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_async_engine(url, **kwargs)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class BoundedSession:
    """
    AsyncSession wrapper that puts a hard time limit on every storage call.

    A call that exceeds the limit raises StorageTimeoutError; it is never
    retried here.
    """

    def __init__(self, session: AsyncSession, timeout: float = DEFAULT_STORAGE_TIMEOUT):
        self.session = session
        self.timeout = timeout

    @property
    def dialect_name(self) -> str:
        return self.session.bind.dialect.name

    @property
    def is_postgres(self) -> bool:
        return self.dialect_name == "postgresql"

    async def run(self, awaitable, label: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("storage call timed out after %ss: %s", self.timeout, label)
            raise StorageTimeoutError(label=label) from exc

    async def execute(self, stmt, label: str):
        return await self.run(self.session.execute(stmt), label)

    async def scalar(self, stmt, label: str):
        return await self.run(self.session.scalar(stmt), label)

    async def scalars(self, stmt, label: str) -> list:
        result = await self.run(self.session.scalars(stmt), label)
        return list(result.all())

    def add(self, obj) -> None:
        self.session.add(obj)

    async def flush(self, label: str = "flush") -> None:
        await self.run(self.session.flush(), label)

    async def refresh(self, obj, label: str = "refresh") -> None:
        await self.run(self.session.refresh(obj), label)

    async def commit(self, label: str = "commit") -> None:
        await self.run(self.session.commit(), label)

    async def rollback(self, label: str = "rollback") -> None:
        await self.run(self.session.rollback(), label)


async def refresh_search_vector(db: BoundedSession, page_id: str) -> None:
    """Recompute the derived search column from the page's current title and body."""
    text = func.coalesce(Page.title, "") + " " + func.coalesce(Page.body, "")
    if db.is_postgres:
        value = func.to_tsvector("simple", text)
    else:
        value = func.lower(text)
    await db.execute(
        update(Page).where(Page.id == page_id).values(search_vector=value).execution_options(synchronize_session=False),
        "refresh_search_vector",
    )


@dataclass
class NotesContext:
    """Everything a request handler needs, passed explicitly instead of globals."""

    sessions: async_sessionmaker[AsyncSession]
    storage_timeout: float = DEFAULT_STORAGE_TIMEOUT

    @asynccontextmanager
    async def open_db(self) -> AsyncIterator[BoundedSession]:
        async with self.sessions() as session:
            yield BoundedSession(session, self.storage_timeout)
