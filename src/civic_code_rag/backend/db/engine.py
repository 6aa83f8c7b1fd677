# src/civic_code_rag/backend/db/engine.py

"""
[职责] 数据库引擎与会话工厂：创建 AsyncEngine / AsyncSession，并提供 FastAPI 可注入的 get_session。
[边界] 不包含 ORM Model 定义；不包含事务编排（由 service/repo 负责）；不负责迁移。
[上游关系] config.Settings / 环境变量提供连接串；应用 lifespan 调用 init_db。
[下游关系] api/deps、repo 层与 EmbeddingCache 依赖 AsyncSession；tests 复用 create_engine/create_sessionmaker。
"""

from __future__ import annotations

import os
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from civic_code_rag.config import LOCAL_ROOT, settings

from .base import Base


def _default_db_url() -> str:
    """Local sqlite file under <repo>/.Local (created on demand)."""  # docstring: 最小可用配置
    db_path = LOCAL_ROOT / "civic_code_rag.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{db_path.as_posix()}"


def resolve_db_url(override: str | None = None) -> str:
    """
    Resolve database URL.

    Priority:
        1) explicit override
        2) settings / env: CIVIC_CODE_RAG_DATABASE_URL
        3) env: DATABASE_URL
        4) fallback: local sqlite file
    """
    if override:
        return override
    s_url = str(settings.CIVIC_CODE_RAG_DATABASE_URL or "").strip()
    if s_url:
        return s_url
    env_url = os.getenv("DATABASE_URL", "").strip()
    if env_url:
        return env_url
    return _default_db_url()


def _enable_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")  # docstring: 并发写入时等待而非立即 locked
    cursor.close()


def create_engine(*, url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """
    Create AsyncEngine. SQLite URLs get a per-connection busy_timeout.
    """
    db_url = resolve_db_url(url)
    db_echo = echo if echo is not None else (os.getenv("SQL_ECHO", "0") == "1")  # docstring: SQL 打印开关

    engine = create_async_engine(
        db_url,
        echo=db_echo,
        pool_pre_ping=True,
    )
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)
    return engine


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create async sessionmaker."""  # docstring: 统一 expire_on_commit 行为
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


# --- global singletons (app runtime) ---
ENGINE: AsyncEngine = create_engine()  # docstring: 默认全局引擎
SessionLocal: async_sessionmaker[AsyncSession] = create_sessionmaker(ENGINE)  # docstring: 默认会话工厂


async def init_db(*, engine: AsyncEngine | None = None) -> None:
    """
    Initialize database schema (create_all) and the sqlite FTS index.

    Must import models to register tables in Base.metadata.
    """
    from . import models  # noqa: F401  # docstring: 强制注册 ORM 表
    from .fts import ensure_sqlite_fts

    eng = engine or ENGINE
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if eng.dialect.name == "sqlite":
            await ensure_sqlite_fts(conn)  # docstring: FTS 虚表与同步触发器


async def drop_db(*, engine: AsyncEngine | None = None) -> None:
    """Drop the FTS index and every table. Local corpus rebuilds and tests only."""
    from . import models  # noqa: F401
    from .fts import drop_sqlite_fts

    eng = engine or ENGINE
    async with eng.begin() as conn:
        if eng.dialect.name == "sqlite":
            await drop_sqlite_fts(conn)
        await conn.run_sync(Base.metadata.drop_all)


async def get_session() -> AsyncIterator[AsyncSession]:
    """
    FastAPI dependency.

    Example:
      async def endpoint(session: AsyncSession = Depends(get_session)): ...
    """
    async with SessionLocal() as session:
        yield session
