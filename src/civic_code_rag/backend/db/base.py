# src/civic_code_rag/backend/db/base.py

"""
[职责] ORM 基类：DeclarativeBase 与通用时间戳 mixin。
[边界] 不定义业务表；不创建引擎。
[上游关系] db/models/* 继承 Base/TimestampMixin。
[下游关系] engine.init_db 通过 Base.metadata 建表。
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all civic_code_rag tables."""


class TimestampMixin:
    """
    [职责] created_at/updated_at 通用字段（DB 侧默认值）。
    [边界] 不做业务时间语义；仅审计用途。
    [上游关系] models 混入。
    [下游关系] 运维排障、数据回放。
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="创建时间",  # docstring: 行创建时间
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        comment="更新时间",  # docstring: 行更新时间
    )
