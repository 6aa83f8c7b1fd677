# src/civic_code_rag/backend/db/models/embedding_cache.py

from __future__ import annotations

from typing import List

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ..base import Base


class EmbeddingCacheModel(Base):
    """
    [职责] 内容寻址的 embedding 缓存：sha256(text) -> vector。
    [边界] 行创建后不可变；重复插入视为 no-op（唯一约束 + insert-or-ignore）。
    [上游关系] EmbeddingCacheRepo.insert_ignore 写入。
    [下游关系] EmbeddingCache.embed 批量读取命中。
    """

    __tablename__ = "embedding_cache"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment="自增主键",
    )

    text_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="文本 sha256（hex）",  # docstring: 内容地址
    )

    embedding: Mapped[List[float]] = mapped_column(
        JSON,
        nullable=False,
        comment="向量（JSON float 列表）",
    )
