# src/civic_code_rag/backend/db/repo/embedding_cache_repo.py

"""
[职责] EmbeddingCacheRepo：按 text_hash 批量读取缓存向量，并以 insert-or-ignore 语义写回。
[边界] 不计算 hash、不调用 embedding 服务（见 pipelines/retrieval/embedding_cache.py）；不 commit。
[上游关系] EmbeddingCache 在每批 embedding 完成后调用 insert_ignore。
[下游关系] embedding_cache 表（text_hash 唯一约束）。
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.embedding_cache import EmbeddingCacheModel


class EmbeddingCacheRepo:
    """Embedding cache repository (async SQLAlchemy)."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_many(self, text_hashes: Sequence[str]) -> Dict[str, List[float]]:
        """
        Return {text_hash: embedding} for the hashes that are cached.

        A single IN query; absent hashes are simply missing from the result.
        """
        hashes = sorted({str(h) for h in text_hashes if h})
        if not hashes:
            return {}
        stmt = select(EmbeddingCacheModel.text_hash, EmbeddingCacheModel.embedding).where(
            EmbeddingCacheModel.text_hash.in_(hashes)
        )
        rows = (await self._session.execute(stmt)).all()
        return {str(h): [float(x) for x in (vec or [])] for h, vec in rows}

    async def insert_ignore(self, entries: Mapping[str, Sequence[float]]) -> int:
        """
        [职责] 写入 {text_hash: embedding}；已存在的 hash 静默跳过（首写者胜出）。
        [边界] sqlite/postgresql 使用 ON CONFLICT DO NOTHING；其它方言逐行插入并吞掉唯一冲突。
        [上游关系] EmbeddingCache 写回。
        [下游关系] 返回尝试写入的条目数（不区分是否被忽略）。
        """
        rows = [
            {"text_hash": str(h), "embedding": [float(x) for x in vec]}
            for h, vec in entries.items()
            if h
        ]
        if not rows:
            return 0

        dialect = self._session.get_bind().dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        else:
            return await self._insert_rows_ignoring_conflicts(rows)

        stmt = dialect_insert(EmbeddingCacheModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["text_hash"])  # docstring: 并发重复写入为 no-op
        await self._session.execute(stmt)
        return len(rows)

    async def _insert_rows_ignoring_conflicts(self, rows: List[Dict[str, object]]) -> int:
        for row in rows:
            try:
                async with self._session.begin_nested():
                    self._session.add(EmbeddingCacheModel(**row))
                    await self._session.flush()
            except IntegrityError:
                continue  # docstring: 唯一约束冲突即已被其它写者缓存
        return len(rows)
