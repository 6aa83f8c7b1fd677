# src/civic_code_rag/backend/pipelines/retrieval/embedding_cache.py

"""
[职责] EmbeddingCache：内容寻址的 embedding 缓存（sha256 去重 -> 一次批量读 -> 按字符预算分批请求 -> insert-or-ignore 写回）。
[边界] 不决定 embedding 用途；单批次上游失败只丢弃该批（调用方需容忍部分结果）；写回失败只记日志。
[上游关系] main.lifespan 构造一次并注入 QueryPipeline；scripts/init_db.py 加载语料时复用。
[下游关系] query_service 取 query 向量；embedding_cache 表（EmbeddingCacheRepo）。
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from civic_code_rag.backend.db.repo.embedding_cache_repo import EmbeddingCacheRepo
from civic_code_rag.backend.pipelines.embedder import embed_batch
from civic_code_rag.backend.utils.errors import EmbeddingDimensionError
from civic_code_rag.backend.utils.logging_ import get_logger, log_event, truncate_text


logger = get_logger("pipelines.embedding_cache")


def content_hash(text: str) -> str:
    """sha256 hex digest of the exact text (no normalization)."""
    return hashlib.sha256(str(text).encode("utf-8")).hexdigest()


def plan_batches(texts: Sequence[str], *, max_chars: int) -> List[List[str]]:
    """
    [职责] 按字符预算将文本分组（保持输入顺序）。
    [边界] 单条超预算文本独占一批；不截断文本。
    [上游关系] EmbeddingCache.embed 对 cache miss 调用。
    [下游关系] 每批一次上游 embedding 请求。
    """
    limit = max(int(max_chars), 1)
    batches: List[List[str]] = []
    current: List[str] = []
    current_chars = 0
    for text in texts:
        size = len(text)
        if current and current_chars + size > limit:
            batches.append(current)
            current, current_chars = [], 0
        current.append(text)
        current_chars += size
        if current_chars >= limit:
            batches.append(current)  # docstring: 超预算/恰好满额的批次立即封口
            current, current_chars = [], 0
    if current:
        batches.append(current)
    return batches


class EmbeddingCache:
    """
    [职责] 持有 sessionmaker 与 BaseEmbedding 的显式缓存对象（无模块级可变状态）。
    [边界] 不持有长连接 session：每次读/写各开一个短会话，便于并发调用。
    [上游关系] main.lifespan / tests 构造。
    [下游关系] embed(texts) -> {text: vector}。
    """

    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        embedder: Any,
        dim: int,
        max_chars: int,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._embedder = embedder
        self._dim = int(dim)
        self._max_chars = int(max_chars)

    @property
    def dim(self) -> int:
        return self._dim

    async def embed(self, texts: Sequence[str], *, context: Optional[Any] = None) -> Dict[str, List[float]]:
        """
        [职责] 返回 {原始文本: 向量}；缓存命中不触发上游请求。
        [边界] 上游失败的批次不出现在结果中；维度不符抛 PipelineError。
        [上游关系] query_service / scripts。
        [下游关系] hybrid retriever 的 query_embedding。
        """
        unique = list(dict.fromkeys(str(t) for t in texts))  # docstring: 保序去重
        if not unique:
            return {}

        hash_by_text = {t: content_hash(t) for t in unique}
        by_hash = await self._read_cached(list(hash_by_text.values()), context=context)
        for vec in by_hash.values():
            self._check_dim(vec, source="cache")

        misses = [t for t in unique if hash_by_text[t] not in by_hash]
        batches = plan_batches(misses, max_chars=self._max_chars)
        log_event(
            logger,
            logging.DEBUG,
            "embedding_cache.lookup",
            context=context,
            fields={"unique": len(unique), "hits": len(unique) - len(misses), "batches": len(batches)},
        )

        for batch in batches:
            fresh = await self._embed_batch(batch, context=context)
            if not fresh:
                continue
            entries = {hash_by_text[t]: vec for t, vec in fresh.items()}
            by_hash.update(entries)
            await self._write_back(entries, context=context)

        return {t: by_hash[hash_by_text[t]] for t in unique if hash_by_text[t] in by_hash}

    async def _read_cached(self, hashes: List[str], *, context: Optional[Any]) -> Dict[str, List[float]]:
        try:
            async with self._sessionmaker() as session:
                return await EmbeddingCacheRepo(session).get_many(hashes)
        except SQLAlchemyError as exc:
            log_event(
                logger,
                logging.WARNING,
                "embedding_cache.read_failed",
                context=context,
                fields={"count": len(hashes), "error": str(exc)},
            )
            return {}  # docstring: 读失败按全部 miss 处理

    async def _embed_batch(self, batch: List[str], *, context: Optional[Any]) -> Dict[str, List[float]]:
        try:
            vectors = await embed_batch(self._embedder, batch)
        except Exception as exc:
            log_event(
                logger,
                logging.ERROR,
                "embedding_cache.batch_failed",
                context=context,
                fields={
                    "batch_size": len(batch),
                    "first_text": truncate_text(batch[0] if batch else None, max_len=80),
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
            return {}
        for vec in vectors:
            self._check_dim(vec, source="upstream")
        return dict(zip(batch, vectors))

    async def _write_back(self, entries: Dict[str, List[float]], *, context: Optional[Any]) -> None:
        try:
            async with self._sessionmaker() as session:
                await EmbeddingCacheRepo(session).insert_ignore(entries)
                await session.commit()
        except SQLAlchemyError as exc:
            log_event(
                logger,
                logging.WARNING,
                "embedding_cache.write_failed",
                context=context,
                fields={"count": len(entries), "error": str(exc)},
            )

    def _check_dim(self, vec: Sequence[float], *, source: str) -> None:
        if len(vec) != self._dim:
            raise EmbeddingDimensionError(expected=self._dim, actual=len(vec), source=source)
