# src/civic_code_rag/backend/pipelines/retrieval/vector_index.py

"""
[职责] 辖区向量索引：把一个辖区全部片段的 embedding 载入 L2 归一化的 numpy 矩阵，一次矩阵乘得到全部余弦距离。
[边界] 只做距离计算与 id 对齐，不做词法判定与排序；索引在进程内按辖区缓存，按语料指纹（片段数, 最新 updated_at）失效重建。
[上游关系] CodeChunkRepo.list_embeddings / corpus_fingerprint 提供向量与指纹；QueryPipeline 持有 VectorIndexCache 跨请求复用。
[下游关系] hybrid.retrieve 使用 distances() 与 ids 完成复合排序。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy.ext.asyncio import AsyncSession

from civic_code_rag.backend.db.repo.code_chunk_repo import CodeChunkRepo
from civic_code_rag.backend.utils.errors import EmbeddingDimensionError
from civic_code_rag.backend.utils.logging_ import get_logger, log_event


logger = get_logger("pipelines.vector_index")

Fingerprint = Tuple[int, Optional[str]]


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row; all-zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return matrix / norms


@dataclass(frozen=True)
class VectorIndex:
    """
    [职责] 单辖区的只读向量矩阵：ids[i] 对应 matrix[i]，ids 按升序排列。
    [边界] 构建时强制全辖区同一维度；不持有 ORM 对象。
    [上游关系] VectorIndexCache.get 或 from_rows 构建。
    [下游关系] hybrid.retrieve。
    """

    jurisdiction: str
    ids: Tuple[str, ...]
    matrix: np.ndarray  # docstring: (n, dim) float32，行已归一化
    fingerprint: Fingerprint = (0, None)

    def __len__(self) -> int:
        return len(self.ids)

    @property
    def dim(self) -> int:
        return int(self.matrix.shape[1])

    @classmethod
    def from_rows(
        cls,
        jurisdiction: str,
        rows: Sequence[Tuple[str, Sequence[float]]],
        *,
        fingerprint: Fingerprint = (0, None),
    ) -> "VectorIndex":
        """Build from (id, embedding) pairs; raises EmbeddingDimensionError on mixed dimensions."""
        if not rows:
            return cls(jurisdiction, (), np.zeros((0, 0), dtype=np.float32), fingerprint)
        dim = len(rows[0][1])
        for _, vec in rows:
            if len(vec) != dim:
                raise EmbeddingDimensionError(expected=dim, actual=len(vec), source="corpus")
        matrix = np.asarray([vec for _, vec in rows], dtype=np.float32).reshape(len(rows), dim)
        return cls(jurisdiction, tuple(str(i) for i, _ in rows), normalize_rows(matrix), fingerprint)

    def distances(self, query_embedding: Sequence[float]) -> np.ndarray:
        """
        Cosine distance (1 - cosine similarity) from the query to every row, aligned with ``ids``.

        Zero vectors on either side are maximally distant (1.0).
        """
        query = np.asarray(query_embedding, dtype=np.float32).reshape(-1)
        if not self.ids:
            return np.zeros(0, dtype=np.float32)
        if query.shape[0] != self.dim:
            raise EmbeddingDimensionError(expected=int(query.shape[0]), actual=self.dim, source="corpus")
        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            return np.ones(len(self.ids), dtype=np.float32)
        return 1.0 - self.matrix @ (query / norm)


class VectorIndexCache:
    """
    [职责] 进程内按辖区缓存 VectorIndex；每次 get 先比对语料指纹，变化即重建。
    [边界] 指纹只覆盖行数与 updated_at；同一秒内的原位改写需调用 invalidate。
    [上游关系] QueryPipeline 构造一次；tests 直接构造。
    [下游关系] hybrid.retrieve。
    """

    def __init__(self) -> None:
        self._indexes: Dict[str, VectorIndex] = {}

    async def get(self, session: AsyncSession, jurisdiction: str, *, context: Optional[Any] = None) -> VectorIndex:
        repo = CodeChunkRepo(session)
        fingerprint = await repo.corpus_fingerprint(jurisdiction)
        cached = self._indexes.get(jurisdiction)
        if cached is not None and cached.fingerprint == fingerprint:
            return cached

        index = VectorIndex.from_rows(
            jurisdiction,
            await repo.list_embeddings(jurisdiction),
            fingerprint=fingerprint,
        )
        self._indexes[jurisdiction] = index
        log_event(
            logger,
            logging.INFO,
            "vector_index.built",
            context=context,
            fields={
                "jurisdiction": jurisdiction,
                "size": len(index),
                "dim": index.dim,
                "rebuilt": cached is not None,
            },
        )
        return index

    def invalidate(self, jurisdiction: Optional[str] = None) -> None:
        """Drop one jurisdiction's index, or all of them."""
        if jurisdiction is None:
            self._indexes.clear()
        else:
            self._indexes.pop(jurisdiction, None)
