# playground/retrieval_gate/test_vector_index_gate.py

"""
[职责] vector index gate：验证归一化矩阵上的余弦距离、零向量约定、维度校验与缓存失效。
[边界] 纯内存矩阵测试 + 一个 SQLite 缓存用例；不调用 embedding。
[上游关系] pipelines/retrieval/vector_index.py + CodeChunkRepo.list_embeddings/corpus_fingerprint。
[下游关系] hybrid.retrieve 的距离与 id 对齐。
"""

from __future__ import annotations

import numpy as np
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from civic_code_rag.backend.pipelines.retrieval.vector_index import (
    VectorIndex,
    VectorIndexCache,
    normalize_rows,
)
from civic_code_rag.backend.utils.errors import EmbeddingDimensionError


pytestmark = pytest.mark.retrieval_gate


def test_distances_follow_cosine() -> None:
    index = VectorIndex.from_rows(
        "johnson_county_ks",
        [("same", [2.0, 0.0]), ("orth", [0.0, 3.0]), ("opp", [-1.0, 0.0]), ("zero", [0.0, 0.0])],
    )
    dist = index.distances([1.0, 0.0])

    assert index.ids == ("same", "orth", "opp", "zero")
    assert index.dim == 2
    assert dist.tolist() == pytest.approx([0.0, 1.0, 2.0, 1.0])  # docstring: 零向量视为最远
    assert index.distances([0.0, 0.0]).tolist() == [1.0, 1.0, 1.0, 1.0]


def test_normalize_rows_keeps_zero_rows() -> None:
    out = normalize_rows(np.asarray([[3.0, 4.0], [0.0, 0.0]], dtype=np.float32))
    assert out.tolist() == pytest.approx([[0.6, 0.8], [0.0, 0.0]])


def test_dimension_checks() -> None:
    with pytest.raises(EmbeddingDimensionError) as ei:
        VectorIndex.from_rows("johnson_county_ks", [("a", [1.0, 0.0]), ("b", [1.0, 0.0, 0.0])])
    assert ei.value.detail == {"expected": 2, "actual": 3, "source": "corpus"}

    index = VectorIndex.from_rows("johnson_county_ks", [("a", [1.0, 0.0, 0.0])])
    with pytest.raises(EmbeddingDimensionError):
        index.distances([1.0, 0.0])


def test_empty_index() -> None:
    index = VectorIndex.from_rows("cupertino_ca", [])
    assert len(index) == 0
    assert index.distances([1.0, 0.0]).shape == (0,)


@pytest.mark.asyncio
async def test_cache_builds_per_jurisdiction_and_invalidates(
    session: AsyncSession, insert_chunks, make_chunk_row
) -> None:
    await insert_chunks(
        [
            make_chunk_row("b", "Rule B.", embedding=[0.0, 1.0]),
            make_chunk_row("a", "Rule A.", embedding=[1.0, 0.0]),
            make_chunk_row("c", "Rule C.", embedding=[1.0, 1.0], jurisdiction="oak_ridge_tn"),
        ]
    )
    cache = VectorIndexCache()

    joco = await cache.get(session, "johnson_county_ks")
    oak = await cache.get(session, "oak_ridge_tn")
    assert joco.ids == ("a", "b")  # docstring: 按 id 升序
    assert oak.ids == ("c",)
    assert joco.fingerprint[0] == 2

    assert await cache.get(session, "johnson_county_ks") is joco
    cache.invalidate("johnson_county_ks")
    rebuilt = await cache.get(session, "johnson_county_ks")
    assert rebuilt is not joco
    assert rebuilt.ids == joco.ids
    assert await cache.get(session, "oak_ridge_tn") is oak

    cache.invalidate()
    assert await cache.get(session, "oak_ridge_tn") is not oak
