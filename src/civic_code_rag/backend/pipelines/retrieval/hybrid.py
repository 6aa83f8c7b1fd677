# src/civic_code_rag/backend/pipelines/retrieval/hybrid.py

"""
[职责] 混合检索：单辖区内按（词法命中 desc, 余弦距离 asc, id asc）复合排序，返回前 limit 个候选。
[边界] 词法信号只作为分组键（命中者整体排在未命中者之前），不与距离加权融合；不做 CRAG/高亮。
[上游关系] query_service 传入 keywords（可空）与 query_embedding。
[下游关系] crag.filter_relevant 保序过滤 RetrievalCandidate 列表。
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Set, Tuple

import numpy as np
from sqlalchemy.ext.asyncio import AsyncSession

from civic_code_rag.backend.db.fts import match_chunk_ids
from civic_code_rag.backend.db.repo.code_chunk_repo import CodeChunkRepo
from civic_code_rag.backend.utils.logging_ import get_logger, log_event

from .types import CodeDocument, RetrievalCandidate
from .vector_index import VectorIndexCache


logger = get_logger("pipelines.hybrid")

DEFAULT_LIMIT = 30


def rank_key(lexical_match: bool, distance: float, doc_id: str) -> Tuple[int, float, str]:
    """Sort key: lexical matches first, then nearest, then id for stability."""
    return (0 if lexical_match else 1, distance, doc_id)


def rank_candidates(
    scored: Sequence[Tuple[CodeDocument, bool, float]],
    *,
    limit: int = DEFAULT_LIMIT,
) -> List[RetrievalCandidate]:
    """
    [职责] 纯排序：(document, lexical_match, distance) -> 带 1-based rank 的候选列表。
    [边界] 不访问 DB；limit<=0 返回空列表。
    [上游关系] retrieve。
    [下游关系] RetrievalCandidate 列表。
    """
    ordered = sorted(scored, key=lambda item: rank_key(item[1], item[2], item[0].id))
    return [
        RetrievalCandidate(document=doc, rank=i, lexical_match=lexical, distance=float(dist))
        for i, (doc, lexical, dist) in enumerate(ordered[: max(int(limit), 0)], start=1)
    ]


async def retrieve(
    session: AsyncSession,
    *,
    jurisdiction: str,
    keywords: Sequence[str],
    query_embedding: Sequence[float],
    limit: int = DEFAULT_LIMIT,
    index_cache: Optional[VectorIndexCache] = None,
    context: Optional[Any] = None,
) -> List[RetrievalCandidate]:
    """
    [职责] 辖区作用域内的混合检索：numpy 一次算出全部距离，lexsort 选出前 limit，再按 id 回表。
    [边界] keywords 为空时跳过词法判定（纯向量距离）；存量 embedding 维度不符即 PipelineError；
           未传 index_cache 时为本次调用临时构建索引。
    [上游关系] QueryPipeline.run。
    [下游关系] crag 过滤。
    """
    lexical_ids: Set[str] = set()
    if keywords:
        lexical_ids = await match_chunk_ids(session, jurisdiction=jurisdiction, keywords=keywords)

    cache = index_cache if index_cache is not None else VectorIndexCache()
    index = await cache.get(session, jurisdiction, context=context)
    distances = index.distances(query_embedding)

    top = max(int(limit), 0)
    candidates: List[RetrievalCandidate] = []
    if len(index) and top:
        lexical = np.fromiter((i in lexical_ids for i in index.ids), dtype=bool, count=len(index))
        # ids are sorted, so position breaks distance ties by id
        order = np.lexsort((np.arange(len(index)), distances, ~lexical))[:top]
        picked = {index.ids[i]: (bool(lexical[i]), float(distances[i])) for i in order.tolist()}
        rows = await CodeChunkRepo(session).get_by_ids(list(picked))
        scored = [(CodeDocument.from_model(row), *picked[row.id]) for row in rows]
        candidates = rank_candidates(scored, limit=top)

    log_event(
        logger,
        logging.INFO,
        "retrieval.done",
        context=context,
        fields={
            "corpus_size": len(index),
            "keywords": list(keywords),
            "lexical_hits": len(lexical_ids),
            "returned": len(candidates),
        },
    )
    return candidates
