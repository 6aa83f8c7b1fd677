# src/civic_code_rag/backend/db/repo/code_chunk_repo.py

"""
[职责] CodeChunkRepo：法规片段（code_chunk）的最小写入、按 id 回表与按辖区读取向量列。
[边界] 不负责 embedding 计算与全文检索（见 EmbeddingCache / db.fts）；只持久化与读取片段。
[上游关系] scripts/init_db.py 加载语料后批量写入；VectorIndexCache 按 jurisdiction 读取向量；hybrid retriever 按 id 回表。
[下游关系] 检索排序、高亮对齐以 CodeChunkModel.display_text/source_text 为输入。
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.code_chunk import CodeChunkModel


class CodeChunkRepo:
    """Code chunk repository (async SQLAlchemy)."""

    def __init__(self, session: AsyncSession):
        self._session = session  # docstring: DB 会话（由 deps 注入）

    async def get_by_ids(self, chunk_ids: Sequence[str]) -> List[CodeChunkModel]:
        """
        Fetch chunks by ids, returned in the order of ``chunk_ids``.

        Missing ids are skipped.
        """
        ids = [str(x) for x in chunk_ids if str(x or "").strip()]
        if not ids:
            return []
        stmt = select(CodeChunkModel).where(CodeChunkModel.id.in_(ids))
        rows = list((await self._session.execute(stmt)).scalars().all())
        by_id = {r.id: r for r in rows}
        return [by_id[i] for i in ids if i in by_id]  # docstring: 保持排序结果顺序

    async def list_embeddings(self, jurisdiction: str) -> List[Tuple[str, List[float]]]:
        """(id, embedding) pairs of one jurisdiction, ordered by id."""  # docstring: 只读向量列，构建内存索引
        stmt = (
            select(CodeChunkModel.id, CodeChunkModel.embedding)
            .where(CodeChunkModel.jurisdiction == str(jurisdiction))
            .order_by(CodeChunkModel.id.asc())
        )
        rows = (await self._session.execute(stmt)).all()
        return [(str(i), list(e or [])) for i, e in rows]

    async def corpus_fingerprint(self, jurisdiction: str) -> Tuple[int, Optional[str]]:
        """(chunk count, latest updated_at) of one jurisdiction; changes whenever its corpus does."""
        stmt = select(func.count(CodeChunkModel.id), func.max(CodeChunkModel.updated_at)).where(
            CodeChunkModel.jurisdiction == str(jurisdiction)
        )
        count, latest = (await self._session.execute(stmt)).one()
        return int(count or 0), (str(latest) if latest is not None else None)

    async def count_by_jurisdiction(self) -> Dict[str, int]:
        """Chunk counts grouped by jurisdiction."""  # docstring: health/运维查看语料规模
        stmt = select(CodeChunkModel.jurisdiction, func.count(CodeChunkModel.id)).group_by(
            CodeChunkModel.jurisdiction
        )
        rows = (await self._session.execute(stmt)).all()
        return {str(j): int(c) for j, c in rows}

    async def bulk_create(self, rows: Sequence[Mapping[str, Any]]) -> List[CodeChunkModel]:
        """
        Insert chunks from plain mappings.

        Required keys: jurisdiction, source_text, display_text, embedding.
        Optional keys: id, heading, title, source_url.
        """  # docstring: 语料加载入口（flush，不 commit）
        created: List[CodeChunkModel] = []
        for r in rows:
            kwargs: Dict[str, Any] = {
                "jurisdiction": str(r["jurisdiction"]),
                "source_text": str(r["source_text"]),
                "display_text": str(r["display_text"]),
                "heading": str(r.get("heading") or ""),
                "title": str(r.get("title") or ""),
                "source_url": r.get("source_url"),
                "embedding": [float(x) for x in (r.get("embedding") or [])],
            }
            if r.get("id"):
                kwargs["id"] = str(r["id"])  # docstring: 语料自带 ID 时保留
            chunk = CodeChunkModel(**kwargs)
            self._session.add(chunk)
            created.append(chunk)
        await self._session.flush()
        return created
