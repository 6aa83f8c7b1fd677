# src/civic_code_rag/backend/db/repo/__init__.py

"""
[职责] db.repo 聚合导出：集中暴露仓储（Repo）对象，供 pipelines/services/scripts 调用。
[边界] 仅做导入与 __all__ 暴露；不包含业务编排。
[上游关系] code_chunk_repo / embedding_cache_repo。
[下游关系] hybrid retriever、EmbeddingCache、scripts/init_db.py 与 gate tests。
"""

from __future__ import annotations

from .code_chunk_repo import CodeChunkRepo
from .embedding_cache_repo import EmbeddingCacheRepo

__all__ = [
    "CodeChunkRepo",
    "EmbeddingCacheRepo",
]
