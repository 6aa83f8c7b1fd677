# src/civic_code_rag/backend/db/models/__init__.py

"""
[职责] db.models 聚合导出：集中声明 ORM Models，供 init_db 注册元数据。
[边界] 仅做导入与 __all__ 暴露。
[上游关系] code_chunk / embedding_cache 模型文件。
[下游关系] engine.init_db、repo 层、scripts。
"""

from __future__ import annotations

from ..base import Base
from .code_chunk import CodeChunkModel
from .embedding_cache import EmbeddingCacheModel

__all__ = [
    "Base",
    "CodeChunkModel",
    "EmbeddingCacheModel",
]
