# src/civic_code_rag/backend/pipelines/retrieval/types.py
"""
[职责] 查询链路共享类型：CodeDocument（不可变文档快照）与 RetrievalCandidate（带排名的检索候选）。
[边界] 仅定义数据结构；不包含检索/过滤/高亮逻辑；不依赖 DB 会话。
[上游关系] hybrid retriever 由 CodeChunkModel 构造；HTTP 层由 DocumentPayload 构造。
[下游关系] crag/aligner/synthesizer/query_service 共享同一文档结构。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class CodeDocument:
    """
    [职责] 法规片段的只读快照（不含 embedding）。
    [边界] display_text 视为 HTML-safe，高亮只插入 <mark> 标记。
    [上游关系] CodeDocument.from_model / api 层 payload 映射。
    [下游关系] 各阶段读取 source_text（LLM 上下文）与 display_text（高亮落点）。
    """

    id: str
    jurisdiction: str
    source_text: str
    display_text: str
    heading: str = ""
    title: str = ""
    source_url: Optional[str] = None

    @classmethod
    def from_model(cls, model: Any) -> "CodeDocument":
        """Snapshot a CodeChunkModel row."""
        return cls(
            id=str(model.id),
            jurisdiction=str(model.jurisdiction),
            source_text=str(model.source_text or ""),
            display_text=str(model.display_text or ""),
            heading=str(model.heading or ""),
            title=str(model.title or ""),
            source_url=model.source_url,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jurisdiction": self.jurisdiction,
            "source_text": self.source_text,
            "display_text": self.display_text,
            "heading": self.heading,
            "title": self.title,
            "source_url": self.source_url,
        }


@dataclass(frozen=True)
class RetrievalCandidate:
    """
    [职责] 检索候选：文档 + 1-based 排名 + 词法命中标记 + 余弦距离。
    [边界] 临时对象，不落库；rank 由 hybrid 排序后一次性赋值。
    [上游关系] hybrid.retrieve 产出。
    [下游关系] crag.filter_relevant 保序过滤；query_service 取 document 高亮。
    """

    document: CodeDocument
    rank: int
    lexical_match: bool
    distance: float

    @property
    def document_id(self) -> str:
        return self.document.id
