# src/civic_code_rag/backend/api/schemas_http/query.py

"""
[职责] /code-search 系列接口的 HTTP 契约（camelCase JSON）。
[边界] 仅做结构校验与内部类型映射（CodeDocument/ConversationTurn）；不做辖区解析（见 query_service）。
[上游关系] 前端 POST /code-search、/code-search/highlight、/code-search/generate。
[下游关系] routers/query.py 调用 to_document/to_history 进入 QueryPipeline；from_highlighted 回填响应。
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import Field

from civic_code_rag.backend.pipelines.highlight.pipeline import HighlightedDocument
from civic_code_rag.backend.pipelines.retrieval.types import CodeDocument
from civic_code_rag.backend.schemas.query import ConversationTurn

from ._common import CamelModel, SearchId


class ConversationTurnPayload(CamelModel):
    """One prior question/answer pair; searchId only links the turn back to its search."""

    question: str = Field(...)  # docstring: 历史问题
    answer: str = Field(default="")  # docstring: 历史回答
    search_id: Optional[SearchId] = Field(default=None)  # docstring: 历史 searchId（可空）

    def to_turn(self) -> ConversationTurn:
        return ConversationTurn(question=self.question, answer=self.answer, search_id=self.search_id)


class DocumentPayload(CamelModel):
    """
    [职责] 线上的法规片段（请求与响应同构）。
    [边界] displayText 视为 HTML-safe；响应中 highlightStrategy 标记高亮来源，请求中可省略。
    [上游关系] 前端回传（highlight/generate）或 query_service 结果映射。
    [下游关系] CodeDocument（to_document）。
    """

    id: str = Field(..., min_length=1)  # docstring: 片段ID
    jurisdiction: str = Field(default="")  # docstring: 辖区标识
    source_text: str = Field(default="")  # docstring: 供 LLM 阅读的原文
    display_text: str = Field(default="")  # docstring: 供前端展示的文本（可含 <mark>）
    heading: str = Field(default="")  # docstring: 章节标题
    title: str = Field(default="")  # docstring: 条文标题
    source_url: Optional[str] = Field(default=None)  # docstring: 原文链接
    highlight_strategy: Optional[str] = Field(default=None)  # docstring: 高亮策略名（仅响应）

    def to_document(self) -> CodeDocument:
        return CodeDocument(
            id=self.id,
            jurisdiction=self.jurisdiction,
            source_text=self.source_text or self.display_text,  # docstring: 缺原文时以展示文本兜底
            display_text=self.display_text,
            heading=self.heading,
            title=self.title,
            source_url=self.source_url,
        )

    @classmethod
    def from_highlighted(cls, item: HighlightedDocument) -> "DocumentPayload":
        doc = item.document
        return cls(
            id=doc.id,
            jurisdiction=doc.jurisdiction,
            source_text=doc.source_text,
            display_text=item.marked_text,
            heading=doc.heading,
            title=doc.title,
            source_url=doc.source_url,
            highlight_strategy=item.strategy,
        )


class QueryRequest(CamelModel):
    """POST /code-search body."""

    query: str = Field(...)  # docstring: 用户问题（空白由 service 判定 400）
    conversation_history: List[ConversationTurnPayload] = Field(default_factory=list)  # docstring: 最近在最后
    jurisdiction_or_corpus: str = Field(...)  # docstring: 辖区标识或 URL 短名

    def to_history(self) -> List[ConversationTurn]:
        return [t.to_turn() for t in self.conversation_history]


class QueryResponse(CamelModel):
    """
    [职责] POST /code-search 响应。
    [边界] documents 为空时 responseText 恒为 "No relevant code chunks found."。
    [上游关系] QueryResult。
    [下游关系] 前端渲染答案与高亮文档；keywords 供后续 /highlight 复用。
    """

    response_text: str = Field(...)  # docstring: 生成的答案
    documents: List[DocumentPayload] = Field(default_factory=list)  # docstring: 过滤后已高亮的文档
    search_id: SearchId = Field(...)  # docstring: 本次检索ID
    keywords: List[str] = Field(default_factory=list)  # docstring: 抽取到的关键词


class HighlightRequest(CamelModel):
    """POST /code-search/highlight body."""

    query: str = Field(...)
    documents: List[DocumentPayload] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)

    def to_documents(self) -> List[CodeDocument]:
        return [d.to_document() for d in self.documents]


class HighlightResponse(CamelModel):
    documents: List[DocumentPayload] = Field(default_factory=list)  # docstring: 与请求同序


class GenerateRequest(QueryRequest):
    """POST /code-search/generate body: a query plus the documents the answer is grounded on."""

    documents: List[DocumentPayload] = Field(default_factory=list)

    def to_documents(self) -> List[CodeDocument]:
        return [d.to_document() for d in self.documents]
