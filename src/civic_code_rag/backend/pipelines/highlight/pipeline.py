# src/civic_code_rag/backend/pipelines/highlight/pipeline.py

"""
[职责] 高亮编排：对一组文档并发执行（摘录选择 -> 对齐），按输入顺序返回带 marked_text 的结果。
[边界] 单文档失败不影响其它文档（摘录失败视同 "None"，对齐为纯函数）；不截取 top-N（由调用方决定）。
[上游关系] query_service（检索链路内的 top-N）与 /code-search/highlight（前端异步刷新）。
[下游关系] HighlightedDocument -> HTTP DocumentPayload.displayText。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from civic_code_rag.backend.pipelines.retrieval.types import CodeDocument
from civic_code_rag.backend.utils.logging_ import get_logger, log_event

from .aligner import AlignmentResult, align
from .excerpt import select_excerpt


logger = get_logger("pipelines.highlight")


@dataclass(frozen=True)
class HighlightedDocument:
    """A document plus its marked display text and the step that produced it."""

    document: CodeDocument
    marked_text: str
    strategy: str
    excerpt: Optional[str] = None

    @property
    def document_id(self) -> str:
        return self.document.id


async def highlight_document(
    llm: Any,
    *,
    query: str,
    document: CodeDocument,
    keywords: Sequence[str],
    sentence_context: int = 0,
    context: Optional[Any] = None,
) -> HighlightedDocument:
    excerpt = await select_excerpt(
        llm,
        query=query,
        source_text=document.source_text,
        document_id=document.id,
        context=context,
    )
    result: AlignmentResult = align(
        query=query,
        display_text=document.display_text,
        excerpt=excerpt,
        keywords=keywords,
        sentence_context=sentence_context,
    )
    if excerpt is not None and not result.excerpt_valid:
        log_event(
            logger,
            logging.INFO,
            "highlight.excerpt_rejected",
            context=context,
            fields={"document_id": document.id, "strategy": result.strategy},
        )
    return HighlightedDocument(
        document=document,
        marked_text=result.marked_text,
        strategy=result.strategy,
        excerpt=excerpt,
    )


async def highlight_documents(
    llm: Any,
    *,
    query: str,
    documents: Sequence[CodeDocument],
    keywords: Sequence[str],
    sentence_context: int = 0,
    context: Optional[Any] = None,
) -> List[HighlightedDocument]:
    """
    [职责] 并发高亮全部文档（asyncio.gather），结果与输入同序。
    [边界] 空输入返回空列表。
    [上游关系] QueryPipeline.run / QueryPipeline.highlight。
    [下游关系] HighlightedDocument 列表。
    """
    docs = list(documents)
    if not docs:
        return []
    results = await asyncio.gather(
        *(
            highlight_document(
                llm,
                query=query,
                document=d,
                keywords=keywords,
                sentence_context=sentence_context,
                context=context,
            )
            for d in docs
        )
    )
    strategies: Dict[str, int] = {}
    for r in results:
        strategies[r.strategy] = strategies.get(r.strategy, 0) + 1
    log_event(
        logger,
        logging.INFO,
        "highlight.done",
        context=context,
        fields={"documents": len(docs), "strategies": strategies},
    )
    return list(results)
