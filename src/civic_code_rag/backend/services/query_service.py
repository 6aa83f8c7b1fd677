# src/civic_code_rag/backend/services/query_service.py

"""
[职责] query_service：编排查询链路（关键词 ‖ query embedding -> 混合检索 -> CRAG -> top-N 高亮 -> 答案生成），并施加整体 deadline。
[边界] 不处理 HTTP 语义（camelCase/SSE 在 api 层）；不持久化检索历史；致命阶段失败转为 DomainError 上抛，非致命失败在各 pipeline 内降级。
[上游关系] api/routers/query.py 从 app.state 取得 QueryPipeline，并注入 session 与 QueryContext。
[下游关系] QueryResult -> QueryResponse；HighlightedDocument -> DocumentPayload；stream_answer -> SSE。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from civic_code_rag.backend.pipelines.answer.synthesizer import stream_answer, synthesize_answer
from civic_code_rag.backend.pipelines.base.context import QueryContext
from civic_code_rag.backend.pipelines.highlight.pipeline import HighlightedDocument, highlight_documents
from civic_code_rag.backend.pipelines.llm import PipelineModels
from civic_code_rag.backend.pipelines.relevance.crag import filter_relevant
from civic_code_rag.backend.pipelines.retrieval.embedding_cache import EmbeddingCache
from civic_code_rag.backend.pipelines.retrieval.hybrid import retrieve
from civic_code_rag.backend.pipelines.retrieval.keywords import extract_keywords
from civic_code_rag.backend.pipelines.retrieval.types import CodeDocument
from civic_code_rag.backend.pipelines.retrieval.vector_index import VectorIndexCache
from civic_code_rag.backend.schemas.query import ConversationTurn
from civic_code_rag.backend.utils.constants import (
    JURISDICTION_ALIASES,
    JURISDICTION_CODE_NAMES,
    NO_RELEVANT_RESULTS_TEXT,
    STAGE_ANSWER,
    STAGE_CRAG,
    STAGE_EMBED,
    STAGE_HIGHLIGHT,
    STAGE_KEYWORDS,
    STAGE_RETRIEVE,
    TIMING_MS_KEY,
)
from civic_code_rag.backend.utils.errors import (
    BadRequestError,
    DeadlineExceededError,
    DomainError,
    UnknownJurisdictionError,
    UpstreamServiceError,
)
from civic_code_rag.backend.utils.logging_ import get_logger, hash_text, log_event, truncate_text


logger = get_logger("services.query")


@dataclass(frozen=True)
class QueryResult:
    """
    [职责] 单次查询的最终结果（空结果也是正常结果）。
    [边界] documents 为空时 response_text 恒为 NO_RELEVANT_RESULTS_TEXT。
    [上游关系] QueryPipeline.run。
    [下游关系] routers/query.py 映射为 QueryResponse。
    """

    response_text: str
    documents: List[HighlightedDocument]
    search_id: str
    keywords: List[str] = field(default_factory=list)
    timing_ms: Dict[str, float] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.documents


def resolve_jurisdiction(value: Optional[str]) -> str:
    """
    Canonical jurisdiction id from an id or URL alias (``joco`` -> ``johnson_county_ks``).

    Raises UnknownJurisdictionError (a BadRequestError) for unknown values.
    """
    raw = str(value or "").strip().lower()
    key = JURISDICTION_ALIASES.get(raw, raw)
    if key not in JURISDICTION_CODE_NAMES:
        raise UnknownJurisdictionError(raw, known=JURISDICTION_CODE_NAMES)
    return key


def _require_query(query: Optional[str]) -> str:
    text = str(query or "").strip()
    if not text:
        raise BadRequestError(message="query is required")
    return text


class QueryPipeline:
    """
    [职责] 查询链路的长生命周期对象：持有模型名册、EmbeddingCache 与链路开关。
    [边界] 不持有 session（按请求注入）；唯一跨请求状态是按辖区缓存的向量索引（语料变化即重建）。
    [上游关系] main.lifespan 构造一次放入 app.state；tests 直接构造并注入 stub。
    [下游关系] run / highlight / stream_answer。
    """

    def __init__(
        self,
        *,
        models: PipelineModels,
        embedding_cache: EmbeddingCache,
        use_crag: bool = True,
        retrieval_limit: int = 30,
        highlight_top_n: int = 5,
        sentence_context: int = 0,
        pipeline_timeout_s: Optional[float] = 90.0,
    ) -> None:
        self._models = models
        self._embedding_cache = embedding_cache
        self.use_crag = bool(use_crag)
        self.retrieval_limit = int(retrieval_limit)
        self.highlight_top_n = int(highlight_top_n)
        self.sentence_context = int(sentence_context)
        self.pipeline_timeout_s = pipeline_timeout_s
        self._vector_indexes = VectorIndexCache()

    @classmethod
    def from_settings(
        cls,
        *,
        models: PipelineModels,
        embedding_cache: EmbeddingCache,
        settings: Any,
    ) -> "QueryPipeline":
        return cls(
            models=models,
            embedding_cache=embedding_cache,
            use_crag=settings.USE_CRAG,
            retrieval_limit=settings.RETRIEVAL_LIMIT,
            highlight_top_n=settings.HIGHLIGHT_TOP_N,
            sentence_context=settings.HIGHLIGHT_SENTENCE_CONTEXT,
            pipeline_timeout_s=settings.PIPELINE_TIMEOUT_S,
        )

    async def run(
        self,
        session: AsyncSession,
        *,
        query: str,
        jurisdiction: str,
        history: Sequence[ConversationTurn] = (),
        context: Optional[QueryContext] = None,
    ) -> QueryResult:
        """
        [职责] 执行完整查询链路，整体受 pipeline_timeout_s 约束。
        [边界] 空 query / 未知辖区 -> BadRequestError；超时 -> ExternalDependencyError（retryable）。
        [上游关系] POST /code-search。
        [下游关系] QueryResult。
        """
        query_text = _require_query(query)
        jurisdiction_id = resolve_jurisdiction(jurisdiction)
        ctx = context or QueryContext()
        ctx.jurisdiction = jurisdiction_id

        log_event(
            logger,
            logging.INFO,
            "query.start",
            context=ctx,
            fields={
                "query": truncate_text(query_text),
                "query_sha256": hash_text(query_text),
                "history_turns": len(history),
                "use_crag": self.use_crag,
            },
        )
        try:
            if self.pipeline_timeout_s and self.pipeline_timeout_s > 0:
                result = await asyncio.wait_for(
                    self._run(session, query=query_text, jurisdiction=jurisdiction_id, history=history, ctx=ctx),
                    timeout=float(self.pipeline_timeout_s),
                )
            else:
                result = await self._run(
                    session, query=query_text, jurisdiction=jurisdiction_id, history=history, ctx=ctx
                )
        except asyncio.TimeoutError as exc:
            log_event(
                logger,
                logging.ERROR,
                "query.deadline_exceeded",
                context=ctx,
                fields={"timeout_s": self.pipeline_timeout_s, TIMING_MS_KEY: ctx.timing_ms()},
            )
            raise DeadlineExceededError(timeout_s=self.pipeline_timeout_s, cause=exc)
        except DomainError as exc:
            log_event(
                logger,
                logging.ERROR,
                "query.failed",
                context=ctx,
                fields={"error_code": exc.error_code, TIMING_MS_KEY: ctx.timing_ms()},
            )
            raise

        log_event(
            logger,
            logging.INFO,
            "query.done",
            context=ctx,
            fields={"documents": len(result.documents), "empty": result.is_empty, TIMING_MS_KEY: result.timing_ms},
        )
        return result

    async def _run(
        self,
        session: AsyncSession,
        *,
        query: str,
        jurisdiction: str,
        history: Sequence[ConversationTurn],
        ctx: QueryContext,
    ) -> QueryResult:
        query_embedding, keywords = await asyncio.gather(
            self._embed_query(query, ctx),
            self._extract_keywords(query, ctx),
        )

        with ctx.timing.stage(STAGE_RETRIEVE):
            candidates = await retrieve(
                session,
                jurisdiction=jurisdiction,
                keywords=keywords,
                query_embedding=query_embedding,
                limit=self.retrieval_limit,
                index_cache=self._vector_indexes,
                context=ctx,
            )
        if not candidates:
            log_event(
                logger,
                logging.WARNING,
                "query.no_candidates",
                context=ctx,
                fields={"keywords": keywords},
            )
            return self._empty_result(ctx, keywords)

        with ctx.timing.stage(STAGE_CRAG):
            report = await filter_relevant(
                self._models.judge_llm,
                question=query,
                candidates=candidates,
                enabled=self.use_crag,
                context=ctx,
            )
        if not report.relevant:
            return self._empty_result(ctx, keywords)

        top_documents = [c.document for c in report.relevant[: self.highlight_top_n]]
        with ctx.timing.stage(STAGE_HIGHLIGHT):
            highlighted = await highlight_documents(
                self._models.highlight_llm,
                query=query,
                documents=top_documents,
                keywords=keywords,
                sentence_context=self.sentence_context,
                context=ctx,
            )

        with ctx.timing.stage(STAGE_ANSWER):
            try:
                response_text = await synthesize_answer(
                    self._models.answer_llm,
                    query=query,
                    jurisdiction=jurisdiction,
                    documents=top_documents,
                    history=history,
                )
            except Exception as exc:
                raise UpstreamServiceError(service="answer", cause=exc, detail={"error_type": type(exc).__name__})

        return QueryResult(
            response_text=response_text,
            documents=highlighted,
            search_id=ctx.search_id,
            keywords=keywords,
            timing_ms=ctx.timing_ms(),
        )

    async def _embed_query(self, query: str, ctx: QueryContext) -> List[float]:
        with ctx.timing.stage(STAGE_EMBED):
            try:
                embeddings = await self._embedding_cache.embed([query], context=ctx)
            except DomainError:
                raise
            except Exception as exc:
                raise UpstreamServiceError(service="embedding", cause=exc, detail={"error_type": type(exc).__name__})
        vector = embeddings.get(query)
        if vector is None:
            raise UpstreamServiceError(service="embedding", message="query embedding unavailable")
        return vector

    async def _extract_keywords(self, query: str, ctx: QueryContext) -> List[str]:
        with ctx.timing.stage(STAGE_KEYWORDS):
            try:
                return await extract_keywords(self._models.keyword_llm, query, context=ctx)
            except Exception as exc:
                raise UpstreamServiceError(service="keywords", cause=exc, detail={"error_type": type(exc).__name__})

    def _empty_result(self, ctx: QueryContext, keywords: List[str]) -> QueryResult:
        return QueryResult(
            response_text=NO_RELEVANT_RESULTS_TEXT,
            documents=[],
            search_id=ctx.search_id,
            keywords=keywords,
            timing_ms=ctx.timing_ms(),
        )

    async def highlight(
        self,
        *,
        query: str,
        documents: Sequence[CodeDocument],
        keywords: Sequence[str],
        context: Optional[QueryContext] = None,
    ) -> List[HighlightedDocument]:
        """
        [职责] 对客户端回传的文档重新高亮（与 run 中的高亮步骤一致）。
        [边界] 不检索、不过滤、不截取 top-N；空 query -> BadRequestError。
        [上游关系] POST /code-search/highlight。
        [下游关系] HighlightedDocument 列表（与输入同序）。
        """
        query_text = _require_query(query)
        ctx = context or QueryContext()
        with ctx.timing.stage(STAGE_HIGHLIGHT):
            return await highlight_documents(
                self._models.highlight_llm,
                query=query_text,
                documents=documents,
                keywords=keywords,
                sentence_context=self.sentence_context,
                context=ctx,
            )

    def stream_answer(
        self,
        *,
        query: str,
        jurisdiction: str,
        documents: Sequence[CodeDocument],
        history: Sequence[ConversationTurn] = (),
        context: Optional[QueryContext] = None,
    ) -> AsyncIterator[str]:
        """
        [职责] 以流式模型生成答案增量（输入校验在首个 await 之前完成）。
        [边界] 流中途的上游失败包装为 UpstreamServiceError 抛给 SSE 生成器。
        [上游关系] POST /code-search/generate。
        [下游关系] SSE token 事件。
        """
        query_text = _require_query(query)
        jurisdiction_id = resolve_jurisdiction(jurisdiction)
        ctx = context or QueryContext()
        ctx.jurisdiction = jurisdiction_id
        return self._stream(query_text, jurisdiction_id, list(documents), list(history), ctx)

    async def _stream(
        self,
        query: str,
        jurisdiction: str,
        documents: List[CodeDocument],
        history: List[ConversationTurn],
        ctx: QueryContext,
    ) -> AsyncIterator[str]:
        chars = 0
        try:
            with ctx.timing.stage(STAGE_ANSWER):
                async for delta in stream_answer(
                    self._models.stream_answer_llm,
                    query=query,
                    jurisdiction=jurisdiction,
                    documents=documents,
                    history=history,
                ):
                    chars += len(delta)
                    yield delta
        except Exception as exc:
            log_event(
                logger,
                logging.ERROR,
                "answer.stream_failed",
                context=ctx,
                fields={"chars_sent": chars, "error": f"{type(exc).__name__}: {exc}"},
            )
            raise UpstreamServiceError(service="answer", cause=exc, detail={"error_type": type(exc).__name__})
        log_event(
            logger,
            logging.INFO,
            "answer.stream_done",
            context=ctx,
            fields={"documents": len(documents), "chars": chars, TIMING_MS_KEY: ctx.timing_ms()},
        )
