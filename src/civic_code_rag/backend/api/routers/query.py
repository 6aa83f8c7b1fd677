# src/civic_code_rag/backend/api/routers/query.py

"""
[职责] Query Router：暴露 /code-search（检索+过滤+高亮+答案）、/code-search/highlight（重新高亮）与 /code-search/generate（SSE 流式答案）。
[边界] 不直接调用 pipelines；不控制事务；仅做 camelCase 映射、错误映射与 SSE 分帧。
[上游关系] 前端发起检索、异步高亮刷新与流式答案请求。
[下游关系] QueryPipeline（app.state）执行编排并返回结果。
"""

from __future__ import annotations

import json
import time
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from civic_code_rag.backend.api.deps import (
    get_query_context,
    get_query_pipeline,
    get_session,
)
from civic_code_rag.backend.api.errors import to_json_response, to_stream_error
from civic_code_rag.backend.api.schemas_http.query import (
    DocumentPayload,
    GenerateRequest,
    HighlightRequest,
    HighlightResponse,
    QueryRequest,
    QueryResponse,
)
from civic_code_rag.backend.pipelines.base.context import QueryContext
from civic_code_rag.backend.services.query_service import QueryPipeline, QueryResult


router = APIRouter(prefix="/code-search", tags=["code-search"])  # docstring: code-search 路由前缀

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # docstring: 关闭 nginx 缓冲
}


def sse_event(event: str, data: Any) -> str:
    """Format one Server-Sent Event frame."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def _to_query_response(result: QueryResult) -> QueryResponse:
    return QueryResponse(
        response_text=result.response_text,
        documents=[DocumentPayload.from_highlighted(d) for d in result.documents],
        search_id=result.search_id,
        keywords=list(result.keywords),
    )


@router.post("", response_model=QueryResponse)
async def code_search(
    request: QueryRequest,
    session: AsyncSession = Depends(get_session),
    pipeline: QueryPipeline = Depends(get_query_pipeline),
    ctx: QueryContext = Depends(get_query_context),
) -> QueryResponse:
    """
    [职责] 执行完整查询链路并返回答案与高亮文档。
    [边界] 空结果返回 200 + "No relevant code chunks found."；异常统一转为 ErrorResponse。
    [上游关系] 前端检索请求。
    [下游关系] QueryPipeline.run。
    """
    try:
        result = await pipeline.run(
            session,
            query=request.query,
            jurisdiction=request.jurisdiction_or_corpus,
            history=request.to_history(),
            context=ctx,
        )
    except Exception as exc:
        return to_json_response(exc, trace_id=ctx.trace_id, request_id=ctx.request_id)  # type: ignore[return-value]
    return _to_query_response(result)


@router.post("/highlight", response_model=HighlightResponse)
async def code_search_highlight(
    request: HighlightRequest,
    pipeline: QueryPipeline = Depends(get_query_pipeline),
    ctx: QueryContext = Depends(get_query_context),
) -> HighlightResponse:
    """Re-align every posted document against the query; order is preserved."""
    try:
        highlighted = await pipeline.highlight(
            query=request.query,
            documents=request.to_documents(),
            keywords=request.keywords,
            context=ctx,
        )
    except Exception as exc:
        return to_json_response(exc, trace_id=ctx.trace_id, request_id=ctx.request_id)  # type: ignore[return-value]
    return HighlightResponse(documents=[DocumentPayload.from_highlighted(d) for d in highlighted])


@router.post("/generate")
async def code_search_generate(
    request: GenerateRequest,
    pipeline: QueryPipeline = Depends(get_query_pipeline),
    ctx: QueryContext = Depends(get_query_context),
) -> Any:
    """
    [职责] 以 SSE 流式返回答案增量（event: token），结束时 event: done。
    [边界] 入参错误在流开始前以 JSON 4xx 返回；流中途失败以 event: error 结束。
    [上游关系] 前端在拿到 /code-search 文档后请求流式答案。
    [下游关系] QueryPipeline.stream_answer。
    """
    start_ts = time.perf_counter()
    try:
        deltas = pipeline.stream_answer(
            query=request.query,
            jurisdiction=request.jurisdiction_or_corpus,
            documents=request.to_documents(),
            history=request.to_history(),
            context=ctx,
        )  # docstring: 同步校验 query/辖区
    except Exception as exc:
        return to_json_response(exc, trace_id=ctx.trace_id, request_id=ctx.request_id)

    async def _events() -> AsyncIterator[str]:
        try:
            async for delta in deltas:
                yield sse_event("token", delta)
        except Exception as exc:
            yield sse_event("error", to_stream_error(exc, trace_id=ctx.trace_id, request_id=ctx.request_id))
            return
        yield sse_event(
            "done",
            {
                "searchId": ctx.search_id,
                "latencyMs": round((time.perf_counter() - start_ts) * 1000.0, 3),
            },
        )

    return StreamingResponse(_events(), media_type="text/event-stream", headers=SSE_HEADERS)
