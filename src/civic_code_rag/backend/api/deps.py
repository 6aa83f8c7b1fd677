# src/civic_code_rag/backend/api/deps.py

"""
[职责] API 依赖装配：提供 session、trace_context、QueryPipeline 与 QueryContext 注入。
[边界] 不做业务逻辑；不提交事务；QueryPipeline 只从 app.state 读取，不在请求内构造。
[上游关系] FastAPI 路由层调用依赖注入；main.lifespan 写入 app.state.query_pipeline。
[下游关系] routers 通过本模块获取依赖实例。
"""

from __future__ import annotations

from fastapi import Depends, Request

from civic_code_rag.backend.db.engine import get_session
from civic_code_rag.backend.pipelines.base.context import QueryContext
from civic_code_rag.backend.schemas.audit import TraceContext
from civic_code_rag.backend.schemas.ids import UUIDStr, new_uuid
from civic_code_rag.backend.services.query_service import QueryPipeline
from civic_code_rag.backend.utils.errors import InternalError


__all__ = [
    "get_query_context",
    "get_query_pipeline",
    "get_session",
    "get_trace_context",
]


def get_trace_context(request: Request) -> TraceContext:
    """
    [职责] 获取或创建 TraceContext（优先使用 middleware 注入）。
    [边界] 不写入日志；不校验 UUID 格式。
    [上游关系] middleware 注入 request.state.trace_context。
    [下游关系] routers/errors 需要 trace_id/request_id 时调用。
    """
    existing = getattr(request.state, "trace_context", None)
    if isinstance(existing, TraceContext):
        return existing  # docstring: 复用 middleware 注入的 TraceContext

    trace_id = str(getattr(request.state, "trace_id", "") or "").strip() or str(new_uuid())
    request_id = str(getattr(request.state, "request_id", "") or "").strip() or str(new_uuid())
    parent_request_id = str(getattr(request.state, "parent_request_id", "") or "").strip()

    ctx = TraceContext(
        trace_id=UUIDStr(trace_id),
        request_id=UUIDStr(request_id),
        parent_request_id=UUIDStr(parent_request_id) if parent_request_id else None,
        tags={},
    )  # docstring: 未挂 middleware 时兜底构造
    request.state.trace_context = ctx
    request.state.trace_id = trace_id
    request.state.request_id = request_id
    return ctx


def get_query_pipeline(request: Request) -> QueryPipeline:
    """
    [职责] 读取 lifespan 构造的 QueryPipeline 单例。
    [边界] 未初始化视为部署错误（InternalError），不在请求内懒加载模型。
    [上游关系] routers/query 依赖注入；tests 通过 dependency_overrides 替换。
    [下游关系] QueryPipeline.run/highlight/stream_answer。
    """
    pipeline = getattr(request.app.state, "query_pipeline", None)
    if not isinstance(pipeline, QueryPipeline):
        raise InternalError(message="query pipeline is not initialized")
    return pipeline


def get_query_context(trace_context: TraceContext = Depends(get_trace_context)) -> QueryContext:
    """Fresh QueryContext per request (new search_id) sharing the HTTP trace ids."""
    return QueryContext.from_trace(trace_context)
