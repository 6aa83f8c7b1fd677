# src/civic_code_rag/backend/api/middleware.py

"""
[职责] API Middleware：注入 trace_id/request_id，统计请求耗时并写一条 http.request 访问日志。
[边界] 不做业务逻辑与异常映射；不重算 pipeline timing（见 QueryContext.timing）。
[上游关系] main.create_app 注册本 middleware。
[下游关系] deps/routers 读取 request.state.trace_context 与 timing_ms。
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from civic_code_rag.backend.schemas.audit import TraceContext
from civic_code_rag.backend.schemas.ids import UUIDStr, new_uuid
from civic_code_rag.backend.utils.constants import TIMING_TOTAL_MS_KEY
from civic_code_rag.backend.utils.logging_ import get_logger, log_event

_TRACE_HEADER = "x-trace-id"  # docstring: trace header 约定
_REQUEST_HEADER = "x-request-id"  # docstring: request header 约定
_PARENT_HEADER = "x-parent-request-id"  # docstring: parent request header（可选）

logger = get_logger("api.http")


def _resolve_header_id(value: Optional[str]) -> Optional[str]:
    raw = str(value or "").strip()
    return raw or None  # docstring: 空值回退 None


class TraceContextMiddleware(BaseHTTPMiddleware):
    """
    [职责] 注入 trace/request id，并记录 request 总耗时。
    [边界] 不捕获异常（由 routers/errors.py 映射）；流式响应的耗时只覆盖到响应头发出。
    [上游关系] FastAPI app.add_middleware 注册。
    [下游关系] deps.get_trace_context 使用 request.state.trace_context。
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_ts = time.perf_counter()

        trace_id = _resolve_header_id(request.headers.get(_TRACE_HEADER)) or str(new_uuid())
        request_id = _resolve_header_id(request.headers.get(_REQUEST_HEADER)) or str(new_uuid())
        parent_request_id = _resolve_header_id(request.headers.get(_PARENT_HEADER))

        trace_context = TraceContext(
            trace_id=UUIDStr(trace_id),
            request_id=UUIDStr(request_id),
            parent_request_id=UUIDStr(parent_request_id) if parent_request_id else None,
            tags={"user_agent": request.headers.get("user-agent")},
        )
        request.state.trace_context = trace_context  # docstring: 注入上下文
        request.state.trace_id = trace_id
        request.state.request_id = request_id
        request.state.parent_request_id = parent_request_id

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            total_ms = (time.perf_counter() - start_ts) * 1000.0
            request.state.timing_ms = {TIMING_TOTAL_MS_KEY: total_ms}
            log_event(
                logger,
                logging.INFO,
                "http.request",
                context=trace_context,
                fields={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    TIMING_TOTAL_MS_KEY: round(total_ms, 3),
                },
            )

        response.headers[_TRACE_HEADER] = trace_id  # docstring: 回写 trace_id header
        response.headers[_REQUEST_HEADER] = request_id  # docstring: 回写 request_id header
        return response
