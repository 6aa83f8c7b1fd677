# src/civic_code_rag/backend/api/errors.py

"""
[职责] API 错误映射：将异常统一转换为 ErrorResponse（JSON）或 SSE error 事件载荷。
[边界] 只在 5xx 时记录一条 api.error 日志；不负责 trace/request 注入（由 middleware/deps 负责）。
[上游关系] routers 捕获异常后调用本模块；SSE 生成器在流中途失败时调用 to_stream_error。
[下游关系] 返回 ErrorResponse 供前端统一展示与重试判断。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from fastapi.responses import JSONResponse

from civic_code_rag.backend.api.schemas_http._common import ErrorResponse
from civic_code_rag.backend.schemas.ids import new_uuid
from civic_code_rag.backend.utils.errors import DomainError, to_http_error
from civic_code_rag.backend.utils.logging_ import get_logger, log_event

_TRACE_HEADER = "x-trace-id"  # docstring: trace header 约定
_REQUEST_HEADER = "x-request-id"  # docstring: request header 约定

logger = get_logger("api.errors")


def _ensure_trace_id(trace_id: Optional[str]) -> str:
    raw = str(trace_id or "").strip()
    if raw:
        return raw  # docstring: 保留上游 trace_id
    return str(new_uuid())  # docstring: 无 trace_id 时生成兜底


def _log_server_error(status_code: int, error: Exception, *, trace_id: str, request_id: Optional[str]) -> None:
    if status_code < 500:
        return
    log_event(
        logger,
        logging.ERROR,
        "api.error",
        context={"trace_id": trace_id, "request_id": request_id},
        fields={
            "status": status_code,
            "error_code": getattr(error, "error_code", None),
            "error_type": type(error).__name__,
            "retryable": getattr(error, "retryable", None),
        },
        exc_info=None if isinstance(error, DomainError) else error,  # docstring: 未知异常保留堆栈
    )


def to_error_response(
    error: Exception,
    *,
    trace_id: Optional[str] = None,
) -> Tuple[int, ErrorResponse]:
    """
    [职责] 将异常转换为 (status_code, ErrorResponse)。
    [边界] 不注入 request_id；不写 header。
    [上游关系] to_json_response / to_stream_error。
    [下游关系] ErrorResponse 结构校验。
    """
    resolved_trace_id = _ensure_trace_id(trace_id)
    status_code, payload = to_http_error(error, trace_id=resolved_trace_id)  # docstring: 领域错误映射
    return status_code, ErrorResponse.model_validate(payload)


def to_json_response(
    error: Exception,
    *,
    trace_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """
    [职责] 将异常转换为 JSONResponse（含 header 透传）。
    [边界] 不修改 error 语义；5xx 记录 api.error。
    [上游关系] routers 捕获异常后调用。
    [下游关系] FastAPI 直接返回该响应对象。
    """
    status_code, response = to_error_response(error, trace_id=trace_id)
    _log_server_error(status_code, error, trace_id=response.error.trace_id, request_id=request_id)

    headers: Dict[str, str] = {}
    if trace_id:
        headers[_TRACE_HEADER] = str(trace_id)  # docstring: 回写 trace_id header
    if request_id:
        headers[_REQUEST_HEADER] = str(request_id)  # docstring: 回写 request_id header

    return JSONResponse(status_code=status_code, content=response.model_dump(), headers=headers)


def to_stream_error(
    error: Exception,
    *,
    trace_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Error body for an SSE ``error`` event once the 200 status line is already sent.

    Carries ``status`` and ``retryable`` inline since no HTTP status is available.
    """
    status_code, response = to_error_response(error, trace_id=trace_id)
    _log_server_error(status_code, error, trace_id=response.error.trace_id, request_id=request_id)
    body = response.model_dump()
    body["status"] = status_code
    body["retryable"] = bool(getattr(error, "retryable", False))
    return body
