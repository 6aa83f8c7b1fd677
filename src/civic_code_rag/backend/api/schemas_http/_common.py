# src/civic_code_rag/backend/api/schemas_http/_common.py

"""
[职责] HTTP Schema 公共组件：ErrorResponse 与 camelCase 基类，作为 API 契约基础。
[边界] 仅描述 HTTP 输入/输出结构；不负责 trace 注入、异常映射或业务逻辑。
[上游关系] api/errors 将 DomainError 映射到 ErrorResponse；routers 以 camelCase 收发 JSON。
[下游关系] api/schemas_http/query 复用本模块结构。
"""

from __future__ import annotations

from typing import Any, Dict, Literal, NewType

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


UUIDStr = NewType("UUIDStr", str)  # docstring: 通用 UUID 字符串类型（运行时仍为 str）

TraceId = UUIDStr  # docstring: trace_id（跨请求链路）
RequestId = UUIDStr  # docstring: request_id（单次请求）
SearchId = UUIDStr  # docstring: search_id（单次检索）

ErrorCode = Literal[
    "bad_request",
    "external_dependency",
    "pipeline_error",
    "internal_error",
]  # docstring: HTTP 层标准错误码

ErrorDetail = Dict[str, Any]  # docstring: ErrorResponse.error.detail 结构（必须 JSON-safe）


class CamelModel(BaseModel):
    """
    [职责] camelCase 别名基类：JSON 字段为 camelCase，Python 侧为 snake_case。
    [边界] 两种命名都可入参（populate_by_name）；未知字段拒绝。
    [上游关系] 前端 JSON（responseText/searchId/...）。
    [下游关系] schemas_http/query 的请求/响应模型继承。
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )  # docstring: 锁死字段，避免 drift


class ErrorInfo(BaseModel):
    """
    [职责] ErrorInfo：统一错误载体（code/message/trace_id/detail）。
    [边界] 不包含 HTTP status/retryable；这些由 api/errors.py 决定。
    [上游关系] api/errors.py 将 DomainError 映射为 ErrorInfo。
    [下游关系] 前端统一处理错误展示。
    """

    model_config = ConfigDict(extra="forbid")

    code: ErrorCode = Field(...)  # docstring: 错误码（标准枚举）
    message: str = Field(..., min_length=1)  # docstring: 人类可读错误信息
    trace_id: TraceId = Field(...)  # docstring: 全链路追踪ID（由 middleware 注入）
    detail: ErrorDetail = Field(default_factory=dict)  # docstring: 结构化细节（可为空）


class ErrorResponse(BaseModel):
    """HTTP error body: ``{"error": {...}}``; trace/request ids are echoed in headers too."""

    model_config = ConfigDict(extra="forbid")

    error: ErrorInfo = Field(...)  # docstring: 错误主体
