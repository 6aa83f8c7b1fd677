# src/civic_code_rag/backend/schemas/audit.py

"""
[职责] TraceContext：一次请求的追踪上下文（trace_id/request_id/parent_request_id + tags）。
[边界] 仅标识与轻量 tags；不包含 span 细节。
[上游关系] api/middleware 从 header 解析或生成；deps.get_trace_context 注入路由。
[下游关系] services/pipelines 的结构化日志字段；错误响应 trace_id。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .ids import UUIDStr, new_uuid


class TraceContext(BaseModel):
    """Trace identifiers for one request; header values win over generated ones."""

    model_config = ConfigDict(extra="allow")

    trace_id: UUIDStr = Field(default_factory=new_uuid)  # docstring: 全链路追踪ID
    request_id: UUIDStr = Field(default_factory=new_uuid)  # docstring: 单次 HTTP 请求ID

    parent_request_id: Optional[UUIDStr] = Field(default=None)  # docstring: 上游请求ID（可选）
    tags: Dict[str, Any] = Field(default_factory=dict)  # docstring: 扩展 tags（user-agent 等）
