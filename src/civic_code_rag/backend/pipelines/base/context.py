# src/civic_code_rag/backend/pipelines/base/context.py

"""
[职责] QueryContext：单次查询的运行上下文（trace 字段、search_id、辖区、计时器）。
[边界] 不持有 session 与模型客户端（由 QueryPipeline 持有并注入各阶段）；不做提交；不跨请求复用。
[上游关系] api/routers 从 TraceContext 构造；services/tests 可直接构造。
[下游关系] log_event(context=ctx) 读取 trace_id/request_id/search_id/jurisdiction；timing 导出 timing_ms。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from civic_code_rag.backend.schemas.audit import TraceContext
from civic_code_rag.backend.schemas.ids import new_uuid

from .timing import TimingCollector


@dataclass
class QueryContext:
    """
    [职责] 聚合单次查询的可观测性字段与计时器。
    [边界] search_id 仅作为关联标识返回给客户端，不落库。
    [上游关系] QueryContext.from_trace(...) 或直接构造。
    [下游关系] pipelines 日志 context；query_service 返回 search_id。
    """

    trace_id: str = field(default_factory=lambda: str(new_uuid()))
    request_id: str = field(default_factory=lambda: str(new_uuid()))
    parent_request_id: Optional[str] = None
    search_id: str = field(default_factory=lambda: str(new_uuid()))  # docstring: 单次检索关联ID
    jurisdiction: Optional[str] = None

    timing: TimingCollector = field(default_factory=TimingCollector)
    meta: Dict[str, Any] = field(default_factory=dict)  # docstring: 额外上下文（如 history 长度）

    @classmethod
    def from_trace(
        cls,
        trace: Optional[TraceContext],
        *,
        jurisdiction: Optional[str] = None,
        search_id: Optional[str] = None,
    ) -> "QueryContext":
        """Build a context that shares trace/request ids with the HTTP layer."""
        ctx = cls(jurisdiction=jurisdiction)
        if trace is not None:
            ctx.trace_id = str(trace.trace_id)
            ctx.request_id = str(trace.request_id)
            ctx.parent_request_id = str(trace.parent_request_id) if trace.parent_request_id else None
        if search_id:
            ctx.search_id = str(search_id)
        return ctx

    def timing_ms(self) -> Dict[str, float]:
        return self.timing.to_dict()
