# src/civic_code_rag/backend/pipelines/base/timing.py

"""
[职责] 查询链路阶段计时：embed/keywords/retrieve/crag/highlight/answer 的毫秒耗时收集与导出。
[边界] 不做分布式 tracing；不写日志（由 query_service 在 query.done 事件中输出）。
[上游关系] query_service 用 stage(...) 包裹各阶段。
[下游关系] 日志字段 timing_ms；gate tests 对阶段 key 做结构断言。
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

from civic_code_rag.backend.utils.constants import TIMING_TOTAL_KEY


def _now_ms() -> float:
    """Monotonic clock in milliseconds (relative durations only)."""
    return time.perf_counter() * 1000.0


@dataclass
class TimingCollector:
    """
    [职责] 收集单次查询各阶段耗时（ms），导出为可 JSON 序列化的 dict。
    [边界] 单请求内使用；并发子任务（CRAG/高亮 fan-out）整体计为一个阶段。
    [上游关系] QueryContext.timing。
    [下游关系] query.done 日志的 timing_ms 字段。
    """

    _stages_ms: Dict[str, float] = field(default_factory=dict)
    _start_ms: float = field(default_factory=_now_ms)

    def add_ms(self, key: str, ms: float) -> None:
        """Accumulate ``ms`` into stage ``key`` (negative durations clamp to 0)."""
        k = str(key).strip()
        if not k:
            return
        self._stages_ms[k] = self._stages_ms.get(k, 0.0) + max(float(ms), 0.0)

    @contextmanager
    def stage(self, key: str) -> Iterator[None]:
        """
        with timing.stage("crag"): ...

        Duration is recorded even when the wrapped block raises, so failed
        stages still show up in the error log line.
        """
        start = _now_ms()
        try:
            yield
        finally:
            self.add_ms(key, _now_ms() - start)

    def total_ms(self) -> float:
        return _now_ms() - self._start_ms

    def get(self, key: str, default: Optional[float] = None) -> Optional[float]:
        return self._stages_ms.get(key, default)

    def to_dict(self, *, include_total: bool = True, total_key: str = TIMING_TOTAL_KEY) -> Dict[str, float]:
        """Stage durations rounded to 0.01 ms, plus the total since creation."""
        out = {k: round(v, 2) for k, v in self._stages_ms.items()}
        if include_total:
            out[total_key] = round(self.total_ms(), 2)
        return out
