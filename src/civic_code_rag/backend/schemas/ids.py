# src/civic_code_rag/backend/schemas/ids.py

"""
[职责] ID 契约层：统一 trace/request/search 等标识的类型别名与生成策略（UUID v4 string）。
[边界] 不依赖 ORM；代码片段ID（chunk id）为语料侧不透明字符串，不强制 UUID。
[上游关系] 无（纯工具/契约层）。
[下游关系] schemas/audit、api/middleware、services 生成与传递标识时使用。
"""

from __future__ import annotations

from typing import NewType
from uuid import UUID, uuid4


UUIDStr = NewType("UUIDStr", str)  # docstring: 统一 UUID 字符串类型（运行时仍为 str）

TraceId = UUIDStr  # docstring: 全链路追踪ID
RequestId = UUIDStr  # docstring: 单次 HTTP 请求ID
SearchId = UUIDStr  # docstring: 单次检索ID（返回给前端，用于对话 history 串联）

ChunkId = NewType("ChunkId", str)  # docstring: code_chunk.id（语料侧不透明主键）


def new_uuid() -> UUIDStr:
    """Generate UUID v4 as string."""  # docstring: 系统内唯一 ID 的默认生成策略
    return UUIDStr(str(uuid4()))


def is_uuid_str(value: str) -> bool:
    """Return True if value parses as UUID string."""
    try:
        UUID(str(value))
        return True
    except (TypeError, ValueError):
        return False
