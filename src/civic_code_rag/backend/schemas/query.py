# src/civic_code_rag/backend/schemas/query.py

"""
[职责] 查询链路内部契约：对话历史条目（ConversationTurn）。
[边界] 不表达 HTTP 字段命名（camelCase 在 api/schemas_http）；不持久化。
[上游关系] routers 将 HTTP history 映射为 ConversationTurn 列表。
[下游关系] answer synthesizer 按顺序折叠为 user/assistant 消息对。
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationTurn(BaseModel):
    """
    [职责] 一轮历史问答（question/answer），顺序即时间顺序（最近的在最后）。
    [边界] search_id 仅用于前端串联，不参与 prompt。
    [上游关系] HTTP conversationHistory。
    [下游关系] synthesizer._history_messages。
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    question: str = Field(...)  # docstring: 用户历史问题
    answer: str = Field(default="")  # docstring: 历史回答
    search_id: Optional[str] = Field(default=None)  # docstring: 历史检索ID（可空）
