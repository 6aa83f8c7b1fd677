# src/civic_code_rag/backend/pipelines/answer/synthesizer.py

"""
[职责] 答案生成：拼装 system prompt（辖区法规名）+ 对话历史（user/assistant 成对）+ 用户 prompt（query + 支撑文档原文），调用生成模型。
[边界] 不做重试；上游失败原样上抛（由 query_service 转为 UpstreamServiceError）；不解析/改写模型输出。
[上游关系] query_service（非流式）与 /code-search/generate（流式）。
[下游关系] QueryResult.response_text / SSE token 事件。
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

from civic_code_rag.backend.pipelines.llm import chat_text, stream_llm
from civic_code_rag.backend.pipelines.retrieval.types import CodeDocument
from civic_code_rag.backend.schemas.query import ConversationTurn
from civic_code_rag.backend.utils.constants import JURISDICTION_CODE_NAMES


ANSWER_SYSTEM_PROMPT_TEMPLATE = """You will be provided with a USER QUERY as well as some SUPPORTING DOCUMENTS. Use the supporting documents to answer the user's question.

The SUPPORTING DOCUMENTS are snippets of {code_name} code.
It's possible that the SUPPORTING DOCUMENTS do not contain the answer, and in those cases it's ok to say that you don't have enough information to answer the question."""

ANSWER_USER_PROMPT_TEMPLATE = """USER QUERY:
{query}

SUPPORTING DOCUMENTS:
{documents}"""

ANSWER_GENERATION_CONFIG: Dict[str, Any] = {"temperature": 0}


def code_name_for(jurisdiction: str) -> str:
    """Human-readable code name; unknown jurisdictions fall back to the raw identifier."""
    return JURISDICTION_CODE_NAMES.get(jurisdiction, jurisdiction)


def build_answer_messages(
    *,
    query: str,
    jurisdiction: str,
    documents: Sequence[CodeDocument],
    history: Sequence[ConversationTurn] = (),
) -> List[Mapping[str, Any]]:
    """
    [职责] 构造完整消息列表：system -> 历史 (user, assistant)* -> 当前 user。
    [边界] 历史顺序即输入顺序（最近的在最后）；文档只取 source_text，以空行分隔。
    [上游关系] synthesize_answer / stream_answer。
    [下游关系] llm.chat_text / llm.stream_llm。
    """
    messages: List[Mapping[str, Any]] = [
        {"role": "system", "content": ANSWER_SYSTEM_PROMPT_TEMPLATE.format(code_name=code_name_for(jurisdiction))}
    ]
    for turn in history:
        messages.append({"role": "user", "content": turn.question})
        messages.append({"role": "assistant", "content": turn.answer})
    messages.append(
        {
            "role": "user",
            "content": ANSWER_USER_PROMPT_TEMPLATE.format(
                query=query,
                documents="\n\n".join(d.source_text for d in documents),
            ),
        }
    )
    return messages


async def synthesize_answer(
    llm: Any,
    *,
    query: str,
    jurisdiction: str,
    documents: Sequence[CodeDocument],
    history: Sequence[ConversationTurn] = (),
    generation_config: Optional[Mapping[str, Any]] = None,
) -> str:
    messages = build_answer_messages(query=query, jurisdiction=jurisdiction, documents=documents, history=history)
    return await chat_text(llm, messages, generation_config=generation_config or ANSWER_GENERATION_CONFIG)


async def stream_answer(
    llm: Any,
    *,
    query: str,
    jurisdiction: str,
    documents: Sequence[CodeDocument],
    history: Sequence[ConversationTurn] = (),
    generation_config: Optional[Mapping[str, Any]] = None,
) -> AsyncIterator[str]:
    """Yield answer text deltas as the model produces them."""
    messages = build_answer_messages(query=query, jurisdiction=jurisdiction, documents=documents, history=history)
    async for delta in stream_llm(
        llm=llm,
        messages=messages,
        generation_config=generation_config or ANSWER_GENERATION_CONFIG,
    ):
        yield delta
