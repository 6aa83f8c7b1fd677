# src/civic_code_rag/backend/pipelines/llm.py

"""
[职责] LLM 适配层：基于 LlamaIndex LLM 抽象构造各角色模型（keywords/judge/highlight/answer），统一 chat/stream 调用与文本提取。
[边界] 不拼 prompt（见各 pipeline 模块）；不解析业务输出；不做重试（失败由调用方按阶段语义降级或上抛）。
[上游关系] main.lifespan 调用 build_pipeline_models(settings)；tests 直接构造 PipelineModels 注入 stub。
[下游关系] keywords/crag/excerpt/synthesizer 调用 call_llm/stream_llm 与 extract_text。
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from inspect import Parameter
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence


__all__ = [
    "PipelineModels",
    "build_chat_messages",
    "build_pipeline_models",
    "call_llm",
    "chat_text",
    "extract_text",
    "resolve_llm",
    "stream_llm",
]


def _load_llama_index() -> Dict[str, Any]:
    """
    [职责] 延迟加载 LlamaIndex 消息类型（ChatMessage/MessageRole）。
    [边界] 仅负责 import；不执行任何模型逻辑。
    [上游关系] build_chat_messages 调用。
    [下游关系] ChatMessage 构建。
    """
    try:
        from llama_index.core.llms import ChatMessage, MessageRole  # type: ignore  # docstring: 消息类型
    except Exception as exc:  # pragma: no cover - 依赖缺失场景
        raise ImportError("llama_index is required for llm calls") from exc
    return {"ChatMessage": ChatMessage, "MessageRole": MessageRole}


def _filter_kwargs(fn: Any, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """
    [职责] 过滤参数，仅保留目标函数支持的关键字。
    [边界] 不做值校验；目标支持 **kwargs 时全部透传。
    [上游关系] resolve_llm/call_llm/stream_llm 调用。
    [下游关系] LLM 构造与调用参数。
    """
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return {}
    for p in sig.parameters.values():
        if p.kind == Parameter.VAR_KEYWORD:
            return dict(kwargs)  # docstring: 支持 **kwargs 时避免静默丢参
    return {k: v for k, v in kwargs.items() if k in sig.parameters}


def _build_mock_llm(*, model_name: str) -> Any:
    """
    [职责] 构造 LlamaIndex MockLLM（离线冒烟：回显 prompt）。
    [边界] 输出无业务语义；judge 会落入 MALFORMED，关键词为 prompt 片段。
    [上游关系] resolve_llm(provider="mock")。
    [下游关系] call_llm。
    """
    try:
        from llama_index.core.llms import MockLLM  # type: ignore
    except Exception:
        from llama_index.core.llms.mock import MockLLM  # type: ignore  # docstring: 兼容路径

    kwargs = {"model_name": model_name}
    return MockLLM(**_filter_kwargs(MockLLM.__init__, kwargs))


def resolve_llm(
    *,
    provider: str,
    model_name: str,
    generation_config: Optional[Mapping[str, Any]] = None,
) -> Any:
    """
    [职责] 根据 provider/model 构造 LlamaIndex LLM 实例。
    [边界] 支持 openai / ollama / mock；未知 provider 抛 ValueError。
    [上游关系] build_pipeline_models。
    [下游关系] call_llm/stream_llm。
    """
    provider_key = str(provider or "").strip().lower()
    model = str(model_name or "").strip()
    cfg = dict(generation_config or {})

    if provider_key in {"mock", "local"}:
        return _build_mock_llm(model_name=model or "mock")
    if provider_key == "openai":
        from llama_index.llms.openai import OpenAI  # type: ignore

        kwargs = {"model": model, **cfg}
        return OpenAI(**_filter_kwargs(OpenAI.__init__, kwargs))
    if provider_key == "ollama":
        from llama_index.llms.ollama import Ollama  # type: ignore

        cfg.setdefault("request_timeout", 300.0)  # docstring: 本地模型长上下文易 ReadTimeout
        kwargs = {"model": model, **cfg}
        return Ollama(**_filter_kwargs(Ollama.__init__, kwargs))

    raise ValueError(f"unsupported model provider: {provider}")


def _resolve_role(role: str, message_role: Any) -> Any:
    raw = str(role or "").strip().lower()
    for key in ("SYSTEM", "USER", "ASSISTANT"):
        if raw == key.lower():
            return getattr(message_role, key)
    return message_role.USER  # docstring: 未知角色回退 user


def build_chat_messages(messages: Sequence[Mapping[str, Any]]) -> List[Any]:
    """
    [职责] 将 {"role","content"} 字典列表转换为 LlamaIndex ChatMessage 列表。
    [边界] 仅处理 role/content。
    [上游关系] pipeline 模块构造 prompt 后调用。
    [下游关系] call_llm/stream_llm 输入。
    """
    li = _load_llama_index()
    ChatMessage = li["ChatMessage"]
    MessageRole = li["MessageRole"]
    return [
        ChatMessage(role=_resolve_role(m.get("role", "user"), MessageRole), content=str(m.get("content") or ""))
        for m in messages
    ]


def _messages_to_prompt(messages: Sequence[Any]) -> str:
    """Flatten chat messages into one prompt for completion-only LLMs."""
    lines: List[str] = []
    for msg in messages:
        role = str(getattr(msg, "role", "") or "")
        content = str(getattr(msg, "content", "") or "")
        lines.append(f"{role.upper()}:\n{content}" if role else content)
    return "\n\n".join(lines).strip()


async def call_llm(
    *,
    llm: Any,
    messages: Sequence[Any],
    generation_config: Optional[Mapping[str, Any]] = None,
) -> Any:
    """
    [职责] 调用 LLM（优先 achat，其次 chat/acomplete/complete）。
    [边界] 不解析输出；异常原样上抛。
    [上游关系] chat_text。
    [下游关系] extract_text。
    """
    cfg = dict(generation_config or {})
    if hasattr(llm, "achat"):
        return await llm.achat(messages, **_filter_kwargs(llm.achat, cfg))
    if hasattr(llm, "chat"):
        return llm.chat(messages, **_filter_kwargs(llm.chat, cfg))

    prompt = _messages_to_prompt(messages)
    if hasattr(llm, "acomplete"):
        return await llm.acomplete(prompt, **_filter_kwargs(llm.acomplete, cfg))
    if hasattr(llm, "complete"):
        return llm.complete(prompt, **_filter_kwargs(llm.complete, cfg))

    raise AttributeError("LLM instance missing chat/complete interfaces")


def extract_text(response: Any) -> str:
    """
    [职责] 从 LLM 响应中提取文本内容。
    [边界] 只做字段探测（message.content / text / response）。
    [上游关系] chat_text。
    [下游关系] 各阶段解析器。
    """
    if response is None:
        return ""
    msg = getattr(response, "message", None)
    if msg is not None and hasattr(msg, "content"):
        return str(getattr(msg, "content") or "")
    if hasattr(response, "text"):
        return str(getattr(response, "text") or "")
    if hasattr(response, "response"):
        return str(getattr(response, "response") or "")
    return str(response)


async def chat_text(
    llm: Any,
    messages: Sequence[Mapping[str, Any]],
    *,
    generation_config: Optional[Mapping[str, Any]] = None,
) -> str:
    """One chat round-trip: dict messages in, response text out."""
    response = await call_llm(
        llm=llm,
        messages=build_chat_messages(messages),
        generation_config=generation_config,
    )
    return extract_text(response)


async def stream_llm(
    *,
    llm: Any,
    messages: Sequence[Mapping[str, Any]],
    generation_config: Optional[Mapping[str, Any]] = None,
) -> AsyncIterator[str]:
    """
    [职责] 流式调用 LLM，逐段产出文本增量（delta）。
    [边界] LLM 不支持 astream_chat 时退化为单段完整输出。
    [上游关系] synthesizer.stream_answer。
    [下游关系] SSE 响应。
    """
    chat_messages = build_chat_messages(messages)
    cfg = dict(generation_config or {})
    if not hasattr(llm, "astream_chat"):
        response = await call_llm(llm=llm, messages=chat_messages, generation_config=cfg)
        text = extract_text(response)
        if text:
            yield text
        return

    gen = await llm.astream_chat(chat_messages, **_filter_kwargs(llm.astream_chat, cfg))
    async for chunk in gen:
        delta = getattr(chunk, "delta", None)
        if delta:
            yield str(delta)


@dataclass(frozen=True)
class PipelineModels:
    """
    [职责] 查询链路的模型名册：每个角色一个 LLM 实例，另含 embedding 模型。
    [边界] 只持有客户端对象；不持有 session/缓存。
    [上游关系] build_pipeline_models 或 tests 直接构造 stub。
    [下游关系] QueryPipeline 按角色取用。
    """

    keyword_llm: Any
    judge_llm: Any
    highlight_llm: Any
    answer_llm: Any
    stream_answer_llm: Any
    embedder: Any


def build_pipeline_models(settings: Any) -> PipelineModels:
    """
    [职责] 从 Settings 构造全部角色模型（temperature=0，统一请求超时）。
    [边界] 仅构造对象，不发起网络请求。
    [上游关系] main.lifespan。
    [下游关系] QueryPipeline。
    """
    from .embedder import resolve_embedder

    provider = str(settings.MODEL_PROVIDER)
    cfg: Dict[str, Any] = {
        "temperature": 0,
        "timeout": float(settings.LLM_REQUEST_TIMEOUT_S),
    }
    if provider.strip().lower() == "ollama":
        cfg = {"temperature": 0, "base_url": settings.OLLAMA_BASE_URL}

    def _llm(model_name: str) -> Any:
        return resolve_llm(provider=provider, model_name=model_name, generation_config=cfg)

    return PipelineModels(
        keyword_llm=_llm(settings.KEYWORD_MODEL),
        judge_llm=_llm(settings.JUDGE_MODEL),
        highlight_llm=_llm(settings.HIGHLIGHT_MODEL),
        answer_llm=_llm(settings.ANSWER_MODEL),
        stream_answer_llm=_llm(settings.STREAM_ANSWER_MODEL),
        embedder=resolve_embedder(
            provider=settings.EMBED_PROVIDER,
            model=settings.EMBED_MODEL,
            dim=int(settings.EMBED_DIM),
            timeout=float(settings.LLM_REQUEST_TIMEOUT_S),
        ),
    )
