# playground/generation_gate/test_generation_gate.py

"""
[职责] generation_gate：验证答案 prompt 装配（辖区法规名、历史成对、文档原文）、非流式/流式调用与 LLM 适配层。
[边界] 仅做离线可验证闭环；不依赖外部 LLM；不评估答案质量。
[上游关系] pipelines/answer/synthesizer.py + pipelines/llm.py + pipelines/embedder.py。
[下游关系] QueryResult.response_text 与 SSE token 事件。
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, List

import pytest

from civic_code_rag.backend.pipelines.answer.synthesizer import (
    build_answer_messages,
    code_name_for,
    stream_answer,
    synthesize_answer,
)
from civic_code_rag.backend.pipelines.embedder import embed_batch, resolve_embedder
from civic_code_rag.backend.pipelines.llm import (
    build_pipeline_models,
    chat_text,
    extract_text,
    resolve_llm,
    stream_llm,
)
from civic_code_rag.backend.pipelines.retrieval.types import CodeDocument
from civic_code_rag.backend.schemas.query import ConversationTurn


pytestmark = pytest.mark.generation_gate


DOCS = [
    CodeDocument(id="d1", jurisdiction="johnson_county_ks", source_text="Churches are conditional uses.", display_text="x"),
    CodeDocument(id="d2", jurisdiction="johnson_county_ks", source_text="Parking: 1 space per 4 seats.", display_text="y"),
]


def test_build_answer_messages_layout() -> None:
    history = [
        ConversationTurn(question="first q", answer="first a"),
        ConversationTurn(question="second q", answer="second a", search_id="s-2"),
    ]
    messages = build_answer_messages(
        query="Can I build a church?",
        jurisdiction="johnson_county_ks",
        documents=DOCS,
        history=history,
    )

    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user", "assistant", "user"]
    assert "snippets of Johnson County Zoning Regulation code" in messages[0]["content"]
    assert [m["content"] for m in messages[1:5]] == ["first q", "first a", "second q", "second a"]
    final = messages[-1]["content"]
    assert final.startswith("USER QUERY:\nCan I build a church?")
    assert "SUPPORTING DOCUMENTS:\nChurches are conditional uses.\n\nParking: 1 space per 4 seats." in final


def test_code_name_fallback() -> None:
    assert code_name_for("oak_ridge_tn") == "Oak Ridge Zoning Ordinance"
    assert code_name_for("somewhere_else") == "somewhere_else"


@pytest.mark.asyncio
async def test_synthesize_answer_returns_model_text(make_llm) -> None:
    llm = make_llm("Yes, with a conditional use permit.")
    text = await synthesize_answer(llm, query="Can I build a church?", jurisdiction="johnson_county_ks", documents=DOCS)
    assert text == "Yes, with a conditional use permit."
    assert "Churches are conditional uses." in llm.calls[0]


@pytest.mark.asyncio
async def test_stream_answer_yields_deltas(make_llm) -> None:
    llm = make_llm("Churches need a permit.", stream_chunk_size=5)
    deltas: List[str] = []
    async for d in stream_answer(llm, query="q", jurisdiction="johnson_county_ks", documents=DOCS):
        deltas.append(d)
    assert len(deltas) > 1
    assert "".join(deltas) == "Churches need a permit."


@pytest.mark.asyncio
async def test_stream_llm_falls_back_to_single_chunk() -> None:
    class _ChatOnly:
        async def achat(self, messages: Any, **_kwargs: Any) -> Any:
            return SimpleNamespace(message=SimpleNamespace(content="whole answer"))

    out = [d async for d in stream_llm(llm=_ChatOnly(), messages=[{"role": "user", "content": "hi"}])]
    assert out == ["whole answer"]


def test_extract_text_shapes() -> None:
    assert extract_text(None) == ""
    assert extract_text(SimpleNamespace(message=SimpleNamespace(content="a"))) == "a"
    assert extract_text(SimpleNamespace(text="b")) == "b"
    assert extract_text("c") == "c"


@pytest.mark.asyncio
async def test_mock_provider_runs_offline() -> None:
    llm = resolve_llm(provider="mock", model_name="mock")
    text = await chat_text(llm, [{"role": "user", "content": "hello world"}])
    assert "hello world" in text  # docstring: MockLLM 回显 prompt

    with pytest.raises(ValueError):
        resolve_llm(provider="nope", model_name="x")


@pytest.mark.asyncio
async def test_hash_embedder_is_deterministic() -> None:
    embedder = resolve_embedder(provider="hash", model="hash", dim=16)
    a = await embed_batch(embedder, ["Church", "RLD"])
    b = await embed_batch(embedder, ["Church"])

    assert len(a) == 2
    assert all(len(v) == 16 for v in a)
    assert a[0] == b[0]
    assert a[0] != a[1]
    assert await embed_batch(embedder, []) == []

    with pytest.raises(ValueError):
        resolve_embedder(provider="nope", model="x", dim=8)


def test_openai_embedder_receives_request_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")  # docstring: 仅构造对象，不发请求
    embedder = resolve_embedder(provider="openai", model="text-embedding-3-small", dim=1536, timeout=12.5)
    assert embedder.timeout == 12.5


def test_pipeline_models_share_request_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    settings = SimpleNamespace(
        MODEL_PROVIDER="mock",
        LLM_REQUEST_TIMEOUT_S=7.0,
        OLLAMA_BASE_URL="http://localhost:11434",
        KEYWORD_MODEL="mock",
        JUDGE_MODEL="mock",
        HIGHLIGHT_MODEL="mock",
        ANSWER_MODEL="mock",
        STREAM_ANSWER_MODEL="mock",
        EMBED_PROVIDER="openai",
        EMBED_MODEL="text-embedding-3-small",
        EMBED_DIM=1536,
    )
    models = build_pipeline_models(settings)
    assert models.embedder.timeout == 7.0
