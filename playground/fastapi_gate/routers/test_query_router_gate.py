# playground/fastapi_gate/routers/test_query_router_gate.py

"""
[职责] Query router gate：验证 /code-search 系列接口的 camelCase 契约、错误映射、header 透传与 SSE 分帧。
[边界] QueryPipeline 由 stub 模型构造并写入 app.state；DB 使用测试 session。
[上游关系] backend/api/routers/query.py + main.create_app。
[下游关系] 前端依赖此响应结构。
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List, Tuple

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from civic_code_rag.backend.api.deps import get_session
from civic_code_rag.backend.main import create_app
from civic_code_rag.backend.pipelines.llm import PipelineModels
from civic_code_rag.backend.pipelines.retrieval.embedding_cache import EmbeddingCache
from civic_code_rag.backend.schemas.ids import new_uuid
from civic_code_rag.backend.services.query_service import QueryPipeline
from civic_code_rag.backend.utils.constants import NO_RELEVANT_RESULTS_TEXT


pytestmark = pytest.mark.fastapi_gate

DIM = 4
CHURCH_Q = "Can I build a church?"
CHURCH_TEXT = "Churches and places of worship are conditional uses in the RUR district."
SIGN_TEXT = "Signs may not exceed thirty-two square feet."


def _build_app(session: AsyncSession, pipeline: QueryPipeline) -> FastAPI:
    async def _override_session() -> AsyncIterator[AsyncSession]:
        yield session  # docstring: reuse test session

    app = create_app(pipeline=pipeline, init_schema=False)
    app.state.query_pipeline = pipeline  # docstring: ASGITransport 不触发 lifespan
    app.dependency_overrides[get_session] = _override_session
    return app


def _pipeline(sessionmaker: Any, make_llm: Any, make_embedder: Any, *, answer: Any = "It is a conditional use.") -> QueryPipeline:
    embedder = make_embedder(
        dim=DIM,
        vectors={CHURCH_Q: [1.0, 0.0, 0.0, 0.0], CHURCH_TEXT: [1.0, 0.1, 0.0, 0.0], SIGN_TEXT: [0.0, 1.0, 0.0, 0.0]},
    )
    models = PipelineModels(
        keyword_llm=make_llm("None"),
        judge_llm=make_llm(lambda p: "yes" if "Document: Churches" in p else "no"),
        highlight_llm=make_llm(lambda p: "places of worship" if "Churches" in p else "None"),
        answer_llm=make_llm(answer),
        stream_answer_llm=make_llm(answer, stream_chunk_size=5),
        embedder=embedder,
    )
    cache = EmbeddingCache(sessionmaker=sessionmaker, embedder=embedder, dim=DIM, max_chars=8000)
    return QueryPipeline(models=models, embedding_cache=cache)


def _headers() -> Dict[str, str]:
    return {"x-trace-id": str(new_uuid()), "x-request-id": str(new_uuid())}


def _parse_sse(body: str) -> List[Tuple[str, Any]]:
    events: List[Tuple[str, Any]] = []
    for frame in body.split("\n\n"):
        if not frame.strip():
            continue
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


@pytest.mark.asyncio
async def test_code_search_router_gate(
    session: AsyncSession, sessionmaker, insert_chunks, make_chunk_row, make_llm, make_embedder
) -> None:
    await insert_chunks(
        [
            make_chunk_row("church", CHURCH_TEXT, embedding=[1.0, 0.1, 0.0, 0.0], title="Table of uses"),
            make_chunk_row("sign", SIGN_TEXT, embedding=[0.0, 1.0, 0.0, 0.0]),
        ]
    )
    app = _build_app(session, _pipeline(sessionmaker, make_llm, make_embedder))
    headers = _headers()

    payload = {
        "query": CHURCH_Q,
        "jurisdictionOrCorpus": "joco",
        "conversationHistory": [{"question": "What is RUR?", "answer": "A rural district."}],
    }
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post("/code-search", json=payload, headers=headers)

    assert resp.status_code == 200
    data = resp.json()
    assert set(data) == {"responseText", "documents", "searchId", "keywords"}
    assert data["responseText"] == "It is a conditional use."
    assert len(data["documents"]) == 1
    doc = data["documents"][0]
    assert doc["id"] == "church"
    assert doc["displayText"] == (
        "Churches and <mark>places of worship</mark> are conditional uses in the RUR district."
    )
    assert doc["sourceText"] == CHURCH_TEXT
    assert doc["highlightStrategy"] == "positional"
    assert doc["title"] == "Table of uses"
    assert data["searchId"]
    assert resp.headers["x-trace-id"] == headers["x-trace-id"]  # docstring: trace_id must propagate
    assert resp.headers["x-request-id"] == headers["x-request-id"]  # docstring: request_id must propagate


@pytest.mark.asyncio
async def test_code_search_empty_result_is_200(
    session: AsyncSession, sessionmaker, make_llm, make_embedder
) -> None:
    app = _build_app(session, _pipeline(sessionmaker, make_llm, make_embedder))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post("/code-search", json={"query": CHURCH_Q, "jurisdictionOrCorpus": "cupertino_ca"})

    assert resp.status_code == 200
    data = resp.json()
    assert data["responseText"] == NO_RELEVANT_RESULTS_TEXT
    assert data["documents"] == []


@pytest.mark.asyncio
async def test_code_search_errors_use_error_response(
    session: AsyncSession, sessionmaker, make_llm, make_embedder
) -> None:
    app = _build_app(session, _pipeline(sessionmaker, make_llm, make_embedder))
    headers = _headers()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        bad_corpus = await client.post(
            "/code-search", json={"query": CHURCH_Q, "jurisdictionOrCorpus": "atlantis"}, headers=headers
        )
        blank = await client.post("/code-search", json={"query": "  ", "jurisdictionOrCorpus": "joco"})
        unknown_field = await client.post(
            "/code-search", json={"query": CHURCH_Q, "jurisdictionOrCorpus": "joco", "debug": True}
        )

    assert bad_corpus.status_code == 400
    err = bad_corpus.json()["error"]
    assert err["code"] == "bad_request"
    assert err["trace_id"] == headers["x-trace-id"]
    assert err["detail"]["jurisdiction"] == "atlantis"
    assert bad_corpus.headers["x-request-id"] == headers["x-request-id"]

    assert blank.status_code == 400
    assert unknown_field.status_code == 422  # docstring: extra=forbid


@pytest.mark.asyncio
async def test_highlight_router_gate(session: AsyncSession, sessionmaker, make_llm, make_embedder) -> None:
    app = _build_app(session, _pipeline(sessionmaker, make_llm, make_embedder))
    payload = {
        "query": CHURCH_Q,
        "keywords": ["thirty-two"],
        "documents": [
            {"id": "sign", "jurisdiction": "johnson_county_ks", "displayText": SIGN_TEXT},
            {"id": "church", "jurisdiction": "johnson_county_ks", "sourceText": CHURCH_TEXT, "displayText": CHURCH_TEXT},
        ],
    }
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post("/code-search/highlight", json=payload)

    assert resp.status_code == 200
    docs = resp.json()["documents"]
    assert [d["id"] for d in docs] == ["sign", "church"]
    assert docs[0]["displayText"] == "Signs may not exceed <mark>thirty-two</mark> square feet."
    assert docs[0]["highlightStrategy"] == "keyword"
    assert docs[0]["sourceText"] == SIGN_TEXT  # docstring: 缺 sourceText 时以 displayText 兜底
    assert "<mark>places of worship</mark>" in docs[1]["displayText"]


@pytest.mark.asyncio
async def test_generate_router_streams_sse(session: AsyncSession, sessionmaker, make_llm, make_embedder) -> None:
    app = _build_app(session, _pipeline(sessionmaker, make_llm, make_embedder, answer="Churches need a permit."))
    payload = {
        "query": CHURCH_Q,
        "jurisdictionOrCorpus": "joco",
        "documents": [{"id": "church", "sourceText": CHURCH_TEXT, "displayText": CHURCH_TEXT}],
    }
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post("/code-search/generate", json=payload)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    events = _parse_sse(resp.text)
    names = [name for name, _ in events]
    assert names[-1] == "done"
    assert set(names[:-1]) == {"token"}
    assert "".join(data for name, data in events if name == "token") == "Churches need a permit."
    assert events[-1][1]["searchId"]
    assert events[-1][1]["latencyMs"] >= 0


@pytest.mark.asyncio
async def test_generate_router_errors(session: AsyncSession, sessionmaker, make_llm, make_embedder) -> None:
    def _boom(_prompt: str) -> str:
        raise RuntimeError("stream model down")

    app = _build_app(session, _pipeline(sessionmaker, make_llm, make_embedder, answer=_boom))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        invalid = await client.post(
            "/code-search/generate", json={"query": CHURCH_Q, "jurisdictionOrCorpus": "atlantis"}
        )
        failed = await client.post(
            "/code-search/generate", json={"query": CHURCH_Q, "jurisdictionOrCorpus": "joco"}
        )

    assert invalid.status_code == 400  # docstring: 入参错误在流开始前返回 JSON
    assert invalid.json()["error"]["code"] == "bad_request"

    assert failed.status_code == 200
    events = _parse_sse(failed.text)
    assert [name for name, _ in events] == ["error"]
    body = events[0][1]
    assert body["error"]["code"] == "external_dependency"
    assert body["error"]["detail"]["service"] == "answer"
    assert body["status"] == 503
    assert body["retryable"] is True
