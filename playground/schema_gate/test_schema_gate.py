# playground/schema_gate/test_schema_gate.py

"""
[职责] Schema gate：对内部 schemas 与 HTTP camelCase 契约做综合断言，防止字段漂移、extra 策略漂移、默认值漂移。
[边界] 不触发 DB/模型；不测试 pipelines；只测试 Pydantic schema 的结构与约束行为。
[上游关系] backend/schemas/{ids,audit,query} + api/schemas_http/{_common,query}。
[下游关系] routers 与前端依赖这些合同。
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from civic_code_rag.backend.api.schemas_http._common import ErrorInfo, ErrorResponse
from civic_code_rag.backend.api.schemas_http.query import (
    DocumentPayload,
    GenerateRequest,
    HighlightRequest,
    QueryRequest,
    QueryResponse,
)
from civic_code_rag.backend.pipelines.highlight.pipeline import HighlightedDocument
from civic_code_rag.backend.pipelines.retrieval.types import CodeDocument
from civic_code_rag.backend.schemas.audit import TraceContext
from civic_code_rag.backend.schemas.ids import is_uuid_str, new_uuid
from civic_code_rag.backend.schemas.query import ConversationTurn


pytestmark = pytest.mark.schema_gate


# -----------------------------
# ids.py / audit.py
# -----------------------------


def test_ids_new_uuid_is_valid_uuid_str() -> None:
    """new_uuid() must return UUID v4 string-like value."""  # docstring: 基础ID合同
    u = new_uuid()
    assert isinstance(u, str)
    assert len(u) == 36
    assert is_uuid_str(u) is True
    assert is_uuid_str("not-a-uuid") is False


def test_trace_context_defaults_and_extra() -> None:
    ctx = TraceContext(tags={"user_agent": "pytest"}, client="web")
    assert is_uuid_str(ctx.trace_id)
    assert is_uuid_str(ctx.request_id)
    assert ctx.parent_request_id is None
    assert ctx.model_dump()["client"] == "web"  # docstring: extra=allow


# -----------------------------
# query.py
# -----------------------------


def test_conversation_turn_is_frozen_and_strict() -> None:
    turn = ConversationTurn(question="q")
    assert turn.answer == ""
    with pytest.raises(ValidationError):
        turn.question = "changed"  # type: ignore[misc]
    with pytest.raises(ValidationError):
        ConversationTurn(question="q", role="user")


# -----------------------------
# schemas_http/query.py
# -----------------------------


def test_query_request_accepts_camel_and_snake() -> None:
    camel = QueryRequest.model_validate(
        {
            "query": "Can I build a church?",
            "jurisdictionOrCorpus": "joco",
            "conversationHistory": [{"question": "a", "answer": "b", "searchId": "s-1"}],
        }
    )
    snake = QueryRequest(query="x", jurisdiction_or_corpus="joco")

    assert camel.jurisdiction_or_corpus == "joco"
    assert camel.to_history() == [ConversationTurn(question="a", answer="b", search_id="s-1")]
    assert snake.conversation_history == []


def test_query_request_rejects_missing_and_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        QueryRequest.model_validate({"query": "x"})
    with pytest.raises(ValidationError):
        QueryRequest.model_validate({"query": "x", "jurisdictionOrCorpus": "joco", "kbId": "k"})


def test_query_response_dumps_camel_case() -> None:
    resp = QueryResponse(response_text="ok", search_id=new_uuid(), keywords=["RLD"])
    dumped = resp.model_dump(by_alias=True)
    assert set(dumped) == {"responseText", "documents", "searchId", "keywords"}
    assert dumped["documents"] == []


def test_document_payload_round_trip_through_highlight() -> None:
    payload = DocumentPayload.model_validate({"id": "d1", "displayText": "Quarrying", "sourceUrl": "https://x"})
    doc = payload.to_document()
    assert isinstance(doc, CodeDocument)
    assert doc.source_text == "Quarrying"  # docstring: 缺原文时以展示文本兜底
    assert doc.source_url == "https://x"

    out = DocumentPayload.from_highlighted(
        HighlightedDocument(document=doc, marked_text="<mark>Quarrying</mark>", strategy="positional", excerpt="Quarrying")
    )
    dumped = out.model_dump(by_alias=True)
    assert dumped["displayText"] == "<mark>Quarrying</mark>"
    assert dumped["sourceText"] == "Quarrying"
    assert dumped["highlightStrategy"] == "positional"

    with pytest.raises(ValidationError):
        DocumentPayload.model_validate({"id": ""})


def test_highlight_and_generate_requests() -> None:
    hl = HighlightRequest.model_validate({"query": "q", "documents": [{"id": "a", "displayText": "t"}]})
    assert hl.keywords == []
    assert [d.id for d in hl.to_documents()] == ["a"]

    gen = GenerateRequest.model_validate(
        {"query": "q", "jurisdictionOrCorpus": "joco", "documents": [{"id": "a", "sourceText": "s"}]}
    )
    assert gen.to_documents()[0].source_text == "s"
    assert gen.to_history() == []


# -----------------------------
# schemas_http/_common.py
# -----------------------------


def test_error_response_contract() -> None:
    body = ErrorResponse(error=ErrorInfo(code="bad_request", message="unknown jurisdiction", trace_id=new_uuid()))
    assert body.model_dump()["error"]["detail"] == {}

    with pytest.raises(ValidationError):
        ErrorInfo(code="teapot", message="x", trace_id=new_uuid())  # type: ignore[arg-type]
    with pytest.raises(ValidationError):
        ErrorInfo(code="bad_request", message="", trace_id=new_uuid())
