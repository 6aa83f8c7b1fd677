# playground/highlight_gate/test_highlight_pipeline_gate.py

"""
[职责] highlight pipeline gate：验证摘录选择（prompt、"None" 归一化、失败降级）与多文档并发高亮的保序。
[边界] 使用 StubLLM；对齐逻辑细节见 test_aligner_gate。
[上游关系] pipelines/highlight/{excerpt,pipeline}.py。
[下游关系] query_service 与 /code-search/highlight 的输出。
"""

from __future__ import annotations

import pytest

from civic_code_rag.backend.pipelines.highlight.aligner import (
    STRATEGY_KEYWORD,
    STRATEGY_POSITIONAL,
    STRATEGY_UNMODIFIED,
)
from civic_code_rag.backend.pipelines.highlight.excerpt import (
    EXCERPT_SYSTEM_PROMPT,
    build_excerpt_user_prompt,
    normalize_excerpt,
    select_excerpt,
)
from civic_code_rag.backend.pipelines.highlight.pipeline import highlight_document, highlight_documents
from civic_code_rag.backend.pipelines.retrieval.types import CodeDocument


pytestmark = pytest.mark.highlight_gate


def _doc(doc_id: str, source: str, display: str = "") -> CodeDocument:
    return CodeDocument(
        id=doc_id,
        jurisdiction="johnson_county_ks",
        source_text=source,
        display_text=display or source,
    )


def test_normalize_excerpt() -> None:
    assert normalize_excerpt("  Quarrying  ") == "Quarrying"
    assert normalize_excerpt("None") is None
    assert normalize_excerpt("") is None
    assert normalize_excerpt(None) is None


def test_excerpt_prompt_contract() -> None:
    assert "no more than 100 characters" in EXCERPT_SYSTEM_PROMPT
    assert 'return "None"' in EXCERPT_SYSTEM_PROMPT
    assert build_excerpt_user_prompt("q?", "text") == "<query>q?<planning-code-text>text</planning-code-text></query>"


@pytest.mark.asyncio
async def test_select_excerpt_failure_is_none(make_llm) -> None:
    def _boom(_prompt: str) -> str:
        raise TimeoutError("highlight model timeout")

    excerpt = await select_excerpt(make_llm(_boom), query="q", source_text="text", document_id="d1")
    assert excerpt is None


@pytest.mark.asyncio
async def test_highlight_document_positional(make_llm) -> None:
    doc = _doc(
        "d1",
        "Quarrying, mining, or earthen materials excavation",
        "Quarrying,\nmining, or earthen materials excavation",
    )
    llm = make_llm("Quarrying, mining")
    out = await highlight_document(llm, query="where can i dig a quarry?", document=doc, keywords=[])

    assert out.strategy == STRATEGY_POSITIONAL
    assert out.marked_text.startswith("<mark>Quarrying,\nmining</mark>")
    assert out.excerpt == "Quarrying, mining"
    assert "<planning-code-text>Quarrying, mining, or earthen" in llm.calls[0]  # docstring: 模型读 source_text


@pytest.mark.asyncio
async def test_highlight_documents_preserves_order_and_degrades(make_llm) -> None:
    docs = [
        _doc("d1", "Churches are permitted in RLD."),
        _doc("d2", "Nothing relevant here."),
        _doc("d3", "Model will fail on this one."),
    ]

    def _respond(prompt: str) -> str:
        if "fail on this" in prompt:
            raise RuntimeError("upstream")
        if "Churches" in prompt:
            return "Churches are permitted"
        return "None"

    delays = {"Churches": 0.03, "Nothing": 0.01, "fail on this": 0.0}
    llm = make_llm(_respond, delay=lambda p: next(d for k, d in delays.items() if k in p))

    out = await highlight_documents(llm, query="church", documents=docs, keywords=["RLD"])

    assert [h.document_id for h in out] == ["d1", "d2", "d3"]
    assert out[0].strategy == STRATEGY_POSITIONAL
    assert out[0].marked_text == "<mark>Churches are permitted</mark> in RLD."
    assert out[1].strategy == STRATEGY_UNMODIFIED
    assert out[1].marked_text == "Nothing relevant here."
    assert out[2].strategy == STRATEGY_UNMODIFIED  # docstring: 上游失败视同 "None"
    assert out[2].excerpt is None


@pytest.mark.asyncio
async def test_highlight_documents_keyword_fallback(make_llm) -> None:
    docs = [_doc("d1", "Uses allowed in RLD districts.")]
    out = await highlight_documents(
        make_llm("None"),
        query="What can I build with RLD zoning?",
        documents=docs,
        keywords=["RLD"],
    )
    assert out[0].strategy == STRATEGY_KEYWORD
    assert out[0].marked_text == "Uses allowed in <mark>RLD</mark> districts."


@pytest.mark.asyncio
async def test_highlight_documents_empty(make_llm) -> None:
    llm = make_llm("x")
    assert await highlight_documents(llm, query="q", documents=[], keywords=[]) == []
    assert llm.calls == []
