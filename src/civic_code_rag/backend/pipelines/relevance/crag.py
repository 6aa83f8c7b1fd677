# src/civic_code_rag/backend/pipelines/relevance/crag.py

"""
[职责] CRAG 相关性过滤：对每个候选并发调用 judge 模型，原始输出在边界处解析为封闭枚举，仅 RELEVANT 保留。
[边界] 只删不增；输出保持输入顺序；单候选失败/输出不合规均判为不相关（fail closed），不影响其它候选。
[上游关系] query_service 在混合检索之后调用；USE_CRAG=False 时直通。
[下游关系] RelevanceReport.relevant 进入高亮与答案生成。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from civic_code_rag.backend.pipelines.llm import chat_text
from civic_code_rag.backend.pipelines.retrieval.types import RetrievalCandidate
from civic_code_rag.backend.utils.logging_ import get_logger, log_event, truncate_text


logger = get_logger("pipelines.crag")

# prompt lifted from the CRAG paper (arXiv:2401.15884)
JUDGE_PROMPT_TEMPLATE = """Given a question, does the following document have exact
information to answer the question? Answer yes or no
only.

Question: {question}
Document: {document}
Answer:"""

JUDGE_GENERATION_CONFIG: Dict[str, Any] = {"temperature": 0}


class RelevanceVerdict(str, Enum):
    """Judge outcome for one (query, candidate) pair."""

    RELEVANT = "relevant"
    NOT_RELEVANT = "not_relevant"
    MALFORMED = "malformed"  # docstring: 输出既非 yes 也非 no
    UNAVAILABLE = "unavailable"  # docstring: 上游调用失败

    @property
    def keeps(self) -> bool:
        return self is RelevanceVerdict.RELEVANT


def parse_verdict(raw: Optional[str]) -> RelevanceVerdict:
    """
    Map raw judge text to a verdict: trim, drop periods, lowercase, compare.

    >>> parse_verdict(" Yes.")
    <RelevanceVerdict.RELEVANT: 'relevant'>
    >>> parse_verdict("maybe")
    <RelevanceVerdict.MALFORMED: 'malformed'>
    """
    if raw is None:
        return RelevanceVerdict.MALFORMED
    token = str(raw).strip().replace(".", "").strip().lower()
    if token == "yes":
        return RelevanceVerdict.RELEVANT
    if token == "no":
        return RelevanceVerdict.NOT_RELEVANT
    return RelevanceVerdict.MALFORMED


@dataclass(frozen=True)
class RelevanceReport:
    """
    [职责] 过滤结果：保留的候选（保序）+ 每个输入候选的判定。
    [边界] verdicts 与输入 candidates 一一对应（同序）。
    [上游关系] filter_relevant。
    [下游关系] query_service 读取 relevant；日志统计 verdict 分布。
    """

    relevant: List[RetrievalCandidate]
    verdicts: List[RelevanceVerdict]
    enabled: bool = True

    @property
    def all_filtered_out(self) -> bool:
        return bool(self.verdicts) and not self.relevant

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for v in self.verdicts:
            out[v.value] = out.get(v.value, 0) + 1
        return out


async def judge_relevance(llm: Any, *, question: str, document: str) -> RelevanceVerdict:
    """One judge call; raises on upstream failure."""
    prompt = JUDGE_PROMPT_TEMPLATE.format(question=question, document=document)
    raw = await chat_text(llm, [{"role": "user", "content": prompt}], generation_config=JUDGE_GENERATION_CONFIG)
    return parse_verdict(raw)


async def _judge_one(
    llm: Any,
    *,
    question: str,
    candidate: RetrievalCandidate,
    context: Optional[Any],
) -> RelevanceVerdict:
    try:
        verdict = await judge_relevance(llm, question=question, document=candidate.document.source_text)
    except Exception as exc:
        log_event(
            logger,
            logging.WARNING,
            "crag.judge_failed",
            context=context,
            fields={
                "document_id": candidate.document_id,
                "rank": candidate.rank,
                "error": f"{type(exc).__name__}: {exc}",
            },
        )
        return RelevanceVerdict.UNAVAILABLE
    if verdict is RelevanceVerdict.MALFORMED:
        log_event(
            logger,
            logging.WARNING,
            "crag.malformed_verdict",
            context=context,
            fields={"document_id": candidate.document_id, "rank": candidate.rank},
        )
    return verdict


async def filter_relevant(
    llm: Any,
    *,
    question: str,
    candidates: Sequence[RetrievalCandidate],
    enabled: bool = True,
    context: Optional[Any] = None,
) -> RelevanceReport:
    """
    [职责] 并发判定全部候选（asyncio.gather），按输入顺序重建结果并过滤。
    [边界] enabled=False 时不发起任何调用，全部保留；空输入直接返回空报告。
    [上游关系] QueryPipeline.run。
    [下游关系] RelevanceReport。
    """
    items = list(candidates)
    if not enabled:
        return RelevanceReport(
            relevant=items,
            verdicts=[RelevanceVerdict.RELEVANT] * len(items),
            enabled=False,
        )
    if not items:
        return RelevanceReport(relevant=[], verdicts=[])

    verdicts = await asyncio.gather(
        *(_judge_one(llm, question=question, candidate=c, context=context) for c in items)
    )  # docstring: gather 返回值与入参同序，与完成顺序无关
    relevant = [c for c, v in zip(items, verdicts) if v.keeps]
    report = RelevanceReport(relevant=relevant, verdicts=list(verdicts))

    log_event(
        logger,
        logging.INFO,
        "crag.done",
        context=context,
        fields={"candidates": len(items), "kept": len(relevant), "verdicts": report.counts()},
    )
    if report.all_filtered_out:
        log_event(
            logger,
            logging.WARNING,
            "crag.all_filtered_out",
            context=context,
            fields={
                "candidates": len(items),
                "question": truncate_text(question, max_len=80),
                "top_document_id": items[0].document_id,
            },
        )
    return report
