# src/civic_code_rag/backend/pipelines/highlight/excerpt.py

"""
[职责] 摘录选择：请高亮模型从 source_text 中逐字摘出 ≤100 字符的最相关片段，或返回字面量 "None"。
[边界] 只负责模型调用与 "None" 归一化；不校验子串关系（见 aligner.validate_excerpt）；上游失败记录日志并视同 "None"。
[上游关系] highlight/pipeline.highlight_document。
[下游关系] aligner.align 的 excerpt 入参。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from civic_code_rag.backend.pipelines.llm import chat_text
from civic_code_rag.backend.utils.constants import MAX_EXCERPT_CHARS, NONE_SENTINEL
from civic_code_rag.backend.utils.logging_ import get_logger, log_event, truncate_text


logger = get_logger("pipelines.excerpt")

EXCERPT_SYSTEM_PROMPT = f"""You are assisting a city planner with understanding the planning code.
They will ask you a question, and you will need to return the substring in the planning code text that is most relevant to answering the question.
Do not modify anything in the substring. Do not modify the line breaks by merging sentences that span multiple lines into one line.
Highlight no more than {MAX_EXCERPT_CHARS} characters.
Your answer will be rejected if you do not provide an exact substring of the planning code text. If nothing is relevant, return "{NONE_SENTINEL}".

The examples below (deliminated with XML tags) show how you should and should not
respond to the user's question. Do not return the XML tags in your response. Do not fix broken
white space in the text. Do not highlight excessively.

EXAMPLE 1:
<query>where can i dig a quarry?<planning-code-text>In any district   f
except the Residential Districts, Planned Residential
Districts,
the Planned Research and Development Park District (PEC-1) or the Planned Adult Entertainment
District (PAE), conditional uses, such as the following, may be approved by the 
Board:
1. Quarrying, mining, or earthen materials excavation or filling operations,
including but not limited to:
a. The delivery and placement of greater than 1,200 cubic yards of earth fill material or the
excavation and removal of greater than 1,200 cubic yards of any earth excavated from
any property.</planning-code-text></query>

<correct-output>In any district   f
except the Residential Districts, Planned Residential
Districts,
the Planned Research and Development Park District (PEC-1) or the Planned Adult Entertainment
District (PAE)</correct-output>

<incorrect-output>In any district except the Residential Districts, Planned Residential Districts, the Planned Research and Development Park District (PEC-1) or the Planned Adult Entertainment District (PAE), conditional uses, such as the following, may be approved by the Board:
1. Quarrying , mining, or earthen materials excavation or filling operations,</incorrect-output>

EXAMPLE 2:
<query>where can i dig a quarry?<planning-code-text>3. Quarrying or mining operations:
a. Such conditional uses shall be located nearby or adjacent to major or minor arterial
streets capable of handling the expected highway loads of heavy truck vehicular traffic.
b. To minimize adverse impact upon surrounding properties and the community at large, all
outdoor crushing, sorting, and fixed-location loading or distribution machine operations
for rock or stone, and all excavations deeper than ten (10) feet below the natural grade
shall be located not less than 50 feet to the nearest property line of adjoining commercial or 
industrial property.</planning-code-text></query>

<correct-output>adjacent to major or minor arterial
streets</correct-output>

<incorrect-output> Quarrying or mining operations:
a. Such conditional uses shall be located nearby or adjacent to major or minor arterial streets capable of handling the expected highway loads of heavy truck vehicular traffic.</incorrect-output>

EXAMPLE 3:
<query>how tall am i allowed to build in a residential district?<planning-code-text>GROUP H: In the following three Planned Employment Center Districts: the Planned Research,
Development and Light Industrial Park District (PEC-3) and the Planned Industrial Park District
(PEC-4); and Planned Logistics Park District (PEC-LP), conditional uses, such as the following,
may be approved by the Board:
1. Automotive Repair Shop, Repair Garage or Machinery Repair Shops for maintenance or
repair of vehicles or equipment owned or not owned by the property/business owner.</planning-code-text></query>

<correct-output>{NONE_SENTINEL}</correct-output>

<incorrect-output>In the following three Planned Employment Center Districts: the Planned Research,
Development and Light Industrial Park District (PEC-3) and the Planned Industrial Park District</incorrect-output>
"""

EXCERPT_GENERATION_CONFIG: Dict[str, Any] = {"temperature": 0}


def build_excerpt_user_prompt(query: str, text: str) -> str:
    return f"<query>{query}<planning-code-text>{text}</planning-code-text></query>"


def normalize_excerpt(raw: Optional[str]) -> Optional[str]:
    """Trimmed model output, or None for blank / "None"."""
    if raw is None:
        return None
    text = str(raw).strip()
    if not text or text == NONE_SENTINEL:
        return None
    return text


async def select_excerpt(
    llm: Any,
    *,
    query: str,
    source_text: str,
    document_id: Optional[str] = None,
    context: Optional[Any] = None,
) -> Optional[str]:
    """
    [职责] 调用高亮模型获取摘录。
    [边界] 任何上游异常 -> 记录 highlight.excerpt_failed 并返回 None。
    [上游关系] highlight_document。
    [下游关系] aligner.align。
    """
    messages = [
        {"role": "system", "content": EXCERPT_SYSTEM_PROMPT},
        {"role": "user", "content": build_excerpt_user_prompt(query, source_text)},
    ]
    try:
        raw = await chat_text(llm, messages, generation_config=EXCERPT_GENERATION_CONFIG)
    except Exception as exc:
        log_event(
            logger,
            logging.WARNING,
            "highlight.excerpt_failed",
            context=context,
            fields={"document_id": document_id, "error": f"{type(exc).__name__}: {exc}"},
        )
        return None
    excerpt = normalize_excerpt(raw)
    log_event(
        logger,
        logging.DEBUG,
        "highlight.excerpt",
        context=context,
        fields={"document_id": document_id, "excerpt": truncate_text(excerpt, max_len=MAX_EXCERPT_CHARS)},
    )
    return excerpt
