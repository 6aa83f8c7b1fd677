# src/civic_code_rag/backend/pipelines/retrieval/keywords.py

"""
[职责] 关键词抽取：请 LLM 从 query 中挑选 ≤3 个专有名词短语（或 "None"），并宽松切分为 FTS 关键词。
[边界] 不做词干/拼写纠错；切分是宽松的（"New York City" -> 3 个词），因为词法信号只是析取式加权。
[上游关系] query_service 与 query embedding 并发调用。
[下游关系] hybrid.retrieve 的 keywords；aligner 的关键词回退。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from civic_code_rag.backend.pipelines.llm import chat_text
from civic_code_rag.backend.utils.constants import NONE_SENTINEL
from civic_code_rag.backend.utils.logging_ import get_logger, log_event, truncate_text


logger = get_logger("pipelines.keywords")

KEYWORD_SYSTEM_PROMPT = """You will be provided with a user query. We're going to do keyword search
over a large set of documents, and we need to select a couple of the most
important keywords to search with. Choose no more than 3.

The keywords should ONLY be proper nouns.

EXAMPLES:

input: Is the budget of San Francisco larger than that of New York City?
output: San Francisco, New York City

input: What's the most recent hearing on 1024 Market St?
output: 1024 Market St

input: What's the most recent hearing on the budget?
output: None

input: What can I build with RLD zoning?
output: RLD

Separate your keywords with commas."""

KEYWORD_GENERATION_CONFIG: Dict[str, Any] = {"temperature": 0}


def parse_keywords(raw: Optional[str]) -> List[str]:
    """
    Split model output on commas, trim, split on whitespace, drop "none" and empties.

    >>> parse_keywords("San Francisco, New York City")
    ['San', 'Francisco', 'New', 'York', 'City']
    >>> parse_keywords("None")
    []
    """
    out: List[str] = []
    for phrase in str(raw or "").split(","):
        for token in phrase.strip().split():
            if token.lower() == NONE_SENTINEL.lower():
                continue
            out.append(token)
    return out


async def extract_keywords(llm: Any, query: str, *, context: Optional[Any] = None) -> List[str]:
    """
    [职责] 调用关键词模型并解析输出。
    [边界] 上游异常原样抛出（由 query_service 转为 UpstreamServiceError）。
    [上游关系] QueryPipeline._keywords。
    [下游关系] 关键词列表（可为空）。
    """
    messages = [
        {"role": "system", "content": KEYWORD_SYSTEM_PROMPT},
        {"role": "user", "content": str(query)},
    ]
    raw = await chat_text(llm, messages, generation_config=KEYWORD_GENERATION_CONFIG)
    keywords = parse_keywords(raw)
    log_event(
        logger,
        logging.DEBUG,
        "keywords.extracted",
        context=context,
        fields={"raw": truncate_text(raw, max_len=80), "keywords": keywords},
    )
    return keywords
