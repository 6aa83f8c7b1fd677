# src/civic_code_rag/backend/pipelines/highlight/aligner.py

"""
[职责] 高亮对齐：把模型给出的摘录（excerpt）落到 display_text 上，按有序策略链逐级回退，直至总能返回一段文本。
[边界] 纯函数，无 I/O、无模型调用；display_text 视为 HTML-safe，只插入 <mark>/</mark>，不做转义。
[上游关系] highlight/pipeline.py 在 excerpt 选择之后调用 align(...)。
[下游关系] AlignmentResult.marked_text 作为文档的 displayText 返回前端。

策略顺序（由最忠实到最保底）：
  1) validate_excerpt：去除全部空白后，摘录必须包含于 display_text，否则视同 "None"
  2) positional：空白容忍 + 大小写不敏感正则，原位包裹命中片段
  3) sentence：取摘录首句（>20 字符），标记 display_text 中包含它的整句（可带上下文句）
  4) verbatim：空白折叠后摘录仍包含于 display_text 时，在其前追加 <mark>摘录</mark>
  5) keyword：关键词交替正则，包裹全部出现位置
  兜底：原样返回 display_text
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Pattern, Sequence, Tuple

from civic_code_rag.backend.utils.constants import (
    MARK_CLOSE,
    MARK_OPEN,
    MIN_SENTENCE_FRAGMENT_CHARS,
    NONE_SENTINEL,
)


_WHITESPACE_RE = re.compile(r"\s+")
# a sentence ends at . ! or ? followed by whitespace, then an uppercase letter, a newline or the end
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+(?=[A-Z]|\n|$)")
_EXCERPT_SENTENCE_SPLIT_RE = re.compile(r"[.!?](?:\s|$)")

STRATEGY_POSITIONAL = "positional"
STRATEGY_SENTENCE = "sentence"
STRATEGY_VERBATIM = "verbatim"
STRATEGY_KEYWORD = "keyword"
STRATEGY_UNMODIFIED = "unmodified"


@dataclass(frozen=True)
class AlignmentInput:
    """
    [职责] 策略函数的统一输入（不可变）。
    [边界] excerpt 必须是已通过 validate_excerpt 的摘录或 None。
    [上游关系] align 构造。
    [下游关系] 各策略函数只读使用。
    """

    query: str
    display_text: str
    excerpt: Optional[str] = None
    keywords: Tuple[str, ...] = field(default_factory=tuple)
    sentence_context: int = 0


@dataclass(frozen=True)
class AlignmentResult:
    """marked_text is never None; strategy names the step that produced it."""

    marked_text: str
    strategy: str
    excerpt_valid: bool = False

    @property
    def highlighted(self) -> bool:
        return self.strategy != STRATEGY_UNMODIFIED


Strategy = Callable[[AlignmentInput], Optional[str]]


def remove_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub("", text or "")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def validate_excerpt(excerpt: Optional[str], display_text: str) -> Optional[str]:
    """
    Return the excerpt when, whitespace removed on both sides, it occurs in display_text.

    "None", blank and paraphrased excerpts all come back as None.
    """
    if excerpt is None:
        return None
    stripped = excerpt.strip()
    if not stripped or stripped == NONE_SENTINEL:
        return None
    needle = remove_whitespace(stripped)
    if needle and needle in remove_whitespace(display_text):
        return stripped
    return None


def whitespace_tolerant_pattern(fragment: str) -> Optional[Pattern[str]]:
    """
    Escape each non-whitespace run and join the runs with ``\\s+`` (case-insensitive).

    >>> bool(whitespace_tolerant_pattern("Quarrying, mining").search("Quarrying,\\nmining"))
    True
    """
    tokens = (fragment or "").split()
    if not tokens:
        return None
    return re.compile(r"\s+".join(re.escape(t) for t in tokens), re.IGNORECASE)


def wrap_span(text: str, start: int, end: int) -> str:
    """Insert markers around text[start:end]; everything else is kept verbatim."""
    return f"{text[:start]}{MARK_OPEN}{text[start:end]}{MARK_CLOSE}{text[end:]}"


def sentence_spans(text: str) -> List[Tuple[int, int]]:
    """
    [职责] 按句界启发式切分，返回各句在原文中的 [start, end) 区间（不含句间空白）。
    [边界] 只返回区间，不复制文本；空句跳过。
    [上游关系] sentence_match。
    [下游关系] 原位标记整句。
    """
    spans: List[Tuple[int, int]] = []
    start = 0
    for m in _SENTENCE_BOUNDARY_RE.finditer(text):
        if m.start() > start:
            spans.append((start, m.start()))
        start = m.end()
    if start < len(text):
        spans.append((start, len(text)))
    return spans


def first_sentence(excerpt: str) -> str:
    """First sentence of the excerpt (split on . ! ? followed by whitespace or end)."""
    return _EXCERPT_SENTENCE_SPLIT_RE.split(excerpt or "", maxsplit=1)[0].strip()


def positional_match(inp: AlignmentInput) -> Optional[str]:
    """Step 2: wrap the exact display_text span that matches the excerpt modulo whitespace and case."""
    if not inp.excerpt:
        return None
    pattern = whitespace_tolerant_pattern(inp.excerpt)
    if pattern is None:
        return None
    m = pattern.search(inp.display_text)
    if m is None:
        return None
    return wrap_span(inp.display_text, m.start(), m.end())


def sentence_match(inp: AlignmentInput) -> Optional[str]:
    """
    Step 3: locate the excerpt's first sentence and mark the whole containing sentence.

    The mark is widened by ``sentence_context`` neighbouring sentences on each side.
    """
    if not inp.excerpt:
        return None
    fragment = first_sentence(inp.excerpt)
    if len(fragment) <= MIN_SENTENCE_FRAGMENT_CHARS:
        return None
    pattern = whitespace_tolerant_pattern(fragment)
    if pattern is None:
        return None
    m = pattern.search(inp.display_text)
    if m is None:
        return None

    spans = sentence_spans(inp.display_text)
    idx = next((i for i, (s, e) in enumerate(spans) if s <= m.start() < e), None)
    if idx is None:
        return wrap_span(inp.display_text, m.start(), m.end())

    ctx = max(int(inp.sentence_context), 0)
    lo = max(idx - ctx, 0)
    hi = min(idx + ctx, len(spans) - 1)
    start = min(spans[lo][0], m.start())
    end = max(spans[hi][1], m.end())
    return wrap_span(inp.display_text, start, end)


def verbatim_wrap(inp: AlignmentInput) -> Optional[str]:
    """
    Step 4: show the excerpt itself, marked, above the untouched display text.

    Only when the whitespace-collapsed excerpt occurs in the whitespace-collapsed display text;
    excerpts that merely survive whitespace removal ("Quarrying,mining") fall through.
    """
    if not inp.excerpt:
        return None
    if collapse_whitespace(inp.excerpt) not in collapse_whitespace(inp.display_text):
        return None
    return f"{MARK_OPEN}{inp.excerpt}{MARK_CLOSE}\n\n{inp.display_text}"


def keyword_pattern(keywords: Sequence[str]) -> Optional[Pattern[str]]:
    terms = [k.strip() for k in keywords if k and k.strip()]
    if not terms:
        return None
    terms = sorted(set(terms), key=lambda k: (-len(k), k))  # docstring: 长词优先，避免前缀截断
    return re.compile("(" + "|".join(re.escape(k) for k in terms) + ")", re.IGNORECASE)


def keyword_highlight(inp: AlignmentInput) -> Optional[str]:
    """Step 5: wrap every case-insensitive keyword occurrence."""
    pattern = keyword_pattern(inp.keywords)
    if pattern is None or pattern.search(inp.display_text) is None:
        return None
    return pattern.sub(lambda m: f"{MARK_OPEN}{m.group(0)}{MARK_CLOSE}", inp.display_text)


STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    (STRATEGY_POSITIONAL, positional_match),
    (STRATEGY_SENTENCE, sentence_match),
    (STRATEGY_VERBATIM, verbatim_wrap),
    (STRATEGY_KEYWORD, keyword_highlight),
)


def align(
    *,
    query: str,
    display_text: str,
    excerpt: Optional[str],
    keywords: Sequence[str] = (),
    sentence_context: int = 0,
    strategies: Sequence[Tuple[str, Strategy]] = STRATEGIES,
) -> AlignmentResult:
    """
    [职责] 校验摘录后按顺序尝试策略，第一个非 None 结果胜出。
    [边界] 永不返回 None：全部失败时原样返回 display_text。
    [上游关系] highlight/pipeline.highlight_document、/code-search/highlight。
    [下游关系] AlignmentResult。
    """
    display = display_text or ""
    validated = validate_excerpt(excerpt, display)
    inp = AlignmentInput(
        query=query,
        display_text=display,
        excerpt=validated,
        keywords=tuple(keywords or ()),
        sentence_context=sentence_context,
    )
    for name, strategy in strategies:
        marked = strategy(inp)
        if marked is not None:
            return AlignmentResult(marked_text=marked, strategy=name, excerpt_valid=validated is not None)
    return AlignmentResult(marked_text=display, strategy=STRATEGY_UNMODIFIED, excerpt_valid=validated is not None)
