# playground/conftest.py

"""
[职责] playground 公共 fixtures：隔离的 sqlite 引擎/会话、LLM 与 embedding stub、语料写入工具。
[边界] 不访问任何外部模型服务；每个测试独立 DB 文件。
[上游关系] pytest 自动加载。
[下游关系] 各 <area>_gate 测试复用。
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Union

import pytest
import pytest_asyncio

_REPO_ROOT = Path(__file__).resolve().parents[1]
_SRC_ROOT = _REPO_ROOT / "src"
if str(_SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(_SRC_ROOT))  # docstring: ensure local src import

_DEFAULT_DB_DIR = tempfile.mkdtemp(prefix="civic_code_rag_")
os.environ.setdefault(
    "CIVIC_CODE_RAG_DATABASE_URL", f"sqlite+aiosqlite:///{Path(_DEFAULT_DB_DIR, 'default.db').as_posix()}"
)  # docstring: 全局 ENGINE 不落在仓库目录
os.environ.setdefault("MODEL_PROVIDER", "mock")
os.environ.setdefault("EMBED_PROVIDER", "hash")

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from civic_code_rag.backend.db.engine import create_engine, create_sessionmaker, init_db  # noqa: E402
from civic_code_rag.backend.db.repo import CodeChunkRepo  # noqa: E402


Responder = Union[str, Callable[[str], str]]


class StubLLM:
    """
    LlamaIndex-shaped chat model: ``achat`` / ``astream_chat`` over a responder.

    The responder sees the flattened prompt (all message contents joined) and
    returns text or raises; ``delay`` lets tests force out-of-order completion.
    """

    def __init__(
        self,
        responder: Responder = "",
        *,
        delay: Optional[Callable[[str], float]] = None,
        stream_chunk_size: int = 4,
    ) -> None:
        self._responder = responder
        self._delay = delay
        self._chunk = max(int(stream_chunk_size), 1)
        self.calls: List[str] = []
        self.messages: List[List[Any]] = []

    def _respond(self, prompt: str) -> str:
        if callable(self._responder):
            return self._responder(prompt)
        return str(self._responder)

    async def _prepare(self, messages: Sequence[Any]) -> str:
        prompt = "\n".join(str(getattr(m, "content", "") or "") for m in messages)
        self.calls.append(prompt)
        self.messages.append(list(messages))
        if self._delay is not None:
            await asyncio.sleep(self._delay(prompt))
        return prompt

    async def achat(self, messages: Sequence[Any], **_kwargs: Any) -> Any:
        prompt = await self._prepare(messages)
        return SimpleNamespace(message=SimpleNamespace(content=self._respond(prompt)))

    async def astream_chat(self, messages: Sequence[Any], **_kwargs: Any) -> Any:
        prompt = await self._prepare(messages)
        text = self._respond(prompt)
        size = self._chunk

        async def _gen() -> AsyncIterator[Any]:
            for i in range(0, len(text), size):
                await asyncio.sleep(0)
                yield SimpleNamespace(delta=text[i : i + size])

        return _gen()


class StubEmbedder:
    """
    Batch embedder with deterministic sha256 vectors.

    ``vectors`` pins specific texts; ``fail_when`` raises for any batch it matches.
    """

    def __init__(
        self,
        *,
        dim: int = 8,
        vectors: Optional[Mapping[str, List[float]]] = None,
        fail_when: Optional[Callable[[List[str]], bool]] = None,
    ) -> None:
        self.dim = int(dim)
        self._vectors = dict(vectors or {})
        self._fail_when = fail_when
        self.batches: List[List[str]] = []

    def vector_for(self, text: str) -> List[float]:
        if text in self._vectors:
            return list(self._vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(digest[i % len(digest)] / 255.0) * 2.0 - 1.0 for i in range(self.dim)]

    async def aget_text_embedding_batch(self, texts: List[str], **_kwargs: Any) -> List[List[float]]:
        batch = list(texts)
        self.batches.append(batch)
        await asyncio.sleep(0)  # docstring: yield so concurrent callers interleave
        if self._fail_when is not None and self._fail_when(batch):
            raise RuntimeError("embedding upstream unavailable")
        return [self.vector_for(t) for t in batch]

    @property
    def texts_sent(self) -> List[str]:
        return [t for b in self.batches for t in b]


@pytest.fixture
def make_llm() -> Callable[..., StubLLM]:
    return StubLLM


@pytest.fixture
def make_embedder() -> Callable[..., StubEmbedder]:
    return StubEmbedder


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Fresh sqlite file per test with schema + FTS."""
    eng = create_engine(url=f"sqlite+aiosqlite:///{(tmp_path / 'gate.db').as_posix()}", echo=False)
    await init_db(engine=eng)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture
def sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_sessionmaker(engine)


@pytest_asyncio.fixture
async def session(sessionmaker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with sessionmaker() as s:
        yield s


@pytest.fixture
def insert_chunks(
    sessionmaker: async_sessionmaker[AsyncSession],
) -> Callable[[Sequence[Mapping[str, Any]]], Any]:
    """Async helper: write chunk rows (committed) and return their ids in order."""

    async def _insert(rows: Sequence[Mapping[str, Any]]) -> List[str]:
        async with sessionmaker() as s:
            created = await CodeChunkRepo(s).bulk_create(rows)
            await s.commit()
            return [c.id for c in created]

    return _insert


def chunk_row(
    chunk_id: str,
    text: str,
    *,
    embedding: Sequence[float],
    jurisdiction: str = "johnson_county_ks",
    display_text: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "id": chunk_id,
        "jurisdiction": jurisdiction,
        "source_text": text,
        "display_text": display_text if display_text is not None else text,
        "embedding": list(embedding),
    }
    row.update(extra)
    return row


@pytest.fixture
def make_chunk_row() -> Callable[..., Dict[str, Any]]:
    return chunk_row
