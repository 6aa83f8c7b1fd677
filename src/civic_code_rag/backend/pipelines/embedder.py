# src/civic_code_rag/backend/pipelines/embedder.py

"""
[职责] embedder：构造 LlamaIndex BaseEmbedding（openai / 本地 hash），并提供单批次文本 embedding 调用。
[边界] 不做缓存与分批（见 retrieval/embedding_cache.py）；不写 DB。
[上游关系] llm.build_pipeline_models 调用 resolve_embedder；scripts/init_db.py 复用。
[下游关系] EmbeddingCache.embed 对每个批次调用 embed_batch。
"""

from __future__ import annotations

import hashlib
import inspect
from typing import Any, Dict, List, Optional, Sequence


def _load_base_embedding() -> Any:
    try:
        from llama_index.core.base.embeddings.base import BaseEmbedding  # type: ignore
    except Exception as exc:  # pragma: no cover - 依赖缺失场景
        raise ImportError("llama_index is required for embeddings") from exc
    return BaseEmbedding


def _filter_kwargs(fn: Any, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keyword arguments that ``fn`` declares."""
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return {}
    return {k: v for k, v in kwargs.items() if k in sig.parameters}


def _build_hash_embedder(*, dim: int, model: str) -> Any:
    """
    [职责] 构造本地 hash embedding（确定性 sha256 伪向量）。
    [边界] 非语义 embedding，仅用于离线/测试；相同文本恒得相同向量。
    [上游关系] resolve_embedder(provider in mock/local/hash)。
    [下游关系] EmbeddingCache。
    """
    BaseEmbedding = _load_base_embedding()

    class _HashEmbedding(BaseEmbedding):
        """Deterministic sha256-derived vectors in [-1, 1]."""

        def __init__(self, *, dim: int, model_name: str) -> None:
            super().__init__(model_name=model_name)
            self._dim = int(dim)

        def _hash_to_vec(self, text: str) -> List[float]:
            seed = hashlib.sha256(text.encode("utf-8")).digest()
            vals: List[float] = []
            while len(vals) < self._dim:
                for b in seed:
                    vals.append((b / 255.0) * 2.0 - 1.0)
                    if len(vals) >= self._dim:
                        break
                seed = hashlib.sha256(seed).digest()  # docstring: 扩展伪随机序列
            return vals

        def _get_text_embedding(self, text: str) -> List[float]:
            return self._hash_to_vec(text)

        def _get_query_embedding(self, query: str) -> List[float]:
            return self._hash_to_vec(query)

        async def _aget_query_embedding(self, query: str) -> List[float]:
            return self._hash_to_vec(query)

    return _HashEmbedding(dim=dim, model_name=model)


def resolve_embedder(
    *,
    provider: str,
    model: str,
    dim: Optional[int],
    timeout: Optional[float] = None,
) -> Any:
    """
    [职责] 根据 provider/model 构造 LlamaIndex BaseEmbedding 实例。
    [边界] 支持 openai 与 mock/local/hash；未知 provider 抛 ValueError；timeout 只作用于网络 provider。
    [上游关系] build_pipeline_models / scripts。
    [下游关系] embed_batch。
    """
    BaseEmbedding = _load_base_embedding()
    provider_key = str(provider or "").strip().lower()
    model_name = str(model or "").strip()

    if provider_key in {"mock", "local", "hash"}:
        embedder = _build_hash_embedder(dim=int(dim or 128), model=model_name or "hash")
    elif provider_key == "openai":
        from llama_index.embeddings.openai import OpenAIEmbedding  # type: ignore

        kwargs: Dict[str, Any] = {"model": model_name, "model_name": model_name, "dimensions": dim}
        if timeout is not None:
            kwargs["timeout"] = float(timeout)  # docstring: 单次请求超时（秒）
        embedder = OpenAIEmbedding(**_filter_kwargs(OpenAIEmbedding.__init__, kwargs))
    else:
        raise ValueError(f"unsupported embed provider: {provider}")

    if not isinstance(embedder, BaseEmbedding):
        raise TypeError("embedding must be BaseEmbedding")
    return embedder


async def embed_batch(embedder: Any, texts: Sequence[str]) -> List[List[float]]:
    """
    [职责] 对一个批次的文本生成向量（输出顺序与输入一致）。
    [边界] 不分批、不缓存；数量不一致视为上游异常。
    [上游关系] EmbeddingCache._embed_batch。
    [下游关系] 向量写回缓存。
    """
    items = [str(t) for t in texts]
    if not items:
        return []
    if hasattr(embedder, "aget_text_embedding_batch"):
        vectors = await embedder.aget_text_embedding_batch(items)
    elif hasattr(embedder, "get_text_embedding_batch"):
        vectors = embedder.get_text_embedding_batch(items)
    elif hasattr(embedder, "aget_text_embedding"):
        vectors = [await embedder.aget_text_embedding(t) for t in items]
    else:
        raise AttributeError("BaseEmbedding missing embedding methods")

    out = [[float(x) for x in v] for v in vectors]
    if len(out) != len(items):
        raise ValueError(f"embedding count mismatch: {len(out)} != {len(items)}")
    return out
