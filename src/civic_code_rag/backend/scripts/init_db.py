# src/civic_code_rag/backend/scripts/init_db.py

"""
[职责] 初始化数据库结构（create_all + FTS 虚表/触发器，可选 drop），并可从 JSONL 加载法规片段（经 EmbeddingCache 生成向量）。
[边界] 不执行查询链路；加载仅在 --load 显式给出时发生；embedding 失败的片段跳过并计数，不写入空向量。
[上游关系] 本地开发/CI/部署脚本调用；依赖 db.engine 的 init_db/drop_db 与 EmbeddingCache。
[下游关系] code_chunk / code_chunk_fts / embedding_cache 表就绪后供 api 使用。
"""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncEngine

from civic_code_rag.backend.db.engine import create_engine, create_sessionmaker, drop_db, init_db
from civic_code_rag.backend.db.fts import rebuild_sqlite_fts
from civic_code_rag.backend.db.repo import CodeChunkRepo
from civic_code_rag.backend.pipelines.embedder import resolve_embedder
from civic_code_rag.backend.pipelines.retrieval.embedding_cache import EmbeddingCache
from civic_code_rag.backend.utils.logging_ import configure_logging
from civic_code_rag.config import settings

_REQUIRED_KEYS = ("jurisdiction", "source_text")  # docstring: JSONL 每行必填字段


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Initialize database schema, FTS index and optional corpus load.")
    parser.add_argument("--db-url", dest="db_url", default=None)  # docstring: 显式 DB 连接串
    parser.add_argument("--drop", action="store_true")  # docstring: 先 drop 再 create
    parser.add_argument("--rebuild-fts", action="store_true")  # docstring: 从 code_chunk 重建 FTS 内容
    parser.add_argument("--load", dest="load", default=None)  # docstring: 语料 JSONL 路径
    parser.add_argument("--batch-size", dest="batch_size", type=int, default=200)  # docstring: 每次写入条数
    echo_group = parser.add_mutually_exclusive_group()
    echo_group.add_argument("--echo", dest="echo", action="store_true", default=None)
    echo_group.add_argument("--no-echo", dest="echo", action="store_false")
    parser.add_argument("--json", action="store_true")  # docstring: 仅输出 JSON 结果
    return parser


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return _build_parser().parse_args(list(argv) if argv is not None else None)


def read_chunk_rows(path: Path) -> List[Dict[str, Any]]:
    """
    [职责] 读取 JSONL 语料（每行一个片段对象）。
    [边界] 空行跳过；缺 display_text 时以 source_text 兜底；缺必填字段抛 ValueError（带行号）。
    [上游关系] _load_corpus。
    [下游关系] CodeChunkRepo.bulk_create 的输入行（embedding 稍后补齐）。
    """
    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            raw = line.strip()
            if not raw:
                continue
            obj = json.loads(raw)
            if not isinstance(obj, dict):
                raise ValueError(f"line {lineno}: expected a JSON object")
            missing = [k for k in _REQUIRED_KEYS if not str(obj.get(k) or "").strip()]
            if missing:
                raise ValueError(f"line {lineno}: missing {', '.join(missing)}")
            obj.setdefault("display_text", obj["source_text"])
            rows.append(obj)
    return rows


async def _load_corpus(*, engine: AsyncEngine, path: Path, batch_size: int) -> Dict[str, Any]:
    """
    [职责] 语料加载：source_text 经 EmbeddingCache 生成向量后批量写入 code_chunk。
    [边界] 每批单独提交；embedding 缺失的行计入 skipped。
    [上游关系] _run_async(--load)。
    [下游关系] FTS 触发器随 INSERT 同步。
    """
    rows = read_chunk_rows(path)
    Session = create_sessionmaker(engine)
    cache = EmbeddingCache(
        sessionmaker=Session,
        embedder=resolve_embedder(
            provider=settings.EMBED_PROVIDER,
            model=settings.EMBED_MODEL,
            dim=int(settings.EMBED_DIM),
            timeout=float(settings.LLM_REQUEST_TIMEOUT_S),
        ),
        dim=int(settings.EMBED_DIM),
        max_chars=settings.embed_batch_max_chars,
    )

    loaded = 0
    skipped = 0
    size = max(int(batch_size), 1)
    for i in range(0, len(rows), size):
        batch = rows[i : i + size]
        vectors = await cache.embed([str(r["source_text"]) for r in batch])
        ready: List[Dict[str, Any]] = []
        for r in batch:
            vec = vectors.get(str(r["source_text"]))
            if vec is None:
                skipped += 1  # docstring: 上游失败批次中的片段不落库
                continue
            ready.append({**r, "embedding": vec})
        if not ready:
            continue
        async with Session() as session:
            await CodeChunkRepo(session).bulk_create(ready)
            await session.commit()
        loaded += len(ready)

    return {"path": str(path), "rows": len(rows), "loaded": loaded, "skipped": skipped}


async def _run_async(
    *,
    db_url: Optional[str],
    drop: bool,
    rebuild_fts: bool,
    load: Optional[str],
    batch_size: int,
    echo: Optional[bool],
) -> Dict[str, Any]:
    """
    [职责] 执行 init_db 的主流程（可选 drop/load/rebuild），输出 JSON-safe 结果。
    [边界] 异常记录到 result.error，不向上抛出。
    [上游关系] main 解析参数后调用。
    [下游关系] _print_summary 输出结果。
    """
    start_ms = time.perf_counter() * 1000.0
    engine = create_engine(url=db_url, echo=echo)
    result: Dict[str, Any] = {
        "ok": True,
        "db_url": str(engine.url),
        "echo": engine.echo,
        "dropped": False,
        "created": False,
        "fts_rebuilt": False,
        "load": None,
        "duration_ms": 0.0,
        "error": None,
    }
    try:
        if drop:
            await drop_db(engine=engine)
            result["dropped"] = True
        await init_db(engine=engine)  # docstring: 建表 + FTS
        result["created"] = True

        if load:
            result["load"] = await _load_corpus(engine=engine, path=Path(load), batch_size=batch_size)

        if rebuild_fts and engine.dialect.name == "sqlite":
            async with create_sessionmaker(engine)() as session:
                await rebuild_sqlite_fts(session)
            result["fts_rebuilt"] = True
    except Exception as exc:
        result["ok"] = False
        result["error"] = f"{exc.__class__.__name__}: {exc}"
    finally:
        await engine.dispose()  # docstring: 释放连接池
        result["duration_ms"] = round(time.perf_counter() * 1000.0 - start_ms, 2)
    return result


def _print_summary(*, result: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(result, ensure_ascii=True, default=str))
        return
    status = "ok" if result.get("ok") else "failed"
    print(f"[init_db] status={status}")
    print(f"[init_db] db_url={result.get('db_url')} echo={result.get('echo')}")
    print(
        f"[init_db] dropped={result.get('dropped')} created={result.get('created')} "
        f"fts_rebuilt={result.get('fts_rebuilt')}"
    )
    if result.get("load"):
        print("[init_db] load=" + json.dumps(result.get("load"), ensure_ascii=True, default=str))
    if result.get("error"):
        print(f"[init_db] error={result.get('error')}")
    print(f"[init_db] duration_ms={result.get('duration_ms')}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry: returns 0 on success, 1 on any failure."""
    args = _parse_args(argv)
    configure_logging(level=settings.LOG_LEVEL)
    result = asyncio.run(
        _run_async(
            db_url=args.db_url,
            drop=bool(args.drop),
            rebuild_fts=bool(args.rebuild_fts),
            load=args.load,
            batch_size=int(args.batch_size),
            echo=args.echo,
        )
    )
    _print_summary(result=result, as_json=bool(args.json))
    return 0 if result.get("ok") else 1


if __name__ == "__main__":
    raise SystemExit(main())
