# src/civic_code_rag/backend/db/fts.py

"""
[职责] SQLite FTS5 全文检索：为 CodeChunkModel.source_text 提供关键词命中集合（混合检索的词法信号）。
[边界] 当前仅实现 SQLite FTS5；其它方言返回空命中集（检索退化为纯向量排序）。
[上游关系] code_chunk 写入后由触发器同步 code_chunk_fts；engine.init_db 建表。
[下游关系] pipelines/retrieval/hybrid.py 调用 match_chunk_ids() 得到 lexical_match 标记。
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Sequence, Set, Union

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession


# --- SQLite FTS table design ---
# 说明：
# - CodeChunkModel.id 是不透明字符串，不适合作为 rowid；FTS 表使用独立列 chunk_id。
# - INSERT/UPDATE/DELETE triggers 同步 code_chunk_fts。
# - 仅索引 source_text；jurisdiction 过滤走 join + where。


FTS_TABLE = "code_chunk_fts"  # docstring: FTS 虚表名（SQLite FTS5）
FTS_TOKENIZER = "porter unicode61"  # docstring: 英文词干化 + unicode 分词

_FTS_TOKEN_RE = re.compile(r"[\w']+", re.UNICODE)  # docstring: 关键词中可进入 FTS 的字符

Executor = Union[AsyncSession, AsyncConnection]


async def ensure_sqlite_fts(conn: Executor) -> None:
    """
    Ensure SQLite FTS5 structures exist (idempotent).

    Creates:
      - code_chunk_fts virtual table
      - triggers to sync from code_chunk table
    Commit is left to the caller (engine.begin() / session.commit()).
    """
    await conn.execute(
        text(
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE}
            USING fts5(
              chunk_id UNINDEXED,
              source_text,
              tokenize = '{FTS_TOKENIZER}'
            );
            """
        )
    )

    await conn.execute(
        text(
            f"""
            CREATE TRIGGER IF NOT EXISTS code_chunk_ai AFTER INSERT ON code_chunk BEGIN
              INSERT INTO {FTS_TABLE}(chunk_id, source_text) VALUES (new.id, new.source_text);
            END;
            """
        )
    )

    await conn.execute(
        text(
            f"""
            CREATE TRIGGER IF NOT EXISTS code_chunk_ad AFTER DELETE ON code_chunk BEGIN
              DELETE FROM {FTS_TABLE} WHERE chunk_id = old.id;
            END;
            """
        )
    )

    await conn.execute(
        text(
            f"""
            CREATE TRIGGER IF NOT EXISTS code_chunk_au AFTER UPDATE OF source_text ON code_chunk BEGIN
              UPDATE {FTS_TABLE} SET source_text = new.source_text WHERE chunk_id = new.id;
            END;
            """
        )
    )


async def drop_sqlite_fts(conn: Executor) -> None:
    """Drop FTS triggers and table."""  # docstring: drop_db / 测试清理
    for trigger in ("code_chunk_ai", "code_chunk_ad", "code_chunk_au"):
        await conn.execute(text(f"DROP TRIGGER IF EXISTS {trigger};"))
    await conn.execute(text(f"DROP TABLE IF EXISTS {FTS_TABLE};"))


async def rebuild_sqlite_fts(session: AsyncSession) -> None:
    """
    Rebuild FTS index from the code_chunk table.

    Use cases:
      - corpus rows written before the triggers existed
    """  # docstring: 运维/修复工具
    await session.execute(text(f"DELETE FROM {FTS_TABLE};"))
    await session.execute(
        text(
            f"""
            INSERT INTO {FTS_TABLE}(chunk_id, source_text)
            SELECT id, source_text FROM code_chunk;
            """
        )
    )
    await session.commit()


def build_match_query(keywords: Sequence[str]) -> str:
    """
    [职责] 关键词列表 -> FTS5 MATCH 表达式（每个词加双引号，OR 连接）。
    [边界] 丢弃不含字母数字的词；返回空串表示无可用关键词。
    [上游关系] match_chunk_ids 调用。
    [下游关系] FTS5 MATCH 参数（引号包裹避免 FTS 语法注入）。
    """
    terms: List[str] = []
    seen: Set[str] = set()
    for kw in keywords:
        for tok in _FTS_TOKEN_RE.findall(str(kw or "")):
            tok = tok.replace('"', "").strip("'")
            if not tok or tok.lower() in seen:
                continue
            seen.add(tok.lower())
            terms.append(f'"{tok}"')
    return " OR ".join(terms)


async def match_chunk_ids(
    session: AsyncSession,
    *,
    jurisdiction: str,
    keywords: Sequence[str],
) -> Set[str]:
    """
    SQLite FTS lexical match for chunks within one jurisdiction.

    Returns the set of chunk ids whose source_text matches any keyword.
    An empty keyword list yields an empty set; other dialects raise NotImplementedError.
    """
    q = build_match_query(keywords)
    if not q:
        return set()
    dialect = session.get_bind().dialect.name
    if dialect != "sqlite":
        raise NotImplementedError(f"keyword match is only implemented for sqlite FTS5, not {dialect}")

    sql = f"""
    SELECT c.id AS chunk_id
    FROM {FTS_TABLE}
    JOIN code_chunk c ON c.id = {FTS_TABLE}.chunk_id
    WHERE {FTS_TABLE} MATCH :q
      AND c.jurisdiction = :jurisdiction
    """
    params: Dict[str, Any] = {"q": q, "jurisdiction": str(jurisdiction)}
    rows = (await session.execute(text(sql), params)).mappings().all()
    return {str(r["chunk_id"]) for r in rows}
