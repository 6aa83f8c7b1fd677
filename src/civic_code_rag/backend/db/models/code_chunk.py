# src/civic_code_rag/backend/db/models/code_chunk.py

from __future__ import annotations

import uuid
from typing import List, Optional

from sqlalchemy import JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..base import Base, TimestampMixin


class CodeChunkModel(Base, TimestampMixin):
    """
    [职责] 法规片段实体：检索与展示的最小单元（source_text 供 embedding/LLM，display_text 供 UI）。
    [边界] 不负责切分/抓取（语料由外部 ingestion 写入）；embedding 以 JSON float 列表存储。
    [上游关系] scripts/init_db.py 或外部 ingestion 写入。
    [下游关系] fts.code_chunk_fts 触发器同步 source_text；VectorIndexCache 按 jurisdiction 读取向量列，hybrid retriever 按 id 回表。
    """

    __tablename__ = "code_chunk"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="片段ID（不透明字符串）",  # docstring: 语料侧主键
    )

    jurisdiction: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="辖区/语料分区标识",  # docstring: 检索作用域
    )

    source_text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="全文（embedding 与 LLM 上下文）",  # docstring: 原始片段文本
    )

    display_text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="HTML-safe 展示文本（高亮落点）",  # docstring: 规范展示文本
    )

    heading: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
        comment="章节标题",  # docstring: 片段所在标题
    )

    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
        comment="来源文档标题",  # docstring: PDF/页面标题
    )

    source_url: Mapped[Optional[str]] = mapped_column(
        String(2000),
        nullable=True,
        comment="来源文档 URL（可空）",  # docstring: 原文链接
    )

    embedding: Mapped[List[float]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="source_text 向量（固定维度）",  # docstring: 维度全库一致
    )
