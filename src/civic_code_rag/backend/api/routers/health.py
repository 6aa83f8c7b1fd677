# src/civic_code_rag/backend/api/routers/health.py

"""
[职责] Health Router：提供服务健康检查（DB 探测 + 各辖区片段数量）与版本摘要。
[边界] 不执行业务逻辑；不触发 pipeline；不探测模型服务（避免计费调用）。
[上游关系] 运维/监控系统调用健康检查接口。
[下游关系] DB 会话执行轻量检查；CodeChunkRepo 统计语料规模。
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from civic_code_rag.backend.api.deps import get_session
from civic_code_rag.backend.db.repo import CodeChunkRepo


router = APIRouter(prefix="/health", tags=["health"])  # docstring: health 路由前缀


@router.get("")
async def health_check(session: AsyncSession = Depends(get_session)) -> Dict[str, Any]:
    """
    [职责] 检测 DB 可用性并返回语料摘要。
    [边界] 只做轻量探测；DB 异常时返回 degraded 而非 5xx。
    [上游关系] 运维/监控系统或 CI 探针调用。
    [下游关系] DB。
    """
    status = "ok"
    db_status: Dict[str, Any] = {"ok": True}

    try:
        await session.execute(text("SELECT 1"))  # docstring: DB ping（最小读）
        db_status["chunks"] = await CodeChunkRepo(session).count_by_jurisdiction()
    except SQLAlchemyError as exc:
        status = "degraded"
        db_status["ok"] = False
        db_status["error"] = f"{exc.__class__.__name__}: {exc}"  # docstring: 记录 DB 错误摘要

    return {
        "status": status,
        "db": db_status,
        "version": {"api": "v1"},
    }
