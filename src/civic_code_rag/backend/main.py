# src/civic_code_rag/backend/main.py

"""
[职责] FastAPI 应用装配：lifespan 中配置日志、建表、构造模型名册与 EmbeddingCache，并注入 QueryPipeline。
[边界] 不含业务逻辑；QueryPipeline 为进程级单例（无跨请求可变状态）。
[上游关系] uvicorn civic_code_rag.backend.main:app 启动；tests 调用 create_app(pipeline=...) 注入 stub。
[下游关系] routers/query、routers/health 通过 deps 读取 app.state 与 session。
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from civic_code_rag.backend.api.middleware import TraceContextMiddleware
from civic_code_rag.backend.api.routers.health import router as health_router
from civic_code_rag.backend.api.routers.query import router as query_router
from civic_code_rag.backend.db.engine import ENGINE, SessionLocal, init_db
from civic_code_rag.backend.pipelines.llm import build_pipeline_models
from civic_code_rag.backend.pipelines.retrieval.embedding_cache import EmbeddingCache
from civic_code_rag.backend.services.query_service import QueryPipeline
from civic_code_rag.backend.utils.logging_ import configure_logging, get_logger, log_event
from civic_code_rag.config import settings


logger = get_logger("app")


def build_query_pipeline() -> QueryPipeline:
    """Assemble the process-wide QueryPipeline from Settings."""
    models = build_pipeline_models(settings)
    cache = EmbeddingCache(
        sessionmaker=SessionLocal,
        embedder=models.embedder,
        dim=int(settings.EMBED_DIM),
        max_chars=settings.embed_batch_max_chars,
    )
    return QueryPipeline.from_settings(models=models, embedding_cache=cache, settings=settings)


def create_app(*, pipeline: Optional[QueryPipeline] = None, init_schema: bool = True) -> FastAPI:
    """
    [职责] 创建 FastAPI 应用（middleware + routers + lifespan）。
    [边界] pipeline 显式传入时不构造模型客户端；init_schema=False 时跳过建表。
    [上游关系] 模块级 app / tests。
    [下游关系] app.state.query_pipeline。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(level=settings.LOG_LEVEL)
        if init_schema:
            await init_db(engine=ENGINE)  # docstring: 幂等建表 + FTS
        app.state.query_pipeline = pipeline or build_query_pipeline()
        log_event(
            logger,
            logging.INFO,
            "app.startup",
            fields={
                "model_provider": settings.MODEL_PROVIDER,
                "embed_provider": settings.EMBED_PROVIDER,
                "use_crag": app.state.query_pipeline.use_crag,
            },
        )
        try:
            yield
        finally:
            await ENGINE.dispose()
            log_event(logger, logging.INFO, "app.shutdown")

    app = FastAPI(title="civic-code-rag", version="0.1.0", lifespan=lifespan)
    app.add_middleware(TraceContextMiddleware)
    app.include_router(query_router)
    app.include_router(health_router)
    return app


app = create_app()
