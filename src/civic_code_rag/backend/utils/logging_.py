# src/civic_code_rag/backend/utils/logging_.py

"""
[职责] 结构化 JSON 日志：统一 logger 获取、trace/search 字段注入与安全文本预览。
[边界] 不绑定日志后端；不记录用户原文全文（仅 truncate_text/hash_text 预览）。
[上游关系] services/pipelines/api 通过 get_logger + log_event 在关键节点写日志。
[下游关系] stdout JSON 行由日志收集系统检索（trace_id/search_id/jurisdiction）。
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .constants import TRACE_FIELD_KEYS


DEFAULT_LOGGER_NAME = "civic_code_rag"  # docstring: 统一 logger 根名称
DEFAULT_LOG_LEVEL = logging.INFO  # docstring: 默认日志级别
DEFAULT_MAX_TEXT_LEN = 160  # docstring: 安全文本预览长度
_HANDLER_NAME = "structured_json"  # docstring: 标记本项目 handler，避免重复挂载

_LOG_RECORD_RESERVED = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}  # docstring: LogRecord 内置字段（不作为结构化额外字段）


class StructuredLogFormatter(logging.Formatter):
    """
    [职责] 将 LogRecord 转换为单行 JSON（基础字段 + extra）。
    [边界] 不做敏感字段识别；由调用方避免记录原文。
    [上游关系] configure_logging 挂载到 handler。
    [下游关系] 日志系统解析 JSON 字段。
    """

    def __init__(self, *, ensure_ascii: bool = True) -> None:
        super().__init__()
        self._ensure_ascii = ensure_ascii

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _LOG_RECORD_RESERVED or value is None:
                continue  # docstring: 仅保留非空 extra 字段
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info

        return json.dumps(payload, ensure_ascii=self._ensure_ascii, default=str)


def configure_logging(
    *,
    logger_name: str = DEFAULT_LOGGER_NAME,
    level: Optional[int | str] = None,
    ensure_ascii: bool = True,
) -> logging.Logger:
    """
    [职责] 配置项目 base logger（JSON formatter），幂等。
    [边界] 不触碰 root logger。
    [上游关系] 应用 lifespan、脚本入口或 get_logger 调用。
    [下游关系] 子 logger 通过传播复用 handler。
    """
    logger = logging.getLogger(logger_name)
    if level is not None:
        logger.setLevel(level)  # docstring: 显式级别（如 settings.LOG_LEVEL）
    elif logger.level == logging.NOTSET:
        logger.setLevel(DEFAULT_LOG_LEVEL)

    if not any(getattr(h, "name", "") == _HANDLER_NAME for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.name = _HANDLER_NAME
        handler.setFormatter(StructuredLogFormatter(ensure_ascii=ensure_ascii))
        logger.addHandler(handler)

    logger.propagate = False  # docstring: 避免重复向 root 传播
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger below the project root logger (configuring it on first use)."""
    configure_logging()
    if not name:
        return logging.getLogger(DEFAULT_LOGGER_NAME)
    if name.startswith(DEFAULT_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{DEFAULT_LOGGER_NAME}.{name}")  # docstring: 统一挂载在项目根 logger 下


def build_log_fields(
    *,
    context: Optional[Any] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    [职责] 合成结构化日志字段：context 中的 trace 字段 + 调用方扩展字段。
    [边界] 不生成缺失 trace_id；None 值丢弃。
    [上游关系] log_event 调用。
    [下游关系] logger.extra。
    """
    fields: Dict[str, Any] = {}
    if context is not None:
        for key in TRACE_FIELD_KEYS:
            value = _read_context_value(context, key)
            if value is not None:
                fields[key] = str(value)  # docstring: trace 字段统一为字符串
    if extra:
        for key, value in extra.items():
            if value is not None:
                fields[key] = value
    return fields


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    context: Optional[Any] = None,
    fields: Optional[Mapping[str, Any]] = None,
    exc_info: Optional[Any] = None,
) -> None:
    """Write one structured event (``event`` is a stable dotted name such as ``crag.all_filtered_out``)."""
    logger.log(level, event, extra=build_log_fields(context=context, extra=fields), exc_info=exc_info)


def truncate_text(text: Optional[str], *, max_len: int = DEFAULT_MAX_TEXT_LEN) -> Optional[str]:
    """
    [职责] 截断长文本（query/excerpt/文档片段只记录预览）。
    [边界] 仅长度控制。
    [上游关系] services/pipelines 在日志前调用。
    [下游关系] 日志安全预览。
    """
    if text is None:
        return None
    s = str(text)
    if len(s) <= max_len:
        return s
    return f"{s[:max_len]}...(truncated)"


def hash_text(text: Optional[str]) -> Optional[str]:
    """sha256 hex digest of text, for correlating log lines without recording the text."""
    if text is None:
        return None
    s = str(text)
    if not s:
        return ""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _read_context_value(context: Any, key: str) -> Optional[Any]:
    if isinstance(context, Mapping):
        return context.get(key)
    return getattr(context, key, None)
