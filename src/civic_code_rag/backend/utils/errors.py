# src/civic_code_rag/backend/utils/errors.py

"""
[职责] 统一领域错误合同（error_code/message/detail/cause）与最小 HTTP 映射策略（http_status/retryable）。
[边界] 不依赖 FastAPI/HTTPException；不做日志；模型输出不合规（judge/excerpt）不在此建模，由调用方降级为枚举/None。
[上游关系] services/pipelines 抛出 DomainError 子类（上游服务失败、管线不变量被破坏、请求非法）。
[下游关系] api/errors.py 使用 to_http_error 映射为 ErrorResponse 与 HTTP status。
"""

from __future__ import annotations

import json
import re
from typing import Any, ClassVar, Dict, Optional, Sequence, Tuple


ErrorDetail = Dict[str, Any]  # docstring: 错误细节类型（必须 JSON-safe）

# docstring: 对外错误码 -> (HTTP status, retryable 默认值)
ERROR_CODE_POLICY: Dict[str, Tuple[int, bool]] = {
    "bad_request": (400, False),
    "pipeline_error": (500, False),
    "external_dependency": (503, True),
    "internal_error": (500, False),
}

INTERNAL_ERROR_CODE = "internal_error"
INTERNAL_ERROR_MESSAGE = "internal error"

_DOTTED_CODE = re.compile(r"^[a-z][a-z0-9]*(?:\.[a-z0-9_]+)+$")  # docstring: 细分码 area.reason


def is_valid_error_code(error_code: str) -> bool:
    """Known public code, or a dotted ``area.reason`` refinement."""
    if not error_code:
        return False
    return error_code in ERROR_CODE_POLICY or bool(_DOTTED_CODE.match(error_code))


def ensure_json_safe_detail(detail: ErrorDetail) -> ErrorDetail:
    """Raise ValueError unless detail is a JSON-serializable dict."""  # docstring: detail 需可直接写入响应
    if not isinstance(detail, dict):
        raise ValueError("detail must be a dict")
    try:
        json.dumps(detail)
    except TypeError as exc:
        raise ValueError("detail must be JSON-serializable") from exc
    return detail


class DomainError(Exception):
    """
    [职责] 领域错误基类：子类以类属性声明 error_code/默认消息，实例携带 message/detail/cause。
    [边界] 仅表达语义，不承担日志与 HTTP 输出；http_status/retryable 由 ERROR_CODE_POLICY 推导，可按实例覆盖。
    [上游关系] services/pipelines 抛出；必要时携带 cause。
    [下游关系] api/errors.py 读取字段完成映射。
    """

    error_code: ClassVar[str] = INTERNAL_ERROR_CODE
    default_message: ClassVar[str] = INTERNAL_ERROR_MESSAGE

    def __init__(
        self,
        *,
        message: Optional[str] = None,
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        code = type(self).error_code
        if not is_valid_error_code(code):
            raise ValueError(f"invalid error_code: {code}")
        self.message = message or type(self).default_message
        self.detail = ensure_json_safe_detail(dict(detail or {}))
        self.cause = cause
        status, default_retry = ERROR_CODE_POLICY.get(code.split(".", 1)[0], (500, False))
        self.http_status = status
        self.retryable = default_retry if retryable is None else retryable
        super().__init__(self.message)
        if cause is not None:
            self.__cause__ = cause  # docstring: 保留异常链路

    def to_dict(self) -> Dict[str, Any]:
        """Return the ErrorResponse.error body (without trace_id)."""
        return {"code": self.error_code, "message": self.message, "detail": self.detail}


class BadRequestError(DomainError):
    """400：请求非法（空 query、未知辖区、请求文档为空）。"""

    error_code = "bad_request"
    default_message = "bad request"


class UnknownJurisdictionError(BadRequestError):
    """
    [职责] 400：辖区 id/别名无法解析为已知语料。
    [边界] detail 给出原始输入与已知辖区列表，便于前端提示。
    [上游关系] query_service.resolve_jurisdiction。
    [下游关系] /code-search* 返回 bad_request。
    """

    default_message = "unknown jurisdiction"

    def __init__(self, jurisdiction: str, *, known: Sequence[str] = ()) -> None:
        super().__init__(detail={"jurisdiction": jurisdiction, "known": sorted(known)})
        self.jurisdiction = jurisdiction


class PipelineError(DomainError):
    """
    [职责] 500：管线不变量被破坏（存储数据损坏、向量空间混用）。
    [边界] 不用于上游服务的瞬时失败（见 ExternalDependencyError）。
    [上游关系] embedding_cache/hybrid 检测到不可恢复的数据问题时抛出。
    [下游关系] api/errors.py 映射为 500。
    """

    error_code = "pipeline_error"
    default_message = "pipeline error"


class EmbeddingDimensionError(PipelineError):
    """500：同一次比较/写入中出现了不同维度的向量。"""

    default_message = "embedding dimension mismatch"

    def __init__(self, *, expected: int, actual: int, source: str) -> None:
        super().__init__(detail={"expected": expected, "actual": actual, "source": source})


class ExternalDependencyError(DomainError):
    """
    [职责] 503：上游服务（embedding/LLM）失败或整体超时，且失败位于致命路径上。
    [边界] 单候选/单批次失败由调用方就地降级，不抛出本错误。
    [上游关系] query embedding、关键词抽取、答案生成、管线 deadline。
    [下游关系] api/errors.py 映射为 503 + retryable=true。
    """

    error_code = "external_dependency"
    default_message = "external dependency error"


class DeadlineExceededError(ExternalDependencyError):
    """503：整条检索管线超过 pipeline_timeout_s。"""

    default_message = "query pipeline deadline exceeded"

    def __init__(self, *, timeout_s: float, cause: Optional[Exception] = None) -> None:
        super().__init__(detail={"timeout_s": timeout_s}, cause=cause)
        self.timeout_s = timeout_s


class UpstreamServiceError(ExternalDependencyError):
    """
    [职责] 标注具体上游服务（embedding/keywords/answer）的致命失败。
    [边界] 仍按 external_dependency 映射；service 名写入 detail。
    [上游关系] query_service 在致命阶段捕获第三方异常后抛出。
    [下游关系] 日志与 ErrorResponse.detail.service 用于定位。
    """

    def __init__(
        self,
        *,
        service: str,
        message: Optional[str] = None,
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            message=message or f"{service} service unavailable",
            detail={"service": service, **(detail or {})},
            cause=cause,
        )
        self.service = service


class InternalError(DomainError):
    """500：未知异常或装配缺失的稳定外壳。"""


def to_http_error(
    error: Exception,
    *,
    trace_id: Optional[str] = None,
) -> Tuple[int, Dict[str, Any]]:
    """
    [职责] 将异常转换为 HTTP status + ErrorResponse payload（不耦合 FastAPI）。
    [边界] 未知异常统一降级为 internal_error，不暴露堆栈。
    [上游关系] api/errors.py 调用。
    [下游关系] routers 返回统一 ErrorResponse。
    """
    if isinstance(error, DomainError):
        status_code, body = error.http_status, error.to_dict()
    else:
        status_code = ERROR_CODE_POLICY[INTERNAL_ERROR_CODE][0]
        body = {"code": INTERNAL_ERROR_CODE, "message": INTERNAL_ERROR_MESSAGE, "detail": {}}

    if trace_id:
        body["trace_id"] = trace_id  # docstring: API 层注入 trace_id
    return status_code, {"error": body}
