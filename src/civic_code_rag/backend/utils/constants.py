# src/civic_code_rag/backend/utils/constants.py

"""
[职责] 集中定义查询链路的稳定常量与协议字段名（trace/timing/highlight marker/空结果文案/辖区名册）。
[边界] 不包含运行时可变配置（见 config.Settings）；不读取环境变量；不依赖业务实现。
[上游关系] services/pipelines/api 在构建日志、响应与 prompt 时引用。
[下游关系] 日志字段、HTTP 响应与前端高亮渲染依赖这些值保持一致。
"""

from __future__ import annotations

from typing import Dict


TRACE_ID_KEY = "trace_id"  # docstring: trace_id 字段
REQUEST_ID_KEY = "request_id"  # docstring: request_id 字段
PARENT_REQUEST_ID_KEY = "parent_request_id"  # docstring: parent_request_id 字段
SEARCH_ID_KEY = "search_id"  # docstring: 单次检索ID字段
JURISDICTION_KEY = "jurisdiction"  # docstring: 辖区字段

TRACE_FIELD_KEYS = (  # docstring: 结构化日志推荐字段集合
    TRACE_ID_KEY,
    REQUEST_ID_KEY,
    PARENT_REQUEST_ID_KEY,
    SEARCH_ID_KEY,
    JURISDICTION_KEY,
)

TIMING_MS_KEY = "timing_ms"  # docstring: timing_ms 字段
TIMING_TOTAL_KEY = "total"  # docstring: timing_ms 的总耗时 key（短形式）
TIMING_TOTAL_MS_KEY = "total_ms"  # docstring: timing_ms 的总耗时 key（含单位）

STAGE_EMBED = "embed"  # docstring: query embedding 阶段
STAGE_KEYWORDS = "keywords"  # docstring: 关键词抽取阶段
STAGE_RETRIEVE = "retrieve"  # docstring: 混合检索阶段
STAGE_CRAG = "crag"  # docstring: 相关性过滤阶段
STAGE_HIGHLIGHT = "highlight"  # docstring: 高亮对齐阶段
STAGE_ANSWER = "answer"  # docstring: 答案生成阶段

MARK_OPEN = "<mark>"  # docstring: 高亮起始标记
MARK_CLOSE = "</mark>"  # docstring: 高亮结束标记

NO_RELEVANT_RESULTS_TEXT = "No relevant code chunks found."  # docstring: 空结果统一文案
NONE_SENTINEL = "None"  # docstring: LLM 约定的“无结果”字面值

MAX_EXCERPT_CHARS = 100  # docstring: 高亮摘录长度上限（prompt 合同）
MIN_SENTENCE_FRAGMENT_CHARS = 20  # docstring: 句子级回退要求的最小片段长度

ERROR_KEY = "error"  # docstring: ErrorResponse 顶层字段

JURISDICTION_CODE_NAMES: Dict[str, str] = {  # docstring: 辖区 -> 法规名称（用于生成 prompt）
    "johnson_county_ks": "Johnson County Zoning Regulation",
    "oak_ridge_tn": "Oak Ridge Zoning Ordinance",
    "cupertino_ca": "Cupertino Zoning Code",
    "kansas_city_mo": "Kansas City Zoning and Development Code",
    "los_altos_ca": "Los Altos Zoning Code",
}

JURISDICTION_ALIASES: Dict[str, str] = {  # docstring: URL 短名 -> 辖区标识
    "joco": "johnson_county_ks",
    "oakridge": "oak_ridge_tn",
    "cupertino": "cupertino_ca",
    "kcmo": "kansas_city_mo",
    "losaltos": "los_altos_ca",
}
