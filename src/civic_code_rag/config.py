# src/civic_code_rag/config.py
from __future__ import annotations

import os
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv


def _find_repo_root(start: Path) -> Path:
    """Closest ancestor holding pyproject.toml, else start itself."""
    cur = start.resolve()
    for _ in range(20):
        if (cur / "pyproject.toml").exists():
            return cur
        if cur.parent == cur:
            break
        cur = cur.parent
    return start.resolve()


PACKAGE_ROOT = Path(__file__).resolve().parent
REPO_ROOT = _find_repo_root(PACKAGE_ROOT)

# .env before any llama_index client reads os.environ
load_dotenv(str(REPO_ROOT / ".env"), override=False)

LOCAL_ROOT = REPO_ROOT / ".Local"  # sqlite default location


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"

    CIVIC_CODE_RAG_DATABASE_URL: str | None = None

    OPENAI_API_KEY: str | None = None
    OPENAI_API_BASE: str | None = "https://api.openai.com/v1"

    # chat models (one per pipeline role)
    MODEL_PROVIDER: str = "openai"
    KEYWORD_MODEL: str = "gpt-4o-mini"
    JUDGE_MODEL: str = "gpt-4o-mini"
    HIGHLIGHT_MODEL: str = "gpt-4o-mini"
    ANSWER_MODEL: str = "gpt-4o"
    STREAM_ANSWER_MODEL: str = "gpt-4.1-mini"
    LLM_REQUEST_TIMEOUT_S: float = 30.0

    OLLAMA_BASE_URL: str = "http://localhost:11434"

    # embeddings
    EMBED_PROVIDER: str = "openai"
    EMBED_MODEL: str = "text-embedding-3-small"
    EMBED_DIM: int = 1536
    # conservative; the service ceiling is 8192 tokens per request
    EMBED_TOKEN_LIMIT: int = 5000
    EMBED_CHARS_PER_TOKEN: int = 4

    # query pipeline
    USE_CRAG: bool = True
    RETRIEVAL_LIMIT: int = 30
    HIGHLIGHT_TOP_N: int = 5
    HIGHLIGHT_SENTENCE_CONTEXT: int = 0
    PIPELINE_TIMEOUT_S: float = 90.0

    @property
    def embed_batch_max_chars(self) -> int:
        return int(self.EMBED_TOKEN_LIMIT) * int(self.EMBED_CHARS_PER_TOKEN)

    model_config = SettingsConfigDict(
        env_file=str(REPO_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()


def _set_env_if_missing(key: str, value: str | None) -> None:
    """
    Keep provider SDKs working with .env-based Settings by exporting to os.environ.
    Do not override explicitly provided environment variables.
    """
    if value is None:
        return
    raw = str(value).strip()
    if not raw:
        return
    if os.getenv(key):
        return
    os.environ[key] = raw


def _bootstrap_provider_env(s: Settings) -> None:
    """
    Export provider-related settings into os.environ for the OpenAI clients used by llama_index.
    """
    _set_env_if_missing("OPENAI_API_KEY", s.OPENAI_API_KEY)
    _set_env_if_missing("OPENAI_API_BASE", s.OPENAI_API_BASE)


_bootstrap_provider_env(settings)
