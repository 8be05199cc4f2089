import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_hours: int,
        groq_api_key: Optional[str],
        gemini_api_key: Optional[str],
        llm_timeout_secs: float,
        chat_context_limit: int,
        chat_history_limit: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.groq_api_key = groq_api_key
        self.gemini_api_key = gemini_api_key
        self.llm_timeout_secs = llm_timeout_secs
        self.chat_context_limit = chat_context_limit
        self.chat_history_limit = chat_history_limit
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fintrack.db"
    database_url = os.getenv("FINTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINTRACK_TIMEZONE", "America/Sao_Paulo")
    secret_key = os.getenv(
        "FINTRACK_SECRET_KEY",
        "3f6c1d0a9b7e44c2a1f85e2d7c9b0a6e4d3c2b1a0f9e8d7c6b5a4f3e2d1c0b9a",
    )
    token_max_age_hours = int(os.getenv("FINTRACK_TOKEN_MAX_AGE_HOURS", "720"))
    llm_timeout_secs = float(os.getenv("FINTRACK_LLM_TIMEOUT_SECS", "60"))
    chat_context_limit = int(os.getenv("FINTRACK_CHAT_CONTEXT_LIMIT", "50"))
    chat_history_limit = int(os.getenv("FINTRACK_CHAT_HISTORY_LIMIT", "40"))
    log_level = os.getenv("FINTRACK_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_hours=token_max_age_hours,
        groq_api_key=_optional_env("FINTRACK_GROQ_API_KEY"),
        gemini_api_key=_optional_env("FINTRACK_GEMINI_API_KEY"),
        llm_timeout_secs=llm_timeout_secs,
        chat_context_limit=chat_context_limit,
        chat_history_limit=chat_history_limit,
        log_level=log_level,
    )
