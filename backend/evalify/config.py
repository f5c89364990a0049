import os
from datetime import timedelta
from functools import lru_cache
from typing import List, Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime configuration read from the environment (see backend/.env)"""

    def __init__(self):
        self.log_level: str = os.getenv("EVALIFY_LOG_LEVEL", "INFO")
        self.cors_origins: List[str] = [
            origin.strip()
            for origin in os.getenv(
                "EVALIFY_CORS_ORIGINS", "http://localhost:3000,http://localhost:5173"
            ).split(",")
            if origin.strip()
        ]
        self.seed_file: Optional[str] = os.getenv("EVALIFY_SEED_FILE") or None
        self.access_window = timedelta(
            minutes=int(os.getenv("EVALIFY_ACCESS_WINDOW_MINUTES", "5"))
        )
        self.poll_interval_seconds: float = float(
            os.getenv("EVALIFY_POLL_INTERVAL_SECONDS", "5")
        )
        self.trust_proxy_headers: bool = _env_bool("EVALIFY_TRUST_PROXY_HEADERS", True)
        self.openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
        self.llm_model: str = os.getenv("EVALIFY_LLM_MODEL", "gpt-4o-mini")


@lru_cache
def get_settings() -> Settings:
    return Settings()
