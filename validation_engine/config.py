from __future__ import annotations

import logging
import os
from functools import lru_cache

from pydantic import BaseModel, Field


def _env(name: str, default: str) -> str:
    return os.getenv(name, "").strip() or default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", name, raw)
        return default


class Settings(BaseModel):
    api_base_url: str = Field(default_factory=lambda: _env("VALIDATION_API_BASE_URL", "http://127.0.0.1:8000/api"))
    api_token: str = Field(default_factory=lambda: _env("VALIDATION_API_TOKEN", ""))
    user_agent: str = "ValidationEngine/1.0"
    request_timeout_seconds: float = Field(default_factory=lambda: _env_float("VALIDATION_REQUEST_TIMEOUT", 30.0))

    # Deep-research status polling
    poll_interval_seconds: float = Field(default_factory=lambda: _env_float("VALIDATION_POLL_INTERVAL", 5.0))
    rate_limit_interval_seconds: float = Field(default_factory=lambda: _env_float("VALIDATION_RATE_LIMIT_INTERVAL", 30.0))
    poll_timeout_seconds: float = Field(default_factory=lambda: _env_float("VALIDATION_POLL_TIMEOUT", 15 * 60.0))

    # Insight draft autosave
    debounce_seconds: float = Field(default_factory=lambda: _env_float("VALIDATION_DEBOUNCE_SECONDS", 1.0))

    log_level: str = Field(default_factory=lambda: _env("VALIDATION_LOG_LEVEL", "INFO"))

    @property
    def auth_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": self.user_agent}
        if self.api_token:
            headers["Authorization"] = f"Token {self.api_token}"
        return headers


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | int | None = None) -> None:
    if level is None:
        level = get_settings().log_level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        force=True,
    )
