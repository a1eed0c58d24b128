from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field, ValidationError


ENV_API_BASE_URL = "QUEST_API_BASE_URL"
ENV_CACHE_DIR = "QUEST_CACHE_DIR"
ENV_TOTAL_LOCATIONS = "QUEST_TOTAL_LOCATIONS"
ENV_WRITE_ATTEMPTS = "QUEST_WRITE_ATTEMPTS"
ENV_VERIFY_ATTEMPTS = "QUEST_VERIFY_ATTEMPTS"
ENV_REQUEST_TIMEOUT = "QUEST_REQUEST_TIMEOUT"
ENV_BACKOFF_BASE = "QUEST_BACKOFF_BASE"
ENV_BACKOFF_CAP = "QUEST_BACKOFF_CAP"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


class ClientSettings(BaseModel):
    """Client-side sync configuration; see `from_env` for the variable names."""

    api_base_url: str
    cache_dir: Optional[str] = None
    total_locations: int = Field(default=3, ge=1)
    write_attempts: int = Field(default=3, ge=1)
    verify_attempts: int = Field(default=3, ge=1)
    request_timeout: float = Field(default=5.0, gt=0)
    backoff_base: float = Field(default=0.5, ge=0)
    backoff_cap: float = Field(default=2.0, ge=0)

    @classmethod
    def from_env(cls) -> "ClientSettings":
        base_url = _getenv(ENV_API_BASE_URL)
        if not base_url:
            raise RuntimeError(f"Missing required configuration: {ENV_API_BASE_URL}")

        raw = {
            "api_base_url": base_url,
            "cache_dir": _getenv(ENV_CACHE_DIR),
            "total_locations": _getenv(ENV_TOTAL_LOCATIONS),
            "write_attempts": _getenv(ENV_WRITE_ATTEMPTS),
            "verify_attempts": _getenv(ENV_VERIFY_ATTEMPTS),
            "request_timeout": _getenv(ENV_REQUEST_TIMEOUT),
            "backoff_base": _getenv(ENV_BACKOFF_BASE),
            "backoff_cap": _getenv(ENV_BACKOFF_CAP),
        }
        # Unset values fall back to the model defaults
        try:
            return cls.model_validate({k: v for k, v in raw.items() if v is not None})
        except ValidationError as ve:
            raise RuntimeError(f"Invalid client configuration: {ve}") from ve


__all__ = ["ClientSettings"]
