"""
Runtime configuration for the Mind Ease service.

Settings are read from ``MIND_EASE_*`` environment variables. Every value
except the API credential has a default, and malformed numbers fall back to
those defaults instead of failing startup.
"""

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

ENV_PREFIX = "MIND_EASE_"

DEFAULT_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash"


class Settings(BaseModel):
    """Service configuration."""

    api_key: str | None = Field(None, description="Generative service credential")
    model: str = Field(DEFAULT_MODEL, description="Generative model name")
    api_base_url: str = Field(DEFAULT_API_BASE_URL, description="Generative API root")
    temperature: float = Field(0.7, description="Sampling temperature")
    enable_search: bool = Field(True, description="Attach the search retrieval tool")
    request_timeout: float = Field(60.0, description="Remote call timeout in seconds")
    data_path: Path | None = Field(None, description="JSON file for local storage")
    remote_moods_url: str | None = Field(None, description="Remote mood source root")
    host: str = Field("127.0.0.1", description="Server bind address")
    port: int = Field(8000, description="Server port")
    log_level: str = Field("info", description="Server log level")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()

        def text(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name.upper())
            if value is None or not value.strip():
                return None
            return value.strip()

        api_key = text("api_key") or (env.get("GEMINI_API_KEY") or "").strip() or None
        data_path = text("data_path")

        return cls(
            api_key=api_key,
            model=text("model") or defaults.model,
            api_base_url=text("api_base_url") or defaults.api_base_url,
            temperature=_float(text("temperature"), defaults.temperature),
            enable_search=_bool(text("enable_search"), defaults.enable_search),
            request_timeout=_float(text("request_timeout"), defaults.request_timeout),
            data_path=Path(data_path).expanduser() if data_path else None,
            remote_moods_url=text("remote_moods_url"),
            host=text("host") or defaults.host,
            port=int(_float(text("port"), defaults.port)),
            log_level=(text("log_level") or defaults.log_level).lower(),
        )


def _float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    return default
