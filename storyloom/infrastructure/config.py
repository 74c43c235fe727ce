"""
Runtime settings - populated from STORYLOOM_* environment variables
"""

from typing import Optional
import os

from pydantic import BaseModel, Field


_ENV_PREFIX = "STORYLOOM_"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Service settings"""
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")
    save_dir: Optional[str] = Field(None, description="Directory for file-backed saves; in-memory when unset")

    save_debounce_seconds: float = Field(default=1.0, ge=0)
    save_max_attempts: int = Field(default=3, ge=1)
    save_backoff_base_seconds: float = Field(default=1.0, ge=0)
    save_conflict_tolerance_seconds: float = Field(default=5.0, ge=0)

    story_context_tokens: int = Field(default=5500, gt=0)
    custom_context_tokens: int = Field(default=6000, gt=0)
    story_temperature: float = Field(default=0.8, ge=0, le=2)
    max_response_tokens: int = Field(default=2048, gt=0)
    enable_illustrations: bool = Field(default=True, description="Ask the narrator for SCENE sections")

    reasoning_open_tag: str = Field(default="<think>", min_length=1)
    reasoning_close_tag: str = Field(default="</think>", min_length=1)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, falling back to defaults"""

        values = {
            "log_level": _env("LOG_LEVEL"),
            "log_format": _env("LOG_FORMAT"),
            "save_dir": _env("SAVE_DIR"),
            "save_debounce_seconds": _env("SAVE_DEBOUNCE_SECONDS"),
            "save_max_attempts": _env("SAVE_MAX_ATTEMPTS"),
            "save_backoff_base_seconds": _env("SAVE_BACKOFF_BASE_SECONDS"),
            "save_conflict_tolerance_seconds": _env("SAVE_CONFLICT_TOLERANCE_SECONDS"),
            "story_context_tokens": _env("STORY_CONTEXT_TOKENS"),
            "custom_context_tokens": _env("CUSTOM_CONTEXT_TOKENS"),
            "story_temperature": _env("STORY_TEMPERATURE"),
            "max_response_tokens": _env("MAX_RESPONSE_TOKENS"),
            "reasoning_open_tag": _env("REASONING_OPEN_TAG"),
            "reasoning_close_tag": _env("REASONING_CLOSE_TAG"),
        }
        # pydantic coerces the numeric strings
        settings = {key: value for key, value in values.items() if value is not None}
        settings["enable_illustrations"] = _env_bool("ENABLE_ILLUSTRATIONS", True)
        return cls(**settings)
