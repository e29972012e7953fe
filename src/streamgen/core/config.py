"""Pipeline settings loaded from the environment and `.env` files."""

import json
import os
from functools import lru_cache

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list(v: object, field_name: str) -> list[str]:
    """Accept a list, CSV string, or JSON array string."""
    if v is None:
        return []
    if isinstance(v, list):
        return [str(i).strip() for i in v if str(i).strip()]
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return []
        if s.startswith("["):
            try:
                parsed = json.loads(s)
            except json.JSONDecodeError as e:
                raise ValueError(
                    f"{field_name} must be a CSV list or JSON array string"
                ) from e
            if not isinstance(parsed, list):
                raise ValueError(f"{field_name} JSON must be a list")
            return [str(i).strip() for i in parsed if str(i).strip()]
        return [i.strip() for i in s.split(",") if i.strip()]
    raise ValueError(f"Invalid {field_name} type; expected str or list[str]")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env"), env_file_encoding="utf-8")

    # App
    APP_NAME: str = "streamgen"
    ENVIRONMENT: str = "development"  # development | production | test
    LOG_LEVEL: str | None = None

    # Provider credentials (all optional; only the providers in use need keys)
    OPENAI_API_KEY: str | None = None
    ANTHROPIC_API_KEY: str | None = None
    GEMINI_API_KEY: str | None = None
    AZURE_OPENAI_ENDPOINT: str | None = None
    AZURE_OPENAI_API_KEY: str | None = None
    AZURE_OPENAI_API_VERSION: str | None = None

    # Model chains, "kind:name" entries tried in order
    DEFAULT_MODELS: list[str] | str = ["openai:gpt-4o-mini"]
    CRITIC_MODELS: list[str] | str = []

    # Pipeline defaults
    MAX_FEEDBACK_LOOPS: int = 0
    READY_THROTTLE_MS: int = 0
    POLL_READY_INTERVAL_MS: int | None = None
    STREAM_CONCURRENCY: int | None = None

    @field_validator("DEFAULT_MODELS", "CRITIC_MODELS", mode="before")
    @classmethod
    def assemble_model_lists(cls, v: object, info: ValidationInfo) -> list[str]:
        """Allow list, CSV string, or JSON array string for model chains."""
        return _parse_list(v, info.field_name)

    @field_validator("MAX_FEEDBACK_LOOPS", "READY_THROTTLE_MS")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("POLL_READY_INTERVAL_MS", "STREAM_CONCURRENCY")
    @classmethod
    def _positive_or_none(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError("must be >= 1 when set")
        return v


@lru_cache
def get_settings() -> Settings:
    env = os.getenv("ENVIRONMENT", "development").lower()
    if env not in {"development", "production", "test"}:
        raise ValueError("ENVIRONMENT must be 'development', 'production', or 'test'")

    if env == "production":
        env_file = ".env.prod"
    elif env == "development":
        env_file = ".env.dev"
    else:
        # test environment - no env file needed, use defaults
        env_file = ""

    # pydantic-settings accepts the runtime-only `_env_file` kwarg; mypy's stub
    # doesn't allow it.
    return Settings(_env_file=env_file or None)  # type: ignore[call-arg]
