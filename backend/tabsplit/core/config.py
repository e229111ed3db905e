"""Configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


DEFAULT_GEMINI_MODELS = (
    "gemini-1.5-flash-latest",
    "gemini-1.5-flash-001",
    "gemini-1.5-pro",
    "gemini-1.5-pro-latest",
)

DEFAULT_OPENAI_MODELS = (
    "gpt-4o-mini",
    "gpt-4o",
)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    PROJECT_NAME: str = "Tabsplit"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=True)

    # Redis (processing guard)
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    PROCESSING_GUARD_BACKEND: str = Field(default="memory")
    PROCESSING_GUARD_TTL: int = Field(default=120)

    # Auth
    JWT_SECRET: Optional[str] = Field(default=None)

    # Receipt parsing
    PARSE_PROVIDER: str = Field(default="gemini")
    GEMINI_API_KEY: Optional[str] = Field(default=None)
    GEMINI_MODEL_PARSE: str = Field(default="gemini-1.5-flash")
    GEMINI_MODEL_FALLBACKS: str = Field(default="")
    GEMINI_API_VERSION: str = Field(default="v1")
    GEMINI_API_BASE: str = Field(default="https://generativelanguage.googleapis.com")
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENAI_MODEL_PARSE: str = Field(default="gpt-4o-mini")
    OPENAI_MODEL_FALLBACKS: str = Field(default="")
    PROVIDER_TIMEOUT_SECONDS: float = Field(default=60.0)
    DEBUG_PARSE: bool = Field(default=False)
    PARSE_IMAGE_MAX_EDGE: int = Field(default=1600)

    # Upload
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB

    # Participant directory
    DEFAULT_AVATAR_URL: str = Field(default="https://placehold.co/128x128?text=Avatar")

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()


def split_model_list(raw: str | None) -> list[str]:
    """Split a comma separated list of model identifiers, dropping blanks."""
    if not raw:
        return []
    return [m.strip() for m in raw.split(",") if m.strip()]


def get_database_url() -> str:
    """Return the database URL, falling back to SQLite in development.

    Precedence: ``DATABASE_URL`` from settings, then the environment.  When
    neither is set a local SQLite file is used if ``DB_DEV_FALLBACK_SQLITE``
    is enabled; otherwise a ``RuntimeError`` is raised.
    """
    url = settings.DATABASE_URL or os.getenv("DATABASE_URL")
    if url:
        return url
    if not settings.DB_DEV_FALLBACK_SQLITE:
        raise RuntimeError(
            "No database URL provided via DATABASE_URL; with "
            "DB_DEV_FALLBACK_SQLITE=false a Postgres URL is required."
        )
    return "sqlite+aiosqlite:///./tabsplit.db"
