"""Application settings: single file, Pydantic-based.

DB selection (payments ledger):
  - PAYMENTS_DATABASE_URL set and non-empty -> PostgreSQL
  - PAYMENTS_DATABASE_URL absent/empty -> SQLite (DB_SQLITE_PATH, default data/paytracker.db)

The identity registry is always an external database (INDEXER_DATABASE_URL).
"""

import re
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _backend_root() -> Path:
    """Backend package root (backend/). config.py lives at backend/config.py."""
    return Path(__file__).resolve().parent


def _ensure_env_loaded() -> None:
    """Load .env from backend root (then project root). Idempotent."""
    root: Path = _backend_root()
    for candidate in (root / ".env", root.parent / ".env"):
        if candidate.exists():
            load_dotenv(candidate, override=False)


_ensure_env_loaded()

_ENV_FILES = (str(_backend_root() / ".env"), ".env")


def _redact(url: str) -> str:
    return re.sub(r":([^:@]+)@", r":***@", url) if url else ""


class DatabaseSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str | None = Field(
        default=None,
        description="PostgreSQL DSN for the payments ledger; when set, uses Postgres.",
        validation_alias="PAYMENTS_DATABASE_URL",
    )
    sqlite_path: str | None = Field(default="data/paytracker.db")
    pool_size: int = Field(default=5)
    pool_timeout: int = Field(default=30)
    pool_recycle: int = Field(default=1800)

    def _use_postgres(self) -> bool:
        return bool((self.database_url or "").strip())

    def _resolved_sqlite_path(self) -> Path:
        raw: str = (self.sqlite_path or "data/paytracker.db").strip()
        path: Path = Path(raw)
        if not path.is_absolute():
            path = (_backend_root() / path).resolve()
        return path

    @property
    def url(self) -> str:
        if self._use_postgres():
            return (self.database_url or "").strip()
        path = self._resolved_sqlite_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{path.as_posix()}"

    def db_info_for_logging(self) -> str:
        if self._use_postgres():
            return f"PostgreSQL @ {_redact((self.database_url or '').strip())}"
        return f"SQLite @ {self._resolved_sqlite_path().as_posix()}"


class RegistrySettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="REGISTRY_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = Field(
        default="",
        description="DSN of the namespace indexer database (read-only).",
        validation_alias="INDEXER_DATABASE_URL",
    )
    namespace_root: str = Field(default="grid-beta.hypr")
    wallet_note_label: str = Field(default="~wallet")
    provider_note_label: str = Field(default="~provider-id")

    def db_info_for_logging(self) -> str:
        return _redact(self.database_url.strip()) or "<unset>"


class ExplorerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EXPLORER_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_url: str = Field(default="https://api.etherscan.io/v2/api")
    api_key: str = Field(default="", validation_alias="ETHERSCAN_API_KEY")
    chain_id: int = Field(default=8453)
    token_contract: str = Field(default="0x833589fcd6edb6e08f4c7c32d4f71b54bda02913")
    token_decimals: int = Field(default=6)
    request_timeout: int = Field(default=30)
    page_size: int = Field(default=1000)
    retry_attempts: int = Field(default=3)
    retry_backoff_base: float = Field(default=5.0)
    retry_backoff_max: float = Field(default=60.0)
    rate_limit_interval: float = Field(default=1.0)


class TrackerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TRACKER_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    safety_buffer: int = Field(default=10, ge=0)
    conservative_step: int = Field(default=100, ge=1)
    repair_tolerance: int = Field(default=1000, ge=0)
    poll_interval: float = Field(default=600.0, gt=0)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PAYTRACKER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    explorer: ExplorerSettings = Field(default_factory=ExplorerSettings)
    tracker: TrackerSettings = Field(default_factory=TrackerSettings)


@lru_cache
def get_settings() -> Settings:
    return Settings()
