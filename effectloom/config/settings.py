"""effectloom configuration via environment / .env file."""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EFFECTLOOM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Storage ---
    DATA_DIR: Path = Path.home() / ".effectloom"

    # --- Host layout ---
    APP_ROOT: Path | None = None
    ARCHIVE_PATH: Path | None = None
    DEPENDENCY_DIRNAME: str = "site-packages"

    # --- Shared packages ---
    ENGINE_PACKAGE: str = "fxengine"
    SHARED_PACKAGES: list[str] = ["fxengine"]

    # --- Timeouts (seconds) ---
    IMPORT_TIMEOUT: float = 10.0
    PLUGIN_LOAD_TIMEOUT: float = 120.0
    DOWNLOAD_TIMEOUT: float = 60.0

    # --- Lifecycle ---
    PROCESSED_RETENTION_HOURS: float = 24.0
    LINK_SOURCE_DEPENDENCIES: bool = False
    ENGINE_REGISTRATION_ATTEMPTS: int = 3
    ENGINE_RETRY_BACKOFF: float = 0.1

    # --- Remote plugins ---
    REMOTE_INDEX_URL: str = "https://pypi.org/pypi"

    @field_validator("DATA_DIR", "APP_ROOT", "ARCHIVE_PATH", mode="before")
    @classmethod
    def _expand_path(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return None
            v = Path(v)
        if isinstance(v, Path):
            return v.expanduser()
        return v

    @field_validator("REMOTE_INDEX_URL")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def _engine_is_shared(self) -> "Settings":
        if self.ENGINE_PACKAGE and self.ENGINE_PACKAGE not in self.SHARED_PACKAGES:
            self.SHARED_PACKAGES = [self.ENGINE_PACKAGE, *self.SHARED_PACKAGES]
        if self.ENGINE_REGISTRATION_ATTEMPTS < 1:
            self.ENGINE_REGISTRATION_ATTEMPTS = 1
        return self

    @property
    def plugins_dir(self) -> Path:
        """Directory remote plugins are downloaded into."""
        return self.DATA_DIR / "plugins"


settings = Settings()
