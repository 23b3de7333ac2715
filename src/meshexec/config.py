"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Settings live in config.toml in the executor's working directory. Environment
variables override it using ``__`` as the nested delimiter (e.g.
``EXECUTOR__BASE_PORT=4000``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from meshexec.config import get_settings

    s = get_settings()
    print(s.executor.control)
    print(s.container.soft_stop_timeout)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class ExecutorConfig(_StrictModel):
    control: str = "http://127.0.0.1:8701"  # scheduler URL, auth token as user-info
    driver: str = "direct"
    base_port: int = 3000  # containers get PORT from base_port + 1 upward
    base_dir: str = ".meshexec"
    svc_addr: str | None = None  # address advertised to the scheduler

    @field_validator("base_port")
    @classmethod
    def validate_base_port(cls, v: int) -> int:
        if not 0 <= v < 65535:
            raise ValueError("base_port must be between 0 and 65534")
        return v


class ContainerConfig(_StrictModel):
    runner: list[str] = ["sl-run"]  # process-runtime entry point (argv prefix)
    containers_dir: str = "containers"
    soft_stop_timeout_ms: int = 5000
    inherit_env: list[str] = ["MESH_LICENSE", "DEBUG", "PATH"]
    download_chunk_size: int = 65536

    @field_validator("runner")
    @classmethod
    def validate_runner(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("runner must name at least one program")
        return v

    @field_validator("soft_stop_timeout_ms", "download_chunk_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


class ChannelConfig(_StrictModel):
    reconnect_min_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    request_timeout_seconds: float = 30.0
    heartbeat_seconds: float = 30.0


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    executor: ExecutorConfig = ExecutorConfig()
    container: ContainerConfig = ContainerConfig()
    channel: ChannelConfig = ChannelConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def soft_stop_timeout(self) -> float:
        return self.container.soft_stop_timeout_ms / 1000

    @cached_property
    def containers_dir(self) -> Path:
        return Path(self.container.containers_dir).resolve()


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
