"""Configuration loading for the procedure gate.

Configuration is a tree of frozen pydantic models. Values come from, in
increasing precedence: built-in defaults, a JSON config file, and a small
set of environment variables.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "PROCEDURE_GATE_"


class CacheConfig(BaseModel):
    """Procedure cache settings."""

    model_config = ConfigDict(frozen=True)

    ttl_seconds: float = Field(default=300.0, gt=0)
    max_size: int = Field(default=100, ge=1)
    refresh_interval_seconds: float = Field(default=60.0, ge=0)


class EnforcementConfig(BaseModel):
    """Run enforcement settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    strict: bool = False
    run_expiry_seconds: float = Field(default=300.0, gt=0)
    max_concurrent_runs: int = Field(default=10, ge=1)
    require_for_write: bool = True
    require_for_read: bool = False
    terminal_run_retention_seconds: float = Field(default=3600.0, ge=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)


class RetryConfig(BaseModel):
    """Step retry and backoff settings."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter_ratio: float = Field(default=0.3, ge=0, le=1.0)


class LoggingConfig(BaseModel):
    """Logging and audit trail settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "info"
    audit_enabled: bool = True
    audit_path: str = ".procedure-audit"
    audit_batch_size: int = Field(default=10, ge=1)
    audit_flush_interval_seconds: float = Field(default=5.0, gt=0)
    audit_memory_entries: int = Field(default=1000, ge=1)


class SourceConfig(BaseModel):
    """Where procedure definitions are fetched from."""

    model_config = ConfigDict(frozen=True)

    dataset_name: str = "AI_Agent_Procedures"
    workspace_id: int | None = None
    account_id: int | None = None


class BackendConfig(BaseModel):
    """Governance backend connection settings."""

    model_config = ConfigDict(frozen=True)

    base_url: str = "https://verodat.io/api/v3"
    api_key: str | None = None
    timeout_seconds: float = Field(default=30.0, gt=0)


class ProcedureConfig(BaseModel):
    """Top-level configuration."""

    model_config = ConfigDict(frozen=True)

    cache: CacheConfig = Field(default_factory=CacheConfig)
    enforcement: EnforcementConfig = Field(default_factory=EnforcementConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)


class ConfigLoader:
    """Loads ProcedureConfig from JSON files and dictionaries."""

    DEFAULT_CONFIG_PATHS = [
        "./procedure-gate.json",
        "./.procedure-gate/config.json",
        "~/.config/procedure-gate/config.json",
    ]

    def load_from_file(self, path: str) -> ProcedureConfig:
        """Load configuration from a JSON file.

        Args:
            path: Path to the config JSON file.

        Returns:
            Loaded ProcedureConfig.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ValueError: If the file is invalid JSON or holds invalid values.
        """
        file_path = Path(os.path.expanduser(path))

        if not file_path.exists():
            raise FileNotFoundError(f"Config not found: {path}")

        try:
            data = json.loads(file_path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config: {e}") from e

        return self.load_from_dict(data)

    def load_from_dict(self, data: dict[str, Any]) -> ProcedureConfig:
        """Validate a configuration dictionary.

        Unknown sections are ignored. Missing sections take their defaults.

        Raises:
            ValueError: If a value is out of range or has the wrong type.
        """
        try:
            return ProcedureConfig.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid procedure gate config: {e}") from e

    def discover(self) -> ProcedureConfig:
        """Load the first config found in DEFAULT_CONFIG_PATHS, else defaults."""
        for candidate in self.DEFAULT_CONFIG_PATHS:
            if Path(os.path.expanduser(candidate)).exists():
                logger.info("Loading procedure gate config from %s", candidate)
                return self.load_from_file(candidate)
        return ProcedureConfig()


def apply_env_overrides(config: ProcedureConfig) -> ProcedureConfig:
    """Return a copy of config with environment overrides applied."""
    backend_updates: dict[str, Any] = {}
    logging_updates: dict[str, Any] = {}

    api_key = os.getenv(f"{ENV_PREFIX}API_KEY")
    if api_key:
        backend_updates["api_key"] = api_key
    base_url = os.getenv(f"{ENV_PREFIX}BASE_URL")
    if base_url:
        backend_updates["base_url"] = base_url
    audit_path = os.getenv(f"{ENV_PREFIX}AUDIT_PATH")
    if audit_path:
        logging_updates["audit_path"] = audit_path
    level = os.getenv(f"{ENV_PREFIX}LOG_LEVEL")
    if level:
        logging_updates["level"] = level

    updates: dict[str, Any] = {}
    if backend_updates:
        updates["backend"] = config.backend.model_copy(update=backend_updates)
    if logging_updates:
        updates["logging"] = config.logging.model_copy(update=logging_updates)
    return config.model_copy(update=updates) if updates else config


def load_config(path: str | None = None) -> ProcedureConfig:
    """Load configuration from path (or discovered defaults) plus environment.

    Args:
        path: Optional explicit path to a JSON config file.

    Returns:
        The effective ProcedureConfig.
    """
    loader = ConfigLoader()
    config = loader.load_from_file(path) if path else loader.discover()
    return apply_env_overrides(config)


def configure_logging(settings: LoggingConfig) -> None:
    """Apply the configured log level to the root logger."""
    level = getattr(logging, settings.level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {settings.level}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
