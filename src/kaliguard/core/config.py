"""KaliGuard Configuration System.

Layered YAML configuration with Pydantic validation.
Supports a system config file, runtime overrides and env var overrides.

Config Layer Priority (highest to lowest):
1. Runtime overrides (in-memory)
2. System config (~/.kaliguard/config.yaml)
3. Environment variables (KALIGUARD_ prefix, "__" nesting)
4. Defaults (defined in Pydantic models)

Usage:
    from kaliguard.core.config import create_settings

    settings = create_settings()
    print(settings.history.max_entries)  # 1000 (default)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, PositiveFloat, PositiveInt, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kaliguard.core.exceptions import ConfigurationError


DEFAULT_BASE_PATH = "~/.kaliguard"


# =============================================================================
# Sub-configuration Models (nested sections)
# =============================================================================


class StorageConfig(BaseModel):
    """Locations of persisted files, relative to base_path."""

    base_path: str = DEFAULT_BASE_PATH
    audit_dir: str = "logs"
    history_file: str = "data/command-history.json"
    tasks_file: str = "data/scheduled-tasks.json"

    def resolve(self, relative: str) -> Path:
        """Return an absolute path under base_path."""
        path = Path(relative).expanduser()
        if path.is_absolute():
            return path
        return Path(self.base_path).expanduser() / path


class AuditConfig(BaseModel):
    """Audit log rotation configuration."""

    max_file_size: PositiveInt = 10 * 1024 * 1024  # bytes
    max_files: PositiveInt = 5


class HistoryConfig(BaseModel):
    """Execution history configuration."""

    max_entries: PositiveInt = 1000
    flush_debounce: PositiveFloat = 1.0  # seconds


class RateLimitConfig(BaseModel):
    """Per-identity token bucket configuration."""

    tokens: PositiveInt = 10
    interval: PositiveFloat = 60.0  # seconds
    idle_ttl: PositiveFloat = 3600.0  # seconds


class ExecutionConfig(BaseModel):
    """Subprocess execution limits."""

    default_timeout: PositiveInt = 300  # seconds
    max_timeout: PositiveInt = 1800  # seconds
    max_output_bytes: PositiveInt = 10 * 1024 * 1024


class RateLimitRuleConfig(BaseModel):
    """Rate limit attached to a permission rule."""

    tokens: PositiveInt
    interval: PositiveFloat  # seconds


class PermissionRuleConfig(BaseModel):
    """Permission rule as written in YAML.

    ``pattern`` is matched exactly unless ``regex`` is true.
    """

    pattern: str
    regex: bool = False
    allowed: bool = True
    roles: List[str] = Field(default_factory=list)
    max_concurrent: Optional[PositiveInt] = None
    rate_limit: Optional[RateLimitRuleConfig] = None


class PermissionsConfig(BaseModel):
    """Permission rule configuration."""

    use_default_rules: bool = True
    rules: List[PermissionRuleConfig] = Field(default_factory=list)


class SchedulerConfig(BaseModel):
    """Recurring task scheduler configuration."""

    enabled: bool = True
    timezone: str = "UTC"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate renderer name."""
        if v.lower() not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}. Must be 'json' or 'console'")
        return v.lower()


# =============================================================================
# Main Configuration Model
# =============================================================================


class Settings(BaseSettings):
    """Main settings class with layered configuration support.

    Loads configuration from:
    1. Environment variables (KALIGUARD_ prefix)
    2. System config file (~/.kaliguard/config.yaml)
    3. Defaults defined in Pydantic models
    """

    model_config = SettingsConfigDict(
        env_prefix="KALIGUARD_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging_config: LoggingConfig = Field(
        default_factory=LoggingConfig, alias="logging"
    )

    @property
    def logging(self) -> LoggingConfig:
        """Alias for logging_config to match YAML key and common usage."""
        return self.logging_config


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def load_yaml_file(path: Path) -> Dict[str, Any]:
    """Load and parse a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as dictionary.

    Raises:
        ConfigurationError: If file cannot be read or parsed.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(
            config_path=str(path),
            message=f"Configuration file not found: {path}",
        )
    except yaml.YAMLError as e:
        raise ConfigurationError(
            config_path=str(path),
            message=f"Invalid YAML in {path}: {e}",
        )
    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(
            config_path=str(path),
            message=f"Top-level YAML in {path} must be a mapping",
        )
    return content


def load_system_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load system configuration from YAML file.

    A missing default config file is not an error; a missing explicit
    path is.
    """
    if path is None:
        default = Path(DEFAULT_BASE_PATH).expanduser() / "config.yaml"
        if not default.exists():
            return {}
        return load_yaml_file(default)

    return load_yaml_file(Path(path).expanduser())


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge multiple configuration dictionaries.

    Later configs override earlier ones.
    """
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = merge_configs(result[key], value)
            else:
                result[key] = value

    return result


def create_settings(
    system_config_path: Optional[Path] = None,
    runtime_overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Create a Settings instance with layered configuration.

    Args:
        system_config_path: Optional path to system config file.
        runtime_overrides: Optional runtime overrides dictionary.

    Returns:
        Configured Settings instance.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    if system_config_path:
        config_base = Path(system_config_path).expanduser().parent
    else:
        config_base = Path(DEFAULT_BASE_PATH).expanduser()

    # Load .env file for overrides kept out of YAML
    env_path = config_base / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    merged = load_system_config(system_config_path)
    if runtime_overrides:
        merged = merge_configs(merged, runtime_overrides)

    try:
        return Settings(**merged)
    except Exception as e:
        raise ConfigurationError(
            config_path=str(system_config_path or f"{DEFAULT_BASE_PATH}/config.yaml"),
            message=f"Configuration validation failed: {e}",
        ) from e
