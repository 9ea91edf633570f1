"""Configuration loading and validation for the federation broker."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


class IdentityConfig(BaseModel):
    """Managed identity and token endpoint settings."""

    authority_host: str = Field(
        default="https://login.microsoftonline.com",
        description="Cloud instance base URL of the token endpoint",
    )
    managed_identity_client_id: str | None = Field(
        default=None,
        description="Client ID of a user-assigned managed identity (system-assigned if unset)",
    )
    assertion_refresh_margin_seconds: float = Field(
        default=300, ge=0, description="Refresh managed identity tokens this long before expiry"
    )
    token_refresh_margin_seconds: float = Field(
        default=0, ge=0, description="Refresh application tokens this long before expiry"
    )
    max_cached_tokens: int = Field(
        default=1024, ge=1, description="Maximum cached tokens per cache"
    )
    http_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for token endpoint HTTP requests"
    )
    request_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Overall time budget for one token request"
    )

    @field_validator("authority_host")
    @classmethod
    def validate_authority_host(cls, v: str) -> str:
        """Validate that the authority host is an https URL."""
        if not v.startswith("https://"):
            raise ValueError("authority_host must start with https://")
        return v.rstrip("/")


class AuditConfig(BaseModel):
    """Token request audit log settings."""

    enabled: bool = Field(default=True, description="Write the JSONL audit log")
    directory: str = Field(default="logs", description="Audit log directory path")
    batch_size: int = Field(default=10, ge=1, description="Entries per batch write")
    batch_timeout: float = Field(
        default=1.0, gt=0, description="Seconds to wait before flushing a partial batch"
    )


class LocalConfig(BaseModel):
    """Local server settings (deployment-specific)."""

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8000, ge=1, le=65535, description="Port number")
    function_key: SecretStr = Field(..., description="Key callers pass as ?code= or x-functions-key")

    @field_validator("function_key")
    @classmethod
    def validate_function_key_length(cls, v: SecretStr) -> SecretStr:
        """Validate that the function key has minimum length."""
        if len(v.get_secret_value()) < 8:
            raise ValueError("function_key must be at least 8 characters")
        return v


class AppConfig(BaseModel):
    """Root configuration schema (combines server and local configs)."""

    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    local: LocalConfig


def find_config_file(filename: str, config_path: Path | None = None) -> Path:
    """Find a configuration file.

    Search order:
    1. Explicit path if provided
    2. ./{filename} (current directory)
    3. ~/{filename} (home directory)

    Args:
        filename: Name of the config file to find
        config_path: Optional explicit path to config file

    Returns:
        Path to the config file

    Raises:
        ConfigError: If no config file is found
    """
    if config_path:
        if config_path.exists():
            return config_path
        raise ConfigError(f"Config file not found: {config_path}")

    cwd_config = Path(filename)
    if cwd_config.exists():
        return cwd_config

    home_config = Path.home() / filename
    if home_config.exists():
        return home_config

    raise ConfigError(
        f"Config file '{filename}' not found. Create it in current directory or home directory, "
        "or specify path with appropriate --config option"
    )


def load_yaml_file(path: Path) -> dict:
    """Load and parse a YAML file.

    Raises:
        ConfigError: If file cannot be read, parsed, or is not a mapping
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}")

    # An empty file is a valid "all defaults" config
    if raw_config is None:
        return {}

    if not isinstance(raw_config, dict):
        raise ConfigError(f"Config file {path} must contain a YAML mapping")

    return raw_config


def load_config(
    server_config_path: Path | None = None,
    local_config_path: Path | None = None,
) -> AppConfig:
    """Load and validate configuration from YAML files.

    Loads from two separate files:
    - config.yaml: Server settings (identity, audit)
    - local.yaml: Local settings (host, port, function_key)

    Args:
        server_config_path: Optional explicit path to server config file
        local_config_path: Optional explicit path to local config file

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigError: If config files are not found or invalid
    """
    server_path = find_config_file("config.yaml", server_config_path)
    server_config = load_yaml_file(server_path)

    local_path = find_config_file("local.yaml", local_config_path)
    local_config = load_yaml_file(local_path)

    merged_config = {
        **server_config,
        "local": local_config,
    }

    try:
        return AppConfig.model_validate(merged_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")


def load_config_single_file(config_path: Path | None = None) -> AppConfig:
    """Load configuration from a single YAML file for simple deployments.

    The file holds every section, including 'local'.

    Raises:
        ConfigError: If config file is not found or invalid
    """
    path = find_config_file("config.yaml", config_path)
    raw_config = load_yaml_file(path)

    try:
        return AppConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")
