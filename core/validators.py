"""Configuration loading and validation for the Lambda proxy container.

Configuration is optional: every field has a default, so a container built
without any configuration behaves sensibly. Deployments can supply a YAML
file or a JSON document in an environment variable.
"""

import importlib
import json
import logging
from typing import Any, Callable, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_BINARY_CONTENT_TYPES = [
    "application/octet-stream",
    "application/pdf",
    "application/zip",
    "application/gzip",
    "application/x-protobuf",
    "image/*",
    "audio/*",
    "video/*",
    "font/*",
]


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


class LoggingConfig(BaseModel):
    """Logging section of the container configuration."""

    level: str = Field("INFO", description="Root log level")
    pretty: bool = Field(False, description="Indented JSON for local development")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class ContainerConfig(BaseModel):
    """Settings that control request translation and handler lifecycle."""

    handler: Optional[str] = Field(
        None, description="Import path of the handler factory, 'module:callable'"
    )
    strip_base_path: bool = Field(
        False, description="Remove service_base_path from incoming request paths"
    )
    service_base_path: Optional[str] = Field(
        None, description="Base path mapping configured on the gateway"
    )
    binary_content_types: List[str] = Field(
        default_factory=lambda: list(DEFAULT_BINARY_CONTENT_TYPES),
        description="Content-Type patterns whose bodies are always base64 encoded",
    )
    init_failure_policy: Literal["sticky", "retry"] = Field(
        "sticky",
        description="Whether a failed handler initialization is retried on the next invocation",
    )
    init_attempts: int = Field(
        1, ge=1, description="Factory attempts within a single initialization"
    )
    init_retry_wait_max: float = Field(
        2.0, ge=0, description="Upper bound in seconds for the wait between attempts"
    )
    stream_buffer_size: int = Field(
        65536, ge=1, description="Body bytes buffered before a streamed response commits"
    )
    expose_error_details: bool = Field(
        False, description="Include exception text in error response bodies"
    )
    error_headers: Dict[str, str] = Field(
        default_factory=dict, description="Extra headers added to mapped error responses"
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("service_base_path")
    @classmethod
    def normalize_base_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not v or v == "/":
            return None
        if not v.startswith("/"):
            v = "/" + v
        return v.rstrip("/")


def validate_config(config: Any) -> ContainerConfig:
    """Validate a raw configuration mapping.

    Args:
        config: Parsed configuration (from YAML or JSON)

    Returns:
        Validated ContainerConfig

    Raises:
        ConfigurationError: If the structure or any value is invalid
    """
    if config is None:
        return ContainerConfig()

    if not isinstance(config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    try:
        validated = ContainerConfig(**config)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid container configuration: {e}") from e

    if validated.strip_base_path and not validated.service_base_path:
        raise ConfigurationError(
            "strip_base_path is enabled but service_base_path is not set"
        )

    return validated


def load_and_validate_config(config_path: str = "config.yaml") -> ContainerConfig:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Validated ContainerConfig

    Raises:
        ConfigurationError: If the file cannot be read, is not valid YAML or fails validation
        FileNotFoundError: If the config file doesn't exist
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Cannot read configuration file {config_path}: {e}") from e

    validated = validate_config(config)
    logger.info(
        f"Configuration loaded from {config_path}",
        extra={"init_failure_policy": validated.init_failure_policy},
    )
    return validated


def load_config_from_json(config_json: str) -> ContainerConfig:
    """Validate configuration passed as a JSON document.

    Args:
        config_json: JSON text, typically from an environment variable

    Returns:
        Validated ContainerConfig

    Raises:
        ConfigurationError: If the JSON is invalid or fails validation
    """
    try:
        config = json.loads(config_json)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON configuration: {e}") from e
    return validate_config(config)


def load_handler_factory(import_path: Optional[str]) -> Callable[[], Any]:
    """Resolve a 'module:callable' import path to the handler factory.

    Args:
        import_path: Dotted module path and attribute separated by a colon

    Returns:
        The factory callable

    Raises:
        ConfigurationError: If the path is malformed or cannot be imported
    """
    if not import_path or ":" not in import_path:
        raise ConfigurationError(
            f"Handler must be given as 'module:callable', got {import_path!r}"
        )

    module_path, _, attr_path = import_path.partition(":")
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigurationError(f"Failed to import handler module {module_path}: {e}") from e

    target: Any = module
    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as e:
            raise ConfigurationError(
                f"Handler module {module_path} has no attribute {attr_path}"
            ) from e

    if not callable(target):
        raise ConfigurationError(f"Handler factory {import_path} is not callable")

    return target
