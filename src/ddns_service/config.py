"""
Configuration management for DDNS Service.

This module handles loading and validating configuration from TOML files
and command-line arguments. Configuration priority (high to low):
1. Command-line arguments
2. Configuration file
3. Default values
"""

from __future__ import annotations

import argparse
import copy
import logging
import re
import sys
import tomllib
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_core import PydanticCustomError

from ddns_service.logging_config import DATE_FORMAT, LOG_FORMAT
from ddns_service.ratelimit import MAX_CHANGES_PER_HOUR

if TYPE_CHECKING:
    from typing import Any, Self

# Startup logger, used before "setup_logging()" configures the package
# logger. It never writes to the log file.
logger_basic = logging.getLogger(__name__)
logger_basic.setLevel(logging.DEBUG)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
logger_basic.addHandler(handler)
logger_basic.propagate = False

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")

# Error types raised by the custom validators below
_CUSTOM_ERROR_TYPES = frozenset({"auth_config_error", "dns_config_error"})


class ConfigValidationError(Exception):
    """
    Exception raised when configuration validation fails.

    Attributes
    ----------
    message : str
        Human-readable error message describing the validation failures.
    config_path : Path | None
        Path to the configuration file that failed validation.
    """

    def __init__(self, message: str, config_path: Path | None = None) -> None:
        self.config_path = config_path
        super().__init__(message)


# Configuration models (Pydantic with type validation and coercion)


class ServerConfig(BaseModel):
    """
    Server configuration.

    Attributes
    ----------
    host : str
        Host address to bind to.
    port : int
        Port number to listen on.
    """

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 38080


class AuthConfig(BaseModel):
    """
    Authentication configuration.

    Attributes
    ----------
    enabled : bool
        Whether API key authentication is enabled.
    owners : dict[str, str]
        Owner ID to the SHA-256 hex digest of the owner's API key.
    """

    enabled: bool = False
    owners: dict[str, str] = {}

    @field_validator("owners")
    @classmethod
    def check_key_hashes(cls, value: dict[str, str]) -> dict[str, str]:
        """
        Validate that every owner maps to a SHA-256 hex digest.

        Raises
        ------
        PydanticCustomError
            If a digest is not 64 hex characters.
        """
        normalized = {owner: digest.lower() for owner, digest in value.items()}
        bad = [owner for owner, digest in normalized.items() if not _SHA256_HEX.match(digest)]
        if bad:
            raise PydanticCustomError(
                "auth_config_error",
                "API key hash must be a SHA-256 hex digest for owner(s): {owners}",
                {"owners": ", ".join(sorted(bad))},
            )
        return normalized


class DNSConfig(BaseModel):
    """
    DNS provider configuration.

    Attributes
    ----------
    root_domain : str
        Domain appended to every subdomain.
    provider : str
        "cloudflare" or "memory".
    zone_id : str | None
        CloudFlare zone ID; looked up from the root domain when unset.
    api_token : str
        CloudFlare API token.
    timeout : float
        HTTP timeout in seconds for provider calls.
    """

    root_domain: str = "example.com"
    provider: Literal["cloudflare", "memory"] = "memory"
    zone_id: str | None = None
    api_token: str = ""
    timeout: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def check_provider_credentials(self) -> Self:
        """
        Validate that CloudFlare has what it needs.

        Raises
        ------
        PydanticCustomError
            If the CloudFlare provider is selected without an API token or
            root domain.
        """
        if self.provider == "cloudflare" and not (self.api_token and self.root_domain):
            raise PydanticCustomError(
                "dns_config_error",
                'Provider "cloudflare" requires "api_token" and "root_domain"',
            )
        return self


class StoreConfig(BaseModel):
    """
    Mapping store configuration.

    Attributes
    ----------
    backend : str
        "sqlite" or "memory".
    path : str
        SQLite database file.
    timeout : float
        Seconds to wait for the database lock.
    """

    backend: Literal["sqlite", "memory"] = "sqlite"
    path: str = "ddns-service.db"
    timeout: float = Field(default=5.0, gt=0)


class RateLimitConfig(BaseModel):
    """
    Rate limit configuration.

    Attributes
    ----------
    max_changes_per_hour : int
        IP changes allowed per mapping inside one clock hour.
    """

    max_changes_per_hour: int = Field(default=MAX_CHANGES_PER_HOUR, ge=1)


class LoggingConfig(BaseModel):
    """
    Logging configuration.

    Attributes
    ----------
    level : str
        Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    file_enabled : bool
        Whether to log to file.
    file_path : str
        Path to the log file.
    """

    level: str = "INFO"
    file_enabled: bool = False
    file_path: str = "/var/log/ddns-service.log"

    @property
    def file_path_as_path(self) -> Path:
        """Get the log file path as a Path object."""
        return Path(self.file_path)


class HealthConfig(BaseModel):
    """
    Health endpoint configuration.

    Attributes
    ----------
    enabled : bool
        Whether the /health endpoint is enabled.
    """

    enabled: bool = False


class Config(BaseModel):
    """Application configuration."""

    server: ServerConfig = ServerConfig()
    auth: AuthConfig = AuthConfig()
    dns: DNSConfig = DNSConfig()
    store: StoreConfig = StoreConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    logging: LoggingConfig = LoggingConfig()
    health: HealthConfig = HealthConfig()


def _format_validation_errors(
    error: ValidationError,
    config_path: Path | None,
) -> str:
    """
    Format Pydantic validation errors into human-readable messages.

    Parameters
    ----------
    error : ValidationError
        Pydantic validation error.
    config_path : Path | None
        Path to the configuration file.

    Returns
    -------
    str
        Human-readable error message.
    """
    lines: list[str] = []

    if config_path:
        lines.append(f'Configuration error in "{config_path}":')
    else:
        lines.append("Configuration error:")

    for err in error.errors():
        # Build field path (e.g., "server.port")
        field_path = ".".join(str(loc) for loc in err["loc"])
        error_type = err["type"]

        if error_type in _CUSTOM_ERROR_TYPES:
            lines.append(f"  [{field_path}]: {err['msg']}.")
            continue

        error_input = err["input"]
        input_type = type(error_input).__name__
        value_repr = (
            f'"{error_input}"' if isinstance(error_input, str) else repr(error_input)
        )
        expected_type = _get_expected_type(error_type)
        lines.append(
            f"  [{field_path}]: Expected {expected_type}, got {input_type} (value: {value_repr}). {err['msg']}.",
        )

    return "\n".join(lines)


def _get_expected_type(error_type: str) -> str:
    """Get human-readable expected type from Pydantic error type."""
    type_mapping = {
        "int_type": "int",
        "int_parsing": "int",
        "float_type": "float",
        "float_parsing": "float",
        "bool_type": "bool",
        "bool_parsing": "bool",
        "string_type": "str",
        "dict_type": "table",
        "literal_error": "one of the allowed values",
        "greater_than": "a positive number",
        "greater_than_equal": "a larger number",
    }
    return type_mapping.get(error_type, error_type)


def validate_config_dict(
    data: dict[str, Any],
    config_path: Path | None = None,
) -> None:
    """
    Validate configuration dictionary using Pydantic.

    Parameters
    ----------
    data : dict[str, Any]
        Configuration dictionary to validate.
    config_path : Path | None, optional
        Path to the configuration file (for error messages).

    Raises
    ------
    ConfigValidationError
        If validation fails.
    """
    try:
        Config(**data)
    except ValidationError as e:
        msg = _format_validation_errors(e, config_path)
        raise ConfigValidationError(msg, config_path) from e


def load_config_from_file(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a TOML file.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    tomllib.TOMLDecodeError
        If the configuration file is not valid TOML.
    """
    with config_path.open("rb") as f:
        return tomllib.load(f)


def merge_config(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Recursively merge two configuration dictionaries.

    Parameters
    ----------
    base : dict[str, Any]
        Base configuration.
    override : dict[str, Any]
        Override configuration (takes precedence).

    Returns
    -------
    dict[str, Any]
        Merged configuration.
    """
    result = copy.deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value
    return result


def dict_to_config(data: dict[str, Any]) -> Config:
    """
    Convert a dictionary to a Config object.

    User-relative paths (``~``) are expanded before validation.
    """
    data = copy.deepcopy(data)
    for section, key in (("logging", "file_path"), ("store", "path")):
        if section in data and key in data[section]:
            data[section][key] = str(Path(data[section][key]).expanduser())

    return Config.model_validate(data)


def add_config_argument(parser: argparse.ArgumentParser) -> None:
    """Add the ``--config`` option shared by the server and admin CLIs."""
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.toml)",
    )


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments of the server.

    Parameters
    ----------
    args : list[str] | None, optional
        Command-line arguments. If None, uses sys.argv.

    Returns
    -------
    argparse.Namespace
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="ddns-service",
        description="DDNS Service - keeps DNS names in sync with changing IPs",
    )
    add_config_argument(parser)

    # Server arguments
    parser.add_argument("--host", type=str, default=None, help="Host address to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port number to listen on")

    # Auth arguments
    auth_group = parser.add_mutually_exclusive_group()
    auth_group.add_argument(
        "--auth-enabled",
        action="store_true",
        dest="auth_enabled",
        default=None,
        help="Enable API key authentication",
    )
    auth_group.add_argument(
        "--auth-disabled",
        action="store_false",
        dest="auth_enabled",
        default=None,
        help="Disable API key authentication",
    )

    # DNS arguments
    parser.add_argument(
        "--root-domain",
        type=str,
        dest="root_domain",
        default=None,
        help="Domain appended to every subdomain",
    )
    parser.add_argument(
        "--dns-provider",
        type=str,
        choices=["cloudflare", "memory"],
        dest="dns_provider",
        default=None,
        help="DNS provider backend",
    )
    parser.add_argument(
        "--zone-id",
        type=str,
        dest="zone_id",
        default=None,
        help="CloudFlare zone ID",
    )

    # Store arguments
    parser.add_argument(
        "--store-backend",
        type=str,
        choices=["sqlite", "memory"],
        dest="store_backend",
        default=None,
        help="Mapping store backend",
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        dest="db_path",
        default=None,
        help="Path to the SQLite database",
    )

    # Rate limit arguments
    parser.add_argument(
        "--max-changes-per-hour",
        type=int,
        dest="max_changes_per_hour",
        default=None,
        help="IP changes allowed per mapping inside one clock hour",
    )

    # Logging arguments
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Log level",
    )
    log_file_group = parser.add_mutually_exclusive_group()
    log_file_group.add_argument(
        "--log-file-enabled",
        action="store_true",
        dest="log_file_enabled",
        default=None,
        help="Enable logging to file",
    )
    log_file_group.add_argument(
        "--log-file-disabled",
        action="store_false",
        dest="log_file_enabled",
        default=None,
        help="Disable logging to file",
    )
    parser.add_argument(
        "--log-file-path",
        type=Path,
        dest="log_file_path",
        default=None,
        help="Path to the log file",
    )

    # Health endpoint arguments
    health_group = parser.add_mutually_exclusive_group()
    health_group.add_argument(
        "--health-enabled",
        action="store_true",
        dest="health_enabled",
        default=None,
        help='Enable "/health" endpoint',
    )
    health_group.add_argument(
        "--health-disabled",
        action="store_false",
        dest="health_enabled",
        default=None,
        help='Disable "/health" endpoint',
    )

    return parser.parse_args(args)


# (argument name, config section, config key, converter)
_CLI_OVERRIDES: tuple[tuple[str, str, str, type], ...] = (
    ("host", "server", "host", str),
    ("port", "server", "port", int),
    ("auth_enabled", "auth", "enabled", bool),
    ("root_domain", "dns", "root_domain", str),
    ("dns_provider", "dns", "provider", str),
    ("zone_id", "dns", "zone_id", str),
    ("store_backend", "store", "backend", str),
    ("db_path", "store", "path", str),
    ("max_changes_per_hour", "rate_limit", "max_changes_per_hour", int),
    ("log_level", "logging", "level", str),
    ("log_file_enabled", "logging", "file_enabled", bool),
    ("log_file_path", "logging", "file_path", str),
    ("health_enabled", "health", "enabled", bool),
)


def build_cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """
    Collect the configuration values given on the command line.

    Arguments missing from the namespace (e.g. in the admin CLI) or left
    at None are ignored.
    """
    overrides: dict[str, Any] = {}
    for arg_name, section, key, convert in _CLI_OVERRIDES:
        value = getattr(args, arg_name, None)
        if value is not None:
            overrides.setdefault(section, {})[key] = convert(value)
    return overrides


def load_config(args: argparse.Namespace | None = None) -> Config:
    """
    Load configuration from file and command-line arguments.

    Priority (high to low):
    1. Command-line arguments
    2. Configuration file
    3. Default values

    Parameters
    ----------
    args : argparse.Namespace | None, optional
        Parsed command-line arguments.

    Returns
    -------
    Config
        Loaded configuration.

    Raises
    ------
    ConfigValidationError
        If the merged configuration is invalid.
    """
    if args is None:
        args = parse_args()

    config_dict: dict[str, Any] = {}

    # Load from config file if specified or if default exists
    config_path = getattr(args, "config", None)
    if config_path is not None:
        config_path = config_path.expanduser()
    if config_path is None:
        default_config = Path("config.toml")
        if default_config.exists():
            config_path = default_config

    if config_path is not None:
        if config_path.exists():
            logger_basic.info('Loading configuration from "%s".', config_path)
            try:
                config_dict = load_config_from_file(config_path)
            except tomllib.TOMLDecodeError as e:
                logger_basic.critical('Failed to parse configuration file: "%s".', e)
                sys.exit(1)
        else:
            logger_basic.critical("Configuration file not found: %s", config_path)
            sys.exit(1)

    cli_overrides = build_cli_overrides(args)
    if cli_overrides:
        config_dict = merge_config(config_dict, cli_overrides)

    validate_config_dict(config_dict, config_path)

    return dict_to_config(config_dict)
