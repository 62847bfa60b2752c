"""
Logging configuration for DDNS Service.

This module provides logging setup with support for console and file output.
Sensitive information is automatically masked in log messages.
"""

from __future__ import annotations

import copy
import logging
import logging.handlers
import re
import sys
from typing import TYPE_CHECKING

from uvicorn.config import LOGGING_CONFIG

if TYPE_CHECKING:
    from typing import Final

    from ddns_service.config import LoggingConfig


# Patterns matching credentials in log messages, as (pattern, replacement).
# The first 6 characters of a secret are kept, the rest is masked.
SENSITIVE_PATTERNS: Final[list[tuple[re.Pattern[str], str]]] = [
    # Authorization header (owner API key or CloudFlare token)
    (
        re.compile(
            r"((?:Authorization:\s*)?Bearer\s+)(.{0,6})([^\s\"']*)", re.IGNORECASE,
        ),
        r"\1\2******",
    ),
    # Bare owner API keys ("ddns_sk_" + base64url); the prefix counts as kept
    (
        re.compile(r"(ddns_sk_)([A-Za-z0-9_-]+)"),
        r"\1******",
    ),
    # CloudFlare token in key=value form, quoted or not
    (
        re.compile(r'(api_token\s*=\s*")(.{0,6})([^"]*)"', re.IGNORECASE),
        r'\1\2******"',
    ),
    (
        re.compile(r"(api_token\s*=\s*')(.{0,6})([^']*)'", re.IGNORECASE),
        r"\1\2******'",
    ),
    (
        re.compile(
            r"(api_token\s*=\s*)(?![\s\"'])([^\s,\"&']{0,6})([^\s,\"&']*)",
            re.IGNORECASE,
        ),
        r"\1\2******",
    ),
]


# Constants
LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"
DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"


def mask_sensitive(value: str) -> str:
    """Apply every pattern of `SENSITIVE_PATTERNS` to a string."""
    for pattern, replacement in SENSITIVE_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def _mask_arg(value: object) -> object:
    return mask_sensitive(value) if isinstance(value, str) else value


class SensitiveFilter(logging.Filter):
    """
    A logging filter that masks API keys and provider tokens.

    Masks the message, its arguments (uvicorn access logs pass the request
    line as an argument) and request fields that custom formatters attach
    to the record.
    """

    _SENSITIVE_DICT_KEYS: tuple[str, ...] = (
        "request_line",
        "full_path",
        "path",
        "url",
        "headers",
        "scope",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Mask sensitive data in a log record.

        Parameters
        ----------
        record : logging.LogRecord
            The log record to process.

        Returns
        -------
        bool
            Always True; records are modified, never dropped.
        """
        if record.msg:
            record.msg = mask_sensitive(str(record.msg))

        if isinstance(record.args, dict):
            record.args = {k: _mask_arg(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_mask_arg(arg) for arg in record.args)

        for key in self._SENSITIVE_DICT_KEYS:
            value = record.__dict__.get(key)
            if isinstance(value, str):
                record.__dict__[key] = mask_sensitive(value)

        return True


def _configure_handler(handler: logging.Handler) -> None:
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(SensitiveFilter())


def setup_logging(config: LoggingConfig, logger_name: str = "ddns_service") -> None:
    """
    Configure the package logger from the logging configuration.

    Logs go to the console and, when enabled, to a ``WatchedFileHandler``
    so that external log rotation works. The logger does not propagate to
    the root logger.

    Parameters
    ----------
    config : LoggingConfig
        Logging configuration.
    logger_name : str, optional
        Logger to configure.

    Raises
    ------
    SystemExit
        If file logging is enabled but the file cannot be opened.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    logger.handlers.clear()

    console_handler = logging.StreamHandler()
    _configure_handler(console_handler)
    logger.addHandler(console_handler)

    if config.file_enabled:
        log_path = config.file_path_as_path
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.WatchedFileHandler(
                str(log_path),
                encoding="utf-8",
                delay=False,
            )
        except OSError as e:
            logger.critical("Failed to enable file logging: %s", e)
            sys.exit(1)
        _configure_handler(file_handler)
        logger.addHandler(file_handler)
        logger.info('File logging enabled: "%s".', log_path)

    logger.propagate = False


def build_uvicorn_log_config(config: LoggingConfig) -> dict:
    """
    Build the uvicorn log configuration.

    Starts from uvicorn's default configuration, attaches `SensitiveFilter`
    to its console handlers and, when file logging is enabled, adds a file
    handler to the ``uvicorn`` and ``uvicorn.access`` loggers.

    Parameters
    ----------
    config : LoggingConfig
        Logging configuration.

    Returns
    -------
    dict
        A configuration accepted by ``uvicorn.run(log_config=...)``.

    Raises
    ------
    SystemExit
        If file logging is enabled but the log file cannot be created.
    """
    log_config = copy.deepcopy(LOGGING_CONFIG)

    log_config.setdefault("filters", {})["sensitive"] = {
        "()": f"{__name__}.SensitiveFilter",
    }
    for name in ("default", "access"):
        log_config["handlers"][name].setdefault("filters", []).append("sensitive")

    if not config.file_enabled:
        return log_config

    log_path = config.file_path_as_path
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.touch(exist_ok=True)
    except OSError as e:
        logging.getLogger("ddns_service").critical("Failed to create log file: %s", e)
        sys.exit(1)

    log_config.setdefault("formatters", {})["file"] = {
        "format": LOG_FORMAT,
        "datefmt": DATE_FORMAT,
    }
    log_config["handlers"]["file"] = {
        "class": "logging.handlers.WatchedFileHandler",
        "filename": str(log_path),
        "encoding": "utf-8",
        "delay": False,
        "formatter": "file",
        "filters": ["sensitive"],
    }
    # "uvicorn.error" propagates to "uvicorn"
    log_config["loggers"]["uvicorn"]["handlers"].append("file")
    log_config["loggers"]["uvicorn.access"]["handlers"].append("file")

    return log_config
