"""
CLI entry point for DDNS Service.

This module provides the command-line interface for starting the server.
"""

from __future__ import annotations

import sys

import uvicorn

from ddns_service.config import ConfigValidationError, load_config, parse_args
from ddns_service.logging_config import build_uvicorn_log_config, setup_logging
from ddns_service.repository import StoreError
from ddns_service.server import create_app


def main() -> None:
    """
    Start the DDNS Service server.

    Parse command-line arguments, load configuration, build the services
    and run the server.
    """
    args = parse_args()
    try:
        config = load_config(args)
    except ConfigValidationError as e:
        print(e, file=sys.stderr)  # noqa: T201
        sys.exit(1)

    setup_logging(config.logging)

    try:
        app = create_app(config)
    except (StoreError, OSError) as e:
        print(f"Failed to open the mapping store: {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
        access_log=True,
        log_config=build_uvicorn_log_config(config.logging),
    )


if __name__ == "__main__":
    main()
