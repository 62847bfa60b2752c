"""
Administrative CLI for DDNS Service.

Runs against the same configuration file as the server, so it reaches the
same mapping store and DNS provider.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import TYPE_CHECKING

from ddns_service.config import (
    ConfigValidationError,
    LoggingConfig,
    add_config_argument,
    load_config,
)
from ddns_service.errors import DDNSError
from ddns_service.logging_config import setup_logging
from ddns_service.repository import StoreError
from ddns_service.server import build_services

if TYPE_CHECKING:
    from ddns_service.migration import MigrationResult, SubdomainMigrator


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments of the admin CLI.

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
        prog="ddns-admin",
        description="Administrative tool for DDNS Service",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    change = commands.add_parser(
        "change-subdomain",
        help="Change the subdomain of an owner's location",
        description=(
            "Move the DNS record and the stored mapping of an owner's location "
            "to a custom subdomain instead of the derived hash."
        ),
    )
    add_config_argument(change)
    change.add_argument("--owner", required=True, help="Owner ID")
    change.add_argument("--location", required=True, help="Location name")
    change.add_argument(
        "--subdomain",
        required=True,
        help="New subdomain, without the root domain",
    )
    change.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be changed without making changes",
    )
    change.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args(args)


def _print_result(result: MigrationResult, *, dry_run: bool) -> None:
    if dry_run:
        print("Dry run mode - no changes will be made")  # noqa: T201
        print()  # noqa: T201
    else:
        print("Subdomain changed successfully!")  # noqa: T201
        print()  # noqa: T201
    print(f"  Old: {result.old_fqdn}")  # noqa: T201
    print(f"  New: {result.new_fqdn}")  # noqa: T201
    print(f"  IP:  {result.ip}")  # noqa: T201


async def change_subdomain(
    migrator: SubdomainMigrator,
    args: argparse.Namespace,
) -> MigrationResult:
    """Run or plan the subdomain change described by the arguments."""
    if args.dry_run:
        return await migrator.plan(args.owner, args.location, args.subdomain)
    return await migrator.change_subdomain(args.owner, args.location, args.subdomain)


def main(args: list[str] | None = None) -> None:
    """Run the admin CLI."""
    parsed = parse_args(args)
    try:
        config = load_config(parsed)
    except ConfigValidationError as e:
        print(e, file=sys.stderr)  # noqa: T201
        sys.exit(1)

    setup_logging(LoggingConfig(level="DEBUG" if parsed.verbose else "WARNING"))

    try:
        services = build_services(config)
        result = asyncio.run(change_subdomain(services.migrator, parsed))
    except StoreError as e:
        print(f"Error: failed to open the mapping store: {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)
    except DDNSError as e:
        print(f"Error: {e.description}", file=sys.stderr)  # noqa: T201
        if getattr(e, "compensation_error", None) is not None:
            print(  # noqa: T201
                "The DNS change could not be reverted; fix the records by hand.",
                file=sys.stderr,
            )
        sys.exit(1)

    _print_result(result, dry_run=parsed.dry_run)


if __name__ == "__main__":
    main()
