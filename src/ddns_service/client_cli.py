"""
CLI entry points of the client side: ``ddns-client`` and ``pubip``.

``ddns-client`` detects the public IP by consensus and pushes it to the
service, either once (``--cron``) or periodically until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import TYPE_CHECKING

from ddns_service.client import DEFAULT_API_URL, APIError, DDNSClient, RateLimitError
from ddns_service.config import LoggingConfig
from ddns_service.errors import NoConsensusError
from ddns_service.logging_config import setup_logging
from ddns_service.models import AddressFamily
from ddns_service.pubip import (
    AUTHORITY_TIMEOUT,
    DEFAULT_QUORUM,
    Authorities,
    ConsensusResolver,
)
from ddns_service.state import StateError, StateManager

if TYPE_CHECKING:
    from typing import Final


# Seconds between checks in daemon mode
DEFAULT_INTERVAL: Final[float] = 900.0

# Overall time limit of one consensus resolution, in seconds
RESOLVE_DEADLINE: Final[float] = 10.0


logger = logging.getLogger(__name__)


def _add_resolver_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-6",
        action="store_true",
        dest="ipv6",
        help="Use IPv6 instead of IPv4",
    )
    parser.add_argument(
        "--quorum",
        type=int,
        default=DEFAULT_QUORUM,
        help=f"Number of authorities that must agree (default: {DEFAULT_QUORUM})",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def parse_client_args(
    args: list[str] | None = None,
    environ: dict[str, str] | None = None,
) -> argparse.Namespace:
    """
    Parse ``ddns-client`` arguments.

    The API key, owner and location fall back to ``DDNS_API_KEY``,
    ``DDNS_OWNER`` and ``DDNS_LOCATION``; flags win over the environment.

    Parameters
    ----------
    args : list[str] | None, optional
        Command-line arguments. If None, uses sys.argv.
    environ : dict[str, str] | None, optional
        Environment to read. If None, uses os.environ.

    Returns
    -------
    argparse.Namespace
        Parsed arguments.
    """
    env = os.environ if environ is None else environ

    parser = argparse.ArgumentParser(
        prog="ddns-client",
        description=(
            "Dynamic DNS update client. Runs as a daemon checking for IP changes "
            "periodically; use --cron for one-shot mode."
        ),
    )
    parser.add_argument("--api-key", default=None, help="API key (env: DDNS_API_KEY)")
    parser.add_argument("--owner", default=None, help="Owner ID (env: DDNS_OWNER)")
    parser.add_argument("--location", default=None, help="Location name (env: DDNS_LOCATION)")
    parser.add_argument(
        "--api-url",
        default=DEFAULT_API_URL,
        help=f"DDNS API URL (default: {DEFAULT_API_URL})",
    )
    parser.add_argument(
        "--state-dir",
        default=None,
        help="State directory (default: ~/.config/ddns-client)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_INTERVAL,
        help=f"Seconds between checks in daemon mode (default: {DEFAULT_INTERVAL:.0f})",
    )
    parser.add_argument(
        "--cron",
        action="store_true",
        help="Run once and exit (for crontab)",
    )
    _add_resolver_arguments(parser)

    parsed = parser.parse_args(args)
    parsed.api_key = parsed.api_key or env.get("DDNS_API_KEY", "")
    parsed.owner = parsed.owner or env.get("DDNS_OWNER", "")
    parsed.location = parsed.location or env.get("DDNS_LOCATION", "")

    if not parsed.api_key:
        parser.error("API key is required (set DDNS_API_KEY or use --api-key)")
    if not parsed.owner:
        parser.error("owner is required (set DDNS_OWNER or use --owner)")
    if not parsed.location:
        parser.error("location is required (set DDNS_LOCATION or use --location)")
    if parsed.interval <= 0:
        parser.error("--interval must be positive")

    return parsed


def _family(args: argparse.Namespace) -> AddressFamily:
    return AddressFamily.IPV6 if args.ipv6 else AddressFamily.IPV4


async def run_once(
    args: argparse.Namespace,
    resolver: ConsensusResolver,
    client: DDNSClient,
    state: StateManager,
) -> None:
    """
    Resolve the IP and push it if it differs from the state file.

    Raises
    ------
    NoConsensusError
        If the public IP could not be determined.
    APIError
        If the server rejected the update.
    """
    ip = await resolver.resolve(_family(args), deadline=RESOLVE_DEADLINE)
    logger.debug("[client] Detected IP %s", ip)

    if not state.has_ip_changed(args.owner, args.location, ip):
        logger.info("[client] IP unchanged, skipping update")
        return

    logger.info("[client] IP changed, updating DNS to %s", ip)
    result = await client.update_dns(args.owner, args.location, ip)

    try:
        state.save(args.owner, args.location, ip)
    except StateError as e:
        logger.warning("[client] Failed to save state: %s", e)

    if result.changed:
        logger.info("[client] DNS updated: %s -> %s", result.fqdn, result.ip)
    else:
        logger.info("[client] DNS unchanged (server already had this IP)")


async def check_and_update(
    args: argparse.Namespace,
    resolver: ConsensusResolver,
    client: DDNSClient,
    last_ip: str | None,
) -> str | None:
    """
    One daemon iteration.

    Returns
    -------
    str | None
        The last IP successfully pushed, which the next iteration compares
        against. Failures are logged and leave it unchanged.
    """
    try:
        ip = await resolver.resolve(_family(args), deadline=RESOLVE_DEADLINE)
    except NoConsensusError as e:
        logger.error("[client] Failed to detect IP: %s", e)  # noqa: TRY400
        return last_ip

    if ip == last_ip:
        logger.debug("[client] IP unchanged, skipping update")
        return last_ip

    logger.info("[client] IP changed, updating DNS: %s -> %s", last_ip, ip)
    try:
        result = await client.update_dns(args.owner, args.location, ip)
    except RateLimitError as e:
        logger.warning("[client] Rate limited, retry after %ss", e.retry_after)
        return last_ip
    except APIError as e:
        logger.error("[client] Update failed: %s", e)  # noqa: TRY400
        return last_ip

    if result.changed:
        logger.info("[client] DNS updated: %s -> %s", result.fqdn, result.ip)
    return ip


async def run_daemon(
    args: argparse.Namespace,
    resolver: ConsensusResolver,
    client: DDNSClient,
) -> None:
    """Check periodically until SIGINT or SIGTERM."""
    logger.info(
        "[client] Starting daemon mode (interval %ss, owner %s, location %s, %s)",
        args.interval,
        args.owner,
        args.location,
        _family(args),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    last_ip: str | None = None
    while not stop.is_set():
        last_ip = await check_and_update(args, resolver, client, last_ip)
        try:
            await asyncio.wait_for(stop.wait(), timeout=args.interval)
        except TimeoutError:
            continue

    logger.info("[client] Received signal, shutting down")


def main(args: list[str] | None = None) -> None:
    """Run the ``ddns-client`` CLI."""
    parsed = parse_client_args(args)
    setup_logging(LoggingConfig(level="DEBUG" if parsed.verbose else "INFO"))

    try:
        resolver = ConsensusResolver(Authorities(), quorum=parsed.quorum)
        resolver.check_quorum(_family(parsed))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)
    client = DDNSClient(parsed.api_key, parsed.api_url)

    if not parsed.cron:
        asyncio.run(run_daemon(parsed, resolver, client))
        return

    try:
        state = StateManager(parsed.state_dir)
        asyncio.run(run_once(parsed, resolver, client, state))
    except (NoConsensusError, APIError, StateError) as e:
        logger.error("[client] Update failed: %s", e)  # noqa: TRY400
        sys.exit(1)


def parse_pubip_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse ``pubip`` arguments."""
    parser = argparse.ArgumentParser(
        prog="pubip",
        description="Print the public IP address agreed on by several authorities",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=AUTHORITY_TIMEOUT,
        help=f"Per-authority timeout in seconds (default: {AUTHORITY_TIMEOUT})",
    )
    parser.add_argument(
        "--deadline",
        type=float,
        default=RESOLVE_DEADLINE,
        help=f"Overall time limit in seconds (default: {RESOLVE_DEADLINE})",
    )
    _add_resolver_arguments(parser)
    return parser.parse_args(args)


def pubip_main(args: list[str] | None = None) -> None:
    """Run the ``pubip`` CLI."""
    parsed = parse_pubip_args(args)
    setup_logging(LoggingConfig(level="DEBUG" if parsed.verbose else "WARNING"))

    try:
        resolver = ConsensusResolver(
            Authorities(),
            quorum=parsed.quorum,
            timeout=parsed.timeout,
        )
        ip = asyncio.run(resolver.resolve(_family(parsed), deadline=parsed.deadline))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)
    except NoConsensusError as e:
        print(f"Error: {e}", file=sys.stderr)  # noqa: T201
        for observation in e.observations:
            outcome = observation.ip or f"error: {observation.error}"
            print(f"  {observation.authority}: {outcome}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    print(ip)  # noqa: T201


if __name__ == "__main__":
    main()
