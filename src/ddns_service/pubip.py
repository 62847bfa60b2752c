"""
Public IP resolution by consensus.

Queries several independent "what is my IP" authorities concurrently and
returns the first address that a quorum of them agree on. Authorities are
untrusted: bodies are trimmed and parsed, and a non-2xx answer counts as an
error rather than an empty value.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx

from ddns_service import __version__
from ddns_service.errors import NoConsensusError
from ddns_service.models import AddressFamily

if TYPE_CHECKING:
    from typing import Final


# Default number of agreeing authorities
DEFAULT_QUORUM: Final[int] = 2

# Per-authority HTTP timeout in seconds
AUTHORITY_TIMEOUT: Final[float] = 3.0

USER_AGENT: Final[str] = f"ddns-client/{__version__}"

DEFAULT_IPV4_AUTHORITIES: Final[tuple[str, ...]] = (
    "https://ipv4.icanhazip.com/",
    "https://checkip.amazonaws.com/",
    "https://api.ipify.org/",
    "https://ipv4.seeip.org/",
)

DEFAULT_IPV6_AUTHORITIES: Final[tuple[str, ...]] = (
    "https://ipv6.icanhazip.com/",
    "https://api6.ipify.org/",
    "https://ipv6.seeip.org/",
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Authorities:
    """
    Authority URLs per address family.

    Attributes
    ----------
    ipv4 : tuple[str, ...]
        Authorities that answer with the caller's IPv4 address.
    ipv6 : tuple[str, ...]
        Authorities that answer with the caller's IPv6 address.
    """

    ipv4: tuple[str, ...] = DEFAULT_IPV4_AUTHORITIES
    ipv6: tuple[str, ...] = DEFAULT_IPV6_AUTHORITIES

    def for_family(self, family: AddressFamily) -> tuple[str, ...]:
        """Return the authorities for an address family."""
        return self.ipv6 if family == AddressFamily.IPV6 else self.ipv4


@dataclass(frozen=True)
class Observation:
    """
    What a single authority reported.

    Exactly one of `ip` and `error` is set.
    """

    authority: str
    ip: str | None = None
    error: str | None = None


@dataclass
class _Tally:
    quorum: int
    counts: Counter[str] = field(default_factory=Counter)
    observations: list[Observation] = field(default_factory=list)

    def add(self, observation: Observation) -> str | None:
        self.observations.append(observation)
        if observation.ip is None:
            return None
        self.counts[observation.ip] += 1
        if self.counts[observation.ip] >= self.quorum:
            return observation.ip
        return None


class ConsensusResolver:
    """
    Resolve the public IP address by majority agreement of authorities.

    Each call opens its own HTTP client; the resolver holds no state
    between calls.
    """

    def __init__(
        self,
        authorities: Authorities,
        quorum: int = DEFAULT_QUORUM,
        timeout: float = AUTHORITY_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the resolver.

        Parameters
        ----------
        authorities : Authorities
            Authority URLs per address family.
        quorum : int, optional
            Number of identical answers required.
        timeout : float, optional
            Per-authority request timeout in seconds.
        transport : httpx.AsyncBaseTransport | None, optional
            Custom transport (tests use ``httpx.MockTransport``).

        Raises
        ------
        ValueError
            If the quorum is below 1.
        """
        if quorum < 1:
            msg = f"Quorum must be at least 1, got {quorum}"
            raise ValueError(msg)

        self.authorities = authorities
        self.quorum = quorum
        self.timeout = timeout
        self._transport = transport

    def check_quorum(self, family: AddressFamily) -> None:
        """
        Check that the quorum is reachable for one address family.

        Raises
        ------
        ValueError
            If the quorum is larger than the family's authority list.
        """
        count = len(self.authorities.for_family(family))
        if count and self.quorum > count:
            msg = f"Quorum {self.quorum} exceeds the {count} {family} authorities"
            raise ValueError(msg)

    async def resolve(
        self,
        family: AddressFamily = AddressFamily.IPV4,
        deadline: float | None = None,
    ) -> str:
        """
        Return the public IP address agreed on by a quorum of authorities.

        Parameters
        ----------
        family : AddressFamily, optional
            Address family to resolve.
        deadline : float | None, optional
            Overall time limit in seconds, or None for no limit beyond the
            per-authority timeouts.

        Returns
        -------
        str
            The agreed IP address.

        Raises
        ------
        NoConsensusError
            If every authority answered without a quorum, or the deadline
            expired first.
        ValueError
            If the quorum is larger than the family's authority list.
        """
        self.check_quorum(family)
        urls = self.authorities.for_family(family)
        if not urls:
            msg = f"No {family} authorities configured"
            raise NoConsensusError(msg, [])

        tally = _Tally(quorum=self.quorum)
        results: asyncio.Queue[Observation] = asyncio.Queue(maxsize=len(urls))

        async with httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            try:
                async with asyncio.timeout(deadline), asyncio.TaskGroup() as tg:
                    tasks = [
                        tg.create_task(self._observe(client, url, family, results))
                        for url in urls
                    ]
                    try:
                        agreed = await self._collect(results, len(urls), tally)
                    finally:
                        for task in tasks:
                            task.cancel()
            except TimeoutError:
                logger.warning(
                    "[pubip] Deadline of %ss expired with %d/%d answers",
                    deadline,
                    len(tally.observations),
                    len(urls),
                )
                msg = f"No consensus on {family} address before the deadline"
                raise NoConsensusError(msg, tally.observations) from None

        if agreed is None:
            msg = f"No consensus on {family} address among {len(urls)} authorities"
            raise NoConsensusError(msg, tally.observations)

        logger.debug("[pubip] Consensus on %s (%s)", agreed, dict(tally.counts))
        return agreed

    @staticmethod
    async def _collect(
        results: asyncio.Queue[Observation],
        expected: int,
        tally: _Tally,
    ) -> str | None:
        for _ in range(expected):
            agreed = tally.add(await results.get())
            if agreed is not None:
                return agreed
        return None

    async def _observe(
        self,
        client: httpx.AsyncClient,
        url: str,
        family: AddressFamily,
        results: asyncio.Queue[Observation],
    ) -> None:
        """Query one authority and report the outcome; never raises."""
        try:
            ip = await self._request_ip(client, url, family)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.debug("[pubip] %s failed: %s", url, e)
            observation = Observation(authority=url, error=str(e) or type(e).__name__)
        else:
            logger.debug("[pubip] %s reported %s", url, ip)
            observation = Observation(authority=url, ip=ip)
        results.put_nowait(observation)

    @staticmethod
    async def _request_ip(
        client: httpx.AsyncClient,
        url: str,
        family: AddressFamily,
    ) -> str:
        response = await client.get(url)
        response.raise_for_status()

        body = response.text.strip()
        address = ipaddress.ip_address(body)
        expected_version = 6 if family == AddressFamily.IPV6 else 4
        if address.version != expected_version:
            msg = f"Expected an IPv{expected_version} address, got {body!r}"
            raise ValueError(msg)
        return str(address)
