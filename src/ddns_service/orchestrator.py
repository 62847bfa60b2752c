"""
Update orchestration.

Reconciles one (owner, location) mapping per request: resolve the candidate
IP, compare it with the stored mapping, apply the hourly rate limit, update
the DNS record and finally persist the mapping. The DNS write happens
before the store write; if the store write fails afterwards the DNS record
is ahead of the store until the next successful update.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from starlette import status as st_status

from ddns_service import errors, ratelimit
from ddns_service.errors import (
    AuthError,
    MappingNotFoundError,
    RateLimitedError,
    UpstreamError,
    ValidationError,
)
from ddns_service.models import Mapping, MappingResponse
from ddns_service.repository import StoreError
from ddns_service.subdomain import derive_subdomain

if TYPE_CHECKING:
    from collections.abc import Callable

    from ddns_service.dns import DNSRecordService
    from ddns_service.repository import MappingStore


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def resolve_candidate_ip(
    ip: str | None,
    forwarded_for: str | None = None,
    peer_ip: str | None = None,
) -> str:
    """
    Pick the IP address a request wants to publish.

    A client-supplied value wins over transport metadata. Without one, the
    first entry of ``X-Forwarded-For`` is used, then the direct peer.

    Parameters
    ----------
    ip : str | None
        IP sent in the request body.
    forwarded_for : str | None, optional
        Raw ``X-Forwarded-For`` header value.
    peer_ip : str | None, optional
        Address of the direct peer.

    Returns
    -------
    str
        The candidate IP, normalized.

    Raises
    ------
    ValidationError
        If the supplied IP is malformed or no IP is available.
    """
    if ip:
        try:
            return str(ipaddress.ip_address(ip.strip()))
        except ValueError:
            raise ValidationError(errors.INVALID_IP) from None

    candidate = ""
    if forwarded_for:
        candidate = forwarded_for.split(",")[0].strip()
    if not candidate and peer_ip:
        candidate = peer_ip.strip()
    if not candidate:
        raise ValidationError(errors.MISSING_IP)

    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        raise ValidationError(errors.INVALID_IP) from None


def _authorize(owner_id: str, authenticated_owner: str | None) -> None:
    if authenticated_owner is not None and authenticated_owner != owner_id:
        logger.warning(
            "[update] Owner %s denied access to mappings of %s",
            authenticated_owner,
            owner_id,
        )
        raise AuthError(errors.FORBIDDEN, st_status.HTTP_403_FORBIDDEN)


class UpdateOrchestrator:
    """
    Rate-limited reconciliation of mappings with DNS.

    Holds no per-request state beyond the writes still in flight. Concurrent
    updates of the same pair are not serialized; the last store write wins.
    """

    def __init__(
        self,
        store: MappingStore,
        dns_service: DNSRecordService,
        max_changes_per_hour: int = ratelimit.MAX_CHANGES_PER_HOUR,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Initialize the orchestrator.

        Parameters
        ----------
        store : MappingStore
            Mapping persistence.
        dns_service : DNSRecordService
            DNS record writer.
        max_changes_per_hour : int, optional
            IP changes allowed per mapping inside one clock hour.
        clock : Callable[[], datetime], optional
            Source of the current UTC time.
        """
        self.store = store
        self.dns_service = dns_service
        self.max_changes_per_hour = max_changes_per_hour
        self._clock = clock
        self._pending_writes: set[asyncio.Future[None]] = set()

    async def _apply_change(self, mapping: Mapping, fqdn: str) -> None:
        try:
            await self.dns_service.upsert_a(mapping.subdomain, mapping.ip)
        except UpstreamError as e:
            raise UpstreamError(errors.DNS_UPDATE_FAILED) from e

        try:
            await self.store.put(mapping)
        except StoreError as e:
            logger.error(  # noqa: TRY400
                "[update] DNS for %s points to %s but the mapping was not saved: %s",
                fqdn,
                mapping.ip,
                e,
            )
            raise UpstreamError(errors.MAPPING_SAVE_FAILED) from e

    async def update(
        self,
        owner_id: str,
        location: str,
        ip: str | None = None,
        *,
        forwarded_for: str | None = None,
        peer_ip: str | None = None,
        authenticated_owner: str | None = None,
    ) -> MappingResponse:
        """
        Reconcile a mapping with the caller's current IP.

        Parameters
        ----------
        owner_id : str
            Owner identity.
        location : str
            Location name.
        ip : str | None, optional
            IP supplied by the client.
        forwarded_for : str | None, optional
            ``X-Forwarded-For`` header, used when `ip` is absent.
        peer_ip : str | None, optional
            Direct peer address, used as the last resort.
        authenticated_owner : str | None, optional
            Owner established by authentication; None when auth is off.

        Returns
        -------
        MappingResponse
            The resulting mapping; ``changed`` tells whether the IP moved.

        Raises
        ------
        ValidationError
            Missing fields or no usable IP.
        AuthError
            The request targets another owner's mapping.
        RateLimitedError
            The hourly change budget is exhausted.
        UpstreamError
            The store or the DNS provider failed.
        """
        if not owner_id:
            raise ValidationError(errors.MISSING_OWNER_ID)
        if not location:
            raise ValidationError(errors.MISSING_LOCATION)
        _authorize(owner_id, authenticated_owner)

        candidate = resolve_candidate_ip(ip, forwarded_for, peer_ip)
        existing = await self._load(owner_id, location)

        subdomain = (existing.subdomain if existing else "") or derive_subdomain(
            owner_id,
            location,
        )
        fqdn = self.dns_service.fqdn(subdomain)

        if existing is not None and existing.ip == candidate:
            logger.debug(
                "[update] IP unchanged for %s/%s: %s",
                owner_id,
                location,
                candidate,
            )
            return MappingResponse.from_mapping(
                existing.model_copy(update={"subdomain": subdomain}),
                fqdn,
                changed=False,
            )

        now = self._clock()
        decision = ratelimit.check(existing, now, self.max_changes_per_hour)
        if not decision.allowed:
            logger.warning(
                "[update] Rate limit hit for %s/%s, retry in %ds",
                owner_id,
                location,
                decision.retry_after_seconds,
            )
            raise RateLimitedError(
                decision.retry_after_seconds,
                self.max_changes_per_hour,
            )

        base = existing or Mapping(owner_id=owner_id, location=location)
        mapping = ratelimit.update_counters(
            base.model_copy(
                update={"ip": candidate, "subdomain": subdomain, "updated_at": now},
            ),
            now,
        )

        # Once started, the DNS write and the store write finish together
        # even if the caller goes away.
        write = asyncio.ensure_future(self._apply_change(mapping, fqdn))
        self._pending_writes.add(write)
        write.add_done_callback(self._pending_writes.discard)
        await asyncio.shield(write)

        logger.info(
            "[update] %s/%s: %s -> %s (%s)",
            owner_id,
            location,
            existing.ip if existing else "<new>",
            candidate,
            fqdn,
        )
        return MappingResponse.from_mapping(mapping, fqdn, changed=True)

    async def lookup(
        self,
        owner_id: str,
        location: str,
        *,
        authenticated_owner: str | None = None,
    ) -> MappingResponse:
        """
        Return the stored mapping of a pair.

        Raises
        ------
        AuthError
            If the mapping belongs to another owner.
        MappingNotFoundError
            If the pair has never been updated.
        UpstreamError
            If the store fails.
        """
        _authorize(owner_id, authenticated_owner)
        mapping = await self._load(owner_id, location)
        if mapping is None:
            raise MappingNotFoundError(owner_id, location)

        subdomain = mapping.subdomain or derive_subdomain(owner_id, location)
        return MappingResponse.from_mapping(
            mapping.model_copy(update={"subdomain": subdomain}),
            self.dns_service.fqdn(subdomain),
            changed=False,
        )

    async def _load(self, owner_id: str, location: str) -> Mapping | None:
        try:
            return await self.store.get(owner_id, location)
        except MappingNotFoundError:
            return None
        except StoreError as e:
            raise UpstreamError(errors.MAPPING_LOOKUP_FAILED) from e
