"""
DNS record service.

Turns mapping-level operations (point a subdomain at an IP, publish an ACME
challenge, rename a subdomain) into record change batches for the configured
DNS provider. Every record is written with a fixed TTL under the root domain.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import TYPE_CHECKING

from starlette import status as st_status

from ddns_service.errors import UpstreamError
from ddns_service.models import ChangeAction, RecordChange, RecordType
from ddns_service.subdomain import format_fqdn

if TYPE_CHECKING:
    from typing import Final

    from ddns_service.providers.base import BaseDNSProvider


# TTL for every record written by the service, in seconds
DEFAULT_TTL: Final[int] = 300


logger = logging.getLogger(__name__)


def address_record_type(ip: str) -> RecordType:
    """Return ``A`` for IPv4 literals and ``AAAA`` for IPv6 literals."""
    if ipaddress.ip_address(ip).version == 6:  # noqa: PLR2004
        return RecordType.AAAA
    return RecordType.A


class DNSRecordService:
    """
    Record-level operations against an authoritative DNS provider.

    Failures are not retried; they are raised once as `UpstreamError`.
    """

    def __init__(self, provider: BaseDNSProvider, root_domain: str) -> None:
        """
        Initialize the service.

        Parameters
        ----------
        provider : BaseDNSProvider
            The provider that applies change batches.
        root_domain : str
            Domain appended to every record name.
        """
        self.provider = provider
        self.root_domain = root_domain

    def fqdn(self, name: str) -> str:
        """Return the fully qualified name of a relative record name."""
        return format_fqdn(name, self.root_domain)

    async def upsert_a(self, subdomain: str, ip: str) -> None:
        """
        Create or update the address record of a subdomain.

        Parameters
        ----------
        subdomain : str
            DNS label.
        ip : str
            IPv4 or IPv6 address; IPv6 is written as an AAAA record.

        Raises
        ------
        UpstreamError
            If the provider rejects the change.
        """
        change = RecordChange(
            action=ChangeAction.UPSERT,
            name=self.fqdn(subdomain),
            type=address_record_type(ip),
            value=ip,
            ttl=DEFAULT_TTL,
        )
        await self._apply([change], f"DDNS update for {subdomain}", "upsert DNS record")
        logger.info("[dns] Record upserted: %s -> %s", change.name, ip)

    async def upsert_txt(self, name: str, value: str) -> None:
        """
        Create or update a TXT record.

        Parameters
        ----------
        name : str
            Record name relative to the root domain.
        value : str
            Unquoted TXT value.
        """
        change = RecordChange(
            action=ChangeAction.UPSERT,
            name=self.fqdn(name),
            type=RecordType.TXT,
            value=f'"{value}"',
            ttl=DEFAULT_TTL,
        )
        await self._apply([change], f"ACME challenge for {name}", "upsert TXT record")
        logger.info("[dns] TXT record upserted: %s", change.name)

    async def delete_txt(self, name: str, value: str) -> None:
        """
        Delete a TXT record.

        Parameters
        ----------
        name : str
            Record name relative to the root domain.
        value : str
            Unquoted TXT value of the record to delete.
        """
        change = RecordChange(
            action=ChangeAction.DELETE,
            name=self.fqdn(name),
            type=RecordType.TXT,
            value=f'"{value}"',
            ttl=DEFAULT_TTL,
        )
        await self._apply(
            [change],
            f"Remove ACME challenge for {name}",
            "delete TXT record",
        )
        logger.info("[dns] TXT record deleted: %s", change.name)

    async def rename_a(self, old_subdomain: str, new_subdomain: str, ip: str) -> None:
        """
        Move an address record to a new name in one change batch.

        The batch deletes the old record and creates the new one with the
        same IP, so the provider commits both or neither.

        Parameters
        ----------
        old_subdomain : str
            Current DNS label.
        new_subdomain : str
            Target DNS label.
        ip : str
            Address both records point to.
        """
        record_type = address_record_type(ip)
        changes = [
            RecordChange(
                action=ChangeAction.DELETE,
                name=self.fqdn(old_subdomain),
                type=record_type,
                value=ip,
                ttl=DEFAULT_TTL,
            ),
            RecordChange(
                action=ChangeAction.CREATE,
                name=self.fqdn(new_subdomain),
                type=record_type,
                value=ip,
                ttl=DEFAULT_TTL,
            ),
        ]
        await self._apply(
            changes,
            f"Change subdomain from {old_subdomain} to {new_subdomain}",
            "rename DNS record",
        )
        logger.info(
            "[dns] Record renamed: %s -> %s (%s)",
            changes[0].name,
            changes[1].name,
            ip,
        )

    async def _apply(self, changes: list[RecordChange], comment: str, what: str) -> None:
        result = await self.provider.apply_changes(changes, comment)
        if not result.success:
            logger.error("[dns] Failed to %s: %s", what, result.message)
            raise UpstreamError(
                f"failed to {what}: {result.message}",
                st_status.HTTP_502_BAD_GATEWAY,
            )
