"""
Administrative subdomain migration.

Renames the DNS label of an existing mapping in two phases: first the DNS
record is moved in one batch, then the store is updated. If the store
update fails the DNS batch is reversed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ddns_service import errors
from ddns_service.errors import UpstreamError, ValidationError
from ddns_service.repository import StoreError
from ddns_service.subdomain import derive_subdomain, is_valid_label

if TYPE_CHECKING:
    from ddns_service.dns import DNSRecordService
    from ddns_service.repository import MappingStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationResult:
    """
    Outcome (or plan) of a subdomain migration.

    Attributes
    ----------
    old_subdomain : str
        Label before the migration.
    new_subdomain : str
        Label after the migration.
    old_fqdn : str
        Hostname before the migration.
    new_fqdn : str
        Hostname after the migration.
    ip : str
        Address the record points to, unchanged by the migration.
    """

    old_subdomain: str
    new_subdomain: str
    old_fqdn: str
    new_fqdn: str
    ip: str


class SubdomainMigrator:
    """Move a mapping to an administrator-chosen subdomain."""

    def __init__(self, store: MappingStore, dns_service: DNSRecordService) -> None:
        self.store = store
        self.dns_service = dns_service

    async def plan(
        self,
        owner_id: str,
        location: str,
        new_subdomain: str,
    ) -> MigrationResult:
        """
        Validate a migration and describe it without changing anything.

        Parameters
        ----------
        owner_id : str
            Owner identity.
        location : str
            Location name.
        new_subdomain : str
            Requested label; lower-cased before validation.

        Returns
        -------
        MigrationResult
            What `change_subdomain` would do.

        Raises
        ------
        MappingNotFoundError
            If the mapping does not exist.
        ValidationError
            If the mapping has no IP, or the label is invalid or unchanged.
        UpstreamError
            If the store fails.
        """
        try:
            mapping = await self.store.get(owner_id, location)
        except StoreError as e:
            raise UpstreamError(errors.MAPPING_LOOKUP_FAILED) from e

        if not mapping.ip:
            msg = "mapping has no IP address"
            raise ValidationError(msg)

        label = new_subdomain.strip().lower()
        if not is_valid_label(label):
            msg = f"invalid subdomain: {new_subdomain!r}"
            raise ValidationError(msg)

        old = mapping.subdomain or derive_subdomain(owner_id, location)
        if label == old:
            msg = f"subdomain is already {old}"
            raise ValidationError(msg)

        return MigrationResult(
            old_subdomain=old,
            new_subdomain=label,
            old_fqdn=self.dns_service.fqdn(old),
            new_fqdn=self.dns_service.fqdn(label),
            ip=mapping.ip,
        )

    async def change_subdomain(
        self,
        owner_id: str,
        location: str,
        new_subdomain: str,
    ) -> MigrationResult:
        """
        Move a mapping's DNS record and stored subdomain to a new label.

        Raises
        ------
        UpstreamError
            If the DNS batch or the store update failed. When the store
            failed and reversing the DNS batch also failed,
            ``compensation_error`` is set and the DNS record has to be fixed
            by hand.

        See Also
        --------
        plan : Validation rules and the other exceptions raised.
        """
        result = await self.plan(owner_id, location, new_subdomain)
        logger.info(
            "[migration] %s/%s: %s -> %s (%s)",
            owner_id,
            location,
            result.old_fqdn,
            result.new_fqdn,
            result.ip,
        )

        await self.dns_service.rename_a(
            result.old_subdomain,
            result.new_subdomain,
            result.ip,
        )

        try:
            await self.store.update_subdomain(owner_id, location, result.new_subdomain)
        except (StoreError, errors.MappingNotFoundError) as e:
            logger.error(  # noqa: TRY400
                "[migration] Store update failed, reverting DNS change: %s",
                e,
            )
            compensation_error = await self._revert(result)
            raise UpstreamError(
                errors.MAPPING_SAVE_FAILED,
                compensation_error=compensation_error,
            ) from e

        logger.info("[migration] Subdomain changed to %s", result.new_subdomain)
        return result

    async def _revert(self, result: MigrationResult) -> Exception | None:
        try:
            await self.dns_service.rename_a(
                result.new_subdomain,
                result.old_subdomain,
                result.ip,
            )
        except UpstreamError as e:
            logger.critical(
                "[migration] Could not revert DNS; %s still points to %s and %s "
                "is missing. Manual repair required: %s",
                result.new_fqdn,
                result.ip,
                result.old_fqdn,
                e,
            )
            return e

        logger.warning("[migration] DNS change reverted to %s", result.old_fqdn)
        return None
