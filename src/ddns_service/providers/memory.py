"""
In-memory DNS provider.

Keeps records in a dictionary. Used by the test suite and for running the
server locally without touching a real zone.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ddns_service.models import ChangeAction, RecordType
from ddns_service.providers.base import BaseDNSProvider, ProviderResult

if TYPE_CHECKING:
    from ddns_service.models import RecordChange


logger = logging.getLogger(__name__)


class InMemoryDNSProvider(BaseDNSProvider):
    """
    Dictionary-backed DNS provider.

    Records are keyed by (name, type) and hold a set of values, like a
    resource record set. Every submitted batch is kept in `batches`, and
    `fail_next` makes the next N submissions fail without changing state.
    """

    def __init__(self) -> None:
        self.records: dict[tuple[str, RecordType], set[str]] = {}
        self.batches: list[list[RecordChange]] = []
        self.fail_next = 0

    @property
    def name(self) -> str:
        """Get the provider name."""
        return "memory"

    def get(self, name: str, record_type: RecordType = RecordType.A) -> set[str]:
        """Return the values stored for a record, or an empty set."""
        return set(self.records.get((name, record_type), set()))

    async def apply_changes(
        self,
        changes: list[RecordChange],
        comment: str,
    ) -> ProviderResult:
        """Apply a batch atomically: validate everything, then commit."""
        self.batches.append(list(changes))

        if self.fail_next > 0:
            self.fail_next -= 1
            return ProviderResult(success=False, message="Simulated provider failure")

        staged = {key: set(values) for key, values in self.records.items()}
        for change in changes:
            key = (change.name, change.type)
            if change.action == ChangeAction.UPSERT:
                staged[key] = {change.value}
            elif change.action == ChangeAction.CREATE:
                if staged.get(key):
                    return ProviderResult(
                        success=False,
                        message=f"Record already exists: {change.name} {change.type}",
                    )
                staged[key] = {change.value}
            elif change.action == ChangeAction.DELETE:
                values = staged.get(key, set())
                if change.value not in values:
                    return ProviderResult(
                        success=False,
                        message=f"Record not found: {change.name} {change.type}",
                    )
                values.discard(change.value)
                if not values:
                    staged.pop(key, None)

        self.records = staged
        logger.debug("[memory] %s: applied %d change(s)", comment, len(changes))
        return ProviderResult(
            success=True,
            message=f"Applied {len(changes)} change(s)",
            request_id=str(len(self.batches)),
        )
