"""
Base class for DNS providers.

This module defines the abstract base class that all DNS provider
implementations must inherit from. Providers accept a batch of record
changes and either apply all of them or report a failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ddns_service.models import RecordChange


class ProviderResult:
    """
    Result of a provider operation.

    Attributes
    ----------
    success : bool
        Whether the batch was applied.
    message : str
        Human-readable message.
    request_id : str | None
        The request or change ID from the provider.
    zone_id : str | None
        The zone ID the batch was applied to.
    extra : dict[str, str] | None
        Additional metadata.
    """

    def __init__(
        self,
        *,
        success: bool,
        message: str,
        request_id: str | None = None,
        zone_id: str | None = None,
        extra: dict[str, str] | None = None,
    ) -> None:
        """
        Initialize a ProviderResult.

        Parameters
        ----------
        success : bool
            Whether the batch was applied.
        message : str
            Human-readable message.
        request_id : str | None, optional
            The request or change ID.
        zone_id : str | None, optional
            The zone ID.
        extra : dict[str, str] | None, optional
            Additional metadata.
        """
        self.success = success
        self.message = message
        self.request_id = request_id
        self.zone_id = zone_id
        self.extra = extra

    def __repr__(self) -> str:
        return f"ProviderResult(success={self.success!r}, message={self.message!r})"


class BaseDNSProvider(ABC):
    """
    Abstract base class for DNS providers.

    All DNS provider implementations must inherit from this class
    and implement the `apply_changes` method.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Get the provider name.

        Returns
        -------
        str
            Provider name identifier.
        """
        ...

    @abstractmethod
    async def apply_changes(
        self,
        changes: list[RecordChange],
        comment: str,
    ) -> ProviderResult:
        """
        Submit a batch of record changes.

        The batch is committed as one unit where the provider supports it.
        Implementations must not retry; a failure is reported once through
        the returned result.

        Parameters
        ----------
        changes : list[RecordChange]
            Changes to apply, in order.
        comment : str
            Free-form description of the batch.

        Returns
        -------
        ProviderResult
            The result of the operation.
        """
        ...
