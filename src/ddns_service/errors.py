"""
Error types for DDNS Service.

Every error raised by the reconciliation core derives from `DDNSError` and
carries a fixed, machine-readable description plus the HTTP status code the
server should answer with.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from starlette import status as st_status

if TYPE_CHECKING:
    from ddns_service.pubip import Observation


# Fixed descriptions returned to callers
MISSING_OWNER_ID = "ownerId is required"
MISSING_LOCATION = "location is required"
INVALID_IP = "invalid IP address"
MISSING_IP = "could not determine client IP"
MAPPING_NOT_FOUND = "mapping not found"
RATE_LIMIT_EXCEEDED = "rate limit exceeded: maximum {limit} IP changes per hour"
DNS_UPDATE_FAILED = "failed to update DNS record"
MAPPING_LOOKUP_FAILED = "failed to get mapping"
MAPPING_SAVE_FAILED = "failed to save mapping"
UNAUTHORIZED = "missing or invalid authorization header"
INVALID_API_KEY_FORMAT = "invalid API key format"
INVALID_CREDENTIALS = "invalid credentials"
FORBIDDEN = "forbidden"


class DDNSError(Exception):
    """
    Base class for all errors surfaced by the service.

    Attributes
    ----------
    description : str
        Fixed human- and machine-readable description.
    status_code : int
        HTTP status code to report.
    """

    status_code: int = st_status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, description: str, status_code: int | None = None) -> None:
        """
        Initialize a DDNSError.

        Parameters
        ----------
        description : str
            The error description.
        status_code : int | None, optional
            Override for the class-level HTTP status code.
        """
        self.description = description
        if status_code is not None:
            self.status_code = status_code
        super().__init__(description)


class ValidationError(DDNSError):
    """Bad or missing input. Never retried."""

    status_code = st_status.HTTP_400_BAD_REQUEST


class AuthError(DDNSError):
    """Authentication or authorization failure, raised before any side effect."""

    status_code = st_status.HTTP_401_UNAUTHORIZED


class MappingNotFoundError(DDNSError):
    """No mapping is stored for the requested (owner, location) pair."""

    status_code = st_status.HTTP_404_NOT_FOUND

    def __init__(self, owner_id: str, location: str) -> None:
        """
        Initialize a MappingNotFoundError.

        Parameters
        ----------
        owner_id : str
            The owner ID that was looked up.
        location : str
            The location that was looked up.
        """
        self.owner_id = owner_id
        self.location = location
        super().__init__(MAPPING_NOT_FOUND)


class RateLimitedError(DDNSError):
    """
    The mapping already changed too often in the current hour.

    Attributes
    ----------
    retry_after : int
        Seconds until the next hour boundary.
    """

    status_code = st_status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, retry_after: int, limit: int) -> None:
        """
        Initialize a RateLimitedError.

        Parameters
        ----------
        retry_after : int
            Seconds the caller should wait before retrying.
        limit : int
            The configured maximum number of changes per hour.
        """
        self.retry_after = retry_after
        super().__init__(RATE_LIMIT_EXCEEDED.format(limit=limit))


class UpstreamError(DDNSError):
    """
    The DNS provider or the mapping store failed.

    The caller may retry the whole request; nothing is retried internally.

    Attributes
    ----------
    compensation_error : Exception | None
        Set when a compensating action also failed and an operator needs
        to repair the state by hand.
    """

    status_code = st_status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        description: str,
        status_code: int | None = None,
        compensation_error: Exception | None = None,
    ) -> None:
        self.compensation_error = compensation_error
        super().__init__(description, status_code)


class NoConsensusError(Exception):
    """
    Raised by the consensus resolver when no IP reached the quorum.

    Attributes
    ----------
    observations : list[Observation]
        Everything the authorities reported before resolution stopped.
    """

    def __init__(self, message: str, observations: list[Observation]) -> None:
        self.observations = observations
        super().__init__(message)
