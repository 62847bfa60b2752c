"""
HTTP client for the DDNS Service API.

Used by the ``ddns-client`` CLI to push the detected public IP.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError as PydanticValidationError
from starlette import status as st_status

from ddns_service import __version__
from ddns_service.models import MappingResponse, UpdateRequest

if TYPE_CHECKING:
    from typing import Final


DEFAULT_API_URL: Final[str] = "http://localhost:38080"

# HTTP timeout in seconds
DEFAULT_TIMEOUT: Final[float] = 30.0


logger = logging.getLogger(__name__)


class APIError(Exception):
    """
    The server rejected a request or could not be reached.

    Attributes
    ----------
    status_code : int | None
        HTTP status code, or None when no response was received.
    description : str
        Error description reported by the server.
    """

    def __init__(self, description: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.description = description
        if status_code is None:
            super().__init__(description)
        else:
            super().__init__(f"API error ({status_code}): {description}")


class RateLimitError(APIError):
    """
    The server refused the update because of the hourly change limit.

    Attributes
    ----------
    retry_after : int | None
        Seconds to wait, from the ``Retry-After`` header.
    """

    def __init__(self, description: str, retry_after: int | None) -> None:
        self.retry_after = retry_after
        super().__init__(description, st_status.HTTP_429_TOO_MANY_REQUESTS)


def _parse_retry_after(value: str | None) -> int | None:
    try:
        return int(value) if value else None
    except ValueError:
        return None


def _error_description(response: httpx.Response) -> str:
    try:
        description = response.json().get("description")
    except ValueError:
        description = None
    return description or f"status {response.status_code}"


class DDNSClient:
    """Client for ``POST /update``."""

    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Parameters
        ----------
        api_key : str
            Owner API key, sent as a Bearer token.
        api_url : str, optional
            Base URL of the service.
        timeout : float, optional
            HTTP timeout in seconds.
        transport : httpx.AsyncBaseTransport | None, optional
            Custom transport (tests use ``httpx.MockTransport``).
        """
        self.api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def update_dns(
        self,
        owner_id: str,
        location: str,
        ip: str | None = None,
    ) -> MappingResponse:
        """
        Push an IP for a mapping.

        Parameters
        ----------
        owner_id : str
            Owner identity.
        location : str
            Location name.
        ip : str | None, optional
            IP to publish; the server uses the request source when omitted.

        Returns
        -------
        MappingResponse
            The server's view of the mapping after the update.

        Raises
        ------
        RateLimitError
            If the server answered 429.
        APIError
            On any other failure.
        """
        body = UpdateRequest(owner_id=owner_id, location=location, ip=ip)
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "User-Agent": f"ddns-client/{__version__}",
        }

        async with httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(
                    f"{self.api_url}/update",
                    headers=headers,
                    json=body.model_dump(by_alias=True, exclude_none=True),
                )
            except httpx.RequestError as e:
                msg = f"Request failed: {e}"
                raise APIError(msg) from e

        logger.debug("[client] POST /update -> %d", response.status_code)

        if response.status_code == st_status.HTTP_429_TOO_MANY_REQUESTS:
            raise RateLimitError(
                _error_description(response),
                _parse_retry_after(response.headers.get("retry-after")),
            )
        if response.status_code != st_status.HTTP_200_OK:
            raise APIError(_error_description(response), response.status_code)

        try:
            return MappingResponse.model_validate_json(response.content)
        except PydanticValidationError as e:
            msg = f"Failed to parse response: {e}"
            raise APIError(msg, response.status_code) from e
