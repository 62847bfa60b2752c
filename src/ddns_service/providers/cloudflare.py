"""
CloudFlare DNS provider implementation.

This module implements the CloudFlare DNS API v4 for applying record change
batches. Only API Token authentication is supported (not Global API Key).
Batches are submitted through the ``dns_records/batch`` endpoint, which
CloudFlare commits as a single unit.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx
from starlette import status as st_status

from ddns_service.models import ChangeAction, RecordType
from ddns_service.providers.base import BaseDNSProvider, ProviderResult

if TYPE_CHECKING:
    from typing import Any, Final

    from ddns_service.models import RecordChange


# CloudFlare API base URL
CF_API_BASE: Final[str] = "https://api.cloudflare.com/client/v4"

# HTTP timeout in seconds
HTTP_TIMEOUT: Final[float] = 30.0


logger = logging.getLogger(__name__)


class CloudFlareError(Exception):
    """A CloudFlare request failed; the message is reported to the caller."""


def _unquote(value: str) -> str:
    """Strip one pair of surrounding double quotes from a TXT value."""
    if len(value) >= 2 and value[0] == value[-1] == '"':  # noqa: PLR2004
        return value[1:-1]
    return value


def _same_content(record_type: RecordType | str, left: str, right: str) -> bool:
    if record_type == RecordType.TXT:
        return _unquote(left) == _unquote(right)
    return left == right


class CloudFlareProvider(BaseDNSProvider):
    """
    CloudFlare DNS provider.

    Uses CloudFlare API v4 with API Token authentication. The zone ID is
    taken from configuration when given, otherwise looked up by zone name
    on every batch.
    """

    def __init__(
        self,
        api_token: str,
        zone: str,
        zone_id: str | None = None,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the provider.

        Parameters
        ----------
        api_token : str
            CloudFlare API Token with DNS edit permission on the zone.
        zone : str
            The DNS zone (root domain name).
        zone_id : str | None, optional
            The zone ID, skipping the lookup by name.
        timeout : float, optional
            HTTP timeout in seconds for each API call.
        transport : httpx.AsyncBaseTransport | None, optional
            Custom transport (tests use ``httpx.MockTransport``).
        """
        self._api_token = api_token
        self._zone = zone
        self._zone_id = zone_id
        self._timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        """Get the provider name."""
        return "cloudflare"

    async def apply_changes(
        self,
        changes: list[RecordChange],
        comment: str,
    ) -> ProviderResult:
        """
        Apply a batch of record changes in CloudFlare.

        Parameters
        ----------
        changes : list[RecordChange]
            Changes to apply.
        comment : str
            Description of the batch, stored as the record comment.

        Returns
        -------
        ProviderResult
            The result of the operation.
        """
        if not self._api_token:
            return ProviderResult(
                success=False,
                message="Missing required credential: api_token",
            )

        headers = {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            try:
                # Step 1: Get Zone ID
                zone_id = self._zone_id or await self._get_zone_id(client, headers)
                logger.debug("[cloudflare] Zone ID for %s: %s", self._zone, zone_id)

                # Step 2: Translate changes into a batch payload
                payload = await self._build_batch(
                    client,
                    headers,
                    zone_id,
                    changes,
                    comment,
                )
            except CloudFlareError as e:
                return ProviderResult(success=False, message=str(e))

            if not any(payload.values()):
                return ProviderResult(
                    success=True,
                    message="DNS records unchanged",
                    zone_id=zone_id,
                )

            # Step 3: Submit the batch
            return await self._submit_batch(client, headers, zone_id, payload)

    async def _get_zone_id(
        self,
        client: httpx.AsyncClient,
        headers: dict[str, str],
    ) -> str:
        """
        Get the Zone ID for the configured zone name.

        Parameters
        ----------
        client : httpx.AsyncClient
            HTTP client.
        headers : dict[str, str]
            Request headers.

        Returns
        -------
        str
            Zone ID.

        Raises
        ------
        CloudFlareError
            If the request fails or the zone does not exist.
        """
        url = f"{CF_API_BASE}/zones"
        params = {"name": self._zone}

        data = await self._get_json(client, url, headers, params)
        zones = data.get("result", [])
        if not zones:
            msg = f"Zone not found for domain: {self._zone}"
            raise CloudFlareError(msg)
        return str(zones[0]["id"])

    async def _get_records(
        self,
        client: httpx.AsyncClient,
        headers: dict[str, str],
        zone_id: str,
        fqdn: str,
        record_type: RecordType,
    ) -> list[dict[str, Any]]:
        """
        Get DNS records matching a name and type.

        Parameters
        ----------
        client : httpx.AsyncClient
            HTTP client.
        headers : dict[str, str]
            Request headers.
        zone_id : str
            The zone ID.
        fqdn : str
            The fully qualified domain name.
        record_type : RecordType
            The record type.

        Returns
        -------
        list[dict[str, Any]]
            Matching records.
        """
        url = f"{CF_API_BASE}/zones/{zone_id}/dns_records"
        params = {"name": fqdn, "type": record_type.value}

        data = await self._get_json(client, url, headers, params)
        return list(data.get("result", []))

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        params: dict[str, str],
    ) -> dict[str, Any]:
        try:
            response = await client.get(url, headers=headers, params=params)
        except httpx.RequestError as e:
            logger.error("[cloudflare] Network request failed: '%s'", e)  # noqa: TRY400
            msg = f"Request error: {e}"
            raise CloudFlareError(msg) from e

        logger.debug(
            "[cloudflare] GET %s %s -> %d",
            url,
            params,
            response.status_code,
        )

        if response.status_code != st_status.HTTP_200_OK:
            logger.error("[cloudflare] Request failed: '%s'", response.text)
            msg = f"Unexpected status code {response.status_code} from CloudFlare"
            raise CloudFlareError(msg)

        logger.debug("[cloudflare] Response: %s", response.text)
        try:
            data = response.json()
        except ValueError as e:
            msg = f"Invalid JSON response from CloudFlare: {e}"
            raise CloudFlareError(msg) from e
        if not isinstance(data, dict):
            msg = "Unexpected response body from CloudFlare"
            raise CloudFlareError(msg)

        if not data.get("success"):
            msg = f"CloudFlare request failed: {_first_error(data)}"
            raise CloudFlareError(msg)
        return data

    async def _build_batch(
        self,
        client: httpx.AsyncClient,
        headers: dict[str, str],
        zone_id: str,
        changes: list[RecordChange],
        comment: str,
    ) -> dict[str, list[dict[str, Any]]]:
        """
        Translate record changes into a CloudFlare batch payload.

        UPSERT becomes a patch of the single existing record (or a post when
        none exists, or nothing when the content already matches). DELETE
        needs the record ID, so it is resolved by name, type and content.

        Returns
        -------
        dict[str, list[dict[str, Any]]]
            Payload with ``deletes``, ``patches`` and ``posts`` lists.

        Raises
        ------
        CloudFlareError
            If a lookup fails, a deleted record does not exist, or an upsert
            target is ambiguous.
        """
        payload: dict[str, list[dict[str, Any]]] = {
            "deletes": [],
            "patches": [],
            "posts": [],
        }

        for change in changes:
            body: dict[str, Any] = {
                "type": change.type.value,
                "name": change.name,
                "content": change.value,
                "ttl": change.ttl,
                "comment": comment,
            }
            if change.type != RecordType.TXT:
                body["proxied"] = False

            if change.action == ChangeAction.CREATE:
                payload["posts"].append(body)
                continue

            records = await self._get_records(
                client,
                headers,
                zone_id,
                change.name,
                change.type,
            )

            if change.action == ChangeAction.DELETE:
                matching = [
                    r
                    for r in records
                    if _same_content(change.type, r.get("content", ""), change.value)
                ]
                if not matching:
                    msg = f"Record not found: {change.name} {change.type} {change.value}"
                    raise CloudFlareError(msg)
                payload["deletes"].extend({"id": r["id"]} for r in matching)
                continue

            # UPSERT
            if len(records) == 0:
                payload["posts"].append(body)
            elif len(records) == 1:
                existing = records[0]
                unchanged = _same_content(
                    change.type,
                    existing.get("content", ""),
                    change.value,
                ) and existing.get("ttl") == change.ttl
                if not unchanged:
                    payload["patches"].append({"id": existing["id"], **body})
            else:
                msg = (
                    f"Multiple records ({len(records)}) found for {change.name} "
                    f"{change.type}. Please manually clean up duplicate records."
                )
                raise CloudFlareError(msg)

        return payload

    async def _submit_batch(
        self,
        client: httpx.AsyncClient,
        headers: dict[str, str],
        zone_id: str,
        payload: dict[str, list[dict[str, Any]]],
    ) -> ProviderResult:
        """
        Submit a batch payload.

        Parameters
        ----------
        client : httpx.AsyncClient
            HTTP client.
        headers : dict[str, str]
            Request headers.
        zone_id : str
            The zone ID.
        payload : dict[str, list[dict[str, Any]]]
            The batch payload.

        Returns
        -------
        ProviderResult
            The result of the operation.
        """
        url = f"{CF_API_BASE}/zones/{zone_id}/dns_records/batch"

        try:
            response = await client.post(url, headers=headers, json=payload)
        except httpx.RequestError as e:
            logger.error("[cloudflare] Network request failed: '%s'", e)  # noqa: TRY400
            return ProviderResult(
                success=False,
                message=f"Request error: {e}",
                zone_id=zone_id,
            )

        logger.debug("[cloudflare] POST %s -> %d", url, response.status_code)
        logger.debug("[cloudflare] Response: %s", response.text)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code == st_status.HTTP_200_OK and data.get("success"):
            return ProviderResult(
                success=True,
                message="DNS record batch applied",
                zone_id=zone_id,
                extra={"cf_ray": response.headers.get("cf-ray", "")},
            )

        return ProviderResult(
            success=False,
            message=f"Failed to apply record batch: {_first_error(data)}",
            zone_id=zone_id,
        )


def _first_error(data: dict[str, Any]) -> str:
    errors = data.get("errors", [])
    return errors[0].get("message", "Unknown error") if errors else "Unknown error"
