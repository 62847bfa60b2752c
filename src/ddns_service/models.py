"""
Data models for DDNS Service.

This module defines the core data structures used throughout the application:
the persisted mapping, DNS record changes, and the request/response models of
the HTTP API. JSON field names use camelCase (``ownerId``, ``updatedAt``).
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Zero value for timestamps that were never set
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class AddressFamily(StrEnum):
    """
    IP address family.

    Attributes
    ----------
    IPV4 : str
        IPv4 addresses.
    IPV6 : str
        IPv6 addresses.
    """

    IPV4 = "ipv4"
    IPV6 = "ipv6"


class RecordType(StrEnum):
    """
    Supported DNS record types.

    Attributes
    ----------
    A : str
        IPv4 address record.
    AAAA : str
        IPv6 address record.
    TXT : str
        Text record (ACME DNS-01 challenges).
    """

    A = "A"
    AAAA = "AAAA"
    TXT = "TXT"


class ChangeAction(StrEnum):
    """Action of a single change inside a DNS change batch."""

    UPSERT = "UPSERT"
    CREATE = "CREATE"
    DELETE = "DELETE"


class RecordChange(BaseModel):
    """
    A single record change submitted to a DNS provider.

    Attributes
    ----------
    action : ChangeAction
        What to do with the record.
    name : str
        Fully qualified record name.
    type : RecordType
        Record type.
    value : str
        Record value (already quoted for TXT records).
    ttl : int
        Time to live in seconds.
    """

    model_config = ConfigDict(frozen=True)

    action: ChangeAction
    name: str
    type: RecordType
    value: str
    ttl: int


class Mapping(BaseModel):
    """
    Persisted (owner, location) -> IP/subdomain record.

    Attributes
    ----------
    owner_id : str
        Owner identity.
    location : str
        Named endpoint under the owner (e.g. "home").
    ip : str
        Current IP address (IPv4 or IPv6 string form).
    subdomain : str
        DNS label of the mapping, derived or administrator-assigned.
    updated_at : datetime
        Timestamp of the last write.
    last_ip_change_at : datetime
        Timestamp of the last IP value change.
    hourly_change_count : int
        Number of IP changes inside the hour of `last_ip_change_at`.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    owner_id: str
    location: str
    ip: str = ""
    subdomain: str = ""
    updated_at: datetime = EPOCH
    last_ip_change_at: datetime = EPOCH
    hourly_change_count: int = Field(default=0, ge=0)


class UpdateRequest(BaseModel):
    """
    Body of ``POST /update``.

    The IP is optional; when absent it is detected from the request.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    owner_id: str = ""
    location: str = ""
    ip: str | None = None


class MappingResponse(BaseModel):
    """
    Successful update or lookup response.

    Attributes
    ----------
    owner_id : str
        Owner identity.
    location : str
        Location name.
    ip : str
        Current IP address.
    subdomain : str
        DNS label.
    fqdn : str
        Fully qualified domain name (``{subdomain}.{root_domain}``).
    changed : bool
        Whether this request changed the IP.
    updated_at : datetime
        Timestamp of the last write.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    owner_id: str
    location: str
    ip: str
    subdomain: str
    fqdn: str
    changed: bool
    updated_at: datetime

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping,
        fqdn: str,
        *,
        changed: bool,
    ) -> MappingResponse:
        """
        Build a response from a stored mapping.

        Parameters
        ----------
        mapping : Mapping
            The mapping to describe.
        fqdn : str
            The fully qualified name of the mapping's subdomain.
        changed : bool
            Whether the request changed the IP.

        Returns
        -------
        MappingResponse
            The response model.
        """
        return cls(
            owner_id=mapping.owner_id,
            location=mapping.location,
            ip=mapping.ip,
            subdomain=mapping.subdomain,
            fqdn=fqdn,
            changed=changed,
            updated_at=mapping.updated_at,
        )


class PublicIPResponse(BaseModel):
    """Body of ``GET /public-ip``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    public_ip: str


class ErrorResponse(BaseModel):
    """
    Error response model.

    Attributes
    ----------
    status : str
        Always "error".
    code : int
        HTTP status code.
    description : str
        Fixed error description.
    retry_after : int | None
        Seconds to wait, only set for rate-limited requests.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str = "error"
    code: int
    description: str
    retry_after: int | None = None
