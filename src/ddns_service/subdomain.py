"""
Subdomain derivation and DNS name construction.

The derived label is part of every public hostname handed out by the
service, so the hash algorithm and truncation length must never change.
"""

from __future__ import annotations

import hashlib
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Final


# Number of hex characters in a derived subdomain
SUBDOMAIN_LENGTH: Final[int] = 8

# Prefix of ACME DNS-01 challenge records
ACME_CHALLENGE_PREFIX: Final[str] = "_acme-challenge"

# RFC 1123 host label
_LABEL_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def derive_subdomain(owner_id: str, location: str) -> str:
    """
    Derive the stable DNS label for an (owner, location) pair.

    The label is the first 8 hex characters of the MD5 digest of
    ``"{owner_id}-{location}"``. Collisions between distinct pairs are
    possible and not handled.

    Parameters
    ----------
    owner_id : str
        Owner identity.
    location : str
        Location name.

    Returns
    -------
    str
        An 8-character lowercase hex label.
    """
    digest = hashlib.md5(f"{owner_id}-{location}".encode(), usedforsecurity=False)
    return digest.hexdigest()[:SUBDOMAIN_LENGTH]


def format_fqdn(subdomain: str, root_domain: str) -> str:
    """Return ``{subdomain}.{root_domain}``."""
    return f"{subdomain}.{root_domain}"


def build_acme_challenge_name(subdomain: str) -> str:
    """
    Build the relative name of the ACME challenge TXT record.

    The DNS record service appends the root domain, giving
    ``_acme-challenge.{subdomain}.{root_domain}``.
    """
    return f"{ACME_CHALLENGE_PREFIX}.{subdomain}"


def is_valid_label(label: str) -> bool:
    """
    Check whether an administrator-chosen subdomain is a valid host label.

    Parameters
    ----------
    label : str
        Candidate label, expected in lowercase.

    Returns
    -------
    bool
        True if the label is 1-63 characters of ``[a-z0-9-]`` without a
        leading or trailing hyphen.
    """
    return bool(_LABEL_PATTERN.match(label))
