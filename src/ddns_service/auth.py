"""
API key authentication.

Owners authenticate with a Bearer API key (``ddns_sk_`` followed by 32
random bytes in unpadded base64url). The server only stores SHA-256 digests
of the keys, configured per owner.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import secrets
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse
from starlette import status as st_status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ddns_service import errors
from ddns_service.models import ErrorResponse

if TYPE_CHECKING:
    from collections.abc import Mapping
    from typing import Final

    from fastapi import Request, Response
    from starlette.types import ASGIApp


API_KEY_PREFIX: Final[str] = "ddns_sk_"
API_KEY_BYTES: Final[int] = 32

# Paths that require a valid API key when authentication is enabled
PROTECTED_PREFIXES: Final[tuple[str, ...]] = ("/update", "/lookup/")

_BASE64URL: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_-]+$")


logger = logging.getLogger(__name__)


def generate_api_key() -> str:
    """Return a new random API key."""
    raw = secrets.token_bytes(API_KEY_BYTES)
    return API_KEY_PREFIX + base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def hash_api_key(key: str) -> str:
    """Return the SHA-256 hex digest stored in place of an API key."""
    return hashlib.sha256(key.encode()).hexdigest()


def validate_api_key_format(key: str) -> bool:
    """
    Check the shape of an API key without looking it up.

    Parameters
    ----------
    key : str
        Candidate key.

    Returns
    -------
    bool
        True if the key has the ``ddns_sk_`` prefix followed by a non-empty
        unpadded base64url string.
    """
    if not key.startswith(API_KEY_PREFIX):
        return False
    encoded = key.removeprefix(API_KEY_PREFIX)
    # A single leftover character cannot encode a byte
    return bool(_BASE64URL.match(encoded)) and len(encoded) % 4 != 1


def extract_bearer_token(header: str) -> str:
    """Return the token of a ``Bearer`` Authorization header, or ""."""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def find_owner(key: str, owners: Mapping[str, str]) -> str | None:
    """
    Return the owner whose configured digest matches an API key.

    Every digest is compared in constant time, and all of them are compared
    even after a match.
    """
    digest = hash_api_key(key)
    found: str | None = None
    for owner_id, expected in owners.items():
        if hmac.compare_digest(digest, expected):
            found = owner_id
    return found


def _reject(description: str) -> Response:
    body = ErrorResponse(code=st_status.HTTP_401_UNAUTHORIZED, description=description)
    return JSONResponse(
        status_code=st_status.HTTP_401_UNAUTHORIZED,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers={"WWW-Authenticate": "Bearer"},
    )


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Middleware authenticating owners by API key.

    Runs before parameter validation on the protected paths. On success the
    owner ID is stored on ``request.state.owner_id``; whether that owner may
    touch the requested mapping is decided by the handlers.
    """

    def __init__(
        self,
        app: ASGIApp,
        owners: Mapping[str, str],
        *,
        enabled: bool = True,
    ) -> None:
        """
        Initialize the middleware.

        Parameters
        ----------
        app : ASGIApp
            The wrapped application.
        owners : Mapping[str, str]
            Owner ID to SHA-256 hex digest of the owner's API key.
        enabled : bool, optional
            When False every request passes without an owner.
        """
        super().__init__(app)
        self.owners = dict(owners)
        self.enabled = enabled

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        """Authenticate requests to protected paths."""
        request.state.owner_id = None
        if not self.enabled or not request.url.path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        token = extract_bearer_token(request.headers.get("authorization", ""))
        if not token:
            logger.warning("[auth] Missing or invalid authorization header")
            return _reject(errors.UNAUTHORIZED)

        if not validate_api_key_format(token):
            logger.warning("[auth] Invalid API key format")
            return _reject(errors.INVALID_API_KEY_FORMAT)

        owner_id = find_owner(token, self.owners)
        if owner_id is None:
            logger.warning("[auth] API key matches no configured owner")
            return _reject(errors.INVALID_CREDENTIALS)

        logger.debug("[auth] Authenticated owner %s", owner_id)
        request.state.owner_id = owner_id
        return await call_next(request)
