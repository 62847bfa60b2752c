"""
FastAPI server for DDNS Service.

This module wires the configured store, DNS provider and orchestrators into
a FastAPI application exposing the update, lookup and public IP endpoints.
Every error is reported as ``{"status": "error", "code": ..., "description": ...}``.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status as st_status
from starlette.exceptions import HTTPException as StarletteHTTPException

from ddns_service import __version__
from ddns_service.auth import AuthMiddleware
from ddns_service.dns import DNSRecordService
from ddns_service.errors import DDNSError, RateLimitedError
from ddns_service.migration import SubdomainMigrator
from ddns_service.models import ErrorResponse, PublicIPResponse, UpdateRequest
from ddns_service.orchestrator import UpdateOrchestrator, resolve_candidate_ip
from ddns_service.providers.cloudflare import CloudFlareProvider
from ddns_service.providers.memory import InMemoryDNSProvider
from ddns_service.repository import InMemoryMappingStore, SQLiteMappingStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from pydantic import BaseModel

    from ddns_service.config import Config
    from ddns_service.providers.base import BaseDNSProvider
    from ddns_service.repository import MappingStore


logger = logging.getLogger(__name__)


@dataclass
class Services:
    """
    Long-lived collaborators built once at process start.

    Attributes
    ----------
    store : MappingStore
        Mapping persistence.
    provider : BaseDNSProvider
        DNS provider backend.
    dns : DNSRecordService
        Record operations under the root domain.
    orchestrator : UpdateOrchestrator
        Update and lookup logic.
    migrator : SubdomainMigrator
        Administrative subdomain changes.
    """

    store: MappingStore
    provider: BaseDNSProvider
    dns: DNSRecordService
    orchestrator: UpdateOrchestrator
    migrator: SubdomainMigrator


def build_provider(config: Config) -> BaseDNSProvider:
    """Create the DNS provider selected by ``[dns] provider``."""
    if config.dns.provider == "cloudflare":
        return CloudFlareProvider(
            api_token=config.dns.api_token,
            zone=config.dns.root_domain,
            zone_id=config.dns.zone_id,
            timeout=config.dns.timeout,
        )
    return InMemoryDNSProvider()


def build_store(config: Config) -> MappingStore:
    """Create the mapping store selected by ``[store] backend``."""
    if config.store.backend == "sqlite":
        return SQLiteMappingStore(config.store.path, timeout=config.store.timeout)
    return InMemoryMappingStore()


def build_services(
    config: Config,
    *,
    store: MappingStore | None = None,
    provider: BaseDNSProvider | None = None,
) -> Services:
    """
    Build every service from configuration.

    Parameters
    ----------
    config : Config
        Application configuration.
    store : MappingStore | None, optional
        Store to use instead of the configured one.
    provider : BaseDNSProvider | None, optional
        Provider to use instead of the configured one.

    Returns
    -------
    Services
        The wired services.
    """
    store = store or build_store(config)
    provider = provider or build_provider(config)
    dns = DNSRecordService(provider, config.dns.root_domain)
    return Services(
        store=store,
        provider=provider,
        dns=dns,
        orchestrator=UpdateOrchestrator(
            store,
            dns,
            max_changes_per_hour=config.rate_limit.max_changes_per_hour,
        ),
        migrator=SubdomainMigrator(store, dns),
    )


def _json(model: BaseModel, status_code: int = st_status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=model.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def _error(
    status_code: int,
    description: str,
    retry_after: int | None = None,
) -> JSONResponse:
    response = _json(
        ErrorResponse(code=status_code, description=description, retry_after=retry_after),
        status_code,
    )
    if retry_after is not None:
        response.headers["Retry-After"] = str(retry_after)
    return response


async def ddns_error_handler(_request: Request, exc: DDNSError) -> Response:
    """Report a `DDNSError` with its fixed description and status code."""
    retry_after = exc.retry_after if isinstance(exc, RateLimitedError) else None
    return _error(exc.status_code, exc.description, retry_after)


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> Response:
    """
    Handle HTTP exceptions with consistent JSON responses.

    Convert FastAPI's default {"detail": "..."} format to the unified error
    format.
    """
    return _error(exc.status_code, str(exc.detail))


async def validation_exception_handler(
    _request: Request,
    exc: RequestValidationError,
) -> Response:
    """
    Handle request validation errors with consistent JSON responses.

    Lists every missing or invalid field in the description.
    """
    missing_fields: list[str] = []
    invalid_fields: list[str] = []
    for error in exc.errors():
        field_path = ".".join(str(loc) for loc in error["loc"] if loc != "body") or "body"
        if error["type"] == "missing":
            missing_fields.append(field_path)
        else:
            invalid_fields.append(f"{field_path}: {error['msg']}")

    messages: list[str] = []
    if missing_fields:
        messages.append(f"Missing required fields: {', '.join(missing_fields)}")
    if invalid_fields:
        messages.append(f"Invalid fields: {'; '.join(invalid_fields)}")

    return _error(
        st_status.HTTP_400_BAD_REQUEST,
        ". ".join(messages) if messages else "invalid request body",
    )


def _peer_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


async def update(request: Request, body: UpdateRequest) -> Response:
    """Reconcile the caller's mapping with its current IP."""
    services: Services = request.app.state.services
    start_time = time.monotonic()

    result = await services.orchestrator.update(
        body.owner_id,
        body.location,
        body.ip,
        forwarded_for=request.headers.get("x-forwarded-for"),
        peer_ip=_peer_ip(request),
        authenticated_owner=getattr(request.state, "owner_id", None),
    )

    logger.info(
        "[response] owner=%s location=%s changed=%s duration=%.2fs",
        result.owner_id,
        result.location,
        result.changed,
        time.monotonic() - start_time,
    )
    return _json(result)


async def lookup(request: Request, owner_id: str, location: str) -> Response:
    """Return the stored mapping of an (owner, location) pair."""
    services: Services = request.app.state.services
    result = await services.orchestrator.lookup(
        owner_id,
        location,
        authenticated_owner=getattr(request.state, "owner_id", None),
    )
    return _json(result)


async def public_ip(request: Request) -> Response:
    """Echo the caller's public IP as seen by the server."""
    ip = resolve_candidate_ip(
        None,
        request.headers.get("x-forwarded-for"),
        _peer_ip(request),
    )
    return _json(PublicIPResponse(public_ip=ip))


async def health() -> Response:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok"})


def create_app(config: Config, services: Services | None = None) -> FastAPI:
    """
    Create the FastAPI application.

    Parameters
    ----------
    config : Config
        Application configuration.
    services : Services | None, optional
        Prebuilt services; built from `config` when omitted.

    Returns
    -------
    FastAPI
        The configured application.
    """
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            'DDNS Service starting on "%s:%d" (root domain "%s", provider "%s", '
            'store "%s", auth %s).',
            config.server.host,
            config.server.port,
            config.dns.root_domain,
            services.provider.name,
            config.store.backend,
            "enabled" if config.auth.enabled else "disabled",
        )
        yield
        logger.info("DDNS Service shutting down.")

    app = FastAPI(
        title="DDNS Service",
        description="Keeps DNS names in sync with the changing public IPs of owners",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.services = services

    app.add_middleware(
        AuthMiddleware,
        owners=config.auth.owners,
        enabled=config.auth.enabled,
    )

    app.add_exception_handler(DDNSError, ddns_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    app.add_api_route("/update", update, methods=["POST"])
    app.add_api_route("/lookup/{owner_id}/{location}", lookup, methods=["GET"])
    app.add_api_route("/public-ip", public_ip, methods=["GET"])
    if config.health.enabled:
        app.add_api_route("/health", health, methods=["GET"])

    return app
