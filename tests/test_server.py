"""Tests for server endpoints, authentication, and error handling."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from starlette import status as st_status

from ddns_service.auth import generate_api_key, hash_api_key
from ddns_service.config import (
    AuthConfig,
    Config,
    HealthConfig,
    StoreConfig,
)
from ddns_service.dns import DNSRecordService
from ddns_service.migration import SubdomainMigrator
from ddns_service.orchestrator import UpdateOrchestrator
from ddns_service.providers.memory import InMemoryDNSProvider
from ddns_service.repository import InMemoryMappingStore
from ddns_service.server import Services, build_services, create_app
from ddns_service.subdomain import derive_subdomain

API_KEY = generate_api_key()
OTHER_KEY = generate_api_key()
SUBDOMAIN = derive_subdomain("homelab", "primary")
FQDN = f"{SUBDOMAIN}.example.com"


class FakeClock:
    """Clock advanced by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 10, 15, tzinfo=UTC))


@pytest.fixture
def provider():
    return InMemoryDNSProvider()


@pytest.fixture
def store():
    return InMemoryMappingStore()


def _config(*, auth_enabled=False, health_enabled=True) -> Config:
    return Config(
        auth=AuthConfig(
            enabled=auth_enabled,
            owners={"homelab": hash_api_key(API_KEY), "other": hash_api_key(OTHER_KEY)},
        ),
        store=StoreConfig(backend="memory"),
        health=HealthConfig(enabled=health_enabled),
    )


def _services(config, store, provider, clock) -> Services:
    dns = DNSRecordService(provider, config.dns.root_domain)
    return Services(
        store=store,
        provider=provider,
        dns=dns,
        orchestrator=UpdateOrchestrator(store, dns, clock=clock),
        migrator=SubdomainMigrator(store, dns),
    )


@pytest.fixture
def client(store, provider, clock):
    """Create a test client with authentication disabled."""
    config = _config()
    return TestClient(create_app(config, _services(config, store, provider, clock)))


@pytest.fixture
def auth_client(store, provider, clock):
    """Create a test client with authentication enabled."""
    config = _config(auth_enabled=True)
    return TestClient(create_app(config, _services(config, store, provider, clock)))


def _update(client, ip="203.0.113.42", **kwargs):
    body = {"ownerId": "homelab", "location": "primary"}
    if ip is not None:
        body["ip"] = ip
    return client.post("/update", json=body, **kwargs)


class TestUpdate:
    """Tests for POST /update."""

    def test_first_update(self, client, provider):
        response = _update(client)

        assert response.status_code == st_status.HTTP_200_OK
        data = response.json()
        assert data["ownerId"] == "homelab"
        assert data["location"] == "primary"
        assert data["ip"] == "203.0.113.42"
        assert data["subdomain"] == SUBDOMAIN
        assert data["fqdn"] == FQDN
        assert data["changed"] is True
        assert "updatedAt" in data
        assert provider.get(FQDN) == {"203.0.113.42"}

    def test_same_ip_unchanged(self, client, provider):
        _update(client)
        response = _update(client)

        assert response.status_code == st_status.HTTP_200_OK
        assert response.json()["changed"] is False
        assert len(provider.batches) == 1

    def test_ip_from_forwarded_for(self, client, provider):
        response = _update(
            client,
            ip=None,
            headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"},
        )

        assert response.status_code == st_status.HTTP_200_OK
        assert response.json()["ip"] == "198.51.100.7"
        assert provider.get(FQDN) == {"198.51.100.7"}

    def test_rate_limited(self, client, clock):
        assert _update(client, "203.0.113.42").json()["changed"] is True
        assert _update(client, "203.0.113.42").json()["changed"] is False
        assert _update(client, "203.0.113.99").json()["changed"] is True

        response = _update(client, "203.0.113.100")

        assert response.status_code == st_status.HTTP_429_TOO_MANY_REQUESTS
        data = response.json()
        assert data["status"] == "error"
        assert data["code"] == 429
        assert "rate limit exceeded" in data["description"]
        # 10:15 -> next window at 11:00
        assert data["retryAfter"] == 45 * 60
        assert response.headers["Retry-After"] == str(45 * 60)

    def test_rate_limit_resets_next_hour(self, client, clock):
        _update(client, "203.0.113.1")
        _update(client, "203.0.113.2")
        assert _update(client, "203.0.113.3").status_code == 429

        clock.now += timedelta(hours=1)

        assert _update(client, "203.0.113.3").status_code == st_status.HTTP_200_OK

    def test_invalid_ip(self, client):
        response = _update(client, "not-an-ip")
        assert response.status_code == st_status.HTTP_400_BAD_REQUEST
        assert response.json() == {
            "status": "error",
            "code": 400,
            "description": "invalid IP address",
        }

    def test_missing_owner(self, client):
        response = client.post("/update", json={"location": "primary"})
        assert response.status_code == st_status.HTTP_400_BAD_REQUEST
        assert response.json()["description"] == "ownerId is required"

    def test_missing_body(self, client):
        response = client.post("/update")
        assert response.status_code == st_status.HTTP_400_BAD_REQUEST
        assert "Missing required fields" in response.json()["description"]

    def test_wrong_field_type(self, client):
        response = client.post(
            "/update",
            json={"ownerId": 5, "location": "primary"},
        )
        assert response.status_code == st_status.HTTP_400_BAD_REQUEST
        assert "Invalid fields: ownerId" in response.json()["description"]

    def test_dns_failure(self, client, provider, store):
        provider.fail_next = 1

        response = _update(client)

        assert response.status_code == st_status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["description"] == "failed to update DNS record"

    def test_get_not_allowed(self, client):
        response = client.get("/update")
        assert response.status_code == st_status.HTTP_405_METHOD_NOT_ALLOWED
        assert response.json()["status"] == "error"


class TestLookup:
    """Tests for GET /lookup/{owner_id}/{location}."""

    def test_not_found(self, client):
        response = client.get("/lookup/homelab/primary")
        assert response.status_code == st_status.HTTP_404_NOT_FOUND
        assert response.json() == {
            "status": "error",
            "code": 404,
            "description": "mapping not found",
        }

    def test_found(self, client):
        _update(client)
        response = client.get("/lookup/homelab/primary")

        assert response.status_code == st_status.HTTP_200_OK
        data = response.json()
        assert data["ip"] == "203.0.113.42"
        assert data["fqdn"] == FQDN
        assert data["changed"] is False


class TestPublicIP:
    """Tests for GET /public-ip."""

    def test_echoes_forwarded_for(self, client):
        response = client.get("/public-ip", headers={"X-Forwarded-For": "203.0.113.5"})
        assert response.status_code == st_status.HTTP_200_OK
        assert response.json() == {"publicIp": "203.0.113.5"}

    def test_not_authenticated(self, auth_client):
        response = auth_client.get(
            "/public-ip",
            headers={"X-Forwarded-For": "2001:db8::1"},
        )
        assert response.status_code == st_status.HTTP_200_OK
        assert response.json() == {"publicIp": "2001:db8::1"}


class TestHealth:
    """Tests for the health endpoint."""

    def test_health_enabled(self, client):
        response = client.get("/health")
        assert response.status_code == st_status.HTTP_200_OK
        assert response.json() == {"status": "ok"}

    def test_health_disabled(self, store, provider, clock):
        config = _config(health_enabled=False)
        client = TestClient(create_app(config, _services(config, store, provider, clock)))
        response = client.get("/health")
        assert response.status_code == st_status.HTTP_404_NOT_FOUND
        assert response.json()["status"] == "error"


class TestAuthentication:
    """Tests for API key authentication."""

    def test_valid_key(self, auth_client):
        response = _update(auth_client, headers={"Authorization": f"Bearer {API_KEY}"})
        assert response.status_code == st_status.HTTP_200_OK

    def test_missing_header(self, auth_client, provider):
        response = _update(auth_client)

        assert response.status_code == st_status.HTTP_401_UNAUTHORIZED
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["description"] == "missing or invalid authorization header"
        assert provider.batches == []

    def test_basic_scheme_rejected(self, auth_client):
        response = _update(auth_client, headers={"Authorization": f"Basic {API_KEY}"})
        assert response.status_code == st_status.HTTP_401_UNAUTHORIZED

    def test_bad_format(self, auth_client):
        response = _update(auth_client, headers={"Authorization": "Bearer not-a-key"})
        assert response.status_code == st_status.HTTP_401_UNAUTHORIZED
        assert response.json()["description"] == "invalid API key format"

    def test_unknown_key(self, auth_client):
        response = _update(
            auth_client,
            headers={"Authorization": f"Bearer {generate_api_key()}"},
        )
        assert response.status_code == st_status.HTTP_401_UNAUTHORIZED
        assert response.json()["description"] == "invalid credentials"

    def test_auth_before_validation(self, auth_client):
        response = auth_client.post("/update", content=b"not json")
        assert response.status_code == st_status.HTTP_401_UNAUTHORIZED

    def test_other_owner_forbidden(self, auth_client, provider):
        response = _update(auth_client, headers={"Authorization": f"Bearer {OTHER_KEY}"})

        assert response.status_code == st_status.HTTP_403_FORBIDDEN
        assert response.json()["description"] == "forbidden"
        assert provider.batches == []

    def test_lookup_requires_key(self, auth_client):
        response = auth_client.get("/lookup/homelab/primary")
        assert response.status_code == st_status.HTTP_401_UNAUTHORIZED

    def test_lookup_other_owner_forbidden(self, auth_client):
        response = auth_client.get(
            "/lookup/homelab/primary",
            headers={"Authorization": f"Bearer {OTHER_KEY}"},
        )
        assert response.status_code == st_status.HTTP_403_FORBIDDEN


class TestBuildServices:
    """Tests for building services from configuration."""

    def test_memory_backends(self):
        config = _config()
        services = build_services(config)
        assert isinstance(services.store, InMemoryMappingStore)
        assert services.provider.name == "memory"
        assert services.dns.root_domain == "example.com"

    def test_sqlite_backend(self, tmp_path):
        config = Config(store=StoreConfig(backend="sqlite", path=str(tmp_path / "m.db")))
        services = build_services(config)
        assert services.store.db_path == tmp_path / "m.db"

    def test_overrides_are_used(self, store, provider):
        services = build_services(_config(), store=store, provider=provider)
        assert services.store is store
        assert services.provider is provider

    def test_lifespan(self, store, provider, clock):
        config = _config()
        app = create_app(config, _services(config, store, provider, clock))
        with TestClient(app) as client:
            assert client.get("/health").status_code == st_status.HTTP_200_OK
        assert app.state.config is config
