"""Tests for update orchestration."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from starlette import status as st_status

from ddns_service.dns import DNSRecordService
from ddns_service.errors import (
    AuthError,
    MappingNotFoundError,
    RateLimitedError,
    UpstreamError,
    ValidationError,
)
from ddns_service.models import Mapping
from ddns_service.orchestrator import UpdateOrchestrator, resolve_candidate_ip
from ddns_service.providers.memory import InMemoryDNSProvider
from ddns_service.repository import InMemoryMappingStore, StoreError
from ddns_service.subdomain import derive_subdomain

SUBDOMAIN = derive_subdomain("homelab", "primary")
FQDN = f"{SUBDOMAIN}.example.com"


class FlakyStore(InMemoryMappingStore):
    """In-memory store whose reads or writes can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_get = False
        self.fail_put = False
        self.puts = 0

    async def get(self, owner_id, location):
        if self.fail_get:
            msg = "database is locked"
            raise StoreError(msg)
        return await super().get(owner_id, location)

    async def put(self, mapping):
        self.puts += 1
        if self.fail_put:
            msg = "disk I/O error"
            raise StoreError(msg)
        await super().put(mapping)


class SlowProvider(InMemoryDNSProvider):
    """In-memory provider that holds each batch until released."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def apply_changes(self, changes, comment):
        self.started.set()
        await self.release.wait()
        return await super().apply_changes(changes, comment)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 10, 15, tzinfo=UTC))


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def provider():
    return InMemoryDNSProvider()


@pytest.fixture
def orchestrator(store, provider, clock):
    return UpdateOrchestrator(
        store,
        DNSRecordService(provider, "example.com"),
        clock=clock,
    )


class TestResolveCandidateIP:
    """Tests for resolve_candidate_ip."""

    def test_body_ip_wins(self):
        assert resolve_candidate_ip("203.0.113.42", "198.51.100.1", "10.0.0.1") == "203.0.113.42"

    def test_forwarded_for_first_entry(self):
        assert resolve_candidate_ip(None, "198.51.100.1, 10.0.0.2", "10.0.0.1") == "198.51.100.1"

    def test_peer_fallback(self):
        assert resolve_candidate_ip(None, None, "10.0.0.1") == "10.0.0.1"
        assert resolve_candidate_ip("", "", "10.0.0.1") == "10.0.0.1"

    def test_normalized(self):
        assert resolve_candidate_ip(" 2001:DB8:0::1 ") == "2001:db8::1"

    def test_invalid_body_ip(self):
        with pytest.raises(ValidationError, match="invalid IP address"):
            resolve_candidate_ip("300.1.1.1", None, "10.0.0.1")

    def test_invalid_forwarded_for(self):
        with pytest.raises(ValidationError, match="invalid IP address"):
            resolve_candidate_ip(None, "unknown", "10.0.0.1")

    def test_nothing_available(self):
        with pytest.raises(ValidationError, match="could not determine client IP"):
            resolve_candidate_ip(None, None, None)


class TestUpdate:
    """Tests for UpdateOrchestrator.update."""

    @pytest.mark.asyncio
    async def test_homelab_scenario(self, orchestrator, provider, clock):
        first = await orchestrator.update("homelab", "primary", "203.0.113.42")
        assert first.changed is True
        assert first.subdomain == SUBDOMAIN
        assert first.fqdn == FQDN
        assert provider.get(FQDN) == {"203.0.113.42"}

        clock.now += timedelta(minutes=5)
        second = await orchestrator.update("homelab", "primary", "203.0.113.42")
        assert second.changed is False
        assert len(provider.batches) == 1

        clock.now += timedelta(minutes=5)
        third = await orchestrator.update("homelab", "primary", "203.0.113.99")
        assert third.changed is True
        assert provider.get(FQDN) == {"203.0.113.99"}

        clock.now += timedelta(minutes=5)
        with pytest.raises(RateLimitedError) as exc_info:
            await orchestrator.update("homelab", "primary", "203.0.113.100")
        assert exc_info.value.retry_after > 0
        assert exc_info.value.retry_after == 30 * 60
        assert exc_info.value.status_code == st_status.HTTP_429_TOO_MANY_REQUESTS
        assert "maximum 2 IP changes per hour" in exc_info.value.description
        assert provider.get(FQDN) == {"203.0.113.99"}

    @pytest.mark.asyncio
    async def test_unchanged_has_no_side_effects(self, orchestrator, store, provider):
        await orchestrator.update("homelab", "primary", "203.0.113.42")
        before = await store.get("homelab", "primary")

        for _ in range(5):
            result = await orchestrator.update("homelab", "primary", "203.0.113.42")
            assert result.changed is False

        assert await store.get("homelab", "primary") == before
        assert store.puts == 1
        assert len(provider.batches) == 1

    @pytest.mark.asyncio
    async def test_unchanged_when_rate_limited(self, orchestrator, clock):
        await orchestrator.update("homelab", "primary", "203.0.113.1")
        await orchestrator.update("homelab", "primary", "203.0.113.2")

        # Budget is spent but re-sending the current IP is still fine
        result = await orchestrator.update("homelab", "primary", "203.0.113.2")
        assert result.changed is False

    @pytest.mark.asyncio
    async def test_counters_persisted(self, orchestrator, store, clock):
        await orchestrator.update("homelab", "primary", "203.0.113.1")
        clock.now += timedelta(minutes=1)
        await orchestrator.update("homelab", "primary", "203.0.113.2")

        mapping = await store.get("homelab", "primary")
        assert mapping.hourly_change_count == 2
        assert mapping.last_ip_change_at == clock.now
        assert mapping.updated_at == clock.now

    @pytest.mark.asyncio
    async def test_new_hour_allows_change(self, orchestrator, clock):
        await orchestrator.update("homelab", "primary", "203.0.113.1")
        await orchestrator.update("homelab", "primary", "203.0.113.2")

        clock.now = datetime(2024, 5, 1, 11, 0, tzinfo=UTC)
        result = await orchestrator.update("homelab", "primary", "203.0.113.3")

        assert result.changed is True

    @pytest.mark.asyncio
    async def test_subdomain_is_stable(self, orchestrator, store, provider, clock):
        await store.put(
            Mapping(
                owner_id="homelab",
                location="primary",
                ip="203.0.113.1",
                subdomain="home",
            ),
        )

        result = await orchestrator.update("homelab", "primary", "203.0.113.2")

        assert result.subdomain == "home"
        assert result.fqdn == "home.example.com"
        assert provider.get("home.example.com") == {"203.0.113.2"}
        assert provider.get(FQDN) == set()

    @pytest.mark.asyncio
    async def test_locations_are_independent(self, orchestrator, provider):
        primary = await orchestrator.update("homelab", "primary", "203.0.113.1")
        backup = await orchestrator.update("homelab", "backup", "203.0.113.1")

        assert primary.subdomain != backup.subdomain
        assert backup.changed is True

    @pytest.mark.asyncio
    async def test_ip_from_transport(self, orchestrator):
        result = await orchestrator.update(
            "homelab",
            "primary",
            forwarded_for="198.51.100.7",
            peer_ip="10.0.0.1",
        )
        assert result.ip == "198.51.100.7"

    @pytest.mark.asyncio
    async def test_ipv6(self, orchestrator, provider):
        result = await orchestrator.update("homelab", "primary", "2001:db8::1")
        assert result.ip == "2001:db8::1"

    @pytest.mark.parametrize(
        ("owner_id", "location", "message"),
        [
            ("", "primary", "ownerId is required"),
            ("homelab", "", "location is required"),
        ],
    )
    @pytest.mark.asyncio
    async def test_missing_fields(self, orchestrator, provider, owner_id, location, message):
        with pytest.raises(ValidationError, match=message):
            await orchestrator.update(owner_id, location, "203.0.113.42")
        assert provider.batches == []

    @pytest.mark.asyncio
    async def test_forbidden_before_side_effects(self, orchestrator, store, provider):
        with pytest.raises(AuthError) as exc_info:
            await orchestrator.update(
                "homelab",
                "primary",
                "203.0.113.42",
                authenticated_owner="other",
            )

        assert exc_info.value.status_code == st_status.HTTP_403_FORBIDDEN
        assert provider.batches == []
        assert store.puts == 0

    @pytest.mark.asyncio
    async def test_dns_failure_skips_store(self, orchestrator, store, provider):
        provider.fail_next = 1

        with pytest.raises(UpstreamError) as exc_info:
            await orchestrator.update("homelab", "primary", "203.0.113.42")

        assert exc_info.value.description == "failed to update DNS record"
        assert store.puts == 0
        with pytest.raises(MappingNotFoundError):
            await store.get("homelab", "primary")

    @pytest.mark.asyncio
    async def test_dns_failure_is_retryable(self, orchestrator, provider):
        provider.fail_next = 1
        with pytest.raises(UpstreamError):
            await orchestrator.update("homelab", "primary", "203.0.113.42")

        result = await orchestrator.update("homelab", "primary", "203.0.113.42")

        assert result.changed is True

    @pytest.mark.asyncio
    async def test_store_failure_after_dns(self, orchestrator, store, provider):
        store.fail_put = True

        with pytest.raises(UpstreamError) as exc_info:
            await orchestrator.update("homelab", "primary", "203.0.113.42")

        assert exc_info.value.description == "failed to save mapping"
        # DNS is ahead of the store until the next successful update
        assert provider.get(FQDN) == {"203.0.113.42"}

    @pytest.mark.asyncio
    async def test_cancelled_request_completes_both_writes(self, store, clock):
        provider = SlowProvider()
        orchestrator = UpdateOrchestrator(
            store,
            DNSRecordService(provider, "example.com"),
            clock=clock,
        )
        task = asyncio.create_task(
            orchestrator.update("homelab", "primary", "203.0.113.42"),
        )
        await provider.started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        provider.release.set()

        async with asyncio.timeout(1):
            while store.puts == 0:
                await asyncio.sleep(0.01)

        assert provider.get(FQDN) == {"203.0.113.42"}
        assert (await store.get("homelab", "primary")).ip == "203.0.113.42"

    @pytest.mark.asyncio
    async def test_store_read_failure(self, orchestrator, store, provider):
        store.fail_get = True

        with pytest.raises(UpstreamError) as exc_info:
            await orchestrator.update("homelab", "primary", "203.0.113.42")

        assert exc_info.value.description == "failed to get mapping"
        assert provider.batches == []


class TestLookup:
    """Tests for UpdateOrchestrator.lookup."""

    @pytest.mark.asyncio
    async def test_not_found(self, orchestrator):
        with pytest.raises(MappingNotFoundError):
            await orchestrator.lookup("homelab", "primary")

    @pytest.mark.asyncio
    async def test_found(self, orchestrator):
        await orchestrator.update("homelab", "primary", "203.0.113.42")

        result = await orchestrator.lookup("homelab", "primary")

        assert result.ip == "203.0.113.42"
        assert result.fqdn == FQDN
        assert result.changed is False

    @pytest.mark.asyncio
    async def test_forbidden(self, orchestrator):
        with pytest.raises(AuthError):
            await orchestrator.lookup("homelab", "primary", authenticated_owner="other")
