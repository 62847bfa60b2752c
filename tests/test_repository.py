"""Tests for mapping stores."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from datetime import UTC, datetime

import pytest

from ddns_service.errors import MappingNotFoundError
from ddns_service.models import Mapping
from ddns_service.repository import (
    InMemoryMappingStore,
    SQLiteMappingStore,
    StoreError,
)

NOW = datetime(2024, 5, 1, 10, 15, 30, tzinfo=UTC)


def _mapping(location="primary", ip="203.0.113.42", **kwargs) -> Mapping:
    return Mapping(
        owner_id="homelab",
        location=location,
        ip=ip,
        subdomain="a9675db9",
        updated_at=NOW,
        last_ip_change_at=NOW,
        hourly_change_count=1,
        **kwargs,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryMappingStore()
    return SQLiteMappingStore(tmp_path / "mappings.db")


class TestMappingStore:
    """Behavior shared by every backend."""

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        with pytest.raises(MappingNotFoundError):
            await store.get("homelab", "primary")

    @pytest.mark.asyncio
    async def test_put_then_get(self, store):
        await store.put(_mapping())

        mapping = await store.get("homelab", "primary")

        assert mapping == _mapping()
        assert mapping.updated_at == NOW

    @pytest.mark.asyncio
    async def test_put_replaces(self, store):
        await store.put(_mapping())
        await store.put(_mapping(ip="198.51.100.7"))

        mapping = await store.get("homelab", "primary")
        assert mapping.ip == "198.51.100.7"
        assert len(await store.scan()) == 1

    @pytest.mark.asyncio
    async def test_update_subdomain(self, store):
        await store.put(_mapping())

        await store.update_subdomain("homelab", "primary", "home")

        mapping = await store.get("homelab", "primary")
        assert mapping.subdomain == "home"
        assert mapping.ip == "203.0.113.42"

    @pytest.mark.asyncio
    async def test_update_subdomain_missing(self, store):
        with pytest.raises(MappingNotFoundError):
            await store.update_subdomain("homelab", "primary", "home")

    @pytest.mark.asyncio
    async def test_scan(self, store):
        await store.put(_mapping("primary"))
        await store.put(_mapping("backup"))

        mappings = await store.scan()

        assert sorted(m.location for m in mappings) == ["backup", "primary"]

    @pytest.mark.asyncio
    async def test_returned_mapping_is_a_copy(self, store):
        await store.put(_mapping())
        mapping = await store.get("homelab", "primary")
        mapping.ip = "198.51.100.7"
        assert (await store.get("homelab", "primary")).ip == "203.0.113.42"


class TestSQLiteMappingStore:
    """SQLite specific behavior."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "mappings.db"
        await SQLiteMappingStore(path).put(_mapping())

        mapping = await SQLiteMappingStore(path).get("homelab", "primary")

        assert mapping.ip == "203.0.113.42"
        assert mapping.hourly_change_count == 1

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "mappings.db"
        SQLiteMappingStore(path)
        assert path.exists()

    def test_unusable_database(self, tmp_path):
        path = tmp_path / "not-a-db"
        path.write_bytes(b"this is not a sqlite database" * 100)
        with pytest.raises(StoreError, match="Cannot initialize"):
            SQLiteMappingStore(path)

    @pytest.mark.asyncio
    async def test_backend_error_is_store_error(self, tmp_path):
        path = tmp_path / "mappings.db"
        store = SQLiteMappingStore(path)
        with closing(sqlite3.connect(path)) as conn, conn:
            conn.execute("DROP TABLE ip_mappings")

        with pytest.raises(StoreError):
            await store.get("homelab", "primary")
