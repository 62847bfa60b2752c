"""
Mapping storage.

Defines the storage contract the reconciliation core depends on and two
backends: an in-memory dictionary (tests, local runs) and SQLite. Writes are
unconditional upserts; last write wins.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from pathlib import Path
from typing import TYPE_CHECKING

from ddns_service.errors import MappingNotFoundError
from ddns_service.models import Mapping

if TYPE_CHECKING:
    from typing import Final


# Seconds to wait for the SQLite database lock
DEFAULT_STORE_TIMEOUT: Final[float] = 5.0


logger = logging.getLogger(__name__)


class StoreError(Exception):
    """The storage backend failed to read or write."""


class MappingStore(ABC):
    """Durable key-value store for mappings keyed by (owner_id, location)."""

    @abstractmethod
    async def get(self, owner_id: str, location: str) -> Mapping:
        """
        Retrieve a mapping.

        Raises
        ------
        MappingNotFoundError
            If no mapping exists for the pair.
        StoreError
            If the backend fails.
        """
        ...

    @abstractmethod
    async def put(self, mapping: Mapping) -> None:
        """Create or replace a mapping."""
        ...

    @abstractmethod
    async def update_subdomain(
        self,
        owner_id: str,
        location: str,
        subdomain: str,
    ) -> None:
        """
        Change only the subdomain of an existing mapping.

        Raises
        ------
        MappingNotFoundError
            If no mapping exists for the pair.
        """
        ...

    @abstractmethod
    async def scan(self) -> list[Mapping]:
        """Return every stored mapping."""
        ...


class InMemoryMappingStore(MappingStore):
    """Dictionary-backed store."""

    def __init__(self) -> None:
        self._items: dict[tuple[str, str], Mapping] = {}

    async def get(self, owner_id: str, location: str) -> Mapping:
        try:
            return self._items[(owner_id, location)].model_copy()
        except KeyError:
            raise MappingNotFoundError(owner_id, location) from None

    async def put(self, mapping: Mapping) -> None:
        self._items[(mapping.owner_id, mapping.location)] = mapping.model_copy()

    async def update_subdomain(
        self,
        owner_id: str,
        location: str,
        subdomain: str,
    ) -> None:
        current = await self.get(owner_id, location)
        await self.put(current.model_copy(update={"subdomain": subdomain}))

    async def scan(self) -> list[Mapping]:
        return [m.model_copy() for m in self._items.values()]


_SCHEMA = """
CREATE TABLE IF NOT EXISTS ip_mappings (
    owner_id TEXT NOT NULL,
    location TEXT NOT NULL,
    ip TEXT NOT NULL,
    subdomain TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_ip_change_at TEXT NOT NULL,
    hourly_change_count INTEGER NOT NULL,
    PRIMARY KEY (owner_id, location)
)
"""

_COLUMNS = (
    "owner_id, location, ip, subdomain, updated_at, last_ip_change_at, "
    "hourly_change_count"
)


class SQLiteMappingStore(MappingStore):
    """
    SQLite-backed store.

    Each call opens its own connection and runs in a worker thread, so the
    event loop is never blocked on disk I/O or the database lock.
    """

    def __init__(self, db_path: str | Path, timeout: float = DEFAULT_STORE_TIMEOUT) -> None:
        """
        Initialize the store and create the table if needed.

        Parameters
        ----------
        db_path : str | Path
            Path of the SQLite database file.
        timeout : float, optional
            Seconds to wait for the database lock.
        """
        self.db_path = Path(db_path).expanduser()
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with closing(self._connect()) as conn, conn:
                conn.execute(_SCHEMA)
        except sqlite3.Error as e:
            msg = f"Cannot initialize {self.db_path}: {e}"
            raise StoreError(msg) from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, func, *args):  # noqa: ANN001, ANN202
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as e:
            logger.error("[store] SQLite operation failed: %s", e)  # noqa: TRY400
            raise StoreError(str(e)) from e

    async def get(self, owner_id: str, location: str) -> Mapping:
        row = await self._run(self._get_row, owner_id, location)
        if row is None:
            raise MappingNotFoundError(owner_id, location)
        return _row_to_mapping(row)

    def _get_row(self, owner_id: str, location: str) -> sqlite3.Row | None:
        with closing(self._connect()) as conn, conn:
            return conn.execute(
                f"SELECT {_COLUMNS} FROM ip_mappings WHERE owner_id = ? AND location = ?",  # noqa: S608
                (owner_id, location),
            ).fetchone()

    async def put(self, mapping: Mapping) -> None:
        await self._run(self._put_row, mapping)
        logger.debug(
            "[store] Mapping saved: owner=%s location=%s ip=%s",
            mapping.owner_id,
            mapping.location,
            mapping.ip,
        )

    def _put_row(self, mapping: Mapping) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                f"INSERT OR REPLACE INTO ip_mappings ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",  # noqa: S608
                (
                    mapping.owner_id,
                    mapping.location,
                    mapping.ip,
                    mapping.subdomain,
                    mapping.updated_at.isoformat(),
                    mapping.last_ip_change_at.isoformat(),
                    mapping.hourly_change_count,
                ),
            )

    async def update_subdomain(
        self,
        owner_id: str,
        location: str,
        subdomain: str,
    ) -> None:
        updated = await self._run(self._update_subdomain_row, owner_id, location, subdomain)
        if not updated:
            raise MappingNotFoundError(owner_id, location)

    def _update_subdomain_row(self, owner_id: str, location: str, subdomain: str) -> int:
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                "UPDATE ip_mappings SET subdomain = ? WHERE owner_id = ? AND location = ?",
                (subdomain, owner_id, location),
            )
            return cursor.rowcount

    async def scan(self) -> list[Mapping]:
        rows = await self._run(self._scan_rows)
        return [_row_to_mapping(row) for row in rows]

    def _scan_rows(self) -> list[sqlite3.Row]:
        with closing(self._connect()) as conn, conn:
            return conn.execute(
                f"SELECT {_COLUMNS} FROM ip_mappings ORDER BY owner_id, location",  # noqa: S608
            ).fetchall()


def _row_to_mapping(row: sqlite3.Row) -> Mapping:
    return Mapping.model_validate(dict(row))
