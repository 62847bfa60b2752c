"""
Client state files.

The one-shot client remembers a SHA-256 digest of the last IP it pushed for
each (owner, location), so a cron job only calls the server when the IP
changed. The IP itself is not written to disk.
"""

from __future__ import annotations

import hashlib
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from typing import Final


DEFAULT_STATE_DIR: Final[Path] = Path("~/.config/ddns-client")
FILE_PERMISSION: Final[int] = 0o600
DIR_PERMISSION: Final[int] = 0o700


class StateError(Exception):
    """A state file could not be read or written."""


class ClientState(BaseModel):
    """Persisted state of one (owner, location)."""

    ip_hash: str
    updated_at: datetime


def hash_ip(ip: str) -> str:
    """Return the SHA-256 hex digest of an IP string."""
    return hashlib.sha256(ip.encode()).hexdigest()


class StateManager:
    """Read and write per-location state files."""

    def __init__(self, state_dir: str | Path | None = None) -> None:
        """
        Initialize the manager and create the state directory.

        Parameters
        ----------
        state_dir : str | Path | None, optional
            Directory for state files, ``~/.config/ddns-client`` by default.

        Raises
        ------
        StateError
            If the directory cannot be created.
        """
        self.state_dir = Path(state_dir or DEFAULT_STATE_DIR).expanduser()
        try:
            self.state_dir.mkdir(mode=DIR_PERMISSION, parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Failed to create state directory: {e}"
            raise StateError(msg) from e

    def path_for(self, owner_id: str, location: str) -> Path:
        """Return the state file of an (owner, location)."""
        return self.state_dir / f"{owner_id}-{location}.state"

    def load(self, owner_id: str, location: str) -> ClientState | None:
        """
        Read the state of an (owner, location).

        Returns
        -------
        ClientState | None
            The stored state, or None if there is no state file yet.

        Raises
        ------
        StateError
            If the file exists but cannot be read or parsed.
        """
        path = self.path_for(owner_id, location)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            msg = f"Failed to read state file: {e}"
            raise StateError(msg) from e

        try:
            return ClientState.model_validate_json(data)
        except ValidationError as e:
            msg = f"Failed to parse state file {path}: {e}"
            raise StateError(msg) from e

    def save(self, owner_id: str, location: str, ip: str) -> ClientState:
        """
        Record that `ip` was pushed for an (owner, location).

        The file is created with mode 0600.

        Raises
        ------
        StateError
            If the file cannot be written.
        """
        state = ClientState(ip_hash=hash_ip(ip), updated_at=datetime.now(UTC))
        path = self.path_for(owner_id, location)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_PERMISSION)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(state.model_dump_json(indent=2))
        except OSError as e:
            msg = f"Failed to write state file: {e}"
            raise StateError(msg) from e
        return state

    def has_ip_changed(self, owner_id: str, location: str, ip: str) -> bool:
        """Return True unless the stored digest matches `ip`."""
        state = self.load(owner_id, location)
        return state is None or state.ip_hash != hash_ip(ip)
