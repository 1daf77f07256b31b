#!/usr/bin/env python3
"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
State Manager for the file updater

Owns everything the updater persists under ``<root>/.updater``:

- index.json: the local manifest (metadata + last-synced version/checksum per file)
- catalog.json: cached copy of the last good remote catalog
- session.lock: exclusive lock for the running update session
- staging/: verified downloads waiting for install

Usage:
    from fileupdater.utils.state_manager import StateManager

    state = StateManager("/opt/app")
    with state.session_lock():
        manifest = state.load_manifest()
        manifest.files["lib/core.zip"] = ManifestEntry("2", "abc...")
        state.save_manifest(manifest)
"""

import json
import os
import socket
import tempfile
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import SessionLockedError
from .index import debug_log, log_message

STATE_DIR_NAME = ".updater"
MANIFEST_NAME = "index.json"
CATALOG_CACHE_NAME = "catalog.json"
LOCK_NAME = "session.lock"
STAGING_DIR_NAME = "staging"


class StateManagerError(Exception):
    """Custom exception for state manager operation failures."""
    pass


@dataclass
class ManifestEntry:
    """Last successfully installed state of one file."""
    version: str
    checksum: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ManifestEntry':
        return cls(version=str(data["version"]), checksum=str(data["checksum"]))


@dataclass
class LocalManifest:
    metadata: Dict[str, Any] = field(default_factory=dict)
    files: Dict[str, ManifestEntry] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": dict(self.metadata),
            "files": {path: entry.to_dict() for path, entry in sorted(self.files.items())},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LocalManifest':
        files = {}
        for path, entry in (data.get("files") or {}).items():
            try:
                files[path] = ManifestEntry.from_dict(entry)
            except (KeyError, TypeError) as e:
                log_message(f"Ignoring malformed manifest entry for {path}: {e}", "WARNING")
        return cls(metadata=dict(data.get("metadata") or {}), files=files)


def default_manifest() -> LocalManifest:
    return LocalManifest(metadata={"schema_version": "1.0.0", "channel": "stable"})


def write_json_atomic(target: Path, data: Dict[str, Any]) -> None:
    """Write JSON next to target and rename it into place."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=4)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # Liveness is not probed on Windows; the lock is honored.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class StateManager:
    """Persistent state of one install root."""

    def __init__(self, root):
        self.root = Path(root)
        self.state_dir = self.root / STATE_DIR_NAME
        self.manifest_file = self.state_dir / MANIFEST_NAME
        self.catalog_cache_file = self.state_dir / CATALOG_CACHE_NAME
        self.lock_file = self.state_dir / LOCK_NAME
        self.staging_dir = self.state_dir / STAGING_DIR_NAME

    def load_manifest(self) -> LocalManifest:
        """Load the local manifest; a missing file yields the default structure."""
        if not self.manifest_file.exists():
            return default_manifest()
        try:
            with open(self.manifest_file, 'r') as f:
                return LocalManifest.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            log_message(f"Failed to load local manifest {self.manifest_file}: {e}", "ERROR")
            raise StateManagerError(f"Local manifest unreadable: {e}") from e

    def save_manifest(self, manifest: LocalManifest) -> None:
        write_json_atomic(self.manifest_file, manifest.to_dict())
        debug_log(f"Saved manifest with {len(manifest.files)} files")

    def record_installed(self, installed: Dict[str, ManifestEntry]) -> None:
        """Merge freshly installed files into the manifest, preserving metadata."""
        if not installed:
            return
        manifest = self.load_manifest()
        manifest.files.update(installed)
        self.save_manifest(manifest)
        log_message(f"Local manifest updated with {len(installed)} files")

    def update_metadata(self, **values) -> None:
        manifest = self.load_manifest()
        manifest.metadata.update({k: v for k, v in values.items() if v is not None})
        self.save_manifest(manifest)

    def load_cached_catalog(self) -> Optional[bytes]:
        try:
            with open(self.catalog_cache_file, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            log_message(f"Could not read cached catalog: {e}", "WARNING")
            return None

    def save_cached_catalog(self, payload: bytes) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.catalog_cache_file.with_suffix(".json.tmp")
        with open(tmp, "wb") as f:
            f.write(payload)
        os.replace(tmp, self.catalog_cache_file)

    def read_lock(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.lock_file, "r") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}

    def _try_create_lock(self) -> bool:
        try:
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            json.dump({"pid": os.getpid(), "host": socket.gethostname(), "timestamp": int(time.time())}, f)
        return True

    def acquire_lock(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        if self._try_create_lock():
            return
        holder = self.read_lock() or {}
        pid = int(holder.get("pid", 0) or 0)
        same_host = holder.get("host") in (None, socket.gethostname())
        if same_host and not _pid_alive(pid):
            log_message(f"Breaking stale session lock held by dead process {pid}", "WARNING")
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass
            if self._try_create_lock():
                return
        raise SessionLockedError(
            f"Another update session is running on {self.root} (pid {pid or 'unknown'}); "
            f"remove {self.lock_file} if it is stale"
        )

    def release_lock(self) -> None:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log_message(f"Failed to release session lock: {e}", "ERROR")

    @contextmanager
    def session_lock(self):
        """Hold the install-root lock for the duration of the block."""
        self.acquire_lock()
        try:
            yield self
        finally:
            self.release_lock()
