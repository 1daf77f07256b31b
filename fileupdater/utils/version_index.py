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
Version index: remote catalog parsing and the merge with local state.

The remote catalog is tolerated rather than trusted blindly: a bad entry is
skipped with a warning, a bad catalog is ignored with a warning, and an
unreachable source falls back to the last cached catalog.
"""

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..errors import NetworkError, ParseError
from .collection import Dependency, FileCollection, FileRecord
from .index import compute_file_sha256, debug_log, is_valid_version, log_message, normalize_relative_path
from .sources import IndexSource
from .state_manager import STATE_DIR_NAME, LocalManifest, StateManager, StateManagerError


@dataclass
class RemoteEntry:
    version: str
    checksum: str
    size: int
    dependencies: List[Dependency] = field(default_factory=list)
    previous: Dict[str, str] = field(default_factory=dict)
    executable: bool = False
    obsolete: bool = False


@dataclass
class Catalog:
    metadata: Dict[str, Any] = field(default_factory=dict)
    entries: Dict[str, RemoteEntry] = field(default_factory=dict)


def _parse_checksum(value: Any, path: str) -> str:
    text = str(value or "").strip().lower()
    if len(text) != 64 or any(c not in "0123456789abcdef" for c in text):
        raise ParseError(f"invalid checksum '{value}'", path)
    return text


def _parse_version(value: Any, path: str) -> str:
    text = str(value or "").strip()
    if not text or not is_valid_version(text):
        raise ParseError(f"invalid version '{value}'", path)
    return text


def parse_entry(raw_path: str, data: Any) -> Tuple[str, RemoteEntry]:
    """
    Parse one catalog entry.

    Raises:
        ParseError: if the entry is malformed
    """
    try:
        path = normalize_relative_path(raw_path)
    except ValueError as e:
        raise ParseError(str(e), raw_path) from e
    if path == STATE_DIR_NAME or path.startswith(STATE_DIR_NAME + "/") or path.split("/")[0] == "update":
        raise ParseError("path collides with updater state", path)
    if not isinstance(data, dict):
        raise ParseError("entry is not an object", path)

    version = _parse_version(data.get("version"), path)
    checksum = _parse_checksum(data.get("checksum"), path)
    try:
        size = int(data.get("size", -1))
    except (TypeError, ValueError) as e:
        raise ParseError(f"invalid size '{data.get('size')}'", path) from e
    if size < 0:
        raise ParseError("missing or negative size", path)

    dependencies = []
    seen_deps = set()
    for dep in data.get("dependencies") or []:
        if not isinstance(dep, dict):
            raise ParseError("dependency is not an object", path)
        try:
            dep_path = normalize_relative_path(dep.get("path"))
        except ValueError as e:
            raise ParseError(f"bad dependency path: {e}", path) from e
        if dep_path in seen_deps:
            raise ParseError(f"duplicate dependency on {dep_path}", path)
        seen_deps.add(dep_path)
        dependencies.append(Dependency(dep_path, _parse_version(dep.get("min_version"), path)))

    previous: Dict[str, str] = {}
    for old in data.get("previous") or []:
        if not isinstance(old, dict):
            raise ParseError("previous version is not an object", path)
        old_checksum = _parse_checksum(old.get("checksum"), path)
        old_version = _parse_version(old.get("version"), path)
        known = previous.get(old_checksum)
        if (known is not None and known != old_version) or (old_checksum == checksum and old_version != version):
            raise ParseError(f"checksum {old_checksum[:12]} maps to more than one version", path)
        if old_checksum != checksum:
            previous[old_checksum] = old_version

    return path, RemoteEntry(
        version=version,
        checksum=checksum,
        size=size,
        dependencies=dependencies,
        previous=previous,
        executable=bool(data.get("executable", False)),
        obsolete=bool(data.get("obsolete", False)),
    )


def parse_catalog(payload: bytes, expected_checksum: Optional[str] = None) -> Tuple[Catalog, List[str]]:
    """
    Parse catalog bytes.

    Args:
        payload: raw index.json bytes
        expected_checksum: sha256 of the catalog as published, if known

    Returns:
        (Catalog, warnings): malformed entries are skipped and reported

    Raises:
        ParseError: if the catalog as a whole is unusable
    """
    if expected_checksum:
        actual = hashlib.sha256(payload).hexdigest()
        if actual != expected_checksum.strip().lower():
            raise ParseError(f"catalog checksum mismatch (expected {expected_checksum[:12]}, got {actual[:12]})")
    try:
        data = json.loads(payload.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ParseError(f"catalog is not valid JSON: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("files", {}), dict):
        raise ParseError("catalog must be an object with a 'files' mapping")

    catalog = Catalog(metadata=dict(data.get("metadata") or {}))
    warnings = []
    for raw_path, raw_entry in data.get("files", {}).items():
        try:
            path, entry = parse_entry(raw_path, raw_entry)
        except ParseError as e:
            warnings.append(f"Skipping catalog entry {e.path or raw_path}: {e}")
            continue
        if path in catalog.entries:
            warnings.append(f"Skipping duplicate catalog entry {path}")
            continue
        catalog.entries[path] = entry
    return catalog, warnings


class VersionIndex:
    """Builds the in-memory FileCollection for an install root."""

    def __init__(self, root, source: IndexSource, state: Optional[StateManager] = None):
        self.root = Path(root)
        self.source = source
        self.state = state or StateManager(self.root)
        self.catalog: Optional[Catalog] = None

    def fetch_remote(self) -> Tuple[Optional[Catalog], List[str]]:
        """Fetch and parse the remote catalog, falling back to the cache."""
        warnings: List[str] = []
        try:
            payload = self.source.fetch_catalog()
            try:
                checksum = self.source.fetch_catalog_checksum()
            except NetworkError as e:
                checksum = None
                warnings.append(f"Could not fetch catalog checksum: {e}")
            if checksum is None:
                warnings.append("Catalog checksum not published; catalog integrity not verified")
            catalog, entry_warnings = parse_catalog(payload, checksum)
            warnings.extend(entry_warnings)
            self.state.save_cached_catalog(payload)
            return catalog, warnings
        except NetworkError as e:
            warnings.append(f"Could not reach update source {self.source.describe()}: {e}")
        except ParseError as e:
            warnings.append(f"Ignoring remote catalog: {e}")

        cached = self.state.load_cached_catalog()
        if cached is None:
            return None, warnings
        try:
            catalog, entry_warnings = parse_catalog(cached)
        except ParseError as e:
            warnings.append(f"Cached catalog is unusable too: {e}")
            return None, warnings
        warnings.append("Using cached catalog from the last successful sync")
        warnings.extend(entry_warnings)
        return catalog, warnings

    def sync(self) -> Tuple[FileCollection, List[str]]:
        """
        Merge the remote catalog with the local manifest and disk contents.

        Returns:
            (FileCollection, warnings): never raises for network or parse trouble
        """
        warnings: List[str] = []
        try:
            manifest = self.state.load_manifest()
        except StateManagerError as e:
            warnings.append(f"Local manifest ignored: {e}")
            manifest = LocalManifest()

        catalog, remote_warnings = self.fetch_remote()
        warnings.extend(remote_warnings)
        self.catalog = catalog

        collection = self.build_collection(manifest, catalog)
        for warning in warnings:
            log_message(warning, "WARNING")
        return collection, warnings

    def build_collection(self, manifest: LocalManifest, catalog: Optional[Catalog]) -> FileCollection:
        collection = FileCollection(self.root)
        collection.remote_available = catalog is not None
        entries = catalog.entries if catalog is not None else {}
        for path in sorted(set(manifest.files) | set(entries)):
            remote = entries.get(path)
            synced = manifest.files.get(path)
            local_checksum = compute_file_sha256(collection.prefix(path))

            if remote is None and catalog is None:
                # Offline without a cache: the last synced state is the best remote view.
                if synced is None or local_checksum is None:
                    continue
                collection.add(FileRecord(
                    path=path,
                    local_checksum=local_checksum,
                    synced_version=synced.version,
                    synced_checksum=synced.checksum,
                    remote_version=synced.version,
                    remote_checksum=synced.checksum,
                ))
                continue

            if local_checksum is None and (remote is None or remote.obsolete):
                continue

            record = FileRecord(path=path, local_checksum=local_checksum)
            if synced is not None:
                record.synced_version = synced.version
                record.synced_checksum = synced.checksum
            if remote is not None:
                record.remote_version = remote.version
                record.remote_checksum = remote.checksum
                record.remote_size = remote.size
                record.dependencies = list(remote.dependencies)
                record.previous = dict(remote.previous)
                record.executable = remote.executable
                record.obsolete = remote.obsolete
            collection.add(record)
            debug_log(f"{path}: {record.status.value} (local {record.local_version}, remote {record.remote_version})")
        return collection
