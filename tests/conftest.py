from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path

import pytest

from fileupdater.utils.index import set_debug
from fileupdater.utils.sources import CATALOG_CHECKSUM_NAME, CATALOG_NAME, DirectoryIndexSource
from fileupdater.utils.state_manager import ManifestEntry, StateManager


def sha(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class Mirror:
    """A local update source laid out the way a published mirror is."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self.files: dict = {}
        self.metadata: dict = {"channel": "stable"}

    def publish(self, path, content: bytes, version: str, dependencies=(), previous=(),
                executable: bool = False, obsolete: bool = False) -> None:
        target = self.directory.joinpath(*path.split("/"))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        entry = {
            "version": version,
            "checksum": sha(content),
            "size": len(content),
            "dependencies": [{"path": dep, "min_version": minimum} for dep, minimum in dependencies],
            "previous": [{"version": old_version, "checksum": sha(old_content)} for old_version, old_content in previous],
        }
        if executable:
            entry["executable"] = True
        if obsolete:
            entry["obsolete"] = True
        self.files[path] = entry
        self.write()

    def write(self, with_checksum: bool = True) -> bytes:
        payload = json.dumps({"metadata": self.metadata, "files": self.files}, indent=2).encode("utf-8")
        (self.directory / CATALOG_NAME).write_bytes(payload)
        checksum_file = self.directory / CATALOG_CHECKSUM_NAME
        if with_checksum:
            checksum_file.write_text(sha(payload) + "\n")
        elif checksum_file.exists():
            checksum_file.unlink()
        return payload

    def corrupt(self, path: str, content: bytes) -> None:
        """Replace served bytes without touching the catalog."""
        self.directory.joinpath(*path.split("/")).write_bytes(content)

    def source(self) -> DirectoryIndexSource:
        return DirectoryIndexSource(self.directory)


class InstallRoot:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.mkdir(parents=True, exist_ok=True)
        self.state = StateManager(path)

    def put(self, path: str, content: bytes, version: str = None) -> Path:
        """Write a local file; with a version it is also recorded as synced."""
        target = self.path.joinpath(*path.split("/"))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        if version is not None:
            self.state.record_installed({path: ManifestEntry(version, sha(content))})
        return target

    def read(self, path: str) -> bytes:
        return self.path.joinpath(*path.split("/")).read_bytes()

    def manifest_files(self) -> dict:
        return self.state.load_manifest().files


@pytest.fixture
def mirror(tmp_path) -> Mirror:
    return Mirror(tmp_path / "mirror")


@pytest.fixture
def root(tmp_path) -> InstallRoot:
    return InstallRoot(tmp_path / "root")


@pytest.fixture(autouse=True)
def _quiet_logging():
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    set_debug(False)
    yield
    set_debug(False)
    for handler in list(root_logger.handlers):
        if handler not in handlers:
            root_logger.removeHandler(handler)
    root_logger.setLevel(level)
