from __future__ import annotations

import json
import socket

import pytest

from fileupdater.errors import SessionLockedError
from fileupdater.utils.state_manager import ManifestEntry, StateManager, StateManagerError


def test_missing_manifest_yields_default_structure(tmp_path) -> None:
    manifest = StateManager(tmp_path).load_manifest()
    assert manifest.files == {}
    assert manifest.metadata["channel"] == "stable"


def test_record_installed_preserves_metadata(tmp_path) -> None:
    state = StateManager(tmp_path)
    state.update_metadata(source_url="https://mirror.example/files", channel="beta")
    state.record_installed({"a.py": ManifestEntry("1.0", "a" * 64)})

    data = json.loads(state.manifest_file.read_text())
    assert data["metadata"]["source_url"] == "https://mirror.example/files"
    assert data["metadata"]["channel"] == "beta"
    assert data["files"]["a.py"] == {"version": "1.0", "checksum": "a" * 64}


def test_corrupt_manifest_raises(tmp_path) -> None:
    state = StateManager(tmp_path)
    state.state_dir.mkdir()
    state.manifest_file.write_text("{broken")
    with pytest.raises(StateManagerError):
        state.load_manifest()


def test_second_session_is_refused_while_lock_is_held(tmp_path) -> None:
    first = StateManager(tmp_path)
    second = StateManager(tmp_path)
    with first.session_lock():
        with pytest.raises(SessionLockedError):
            second.acquire_lock()
    assert not first.lock_file.exists()


def test_lock_is_released_when_the_block_fails(tmp_path) -> None:
    state = StateManager(tmp_path)
    with pytest.raises(RuntimeError):
        with state.session_lock():
            raise RuntimeError("boom")
    assert state.read_lock() is None


def test_stale_lock_from_dead_process_is_broken(tmp_path, monkeypatch) -> None:
    state = StateManager(tmp_path)
    state.state_dir.mkdir()
    state.lock_file.write_text(json.dumps({"pid": 999999, "host": socket.gethostname()}))
    monkeypatch.setattr("fileupdater.utils.state_manager._pid_alive", lambda pid: False)

    state.acquire_lock()

    assert state.read_lock()["pid"] != 999999
    state.release_lock()
