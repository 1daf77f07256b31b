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
Installer: promotes verified staging entries into the install root.

Per file the state machine is

    current -> staged -> installed | pending-deferred -> current (next version)

and ``pending-deferred -> installed`` only happens in finalize_pending(), which
the host runs at its next controlled startup. A file whose destination is in
use is parked under ``<root>/update/`` and listed in the pending marker
``<root>/update/.pending.json``.

There is no whole-plan rollback. Files already installed stay installed when
a later file fails; a retry picks up from the remaining ones.
"""

import json
import os
import stat
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from ..errors import Canceled, IntegrityError, PendingRestartRequired, UnresolvedConflictsError, UpdaterError
from .collection import FileRecord, InstallPlan, StagingEntry
from .conflicts import ConflictDetector
from .downloader import CancellationToken
from .index import compute_file_sha256, debug_log, log_message, prune_empty_dirs
from .state_manager import ManifestEntry, StateManager, write_json_atomic

PENDING_DIR_NAME = "update"
PENDING_MARKER_NAME = ".pending.json"


class InUseProbe:
    """
    Capability check: can this destination be replaced right now?

    The base implementation only knows the files declared as belonging to the
    running process (the updater's own code).
    """

    def __init__(self, protected: Iterable = ()):
        self.protected: Set[str] = set()
        for path in protected:
            self.protect(path)

    def protect(self, path) -> None:
        self.protected.add(os.path.normcase(str(Path(path).resolve())))

    def in_use(self, path: Path) -> bool:
        return os.path.normcase(str(Path(path).resolve())) in self.protected


class PosixInUseProbe(InUseProbe):
    """Renaming over an open file is allowed; only declared files count as in use."""


class WindowsInUseProbe(InUseProbe):
    """Executing or mapped files refuse to be opened for writing."""

    def in_use(self, path: Path) -> bool:
        if super().in_use(path):
            return True
        if not Path(path).exists():
            return False
        try:
            fd = os.open(str(path), os.O_RDWR | os.O_APPEND)
        except PermissionError:
            return True
        except OSError:
            return False
        os.close(fd)
        return False


def default_probe(protected: Iterable = ()) -> InUseProbe:
    if os.name == "nt":
        return WindowsInUseProbe(protected)
    return PosixInUseProbe(protected)


@dataclass
class PendingItem:
    version: str
    checksum: str
    executable: bool = False


class PendingMarker:
    """The sentinel listing deferred installs for an install root."""

    def __init__(self, root):
        self.root = Path(root)
        self.directory = self.root / PENDING_DIR_NAME
        self.file = self.directory / PENDING_MARKER_NAME

    def exists(self) -> bool:
        return self.file.exists()

    def pending_path(self, path: str) -> Path:
        return self.directory.joinpath(*path.split("/"))

    def load(self) -> Dict[str, PendingItem]:
        if not self.file.exists():
            return {}
        try:
            with open(self.file, "r") as f:
                data = json.load(f)
            return {path: PendingItem(**item) for path, item in (data.get("files") or {}).items()}
        except (OSError, ValueError, TypeError) as e:
            log_message(f"Pending marker {self.file} is unreadable: {e}", "ERROR")
            raise UpdaterError(f"Pending update marker is corrupt: {e}") from e

    def save(self, items: Dict[str, PendingItem]) -> None:
        if not items:
            self.clear()
            return
        data = {
            "created": int(time.time()),
            "files": {path: vars(item) for path, item in sorted(items.items())},
        }
        write_json_atomic(self.file, data)

    def clear(self) -> None:
        try:
            self.file.unlink()
        except FileNotFoundError:
            pass
        prune_empty_dirs(self.directory, self.root)


def has_pending_update(root) -> bool:
    return PendingMarker(root).exists()


def set_executable(path: Path) -> None:
    current = os.stat(path).st_mode
    os.chmod(path, current | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def move_out_of_the_way(path: Path) -> None:
    """Rename an existing file to <name>.old (or .old2, .old3, ...)."""
    if not path.exists():
        return
    backup = path.with_name(path.name + ".old")
    if backup.exists():
        try:
            backup.unlink()
        except OSError:
            counter = 2
            while True:
                backup = path.with_name(f"{path.name}.old{counter}")
                if not backup.exists():
                    break
                counter += 1
    os.replace(path, backup)


@dataclass
class InstallResult:
    installed: Dict[str, ManifestEntry] = field(default_factory=dict)
    pending: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: Dict[str, UpdaterError] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)

    @property
    def restart_required(self) -> bool:
        return bool(self.pending)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped


class Installer:
    """Moves verified staged files into place."""

    def __init__(self, root, probe: Optional[InUseProbe] = None,
                 token: Optional[CancellationToken] = None, state: Optional[StateManager] = None):
        self.root = Path(root)
        self.probe = probe or default_probe()
        self.token = token or CancellationToken()
        self.state = state or StateManager(self.root)
        self.marker = PendingMarker(self.root)

    def _verify_staged(self, record: FileRecord, staged: StagingEntry) -> None:
        actual = compute_file_sha256(staged.staged_path)
        if actual is None:
            raise IntegrityError(record.path, "staged file is missing")
        if actual != staged.checksum or actual != record.remote_checksum:
            staged.staged_path.unlink()
            raise IntegrityError(record.path, "staged file no longer matches its verified checksum")

    def _place(self, record: FileRecord, staged: StagingEntry, destination: Path) -> None:
        """Atomically rename the staged file over the destination."""
        if self.probe.in_use(destination):
            raise PendingRestartRequired(f"{record.path} is in use by the running process", record.path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(staged.staged_path, destination)
        except PermissionError as e:
            raise PendingRestartRequired(f"{record.path} cannot be replaced now: {e}", record.path) from e
        if record.executable:
            set_executable(destination)

    def _defer(self, record: FileRecord, staged: StagingEntry) -> None:
        pending_file = self.marker.pending_path(record.path)
        pending_file.parent.mkdir(parents=True, exist_ok=True)
        os.replace(staged.staged_path, pending_file)
        items = self.marker.load()
        items[record.path] = PendingItem(staged.version or record.remote_version, staged.checksum, record.executable)
        self.marker.save(items)
        log_message(f"Deferred {record.path} until the next restart")

    def install(self, plan: InstallPlan, staged: Dict[str, StagingEntry]) -> InstallResult:
        """
        Install staged entries in plan order.

        Args:
            plan: adjudicated install plan
            staged: verified staging entries by path

        Returns:
            InstallResult: per-file outcome; pending entries mean a restart is required

        Raises:
            UnresolvedConflictsError: if the plan still has conflicts without a decision
            Canceled: if the token fired between files (``partial`` holds the result so far)
        """
        remaining = [c for c in ConflictDetector().detect(plan) if c.path not in plan.decisions]
        if remaining:
            raise UnresolvedConflictsError(remaining)

        result = InstallResult()
        blocked: Set[str] = set()
        pending_items = self.marker.load()

        for batch in plan.batches:
            for path in batch:
                if self.token.canceled:
                    error = Canceled(f"Install canceled after {len(result.installed)} file(s)")
                    error.partial = result
                    raise error

                entry = plan.entry(path)
                record = plan.collection[path]
                failed_deps = [dep for dep in plan.dependencies_in_plan(path) if dep in blocked]
                if failed_deps:
                    result.skipped[path] = f"dependency not installed: {', '.join(failed_deps)}"
                    blocked.add(path)
                    continue
                if not entry.available:
                    result.skipped[path] = "not available from the update source"
                    blocked.add(path)
                    continue

                destination = plan.collection.prefix(path)
                if compute_file_sha256(destination) == record.remote_checksum:
                    result.unchanged.append(path)
                    continue
                staged_entry = staged.get(path)
                if staged_entry is None:
                    if path in pending_items and pending_items[path].checksum == record.remote_checksum:
                        result.pending.append(path)
                    else:
                        result.failed[path] = IntegrityError(path, "no verified download staged")
                        blocked.add(path)
                    continue

                try:
                    self._verify_staged(record, staged_entry)
                    self._place(record, staged_entry, destination)
                except PendingRestartRequired as e:
                    debug_log(str(e))
                    try:
                        self._defer(record, staged_entry)
                    except OSError as defer_error:
                        log_message(f"Failed to defer {path}: {defer_error}", "ERROR")
                        result.failed[path] = UpdaterError(f"{path}: {defer_error}")
                        blocked.add(path)
                        continue
                    result.pending.append(path)
                    continue
                except IntegrityError as e:
                    log_message(f"Refusing to install {path}: {e}", "ERROR")
                    result.failed[path] = e
                    blocked.add(path)
                    continue
                except OSError as e:
                    log_message(f"Failed to install {path}: {e}", "ERROR")
                    result.failed[path] = UpdaterError(f"{path}: {e}")
                    blocked.add(path)
                    continue

                prune_empty_dirs(staged_entry.staged_path.parent, self.state.staging_dir)
                result.installed[path] = ManifestEntry(record.remote_version, record.remote_checksum)
                log_message(f"Installed {path} ({record.remote_version})")

        log_message(
            f"Install finished: {len(result.installed)} installed, {len(result.pending)} pending restart, "
            f"{len(result.unchanged)} unchanged, {len(result.failed)} failed, {len(result.skipped)} skipped"
        )
        return result


def finalize_pending(root, state: Optional[StateManager] = None) -> List[str]:
    """
    Move deferred files into place. Run this at startup before loading any of them.

    Every pending file is re-verified against the checksum recorded in the
    marker; a mismatch is discarded, never installed. Safe to call when
    nothing is pending, and safe to call again after an interruption.

    Returns:
        List[str]: paths that are now in place
    """
    root = Path(root)
    state = state or StateManager(root)
    marker = PendingMarker(root)
    items = marker.load()
    if not items:
        marker.clear()
        return []

    finalized: Dict[str, ManifestEntry] = {}
    remaining: Dict[str, PendingItem] = {}
    for path, item in sorted(items.items()):
        pending_file = marker.pending_path(path)
        destination = root.joinpath(*path.split("/"))

        if not pending_file.exists():
            if compute_file_sha256(destination) == item.checksum:
                finalized[path] = ManifestEntry(item.version, item.checksum)
            else:
                log_message(f"Pending copy of {path} disappeared; it will be downloaded again", "WARNING")
            continue

        if compute_file_sha256(pending_file) != item.checksum:
            log_message(f"Pending copy of {path} failed verification; discarding it", "ERROR")
            pending_file.unlink()
            prune_empty_dirs(pending_file.parent, root)
            continue

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.replace(pending_file, destination)
            except PermissionError:
                move_out_of_the_way(destination)
                os.replace(pending_file, destination)
            if item.executable:
                set_executable(destination)
        except OSError as e:
            log_message(f"Could not move {path} into place: {e}", "ERROR")
            remaining[path] = item
            continue

        prune_empty_dirs(pending_file.parent, root)
        finalized[path] = ManifestEntry(item.version, item.checksum)
        log_message(f"Finalized deferred update of {path} ({item.version})")

    state.record_installed(finalized)
    marker.save(remaining)
    if remaining:
        raise PendingRestartRequired(f"{len(remaining)} file(s) still could not be moved into place")
    return sorted(finalized)
