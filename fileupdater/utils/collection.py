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
File metadata model shared by every update phase.

A FileRecord joins three views of one install path: the bytes on disk, the
last-synced manifest entry and the remote catalog entry. Its status is always
computed from those views and never stored.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

from .index import compare_versions


class FileStatus(str, Enum):
    CURRENT = "current"
    UPDATE_AVAILABLE = "update-available"
    NEW = "new"
    LOCALLY_MODIFIED = "locally-modified"
    OBSOLETE = "obsolete"


class Decision(str, Enum):
    """External adjudication of a conflict."""
    KEEP_LOCAL = "keep-local"
    TAKE_REMOTE = "take-remote"
    SKIP = "skip"


@dataclass(frozen=True)
class Dependency:
    path: str
    min_version: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "min_version": self.min_version}


@dataclass(frozen=True)
class DependencyEdge:
    from_path: str
    to_path: str
    min_version: str


@dataclass
class FileRecord:
    """Everything known about one install path."""
    path: str
    local_checksum: Optional[str] = None
    synced_version: Optional[str] = None
    synced_checksum: Optional[str] = None
    remote_version: Optional[str] = None
    remote_checksum: Optional[str] = None
    remote_size: int = 0
    dependencies: List[Dependency] = field(default_factory=list)
    previous: Dict[str, str] = field(default_factory=dict)
    executable: bool = False
    obsolete: bool = False
    action: Optional[Decision] = None

    @property
    def has_remote(self) -> bool:
        return self.remote_checksum is not None

    @property
    def local_version(self) -> Optional[str]:
        if self.local_checksum is None:
            return None
        if self.local_checksum == self.remote_checksum:
            return self.remote_version
        if self.local_checksum in self.previous:
            return self.previous[self.local_checksum]
        if self.local_checksum == self.synced_checksum:
            return self.synced_version
        return None

    @property
    def is_locally_modified(self) -> bool:
        if self.local_checksum is None or self.local_checksum == self.remote_checksum:
            return False
        if self.synced_checksum is not None:
            return self.local_checksum != self.synced_checksum
        return self.local_checksum not in self.previous

    @property
    def remote_changed(self) -> bool:
        if not self.has_remote:
            return False
        return self.synced_checksum is None or self.remote_checksum != self.synced_checksum

    @property
    def status(self) -> FileStatus:
        if self.local_checksum is None:
            return FileStatus.NEW
        if not self.has_remote or self.obsolete:
            return FileStatus.OBSOLETE
        if self.local_checksum == self.remote_checksum:
            return FileStatus.CURRENT
        if self.is_locally_modified:
            return FileStatus.LOCALLY_MODIFIED
        return FileStatus.UPDATE_AVAILABLE

    def satisfies(self, min_version: str) -> bool:
        """True when the installed version meets min_version."""
        local = self.local_version
        if local is None:
            return False
        return compare_versions(local, min_version) >= 0


class FileCollection:
    """Mapping of install path to FileRecord; paths are unique."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.remote_available = True
        self._records: Dict[str, FileRecord] = {}

    def add(self, record: FileRecord) -> None:
        if record.path in self._records:
            raise ValueError(f"duplicate path in collection: {record.path}")
        self._records[record.path] = record

    def get(self, path: str) -> Optional[FileRecord]:
        return self._records.get(path)

    def remove(self, path: str) -> None:
        self._records.pop(path, None)

    def __getitem__(self, path: str) -> FileRecord:
        return self._records[path]

    def __contains__(self, path: object) -> bool:
        return path in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[FileRecord]:
        for path in self.paths():
            yield self._records[path]

    def paths(self) -> List[str]:
        return sorted(self._records)

    def prefix(self, path: str) -> Path:
        """Absolute location of an install path."""
        return self.root.joinpath(*path.split("/"))

    def edges_from(self, path: str) -> List[DependencyEdge]:
        """Outgoing dependency edges of a path, sorted by target."""
        record = self._records.get(path)
        if record is None:
            return []
        return [DependencyEdge(path, dep.path, dep.min_version)
                for dep in sorted(record.dependencies, key=lambda d: d.path)]

    def by_status(self, *statuses: FileStatus) -> List[FileRecord]:
        return [record for record in self if record.status in statuses]

    def updateable(self) -> List[str]:
        """Default request set: stale, new, and modified-but-remotely-changed files."""
        selected = []
        for record in self:
            status = record.status
            if status in (FileStatus.UPDATE_AVAILABLE, FileStatus.NEW):
                selected.append(record.path)
            elif status == FileStatus.LOCALLY_MODIFIED and record.remote_changed:
                selected.append(record.path)
        return selected

    def has_changes(self) -> bool:
        return bool(self.updateable())

    def has_locally_modified(self) -> bool:
        return bool(self.by_status(FileStatus.LOCALLY_MODIFIED))

    def dependency_closure(self, path: str) -> List[str]:
        """The path and everything it transitively depends on, sorted."""
        seen: Set[str] = set()
        queue = deque([path])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            record = self._records.get(current)
            if record is None:
                continue
            for dep in sorted(record.dependencies, key=lambda d: d.path):
                if dep.path not in seen:
                    queue.append(dep.path)
        return sorted(seen)


@dataclass
class PlanEntry:
    path: str
    target_version: Optional[str]
    required_version: Optional[str]
    constraints: List[Tuple[str, str]] = field(default_factory=list)
    batch: int = 0
    requested: bool = False
    available: bool = True

    @property
    def soft_conflict(self) -> bool:
        if not self.available:
            return True
        if self.required_version is None or self.target_version is None:
            return False
        return compare_versions(self.required_version, self.target_version) > 0


@dataclass
class InstallPlan:
    """Topologically ordered, dependency-closed set of files to update."""
    entries: List[PlanEntry]
    batches: List[List[str]]
    collection: FileCollection
    decisions: Dict[str, Decision] = field(default_factory=dict)

    def __iter__(self) -> Iterator[PlanEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, path: object) -> bool:
        return any(entry.path == path for entry in self.entries)

    def paths(self) -> List[str]:
        return [entry.path for entry in self.entries]

    def entry(self, path: str) -> Optional[PlanEntry]:
        for entry in self.entries:
            if entry.path == path:
                return entry
        return None

    def dependencies_in_plan(self, path: str) -> List[str]:
        record = self.collection.get(path)
        if record is None:
            return []
        planned = set(self.paths())
        return sorted({dep.path for dep in record.dependencies if dep.path in planned and dep.path != path})

    def dependents_closure(self, path: str) -> Set[str]:
        """Every plan entry that transitively depends on path."""
        planned = self.paths()
        reverse: Dict[str, Set[str]] = {p: set() for p in planned}
        for p in planned:
            for dep in self.dependencies_in_plan(p):
                reverse[dep].add(p)
        found: Set[str] = set()
        queue = deque([path])
        while queue:
            current = queue.popleft()
            for dependent in sorted(reverse.get(current, ())):
                if dependent not in found and dependent != path:
                    found.add(dependent)
                    queue.append(dependent)
        return found

    def without(self, paths) -> "InstallPlan":
        drop = set(paths)
        batches = []
        for batch in self.batches:
            kept = [p for p in batch if p not in drop]
            if kept:
                batches.append(kept)
        batch_of = {p: i for i, batch in enumerate(batches) for p in batch}
        entries = []
        for entry in self.entries:
            if entry.path in drop:
                continue
            entries.append(PlanEntry(
                path=entry.path,
                target_version=entry.target_version,
                required_version=entry.required_version,
                constraints=list(entry.constraints),
                batch=batch_of[entry.path],
                requested=entry.requested,
                available=entry.available,
            ))
        return InstallPlan(entries, batches, self.collection, dict(self.decisions))

    def total_bytes(self) -> int:
        total = 0
        for entry in self.entries:
            record = self.collection.get(entry.path)
            if record is not None:
                total += record.remote_size
        return total


@dataclass(frozen=True)
class StagingEntry:
    """Verified bytes waiting in the staging area."""
    path: str
    staged_path: Path
    checksum: str
    size: int
    version: Optional[str] = None
