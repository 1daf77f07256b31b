from __future__ import annotations

import pytest

from fileupdater.errors import UnresolvedConflictsError
from fileupdater.utils.collection import Decision
from fileupdater.utils.conflicts import ConflictDetector, ConflictKind, apply_decisions
from fileupdater.utils.downloader import Downloader
from fileupdater.utils.installer import Installer
from fileupdater.utils.resolver import DependencyResolver
from fileupdater.utils.version_index import VersionIndex


def _edited_lib(mirror, root):
    mirror.publish("lib.py", b"lib v2", "2.0", previous=[("1.0", b"lib v1")])
    mirror.publish("app.py", b"app v2", "2.0", dependencies=[("lib.py", "2.0")], previous=[("1.0", b"app v1")])
    root.put("lib.py", b"lib v1", "1.0")
    root.put("app.py", b"app v1", "1.0")
    root.put("lib.py", b"lib v1 with a local patch")
    collection, _ = VersionIndex(root.path, mirror.source()).sync()
    return collection


def test_locally_modified_and_remotely_changed_file_is_one_conflict(mirror, root) -> None:
    collection = _edited_lib(mirror, root)
    plan = DependencyResolver().resolve(["lib.py"], collection)

    conflicts = ConflictDetector().detect(plan)

    assert len(conflicts) == 1
    assert conflicts[0].kind == ConflictKind.LOCAL_MODIFICATION
    assert conflicts[0].path == "lib.py"


def test_install_refuses_unresolved_conflicts(mirror, root) -> None:
    collection = _edited_lib(mirror, root)
    plan = DependencyResolver().resolve(["lib.py"], collection)

    with pytest.raises(UnresolvedConflictsError) as excinfo:
        Installer(root.path).install(plan, {})

    assert excinfo.value.exit_code == 2
    assert [c.path for c in excinfo.value.conflicts] == ["lib.py"]
    assert root.read("lib.py") == b"lib v1 with a local patch"


def test_unmodified_files_never_conflict(mirror, root) -> None:
    mirror.publish("lib.py", b"lib v2", "2.0", previous=[("1.0", b"lib v1")])
    root.put("lib.py", b"lib v1", "1.0")
    collection, _ = VersionIndex(root.path, mirror.source()).sync()
    plan = DependencyResolver().resolve(["lib.py"], collection)
    assert ConflictDetector().detect(plan) == []


def test_keep_local_drops_the_file_from_the_plan(mirror, root) -> None:
    collection = _edited_lib(mirror, root)
    plan = DependencyResolver().resolve(["lib.py"], collection)
    conflicts = ConflictDetector().detect(plan)

    adjusted, unresolved = apply_decisions(plan, conflicts, {"lib.py": Decision.KEEP_LOCAL})

    assert unresolved == []
    assert adjusted.paths() == []
    assert collection["lib.py"].action == Decision.KEEP_LOCAL


def test_skip_drops_the_file_and_its_dependents(mirror, root) -> None:
    collection = _edited_lib(mirror, root)
    plan = DependencyResolver().resolve(["app.py"], collection)
    assert plan.paths() == ["lib.py", "app.py"]
    conflicts = ConflictDetector().detect(plan)

    adjusted, unresolved = apply_decisions(plan, conflicts, {"lib.py": "skip"})

    assert unresolved == []
    assert adjusted.paths() == []
    assert collection["app.py"].action == Decision.SKIP


def test_take_remote_lets_the_install_through(mirror, root) -> None:
    collection = _edited_lib(mirror, root)
    plan = DependencyResolver().resolve(["lib.py"], collection)
    conflicts = ConflictDetector().detect(plan)
    adjusted, unresolved = apply_decisions(plan, conflicts, {"lib.py": Decision.TAKE_REMOTE})
    assert unresolved == []

    report = Downloader(root.path, mirror.source()).fetch(adjusted)
    result = Installer(root.path).install(adjusted, report.staged)

    assert list(result.installed) == ["lib.py"]
    assert root.read("lib.py") == b"lib v2"


def test_version_mismatch_names_the_demanding_dependents(mirror, root) -> None:
    mirror.publish("lib.py", b"lib v2", "2.0")
    mirror.publish("a.py", b"a", "1.0", dependencies=[("lib.py", "1.0")])
    mirror.publish("b.py", b"b", "1.0", dependencies=[("lib.py", "3.0")])
    collection, _ = VersionIndex(root.path, mirror.source()).sync()
    plan = DependencyResolver().resolve(["a.py", "b.py"], collection)

    conflicts = ConflictDetector().detect(plan)

    assert len(conflicts) == 1
    assert conflicts[0].kind == ConflictKind.VERSION_MISMATCH
    assert conflicts[0].paths == ("lib.py", "b.py")


def test_missing_dependency_is_dropped_once_decided(mirror, root) -> None:
    mirror.publish("app.py", b"app", "1.0", dependencies=[("missing.py", "1.0")])
    mirror.publish("other.py", b"other", "1.0")
    collection, _ = VersionIndex(root.path, mirror.source()).sync()
    plan = DependencyResolver().resolve(["app.py", "other.py"], collection)
    conflicts = ConflictDetector().detect(plan)
    assert [c.kind for c in conflicts] == [ConflictKind.MISSING_DEPENDENCY]

    adjusted, unresolved = apply_decisions(plan, conflicts, {"missing.py": Decision.SKIP})

    assert unresolved == []
    assert adjusted.paths() == ["other.py"]
