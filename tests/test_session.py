from __future__ import annotations

import pytest

from fileupdater.errors import Canceled, NetworkError, PendingRestartRequired, SelfUpdateHandoffError, UnresolvedConflictsError
from fileupdater.utils.collection import Decision
from fileupdater.utils.config import UpdaterConfig
from fileupdater.utils.downloader import CancellationToken, ProgressSink
from fileupdater.utils.installer import InUseProbe, has_pending_update
from fileupdater.utils.self_update import RESTART_ENV
from fileupdater.utils.session import UpdateSession


class RecordingSink(ProgressSink):
    def __init__(self) -> None:
        self.warnings = []
        self.outcomes = []

    def warn(self, message) -> None:
        self.warnings.append(message)

    def finished(self, outcome, message="") -> None:
        self.outcomes.append((outcome, message))


class FailingSource:
    def fetch_catalog(self):
        raise NetworkError("unreachable")

    def fetch_catalog_checksum(self):
        return None

    def open_file(self, path):
        raise NetworkError("unreachable")

    def describe(self):
        return "failing"


def _release(mirror, root):
    mirror.publish("lib.py", b"lib v2", "2.0", previous=[("1.0", b"lib v1")])
    mirror.publish("core.py", b"core v2", "2.0", dependencies=[("lib.py", "2.0")], previous=[("1.0", b"core v1")])
    root.put("lib.py", b"lib v1", "1.0")
    root.put("core.py", b"core v1", "1.0")


def test_session_installs_and_persists_manifest(mirror, root) -> None:
    _release(mirror, root)
    sink = RecordingSink()

    result = UpdateSession(root.path, mirror.source(), sink=sink).run()

    assert result.exit_code == 0
    assert result.plan.paths() == ["lib.py", "core.py"]
    assert root.read("core.py") == b"core v2"
    assert root.manifest_files()["lib.py"].version == "2.0"
    assert sink.outcomes == [("success", "")]
    assert not root.state.lock_file.exists()


def test_second_run_is_up_to_date(mirror, root) -> None:
    _release(mirror, root)
    UpdateSession(root.path, mirror.source()).run()

    result = UpdateSession(root.path, mirror.source()).run()

    assert result.outcome == "up-to-date"
    assert result.exit_code == 0


def test_dry_run_changes_nothing(mirror, root) -> None:
    _release(mirror, root)

    result = UpdateSession(root.path, mirror.source()).run(dry_run=True)

    assert result.outcome == "dry-run"
    assert result.fetch is None
    assert root.read("core.py") == b"core v1"
    assert root.manifest_files()["core.py"].version == "1.0"


def test_unresolved_conflict_aborts_without_touching_the_manifest(mirror, root) -> None:
    _release(mirror, root)
    root.put("lib.py", b"patched by hand")
    before = root.state.manifest_file.read_bytes()
    sink = RecordingSink()

    with pytest.raises(UnresolvedConflictsError):
        UpdateSession(root.path, mirror.source(), sink=sink).run()

    assert root.state.manifest_file.read_bytes() == before
    assert sink.outcomes[-1][0] == "error"
    assert not root.state.lock_file.exists()


def test_conflict_prompt_decides(mirror, root) -> None:
    _release(mirror, root)
    root.put("lib.py", b"patched by hand")
    asked = []

    def keep_local(conflicts):
        asked.extend(c.path for c in conflicts)
        return {c.path: Decision.KEEP_LOCAL for c in conflicts}

    result = UpdateSession(root.path, mirror.source(), resolve_conflicts=keep_local).run()

    assert asked == ["lib.py"]
    assert root.read("lib.py") == b"patched by hand"
    assert result.plan.paths() == ["core.py"]
    assert root.read("core.py") == b"core v2"


def test_unreachable_source_without_cache_is_a_network_error(root) -> None:
    root.put("a.py", b"a", "1.0")
    sink = RecordingSink()

    with pytest.raises(NetworkError):
        UpdateSession(root.path, FailingSource(), sink=sink).run()

    assert sink.warnings
    assert sink.outcomes[-1][0] == "error"
    assert root.manifest_files()["a.py"].version == "1.0"
    assert not root.state.lock_file.exists()


def test_locally_modified_files_are_reported(mirror, root) -> None:
    mirror.publish("notes.txt", b"notes", "1.0")
    root.put("notes.txt", b"notes", "1.0")
    root.put("notes.txt", b"my notes")
    sink = RecordingSink()

    UpdateSession(root.path, mirror.source(), sink=sink).run(requested=[])

    assert "There are locally modified files" in sink.warnings


def test_canceled_session_notifies_and_releases_lock(mirror, root) -> None:
    _release(mirror, root)
    token = CancellationToken()
    token.cancel()
    sink = RecordingSink()

    with pytest.raises(Canceled):
        UpdateSession(root.path, mirror.source(), sink=sink, token=token).run()

    assert sink.outcomes[-1][0] == "canceled"
    assert not root.state.lock_file.exists()


def _self_update_release(mirror, root):
    mirror.publish("updater/app.pyz", b"updater v2", "2.0", previous=[("1.0", b"updater v1")])
    mirror.publish("data.txt", b"data v2", "2.0", previous=[("1.0", b"data v1")])
    root.put("updater/app.pyz", b"updater v1", "1.0")
    root.put("data.txt", b"data v1", "1.0")
    return UpdaterConfig(updater_component="updater/app.pyz")


def test_updater_is_updated_first_and_handed_off(mirror, root) -> None:
    config = _self_update_release(mirror, root)
    launches = []

    def launcher(executable, argv, env):
        launches.append((argv, env))

    result = UpdateSession(root.path, mirror.source(), config=config, launcher=launcher,
                           argv=["apply", "--yes"], environ={}).run()

    assert result.handed_off
    assert result.exit_code == 3
    assert root.read("data.txt") == b"data v1"
    assert has_pending_update(root.path)
    argv, env = launches[0]
    assert argv[1:] == ["-m", "fileupdater", "apply", "--yes"]
    assert env[RESTART_ENV] == "1"
    assert str(root.path / "update" / "updater" / "app.pyz") in env["PYTHONPATH"]


def test_restarted_instance_finalizes_then_continues(mirror, root) -> None:
    config = _self_update_release(mirror, root)
    UpdateSession(root.path, mirror.source(), config=config, launcher=lambda *a: None,
                  argv=[], environ={}).run()

    result = UpdateSession(root.path, mirror.source(), config=config,
                           environ={RESTART_ENV: "1"}).run()

    assert result.finalized == ["updater/app.pyz"]
    assert root.read("updater/app.pyz") == b"updater v2"
    assert root.read("data.txt") == b"data v2"
    assert result.exit_code == 0


def test_pending_update_must_be_confirmed(mirror, root) -> None:
    mirror.publish("app.bin", b"new", "2.0", previous=[("1.0", b"old")])
    root.put("app.bin", b"old", "1.0")
    UpdateSession(root.path, mirror.source(), probe=InUseProbe([root.path / "app.bin"]), environ={}).run()
    assert has_pending_update(root.path)

    with pytest.raises(PendingRestartRequired):
        UpdateSession(root.path, mirror.source(), environ={}).run()

    result = UpdateSession(root.path, mirror.source(), confirm_finalize=lambda: True, environ={}).run()
    assert result.finalized == ["app.bin"]
    assert root.read("app.bin") == b"new"


def test_relaunched_updater_can_take_the_session_lock(mirror, root) -> None:
    config = _self_update_release(mirror, root)
    relaunched = []

    def exec_in_place(executable, argv, env):
        # Same process, as after execve
        relaunched.append(UpdateSession(root.path, mirror.source(), config=config, environ=env).run())

    UpdateSession(root.path, mirror.source(), config=config, launcher=exec_in_place,
                  argv=["apply", "--yes"], environ={}).run()

    assert relaunched[0].finalized == ["updater/app.pyz"]
    assert relaunched[0].exit_code == 0
    assert root.read("updater/app.pyz") == b"updater v2"
    assert root.read("data.txt") == b"data v2"
    assert not root.state.lock_file.exists()


def test_failed_relaunch_leaves_the_root_unlocked_and_pending(mirror, root) -> None:
    config = _self_update_release(mirror, root)
    locked_during_launch = []

    def broken_launcher(executable, argv, env):
        locked_during_launch.append(root.state.lock_file.exists())
        raise OSError("exec format error")

    with pytest.raises(SelfUpdateHandoffError):
        UpdateSession(root.path, mirror.source(), config=config,
                      launcher=broken_launcher, environ={}).run()

    assert locked_during_launch == [False]
    assert not root.state.lock_file.exists()
    assert has_pending_update(root.path)
