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
Update session orchestration.

One session owns an install root for its whole duration:

    pending check -> sync -> (self-update) -> resolve -> conflicts
        -> download/verify -> install -> persist manifest

Collaborators (index source, progress sink, conflict prompt, in-use probe,
process launcher) are injected. Fatal errors propagate to the caller after the
sink has received its terminal notification; the manifest is only ever
extended with files that are confirmed installed.
"""

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from ..errors import Canceled, NetworkError, PendingRestartRequired, SelfUpdateHandoffError, UnresolvedConflictsError
from .collection import Decision, FileCollection, FileStatus, InstallPlan
from .config import UpdaterConfig, save_preferences
from .conflicts import Conflict, ConflictDetector, apply_decisions
from .downloader import CancellationToken, Downloader, FetchReport, LoggingProgressSink, ProgressSink
from .index import debug_log, log_message
from .installer import InUseProbe, InstallResult, Installer, default_probe, finalize_pending, has_pending_update
from .resolver import DependencyResolver
from .self_update import Launcher, SelfUpdateHandoff, is_restarted, is_updater_updateable, update_the_updater, updater_closure
from .sources import IndexSource
from .state_manager import ManifestEntry, StateManager
from .version_index import VersionIndex

ConflictPrompt = Callable[[List[Conflict]], Dict[str, Decision]]


@dataclass
class SessionResult:
    outcome: str = "success"
    collection: Optional[FileCollection] = None
    plan: Optional[InstallPlan] = None
    conflicts: List[Conflict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    finalized: List[str] = field(default_factory=list)
    fetch: Optional[FetchReport] = None
    install: Optional[InstallResult] = None
    updater_updated: bool = False
    handed_off: bool = False

    @property
    def restart_required(self) -> bool:
        return self.handed_off or (self.install is not None and self.install.restart_required)

    @property
    def exit_code(self) -> int:
        if self.fetch is not None and self.fetch.failed:
            return 1
        if self.install is not None and (self.install.failed or self.install.skipped):
            return 1
        if self.restart_required:
            return 3
        return 0


class UpdateSession:
    """Drives one update of an install root."""

    def __init__(self, root, source: IndexSource, config: Optional[UpdaterConfig] = None,
                 sink: Optional[ProgressSink] = None,
                 resolve_conflicts: Optional[ConflictPrompt] = None,
                 confirm_finalize: Optional[Callable[[], bool]] = None,
                 probe: Optional[InUseProbe] = None,
                 token: Optional[CancellationToken] = None,
                 launcher: Optional[Launcher] = None,
                 argv: Optional[Sequence[str]] = None,
                 environ: Optional[Mapping[str, str]] = None):
        self.root = Path(root)
        self.source = source
        self.config = config or UpdaterConfig()
        self.sink = sink or LoggingProgressSink()
        self.resolve_conflicts = resolve_conflicts
        self.confirm_finalize = confirm_finalize
        self.probe = probe
        self.token = token or CancellationToken()
        self.launcher = launcher
        self.argv = list(sys.argv[1:] if argv is None else argv)
        self.environ = environ
        self.state = StateManager(self.root)

    def _finalize_if_pending(self, result: SessionResult) -> None:
        if not has_pending_update(self.root):
            return
        if is_restarted(self.environ):
            log_message("Updater restart complete; finalizing pending files")
        elif self.confirm_finalize is None or not self.confirm_finalize():
            raise PendingRestartRequired(
                "A previous update is waiting to be finalized; restart or run 'finalize' first"
            )
        result.finalized = finalize_pending(self.root, self.state)

    def _build_probe(self, collection: FileCollection) -> InUseProbe:
        probe = self.probe or default_probe()
        for path in updater_closure(collection, self.config.updater_component):
            probe.protect(collection.prefix(path))
        for extra in self.config.updater_files:
            probe.protect(self.root / extra)
        return probe

    def _persist(self, install: InstallResult, collection: FileCollection) -> None:
        entries: Dict[str, ManifestEntry] = dict(install.installed)
        for path in install.unchanged:
            record = collection.get(path)
            if record is not None and record.remote_version is not None:
                entries[path] = ManifestEntry(record.remote_version, record.remote_checksum)
        self.state.record_installed(entries)

    def _install(self, installer: Installer, plan: InstallPlan, report: FetchReport,
                 collection: FileCollection) -> InstallResult:
        try:
            install = installer.install(plan, report.staged)
        except Canceled as e:
            if e.partial is not None:
                self._persist(e.partial, collection)
            raise
        self._persist(install, collection)
        return install

    def _adjudicate(self, plan: InstallPlan, result: SessionResult) -> InstallPlan:
        conflicts = ConflictDetector().detect(plan)
        result.conflicts = conflicts
        if not conflicts:
            return plan
        for conflict in conflicts:
            log_message(f"Conflict: {conflict}", "WARNING")
        decisions = self.resolve_conflicts(conflicts) if self.resolve_conflicts else {}
        plan, unresolved = apply_decisions(plan, conflicts, decisions)
        if unresolved:
            raise UnresolvedConflictsError(unresolved)
        return plan

    def _run(self, result: SessionResult, requested: Optional[Iterable[str]],
             dry_run: bool, stage_only: bool) -> None:
        self._finalize_if_pending(result)

        self.sink.stage("sync", 0, 1)
        collection, warnings = VersionIndex(self.root, self.source, self.state).sync()
        result.collection = collection
        result.warnings = warnings
        for warning in warnings:
            self.sink.warn(warning)
        self.sink.stage("sync", 1, 1)
        if not collection.remote_available:
            raise NetworkError(f"No catalog available from {self.source.describe()}: {'; '.join(warnings)}")
        if collection.has_locally_modified():
            self.sink.warn("There are locally modified files")

        for record in collection.by_status(FileStatus.OBSOLETE):
            debug_log(f"{record.path} is no longer published")

        downloader = Downloader(self.root, self.source, self.config.max_workers, self.token, self.state,
                                self.config.retries)
        installer = Installer(self.root, self._build_probe(collection), self.token, self.state)

        component = self.config.updater_component
        if not is_restarted(self.environ) and is_updater_updateable(collection, component):
            if dry_run or stage_only:
                log_message("The updater itself will be updated first")
            else:
                install = update_the_updater(collection, component, downloader, installer,
                                             self.resolve_conflicts, self.sink)
                self._persist(install, collection)
                result.install = install
                result.updater_updated = True
                if install.restart_required:
                    # The relaunched updater keeps our PID and takes the lock itself
                    self.state.release_lock()
                    try:
                        SelfUpdateHandoff(self.root, component, self.launcher, environ=self.environ) \
                            .handoff(self.argv, collection)
                    except SelfUpdateHandoffError:
                        self.state.acquire_lock()
                        raise
                    # Only reached with a launcher that does not replace the process
                    result.handed_off = True
                    result.outcome = "restart"
                    return
                collection, _ = VersionIndex(self.root, self.source, self.state).sync()
                result.collection = collection

        paths = list(requested) if requested is not None else collection.updateable()
        if not paths:
            log_message("All files are up to date")
            result.outcome = "up-to-date"
            return

        plan = DependencyResolver().resolve(paths, collection)
        plan = self._adjudicate(plan, result)
        result.plan = plan
        log_message(f"Install plan: {len(plan)} file(s) in {len(plan.batches)} batch(es), "
                    f"{plan.total_bytes()} bytes")
        for entry in plan:
            debug_log(f"  [{entry.batch}] {entry.path} -> {entry.target_version}")

        if dry_run:
            result.outcome = "dry-run"
            return

        result.fetch = downloader.fetch(plan, self.sink)
        if stage_only:
            result.outcome = "staged"
            return

        result.install = self._install(installer, plan, result.fetch, collection)
        save_preferences(self.config, self.state)

    def run(self, requested: Optional[Iterable[str]] = None, dry_run: bool = False,
            stage_only: bool = False) -> SessionResult:
        """
        Run the session.

        Args:
            requested: paths to update (defaults to everything updateable)
            dry_run: stop after conflict adjudication
            stage_only: download into staging without installing

        Returns:
            SessionResult: outcome; ``exit_code`` maps it for the CLI

        Raises:
            UpdaterError: any fatal condition (the sink was already notified)
            ValueError: if a requested path is unknown
        """
        result = SessionResult()
        try:
            with self.state.session_lock():
                self._run(result, requested, dry_run, stage_only)
        except Canceled as e:
            result.outcome = "canceled"
            self.sink.finished("canceled", str(e))
            raise
        except Exception as e:
            result.outcome = "error"
            self.sink.finished("error", str(e))
            raise
        except KeyboardInterrupt:
            self.token.cancel()
            result.outcome = "canceled"
            self.sink.finished("canceled", "Interrupted")
            raise

        if result.exit_code == 1:
            failed = []
            if result.fetch is not None:
                failed.extend(result.fetch.failed)
            if result.install is not None:
                failed.extend(result.install.failed)
                failed.extend(result.install.skipped)
            result.outcome = "error"
            self.sink.finished("error", f"{len(set(failed))} file(s) not updated: {', '.join(sorted(set(failed)))}")
        elif result.restart_required:
            self.sink.finished("success", "restart required to finish the update")
        else:
            self.sink.finished("success", result.outcome if result.outcome != "success" else "")
        return result
