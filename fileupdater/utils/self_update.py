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
Updater Self-Update

The updater's own files are in use while it runs, so updating them is a
two-step affair: the new files are installed into the pending area, then the
process re-executes itself with an import path built only from the verified
files of its component. The new instance finalizes the pending marker before
it does anything else.

Usage:
    from fileupdater.utils.self_update import is_updater_updateable, update_the_updater

    if is_updater_updateable(collection, config.updater_component) and not is_restarted():
        result = update_the_updater(collection, component, downloader, installer)
        if result.restart_required:
            SelfUpdateHandoff(root, component).handoff(sys.argv[1:], collection)
"""

import os
import sys
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from ..errors import SelfUpdateHandoffError, UnresolvedConflictsError
from .collection import Decision, FileCollection
from .conflicts import Conflict, ConflictDetector, apply_decisions
from .downloader import Downloader, ProgressSink
from .index import debug_log, log_message
from .installer import InstallResult, Installer, PendingMarker
from .resolver import DependencyResolver

RESTART_ENV = "FILEUPDATER_RESTARTED"

# Entries Python can import from directly
IMPORTABLE_SUFFIXES = (".zip", ".pyz", ".whl", ".egg")

Launcher = Callable[[str, List[str], Dict[str, str]], None]


def is_restarted(environ: Optional[Mapping[str, str]] = None) -> bool:
    environ = os.environ if environ is None else environ
    return environ.get(RESTART_ENV) == "1"


def updater_closure(collection: FileCollection, component: Optional[str]) -> List[str]:
    """The updater component and everything it depends on that the collection knows."""
    if not component or component not in collection:
        return []
    return [path for path in collection.dependency_closure(component) if path in collection]


def is_updater_updateable(collection: FileCollection, component: Optional[str]) -> bool:
    """
    Check whether the updater itself, or anything it depends on, has an update.

    Args:
        collection: synced FileCollection
        component: catalog path of the updater's entry file

    Returns:
        bool: True if any file in the updater's dependency closure is updateable
    """
    closure = updater_closure(collection, component)
    if not closure:
        return False
    updateable = set(collection.updateable())
    stale = [path for path in closure if path in updateable]
    if stale:
        log_message(f"Updater update available: {', '.join(stale)}")
        return True
    debug_log(f"Updater component {component} is up to date")
    return False


def update_the_updater(collection: FileCollection, component: str, downloader: Downloader,
                       installer: Installer,
                       resolve_conflicts: Optional[Callable[[List[Conflict]], Dict[str, Decision]]] = None,
                       sink: Optional[ProgressSink] = None) -> InstallResult:
    """
    Download and install the updater's own stale files.

    The installer's probe is expected to protect the running updater's files,
    so they end up in the pending area rather than being replaced in place.

    Raises:
        UnresolvedConflictsError: if a conflict in the updater closure has no decision
        IntegrityError, NetworkError: if any updater file could not be fetched
    """
    updateable = set(collection.updateable())
    requested = [path for path in updater_closure(collection, component) if path in updateable]
    plan = DependencyResolver().resolve(requested, collection)

    conflicts = ConflictDetector().detect(plan)
    decisions = resolve_conflicts(conflicts) if (conflicts and resolve_conflicts) else {}
    plan, unresolved = apply_decisions(plan, conflicts, decisions)
    if unresolved:
        raise UnresolvedConflictsError(unresolved)

    log_message(f"Updating the updater first ({len(plan)} file(s))")
    report = downloader.fetch(plan, sink)
    if report.failed:
        # A partially updated updater is worse than the old one
        path = sorted(report.failed)[0]
        raise report.failed[path]
    return installer.install(plan, report.staged)


def _exec_launcher(executable: str, argv: List[str], env: Dict[str, str]) -> None:
    os.execve(executable, argv, env)


class SelfUpdateHandoff:
    """Relaunches the updater from its freshly verified files."""

    def __init__(self, root, component: Optional[str], launcher: Optional[Launcher] = None,
                 python: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        self.root = Path(root)
        self.component = component
        self.launcher = launcher or _exec_launcher
        self.python = python or sys.executable
        self.environ = dict(os.environ if environ is None else environ)

    def build_context(self, collection: FileCollection) -> List[str]:
        """
        Import path for the new instance, built only from the updater's closure.

        A pending copy wins over the installed file. Only entries Python can
        import from (archives and directories) are included.
        """
        marker = PendingMarker(self.root)
        pending = marker.load()
        context = []
        for path in updater_closure(collection, self.component):
            location = collection.prefix(path)
            if path in pending and marker.pending_path(path).exists():
                location = marker.pending_path(path)
            if location.is_dir() or location.suffix in IMPORTABLE_SUFFIXES:
                context.append(str(location))
        return context

    def handoff(self, argv: Sequence[str], collection: FileCollection) -> None:
        """
        Replace the running updater with the updated one.

        With the default launcher this call does not return on success.

        Raises:
            SelfUpdateHandoffError: if the new instance could not be launched
        """
        env = dict(self.environ)
        env[RESTART_ENV] = "1"
        context = self.build_context(collection)
        inherited = env.get("PYTHONPATH")
        if inherited:
            context.append(inherited)
        if context:
            env["PYTHONPATH"] = os.pathsep.join(context)

        exec_argv = [self.python, "-m", "fileupdater"] + list(argv)
        log_message("Updater updated; restarting once before applying the remaining updates")
        debug_log(f"Handoff command: {' '.join(exec_argv)}")
        try:
            self.launcher(self.python, exec_argv, env)
        except OSError as e:
            log_message(f"Failed to exec updated updater: {e}", "ERROR")
            raise SelfUpdateHandoffError(
                f"Could not start the updated updater ({e}); restart it manually to finish the update"
            ) from e
