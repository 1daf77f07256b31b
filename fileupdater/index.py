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

import argparse
import logging
import os
import sys
from typing import Dict, List, Optional

from .errors import NetworkError, UpdaterError
from .utils.collection import Decision, FileStatus
from .utils.config import UpdaterConfig, load_config
from .utils.conflicts import Conflict
from .utils.index import log_message, set_debug
from .utils.installer import PendingMarker, finalize_pending
from .utils.self_update import is_restarted, is_updater_updateable
from .utils.session import UpdateSession
from .utils.sources import source_from_url
from .utils.state_manager import StateManager
from .utils.version_index import VersionIndex

DEFAULT_ROOT = os.getcwd()

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def setup_update_logging(debug: bool = False):
    """
    Log to stdout only; the shell wrapper owns file redirection.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    unified_format = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                       datefmt='%Y-%m-%d %H:%M:%S')
    console_handler.setFormatter(unified_format)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)
    logging.info("=" * 80)
    logging.info("FILE UPDATE SESSION STARTED")
    logging.info(f"Command: {' '.join(sys.argv)}")
    logging.info(f"Working Directory: {os.getcwd()}")
    logging.info(f"Python Version: {sys.version}")
    logging.info("=" * 80)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fileupdater", description="File Update Manager")
    parser.add_argument("--root", default=DEFAULT_ROOT,
                        help="Install root to update (default: current directory)")
    parser.add_argument("--source", default=None,
                        help="Update source URL or mirror directory (default: from configuration)")
    parser.add_argument("--workers", type=int, default=None,
                        help="Number of parallel downloads")
    parser.add_argument("--debug", action="store_true", default=None,
                        help="Enable debug logging")

    commands = parser.add_subparsers(dest="command")
    commands.required = True
    commands.add_parser("check", help="List files that are not current")
    commands.add_parser("sync", help="Download updates into staging without installing")

    apply_parser = commands.add_parser("apply", help="Download and install updates")
    apply_parser.add_argument("--yes", action="store_true",
                              help="Do not ask; finalize pending updates automatically")
    apply_parser.add_argument("--dry-run", action="store_true",
                              help="Show the install plan without downloading")
    apply_parser.add_argument("--resolve", choices=[d.value for d in Decision], default=None,
                              help="Decision applied to every conflict")
    apply_parser.add_argument("paths", nargs="*", help="Files to update (default: all updateable)")

    commands.add_parser("finalize", help="Finalize a pending update")
    commands.add_parser("status", help="Show pending update, lock and configuration")
    return parser


def prompt_for_decisions(conflicts: List[Conflict]) -> Dict[str, Decision]:
    """Ask on the terminal for a decision per conflict."""
    choices = {"k": Decision.KEEP_LOCAL, "t": Decision.TAKE_REMOTE, "s": Decision.SKIP}
    decisions = {}
    for conflict in conflicts:
        print(str(conflict))
        while True:
            answer = input("  [k]eep local, [t]ake remote, [s]kip? ").strip().lower()[:1]
            if answer in choices:
                decisions[conflict.path] = choices[answer]
                break
    return decisions


def make_conflict_callback(args):
    if getattr(args, "resolve", None):
        decision = Decision(args.resolve)
        return lambda conflicts: {conflict.path: decision for conflict in conflicts}
    if not getattr(args, "yes", False) and sys.stdin.isatty():
        return prompt_for_decisions
    return None


def make_confirm_finalize(args):
    if getattr(args, "yes", False):
        return lambda: True
    if sys.stdin.isatty():
        return lambda: input("A previous update is pending. Finalize it now? [y/N] ").strip().lower() == "y"
    return None


def run_check(root: str, config: UpdaterConfig) -> int:
    source = source_from_url(config.source_url, config.timeout, config.retries)
    collection, warnings = VersionIndex(root, source).sync()
    if not collection.remote_available:
        raise NetworkError(f"No catalog available from {source.describe()}: {'; '.join(warnings)}")
    if collection.has_locally_modified():
        log_message("There are locally modified files!", "WARNING")
    stale = [record for record in collection if record.status != FileStatus.CURRENT]
    if not stale:
        log_message("All files are up to date")
    else:
        log_message("Files that are not current:")
        log_message("-" * 80)
        for record in stale:
            log_message(f"{record.status.value:<18} {record.path:<40} "
                        f"{record.local_version or '-'} -> {record.remote_version or '-'}")
        log_message("-" * 80)
    if is_updater_updateable(collection, config.updater_component):
        log_message("Updater update available")
    if collection.has_changes():
        log_message("Updates are available - run 'apply' to install them")
    return EXIT_SUCCESS


def run_finalize(root: str) -> int:
    state = StateManager(root)
    with state.session_lock():
        finalized = finalize_pending(root, state)
    if finalized:
        log_message(f"Finalized {len(finalized)} pending file(s)")
    else:
        log_message("No pending update to finalize")
    return EXIT_SUCCESS


def run_status(root: str, config: UpdaterConfig) -> int:
    state = StateManager(root)
    marker = PendingMarker(root)
    pending = marker.load()
    if pending:
        log_message(f"Pending update ({len(pending)} file(s)), restart required:")
        for path, item in sorted(pending.items()):
            log_message(f"  - {path} ({item.version})")
    else:
        log_message("No pending update")
    holder = state.read_lock()
    if holder is None:
        log_message("No update session running")
    else:
        log_message(f"Session lock held by pid {holder.get('pid', 'unknown')} on {holder.get('host', 'unknown')}")
    log_message("Configuration:")
    for key, value in config.to_dict().items():
        log_message(f"  {key}: {value}")
    return EXIT_SUCCESS


def run_session(args, config: UpdaterConfig, stage_only: bool = False) -> int:
    source = source_from_url(config.source_url, config.timeout, config.retries)
    session = UpdateSession(
        args.root,
        source,
        config=config,
        resolve_conflicts=make_conflict_callback(args),
        confirm_finalize=make_confirm_finalize(args),
    )
    requested = getattr(args, "paths", None) or None
    result = session.run(requested=requested, dry_run=getattr(args, "dry_run", False), stage_only=stage_only)

    if result.plan is not None and result.outcome == "dry-run":
        log_message("Dry run - install plan:")
        for entry in result.plan:
            log_message(f"  [{entry.batch}] {entry.path} -> {entry.target_version}")
    if result.fetch is not None:
        log_message(f"Staged {len(result.fetch.staged)} file(s) "
                    f"({result.fetch.downloaded} downloaded, {result.fetch.reused} reused)")
    if result.install is not None:
        for path, reason in sorted(result.install.skipped.items()):
            log_message(f"Skipped {path}: {reason}", "WARNING")
        if result.install.restart_required:
            log_message("Restart required to finish the update", "WARNING")
    return result.exit_code


def main(argv: Optional[List[str]] = None):
    """
    Main entry point for the file updater.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.root, overrides={
            "source_url": args.source,
            "debug": args.debug,
            "max_workers": args.workers,
        })
        set_debug(config.debug)
        setup_update_logging(config.debug)
        if is_restarted():
            log_message("Running as the restarted updater")

        if args.command == "finalize":
            sys.exit(run_finalize(args.root))
        elif args.command == "status":
            sys.exit(run_status(args.root, config))
        elif args.command == "check":
            sys.exit(run_check(args.root, config))
        elif args.command == "sync":
            sys.exit(run_session(args, config, stage_only=True))
        else:
            sys.exit(run_session(args, config))

    except KeyboardInterrupt:
        log_message("Update process interrupted by user", "WARNING")
        sys.exit(EXIT_INTERRUPTED)
    except UpdaterError as e:
        log_message(f"{type(e).__name__}: {e}", "ERROR")
        sys.exit(e.exit_code)
    except ValueError as e:
        log_message(str(e), "ERROR")
        sys.exit(EXIT_ERROR)
    except Exception as e:
        log_message(f"Unhandled error in update process: {e}", "ERROR")
        import traceback
        traceback.print_exc()
        sys.exit(EXIT_ERROR)


if __name__ == "__main__":
    main()
