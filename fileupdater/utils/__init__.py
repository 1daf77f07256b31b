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
Utilities for the file update system.

This package provides the machinery used by the update session.
"""

from .index import log_message, debug_log, compute_file_sha256, compare_versions
from .collection import Decision, FileCollection, FileRecord, FileStatus, InstallPlan, PlanEntry, StagingEntry
from .config import UpdaterConfig, load_config
from .conflicts import Conflict, ConflictDetector, ConflictKind, apply_decisions
from .downloader import CancellationToken, Downloader, FetchReport, LoggingProgressSink, ProgressSink
from .installer import (
    InUseProbe,
    InstallResult,
    Installer,
    PosixInUseProbe,
    WindowsInUseProbe,
    default_probe,
    finalize_pending,
    has_pending_update
)
from .resolver import DependencyResolver
from .self_update import SelfUpdateHandoff, is_updater_updateable, update_the_updater
from .session import SessionResult, UpdateSession
from .sources import DirectoryIndexSource, HttpIndexSource, IndexSource, source_from_url
from .state_manager import StateManager
from .version_index import VersionIndex

__all__ = [
    'log_message',
    'debug_log',
    'compute_file_sha256',
    'compare_versions',
    'Decision',
    'FileCollection',
    'FileRecord',
    'FileStatus',
    'InstallPlan',
    'PlanEntry',
    'StagingEntry',
    'UpdaterConfig',
    'load_config',
    'Conflict',
    'ConflictDetector',
    'ConflictKind',
    'apply_decisions',
    'CancellationToken',
    'Downloader',
    'FetchReport',
    'LoggingProgressSink',
    'ProgressSink',
    'InUseProbe',
    'InstallResult',
    'Installer',
    'PosixInUseProbe',
    'WindowsInUseProbe',
    'default_probe',
    'finalize_pending',
    'has_pending_update',
    'DependencyResolver',
    'SelfUpdateHandoff',
    'is_updater_updateable',
    'update_the_updater',
    'SessionResult',
    'UpdateSession',
    'DirectoryIndexSource',
    'HttpIndexSource',
    'IndexSource',
    'source_from_url',
    'StateManager',
    'VersionIndex'
]
