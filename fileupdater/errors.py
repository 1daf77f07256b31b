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
Exception taxonomy for the file updater.

Every fatal condition has its own class so the shell (CLI or GUI) can react
to it specifically. The ``exit_code`` attribute is what the CLI returns when
the exception ends a session.
"""

from typing import List, Optional


class UpdaterError(Exception):
    """Base class for all updater failures."""
    exit_code = 1


class NetworkError(UpdaterError):
    """The update source could not be reached or a transfer failed."""
    exit_code = 1


class ParseError(UpdaterError):
    """A catalog, or a single catalog entry, is malformed."""
    exit_code = 1

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class IntegrityError(UpdaterError):
    """Downloaded or staged bytes do not match the expected checksum/size."""
    exit_code = 1

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class UnresolvedConflictsError(UpdaterError):
    """Install refused because conflicts are still waiting for a decision."""
    exit_code = 2

    def __init__(self, conflicts: List = None):
        self.conflicts = list(conflicts or [])
        paths = ", ".join(c.path for c in self.conflicts)
        super().__init__(f"{len(self.conflicts)} unresolved conflict(s): {paths}")


class Canceled(UpdaterError):
    """The session was canceled; verified staging is kept for a retry."""
    exit_code = 130
    partial = None

    def __init__(self, message: str = "Canceled"):
        super().__init__(message)


class PendingRestartRequired(UpdaterError):
    """A deferred install must be finalized by a restart first."""
    exit_code = 3

    def __init__(self, message: str = "Restart required to finalize update", path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class SelfUpdateHandoffError(UpdaterError):
    """The updated updater could not be launched; the old one keeps running."""
    exit_code = 3


class SessionLockedError(UpdaterError):
    """Another update session owns the install root."""
    exit_code = 1
