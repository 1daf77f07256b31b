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

from typing import List, Optional

from .errors import (
    Canceled,
    IntegrityError,
    NetworkError,
    ParseError,
    PendingRestartRequired,
    SelfUpdateHandoffError,
    SessionLockedError,
    UnresolvedConflictsError,
    UpdaterError
)
from .utils.index import log_message
from .utils.installer import finalize_pending, has_pending_update
from .utils.session import SessionResult, UpdateSession

__version__ = "1.0.0"

# Re-export for host applications
__all__ = [
    'log_message',
    'finalize_pending_updates',
    'UpdateSession',
    'SessionResult',
    'UpdaterError',
    'NetworkError',
    'ParseError',
    'IntegrityError',
    'UnresolvedConflictsError',
    'Canceled',
    'PendingRestartRequired',
    'SelfUpdateHandoffError',
    'SessionLockedError'
]


def finalize_pending_updates(root) -> Optional[List[str]]:
    """
    Host startup hook: finalize a deferred update before loading any file it covers.

    Args:
        root: install root

    Returns:
        list: finalized paths, or None if nothing was pending
    """
    if not has_pending_update(root):
        return None
    log_message("Pending update found; finalizing before startup continues")
    return finalize_pending(root)
