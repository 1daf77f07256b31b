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

import hashlib
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Optional, Union

from packaging.version import InvalidVersion, Version

logger = logging.getLogger("fileupdater")

# Toggled by the orchestrator (--debug / FILEUPDATER_DEBUG)
DEBUG = False

CHUNK_SIZE = 64 * 1024


def log_message(message: str, level: str = "INFO"):
    """
    Log a message through the updater logger.

    Args:
        message (str): The message to log.
        level (str): Log level (e.g., 'INFO', 'ERROR').
    """
    if level == "ERROR":
        logger.error(message)
    elif level == "WARNING":
        logger.warning(message)
    elif level == "DEBUG":
        logger.debug(message)
    else:
        logger.info(message)


def debug_log(message: str):
    """Debug logging that only shows when DEBUG=True."""
    if DEBUG:
        log_message(message, "DEBUG")


def set_debug(enabled: bool) -> None:
    global DEBUG
    DEBUG = bool(enabled)


def compute_file_sha256(file_path: Union[str, Path]) -> Optional[str]:
    """
    Calculate the SHA-256 checksum of a file.

    Returns:
        str: hex digest, or None when the file does not exist or is unreadable
    """
    if not os.path.isfile(file_path):
        return None

    sha256_hash = hashlib.sha256()
    try:
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                sha256_hash.update(chunk)
    except OSError as e:
        log_message(f"Failed to hash {file_path}: {e}", "WARNING")
        return None
    return sha256_hash.hexdigest()


def parse_version(version_id: str) -> Version:
    """Parse a version id; raises InvalidVersion for garbage."""
    return Version(str(version_id).strip())


def compare_versions(version1: str, version2: str) -> int:
    """
    Compare two version ids.

    Returns:
        int: -1 if version1 < version2, 0 if equal, 1 if version1 > version2
    """
    v1 = parse_version(version1)
    v2 = parse_version(version2)
    if v1 < v2:
        return -1
    if v1 > v2:
        return 1
    return 0


def max_version(*versions: Optional[str]) -> Optional[str]:
    """Return the highest of the given version ids, ignoring None."""
    best = None
    for candidate in versions:
        if candidate is None:
            continue
        if best is None or compare_versions(candidate, best) > 0:
            best = candidate
    return best


def is_valid_version(version_id: str) -> bool:
    try:
        parse_version(version_id)
        return True
    except (InvalidVersion, TypeError):
        return False


def normalize_relative_path(path: str) -> str:
    """
    Normalize a catalog path to a POSIX relative path.

    Raises:
        ValueError: for absolute paths or paths escaping the install root
    """
    text = str(path or "").replace("\\", "/").strip()
    if not text:
        raise ValueError("empty path")
    pure = PurePosixPath(text)
    if pure.is_absolute() or text.startswith("/") or ":" in pure.parts[0]:
        raise ValueError(f"absolute path not allowed: {path}")
    if any(part == ".." for part in pure.parts):
        raise ValueError(f"path escapes install root: {path}")
    parts = [part for part in pure.parts if part not in ("", ".")]
    if not parts:
        raise ValueError(f"invalid path: {path}")
    return "/".join(parts)


def prune_empty_dirs(start: Path, stop: Path) -> None:
    """Remove empty parent directories of start, up to (not including) stop."""
    current = start
    stop = stop.resolve()
    while True:
        try:
            resolved = current.resolve()
        except OSError:
            return
        if resolved == stop or stop not in resolved.parents:
            return
        try:
            if any(current.iterdir()):
                return
            current.rmdir()
        except OSError:
            return
        current = current.parent
