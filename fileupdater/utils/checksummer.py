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
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .index import compute_file_sha256, log_message
from .sources import CATALOG_CHECKSUM_NAME, CATALOG_NAME

# Never published as catalog entries
SKIPPED_NAMES = {CATALOG_NAME, CATALOG_CHECKSUM_NAME, "__pycache__", ".git", ".updater"}


def timestamp_version(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")


def build_catalog(directory, previous: Optional[Dict[str, Any]] = None,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Scan a mirror directory and produce its catalog.

    Unchanged files keep their version. Changed and new files get a timestamp
    version, and the superseded version is kept in ``previous`` so clients can
    still recognize it. Declared dependencies and flags carry over from the
    previous catalog.

    Args:
        directory: mirror root
        previous: the catalog currently published, if any
        now: time used for new versions

    Returns:
        dict: catalog ready for write_catalog()
    """
    directory = Path(directory)
    previous = previous or {}
    old_files = previous.get("files") or {}
    version = timestamp_version(now)
    files: Dict[str, Any] = {}

    for current_dir, dirnames, filenames in os.walk(directory):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_NAMES)
        for name in sorted(filenames):
            if name in SKIPPED_NAMES or name.endswith(".part"):
                continue
            full_path = Path(current_dir) / name
            rel_path = full_path.relative_to(directory).as_posix()
            checksum = compute_file_sha256(full_path)
            if checksum is None:
                continue
            old = old_files.get(rel_path) or {}
            entry = {
                "version": old.get("version", version),
                "checksum": checksum,
                "size": full_path.stat().st_size,
                "dependencies": list(old.get("dependencies") or []),
                "previous": list(old.get("previous") or []),
            }
            if old.get("executable") or os.access(full_path, os.X_OK):
                entry["executable"] = True
            if old and old.get("checksum") != checksum:
                entry["version"] = version
                if not any(p.get("checksum") == old.get("checksum") for p in entry["previous"]):
                    entry["previous"].append({"version": old["version"], "checksum": old["checksum"]})
                log_message(f"{rel_path}: {old['version']} -> {version}")
            elif not old:
                log_message(f"{rel_path}: new at {version}")
            files[rel_path] = entry

    for rel_path, old in sorted(old_files.items()):
        if rel_path not in files and not old.get("obsolete"):
            files[rel_path] = dict(old, obsolete=True)
            log_message(f"{rel_path}: marked obsolete")

    return {"metadata": dict(previous.get("metadata") or {}), "files": files}


def write_catalog(directory, catalog: Dict[str, Any]) -> str:
    """Write index.json and index.json.sha256 into the mirror; returns the catalog checksum."""
    directory = Path(directory)
    payload = json.dumps(catalog, indent=4, sort_keys=True).encode("utf-8")
    checksum = hashlib.sha256(payload).hexdigest()
    with open(directory / CATALOG_NAME, "wb") as f:
        f.write(payload)
    with open(directory / CATALOG_CHECKSUM_NAME, "w") as f:
        f.write(checksum + "\n")
    return checksum


def update_catalog(directory) -> str:
    directory = Path(directory)
    previous = None
    catalog_file = directory / CATALOG_NAME
    if catalog_file.exists():
        with open(catalog_file, "r") as f:
            previous = json.load(f)
    catalog = build_catalog(directory, previous)
    checksum = write_catalog(directory, catalog)
    print(f"{CATALOG_NAME}: sha256:{checksum} ({len(catalog['files'])} files)")
    return checksum


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: python -m fileupdater.utils.checksummer DIRECTORY", file=sys.stderr)
        sys.exit(2)
    update_catalog(sys.argv[1])
