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
Updater configuration.

Values are layered: built-in defaults, then the ``metadata`` block of the
local manifest (<root>/.updater/index.json), then FILEUPDATER_* environment
variables, then explicit overrides from the command line.
"""

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .index import log_message
from .state_manager import StateManager, StateManagerError

ENV_SOURCE = "FILEUPDATER_SOURCE"
ENV_DEBUG = "FILEUPDATER_DEBUG"
ENV_WORKERS = "FILEUPDATER_WORKERS"

# Keys copied back into the manifest metadata when a session saves it
PREFERENCE_KEYS = ("source_url", "channel")


@dataclass
class UpdaterConfig:
    source_url: Optional[str] = None
    channel: str = "stable"
    debug: bool = False
    max_workers: int = 4
    timeout: float = 30.0
    retries: int = 3
    updater_component: Optional[str] = None
    updater_files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def preferences(self) -> Dict[str, Any]:
        return {key: getattr(self, key) for key in PREFERENCE_KEYS if getattr(self, key) is not None}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _apply(config: UpdaterConfig, values: Mapping[str, Any], origin: str) -> None:
    for key, value in values.items():
        if value is None or not hasattr(config, key):
            continue
        try:
            if key == "debug":
                value = _as_bool(value)
            elif key in ("max_workers", "retries"):
                value = max(0 if key == "retries" else 1, int(value))
            elif key == "timeout":
                value = float(value)
            elif key == "updater_files":
                value = [str(item) for item in value]
            elif key in ("source_url", "channel", "updater_component"):
                value = str(value)
        except (TypeError, ValueError) as e:
            log_message(f"Ignoring invalid {origin} setting {key}={value!r}: {e}", "WARNING")
            continue
        setattr(config, key, value)


def load_config(root, overrides: Optional[Mapping[str, Any]] = None,
                environ: Optional[Mapping[str, str]] = None,
                state: Optional[StateManager] = None) -> UpdaterConfig:
    """
    Resolve the effective configuration for an install root.

    Args:
        root: install root
        overrides: values given on the command line (None entries are ignored)
        environ: environment mapping (defaults to os.environ)
        state: StateManager for the root

    Returns:
        UpdaterConfig: merged configuration
    """
    environ = os.environ if environ is None else environ
    state = state or StateManager(root)
    config = UpdaterConfig()

    try:
        metadata = state.load_manifest().metadata
    except StateManagerError as e:
        log_message(f"Failed to load configuration from manifest: {e}", "DEBUG")
        metadata = {}
    _apply(config, metadata, "manifest")

    _apply(config, {
        "source_url": environ.get(ENV_SOURCE) or None,
        "debug": environ.get(ENV_DEBUG) or None,
        "max_workers": environ.get(ENV_WORKERS) or None,
    }, "environment")

    _apply(config, overrides or {}, "command line")
    return config


def save_preferences(config: UpdaterConfig, state: StateManager) -> None:
    """Persist the user's source and channel choice into the manifest metadata."""
    try:
        state.update_metadata(**config.preferences())
    except (OSError, StateManagerError) as e:
        log_message(f"Could not save updater preferences: {e}", "WARNING")
