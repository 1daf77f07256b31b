from __future__ import annotations

from fileupdater.utils.config import UpdaterConfig, load_config, save_preferences
from fileupdater.utils.state_manager import StateManager


def test_defaults_without_manifest(tmp_path) -> None:
    config = load_config(tmp_path, environ={})
    assert config == UpdaterConfig()


def test_precedence_manifest_environment_command_line(tmp_path) -> None:
    state = StateManager(tmp_path)
    state.update_metadata(source_url="/srv/manifest", max_workers=2, debug=False, channel="beta")

    config = load_config(tmp_path, environ={"FILEUPDATER_SOURCE": "/srv/env", "FILEUPDATER_WORKERS": "6"})
    assert config.source_url == "/srv/env"
    assert config.max_workers == 6
    assert config.channel == "beta"

    config = load_config(tmp_path, overrides={"source_url": "/srv/cli", "debug": True, "max_workers": None},
                         environ={"FILEUPDATER_SOURCE": "/srv/env", "FILEUPDATER_DEBUG": "0"})
    assert config.source_url == "/srv/cli"
    assert config.debug is True
    assert config.max_workers == 2


def test_invalid_values_are_ignored(tmp_path) -> None:
    config = load_config(tmp_path, environ={"FILEUPDATER_WORKERS": "lots"})
    assert config.max_workers == 4


def test_preferences_survive_manifest_rewrites(tmp_path) -> None:
    state = StateManager(tmp_path)
    save_preferences(UpdaterConfig(source_url="https://mirror.example", channel="beta"), state)
    metadata = state.load_manifest().metadata
    assert metadata["source_url"] == "https://mirror.example"
    assert metadata["channel"] == "beta"
    assert load_config(tmp_path, environ={}).source_url == "https://mirror.example"
