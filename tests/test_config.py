"""Tests for YAML configuration loading."""

from __future__ import annotations

from pathlib import Path

import yaml

from vaultnote.config import CONFIG_RELATIVE_PATH, VaultConfig, load_config, save_config
from vaultnote.sync.models import RemoteConfig


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_vault_home: Path) -> None:
        config = load_config(tmp_vault_home)
        assert config.sync.interval_minutes == 2
        assert not config.remote.is_configured

    def test_malformed_yaml_gives_defaults(self, tmp_vault_home: Path) -> None:
        path = tmp_vault_home / CONFIG_RELATIVE_PATH
        path.parent.mkdir(parents=True)
        path.write_text("sync: [unclosed")
        assert load_config(tmp_vault_home) == VaultConfig()

    def test_invalid_values_give_defaults(self, tmp_vault_home: Path) -> None:
        path = tmp_vault_home / CONFIG_RELATIVE_PATH
        path.parent.mkdir(parents=True)
        path.write_text(yaml.dump({"sync": {"interval_minutes": -3}}))
        assert load_config(tmp_vault_home).sync.interval_minutes == 2

    def test_partial_file(self, initialized_vault_home: Path) -> None:
        config = load_config(initialized_vault_home)
        assert config.sync.interval_minutes == 0
        assert config.sync.max_attempts == 3


class TestSaveConfig:
    def test_round_trip(self, tmp_vault_home: Path) -> None:
        config = VaultConfig(remote=RemoteConfig(owner="alice", repo="notes", token="t"))
        save_config(tmp_vault_home, config)
        loaded = load_config(tmp_vault_home)
        assert loaded.remote.repo_key == "alice/notes"
        assert loaded.remote.is_configured


class TestRemoteConfig:
    def test_token_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("VAULTNOTE_GITHUB_TOKEN", "from-env")
        remote = RemoteConfig(owner="alice", repo="notes")
        assert remote.resolved_token() == "from-env"
        assert remote.is_configured

    def test_incomplete(self, monkeypatch) -> None:
        monkeypatch.delenv("VAULTNOTE_GITHUB_TOKEN", raising=False)
        assert not RemoteConfig(owner="alice", repo="notes").is_configured
