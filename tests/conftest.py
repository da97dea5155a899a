"""Shared test fixtures for vaultnote."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import pytest

from fake_remote import OWNER, REPO, TOKEN, FakeGitHub, no_sleep
from vaultnote.pubsub import EventBus
from vaultnote.session import SessionKey
from vaultnote.store import LocalStore
from vaultnote.sync.encryption import EncryptionCoordinator
from vaultnote.sync.engine import SyncEngine
from vaultnote.sync.models import RemoteConfig, SyncSettings
from vaultnote.sync.remote import RemoteStoreClient


@pytest.fixture
def tmp_vault_home(tmp_path: Path) -> Path:
    """Provide a temporary vault home directory for testing."""
    home = tmp_path / ".vaultnote"
    home.mkdir()
    return home


@pytest.fixture
def initialized_vault_home(tmp_vault_home: Path) -> Path:
    """Provide a vault home with directory structure and a default config."""
    import yaml

    LocalStore(tmp_vault_home).initialize()
    (tmp_vault_home / "config").mkdir()
    (tmp_vault_home / "config" / "config.yaml").write_text(
        yaml.dump({"sync": {"interval_minutes": 0}}, default_flow_style=False)
    )
    return tmp_vault_home


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def remote_config() -> RemoteConfig:
    return RemoteConfig(owner=OWNER, repo=REPO, branch="main", token=TOKEN)


@pytest.fixture
def fast_settings() -> SyncSettings:
    """Sync settings with every pause set to zero."""
    return SyncSettings(batch_pause_seconds=0.0, backoff_base_seconds=0.0, interval_minutes=0)


@dataclass
class Device:
    """One simulated device: its own store and session, a shared remote."""

    store: LocalStore
    session: SessionKey
    remote: RemoteStoreClient
    coordinator: EncryptionCoordinator
    engine: SyncEngine
    events: EventBus


@pytest.fixture
def make_device(
    tmp_path: Path, fake_github: FakeGitHub, remote_config: RemoteConfig, fast_settings: SyncSettings
) -> Callable[..., Device]:
    """Factory for devices that all talk to the same fake repository."""
    created: list[Device] = []

    def _make(name: str = "device-a", encrypted_sync: bool = True) -> Device:
        store = LocalStore(tmp_path / name)
        store.initialize()
        session = SessionKey()
        events = EventBus()
        remote = RemoteStoreClient(
            remote_config, fast_settings, transport=fake_github.transport(), sleep=no_sleep
        )
        coordinator = EncryptionCoordinator(store, remote, session, fast_settings, events=events)
        engine = SyncEngine(
            store,
            remote,
            fast_settings,
            coordinator=coordinator if encrypted_sync else None,
            events=events,
            sleep=no_sleep,
        )
        device = Device(store, session, remote, coordinator, engine, events)
        created.append(device)
        return device

    return _make
