"""Test fixtures and configuration."""

from __future__ import annotations

from typing import Iterator

import pytest

from entsync.config import reset_settings
from entsync.engine.container import Container
from entsync.stores.sync_store import SyncStore

from sample_sync import AcmeHttpProvider, AcmeProvider


@pytest.fixture(autouse=True)
def settings_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Isolate every test from the developer's ENTSYNC_* environment."""
    monkeypatch.setenv("ENTSYNC_DATABASE_PATH", ":memory:")
    monkeypatch.setenv("ENTSYNC_HYDRATION_POLICY", "lazy")
    monkeypatch.setenv("ENTSYNC_STRICT_SIGNATURES", "false")
    monkeypatch.setenv("ENTSYNC_HTTP_RETRY_MAX_WAIT", "0")
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def store() -> Iterator[SyncStore]:
    """An in-memory sync store, closed after the test."""
    store = SyncStore(":memory:", command="pytest")
    yield store
    store.close()


@pytest.fixture
def container(store: SyncStore) -> Container:
    return Container().instance(SyncStore, store)


@pytest.fixture
def acme(container: Container) -> AcmeProvider:
    """The in-memory Acme provider, resolved through the container."""
    container.provider(AcmeProvider)
    return container.get(AcmeProvider)


@pytest.fixture
def http(container: Container) -> AcmeHttpProvider:
    """The HTTP Acme provider, talking to ``FakeApi`` through a mock transport."""
    container.provider(AcmeHttpProvider)
    return container.get(AcmeHttpProvider)
