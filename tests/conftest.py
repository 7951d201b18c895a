"""Shared fixtures for the invoice sync test suite."""

from __future__ import annotations

import pytest

from helpers import make_settings
from invoice_sync.config import Settings
from invoice_sync.lifecycle.store import InMemoryLifecycleStore
from invoice_sync.lifecycle.synchronizer import LifecycleSynchronizer
from invoice_sync.webhooks.router import EventRouter


@pytest.fixture()
def sync_settings() -> Settings:
    """Settings with both providers configured and inline processing."""
    return make_settings()


@pytest.fixture()
def store() -> InMemoryLifecycleStore:
    return InMemoryLifecycleStore()


@pytest.fixture()
def synchronizer(store: InMemoryLifecycleStore, sync_settings: Settings) -> LifecycleSynchronizer:
    return LifecycleSynchronizer(store, sync_settings)


@pytest.fixture()
def router(synchronizer: LifecycleSynchronizer) -> EventRouter:
    return EventRouter(synchronizer)
