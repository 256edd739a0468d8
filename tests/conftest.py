"""Shared fixtures for unit and integration tests."""

import pytest


@pytest.fixture(autouse=True)
def in_memory_storage(monkeypatch):
    """Global stores are built in memory; MongoDB is only reached through mocks."""
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
