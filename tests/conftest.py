"""Pytest configuration and fixtures."""

import os

import pytest

TEST_ENV = {
    "SUPABASE_URL": "https://test.supabase.co",
    "SUPABASE_SERVICE_ROLE_KEY": "test-key",
    "GEMINI_API_KEY": "test-gemini-key",
    "ANTHROPIC_API_KEY": "test-anthropic-key",
    "XAI_API_KEY": "test-xai-key",
    "ENGINE_ENV": "test",
    "BROADCAST_ENABLED": "false",
}

# Modules read settings at import time (app factory, loggers), before fixtures run
os.environ.update(TEST_ENV)


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ.update(TEST_ENV)
    from agent_engine.core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_db(monkeypatch):
    """In-memory RPC layer installed over the real Supabase wrappers."""
    from tests.fakes.fake_db import FakeDB

    return FakeDB().install(monkeypatch)
