"""
Pytest configuration and fixtures for the test suite.
"""
import json
import os
import sys
from datetime import timedelta
from typing import Optional

import pytest

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from claude_usage_core.client import ClaudeUsageClient
from claude_usage_core.crypto_box import CryptoBox
from claude_usage_core.models import format_timestamp, utc_now
from claude_usage_core.secret_store import CredentialReader

TEST_MACHINE_ID = "0f1e2d3c4b5a69788796a5b4c3d2e1f0" * 2


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test"
    )


@pytest.fixture(autouse=True)
def fixed_machine_id(monkeypatch):
    """Never read the real machine identity in tests."""
    monkeypatch.setattr(
        "claude_usage_core.crypto_box.get_machine_id", lambda: TEST_MACHINE_ID
    )
    return TEST_MACHINE_ID


@pytest.fixture
def crypto_box():
    """A fast CryptoBox (low PBKDF2 cost) keyed from the fixed machine id."""
    return CryptoBox(machine_id_provider=lambda: TEST_MACHINE_ID, iterations=1000)


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "claude-usage" / "accounts.enc"


def make_oauth_blob(
    access_token: str = "access-token-1",
    refresh_token: Optional[str] = "refresh-token-1",
    expires_in_minutes: Optional[float] = 60,
    **extra,
) -> str:
    """Builds an OAuth credential blob expiring `expires_in_minutes` from now."""
    oauth = dict(extra)
    oauth["accessToken"] = access_token
    oauth["refreshToken"] = refresh_token
    oauth["expiresAt"] = (
        format_timestamp(utc_now() + timedelta(minutes=expires_in_minutes))
        if expires_in_minutes is not None
        else None
    )
    return json.dumps({"claudeAiOauth": oauth})


@pytest.fixture
def oauth_blob():
    return make_oauth_blob


class StaticCredentialReader(CredentialReader):
    """Secret-store stand-in returning a fixed value."""

    platform = "test"

    def __init__(self, value: Optional[str] = None):
        self.value = value
        self.calls = 0

    async def read(self) -> Optional[str]:
        self.calls += 1
        return self.value


@pytest.fixture
def credential_reader():
    return StaticCredentialReader()


@pytest.fixture
def client(store_path, crypto_box, credential_reader):
    """A client over a temp store, with no real secret store or browser."""
    return ClaudeUsageClient(
        storage_path=store_path,
        crypto_box=crypto_box,
        credential_reader=credential_reader,
        browser_opener=lambda url: None,
        configure_logging=False,
    )
