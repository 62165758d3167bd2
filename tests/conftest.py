"""Shared fixtures for relay tests."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from relay_config import RelayConfig

TEST_SECRET = "test-session-secret-0123456789abcdef"
FRONTEND = "https://cms.example.com"


def _config_values(**overrides):
    values = dict(
        github_client_id="test-client-id",
        github_client_secret="test-client-secret",
        github_callback_url="https://relay.example.com/callback",
        github_repo="acme/website",
        frontend_url=FRONTEND,
        app_env="test",
        session_secret=TEST_SECRET,
    )
    values.update(overrides)
    return values


@pytest.fixture
def make_config():
    def _make(**overrides):
        return RelayConfig(**_config_values(**overrides))
    return _make


@pytest.fixture
def config(make_config):
    return make_config()
