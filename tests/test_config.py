"""Tests for configuration resolution."""

import json
import os

import pytest

from pydeconfig.auth import build_auth_headers
from pydeconfig.config import DEFAULT_API_URL, LOCAL_API_URL, Config
from pydeconfig.exceptions import DeconfigAuthenticationError, DeconfigConfigError


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("DECONFIG_API_KEY", "DECONFIG_WORKSPACE", "DECONFIG_API_URL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def test_config(tmp_path, clean_env):
    return Config(tmp_path / "config")


class TestConfig:
    """Tests for Config."""

    def test_defaults(self, test_config):
        assert test_config.api_key is None
        assert test_config.workspace is None
        assert test_config.api_url == DEFAULT_API_URL
        assert not test_config.is_configured()

    def test_file_values(self, test_config):
        test_config.config_dir.mkdir(parents=True)
        test_config.get_config_path().write_text(
            json.dumps({"api_key": "file_key", "workspace": "acme"})
        )
        assert test_config.api_key == "file_key"
        assert test_config.workspace == "acme"

    def test_environment_wins_over_file(self, test_config, monkeypatch):
        test_config.save(api_key="file_key")
        monkeypatch.setenv("DECONFIG_API_KEY", "env_key")
        assert test_config.api_key == "env_key"

    def test_resolve_api_url(self, test_config, monkeypatch):
        monkeypatch.setenv("DECONFIG_API_URL", "https://example.test/")
        assert test_config.resolve_api_url() == "https://example.test"
        assert test_config.resolve_api_url(local=True) == LOCAL_API_URL

    def test_save_merges_and_restricts_permissions(self, test_config):
        test_config.save(api_key="k")
        path = test_config.save(workspace="acme", api_url=None)

        assert json.loads(path.read_text()) == {"api_key": "k", "workspace": "acme"}
        if os.name == "posix":
            assert path.stat().st_mode & 0o777 == 0o600

    def test_invalid_file(self, test_config):
        test_config.config_dir.mkdir(parents=True)
        test_config.get_config_path().write_text("[1, 2]")
        with pytest.raises(DeconfigConfigError):
            test_config.api_key

    def test_unreadable_json(self, test_config):
        test_config.config_dir.mkdir(parents=True)
        test_config.get_config_path().write_text("{oops")
        with pytest.raises(DeconfigConfigError):
            test_config.workspace


class TestAuthHeaders:
    """Tests for build_auth_headers."""

    def test_explicit_key(self):
        assert build_auth_headers("abc") == {"Authorization": "Bearer abc"}

    def test_missing_key(self, clean_env, monkeypatch, tmp_path):
        monkeypatch.setattr("pydeconfig.auth.config", Config(tmp_path / "empty"))
        with pytest.raises(DeconfigAuthenticationError, match="No credentials"):
            build_auth_headers()
