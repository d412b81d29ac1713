"""Tests for api_probe.config_loader.

Tests cover:
- YAML loading with ${ENV_VAR} substitution
- Precedence: CLI values > config file > defaults
- Auth from tagged mappings and shorthand keys, including conflicts
- Validation errors wrapped in ConfigError
"""

from pathlib import Path

import pytest
import yaml

from api_probe.config_loader import (
    ConfigError,
    build_options,
    default_config_dir,
    default_config_path,
    load_config_file,
    options_from_mapping,
    save_config,
)
from api_probe.models import ApiKeyQueryAuth, BearerAuth, HttpMethod, NoAuth


def write_yaml(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestConfigLocation:
    def test_env_override(self, config_dir):
        assert default_config_dir() == config_dir
        assert default_config_path() == config_dir / "config.yaml"

    def test_home_default(self, monkeypatch, tmp_path):
        monkeypatch.delenv("API_PROBE_CONFIG_DIR", raising=False)
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        assert default_config_dir() == tmp_path / ".config" / "api-probe"


class TestLoadConfigFile:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config_file(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("base_url: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config_file(path)

    def test_not_a_mapping(self, tmp_path):
        path = write_yaml(tmp_path / "c.yaml", ["a", "b"])
        with pytest.raises(ConfigError, match="mapping"):
            load_config_file(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config_file(path) == {}

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROBE_TOKEN", "s3cret")
        path = write_yaml(tmp_path / "c.yaml", {
            "base_url": "http://api.test",
            "auth": {"type": "bearer", "token": "${PROBE_TOKEN}"},
            "custom_headers": {"X-Id": "id-${PROBE_TOKEN}"},
        })
        data = load_config_file(path)
        assert data["auth"]["token"] == "s3cret"
        assert data["custom_headers"]["X-Id"] == "id-s3cret"

    def test_missing_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PROBE_UNSET_VAR", raising=False)
        path = write_yaml(tmp_path / "c.yaml", {"base_url": "${PROBE_UNSET_VAR}"})
        with pytest.raises(ConfigError, match="PROBE_UNSET_VAR"):
            load_config_file(path)


class TestOptionsFromMapping:
    def test_defaults(self):
        options = options_from_mapping({"base_url": "http://api.test"})
        assert options.timeout_ms == 10_000
        assert isinstance(options.auth, NoAuth)

    def test_tagged_auth(self):
        options = options_from_mapping({
            "base_url": "http://api.test",
            "auth": {"type": "api_key_query", "key": "k", "query_name": "token"},
        })
        assert options.auth == ApiKeyQueryAuth(key="k", query_name="token")

    def test_shorthand_auth(self):
        options = options_from_mapping({"base_url": "http://api.test", "bearer_token": "t"})
        assert options.auth == BearerAuth(token="t")

    def test_tagged_and_shorthand_conflict(self):
        with pytest.raises(ConfigError, match="not both"):
            options_from_mapping({
                "base_url": "http://api.test",
                "bearer_token": "t",
                "auth": {"type": "bearer", "token": "u"},
            })

    def test_api_key_header_and_query_conflict(self):
        with pytest.raises(ConfigError):
            options_from_mapping({
                "base_url": "http://api.test",
                "api_key": "k",
                "api_key_header": "X-Key",
                "api_key_query": "key",
            })

    def test_validation_error_wrapped(self):
        with pytest.raises(ConfigError, match="max_retries"):
            options_from_mapping({"base_url": "http://api.test", "max_retries": 50})

    def test_unknown_key_wrapped(self):
        with pytest.raises(ConfigError, match="Invalid options"):
            options_from_mapping({"base_url": "http://api.test", "colour": "blue"})


class TestBuildOptions:
    def test_cli_only(self, config_dir):
        options = build_options({"base_url": "http://api.test", "timeout_ms": None})
        assert options.base_url == "http://api.test"
        assert options.timeout_ms == 10_000

    def test_missing_base_url(self, config_dir):
        with pytest.raises(ConfigError, match="base URL"):
            build_options({"base_url": None})

    def test_default_config_file_used(self, config_dir):
        config_dir.mkdir(parents=True)
        write_yaml(config_dir / "config.yaml", {"base_url": "http://file.test", "max_retries": 1})
        options = build_options({"base_url": None})
        assert options.base_url == "http://file.test"
        assert options.max_retries == 1

    def test_cli_overrides_file(self, tmp_path, config_dir):
        path = write_yaml(tmp_path / "c.yaml", {
            "base_url": "http://file.test",
            "timeout_ms": 500,
            "max_concurrency": 4,
            "method_filter": ["GET"],
        })
        options = build_options(
            {"base_url": "http://cli.test", "timeout_ms": 900, "max_concurrency": None},
            config_path=path,
        )
        assert options.base_url == "http://cli.test"
        assert options.timeout_ms == 900
        assert options.max_concurrency == 4
        assert options.method_filter == frozenset({HttpMethod.GET})

    def test_cli_auth_replaces_file_auth(self, tmp_path, config_dir):
        path = write_yaml(tmp_path / "c.yaml", {
            "base_url": "http://file.test",
            "auth": {"type": "basic", "username": "u", "password": "p"},
        })
        options = build_options({"bearer_token": "cli"}, config_path=path)
        assert options.auth == BearerAuth(token="cli")

    def test_explicit_missing_config(self, tmp_path, config_dir):
        with pytest.raises(ConfigError, match="not found"):
            build_options({"base_url": "http://api.test"}, config_path=tmp_path / "none.yaml")


class TestSaveConfig:
    def test_roundtrip(self, tmp_path):
        path = save_config(
            {"base_url": "http://api.test", "max_retries": 2}, tmp_path / "dir" / "config.yaml"
        )
        assert load_config_file(path) == {"base_url": "http://api.test", "max_retries": 2}
        assert not (tmp_path / "dir" / "config.yaml.tmp").exists()

    def test_default_location(self, config_dir):
        path = save_config({"base_url": "http://api.test"})
        assert path == config_dir / "config.yaml"
