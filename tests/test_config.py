"""Tests for config loading, environment overrides, and validation."""

import os

import pytest
import yaml

from subconvert.config import (
    DEFAULT_CONFIG_PATH,
    apply_env_overrides,
    config_from_dict,
    find_or_create_config,
    load_config,
)
from subconvert.errors import ConfigError

from .conftest import build_raw_config

ENV_KEYS = ("SERVER_PORT", "PASSWORD", "SUBSCRIPTION_URL", "DEFAULT_TEMPLATE", "CACHE_DIR", "REFRESH_INTERVAL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config_file(tmp_path, cache_dir):
    def _write(**overrides):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(build_raw_config(cache_dir, **overrides)), encoding="utf-8")
        return str(path)

    return _write


class TestLoadConfig:
    def test_loads_and_derives_paths(self, config_file, cache_dir):
        cfg = load_config(config_file())
        assert cfg.server.port == 8080
        assert cfg.password == "secret"
        assert cfg.node_file_path == os.path.join(str(cache_dir), "nodes.json")
        assert cfg.template_file_path("alt") == os.path.join(str(cache_dir), "template_alt.json")
        assert list(cfg.enabled_templates()) == ["default", "alt"]
        assert cfg.refresh_interval_seconds == 3600.0
        assert cfg.request_timeout == 5.0
        assert os.path.isabs(cfg.source_path)

    def test_defaults(self, cache_dir):
        raw = build_raw_config(cache_dir)
        del raw["server"]["shutdown_timeout"]
        del raw["subscription"]["timeout"]
        raw["cache"] = {"directory": str(cache_dir)}
        cfg = config_from_dict(raw)
        assert cfg.server.shutdown_timeout == 5
        assert cfg.request_timeout == 30.0
        assert cfg.cache.node_file == "nodes.json"
        assert cfg.logging.level == "debug"

    def test_env_overrides(self, config_file, monkeypatch, tmp_path):
        monkeypatch.setenv("SERVER_PORT", "9090")
        monkeypatch.setenv("PASSWORD", "fromenv")
        monkeypatch.setenv("SUBSCRIPTION_URL", "https://other.example.com/n.json")
        monkeypatch.setenv("DEFAULT_TEMPLATE", "alt")
        monkeypatch.setenv("CACHE_DIR", str(tmp_path / "elsewhere"))
        monkeypatch.setenv("REFRESH_INTERVAL", "5")
        cfg = load_config(config_file())
        assert cfg.server.port == 9090
        assert cfg.password == "fromenv"
        assert cfg.subscription.url == "https://other.example.com/n.json"
        assert cfg.default_template == "alt"
        assert cfg.cache.directory == str(tmp_path / "elsewhere")
        assert cfg.refresh_interval_seconds == 300.0

    def test_non_numeric_env_port_ignored(self, config_file, monkeypatch):
        monkeypatch.setenv("SERVER_PORT", "eighty")
        assert apply_env_overrides(load_config(config_file())).server.port == 8080

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "absent.yaml"))

    def test_bad_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("server: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError, match="parse config error"):
            load_config(str(path))


class TestValidate:
    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"server": {"port": 0}}, "invalid server port"),
            ({"server": {"port": 70000}}, "invalid server port"),
            ({"auth": {"password": ""}}, "password cannot be empty"),
            ({"cache": {"directory": ""}}, "cache directory cannot be empty"),
            ({"subscription": {"url": ""}}, "subscription url cannot be empty"),
            ({"subscription": {"url": "https://x", "refresh_interval": 0}}, "refresh_interval"),
            ({"templates": {}}, "at least one template"),
            ({"default_template": ""}, "default_template cannot be empty"),
            ({"default_template": "ghost"}, "not found in templates"),
            (
                {"templates": {"default": {"url": "https://x", "enabled": False}}},
                "at least one template must be enabled",
            ),
        ],
    )
    def test_rejects(self, cache_dir, overrides, message):
        cfg = config_from_dict(build_raw_config(cache_dir, **overrides))
        with pytest.raises(ConfigError, match=message):
            cfg.validate()

    def test_non_mapping_section(self, cache_dir):
        with pytest.raises(ConfigError, match="must be a mapping"):
            config_from_dict(build_raw_config(cache_dir, server=[1, 2]))

    def test_non_integer_port(self, cache_dir):
        with pytest.raises(ConfigError, match="expected an integer"):
            config_from_dict(build_raw_config(cache_dir, server={"port": "http"}))


class TestFindOrCreateConfig:
    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        explicit = tmp_path / "mine.yaml"
        explicit.write_text("{}", encoding="utf-8")
        assert find_or_create_config(str(explicit)) == str(explicit)

    def test_search_order(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "config.yaml").write_text("{}", encoding="utf-8")
        (tmp_path / "config.yaml").write_text("{}", encoding="utf-8")
        assert find_or_create_config() == "config.yaml"
        (tmp_path / "config" / "config-dev.yaml").write_text("{}", encoding="utf-8")
        assert find_or_create_config() == "config/config-dev.yaml"

    def test_writes_default_when_nothing_found(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        path = find_or_create_config("missing.yaml")
        assert path == DEFAULT_CONFIG_PATH
        assert "specified config file not found" in capsys.readouterr().out
        # the bundled default is itself a valid config
        cfg = load_config(path)
        assert cfg.default_template == "default"
        assert cfg.cache.directory == "./cache"
