"""YAML configuration with environment overrides.

The loaded Config is immutable; a changed config file produces a brand new
Config through instance reconstruction rather than being patched in place.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping

import yaml

from .errors import ConfigError

DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_SHUTDOWN_TIMEOUT = 5
DEFAULT_NODE_FILE = "nodes.json"
CONFIG_SEARCH_PATHS = ("config/config-dev.yaml", "config.yaml", "config/config.yaml")
DEFAULT_CONFIG_PATH = "config/config.yaml"

DEFAULT_CONFIG = """\
server:
  port: 8080
  read_timeout: 30
  write_timeout: 30
  idle_timeout: 60
  shutdown_timeout: 5

auth:
  password: "change-me"

subscription:
  url: "https://example.com/nodes.json"
  timeout: 30
  # minutes
  refresh_interval: 60

templates:
  default:
    url: "https://example.com/template.json"
    name: "Default"
    no_node: "DIRECT"
    enabled: true

default_template: default

cache:
  directory: "./cache"
  node_file: "nodes.json"

cloudflare:
  enabled: false
  purge_url: ""
  api_token: ""
  api_key: ""
  api_email: ""

logging:
  level: info
  file: ""
  production: false
  max_size: 10
  max_backups: 3
"""


@dataclass(frozen=True)
class ServerConfig:
    port: int = 8080
    read_timeout: int = 0
    write_timeout: int = 0
    idle_timeout: int = 0
    shutdown_timeout: int = DEFAULT_SHUTDOWN_TIMEOUT


@dataclass(frozen=True)
class SubscriptionConfig:
    url: str = ""
    timeout: int = 0
    refresh_interval: int = 0  # minutes


@dataclass(frozen=True)
class TemplateConfig:
    url: str = ""
    name: str = ""
    no_node: str = ""
    enabled: bool = False


@dataclass(frozen=True)
class CacheConfig:
    directory: str = ""
    node_file: str = DEFAULT_NODE_FILE


@dataclass(frozen=True)
class CloudflareConfig:
    enabled: bool = False
    purge_url: str = ""
    api_token: str = ""
    api_key: str = ""
    api_email: str = ""


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "info"
    file: str = ""
    production: bool = False
    max_size: int = 10  # MB
    max_backups: int = 3


@dataclass(frozen=True)
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    password: str = ""
    subscription: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    templates: Mapping[str, TemplateConfig] = field(default_factory=dict)
    default_template: str = ""
    cache: CacheConfig = field(default_factory=CacheConfig)
    cloudflare: CloudflareConfig = field(default_factory=CloudflareConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source_path: str = ""

    @property
    def node_file_path(self) -> str:
        return os.path.join(self.cache.directory, self.cache.node_file or DEFAULT_NODE_FILE)

    def template_file_path(self, key: str) -> str:
        return os.path.join(self.cache.directory, f"template_{key}.json")

    def enabled_templates(self) -> Dict[str, TemplateConfig]:
        return {key: tpl for key, tpl in self.templates.items() if tpl.enabled}

    def template(self, key: str) -> TemplateConfig | None:
        return self.templates.get(key)

    @property
    def refresh_interval_seconds(self) -> float:
        return float(self.subscription.refresh_interval * 60)

    @property
    def request_timeout(self) -> float:
        if self.subscription.timeout > 0:
            return float(self.subscription.timeout)
        return float(DEFAULT_REQUEST_TIMEOUT)

    def validate(self) -> None:
        if self.server.port <= 0 or self.server.port > 65535:
            raise ConfigError(f"invalid server port: {self.server.port}")
        if not self.password:
            raise ConfigError("password cannot be empty")
        if not self.cache.directory:
            raise ConfigError("cache directory cannot be empty")
        if not self.subscription.url:
            raise ConfigError("subscription url cannot be empty")
        if self.subscription.refresh_interval <= 0:
            raise ConfigError("subscription refresh_interval must be greater than 0")
        if not self.templates:
            raise ConfigError("at least one template must be configured")
        if not self.default_template:
            raise ConfigError("default_template cannot be empty")
        if self.default_template not in self.templates:
            raise ConfigError(f"default_template '{self.default_template}' not found in templates")
        if not self.enabled_templates():
            raise ConfigError("at least one template must be enabled")


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    val = raw.get(name)
    if val is None:
        return {}
    if not isinstance(val, dict):
        raise ConfigError(f"section '{name}' must be a mapping")
    return val


def _as_int(val: Any, default: int = 0) -> int:
    if val is None or val == "":
        return default
    try:
        return int(val)
    except (TypeError, ValueError):
        raise ConfigError(f"expected an integer, got {val!r}") from None


def _as_str(val: Any) -> str:
    return "" if val is None else str(val)


def config_from_dict(raw: Dict[str, Any], source_path: str = "") -> Config:
    """Build a Config from a parsed YAML document (no env overrides, no validation)."""
    if not isinstance(raw, dict):
        raise ConfigError("config document must be a mapping")
    server = _section(raw, "server")
    sub = _section(raw, "subscription")
    cache = _section(raw, "cache")
    cf = _section(raw, "cloudflare")
    lg = _section(raw, "logging")

    templates: Dict[str, TemplateConfig] = {}
    for key, tpl in _section(raw, "templates").items():
        if not isinstance(tpl, dict):
            raise ConfigError(f"template '{key}' must be a mapping")
        templates[str(key)] = TemplateConfig(
            url=_as_str(tpl.get("url")),
            name=_as_str(tpl.get("name")),
            no_node=_as_str(tpl.get("no_node")),
            enabled=bool(tpl.get("enabled")),
        )

    return Config(
        server=ServerConfig(
            port=_as_int(server.get("port")),
            read_timeout=_as_int(server.get("read_timeout")),
            write_timeout=_as_int(server.get("write_timeout")),
            idle_timeout=_as_int(server.get("idle_timeout")),
            shutdown_timeout=_as_int(server.get("shutdown_timeout"), DEFAULT_SHUTDOWN_TIMEOUT),
        ),
        password=_as_str(_section(raw, "auth").get("password")),
        subscription=SubscriptionConfig(
            url=_as_str(sub.get("url")),
            timeout=_as_int(sub.get("timeout")),
            refresh_interval=_as_int(sub.get("refresh_interval")),
        ),
        templates=templates,
        default_template=_as_str(raw.get("default_template")),
        cache=CacheConfig(
            directory=_as_str(cache.get("directory")),
            node_file=_as_str(cache.get("node_file")) or DEFAULT_NODE_FILE,
        ),
        cloudflare=CloudflareConfig(
            enabled=bool(cf.get("enabled")),
            purge_url=_as_str(cf.get("purge_url")),
            api_token=_as_str(cf.get("api_token")),
            api_key=_as_str(cf.get("api_key")),
            api_email=_as_str(cf.get("api_email")),
        ),
        logging=LoggingConfig(
            level=_as_str(lg.get("level")) or "info",
            file=_as_str(lg.get("file")),
            production=bool(lg.get("production")),
            max_size=_as_int(lg.get("max_size"), 10),
            max_backups=_as_int(lg.get("max_backups"), 3),
        ),
        source_path=source_path,
    )


def _env_int(name: str) -> int | None:
    val = os.getenv(name)
    if not val:
        return None
    try:
        return int(val.strip())
    except ValueError:
        return None


def apply_env_overrides(cfg: Config) -> Config:
    """Return cfg with SERVER_PORT, PASSWORD, SUBSCRIPTION_URL, DEFAULT_TEMPLATE, CACHE_DIR, REFRESH_INTERVAL applied."""
    port = _env_int("SERVER_PORT")
    if port is not None:
        cfg = replace(cfg, server=replace(cfg.server, port=port))
    if os.getenv("PASSWORD"):
        cfg = replace(cfg, password=os.environ["PASSWORD"])
    if os.getenv("SUBSCRIPTION_URL"):
        cfg = replace(cfg, subscription=replace(cfg.subscription, url=os.environ["SUBSCRIPTION_URL"]))
    if os.getenv("DEFAULT_TEMPLATE"):
        cfg = replace(cfg, default_template=os.environ["DEFAULT_TEMPLATE"])
    if os.getenv("CACHE_DIR"):
        cfg = replace(cfg, cache=replace(cfg.cache, directory=os.environ["CACHE_DIR"]))
    interval = _env_int("REFRESH_INTERVAL")
    if interval is not None:
        cfg = replace(cfg, subscription=replace(cfg.subscription, refresh_interval=interval))
    return cfg


def load_config(path: str) -> Config:
    """Read, override from the environment, and validate the config at path."""
    realpath = os.path.abspath(path)
    if not os.path.isfile(realpath):
        raise ConfigError(f"config file not found: {realpath}")
    try:
        with open(realpath, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"read config file error: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"parse config error: {e}") from e
    cfg = apply_env_overrides(config_from_dict(raw or {}, source_path=realpath))
    cfg.validate()
    return cfg


def find_or_create_config(explicit: str | None = None) -> str:
    """Return the config path to use, writing the bundled default if none exists."""
    if explicit:
        if os.path.exists(explicit):
            return explicit
        print(f"Warning: specified config file not found: {explicit}", flush=True)
    for candidate in CONFIG_SEARCH_PATHS:
        if os.path.exists(candidate):
            return candidate
    try:
        os.makedirs(os.path.dirname(DEFAULT_CONFIG_PATH), exist_ok=True)
        with open(DEFAULT_CONFIG_PATH, "w", encoding="utf-8") as f:
            f.write(DEFAULT_CONFIG)
    except OSError as e:
        raise ConfigError(f"failed to create default config: {e}") from e
    print(f"[config] default config file created: {DEFAULT_CONFIG_PATH}", flush=True)
    print("[config] set auth.password, subscription.url, and template urls, then restart", flush=True)
    return DEFAULT_CONFIG_PATH
