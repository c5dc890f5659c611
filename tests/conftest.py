"""Shared fixtures: configs, cache directories, and a scriptable fetcher."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict

import pytest

from subconvert.config import config_from_dict
from subconvert.errors import FetchError
from subconvert.fetcher import write_atomic
from subconvert.log import LOGGER_NAME
from subconvert.store import DataStore

NODES_URL = "https://sub.example.com/nodes.json"
DEFAULT_URL = "https://tpl.example.com/default.json"
ALT_URL = "https://tpl.example.com/alt.json"
OFF_URL = "https://tpl.example.com/off.json"

TEMPLATE_TEXT = (
    '{"type":"{{ setType }}","count":{{ nodeCount }},'
    '"outbounds":[{{ Nodes }}],'
    '"all":[{{ ""|NotesName }}],'
    '"hk_jp":[{{ "HK|JP"|NotesName }}],'
    '"none":[{{ "ZZ"|NotesName }}]}'
)
ALT_TEMPLATE_TEXT = '{"alt":true,"count":{{ nodeCount }},"none":[{{ "ZZ"|NotesName }}]}'


def node_doc(*tags: str, **extra) -> bytes:
    outbounds = [{"tag": t, "type": "vmess", "server": f"{t.lower()}.example.com"} for t in tags]
    return json.dumps({"outbounds": outbounds, **extra}).encode("utf-8")


def build_raw_config(cache_dir, **overrides) -> dict:
    raw = {
        "server": {"port": 8080, "shutdown_timeout": 1},
        "auth": {"password": "secret"},
        "subscription": {"url": NODES_URL, "timeout": 5, "refresh_interval": 60},
        "templates": {
            "default": {"url": DEFAULT_URL, "name": "Default", "no_node": "DIRECT", "enabled": True},
            "alt": {"url": ALT_URL, "name": "Alt", "no_node": "REJECT", "enabled": True},
            "off": {"url": OFF_URL, "name": "Off", "no_node": "NONE", "enabled": False},
        },
        "default_template": "default",
        "cache": {"directory": str(cache_dir), "node_file": "nodes.json"},
        "logging": {"level": "debug"},
    }
    raw.update(overrides)
    return raw


class FakeFetcher:
    """Stands in for Fetcher: serves canned payloads and records concurrency per URL."""

    def __init__(self, payloads: dict | None = None, delay: float = 0.0):
        self.payloads = dict(payloads or {})
        self.delay = delay
        self.calls: list[str] = []
        self.active: dict[str, int] = defaultdict(int)
        self.max_active: dict[str, int] = defaultdict(int)
        self.max_total = 0
        self._total = 0
        self._lock = threading.Lock()
        self.closed = False

    def fetch(self, url: str, dest_path: str) -> int:
        with self._lock:
            self.calls.append(url)
            self.active[url] += 1
            self._total += 1
            self.max_active[url] = max(self.max_active[url], self.active[url])
            self.max_total = max(self.max_total, self._total)
        try:
            if self.delay:
                time.sleep(self.delay)
            payload = self.payloads.get(url)
            if payload is None:
                raise FetchError("fetch failed with status: 404")
            if isinstance(payload, Exception):
                raise payload
            write_atomic(dest_path, payload)
            return len(payload)
        finally:
            with self._lock:
                self.active[url] -= 1
                self._total -= 1

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def cache_dir(tmp_path):
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def cfg(cache_dir):
    config = config_from_dict(build_raw_config(cache_dir))
    config.validate()
    return config


@pytest.fixture
def payloads():
    return {
        NODES_URL: node_doc("HK-1", "US-1", "JP-2"),
        DEFAULT_URL: TEMPLATE_TEXT.encode("utf-8"),
        ALT_URL: ALT_TEMPLATE_TEXT.encode("utf-8"),
    }


@pytest.fixture
def fake_fetcher(payloads):
    return FakeFetcher(payloads)


@pytest.fixture
def store(cfg):
    return DataStore(cfg)


@pytest.fixture
def write_cache(cfg):
    """Write raw bytes into the cache file for 'nodes' or a template key."""

    def _write(which: str, data: bytes) -> None:
        path = cfg.node_file_path if which == "nodes" else cfg.template_file_path(which)
        write_atomic(path, data)

    return _write


@pytest.fixture
def loaded_store(store, write_cache):
    """A store with nodes and the default template loaded; 'alt' left unloaded."""
    write_cache("nodes", node_doc("HK-1", "US-1", "JP-2"))
    write_cache("default", TEMPLATE_TEXT.encode("utf-8"))
    store.reload_nodes()
    store.reload_template("default")
    return store


@pytest.fixture(autouse=True)
def reset_subconvert_logger():
    """Undo setup_logging between tests so caplog sees records again."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
