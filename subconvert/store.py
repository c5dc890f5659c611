"""In-memory snapshot of node records and compiled templates.

DataStore publishes an immutable CacheSnapshot through a single reference.
Each reload builds its new section outside the lock, then swaps in a new
top-level snapshot that shares every untouched section with the previous
one. Readers grab the reference once and keep a consistent view no matter
how many reloads land afterwards.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping, Tuple

import jinja2

from .config import Config
from .errors import CacheIOError, NotFoundError, ParseError
from .render import build_environment

logger = logging.getLogger(__name__)

NODE_LIST_FIELD = "outbounds"


@dataclass(frozen=True)
class NodeRecord:
    """One outbound: its unique tag plus the payload exactly as received."""

    tag: str
    payload: Mapping[str, Any]

    def serialize(self) -> str:
        return json.dumps(dict(self.payload), ensure_ascii=False, separators=(",", ":"))


@dataclass(frozen=True)
class NodeSection:
    records: Tuple[NodeRecord, ...] = ()
    serialized: Tuple[str, ...] = ()
    source_path: str = ""
    loaded_at: float = 0.0

    @property
    def tags(self) -> Tuple[str, ...]:
        return tuple(r.tag for r in self.records)


@dataclass(frozen=True)
class TemplateDefinition:
    key: str
    name: str
    enabled: bool
    template: jinja2.Template
    no_node: str
    source_path: str = ""
    loaded_at: float = 0.0


@dataclass(frozen=True)
class CacheSnapshot:
    nodes: NodeSection | None = None
    templates: Mapping[str, TemplateDefinition] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def node_tags(self) -> Tuple[str, ...]:
        return self.nodes.tags if self.nodes else ()

    @property
    def node_payloads(self) -> Tuple[str, ...]:
        return self.nodes.serialized if self.nodes else ()

    @property
    def node_count(self) -> int:
        return len(self.nodes.records) if self.nodes else 0

    @property
    def template_count(self) -> int:
        return len(self.templates)

    @property
    def has_data(self) -> bool:
        return self.node_count > 0

    @property
    def has_template(self) -> bool:
        return self.template_count > 0


def parse_node_document(raw: bytes | str) -> Tuple[NodeRecord, ...]:
    """Parse a node-list document; records without a string tag are skipped, first tag wins."""
    try:
        doc = json.loads(raw)
    except (ValueError, RecursionError) as e:
        raise ParseError(f"parse node file error: {e}") from e
    if not isinstance(doc, dict):
        raise ParseError("node file must be a JSON object")
    outbounds = doc.get(NODE_LIST_FIELD)
    if not isinstance(outbounds, list) or not outbounds:
        raise ParseError(f"no {NODE_LIST_FIELD} found in node file")

    seen: set[str] = set()
    records: list[NodeRecord] = []
    for item in outbounds:
        if not isinstance(item, dict):
            continue
        tag = item.get("tag")
        if not isinstance(tag, str) or tag in seen:
            continue
        seen.add(tag)
        records.append(NodeRecord(tag=tag, payload=MappingProxyType(item)))
    return tuple(records)


def _read_cache_file(path: str, what: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError as e:
        raise CacheIOError(f"{what} file not found: {path}") from e
    except OSError as e:
        raise CacheIOError(f"read {what} file error: {e}") from e


class DataStore:
    """Owner of the current CacheSnapshot."""

    def __init__(self, cfg: Config, env: jinja2.Environment | None = None):
        self.cfg = cfg
        self.env = env or build_environment()
        self._snapshot = CacheSnapshot()
        # held only for the read-modify-publish of the top-level reference
        self._swap_lock = threading.Lock()

    def snapshot(self) -> CacheSnapshot:
        return self._snapshot

    def reload_nodes(self) -> NodeSection:
        path = self.cfg.node_file_path
        records = parse_node_document(_read_cache_file(path, "node"))
        section = NodeSection(
            records=records,
            serialized=tuple(r.serialize() for r in records),
            source_path=path,
            loaded_at=time.time(),
        )
        with self._swap_lock:
            self._snapshot = replace(self._snapshot, nodes=section)
        logger.info("loaded node data from %s (%d outbounds)", path, len(records))
        return section

    def reload_template(self, key: str) -> TemplateDefinition:
        tpl_cfg = self.cfg.template(key)
        if tpl_cfg is None or not tpl_cfg.enabled:
            raise NotFoundError(f"template '{key}' not found or not enabled")
        path = self.cfg.template_file_path(key)
        raw = _read_cache_file(path, "template")
        try:
            compiled = self.env.from_string(raw.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise ParseError(f"template {key} is not valid utf-8: {e}") from e
        except (jinja2.TemplateSyntaxError, RecursionError) as e:
            raise ParseError(f"load template error: {e}") from e
        definition = TemplateDefinition(
            key=key,
            name=tpl_cfg.name,
            enabled=tpl_cfg.enabled,
            template=compiled,
            no_node=tpl_cfg.no_node,
            source_path=path,
            loaded_at=time.time(),
        )
        with self._swap_lock:
            templates = dict(self._snapshot.templates)
            templates[key] = definition
            self._snapshot = replace(self._snapshot, templates=MappingProxyType(templates))
        logger.info("loaded template %s from %s", key, path)
        return definition
