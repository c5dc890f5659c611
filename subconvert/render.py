"""Render a configured template against the current node snapshot."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, List, Mapping

from jinja2 import Undefined, pass_context
from jinja2.sandbox import SandboxedEnvironment

from .config import Config
from .errors import NotFoundError, RenderError, TemplateNotLoadedError

if TYPE_CHECKING:
    from .store import DataStore

NODE_FILTER_NAME = "NotesName"
NODE_FILTER_KEY = "node_filter"
NODE_SEPARATOR = ",\r\n"


def filter_node_tags(tags: Iterable[str], arg: str, placeholder: str) -> List[str]:
    """Return tags containing any of the pipe-separated substrings in arg.

    An empty arg keeps every tag. An empty result becomes [placeholder].
    """
    tags = list(tags)
    if arg == "":
        selected = tags
    else:
        needles = [n.strip() for n in arg.split("|")]
        needles = [n for n in needles if n]
        selected = [t for t in tags if any(n in t for n in needles)]
    if not selected:
        return [placeholder]
    return selected


def inline_json_list(items: List[str]) -> str:
    """JSON-encode items as comma-joined string literals, without the enclosing brackets."""
    encoded = json.dumps(items, ensure_ascii=False)
    if len(encoded) > 2 and encoded[0] == "[" and encoded[-1] == "]":
        return encoded[1:-1]
    return encoded


@pass_context
def _node_filter(ctx, value: Any) -> str:
    fn = ctx.get(NODE_FILTER_KEY)
    if fn is None:
        raise RenderError(f"{NODE_FILTER_NAME} used outside of a render call")
    if value is None or isinstance(value, Undefined):
        value = ""
    return fn(str(value))


def build_environment() -> SandboxedEnvironment:
    """Template environment for JSON output: no autoescape, trailing newline kept."""
    env = SandboxedEnvironment(autoescape=False, keep_trailing_newline=True)
    # the filter looks up its implementation in the render context, not a global
    env.filters[NODE_FILTER_NAME] = _node_filter
    return env


@dataclass(frozen=True)
class Rendered:
    text: str
    node_count: int
    template_key: str
    template_name: str


class RenderService:
    def __init__(self, cfg: Config, store: "DataStore"):
        self.cfg = cfg
        self.store = store

    def resolve_key(self, template_key: str | None) -> str:
        key = template_key or self.cfg.default_template
        tpl_cfg = self.cfg.template(key)
        if tpl_cfg is None or not tpl_cfg.enabled:
            raise NotFoundError(f"Template '{key}' not found or not enabled")
        return key

    def render(self, template_key: str | None, params: Mapping[str, str]) -> Rendered:
        key = self.resolve_key(template_key)
        snap = self.store.snapshot()
        definition = snap.templates.get(key)
        if definition is None:
            raise TemplateNotLoadedError(f"Template '{key}' not loaded")

        tags = snap.node_tags
        placeholder = definition.no_node

        def node_filter(arg: str) -> str:
            return inline_json_list(filter_node_tags(tags, arg, placeholder))

        context: dict[str, Any] = {
            "Nodes": NODE_SEPARATOR.join(snap.node_payloads),
            "nodeCount": snap.node_count,
            "setType": params.get("type", ""),
            "noNode": placeholder,
            NODE_FILTER_KEY: node_filter,
        }
        try:
            text = definition.template.render(context)
        except RenderError:
            raise
        except Exception as e:
            raise RenderError(f"Server Error: {e}") from e
        return Rendered(text=text, node_count=snap.node_count, template_key=key, template_name=definition.name)
