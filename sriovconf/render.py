"""Render templated Kubernetes manifests into API object dictionaries."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import jinja2
import yaml
from jinja2 import nodes

_MANIFEST_SUFFIXES = (".yml", ".yaml", ".json")


class RenderError(Exception):
    """A manifest could not be read, rendered or parsed."""


@dataclass
class RenderData:
    """Template functions and data.

    Every data key is a template variable; the whole mapping is also
    available as ``data`` (for ``getOr(data, "Key", "fallback")``).
    """

    funcs: dict[str, Callable[..., Any]] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)


def make_render_data() -> RenderData:
    return RenderData()


def get_or(m: dict, key: str, fallback: Any) -> Any:
    """Return m[key], or fallback when missing or an empty string."""
    if key not in m:
        return fallback
    value = m[key]
    if isinstance(value, str) and value == "":
        return fallback
    return value


def is_set(m: dict, key: str) -> Any:
    """Return m[key] if present (even a zero value), otherwise False."""
    return m[key] if key in m else False


class _MissingKey(jinja2.StrictUndefined):
    @property
    def _undefined_message(self) -> str:
        if self._undefined_hint:
            return self._undefined_hint
        return f'map has no entry for key "{self._undefined_name}"'


def _walk_files(path: str) -> Iterator[str]:
    """Yield files below path in lexical order, not following symlinks."""
    if not os.path.isdir(path) or os.path.islink(path):
        os.lstat(path)
        yield path
        return
    with os.scandir(path) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk_files(entry.path)
        else:
            yield entry.path


def render_dir(manifest_dir: str, data: RenderData) -> list[dict]:
    """Render every manifest file below manifest_dir."""
    out: list[dict] = []
    try:
        for path in _walk_files(manifest_dir):
            if path.endswith(_MANIFEST_SUFFIXES):
                out.extend(render_template(path, data))
    except (OSError, RenderError) as exc:
        raise RenderError(f"error rendering manifests: {exc}") from exc
    return out


def _undefined_functions(tree: nodes.Template, known) -> list[str]:
    local = {n.name for n in tree.find_all(nodes.Name) if n.ctx in ("store", "param")}
    local.update(m.name for m in tree.find_all(nodes.Macro))
    return [
        call.node.name
        for call in tree.find_all(nodes.Call)
        if isinstance(call.node, nodes.Name)
        and call.node.name not in known
        and call.node.name not in local
    ]


def _render(path: str, data: RenderData) -> str:
    env = jinja2.Environment(
        undefined=_MissingKey, keep_trailing_newline=True, autoescape=False
    )
    funcs = {**data.funcs, "getOr": get_or, "isSet": is_set}
    env.globals.update(funcs)
    env.filters.update(funcs)

    try:
        with open(path, encoding="utf-8") as handle:
            source = handle.read()
    except OSError as exc:
        raise RenderError(f"failed to read manifest {path}: {exc}") from exc

    try:
        tree = env.parse(source, name=path)
        missing = _undefined_functions(tree, env.globals)
        if missing:
            raise RenderError(
                f"failed to parse manifest {path} as template: "
                f'template: {path}: function "{missing[0]}" not defined'
            )
        template = env.from_string(tree)
    except jinja2.TemplateSyntaxError as exc:
        raise RenderError(f"failed to parse manifest {path} as template: {exc}") from exc

    context = {"data": data.data}
    context.update(data.data)
    try:
        return template.render(context)
    except Exception as exc:
        raise RenderError(f"failed to render manifest {path}: {exc}") from exc


def _decode(text: str, path: str) -> list[Any]:
    stripped = text.lstrip()
    if stripped.startswith("{"):
        decoder = json.JSONDecoder()
        docs, pos = [], 0
        while pos < len(stripped):
            doc, pos = decoder.raw_decode(stripped, pos)
            docs.append(doc)
            while pos < len(stripped) and stripped[pos].isspace():
                pos += 1
        return docs
    return [doc for doc in yaml.safe_load_all(text) if doc is not None]


def render_template(path: str, data: RenderData) -> list[dict]:
    """Render one manifest file and parse the objects it holds."""
    rendered = _render(path, data)
    if not rendered.strip():
        return []
    try:
        docs = _decode(rendered, path)
    except (ValueError, yaml.YAMLError) as exc:
        raise RenderError(f"failed to unmarshal manifest {path}: {exc}") from exc
    for doc in docs:
        if not isinstance(doc, dict):
            raise RenderError(f"failed to unmarshal manifest {path}: not an object")
        if not doc.get("kind"):
            raise RenderError(
                f"failed to unmarshal manifest {path}: Object 'Kind' is missing"
            )
    return docs