"""Markdown documents with a flat metadata header.

Two header styles are understood::

    ---                         +++
    status: review              name = "senior-coder"
    trace_id: "550e8400-..."    model = "default"
    ---                         +++

The ``---`` style is used for plans and requests, ``+++`` for blueprint
metadata. Splitting and rendering go through python-frontmatter; the
handlers below keep headers as flat ``str -> str`` maps. YAML scalars are
read as plain strings (no dates, booleans or numbers) and, on write, values
containing a colon or shaped like a UUID are double-quoted. A missing or
unclosed header yields empty metadata and the whole text as the body.
"""

from __future__ import annotations

import json
import re
import tomllib
from dataclasses import dataclass, field
from typing import Any

import frontmatter
import yaml
from frontmatter.default_handlers import BaseHandler, YAMLHandler

from reviewgate.errors import DocumentFormatError

YAML_DELIMITER = "---"
TOML_DELIMITER = "+++"

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_BARE_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class Document:
    metadata: dict[str, str] = field(default_factory=dict)
    body: str = ""
    delimiter: str = YAML_DELIMITER


def needs_quotes(value: str) -> bool:
    return (
        ":" in value
        or bool(UUID_RE.match(value))
        or value != value.strip()
        or value.startswith(("'", '"', "#"))
    )


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------


class _HeaderDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, value: str) -> yaml.ScalarNode:
    style = '"' if needs_quotes(value) else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", value, style=style)


_HeaderDumper.add_representer(str, _represent_str)


class FlatYAMLHandler(YAMLHandler):
    """``---`` headers; every scalar stays a string."""

    def load(self, fm: str, **kwargs: Any) -> dict[str, str]:
        try:
            data = yaml.load(fm, Loader=yaml.BaseLoader)
        except yaml.YAMLError as exc:
            raise DocumentFormatError(f"Malformed YAML header: {exc}") from exc
        return _flatten(data)

    def export(self, metadata: dict[str, str], **kwargs: Any) -> str:
        if not metadata:
            return ""
        return yaml.dump(
            metadata,
            Dumper=_HeaderDumper,
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
            width=float("inf"),
        ).strip()


class FlatTOMLHandler(BaseHandler):
    """``+++`` headers; every value is written as a quoted TOML string."""

    FM_BOUNDARY = re.compile(r"^\+{3,}\s*$", re.MULTILINE)
    START_DELIMITER = END_DELIMITER = TOML_DELIMITER

    def load(self, fm: str, **kwargs: Any) -> dict[str, str]:
        try:
            data = tomllib.loads(fm)
        except tomllib.TOMLDecodeError as exc:
            raise DocumentFormatError(f"Malformed TOML header: {exc}") from exc
        return _flatten(data)

    def export(self, metadata: dict[str, str], **kwargs: Any) -> str:
        lines = []
        for key, value in metadata.items():
            name = key if _BARE_KEY_RE.match(key) else json.dumps(key, ensure_ascii=False)
            lines.append(f"{name} = {json.dumps(value, ensure_ascii=False)}")
        return "\n".join(lines)


HANDLERS: dict[str, BaseHandler] = {
    YAML_DELIMITER: FlatYAMLHandler(),
    TOML_DELIMITER: FlatTOMLHandler(),
}


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------


def parse_document(text: str) -> Document:
    text = text.replace("\r\n", "\n")
    handler = frontmatter.detect_format(text.lstrip(), list(HANDLERS.values()))
    if handler is None:
        return Document(metadata={}, body=text)

    metadata, body = frontmatter.parse(text, handler=handler)
    return Document(metadata=dict(metadata), body=body, delimiter=handler.START_DELIMITER)


def extract_metadata(text: str) -> dict[str, str]:
    return parse_document(text).metadata


def serialize_metadata(metadata: dict[str, str], delimiter: str = YAML_DELIMITER) -> str:
    """Render a header block, fences included, without a trailing newline."""
    handler = _handler_for(delimiter)
    exported = handler.export(_checked(metadata))
    parts = [handler.START_DELIMITER, exported, handler.END_DELIMITER]
    return "\n".join(part for part in parts if part)


def render_document(document: Document) -> str:
    handler = _handler_for(document.delimiter)
    post = frontmatter.Post(document.body, handler=handler)
    post.metadata.update(_checked(document.metadata))
    return frontmatter.dumps(post, handler=handler).rstrip("\n") + "\n"


# ----------------------------------------------------------------------
# Internal helpers
# ----------------------------------------------------------------------


def _handler_for(delimiter: str) -> BaseHandler:
    try:
        return HANDLERS[delimiter]
    except KeyError:
        raise DocumentFormatError(f"Unknown header delimiter: {delimiter!r}") from None


def _flatten(data: Any) -> dict[str, str]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DocumentFormatError("Document header must be a key/value map")
    flat: dict[str, str] = {}
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            raise DocumentFormatError(f"Metadata value for {key!r} must be a single value")
        if isinstance(value, bool):
            value = "true" if value else "false"
        flat[str(key)] = value if isinstance(value, str) else str(value)
    return flat


def _checked(metadata: dict[str, str]) -> dict[str, str]:
    checked: dict[str, str] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        key, value = str(key), str(value)
        if not key.strip() or key != key.strip() or any(c in key for c in ":=\n#"):
            raise DocumentFormatError(f"Invalid metadata key: {key!r}")
        if "\n" in value or "\r" in value:
            raise DocumentFormatError(f"Metadata value for {key!r} must be a single line")
        checked[key] = value
    return checked
