"""Serialisation of Python values into Nix expressions.

Configuration files are assembled from plain Python data and rendered here,
so every string that ends up in a ``.nix`` file passes through one escaping
routine.  Supported values:

* ``str``, ``bool`` and ``int`` map to their Nix literals;
* lists and tuples map to Nix lists;
* mappings map to attribute sets.  A ``str`` key is one attribute name
  (quoted when it is not a plain identifier); a ``tuple`` key is a dotted
  attribute path such as ``("boot", "loader", "grub", "device")``;
* :class:`NixRaw` is emitted verbatim (``lib.mkForce false``, paths);
* :class:`NixIndentedString` renders an indented ``''`` string.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence, Tuple, Union

__all__ = [
    "NixIndentedString",
    "NixRaw",
    "attr_path",
    "nix_string",
    "render",
    "render_module",
]

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_'-]*$")
_KEYWORDS = frozenset(
    {"assert", "else", "if", "in", "inherit", "let", "or", "rec", "then", "with"}
)
_INLINE_WIDTH = 72


@dataclass(frozen=True)
class NixRaw:
    """An expression emitted without quoting."""

    text: str


@dataclass(frozen=True)
class NixIndentedString:
    """A multi-line ``''`` string, one entry per line."""

    lines: Tuple[str, ...]


AttrKey = Union[str, Tuple[str, ...]]


def nix_string(value: str) -> str:
    """Return ``value`` as a double-quoted Nix string literal."""

    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("${", "\\${")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return f'"{escaped}"'


def _escape_indented_line(line: str) -> str:
    return line.replace("''", "'''").replace("${", "''${")


def _attr_name(name: str) -> str:
    if _IDENTIFIER.match(name) and name not in _KEYWORDS:
        return name
    return nix_string(name)


def attr_path(key: AttrKey) -> str:
    """Return the rendered attribute path for a mapping key."""

    if isinstance(key, tuple):
        if not key:
            raise ValueError("empty attribute path")
        return ".".join(_attr_name(part) for part in key)
    if isinstance(key, str):
        return _attr_name(key)
    raise TypeError(f"unsupported attribute key: {key!r}")


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, bool, int, NixRaw))


def _inline_candidate(value: Any) -> bool:
    if _is_scalar(value):
        return True
    if isinstance(value, Mapping):
        return all(_is_scalar(item) for item in value.values())
    return False


def _render_inline_attrs(value: Mapping[AttrKey, Any]) -> str:
    if not value:
        return "{ }"
    body = " ".join(f"{attr_path(key)} = {render(item)};" for key, item in value.items())
    return "{ " + body + " }"


def render(value: Any, indent: int = 0) -> str:
    """Render ``value`` as a Nix expression starting at column ``indent``."""

    pad = " " * indent
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return nix_string(value)
    if isinstance(value, NixRaw):
        return value.text
    if isinstance(value, NixIndentedString):
        inner = " " * (indent + 2)
        lines = ["''"]
        lines.extend(
            f"{inner}{_escape_indented_line(line)}" if line else "" for line in value.lines
        )
        lines.append(f"{pad}''")
        return "\n".join(lines)
    if isinstance(value, Mapping):
        if not value:
            return "{ }"
        lines = ["{"]
        for key, item in value.items():
            lines.append(f"{pad}  {attr_path(key)} = {render(item, indent + 2)};")
        lines.append(f"{pad}}}")
        return "\n".join(lines)
    if isinstance(value, (list, tuple)):
        if not value:
            return "[ ]"
        if all(_inline_candidate(item) for item in value):
            parts = [
                _render_inline_attrs(item) if isinstance(item, Mapping) else render(item)
                for item in value
            ]
            inline = "[ " + " ".join(parts) + " ]"
            if indent + len(inline) <= _INLINE_WIDTH and not any(
                isinstance(item, Mapping) for item in value
            ):
                return inline
            lines = ["["]
            lines.extend(f"{pad}  {part}" for part in parts)
            lines.append(f"{pad}]")
            return "\n".join(lines)
        lines = ["["]
        for item in value:
            lines.append(f"{pad}  {render(item, indent + 2)}")
        lines.append(f"{pad}]")
        return "\n".join(lines)
    raise TypeError(f"cannot render {type(value).__name__} as Nix: {value!r}")


def render_module(
    arguments: Sequence[str],
    body: Mapping[AttrKey, Any],
    *,
    comments: Sequence[str] = (),
) -> str:
    """Render a NixOS module ``{ args, ... }: { ... }`` ending in a newline."""

    for argument in arguments:
        if not _IDENTIFIER.match(argument):
            raise ValueError(f"invalid module argument: {argument!r}")
    header = "{ " + ", ".join([*arguments, "..."]) + " }:"
    lines = [header, "{"]
    for comment in comments:
        lines.append(f"  # {comment}" if comment else "  #")
    for key, item in body.items():
        lines.append(f"  {attr_path(key)} = {render(item, 2)};")
    lines.append("}")
    return "\n".join(lines) + "\n"
