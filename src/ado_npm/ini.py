"""Codec for the INI dialect used by ``.npmrc`` files.

``npm`` reads and writes its configuration with a small INI variant:

* ``key=value`` pairs at the top level (no section header required),
* ``[section]`` headers producing nested mappings (``[a.b]`` nests twice),
* ``key[]=value`` lines collecting repeated values into a list,
* ``;`` and ``#`` comments, both as whole lines and trailing a value,
* double-quoted values holding JSON strings, single-quoted values taken
  literally, and the bare literals ``true``, ``false`` and ``null``.

:func:`decode` and :func:`encode` follow the same rules so that a file
written by ado-npm remains readable by ``npm`` and vice versa.
"""

from __future__ import annotations

import json
import re
from typing import Any

_LINE_RE = re.compile(r"^\[([^\]]*)\]\s*$|^([^=]+)(=(.*))?$")
_NEEDS_QUOTING_RE = re.compile(r"[=\r\n]")


def decode(text: str) -> dict[str, Any]:
    """Parse INI *text* into a nested dictionary.

    Args:
        text: The raw file contents.

    Returns:
        A mapping of top-level keys and section mappings.
    """
    out: dict[str, Any] = {}
    current = out
    section: str | None = None

    for line in re.split(r"[\r\n]+", text):
        if not line or re.match(r"^\s*[;#]", line) or line.strip() == "":
            continue
        match = _LINE_RE.match(line)
        if not match:
            continue

        if match.group(1) is not None:
            section = _unsafe(match.group(1))
            current = out.setdefault(section, {})
            continue

        key = _unsafe(match.group(2))
        value: Any = _unsafe(match.group(4)) if match.group(3) else True
        if value in ("true", "false", "null"):
            value = json.loads(value)

        if key.endswith("[]") and len(key) > 2:
            key = key[:-2]
            existing = current.get(key)
            if not isinstance(existing, list):
                existing = [] if existing is None else [existing]
                current[key] = existing
            existing.append(value)
        else:
            current[key] = value

    # Dotted section names nest: [a.b] becomes {"a": {"b": {...}}}.
    for name in list(out):
        value = out[name]
        if not isinstance(value, dict) or "." not in name:
            continue
        parts = [p.replace("\1", ".") for p in name.replace("\\.", "\1").split(".")]
        target = out
        for part in parts[:-1]:
            nxt = target.get(part)
            if not isinstance(nxt, dict):
                nxt = {}
                target[part] = nxt
            target = nxt
        if target is out and parts[-1] == name:
            continue
        target[parts[-1]] = value
        del out[name]

    return out


def encode(data: dict[str, Any], section: str | None = None) -> str:
    """Serialise *data* to INI text.

    Top-level scalars are written first, then list entries as ``key[]=``
    lines, then nested mappings as ``[section]`` blocks. ``None`` values are
    omitted.

    Args:
        data: The mapping to encode.
        section: Name of the enclosing section when recursing.

    Returns:
        The encoded text, newline-terminated when non-empty.
    """
    lines: list[str] = []
    children: list[str] = []

    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, dict):
            children.append(key)
        elif isinstance(value, (list, tuple)):
            for item in value:
                if item is not None:
                    lines.append(f"{_safe(key + '[]')}={_safe(item)}")
        else:
            lines.append(f"{_safe(key)}={_safe(value)}")

    out = "\n".join(lines)
    if section and out:
        out = f"[{_safe(section)}]\n{out}"
    elif section and not children:
        out = f"[{_safe(section)}]"
    if out:
        out += "\n"

    for key in children:
        name = key.replace(".", "\\.")
        full = f"{section}.{name}" if section else name
        child = encode(data[key], section=full)
        if child:
            if out:
                out += "\n"
            out += child

    return out


def _safe(value: Any) -> str:
    """Quote or escape a key/value for writing."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if not isinstance(value, str):
        return json.dumps(value)
    if (
        _NEEDS_QUOTING_RE.search(value)
        or value.startswith("[")
        or (len(value) > 1 and _is_quoted(value))
        or value != value.strip()
    ):
        return json.dumps(value)
    return value.replace(";", "\\;").replace("#", "\\#")


def _unsafe(value: str) -> str:
    """Unquote or unescape a raw key/value read from a file."""
    value = value.strip()
    if _is_quoted(value):
        if value[0] == "'":
            return value[1:-1]
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    escaped = False
    result = []
    for char in value:
        if escaped:
            if char in "\\;#":
                result.append(char)
            else:
                result.append("\\" + char)
            escaped = False
        elif char in ";#":
            break
        elif char == "\\":
            escaped = True
        else:
            result.append(char)
    if escaped:
        result.append("\\")
    return "".join(result).strip()


def _is_quoted(value: str) -> bool:
    return len(value) >= 2 and (
        (value[0] == '"' and value[-1] == '"') or (value[0] == "'" and value[-1] == "'")
    )
