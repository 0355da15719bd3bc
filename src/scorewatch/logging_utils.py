from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from textwrap import wrap
from typing import Optional, Union

WRAP_WIDTH = 100
LABEL_WIDTH = 20
INDENT = "    "
MASK_VISIBLE = 6

FieldMapping = Union[Mapping[str, object], Sequence[tuple[str, object]]]


def mask_address(address: Optional[str]) -> str:
    """Shorten a push address for logs, keeping only its tail."""
    if not address:
        return "<none>"
    if len(address) <= MASK_VISIBLE:
        return "*" * len(address)
    return f"...{address[-MASK_VISIBLE:]}"


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, tuple, set, frozenset)):
        return ", ".join(_text(item) for item in value)
    return str(value)


def _wrapped(text: str, width: int) -> list[str]:
    lines: list[str] = []
    for raw in text.splitlines() or [""]:
        lines.extend(wrap(raw, width=width) or [""])
    return lines


def _header(title: str, pad_top: bool) -> list[str]:
    lines = [""] if pad_top else []
    lines.extend([title, "-" * len(title)])
    return lines


def render_fields_block(title: str, fields: FieldMapping, *, pad_top: bool = True) -> str:
    """Render a titled block of ``label: value`` lines for multi-line log records."""
    items = list(fields.items()) if isinstance(fields, Mapping) else list(fields)
    lines = _header(title, pad_top)
    if items:
        label_width = max(min(max(len(str(key)) for key, _ in items), LABEL_WIDTH), 8)
        value_width = max(WRAP_WIDTH - len(INDENT) - label_width - 2, 32)
        for key, value in items:
            first, *rest = _wrapped(_text(value), value_width)
            lines.append(f"{INDENT}{str(key):<{label_width}}: {first}")
            lines.extend(f"{INDENT}{'':<{label_width}}  {line}" for line in rest)
    return "\n".join(lines).rstrip()


def render_section_block(
    title: str,
    sections: Sequence[tuple[str, Iterable[str]]],
    *,
    pad_top: bool = True,
    empty_label: str = "(none)",
) -> str:
    lines = _header(title, pad_top)
    for heading, items in sections:
        lines.extend(["", f"{heading}:"])
        entries = [_text(item) for item in items if item is not None]
        if not entries:
            lines.append(f"{INDENT}{empty_label}")
            continue
        for entry in entries:
            first, *rest = _wrapped(entry, WRAP_WIDTH - len(INDENT) - 2)
            lines.append(f"{INDENT}- {first}")
            lines.extend(f"{INDENT}  {line}" for line in rest)
    return "\n".join(lines).rstrip()
