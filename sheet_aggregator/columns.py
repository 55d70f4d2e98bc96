"""Column references: header names, spreadsheet letters and 1-based numbers."""

from __future__ import annotations

import re
from datetime import date, datetime, time
from typing import Any, Optional, Sequence

from openpyxl.utils import column_index_from_string

from sheet_aggregator.errors import ConfigurationError

LETTERS_RE = re.compile(r"^[A-Z]+$")
DIGITS_RE = re.compile(r"^\d+$")
NATURAL_CHUNK_RE = re.compile(r"(\d+)")
MAX_COLUMN_LETTERS = 3


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def to_text(value: Any) -> str:
    """Cell value as the text the matchers and reports see."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, (date, time)):
        return value.isoformat()
    return str(value)


def header_names(header_values: Sequence[Any]) -> list[str]:
    return [to_text(value) for value in header_values]


def parse_column_identifier(identifier: str) -> Optional[int]:
    """Letter (A=0) or 1-based number to a 0-based index; None when neither."""
    if not isinstance(identifier, str):
        return None
    part = identifier.strip().upper()
    if not part:
        return None
    if LETTERS_RE.match(part):
        if len(part) > MAX_COLUMN_LETTERS:
            return None
        try:
            return column_index_from_string(part) - 1
        except ValueError:
            return None
    if DIGITS_RE.match(part):
        number = int(part)
        return number - 1 if number > 0 else None
    return None


def resolve_column(identifier: str, headers: Optional[Sequence[str]] = None) -> Optional[int]:
    """Header name first (case-insensitive exact), then letter, then 1-based number."""
    if not isinstance(identifier, str):
        return None
    trimmed = identifier.strip()
    if not trimmed:
        return None
    if headers:
        wanted = trimmed.lower()
        for index, header in enumerate(headers):
            if header is not None and str(header).lower() == wanted:
                return index
    return parse_column_identifier(trimmed)


def validate_column_spec(spec: str, *, sheet: Optional[str] = None) -> None:
    """Reject empty lists and range tokens that do not have exactly two non-empty ends."""
    if not isinstance(spec, str) or not spec.strip():
        raise ConfigurationError("Column list is empty", sheet=sheet, identifier=spec)
    for token in spec.split(","):
        token = token.strip()
        if ":" not in token:
            continue
        ends = token.split(":")
        if len(ends) != 2 or not ends[0].strip() or not ends[1].strip():
            raise ConfigurationError("Invalid column range syntax", sheet=sheet, identifier=token)


def parse_column_list(spec: str, headers: Optional[Sequence[str]] = None) -> list[int]:
    """Expand ``"A,C,E:G"`` or ``"Name,Email"`` to sorted, de-duplicated indices.

    Unresolvable tokens are dropped; a range needs both ends resolved and start <= end.
    """
    indices: set[int] = set()
    if not isinstance(spec, str):
        return []
    for token in spec.split(","):
        token = token.strip()
        if not token:
            continue
        if ":" in token:
            ends = token.split(":")
            if len(ends) != 2:
                continue
            start = resolve_column(ends[0], headers)
            end = resolve_column(ends[1], headers)
            if start is not None and end is not None and start <= end:
                indices.update(range(start, end + 1))
            continue
        index = resolve_column(token, headers)
        if index is not None:
            indices.add(index)
    return sorted(indices)


def natural_key(text: str) -> tuple:
    """Case-insensitive sort key that orders embedded numbers numerically."""
    parts = NATURAL_CHUNK_RE.split(text)
    key = []
    for part in parts:
        if part.isdigit():
            key.append((0, int(part), ""))
        elif part:
            key.append((1, 0, part.casefold()))
    return tuple(key)


def natural_sorted(values) -> list[str]:
    return sorted(values, key=lambda value: (natural_key(value), value))
