"""``{Column}`` substitution for marker values."""

from __future__ import annotations

import re
from typing import Any, Sequence

from sheet_aggregator.columns import resolve_column, to_text

TOKEN_RE = re.compile(r"\{([^{}]+)\}")
PURE_TOKEN_RE = re.compile(r"^\{([^{}]+)\}$")


def has_tokens(template: str) -> bool:
    return bool(TOKEN_RE.search(template or ""))


def render_template(template: str, headers: Sequence[str], row: Sequence[Any]) -> Any:
    """Substitute ``{identifier}`` tokens with the row's cell for that column.

    A template that is exactly one token returns the cell's typed value, or the
    template itself when the column cannot be resolved. Otherwise each token
    becomes the cell text, or an empty string.
    """
    if not template:
        return template

    def cell_for(identifier: str):
        index = resolve_column(identifier.strip(), headers)
        if index is None or index >= len(row):
            return None, index is not None
        return row[index], True

    pure = PURE_TOKEN_RE.match(template)
    if pure:
        value, resolved = cell_for(pure.group(1))
        return value if resolved else template

    def replace(match: re.Match) -> str:
        value, _ = cell_for(match.group(1))
        return to_text(value)

    return TOKEN_RE.sub(replace, template)
