"""Term→key mappings, term scoring and row-level winner selection."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

from sheet_aggregator.columns import is_blank, to_text
from sheet_aggregator.config import MATCH_MODES, MatchMode
from sheet_aggregator.errors import ConfigurationError

logger = logging.getLogger(__name__)

# A "letter" is any Unicode word character that is not a digit or underscore.
NOT_AFTER_LETTER = r"(?<![^\W\d_])"
NOT_BEFORE_LETTER = r"(?![^\W\d_])"


def parse_value_to_key_map(text: str) -> dict[str, str]:
    """Parse ``term : key`` and bare ``key`` lines into a lower-cased term → key map."""
    mapping: dict[str, str] = {}
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        if ":" in line:
            term, key = line.split(":", 1)
            term = term.strip().lower()
            key = key.strip()
            if term and key:
                mapping[term] = key
        else:
            mapping[line.lower()] = line
    return mapping


def mapping_text_from_object(payload: Any) -> str:
    if not isinstance(payload, dict):
        raise ConfigurationError("Mapping JSON must be an object of term -> key")
    return "\n".join(f"{str(term).strip()} : {str(key).strip()}" for term, key in payload.items())


def load_mapping_file(path: Path) -> str:
    """Read mapping lines from a text file, or convert a JSON object file to lines."""
    path = Path(path)
    raw = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Could not parse mapping JSON: {exc}", identifier=str(path)) from exc
        return mapping_text_from_object(payload)
    return raw


def parse_group_mappings(text: str) -> dict[str, list[str]]:
    """``Group: key1, key2`` lines. Lines with more than one colon are ignored."""
    groups: dict[str, list[str]] = {}
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        parts = line.split(":")
        if len(parts) != 2:
            continue
        group_name = parts[0].strip()
        keys = [key.strip() for key in parts[1].split(",") if key.strip()]
        if group_name and keys:
            groups[group_name] = keys
    return groups


def whole_word_pattern(term: str) -> re.Pattern:
    return re.compile(NOT_AFTER_LETTER + re.escape(term) + NOT_BEFORE_LETTER, re.IGNORECASE)


def term_score(cell_text: str, term: str, mode: MatchMode = "whole") -> int:
    """Score one term against one cell's text; 0 means no match."""
    return _CompiledTerm(term, mode).score(cell_text)


class _CompiledTerm:
    __slots__ = ("term", "mode", "patterns")

    def __init__(self, term: str, mode: MatchMode) -> None:
        if mode not in MATCH_MODES:
            raise ConfigurationError(f"Unknown match mode {mode!r}")
        self.term = term
        self.mode = mode
        if mode == "loose":
            self.patterns = [whole_word_pattern(word) for word in term.split()]
        elif mode == "partial":
            self.patterns = [re.compile(re.escape(term), re.IGNORECASE)] if term else []
        else:
            self.patterns = [whole_word_pattern(term)] if term else []

    def score(self, text: str) -> int:
        if not text or not self.patterns:
            return 0
        if self.mode == "loose":
            if all(pattern.search(text) for pattern in self.patterns):
                return len(self.patterns)
            return 0
        return len(self.patterns[0].findall(text))


@dataclass(frozen=True)
class TermHit:
    term: str
    key: str
    score: int


@dataclass
class RowMatch:
    scores: dict[str, int] = field(default_factory=dict)
    triggers: dict[str, tuple[int, str]] = field(default_factory=dict)

    @property
    def winner(self) -> Optional[str]:
        return select_winner(self.scores)


class TermMatcher:
    """Every term of a value-to-key map compiled once for a scan."""

    def __init__(self, value_to_key_map: dict[str, str], mode: MatchMode = "whole") -> None:
        self.mode = mode
        self._terms = [(_CompiledTerm(term, mode), key) for term, key in value_to_key_map.items() if term]

    def hits(self, text: str) -> list[TermHit]:
        found = []
        for compiled, key in self._terms:
            score = compiled.score(text)
            if score > 0:
                found.append(TermHit(compiled.term, key, score))
        return found

    def score_row(self, row: Sequence[Any], column_indices: Sequence[int]) -> RowMatch:
        """Max score per key across the searched columns; remembers the first triggering cell."""
        match = RowMatch()
        for index in column_indices:
            if index >= len(row):
                continue
            value = row[index]
            if is_blank(value):
                continue
            text = to_text(value)
            for hit in self.hits(text):
                if hit.score > match.scores.get(hit.key, 0):
                    match.scores[hit.key] = hit.score
                match.triggers.setdefault(hit.key, (index, text))
        return match


def select_winner(scores: dict[str, int]) -> Optional[str]:
    """Highest score wins; ties go to the lexicographically smallest key."""
    if not scores:
        return None
    return min(scores.items(), key=lambda item: (-item[1], item[0]))[0]
