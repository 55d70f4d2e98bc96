"""Apply reporting-key renames and merges to an AggregationResult without re-scanning."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Mapping, Optional

from sheet_aggregator.columns import natural_sorted
from sheet_aggregator.config import DEFAULT_BLANK_LABEL
from sheet_aggregator.engine import AggregationResult, BlankCounts


@dataclass(frozen=True)
class KeyEditResolution:
    result: AggregationResult
    blank_label: str
    resolution: dict[str, str]
    edited_to_originals: dict[str, list[str]]

    def resolve(self, key: str) -> str:
        return self.resolution.get(key, key)


def normalize_blank_label(label: Optional[str]) -> str:
    return (label or "").strip() or DEFAULT_BLANK_LABEL


def editable_keys(result: AggregationResult, blank_label: Optional[str] = None) -> list[str]:
    """Keys the user may rename: every reporting key plus the blank label when blanks were found."""
    keys = list(result.reporting_keys)
    label = normalize_blank_label(blank_label)
    if result.blank_total > 0 and label not in keys:
        keys.append(label)
    return keys


def resolve_key_edits(
    result: AggregationResult,
    edits: Optional[Mapping[str, str]] = None,
    blank_label: Optional[str] = None,
) -> KeyEditResolution:
    """Build a new result where each original key is counted under its edited name.

    Blank edits keep the original name. Several originals may collapse onto one
    edited key; totals are re-summed from the per-sheet counts so they always
    equal the sum over sheets.
    """
    edits = edits or {}
    label = normalize_blank_label(blank_label)

    resolution: dict[str, str] = {}
    for key in editable_keys(result, label):
        edited = (edits.get(key) or "").strip()
        resolution[key] = edited or key

    def resolve(key: str) -> str:
        return resolution.get(key, key)

    edited_to_originals: dict[str, list[str]] = {}
    for original, final in resolution.items():
        edited_to_originals.setdefault(final, []).append(original)

    per_sheet: dict[str, dict[str, int]] = {}
    for sheet_name, counts in result.per_sheet_counts.items():
        bucket: dict[str, int] = {}
        for key, count in counts.items():
            final = resolve(key)
            bucket[final] = bucket.get(final, 0) + count
        blanks = result.sheet_blank_count(sheet_name)
        if blanks > 0:
            final = resolve(label)
            bucket[final] = bucket.get(final, 0) + blanks
        per_sheet[sheet_name] = bucket

    totals: dict[str, int] = {}
    for counts in per_sheet.values():
        for key, count in counts.items():
            totals[key] = totals.get(key, 0) + count

    final_blank_label = resolve(label)
    blank_counts = None
    if result.blank_counts is not None:
        blank_per_sheet = {sheet: counts.get(final_blank_label, 0) for sheet, counts in per_sheet.items()}
        blank_counts = BlankCounts(sum(blank_per_sheet.values()), blank_per_sheet)

    resolved = replace(
        result,
        total_counts=totals,
        per_sheet_counts=per_sheet,
        reporting_keys=natural_sorted(key for key, count in totals.items() if count > 0),
        value_to_key_map={term: resolve(key) for term, key in result.value_to_key_map.items()},
        blank_counts=blank_counts,
    )
    return KeyEditResolution(resolved, final_blank_label, resolution, edited_to_originals)
