"""Multi-sheet aggregation: term or key matching, blank tracking, key discovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from openpyxl.utils.cell import coordinate_to_tuple

from sheet_aggregator.columns import (
    header_names,
    is_blank,
    natural_sorted,
    parse_column_list,
    resolve_column,
    to_text,
    validate_column_spec,
)
from sheet_aggregator.config import (
    BLANK_MODES,
    KeyMatchConfig,
    ScanConfig,
    ScanOptions,
    ValueMatchConfig,
)
from sheet_aggregator.errors import ConfigurationError
from sheet_aggregator.grid import WorkbookHandle, column_letter
from sheet_aggregator.matching import TermHit, TermMatcher, select_winner
from sheet_aggregator.progress import (
    STAGE_AGGREGATING,
    STAGE_DISCOVERING,
    CancellationToken,
    ProgressCallback,
    ProgressUpdate,
    check_cancelled,
)

logger = logging.getLogger(__name__)

REPORT_SHEET_PREFIXES = (
    "update_report",
    "aggregation_report",
    "aggregation_data_source",
    "key_mappings",
    "key mappings",
    "blank_cell_details",
    "pre-edit summary",
    "post-edit summary",
    "group_report",
    "compiled_summaries",
)
ROW_POLL_INTERVAL = 5000


@dataclass(frozen=True)
class BlankCounts:
    total: int
    per_sheet: dict[str, int]


@dataclass(frozen=True)
class BlankDetail:
    sheet_name: str
    row_number: int
    row_data: dict[str, Any]


@dataclass(frozen=True)
class AggregationResult:
    """Counts from one scan. ``matching_rows`` holds data-row offsets (0 = first row after the header)."""

    total_counts: dict[str, int]
    per_sheet_counts: dict[str, dict[str, int]]
    reporting_keys: list[str]
    value_to_key_map: dict[str, str]
    processed_sheet_names: list[str]
    scan: ScanConfig
    header_row: int = 1
    blank_counts: Optional[BlankCounts] = None
    blank_details: Optional[list[BlankDetail]] = None
    matching_rows: dict[str, frozenset[int]] = field(default_factory=dict)
    sheet_key_column_indices: dict[str, int] = field(default_factory=dict)
    sheet_titles: dict[str, str] = field(default_factory=dict)
    skipped_sheets: list[tuple[str, str]] = field(default_factory=list)

    @property
    def blank_total(self) -> int:
        return self.blank_counts.total if self.blank_counts else 0

    def sheet_blank_count(self, sheet_name: str) -> int:
        if self.blank_counts is None:
            return 0
        return self.blank_counts.per_sheet.get(sheet_name, 0)

    def count_for(self, sheet_name: str, key: str, blank_label: Optional[str] = None) -> int:
        if blank_label is not None and key == blank_label:
            return self.sheet_blank_count(sheet_name)
        return self.per_sheet_counts.get(sheet_name, {}).get(key, 0)

    def keys_with_blanks(self, blank_label: Optional[str]) -> list[str]:
        keys = set(self.reporting_keys)
        if blank_label and self.blank_total > 0:
            keys.add(blank_label)
        return natural_sorted(keys)


def is_report_sheet(name: str, summary_sheet_name: Optional[str] = None) -> bool:
    lowered = name.lower()
    prefixes = list(REPORT_SHEET_PREFIXES)
    if summary_sheet_name and summary_sheet_name.strip():
        prefixes.append(summary_sheet_name.strip().lower())
    return any(lowered.startswith(prefix) for prefix in prefixes)


def validate_scan(scan: ScanConfig, options: ScanOptions) -> None:
    if not isinstance(options.header_row, int) or options.header_row < 1:
        raise ConfigurationError("Header row must be a positive integer", identifier=str(options.header_row))
    if isinstance(scan, ValueMatchConfig):
        validate_column_spec(scan.search_columns)
        if scan.conditional_column is not None and not scan.conditional_column.strip():
            raise ConfigurationError("Conditional column is empty")
    elif isinstance(scan, KeyMatchConfig):
        if not scan.key_column or not scan.key_column.strip():
            raise ConfigurationError("Key column is required in key-match mode")
    else:
        raise ConfigurationError(f"Unknown scan configuration: {type(scan).__name__}")
    tracking = options.blank_tracking
    if tracking is not None:
        if not tracking.column or not tracking.column.strip():
            raise ConfigurationError("Blank-tracking column is empty")
        if tracking.mode not in BLANK_MODES:
            raise ConfigurationError(f"Unknown blank counting mode {tracking.mode!r}")
    if options.title_cell:
        try:
            coordinate_to_tuple(options.title_cell.strip().upper())
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("Invalid title cell", identifier=options.title_cell) from exc


def row_snapshot(headers: Sequence[str], row: Sequence[Any]) -> dict[str, Any]:
    snapshot: dict[str, Any] = {}
    for index, value in enumerate(row):
        label = headers[index] if index < len(headers) and headers[index] else column_letter(index)
        snapshot[label] = value
    return snapshot


def _cell(row: Sequence[Any], index: Optional[int]) -> Any:
    if index is None or index >= len(row):
        return None
    return row[index]


def _is_empty_row(row: Sequence[Any]) -> bool:
    return all(value is None for value in row)


@dataclass
class _SheetLayout:
    headers: list[str]
    search_indices: list[int] = field(default_factory=list)
    conditional_index: Optional[int] = None
    key_index: Optional[int] = None
    blank_index: Optional[int] = None


def _resolve_layout(
    sheet_name: str,
    rows: list[list[Any]],
    scan: ScanConfig,
    options: ScanOptions,
) -> tuple[Optional[_SheetLayout], Optional[str]]:
    header_index = options.header_row - 1
    if header_index >= len(rows):
        return None, f"header row {options.header_row} is beyond the sheet's {len(rows)} rows"
    layout = _SheetLayout(headers=header_names(rows[header_index]))
    if isinstance(scan, ValueMatchConfig):
        layout.search_indices = parse_column_list(scan.search_columns, layout.headers)
        if not layout.search_indices:
            return None, f"search columns {scan.search_columns!r} not found"
        if scan.conditional_column:
            layout.conditional_index = resolve_column(scan.conditional_column, layout.headers)
            if layout.conditional_index is None:
                return None, f"conditional column {scan.conditional_column!r} not found"
    else:
        layout.key_index = resolve_column(scan.key_column, layout.headers)
        if layout.key_index is None:
            return None, f"key column {scan.key_column!r} not found"
    if options.blank_tracking is not None:
        layout.blank_index = resolve_column(options.blank_tracking.column, layout.headers)
        if layout.blank_index is None:
            logger.warning(
                "Blank-tracking column %r not found on sheet %r; blanks not counted there.",
                options.blank_tracking.column,
                sheet_name,
            )
    return layout, None


def _discover_keys(
    handle: WorkbookHandle,
    sheets: list[str],
    scan: KeyMatchConfig,
    options: ScanOptions,
    mapping: dict[str, str],
    progress: Optional[ProgressCallback],
    token: Optional[CancellationToken],
) -> None:
    header_index = options.header_row - 1
    for position, sheet_name in enumerate(sheets, start=1):
        check_cancelled(token)
        rows = handle.read_rows(sheet_name)
        if header_index < len(rows):
            key_index = resolve_column(scan.key_column, header_names(rows[header_index]))
            if key_index is not None:
                for row in rows[header_index + 1:]:
                    value = _cell(row, key_index)
                    if is_blank(value):
                        continue
                    text = to_text(value).strip()
                    mapping.setdefault(text.lower(), text)
        if progress is not None:
            progress(ProgressUpdate(STAGE_DISCOVERING, sheet_name, position, len(sheets), {}))


def aggregate_data(
    handle: WorkbookHandle,
    sheet_names: Sequence[str],
    value_to_key_map: dict[str, str],
    scan: ScanConfig,
    options: Optional[ScanOptions] = None,
    *,
    progress: Optional[ProgressCallback] = None,
    token: Optional[CancellationToken] = None,
) -> AggregationResult:
    """Scan ``sheet_names`` and count one winning key per matching row."""
    options = options or ScanOptions()
    validate_scan(scan, options)
    mapping = dict(value_to_key_map)
    skipped: list[tuple[str, str]] = []

    sheets: list[str] = []
    for name in sheet_names:
        if is_report_sheet(name, options.summary_sheet_name):
            logger.info("Skipping report sheet %r", name)
            continue
        if not handle.has_sheet(name):
            logger.warning("Sheet %r not found in workbook; skipping.", name)
            skipped.append((name, "sheet not found"))
            continue
        sheets.append(name)

    if isinstance(scan, KeyMatchConfig) and scan.discover_new_keys:
        before = len(mapping)
        _discover_keys(handle, sheets, scan, options, mapping, progress, token)
        logger.info("Discovered %d new keys", len(mapping) - before)

    matcher = TermMatcher(mapping, scan.match_mode) if isinstance(scan, ValueMatchConfig) else None
    all_keys = sorted(set(mapping.values()))
    total_counts = {key: 0 for key in all_keys}
    per_sheet_counts: dict[str, dict[str, int]] = {}
    blank_per_sheet: dict[str, int] = {}
    blank_details: list[BlankDetail] = []
    matching_rows: dict[str, frozenset[int]] = {}
    key_indices: dict[str, int] = {}
    titles: dict[str, str] = {}
    processed: list[str] = []
    tracking = options.blank_tracking
    header_index = options.header_row - 1

    for position, sheet_name in enumerate(sheets, start=1):
        check_cancelled(token)
        rows = handle.read_rows(sheet_name)
        layout, reason = _resolve_layout(sheet_name, rows, scan, options)
        if layout is None:
            logger.warning("Skipping sheet %r: %s", sheet_name, reason)
            skipped.append((sheet_name, reason))
            if progress is not None:
                progress(ProgressUpdate(STAGE_AGGREGATING, sheet_name, position, len(sheets), dict(total_counts)))
            continue

        if layout.key_index is not None:
            key_indices[sheet_name] = layout.key_index
        titles[sheet_name] = _sheet_title(handle, sheet_name, options.title_cell)
        sheet_counts = {key: 0 for key in all_keys}
        sheet_matches: set[int] = set()
        sheet_blanks = 0

        for row_index in range(header_index + 1, len(rows)):
            if token is not None and (row_index - header_index) % ROW_POLL_INTERVAL == 0:
                token.raise_if_cancelled()
            row = rows[row_index]
            if _is_empty_row(row):
                continue

            if tracking is not None and layout.blank_index is not None and is_blank(_cell(row, layout.blank_index)):
                if tracking.mode == "fullColumn":
                    counts_as_blank = True
                else:
                    counts_as_blank = any(
                        not is_blank(value) for index, value in enumerate(row) if index != layout.blank_index
                    )
                if counts_as_blank:
                    sheet_blanks += 1
                    if tracking.capture_details:
                        blank_details.append(BlankDetail(sheet_name, row_index + 1, row_snapshot(layout.headers, row)))

            winner = _row_winner(row, scan, layout, matcher, mapping)
            if winner is None:
                continue
            sheet_counts[winner] = sheet_counts.get(winner, 0) + 1
            total_counts[winner] = total_counts.get(winner, 0) + 1
            sheet_matches.add(row_index - header_index - 1)

        per_sheet_counts[sheet_name] = sheet_counts
        matching_rows[sheet_name] = frozenset(sheet_matches)
        if tracking is not None:
            blank_per_sheet[sheet_name] = sheet_blanks
        processed.append(sheet_name)
        logger.info("Sheet %r: %d matching rows", sheet_name, len(sheet_matches))
        if progress is not None:
            progress(ProgressUpdate(STAGE_AGGREGATING, sheet_name, position, len(sheets), dict(total_counts)))

    blank_counts = None
    if tracking is not None:
        blank_counts = BlankCounts(sum(blank_per_sheet.values()), blank_per_sheet)

    return AggregationResult(
        total_counts=total_counts,
        per_sheet_counts=per_sheet_counts,
        reporting_keys=natural_sorted(key for key, count in total_counts.items() if count > 0),
        value_to_key_map=mapping,
        processed_sheet_names=processed,
        scan=scan,
        header_row=options.header_row,
        blank_counts=blank_counts,
        blank_details=blank_details if tracking is not None and tracking.capture_details else None,
        matching_rows=matching_rows,
        sheet_key_column_indices=key_indices,
        sheet_titles=titles,
        skipped_sheets=skipped,
    )


def _row_winner(
    row: Sequence[Any],
    scan: ScanConfig,
    layout: _SheetLayout,
    matcher: Optional[TermMatcher],
    mapping: dict[str, str],
) -> Optional[str]:
    if isinstance(scan, KeyMatchConfig):
        value = _cell(row, layout.key_index)
        if is_blank(value):
            return None
        return mapping.get(to_text(value).strip().lower())
    if layout.conditional_index is not None and not is_blank(_cell(row, layout.conditional_index)):
        return None
    return matcher.score_row(row, layout.search_indices).winner


def _sheet_title(handle: WorkbookHandle, sheet_name: str, title_cell: Optional[str]) -> str:
    if not title_cell:
        return sheet_name
    value = handle.cell_value(sheet_name, title_cell.strip().upper())
    return sheet_name if is_blank(value) else to_text(value).strip()


@dataclass
class ColumnTrace:
    header: str
    text: str
    hits: list[TermHit] = field(default_factory=list)


@dataclass
class RuleExplanation:
    """Why one row does or does not count toward a key."""

    sheet_name: str
    row_number: int
    skipped_reason: Optional[str] = None
    columns: list[ColumnTrace] = field(default_factory=list)
    scores: dict[str, int] = field(default_factory=dict)
    winner: Optional[str] = None


def explain_row(
    handle: WorkbookHandle,
    sheet_name: str,
    row_number: int,
    value_to_key_map: dict[str, str],
    scan: ScanConfig,
    header_row: int = 1,
) -> RuleExplanation:
    """Trace the matching of a single 1-based spreadsheet row."""
    validate_scan(scan, ScanOptions(header_row=header_row))
    if not handle.has_sheet(sheet_name):
        raise ConfigurationError("Sheet not found", sheet=sheet_name)
    if row_number < 1:
        raise ConfigurationError("Row number must be 1 or greater", sheet=sheet_name, identifier=str(row_number))
    rows = handle.read_rows(sheet_name)
    if row_number > len(rows) or header_row > len(rows):
        raise ConfigurationError(f"Row {row_number} is out of bounds", sheet=sheet_name)
    headers = header_names(rows[header_row - 1])
    row = rows[row_number - 1]
    explanation = RuleExplanation(sheet_name, row_number)

    def label(index: int) -> str:
        return headers[index] if index < len(headers) and headers[index] else f"Col {index + 1}"

    if isinstance(scan, KeyMatchConfig):
        key_index = resolve_column(scan.key_column, headers)
        if key_index is None:
            raise ConfigurationError("Key column not found", sheet=sheet_name, identifier=scan.key_column)
        text = to_text(_cell(row, key_index)).strip()
        trace = ColumnTrace(label(key_index), text)
        key = value_to_key_map.get(text.lower()) if text else None
        if key is not None:
            trace.hits.append(TermHit(text.lower(), key, 1))
            explanation.scores[key] = 1
        explanation.columns.append(trace)
        explanation.winner = key
        return explanation

    if scan.conditional_column:
        conditional_index = resolve_column(scan.conditional_column, headers)
        if conditional_index is not None and not is_blank(_cell(row, conditional_index)):
            explanation.skipped_reason = (
                f"column {scan.conditional_column!r} already holds {to_text(_cell(row, conditional_index))!r}"
            )
            return explanation

    matcher = TermMatcher(value_to_key_map, scan.match_mode)
    for index in parse_column_list(scan.search_columns, headers):
        text = to_text(_cell(row, index))
        trace = ColumnTrace(label(index), text)
        if text:
            trace.hits = matcher.hits(text)
            for hit in trace.hits:
                explanation.scores[hit.key] = max(explanation.scores.get(hit.key, 0), hit.score)
        explanation.columns.append(trace)
    explanation.winner = select_winner(explanation.scores)
    return explanation
