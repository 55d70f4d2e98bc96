"""In-place edits to the source workbook driven by term matching."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from sheet_aggregator.columns import (
    header_names,
    is_blank,
    parse_column_list,
    resolve_column,
    to_text,
    validate_column_spec,
)
from sheet_aggregator.config import HIGHLIGHT_FILL, CellStyle, MatchMode, UpdateConfig
from sheet_aggregator.engine import row_snapshot
from sheet_aggregator.errors import ConfigurationError
from sheet_aggregator.grid import WorkbookHandle, column_letter, is_formula_cell
from sheet_aggregator.matching import TermMatcher
from sheet_aggregator.progress import CancellationToken, check_cancelled
from sheet_aggregator.templates import has_tokens, render_template

logger = logging.getLogger(__name__)

HIGHLIGHT = CellStyle(fill_color=HIGHLIGHT_FILL)
ERROR_CODES = {"#NULL!", "#DIV/0!", "#VALUE!", "#REF!", "#NAME?", "#NUM!", "#N/A"}


@dataclass
class UpdateDetail:
    sheet_name: str
    row_number: int
    cell_address: str
    original_value: Any
    new_value: str
    key_used: str
    trigger_column: str
    trigger_value: str
    row_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class UpdateResult:
    details: list[UpdateDetail] = field(default_factory=list)
    sheets_updated: list[str] = field(default_factory=list)
    skipped_sheets: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total_cells_updated(self) -> int:
        return len(self.details)


@dataclass
class FillResult:
    cells_filled: int = 0
    per_sheet: dict[str, int] = field(default_factory=dict)
    skipped_sheets: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class MarkResult:
    rows_marked: int = 0
    per_sheet: dict[str, int] = field(default_factory=dict)
    skipped_sheets: list[tuple[str, str]] = field(default_factory=list)


def _check_header_row(header_row: int) -> None:
    if not isinstance(header_row, int) or header_row < 1:
        raise ConfigurationError("Header row must be a positive integer", identifier=str(header_row))


def _load_sheet(
    handle: WorkbookHandle, sheet_name: str, header_row: int, skipped: list[tuple[str, str]]
) -> Optional[tuple[list[list[Any]], list[str]]]:
    if not handle.has_sheet(sheet_name):
        logger.warning("Sheet %r not found in workbook; skipping.", sheet_name)
        skipped.append((sheet_name, "sheet not found"))
        return None
    rows = handle.read_rows(sheet_name)
    if header_row - 1 >= len(rows):
        reason = f"header row {header_row} is beyond the sheet's {len(rows)} rows"
        logger.warning("Skipping sheet %r: %s", sheet_name, reason)
        skipped.append((sheet_name, reason))
        return None
    return rows, header_names(rows[header_row - 1])


def _skip(sheet_name: str, reason: str, skipped: list[tuple[str, str]]) -> None:
    logger.warning("Skipping sheet %r: %s", sheet_name, reason)
    skipped.append((sheet_name, reason))


def strip_formulas(
    handle: WorkbookHandle, sheet_names: Sequence[str], *, token: Optional[CancellationToken] = None
) -> int:
    """Replace formula cells with their cached value so later recalculation cannot undo updates."""
    stripped = 0
    for sheet_name in sheet_names:
        check_cancelled(token)
        if not handle.has_sheet(sheet_name):
            logger.warning("Sheet %r not found; skipping formula stripping.", sheet_name)
            continue
        for row in handle.worksheet(sheet_name).iter_rows():
            for cell in row:
                if not is_formula_cell(cell):
                    continue
                value = handle.cached_value(sheet_name, cell.row - 1, cell.column - 1)
                cell.value = value
                if isinstance(value, str) and value in ERROR_CODES:
                    cell.data_type = "s"
                stripped += 1
    logger.info("Stripped %d formula cells", stripped)
    return stripped


def _rows_agree(row: Sequence[Any], other: Sequence[Any], indices: Sequence[int]) -> bool:
    def norm(values: Sequence[Any], index: int) -> str:
        value = values[index] if index < len(values) else None
        return to_text(value).strip().lower()

    return all(norm(row, index) == norm(other, index) for index in indices)


def _paired_row_ok(rows: list[list[Any]], row_index: int, data_start: int, indices: Sequence[int]) -> bool:
    """True when the row directly above or below agrees on every validation column."""
    if not indices:
        return True
    if row_index > data_start and _rows_agree(rows[row_index], rows[row_index - 1], indices):
        return True
    if row_index < len(rows) - 1 and _rows_agree(rows[row_index], rows[row_index + 1], indices):
        return True
    return False


def _run_updates(
    handle: WorkbookHandle,
    sheet_names: Sequence[str],
    config: UpdateConfig,
    value_to_key_map: Mapping[str, str],
    header_row: int,
    *,
    apply: bool,
    token: Optional[CancellationToken],
) -> UpdateResult:
    _check_header_row(header_row)
    validate_column_spec(config.search_columns)
    if not config.update_column or not config.update_column.strip():
        raise ConfigurationError("Update column is required")
    if config.paired_validation_columns is not None:
        validate_column_spec(config.paired_validation_columns)

    matcher = TermMatcher(dict(value_to_key_map), config.match_mode)
    result = UpdateResult()
    data_start = header_row

    for sheet_name in sheet_names:
        check_cancelled(token)
        loaded = _load_sheet(handle, sheet_name, header_row, result.skipped_sheets)
        if loaded is None:
            continue
        rows, headers = loaded
        search_indices = parse_column_list(config.search_columns, headers)
        update_index = resolve_column(config.update_column, headers)
        if update_index is None:
            _skip(sheet_name, f"update column {config.update_column!r} not found", result.skipped_sheets)
            continue
        validation_indices: list[int] = []
        if config.paired_validation_columns is not None:
            validation_indices = parse_column_list(config.paired_validation_columns, headers)

        updated_here = 0
        for row_index in range(data_start, len(rows)):
            row = rows[row_index]
            if all(value is None for value in row):
                continue
            match = matcher.score_row(row, search_indices)
            winner = match.winner
            if winner is None:
                continue
            current = row[update_index] if update_index < len(row) else None
            if config.update_only_blanks and not is_blank(current):
                continue
            if config.paired_validation_columns is not None and not _paired_row_ok(
                rows, row_index, data_start, validation_indices
            ):
                continue

            address = f"{column_letter(update_index)}{row_index + 1}"
            trigger_index, trigger_value = match.triggers.get(winner, (None, ""))
            trigger_column = headers[trigger_index] if trigger_index is not None and trigger_index < len(headers) else ""
            result.details.append(
                UpdateDetail(
                    sheet_name=sheet_name,
                    row_number=row_index + 1,
                    cell_address=address,
                    original_value=current,
                    new_value=winner,
                    key_used=winner,
                    trigger_column=trigger_column,
                    trigger_value=trigger_value,
                    row_data=row_snapshot(headers, row),
                )
            )
            if apply:
                handle.set_value(sheet_name, row_index, update_index, winner, HIGHLIGHT)
                logger.debug("Updated %s!%s: %r -> %r", sheet_name, address, current, winner)
            updated_here += 1

        if updated_here:
            result.sheets_updated.append(sheet_name)

    logger.info(
        "%s %d cells across %d sheets",
        "Updated" if apply else "Found",
        result.total_cells_updated,
        len(result.sheets_updated),
    )
    return result


def lookup_and_update(
    handle: WorkbookHandle,
    sheet_names: Sequence[str],
    config: UpdateConfig,
    value_to_key_map: Mapping[str, str],
    header_row: int = 1,
    *,
    token: Optional[CancellationToken] = None,
) -> UpdateResult:
    """Write each matching row's winning key into the update column and highlight it."""
    return _run_updates(handle, sheet_names, config, value_to_key_map, header_row, apply=True, token=token)


def find_potential_updates(
    handle: WorkbookHandle,
    sheet_names: Sequence[str],
    config: UpdateConfig,
    value_to_key_map: Mapping[str, str],
    header_row: int = 1,
    *,
    token: Optional[CancellationToken] = None,
) -> UpdateResult:
    """Same as :func:`lookup_and_update` without touching the workbook."""
    return _run_updates(handle, sheet_names, config, value_to_key_map, header_row, apply=False, token=token)


def fill_empty_key_column(
    handle: WorkbookHandle,
    sheet_names: Sequence[str],
    search_columns: str,
    key_column: str,
    value_to_key_map: Mapping[str, str],
    match_mode: MatchMode = "whole",
    header_row: int = 1,
    *,
    token: Optional[CancellationToken] = None,
) -> FillResult:
    _check_header_row(header_row)
    validate_column_spec(search_columns)
    if not key_column or not key_column.strip():
        raise ConfigurationError("Key column is required")

    matcher = TermMatcher(dict(value_to_key_map), match_mode)
    result = FillResult()
    for sheet_name in sheet_names:
        check_cancelled(token)
        loaded = _load_sheet(handle, sheet_name, header_row, result.skipped_sheets)
        if loaded is None:
            continue
        rows, headers = loaded
        key_index = resolve_column(key_column, headers)
        if key_index is None:
            _skip(sheet_name, f"key column {key_column!r} not found", result.skipped_sheets)
            continue
        search_indices = parse_column_list(search_columns, headers)
        filled = 0
        for row_index in range(header_row, len(rows)):
            row = rows[row_index]
            if not is_blank(row[key_index] if key_index < len(row) else None):
                continue
            winner = matcher.score_row(row, search_indices).winner
            if winner is None:
                continue
            handle.set_value(sheet_name, row_index, key_index, winner)
            filled += 1
        result.per_sheet[sheet_name] = filled
        result.cells_filled += filled
    logger.info("Filled %d empty key cells", result.cells_filled)
    return result


def mark_matching_rows(
    handle: WorkbookHandle,
    sheet_names: Sequence[str],
    matching_rows: Mapping[str, Sequence[int]],
    mark_column: str,
    marker: str,
    header_row: int = 1,
    *,
    token: Optional[CancellationToken] = None,
) -> MarkResult:
    """Write ``marker`` into ``mark_column`` for each matched data row and highlight it.

    ``matching_rows`` holds data-row offsets as produced by ``aggregate_data``.
    The marker may contain ``{Column}`` tokens filled from the marked row.
    """
    _check_header_row(header_row)
    if not mark_column or not mark_column.strip():
        raise ConfigurationError("Mark column is required")
    templated = has_tokens(marker)
    result = MarkResult()
    for sheet_name in sheet_names:
        check_cancelled(token)
        offsets = matching_rows.get(sheet_name)
        if not offsets:
            continue
        loaded = _load_sheet(handle, sheet_name, header_row, result.skipped_sheets)
        if loaded is None:
            continue
        rows, headers = loaded
        mark_index = resolve_column(mark_column, headers)
        if mark_index is None:
            _skip(sheet_name, f"mark column {mark_column!r} not found", result.skipped_sheets)
            continue
        marked = 0
        for offset in sorted(offsets):
            row_index = header_row + offset
            row = rows[row_index] if row_index < len(rows) else []
            value = render_template(marker, headers, row) if templated else marker
            handle.set_value(sheet_name, row_index, mark_index, value, HIGHLIGHT)
            marked += 1
        result.per_sheet[sheet_name] = marked
        result.rows_marked += marked
    logger.info("Marked %d rows in column %r", result.rows_marked, mark_column)
    return result
