"""Two-column key/count summaries written inside each data sheet."""

from __future__ import annotations

import logging
from dataclasses import fields, replace
from typing import Mapping, Optional, Sequence

from sheet_aggregator.columns import (
    header_names,
    is_blank,
    natural_sorted,
    parse_column_identifier,
    resolve_column,
    to_text,
)
from sheet_aggregator.config import CellStyle, KeyMatchConfig, SummaryConfig
from sheet_aggregator.engine import AggregationResult
from sheet_aggregator.errors import ConfigurationError
from sheet_aggregator.grid import CellSpec, WorkbookHandle, column_letter, quote_sheet_name
from sheet_aggregator.progress import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

RIGHT_ALIGNED = CellStyle(horizontal="right")


def summary_title(result: AggregationResult, sheet_name: str, config: SummaryConfig) -> str:
    title = result.sheet_titles.get(sheet_name)
    if title and title != sheet_name:
        return title
    return config.in_sheet_title or "Summary"


def uses_live_formulas(result: AggregationResult) -> bool:
    return isinstance(result.scan, KeyMatchConfig) and result.scan.live_formulas


def _keys_for_sheet(result: AggregationResult, sheet_name: str, config: SummaryConfig) -> list[str]:
    label = config.blank_label
    if not config.local_keys_only:
        return result.keys_with_blanks(label)
    local = {key for key, count in result.per_sheet_counts.get(sheet_name, {}).items() if count > 0}
    if result.sheet_blank_count(sheet_name) > 0 and config.show_blanks_in_summary and label:
        local.add(label)
    return natural_sorted(local)


def _match_criteria(key: str, edited_to_originals: Optional[Mapping[str, Sequence[str]]]) -> list[str]:
    if not edited_to_originals:
        return [key]
    renamed_away = {
        original for final, originals in edited_to_originals.items() for original in originals if original != final
    }
    criteria = [] if key in renamed_away else [key]
    for original in edited_to_originals.get(key, []):
        if original not in criteria:
            criteria.append(original)
    return criteria or [key]


def _live_value(
    handle: WorkbookHandle,
    result: AggregationResult,
    sheet_name: str,
    key: str,
    config: SummaryConfig,
    blank_column: Optional[str],
    edited_to_originals: Optional[Mapping[str, Sequence[str]]],
) -> Optional[CellSpec]:
    key_index = result.sheet_key_column_indices.get(sheet_name)
    if key_index is None or not handle.has_sheet(sheet_name):
        return None
    first = result.header_row + 1
    last = max(handle.decode_range(sheet_name).last_row + 1, first)
    prefix = quote_sheet_name(sheet_name)

    if key == config.blank_label:
        blank_index = key_index
        if blank_column:
            rows = handle.read_rows(sheet_name)
            headers = header_names(rows[result.header_row - 1]) if len(rows) >= result.header_row else []
            blank_index = resolve_column(blank_column, headers)
        if blank_index is None:
            return None
        letter = column_letter(blank_index)
        return CellSpec(formula=f"COUNTBLANK({prefix}!{letter}{first}:{letter}{last})")

    letter = column_letter(key_index)
    quoted = ",".join('"' + value.replace('"', '""') + '"' for value in _match_criteria(key, edited_to_originals))
    return CellSpec(formula=f"SUMPRODUCT(--ISNUMBER(MATCH({prefix}!{letter}{first}:{letter}{last},{{{quoted}}},0)))")


def build_in_sheet_summary(
    handle: WorkbookHandle,
    result: AggregationResult,
    sheet_name: str,
    config: SummaryConfig,
    *,
    blank_column: Optional[str] = None,
    edited_to_originals: Optional[Mapping[str, Sequence[str]]] = None,
    live: Optional[bool] = None,
    static_total: bool = False,
) -> list[list[CellSpec]]:
    """Header row, one row per key, and an optional Total row.

    With ``static_total`` the Total is a number rather than a SUM over the
    insert location, for blocks that are written somewhere else.
    """
    live = uses_live_formulas(result) if live is None else live
    label = config.blank_label
    title = summary_title(result, sheet_name, config)
    rows: list[list[CellSpec]] = [
        [CellSpec(title, style=config.header_formatting), CellSpec("Count", style=config.header_formatting)]
    ]
    key_style = None
    if config.header_formatting is not None and config.header_formatting.horizontal:
        key_style = CellStyle(horizontal=config.header_formatting.horizontal)
    running_total = 0

    for key in _keys_for_sheet(result, sheet_name, config):
        if key == label and not config.show_blanks_in_summary:
            continue
        static_count = result.per_sheet_counts.get(sheet_name, {}).get(key, 0)
        if not static_count and key == label:
            static_count = result.sheet_blank_count(sheet_name)
        value = None
        if live:
            value = _live_value(handle, result, sheet_name, key, config, blank_column, edited_to_originals)
        if value is None:
            value = CellSpec(static_count)
        running_total += static_count
        value.style = RIGHT_ALIGNED
        key_cell = CellSpec(key, style=key_style)
        if key == label and config.blank_row_formatting is not None:
            key_cell.style = _merged(key_cell.style, config.blank_row_formatting)
            value.style = _merged(value.style, config.blank_row_formatting)
        rows.append([key_cell, value])

    if len(rows) > 1 and config.add_total_row:
        if static_total:
            total = CellSpec(running_total, style=config.total_row_formatting)
        else:
            insert_index = parse_column_identifier(config.insert_column or "A") or 0
            letter = column_letter(insert_index + 1)
            start = config.insert_start_row
            total = CellSpec(
                formula=f"SUM({letter}{start + 1}:{letter}{start + len(rows) - 1})",
                style=config.total_row_formatting,
            )
        rows.append([CellSpec("Total", style=config.total_row_formatting), total])
    return rows


def _merged(base: Optional[CellStyle], extra: CellStyle) -> CellStyle:
    if base is None:
        return extra
    return replace(base, **{item.name: getattr(extra, item.name) for item in fields(extra) if getattr(extra, item.name) is not None})


def clear_existing_summary(handle: WorkbookHandle, sheet_name: str, title: str) -> bool:
    """Clear a previously inserted two-column summary that starts at a cell holding ``title``."""
    rows = handle.read_rows(sheet_name)
    start = None
    for row_index, row in enumerate(rows):
        for col_index, value in enumerate(row):
            if value == title:
                start = (row_index, col_index)
                break
        if start:
            break
    if start is None:
        logger.debug("No existing summary titled %r on sheet %r", title, sheet_name)
        return False

    start_row, col = start
    end_row = start_row
    for row_index in range(start_row + 1, len(rows) + 1):
        value = rows[row_index][col] if row_index < len(rows) and col < len(rows[row_index]) else None
        if isinstance(value, str) and value.lower() == "total":
            end_row = row_index
            break
        if value is None or to_text(value).strip() == "":
            end_row = row_index - 1
            break
        end_row = row_index

    handle.unmerge_anchored_at(sheet_name, start_row, col)
    handle.clear_cells(sheet_name, start_row, end_row, col, col + 1)
    logger.info("Cleared existing summary on %r rows %d-%d", sheet_name, start_row + 1, end_row + 1)
    return True


def _overlaps_data(handle: WorkbookHandle, sheet_name: str, start_row: int, col_index: int, height: int) -> bool:
    ws = handle.worksheet(sheet_name)
    for row in range(start_row, start_row + height):
        for col in (col_index + 1, col_index + 2):
            if not is_blank(ws.cell(row=row, column=col).value):
                return True
    return False


def insert_in_sheet_summaries(
    handle: WorkbookHandle,
    result: AggregationResult,
    sheet_names: Sequence[str],
    config: SummaryConfig,
    *,
    blank_column: Optional[str] = None,
    edited_to_originals: Optional[Mapping[str, Sequence[str]]] = None,
    token: Optional[CancellationToken] = None,
) -> list[str]:
    """Write a summary block into each sheet at the configured column and row."""
    insert_index = parse_column_identifier(config.insert_column or "")
    if insert_index is None:
        raise ConfigurationError("Invalid insert column for summary", identifier=config.insert_column)
    if config.insert_start_row < 1:
        raise ConfigurationError("Insert row must be 1 or greater", identifier=str(config.insert_start_row))

    inserted: list[str] = []
    for sheet_name in sheet_names:
        check_cancelled(token)
        if not handle.has_sheet(sheet_name):
            logger.warning("Sheet %r not found; skipping summary insertion.", sheet_name)
            continue
        if config.clear_existing_summary:
            clear_existing_summary(handle, sheet_name, summary_title(result, sheet_name, config))
        block = build_in_sheet_summary(
            handle, result, sheet_name, config, blank_column=blank_column, edited_to_originals=edited_to_originals
        )
        if len(block) <= 1:
            continue
        if _overlaps_data(handle, sheet_name, config.insert_start_row, insert_index, len(block)):
            logger.warning(
                "Summary on sheet %r overwrites existing cells at %s%d.",
                sheet_name,
                column_letter(insert_index),
                config.insert_start_row,
            )
        handle.write_cells(sheet_name, config.insert_start_row - 1, insert_index, block)
        key_width = max(len(to_text(row[0].value)) for row in block)
        value_width = max(len(row[1].display_text()) for row in block)
        handle.set_column_width(sheet_name, insert_index, max(15, key_width + 2))
        handle.set_column_width(sheet_name, insert_index + 1, max(10, value_width + 2))
        inserted.append(sheet_name)
    logger.info("Inserted summaries into %d sheets", len(inserted))
    return inserted
