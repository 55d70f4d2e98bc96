"""Report sheets: cross-tab summaries, data source, key mappings, blank details, update audit."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from sheet_aggregator.columns import natural_sorted, to_text
from sheet_aggregator.config import HEADER_STYLE, LINK_STYLE, TITLE_STYLE, CellStyle, SummaryConfig
from sheet_aggregator.engine import AggregationResult
from sheet_aggregator.errors import ConfigurationError
from sheet_aggregator.grid import CellSpec, WorkbookHandle, column_letter, quote_sheet_name
from sheet_aggregator.mutators import UpdateResult
from sheet_aggregator.summaries import uses_live_formulas

logger = logging.getLogger(__name__)

PRE_EDIT_NAME = "Pre-Edit Summary"
POST_EDIT_NAME = "Post-Edit Summary"
DATA_SOURCE_NAME = "Aggregation_Data_Source"
KEY_MAPPINGS_NAME = "Key Mappings"
BLANK_DETAILS_NAME = "Blank_Cell_Details"
UPDATE_REPORT_NAME = "Update_Report"
FIRST_DATA_ROW = 4
TOTAL_STYLE = CellStyle(bold=True)


@dataclass(frozen=True)
class DataSource:
    sheet_name: str
    rows: int


@dataclass
class ReportSheets:
    """Names of the sheets one call to :func:`add_aggregation_report_sheets` appended."""

    pre_edit: Optional[str] = None
    post_edit: Optional[str] = None
    data_source: Optional[str] = None
    key_mappings: list[str] = field(default_factory=list)
    blank_details: list[str] = field(default_factory=list)

    def visible(self) -> list[str]:
        names = [self.post_edit, self.pre_edit, *self.key_mappings, *self.blank_details]
        return [name for name in names if name]


def _header(values: Sequence[str]) -> list[CellSpec]:
    return [CellSpec(value, style=HEADER_STYLE) for value in values]


def _link(sheet_name: str, address: str) -> str:
    return f"#{quote_sheet_name(sheet_name)}!{address}"


def _chunk_rows(rows_per_sheet: int, total: int) -> list[tuple[int, int]]:
    if total == 0:
        return [(0, 0)]
    return [(start, min(start + rows_per_sheet, total)) for start in range(0, total, rows_per_sheet)]


def _chunk_name(base: str, index: int, count: int) -> str:
    return base if count == 1 else f"{base}_{index + 1}"


def write_chunked_table(
    handle: WorkbookHandle,
    base_name: str,
    headers: Sequence[str],
    rows: Sequence[Sequence[Any]],
    chunk_size: int,
    *,
    preamble: Optional[Sequence[Sequence[Any]]] = None,
    widths: Optional[Sequence[float]] = None,
) -> list[str]:
    """Write a flat table across as many sheets as ``chunk_size`` requires.

    ``chunk_size`` counts the header row, so each sheet holds ``chunk_size - 1``
    data rows. The optional preamble is written above the first chunk only.
    """
    if not isinstance(chunk_size, int) or chunk_size < 2:
        raise ConfigurationError("Chunk size must be at least 2", identifier=str(chunk_size))
    chunks = _chunk_rows(chunk_size - 1, len(rows))
    names: list[str] = []
    for index, (start, end) in enumerate(chunks):
        grid: list[list[Any]] = []
        if index == 0 and preamble:
            grid.extend(list(line) for line in preamble)
            grid.append([])
        header_at = len(grid)
        grid.append(_header(headers))
        grid.extend(list(row) for row in rows[start:end])
        name = handle.append_sheet(_chunk_name(base_name, index, len(chunks)), grid)
        for col, width in enumerate(widths or ()):
            handle.set_column_width(name, col, width)
        if end > start:
            handle.set_auto_filter(name, header_at, 0, header_at + end - start, len(headers) - 1)
        names.append(name)
    if len(names) > 1:
        logger.info("Split %s into %d sheets of up to %d rows", base_name, len(names), chunk_size - 1)
    return names


def create_data_source_sheet(
    handle: WorkbookHandle, result: AggregationResult, blank_label: Optional[str], base_name: str = DATA_SOURCE_NAME
) -> DataSource:
    """Hidden (Sheet, Key, Count) triples that live cross-tab formulas sum over."""
    rows: list[list[Any]] = [_header(["Sheet", "Key", "Count"])]
    keys = result.keys_with_blanks(blank_label)
    for sheet_name in result.processed_sheet_names:
        for key in keys:
            count = result.count_for(sheet_name, key, blank_label)
            if count > 0:
                rows.append([sheet_name, key, count])
    name = handle.append_sheet(base_name, rows)
    for index, width in enumerate((30, 30, 15)):
        handle.set_column_width(name, index, width)
    handle.mark_sheet_hidden(name)
    logger.info("Created data source sheet %r with %d rows", name, len(rows) - 1)
    return DataSource(name, len(rows))


def write_cross_tab(
    handle: WorkbookHandle,
    desired_name: str,
    title: str,
    result: AggregationResult,
    config: SummaryConfig,
    blank_label: Optional[str],
    data_source: Optional[DataSource] = None,
) -> str:
    """Append a cross-tab sheet in the configured layout and return its name.

    Count cells are SUMPRODUCT formulas over ``data_source`` when one is
    given, static numbers otherwise. Totals are always SUM formulas.
    """
    hidden = config.hidden_names()
    keys = [key for key in result.keys_with_blanks(blank_label) if key.lower() not in hidden]
    sheets = natural_sorted(name for name in result.processed_sheet_names if name.lower() not in hidden)

    ds_refs = None
    if data_source is not None:
        prefix = quote_sheet_name(data_source.sheet_name) + "!"
        end = max(data_source.rows, 2)
        ds_refs = (f"{prefix}$A$2:$A${end}", f"{prefix}$B$2:$B${end}", f"{prefix}$C$2:$C${end}")

    def count_cell(sheet_name: str, key: str, sheet_ref: str, key_ref: str) -> CellSpec:
        if ds_refs is None:
            return CellSpec(result.count_for(sheet_name, key, blank_label))
        sheet_col, key_col, count_col = ds_refs
        return CellSpec(formula=f"SUMPRODUCT(({sheet_col}={sheet_ref})*({key_col}={key_ref}),{count_col})")

    keys_as_rows = config.report_layout == "keysAsRows"
    if keys_as_rows:
        row_labels, col_labels, corner = keys, sheets, "Key Name"
    else:
        row_labels, col_labels, corner = sheets, keys, "Sheet Name"

    headers = [corner, *col_labels, "Total"]
    grid: list[list[Any]] = [[CellSpec(title, style=TITLE_STYLE)], [], _header(headers)]
    last_label_col = column_letter(len(col_labels))
    for position, row_label in enumerate(row_labels):
        excel_row = FIRST_DATA_ROW + position
        row: list[Any] = [row_label]
        for col_position, col_label in enumerate(col_labels):
            col_ref = f"{column_letter(col_position + 1)}$3"
            if keys_as_rows:
                row.append(count_cell(col_label, row_label, col_ref, f"$A{excel_row}"))
            else:
                row.append(count_cell(row_label, col_label, f"$A{excel_row}", col_ref))
        if col_labels:
            row.append(CellSpec(formula=f"SUM(B{excel_row}:{last_label_col}{excel_row})"))
        else:
            row.append(CellSpec(0))
        grid.append(row)

    last_data_row = FIRST_DATA_ROW + len(row_labels) - 1
    if row_labels:
        total_row: list[Any] = [CellSpec("Total", style=TOTAL_STYLE)]
        for col_position in range(len(col_labels) + 1):
            letter = column_letter(col_position + 1)
            total_row.append(
                CellSpec(formula=f"SUM({letter}{FIRST_DATA_ROW}:{letter}{last_data_row})", style=TOTAL_STYLE)
            )
        grid.append(total_row)

    name = handle.append_sheet(desired_name)
    handle.write_cells(name, 0, 0, grid)

    if config.blank_row_formatting is not None and blank_label in keys:
        if keys_as_rows:
            blank_row = FIRST_DATA_ROW - 1 + keys.index(blank_label)
            for col in range(len(headers)):
                handle.apply_style(name, blank_row, col, config.blank_row_formatting)
        else:
            blank_col = 1 + keys.index(blank_label)
            for row_index in range(FIRST_DATA_ROW - 1, FIRST_DATA_ROW - 1 + len(row_labels)):
                handle.apply_style(name, row_index, blank_col, config.blank_row_formatting)

    if config.autosize_columns:
        if keys_as_rows:
            label_width = max([20] + [len(key) + 2 for key in keys])
        else:
            label_width = max([20] + [len(sheet) + 2 for sheet in sheets])
        handle.set_column_width(name, 0, label_width)
        for position, col_label in enumerate(col_labels):
            handle.set_column_width(name, position + 1, max(12, len(col_label) + 2))
        handle.set_column_width(name, len(col_labels) + 1, 12)
    if row_labels:
        handle.set_auto_filter(name, 2, 0, last_data_row - 1, len(headers) - 1)
    handle.declare_merge(name, 0, 0, 0, len(headers) - 1)
    logger.info("Wrote cross-tab %r (%d rows x %d columns)", name, len(row_labels), len(col_labels))
    return name


def final_term_map(
    value_to_key_map: Mapping[str, str],
    edited_to_originals: Optional[Mapping[str, Sequence[str]]] = None,
) -> dict[str, str]:
    """Route each search term's original key through the key edits."""
    final_for: dict[str, str] = {}
    for final, originals in (edited_to_originals or {}).items():
        for original in originals:
            final_for[original] = final
    return {term: final_for.get(key, key) for term, key in value_to_key_map.items()}


def key_mapping_rows(
    result: AggregationResult,
    blank_label: Optional[str],
    edited_to_originals: Optional[Mapping[str, Sequence[str]]] = None,
    term_map: Optional[Mapping[str, str]] = None,
) -> list[list[Any]]:
    """One row per final key: its count, the terms that feed it and the keys merged into it.

    ``term_map`` (term -> final key) defaults to the result's own map.
    """
    terms_by_key: dict[str, list[str]] = {}
    for term, key in (result.value_to_key_map if term_map is None else term_map).items():
        terms_by_key.setdefault(key, []).append(term)
    rows: list[list[Any]] = []
    for key in result.keys_with_blanks(blank_label):
        originals = list((edited_to_originals or {}).get(key, [key]))
        if key == blank_label:
            terms = "(blank cells)"
            count = result.total_counts.get(key, result.blank_total)
        else:
            terms = ", ".join(sorted(terms_by_key.get(key, [])))
            count = result.total_counts.get(key, 0)
        rows.append([key, count, terms, ", ".join(originals)])
    return rows


def add_key_mappings_sheets(
    handle: WorkbookHandle,
    result: AggregationResult,
    config: SummaryConfig,
    blank_label: Optional[str],
    edited_to_originals: Optional[Mapping[str, Sequence[str]]] = None,
    term_map: Optional[Mapping[str, str]] = None,
) -> list[str]:
    rows = key_mapping_rows(result, blank_label, edited_to_originals, term_map)
    headers = ["Final Key", "Final Count", "Contributing Search Terms (Values)", "Original Mapped Key(s)"]
    return write_chunked_table(handle, KEY_MAPPINGS_NAME, headers, rows, config.chunk_size, widths=(30, 12, 60, 40))


def add_blank_details_sheets(handle: WorkbookHandle, result: AggregationResult, config: SummaryConfig) -> list[str]:
    """Rows whose tracked column was blank, each linked back to its source row."""
    details = result.blank_details or []
    if not details:
        return []
    extra = natural_sorted({header for detail in details for header in detail.row_data})
    rows: list[list[Any]] = []
    for detail in details:
        rows.append(
            [
                detail.sheet_name,
                CellSpec(detail.row_number, hyperlink=_link(detail.sheet_name, f"A{detail.row_number}"), style=LINK_STYLE),
                *[detail.row_data.get(header) for header in extra],
            ]
        )
    headers = ["Sheet Name", "Row Number", *extra]
    return write_chunked_table(
        handle, BLANK_DETAILS_NAME, headers, rows, config.chunk_size, widths=[25, 12] + [20] * len(extra)
    )


def add_update_report_sheets(handle: WorkbookHandle, updates: UpdateResult, config: SummaryConfig) -> list[str]:
    """Audit table of every updated cell, with links to the cell it changed."""
    preamble = [
        [CellSpec("Update Operation Summary", style=TITLE_STYLE)],
        ["Total Cells Updated:", updates.total_cells_updated],
        ["Sheets Affected:", ", ".join(updates.sheets_updated) or "None"],
    ]
    extra = natural_sorted({header for detail in updates.details for header in detail.row_data})
    rows: list[list[Any]] = []
    for detail in updates.details:
        rows.append(
            [
                detail.sheet_name,
                detail.row_number,
                CellSpec(
                    detail.cell_address,
                    hyperlink=_link(detail.sheet_name, detail.cell_address),
                    style=LINK_STYLE,
                ),
                to_text(detail.original_value),
                detail.new_value,
                detail.key_used,
                detail.trigger_column,
                detail.trigger_value,
                *[detail.row_data.get(header) for header in extra],
            ]
        )
    headers = [
        "Sheet Name",
        "Row",
        "Cell",
        "Original Value",
        "New Value",
        "Key Used",
        "Triggering Column",
        "Triggering Value",
        *extra,
    ]
    names = write_chunked_table(
        handle,
        UPDATE_REPORT_NAME,
        headers,
        rows,
        config.chunk_size,
        preamble=preamble,
        widths=[25] * len(headers),
    )
    logger.info("Update report: %d cells in %d sheets", updates.total_cells_updated, len(names))
    return names


def add_aggregation_report_sheets(
    handle: WorkbookHandle,
    original: AggregationResult,
    modified: AggregationResult,
    config: SummaryConfig,
    *,
    original_blank_label: Optional[str],
    final_blank_label: Optional[str],
    edited_to_originals: Optional[Mapping[str, Sequence[str]]] = None,
) -> ReportSheets:
    """Append pre/post-edit cross-tabs plus key-mapping and blank-detail sheets.

    The pre-edit sheet is always static. The post-edit sheet sums over a
    hidden data source when the scan asked for live formulas. Report sheets
    are moved in front of the data sheets and the data source goes last.
    """
    existing = handle.list_sheet_names()
    sheets = ReportSheets()
    sheets.pre_edit = write_cross_tab(
        handle, PRE_EDIT_NAME, "Pre-Edit Summary (Original Keys)", original, config, original_blank_label
    )
    data_source = None
    if uses_live_formulas(modified):
        data_source = create_data_source_sheet(handle, modified, final_blank_label)
        sheets.data_source = data_source.sheet_name
    sheets.post_edit = write_cross_tab(
        handle, POST_EDIT_NAME, "Post-Edit Summary (Final Keys)", modified, config, final_blank_label, data_source
    )
    term_map = final_term_map(original.value_to_key_map, edited_to_originals)
    sheets.key_mappings = add_key_mappings_sheets(
        handle, modified, config, final_blank_label, edited_to_originals, term_map
    )
    sheets.blank_details = add_blank_details_sheets(handle, modified, config)

    order = sheets.visible() + existing
    if sheets.data_source:
        order.append(sheets.data_source)
    handle.reorder_sheets(order)
    return sheets


def create_aggregation_report_workbook(
    original: AggregationResult,
    modified: AggregationResult,
    config: SummaryConfig,
    *,
    original_blank_label: Optional[str],
    final_blank_label: Optional[str],
    edited_to_originals: Optional[Mapping[str, Sequence[str]]] = None,
    updates: Optional[UpdateResult] = None,
) -> WorkbookHandle:
    """A standalone workbook holding only report sheets.

    Live formulas need the hidden data source, which is always written here
    when the scan requested them.
    """
    handle = WorkbookHandle.new()
    add_aggregation_report_sheets(
        handle,
        original,
        modified,
        config,
        original_blank_label=original_blank_label,
        final_blank_label=final_blank_label,
        edited_to_originals=edited_to_originals,
    )
    if updates is not None and updates.details:
        add_update_report_sheets(handle, updates, config)
    return handle
