"""Grouped summary report: user-defined groups of final keys plus compiled in-sheet summaries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from sheet_aggregator.columns import is_blank, to_text
from sheet_aggregator.config import TITLE_STYLE, CellStyle, SummaryConfig
from sheet_aggregator.engine import AggregationResult
from sheet_aggregator.grid import CellSpec, WorkbookHandle
from sheet_aggregator.matching import parse_group_mappings
from sheet_aggregator.summaries import build_in_sheet_summary

logger = logging.getLogger(__name__)

GROUP_REPORT_SHEET = "Group_Report"
COMPILED_SHEET = "Compiled_Summaries"
UNMAPPED_LABEL = "Unmapped"
SECTION_STYLE = CellStyle(bold=True, font_size=14)
DESCRIPTION_STYLE = CellStyle(italic=True, font_size=10)
GROUP_TOTAL_STYLE = CellStyle(bold=True, fill_color="F2F2F2")
GRAND_TOTAL_STYLE = CellStyle(bold=True, font_size=12, fill_color="D9D9D9")
GROUP_NAME_STYLE = CellStyle(vertical="top")


@dataclass
class GroupEntry:
    name: str
    keys: list[tuple[str, int]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(count for _, count in self.keys)


@dataclass
class GroupReport:
    groups: list[GroupEntry]
    unmapped: list[tuple[str, int]]

    @property
    def unmapped_total(self) -> int:
        return sum(count for _, count in self.unmapped)

    @property
    def grand_total(self) -> int:
        return sum(group.total for group in self.groups) + self.unmapped_total


def _by_count(items: list[tuple[str, int]]) -> list[tuple[str, int]]:
    return sorted(items, key=lambda item: -item[1])


def build_group_report(result: AggregationResult, mapping_text: str) -> GroupReport:
    """Sum final-key totals per group; keys named by no group land in the unmapped bucket.

    Keys a group names but the result never saw are ignored, and a group
    with none of its keys present is dropped.
    """
    mappings = parse_group_mappings(mapping_text)
    unmapped = set(result.total_counts)
    groups: list[GroupEntry] = []
    for name, keys in mappings.items():
        entry = GroupEntry(name)
        for key in keys:
            if key in result.total_counts:
                entry.keys.append((key, result.total_counts[key]))
            unmapped.discard(key)
        if entry.keys:
            entry.keys = _by_count(entry.keys)
            groups.append(entry)
    groups.sort(key=lambda group: group.name)
    leftovers = [(key, result.total_counts[key]) for key in sorted(unmapped) if result.total_counts[key] > 0]
    return GroupReport(groups, _by_count(leftovers))


def report_title(handle: WorkbookHandle, sheet_names: Sequence[str], config: SummaryConfig, title_cell: Optional[str]) -> str:
    titles: set[str] = set()
    if title_cell:
        for sheet_name in sheet_names:
            if not handle.has_sheet(sheet_name):
                continue
            value = handle.cell_value(sheet_name, title_cell.strip().upper())
            if not is_blank(value):
                titles.add(to_text(value))
    if len(titles) == 1:
        return titles.pop()
    if len(titles) > 1:
        return config.group_report_multi_source_title or "Grouped Summary Report (Multiple Sources)"
    return config.group_report_title or "Grouped Summary Report"


def _write_group_sheet(
    target: WorkbookHandle, report: GroupReport, title: str, config: SummaryConfig
) -> str:
    headers = config.group_report_headers
    grid: list[list[Any]] = [[CellSpec(title, style=TITLE_STYLE)]]
    merges: list[tuple[int, int, int, int]] = [(0, 0, 0, 2)]
    if config.group_report_description:
        grid.append([CellSpec(config.group_report_description, style=DESCRIPTION_STYLE)])
        merges.append((1, 1, 0, 2))
    grid.append([])

    has_rows = bool(report.groups or report.unmapped)
    table_start = None
    if has_rows:
        table_start = len(grid)
        style = config.group_report_header_formatting
        grid.append(
            [
                CellSpec(headers.group_name, style=style),
                CellSpec(headers.key_name, style=style),
                CellSpec(headers.count, style=style),
            ]
        )

    if report.groups:
        grid.append([CellSpec("User-Defined Groups", style=SECTION_STYLE)])
        merges.append((len(grid) - 1, len(grid) - 1, 0, 2))
        for group in report.groups:
            first = len(grid)
            for position, (key, count) in enumerate(group.keys):
                name_cell = CellSpec(group.name, style=GROUP_NAME_STYLE) if position == 0 else ""
                grid.append([name_cell, key, count])
            if len(group.keys) > 1:
                merges.append((first, first + len(group.keys) - 1, 0, 0))
            grid.append(
                [CellSpec(f"{group.name} Total", style=GROUP_TOTAL_STYLE), "", CellSpec(group.total, style=GROUP_TOTAL_STYLE)]
            )
            merges.append((len(grid) - 1, len(grid) - 1, 0, 1))

    if report.unmapped:
        if report.groups:
            grid.append([])
        grid.append([CellSpec("Unmapped Keys", style=SECTION_STYLE)])
        merges.append((len(grid) - 1, len(grid) - 1, 0, 2))
        for key, count in report.unmapped:
            grid.append([UNMAPPED_LABEL, key, count])
        grid.append(
            [
                CellSpec("Unmapped Total", style=GROUP_TOTAL_STYLE),
                "",
                CellSpec(report.unmapped_total, style=GROUP_TOTAL_STYLE),
            ]
        )
        merges.append((len(grid) - 1, len(grid) - 1, 0, 1))

    table_end = len(grid) - 1
    if has_rows:
        grid.append([])
        grid.append(
            [CellSpec("Grand Total", style=GRAND_TOTAL_STYLE), "", CellSpec(report.grand_total, style=GRAND_TOTAL_STYLE)]
        )
        merges.append((len(grid) - 1, len(grid) - 1, 0, 1))

    name = target.append_sheet(GROUP_REPORT_SHEET, grid)
    if config.table_style is not None and table_start is not None:
        target.apply_table_style(name, table_start, table_end, 0, 2, config.table_style)
    for first_row, last_row, first_col, last_col in merges:
        target.declare_merge(name, first_row, last_row, first_col, last_col)
    for col, width in enumerate((35, 45, 15)):
        target.set_column_width(name, col, width)
    return name


def _write_compiled_summaries(
    target: WorkbookHandle,
    source: WorkbookHandle,
    result: AggregationResult,
    sheet_names: Sequence[str],
    config: SummaryConfig,
) -> Optional[str]:
    """Every sheet's in-sheet summary block, stacked with a title above each."""
    blocks: list[tuple[str, list[list[CellSpec]]]] = []
    for sheet_name in sheet_names:
        block = build_in_sheet_summary(source, result, sheet_name, config, live=False, static_total=True)
        if len(block) > 1:
            blocks.append((result.sheet_titles.get(sheet_name) or sheet_name, block))
    if not blocks:
        return None

    name = target.append_sheet(COMPILED_SHEET)
    row = 0
    for title, block in blocks:
        target.write_cells(name, row, 0, [[CellSpec(f"Summary for: {title}", style=SECTION_STYLE)]])
        row += 1
        target.write_cells(name, row, 0, block)
        if config.table_style is not None:
            target.apply_table_style(name, row, row + len(block) - 1, 0, 1, config.table_style)
        row += len(block) + 2
    target.set_column_width(name, 0, 40)
    target.set_column_width(name, 1, 15)
    return name


def create_group_report_workbook(
    result: AggregationResult,
    source: WorkbookHandle,
    mapping_text: str,
    sheet_names: Sequence[str],
    config: SummaryConfig,
    title_cell: Optional[str] = None,
) -> WorkbookHandle:
    """New workbook with the grouped report and, when any sheet has one, the compiled summaries.

    Compiled blocks carry static counts, since they no longer sit beside their data.
    """
    report = build_group_report(result, mapping_text)
    target = WorkbookHandle.new()
    title = report_title(source, sheet_names, config, title_cell)
    group_sheet = _write_group_sheet(target, report, title, config)
    compiled = _write_compiled_summaries(target, source, result, sheet_names, config)
    logger.info(
        "Group report: %d groups, %d unmapped keys, grand total %d",
        len(report.groups),
        len(report.unmapped),
        report.grand_total,
    )
    target.reorder_sheets([group_sheet] + ([compiled] if compiled else []))
    return target
