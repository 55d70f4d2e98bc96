"""Typed configuration for scans, mutators and report generators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Union

MatchMode = Literal["whole", "partial", "loose"]
BlankMode = Literal["rowAware", "fullColumn"]
ReportLayout = Literal["sheetsAsRows", "keysAsRows"]

MATCH_MODES = ("whole", "partial", "loose")
BLANK_MODES = ("rowAware", "fullColumn")
REPORT_LAYOUTS = ("sheetsAsRows", "keysAsRows")

DEFAULT_BLANK_LABEL = "(Blanks)"
DEFAULT_SUMMARY_SHEET_NAME = "Cross-Sheet Summary"
DEFAULT_CHUNK_SIZE = 100000
HEADER_FILL = "EAEAEA"
HIGHLIGHT_FILL = "FFFF00"


@dataclass(frozen=True)
class ValueMatchConfig:
    """Search ``search_columns`` for mapped terms.

    When ``conditional_column`` is set, rows whose cell in that column is
    non-blank are not matched at all.
    """

    search_columns: str
    match_mode: MatchMode = "whole"
    conditional_column: Optional[str] = None


@dataclass(frozen=True)
class KeyMatchConfig:
    """Look up the trimmed text of ``key_column`` in the value-to-key map.

    ``discover_new_keys`` self-maps every distinct non-blank value before
    counting. ``live_formulas`` makes in-sheet and cross-tab summaries emit
    formulas instead of static numbers.
    """

    key_column: str
    discover_new_keys: bool = False
    live_formulas: bool = False


ScanConfig = Union[ValueMatchConfig, KeyMatchConfig]


@dataclass(frozen=True)
class BlankTracking:
    column: str
    mode: BlankMode = "rowAware"
    capture_details: bool = False


@dataclass(frozen=True)
class ScanOptions:
    header_row: int = 1
    blank_tracking: Optional[BlankTracking] = None
    title_cell: Optional[str] = None
    summary_sheet_name: str = DEFAULT_SUMMARY_SHEET_NAME


@dataclass(frozen=True)
class CellStyle:
    bold: Optional[bool] = None
    italic: Optional[bool] = None
    underline: Optional[bool] = None
    font_name: Optional[str] = None
    font_size: Optional[float] = None
    font_color: Optional[str] = None
    fill_color: Optional[str] = None
    horizontal: Optional[str] = None
    vertical: Optional[str] = None


@dataclass(frozen=True)
class TableStyle:
    fill_color: Optional[str] = None
    border_style: str = "thin"
    border_color: Optional[str] = None


HEADER_STYLE = CellStyle(bold=True, fill_color=HEADER_FILL)
TITLE_STYLE = CellStyle(bold=True, font_size=16)
LINK_STYLE = CellStyle(font_color="0000FF", underline=True)


@dataclass(frozen=True)
class UpdateConfig:
    search_columns: str
    update_column: str
    match_mode: MatchMode = "whole"
    update_only_blanks: bool = False
    paired_validation_columns: Optional[str] = None


@dataclass(frozen=True)
class GroupReportHeaders:
    group_name: str = "Group Name"
    key_name: str = "Key Name"
    count: str = "Count"


@dataclass(frozen=True)
class SummaryConfig:
    blank_label: str = DEFAULT_BLANK_LABEL
    summary_sheet_name: str = DEFAULT_SUMMARY_SHEET_NAME
    report_layout: ReportLayout = "sheetsAsRows"
    columns_to_hide: str = ""
    autosize_columns: bool = True
    chunk_size: int = DEFAULT_CHUNK_SIZE
    insert_column: str = "J"
    insert_start_row: int = 1
    in_sheet_title: str = "Summary"
    show_blanks_in_summary: bool = True
    local_keys_only: bool = False
    clear_existing_summary: bool = False
    add_total_row: bool = True
    header_formatting: Optional[CellStyle] = None
    blank_row_formatting: Optional[CellStyle] = None
    total_row_formatting: Optional[CellStyle] = field(default_factory=lambda: CellStyle(bold=True))
    table_style: Optional[TableStyle] = None
    group_report_title: str = "Grouped Summary Report"
    group_report_multi_source_title: str = "Grouped Summary Report (Multiple Sources)"
    group_report_description: Optional[str] = None
    group_report_header_formatting: Optional[CellStyle] = field(default_factory=lambda: HEADER_STYLE)
    group_report_headers: GroupReportHeaders = field(default_factory=GroupReportHeaders)

    def hidden_names(self) -> set[str]:
        return {part.strip().lower() for part in self.columns_to_hide.split(",") if part.strip()}
