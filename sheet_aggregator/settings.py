"""Persistent aggregator settings stored as JSON, and their conversion to typed configs."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

from sheet_aggregator.config import (
    BLANK_MODES,
    DEFAULT_BLANK_LABEL,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_SUMMARY_SHEET_NAME,
    HEADER_STYLE,
    MATCH_MODES,
    REPORT_LAYOUTS,
    BlankTracking,
    CellStyle,
    GroupReportHeaders,
    KeyMatchConfig,
    ScanConfig,
    ScanOptions,
    SummaryConfig,
    TableStyle,
    UpdateConfig,
    ValueMatchConfig,
)
from sheet_aggregator.errors import ConfigurationError

logger = logging.getLogger(__name__)

SETTINGS_ENV = "SHEET_AGGREGATOR_SETTINGS"
DEFAULT_SETTINGS_FILE = "sheet-aggregator.json"
AGGREGATION_MODES = ("valueMatch", "keyMatch")


@dataclass
class AggregatorSettings:
    # scan
    mapping_text: str = ""
    sheet_names: list[str] = field(default_factory=list)
    reporting_sheet_names: list[str] = field(default_factory=list)
    aggregation_mode: str = "valueMatch"
    search_columns: str = "A"
    match_mode: str = "whole"
    conditional_column: Optional[str] = None
    key_column: Optional[str] = None
    discover_new_keys: bool = False
    live_formulas: bool = False
    header_row: int = 1
    title_cell: Optional[str] = None
    blank_column: Optional[str] = None
    blank_mode: str = "rowAware"
    capture_blank_details: bool = False

    # modifications
    fill_key_column: bool = False
    update_enabled: bool = False
    update_column: Optional[str] = None
    update_only_blanks: bool = False
    paired_validation_columns: Optional[str] = None
    generate_update_report: bool = True
    mark_rows: bool = False
    mark_column: Optional[str] = None
    mark_value: str = "Processed"
    insert_summaries: bool = False
    generate_report_sheets: bool = True

    # summaries and reports
    blank_label: str = DEFAULT_BLANK_LABEL
    summary_sheet_name: str = DEFAULT_SUMMARY_SHEET_NAME
    report_layout: str = "sheetsAsRows"
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
    header_formatting: Optional[dict[str, Any]] = None
    blank_row_formatting: Optional[dict[str, Any]] = None
    total_row_formatting: Optional[dict[str, Any]] = field(default_factory=lambda: {"bold": True})
    table_style: Optional[dict[str, Any]] = None

    # group report
    group_mapping_text: str = ""
    group_report_title: str = "Grouped Summary Report"
    group_report_multi_source_title: str = "Grouped Summary Report (Multiple Sources)"
    group_report_description: Optional[str] = None
    group_report_header_formatting: Optional[dict[str, Any]] = field(default_factory=lambda: asdict(HEADER_STYLE))
    group_report_headers: dict[str, str] = field(default_factory=lambda: asdict(GroupReportHeaders()))

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "AggregatorSettings":
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            logger.warning("Ignoring unknown settings: %s", ", ".join(unknown))
        settings = cls(**{key: value for key, value in payload.items() if key in known})
        settings.validate()
        return settings

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        _check_choice("aggregation_mode", self.aggregation_mode, AGGREGATION_MODES)
        _check_choice("match_mode", self.match_mode, MATCH_MODES)
        _check_choice("blank_mode", self.blank_mode, BLANK_MODES)
        _check_choice("report_layout", self.report_layout, REPORT_LAYOUTS)
        if not isinstance(self.header_row, int) or self.header_row < 1:
            raise ConfigurationError("header_row must be a positive integer", identifier=str(self.header_row))
        if not isinstance(self.chunk_size, int) or self.chunk_size < 2:
            raise ConfigurationError("chunk_size must be at least 2", identifier=str(self.chunk_size))

    @property
    def uses_key_match(self) -> bool:
        return self.aggregation_mode == "keyMatch"

    def scan_config(self) -> ScanConfig:
        if self.uses_key_match:
            if not self.key_column:
                raise ConfigurationError("key_column is required when aggregation_mode is keyMatch")
            return KeyMatchConfig(self.key_column, self.discover_new_keys, self.live_formulas)
        return ValueMatchConfig(self.search_columns, self.match_mode, self.conditional_column or None)

    def scan_options(self) -> ScanOptions:
        tracking = None
        if self.blank_column:
            tracking = BlankTracking(self.blank_column, self.blank_mode, self.capture_blank_details)
        return ScanOptions(
            header_row=self.header_row,
            blank_tracking=tracking,
            title_cell=self.title_cell or None,
            summary_sheet_name=self.summary_sheet_name,
        )

    def update_config(self) -> Optional[UpdateConfig]:
        if not self.update_enabled:
            return None
        if not self.update_column:
            raise ConfigurationError("update_column is required when update_enabled is set")
        return UpdateConfig(
            search_columns=self.search_columns,
            update_column=self.update_column,
            match_mode=self.match_mode,
            update_only_blanks=self.update_only_blanks,
            paired_validation_columns=self.paired_validation_columns or None,
        )

    def summary_config(self) -> SummaryConfig:
        return SummaryConfig(
            blank_label=self.blank_label,
            summary_sheet_name=self.summary_sheet_name,
            report_layout=self.report_layout,
            columns_to_hide=self.columns_to_hide,
            autosize_columns=self.autosize_columns,
            chunk_size=self.chunk_size,
            insert_column=self.insert_column,
            insert_start_row=self.insert_start_row,
            in_sheet_title=self.in_sheet_title,
            show_blanks_in_summary=self.show_blanks_in_summary,
            local_keys_only=self.local_keys_only,
            clear_existing_summary=self.clear_existing_summary,
            add_total_row=self.add_total_row,
            header_formatting=_style("header_formatting", self.header_formatting),
            blank_row_formatting=_style("blank_row_formatting", self.blank_row_formatting),
            total_row_formatting=_style("total_row_formatting", self.total_row_formatting),
            table_style=_table_style(self.table_style),
            group_report_title=self.group_report_title,
            group_report_multi_source_title=self.group_report_multi_source_title,
            group_report_description=self.group_report_description,
            group_report_header_formatting=_style("group_report_header_formatting", self.group_report_header_formatting),
            group_report_headers=_build("group_report_headers", GroupReportHeaders, self.group_report_headers)
            or GroupReportHeaders(),
        )


def _check_choice(name: str, value: str, choices: tuple[str, ...]) -> None:
    if value not in choices:
        raise ConfigurationError(f"{name} must be one of {', '.join(choices)}", identifier=str(value))


def _build(name: str, cls, payload: Optional[dict[str, Any]]):
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{name} must be an object")
    try:
        return cls(**payload)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid {name}: {exc}") from exc


def _style(name: str, payload: Optional[dict[str, Any]]) -> Optional[CellStyle]:
    return _build(name, CellStyle, payload)


def _table_style(payload: Optional[dict[str, Any]]) -> Optional[TableStyle]:
    return _build("table_style", TableStyle, payload)


def default_settings_path() -> Path:
    return Path(os.environ.get(SETTINGS_ENV) or DEFAULT_SETTINGS_FILE)


def load_settings(path: Union[str, Path, None] = None) -> AggregatorSettings:
    """Read settings JSON; a missing file yields the defaults."""
    path = Path(path) if path else default_settings_path()
    if not path.exists():
        logger.info("No settings file at %s; using defaults", path)
        return AggregatorSettings()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Could not read settings: {exc}", identifier=str(path)) from exc
    if not isinstance(payload, dict):
        raise ConfigurationError("Settings root must be a JSON object.", identifier=str(path))
    return AggregatorSettings.from_dict(payload)


def save_settings(settings: AggregatorSettings, path: Union[str, Path, None] = None) -> Path:
    path = Path(path) if path else default_settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings.to_dict(), indent=2, ensure_ascii=False, sort_keys=True), encoding="utf-8")
    logger.info("Settings saved: %s", path)
    return path
