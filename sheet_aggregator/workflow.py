"""Process-then-download workflow: Idle -> Scanning -> Reviewing -> Finalizing -> Idle."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional, Sequence

from sheet_aggregator.config import KeyMatchConfig, ScanConfig, ScanOptions, SummaryConfig, UpdateConfig, ValueMatchConfig
from sheet_aggregator.engine import AggregationResult, aggregate_data
from sheet_aggregator.errors import ConfigurationError, InvalidStateError, OperationCancelled
from sheet_aggregator.grid import WorkbookHandle
from sheet_aggregator.grouping import create_group_report_workbook
from sheet_aggregator.mutators import (
    FillResult,
    MarkResult,
    UpdateResult,
    fill_empty_key_column,
    find_potential_updates,
    lookup_and_update,
    mark_matching_rows,
    strip_formulas,
)
from sheet_aggregator.progress import CancellationToken, ProgressCallback, check_cancelled
from sheet_aggregator.reports import (
    ReportSheets,
    add_aggregation_report_sheets,
    add_update_report_sheets,
    create_aggregation_report_workbook,
)
from sheet_aggregator.resolver import KeyEditResolution, normalize_blank_label, resolve_key_edits
from sheet_aggregator.settings import AggregatorSettings
from sheet_aggregator.summaries import insert_in_sheet_summaries

logger = logging.getLogger(__name__)

PRELIMINARY_GROUP_REPORT = "Preliminary_Group_Report.xlsx"
FINAL_GROUP_REPORT = "Final_Group_Report.xlsx"


class SessionState(enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    REVIEWING = "reviewing"
    FINALIZING = "finalizing"


@dataclass(frozen=True)
class FinalizeOptions:
    """What the finalize step should change in the output workbook."""

    fill_key_column: Optional[str] = None
    update: Optional[UpdateConfig] = None
    mark_column: Optional[str] = None
    mark_value: str = "Processed"
    insert_summaries: bool = False
    report_sheets: bool = True
    update_report: bool = True

    @classmethod
    def from_settings(cls, settings: AggregatorSettings) -> "FinalizeOptions":
        return cls(
            fill_key_column=settings.key_column if settings.fill_key_column else None,
            update=settings.update_config(),
            mark_column=settings.mark_column if settings.mark_rows else None,
            mark_value=settings.mark_value,
            insert_summaries=settings.insert_summaries,
            report_sheets=settings.generate_report_sheets,
            update_report=settings.generate_update_report,
        )

    @property
    def has_modifications(self) -> bool:
        return bool(self.fill_key_column or self.update or self.mark_column or self.insert_summaries or self.report_sheets)


@dataclass
class FinalizeOutcome:
    handle: WorkbookHandle
    file_name: str
    verification: AggregationResult
    formulas_stripped: int = 0
    fill: Optional[FillResult] = None
    updates: Optional[UpdateResult] = None
    marks: Optional[MarkResult] = None
    summaries_inserted: list[str] = field(default_factory=list)
    report_sheets: Optional[ReportSheets] = None
    update_report_sheets: list[str] = field(default_factory=list)


def output_extension(source_name: str) -> str:
    return ".xlsm" if Path(source_name).suffix.lower() == ".xlsm" else ".xlsx"


def output_file_name(source_name: str, options: FinalizeOptions) -> str:
    stem = Path(source_name).stem
    if options.mark_column:
        suffix = "_marked"
    elif options.update and options.fill_key_column:
        suffix = "_fully_updated"
    elif options.update:
        suffix = "_updated"
    elif options.fill_key_column:
        suffix = "_keys_filled"
    else:
        suffix = "_with_aggregates"
    return f"{stem}{suffix}{output_extension(source_name)}"


class AggregationSession:
    """One loaded workbook moving through scan, key review and finalize.

    The source handle is never modified; finalize works on a clone so it
    can be repeated with different edits.
    """

    def __init__(self, handle: WorkbookHandle, source_name: str, *, token: Optional[CancellationToken] = None) -> None:
        self.handle = handle
        self.source_name = source_name
        self.token = token or CancellationToken()
        self.state = SessionState.IDLE
        self.scan_config: Optional[ScanConfig] = None
        self.scan_options: Optional[ScanOptions] = None
        self.result: Optional[AggregationResult] = None
        self.resolution: Optional[KeyEditResolution] = None
        self.edits: dict[str, str] = {}
        self.blank_label: Optional[str] = None

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            allowed = ", ".join(state.value for state in states)
            raise InvalidStateError(f"Cannot do that while {self.state.value}; expected {allowed}")

    def cancel(self) -> None:
        self.token.cancel()

    def reset(self) -> None:
        self._require(SessionState.IDLE, SessionState.REVIEWING)
        self.state = SessionState.IDLE
        self.scan_config = None
        self.scan_options = None
        self.result = None
        self.resolution = None
        self.edits = {}

    def scan(
        self,
        sheet_names: Sequence[str],
        value_to_key_map: Mapping[str, str],
        scan: ScanConfig,
        options: Optional[ScanOptions] = None,
        *,
        blank_label: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> AggregationResult:
        self._require(SessionState.IDLE, SessionState.REVIEWING)
        previous = self.state
        self.state = SessionState.SCANNING
        try:
            result = aggregate_data(
                self.handle, sheet_names, dict(value_to_key_map), scan, options, progress=progress, token=self.token
            )
        except OperationCancelled:
            logger.info("Scan cancelled")
            self.state = previous
            raise
        except Exception:
            self.state = previous
            raise
        finally:
            self.token.reset()
        self.scan_config = scan
        self.scan_options = options or ScanOptions()
        self.result = result
        self.edits = {}
        self.blank_label = normalize_blank_label(blank_label)
        self.resolution = resolve_key_edits(result, {}, self.blank_label)
        self.state = SessionState.REVIEWING
        logger.info("Scan finished: %d keys over %d sheets", len(result.reporting_keys), len(result.processed_sheet_names))
        return result

    def edit_keys(self, edits: Mapping[str, str], blank_label: Optional[str] = None) -> KeyEditResolution:
        """Replace the current key edits and recompute the edited result."""
        self._require(SessionState.REVIEWING)
        if blank_label is not None:
            self.blank_label = normalize_blank_label(blank_label)
        self.edits = dict(edits)
        self.resolution = resolve_key_edits(self.result, self.edits, self.blank_label)
        return self.resolution

    def _verification_scan(
        self, options: FinalizeOptions, final_keys: Sequence[str], edited_map: dict[str, str]
    ) -> tuple[ScanConfig, dict[str, str], bool]:
        """Scan config, map and whether the counts are under original key text."""
        written_column = options.fill_key_column or (options.update.update_column if options.update else None)
        if written_column:
            live = isinstance(self.scan_config, KeyMatchConfig) and self.scan_config.live_formulas
            return KeyMatchConfig(written_column, live_formulas=live), {key.lower(): key for key in final_keys}, False
        return self.scan_config, edited_map, True

    def finalize(self, options: FinalizeOptions, config: SummaryConfig) -> FinalizeOutcome:
        """Run the mutators and report generators on a copy of the workbook.

        Steps run in a fixed order, each seeing the previous one's writes.
        Nothing is returned when the run is cancelled or fails.
        """
        self._require(SessionState.REVIEWING)
        if not options.has_modifications:
            raise ConfigurationError("No modifications requested; nothing to finalize")
        if options.fill_key_column and not isinstance(self.scan_config, ValueMatchConfig):
            raise ConfigurationError("Filling the key column needs a value-match scan")

        self.state = SessionState.FINALIZING
        try:
            outcome = self._finalize(options, config)
        except OperationCancelled:
            logger.info("Finalize cancelled")
            self.state = SessionState.REVIEWING
            raise
        except Exception:
            self.state = SessionState.REVIEWING
            raise
        finally:
            self.token.reset()
        self.state = SessionState.IDLE
        return outcome

    def _finalize(self, options: FinalizeOptions, config: SummaryConfig) -> FinalizeOutcome:
        token = self.token
        original = self.result
        resolution = self.resolution
        edited_map = dict(resolution.result.value_to_key_map)
        header_row = original.header_row
        sheets = list(original.processed_sheet_names)
        work = self.handle.clone()

        stripped = 0
        if options.fill_key_column or options.update or options.mark_column:
            stripped = strip_formulas(work, sheets, token=token)

        fill = None
        if options.fill_key_column:
            scan = self.scan_config
            fill = fill_empty_key_column(
                work, sheets, scan.search_columns, options.fill_key_column, edited_map, scan.match_mode, header_row, token=token
            )

        updates = None
        if options.update:
            updates = lookup_and_update(work, sheets, options.update, edited_map, header_row, token=token)

        marks = None
        if options.mark_column:
            pre_mark = aggregate_data(work, sheets, edited_map, self.scan_config, self.scan_options, token=token)
            marks = mark_matching_rows(
                work, sheets, pre_mark.matching_rows, options.mark_column, options.mark_value, header_row, token=token
            )

        check_cancelled(token)
        final_keys = sorted(set(edited_map.values()) | set(resolution.result.reporting_keys))
        verify_scan, verify_map, original_text = self._verification_scan(options, final_keys, edited_map)
        verification = aggregate_data(work, sheets, verify_map, verify_scan, self.scan_options, token=token)
        edited_to_originals = resolution.edited_to_originals if original_text else None
        final_config = replace(config, blank_label=resolution.blank_label)

        outcome = FinalizeOutcome(
            handle=work,
            file_name=output_file_name(self.source_name, options),
            verification=verification,
            formulas_stripped=stripped,
            fill=fill,
            updates=updates,
            marks=marks,
        )

        if options.insert_summaries:
            tracking = self.scan_options.blank_tracking
            blank_column = tracking.column if tracking else None
            outcome.summaries_inserted = insert_in_sheet_summaries(
                work,
                verification,
                sheets,
                final_config,
                blank_column=blank_column,
                edited_to_originals=edited_to_originals,
                token=token,
            )

        check_cancelled(token)
        if options.report_sheets and (original.reporting_keys or original.blank_total):
            outcome.report_sheets = add_aggregation_report_sheets(
                work,
                original,
                verification,
                final_config,
                original_blank_label=self.blank_label,
                final_blank_label=resolution.blank_label,
                edited_to_originals=resolution.edited_to_originals,
            )

        if options.update_report and updates is not None and updates.details:
            outcome.update_report_sheets = add_update_report_sheets(work, updates, final_config)
            rest = [name for name in work.list_sheet_names() if name not in outcome.update_report_sheets]
            work.reorder_sheets(outcome.update_report_sheets + rest)

        logger.info("Finalized %s", outcome.file_name)
        return outcome

    def build_report_workbook(
        self,
        config: SummaryConfig,
        *,
        reporting_sheets: Optional[Sequence[str]] = None,
        update: Optional[UpdateConfig] = None,
    ) -> tuple[WorkbookHandle, str]:
        """Report sheets in a new workbook, without touching the data.

        A reporting scope different from the scanned sheets is re-aggregated
        with the scan's map. ``update`` adds a dry-run update report.
        """
        self._require(SessionState.REVIEWING)
        original = self.result
        resolution = self.resolution
        if reporting_sheets and set(reporting_sheets) != set(original.processed_sheet_names):
            original = aggregate_data(
                self.handle, reporting_sheets, original.value_to_key_map, self.scan_config, self.scan_options
            )
            resolution = resolve_key_edits(original, self.edits, self.blank_label)

        updates = None
        if update is not None:
            updates = find_potential_updates(
                self.handle,
                original.processed_sheet_names,
                update,
                resolution.result.value_to_key_map,
                original.header_row,
            )

        handle = create_aggregation_report_workbook(
            original,
            resolution.result,
            replace(config, blank_label=resolution.blank_label),
            original_blank_label=self.blank_label,
            final_blank_label=resolution.blank_label,
            edited_to_originals=resolution.edited_to_originals,
            updates=updates,
        )
        return handle, f"{Path(self.source_name).stem}_aggregation_report.xlsx"

    def build_group_report(self, mapping_text: str, config: SummaryConfig, *, final: bool = True) -> tuple[WorkbookHandle, str]:
        """Group report from the edited keys, or from the scan's own keys when ``final`` is false."""
        self._require(SessionState.REVIEWING)
        if final:
            result, label, name = self.resolution.result, self.resolution.blank_label, FINAL_GROUP_REPORT
        else:
            result, label, name = self.result, self.blank_label, PRELIMINARY_GROUP_REPORT
        handle = create_group_report_workbook(
            result,
            self.handle,
            mapping_text,
            result.processed_sheet_names,
            replace(config, blank_label=label),
            self.scan_options.title_cell,
        )
        return handle, name
