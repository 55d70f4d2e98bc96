#!/usr/bin/env python3
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import pandas as pd
import streamlit as st

from sheet_aggregator.config import BLANK_MODES, MATCH_MODES, REPORT_LAYOUTS
from sheet_aggregator.contracts import rule_test_payload, scan_payload
from sheet_aggregator.engine import AggregationResult, explain_row
from sheet_aggregator.errors import AggregatorError, OperationCancelled
from sheet_aggregator.loader import ALL_FORMATS, open_workbook_bytes
from sheet_aggregator.matching import parse_value_to_key_map
from sheet_aggregator.progress import ProgressUpdate
from sheet_aggregator.resolver import KeyEditResolution, editable_keys
from sheet_aggregator.settings import AggregatorSettings, default_settings_path, load_settings, save_settings
from sheet_aggregator.workflow import AggregationSession, FinalizeOptions, SessionState

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
XLSM_MIME = "application/vnd.ms-excel.sheet.macroEnabled.12"
KEY_TABLE_COLUMNS = ["Original Key", "Count", "New Key"]


def ensure_state() -> None:
    st.session_state.setdefault("processing", False)
    st.session_state.setdefault("session", None)
    st.session_state.setdefault("downloads", [])
    st.session_state.setdefault("messages", [])
    st.session_state.setdefault("settings", load_settings())


def key_table(result: AggregationResult, resolution: Optional[KeyEditResolution], blank_label: str) -> pd.DataFrame:
    """One editable row per reporting key, plus the blank label when blanks were counted."""
    rows = []
    for key in editable_keys(result, blank_label):
        count = result.blank_total if key == blank_label else result.total_counts.get(key, 0)
        new_key = resolution.resolve(key) if resolution is not None else key
        rows.append({"Original Key": key, "Count": count, "New Key": "" if new_key == key else new_key})
    return pd.DataFrame(rows, columns=KEY_TABLE_COLUMNS)


def edits_from_table(table: pd.DataFrame) -> dict[str, str]:
    edits: dict[str, str] = {}
    for record in table.to_dict("records"):
        new_key = record.get("New Key")
        if isinstance(new_key, str) and new_key.strip():
            edits[str(record["Original Key"])] = new_key.strip()
    return edits


def final_counts_table(resolution: KeyEditResolution) -> pd.DataFrame:
    result = resolution.result
    rows = [
        {"Final Key": key, "Total": result.total_counts.get(key, 0), "Merged From": ", ".join(resolution.edited_to_originals.get(key, [key]))}
        for key in result.reporting_keys
    ]
    return pd.DataFrame(rows, columns=["Final Key", "Total", "Merged From"])


def progress_fraction(update: ProgressUpdate) -> float:
    if update.total_sheets <= 0:
        return 1.0
    return min(1.0, update.current_sheet / update.total_sheets)


def mime_for(file_name: str) -> str:
    return XLSM_MIME if file_name.lower().endswith(".xlsm") else XLSX_MIME


def render_sidebar_settings(settings: AggregatorSettings, sheet_names: list[str], disabled: bool) -> AggregatorSettings:
    """Widgets for every option; returns a new settings object built from them."""
    values = settings.to_dict()
    with st.sidebar:
        st.header("Scan")
        values["aggregation_mode"] = st.radio(
            "Aggregation mode",
            ["valueMatch", "keyMatch"],
            index=0 if settings.aggregation_mode == "valueMatch" else 1,
            horizontal=True,
            disabled=disabled,
        )
        values["header_row"] = int(st.number_input("Header row", min_value=1, value=settings.header_row, disabled=disabled))
        if values["aggregation_mode"] == "valueMatch":
            values["search_columns"] = st.text_input("Search columns", settings.search_columns, disabled=disabled)
            values["match_mode"] = st.selectbox(
                "Match mode", MATCH_MODES, index=MATCH_MODES.index(settings.match_mode), disabled=disabled
            )
            values["conditional_column"] = st.text_input(
                "Only rows where this column is blank", settings.conditional_column or "", disabled=disabled
            ) or None
        else:
            values["discover_new_keys"] = st.checkbox("Discover new keys", settings.discover_new_keys, disabled=disabled)
            values["live_formulas"] = st.checkbox("Live formulas", settings.live_formulas, disabled=disabled)
        values["key_column"] = st.text_input("Key column", settings.key_column or "", disabled=disabled) or None
        values["title_cell"] = st.text_input("Sheet title cell", settings.title_cell or "", disabled=disabled) or None

        st.header("Blanks")
        values["blank_column"] = st.text_input("Count blanks in column", settings.blank_column or "", disabled=disabled) or None
        values["blank_mode"] = st.selectbox("Blank mode", BLANK_MODES, index=BLANK_MODES.index(settings.blank_mode), disabled=disabled)
        values["blank_label"] = st.text_input("Blank label", settings.blank_label, disabled=disabled)
        values["capture_blank_details"] = st.checkbox("Blank row details", settings.capture_blank_details, disabled=disabled)

        st.header("Modify")
        values["fill_key_column"] = st.checkbox("Fill empty key cells", settings.fill_key_column, disabled=disabled)
        values["update_enabled"] = st.checkbox("Lookup and update", settings.update_enabled, disabled=disabled)
        if values["update_enabled"]:
            values["update_column"] = st.text_input("Update column", settings.update_column or "", disabled=disabled) or None
            values["update_only_blanks"] = st.checkbox("Only blank targets", settings.update_only_blanks, disabled=disabled)
            values["paired_validation_columns"] = st.text_input(
                "Paired validation columns", settings.paired_validation_columns or "", disabled=disabled
            ) or None
        values["mark_rows"] = st.checkbox("Mark matching rows", settings.mark_rows, disabled=disabled)
        if values["mark_rows"]:
            values["mark_column"] = st.text_input("Mark column", settings.mark_column or "", disabled=disabled) or None
            values["mark_value"] = st.text_input("Marker (may use {Column})", settings.mark_value, disabled=disabled)
        values["insert_summaries"] = st.checkbox("Insert in-sheet summaries", settings.insert_summaries, disabled=disabled)
        if values["insert_summaries"]:
            values["insert_column"] = st.text_input("Insert column", settings.insert_column, disabled=disabled)
            values["insert_start_row"] = int(
                st.number_input("Insert row", min_value=1, value=settings.insert_start_row, disabled=disabled)
            )
            values["local_keys_only"] = st.checkbox("Local keys only", settings.local_keys_only, disabled=disabled)
            values["clear_existing_summary"] = st.checkbox(
                "Clear previous summary", settings.clear_existing_summary, disabled=disabled
            )

        st.header("Reports")
        values["report_layout"] = st.selectbox(
            "Layout", REPORT_LAYOUTS, index=REPORT_LAYOUTS.index(settings.report_layout), disabled=disabled
        )
        values["columns_to_hide"] = st.text_input("Hide rows/columns named", settings.columns_to_hide, disabled=disabled)
        values["reporting_sheet_names"] = st.multiselect(
            "Reporting sheets (default: scanned sheets)",
            sheet_names,
            default=[name for name in settings.reporting_sheet_names if name in sheet_names],
            disabled=disabled,
        )
        values["chunk_size"] = int(st.number_input("Rows per report sheet", min_value=2, value=settings.chunk_size, disabled=disabled))
    return AggregatorSettings.from_dict(values)


def render_settings_file(settings: AggregatorSettings, disabled: bool) -> None:
    with st.sidebar:
        st.header("Settings file")
        settings_path = st.text_input("Path", str(default_settings_path()))
        if st.button("Save settings", disabled=disabled):
            saved = save_settings(settings, Path(settings_path))
            st.success(f"Saved {saved}")


def run_scan(upload, settings: AggregatorSettings) -> None:
    handle = open_workbook_bytes(upload.getvalue(), upload.name)
    session = AggregationSession(handle, upload.name)
    sheets = settings.sheet_names or handle.list_sheet_names()
    progress = st.progress(0.0, text="Preparing scan...")

    def on_progress(update: ProgressUpdate) -> None:
        progress.progress(progress_fraction(update), text=f"{update.stage}: {update.sheet_name}")

    session.scan(
        sheets,
        parse_value_to_key_map(settings.mapping_text),
        settings.scan_config(),
        settings.scan_options(),
        blank_label=settings.blank_label,
        progress=on_progress,
    )
    progress.empty()
    st.session_state["session"] = session
    st.session_state["downloads"] = []


def build_downloads(session: AggregationSession, settings: AggregatorSettings) -> list[dict]:
    """Reports come from the reviewed result first; finalize moves the session back to idle."""
    downloads = []
    config = settings.summary_config()
    update = settings.update_config() if settings.generate_update_report else None
    handle, name = session.build_report_workbook(
        config, reporting_sheets=settings.reporting_sheet_names or None, update=update
    )
    downloads.append({"label": "Download report workbook", "name": name, "data": handle.to_bytes()})
    if settings.group_mapping_text.strip():
        handle, name = session.build_group_report(settings.group_mapping_text, config, final=True)
        downloads.append({"label": "Download group report", "name": name, "data": handle.to_bytes()})
    downloads.append(
        {
            "label": "Download scan JSON",
            "name": f"{Path(session.source_name).stem}_scan.json",
            "data": json.dumps(scan_payload(session.resolution.result), indent=2, ensure_ascii=False).encode("utf-8"),
            "mime": "application/json",
        }
    )
    options = FinalizeOptions.from_settings(settings)
    if options.has_modifications:
        outcome = session.finalize(options, config)
        downloads.insert(0, {"label": "Download final workbook", "name": outcome.file_name, "data": outcome.handle.to_bytes()})
    return downloads


def render_test_rule(session: AggregationSession, settings: AggregatorSettings) -> None:
    with st.expander("Test a rule on one row"):
        sheet = st.selectbox("Sheet", session.result.processed_sheet_names, key="rule_sheet")
        row = int(st.number_input("Row number", min_value=1, value=settings.header_row + 1, key="rule_row"))
        if st.button("Explain row", key="rule_button"):
            try:
                explanation = explain_row(
                    session.handle,
                    sheet,
                    row,
                    session.result.value_to_key_map,
                    session.scan_config,
                    settings.header_row,
                )
            except AggregatorError as exc:
                st.error(str(exc))
                return
            st.json(rule_test_payload(explanation))


def render_review(session: AggregationSession, settings: AggregatorSettings) -> None:
    result = session.result
    st.subheader("Review keys")
    for sheet, reason in result.skipped_sheets:
        st.warning(f"Skipped {sheet}: {reason}")
    cols = st.columns(3)
    cols[0].metric("Sheets scanned", len(result.processed_sheet_names))
    cols[1].metric("Keys found", len(result.reporting_keys))
    cols[2].metric("Blank rows", result.blank_total)

    table = key_table(result, session.resolution, session.blank_label)
    edited = st.data_editor(
        table,
        disabled=["Original Key", "Count"],
        hide_index=True,
        width="stretch",
        key="key_editor",
    )
    resolution = session.edit_keys(edits_from_table(edited))
    st.caption("Totals after edits")
    st.dataframe(final_counts_table(resolution), hide_index=True, width="stretch")
    render_test_rule(session, settings)

    if st.button("Finalize", type="primary", width="stretch"):
        try:
            st.session_state["downloads"] = build_downloads(session, settings)
        except OperationCancelled:
            st.info("Cancelled.")
        except AggregatorError as exc:
            st.error(str(exc))


def render_downloads() -> None:
    for item in st.session_state.get("downloads") or []:
        st.download_button(
            item["label"],
            data=item["data"],
            file_name=item["name"],
            mime=item.get("mime") or mime_for(item["name"]),
            width="stretch",
            key=f"download_{item['name']}",
        )


def main() -> None:
    st.set_page_config(page_title="sheet-aggregator", layout="wide")
    ensure_state()
    st.title("sheet-aggregator")
    st.caption("Count mapped terms across sheets, review the keys, then download the updated workbook and reports.")

    processing = st.session_state["processing"]
    upload = st.file_uploader(
        "Upload workbook", type=[ext.lstrip(".") for ext in sorted(ALL_FORMATS)], key="upload_input", disabled=processing
    )
    sheet_names: list[str] = []
    session: Optional[AggregationSession] = st.session_state["session"]
    if session is not None:
        sheet_names = session.handle.list_sheet_names()
    settings = render_sidebar_settings(st.session_state["settings"], sheet_names, processing)
    settings.mapping_text = st.text_area(
        "Terms (one 'term : key' per line)", settings.mapping_text, height=160, disabled=processing
    )
    settings.group_mapping_text = st.text_area(
        "Groups (one 'Group: key1, key2' per line)", settings.group_mapping_text, height=100, disabled=processing
    )
    if sheet_names:
        settings.sheet_names = st.multiselect(
            "Sheets to scan (default: all)",
            sheet_names,
            default=[name for name in settings.sheet_names if name in sheet_names],
            disabled=processing,
        )
    st.session_state["settings"] = settings
    render_settings_file(settings, processing)

    if st.button("Process", type="primary", width="stretch", disabled=processing or upload is None):
        st.session_state["processing"] = True
        st.rerun()

    if st.session_state["processing"]:
        st.info("Scanning the workbook. Please be patient.")
        try:
            run_scan(upload, settings)
        except OperationCancelled:
            st.session_state["messages"] = ["Scan cancelled."]
        except AggregatorError as exc:
            st.session_state["messages"] = [str(exc)]
        st.session_state["processing"] = False
        st.rerun()

    for message in st.session_state.get("messages") or []:
        st.error(message)
    st.session_state["messages"] = []

    session = st.session_state["session"]
    if session is None:
        st.info("Supported here: " + " ".join(sorted(ALL_FORMATS)))
        return
    if session.state is SessionState.REVIEWING:
        render_review(session, settings)
    render_downloads()


if __name__ == "__main__":
    main()
