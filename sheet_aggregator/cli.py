from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sheet_aggregator import __version__ as TOOL_VERSION
from sheet_aggregator.contracts import build_contract, build_run_summary, rule_test_payload, scan_payload
from sheet_aggregator.engine import AggregationResult, RuleExplanation, explain_row
from sheet_aggregator.errors import (
    AggregatorError,
    OperationCancelled,
    UnsupportedFormatError,
    WorkbookReadError,
)
from sheet_aggregator.grouping import build_group_report
from sheet_aggregator.loader import open_workbook
from sheet_aggregator.matching import load_mapping_file, parse_value_to_key_map
from sheet_aggregator.progress import ProgressUpdate
from sheet_aggregator.settings import AggregatorSettings, default_settings_path, load_settings, save_settings
from sheet_aggregator.workflow import AggregationSession, FinalizeOptions

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_COMMAND_ERROR = 1
EXIT_PARSE_FAILED = 2
EXIT_CANCELLED = 130


class CliError(Exception):
    def __init__(self, message: str, code: int = EXIT_COMMAND_ERROR) -> None:
        super().__init__(message)
        self.code = code


class SheetAggregatorArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CliError(message, EXIT_COMMAND_ERROR)


def eprint(message: str) -> None:
    print(message, file=sys.stderr)


def emit_human(message: str, *, quiet: bool = False) -> None:
    if not quiet:
        eprint(message)


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True)


def timestamp_token() -> str:
    override = os.environ.get("SHEET_AGGREGATOR_OUTPUT_STAMP")
    if override:
        return override
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def default_output_dir(input_path: Path) -> Path:
    return Path.cwd() / "sheet-aggregator-output" / f"{input_path.stem}-{timestamp_token()}"


def determine_output_dir(args: argparse.Namespace, input_path: Path) -> Path:
    if getattr(args, "out_dir", None):
        return Path(args.out_dir)
    return default_output_dir(input_path)


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json_dumps(payload), encoding="utf-8")


def safe_output_path(path: Path) -> Path:
    if path.exists():
        raise CliError(f"Refusing to overwrite existing output: {path}", EXIT_COMMAND_ERROR)
    return path


def configure_logging(args: argparse.Namespace) -> None:
    if getattr(args, "quiet", False):
        level = logging.ERROR
    elif getattr(args, "verbose", 0) >= 2:
        level = logging.DEBUG
    elif getattr(args, "verbose", 0) == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s", force=True)


def classify_exception(exc: Exception) -> int:
    if isinstance(exc, CliError):
        return exc.code
    if isinstance(exc, OperationCancelled):
        return EXIT_CANCELLED
    if isinstance(exc, (WorkbookReadError, UnsupportedFormatError, UnicodeDecodeError)):
        return EXIT_PARSE_FAILED
    return EXIT_COMMAND_ERROR


def load_cli_settings(args: argparse.Namespace) -> AggregatorSettings:
    settings = load_settings(Path(args.settings) if getattr(args, "settings", None) else None)
    if getattr(args, "sheets", None):
        settings.sheet_names = list(args.sheets)
    mapping_file = getattr(args, "mapping", None)
    terms = getattr(args, "terms", None)
    if mapping_file and terms:
        raise CliError("Use either --terms or --mapping, not both.", EXIT_COMMAND_ERROR)
    if mapping_file:
        settings.mapping_text = load_mapping_file(Path(mapping_file))
    elif terms:
        settings.mapping_text = terms.replace("\\n", "\n")
    return settings


def load_edits(path: Optional[str]) -> dict[str, str]:
    if not path:
        return {}
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise CliError(f"Could not read edits: {exc}", EXIT_COMMAND_ERROR) from exc
    if not isinstance(payload, dict):
        raise CliError("Edits root must be a JSON object of original key -> new key.", EXIT_COMMAND_ERROR)
    return {str(key): str(value) for key, value in payload.items()}


def open_input(args: argparse.Namespace) -> tuple[Path, AggregationSession]:
    input_path = Path(args.input)
    if not input_path.exists():
        raise CliError(f"File not found: {input_path}", EXIT_COMMAND_ERROR)
    handle = open_workbook(input_path)
    session = AggregationSession(handle, input_path.name)
    signal.signal(signal.SIGINT, lambda signum, frame: session.cancel())
    return input_path, session


def progress_printer(quiet: bool):
    def report(update: ProgressUpdate) -> None:
        emit_human(f"[{update.stage}] {update.current_sheet}/{update.total_sheets} {update.sheet_name}", quiet=quiet)

    return report


def run_scan_step(session: AggregationSession, settings: AggregatorSettings, *, quiet: bool) -> AggregationResult:
    sheets = settings.sheet_names or session.handle.list_sheet_names()
    return session.scan(
        sheets,
        parse_value_to_key_map(settings.mapping_text),
        settings.scan_config(),
        settings.scan_options(),
        blank_label=settings.blank_label,
        progress=progress_printer(quiet),
    )


def render_counts_text(result: AggregationResult, blank_label: str) -> str:
    lines = ["sheet-aggregator scan", f"Sheets processed: {len(result.processed_sheet_names)}"]
    for sheet, reason in result.skipped_sheets:
        lines.append(f"Skipped {sheet}: {reason}")
    keys = result.keys_with_blanks(blank_label)
    if not keys:
        lines.append("No matches.")
        return "\n".join(lines) + "\n"
    width = max(len(key) for key in keys)
    for key in keys:
        total = result.blank_total if key == blank_label else result.total_counts.get(key, 0)
        lines.append(f"{key.ljust(width)}  {total}")
    return "\n".join(lines) + "\n"


def render_explanation_text(explanation: RuleExplanation) -> str:
    lines = [f"Row {explanation.row_number} on {explanation.sheet_name}"]
    if explanation.skipped_reason:
        lines.append(f"Skipped: {explanation.skipped_reason}")
        return "\n".join(lines) + "\n"
    for trace in explanation.columns:
        lines.append(f"- {trace.header}: {trace.text!r}")
        for hit in trace.hits:
            lines.append(f"    {hit.term!r} -> {hit.key} (score {hit.score})")
    for key, score in sorted(explanation.scores.items()):
        lines.append(f"Score {key}: {score}")
    lines.append(f"Winner: {explanation.winner or '(none)'}")
    return "\n".join(lines) + "\n"


def run_scan(args: argparse.Namespace) -> int:
    input_path, session = open_input(args)
    settings = load_cli_settings(args)
    result = run_scan_step(session, settings, quiet=args.quiet or args.json)
    payload = scan_payload(result)
    payload["run_summary"] = build_run_summary(
        tool="sheet-aggregator",
        command="scan",
        input_path=input_path,
        metrics={
            "sheets_processed": len(result.processed_sheet_names),
            "sheets_skipped": len(result.skipped_sheets),
            "reporting_keys": len(result.reporting_keys),
            "matched_rows": sum(len(rows) for rows in result.matching_rows.values()),
            "blank_rows": result.blank_total,
        },
        warnings=[f"{sheet}: {reason}" for sheet, reason in result.skipped_sheets],
    )
    report_path = determine_output_dir(args, input_path) / "scan.json"
    write_json(report_path, payload)
    if args.json:
        print(json_dumps(payload))
    else:
        emit_human(render_counts_text(result, session.blank_label).rstrip(), quiet=args.quiet)
        emit_human(f"Scan written: {report_path}", quiet=args.quiet)
    return EXIT_SUCCESS


def run_finalize(args: argparse.Namespace) -> int:
    input_path, session = open_input(args)
    settings = load_cli_settings(args)
    run_scan_step(session, settings, quiet=args.quiet)
    session.edit_keys(load_edits(args.edits))
    options = FinalizeOptions.from_settings(settings)
    out_dir = determine_output_dir(args, input_path)
    outcome = session.finalize(options, settings.summary_config())
    output_path = safe_output_path(Path(args.output) if args.output else out_dir / outcome.file_name)
    outcome.handle.save(output_path)

    metrics = {
        "formulas_stripped": outcome.formulas_stripped,
        "cells_filled": outcome.fill.cells_filled if outcome.fill else 0,
        "cells_updated": outcome.updates.total_cells_updated if outcome.updates else 0,
        "rows_marked": outcome.marks.rows_marked if outcome.marks else 0,
        "summaries_inserted": len(outcome.summaries_inserted),
        "report_sheets": len(outcome.report_sheets.visible()) if outcome.report_sheets else 0,
        "update_report_sheets": len(outcome.update_report_sheets),
    }
    payload = {
        "contract": build_contract("aggregator.finalize"),
        "output_file": str(output_path),
        "verification": scan_payload(outcome.verification),
        "run_summary": build_run_summary(
            tool="sheet-aggregator", command="finalize", input_path=input_path, output_path=output_path, metrics=metrics
        ),
    }
    write_json(out_dir / "finalize.json", payload)
    if args.json:
        print(json_dumps(payload))
    else:
        for name, value in metrics.items():
            emit_human(f"{name}: {value}", quiet=args.quiet)
        emit_human(f"Workbook written: {output_path}", quiet=args.quiet)
    return EXIT_SUCCESS


def run_report(args: argparse.Namespace) -> int:
    input_path, session = open_input(args)
    settings = load_cli_settings(args)
    run_scan_step(session, settings, quiet=args.quiet)
    session.edit_keys(load_edits(args.edits))
    update = settings.update_config() if settings.generate_update_report else None
    handle, name = session.build_report_workbook(
        settings.summary_config(), reporting_sheets=settings.reporting_sheet_names or None, update=update
    )
    out_dir = determine_output_dir(args, input_path)
    output_path = safe_output_path(out_dir / name)
    handle.save(output_path)
    write_json(
        out_dir / "report.json",
        {
            "contract": build_contract("aggregator.report"),
            "output_file": str(output_path),
            "sheets": handle.list_sheet_names(),
            "run_summary": build_run_summary(
                tool="sheet-aggregator",
                command="report",
                input_path=input_path,
                output_path=output_path,
                metrics={"sheets_written": len(handle.list_sheet_names())},
            ),
        },
    )
    emit_human(f"Report written: {output_path}", quiet=args.quiet)
    return EXIT_SUCCESS


def run_group_report(args: argparse.Namespace) -> int:
    input_path, session = open_input(args)
    settings = load_cli_settings(args)
    groups_path = Path(args.groups)
    if not groups_path.exists():
        raise CliError(f"Group mapping not found: {groups_path}", EXIT_COMMAND_ERROR)
    run_scan_step(session, settings, quiet=args.quiet)
    session.edit_keys(load_edits(args.edits))
    mapping_text = groups_path.read_text(encoding="utf-8")
    handle, name = session.build_group_report(mapping_text, settings.summary_config(), final=not args.preliminary)
    out_dir = determine_output_dir(args, input_path)
    output_path = safe_output_path(out_dir / name)
    handle.save(output_path)
    result = session.resolution.result if not args.preliminary else session.result
    report = build_group_report(result, mapping_text)
    write_json(
        out_dir / "group_report.json",
        {
            "contract": build_contract("aggregator.group_report"),
            "output_file": str(output_path),
            "groups": {group.name: group.total for group in report.groups},
            "unmapped_total": report.unmapped_total,
            "grand_total": report.grand_total,
            "run_summary": build_run_summary(
                tool="sheet-aggregator",
                command="group-report",
                input_path=input_path,
                output_path=output_path,
                metrics={"groups": len(report.groups), "unmapped_keys": len(report.unmapped)},
            ),
        },
    )
    emit_human(f"Group report written: {output_path}", quiet=args.quiet)
    return EXIT_SUCCESS


def run_test_rule(args: argparse.Namespace) -> int:
    input_path, session = open_input(args)
    settings = load_cli_settings(args)
    explanation = explain_row(
        session.handle,
        args.sheet,
        args.row,
        parse_value_to_key_map(settings.mapping_text),
        settings.scan_config(),
        settings.header_row,
    )
    if args.json:
        print(json_dumps(rule_test_payload(explanation)))
    else:
        print(render_explanation_text(explanation).rstrip())
    return EXIT_SUCCESS


def run_config_init(args: argparse.Namespace) -> int:
    config_path = Path(args.path) if args.path else default_settings_path()
    if config_path.exists():
        eprint(f"Refusing to overwrite existing config: {config_path}")
        return EXIT_COMMAND_ERROR
    save_settings(AggregatorSettings(), config_path)
    emit_human(f"Config written: {config_path}")
    return EXIT_SUCCESS


def run_version() -> int:
    print(TOOL_VERSION)
    return EXIT_SUCCESS


def add_common_arguments(parser: argparse.ArgumentParser, *, mapping: bool = True) -> None:
    parser.add_argument("input", help="Input workbook (.xlsx, .xlsm, .csv, .tsv, .txt)")
    parser.add_argument("--settings", help="Settings JSON (default: sheet-aggregator.json or $SHEET_AGGREGATOR_SETTINGS)")
    if mapping:
        parser.add_argument("--sheet", dest="sheets", action="append", help="Sheet to scan; repeat for several")
        parser.add_argument("--terms", help="Inline 'term : key' lines, separated by \\n")
        parser.add_argument("--mapping", help="Mapping file of 'term : key' lines or a JSON object")
    parser.add_argument("-o", "--out", dest="out_dir", help="Output directory")
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logs (-vv for debug)")


def build_parser() -> argparse.ArgumentParser:
    parser = SheetAggregatorArgumentParser(
        prog="sheet-aggregator", description="Count mapped keys across workbook sheets and build reports."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Scan sheets and count matching keys.")
    add_common_arguments(scan)
    scan.add_argument("--json", action="store_true", help="Write machine JSON to stdout")

    finalize = subparsers.add_parser("finalize", help="Scan, apply key edits and write the modified workbook.")
    add_common_arguments(finalize)
    finalize.add_argument("--edits", help="JSON object of original key -> edited key")
    finalize.add_argument("--output", help="Explicit workbook output path")
    finalize.add_argument("--json", action="store_true", help="Write machine JSON to stdout")

    report = subparsers.add_parser("report", help="Write the aggregation report workbook.")
    add_common_arguments(report)
    report.add_argument("--edits", help="JSON object of original key -> edited key")

    group = subparsers.add_parser("group-report", help="Write the grouped summary report workbook.")
    add_common_arguments(group)
    group.add_argument("--groups", required=True, help="File of 'Group: key1, key2' lines")
    group.add_argument("--edits", help="JSON object of original key -> edited key")
    group.add_argument("--preliminary", action="store_true", help="Group the scanned keys, ignoring edits")

    test_rule = subparsers.add_parser("test-rule", help="Explain how one row is matched.")
    add_common_arguments(test_rule, mapping=False)
    test_rule.add_argument("--sheet", required=True, help="Sheet name")
    test_rule.add_argument("--row", required=True, type=int, help="1-based spreadsheet row")
    test_rule.add_argument("--terms", help="Inline 'term : key' lines, separated by \\n")
    test_rule.add_argument("--mapping", help="Mapping file of 'term : key' lines or a JSON object")
    test_rule.add_argument("--json", action="store_true", help="Write machine JSON to stdout")

    config = subparsers.add_parser("config", help="Generate settings.")
    config_subparsers = config.add_subparsers(dest="config_command", required=True)
    config_init = config_subparsers.add_parser("init", help="Write a starter settings file.")
    config_init.add_argument("--path", help="Settings output path")

    subparsers.add_parser("version", help="Print version")
    return parser


COMMANDS = {
    "scan": run_scan,
    "finalize": run_finalize,
    "report": run_report,
    "group-report": run_group_report,
    "test-rule": run_test_rule,
}


def main(argv: list[str] | None = None) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        configure_logging(args)
        if args.command == "version":
            return run_version()
        if args.command == "config":
            if args.config_command == "init":
                return run_config_init(args)
        handler = COMMANDS.get(args.command)
        if handler is None:
            raise CliError(f"Unknown command: {args.command}", EXIT_COMMAND_ERROR)
        return handler(args)
    except CliError as exc:
        eprint(str(exc))
        return exc.code
    except KeyboardInterrupt:
        eprint("Cancelled by user.")
        return EXIT_CANCELLED
    except (AggregatorError, OSError) as exc:
        eprint(str(exc))
        return classify_exception(exc)


if __name__ == "__main__":
    raise SystemExit(main())
