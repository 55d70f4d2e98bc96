"""Shared versioned contracts for sheet-aggregator JSON outputs."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sheet_aggregator.config import KeyMatchConfig
from sheet_aggregator.engine import AggregationResult, RuleExplanation

CONTRACT_VERSIONS = {
    "aggregator.scan": "1.0.0",
    "aggregator.finalize": "1.0.0",
    "aggregator.report": "1.0.0",
    "aggregator.group_report": "1.0.0",
    "aggregator.rule_test": "1.0.0",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def build_contract(name: str) -> dict[str, str]:
    version = CONTRACT_VERSIONS[name]
    return {"name": name, "version": version}


def build_run_summary(
    *,
    tool: str,
    command: str,
    input_path: Path,
    status: str = "ok",
    output_path: Path | None = None,
    metrics: dict[str, Any] | None = None,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    return {
        "tool": tool,
        "command": command,
        "status": status,
        "generated_at": utc_now_iso(),
        "input_file": str(input_path),
        "output_file": str(output_path) if output_path else None,
        "warnings_count": len(warnings or []),
        "warnings": list(warnings or []),
        "metrics": metrics or {},
    }


def scan_description(result: AggregationResult) -> dict[str, Any]:
    scan = result.scan
    if isinstance(scan, KeyMatchConfig):
        return {
            "mode": "keyMatch",
            "key_column": scan.key_column,
            "discover_new_keys": scan.discover_new_keys,
            "live_formulas": scan.live_formulas,
        }
    return {
        "mode": "valueMatch",
        "search_columns": scan.search_columns,
        "match_mode": scan.match_mode,
        "conditional_column": scan.conditional_column,
    }


def scan_payload(result: AggregationResult) -> dict[str, Any]:
    """JSON-ready view of an AggregationResult."""
    blank_counts = None
    if result.blank_counts is not None:
        blank_counts = {"total": result.blank_counts.total, "per_sheet": dict(result.blank_counts.per_sheet)}
    blank_details = None
    if result.blank_details is not None:
        blank_details = [
            {"sheet": detail.sheet_name, "row": detail.row_number, "data": {k: _jsonable(v) for k, v in detail.row_data.items()}}
            for detail in result.blank_details
        ]
    return {
        "contract": build_contract("aggregator.scan"),
        "scan": scan_description(result),
        "header_row": result.header_row,
        "processed_sheets": list(result.processed_sheet_names),
        "skipped_sheets": [{"sheet": sheet, "reason": reason} for sheet, reason in result.skipped_sheets],
        "reporting_keys": list(result.reporting_keys),
        "total_counts": dict(result.total_counts),
        "per_sheet_counts": {sheet: dict(counts) for sheet, counts in result.per_sheet_counts.items()},
        "matching_rows": {sheet: sorted(rows) for sheet, rows in result.matching_rows.items()},
        "sheet_titles": dict(result.sheet_titles),
        "blank_counts": blank_counts,
        "blank_details": blank_details,
        "value_to_key_map": dict(result.value_to_key_map),
    }


def rule_test_payload(explanation: RuleExplanation) -> dict[str, Any]:
    return {
        "contract": build_contract("aggregator.rule_test"),
        "sheet": explanation.sheet_name,
        "row": explanation.row_number,
        "skipped_reason": explanation.skipped_reason,
        "columns": [
            {
                "header": trace.header,
                "text": trace.text,
                "hits": [{"term": hit.term, "key": hit.key, "score": hit.score} for hit in trace.hits],
            }
            for trace in explanation.columns
        ],
        "scores": dict(explanation.scores),
        "winner": explanation.winner,
    }


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
