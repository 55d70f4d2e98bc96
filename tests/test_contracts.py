from __future__ import annotations

import json
import unittest
from pathlib import Path

from sheet_aggregator.config import BlankTracking, KeyMatchConfig, ScanOptions, ValueMatchConfig
from sheet_aggregator.contracts import (
    CONTRACT_VERSIONS,
    build_contract,
    build_run_summary,
    rule_test_payload,
    scan_payload,
)
from sheet_aggregator.engine import aggregate_data, explain_row
from sheet_aggregator.grid import WorkbookHandle


def menu_handle() -> WorkbookHandle:
    handle = WorkbookHandle.new()
    handle.append_sheet("Menu", [["Note", "Owner"], ["apple pie", "Ann"], ["banana", None], ["apple tart", None]])
    return handle


class ContractTests(unittest.TestCase):
    def test_every_contract_is_versioned(self):
        for name in CONTRACT_VERSIONS:
            self.assertEqual(build_contract(name)["name"], name)
        self.assertEqual(build_contract("aggregator.scan")["version"], "1.0.0")

    def test_run_summary_counts_warnings(self):
        summary = build_run_summary(
            tool="sheet-aggregator", command="scan", input_path=Path("in.xlsx"), warnings=["Sheet2: sheet not found"]
        )
        self.assertEqual(summary["warnings_count"], 1)
        self.assertIsNone(summary["output_file"])
        self.assertTrue(summary["generated_at"].endswith("Z"))

    def test_scan_payload_is_json_ready(self):
        options = ScanOptions(blank_tracking=BlankTracking("Owner", capture_details=True))
        result = aggregate_data(menu_handle(), ["Menu", "Gone"], {"apple": "Fruit"}, ValueMatchConfig("Note"), options)
        payload = json.loads(json.dumps(scan_payload(result)))
        self.assertEqual(payload["contract"]["name"], "aggregator.scan")
        self.assertEqual(payload["scan"]["mode"], "valueMatch")
        self.assertEqual(payload["total_counts"], {"Fruit": 2})
        self.assertEqual(payload["matching_rows"], {"Menu": [0, 2]})
        self.assertEqual(payload["skipped_sheets"], [{"sheet": "Gone", "reason": "sheet not found"}])
        self.assertEqual(payload["blank_counts"], {"total": 2, "per_sheet": {"Menu": 2}})
        self.assertEqual(payload["blank_details"][0]["row"], 3)

    def test_key_match_description(self):
        handle = WorkbookHandle.new()
        handle.append_sheet("S", [["Item"], ["Widget"]])
        result = aggregate_data(handle, ["S"], {}, KeyMatchConfig("Item", discover_new_keys=True))
        self.assertEqual(scan_payload(result)["scan"], {
            "mode": "keyMatch",
            "key_column": "Item",
            "discover_new_keys": True,
            "live_formulas": False,
        })

    def test_rule_test_payload(self):
        explanation = explain_row(menu_handle(), "Menu", 2, {"apple": "Fruit"}, ValueMatchConfig("Note"))
        payload = rule_test_payload(explanation)
        self.assertEqual(payload["contract"]["name"], "aggregator.rule_test")
        self.assertEqual(payload["winner"], "Fruit")
        self.assertEqual(payload["columns"][0]["hits"], [{"term": "apple", "key": "Fruit", "score": 1}])


if __name__ == "__main__":
    unittest.main()
