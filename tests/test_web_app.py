from __future__ import annotations

import importlib.util
import sys
import unittest
from pathlib import Path
from unittest import mock

import pandas as pd

from sheet_aggregator.config import BlankTracking, ScanOptions, ValueMatchConfig
from sheet_aggregator.engine import aggregate_data
from sheet_aggregator.grid import WorkbookHandle
from sheet_aggregator.progress import ProgressUpdate
from sheet_aggregator.resolver import resolve_key_edits

ROOT = Path(__file__).resolve().parents[1]
WEB_APP = ROOT / "web" / "app.py"


def load_module(module_path: Path, module_name: str):
    spec = importlib.util.spec_from_file_location(module_name, module_path)
    module = importlib.util.module_from_spec(spec)
    assert spec and spec.loader
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


WEB_APP_MODULE = load_module(WEB_APP, "sheet_aggregator_web_app_tests")


def scanned():
    handle = WorkbookHandle.new()
    handle.append_sheet("S", [["Note", "Owner"], ["apple", "Ann"], ["pear", None], ["apple", "Bo"]])
    options = ScanOptions(blank_tracking=BlankTracking("Owner"))
    return aggregate_data(handle, ["S"], {"apple": "Apple", "pear": "Pear"}, ValueMatchConfig("Note"), options)


class WebAppHelperTests(unittest.TestCase):
    def test_key_table_lists_keys_blank_label_and_edits(self):
        result = scanned()
        resolution = resolve_key_edits(result, {"Pear": "Fruit"})
        table = WEB_APP_MODULE.key_table(result, resolution, "(Blanks)")
        self.assertEqual(list(table.columns), ["Original Key", "Count", "New Key"])
        self.assertEqual(table["Original Key"].tolist(), ["Apple", "Pear", "(Blanks)"])
        self.assertEqual(table["Count"].tolist(), [2, 1, 1])
        self.assertEqual(table["New Key"].tolist(), ["", "Fruit", ""])

    def test_edits_from_table_skips_empty_cells(self):
        table = pd.DataFrame(
            [
                {"Original Key": "Apple", "Count": 2, "New Key": " Fruit "},
                {"Original Key": "Pear", "Count": 1, "New Key": ""},
                {"Original Key": "Plum", "Count": 1, "New Key": None},
            ]
        )
        self.assertEqual(WEB_APP_MODULE.edits_from_table(table), {"Apple": "Fruit"})

    def test_final_counts_table_shows_merged_keys(self):
        resolution = resolve_key_edits(scanned(), {"Pear": "Apple"})
        table = WEB_APP_MODULE.final_counts_table(resolution)
        row = table[table["Final Key"] == "Apple"].iloc[0]
        self.assertEqual(row["Total"], 3)
        self.assertEqual(row["Merged From"], "Apple, Pear")

    def test_ensure_state_sets_only_the_keys_the_app_reads(self):
        state = {}
        with mock.patch.object(WEB_APP_MODULE.st, "session_state", state), mock.patch.object(
            WEB_APP_MODULE, "load_settings", return_value="loaded"
        ):
            WEB_APP_MODULE.ensure_state()
        self.assertEqual(set(state), {"processing", "session", "downloads", "messages", "settings"})
        self.assertEqual(state["settings"], "loaded")

    def test_progress_and_mime_helpers(self):
        self.assertEqual(WEB_APP_MODULE.progress_fraction(ProgressUpdate("Aggregating Data", "S", 1, 4)), 0.25)
        self.assertEqual(WEB_APP_MODULE.progress_fraction(ProgressUpdate("Aggregating Data", "S", 0, 0)), 1.0)
        self.assertEqual(WEB_APP_MODULE.mime_for("out.xlsm"), WEB_APP_MODULE.XLSM_MIME)
        self.assertEqual(WEB_APP_MODULE.mime_for("out.xlsx"), WEB_APP_MODULE.XLSX_MIME)


if __name__ == "__main__":
    unittest.main()
