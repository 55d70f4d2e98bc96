from __future__ import annotations

import unittest

from sheet_aggregator.config import BlankTracking, ScanOptions, ValueMatchConfig
from sheet_aggregator.engine import aggregate_data
from sheet_aggregator.grid import WorkbookHandle
from sheet_aggregator.resolver import editable_keys, normalize_blank_label, resolve_key_edits

MAPPING = {"apple": "Apple", "pear": "Pear", "carrot": "Carrot"}


def scanned(blank_tracking: BlankTracking | None = None):
    handle = WorkbookHandle.new()
    handle.append_sheet("East", [["Note", "Owner"], ["apple", "Ann"], ["pear", "Bo"], ["carrot", None]])
    handle.append_sheet("West", [["Note", "Owner"], ["pear", None], ["apple", "Cy"]])
    options = ScanOptions(blank_tracking=blank_tracking)
    return aggregate_data(handle, ["East", "West"], MAPPING, ValueMatchConfig("Note"), options)


class KeyEditResolverTests(unittest.TestCase):
    def assert_sums_match(self, result):
        for key, total in result.total_counts.items():
            self.assertEqual(total, sum(counts.get(key, 0) for counts in result.per_sheet_counts.values()), key)

    def test_merging_two_keys_keeps_totals_consistent(self):
        resolution = resolve_key_edits(scanned(), {"Apple": "Fruit", "Pear": "Fruit"})
        result = resolution.result
        self.assertEqual(result.total_counts["Fruit"], 4)
        self.assertEqual(result.per_sheet_counts["East"]["Fruit"], 2)
        self.assertEqual(result.per_sheet_counts["West"]["Fruit"], 2)
        self.assertNotIn("Apple", result.total_counts)
        self.assertEqual(result.reporting_keys, ["Carrot", "Fruit"])
        self.assertEqual(resolution.edited_to_originals["Fruit"], ["Apple", "Pear"])
        self.assert_sums_match(result)

    def test_value_map_points_at_edited_keys(self):
        resolution = resolve_key_edits(scanned(), {"Apple": "Fruit"})
        self.assertEqual(resolution.result.value_to_key_map["apple"], "Fruit")
        self.assertEqual(resolution.result.value_to_key_map["pear"], "Pear")
        self.assertEqual(resolution.resolve("Apple"), "Fruit")

    def test_identity_edits_leave_the_result_unchanged(self):
        original = scanned()
        resolution = resolve_key_edits(original, {key: key for key in original.reporting_keys})
        self.assertEqual(resolution.result.total_counts, original.total_counts)
        self.assertEqual(resolution.result.per_sheet_counts, original.per_sheet_counts)
        self.assertEqual(resolution.result.reporting_keys, original.reporting_keys)

    def test_whitespace_edits_keep_the_original_name(self):
        resolution = resolve_key_edits(scanned(), {"Apple": "   "})
        self.assertEqual(resolution.result.total_counts["Apple"], 2)

    def test_blank_label_can_be_renamed(self):
        original = scanned(BlankTracking("Owner"))
        self.assertEqual(original.blank_total, 2)
        self.assertIn("(Blanks)", editable_keys(original))
        resolution = resolve_key_edits(original, {"(Blanks)": "No owner"})
        result = resolution.result
        self.assertEqual(resolution.blank_label, "No owner")
        self.assertEqual(result.total_counts["No owner"], 2)
        self.assertEqual(result.blank_counts.total, 2)
        self.assertEqual(result.blank_counts.per_sheet, {"East": 1, "West": 1})
        self.assertIn("No owner", result.reporting_keys)
        self.assert_sums_match(result)

    def test_blank_label_defaults_when_empty(self):
        self.assertEqual(normalize_blank_label("  "), "(Blanks)")
        self.assertEqual(normalize_blank_label(" Missing "), "Missing")


if __name__ == "__main__":
    unittest.main()
