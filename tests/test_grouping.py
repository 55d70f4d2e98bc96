from __future__ import annotations

import unittest

from sheet_aggregator.config import GroupReportHeaders, ScanOptions, SummaryConfig, ValueMatchConfig
from sheet_aggregator.engine import aggregate_data
from sheet_aggregator.grid import WorkbookHandle
from sheet_aggregator.grouping import build_group_report, create_group_report_workbook, report_title

MAPPING = {"apple": "Apple", "pear": "Pear", "kiwi": "Kiwi", "plum": "Plum"}


def scanned(title_row=False):
    handle = WorkbookHandle.new()
    east = [["Note"], ["apple"], ["pear"], ["apple"], ["kiwi"]]
    west = [["Note"], ["pear"]]
    options = ScanOptions()
    if title_row:
        east = [["Site East"], *east]
        west = [["Site West"], *west]
        options = ScanOptions(header_row=2, title_cell="A1")
    handle.append_sheet("East", east)
    handle.append_sheet("West", west)
    result = aggregate_data(handle, ["East", "West"], MAPPING, ValueMatchConfig("Note"), options)
    return handle, result


def column_values(ws, column: str) -> list:
    return [ws[f"{column}{row}"].value for row in range(1, ws.max_row + 1)]


class GroupReportTests(unittest.TestCase):
    def test_groups_collect_keys_and_leftovers_are_unmapped(self):
        _, result = scanned()
        report = build_group_report(result, "Fruit: Apple, Pear\nGhost: Nope\n")
        self.assertEqual([group.name for group in report.groups], ["Fruit"])
        self.assertEqual(report.groups[0].keys, [("Apple", 2), ("Pear", 2)])
        self.assertEqual(report.groups[0].total, 4)
        self.assertEqual(report.unmapped, [("Kiwi", 1)])
        self.assertEqual(report.grand_total, 5)

    def test_workbook_has_group_sheet_then_compiled_summaries(self):
        handle, result = scanned()
        report = create_group_report_workbook(result, handle, "Fruit: Apple, Pear", ["East", "West"], SummaryConfig())
        self.assertEqual(report.list_sheet_names(), ["Group_Report", "Compiled_Summaries"])
        group_ws = report.worksheet("Group_Report")
        self.assertEqual(group_ws["A1"].value, "Grouped Summary Report")
        self.assertEqual([group_ws["A3"].value, group_ws["B3"].value, group_ws["C3"].value], ["Group Name", "Key Name", "Count"])
        labels = column_values(group_ws, "A")
        self.assertIn("Fruit Total", labels)
        self.assertIn("Unmapped Total", labels)
        grand_row = labels.index("Grand Total") + 1
        self.assertEqual(group_ws[f"C{grand_row}"].value, 5)

        compiled = report.worksheet("Compiled_Summaries")
        self.assertEqual(compiled["A1"].value, "Summary for: East")
        self.assertEqual(compiled["A2"].value, "Summary")
        totals = [value for value in column_values(compiled, "B") if isinstance(value, int)]
        self.assertIn(4, totals)

    def test_custom_headers_and_description(self):
        handle, result = scanned()
        config = SummaryConfig(
            group_report_description="Weekly intake",
            group_report_headers=GroupReportHeaders("Bucket", "Item", "Qty"),
        )
        report = create_group_report_workbook(result, handle, "Fruit: Apple", ["East"], config)
        ws = report.worksheet("Group_Report")
        self.assertEqual(ws["A2"].value, "Weekly intake")
        self.assertEqual([ws["A4"].value, ws["B4"].value, ws["C4"].value], ["Bucket", "Item", "Qty"])

    def test_title_comes_from_title_cell(self):
        handle, result = scanned(title_row=True)
        config = SummaryConfig()
        self.assertEqual(report_title(handle, ["East"], config, "A1"), "Site East")
        self.assertEqual(report_title(handle, ["East", "West"], config, "A1"), "Grouped Summary Report (Multiple Sources)")
        self.assertEqual(report_title(handle, ["East"], config, None), "Grouped Summary Report")
        self.assertEqual(result.sheet_titles["East"], "Site East")


if __name__ == "__main__":
    unittest.main()
