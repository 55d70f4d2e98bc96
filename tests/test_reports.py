from __future__ import annotations

import unittest

from sheet_aggregator.config import BlankTracking, KeyMatchConfig, ScanOptions, SummaryConfig, UpdateConfig, ValueMatchConfig
from sheet_aggregator.engine import aggregate_data
from sheet_aggregator.errors import ConfigurationError
from sheet_aggregator.grid import WorkbookHandle
from sheet_aggregator.mutators import find_potential_updates
from sheet_aggregator.reports import (
    add_aggregation_report_sheets,
    add_blank_details_sheets,
    add_update_report_sheets,
    create_aggregation_report_workbook,
    final_term_map,
    key_mapping_rows,
    write_chunked_table,
    write_cross_tab,
)
from sheet_aggregator.resolver import resolve_key_edits


def fruit_scan(**options):
    handle = WorkbookHandle.new()
    handle.append_sheet("East", [["Note", "Owner"], ["apple", "Ann"], ["pear", None], ["apple", "Bo"]])
    handle.append_sheet("West", [["Note", "Owner"], ["pear", "Cy"]])
    result = aggregate_data(
        handle, ["East", "West"], {"apple": "Apple", "pear": "Pear"}, ValueMatchConfig("Note"), ScanOptions(**options)
    )
    return handle, result


class ChunkedTableTests(unittest.TestCase):
    def test_rows_split_across_numbered_sheets(self):
        handle = WorkbookHandle.new()
        rows = [[f"k{i}", i] for i in range(5)]
        names = write_chunked_table(handle, "Key Mappings", ["Key", "Count"], rows, 3)
        self.assertEqual(names, ["Key Mappings_1", "Key Mappings_2", "Key Mappings_3"])
        first = handle.worksheet("Key Mappings_1")
        self.assertEqual([first["A1"].value, first["A2"].value, first["A3"].value], ["Key", "k0", "k1"])
        self.assertEqual(handle.worksheet("Key Mappings_3")["A2"].value, "k4")

    def test_single_chunk_keeps_the_base_name_and_preamble(self):
        handle = WorkbookHandle.new()
        names = write_chunked_table(handle, "Audit", ["Col"], [["x"]], 10, preamble=[["Title"]])
        ws = handle.worksheet("Audit")
        self.assertEqual(names, ["Audit"])
        self.assertEqual([ws["A1"].value, ws["A2"].value, ws["A3"].value, ws["A4"].value], ["Title", None, "Col", "x"])

    def test_chunk_size_below_two_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            write_chunked_table(WorkbookHandle.new(), "T", ["A"], [["x"]], 1)


class CrossTabTests(unittest.TestCase):
    def test_sheets_as_rows_static_counts_and_totals(self):
        _, result = fruit_scan()
        target = WorkbookHandle.new()
        name = write_cross_tab(target, "Pre-Edit Summary", "Counts", result, SummaryConfig(), None)
        ws = target.worksheet(name)
        self.assertEqual(ws["A1"].value, "Counts")
        self.assertEqual([ws["A3"].value, ws["B3"].value, ws["C3"].value, ws["D3"].value], ["Sheet Name", "Apple", "Pear", "Total"])
        self.assertEqual([ws["A4"].value, ws["B4"].value, ws["C4"].value, ws["D4"].value], ["East", 2, 1, "=SUM(B4:C4)"])
        self.assertEqual([ws["A5"].value, ws["B5"].value, ws["C5"].value], ["West", 0, 1])
        self.assertEqual([ws["A6"].value, ws["B6"].value, ws["D6"].value], ["Total", "=SUM(B4:B5)", "=SUM(D4:D5)"])
        self.assertIn("A1:D1", [str(merged) for merged in ws.merged_cells.ranges])

    def test_keys_as_rows_transposes(self):
        _, result = fruit_scan()
        target = WorkbookHandle.new()
        name = write_cross_tab(target, "X", "Counts", result, SummaryConfig(report_layout="keysAsRows"), None)
        ws = target.worksheet(name)
        self.assertEqual([ws["A3"].value, ws["B3"].value, ws["C3"].value], ["Key Name", "East", "West"])
        self.assertEqual([ws["A4"].value, ws["B4"].value, ws["C4"].value], ["Apple", 2, 0])

    def test_hidden_names_drop_rows_and_columns(self):
        _, result = fruit_scan()
        target = WorkbookHandle.new()
        name = write_cross_tab(target, "X", "Counts", result, SummaryConfig(columns_to_hide="pear, west"), None)
        ws = target.worksheet(name)
        self.assertEqual([ws["A3"].value, ws["B3"].value, ws["C3"].value], ["Sheet Name", "Apple", "Total"])
        self.assertEqual(ws["A5"].value, "Total")

    def test_blank_label_column_uses_blank_counts(self):
        _, result = fruit_scan(blank_tracking=BlankTracking("Owner"))
        target = WorkbookHandle.new()
        name = write_cross_tab(target, "X", "Counts", result, SummaryConfig(), "(Blanks)")
        ws = target.worksheet(name)
        self.assertEqual(ws["B3"].value, "(Blanks)")
        self.assertEqual([ws["B4"].value, ws["B5"].value], [1, 0])


class ReportSheetTests(unittest.TestCase):
    def test_report_sheets_go_first_in_fixed_order(self):
        handle, result = fruit_scan()
        resolution = resolve_key_edits(result, {"Pear": "Apple"})
        sheets = add_aggregation_report_sheets(
            handle,
            result,
            resolution.result,
            SummaryConfig(),
            original_blank_label="(Blanks)",
            final_blank_label=resolution.blank_label,
            edited_to_originals=resolution.edited_to_originals,
        )
        self.assertEqual(
            handle.list_sheet_names(), ["Post-Edit Summary", "Pre-Edit Summary", "Key Mappings", "East", "West"]
        )
        self.assertIsNone(sheets.data_source)
        mapping = handle.worksheet("Key Mappings")
        self.assertEqual([mapping["A2"].value, mapping["B2"].value, mapping["D2"].value], ["Apple", 4, "Apple, Pear"])

    def test_live_scan_adds_hidden_data_source_last(self):
        handle = WorkbookHandle.new()
        handle.append_sheet("Items", [["Key"], ["A"], ["B"], ["A"]])
        result = aggregate_data(handle, ["Items"], {"a": "A", "b": "B"}, KeyMatchConfig("Key", live_formulas=True))
        report = create_aggregation_report_workbook(
            result, result, SummaryConfig(), original_blank_label="(Blanks)", final_blank_label="(Blanks)"
        )
        names = report.list_sheet_names()
        self.assertEqual(names[-1], "Aggregation_Data_Source")
        self.assertEqual(report.worksheet("Aggregation_Data_Source").sheet_state, "hidden")
        post = report.worksheet("Post-Edit Summary")
        self.assertTrue(post["B4"].value.startswith("=SUMPRODUCT(("))
        self.assertEqual(report.worksheet("Pre-Edit Summary")["B4"].value, 2)

    def test_key_mapping_rows_list_terms_and_originals(self):
        _, result = fruit_scan()
        rows = key_mapping_rows(result, None)
        self.assertEqual(rows, [["Apple", 2, "apple", "Apple"], ["Pear", 2, "pear", "Pear"]])

    def test_terms_follow_key_edits(self):
        term_map = final_term_map({"apple": "Apple", "pear": "Pear", "fig": "Fig"}, {"Fruit": ["Apple", "Pear"]})
        self.assertEqual(term_map, {"apple": "Fruit", "pear": "Fruit", "fig": "Fig"})
        _, result = fruit_scan()
        merged = resolve_key_edits(result, {"Pear": "Apple"})
        rows = key_mapping_rows(merged.result, None, merged.edited_to_originals, {"apple": "Apple", "pear": "Apple"})
        self.assertEqual(rows, [["Apple", 4, "apple, pear", "Apple, Pear"]])

    def test_blank_details_link_back_to_rows(self):
        handle, result = fruit_scan(blank_tracking=BlankTracking("Owner", capture_details=True))
        target = WorkbookHandle.new()
        names = add_blank_details_sheets(target, result, SummaryConfig())
        ws = target.worksheet(names[0])
        self.assertEqual([ws["A1"].value, ws["B1"].value], ["Sheet Name", "Row Number"])
        self.assertEqual([ws["A2"].value, ws["B2"].value], ["East", 3])
        self.assertEqual(ws["B2"].hyperlink.location, "East!A3")

    def test_update_report_has_summary_preamble_and_cell_links(self):
        handle, result = fruit_scan()
        updates = find_potential_updates(handle, ["East"], UpdateConfig("Note", "Owner"), result.value_to_key_map)
        target = WorkbookHandle.new()
        names = add_update_report_sheets(target, updates, SummaryConfig())
        ws = target.worksheet(names[0])
        self.assertEqual(names, ["Update_Report"])
        self.assertEqual(ws["A1"].value, "Update Operation Summary")
        self.assertEqual([ws["A2"].value, ws["B2"].value], ["Total Cells Updated:", 3])
        self.assertEqual(ws["B3"].value, "East")
        self.assertEqual(ws["A5"].value, "Sheet Name")
        self.assertEqual(ws["C6"].value, "B2")
        self.assertEqual(ws["C6"].hyperlink.location, "East!B2")


if __name__ == "__main__":
    unittest.main()
