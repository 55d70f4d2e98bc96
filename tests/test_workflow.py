from __future__ import annotations

import unittest

from sheet_aggregator.config import KeyMatchConfig, ScanOptions, SummaryConfig, UpdateConfig, ValueMatchConfig
from sheet_aggregator.errors import ConfigurationError, InvalidStateError, OperationCancelled
from sheet_aggregator.grid import WorkbookHandle
from sheet_aggregator.settings import AggregatorSettings
from sheet_aggregator.workflow import (
    AggregationSession,
    FinalizeOptions,
    SessionState,
    output_file_name,
)

MAPPING = {"apple": "Apple", "pear": "Pear"}


def make_session(name: str = "orders.xlsx") -> AggregationSession:
    handle = WorkbookHandle.new()
    handle.append_sheet("East", [["Note", "Key", "Status"], ["apple", None, None], ["pear", None, None], ["fig", None, None]])
    handle.append_sheet("West", [["Note", "Key", "Status"], ["apple", None, None]])
    return AggregationSession(handle, name)


def scan(session: AggregationSession, **kwargs):
    return session.scan(["East", "West"], MAPPING, ValueMatchConfig("Note"), ScanOptions(), **kwargs)


class SessionStateTests(unittest.TestCase):
    def test_scan_moves_to_reviewing_and_finalize_back_to_idle(self):
        session = make_session()
        self.assertIs(session.state, SessionState.IDLE)
        scan(session)
        self.assertIs(session.state, SessionState.REVIEWING)
        session.finalize(FinalizeOptions(), SummaryConfig())
        self.assertIs(session.state, SessionState.IDLE)

    def test_review_steps_need_a_scan_first(self):
        session = make_session()
        with self.assertRaises(InvalidStateError):
            session.edit_keys({"Apple": "Fruit"})
        with self.assertRaises(InvalidStateError):
            session.finalize(FinalizeOptions(), SummaryConfig())
        with self.assertRaises(InvalidStateError):
            session.build_report_workbook(SummaryConfig())

    def test_cancelled_scan_returns_to_previous_state(self):
        session = make_session()

        def cancel_after_first_sheet(update):
            session.cancel()

        with self.assertRaises(OperationCancelled):
            scan(session, progress=cancel_after_first_sheet)
        self.assertIs(session.state, SessionState.IDLE)
        self.assertIsNone(session.result)
        scan(session)
        self.assertIs(session.state, SessionState.REVIEWING)

    def test_cancel_before_a_run_is_honoured_once(self):
        session = make_session()
        session.cancel()
        with self.assertRaises(OperationCancelled):
            scan(session)
        self.assertIs(session.state, SessionState.IDLE)
        scan(session)
        session.cancel()
        with self.assertRaises(OperationCancelled):
            session.finalize(FinalizeOptions(), SummaryConfig())
        self.assertIs(session.state, SessionState.REVIEWING)
        session.finalize(FinalizeOptions(), SummaryConfig())
        self.assertIs(session.state, SessionState.IDLE)

    def test_failed_finalize_keeps_the_review(self):
        session = make_session()
        scan(session)
        with self.assertRaises(ConfigurationError):
            session.finalize(FinalizeOptions(insert_summaries=True, report_sheets=False), SummaryConfig(insert_column=""))
        self.assertIs(session.state, SessionState.REVIEWING)

    def test_nothing_to_do_is_rejected(self):
        session = make_session()
        scan(session)
        with self.assertRaises(ConfigurationError):
            session.finalize(FinalizeOptions(report_sheets=False), SummaryConfig())

    def test_fill_needs_a_value_match_scan(self):
        session = make_session()
        session.scan(["East"], {}, KeyMatchConfig("Note", discover_new_keys=True))
        with self.assertRaises(ConfigurationError):
            session.finalize(FinalizeOptions(fill_key_column="Key"), SummaryConfig())


class FinalizeTests(unittest.TestCase):
    def test_fill_with_edits_writes_final_keys_and_verifies(self):
        session = make_session()
        scan(session)
        session.edit_keys({"Apple": "Fruit"})
        outcome = session.finalize(FinalizeOptions(fill_key_column="Key"), SummaryConfig())
        self.assertEqual(outcome.file_name, "orders_keys_filled.xlsx")
        self.assertEqual(outcome.fill.cells_filled, 3)
        self.assertEqual(outcome.verification.total_counts, {"Fruit": 2, "Pear": 1})
        east = outcome.handle.worksheet("East")
        self.assertEqual([east["B2"].value, east["B3"].value, east["B4"].value], ["Fruit", "Pear", None])
        self.assertIsNone(session.handle.worksheet("East")["B2"].value)
        self.assertEqual(
            outcome.handle.list_sheet_names(), ["Post-Edit Summary", "Pre-Edit Summary", "Key Mappings", "East", "West"]
        )

    def test_key_mappings_after_fill_list_the_search_terms(self):
        session = make_session()
        mapping = {"apple": "Apple", "granny smith": "Apple", "pear": "Pear"}
        session.scan(["East", "West"], mapping, ValueMatchConfig("Note"), ScanOptions())
        session.edit_keys({"Apple": "Fruit"})
        outcome = session.finalize(FinalizeOptions(fill_key_column="Key"), SummaryConfig())
        sheet = outcome.handle.worksheet("Key Mappings")
        rows = {row[0]: row for row in sheet.iter_rows(min_row=2, values_only=True)}
        self.assertEqual(rows["Fruit"][2], "apple, granny smith")
        self.assertEqual(rows["Fruit"][3], "Apple")
        self.assertEqual(rows["Pear"][2], "pear")

    def test_update_report_goes_first(self):
        session = make_session("orders.xlsm")
        scan(session)
        options = FinalizeOptions(update=UpdateConfig("Note", "Key"))
        outcome = session.finalize(options, SummaryConfig())
        self.assertEqual(outcome.file_name, "orders_updated.xlsm")
        self.assertEqual(outcome.updates.total_cells_updated, 3)
        self.assertEqual(outcome.update_report_sheets, ["Update_Report"])
        self.assertEqual(outcome.handle.list_sheet_names()[0], "Update_Report")

    def test_mark_and_insert_summaries(self):
        session = make_session()
        scan(session)
        options = FinalizeOptions(mark_column="Status", mark_value="Seen", insert_summaries=True, report_sheets=False)
        outcome = session.finalize(options, SummaryConfig(insert_column="F"))
        east = outcome.handle.worksheet("East")
        self.assertEqual(outcome.file_name, "orders_marked.xlsx")
        self.assertEqual(outcome.marks.rows_marked, 3)
        self.assertEqual([east["C2"].value, east["C3"].value, east["C4"].value], ["Seen", "Seen", None])
        self.assertEqual(outcome.summaries_inserted, ["East", "West"])
        self.assertEqual(east["F1"].value, "Summary")
        self.assertIsNone(outcome.report_sheets)

    def test_default_summary_settings_keep_the_header_row(self):
        session = make_session()
        scan(session)
        options = FinalizeOptions(insert_summaries=True, report_sheets=False)
        outcome = session.finalize(options, AggregatorSettings().summary_config())
        east = outcome.handle.worksheet("East")
        self.assertEqual([east["A1"].value, east["B1"].value, east["A2"].value], ["Note", "Key", "apple"])
        self.assertEqual(east["J1"].value, "Summary")

    def test_output_names_follow_the_modifications(self):
        update = UpdateConfig("Note", "Key")
        self.assertEqual(output_file_name("a.csv", FinalizeOptions()), "a_with_aggregates.xlsx")
        self.assertEqual(output_file_name("a.xlsx", FinalizeOptions(update=update, fill_key_column="Key")), "a_fully_updated.xlsx")
        self.assertEqual(output_file_name("a.xlsx", FinalizeOptions(update=update, mark_column="S")), "a_marked.xlsx")

    def test_options_from_settings(self):
        settings = AggregatorSettings(fill_key_column=True, key_column="Key", mark_rows=True, mark_column="Status")
        options = FinalizeOptions.from_settings(settings)
        self.assertEqual((options.fill_key_column, options.mark_column, options.update), ("Key", "Status", None))


class ReportBuildTests(unittest.TestCase):
    def test_report_workbook_leaves_session_in_review(self):
        session = make_session()
        scan(session)
        session.edit_keys({"Pear": "Apple"})
        handle, name = session.build_report_workbook(SummaryConfig(), update=UpdateConfig("Note", "Key"))
        self.assertEqual(name, "orders_aggregation_report.xlsx")
        self.assertEqual(
            handle.list_sheet_names(), ["Post-Edit Summary", "Pre-Edit Summary", "Key Mappings", "Update_Report"]
        )
        self.assertIs(session.state, SessionState.REVIEWING)

    def test_reporting_scope_can_narrow_the_sheets(self):
        session = make_session()
        scan(session)
        handle, _ = session.build_report_workbook(SummaryConfig(), reporting_sheets=["West"])
        post = handle.worksheet("Post-Edit Summary")
        self.assertEqual([post["A4"].value, post["B4"].value, post["A5"].value], ["West", 1, "Total"])

    def test_group_reports_are_named_by_stage(self):
        session = make_session()
        scan(session)
        session.edit_keys({"Pear": "Apple"})
        final, final_name = session.build_group_report("Fruit: Apple", SummaryConfig())
        preliminary, preliminary_name = session.build_group_report("Fruit: Apple", SummaryConfig(), final=False)
        self.assertEqual((final_name, preliminary_name), ("Final_Group_Report.xlsx", "Preliminary_Group_Report.xlsx"))
        self.assertEqual(final.worksheet("Group_Report")["C5"].value, 3)
        self.assertEqual(preliminary.worksheet("Group_Report")["C5"].value, 2)


if __name__ == "__main__":
    unittest.main()
