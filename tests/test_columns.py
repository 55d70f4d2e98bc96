from __future__ import annotations

import unittest
from datetime import datetime

from sheet_aggregator.columns import (
    natural_sorted,
    parse_column_identifier,
    parse_column_list,
    resolve_column,
    to_text,
    validate_column_spec,
)
from sheet_aggregator.errors import ConfigurationError


class ColumnReferenceTests(unittest.TestCase):
    def test_letters_ranges_and_numbers_expand_to_sorted_indices(self):
        self.assertEqual(parse_column_list("A,C,E:G"), [0, 2, 4, 5, 6])
        self.assertEqual(parse_column_list("3, 1, 1"), [0, 2])

    def test_header_names_win_over_letters(self):
        headers = ["Name", "Phone", "Email"]
        self.assertEqual(parse_column_list("Name,Email", headers), [0, 2])
        self.assertEqual(resolve_column("email", headers), 2)
        self.assertEqual(parse_column_list("Name:Email", headers), [0, 1, 2])

    def test_unresolvable_tokens_and_reversed_ranges_are_dropped(self):
        self.assertEqual(parse_column_list("C:A"), [])
        self.assertEqual(parse_column_list("Missing,B", ["Name"]), [1])
        self.assertIsNone(resolve_column("ZZZZ"))
        self.assertIsNone(parse_column_identifier("0"))

    def test_malformed_range_syntax_is_a_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            validate_column_spec("A:")
        with self.assertRaises(ConfigurationError):
            validate_column_spec("A:B:C")
        with self.assertRaises(ConfigurationError):
            validate_column_spec("  ")
        validate_column_spec("A, C:D")

    def test_to_text_normalises_common_cell_types(self):
        self.assertEqual(to_text(None), "")
        self.assertEqual(to_text(3.0), "3")
        self.assertEqual(to_text(2.5), "2.5")
        self.assertEqual(to_text(True), "TRUE")
        self.assertEqual(to_text(datetime(2024, 1, 2)), "2024-01-02")

    def test_natural_sort_orders_embedded_numbers(self):
        self.assertEqual(natural_sorted(["Sheet10", "sheet2", "Sheet1"]), ["Sheet1", "sheet2", "Sheet10"])


if __name__ == "__main__":
    unittest.main()
