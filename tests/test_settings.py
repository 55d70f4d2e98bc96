from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from sheet_aggregator.config import CellStyle, KeyMatchConfig, ValueMatchConfig
from sheet_aggregator.errors import ConfigurationError
from sheet_aggregator.settings import AggregatorSettings, default_settings_path, load_settings, save_settings


class SettingsTests(unittest.TestCase):
    def test_defaults_build_a_value_match_scan(self):
        settings = AggregatorSettings()
        self.assertEqual(settings.scan_config(), ValueMatchConfig("A", "whole", None))
        self.assertIsNone(settings.scan_options().blank_tracking)
        self.assertIsNone(settings.update_config())
        self.assertEqual(settings.summary_config().blank_label, "(Blanks)")

    def test_key_match_requires_a_key_column(self):
        settings = AggregatorSettings(aggregation_mode="keyMatch")
        with self.assertRaises(ConfigurationError):
            settings.scan_config()
        settings.key_column = "Item"
        settings.live_formulas = True
        self.assertEqual(settings.scan_config(), KeyMatchConfig("Item", False, True))

    def test_from_dict_validates_choices_and_ignores_unknown_keys(self):
        with self.assertLogs("sheet_aggregator.settings", level="WARNING") as logs:
            settings = AggregatorSettings.from_dict({"match_mode": "partial", "colour": "blue"})
        self.assertEqual(settings.match_mode, "partial")
        self.assertIn("colour", logs.output[0])
        with self.assertRaises(ConfigurationError):
            AggregatorSettings.from_dict({"blank_mode": "sometimes"})
        with self.assertRaises(ConfigurationError):
            AggregatorSettings.from_dict({"chunk_size": 1})

    def test_formatting_dicts_become_cell_styles(self):
        settings = AggregatorSettings(header_formatting={"bold": True, "fill_color": "#CCCCCC"})
        config = settings.summary_config()
        self.assertEqual(config.header_formatting, CellStyle(bold=True, fill_color="#CCCCCC"))
        settings.header_formatting = {"shiny": True}
        with self.assertRaises(ConfigurationError):
            settings.summary_config()

    def test_update_config_requires_update_column(self):
        settings = AggregatorSettings(update_enabled=True)
        with self.assertRaises(ConfigurationError):
            settings.update_config()
        settings.update_column = "Key"
        settings.paired_validation_columns = "Id"
        config = settings.update_config()
        self.assertEqual((config.update_column, config.paired_validation_columns), ("Key", "Id"))

    def test_save_and_load_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "settings.json"
            save_settings(AggregatorSettings(mapping_text="apple : Fruit", blank_column="Owner"), path)
            loaded = load_settings(path)
        self.assertEqual(loaded.mapping_text, "apple : Fruit")
        self.assertEqual(loaded.scan_options().blank_tracking.column, "Owner")

    def test_missing_file_gives_defaults_and_bad_root_is_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertEqual(load_settings(Path(tmpdir) / "absent.json"), AggregatorSettings())
            bad = Path(tmpdir) / "bad.json"
            bad.write_text(json.dumps(["not", "an", "object"]), encoding="utf-8")
            with self.assertRaises(ConfigurationError):
                load_settings(bad)

    def test_environment_variable_sets_default_path(self):
        with mock.patch.dict(os.environ, {"SHEET_AGGREGATOR_SETTINGS": "/tmp/custom.json"}):
            self.assertEqual(default_settings_path(), Path("/tmp/custom.json"))


if __name__ == "__main__":
    unittest.main()
