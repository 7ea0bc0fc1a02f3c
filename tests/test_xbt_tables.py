from __future__ import annotations

import json
import os
import tempfile
import unittest


import xbt_tables
from xbt_depth import ConfigurationError, FallRateCoefficients


class TestLookups(unittest.TestCase):
    def test_resolve_default_entries(self) -> None:
        self.assertEqual(xbt_tables.resolve_coefficients(52), FallRateCoefficients(6.691, -2.25))
        self.assertEqual(xbt_tables.resolve_coefficients(71), FallRateCoefficients(1.779, -0.255))
        self.assertEqual(xbt_tables.resolve_sample_frequency(6), 10.0)

    def test_unknown_codes_raise(self) -> None:
        with self.assertRaises(ConfigurationError):
            xbt_tables.resolve_coefficients(12345)
        with self.assertRaises(ConfigurationError):
            xbt_tables.resolve_sample_frequency(12345)

    def test_zero_frequency_entry_rejected(self) -> None:
        table = xbt_tables.FallRateTable.from_entries([], [xbt_tables.RecorderType(1, "broken", 0.0)])
        with self.assertRaises(ConfigurationError):
            xbt_tables.resolve_sample_frequency(1, table=table)


class TestOverrides(unittest.TestCase):
    def test_parse_table(self) -> None:
        table = xbt_tables.parse_table({
            "probes": [{"code": 900, "name": "test probe", "a": 6.0, "b": -2.0}],
            "recorders": [{"code": 90, "frequency_hz": 25}],
        })
        self.assertEqual(table.probes[900].a, 6.0)
        self.assertEqual(table.recorders[90].frequency_hz, 25.0)
        self.assertEqual(table.recorders[90].name, "recorder 90")

    def test_parse_table_rejects_bad_entries(self) -> None:
        bad = [
            [],
            {"probes": [{"code": 1, "a": 6.0}]},
            {"probes": [{"code": "x", "a": 6.0, "b": 1.0}]},
            {"probes": [{"code": 1, "a": "fast", "b": 1.0}]},
            {"recorders": [{"code": 1, "frequency_hz": -5}]},
            {"recorders": ["MK-21"]},
        ]
        for data in bad:
            with self.assertRaises(ConfigurationError):
                xbt_tables.parse_table(data)

    def test_merged_replaces_by_code(self) -> None:
        override = xbt_tables.FallRateTable.from_entries([xbt_tables.ProbeType(52, "custom", 6.5, -2.0)], [])
        merged = xbt_tables.DEFAULT_TABLE.merged(override)
        self.assertEqual(xbt_tables.resolve_coefficients(52, table=merged), FallRateCoefficients(6.5, -2.0))
        self.assertEqual(xbt_tables.resolve_coefficients(52), FallRateCoefficients(6.691, -2.25))
        self.assertIn(71, merged.probes)

    def test_load_table_overrides(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "tables.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump({"recorders": [{"code": 77, "name": "Devil", "frequency_hz": 20.0}]}, f)
            table = xbt_tables.load_table_overrides(path)
            self.assertEqual(xbt_tables.resolve_sample_frequency(77, table=table), 20.0)
            self.assertEqual(xbt_tables.resolve_sample_frequency(6, table=table), 10.0)

    def test_load_invalid_json(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "tables.json")
            with open(path, "w", encoding="utf-8") as f:
                f.write("{not json")
            with self.assertRaises(ConfigurationError):
                xbt_tables.load_table_overrides(path)


if __name__ == "__main__":
    unittest.main()
