from __future__ import annotations

import csv
import json
import os
import tempfile
import unittest

from typer.testing import CliRunner


import xbt_cli
from xbt_depth import InputError


def _read_rows(path: str):
    with open(path, newline="") as f:
        return list(csv.reader(f))


class TestLoadTemperatures(unittest.TestCase):
    def test_skips_comments_and_takes_first_column(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "cast.txt")
            with open(path, "w", encoding="utf-8") as f:
                f.write("# cast 17\n20.5, 1\n\n  19.25 2\n18\n")
            self.assertEqual(xbt_cli._load_temperatures(path), [20.5, 19.25, 18.0])

    def test_bad_value_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "cast.txt")
            with open(path, "w", encoding="utf-8") as f:
                f.write("20.5\nwarm\n")
            with self.assertRaises(InputError):
                xbt_cli._load_temperatures(path)

    def test_missing_file_raises(self) -> None:
        with self.assertRaises(InputError):
            xbt_cli._load_temperatures("/nonexistent/cast.txt")


class TestCommands(unittest.TestCase):
    def setUp(self) -> None:
        self.runner = CliRunner()
        self.app = xbt_cli._build_typer_app()
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.cast = os.path.join(self.tmp, "cast.txt")
        with open(self.cast, "w", encoding="utf-8") as f:
            f.write("\n".join(str(t) for t in [20.0, 19.0, 17.0, 14.0, 13.99, 12.0, 11.0]))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _linear_args(self):
        return ["--coef-a", "1", "--coef-b", "0", "--frequency", "1"]

    def test_profile_one_meter(self) -> None:
        out = os.path.join(self.tmp, "one.csv")
        result = self.runner.invoke(self.app, ["profile", self.cast, "-o", out, "--resolution", "1m"] + self._linear_args())
        self.assertEqual(result.exit_code, 0, result.output)
        rows = _read_rows(out)
        self.assertEqual(rows[0], ["depth_m", "temperature_c"])
        self.assertEqual([float(r[0]) for r in rows[1:]], [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0])

    def test_profile_two_meter_with_json(self) -> None:
        out = os.path.join(self.tmp, "two.csv")
        result = self.runner.invoke(
            self.app,
            ["profile", self.cast, "-o", out, "--resolution", "2m", "--json"] + self._linear_args(),
        )
        self.assertEqual(result.exit_code, 0, result.output)
        rows = _read_rows(out)
        self.assertEqual([float(r[0]) for r in rows[1:]], [2.0, 4.0, 6.0])
        with open(os.path.join(self.tmp, "two.json"), encoding="utf-8") as f:
            report = json.load(f)
        self.assertEqual(report["meta"]["resolution"], "2m")
        self.assertEqual(report["meta"]["n_samples"], 7)
        self.assertEqual(len(report["points"]), 3)

    def test_inflections(self) -> None:
        out = os.path.join(self.tmp, "inf.csv")
        result = self.runner.invoke(self.app, ["inflections", self.cast, "-o", out] + self._linear_args())
        self.assertEqual(result.exit_code, 0, result.output)
        rows = _read_rows(out)
        self.assertEqual([(float(r[0]), float(r[1])) for r in rows[1:]], [(4.0, 14.0), (6.0, 12.0)])

    def test_inflections_unknown_engine(self) -> None:
        out = os.path.join(self.tmp, "inf.csv")
        result = self.runner.invoke(
            self.app, ["inflections", self.cast, "-o", out, "--engine", "spline"] + self._linear_args()
        )
        self.assertEqual(result.exit_code, 2)

    def test_type_codes(self) -> None:
        out = os.path.join(self.tmp, "raw.csv")
        result = self.runner.invoke(
            self.app, ["profile", self.cast, "-o", out, "--resolution", "raw", "-p", "52", "-r", "6"]
        )
        self.assertEqual(result.exit_code, 0, result.output)
        rows = _read_rows(out)
        self.assertEqual(len(rows), 8)
        self.assertAlmostEqual(float(rows[1][0]), 0.6691, places=3)

    def test_missing_cast_configuration(self) -> None:
        out = os.path.join(self.tmp, "raw.csv")
        result = self.runner.invoke(self.app, ["profile", self.cast, "-o", out, "--frequency", "10"])
        self.assertEqual(result.exit_code, 2)
        result = self.runner.invoke(self.app, ["profile", self.cast, "-o", out, "-p", "52", "-r", "999"])
        self.assertEqual(result.exit_code, 2)
        self.assertFalse(os.path.exists(out))

    def test_tail(self) -> None:
        result = self.runner.invoke(self.app, ["tail", self.cast] + self._linear_args())
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(result.output.strip().splitlines()[-1], "4")

    def test_types_lists_tables(self) -> None:
        result = self.runner.invoke(self.app, ["types"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("MK-21", result.output)
        self.assertIn("T-7", result.output)

    def test_types_bad_tables_file(self) -> None:
        bad = os.path.join(self.tmp, "tables.json")
        with open(bad, "w", encoding="utf-8") as f:
            f.write("{not json")
        result = self.runner.invoke(self.app, ["types", "--tables", bad])
        self.assertEqual(result.exit_code, 2)
        self.assertNotIn("Probes:", result.output)

    def test_csv_rounded_json_full_precision(self) -> None:
        cast = os.path.join(self.tmp, "precise.txt")
        with open(cast, "w", encoding="utf-8") as f:
            f.write("13.123456\n12.987654\n")
        out = os.path.join(self.tmp, "raw.csv")
        result = self.runner.invoke(
            self.app, ["profile", cast, "-o", out, "--resolution", "raw", "--json"] + self._linear_args()
        )
        self.assertEqual(result.exit_code, 0, result.output)
        rows = _read_rows(out)
        self.assertEqual(rows[1][1], "13.1235")
        with open(os.path.join(self.tmp, "raw.json"), encoding="utf-8") as f:
            report = json.load(f)
        self.assertEqual(report["points"][0]["temperature_c"], 13.123456)


if __name__ == "__main__":
    unittest.main()
