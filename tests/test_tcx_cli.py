from __future__ import annotations

import os
import tempfile
import unittest

from typer.testing import CliRunner

import tcx_cli
import tcx_plotting
from tests.test_tcx_model import LAP_XML, make_tcx


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = os.path.join(self._tmp.name, "activities")
        os.makedirs(self.data_dir)
        self.output = os.path.join(self._tmp.name, "report.txt")
        self.chart = os.path.join(self._tmp.name, "chart.png")
        self.runner = CliRunner()
        self.app = tcx_cli._build_typer_app()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _write(self, name: str, text: str) -> None:
        with open(os.path.join(self.data_dir, name), "w", encoding="utf-8") as fh:
            fh.write(text)

    def test_writes_sorted_report(self) -> None:
        self._write("b.tcx", make_tcx("2023-01-02T08:00:00Z", laps_xml=LAP_XML))
        self._write("a.tcx", make_tcx("2023-01-03T08:00:00Z", laps_xml=LAP_XML))
        self._write("c.tcx", make_tcx("2023-01-01T08:00:00Z"))
        result = self.runner.invoke(self.app, [self.data_dir, "-o", self.output, "--no-plot", "--parse-workers", "2"])
        self.assertEqual(result.exit_code, 0, msg=result.output)
        with open(self.output, encoding="utf-8") as fh:
            text = fh.read()
        headers = [line for line in text.splitlines() if line.startswith("=== ")]
        self.assertEqual(
            headers,
            ["=== 2023-01-01T08:00:00Z ===", "=== 2023-01-02T08:00:00Z ===", "=== 2023-01-03T08:00:00Z ==="],
        )
        self.assertIn("  Average Cadence: 170 steps/min", text)
        self.assertIn("  Average Power: 280W", text)
        self.assertFalse(os.path.exists(self.output + ".tmp"))

    def test_not_a_directory_is_fatal(self) -> None:
        missing = os.path.join(self._tmp.name, "missing")
        result = self.runner.invoke(self.app, [missing, "-o", self.output, "-c", self.chart])
        self.assertEqual(result.exit_code, tcx_cli.EXIT_FATAL)
        self.assertFalse(os.path.exists(self.output))
        self.assertFalse(os.path.exists(self.chart))

    def test_parse_failures_reported_but_output_written(self) -> None:
        self._write("good.tcx", make_tcx(laps_xml=LAP_XML))
        self._write("bad.tcx", "<TrainingCenterDatabase>")
        result = self.runner.invoke(self.app, [self.data_dir, "-o", self.output, "--no-plot"])
        self.assertEqual(result.exit_code, tcx_cli.EXIT_PARSE_FAILURES)
        self.assertTrue(os.path.exists(self.output))

    def test_strict_parse_failure_is_fatal(self) -> None:
        self._write("good.tcx", make_tcx(laps_xml=LAP_XML))
        self._write("bad.tcx", "<TrainingCenterDatabase>")
        result = self.runner.invoke(self.app, [self.data_dir, "-o", self.output, "--no-plot", "--strict"])
        self.assertEqual(result.exit_code, tcx_cli.EXIT_FATAL)
        self.assertFalse(os.path.exists(self.output))

    def test_altitude_threshold_option(self) -> None:
        climb = LAP_XML.replace(
            "<Time>2023-01-01T08:00:01.000Z</Time>",
            "<Time>2023-01-01T08:00:01.000Z</Time><AltitudeMeters>103.0</AltitudeMeters>",
        )
        self._write("a.tcx", make_tcx(laps_xml=climb))
        for extra, gain in (([], "10"), (["--altitude-threshold", "5"], "0")):
            with self.subTest(extra=extra):
                result = self.runner.invoke(self.app, [self.data_dir, "-o", self.output, "--no-plot", *extra])
                self.assertEqual(result.exit_code, 0, msg=result.output)
                with open(self.output, encoding="utf-8") as fh:
                    self.assertIn(f"  Elevation Gain: {gain}\n", fh.read())

    def test_renders_chart(self) -> None:
        self._write("a.tcx", make_tcx("2023-01-01T08:00:00Z", laps_xml=LAP_XML))
        self._write("b.tcx", make_tcx("2023-01-02T08:00:00Z", laps_xml=LAP_XML))
        code = tcx_cli._run(self.data_dir, output=self.output, chart=self.chart)
        self.assertEqual(code, tcx_cli.EXIT_OK)
        self.assertGreater(os.path.getsize(self.chart), 0)
        self.assertTrue(os.path.exists(self.output))


class TestPlotting(unittest.TestCase):
    def test_plot_empty_stats(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            out = os.path.join(tmp, "empty.png")
            tcx_plotting.plot_pace_vs_hr([], out)
            self.assertTrue(os.path.exists(out))

    def test_chart_failure_leaves_no_report(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            data_dir = os.path.join(tmp, "in")
            os.makedirs(data_dir)
            output = os.path.join(tmp, "report.txt")
            chart = os.path.join(tmp, "no-such-dir", "chart.png")
            code = tcx_cli._run(data_dir, output=output, chart=chart)
            self.assertEqual(code, tcx_cli.EXIT_FATAL)
            self.assertFalse(os.path.exists(output))
            self.assertFalse(os.path.exists(output + ".tmp"))


if __name__ == "__main__":
    unittest.main()
