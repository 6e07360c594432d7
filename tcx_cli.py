from __future__ import annotations

# CLI orchestration for tcxstats. Parsing lives in tcx_model, statistics in
# tcx_stats and the chart in tcx_plotting.

import logging
import os
import sys
import time
from typing import Optional

import typer

from tcx_model import parse_folder
from tcx_plotting import plot_pace_vs_hr
from tcx_stats import ALTITUDE_THRESHOLD_M, format_report, summarize


DEFAULT_OUTPUT = "output.txt"
DEFAULT_CHART = "output-bitmap.png"

EXIT_OK = 0
EXIT_PARSE_FAILURES = 1
EXIT_FATAL = 2


class _StageProfiler:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._last = time.perf_counter()

    def lap(self, label: str) -> None:
        if not self.enabled:
            return
        now = time.perf_counter()
        logging.info("Profile %-10s %.3fs", label, now - self._last)
        self._last = now


def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)
    # Suppress very chatty third-party DEBUG logs (e.g., matplotlib findfont)
    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("matplotlib.font_manager").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.INFO)


def _remove_quietly(path: str) -> None:
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError:
        pass


def _run(
    directory: str,
    output: str = DEFAULT_OUTPUT,
    chart: Optional[str] = DEFAULT_CHART,
    verbose: bool = False,
    no_plot: bool = False,
    parse_workers: int = 0,
    timeout_s: Optional[float] = None,
    strict: bool = False,
    threshold: float = ALTITUDE_THRESHOLD_M,
    log_file: Optional[str] = None,
    profile: bool = False,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    start = time.perf_counter()
    profiler = _StageProfiler(profile)

    try:
        batch = parse_folder(directory, parse_workers=parse_workers, timeout_s=timeout_s, strict=strict)
    except Exception as exc:
        logging.error(str(exc))
        return EXIT_FATAL
    profiler.lap("parse")

    stats = summarize(batch.documents, threshold=threshold)
    report = format_report(stats)
    profiler.lap("stats")

    # The report only replaces its destination once the chart is written too.
    tmp_output = output + ".tmp"
    try:
        with open(tmp_output, "w", encoding="utf-8") as fh:
            fh.write(report)
        if not no_plot and chart:
            plot_pace_vs_hr(stats, chart)
            profiler.lap("chart")
        os.replace(tmp_output, output)
    except Exception as exc:
        _remove_quietly(tmp_output)
        logging.error(str(exc))
        return EXIT_FATAL
    logging.info("Wrote: %s", output)

    logging.info("Processed %d activities", len(stats))
    if batch.failures:
        logging.warning("%d file(s) could not be parsed:", len(batch.failures))
        for failure in batch.failures:
            logging.warning("  %s: %s", failure.path, failure.error)
    logging.info("Total time: %.3fs", time.perf_counter() - start)
    return EXIT_PARSE_FAILURES if batch.failures else EXIT_OK


def _build_typer_app():
    app = typer.Typer(add_completion=False, help="Summary statistics and pace/heart-rate chart from TCX files.")

    @app.command()
    def stats(
        directory: str = typer.Argument(..., help="Name of the directory to parse tcx files within"),
        output: str = typer.Option(DEFAULT_OUTPUT, "--output", "-o", help="Name of the file to print output data into"),
        chart: str = typer.Option(DEFAULT_CHART, "--chart", "-c", help="Name of the file to write the chart to"),
        no_plot: bool = typer.Option(False, "--no-plot", help="Disable PNG generation"),
        parse_workers: int = typer.Option(0, "--parse-workers", help="Number of worker threads for TCX parsing (0=auto, 1=serial)"),
        timeout_s: Optional[float] = typer.Option(None, "--timeout", help="Per-file parse timeout in seconds"),
        strict: bool = typer.Option(False, "--strict/--no-strict", help="Abort the whole batch on the first unparseable file"),
        threshold: float = typer.Option(ALTITUDE_THRESHOLD_M, "--altitude-threshold", help="Minimum altitude change (m) counted as elevation gain/loss"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path"),
        profile: bool = typer.Option(False, "--profile/--no-profile", help="Log stage timings"),
    ) -> None:
        """Summarise every activity under DIRECTORY into a text report and a chart."""
        if parse_workers < 0:
            raise typer.BadParameter("parse-workers must be >= 0")
        if timeout_s is not None and timeout_s <= 0:
            raise typer.BadParameter("timeout must be positive")
        code = _run(
            directory,
            output=output,
            chart=chart,
            verbose=verbose,
            no_plot=no_plot,
            parse_workers=parse_workers,
            timeout_s=timeout_s,
            strict=strict,
            threshold=threshold,
            log_file=log_file,
            profile=profile,
        )
        if code != 0:
            raise typer.Exit(code)

    return app


def main_cli() -> int:
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main_cli())
