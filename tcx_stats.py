from __future__ import annotations

# Derived statistics for TCX activities: the per-lap elevation filter, the
# cross-lap averages, batch ordering, and the text report / chart series.

import dataclasses
import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from tcx_model import Activity, Lap, LapElevation, TrainingCenterDatabase


FEET_PER_METER = 3.28084
METERS_PER_MILE = 1609.344
MILES_PER_METER = 0.0006213712
ALTITUDE_THRESHOLD_M = 1.0

ZERO_PACE = "00:00 / mi"
REPORT_SEPARATOR = "================================"


def _round_half_up(value: float) -> int:
    # Non-negative inputs only; Python's round() would give 2 for 2.5.
    return int(math.floor(value + 0.5))


# -----------------
# Elevation engine
# -----------------

def _altitude_trace(lap: Lap) -> np.ndarray:
    return np.array(
        [s.altitude if s.altitude is not None else np.nan for s in lap.samples],
        dtype=float,
    )


def compute_elevation(lap: Lap, threshold: float = ALTITUDE_THRESHOLD_M) -> LapElevation:
    """Single-pass hysteresis filter over a lap's altitude samples.

    The reference point only moves when a sample differs from it by at least
    ``threshold`` metres; such a move is added to gain or loss. Samples without
    altitude are skipped and never move the reference.
    """
    alt = _altitude_trace(lap)
    known = alt[~np.isnan(alt)]
    if known.size == 0:
        return LapElevation(0.0, 0.0, 0.0)
    last = float(known[0])
    gain = 0.0
    loss = 0.0
    for value in known[1:]:
        a = float(value)
        delta = abs(a - last)
        if delta < threshold:
            continue
        if a > last:
            gain += delta
        else:
            loss += delta
        last = a
    return LapElevation(gain_m=gain, loss_m=loss, last_altitude_m=last)


def apply_elevation(activity: Activity, threshold: float = ALTITUDE_THRESHOLD_M) -> Activity:
    """Return a copy of ``activity`` whose laps carry freshly computed elevation.

    Any previous result is discarded, so applying it twice is harmless.
    """
    laps = tuple(
        dataclasses.replace(lap, elevation=compute_elevation(lap, threshold))
        for lap in activity.laps
    )
    return dataclasses.replace(activity, laps=laps)


# -----------------
# Stats aggregator
# -----------------

@dataclass(frozen=True)
class ActivityStats:
    id: str
    laps: int
    distance_mi: float
    distance_km: float
    average_hr: int
    average_pace: str
    average_pace_seconds: timedelta
    average_watts: int
    average_cadence: int
    elevation_gain: int
    elevation_loss: int

    def lines(self) -> List[str]:
        return [
            f"=== {self.id} ===",
            f"  Total laps: {self.laps}",
            f"  Distance: {self.distance_mi:.2f}mi / {self.distance_km:.2f}km",
            f"  Average HR: {self.average_hr}",
            f"  Average Pace: {self.average_pace}",
            f"  Average Power: {self.average_watts}W",
            f"  Average Cadence: {self.average_cadence} steps/min",
            f"  Elevation Gain: {self.elevation_gain}",
            f"  Elevation Loss: {self.elevation_loss}",
            REPORT_SEPARATOR + "\n\n",
        ]

    def display(self) -> None:
        for line in self.lines():
            print(line)


def total_distance_meters(activity: Activity) -> float:
    return float(sum(lap.distance for lap in activity.laps))


def average_hr(activity: Activity) -> int:
    """Mean over every sample heart rate in the activity, not a mean of lap means."""
    if activity.lap_count == 0:
        return 0
    values = np.fromiter(
        (hr for lap in activity.laps for hr in lap.heart_rates),
        dtype=np.int64,
    )
    if values.size == 0:
        return 0
    return int(values.sum()) // int(values.size)


def average_pace_meters_per_second(activity: Activity) -> float:
    if activity.lap_count == 0:
        return 0.0
    total_time = sum(lap.seconds for lap in activity.laps)
    total_distance = total_distance_meters(activity)
    if total_time <= 0:
        return 0.0
    return total_distance / total_time


def average_pace_seconds(activity: Activity) -> timedelta:
    pace = average_pace_meters_per_second(activity)
    if not math.isfinite(pace) or pace <= 0:
        return timedelta(0)
    return timedelta(seconds=_round_half_up(METERS_PER_MILE / pace))


def format_pace(pace: timedelta) -> str:
    total = int(pace.total_seconds())
    if total <= 0:
        return ZERO_PACE
    minutes, seconds = divmod(total, 60)
    return f"{minutes:02d}:{seconds:02d} / mi"


def _first_extension_total(activity: Activity, attr: str) -> int:
    total = 0
    for lap in activity.laps:
        ext = lap.extension
        if ext is None:
            continue
        value = getattr(ext, attr)
        if value is not None:
            total += int(value)
    return total


def average_cadence(activity: Activity) -> int:
    """Two-foot cadence averaged per lap; zero when the activity has no laps."""
    if activity.lap_count == 0:
        return 0
    return (_first_extension_total(activity, "avg_cadence") // activity.lap_count) * 2


def average_watts(activity: Activity) -> int:
    if activity.lap_count == 0:
        return 0
    return _first_extension_total(activity, "avg_watts") // activity.lap_count


def _elevation_totals(activity: Activity) -> Tuple[float, float]:
    gain = 0.0
    loss = 0.0
    for lap in activity.laps:
        if lap.elevation is None:
            continue
        gain += lap.elevation.gain_m
        loss += lap.elevation.loss_m
    return gain, loss


def build_stats(activity: Activity) -> ActivityStats:
    """Reduce an activity to its summary record.

    Elevation is read from ``lap.elevation``; run :func:`apply_elevation`
    first or the gain/loss will be zero.
    """
    distance_m = total_distance_meters(activity)
    pace = average_pace_seconds(activity)
    gain_m, loss_m = _elevation_totals(activity)
    return ActivityStats(
        id=activity.id,
        laps=activity.lap_count,
        distance_mi=distance_m * MILES_PER_METER,
        distance_km=distance_m / 1000.0,
        average_hr=average_hr(activity),
        average_pace=format_pace(pace),
        average_pace_seconds=pace,
        average_watts=average_watts(activity),
        average_cadence=average_cadence(activity),
        elevation_gain=_round_half_up(gain_m * FEET_PER_METER),
        elevation_loss=_round_half_up(loss_m * FEET_PER_METER),
    )


# -----------------
# Batch orchestration
# -----------------

def select_activities(documents: Iterable[TrainingCenterDatabase]) -> List[Activity]:
    selected: List[Activity] = []
    for doc in documents:
        activity = doc.get_activity(0)
        if activity is None:
            logging.debug("No activities in %s", doc.source_path or "<document>")
            continue
        if len(doc.activities) > 1:
            logging.debug(
                "Ignoring %d extra activit(ies) in %s",
                len(doc.activities) - 1,
                doc.source_path or "<document>",
            )
        selected.append(activity)
    return selected


def prepare_activities(
    documents: Iterable[TrainingCenterDatabase],
    threshold: float = ALTITUDE_THRESHOLD_M,
) -> List[Activity]:
    """First activity of each document, elevation applied, sorted by id.

    The sort compares ids as plain strings and is stable for equal ids.
    """
    activities = [apply_elevation(a, threshold) for a in select_activities(documents)]
    return sorted(activities, key=lambda a: a.id)


def summarize(
    documents: Iterable[TrainingCenterDatabase],
    threshold: float = ALTITUDE_THRESHOLD_M,
) -> List[ActivityStats]:
    return [build_stats(a) for a in prepare_activities(documents, threshold)]


# -----------------
# Report / chart output
# -----------------

def format_report(stats: Sequence[ActivityStats]) -> str:
    return "".join("\n".join(s.lines()) for s in stats)


def write_report(stats: Sequence[ActivityStats], path: str) -> None:
    text = format_report(stats)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(text)
    logging.info("Wrote: %s", path)


def chart_series(
    stats: Sequence[ActivityStats],
) -> Tuple[List[Tuple[int, int]], List[Tuple[int, int]]]:
    pace = [(i, int(s.average_pace_seconds.total_seconds())) for i, s in enumerate(stats)]
    hr = [(i, s.average_hr) for i, s in enumerate(stats)]
    return pace, hr

