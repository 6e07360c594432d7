from __future__ import annotations

# TCX document model and the file collector. Decoding is a thin mapping from
# Training Center XML onto frozen dataclasses; all derived statistics live in
# tcx_stats.

import logging
import os
import xml.etree.ElementTree as ET
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar, Union


T = TypeVar("T")


class TcxParseError(ValueError):
    """Raised when a TCX document is malformed or misses a required field."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        self.path = path
        if path:
            message = f"{path}: {message}"
        super().__init__(message)


# -----------------
# Data structures
# -----------------

@dataclass(frozen=True)
class Position:
    # Positive latitude is north of the equator, positive longitude east of Greenwich.
    lat: float
    long: float


@dataclass(frozen=True)
class SampleExtension:
    speed: Optional[float] = None
    # Steps per minute for a single foot; double it for the usual cadence figure.
    cadence: Optional[int] = None
    watts: Optional[int] = None


@dataclass(frozen=True)
class Sample:
    """One trackpoint. Distance is cumulative metres, altitude is metres."""

    time: datetime
    distance: float
    heart_rate: Optional[int] = None
    altitude: Optional[float] = None
    position: Optional[Position] = None
    extensions: Tuple[SampleExtension, ...] = ()

    def _first_ext_value(self, name: str):
        for ext in self.extensions:
            value = getattr(ext, name)
            if value is not None:
                return value
        return None

    @property
    def speed(self) -> Optional[float]:
        return self._first_ext_value("speed")

    @property
    def cadence(self) -> Optional[int]:
        return self._first_ext_value("cadence")

    @property
    def watts(self) -> Optional[int]:
        return self._first_ext_value("watts")


@dataclass(frozen=True)
class LapExtension:
    avg_speed: Optional[float] = None
    # Single-foot steps per minute, like SampleExtension.cadence.
    avg_cadence: Optional[int] = None
    max_cadence: Optional[int] = None
    avg_watts: Optional[int] = None
    max_watts: Optional[int] = None


@dataclass(frozen=True)
class LapElevation:
    gain_m: float = 0.0
    loss_m: float = 0.0
    last_altitude_m: float = 0.0


@dataclass(frozen=True)
class Lap:
    start_time: datetime
    seconds: float
    calories: int
    distance: float
    average_hr: Optional[int] = None
    maximum_hr: Optional[int] = None
    samples: Tuple[Sample, ...] = ()
    extensions: Tuple[LapExtension, ...] = ()
    # Filled in by tcx_stats.apply_elevation; None reads as zero gain/loss.
    elevation: Optional[LapElevation] = None

    @property
    def extension(self) -> Optional[LapExtension]:
        """Only the first lap extension block carries the lap averages."""
        return self.extensions[0] if self.extensions else None

    @property
    def heart_rates(self) -> List[int]:
        return [s.heart_rate for s in self.samples if s.heart_rate is not None]


@dataclass(frozen=True)
class Activity:
    sport: str
    id: str
    laps: Tuple[Lap, ...] = ()
    creator: Optional[str] = None

    @property
    def lap_count(self) -> int:
        return len(self.laps)


@dataclass(frozen=True)
class TrainingCenterDatabase:
    activities: Tuple[Activity, ...] = ()
    source_path: Optional[str] = None

    def get_activity(self, idx: int) -> Optional[Activity]:
        if 0 <= idx < len(self.activities):
            return self.activities[idx]
        return None


@dataclass
class ParseFailure:
    path: str
    error: str


@dataclass
class ParsedBatch:
    documents: List[TrainingCenterDatabase] = field(default_factory=list)
    failures: List[ParseFailure] = field(default_factory=list)


# -----------------
# TCX decoding
# -----------------

def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(elem: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in elem if _local(child.tag) == name]


def _child(elem: ET.Element, name: str) -> Optional[ET.Element]:
    for child in elem:
        if _local(child.tag) == name:
            return child
    return None


def _text(elem: ET.Element, name: str, *, required: bool = False, where: str = "") -> Optional[str]:
    child = _child(elem, name)
    if child is None or child.text is None or not child.text.strip():
        if required:
            raise TcxParseError(f"missing required field {name!r} in {where or _local(elem.tag)}")
        return None
    return child.text.strip()


def _convert(raw: Optional[str], conv: Callable[[str], T], name: str) -> Optional[T]:
    if raw is None:
        return None
    try:
        return conv(raw)
    except (ValueError, OverflowError) as exc:
        raise TcxParseError(f"invalid value for {name!r}: {raw!r}") from exc


def _to_int(raw: str) -> int:
    # Some devices write integral fields as "152.0".
    try:
        return int(raw)
    except ValueError:
        return int(float(raw))


def _parse_time(raw: str) -> datetime:
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _hr_value(elem: ET.Element, name: str) -> Optional[int]:
    hr = _child(elem, name)
    if hr is None:
        return None
    return _convert(_text(hr, "Value"), _to_int, name)


def _parse_position(elem: ET.Element) -> Optional[Position]:
    pos = _child(elem, "Position")
    if pos is None:
        return None
    lat = _convert(_text(pos, "LatitudeDegrees", required=True, where="Position"), float, "LatitudeDegrees")
    lon = _convert(_text(pos, "LongitudeDegrees", required=True, where="Position"), float, "LongitudeDegrees")
    return Position(lat=lat, long=lon)  # type: ignore[arg-type]


def _extension_blocks(elem: ET.Element, block: str) -> List[ET.Element]:
    out: List[ET.Element] = []
    for ext in _children(elem, "Extensions"):
        out.extend(_children(ext, block))
    return out


def _parse_sample(elem: ET.Element) -> Sample:
    time_raw = _text(elem, "Time", required=True, where="Trackpoint")
    dist_raw = _text(elem, "DistanceMeters", required=True, where="Trackpoint")
    extensions = tuple(
        SampleExtension(
            speed=_convert(_text(tpx, "Speed"), float, "Speed"),
            cadence=_convert(_text(tpx, "RunCadence"), _to_int, "RunCadence"),
            watts=_convert(_text(tpx, "Watts"), _to_int, "Watts"),
        )
        for tpx in _extension_blocks(elem, "TPX")
    )
    return Sample(
        time=_convert(time_raw, _parse_time, "Time"),  # type: ignore[arg-type]
        distance=_convert(dist_raw, float, "DistanceMeters"),  # type: ignore[arg-type]
        heart_rate=_hr_value(elem, "HeartRateBpm"),
        altitude=_convert(_text(elem, "AltitudeMeters"), float, "AltitudeMeters"),
        position=_parse_position(elem),
        extensions=extensions,
    )


def _parse_lap(elem: ET.Element) -> Lap:
    start_raw = elem.get("StartTime")
    if not start_raw:
        raise TcxParseError("missing required field 'StartTime' in Lap")
    samples: List[Sample] = []
    for track in _children(elem, "Track"):
        samples.extend(_parse_sample(tp) for tp in _children(track, "Trackpoint"))
    extensions = tuple(
        LapExtension(
            avg_speed=_convert(_text(lx, "AvgSpeed"), float, "AvgSpeed"),
            avg_cadence=_convert(_text(lx, "AvgRunCadence"), _to_int, "AvgRunCadence"),
            max_cadence=_convert(_text(lx, "MaxRunCadence"), _to_int, "MaxRunCadence"),
            avg_watts=_convert(_text(lx, "AvgWatts"), _to_int, "AvgWatts"),
            max_watts=_convert(_text(lx, "MaxWatts"), _to_int, "MaxWatts"),
        )
        for lx in _extension_blocks(elem, "LX")
    )
    return Lap(
        start_time=_convert(start_raw, _parse_time, "StartTime"),  # type: ignore[arg-type]
        seconds=_convert(_text(elem, "TotalTimeSeconds", required=True, where="Lap"), float, "TotalTimeSeconds"),  # type: ignore[arg-type]
        calories=_convert(_text(elem, "Calories", required=True, where="Lap"), _to_int, "Calories"),  # type: ignore[arg-type]
        distance=_convert(_text(elem, "DistanceMeters", required=True, where="Lap"), float, "DistanceMeters"),  # type: ignore[arg-type]
        average_hr=_hr_value(elem, "AverageHeartRateBpm"),
        maximum_hr=_hr_value(elem, "MaximumHeartRateBpm"),
        samples=tuple(samples),
        extensions=extensions,
    )


def _parse_activity(elem: ET.Element) -> Activity:
    sport = elem.get("Sport")
    if sport is None:
        raise TcxParseError("missing required field 'Sport' in Activity")
    creator_name: Optional[str] = None
    creator = _child(elem, "Creator")
    if creator is not None:
        creator_name = _text(creator, "Name")
    return Activity(
        sport=sport,
        id=_text(elem, "Id", required=True, where="Activity"),  # type: ignore[arg-type]
        laps=tuple(_parse_lap(lap) for lap in _children(elem, "Lap")),
        creator=creator_name,
    )


def parse_tcx_string(data: Union[str, bytes], path: Optional[str] = None) -> TrainingCenterDatabase:
    """Decode a TCX document. Element names are matched without their namespace.

    Bytes are decoded by the XML parser using the document's declared encoding.
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise TcxParseError(f"malformed XML: {exc}", path) from exc
    if _local(root.tag) != "TrainingCenterDatabase":
        raise TcxParseError(f"unexpected root element {_local(root.tag)!r}", path)
    activities: List[Activity] = []
    try:
        for container in _children(root, "Activities"):
            activities.extend(_parse_activity(a) for a in _children(container, "Activity"))
    except TcxParseError as exc:
        if path and exc.path is None:
            raise TcxParseError(str(exc), path) from exc
        raise
    return TrainingCenterDatabase(activities=tuple(activities), source_path=path)


def parse_tcx(path: str) -> TrainingCenterDatabase:
    logging.info("Parsing: %s", path)
    with open(path, "rb") as fh:
        data = fh.read()
    # Garmin exports sometimes carry leading whitespace before the XML declaration.
    tcx = parse_tcx_string(data.lstrip(), path=path)
    logging.info("Successfully parsed: %s", path)
    return tcx


# -----------------
# Folder collection
# -----------------

def find_tcx_files(directory: str) -> List[str]:
    if not os.path.isdir(directory):
        raise NotADirectoryError(f"Directory {directory} is not a folder.")
    paths: List[str] = []
    for root, dirs, files in os.walk(directory):
        dirs.sort()
        for name in sorted(files):
            if name.lower().endswith(".tcx"):
                paths.append(os.path.join(root, name))
    return paths


def parse_files(
    paths: Sequence[str],
    parse_workers: int = 0,
    timeout_s: Optional[float] = None,
    strict: bool = False,
) -> ParsedBatch:
    """Parse every path on a bounded pool.

    Failures are collected per file unless ``strict`` is set, in which case the
    first failure (in path order) is re-raised. ``timeout_s`` bounds the wait
    for each individual file on the pool path; a file that exceeds it is
    recorded as a failure and its worker thread is abandoned, not joined.
    """
    batch = ParsedBatch()
    if not paths:
        return batch

    def _record(path: str, exc: BaseException) -> None:
        if strict:
            raise exc
        logging.warning("Skipping %s: %s", path, exc)
        batch.failures.append(ParseFailure(path=path, error=str(exc)))

    if parse_workers == 1 or len(paths) == 1:
        for path in paths:
            try:
                batch.documents.append(parse_tcx(path))
            except (OSError, TcxParseError) as exc:
                _record(path, exc)
        return batch

    max_workers = parse_workers if parse_workers and parse_workers > 0 else min(len(paths), max(1, (os.cpu_count() or 1)))
    executor = ThreadPoolExecutor(max_workers=max_workers)
    timed_out = False
    try:
        futures = [(path, executor.submit(parse_tcx, path)) for path in paths]
        for path, future in futures:
            try:
                batch.documents.append(future.result(timeout=timeout_s))
            except FutureTimeoutError:
                timed_out = True
                _record(path, TimeoutError(f"timed out after {timeout_s:g}s"))
            except (OSError, TcxParseError) as exc:
                _record(path, exc)
    finally:
        # A timed-out worker cannot be interrupted; leave it behind rather than join it.
        executor.shutdown(wait=not timed_out, cancel_futures=True)
    return batch


def parse_folder(
    directory: str,
    parse_workers: int = 0,
    timeout_s: Optional[float] = None,
    strict: bool = False,
) -> ParsedBatch:
    paths = find_tcx_files(directory)
    logging.info("Reading %d TCX file(s)...", len(paths))
    return parse_files(paths, parse_workers=parse_workers, timeout_s=timeout_s, strict=strict)
