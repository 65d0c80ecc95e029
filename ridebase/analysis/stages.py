"""Split an enriched track into alternating Moving and Control stages.

A Control stage is a stop: speed drops below a (very low) limit and the
rider does not get more than a set distance away for some minimum time.
Everything else is Moving. Once the stages are known most of the summary
figures for a ride (moving time, ascent per stage, extremes) fall out of them.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ridebase.analysis.geo import distance_between_points_metres, speed_kmh_from_duration
from ridebase.config import config_section
from ridebase.models import EnrichedGpx, EnrichedTrackPoint

logger = logging.getLogger(__name__)

# Average speed over the first few minutes below which a track is assumed to
# start stopped.
WALKING_PACE_KMH = 5.0
STARTING_TYPE_WINDOW_SECONDS = 180.0


class StageType(enum.Enum):
    MOVING = "Moving"
    CONTROL = "Control"

    def __str__(self):
        return self.value

    def toggle(self) -> "StageType":
        return StageType.CONTROL if self is StageType.MOVING else StageType.MOVING


@dataclass
class StageDetectionParameters:
    """Knobs for the stage-finding algorithm."""
    # Considered "possibly stopped" at or below this speed.
    stopped_speed_kmh: float = 2.0
    # Distance that has to be covered before we count as moving again.
    min_metres_to_resume: float = 100.0
    # Stops shorter than this are noise (traffic lights etc.).
    min_duration_seconds: float = 120.0

    @classmethod
    def from_config(cls, config: dict | None) -> "StageDetectionParameters":
        section = config_section(config, "stages")
        defaults = cls()
        minutes = section.get("min_control_minutes")
        return cls(
            stopped_speed_kmh=float(section.get("stopped_speed_kmh", defaults.stopped_speed_kmh)),
            min_metres_to_resume=float(section.get("min_metres_to_resume", defaults.min_metres_to_resume)),
            min_duration_seconds=float(minutes) * 60.0 if minutes is not None else defaults.min_duration_seconds,
        )


@dataclass
class Stage:
    """A contiguous run of points of one type.

    'start' and 'end' are snapshots of the first and last points (inclusive).
    'track_start_point' is point 0 of the whole track, kept for running totals.
    Per-stage quantities are measured from the point before 'start', so that
    stage distances and durations add up to the whole track.
    """
    stage_type: StageType
    track_start_point: EnrichedTrackPoint
    start: EnrichedTrackPoint
    end: EnrichedTrackPoint
    min_elevation: Optional[EnrichedTrackPoint] = None
    max_elevation: Optional[EnrichedTrackPoint] = None
    max_speed: Optional[EnrichedTrackPoint] = None
    avg_heart_rate: Optional[float] = None
    max_heart_rate: Optional[EnrichedTrackPoint] = None
    avg_air_temp: Optional[float] = None
    min_air_temp: Optional[EnrichedTrackPoint] = None
    max_air_temp: Optional[EnrichedTrackPoint] = None

    def highlighted_trackpoints(self) -> list[int]:
        """Indexes of the points that are 'special' in some way (start, extremes...)."""
        idxs = [self.track_start_point.index, self.start.index, self.end.index]
        for p in (self.min_elevation, self.max_elevation, self.max_speed,
                  self.max_heart_rate, self.max_air_temp):
            if p is not None:
                idxs.append(p.index)
        return sorted(idxs)

    def reverse_geocode(self, geocoder) -> Optional[str]:
        """'Place' for a Control stage, 'Place1 to Place2' for a Moving one."""
        start_desc = geocoder.reverse_geocode(self.start.lat, self.start.lon)
        if self.stage_type is StageType.CONTROL:
            return start_desc
        end_desc = geocoder.reverse_geocode(self.end.lat, self.end.lon)
        if start_desc is None or end_desc is None:
            return None
        return f"{start_desc} to {end_desc}"

    def duration(self) -> Optional[timedelta]:
        # A fix written after a long stop carries the time the stop ended, so
        # measure from when the start point's interval began.
        start = self.start.start_time()
        if self.end.time is None or start is None:
            return None
        return self.end.time - start

    def running_duration(self) -> Optional[timedelta]:
        start = self.track_start_point.start_time()
        if self.end.time is None or start is None:
            return None
        return self.end.time - start

    def distance_metres(self) -> float:
        before = self.start.running_metres - (self.start.delta_metres or 0.0)
        return self.end.running_metres - before

    def distance_km(self) -> float:
        return self.distance_metres() / 1000.0

    def running_distance_km(self) -> float:
        return self.end.running_metres / 1000.0

    def average_speed_kmh(self) -> Optional[float]:
        dur = self.duration()
        if dur is None or dur <= timedelta(0):
            return None
        return speed_kmh_from_duration(self.distance_metres(), dur)

    def running_average_speed_kmh(self) -> Optional[float]:
        dur = self.running_duration()
        if dur is None or dur <= timedelta(0):
            return None
        return speed_kmh_from_duration(self.end.running_metres, dur)

    def ascent_metres(self) -> float:
        step = self.start.ele_delta_metres or 0.0
        before = self.start.running_ascent_metres - max(step, 0.0)
        return self.end.running_ascent_metres - before

    def running_ascent_metres(self) -> float:
        return self.end.running_ascent_metres

    def ascent_rate_per_km(self) -> Optional[float]:
        """Metres climbed per km; None for a stage with no distance."""
        km = self.distance_km()
        return self.ascent_metres() / km if km > 0.0 else None

    def descent_metres(self) -> float:
        step = self.start.ele_delta_metres or 0.0
        before = self.start.running_descent_metres - max(-step, 0.0)
        return self.end.running_descent_metres - before

    def running_descent_metres(self) -> float:
        return self.end.running_descent_metres

    def descent_rate_per_km(self) -> Optional[float]:
        km = self.distance_km()
        return self.descent_metres() / km if km > 0.0 else None


class StageList:
    """The stages of one track, in order. Read-only once built.

    Track-wide extremes are found by comparing the per-stage extremes, which
    is enough because a global extreme is always the extreme of some stage.
    """

    def __init__(self, stages=()):
        self._stages = tuple(stages)

    def __len__(self):
        return len(self._stages)

    def __getitem__(self, index) -> Stage:
        return self._stages[index]

    def __iter__(self):
        return iter(self._stages)

    def __repr__(self):
        return f"StageList({list(self._stages)!r})"

    def highlighted_trackpoints(self) -> set[int]:
        return {i for s in self._stages for i in s.highlighted_trackpoints()}

    def first_point(self) -> Optional[EnrichedTrackPoint]:
        return self._stages[0].start if self._stages else None

    def last_point(self) -> Optional[EnrichedTrackPoint]:
        return self._stages[-1].end if self._stages else None

    def start_time(self):
        first = self.first_point()
        return first.start_time() if first is not None else None

    def end_time(self):
        last = self.last_point()
        return last.time if last is not None else None

    def duration(self) -> Optional[timedelta]:
        start, end = self.start_time(), self.end_time()
        if start is None or end is None:
            return None
        return end - start

    def total_control_time(self) -> Optional[timedelta]:
        total = timedelta(0)
        for stage in self._stages:
            if stage.stage_type is StageType.CONTROL:
                dur = stage.duration()
                if dur is None:
                    return None
                total += dur
        return total

    def total_moving_time(self) -> Optional[timedelta]:
        dur, control = self.duration(), self.total_control_time()
        if dur is None or control is None:
            return None
        return dur - control

    def distance_metres(self) -> float:
        return sum(s.distance_metres() for s in self._stages)

    def distance_km(self) -> float:
        return self.distance_metres() / 1000.0

    def average_moving_speed(self) -> Optional[float]:
        """Excludes time spent in Control stages."""
        moving = self.total_moving_time()
        if moving is None or moving <= timedelta(0):
            return None
        return speed_kmh_from_duration(self.distance_metres(), moving)

    def average_overall_speed(self) -> Optional[float]:
        dur = self.duration()
        if dur is None or dur <= timedelta(0):
            return None
        return speed_kmh_from_duration(self.distance_metres(), dur)

    def moving_percent(self) -> Optional[float]:
        dur, moving = self.duration(), self.total_moving_time()
        if dur is None or moving is None or dur <= timedelta(0):
            return None
        return moving / dur * 100.0

    def control_percent(self) -> Optional[float]:
        dur, control = self.duration(), self.total_control_time()
        if dur is None or control is None or dur <= timedelta(0):
            return None
        return control / dur * 100.0

    def total_ascent_metres(self) -> float:
        return sum(s.ascent_metres() for s in self._stages)

    def total_descent_metres(self) -> float:
        return sum(s.descent_metres() for s in self._stages)

    def min_elevation(self) -> Optional[EnrichedTrackPoint]:
        points = [s.min_elevation for s in self._stages if s.min_elevation is not None]
        return min(points, key=lambda p: p.ele, default=None)

    def max_elevation(self) -> Optional[EnrichedTrackPoint]:
        points = [s.max_elevation for s in self._stages if s.max_elevation is not None]
        return max(points, key=lambda p: p.ele, default=None)

    def max_speed(self) -> Optional[EnrichedTrackPoint]:
        points = [s.max_speed for s in self._stages if s.max_speed is not None]
        return max(points, key=lambda p: p.speed_kmh, default=None)

    def max_heart_rate(self) -> Optional[EnrichedTrackPoint]:
        points = [s.max_heart_rate for s in self._stages if s.max_heart_rate is not None]
        return max(points, key=lambda p: p.heart_rate, default=None)

    def min_temperature(self) -> Optional[EnrichedTrackPoint]:
        points = [s.min_air_temp for s in self._stages if s.min_air_temp is not None]
        return min(points, key=lambda p: p.air_temp, default=None)

    def max_temperature(self) -> Optional[EnrichedTrackPoint]:
        points = [s.max_air_temp for s in self._stages if s.max_air_temp is not None]
        return max(points, key=lambda p: p.air_temp, default=None)


def detect_stages(gpx: EnrichedGpx, params: StageDetectionParameters) -> StageList:
    """Find the stages of an enriched single-track gpx.

    Stages alternate Moving/Control. The type of the first one is guessed from
    the average speed over the first few minutes, because it is possible to
    switch the device on and then not go anywhere for a while.
    """
    if len(gpx.points) < 2:
        logger.warning("%s does not have enough points to detect stages", gpx.filename)
        return StageList()

    # Durations and speeds need times on every point.
    if any(p.time is None for p in gpx.points):
        logger.warning("%s has points without a time, cannot detect stages", gpx.filename)
        return StageList()

    logger.info(
        "Detecting stages in %s using stopped_speed_kmh=%s, min_duration_seconds=%s, min_metres_to_resume=%s",
        gpx.filename, params.stopped_speed_kmh, params.min_duration_seconds, params.min_metres_to_resume,
    )

    stage_type = get_starting_stage_type(gpx)
    logger.info("Determined type of the first stage to be %s", stage_type)

    stages = []
    start_idx = 0
    last_idx = gpx.last_valid_idx()
    while start_idx <= last_idx:
        stage = get_next_stage(gpx, stage_type, start_idx, params)
        logger.info(
            "Adding %s stage from point %d to %d, length=%.3fkm, duration=%s",
            stage.stage_type, stage.start.index, stage.end.index, stage.distance_km(), stage.duration(),
        )
        stages.append(stage)
        # Stages do not share points.
        start_idx = stage.end.index + 1
        stage_type = stage_type.toggle()

    logger.info("Detection finished, found %d stages", len(stages))
    check_stage_invariants(stages, last_idx)
    return StageList(stages)


def check_stage_invariants(stages: list[Stage], last_idx: int) -> None:
    """Raises AssertionError if the stages do not exactly tile the track."""
    if not stages:
        raise AssertionError("Stage detection produced no stages")
    if stages[0].start.index != 0:
        raise AssertionError("The first stage must start with the first point")
    if stages[-1].end.index != last_idx:
        raise AssertionError("The last stage must end with the last point")
    for prev, nxt in zip(stages, stages[1:]):
        if prev.end.index + 1 != nxt.start.index:
            raise AssertionError(
                f"Stage ending at {prev.end.index} is followed by one starting at {nxt.start.index}"
            )
        if prev.stage_type is nxt.stage_type:
            raise AssertionError(f"Two consecutive {prev.stage_type} stages at {nxt.start.index}")


def get_next_stage(gpx: EnrichedGpx, stage_type: StageType, start_idx: int,
                   params: StageDetectionParameters) -> Stage:
    last_idx = gpx.last_valid_idx()
    if stage_type is StageType.MOVING:
        end_idx = find_stop_index(gpx, start_idx, params)
    else:
        end_idx = find_resume_index(gpx, start_idx, params.min_metres_to_resume)

    if not start_idx <= end_idx <= last_idx:
        raise AssertionError(f"Invalid stage range {start_idx}..{end_idx} (last index {last_idx})")

    points = gpx.points[start_idx:end_idx + 1]
    min_ele, max_ele = find_min_and_max_elevation_points(points)
    max_hr, avg_hr = find_heart_rates(points)
    min_temp, max_temp, avg_temp = find_air_temps(points)

    return Stage(
        stage_type=stage_type,
        track_start_point=gpx.points[0].copy(),
        start=gpx.points[start_idx].copy(),
        end=gpx.points[end_idx].copy(),
        min_elevation=min_ele,
        max_elevation=max_ele,
        max_speed=find_max_speed(points),
        avg_heart_rate=avg_hr,
        max_heart_rate=max_hr,
        avg_air_temp=avg_temp,
        min_air_temp=min_temp,
        max_air_temp=max_temp,
    )


def find_stop_index(gpx: EnrichedGpx, start_idx: int, params: StageDetectionParameters) -> int:
    """Index of the last point of the Moving stage that begins at start_idx.

    The candidate end is the point before the speed drops to stopped_speed_kmh.
    It is only accepted if, by the time we have gone min_metres_to_resume
    further (along the path), at least min_duration_seconds have passed.
    Otherwise the dip was noise and the search carries on past it.
    """
    points = gpx.points
    last_idx = gpx.last_valid_idx()
    end_idx = start_idx + 1

    while end_idx <= last_idx:
        while end_idx <= last_idx and points[end_idx].speed_kmh > params.stopped_speed_kmh:
            end_idx += 1
        if end_idx > last_idx:
            logger.debug("find_stop_index(%d): moving until the end of the track", start_idx)
            return last_idx

        candidate = points[end_idx - 1]
        logger.debug("find_stop_index(%d): speed dropped at %d", start_idx, end_idx)

        while end_idx <= last_idx and points[end_idx].running_metres - candidate.running_metres <= params.min_metres_to_resume:
            end_idx += 1
        if end_idx > last_idx:
            logger.debug("find_stop_index(%d): never resumed, stopped until the end of the track", start_idx)
            return last_idx

        # The resume point's time is when the stop actually ended, even if
        # the device only wrote one fix for the whole stop.
        stop_duration = points[end_idx].time - candidate.time
        if stop_duration.total_seconds() >= params.min_duration_seconds:
            logger.debug("find_stop_index(%d): valid stop at %d, duration %s", start_idx, candidate.index, stop_duration)
            return candidate.index

        logger.debug("find_stop_index(%d): rejecting stop at %d, duration %s", start_idx, candidate.index, stop_duration)
        end_idx += 1

    return last_idx


def find_resume_index(gpx: EnrichedGpx, start_idx: int, min_metres_to_resume: float) -> int:
    """Index of the first point more than min_metres_to_resume from the start point.

    Uses straight-line distance: fixes are jittery while stopped (walking into
    a shop with the device) and the path length would count that as movement.
    """
    start = gpx.points[start_idx]
    last_idx = gpx.last_valid_idx()
    for idx in range(start_idx + 1, last_idx + 1):
        moved = distance_between_points_metres(start, gpx.points[idx])
        if moved > min_metres_to_resume:
            logger.debug("find_resume_index(%d): resumed at %d after moving %.2fm", start_idx, idx, moved)
            return idx
    return last_idx


def get_starting_stage_type(gpx: EnrichedGpx) -> StageType:
    """Moving unless the average speed over the first few minutes is below walking pace."""
    first = gpx.points[0]
    last_idx = gpx.last_valid_idx()
    end_idx = 1
    while end_idx < last_idx:
        if (gpx.points[end_idx].time - first.time).total_seconds() >= STARTING_TYPE_WINDOW_SECONDS:
            break
        end_idx += 1

    end = gpx.points[end_idx]
    elapsed = end.time - first.time
    if elapsed <= timedelta(0):
        return StageType.MOVING
    speed = speed_kmh_from_duration(end.running_metres - first.running_metres, elapsed)
    return StageType.CONTROL if speed < WALKING_PACE_KMH else StageType.MOVING


def find_min_and_max_elevation_points(points):
    """Any point without an elevation makes both extremes unknown."""
    if any(p.ele is None for p in points):
        return None, None
    lowest = min(points, key=lambda p: p.ele)
    highest = max(points, key=lambda p: p.ele)
    return lowest.copy(), highest.copy()


def find_max_speed(points):
    if any(p.speed_kmh is None for p in points):
        return None
    return max(points, key=lambda p: p.speed_kmh).copy()


def find_heart_rates(points):
    """(max heart rate point, average heart rate) over the points that have one."""
    with_hr = [p for p in points if p.heart_rate is not None]
    if not with_hr:
        return None, None
    highest = max(with_hr, key=lambda p: p.heart_rate)
    return highest.copy(), sum(p.heart_rate for p in with_hr) / len(with_hr)


def find_air_temps(points):
    with_temp = [p for p in points if p.air_temp is not None]
    if not with_temp:
        return None, None, None
    lowest = min(with_temp, key=lambda p: p.air_temp)
    highest = max(with_temp, key=lambda p: p.air_temp)
    return lowest.copy(), highest.copy(), sum(p.air_temp for p in with_temp) / len(with_temp)
