import unittest
from datetime import datetime, timedelta, timezone

from ridebase.analysis.geocoding import NullGeocoder
from ridebase.analysis.stages import (
    StageDetectionParameters,
    StageList,
    StageType,
    detect_stages,
    find_resume_index,
    find_stop_index,
    get_starting_stage_type,
)
from ridebase.models import DeviceTelemetry, Gpx, Track, TrackPoint, TrackSegment

T0 = datetime(2024, 5, 11, 6, 0, 0, tzinfo=timezone.utc)
METRES_PER_DEGREE_LAT = 111_250.0
# 20 km/h for one second.
STEP_20KMH = 20 / 3.6


def make_enriched(rows, telemetry=None):
    """rows: (seconds, metres north of the start) or (seconds, metres, ele)."""
    points = []
    for i, row in enumerate(rows):
        seconds, metres = row[0], row[1]
        ele = row[2] if len(row) > 2 else None
        points.append(TrackPoint(
            lat=51.0 + metres / METRES_PER_DEGREE_LAT,
            lon=-1.0,
            ele=ele,
            time=T0 + timedelta(seconds=seconds) if seconds is not None else None,
            telemetry=telemetry[i] if telemetry else None,
        ))
    gpx = Gpx(creator="tests", tracks=[Track(segments=[TrackSegment(points=points)])])
    enriched = gpx.to_enriched_gpx()
    enriched.filename = "test.gpx"
    return enriched


def ride_with_two_stops():
    """Moving 0-9, stopped 10-19, moving 20-39, stopped 40-49, moving 50-59; one point a second."""
    rows, metres = [], 0.0
    for i in range(60):
        stopped = 10 <= i <= 19 or 40 <= i <= 49
        if i > 0 and not stopped:
            metres += STEP_20KMH
        rows.append((i, metres))
    return rows


def spans(stages):
    return [(str(s.stage_type), s.start.index, s.end.index) for s in stages]


PARAMS = StageDetectionParameters(stopped_speed_kmh=2.0, min_metres_to_resume=10.0, min_duration_seconds=5.0)


class TestDetectStages(unittest.TestCase):
    def test_stop_between_two_moving_stages(self) -> None:
        # Four points at 20 km/h, four stationary points, then moving again
        # 15 m from the stop after min_duration + 1 seconds.
        rows = [(0, 0.0), (1, STEP_20KMH), (2, 2 * STEP_20KMH), (3, 3 * STEP_20KMH)]
        rows += [(s, 3 * STEP_20KMH) for s in (4, 5, 6, 7)]
        rows += [(9, 3 * STEP_20KMH + 15.0), (10, 3 * STEP_20KMH + 15.0 + 15 / 3.6)]
        stages = detect_stages(make_enriched(rows), PARAMS)

        self.assertEqual(spans(stages), [("Moving", 0, 3), ("Control", 4, 8), ("Moving", 9, 9)])

    def test_short_dip_is_absorbed(self) -> None:
        rows = [(i, i * STEP_20KMH) for i in range(4)]
        rows += [(4, 3 * STEP_20KMH), (5, 3 * STEP_20KMH)]
        metres = 3 * STEP_20KMH + 15.0
        rows.append((6, metres))
        for s in range(7, 13):
            metres += STEP_20KMH
            rows.append((s, metres))
        stages = detect_stages(make_enriched(rows), PARAMS)

        self.assertEqual(spans(stages), [("Moving", 0, 12)])
        self.assertNotIn(StageType.CONTROL, [s.stage_type for s in stages])

    def test_coverage_and_alternation(self) -> None:
        enriched = make_enriched(ride_with_two_stops())
        stages = detect_stages(enriched, PARAMS)

        self.assertEqual(spans(stages), [
            ("Moving", 0, 9), ("Control", 10, 21), ("Moving", 22, 39),
            ("Control", 40, 51), ("Moving", 52, 59),
        ])
        self.assertEqual(stages[0].start.index, 0)
        self.assertEqual(stages[len(stages) - 1].end.index, enriched.last_valid_idx())
        for prev, nxt in zip(stages, stages[1:]):
            self.assertEqual(prev.end.index + 1, nxt.start.index)
            self.assertNotEqual(prev.stage_type, nxt.stage_type)

    def test_track_that_starts_stopped(self) -> None:
        rows = [(i * 10, 0.0) for i in range(21)]
        metres = 0.0
        for i in range(21, 40):
            metres += 10 * STEP_20KMH
            rows.append((i * 10, metres))
        enriched = make_enriched(rows)
        params = StageDetectionParameters(2.0, 10.0, 30.0)

        self.assertIs(get_starting_stage_type(enriched), StageType.CONTROL)
        stages = detect_stages(enriched, params)
        self.assertEqual(spans(stages), [("Control", 0, 21), ("Moving", 22, 39)])

    def test_single_point_yields_no_stages(self) -> None:
        stages = detect_stages(make_enriched([(0, 0.0)]), PARAMS)
        self.assertEqual(len(stages), 0)

    def test_missing_time_yields_no_stages(self) -> None:
        stages = detect_stages(make_enriched([(0, 0.0), (None, 10.0), (2, 20.0)]), PARAMS)
        self.assertEqual(len(stages), 0)

    def test_two_points(self) -> None:
        stages = detect_stages(make_enriched([(0, 0.0), (10, 50.0)]), PARAMS)
        self.assertEqual(spans(stages), [("Moving", 0, 1)])


class TestScans(unittest.TestCase):
    def test_find_stop_index_runs_to_end_when_never_stopping(self) -> None:
        enriched = make_enriched([(i, i * STEP_20KMH) for i in range(10)])
        self.assertEqual(find_stop_index(enriched, 0, PARAMS), 9)

    def test_find_stop_index_stopped_until_the_end(self) -> None:
        rows = [(0, 0.0), (1, STEP_20KMH), (2, 2 * STEP_20KMH), (30, 2 * STEP_20KMH), (60, 2 * STEP_20KMH)]
        self.assertEqual(find_stop_index(make_enriched(rows), 0, PARAMS), 4)

    def test_find_resume_index_uses_straight_line_distance(self) -> None:
        # Wander 8 m away and back repeatedly: lots of path, no displacement.
        rows = [(i, 8.0 if i % 2 else 0.0) for i in range(10)] + [(10, 30.0)]
        enriched = make_enriched(rows)
        self.assertGreater(enriched.points[9].running_metres, 50.0)
        self.assertEqual(find_resume_index(enriched, 0, 10.0), 10)

    def test_find_resume_index_exhausted(self) -> None:
        enriched = make_enriched([(i, 1.0) for i in range(5)])
        self.assertEqual(find_resume_index(enriched, 0, 10.0), 4)


class TestStage(unittest.TestCase):
    def setUp(self) -> None:
        self.enriched = make_enriched(ride_with_two_stops())
        self.stages = detect_stages(self.enriched, PARAMS)

    def test_durations(self) -> None:
        control = self.stages[1]
        # From the fix before the stop (index 9) to the resume point.
        self.assertEqual(control.duration(), timedelta(seconds=12))
        self.assertEqual(control.running_duration(), timedelta(seconds=21))
        self.assertEqual(self.stages[0].duration(), timedelta(seconds=9))

    def test_distances_add_up(self) -> None:
        total = sum(s.distance_metres() for s in self.stages)
        self.assertAlmostEqual(total, self.enriched.points[-1].running_metres, places=6)
        self.assertAlmostEqual(self.stages[0].distance_metres(), 9 * STEP_20KMH, delta=0.05)
        self.assertAlmostEqual(self.stages[-1].running_distance_km(), self.enriched.points[-1].running_metres / 1000)

    def test_average_speed(self) -> None:
        self.assertAlmostEqual(self.stages[0].average_speed_kmh(), 20.0, delta=0.05)
        self.assertIsNotNone(self.stages[2].running_average_speed_kmh())

    def test_first_stage_max_speed_is_unknown(self) -> None:
        # Point 0 has no speed.
        self.assertIsNone(self.stages[0].max_speed)
        self.assertIsNotNone(self.stages[2].max_speed)

    def test_highlighted_trackpoints(self) -> None:
        stage = self.stages[2]
        idxs = stage.highlighted_trackpoints()
        self.assertEqual(idxs, sorted(idxs))
        for i in (0, 22, 39, stage.max_speed.index):
            self.assertIn(i, idxs)
        self.assertTrue({0, 10, 21}.issubset(self.stages.highlighted_trackpoints()))

    def test_reverse_geocode(self) -> None:
        class LatGeocoder:
            def reverse_geocode(self, lat, lon):
                return f"{lat:.5f}"

        moving, control = self.stages[0], self.stages[1]
        self.assertEqual(moving.reverse_geocode(LatGeocoder()), f"{moving.start.lat:.5f} to {moving.end.lat:.5f}")
        self.assertEqual(control.reverse_geocode(LatGeocoder()), f"{control.start.lat:.5f}")
        self.assertIsNone(moving.reverse_geocode(NullGeocoder()))


class TestStageExtremes(unittest.TestCase):
    def test_elevation_unknown_if_any_point_lacks_it(self) -> None:
        rows = [(i, i * STEP_20KMH, 100.0 + i) for i in range(6)]
        rows[3] = (3, 3 * STEP_20KMH, None)
        stage = detect_stages(make_enriched(rows), PARAMS)[0]
        self.assertIsNone(stage.min_elevation)
        self.assertIsNone(stage.max_elevation)

    def test_elevation_ascent_and_descent(self) -> None:
        eles = [100.0, 104.0, 101.0, 110.0, 90.0, 95.0]
        rows = [(i, i * STEP_20KMH, e) for i, e in enumerate(eles)]
        stages = detect_stages(make_enriched(rows), PARAMS)
        stage = stages[0]
        self.assertEqual(stage.min_elevation.index, 4)
        self.assertEqual(stage.max_elevation.index, 3)
        self.assertEqual(stage.ascent_metres(), 4.0 + 9.0 + 5.0)
        self.assertEqual(stage.descent_metres(), 3.0 + 20.0)
        self.assertAlmostEqual(stage.ascent_rate_per_km(), 18.0 / stage.distance_km())
        self.assertEqual(stages.min_elevation().ele, 90.0)
        self.assertEqual(stages.max_elevation().ele, 110.0)

    def test_heart_rate_and_temperature(self) -> None:
        telemetry = [
            DeviceTelemetry(heart_rate=100, air_temp=10.0),
            None,
            DeviceTelemetry(heart_rate=150),
            DeviceTelemetry(heart_rate=110, air_temp=14.0),
            DeviceTelemetry(air_temp=12.0),
        ]
        rows = [(i, i * STEP_20KMH) for i in range(5)]
        stages = detect_stages(make_enriched(rows, telemetry), PARAMS)
        stage = stages[0]
        self.assertEqual(stage.max_heart_rate.index, 2)
        self.assertAlmostEqual(stage.avg_heart_rate, 120.0)
        self.assertEqual(stage.min_air_temp.index, 0)
        self.assertEqual(stage.max_air_temp.index, 3)
        self.assertAlmostEqual(stage.avg_air_temp, 12.0)
        self.assertEqual(stages.max_heart_rate().heart_rate, 150)
        self.assertEqual(stages.min_temperature().air_temp, 10.0)
        self.assertEqual(stages.max_temperature().air_temp, 14.0)

    def test_no_heart_rate(self) -> None:
        stage = detect_stages(make_enriched([(i, i * STEP_20KMH) for i in range(5)]), PARAMS)[0]
        self.assertIsNone(stage.max_heart_rate)
        self.assertIsNone(stage.avg_heart_rate)
        self.assertIsNone(stage.avg_air_temp)


class TestStageList(unittest.TestCase):
    def setUp(self) -> None:
        self.enriched = make_enriched(ride_with_two_stops())
        self.stages = detect_stages(self.enriched, PARAMS)

    def test_times(self) -> None:
        self.assertEqual(self.stages.start_time(), T0)
        self.assertEqual(self.stages.end_time(), T0 + timedelta(seconds=59))
        self.assertEqual(self.stages.duration(), timedelta(seconds=59))
        self.assertEqual(self.stages.total_control_time(), timedelta(seconds=24))
        self.assertEqual(self.stages.total_moving_time(), timedelta(seconds=35))
        self.assertAlmostEqual(self.stages.moving_percent(), 35 / 59 * 100)
        self.assertAlmostEqual(self.stages.control_percent(), 24 / 59 * 100)

    def test_distance_and_speeds(self) -> None:
        total = self.enriched.points[-1].running_metres
        self.assertAlmostEqual(self.stages.distance_metres(), total, places=6)
        self.assertAlmostEqual(self.stages.distance_km(), total / 1000, places=9)
        self.assertAlmostEqual(self.stages.average_moving_speed(), total / 35 * 3.6)
        self.assertAlmostEqual(self.stages.average_overall_speed(), total / 59 * 3.6)

    def test_max_speed(self) -> None:
        # The first stage contains point 0, which has no speed, so it has no maximum.
        fastest = max(self.enriched.points[10:], key=lambda p: p.speed_kmh)
        self.assertAlmostEqual(self.stages.max_speed().speed_kmh, fastest.speed_kmh)

    def test_sequence_behaviour(self) -> None:
        self.assertEqual(len(self.stages), 5)
        self.assertIs(self.stages[0], list(self.stages)[0])
        self.assertEqual(self.stages.first_point().index, 0)
        self.assertEqual(self.stages.last_point().index, 59)

    def test_empty_list(self) -> None:
        empty = StageList()
        self.assertEqual(len(empty), 0)
        self.assertIsNone(empty.first_point())
        self.assertIsNone(empty.duration())
        self.assertIsNone(empty.average_overall_speed())
        self.assertIsNone(empty.max_speed())
        self.assertEqual(empty.distance_metres(), 0)
        self.assertEqual(empty.highlighted_trackpoints(), set())


class TestParameters(unittest.TestCase):
    def test_from_config(self) -> None:
        params = StageDetectionParameters.from_config(
            {"stages": {"stopped_speed_kmh": 3, "min_metres_to_resume": 50, "min_control_minutes": 1.5}}
        )
        self.assertEqual(params.stopped_speed_kmh, 3.0)
        self.assertEqual(params.min_metres_to_resume, 50.0)
        self.assertEqual(params.min_duration_seconds, 90.0)

    def test_defaults(self) -> None:
        params = StageDetectionParameters.from_config({})
        self.assertEqual(params, StageDetectionParameters())
        self.assertEqual(params.min_duration_seconds, 120.0)


if __name__ == "__main__":
    unittest.main()
