import unittest
from datetime import datetime, timedelta, timezone

from ridebase.errors import MultipleTracksFoundError
from ridebase.models import Gpx, Track, TrackPoint, TrackSegment

T0 = datetime(2024, 5, 11, 6, 0, 0, tzinfo=timezone.utc)
# Length of a degree of latitude around 51N.
METRES_PER_DEGREE_LAT = 111_250.0


def make_gpx(rows) -> Gpx:
    """rows: (seconds, metres north of the start, elevation or None)."""
    points = []
    for seconds, metres, ele in rows:
        time = T0 + timedelta(seconds=seconds) if seconds is not None else None
        points.append(TrackPoint(lat=51.0 + metres / METRES_PER_DEGREE_LAT, lon=-1.0, ele=ele, time=time))
    return Gpx(creator="tests", tracks=[Track(segments=[TrackSegment(points=points)])])


class TestEnricher(unittest.TestCase):
    def test_first_point(self) -> None:
        enriched = make_gpx([(0, 0, 10.0), (10, 50, 12.0)]).to_enriched_gpx()
        first = enriched.points[0]
        self.assertEqual(first.index, 0)
        self.assertIsNone(first.delta_metres)
        self.assertIsNone(first.delta_time)
        self.assertIsNone(first.speed_kmh)
        self.assertIsNone(first.ele_delta_metres)
        self.assertEqual(first.running_metres, 0.0)
        self.assertEqual(first.running_delta_time, timedelta(0))
        self.assertEqual(first.start_time(), T0)

    def test_deltas_and_speed(self) -> None:
        enriched = make_gpx([(0, 0, 10.0), (10, 50, 12.0), (20, 100, 11.0)]).to_enriched_gpx()
        p1, p2 = enriched.points[1], enriched.points[2]
        self.assertAlmostEqual(p1.delta_metres, 50.0, delta=0.1)
        self.assertEqual(p1.delta_time, timedelta(seconds=10))
        self.assertAlmostEqual(p1.speed_kmh, 18.0, delta=0.05)
        self.assertEqual(p1.ele_delta_metres, 2.0)
        self.assertAlmostEqual(p2.running_metres, 100.0, delta=0.2)
        self.assertEqual(p2.running_delta_time, timedelta(seconds=20))
        self.assertEqual(p2.running_ascent_metres, 2.0)
        self.assertEqual(p2.running_descent_metres, 1.0)
        self.assertEqual(p2.start_time(), T0 + timedelta(seconds=10))
        self.assertEqual([p.index for p in enriched.points], [0, 1, 2])

    def test_running_totals_are_monotonic(self) -> None:
        rows = [(i * 5, i * 20 + (7 if i % 3 == 0 else 0), 100 + (i % 4) * 3.5) for i in range(40)]
        points = make_gpx(rows).to_enriched_gpx().points
        for prev, p in zip(points, points[1:]):
            self.assertGreaterEqual(p.running_metres, prev.running_metres)
            self.assertGreaterEqual(p.running_ascent_metres, prev.running_ascent_metres)
            self.assertGreaterEqual(p.running_descent_metres, prev.running_descent_metres)
            self.assertGreaterEqual(p.delta_metres, 0.0)

    def test_missing_elevation_is_skipped(self) -> None:
        points = make_gpx([(0, 0, 10.0), (1, 5, None), (2, 10, 15.0), (3, 15, 20.0)]).to_enriched_gpx().points
        self.assertIsNone(points[1].ele_delta_metres)
        self.assertIsNone(points[2].ele_delta_metres)
        self.assertEqual(points[2].running_ascent_metres, 0.0)
        self.assertEqual(points[3].running_ascent_metres, 5.0)

    def test_duplicate_timestamp_gives_zero_speed(self) -> None:
        gpx = make_gpx([(0, 0, None), (5, 20, None), (5, 40, None), (10, 60, None)])
        with self.assertLogs("ridebase.analysis.enricher", level="WARNING"):
            points = gpx.to_enriched_gpx().points
        self.assertEqual(points[2].delta_time, timedelta(0))
        self.assertEqual(points[2].speed_kmh, 0.0)
        self.assertGreater(points[3].speed_kmh, 0.0)

    def test_missing_time_leaves_speed_unset(self) -> None:
        points = make_gpx([(0, 0, None), (None, 20, None), (10, 40, None)]).to_enriched_gpx().points
        self.assertIsNone(points[1].delta_time)
        self.assertIsNone(points[1].speed_kmh)
        self.assertIsNone(points[2].speed_kmh)
        self.assertAlmostEqual(points[2].running_metres, 40.0, delta=0.1)

    def test_requires_single_track(self) -> None:
        gpx = make_gpx([(0, 0, None)])
        gpx.tracks.append(Track(segments=[TrackSegment(points=[TrackPoint(lat=0.0, lon=0.0)])]))
        with self.assertRaises(MultipleTracksFoundError):
            gpx.to_enriched_gpx()
        enriched = gpx.into_single_track().to_enriched_gpx()
        self.assertEqual(len(enriched.points), 2)
        self.assertEqual(enriched.last_valid_idx(), 1)


if __name__ == "__main__":
    unittest.main()
