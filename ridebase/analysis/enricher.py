"""Compute per-point derived values (distance, time, speed, ascent) in one pass."""

import logging
from datetime import timedelta

from ridebase.analysis.geo import distance_between_points_metres, speed_kmh_from_duration
from ridebase.models import EnrichedGpx

logger = logging.getLogger(__name__)


def enrich_trackpoints(gpx: EnrichedGpx) -> None:
    """Fill in the derived fields of every point, in place.

    Point 0 has no predecessor so its deltas and speed stay None; running
    totals start at zero there. A zero or negative time step (duplicate or
    out of order timestamps) gives a speed of 0.0.
    """
    points = gpx.points
    if not points:
        return

    first = points[0]
    first.delta_metres = None
    first.delta_time = None
    first.speed_kmh = None
    first.ele_delta_metres = None
    first.running_metres = 0.0
    first.running_ascent_metres = 0.0
    first.running_descent_metres = 0.0
    first.running_delta_time = timedelta(0) if first.time is not None else None

    clamped = 0
    for prev, p in zip(points, points[1:]):
        p.delta_metres = distance_between_points_metres(prev, p)
        p.running_metres = prev.running_metres + p.delta_metres

        if p.time is not None and prev.time is not None:
            p.delta_time = p.time - prev.time
            if first.time is not None:
                p.running_delta_time = p.time - first.time
            if p.delta_time > timedelta(0):
                p.speed_kmh = speed_kmh_from_duration(p.delta_metres, p.delta_time)
            else:
                p.speed_kmh = 0.0
                clamped += 1
                logger.debug("Point %d has a time step of %s; speed set to 0", p.index, p.delta_time)
        else:
            p.delta_time = None
            p.speed_kmh = None

        p.running_ascent_metres = prev.running_ascent_metres
        p.running_descent_metres = prev.running_descent_metres
        if p.ele is not None and prev.ele is not None:
            p.ele_delta_metres = p.ele - prev.ele
            if p.ele_delta_metres > 0.0:
                p.running_ascent_metres += p.ele_delta_metres
            else:
                p.running_descent_metres += -p.ele_delta_metres
        else:
            p.ele_delta_metres = None

    if clamped:
        logger.warning(
            "%s: %d point(s) had a duplicate or out of order timestamp; their speed was set to 0",
            gpx.filename or "track", clamped,
        )
    logger.debug("Enriched %d points, %.1f m total", len(points), points[-1].running_metres)
