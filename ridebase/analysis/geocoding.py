"""Reverse geocoding against a local GeoNames places file.

The places file (e.g. cities500.txt from download.geonames.org) is loaded on
a background thread when the service is constructed, so it is usually ready
by the time the first stage needs a name. Lookups never raise: if the data
could not be loaded they return None.
"""

import csv
import logging
import math
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from ridebase.analysis.geo import great_circle_km
from ridebase.config import config_section

logger = logging.getLogger(__name__)

KM_PER_DEGREE = 111.2

# Column positions in the GeoNames main table.
NAME_COL = 1
LAT_COL = 4
LON_COL = 5


class Geocoder(Protocol):
    def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        ...


class NullGeocoder:
    """Used when geocoding is switched off."""

    def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        return None


@dataclass
class GeocodingOptions:
    places_file: Optional[Path] = None
    max_distance_km: float = 25.0

    @classmethod
    def from_config(cls, config: dict | None) -> "GeocodingOptions":
        section = config_section(config, "geocoding")
        places = section.get("places_file")
        return cls(
            places_file=Path(places) if places else None,
            max_distance_km=float(section.get("max_distance_km", cls.max_distance_km)),
        )


@dataclass
class Place:
    name: str
    lat: float
    lon: float


class PlaceIndex:
    """Places bucketed into one-degree cells for nearest-neighbour search."""

    def __init__(self, places):
        self.cells: dict[tuple[int, int], list[Place]] = {}
        self.count = 0
        for place in places:
            self.cells.setdefault(_cell(place.lat, place.lon), []).append(place)
            self.count += 1

    def nearest(self, lat: float, lon: float, max_distance_km: float) -> Optional[Place]:
        lat_ring = math.ceil(max_distance_km / KM_PER_DEGREE)
        shrink = max(math.cos(math.radians(min(abs(lat) + lat_ring, 89.0))), 0.01)
        lon_ring = min(math.ceil(lat_ring / shrink), 180)

        cell_lat, cell_lon = _cell(lat, lon)
        best, best_km = None, max_distance_km
        for dlat in range(-lat_ring, lat_ring + 1):
            for dlon in range(-lon_ring, lon_ring + 1):
                wrapped = (cell_lon + dlon + 180) % 360 - 180
                for place in self.cells.get((cell_lat + dlat, wrapped), ()):
                    km = great_circle_km(lat, lon, place.lat, place.lon)
                    if km <= best_km:
                        best, best_km = place, km
        return best


def _cell(lat: float, lon: float) -> tuple[int, int]:
    return math.floor(lat), math.floor(lon)


def load_places(path: Path) -> PlaceIndex:
    """Read a GeoNames tab-separated file into a PlaceIndex."""
    def rows():
        with open(path, newline="", encoding="utf-8") as f:
            for row in csv.reader(f, delimiter="\t", quoting=csv.QUOTE_NONE):
                if len(row) <= LON_COL:
                    continue
                try:
                    yield Place(name=row[NAME_COL], lat=float(row[LAT_COL]), lon=float(row[LON_COL]))
                except ValueError:
                    logger.debug("Skipping malformed places row %r", row[:LON_COL + 1])

    index = PlaceIndex(rows())
    logger.info("Loaded %d places from %s", index.count, path)
    return index


class GeocodingService:
    """Constructed once by the application and shared by every worker."""

    def __init__(self, options: GeocodingOptions):
        self.options = options
        self._places: Optional[Future] = None
        self._failed_logged = False
        if options.places_file is None:
            logger.info("No places file configured, reverse geocoding is disabled")
            return
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="geocoding")
        self._places = self._executor.submit(load_places, options.places_file)
        self._executor.shutdown(wait=False)

    def _index(self) -> Optional[PlaceIndex]:
        if self._places is None:
            return None
        try:
            return self._places.result()
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            if not self._failed_logged:
                logger.error("Could not load places file %s: %s", self.options.places_file, e)
                self._failed_logged = True
            return None

    def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        index = self._index()
        if index is None:
            return None
        place = index.nearest(lat, lon, self.options.max_distance_km)
        return place.name if place is not None else None
