"""In-memory track model shared by the readers, the writer and the analysis code."""

import copy
import enum
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Optional

from ridebase.errors import (
    InvalidDegreesError,
    InvalidDGPSStationIdError,
    InvalidFixTypeError,
    InvalidLatitudeError,
    InvalidLongitudeError,
    MultipleTracksFoundError,
)

GPX_NAMESPACE = "http://www.topografix.com/GPX/1/1"
GARMIN_TPX_NAMESPACE = "http://www.garmin.com/xmlschemas/TrackPointExtension/v1"
XSI_NAMESPACE = "http://www.w3.org/2001/XMLSchema-instance"
GARMIN_SCHEMA_LOCATION = (
    "http://www.topografix.com/GPX/1/1 http://www.topografix.com/GPX/1/1/gpx.xsd "
    "http://www.garmin.com/xmlschemas/TrackPointExtension/v1 "
    "http://www.garmin.com/xmlschemas/TrackPointExtensionv1.xsd"
)


def check_latitude(value: float) -> float:
    if not -90.0 <= value <= 90.0:
        raise InvalidLatitudeError(value)
    return value


def check_longitude(value: float) -> float:
    if not -180.0 <= value <= 180.0:
        raise InvalidLongitudeError(value)
    return value


def check_degrees(value: float) -> float:
    if not 0.0 <= value < 360.0:
        raise InvalidDegreesError(value)
    return value


def check_dgps_station_id(value: int) -> int:
    if not 0 <= value <= 1023:
        raise InvalidDGPSStationIdError(value)
    return value


class FixType(enum.Enum):
    NONE = "none"
    TWO_D = "2d"
    THREE_D = "3d"
    DGPS = "dgps"
    PPS = "pps"

    @classmethod
    def parse(cls, text: str) -> "FixType":
        try:
            return cls(text)
        except ValueError:
            raise InvalidFixTypeError(text) from None


@dataclass
class XmlDeclaration:
    version: str = "1.0"
    encoding: Optional[str] = "UTF-8"
    standalone: Optional[str] = None


@dataclass
class Extensions:
    """Inner XML of an <extensions> element, kept as text and not interpreted."""
    raw_xml: str = ""


@dataclass
class DeviceTelemetry:
    """Values from the Garmin TrackPointExtension schema."""
    air_temp: Optional[float] = None
    water_temp: Optional[float] = None
    depth: Optional[float] = None
    heart_rate: Optional[int] = None
    cadence: Optional[int] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


@dataclass
class Email:
    id: str = ""
    domain: str = ""


@dataclass
class Link:
    href: str = ""
    text: Optional[str] = None
    type: Optional[str] = None


@dataclass
class Person:
    name: Optional[str] = None
    email: Optional[Email] = None
    link: Optional[Link] = None


@dataclass
class Copyright:
    author: str = ""
    year: Optional[int] = None
    license: Optional[str] = None


@dataclass
class Bounds:
    min_lat: float = 0.0
    min_lon: float = 0.0
    max_lat: float = 0.0
    max_lon: float = 0.0


@dataclass
class Metadata:
    name: Optional[str] = None
    description: Optional[str] = None
    author: Optional[Person] = None
    copyright: Optional[Copyright] = None
    links: list[Link] = field(default_factory=list)
    time: Optional[datetime] = None
    keywords: Optional[str] = None
    bounds: Optional[Bounds] = None
    extensions: Optional[Extensions] = None


@dataclass
class TrackPoint:
    """A single GPS fix. Also used for waypoints and route points.

    Latitude and longitude are range checked on construction; everything
    else is optional because devices omit fields inconsistently.
    """
    lat: float
    lon: float
    ele: Optional[float] = None
    time: Optional[datetime] = None
    magvar: Optional[float] = None
    geoid_height: Optional[float] = None
    name: Optional[str] = None
    comment: Optional[str] = None
    description: Optional[str] = None
    source: Optional[str] = None
    links: list[Link] = field(default_factory=list)
    symbol: Optional[str] = None
    type: Optional[str] = None
    fix: Optional[FixType] = None
    num_satellites: Optional[int] = None
    hdop: Optional[float] = None
    vdop: Optional[float] = None
    pdop: Optional[float] = None
    age_of_dgps_data: Optional[float] = None
    dgps_id: Optional[int] = None
    extensions: Optional[Extensions] = None
    telemetry: Optional[DeviceTelemetry] = None

    def __post_init__(self):
        check_latitude(self.lat)
        check_longitude(self.lon)
        if self.magvar is not None:
            check_degrees(self.magvar)
        if self.dgps_id is not None:
            check_dgps_station_id(self.dgps_id)

    @property
    def heart_rate(self) -> Optional[int]:
        return self.telemetry.heart_rate if self.telemetry else None

    @property
    def air_temp(self) -> Optional[float]:
        return self.telemetry.air_temp if self.telemetry else None

    @property
    def cadence(self) -> Optional[int]:
        return self.telemetry.cadence if self.telemetry else None


@dataclass
class EnrichedTrackPoint(TrackPoint):
    """A TrackPoint plus the derived values computed by the enricher.

    Delta values and speed are None for point 0, which has no predecessor.
    Running totals start at zero on point 0.
    """
    index: int = 0
    delta_metres: Optional[float] = None
    running_metres: float = 0.0
    delta_time: Optional[timedelta] = None
    running_delta_time: Optional[timedelta] = None
    speed_kmh: Optional[float] = None
    ele_delta_metres: Optional[float] = None
    running_ascent_metres: float = 0.0
    running_descent_metres: float = 0.0

    @classmethod
    def from_trackpoint(cls, point: TrackPoint, index: int) -> "EnrichedTrackPoint":
        values = {f.name: getattr(point, f.name) for f in fields(TrackPoint)}
        return cls(index=index, **values)

    def start_time(self) -> Optional[datetime]:
        """When the interval that produced this fix began.

        Devices write fixes sparsely while stopped, so a single fix can close
        a gap of many minutes; its 'time' is the end of that gap.
        """
        if self.time is None:
            return None
        if self.delta_time is None:
            return self.time
        return self.time - self.delta_time

    def copy(self) -> "EnrichedTrackPoint":
        return copy.copy(self)


@dataclass
class TrackSegment:
    points: list[TrackPoint] = field(default_factory=list)
    extensions: Optional[Extensions] = None


@dataclass
class Track:
    name: Optional[str] = None
    comment: Optional[str] = None
    description: Optional[str] = None
    source: Optional[str] = None
    links: list[Link] = field(default_factory=list)
    number: Optional[int] = None
    type: Optional[str] = None
    extensions: Optional[Extensions] = None
    segments: list[TrackSegment] = field(default_factory=list)

    def num_points(self) -> int:
        return sum(len(s.points) for s in self.segments)


@dataclass
class Route:
    name: Optional[str] = None
    comment: Optional[str] = None
    description: Optional[str] = None
    source: Optional[str] = None
    links: list[Link] = field(default_factory=list)
    number: Optional[int] = None
    type: Optional[str] = None
    extensions: Optional[Extensions] = None
    points: list[TrackPoint] = field(default_factory=list)


@dataclass
class Gpx:
    declaration: XmlDeclaration = field(default_factory=XmlDeclaration)
    creator: str = ""
    version: str = "1.1"
    # Root attributes other than creator/version, keyed by prefixed name.
    attributes: dict[str, str] = field(default_factory=dict)
    # Namespace declarations on the root; the None key is the default namespace.
    namespaces: dict[Optional[str], str] = field(default_factory=dict)
    metadata: Metadata = field(default_factory=Metadata)
    waypoints: list[TrackPoint] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)
    tracks: list[Track] = field(default_factory=list)
    extensions: Optional[Extensions] = None
    filename: Optional[str] = field(default=None, compare=False)

    def num_points(self) -> int:
        return sum(t.num_points() for t in self.tracks)

    def is_single_track(self) -> bool:
        return len(self.tracks) == 1 and len(self.tracks[0].segments) == 1

    def set_default_garmin_attributes(self) -> None:
        self.version = "1.1"
        self.namespaces = {
            None: GPX_NAMESPACE,
            "gpxtpx": GARMIN_TPX_NAMESPACE,
            "xsi": XSI_NAMESPACE,
        }
        self.attributes = {"xsi:schemaLocation": GARMIN_SCHEMA_LOCATION}

    def into_single_track(self) -> "Gpx":
        """Merge all tracks and segments into one track with one segment.

        Descriptive fields come from the first track. Points keep their
        document order.
        """
        if self.is_single_track():
            return self

        merged = Track()
        if self.tracks:
            first = self.tracks[0]
            merged = Track(
                name=first.name,
                comment=first.comment,
                description=first.description,
                source=first.source,
                links=list(first.links),
                number=first.number,
                type=first.type,
                extensions=first.extensions,
            )

        segment = TrackSegment()
        for track in self.tracks:
            for seg in track.segments:
                segment.points.extend(seg.points)
        merged.segments = [segment]
        self.tracks = [merged]
        return self

    def to_enriched_gpx(self) -> "EnrichedGpx":
        """Build the enriched single-track view and compute derived values."""
        from ridebase.analysis.enricher import enrich_trackpoints

        if not self.is_single_track():
            raise MultipleTracksFoundError()

        track = self.tracks[0]
        points = [
            EnrichedTrackPoint.from_trackpoint(p, idx)
            for idx, p in enumerate(track.segments[0].points)
        ]
        enriched = EnrichedGpx(
            filename=self.filename,
            track_name=track.name,
            track_type=track.type,
            points=points,
        )
        enrich_trackpoints(enriched)
        return enriched


@dataclass
class EnrichedGpx:
    filename: Optional[str] = None
    track_name: Optional[str] = None
    track_type: Optional[str] = None
    points: list[EnrichedTrackPoint] = field(default_factory=list)

    def last_valid_idx(self) -> int:
        return len(self.points) - 1
