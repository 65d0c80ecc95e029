"""Parse .fit activity files into the track model using fitparse."""

import io
import logging
from datetime import datetime, timezone

from fitparse import FitFile
from fitparse.utils import FitEOFError, FitParseError

from ridebase.errors import (
    FieldNotFoundError,
    InvalidFileTypeError,
    MalformedFitError,
    MandatoryElementNotFoundError,
    NumericConversionError,
    UnexpectedEofError,
    ValidationError,
)
from ridebase.models import (
    DeviceTelemetry,
    Gpx,
    Track,
    TrackPoint,
    TrackSegment,
)

logger = logging.getLogger(__name__)

# Positions are stored as 32-bit "semicircles": 2**31 units per 180 degrees.
SEMICIRCLES_PER_DEGREE = 11930465.0
# Largest magnitude below which every integer has an exact float.
MAX_EXACT_FLOAT_INT = 2 ** 53


def read_fit(data: bytes) -> Gpx:
    """Decode a complete FIT byte stream and build a Gpx from its messages."""
    try:
        fit = FitFile(io.BytesIO(data))
        messages = list(fit.get_messages())
    except FitEOFError as e:
        logger.debug("FIT decoder ran out of data: %s", e)
        raise UnexpectedEofError() from e
    except FitParseError as e:
        raise MalformedFitError(str(e)) from e

    return build_gpx_from_messages(messages)


def build_gpx_from_messages(messages) -> Gpx:
    """Build a Gpx from decoded FIT messages.

    Each message needs a .name and a .get_value(field) method, which is the
    fitparse DataMessage interface.
    """
    gpx = Gpx(creator="ridebase")
    gpx.set_default_garmin_attributes()
    gpx.metadata.description = "Parsed from a FIT file"

    seen_file_id = False
    num_activities = 0
    dropped = 0
    warned_placeholder = False

    for msg in messages:
        if msg.name == "file_id":
            if seen_file_id:
                logger.warning("Ignoring duplicate file_id message")
                continue
            seen_file_id = True
            _apply_file_id(gpx, msg)

        elif msg.name == "activity":
            num_activities += 1

        elif msg.name == "session":
            _open_track(gpx, msg)

        elif msg.name == "record":
            try:
                point = _extract_record(msg)
            except (ValidationError, NumericConversionError) as e:
                logger.debug("Dropping malformed record: %s", e)
                point = None
            if point is None:
                dropped += 1
                continue
            if not gpx.tracks:
                if not warned_placeholder:
                    logger.warning("Record message found before any session; creating a placeholder track")
                    warned_placeholder = True
                _open_track(gpx, None)
            gpx.tracks[-1].segments[-1].points.append(point)

    if not seen_file_id:
        raise MandatoryElementNotFoundError("file_id")
    if num_activities != 1:
        logger.warning("Expected exactly 1 activity message, found %d", num_activities)
    if dropped:
        logger.debug("Dropped %d record message(s) that were incomplete or malformed", dropped)

    logger.debug("Built %d track(s) with %d point(s) from FIT messages", len(gpx.tracks), gpx.num_points())
    return gpx


def field_as_float(value) -> float:
    """Widen a decoded numeric field to float.

    FIT fields arrive as a mix of integer widths and floats. Integers too large
    to be represented exactly are rejected instead of silently rounded.
    """
    if isinstance(value, float):
        return value
    if isinstance(value, int):
        if abs(value) > MAX_EXACT_FLOAT_INT and int(float(value)) != value:
            raise NumericConversionError(f"{value} cannot be represented exactly as a float")
        return float(value)
    raise NumericConversionError(f"{value!r} of type {type(value).__name__} is not numeric")


def _apply_file_id(gpx: Gpx, msg) -> None:
    file_type = msg.get_value("type")
    if file_type is None:
        raise FieldNotFoundError("type")
    if file_type != "activity":
        raise InvalidFileTypeError(file_type)

    time_created = msg.get_value("time_created")
    if time_created is not None:
        gpx.metadata.time = _as_utc(time_created)


def _open_track(gpx: Gpx, session) -> None:
    sport = session.get_value("sport") if session is not None else None
    sub_sport = session.get_value("sub_sport") if session is not None else None

    if sport is not None and sub_sport is not None:
        track_type = f"{sport} - {sub_sport}"
    elif sport is not None:
        track_type = str(sport)
    elif sub_sport is not None:
        track_type = str(sub_sport)
    else:
        track_type = "unknown"

    track = Track(
        name=f"Track {len(gpx.tracks) + 1}",
        type=track_type,
        segments=[TrackSegment()],
    )
    gpx.tracks.append(track)


def _extract_record(msg) -> TrackPoint | None:
    """One GPS fix, or None when the record lacks a position or timestamp."""
    lat_semi = msg.get_value("position_lat")
    lon_semi = msg.get_value("position_long")
    timestamp = msg.get_value("timestamp")
    if lat_semi is None or lon_semi is None or timestamp is None:
        logger.debug("Dropping record without position or timestamp")
        return None

    point = TrackPoint(
        lat=field_as_float(lat_semi) / SEMICIRCLES_PER_DEGREE,
        lon=field_as_float(lon_semi) / SEMICIRCLES_PER_DEGREE,
        time=_as_utc(timestamp),
    )

    altitude = msg.get_value("enhanced_altitude")
    if altitude is None:
        altitude = msg.get_value("altitude")
    if altitude is not None:
        point.ele = field_as_float(altitude)

    telemetry = DeviceTelemetry()
    temperature = msg.get_value("temperature")
    if temperature is not None:
        telemetry.air_temp = field_as_float(temperature)
    heart_rate = msg.get_value("heart_rate")
    if heart_rate is not None:
        telemetry.heart_rate = int(field_as_float(heart_rate))
    if not telemetry.is_empty():
        point.telemetry = telemetry

    return point


def _as_utc(value: datetime) -> datetime:
    """fitparse yields naive datetimes that are already in UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
