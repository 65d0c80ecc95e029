"""Read .gpx and .fit files into the track model."""

import logging
from pathlib import Path

from ridebase.errors import ReadFileError
from ridebase.models import Gpx

logger = logging.getLogger(__name__)


def read_input_file(path) -> Gpx:
    """Read a file, choosing the reader from its extension (.fit or GPX)."""
    path = Path(path)
    if path.suffix.lower() == ".fit":
        return read_fit_from_file(path)
    return read_gpx_from_file(path)


def read_gpx_from_file(path) -> Gpx:
    path = Path(path)
    logger.info("Reading GPX file %s", path)
    gpx = read_gpx_from_bytes(_read_bytes(path))
    gpx.filename = str(path)
    return gpx


def read_fit_from_file(path) -> Gpx:
    path = Path(path)
    logger.info("Reading FIT file %s", path)
    gpx = read_fit_from_bytes(_read_bytes(path))
    gpx.filename = str(path)
    return gpx


def read_gpx_from_bytes(data: bytes) -> Gpx:
    from ridebase.ingest.gpx_reader import read_gpx

    return read_gpx(data)


def read_fit_from_bytes(data: bytes) -> Gpx:
    from ridebase.ingest.fit_parser import read_fit

    return read_fit(data)


def _read_bytes(path: Path) -> bytes:
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ReadFileError(path) from e
    logger.debug("Read %d bytes from %s", len(data), path)
    return data
