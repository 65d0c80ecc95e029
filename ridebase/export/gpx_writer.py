"""Write the track model back out as GPX 1.1.

Every field the reader understands is written, so reading the output gives
back an equal model. Floats use repr() for that reason.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from xml.sax.saxutils import escape, quoteattr

from ridebase.errors import CreateFileError
from ridebase.models import (
    GARMIN_TPX_NAMESPACE,
    Bounds,
    Copyright,
    DeviceTelemetry,
    Extensions,
    Gpx,
    Link,
    Metadata,
    Person,
    Route,
    Track,
    TrackPoint,
    TrackSegment,
)

logger = logging.getLogger(__name__)

INDENT = "  "


def write_gpx(gpx: Gpx) -> str:
    """Serialize a Gpx to a complete XML document, to be encoded as UTF-8."""
    out = [_declaration(gpx)]

    root = [("creator", gpx.creator), ("version", gpx.version)]
    for prefix, uri in sorted(gpx.namespaces.items(), key=lambda kv: kv[0] or ""):
        root.append((f"xmlns:{prefix}" if prefix else "xmlns", uri))
    root.extend(gpx.attributes.items())
    out.append(f"<gpx{_attrs(root)}>")

    if gpx.metadata != Metadata():
        _write_metadata(out, 1, gpx.metadata)
    for wp in gpx.waypoints:
        _write_waypoint(out, 1, "wpt", wp, gpx)
    for route in gpx.routes:
        _write_route(out, 1, route, gpx)
    for track in gpx.tracks:
        _write_track(out, 1, track, gpx)
    _write_extensions(out, 1, gpx.extensions)

    out.append("</gpx>")
    return "\n".join(out) + "\n"


def write_gpx_to_file(path, gpx: Gpx) -> None:
    path = Path(path)
    data = write_gpx(gpx).encode("utf-8")
    try:
        path.write_bytes(data)
    except OSError as e:
        raise CreateFileError(path) from e
    logger.debug("Wrote %d bytes to %s", len(data), path)


def format_time(dt: datetime) -> str:
    """RFC 3339 in UTC with a 'Z' suffix; microseconds only when present."""
    dt = dt.astimezone(timezone.utc)
    if dt.microsecond:
        return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _declaration(gpx: Gpx) -> str:
    decl = gpx.declaration
    parts = [f'version="{decl.version}"']
    if decl.encoding is not None:
        # Output is always UTF-8, whatever the source document used.
        encoding = decl.encoding if _is_utf8(decl.encoding) else "UTF-8"
        parts.append(f'encoding="{encoding}"')
    if decl.standalone is not None:
        parts.append(f'standalone="{decl.standalone}"')
    return f"<?xml {' '.join(parts)}?>"


def _is_utf8(encoding: str) -> bool:
    return encoding.lower().replace("_", "-") in ("utf-8", "utf8")


def _attrs(pairs) -> str:
    return "".join(f" {name}={quoteattr(str(value))}" for name, value in pairs)


def _leaf(out: list[str], depth: int, tag: str, value) -> None:
    """Writes <tag>value</tag>, or nothing when value is None."""
    if value is None:
        return
    if isinstance(value, float):
        text = repr(value)
    elif isinstance(value, datetime):
        text = format_time(value)
    else:
        text = str(value)
    out.append(f"{INDENT * depth}<{tag}>{escape(text)}</{tag}>")


def _write_extensions(out: list[str], depth: int, ext: Extensions | None) -> None:
    if ext is None:
        return
    out.append(f"{INDENT * depth}<extensions>{ext.raw_xml}</extensions>")


def _write_link(out, depth, link: Link) -> None:
    pad = INDENT * depth
    out.append(f"{pad}<link{_attrs([('href', link.href)])}>")
    _leaf(out, depth + 1, "text", link.text)
    _leaf(out, depth + 1, "type", link.type)
    out.append(f"{pad}</link>")


def _write_person(out, depth, tag: str, person: Person) -> None:
    pad = INDENT * depth
    out.append(f"{pad}<{tag}>")
    _leaf(out, depth + 1, "name", person.name)
    if person.email is not None:
        email = _attrs([("id", person.email.id), ("domain", person.email.domain)])
        out.append(f"{INDENT * (depth + 1)}<email{email}/>")
    if person.link is not None:
        _write_link(out, depth + 1, person.link)
    out.append(f"{pad}</{tag}>")


def _write_copyright(out, depth, copyright: Copyright) -> None:
    pad = INDENT * depth
    out.append(f"{pad}<copyright{_attrs([('author', copyright.author)])}>")
    _leaf(out, depth + 1, "year", copyright.year)
    _leaf(out, depth + 1, "license", copyright.license)
    out.append(f"{pad}</copyright>")


def _write_bounds(out, depth, bounds: Bounds) -> None:
    pairs = [
        ("minlat", repr(bounds.min_lat)),
        ("minlon", repr(bounds.min_lon)),
        ("maxlat", repr(bounds.max_lat)),
        ("maxlon", repr(bounds.max_lon)),
    ]
    out.append(f"{INDENT * depth}<bounds{_attrs(pairs)}/>")


def _write_metadata(out, depth, md: Metadata) -> None:
    pad = INDENT * depth
    out.append(f"{pad}<metadata>")
    _leaf(out, depth + 1, "name", md.name)
    _leaf(out, depth + 1, "desc", md.description)
    if md.author is not None:
        _write_person(out, depth + 1, "author", md.author)
    if md.copyright is not None:
        _write_copyright(out, depth + 1, md.copyright)
    for link in md.links:
        _write_link(out, depth + 1, link)
    _leaf(out, depth + 1, "time", md.time)
    _leaf(out, depth + 1, "keywords", md.keywords)
    if md.bounds is not None:
        _write_bounds(out, depth + 1, md.bounds)
    _write_extensions(out, depth + 1, md.extensions)
    out.append(f"{pad}</metadata>")


def _write_waypoint(out, depth, tag: str, wp: TrackPoint, gpx: Gpx) -> None:
    pad = INDENT * depth
    inner = depth + 1
    out.append(f"{pad}<{tag}{_attrs([('lat', repr(wp.lat)), ('lon', repr(wp.lon))])}>")
    _leaf(out, inner, "ele", wp.ele)
    _leaf(out, inner, "time", wp.time)
    _leaf(out, inner, "magvar", wp.magvar)
    _leaf(out, inner, "geoidheight", wp.geoid_height)
    _leaf(out, inner, "name", wp.name)
    _leaf(out, inner, "cmt", wp.comment)
    _leaf(out, inner, "desc", wp.description)
    _leaf(out, inner, "src", wp.source)
    for link in wp.links:
        _write_link(out, inner, link)
    _leaf(out, inner, "sym", wp.symbol)
    _leaf(out, inner, "type", wp.type)
    _leaf(out, inner, "fix", wp.fix.value if wp.fix is not None else None)
    _leaf(out, inner, "sat", wp.num_satellites)
    _leaf(out, inner, "hdop", wp.hdop)
    _leaf(out, inner, "vdop", wp.vdop)
    _leaf(out, inner, "pdop", wp.pdop)
    _leaf(out, inner, "ageofdgpsdata", wp.age_of_dgps_data)
    _leaf(out, inner, "dgpsid", wp.dgps_id)
    if wp.extensions is not None:
        _write_extensions(out, inner, wp.extensions)
    elif wp.telemetry is not None and not wp.telemetry.is_empty():
        _write_telemetry(out, inner, wp.telemetry, gpx)
    out.append(f"{pad}</{tag}>")


def _write_telemetry(out, depth, telemetry: DeviceTelemetry, gpx: Gpx) -> None:
    """Synthesizes a Garmin TrackPointExtension for points that have none."""
    prefix = next(
        (p for p, uri in gpx.namespaces.items() if p and uri == GARMIN_TPX_NAMESPACE), None
    )
    declare = ""
    if prefix is None:
        prefix = "gpxtpx"
        declare = _attrs([("xmlns:gpxtpx", GARMIN_TPX_NAMESPACE)])

    values = [
        ("atemp", telemetry.air_temp),
        ("wtemp", telemetry.water_temp),
        ("depth", telemetry.depth),
        ("hr", telemetry.heart_rate),
        ("cad", telemetry.cadence),
    ]
    children = "".join(
        f"<{prefix}:{tag}>{repr(v) if isinstance(v, float) else v}</{prefix}:{tag}>"
        for tag, v in values
        if v is not None
    )
    out.append(
        f"{INDENT * depth}<extensions><{prefix}:TrackPointExtension{declare}>"
        f"{children}</{prefix}:TrackPointExtension></extensions>"
    )


def _write_descriptive(out, depth, item: Route | Track) -> None:
    _leaf(out, depth, "name", item.name)
    _leaf(out, depth, "cmt", item.comment)
    _leaf(out, depth, "desc", item.description)
    _leaf(out, depth, "src", item.source)
    for link in item.links:
        _write_link(out, depth, link)
    _leaf(out, depth, "number", item.number)
    _leaf(out, depth, "type", item.type)
    _write_extensions(out, depth, item.extensions)


def _write_route(out, depth, route: Route, gpx: Gpx) -> None:
    pad = INDENT * depth
    out.append(f"{pad}<rte>")
    _write_descriptive(out, depth + 1, route)
    for point in route.points:
        _write_waypoint(out, depth + 1, "rtept", point, gpx)
    out.append(f"{pad}</rte>")


def _write_track(out, depth, track: Track, gpx: Gpx) -> None:
    pad = INDENT * depth
    out.append(f"{pad}<trk>")
    _write_descriptive(out, depth + 1, track)
    for segment in track.segments:
        _write_segment(out, depth + 1, segment, gpx)
    out.append(f"{pad}</trk>")


def _write_segment(out, depth, segment: TrackSegment, gpx: Gpx) -> None:
    pad = INDENT * depth
    out.append(f"{pad}<trkseg>")
    for point in segment.points:
        _write_waypoint(out, depth + 1, "trkpt", point, gpx)
    _write_extensions(out, depth + 1, segment.extensions)
    out.append(f"{pad}</trkseg>")
