"""Parse GPX 1.1 documents into the track model.

Each element has a parse routine and a table mapping the child tags it
accepts to handlers. A child tag that is not in the table is an error, as is
an attribute that the routine did not consume. The XSD is at
https://www.topografix.com/GPX/1/1/gpx.xsd
"""

import codecs
import logging
import re
from typing import Callable

from lxml import etree

from ridebase.errors import (
    MandatoryAttributeNotFoundError,
    MandatoryElementNotFoundError,
    MissingTextError,
    UnexpectedEndElementError,
    UnexpectedStartElementError,
    XmlSyntaxError,
)
from ridebase.ingest.xml_events import (
    START,
    Attributes,
    XmlEventCursor,
    convert_text,
    local_name,
    read_inner_as,
    read_inner_as_string,
    read_inner_as_time,
    read_inner_xml,
)
from ridebase.models import (
    Bounds,
    Copyright,
    DeviceTelemetry,
    Email,
    Extensions,
    FixType,
    Gpx,
    Link,
    Metadata,
    Person,
    Route,
    Track,
    TrackPoint,
    TrackSegment,
    XmlDeclaration,
    check_degrees,
    check_dgps_station_id,
    check_latitude,
    check_longitude,
)

logger = logging.getLogger(__name__)

# A handler consumes a child element (including its end tag) and stores the
# result on the object being built.
Handler = Callable[[XmlEventCursor, object, object], None]

_DECLARATION_RE = re.compile(r"^\s*<\?xml\s+(.*?)\?>", re.DOTALL)
_PSEUDO_ATTR_RE = re.compile(r"([\w:]+)\s*=\s*([\"'])(.*?)\2")


def read_gpx(data: bytes) -> Gpx:
    """Parses a complete GPX document."""
    cursor = XmlEventCursor(data)
    declaration = parse_declaration(data)

    _, element = cursor.next_event()
    if local_name(element) != "gpx":
        raise UnexpectedStartElementError(local_name(element))
    gpx = parse_gpx(cursor, element)
    cursor.finish()

    gpx.declaration = declaration
    logger.debug("Parsed GPX with %d track(s), %d point(s)", len(gpx.tracks), gpx.num_points())
    return gpx


def parse_declaration(data: bytes) -> XmlDeclaration:
    """Parses the prolog, i.e. <?xml version="1.0" encoding="UTF-8"?>"""
    m = _DECLARATION_RE.match(_prolog_text(data))
    if not m:
        raise MandatoryElementNotFoundError("xml")

    values = {name: value for name, _, value in _PSEUDO_ATTR_RE.findall(m.group(1))}
    if "version" not in values:
        raise MandatoryAttributeNotFoundError("version")
    return XmlDeclaration(
        version=values["version"],
        encoding=values.get("encoding"),
        standalone=values.get("standalone"),
    )


def _prolog_text(data: bytes) -> str:
    """The start of the document as text, sniffing UTF-16 from its BOM or first bytes."""
    head = data[:512]
    if head.startswith((codecs.BOM_UTF16_LE, b"<\x00?\x00")):
        codec = "utf-16-le"
    elif head.startswith((codecs.BOM_UTF16_BE, b"\x00<\x00?")):
        codec = "utf-16-be"
    else:
        codec = "utf-8"
    return head.decode(codec, errors="replace").lstrip("\ufeff")


def parse_children(cursor: XmlEventCursor, element, handlers: dict[str, Handler], target) -> None:
    """Dispatches child elements until the end tag of 'element' is seen."""
    while True:
        kind, child = cursor.next_event()
        if kind == START:
            handler = handlers.get(local_name(child))
            if handler is None:
                raise UnexpectedStartElementError(local_name(child))
            handler(cursor, child, target)
            cursor.release(child)
        elif child is element:
            return
        else:
            raise UnexpectedEndElementError(local_name(child))


def expect_end(cursor: XmlEventCursor, element) -> None:
    """For elements that carry only attributes."""
    parse_children(cursor, element, {}, None)


def parse_gpx(cursor: XmlEventCursor, element) -> Gpx:
    attributes = Attributes(element)
    gpx = Gpx(creator=attributes.take("creator"), version=attributes.take("version"))
    # Keep everything else (schemaLocation etc.) so it can be written back out.
    gpx.attributes = attributes.take_rest()
    gpx.namespaces = dict(element.nsmap)
    parse_children(cursor, element, GPX_CHILDREN, gpx)
    return gpx


def parse_metadata(cursor: XmlEventCursor, element) -> Metadata:
    Attributes.check_is_empty(element)
    md = Metadata()
    parse_children(cursor, element, METADATA_CHILDREN, md)
    return md


def parse_person(cursor: XmlEventCursor, element) -> Person:
    Attributes.check_is_empty(element)
    person = Person()
    parse_children(cursor, element, PERSON_CHILDREN, person)
    return person


def parse_email(cursor: XmlEventCursor, element) -> Email:
    """Parses an element of the form: <email id="phil" domain="gmail.com"/>"""
    attributes = Attributes(element)
    email = Email(id=attributes.take("id"), domain=attributes.take("domain"))
    attributes.check_is_empty_now()
    expect_end(cursor, element)
    return email


def parse_link(cursor: XmlEventCursor, element) -> Link:
    attributes = Attributes(element)
    link = Link(href=attributes.take("href"))
    attributes.check_is_empty_now()
    parse_children(cursor, element, LINK_CHILDREN, link)
    return link


def parse_copyright(cursor: XmlEventCursor, element) -> Copyright:
    attributes = Attributes(element)
    copyright = Copyright(author=attributes.take("author"))
    attributes.check_is_empty_now()
    parse_children(cursor, element, COPYRIGHT_CHILDREN, copyright)
    return copyright


def parse_bounds(cursor: XmlEventCursor, element) -> Bounds:
    attributes = Attributes(element)
    bounds = Bounds(
        min_lat=check_latitude(attributes.take("minlat", float, "float")),
        min_lon=check_longitude(attributes.take("minlon", float, "float")),
        max_lat=check_latitude(attributes.take("maxlat", float, "float")),
        max_lon=check_longitude(attributes.take("maxlon", float, "float")),
    )
    attributes.check_is_empty_now()
    expect_end(cursor, element)
    return bounds


def parse_extensions(cursor: XmlEventCursor, element) -> Extensions:
    Attributes.check_is_empty(element)
    return Extensions(raw_xml=read_inner_xml(cursor, element))


def parse_route(cursor: XmlEventCursor, element) -> Route:
    Attributes.check_is_empty(element)
    route = Route()
    parse_children(cursor, element, ROUTE_CHILDREN, route)
    return route


def parse_track(cursor: XmlEventCursor, element) -> Track:
    Attributes.check_is_empty(element)
    track = Track()
    parse_children(cursor, element, TRACK_CHILDREN, track)
    return track


def parse_track_segment(cursor: XmlEventCursor, element) -> TrackSegment:
    Attributes.check_is_empty(element)
    segment = TrackSegment()
    parse_children(cursor, element, TRACK_SEGMENT_CHILDREN, segment)
    return segment


def parse_waypoint(cursor: XmlEventCursor, element) -> TrackPoint:
    """Parses a waypoint. Waypoints appear under 'gpx' (wpt), in a route
    (rtept) or in a track segment (trkpt); they all share this format.
    """
    attributes = Attributes(element)
    lat = attributes.take("lat", float, "float")
    lon = attributes.take("lon", float, "float")
    attributes.check_is_empty_now()

    wp = TrackPoint(lat=lat, lon=lon)
    parse_children(cursor, element, WAYPOINT_CHILDREN, wp)
    return wp


def parse_device_telemetry(raw_xml: str, nsmap: dict) -> DeviceTelemetry | None:
    """Re-parses captured extension text looking for a Garmin TrackPointExtension.

    Returns None when the extension text does not contain one.
    """
    root = etree.Element("extensions", nsmap={k: v for k, v in nsmap.items() if k})
    wrapper = etree.tostring(root, encoding="unicode").replace("/>", f">{raw_xml}</extensions>", 1)
    parser = etree.XMLParser(remove_comments=True, remove_pis=True, resolve_entities=False)
    try:
        tree = etree.fromstring(wrapper.encode("utf-8"), parser)
    except etree.XMLSyntaxError as e:
        raise XmlSyntaxError(str(e)) from e

    container = next(
        (el for el in tree.iter() if local_name(el) == "TrackPointExtension"), None
    )
    if container is None:
        return None

    telemetry = DeviceTelemetry()
    for child in container:
        name = local_name(child)
        if name not in TELEMETRY_FIELDS:
            raise UnexpectedStartElementError(name)
        if not child.text:
            raise MissingTextError(name)
        attr, convert, type_name = TELEMETRY_FIELDS[name]
        setattr(telemetry, attr, convert_text(child.text, convert, type_name))
    return telemetry


def _text(attr: str, convert=str, type_name: str = "str", check=None) -> Handler:
    def handler(cursor, element, target):
        value = read_inner_as(cursor, element, convert, type_name)
        if check is not None:
            check(value)
        setattr(target, attr, value)
    return handler


def _time(attr: str) -> Handler:
    def handler(cursor, element, target):
        setattr(target, attr, read_inner_as_time(cursor, element))
    return handler


def _child(attr: str, parse) -> Handler:
    def handler(cursor, element, target):
        setattr(target, attr, parse(cursor, element))
    return handler


def _append(attr: str, parse) -> Handler:
    def handler(cursor, element, target):
        getattr(target, attr).append(parse(cursor, element))
    return handler


def _fix(cursor, element, target):
    target.fix = FixType.parse(read_inner_as_string(cursor, element))


def _point_extensions(cursor, element, target):
    nsmap = element.nsmap
    target.extensions = parse_extensions(cursor, element)
    if "TrackPointExtension" in target.extensions.raw_xml:
        target.telemetry = parse_device_telemetry(target.extensions.raw_xml, nsmap)


GPX_CHILDREN: dict[str, Handler] = {
    "metadata": _child("metadata", parse_metadata),
    "wpt": _append("waypoints", parse_waypoint),
    "rte": _append("routes", parse_route),
    "trk": _append("tracks", parse_track),
    "extensions": _child("extensions", parse_extensions),
}

METADATA_CHILDREN: dict[str, Handler] = {
    "name": _text("name"),
    "desc": _text("description"),
    "author": _child("author", parse_person),
    "copyright": _child("copyright", parse_copyright),
    "link": _append("links", parse_link),
    "time": _time("time"),
    "keywords": _text("keywords"),
    "bounds": _child("bounds", parse_bounds),
    "extensions": _child("extensions", parse_extensions),
}

PERSON_CHILDREN: dict[str, Handler] = {
    "name": _text("name"),
    "email": _child("email", parse_email),
    "link": _child("link", parse_link),
}

LINK_CHILDREN: dict[str, Handler] = {
    "text": _text("text"),
    "type": _text("type"),
}

COPYRIGHT_CHILDREN: dict[str, Handler] = {
    "year": _text("year", int, "int"),
    "license": _text("license"),
}

ROUTE_CHILDREN: dict[str, Handler] = {
    "name": _text("name"),
    "cmt": _text("comment"),
    "desc": _text("description"),
    "src": _text("source"),
    "link": _append("links", parse_link),
    "number": _text("number", int, "int"),
    "type": _text("type"),
    "extensions": _child("extensions", parse_extensions),
    "rtept": _append("points", parse_waypoint),
}

TRACK_CHILDREN: dict[str, Handler] = {
    "name": _text("name"),
    "cmt": _text("comment"),
    "desc": _text("description"),
    "src": _text("source"),
    "link": _append("links", parse_link),
    "number": _text("number", int, "int"),
    "type": _text("type"),
    "extensions": _child("extensions", parse_extensions),
    "trkseg": _append("segments", parse_track_segment),
}

TRACK_SEGMENT_CHILDREN: dict[str, Handler] = {
    "trkpt": _append("points", parse_waypoint),
    "extensions": _child("extensions", parse_extensions),
}

WAYPOINT_CHILDREN: dict[str, Handler] = {
    "ele": _text("ele", float, "float"),
    "time": _time("time"),
    "magvar": _text("magvar", float, "float", check_degrees),
    "geoidheight": _text("geoid_height", float, "float"),
    "name": _text("name"),
    "cmt": _text("comment"),
    "desc": _text("description"),
    "src": _text("source"),
    "link": _append("links", parse_link),
    "sym": _text("symbol"),
    "type": _text("type"),
    "fix": _fix,
    "sat": _text("num_satellites", int, "int"),
    "hdop": _text("hdop", float, "float"),
    "vdop": _text("vdop", float, "float"),
    "pdop": _text("pdop", float, "float"),
    "ageofdgpsdata": _text("age_of_dgps_data", float, "float"),
    "dgpsid": _text("dgps_id", int, "int", check_dgps_station_id),
    "extensions": _point_extensions,
}

# Garmin TrackPointExtension child -> (DeviceTelemetry attribute, converter, type name)
TELEMETRY_FIELDS = {
    "atemp": ("air_temp", float, "float"),
    "wtemp": ("water_temp", float, "float"),
    "depth": ("depth", float, "float"),
    "hr": ("heart_rate", int, "int"),
    "cad": ("cadence", int, "int"),
}
