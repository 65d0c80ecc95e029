"""Forward-only cursor over lxml pull-parser events, plus attribute and inner text helpers.

The GPX parsers are recursive descent: each routine consumes events until it
sees its own end tag. Text between elements is formatting whitespace and is
never surfaced as an event.
"""

from collections import deque
from datetime import datetime, timezone
from typing import Callable, TypeVar
from xml.sax.saxutils import escape, quoteattr

from lxml import etree

from ridebase.errors import (
    DateParseFailureError,
    MandatoryAttributeNotFoundError,
    MissingTextError,
    ParseFailureError,
    UnexpectedAttributesError,
    UnexpectedEofError,
    UnexpectedStartElementError,
    XmlSyntaxError,
)

T = TypeVar("T")

START = "start"
END = "end"

CHUNK_SIZE = 64 * 1024


def local_name(element) -> str:
    """Element tag without its namespace."""
    return etree.QName(element).localname


def qualified_name(element, clark_name: str) -> str:
    """Turn '{uri}local' into 'prefix:local' using the element's in-scope namespaces."""
    qname = etree.QName(clark_name)
    if qname.namespace is None:
        return qname.localname
    for prefix, uri in element.nsmap.items():
        if uri == qname.namespace and prefix:
            return f"{prefix}:{qname.localname}"
    return qname.localname


class XmlEventCursor:
    """Start/end events, produced by feeding the document to lxml a chunk at a time.

    Only events the caller has not consumed yet are buffered. Parsers hand
    each fully processed element to release(), so the tree holds the open
    elements and little else.
    """

    def __init__(self, data: bytes, chunk_size: int | None = None):
        self._parser = etree.XMLPullParser(
            events=(START, END),
            remove_comments=True,
            remove_pis=True,
            resolve_entities=False,
        )
        self._data = data
        self._offset = 0
        self._chunk_size = chunk_size or CHUNK_SIZE
        self._pending = deque()
        self._closed = False
        # A truncated document only fails once the parser is told there is no
        # more input. Keep that error back: the caller reports running out of
        # events as a truncation, and anything else via finish().
        self._close_error = None
        self._fill()

    def _fill(self) -> bool:
        """Feeds input until an event is ready. False once input and events are used up."""
        while not self._pending:
            if self._closed:
                return False
            if self._offset < len(self._data):
                chunk = self._data[self._offset:self._offset + self._chunk_size]
                self._offset += len(chunk)
                try:
                    self._parser.feed(chunk)
                except etree.XMLSyntaxError as e:
                    raise XmlSyntaxError(str(e)) from e
            else:
                self._closed = True
                try:
                    self._parser.close()
                except etree.XMLSyntaxError as e:
                    self._close_error = e
            self._pending.extend(self._parser.read_events())
        return True

    def finish(self) -> None:
        """Reads the rest of the input and raises any error the tokenizer reports there."""
        while self._fill():
            self._pending.clear()
        if self._close_error is not None:
            raise XmlSyntaxError(str(self._close_error)) from self._close_error

    def next_event(self):
        """Returns (kind, element). Running out of events is a truncated document."""
        if not self._fill():
            raise UnexpectedEofError()
        return self._pending.popleft()

    def skip_to_end(self, element) -> None:
        """Consumes events up to and including the end tag of 'element'."""
        while True:
            kind, el = self.next_event()
            if kind == END and el is element:
                return

    @staticmethod
    def release(element) -> None:
        """Frees a processed element and the processed siblings before it."""
        element.clear()
        parent = element.getparent()
        if parent is not None:
            while element.getprevious() is not None:
                del parent[0]


class Attributes:
    """The attributes of a start tag, consumed one by one.

    Anything left over once the parser has taken what it expects is an error.
    """

    def __init__(self, element):
        self.element_name = local_name(element)
        self.data = {qualified_name(element, k): v for k, v in element.attrib.items()}

    @classmethod
    def check_is_empty(cls, element) -> None:
        if len(element.attrib) == 0:
            return
        cls(element).check_is_empty_now()

    def check_is_empty_now(self) -> None:
        if not self.data:
            return
        raise UnexpectedAttributesError(self.element_name, sorted(self.data))

    def __len__(self):
        return len(self.data)

    def take(self, key: str, convert: Callable[[str], T] = str, type_name: str = "str") -> T:
        """Removes and converts a mandatory attribute."""
        if key not in self.data:
            raise MandatoryAttributeNotFoundError(key)
        return convert_text(self.data.pop(key), convert, type_name)

    def take_rest(self) -> dict[str, str]:
        """Removes and returns everything not yet taken."""
        rest = self.data
        self.data = {}
        return rest


def convert_text(text: str, convert: Callable[[str], T], type_name: str) -> T:
    try:
        return convert(text)
    except (ValueError, TypeError):
        raise ParseFailureError(text, type_name) from None


def parse_utc_time(text: str) -> datetime:
    """Parses an RFC 3339 timestamp into an aware UTC datetime."""
    value = text.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        raise DateParseFailureError(text) from None
    if dt.tzinfo is None:
        raise DateParseFailureError(text)
    return dt.astimezone(timezone.utc)


def read_inner_as_string(cursor: XmlEventCursor, element) -> str:
    """Reads the text of a leaf element, consuming its end tag."""
    kind, el = cursor.next_event()
    if kind == START:
        raise UnexpectedStartElementError(local_name(el))
    if not element.text:
        raise MissingTextError(local_name(element))
    return element.text


def read_inner_as(cursor: XmlEventCursor, element, convert: Callable[[str], T], type_name: str) -> T:
    return convert_text(read_inner_as_string(cursor, element), convert, type_name)


def read_inner_as_time(cursor: XmlEventCursor, element) -> datetime:
    return parse_utc_time(read_inner_as_string(cursor, element))


def read_inner_xml(cursor: XmlEventCursor, element) -> str:
    """Consumes 'element' and returns its content re-serialized as XML text.

    Prefixes are kept as written; only namespaces declared inside the
    captured content are declared in the output, so the text re-parses in the
    context of the document's root declarations.
    """
    cursor.skip_to_end(element)
    parts = [escape(element.text or "")]
    for child in element:
        parts.append(_serialize(child, element.nsmap))
    return "".join(parts).strip()


def _serialize(element, parent_nsmap: dict) -> str:
    tag = f"{element.prefix}:{local_name(element)}" if element.prefix else local_name(element)
    out = ["<", tag]
    for prefix, uri in element.nsmap.items():
        if parent_nsmap.get(prefix) != uri:
            name = f"xmlns:{prefix}" if prefix else "xmlns"
            out.append(f" {name}={quoteattr(uri)}")
    for key, value in element.attrib.items():
        out.append(f" {qualified_name(element, key)}={quoteattr(value)}")

    if element.text is None and len(element) == 0:
        out.append("/>")
    else:
        out.append(">")
        out.append(escape(element.text or ""))
        for child in element:
            out.append(_serialize(child, element.nsmap))
        out.append(f"</{tag}>")
    out.append(escape(element.tail or ""))
    return "".join(out)
