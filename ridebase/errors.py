"""Exceptions raised while reading, validating and writing tracks.

Every failure kind has its own class so callers can branch with ``except``
rather than by inspecting message text.
"""

from pathlib import Path


class RideBaseError(Exception):
    """Base class for all errors raised by ridebase."""


class XmlSyntaxError(RideBaseError):
    """The XML tokenizer rejected the document (malformed markup)."""

    def __init__(self, message: str):
        super().__init__(f"Malformed XML: {message}")


class MalformedFitError(RideBaseError):
    """The FIT decoder rejected the byte stream."""

    def __init__(self, message: str):
        super().__init__(f"Malformed FIT data: {message}")


class MandatoryAttributeNotFoundError(RideBaseError):
    def __init__(self, attribute: str):
        self.attribute = attribute
        super().__init__(f"Mandatory attribute {attribute} was not found on the element")


class MandatoryElementNotFoundError(RideBaseError):
    def __init__(self, element: str):
        self.element = element
        super().__init__(f"Mandatory element {element} was not found")


class UnexpectedStartElementError(RideBaseError):
    def __init__(self, element: str):
        self.element = element
        super().__init__(f"Unexpected Start element {element}")


class UnexpectedEndElementError(RideBaseError):
    def __init__(self, element: str):
        self.element = element
        super().__init__(f"Unexpected End element {element}")


class UnexpectedAttributesError(RideBaseError):
    def __init__(self, element: str, attributes: list[str]):
        self.element = element
        self.attributes = attributes
        super().__init__(
            f"Element {element} has unexpected extra attributes {','.join(attributes)}"
        )


class MissingTextError(RideBaseError):
    def __init__(self, element: str):
        self.element = element
        super().__init__(f"Element {element} does not contain any text")


class ParseFailureError(RideBaseError):
    """Inner text or an attribute value could not be converted."""

    def __init__(self, text: str, dest_type: str):
        self.text = text
        self.dest_type = dest_type
        super().__init__(f"Could not parse {text!r} into type {dest_type}")


class DateParseFailureError(ParseFailureError):
    def __init__(self, text: str):
        super().__init__(text, "datetime")


class ValidationError(RideBaseError):
    """A value parsed correctly but is outside its permitted range."""

    def __init__(self, value, message: str):
        self.value = value
        super().__init__(message)


class InvalidLatitudeError(ValidationError):
    def __init__(self, value: float):
        super().__init__(value, f"Invalid latitude of {value}. Valid range is -90.0..=90.0")


class InvalidLongitudeError(ValidationError):
    def __init__(self, value: float):
        super().__init__(value, f"Invalid longitude of {value}. Valid range is -180.0..=180.0")


class InvalidDegreesError(ValidationError):
    def __init__(self, value: float):
        super().__init__(value, f"Invalid degrees of {value}. Valid range is 0.0..360.0")


class InvalidDGPSStationIdError(ValidationError):
    def __init__(self, value: int):
        super().__init__(value, f"Invalid DGPS station Id of {value}. Valid range is 0..=1023")


class MultipleTracksFoundError(RideBaseError):
    def __init__(self):
        super().__init__(
            "Multiple tracks were found when the operation requires a single track"
        )


class InvalidFixTypeError(RideBaseError):
    def __init__(self, value: str):
        self.value = value
        super().__init__(
            f"{value} is not a valid fix type. Valid values are 'none', '2d', '3d', 'dgps', 'pps'"
        )


class UnexpectedEofError(RideBaseError):
    def __init__(self):
        super().__init__("Unexpected EOF. Check file for corruption")


class FieldNotFoundError(RideBaseError):
    """A FIT message lacks a field that is required to interpret it."""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Field {field} was not found in the message")


class InvalidFileTypeError(RideBaseError):
    def __init__(self, file_type):
        self.file_type = file_type
        super().__init__(f"FIT file is not of type 'activity', instead it is {file_type!r}")


class NumericConversionError(RideBaseError):
    def __init__(self, message: str):
        super().__init__(f"Could not perform a numeric conversion: {message}")


class CreateFileError(RideBaseError):
    def __init__(self, path: str | Path):
        self.path = Path(path)
        super().__init__(f"Could not create file {str(self.path)!r}")


class ReadFileError(RideBaseError):
    def __init__(self, path: str | Path):
        self.path = Path(path)
        super().__init__(f"Could not read file {str(self.path)!r}")
