from typing import Any, Type, TypeVar

import dacite

T = TypeVar("T")


class ParseException(Exception):
    """Exception raised when a parsing error occurs."""

    pass


def from_dict(data_class: Type[T], data: Any) -> T:
    """Parse a data dict into a dataclass, checking field presence and types.

    Unknown keys are ignored so that newer payload versions with additional fields
    remain readable.

    Args:
        data_class (Type[T]): Dataclass to parse into
        data (Any): Data to parse

    Returns:
        T: Parsed dataclass

    Raises:
        ParseException: If the data is not a dict or does not match the dataclass.
    """
    if not isinstance(data, dict):
        raise ParseException(f"Expected a JSON object, got {type(data).__name__}")
    try:
        return dacite.from_dict(data_class=data_class, data=data)
    except dacite.DaciteError as e:
        raise ParseException(f"Could not parse {data_class.__name__}: {e}") from e
