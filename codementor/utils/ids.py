"""Helpers for numeric ids that arrive as strings."""
from typing import Any, Optional

from codementor.core.exceptions import InvalidSessionIdError
from codementor.core.logging import get_logger

logger = get_logger(__name__)


def parse_numeric_id(value: Any) -> int:
    """Parse a positive integer id from an int or a string.

    Raises:
        InvalidSessionIdError: If the value is missing or not a positive integer
    """
    if isinstance(value, bool) or value is None:
        raise InvalidSessionIdError(f"Not a numeric id: {value!r}")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, float) and value.is_integer():
        parsed = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise InvalidSessionIdError(f"Not a numeric id: {value!r}")

    if parsed <= 0:
        raise InvalidSessionIdError(f"Not a positive id: {value!r}")
    return parsed


def coerce_numeric_id(value: Any) -> Optional[int]:
    """Lenient variant of :func:`parse_numeric_id`.

    Returns None for missing values and logs (never raises) for
    unparsable ones.
    """
    if value is None or value == "":
        return None
    try:
        return parse_numeric_id(value)
    except InvalidSessionIdError as e:
        logger.error(f"Discarding unparsable id: {e}", extra={"error_type": "invalid_id"})
        return None
