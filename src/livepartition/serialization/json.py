"""
JSON serialization utilities for livepartition types.

Partition bounds and identity-key values are ordinary column values: dates,
timestamps, UUIDs, decimals, integers, strings, and tuples of those for
composite keys. When a plan or cursor is persisted and read back, a date
must come back as a date (not as a string) or range comparisons silently
change meaning. Values that JSON cannot represent natively are therefore
written as tagged objects and restored on load.

Example:
    >>> from datetime import date
    >>> from livepartition.serialization import json_dumps, json_loads
    >>>
    >>> s = json_dumps({"lower": date(2024, 1, 1), "key": (7, date(2024, 1, 3))})
    >>> json_loads(s)
    {'lower': datetime.date(2024, 1, 1), 'key': (7, datetime.date(2024, 1, 3))}
"""

import json
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from uuid import UUID

TYPE_TAG = "__lp_type__"
VALUE_TAG = "value"


def encode_value(obj: Any) -> Any:
    """
    Convert a value into a JSON-compatible structure, tagging typed values.

    Tuples are tagged so that composite identity keys keep their tuple type.

    Raises:
        TypeError: If the value type is not supported
    """
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, datetime):
        return {TYPE_TAG: "datetime", VALUE_TAG: obj.isoformat()}
    if isinstance(obj, date):
        return {TYPE_TAG: "date", VALUE_TAG: obj.isoformat()}
    if isinstance(obj, time):
        return {TYPE_TAG: "time", VALUE_TAG: obj.isoformat()}
    if isinstance(obj, UUID):
        return {TYPE_TAG: "uuid", VALUE_TAG: str(obj)}
    if isinstance(obj, Decimal):
        return {TYPE_TAG: "decimal", VALUE_TAG: str(obj)}
    if isinstance(obj, tuple):
        return {TYPE_TAG: "tuple", VALUE_TAG: [encode_value(v) for v in obj]}
    if isinstance(obj, list):
        return [encode_value(v) for v in obj]
    if isinstance(obj, dict):
        return {str(k): encode_value(v) for k, v in obj.items()}
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


_DECODERS = {
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
    "time": time.fromisoformat,
    "uuid": UUID,
    "decimal": Decimal,
    "tuple": tuple,
}


def _object_hook(obj: dict[str, Any]) -> Any:
    tag = obj.get(TYPE_TAG)
    if tag is None or len(obj) != 2 or VALUE_TAG not in obj:
        return obj
    decoder = _DECODERS.get(tag)
    if decoder is None:
        return obj
    return decoder(obj[VALUE_TAG])


def decode_value(obj: Any) -> Any:
    """
    Restore typed values from a structure produced by encode_value.

    Useful when the JSON was already parsed by a database driver
    (for example a PostgreSQL JSONB column returned as a dict).
    """
    if isinstance(obj, list):
        return [decode_value(v) for v in obj]
    if isinstance(obj, dict):
        return _object_hook({k: decode_value(v) for k, v in obj.items()})
    return obj


def json_dumps(obj: Any) -> str:
    """
    Serialize object to JSON string, tagging dates, UUIDs, decimals and tuples.

    Args:
        obj: Object to serialize

    Returns:
        JSON string representation
    """
    return json.dumps(encode_value(obj))


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize a JSON string produced by json_dumps, restoring tagged types.

    Args:
        s: JSON string to deserialize

    Returns:
        Python object representation
    """
    return json.loads(s, object_hook=_object_hook)


__all__ = [
    "encode_value",
    "decode_value",
    "json_dumps",
    "json_loads",
]
