"""
Serialization utilities for livepartition.

Provides the typed JSON codec used to persist plans, cursors and
verification reports.
"""

from livepartition.serialization.json import (
    decode_value,
    encode_value,
    json_dumps,
    json_loads,
)

__all__ = [
    "decode_value",
    "encode_value",
    "json_dumps",
    "json_loads",
]
