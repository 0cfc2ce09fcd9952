"""
Unit tests for typed JSON serialization.

Bounds and keys are persisted as JSON; they must come back with their
original types or range comparisons change meaning.
"""

import json
from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from livepartition.serialization import decode_value, encode_value, json_dumps, json_loads


class TestJsonSerialization:
    """Tests for json_dumps() and json_loads()."""

    def test_composite_key_keeps_tuple_and_date(self) -> None:
        key = (7, date(2024, 1, 3))
        assert json_loads(json_dumps(key)) == key
        assert isinstance(json_loads(json_dumps(key)), tuple)

    def test_nested_structures(self) -> None:
        value = {
            "lower": datetime(2024, 1, 1, 6, tzinfo=UTC),
            "amount": Decimal("10.50"),
            "keys": [(1, "a"), (2, "b")],
        }
        restored = json_loads(json_dumps(value))
        assert restored == value
        assert isinstance(restored["amount"], Decimal)

    def test_uuid(self) -> None:
        value = uuid4()
        assert json_loads(json_dumps(value)) == value

    def test_plain_values_untouched(self) -> None:
        assert json.loads(json_dumps({"a": 1, "b": [True, None, "x"]})) == {
            "a": 1,
            "b": [True, None, "x"],
        }

    def test_unsupported_type_rejected(self) -> None:
        with pytest.raises(TypeError):
            json_dumps({"value": object()})

    def test_decode_already_parsed_document(self) -> None:
        """JSONB columns arrive as dicts; decode_value restores the types."""
        parsed = json.loads(json.dumps(encode_value({"key": (1, date(2024, 5, 1))})))
        assert decode_value(parsed) == {"key": (1, date(2024, 5, 1))}

    def test_unknown_tag_left_alone(self) -> None:
        document = {"__lp_type__": "mystery", "value": 1}
        assert decode_value(document) == document
