"""Unit tests for the JSON and list column validators and the UTC column type."""

import uuid
from datetime import UTC, date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tracechain.db.types import UTCDateTime
from tracechain.db.validators import to_jsonable, validate_json_payload, validate_string_list
from tracechain.domain.enums import CheckpointStatus, EntityType


class TestToJsonable:
    def test_scalars(self):
        assert to_jsonable(None) is None
        assert to_jsonable(3) == 3
        assert to_jsonable("x") == "x"
        assert to_jsonable(Decimal("1.50")) == "1.50"

    def test_enums_and_dates(self):
        assert to_jsonable(EntityType.FOOD) == "food"
        assert to_jsonable(date(2025, 1, 2)) == "2025-01-02"
        assert to_jsonable(datetime(2025, 1, 2, tzinfo=UTC)) == "2025-01-02T00:00:00+00:00"

    def test_nested_structures(self):
        value = uuid.UUID("12345678-1234-5678-1234-567812345678")
        payload = {"status": CheckpointStatus.RECEIVED, "ids": (value,), 1: {"ok": True}}
        assert validate_json_payload("payload", payload) == {
            "status": "received",
            "ids": ["12345678-1234-5678-1234-567812345678"],
            "1": {"ok": True},
        }


class TestStringList:
    def test_none_is_empty(self):
        assert validate_string_list("attributes", None) == []

    def test_tuple_becomes_list(self):
        assert validate_string_list("attributes", ("organic", "fair-trade")) == [
            "organic",
            "fair-trade",
        ]

    @pytest.mark.parametrize("value", ["organic", 5, {"a": 1}])
    def test_rejects_non_lists(self, value):
        with pytest.raises(ValueError):
            validate_string_list("attributes", value)


class TestUTCDateTime:
    def test_naive_values_are_utc(self):
        column = UTCDateTime()
        result = column.process_result_value(datetime(2025, 1, 1, 8, 0), None)
        assert result.tzinfo == UTC

    def test_offsets_are_normalized(self):
        column = UTCDateTime()
        cet = timezone(timedelta(hours=1))
        bound = column.process_bind_param(datetime(2025, 1, 1, 9, 0, tzinfo=cet), None)
        assert bound == datetime(2025, 1, 1, 8, 0, tzinfo=UTC)
        assert bound.tzinfo == UTC
