"""
Unit tests for the row → TelemetryRecord transformer.

Pure functions only; rows are literal dicts, no database involved.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from telesync.transform import (
    NUMERIC_FIELDS,
    TelemetryRecord,
    build_record,
    coerce_anomaly,
    coerce_number,
    coerce_timestamp,
    format_timestamp,
    newest_timestamp,
)

NOW = datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)


def _row(**overrides):
    row = {
        "deviceId": "dev-1",
        "enqueuedTime": datetime(2024, 5, 1, 10, 30, 15, 250000),
        "battery": 87.5,
        "barometer": Decimal("1013.25"),
        "latitude": 47.6,
        "longitude": -122.3,
        "altitude": 12,
        "AccelMagnitude": 9.81,
        "GyroMagnitude": 0.02,
        "MagMagnitude": 48.1,
        "Anomaly": 0,
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Numeric coercion
# ---------------------------------------------------------------------------


class TestCoerceNumber:
    @pytest.mark.parametrize(
        "value",
        [None, "", "abc", "12,5x", object(), True, False, float("nan"), float("inf"), "NaN"],
    )
    def test_unusable_values_become_zero(self, value):
        assert coerce_number(value) == 0.0

    def test_int_and_float(self):
        assert coerce_number(3) == 3.0
        assert coerce_number(2.5) == 2.5

    def test_decimal(self):
        assert coerce_number(Decimal("1013.25")) == 1013.25

    def test_numeric_string_with_whitespace(self):
        assert coerce_number(" 42.5 ") == 42.5

    def test_result_is_float(self):
        assert isinstance(coerce_number(7), float)


class TestCoerceAnomaly:
    def test_true_maps_to_one(self):
        assert coerce_anomaly(True) == 1.0

    def test_false_maps_to_zero(self):
        assert coerce_anomaly(False) == 0.0

    def test_null_maps_to_zero(self):
        assert coerce_anomaly(None) == 0.0

    @pytest.mark.parametrize("value", [1, 1.0, "1", Decimal("1"), 3])
    def test_nonzero_numeric_is_one(self, value):
        assert coerce_anomaly(value) == 1.0

    @pytest.mark.parametrize("value", [0, 0.0, "0", "yes", "garbage", []])
    def test_everything_else_is_zero(self, value):
        assert coerce_anomaly(value) == 0.0


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


class TestTimestamps:
    def test_naive_datetime_assumed_utc(self):
        value, substituted = coerce_timestamp(datetime(2024, 1, 1, 8, 0), NOW)
        assert value == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        assert substituted is False

    def test_aware_datetime_converted_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        value, _ = coerce_timestamp(datetime(2024, 1, 1, 10, 0, tzinfo=plus_two), NOW)
        assert value == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        assert value.tzinfo == timezone.utc

    @pytest.mark.parametrize("value", [None, "2024-01-01T00:00:00Z", 1704067200])
    def test_non_datetime_substituted_with_now(self, value):
        result, substituted = coerce_timestamp(value, NOW)
        assert result == NOW
        assert substituted is True

    def test_format_has_millisecond_precision(self):
        dt = datetime(2024, 5, 1, 10, 30, 15, 250999, tzinfo=timezone.utc)
        assert format_timestamp(dt) == "2024-05-01T10:30:15.250Z"

    def test_format_zero_pads_milliseconds(self):
        dt = datetime(2024, 5, 1, 10, 30, 15, 7000, tzinfo=timezone.utc)
        assert format_timestamp(dt) == "2024-05-01T10:30:15.007Z"

    def test_format_converts_offset_to_utc(self):
        minus_five = timezone(timedelta(hours=-5))
        dt = datetime(2024, 5, 1, 23, 0, 0, tzinfo=minus_five)
        assert format_timestamp(dt) == "2024-05-02T04:00:00.000Z"


# ---------------------------------------------------------------------------
# build_record
# ---------------------------------------------------------------------------


class TestBuildRecord:
    def test_full_row(self):
        record = build_record(_row(), now=NOW)
        assert record.device_id == "dev-1"
        assert record.enqueued_time == datetime(2024, 5, 1, 10, 30, 15, 250000, tzinfo=timezone.utc)
        assert record.barometer == 1013.25
        assert record.altitude == 12.0
        assert record.accel_magnitude == 9.81
        assert record.anomaly == 0.0
        assert record.time_substituted is False

    def test_null_and_garbage_numeric_fields_are_zero(self):
        row = _row(battery=None, latitude="n/a", GyroMagnitude="")
        del row["MagMagnitude"]
        record = build_record(row, now=NOW)
        assert record.battery == 0.0
        assert record.latitude == 0.0
        assert record.gyro_magnitude == 0.0
        assert record.mag_magnitude == 0.0

    def test_missing_timestamp_uses_now(self):
        record = build_record(_row(enqueuedTime=None), now=NOW)
        assert record.enqueued_time == NOW
        assert record.time_substituted is True

    def test_missing_device_id_is_empty_string(self):
        assert build_record(_row(deviceId=None), now=NOW).device_id == ""

    def test_non_string_device_id_stringified(self):
        assert build_record(_row(deviceId=42), now=NOW).device_id == "42"

    def test_boolean_anomaly(self):
        assert build_record(_row(Anomaly=True), now=NOW).anomaly == 1.0

    def test_deterministic(self):
        assert build_record(_row(enqueuedTime=None), now=NOW) == build_record(
            _row(enqueuedTime=None), now=NOW
        )

    def test_empty_row_never_dropped(self):
        record = build_record({}, now=NOW)
        assert record.device_id == ""
        assert record.enqueued_time == NOW
        assert all(getattr(record, attr) == 0.0 for _, attr in NUMERIC_FIELDS)
        assert record.anomaly == 0.0


class TestPayload:
    def test_payload_keys_and_values(self):
        payload = build_record(_row(Anomaly=True), now=NOW).to_payload()
        assert list(payload) == [
            "deviceId",
            "enqueuedTime",
            "battery",
            "barometer",
            "latitude",
            "longitude",
            "altitude",
            "AccelMagnitude",
            "GyroMagnitude",
            "MagMagnitude",
            "Anomaly",
        ]
        assert payload["enqueuedTime"] == "2024-05-01T10:30:15.250Z"
        assert payload["Anomaly"] == 1.0
        assert "time_substituted" not in payload

    def test_payload_is_valid_json_for_nan_input(self):
        payload = build_record(_row(battery=float("nan")), now=NOW).to_payload()
        decoded = json.loads(json.dumps(payload, allow_nan=False))
        assert decoded["battery"] == 0.0


class TestNewestTimestamp:
    def test_returns_max(self):
        t1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        t2 = t1 + timedelta(minutes=5)
        batch = [TelemetryRecord("a", t2), TelemetryRecord("b", t1)]
        assert newest_timestamp(batch) == t2

    def test_ignores_substituted_times(self):
        t1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        batch = [
            TelemetryRecord("a", t1),
            TelemetryRecord("b", NOW, time_substituted=True),
        ]
        assert newest_timestamp(batch) == t1

    def test_empty_or_all_substituted(self):
        assert newest_timestamp([]) is None
        assert newest_timestamp([TelemetryRecord("a", NOW, time_substituted=True)]) is None
