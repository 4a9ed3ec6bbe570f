"""
Row → ``TelemetryRecord`` conversion.

Everything here is pure: no I/O, no clock reads unless the caller omits
``now``.  Rows may be ``asyncpg.Record`` objects or plain dicts; a missing
column behaves like SQL NULL.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

# (source column / payload key, record attribute)
NUMERIC_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("battery", "battery"),
    ("barometer", "barometer"),
    ("latitude", "latitude"),
    ("longitude", "longitude"),
    ("altitude", "altitude"),
    ("AccelMagnitude", "accel_magnitude"),
    ("GyroMagnitude", "gyro_magnitude"),
    ("MagMagnitude", "mag_magnitude"),
)


@dataclass(frozen=True)
class TelemetryRecord:
    """One normalized telemetry reading ready for the sink."""

    device_id: str
    enqueued_time: datetime
    battery: float = 0.0
    barometer: float = 0.0
    latitude: float = 0.0
    longitude: float = 0.0
    altitude: float = 0.0
    accel_magnitude: float = 0.0
    gyro_magnitude: float = 0.0
    mag_magnitude: float = 0.0
    anomaly: float = 0.0
    # True when the row had no usable timestamp and "now" was used instead.
    time_substituted: bool = False

    def to_payload(self) -> Dict[str, Any]:
        """Return the JSON object pushed to the BI dataset."""
        payload: Dict[str, Any] = {
            "deviceId": self.device_id,
            "enqueuedTime": format_timestamp(self.enqueued_time),
        }
        for column, attr in NUMERIC_FIELDS:
            payload[column] = getattr(self, attr)
        payload["Anomaly"] = self.anomaly
        return payload


def _finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0


def coerce_number(value: Any) -> float:
    """Coerce a source value to float; NULL or unparseable → 0.0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        return _finite(float(value))
    text = value.strip() if isinstance(value, str) else str(value)
    try:
        return _finite(float(text))
    except (TypeError, ValueError):
        return 0.0


def coerce_anomaly(value: Any) -> float:
    """Map the anomaly flag to 1.0 / 0.0."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    return 1.0 if coerce_number(value) != 0.0 else 0.0


def coerce_timestamp(value: Any, now: datetime) -> Tuple[datetime, bool]:
    """Return ``(utc_datetime, substituted)``.

    Naive datetimes are taken to be UTC.  Anything that is not a datetime
    is replaced by *now* and flagged, so the row is still delivered.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc), False
        return value.astimezone(timezone.utc), False
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc), True


def format_timestamp(dt: datetime) -> str:
    """Format as ``YYYY-MM-DDThh:mm:ss.sssZ`` in UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def build_record(row: Mapping[str, Any], now: Optional[datetime] = None) -> TelemetryRecord:
    """Convert one source row to a ``TelemetryRecord``.

    Args:
        row: Mapping with the telemetry table's column names.
        now: Substitute time for rows without a timestamp.  Defaults to the
             current UTC time; pass it explicitly for deterministic output.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    device_id = row.get("deviceId")
    enqueued, substituted = coerce_timestamp(row.get("enqueuedTime"), now)
    numbers = {attr: coerce_number(row.get(column)) for column, attr in NUMERIC_FIELDS}

    return TelemetryRecord(
        device_id="" if device_id is None else str(device_id),
        enqueued_time=enqueued,
        anomaly=coerce_anomaly(row.get("Anomaly")),
        time_substituted=substituted,
        **numbers,
    )


def newest_timestamp(batch: Sequence[TelemetryRecord]) -> Optional[datetime]:
    """Latest source timestamp in *batch*, ignoring substituted times."""
    times = [r.enqueued_time for r in batch if not r.time_substituted]
    return max(times) if times else None
