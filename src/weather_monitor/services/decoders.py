"""
Row decoding for the persistence layer.

Drivers hand back numerics as floats, Decimals or strings depending on the
backend and column type. Everything is coerced here, once, so the rest of the
code only sees plain floats, ints and aware datetimes.
"""

import math
import typing
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from weather_monitor.models import AlertConfig, AlertEvent, AlertKind, City, Reading, ReadingSource, Statistics


def to_float(value: typing.Any, default: float = 0.0) -> float:
    """Coerce a driver value to float. Missing or malformed values become `default`."""
    if value is None or isinstance(value, bool):
        return default
    try:
        if isinstance(value, (int, float)):
            result = float(value)
        else:
            result = float(Decimal(str(value).strip()))
    except (InvalidOperation, ValueError, OverflowError):
        return default
    # NaN and infinities parse fine but are never valid measurements
    return result if math.isfinite(result) else default


def optional_float(value: typing.Any) -> float | None:
    """Like to_float, but SQL NULL stays None (used for aggregates over no rows)."""
    if value is None:
        return None
    return to_float(value)


def to_int(value: typing.Any, default: int = 0) -> int:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    try:
        return int(to_float(value, float(default)))
    except (OverflowError, ValueError):
        return default


def to_datetime(value: typing.Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    # Ensure UTC timezone awareness if not present
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _text(value: typing.Any) -> str:
    return "" if value is None else str(value)


def decode_city(row: Mapping[str, typing.Any]) -> City:
    return City(
        id=to_int(row["id"]),
        name=_text(row["name"]),
        region=_text(row.get("region")),
        country=_text(row.get("country")),
        latitude=to_float(row.get("latitude")),
        longitude=to_float(row.get("longitude")),
        provider_city_id=to_int(row["provider_city_id"]),
        active=bool(row.get("active", True)),
        created_at=to_datetime(row.get("created_at")),
        updated_at=to_datetime(row.get("updated_at")),
    )


def decode_reading(row: Mapping[str, typing.Any]) -> Reading:
    source = row.get("source") or ReadingSource.SCHEDULED
    return Reading(
        id=to_int(row["id"]),
        city_id=to_int(row["city_id"]),
        temperature=to_float(row.get("temperature")),
        feels_like=to_float(row.get("feels_like")),
        humidity=to_float(row.get("humidity")),
        pressure=to_float(row.get("pressure")),
        wind_speed=to_float(row.get("wind_speed")),
        wind_direction=to_float(row.get("wind_direction")),
        description=_text(row.get("description")),
        captured_at=to_datetime(row["captured_at"]),
        source=ReadingSource(source),
    )


def decode_alert_config(row: Mapping[str, typing.Any]) -> AlertConfig:
    return AlertConfig(
        id=to_int(row["id"]),
        city_id=to_int(row["city_id"]),
        kind=_text(row.get("kind")) or "TEMPERATURE",
        # Thresholds keep NULL as "unset"; 0 is a real threshold
        minimum=optional_float(row.get("minimum")),
        maximum=optional_float(row.get("maximum")),
        active=bool(row.get("active", True)),
        notification_email=row.get("notification_email") or None,
        webhook_url=row.get("webhook_url") or None,
        created_at=to_datetime(row.get("created_at")),
    )


def decode_alert_event(row: Mapping[str, typing.Any]) -> AlertEvent:
    return AlertEvent(
        id=to_int(row["id"]),
        reading_id=to_int(row["reading_id"]),
        config_id=to_int(row["config_id"]),
        kind=AlertKind(row["kind"]),
        value=to_float(row.get("value")),
        limit=to_float(row.get("limit")),
        message=_text(row.get("message")),
        triggered_at=to_datetime(row["triggered_at"]),
        notified=bool(row.get("notified")),
        notified_at=to_datetime(row.get("notified_at")),
    )


def decode_statistics(row: Mapping[str, typing.Any]) -> Statistics:
    return Statistics(
        active_cities=to_int(row.get("active_cities")),
        readings_24h=to_int(row.get("readings_24h")),
        alerts_24h=to_int(row.get("alerts_24h")),
        avg_temperature=optional_float(row.get("avg_temperature")),
        min_temperature=optional_float(row.get("min_temperature")),
        max_temperature=optional_float(row.get("max_temperature")),
    )
