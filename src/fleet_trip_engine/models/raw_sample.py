# fleet_trip_engine/models/raw_sample.py
"""
Raw device reports as delivered by the tracking provider.

A RawSample is intentionally loose: speed units are ambiguous, the status
word may be wider than documented, and any field may be missing or garbage.
Interpreting the values is the normalizer's job. This module only maps the
provider's many alias field names onto one shape and turns its timestamp
formats into timezone-aware datetimes.

Provider Timestamp Formats:
    - Epoch milliseconds (the common case)
    - Epoch seconds (any number below the year-2000 millisecond mark)
    - 'yyyy-MM-dd HH:mm:ss' strings in the provider's local GMT offset
    - ISO-8601 strings with an explicit offset
"""

import logging
import math
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta, timezone
from typing import Any, Final, Self

from pydantic import BaseModel, ConfigDict, Field

__all__: list[str] = ['RawSample', 'parse_provider_timestamp']

logger: logging.Logger = logging.getLogger(__name__)

# 2000-01-01T00:00:00Z in milliseconds; smaller epoch values are seconds.
EPOCH_MILLISECONDS_FLOOR: Final[int] = 946_684_800_000

PROVIDER_TIME_FORMAT: Final[str] = '%Y-%m-%d %H:%M:%S'

# Provider field aliases, in priority order.
LATITUDE_FIELDS: Final[tuple[str, ...]] = ('callat', 'lat', 'latitude')
LONGITUDE_FIELDS: Final[tuple[str, ...]] = ('callon', 'lon', 'lng', 'longitude')
DEVICE_TIME_FIELDS: Final[tuple[str, ...]] = ('gpstime', 'devicetime')
SERVER_TIME_FIELDS: Final[tuple[str, ...]] = ('updatetime', 'time', 'servertime')
STATUS_TEXT_FIELDS: Final[tuple[str, ...]] = ('strstatusen', 'strstatus')
HEADING_FIELDS: Final[tuple[str, ...]] = ('course', 'direction', 'heading')


def parse_provider_timestamp(value: Any, gmt_offset_hours: int = 8) -> datetime | None:
    """
    Convert any provider timestamp representation to an aware UTC datetime.

    Args:
        value: Epoch number (ms or s), numeric string, provider-local
            'yyyy-MM-dd HH:mm:ss' string, ISO-8601 string, or datetime.
        gmt_offset_hours: Offset of provider-local strings from UTC.

    Returns:
        UTC datetime, or None if the value is missing or unparseable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    if isinstance(value, str):
        text: str = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return _parse_timestamp_string(text, gmt_offset_hours)

    if isinstance(value, int | float):
        if not math.isfinite(value) or value <= 0:
            return None
        seconds: float = value / 1000 if value >= EPOCH_MILLISECONDS_FLOOR else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None

    return None


def _parse_timestamp_string(text: str, gmt_offset_hours: int) -> datetime | None:
    """Parse a provider-local or ISO-8601 timestamp string."""
    provider_zone = timezone(timedelta(hours=gmt_offset_hours))

    try:
        local_time: datetime = datetime.strptime(text, PROVIDER_TIME_FORMAT)
        return local_time.replace(tzinfo=provider_zone).astimezone(UTC)
    except ValueError:
        pass

    try:
        parsed: datetime = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=provider_zone)
    return parsed.astimezone(UTC)


def _first_present(record: Mapping[str, Any], field_names: tuple[str, ...]) -> Any:
    """Return the first non-null, non-empty value among alias fields."""
    for field_name in field_names:
        value: Any = record.get(field_name)
        if value is not None and value != '':
            return value
    return None


def _scalar(value: Any) -> float | int | str | None:
    """Keep numbers and strings; anything else (lists, dicts, bools) is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float | str):
        return value
    return None


class RawSample(BaseModel):
    """
    One unprocessed device report.

    Values keep their provider representation (numbers or numeric strings)
    except timestamps, which are parsed to UTC datetimes here because their
    interpretation depends on the provider's GMT offset.

    Attributes:
        device_id: Provider device identifier.
        latitude: Raw latitude, possibly missing or invalid.
        longitude: Raw longitude, possibly missing or invalid.
        speed: Raw speed, km/h or m/h depending on firmware.
        status: Status bitfield (16 or 32 bits, sometimes wider or a string).
        status_text: Human-readable status, e.g. 'ACC ON,GPS fixed'.
        moving: Provider moving flag (1 moving, 0 stopped).
        battery_voltage: Device battery voltage.
        battery_percent: Device-reported battery percentage.
        external_voltage: Vehicle supply voltage.
        signal_level: GSM rx level code (CSQ 0-31, 99 unknown).
        heading: Course over ground in degrees.
        altitude: Altitude in metres.
        device_time: Device/GPS fix timestamp.
        server_time: Provider server receipt timestamp.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str = Field(min_length=1)
    latitude: float | str | None = None
    longitude: float | str | None = None
    speed: float | str | None = None
    status: int | float | str | None = None
    status_text: str | None = None
    moving: int | float | str | None = None
    battery_voltage: float | str | None = None
    battery_percent: float | str | None = None
    external_voltage: float | str | None = None
    signal_level: int | float | str | None = None
    heading: float | str | None = None
    altitude: float | str | None = None
    device_time: datetime | None = None
    server_time: datetime | None = None

    @classmethod
    def from_provider_record(
        cls,
        record: Mapping[str, Any],
        device_id: str | None = None,
        gmt_offset_hours: int = 8,
    ) -> Self:
        """
        Build a RawSample from a provider position or track record.

        Never raises on bad field values: unrecognized shapes become None.

        Args:
            record: One element of the provider's `records` array.
            device_id: Device id to use when the record does not carry one
                (track history records omit it).
            gmt_offset_hours: Offset of provider-local timestamp strings.

        Returns:
            RawSample with aliases resolved.

        Raises:
            ValueError: If no device id is available from either source.
        """
        resolved_device_id: Any = record.get('deviceid') or device_id
        if resolved_device_id is None or str(resolved_device_id).strip() == '':
            raise ValueError('Provider record has no device id')

        status_text: Any = _first_present(record, STATUS_TEXT_FIELDS)

        return cls(
            device_id=str(resolved_device_id).strip(),
            latitude=_scalar(_first_present(record, LATITUDE_FIELDS)),
            longitude=_scalar(_first_present(record, LONGITUDE_FIELDS)),
            speed=_scalar(record.get('speed')),
            status=_scalar(record.get('status')),
            status_text=status_text if isinstance(status_text, str) else None,
            moving=_scalar(record.get('moving')),
            battery_voltage=_scalar(record.get('voltagev')),
            battery_percent=_scalar(record.get('voltagepercent')),
            external_voltage=_scalar(record.get('exvoltage')),
            signal_level=_scalar(record.get('rxlevel')),
            heading=_scalar(_first_present(record, HEADING_FIELDS)),
            altitude=_scalar(record.get('altitude')),
            device_time=parse_provider_timestamp(
                _first_present(record, DEVICE_TIME_FIELDS), gmt_offset_hours
            ),
            server_time=parse_provider_timestamp(
                _first_present(record, SERVER_TIME_FIELDS), gmt_offset_hours
            ),
        )
