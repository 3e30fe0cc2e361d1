# fleet_trip_engine/engine/normalizer.py
"""
Unit and signal normalization.

Turns a RawSample into a CanonicalSample. The mapping is pure and total: any
malformed field value degrades to a default or None instead of raising, so
one bad report never stops a device's sync.

Design Decisions:
-----------------
- Speed units are not flagged by the provider. Values at or above the unit
  threshold (1000) can only be metres per hour; below it they are km/h.
- Speeds under the noise floor (3 km/h) are GPS drift on a parked vehicle
  and become 0 so they never open a trip.
- Signal strength uses the GSM CSQ scale (0-31). Code 99 means "not
  detectable"; it and any other out-of-table code map to None rather than
  being guessed.
- Timestamps prefer the device GPS time over the server receipt time.
"""

import logging
import math
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Final

from fleet_trip_engine.common.geo import is_valid_coordinate
from fleet_trip_engine.config import BatteryProfile, NormalizerConfig
from fleet_trip_engine.engine.battery import resolve_battery_level
from fleet_trip_engine.engine.ignition import parse_acc_text, parse_status_word, score_ignition
from fleet_trip_engine.models import (
    CanonicalSample,
    DataQuality,
    IgnitionReading,
    RawSample,
    TimestampSource,
)

__all__: list[str] = [
    'CSQ_SIGNAL_PERCENT',
    'TelemetryNormalizer',
    'resolve_coordinates',
    'resolve_signal_strength',
    'resolve_speed_kmh',
    'score_data_quality',
]

logger: logging.Logger = logging.getLogger(__name__)

METRES_PER_KILOMETRE: Final[float] = 1000.0

# GSM CSQ code to percent. Codes outside 0-31 (including 99) are unknown.
CSQ_SIGNAL_PERCENT: Final[dict[int, int]] = {
    code: round(code / 31 * 100) for code in range(32)
}

# Data quality scoring weights and grade boundaries.
QUALITY_COORDINATES_POINTS: Final[int] = 2
QUALITY_FIELD_POINTS: Final[int] = 1
QUALITY_HIGH_MIN_SCORE: Final[int] = 5
QUALITY_MEDIUM_MIN_SCORE: Final[int] = 3


def _finite_float(value: Any) -> float | None:
    """Coerce to a finite float, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number: float = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def resolve_speed_kmh(
    raw_speed: Any,
    unit_threshold: float = 1000.0,
    noise_floor_kmh: float = 3.0,
    max_speed_kmh: float = 300.0,
) -> float:
    """
    Resolve an ambiguous raw speed to km/h.

    Args:
        raw_speed: Raw provider speed (km/h or m/h, any type).
        unit_threshold: Values at or above this are m/h.
        noise_floor_kmh: Results below this become 0.
        max_speed_kmh: Upper clamp.

    Returns:
        Speed in km/h rounded to one decimal, never negative.
    """
    speed: float | None = _finite_float(raw_speed)
    if speed is None or speed <= 0:
        return 0.0

    if speed >= unit_threshold:
        speed = speed / METRES_PER_KILOMETRE

    if speed < noise_floor_kmh:
        return 0.0

    return round(min(speed, max_speed_kmh), 1)


def resolve_coordinates(
    raw_latitude: Any,
    raw_longitude: Any,
) -> tuple[float | None, float | None]:
    """Return a valid (lat, lon) pair, or (None, None)."""
    latitude: float | None = _finite_float(raw_latitude)
    longitude: float | None = _finite_float(raw_longitude)

    if not is_valid_coordinate(latitude, longitude):
        return None, None
    return latitude, longitude


def resolve_signal_strength(raw_level: Any) -> int | None:
    """Map a CSQ rx level code to percent; unknown codes give None."""
    level: float | None = _finite_float(raw_level)
    if level is None or not level.is_integer():
        return None
    return CSQ_SIGNAL_PERCENT.get(int(level))


def score_data_quality(
    has_coordinates: bool,
    speed_kmh: float,
    battery_level_pct: int | None,
    ignition_reported: bool,
    signal_strength_pct: int | None,
) -> DataQuality:
    """
    Grade sample completeness.

    Coordinates are worth two points; speed above zero, battery, ignition
    and signal one point each. Five or more is HIGH, three or more MEDIUM.
    """
    score: int = 0
    if has_coordinates:
        score += QUALITY_COORDINATES_POINTS
    if speed_kmh > 0:
        score += QUALITY_FIELD_POINTS
    if battery_level_pct is not None:
        score += QUALITY_FIELD_POINTS
    if ignition_reported:
        score += QUALITY_FIELD_POINTS
    if signal_strength_pct is not None:
        score += QUALITY_FIELD_POINTS

    if score >= QUALITY_HIGH_MIN_SCORE:
        return DataQuality.HIGH
    if score >= QUALITY_MEDIUM_MIN_SCORE:
        return DataQuality.MEDIUM
    return DataQuality.LOW


class TelemetryNormalizer:
    """
    Converts raw provider samples into canonical samples.

    Example:
        >>> normalizer = TelemetryNormalizer(NormalizerConfig())
        >>> sample = normalizer.normalize(raw_sample)
        >>> sample.speed_kmh, sample.ignition_on
        (42.5, True)
    """

    def __init__(self, config: NormalizerConfig | None = None) -> None:
        self._config: NormalizerConfig = config or NormalizerConfig()

    @property
    def config(self) -> NormalizerConfig:
        return self._config

    def normalize(
        self,
        raw: RawSample,
        received_at: datetime | None = None,
    ) -> CanonicalSample:
        """
        Normalize one raw sample.

        Args:
            raw: Unprocessed provider sample.
            received_at: Fallback time when the sample carries no usable
                timestamp. Defaults to now.

        Returns:
            CanonicalSample. Never raises for malformed field values.
        """
        config: NormalizerConfig = self._config

        speed_kmh: float = resolve_speed_kmh(
            raw.speed,
            unit_threshold=config.speed_unit_threshold,
            noise_floor_kmh=config.noise_floor_kmh,
            max_speed_kmh=config.max_speed_kmh,
        )

        latitude, longitude = resolve_coordinates(raw.latitude, raw.longitude)

        ignition: IgnitionReading = score_ignition(
            raw.status,
            speed_kmh,
            status_text=raw.status_text,
            on_threshold=config.ignition_on_threshold,
            speed_threshold_kmh=config.motion_threshold_kmh,
            device_id=raw.device_id,
        )
        ignition_reported: bool = (
            parse_status_word(raw.status) is not None
            or parse_acc_text(raw.status_text) is not None
        )

        profile: BatteryProfile = config.profile_for_device(raw.device_id)
        battery_level: int | None = resolve_battery_level(
            raw.battery_percent,
            raw.battery_voltage,
            raw.external_voltage,
            profile,
        )

        signal_strength: int | None = resolve_signal_strength(raw.signal_level)

        timestamp, timestamp_source, timestamp_fallback = self._resolve_timestamp(
            raw, received_at
        )

        moving_flag: float | None = _finite_float(raw.moving)
        is_moving: bool = speed_kmh > config.motion_threshold_kmh or (
            moving_flag == 1 and speed_kmh > 0
        )

        data_quality: DataQuality = score_data_quality(
            has_coordinates=latitude is not None,
            speed_kmh=speed_kmh,
            battery_level_pct=battery_level,
            ignition_reported=ignition_reported,
            signal_strength_pct=signal_strength,
        )
        if timestamp_fallback:
            data_quality = DataQuality.LOW

        heading: float | None = _finite_float(raw.heading)
        altitude: float | None = _finite_float(raw.altitude)

        return CanonicalSample(
            device_id=raw.device_id,
            timestamp=timestamp,
            timestamp_source=timestamp_source,
            latitude=latitude,
            longitude=longitude,
            speed_kmh=speed_kmh,
            ignition=ignition,
            ignition_reported=ignition_reported,
            battery_level_pct=battery_level,
            signal_strength_pct=signal_strength,
            heading=heading % 360 if heading is not None else None,
            altitude=altitude,
            is_moving=is_moving,
            data_quality=data_quality,
        )

    def normalize_series(
        self,
        raw_samples: Iterable[RawSample],
        received_at: datetime | None = None,
    ) -> list[CanonicalSample]:
        """
        Normalize a device series and put it in processing order.

        The result is sorted by timestamp. When several samples share a
        timestamp, the first one with coordinates wins (otherwise the first
        one seen) and the rest are dropped. Ignition conflicts are reported
        in one WARNING per device, with counts by detection method.

        Args:
            raw_samples: Raw samples of one device, any order.
            received_at: Fallback time for samples without timestamps.

        Returns:
            Time-ordered canonical samples with unique timestamps.
        """
        by_timestamp: dict[datetime, CanonicalSample] = {}
        dropped: int = 0
        conflicts: dict[str, Counter[str]] = {}

        for raw in raw_samples:
            sample: CanonicalSample = self.normalize(raw, received_at)
            if sample.ignition.is_conflict:
                conflicts.setdefault(sample.device_id, Counter())[
                    sample.ignition.detection_method.value
                ] += 1
            existing: CanonicalSample | None = by_timestamp.get(sample.timestamp)
            if existing is None:
                by_timestamp[sample.timestamp] = sample
                continue
            dropped += 1
            if not existing.has_coordinates and sample.has_coordinates:
                by_timestamp[sample.timestamp] = sample

        if dropped:
            logger.debug('Dropped %d samples with duplicate timestamps', dropped)

        for device_id, by_method in conflicts.items():
            logger.warning(
                'Ignition conflict for device %s: %d sample(s) with evidence but no '
                'ACC bit (%s); treated as OFF',
                device_id,
                by_method.total(),
                ', '.join(f'{method}={count}' for method, count in sorted(by_method.items())),
            )

        return [by_timestamp[timestamp] for timestamp in sorted(by_timestamp)]

    @staticmethod
    def _resolve_timestamp(
        raw: RawSample,
        received_at: datetime | None,
    ) -> tuple[datetime, TimestampSource, bool]:
        """Pick device time, then server time, then the receipt time."""
        if raw.device_time is not None:
            return _truncate(raw.device_time), TimestampSource.GPS, False
        if raw.server_time is not None:
            return _truncate(raw.server_time), TimestampSource.SERVER, False

        logger.debug('Sample from %s has no timestamp; using receipt time', raw.device_id)
        fallback: datetime = received_at or datetime.now(UTC)
        return _truncate(fallback), TimestampSource.SERVER, True


def _truncate(moment: datetime) -> datetime:
    """Normalize to aware UTC with whole seconds."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).replace(microsecond=0)
