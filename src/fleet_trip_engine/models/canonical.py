# fleet_trip_engine/models/canonical.py
"""
Canonical telemetry records produced by the normalizer.

Every field has one unit and one meaning: speed is km/h, coordinates are
either a valid WGS84 pair or both None, battery and signal are percentages,
and the timestamp is UTC at whole-second resolution. Ignition is not a bare
boolean but an IgnitionReading carrying its confidence and the evidence it
was derived from.
"""

from datetime import datetime
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

__all__: list[str] = [
    'CanonicalSample',
    'DataQuality',
    'DetectionMethod',
    'IgnitionReading',
    'TimestampSource',
]


class DetectionMethod(str, Enum):
    """Which evidence an ignition reading was derived from."""

    MULTI_SIGNAL = 'multi_signal'
    STATUS_BIT = 'status_bit'
    EXTENDED_BIT = 'extended_bit'
    SPEED_ONLY = 'speed_only'
    STRING_PARSE = 'string_parse'
    NONE = 'none'


class TimestampSource(str, Enum):
    """Origin of a canonical timestamp."""

    GPS = 'gps'
    SERVER = 'server'


class DataQuality(str, Enum):
    """Coarse completeness grade for samples and trips."""

    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


class IgnitionReading(BaseModel):
    """
    Tagged ignition result.

    Attributes:
        ignition_on: Final decision.
        confidence: Evidence score in [0.0, 1.0].
        detection_method: Evidence the decision rests on.
        base_acc: Bit 0 of the low status half was set.
        extended_acc: Bit 0 of the high status half was set.
        speed_corroborated: Resolved speed exceeded the motion threshold.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    ignition_on: bool
    confidence: float = Field(ge=0.0, le=1.0)
    detection_method: DetectionMethod
    base_acc: bool = False
    extended_acc: bool = False
    speed_corroborated: bool = False

    @property
    def has_evidence(self) -> bool:
        """True when any signal contributed to the reading."""
        return self.detection_method is not DetectionMethod.NONE

    @property
    def is_conflict(self) -> bool:
        """True when some evidence was seen but not enough to turn ignition on."""
        return self.has_evidence and not self.ignition_on


class CanonicalSample(BaseModel):
    """
    A normalized, quality-scored device report.

    Attributes:
        device_id: Provider device identifier.
        timestamp: UTC time of the report, truncated to whole seconds.
        timestamp_source: Whether the time came from the GPS fix or the server.
        latitude: WGS84 latitude, None when the fix is missing or invalid.
        longitude: WGS84 longitude, None when the fix is missing or invalid.
        speed_kmh: Resolved speed in km/h, never negative.
        ignition: Tagged ignition reading.
        ignition_reported: The device sent a status word or status text.
        battery_level_pct: Battery state of charge, None when unknown.
        signal_strength_pct: GSM signal strength, None when unknown.
        heading: Course over ground in degrees.
        altitude: Altitude in metres.
        is_moving: Speed exceeded the motion threshold.
        data_quality: Completeness grade of this sample.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str = Field(min_length=1)
    timestamp: datetime
    timestamp_source: TimestampSource
    latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, ge=-180.0, le=180.0)
    speed_kmh: float = Field(default=0.0, ge=0.0)
    ignition: IgnitionReading
    ignition_reported: bool = False
    battery_level_pct: int | None = Field(default=None, ge=0, le=100)
    signal_strength_pct: int | None = Field(default=None, ge=0, le=100)
    heading: float | None = None
    altitude: float | None = None
    is_moving: bool = False
    data_quality: DataQuality = DataQuality.LOW

    @model_validator(mode='after')
    def validate_coordinate_pair(self) -> Self:
        """Coordinates are both present or both absent, and never (0, 0)."""
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError('latitude and longitude must both be set or both be None')
        if self.latitude == 0.0 and self.longitude == 0.0:
            raise ValueError('(0, 0) is not a valid coordinate')
        if self.timestamp.tzinfo is None:
            raise ValueError('timestamp must be timezone-aware')
        return self

    @property
    def has_coordinates(self) -> bool:
        """True when the sample carries a valid fix."""
        return self.latitude is not None and self.longitude is not None

    @property
    def ignition_on(self) -> bool:
        """Shortcut for ignition.ignition_on."""
        return self.ignition.ignition_on

    @property
    def ignition_confidence(self) -> float:
        """Shortcut for ignition.confidence."""
        return self.ignition.confidence

    @property
    def detection_method(self) -> DetectionMethod:
        """Shortcut for ignition.detection_method."""
        return self.ignition.detection_method
