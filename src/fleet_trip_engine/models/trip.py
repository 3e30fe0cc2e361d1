# fleet_trip_engine/models/trip.py
"""
Trip records derived from canonical samples.

A trip is a thin projection of its first and last samples plus summary
statistics. Its identity is (device_id, start_time, end_time); the storage
layer enforces that key with a unique constraint.
"""

from datetime import datetime
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fleet_trip_engine.models.canonical import DataQuality

__all__: list[str] = ['StoredTrip', 'Trip', 'TripKey', 'TripSource']

TripKey = tuple[str, datetime, datetime]


class TripSource(str, Enum):
    """How the stored values of a trip were obtained."""

    DERIVED = 'derived'
    RECONCILED = 'reconciled'


class Trip(BaseModel):
    """
    A contiguous movement episode of one device.

    Invariants enforced on construction:
        - end_time is strictly after start_time
        - duration_seconds equals end_time - start_time in whole seconds
        - each coordinate pair is either complete or absent

    Attributes:
        device_id: Provider device identifier.
        start_time: UTC time of the first sample.
        end_time: UTC time of the last sample.
        start_latitude: Latitude of the first sample, if it had a fix.
        start_longitude: Longitude of the first sample, if it had a fix.
        end_latitude: Latitude of the last sample, if it had a fix.
        end_longitude: Longitude of the last sample, if it had a fix.
        distance_km: Path length over coordinate-bearing samples.
        avg_speed_kmh: Mean of non-zero sample speeds, None if never moving.
        max_speed_kmh: Max of non-zero sample speeds, None if never moving.
        duration_seconds: end_time - start_time.
        source: Whether fields were derived or filled in by reconciliation.
        data_quality: LOW when the trip had too few fixes for distance math.
        sample_count: Samples assigned to the trip.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    start_latitude: float | None = None
    start_longitude: float | None = None
    end_latitude: float | None = None
    end_longitude: float | None = None
    distance_km: float | None = Field(default=None, ge=0.0)
    avg_speed_kmh: float | None = Field(default=None, ge=0.0)
    max_speed_kmh: float | None = Field(default=None, ge=0.0)
    duration_seconds: int = Field(gt=0)
    source: TripSource = TripSource.DERIVED
    data_quality: DataQuality = DataQuality.HIGH
    sample_count: int = Field(default=0, ge=0)

    @model_validator(mode='after')
    def validate_time_and_coordinates(self) -> Self:
        """Enforce ordering, duration consistency and coordinate pairing."""
        if self.end_time <= self.start_time:
            raise ValueError(
                f'end_time ({self.end_time.isoformat()}) must be after '
                f'start_time ({self.start_time.isoformat()})'
            )

        expected_duration: int = int((self.end_time - self.start_time).total_seconds())
        if self.duration_seconds != expected_duration:
            raise ValueError(
                f'duration_seconds ({self.duration_seconds}) does not match '
                f'end_time - start_time ({expected_duration})'
            )

        if (self.start_latitude is None) != (self.start_longitude is None):
            raise ValueError('start coordinates must both be set or both be None')
        if (self.end_latitude is None) != (self.end_longitude is None):
            raise ValueError('end coordinates must both be set or both be None')

        return self

    @property
    def key(self) -> TripKey:
        """Natural identity of the trip."""
        return (self.device_id, self.start_time, self.end_time)

    @property
    def has_start_coordinates(self) -> bool:
        return self.start_latitude is not None

    @property
    def has_end_coordinates(self) -> bool:
        return self.end_latitude is not None

    @property
    def needs_reconciliation(self) -> bool:
        """True when any coordinate is missing or the distance is unknown or zero."""
        return (
            not self.has_start_coordinates
            or not self.has_end_coordinates
            or not self.distance_km
        )


class StoredTrip(Trip):
    """A trip as read back from storage, with its surrogate id and audit times."""

    id: int
    created_at: datetime
    updated_at: datetime
