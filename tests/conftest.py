"""
Shared pytest fixtures for fleet_trip_engine tests.

This module provides reusable fixtures and sample builders for common test
scenarios across all test modules. Fixtures are automatically discovered by
pytest.
"""

from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from fleet_trip_engine.config import EngineConfig, ProviderConfig
from fleet_trip_engine.models import (
    CanonicalSample,
    DataQuality,
    DetectionMethod,
    IgnitionReading,
    RawSample,
    TimestampSource,
    Trip,
)
from fleet_trip_engine.storage import (
    Database,
    SyncCursorRepository,
    TripRepository,
    VehicleStateRepository,
)

DEVICE_ID: str = '358899051234567'
OTHER_DEVICE_ID: str = '358899051234568'

# Kilometres per degree of latitude on the haversine sphere.
KM_PER_DEGREE_LATITUDE: float = 6371.0 * 3.141592653589793 / 180.0

BASE_LATITUDE: float = 31.2
BASE_LONGITUDE: float = 121.4


def latitude_after_km(distance_km: float, base_latitude: float = BASE_LATITUDE) -> float:
    """Latitude reached by travelling `distance_km` due north."""
    return base_latitude + distance_km / KM_PER_DEGREE_LATITUDE


# =============================================================================
# Time Fixtures
# =============================================================================


@pytest.fixture
def now() -> datetime:
    """
    Fixed reference time for a test.

    Returns:
        2024-06-12 12:00:00 UTC (a Wednesday).
    """
    return datetime(2024, 6, 12, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def t0(now: datetime) -> datetime:
    """
    Start of the synthetic drives, two hours before `now`.

    Args:
        now: Fixed reference time.

    Returns:
        Aware UTC datetime.
    """
    return now - timedelta(hours=2)


class FakeClock:
    """Manually advanced monotonic clock with a matching sleep function."""

    def __init__(self, start: float = 0.0) -> None:
        self.now: float = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    """
    Provide a deterministic clock for rate limiter tests.

    Returns:
        FakeClock starting at 0.0 seconds.
    """
    return FakeClock()


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def provider_config() -> ProviderConfig:
    """
    Provide provider settings pointing at a fake host.

    Returns:
        ProviderConfig with three attempts and a near-zero backoff factor.
    """
    return ProviderConfig(
        base_url='https://api.example.com/',
        token='test-token',
        server_id='1',
        max_retries=3,
        retry_backoff_factor=0.001,
        gmt_offset_hours=8,
        device_chunk_size=2,
    )


@pytest.fixture
def engine_config(provider_config: ProviderConfig, tmp_path: Path) -> EngineConfig:
    """
    Provide a complete engine configuration for two devices.

    Args:
        provider_config: Provider settings fixture.
        tmp_path: pytest built-in fixture providing unique temp directory.

    Returns:
        EngineConfig backed by a SQLite file in the temp directory.
    """
    return EngineConfig(
        provider=provider_config,
        storage={'database_url': f'sqlite:///{tmp_path / "trips.db"}'},
        sync={'max_workers': 2},
        devices=[DEVICE_ID, OTHER_DEVICE_ID],
    )


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest.fixture
def database(tmp_path: Path) -> Iterator[Database]:
    """
    Provide a SQLite database with all tables created.

    Args:
        tmp_path: pytest built-in fixture providing unique temp directory.

    Returns:
        Database; disposed after the test.
    """
    db = Database(f'sqlite:///{tmp_path / "trips.db"}')
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def trip_repository(database: Database) -> TripRepository:
    return TripRepository(database)


@pytest.fixture
def cursor_repository(database: Database) -> SyncCursorRepository:
    return SyncCursorRepository(database)


@pytest.fixture
def vehicle_state_repository(database: Database) -> VehicleStateRepository:
    return VehicleStateRepository(database)


# =============================================================================
# Sample Builders
# =============================================================================


def make_raw(
    timestamp: datetime | None,
    latitude: float | None = BASE_LATITUDE,
    longitude: float | None = BASE_LONGITUDE,
    speed: float | str | None = 0.0,
    status: int | str | None = None,
    device_id: str = DEVICE_ID,
    **fields: Any,
) -> RawSample:
    """Build a RawSample with a GPS timestamp."""
    return RawSample(
        device_id=device_id,
        latitude=latitude,
        longitude=longitude,
        speed=speed,
        status=status,
        device_time=timestamp,
        **fields,
    )


def make_sample(
    timestamp: datetime,
    latitude: float | None = BASE_LATITUDE,
    longitude: float | None = BASE_LONGITUDE,
    speed_kmh: float = 0.0,
    ignition_on: bool = False,
    ignition_confidence: float | None = None,
    ignition_reported: bool = False,
    device_id: str = DEVICE_ID,
) -> CanonicalSample:
    """Build a CanonicalSample directly, bypassing the normalizer."""
    if ignition_confidence is None:
        ignition_confidence = 0.8 if ignition_on else 0.0
    return CanonicalSample(
        device_id=device_id,
        timestamp=timestamp,
        timestamp_source=TimestampSource.GPS,
        latitude=latitude,
        longitude=longitude,
        speed_kmh=speed_kmh,
        ignition=IgnitionReading(
            ignition_on=ignition_on,
            confidence=ignition_confidence,
            detection_method=(
                DetectionMethod.MULTI_SIGNAL if ignition_on else DetectionMethod.NONE
            ),
        ),
        ignition_reported=ignition_reported,
        is_moving=speed_kmh > 3.0,
        data_quality=DataQuality.HIGH,
    )


def make_trip(
    start_time: datetime,
    duration_seconds: int,
    device_id: str = DEVICE_ID,
    start_coordinates: tuple[float, float] | None = (BASE_LATITUDE, BASE_LONGITUDE),
    end_coordinates: tuple[float, float] | None = (latitude_after_km(5.0), BASE_LONGITUDE),
    distance_km: float | None = 5.0,
    data_quality: DataQuality = DataQuality.HIGH,
) -> Trip:
    """Build a Trip with consistent duration and optional coordinates."""
    return Trip(
        device_id=device_id,
        start_time=start_time,
        end_time=start_time + timedelta(seconds=duration_seconds),
        start_latitude=start_coordinates[0] if start_coordinates else None,
        start_longitude=start_coordinates[1] if start_coordinates else None,
        end_latitude=end_coordinates[0] if end_coordinates else None,
        end_longitude=end_coordinates[1] if end_coordinates else None,
        distance_km=distance_km,
        avg_speed_kmh=60.0 if distance_km else None,
        max_speed_kmh=60.0 if distance_km else None,
        duration_seconds=duration_seconds,
        data_quality=data_quality,
        sample_count=11,
    )


def drive_raw_samples(
    start: datetime,
    moving_seconds: int = 300,
    idle_seconds: int = 300,
    step_seconds: int = 30,
    speed_kmh: float = 60.0,
    start_km: float = 0.0,
    status_moving: int | None = None,
    status_idle: int | None = None,
    device_id: str = DEVICE_ID,
) -> list[RawSample]:
    """
    Raw samples of one drive due north followed by a parked period.

    The vehicle moves at `speed_kmh` from `start` until `start +
    moving_seconds - step_seconds`, is stopped at the final position from
    `start + moving_seconds`, and keeps reporting until the idle period ends.
    """
    samples: list[RawSample] = []
    km_per_step: float = speed_kmh * step_seconds / 3600.0

    moving_steps: int = moving_seconds // step_seconds
    for step in range(moving_steps):
        samples.append(
            make_raw(
                start + timedelta(seconds=step * step_seconds),
                latitude=latitude_after_km(start_km + step * km_per_step),
                speed=speed_kmh,
                status=status_moving,
                device_id=device_id,
            )
        )

    final_km: float = start_km + moving_steps * km_per_step
    for offset in range(moving_seconds, moving_seconds + idle_seconds + 1, step_seconds):
        samples.append(
            make_raw(
                start + timedelta(seconds=offset),
                latitude=latitude_after_km(final_km),
                speed=0.0,
                status=status_idle,
                device_id=device_id,
            )
        )
    return samples


# =============================================================================
# Provider Fakes
# =============================================================================


class FakeSampleSource:
    """
    In-memory stand-in for the provider client.

    Track history is served from a per-device list filtered to
    [start, end). Set `errors` to a list of exceptions to raise them on the
    next calls, one per call.
    """

    def __init__(self) -> None:
        self.history: dict[str, list[RawSample]] = {}
        self.last_positions: list[RawSample] = []
        self.errors: list[Exception] = []
        self.track_calls: list[tuple[str, datetime, datetime]] = []
        self.position_calls: list[list[str]] = []

    def add_history(self, samples: Sequence[RawSample]) -> None:
        for sample in samples:
            self.history.setdefault(sample.device_id, []).append(sample)

    def fetch_track_history(
        self, device_id: str, start: datetime, end: datetime
    ) -> list[RawSample]:
        self.track_calls.append((device_id, start, end))
        if self.errors:
            raise self.errors.pop(0)
        return [
            sample
            for sample in self.history.get(device_id, [])
            if sample.device_time is not None and start <= sample.device_time < end
        ]

    def fetch_last_positions(self, device_ids: Sequence[str]) -> list[RawSample]:
        self.position_calls.append(list(device_ids))
        return [sample for sample in self.last_positions if sample.device_id in device_ids]


@pytest.fixture
def fake_source() -> FakeSampleSource:
    """
    Provide an empty fake provider.

    Returns:
        FakeSampleSource with no history.
    """
    return FakeSampleSource()


@pytest.fixture
def utc_clock(now: datetime) -> Callable[[], datetime]:
    """
    Provide a wall clock frozen at `now`.

    Args:
        now: Fixed reference time.

    Returns:
        Zero-argument callable returning `now`.
    """
    return lambda: now
