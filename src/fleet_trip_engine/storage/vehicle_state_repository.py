# fleet_trip_engine/storage/vehicle_state_repository.py
"""
Latest-known state per vehicle.

One row per device holding its most recent canonical sample. Upserts only
move forward in time: a late-arriving older sample never replaces a newer
state.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select

from fleet_trip_engine.models import (
    CanonicalSample,
    DataQuality,
    DetectionMethod,
    IgnitionReading,
    TimestampSource,
)
from fleet_trip_engine.storage.database import Database, VehicleStateRecord

__all__: list[str] = ['VehicleStateRepository']

logger: logging.Logger = logging.getLogger(__name__)


class VehicleStateRepository:
    """Upserts and reads the latest canonical sample per device."""

    def __init__(self, database: Database) -> None:
        self._database: Database = database

    def upsert_latest(self, sample: CanonicalSample, now: datetime | None = None) -> bool:
        """
        Store the sample as the device's state if it is newer than the stored one.

        Returns:
            True when the stored state changed.
        """
        values: dict[str, Any] = _to_values(sample)
        values['updated_at'] = now or datetime.now(UTC)

        statement: Any = self._database.insert_statement(VehicleStateRecord).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=['device_id'],
            set_={
                column: statement.excluded[column]
                for column in values
                if column != 'device_id'
            },
            where=VehicleStateRecord.recorded_at < statement.excluded.recorded_at,
        )

        with self._database.session() as session:
            result: Any = session.execute(statement)
            changed: bool = bool(result.rowcount)

        if not changed:
            logger.debug(
                'Device %s: ignoring state at %s, stored state is newer',
                sample.device_id,
                sample.timestamp.isoformat(),
            )
        return changed

    def upsert_many(self, samples: Iterable[CanonicalSample], now: datetime | None = None) -> int:
        """Upsert each sample; returns how many states changed."""
        return sum(1 for sample in samples if self.upsert_latest(sample, now))

    def latest(self, device_id: str) -> CanonicalSample | None:
        with self._database.session() as session:
            record: VehicleStateRecord | None = session.get(VehicleStateRecord, device_id)
            return _to_sample(record) if record is not None else None

    def latest_all(self) -> list[CanonicalSample]:
        with self._database.session() as session:
            records = session.scalars(
                select(VehicleStateRecord).order_by(VehicleStateRecord.device_id)
            )
            return [_to_sample(record) for record in records]


def _to_values(sample: CanonicalSample) -> dict[str, Any]:
    return {
        'device_id': sample.device_id,
        'recorded_at': sample.timestamp,
        'timestamp_source': sample.timestamp_source.value,
        'latitude': sample.latitude,
        'longitude': sample.longitude,
        'speed_kmh': sample.speed_kmh,
        'heading': sample.heading,
        'altitude': sample.altitude,
        'ignition_on': sample.ignition_on,
        'ignition_confidence': sample.ignition_confidence,
        'detection_method': sample.detection_method.value,
        'ignition_reported': sample.ignition_reported,
        'battery_level_pct': sample.battery_level_pct,
        'signal_strength_pct': sample.signal_strength_pct,
        'is_moving': sample.is_moving,
        'data_quality': sample.data_quality.value,
    }


def _to_sample(record: VehicleStateRecord) -> CanonicalSample:
    return CanonicalSample(
        device_id=record.device_id,
        timestamp=record.recorded_at,
        timestamp_source=TimestampSource(record.timestamp_source),
        latitude=record.latitude,
        longitude=record.longitude,
        speed_kmh=record.speed_kmh,
        ignition=IgnitionReading(
            ignition_on=record.ignition_on,
            confidence=record.ignition_confidence,
            detection_method=DetectionMethod(record.detection_method),
        ),
        ignition_reported=record.ignition_reported,
        battery_level_pct=record.battery_level_pct,
        signal_strength_pct=record.signal_strength_pct,
        heading=record.heading,
        altitude=record.altitude,
        is_moving=record.is_moving,
        data_quality=DataQuality(record.data_quality),
    )
