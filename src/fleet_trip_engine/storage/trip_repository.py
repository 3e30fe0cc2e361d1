# fleet_trip_engine/storage/trip_repository.py
"""
Trip persistence and read surfaces.

Write paths are deliberately narrow: trips are inserted with an atomic
insert-if-absent, deleted only by the persistence gate when replacing them
with a more complete version, and updated in place only to fill fields that
are still NULL. The read paths serve lists, DataFrames and mileage rollups.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import pandas as pd
from pydantic import BaseModel, ConfigDict
from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.orm import Session

from fleet_trip_engine.common.geo import haversine_km
from fleet_trip_engine.models import DataQuality, StoredTrip, Trip, TripSource
from fleet_trip_engine.schema import TRIP_COLUMNS, enforce_trip_schema
from fleet_trip_engine.storage.database import Database, TripRecord

__all__: list[str] = ['FieldFillResult', 'MileageSummary', 'TripRepository']

logger: logging.Logger = logging.getLogger(__name__)

TRIP_KEY_COLUMNS: tuple[str, ...] = ('device_id', 'start_time', 'end_time')


class FieldFillResult(BaseModel):
    """Which NULL fields of a trip were filled by one reconciliation update."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    start_filled: bool = False
    end_filled: bool = False
    distance_km: float | None = None

    @property
    def changed(self) -> bool:
        return self.start_filled or self.end_filled or self.distance_km is not None


class MileageSummary(BaseModel):
    """
    Distance and trip-count rollups for one device.

    Day, week (Monday start) and month boundaries are taken in the requested
    timezone; a trip counts toward a period when it starts inside it.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str
    timezone: str
    today_km: float = 0.0
    week_km: float = 0.0
    month_km: float = 0.0
    today_trips: int = 0
    week_trips: int = 0


class TripRepository:
    """
    Stores and reads trips.

    Methods that take a `session` participate in the caller's transaction
    (the persistence gate needs lookup, delete and insert to commit together);
    the rest open their own.
    """

    def __init__(self, database: Database) -> None:
        self._database: Database = database

    @property
    def database(self) -> Database:
        return self._database

    # =========================================================================
    # Gate primitives (caller-owned transaction)
    # =========================================================================

    def find_overlapping(
        self,
        session: Session,
        device_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> list[StoredTrip]:
        """Stored trips of the device whose interval intersects [start, end]."""
        statement: Select[tuple[TripRecord]] = (
            select(TripRecord)
            .where(
                TripRecord.device_id == device_id,
                TripRecord.start_time < end_time,
                TripRecord.end_time > start_time,
            )
            .order_by(TripRecord.start_time)
        )
        return [_to_stored_trip(record) for record in session.scalars(statement)]

    def insert_if_absent(self, session: Session, trip: Trip, now: datetime) -> int | None:
        """
        Insert a trip unless its (device_id, start_time, end_time) already exists.

        Returns:
            The new trip id, or None when the key was already present.
        """
        values: dict[str, Any] = trip.model_dump(include=set(Trip.model_fields))
        values['source'] = trip.source.value
        values['data_quality'] = trip.data_quality.value
        values['created_at'] = now
        values['updated_at'] = now
        return self._database.insert_if_absent(session, TripRecord, values, TRIP_KEY_COLUMNS)

    def delete_ids(self, session: Session, trip_ids: Sequence[int]) -> int:
        if not trip_ids:
            return 0
        result: Any = session.execute(delete(TripRecord).where(TripRecord.id.in_(trip_ids)))
        return int(result.rowcount or 0)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def trips_needing_reconciliation(
        self,
        since: datetime,
        limit: int | None = None,
    ) -> list[StoredTrip]:
        """
        Trips starting at or after `since` with a NULL coordinate or a
        NULL/zero distance, newest first. Trips marked exhausted by an
        earlier sweep are left out.
        """
        statement: Select[tuple[TripRecord]] = (
            select(TripRecord)
            .where(
                TripRecord.start_time >= since,
                TripRecord.reconcile_exhausted_at.is_(None),
                or_(
                    TripRecord.start_latitude.is_(None),
                    TripRecord.start_longitude.is_(None),
                    TripRecord.end_latitude.is_(None),
                    TripRecord.end_longitude.is_(None),
                    TripRecord.distance_km.is_(None),
                    TripRecord.distance_km == 0,
                ),
            )
            .order_by(TripRecord.start_time.desc())
        )
        if limit is not None:
            statement = statement.limit(limit)

        with self._database.session() as session:
            return [_to_stored_trip(record) for record in session.scalars(statement)]

    def fill_missing_fields(
        self,
        trip_id: int,
        start_coordinates: tuple[float, float] | None,
        end_coordinates: tuple[float, float] | None,
        now: datetime | None = None,
    ) -> FieldFillResult:
        """
        Fill NULL coordinates and, once both ends are known, a NULL/zero distance.

        Every UPDATE is guarded by an `IS NULL` (or zero distance) predicate,
        so values written by sync or by an earlier run are never overwritten
        and repeating the call is a no-op.

        Args:
            trip_id: Stored trip id.
            start_coordinates: (lat, lon) found near the trip start, if any.
            end_coordinates: (lat, lon) found near the trip end, if any.
            now: Timestamp for updated_at.

        Returns:
            FieldFillResult describing what changed.
        """
        timestamp: datetime = now or datetime.now(UTC)

        with self._database.session() as session:
            start_filled: bool = False
            if start_coordinates is not None:
                result: Any = session.execute(
                    update(TripRecord)
                    .where(
                        TripRecord.id == trip_id,
                        TripRecord.start_latitude.is_(None),
                        TripRecord.start_longitude.is_(None),
                    )
                    .values(
                        start_latitude=start_coordinates[0],
                        start_longitude=start_coordinates[1],
                        source=TripSource.RECONCILED.value,
                        updated_at=timestamp,
                    )
                    .execution_options(synchronize_session=False)
                )
                start_filled = result.rowcount == 1

            end_filled: bool = False
            if end_coordinates is not None:
                result = session.execute(
                    update(TripRecord)
                    .where(
                        TripRecord.id == trip_id,
                        TripRecord.end_latitude.is_(None),
                        TripRecord.end_longitude.is_(None),
                    )
                    .values(
                        end_latitude=end_coordinates[0],
                        end_longitude=end_coordinates[1],
                        source=TripSource.RECONCILED.value,
                        updated_at=timestamp,
                    )
                    .execution_options(synchronize_session=False)
                )
                end_filled = result.rowcount == 1

            row: Any = session.execute(
                select(
                    TripRecord.start_latitude,
                    TripRecord.start_longitude,
                    TripRecord.end_latitude,
                    TripRecord.end_longitude,
                    TripRecord.distance_km,
                ).where(TripRecord.id == trip_id)
            ).one_or_none()

            distance_km: float | None = None
            if (
                row is not None
                and None not in (row[0], row[1], row[2], row[3])
                and not row[4]
            ):
                candidate_km: float = round(haversine_km(row[0], row[1], row[2], row[3]), 2)
                if candidate_km > 0:
                    result = session.execute(
                        update(TripRecord)
                        .where(
                            TripRecord.id == trip_id,
                            or_(TripRecord.distance_km.is_(None), TripRecord.distance_km == 0),
                        )
                        .values(
                            distance_km=candidate_km,
                            source=TripSource.RECONCILED.value,
                            updated_at=timestamp,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        distance_km = candidate_km

        return FieldFillResult(
            start_filled=start_filled,
            end_filled=end_filled,
            distance_km=distance_km,
        )

    def mark_reconcile_exhausted(self, trip_id: int, now: datetime | None = None) -> bool:
        """
        Exclude a trip from later sweeps.

        Returns:
            True if the trip was still incomplete and is now marked.
        """
        with self._database.session() as session:
            result: Any = session.execute(
                update(TripRecord)
                .where(
                    TripRecord.id == trip_id,
                    TripRecord.reconcile_exhausted_at.is_(None),
                )
                .values(reconcile_exhausted_at=now or datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # =========================================================================
    # Read surfaces
    # =========================================================================

    def get(self, trip_id: int) -> StoredTrip | None:
        with self._database.session() as session:
            record: TripRecord | None = session.get(TripRecord, trip_id)
            return _to_stored_trip(record) if record is not None else None

    def count(self, device_id: str | None = None) -> int:
        statement: Any = select(func.count()).select_from(TripRecord)
        if device_id is not None:
            statement = statement.where(TripRecord.device_id == device_id)
        with self._database.session() as session:
            return int(session.execute(statement).scalar_one())

    def list_trips(
        self,
        device_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[StoredTrip]:
        """
        Trips ordered by device and start time.

        Args:
            device_id: Restrict to one device.
            start: Only trips starting at or after this time.
            end: Only trips starting before this time.
        """
        statement: Select[tuple[TripRecord]] = select(TripRecord).order_by(
            TripRecord.device_id, TripRecord.start_time
        )
        if device_id is not None:
            statement = statement.where(TripRecord.device_id == device_id)
        if start is not None:
            statement = statement.where(TripRecord.start_time >= start)
        if end is not None:
            statement = statement.where(TripRecord.start_time < end)

        with self._database.session() as session:
            return [_to_stored_trip(record) for record in session.scalars(statement)]

    def trips_dataframe(
        self,
        device_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> pd.DataFrame:
        """Trips as a DataFrame following schema.TRIP_COLUMNS."""
        trips: list[StoredTrip] = self.list_trips(device_id, start, end)
        rows: list[dict[str, Any]] = [
            trip.model_dump(mode='python', include=set(TRIP_COLUMNS)) for trip in trips
        ]
        for row in rows:
            row['source'] = row['source'].value
            row['data_quality'] = row['data_quality'].value

        dataframe: pd.DataFrame = pd.DataFrame(rows, columns=TRIP_COLUMNS)
        return enforce_trip_schema(dataframe)

    def mileage_summary(
        self,
        device_id: str,
        now: datetime | None = None,
        tz: ZoneInfo | str = 'UTC',
    ) -> MileageSummary:
        """
        Kilometres and trip counts for today, this week and this month.

        Args:
            device_id: Device to summarize.
            now: Reference time, defaults to the current time.
            tz: Timezone whose calendar defines the periods.
        """
        zone: ZoneInfo = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)
        local_now: datetime = (now or datetime.now(UTC)).astimezone(zone)

        day_start: datetime = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start: datetime = day_start - timedelta(days=day_start.weekday())
        month_start: datetime = day_start.replace(day=1)
        earliest: datetime = min(week_start, month_start)

        trips: list[StoredTrip] = self.list_trips(device_id, start=earliest.astimezone(UTC))
        trips = [trip for trip in trips if trip.start_time <= local_now]

        def _total_km(period_start: datetime) -> float:
            return round(
                sum(trip.distance_km or 0.0 for trip in trips if trip.start_time >= period_start),
                2,
            )

        def _trip_count(period_start: datetime) -> int:
            return sum(1 for trip in trips if trip.start_time >= period_start)

        return MileageSummary(
            device_id=device_id,
            timezone=str(zone),
            today_km=_total_km(day_start),
            week_km=_total_km(week_start),
            month_km=_total_km(month_start),
            today_trips=_trip_count(day_start),
            week_trips=_trip_count(week_start),
        )

    def device_ids(self) -> list[str]:
        """Distinct devices that have stored trips."""
        with self._database.session() as session:
            return list(
                session.scalars(
                    select(TripRecord.device_id).distinct().order_by(TripRecord.device_id)
                )
            )

    def insert_many(self, trips: Iterable[Trip], now: datetime | None = None) -> int:
        """
        Insert trips that are not already stored, bypassing overlap checks.

        Intended for seeding and tests; sync goes through the persistence gate.
        """
        timestamp: datetime = now or datetime.now(UTC)
        inserted: int = 0
        with self._database.session() as session:
            for trip in trips:
                if self.insert_if_absent(session, trip, timestamp) is not None:
                    inserted += 1
        return inserted


def _to_stored_trip(record: TripRecord) -> StoredTrip:
    return StoredTrip(
        id=record.id,
        device_id=record.device_id,
        start_time=record.start_time,
        end_time=record.end_time,
        start_latitude=record.start_latitude,
        start_longitude=record.start_longitude,
        end_latitude=record.end_latitude,
        end_longitude=record.end_longitude,
        distance_km=record.distance_km,
        avg_speed_kmh=record.avg_speed_kmh,
        max_speed_kmh=record.max_speed_kmh,
        duration_seconds=record.duration_seconds,
        source=TripSource(record.source),
        data_quality=DataQuality(record.data_quality),
        sample_count=record.sample_count,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
