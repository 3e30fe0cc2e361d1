"""
Tests for fleet_trip_engine.storage module.

Tests the trip, cursor and vehicle-state repositories against a temporary
SQLite database.
"""

from datetime import UTC, datetime, timedelta

import pandas as pd
import pytest

from conftest import (
    BASE_LATITUDE,
    BASE_LONGITUDE,
    DEVICE_ID,
    OTHER_DEVICE_ID,
    latitude_after_km,
    make_sample,
    make_trip,
)
from fleet_trip_engine.models import StoredTrip, SyncCursor, SyncStatus, TripSource
from fleet_trip_engine.schema import TRIP_COLUMNS
from fleet_trip_engine.storage import (
    Database,
    FieldFillResult,
    MileageSummary,
    SyncCursorRepository,
    TripRepository,
    VehicleStateRepository,
)

# =============================================================================
# Trip repository
# =============================================================================


class TestTripStorage:
    """Test inserting and reading trips."""

    def test_insert_and_read_back(self, trip_repository: TripRepository, t0: datetime) -> None:
        """Should store a trip and return it with aware UTC datetimes."""
        trip = make_trip(t0, 600)

        assert trip_repository.insert_many([trip]) == 1

        stored: list[StoredTrip] = trip_repository.list_trips(DEVICE_ID)
        assert len(stored) == 1
        assert stored[0].key == trip.key
        assert stored[0].start_time.tzinfo is not None
        assert stored[0].source is TripSource.DERIVED

    def test_duplicate_key_is_ignored(
        self, trip_repository: TripRepository, t0: datetime
    ) -> None:
        """Should never store two trips with the same key."""
        trip = make_trip(t0, 600)

        trip_repository.insert_many([trip])
        assert trip_repository.insert_many([trip]) == 0
        assert trip_repository.count() == 1

    def test_list_filters(self, trip_repository: TripRepository, t0: datetime) -> None:
        """Should filter by device and start time."""
        trip_repository.insert_many(
            [
                make_trip(t0, 600),
                make_trip(t0 + timedelta(hours=1), 600),
                make_trip(t0, 600, device_id=OTHER_DEVICE_ID),
            ]
        )

        assert trip_repository.count(DEVICE_ID) == 2
        assert len(trip_repository.list_trips(start=t0 + timedelta(minutes=30))) == 1
        assert len(trip_repository.list_trips(end=t0 + timedelta(minutes=30))) == 2
        assert trip_repository.device_ids() == [DEVICE_ID, OTHER_DEVICE_ID]

    def test_trips_dataframe_follows_schema(
        self, trip_repository: TripRepository, t0: datetime
    ) -> None:
        """Should return the export layout with typed columns."""
        trip_repository.insert_many(
            [make_trip(t0, 600), make_trip(t0 + timedelta(hours=1), 600, distance_km=None)]
        )

        dataframe: pd.DataFrame = trip_repository.trips_dataframe()

        assert list(dataframe.columns) == TRIP_COLUMNS
        assert len(dataframe) == 2
        assert str(dataframe['start_time'].dt.tz) == 'UTC'
        assert pd.isna(dataframe.loc[1, 'distance_km'])

    def test_empty_dataframe(self, trip_repository: TripRepository) -> None:
        """Should return an empty frame with the schema columns."""
        dataframe: pd.DataFrame = trip_repository.trips_dataframe()

        assert dataframe.empty
        assert list(dataframe.columns) == TRIP_COLUMNS


class TestMileageSummary:
    """Test TripRepository.mileage_summary()."""

    def test_rolls_up_day_week_month(self, trip_repository: TripRepository) -> None:
        """Should sum trips by the calendar period they start in."""
        trip_repository.insert_many(
            [
                make_trip(datetime(2024, 6, 12, 8, 0, tzinfo=UTC), 600, distance_km=5.0),
                make_trip(datetime(2024, 6, 10, 8, 0, tzinfo=UTC), 600, distance_km=10.0),
                make_trip(datetime(2024, 6, 3, 8, 0, tzinfo=UTC), 600, distance_km=20.0),
                make_trip(datetime(2024, 5, 31, 8, 0, tzinfo=UTC), 600, distance_km=7.0),
            ]
        )

        summary: MileageSummary = trip_repository.mileage_summary(
            DEVICE_ID, now=datetime(2024, 6, 12, 15, 0, tzinfo=UTC)
        )

        assert summary.today_km == 5.0
        assert summary.week_km == 15.0
        assert summary.month_km == 35.0
        assert summary.today_trips == 1
        assert summary.week_trips == 2

    def test_respects_timezone(self, trip_repository: TripRepository) -> None:
        """Should use the local calendar day of the requested zone."""
        trip_repository.insert_many(
            [make_trip(datetime(2024, 6, 11, 20, 0, tzinfo=UTC), 600, distance_km=3.0)]
        )

        summary: MileageSummary = trip_repository.mileage_summary(
            DEVICE_ID, now=datetime(2024, 6, 12, 3, 0, tzinfo=UTC), tz='Asia/Shanghai'
        )

        assert summary.today_km == 3.0
        assert summary.timezone == 'Asia/Shanghai'


class TestFillMissingFields:
    """Test TripRepository.fill_missing_fields()."""

    def test_fills_null_end_and_distance(
        self, trip_repository: TripRepository, t0: datetime
    ) -> None:
        """Should fill the end fix, derive the distance and mark the trip reconciled."""
        trip_repository.insert_many(
            [make_trip(t0, 600, end_coordinates=None, distance_km=None)]
        )
        trip_id: int = trip_repository.list_trips()[0].id

        result: FieldFillResult = trip_repository.fill_missing_fields(
            trip_id,
            start_coordinates=(BASE_LATITUDE + 1.0, BASE_LONGITUDE),
            end_coordinates=(latitude_after_km(5.0), BASE_LONGITUDE),
        )

        assert result.start_filled is False
        assert result.end_filled is True
        assert result.distance_km == pytest.approx(5.0, abs=0.01)
        stored: StoredTrip | None = trip_repository.get(trip_id)
        assert stored is not None
        assert stored.start_latitude == BASE_LATITUDE
        assert stored.source is TripSource.RECONCILED

    def test_second_fill_is_noop(self, trip_repository: TripRepository, t0: datetime) -> None:
        """Should never overwrite values that are already set."""
        trip_repository.insert_many(
            [make_trip(t0, 600, end_coordinates=None, distance_km=None)]
        )
        trip_id: int = trip_repository.list_trips()[0].id
        end: tuple[float, float] = (latitude_after_km(5.0), BASE_LONGITUDE)

        trip_repository.fill_missing_fields(trip_id, None, end)
        second: FieldFillResult = trip_repository.fill_missing_fields(
            trip_id, None, (latitude_after_km(9.0), BASE_LONGITUDE)
        )

        assert second.changed is False
        stored: StoredTrip | None = trip_repository.get(trip_id)
        assert stored is not None
        assert stored.end_latitude == pytest.approx(end[0])

    def test_keeps_known_distance(self, trip_repository: TripRepository, t0: datetime) -> None:
        """Should not recompute a non-zero distance."""
        trip_repository.insert_many([make_trip(t0, 600, end_coordinates=None, distance_km=7.5)])
        trip_id: int = trip_repository.list_trips()[0].id

        result: FieldFillResult = trip_repository.fill_missing_fields(
            trip_id, None, (latitude_after_km(5.0), BASE_LONGITUDE)
        )

        assert result.end_filled is True
        assert result.distance_km is None
        stored: StoredTrip | None = trip_repository.get(trip_id)
        assert stored is not None
        assert stored.distance_km == 7.5

    def test_needing_reconciliation(
        self, trip_repository: TripRepository, t0: datetime
    ) -> None:
        """Should select trips with missing coordinates or zero distance."""
        trip_repository.insert_many(
            [
                make_trip(t0, 600),
                make_trip(t0 + timedelta(hours=1), 600, distance_km=0.0),
                make_trip(t0 + timedelta(hours=2), 600, start_coordinates=None),
            ]
        )

        candidates: list[StoredTrip] = trip_repository.trips_needing_reconciliation(
            since=t0 - timedelta(days=1)
        )

        assert [trip.start_time for trip in candidates] == [
            t0 + timedelta(hours=2),
            t0 + timedelta(hours=1),
        ]


# =============================================================================
# Cursor repository
# =============================================================================


class TestSyncCursorRepository:
    """Test claim and state transitions of sync cursors."""

    def test_claim_is_exclusive(
        self, cursor_repository: SyncCursorRepository, now: datetime
    ) -> None:
        """Should let only one caller hold a device."""
        first: SyncCursor | None = cursor_repository.claim(DEVICE_ID, now)
        second: SyncCursor | None = cursor_repository.claim(DEVICE_ID, now)

        assert first is not None
        assert first.sync_status is SyncStatus.PROCESSING
        assert first.claimed_at == now
        assert second is None

    def test_complete_advances_cursor(
        self, cursor_repository: SyncCursorRepository, now: datetime
    ) -> None:
        """Should record success and accumulate trip counters."""
        cursor: SyncCursor | None = cursor_repository.claim(DEVICE_ID, now)
        assert cursor is not None

        assert cursor_repository.complete(
            cursor,
            synced_until=now,
            pending_trip_start=now - timedelta(minutes=5),
            samples_processed=40,
            trips_inserted=2,
            trips_skipped=1,
            trips_replaced=0,
            now=now,
        )

        stored: SyncCursor | None = cursor_repository.get(DEVICE_ID)
        assert stored is not None
        assert stored.sync_status is SyncStatus.COMPLETED
        assert stored.last_synced_at == now
        assert stored.pending_trip_start == now - timedelta(minutes=5)
        assert stored.trips_inserted == 2
        assert stored.consecutive_failures == 0

    def test_fail_keeps_last_synced(
        self, cursor_repository: SyncCursorRepository, now: datetime
    ) -> None:
        """Should record the error without moving last_synced_at."""
        cursor = cursor_repository.claim(DEVICE_ID, now)
        assert cursor is not None
        cursor_repository.complete(cursor, now, None, 1, 0, 0, 0, now)

        later: datetime = now + timedelta(minutes=15)
        retry = cursor_repository.claim(DEVICE_ID, later)
        assert retry is not None
        assert cursor_repository.fail(
            retry, 'boom', consecutive_failures=1, next_attempt_at=later, now=later
        )

        stored: SyncCursor | None = cursor_repository.get(DEVICE_ID)
        assert stored is not None
        assert stored.sync_status is SyncStatus.ERROR
        assert stored.last_synced_at == now
        assert stored.error_message == 'boom'
        assert stored.next_attempt_at == later

    def test_release_returns_to_idle(
        self, cursor_repository: SyncCursorRepository, now: datetime
    ) -> None:
        """Should free a claim without recording an outcome."""
        cursor = cursor_repository.claim(DEVICE_ID, now)
        assert cursor is not None

        assert cursor_repository.release(cursor, now)
        stored: SyncCursor | None = cursor_repository.get(DEVICE_ID)
        assert stored is not None
        assert stored.sync_status is SyncStatus.IDLE

    def test_watchdog_resets_stuck_claims(
        self, cursor_repository: SyncCursorRepository, now: datetime
    ) -> None:
        """Should reset old claims and make the stale holder lose its claim."""
        stale = cursor_repository.claim(DEVICE_ID, now)
        assert stale is not None
        fresh_time: datetime = now + timedelta(minutes=9)
        assert cursor_repository.claim(OTHER_DEVICE_ID, fresh_time) is not None

        reset: list[str] = cursor_repository.reset_stuck(
            now + timedelta(minutes=11), timeout=timedelta(minutes=10)
        )

        assert reset == [DEVICE_ID]
        assert cursor_repository.complete(stale, now, None, 0, 0, 0, 0, now) is False

    def test_list_all(self, cursor_repository: SyncCursorRepository) -> None:
        """Should list cursors ordered by device id."""
        cursor_repository.ensure(OTHER_DEVICE_ID)
        cursor_repository.ensure(DEVICE_ID)
        cursor_repository.ensure(DEVICE_ID)

        assert [cursor.device_id for cursor in cursor_repository.list_all()] == [
            DEVICE_ID,
            OTHER_DEVICE_ID,
        ]


# =============================================================================
# Vehicle state repository
# =============================================================================


class TestVehicleStateRepository:
    """Test the forward-only latest-state upsert."""

    def test_upsert_moves_forward_only(
        self, vehicle_state_repository: VehicleStateRepository, t0: datetime
    ) -> None:
        """Should ignore states older than the stored one."""
        assert vehicle_state_repository.upsert_latest(make_sample(t0, speed_kmh=30.0))
        assert not vehicle_state_repository.upsert_latest(
            make_sample(t0 - timedelta(minutes=1), speed_kmh=80.0)
        )

        latest = vehicle_state_repository.latest(DEVICE_ID)
        assert latest is not None
        assert latest.timestamp == t0
        assert latest.speed_kmh == 30.0

        assert vehicle_state_repository.upsert_latest(
            make_sample(t0 + timedelta(minutes=1), speed_kmh=45.0, ignition_on=True)
        )
        latest = vehicle_state_repository.latest(DEVICE_ID)
        assert latest is not None
        assert latest.speed_kmh == 45.0
        assert latest.ignition_on is True

    def test_latest_all(
        self, vehicle_state_repository: VehicleStateRepository, t0: datetime
    ) -> None:
        """Should hold one state per device."""
        changed: int = vehicle_state_repository.upsert_many(
            [
                make_sample(t0, device_id=DEVICE_ID),
                make_sample(t0, device_id=OTHER_DEVICE_ID),
            ]
        )

        assert changed == 2
        assert len(vehicle_state_repository.latest_all()) == 2
        assert vehicle_state_repository.latest('unknown') is None


class TestDatabase:
    """Test Database construction."""

    def test_in_memory_sqlite(self) -> None:
        """Should create tables in a shared in-memory database."""
        database = Database('sqlite:///:memory:')
        database.create_all()

        repository = TripRepository(database)
        repository.insert_many([make_trip(datetime(2024, 1, 1, tzinfo=UTC), 600)])

        assert repository.count() == 1
        database.dispose()

