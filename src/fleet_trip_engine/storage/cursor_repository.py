# fleet_trip_engine/storage/cursor_repository.py
"""
Sync cursor persistence with compare-and-swap claims.

Claim Protocol:
---------------
A worker claims a device with a single conditional UPDATE:

    UPDATE sync_cursors SET sync_status='processing', claimed_at=:now
    WHERE device_id=:id AND sync_status != 'processing'

Exactly one concurrent caller sees rowcount == 1. Completion and failure
updates are conditioned on the same claimed_at value, so a worker whose
claim was reset by the watchdog (and possibly re-taken by another worker)
cannot overwrite the newer claim's outcome.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select, update

from fleet_trip_engine.models import SyncCursor, SyncStatus
from fleet_trip_engine.storage.database import Database, SyncCursorRecord

__all__: list[str] = ['SyncCursorRepository']

logger: logging.Logger = logging.getLogger(__name__)


class SyncCursorRepository:
    """Reads and transitions per-device sync cursors."""

    def __init__(self, database: Database) -> None:
        self._database: Database = database

    def ensure(self, device_id: str, now: datetime | None = None) -> None:
        """Create an idle cursor for the device if none exists."""
        with self._database.session() as session:
            self._database.insert_if_absent(
                session,
                SyncCursorRecord,
                {
                    'device_id': device_id,
                    'sync_status': SyncStatus.IDLE.value,
                    'consecutive_failures': 0,
                    'samples_processed': 0,
                    'trips_inserted': 0,
                    'trips_skipped': 0,
                    'trips_replaced': 0,
                    'updated_at': now or datetime.now(UTC),
                },
                ('device_id',),
            )

    def get(self, device_id: str) -> SyncCursor | None:
        with self._database.session() as session:
            record: SyncCursorRecord | None = session.get(SyncCursorRecord, device_id)
            return _to_cursor(record) if record is not None else None

    def list_all(self) -> list[SyncCursor]:
        with self._database.session() as session:
            records = session.scalars(
                select(SyncCursorRecord).order_by(SyncCursorRecord.device_id)
            )
            return [_to_cursor(record) for record in records]

    def claim(self, device_id: str, now: datetime) -> SyncCursor | None:
        """
        Atomically move the cursor to PROCESSING.

        Returns:
            The claimed cursor snapshot, or None if another worker holds it.
        """
        self.ensure(device_id, now)

        with self._database.session() as session:
            result: Any = session.execute(
                update(SyncCursorRecord)
                .where(
                    SyncCursorRecord.device_id == device_id,
                    SyncCursorRecord.sync_status != SyncStatus.PROCESSING.value,
                )
                .values(
                    sync_status=SyncStatus.PROCESSING.value,
                    claimed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.debug('Device %s already claimed by another worker', device_id)
                return None

            record: SyncCursorRecord | None = session.get(SyncCursorRecord, device_id)
            return _to_cursor(record) if record is not None else None

    def complete(
        self,
        cursor: SyncCursor,
        synced_until: datetime,
        pending_trip_start: datetime | None,
        samples_processed: int,
        trips_inserted: int,
        trips_skipped: int,
        trips_replaced: int,
        now: datetime,
    ) -> bool:
        """
        Record a successful run and advance the cursor.

        Counters for trips are cumulative; samples_processed reflects the
        latest run only.

        Returns:
            False if the claim was lost before completion.
        """
        with self._database.session() as session:
            result: Any = session.execute(
                update(SyncCursorRecord)
                .where(*self._claim_predicate(cursor))
                .values(
                    sync_status=SyncStatus.COMPLETED.value,
                    last_synced_at=synced_until,
                    pending_trip_start=pending_trip_start,
                    error_message=None,
                    consecutive_failures=0,
                    next_attempt_at=None,
                    samples_processed=samples_processed,
                    trips_inserted=SyncCursorRecord.trips_inserted + trips_inserted,
                    trips_skipped=SyncCursorRecord.trips_skipped + trips_skipped,
                    trips_replaced=SyncCursorRecord.trips_replaced + trips_replaced,
                    last_success_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return self._check_claim(result, cursor, 'complete')

    def fail(
        self,
        cursor: SyncCursor,
        error_message: str,
        consecutive_failures: int,
        next_attempt_at: datetime | None,
        now: datetime,
    ) -> bool:
        """
        Record a failed run. last_synced_at is left untouched so the same
        window is retried.

        Returns:
            False if the claim was lost before the failure was recorded.
        """
        with self._database.session() as session:
            result: Any = session.execute(
                update(SyncCursorRecord)
                .where(*self._claim_predicate(cursor))
                .values(
                    sync_status=SyncStatus.ERROR.value,
                    error_message=error_message,
                    consecutive_failures=consecutive_failures,
                    next_attempt_at=next_attempt_at,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return self._check_claim(result, cursor, 'fail')

    def release(self, cursor: SyncCursor, now: datetime) -> bool:
        """Return a claimed cursor to IDLE without recording an outcome."""
        with self._database.session() as session:
            result: Any = session.execute(
                update(SyncCursorRecord)
                .where(*self._claim_predicate(cursor))
                .values(sync_status=SyncStatus.IDLE.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return self._check_claim(result, cursor, 'release')

    def reset_stuck(self, now: datetime, timeout: timedelta) -> list[str]:
        """
        Reset cursors stuck in PROCESSING for longer than `timeout` to IDLE.

        Returns:
            Device ids that were reset.
        """
        cutoff: datetime = now - timeout

        with self._database.session() as session:
            stuck_ids: list[str] = list(
                session.scalars(
                    select(SyncCursorRecord.device_id).where(
                        SyncCursorRecord.sync_status == SyncStatus.PROCESSING.value,
                        SyncCursorRecord.claimed_at < cutoff,
                    )
                )
            )
            if not stuck_ids:
                return []

            reset_ids: list[str] = []
            for device_id in stuck_ids:
                result: Any = session.execute(
                    update(SyncCursorRecord)
                    .where(
                        SyncCursorRecord.device_id == device_id,
                        SyncCursorRecord.sync_status == SyncStatus.PROCESSING.value,
                        SyncCursorRecord.claimed_at < cutoff,
                    )
                    .values(
                        sync_status=SyncStatus.IDLE.value,
                        error_message=(
                            f'Reset by watchdog after exceeding {timeout} in processing'
                        ),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    reset_ids.append(device_id)

        return reset_ids

    @staticmethod
    def _claim_predicate(cursor: SyncCursor) -> tuple[Any, ...]:
        return (
            SyncCursorRecord.device_id == cursor.device_id,
            SyncCursorRecord.sync_status == SyncStatus.PROCESSING.value,
            SyncCursorRecord.claimed_at == cursor.claimed_at,
        )

    @staticmethod
    def _check_claim(result: Any, cursor: SyncCursor, operation: str) -> bool:
        if result.rowcount == 1:
            return True
        logger.warning(
            'Device %s: could not %s cursor, claim taken at %s is no longer held',
            cursor.device_id,
            operation,
            cursor.claimed_at.isoformat() if cursor.claimed_at else None,
        )
        return False


def _to_cursor(record: SyncCursorRecord) -> SyncCursor:
    return SyncCursor(
        device_id=record.device_id,
        last_synced_at=record.last_synced_at,
        sync_status=SyncStatus(record.sync_status),
        error_message=record.error_message,
        claimed_at=record.claimed_at,
        consecutive_failures=record.consecutive_failures,
        next_attempt_at=record.next_attempt_at,
        pending_trip_start=record.pending_trip_start,
        samples_processed=record.samples_processed,
        trips_inserted=record.trips_inserted,
        trips_skipped=record.trips_skipped,
        trips_replaced=record.trips_replaced,
        last_success_at=record.last_success_at,
    )
