# fleet_trip_engine/models/sync_cursor.py
"""
Per-device sync progress.

A cursor records how far a device has been synced and whether a worker is
currently processing it. The storage layer claims cursors with a
compare-and-swap update, so at most one worker holds a device at a time.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

__all__: list[str] = ['SyncCursor', 'SyncStatus']


class SyncStatus(str, Enum):
    """Lifecycle states of a device cursor."""

    IDLE = 'idle'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    ERROR = 'error'


class SyncCursor(BaseModel):
    """
    Snapshot of one device's sync state.

    Attributes:
        device_id: Provider device identifier (primary key).
        last_synced_at: End of the last successfully processed window.
        sync_status: Current lifecycle state.
        error_message: Last failure, cleared on success.
        claimed_at: When the current or last processing claim was taken.
        consecutive_failures: Failed attempts since the last success.
        next_attempt_at: Earliest time the device may be attempted again.
        pending_trip_start: Start of a trip still open at the last window end.
        samples_processed: Samples processed in the last successful run.
        trips_inserted: Cumulative trips inserted.
        trips_skipped: Cumulative candidate trips skipped as duplicates.
        trips_replaced: Cumulative stored trips replaced by better versions.
        last_success_at: Wall-clock time of the last successful run.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str = Field(min_length=1)
    last_synced_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.IDLE
    error_message: str | None = None
    claimed_at: datetime | None = None
    consecutive_failures: int = Field(default=0, ge=0)
    next_attempt_at: datetime | None = None
    pending_trip_start: datetime | None = None
    samples_processed: int = Field(default=0, ge=0)
    trips_inserted: int = Field(default=0, ge=0)
    trips_skipped: int = Field(default=0, ge=0)
    trips_replaced: int = Field(default=0, ge=0)
    last_success_at: datetime | None = None

    @property
    def is_processing(self) -> bool:
        return self.sync_status is SyncStatus.PROCESSING
