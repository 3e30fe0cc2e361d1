# fleet_trip_engine/sync.py
"""
Sync orchestrator: provider history in, persisted trips out.

Usage:
------
    from fleet_trip_engine.sync import SyncOrchestrator

    # One-liner for cron jobs
    with SyncOrchestrator.from_config('config/engine_config.yaml') as orchestrator:
        orchestrator.run_once()

Per-Device Cycle:
-----------------
1. Skip the device while its persisted backoff (next_attempt_at) is pending.
2. Claim its cursor with a compare-and-swap; skip if another worker holds it.
3. Window: pending_trip_start, else last_synced_at, else now - initial
   lookback; clamped to now - max lookback; ends at now.
4. Fetch history in batch_hours slices through the shared rate limiter.
5. Normalize, order, filter spikes, segment, and pass trips to the gate.
6. On success advance the cursor to the window end and remember the start
   of any trip still open, so the next window re-derives it whole.
7. On failure keep the cursor time, count the failure and schedule the next
   attempt with exponential backoff (a longer tier for rate limits).

Design Decisions:
-----------------
- Device independence: each device runs in its own worker; a failure is
  recorded on that device's cursor and never affects the others.
- Retry safety: the gate is idempotent, so re-running a window after a
  failure (or after a partial persist) cannot duplicate trips.
- Watchdog: cursors left in PROCESSING by a crashed worker are reset at the
  start of every cycle once they exceed the stuck timeout.
"""

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Final, Self

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_engine.client import (
    APIError,
    Gps51Client,
    HistoricalSampleSource,
    RateLimitError,
)
from fleet_trip_engine.common import (
    TokenBucketRateLimiter,
    TripParquetExporter,
    setup_logger,
)
from fleet_trip_engine.config import EngineConfig, SyncConfig, load_config
from fleet_trip_engine.engine import ExtractionResult, TripExtractor
from fleet_trip_engine.events import TripEventPublisher
from fleet_trip_engine.models import CanonicalSample, RawSample, SyncCursor
from fleet_trip_engine.persistence_gate import GateSummary, PersistenceGate
from fleet_trip_engine.reconciliation import ReconciliationSweep
from fleet_trip_engine.storage import (
    Database,
    SyncCursorRepository,
    TripRepository,
    VehicleStateRepository,
)

__all__: list[str] = [
    'DeviceSyncResult',
    'DeviceSyncStatus',
    'SyncError',
    'SyncOrchestrator',
    'SyncRunSummary',
]

logger: logging.Logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH: Final[int] = 500


class SyncError(Exception):
    """
    Raised for per-device sync failures that are not provider API errors.

    Attributes:
        device_id: Device whose sync failed.
    """

    def __init__(self, message: str, device_id: str) -> None:
        super().__init__(message)
        self.device_id: str = device_id


class DeviceSyncStatus(str, Enum):
    SYNCED = 'synced'
    FAILED = 'failed'
    SKIPPED_CLAIMED = 'skipped_claimed'
    SKIPPED_BACKOFF = 'skipped_backoff'
    CLAIM_LOST = 'claim_lost'


class DeviceSyncResult(BaseModel):
    """Outcome of one device's sync attempt."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str
    status: DeviceSyncStatus
    window_start: datetime | None = None
    window_end: datetime | None = None
    samples_processed: int = 0
    spikes_rejected: int = 0
    trips_found: int = 0
    trips_inserted: int = 0
    trips_skipped: int = 0
    trips_replaced: int = 0
    pending_trip_start: datetime | None = None
    error: str | None = None
    rate_limited: bool = False
    next_attempt_at: datetime | None = None


class SyncRunSummary(BaseModel):
    """Aggregated results of one orchestrator cycle."""

    model_config = ConfigDict(extra='forbid')

    started_at: datetime
    finished_at: datetime | None = None
    reset_devices: list[str] = Field(default_factory=list)
    results: list[DeviceSyncResult] = Field(default_factory=list)

    def _count(self, status: DeviceSyncStatus) -> int:
        return sum(1 for result in self.results if result.status is status)

    @property
    def synced(self) -> int:
        return self._count(DeviceSyncStatus.SYNCED)

    @property
    def failed(self) -> int:
        return self._count(DeviceSyncStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(DeviceSyncStatus.SKIPPED_CLAIMED) + self._count(
            DeviceSyncStatus.SKIPPED_BACKOFF
        )

    @property
    def claim_lost(self) -> int:
        return self._count(DeviceSyncStatus.CLAIM_LOST)

    @property
    def trips_inserted(self) -> int:
        return sum(result.trips_inserted for result in self.results)

    @property
    def trips_replaced(self) -> int:
        return sum(result.trips_replaced for result in self.results)

    def result_for(self, device_id: str) -> DeviceSyncResult | None:
        for result in self.results:
            if result.device_id == device_id:
                return result
        return None


class SyncOrchestrator:
    """
    Runs sync cycles over a fleet of devices.

    Example:
        >>> orchestrator = SyncOrchestrator(config, client, database)
        >>> summary = orchestrator.run_once()
        >>> summary.synced, summary.failed
        (12, 1)
    """

    def __init__(
        self,
        config: EngineConfig,
        source: HistoricalSampleSource,
        database: Database,
        publisher: TripEventPublisher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Args:
            config: Validated engine configuration.
            source: Provider client (or any object with the same methods).
            database: Initialized database; tables must exist.
            publisher: Trip event publisher, created if not given.
            clock: Returns the current aware UTC time.
        """
        self._config: EngineConfig = config
        self._source: HistoricalSampleSource = source
        self._database: Database = database
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(UTC))

        self._extractor: TripExtractor = TripExtractor.from_config(config)
        self._trip_repository: TripRepository = TripRepository(database)
        self._cursor_repository: SyncCursorRepository = SyncCursorRepository(database)
        self._vehicle_state_repository: VehicleStateRepository = VehicleStateRepository(
            database
        )
        self._gate: PersistenceGate = PersistenceGate(
            self._trip_repository,
            config.dedup,
            publisher,
            clock=self._clock,
        )

        logger.info(
            'Initialized SyncOrchestrator: devices=%d, max_workers=%d, batch_hours=%.1f',
            len(config.devices),
            config.sync.max_workers,
            config.sync.batch_hours,
        )

    @classmethod
    def from_config(cls, config_path: Path | str | None = None) -> Self:
        """
        Build a ready-to-run orchestrator from a YAML configuration file.

        Loads and validates the configuration, configures logging, creates
        the database tables, and builds the shared rate limiter and client.

        Raises:
            FileNotFoundError: If the config file does not exist.
            yaml.YAMLError: If the file is not valid YAML.
            ValueError: If validation fails.
        """
        config: EngineConfig = load_config(config_path)
        setup_logger(config=config.logging)

        database: Database = Database.from_config(config.storage)
        database.create_all()

        rate_limiter: TokenBucketRateLimiter = TokenBucketRateLimiter.from_config(
            config.rate_limit
        )
        client: Gps51Client = Gps51Client(config.provider, rate_limiter)

        return cls(config, client, database)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def trip_repository(self) -> TripRepository:
        return self._trip_repository

    @property
    def cursor_repository(self) -> SyncCursorRepository:
        return self._cursor_repository

    @property
    def vehicle_state_repository(self) -> VehicleStateRepository:
        return self._vehicle_state_repository

    @property
    def gate(self) -> PersistenceGate:
        return self._gate

    @property
    def publisher(self) -> TripEventPublisher:
        return self._gate.publisher

    @property
    def source(self) -> HistoricalSampleSource:
        return self._source

    def reconciliation_sweep(self) -> ReconciliationSweep:
        """Build a reconciliation sweep sharing this orchestrator's source and storage."""
        return ReconciliationSweep(
            self._trip_repository,
            self._source,
            self._extractor.normalizer,
            self._config.reconciliation,
            clock=self._clock,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the provider client if it supports closing."""
        close: Callable[[], None] | None = getattr(self._source, 'close', None)
        if close is not None:
            close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def run_once(
        self,
        device_ids: Sequence[str] | None = None,
        now: datetime | None = None,
        force: bool = False,
    ) -> SyncRunSummary:
        """
        Run one sync cycle over the given devices (default: configured list).

        Args:
            device_ids: Devices to sync; None uses config.devices.
            now: Cycle reference time; defaults to the clock.
            force: Ignore pending backoff.

        Returns:
            SyncRunSummary with one result per device, in input order.
        """
        cycle_time: datetime = now or self._clock()
        summary: SyncRunSummary = SyncRunSummary(started_at=cycle_time)
        summary.reset_devices = self.reset_stuck_cursors(cycle_time)

        devices: list[str] = list(device_ids if device_ids is not None else self._config.devices)
        if not devices:
            logger.warning('No devices to sync; configure `devices` or pass device_ids')
            summary.finished_at = self._clock()
            return summary

        logger.info('Starting sync cycle for %d device(s)', len(devices))

        results_by_device: dict[str, DeviceSyncResult] = {}
        max_workers: int = min(self._config.sync.max_workers, len(devices))

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='sync') as executor:
            futures: dict[Future[DeviceSyncResult], str] = {
                executor.submit(self.sync_device, device_id, cycle_time, force): device_id
                for device_id in devices
            }
            for future in as_completed(futures):
                device_id: str = futures[future]
                try:
                    results_by_device[device_id] = future.result()
                except Exception as error:
                    logger.exception('Device %s: sync crashed before it was recorded', device_id)
                    results_by_device[device_id] = DeviceSyncResult(
                        device_id=device_id,
                        status=DeviceSyncStatus.FAILED,
                        error=_truncate_error(error),
                    )

        summary.results = [results_by_device[device_id] for device_id in devices]
        summary.finished_at = self._clock()

        trips_changed: int = summary.trips_inserted + summary.trips_replaced
        if self._config.storage.export_path is not None and trips_changed:
            self.export_trips()

        self._log_run_summary(summary)
        return summary

    def sync_device(
        self,
        device_id: str,
        now: datetime | None = None,
        force: bool = False,
    ) -> DeviceSyncResult:
        """
        Sync one device's window end to end.

        Never raises for provider or processing failures; they are recorded
        on the cursor and in the returned result.
        """
        cycle_time: datetime = now or self._clock()

        existing: SyncCursor | None = self._cursor_repository.get(device_id)
        if (
            not force
            and existing is not None
            and existing.next_attempt_at is not None
            and existing.next_attempt_at > cycle_time
        ):
            logger.debug(
                'Device %s: backing off until %s',
                device_id,
                existing.next_attempt_at.isoformat(),
            )
            return DeviceSyncResult(
                device_id=device_id,
                status=DeviceSyncStatus.SKIPPED_BACKOFF,
                next_attempt_at=existing.next_attempt_at,
            )

        cursor: SyncCursor | None = self._cursor_repository.claim(device_id, cycle_time)
        if cursor is None:
            return DeviceSyncResult(device_id=device_id, status=DeviceSyncStatus.SKIPPED_CLAIMED)

        window_start, window_end = self.compute_window(cursor, cycle_time)

        try:
            return self._process_window(cursor, window_start, window_end, cycle_time)
        except RateLimitError as error:
            return self._record_failure(cursor, window_start, window_end, cycle_time, error, True)
        except APIError as error:
            return self._record_failure(cursor, window_start, window_end, cycle_time, error, False)
        except Exception as error:
            logger.exception('Device %s: unexpected sync failure', device_id)
            wrapped: SyncError = SyncError(f'{type(error).__name__}: {error}', device_id)
            return self._record_failure(
                cursor, window_start, window_end, cycle_time, wrapped, False
            )

    def compute_window(self, cursor: SyncCursor, now: datetime) -> tuple[datetime, datetime]:
        """
        The [start, end] window the next sync of this cursor covers.
        """
        sync_config: SyncConfig = self._config.sync

        start: datetime = (
            cursor.pending_trip_start
            or cursor.last_synced_at
            or now - timedelta(hours=sync_config.initial_lookback_hours)
        )
        earliest: datetime = now - timedelta(hours=sync_config.max_lookback_hours)
        return max(start, earliest), now

    def backoff_seconds(self, consecutive_failures: int, rate_limited: bool) -> float:
        """Delay before the next attempt after the n-th consecutive failure."""
        sync_config: SyncConfig = self._config.sync
        if rate_limited:
            base: float = sync_config.rate_limit_backoff_base_seconds
            ceiling: float = sync_config.rate_limit_backoff_max_seconds
        else:
            base = sync_config.backoff_base_seconds
            ceiling = sync_config.backoff_max_seconds

        exponent: int = max(consecutive_failures, 1) - 1
        return min(base * (2**exponent), ceiling)

    def reset_stuck_cursors(self, now: datetime | None = None) -> list[str]:
        """
        Watchdog: return cursors stuck in PROCESSING past the timeout to IDLE.
        """
        timeout: timedelta = timedelta(minutes=self._config.sync.stuck_timeout_minutes)
        reset_ids: list[str] = self._cursor_repository.reset_stuck(now or self._clock(), timeout)
        for device_id in reset_ids:
            logger.warning(
                'Watchdog reset device %s: processing for longer than %s',
                device_id,
                timeout,
            )
        return reset_ids

    def refresh_live_states(
        self,
        device_ids: Sequence[str] | None = None,
        now: datetime | None = None,
    ) -> int:
        """
        Refresh the latest vehicle state of each device from the bulk
        latest-position query.

        Returns:
            Number of device states that changed.
        """
        devices: list[str] = list(device_ids if device_ids is not None else self._config.devices)
        if not devices:
            return 0

        received_at: datetime = now or self._clock()
        raw_samples: list[RawSample] = self._source.fetch_last_positions(devices)

        latest: dict[str, CanonicalSample] = {}
        for raw in raw_samples:
            sample: CanonicalSample = self._extractor.normalizer.normalize(raw, received_at)
            current: CanonicalSample | None = latest.get(sample.device_id)
            if current is None or sample.timestamp > current.timestamp:
                latest[sample.device_id] = sample

        changed: int = self._vehicle_state_repository.upsert_many(latest.values(), received_at)
        logger.info(
            'Refreshed live state: %d position(s) for %d device(s), %d changed',
            len(raw_samples),
            len(devices),
            changed,
        )
        return changed

    def export_trips(self) -> Path | None:
        """Write all stored trips to the configured Parquet export, if any."""
        export_path: Path | None = self._config.storage.export_path
        if export_path is None:
            return None

        exporter: TripParquetExporter = TripParquetExporter(
            export_path, self._config.storage.parquet_compression
        )
        exporter.export(self._trip_repository.trips_dataframe())
        return exporter.path

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _process_window(
        self,
        cursor: SyncCursor,
        window_start: datetime,
        window_end: datetime,
        now: datetime,
    ) -> DeviceSyncResult:
        device_id: str = cursor.device_id
        batches: list[tuple[datetime, datetime]] = self._generate_batches(
            window_start, window_end
        )

        raw_samples: list[RawSample] = []
        for batch_start, batch_end in batches:
            raw_samples.extend(
                self._source.fetch_track_history(device_id, batch_start, batch_end)
            )

        extraction: ExtractionResult = self._extractor.extract(raw_samples, received_at=now)
        gate_summary: GateSummary = self._gate.submit_many(extraction.segmentation.trips)

        if gate_summary.failed:
            raise SyncError(
                f'{gate_summary.failed} trip(s) failed to persist', device_id=device_id
            )

        latest_sample: CanonicalSample | None = extraction.latest_sample
        if latest_sample is not None:
            self._vehicle_state_repository.upsert_latest(latest_sample, now)

        pending_trip_start: datetime | None = (
            extraction.segmentation.open_trip_start if batches else cursor.pending_trip_start
        )

        completed: bool = self._cursor_repository.complete(
            cursor,
            synced_until=window_end,
            pending_trip_start=pending_trip_start,
            samples_processed=len(extraction.samples),
            trips_inserted=gate_summary.inserted,
            trips_skipped=gate_summary.skipped,
            trips_replaced=gate_summary.replaced,
            now=now,
        )

        if not completed:
            # Trips already stored stay; the gate absorbs the re-derivation.
            logger.warning(
                'Device %s: claim lost while syncing %s -> %s; cursor not advanced, '
                '%d trip(s) inserted, %d replaced',
                device_id,
                window_start.isoformat(),
                window_end.isoformat(),
                gate_summary.inserted,
                gate_summary.replaced,
            )
            return DeviceSyncResult(
                device_id=device_id,
                status=DeviceSyncStatus.CLAIM_LOST,
                window_start=window_start,
                window_end=window_end,
                samples_processed=len(extraction.samples),
                spikes_rejected=extraction.spikes_rejected,
                trips_found=len(extraction.segmentation.trips),
                trips_inserted=gate_summary.inserted,
                trips_skipped=gate_summary.skipped,
                trips_replaced=gate_summary.replaced,
            )

        logger.info(
            'Device %s synced %s -> %s: %d raw, %d kept, %d trip(s) '
            '(%d inserted, %d skipped, %d replaced)%s',
            device_id,
            window_start.isoformat(),
            window_end.isoformat(),
            extraction.raw_count,
            len(extraction.samples),
            len(extraction.segmentation.trips),
            gate_summary.inserted,
            gate_summary.skipped,
            gate_summary.replaced,
            f', trip open since {pending_trip_start.isoformat()}' if pending_trip_start else '',
        )

        return DeviceSyncResult(
            device_id=device_id,
            status=DeviceSyncStatus.SYNCED,
            window_start=window_start,
            window_end=window_end,
            samples_processed=len(extraction.samples),
            spikes_rejected=extraction.spikes_rejected,
            trips_found=len(extraction.segmentation.trips),
            trips_inserted=gate_summary.inserted,
            trips_skipped=gate_summary.skipped,
            trips_replaced=gate_summary.replaced,
            pending_trip_start=pending_trip_start,
        )

    def _record_failure(
        self,
        cursor: SyncCursor,
        window_start: datetime,
        window_end: datetime,
        now: datetime,
        error: Exception,
        rate_limited: bool,
    ) -> DeviceSyncResult:
        failures: int = cursor.consecutive_failures + 1
        delay: float = self.backoff_seconds(failures, rate_limited)
        next_attempt_at: datetime = now + timedelta(seconds=delay)
        message: str = _truncate_error(error)

        self._cursor_repository.fail(
            cursor,
            error_message=message,
            consecutive_failures=failures,
            next_attempt_at=next_attempt_at,
            now=now,
        )

        logger.warning(
            'Device %s sync failed (attempt %d%s): %s. Next attempt at %s',
            cursor.device_id,
            failures,
            ', rate limited' if rate_limited else '',
            message,
            next_attempt_at.isoformat(),
        )

        return DeviceSyncResult(
            device_id=cursor.device_id,
            status=DeviceSyncStatus.FAILED,
            window_start=window_start,
            window_end=window_end,
            error=message,
            rate_limited=rate_limited,
            next_attempt_at=next_attempt_at,
        )

    def _generate_batches(
        self,
        start_datetime: datetime,
        end_datetime: datetime,
    ) -> list[tuple[datetime, datetime]]:
        """
        Split the window into batch_hours slices. The last slice may be shorter.

        Returns:
            (batch_start, batch_end) tuples; empty if start >= end.
        """
        if start_datetime >= end_datetime:
            return []

        increment: timedelta = timedelta(hours=self._config.sync.batch_hours)
        batches: list[tuple[datetime, datetime]] = []

        current_start: datetime = start_datetime
        while current_start < end_datetime:
            current_end: datetime = min(current_start + increment, end_datetime)
            batches.append((current_start, current_end))
            current_start = current_end

        return batches

    def _log_run_summary(self, summary: SyncRunSummary) -> None:
        duration: timedelta = (summary.finished_at or summary.started_at) - summary.started_at
        failed_devices: list[str] = [
            result.device_id
            for result in summary.results
            if result.status is DeviceSyncStatus.FAILED
        ]

        logger.info(
            'Sync cycle complete: %d synced, %d failed, %d skipped, %d claim(s) lost, '
            '%d watchdog reset(s). Trips: %d inserted, %d replaced. Duration: %s',
            summary.synced,
            summary.failed,
            summary.skipped,
            summary.claim_lost,
            len(summary.reset_devices),
            summary.trips_inserted,
            summary.trips_replaced,
            duration,
        )
        if failed_devices:
            logger.warning('Devices with failed syncs: %s', failed_devices)


def _truncate_error(error: BaseException) -> str:
    message: str = str(error) or type(error).__name__
    return message[:MAX_ERROR_MESSAGE_LENGTH]
