# fleet_trip_engine/reconciliation.py
"""
Reconciliation sweep for incomplete stored trips.

Trips derived from sparse data can lack start or end coordinates, and then a
distance. The sweep revisits recent incomplete trips, looks up the provider's
track history around each missing end, and fills in what it finds.

Guarantees:
-----------
- Only NULL fields are written (guarded UPDATEs), so the sweep can run next
  to live sync without overwriting anything, and a second run over the same
  data changes nothing.
- The nearest-in-time sample with a valid fix within the search window is
  used for each end; nothing outside the window is ever borrowed.
- A trip still incomplete after a search whose windows lie fully in the
  past is marked exhausted and skipped from then on, so hopeless trips never
  occupy the batch ahead of older trips that can still be fixed.
"""

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict

from fleet_trip_engine.client import APIError, HistoricalSampleSource
from fleet_trip_engine.config import ReconciliationConfig
from fleet_trip_engine.engine import TelemetryNormalizer
from fleet_trip_engine.models import CanonicalSample, RawSample, StoredTrip
from fleet_trip_engine.storage import FieldFillResult, TripRepository

__all__: list[str] = ['ReconciliationReport', 'ReconciliationSweep', 'nearest_fix']

logger: logging.Logger = logging.getLogger(__name__)


class ReconciliationReport(BaseModel):
    """
    Counts for one sweep.

    Attributes:
        checked: Incomplete trips examined.
        fixed: Trips with at least one field filled.
        coordinates_filled: Trip ends (start or end) whose coordinates were filled.
        distances_recomputed: Trips that received a distance.
        errors: Trips whose history lookup or update failed.
        exhausted: Trips left incomplete after searching complete history;
            later sweeps skip them.
    """

    model_config = ConfigDict(extra='forbid')

    started_at: datetime
    checked: int = 0
    fixed: int = 0
    coordinates_filled: int = 0
    distances_recomputed: int = 0
    errors: int = 0
    exhausted: int = 0


def nearest_fix(
    samples: Sequence[CanonicalSample],
    target: datetime,
    window: timedelta,
) -> tuple[float, float] | None:
    """
    Coordinates of the sample with a valid fix closest in time to `target`,
    considering only samples within `window` of it.
    """
    best: CanonicalSample | None = None
    best_offset: timedelta | None = None

    for sample in samples:
        if not sample.has_coordinates:
            continue
        offset: timedelta = abs(sample.timestamp - target)
        if offset > window:
            continue
        if best_offset is None or offset < best_offset:
            best, best_offset = sample, offset

    if best is None:
        return None
    return (best.latitude, best.longitude)  # type: ignore[return-value]


class ReconciliationSweep:
    """
    Fills missing trip coordinates and distances from provider history.

    Example:
        >>> sweep = ReconciliationSweep(trip_repository, client)
        >>> report = sweep.run()
        >>> report.fixed
        3
    """

    def __init__(
        self,
        trip_repository: TripRepository,
        source: HistoricalSampleSource,
        normalizer: TelemetryNormalizer | None = None,
        config: ReconciliationConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository: TripRepository = trip_repository
        self._source: HistoricalSampleSource = source
        self._normalizer: TelemetryNormalizer = normalizer or TelemetryNormalizer()
        self._config: ReconciliationConfig = config or ReconciliationConfig()
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(UTC))
        self._window: timedelta = timedelta(minutes=self._config.search_window_minutes)

    def run(self, now: datetime | None = None) -> ReconciliationReport:
        """
        Sweep incomplete trips started within the lookback period.

        Args:
            now: Reference time; defaults to the clock.

        Returns:
            ReconciliationReport with counts for this run.
        """
        sweep_time: datetime = now or self._clock()
        report: ReconciliationReport = ReconciliationReport(started_at=sweep_time)

        since: datetime = sweep_time - timedelta(days=self._config.lookback_days)
        candidates: list[StoredTrip] = self._repository.trips_needing_reconciliation(
            since, limit=self._config.batch_size
        )

        for trip in candidates:
            report.checked += 1
            try:
                fill: FieldFillResult = self.reconcile_trip(trip, sweep_time)
            except APIError as error:
                report.errors += 1
                logger.warning(
                    'Trip %d (device %s): history lookup failed: %s',
                    trip.id,
                    trip.device_id,
                    error,
                )
                continue
            except Exception:
                report.errors += 1
                logger.exception(
                    'Trip %d (device %s): reconciliation failed', trip.id, trip.device_id
                )
                continue

            if fill.changed:
                report.fixed += 1
            report.coordinates_filled += int(fill.start_filled) + int(fill.end_filled)
            if fill.distance_km is not None:
                report.distances_recomputed += 1
            if self._mark_if_exhausted(trip, sweep_time):
                report.exhausted += 1

        logger.info(
            'Reconciliation complete: %d checked, %d fixed, %d coordinate(s) filled, '
            '%d distance(s) recomputed, %d error(s), %d exhausted',
            report.checked,
            report.fixed,
            report.coordinates_filled,
            report.distances_recomputed,
            report.errors,
            report.exhausted,
        )
        return report

    def reconcile_trip(self, trip: StoredTrip, now: datetime | None = None) -> FieldFillResult:
        """
        Look up and fill the missing fields of one trip.

        Raises:
            APIError: When the provider history query fails.
        """
        needs_start: bool = not trip.has_start_coordinates
        needs_end: bool = not trip.has_end_coordinates

        start_fix: tuple[float, float] | None = None
        end_fix: tuple[float, float] | None = None

        if needs_start or needs_end:
            samples: list[CanonicalSample] = self._history_around(trip, needs_start, needs_end)
            if needs_start:
                start_fix = nearest_fix(samples, trip.start_time, self._window)
            if needs_end:
                end_fix = nearest_fix(samples, trip.end_time, self._window)

        fill: FieldFillResult = self._repository.fill_missing_fields(
            trip.id, start_fix, end_fix, now
        )

        if fill.changed:
            logger.debug(
                'Trip %d (device %s): start_filled=%s end_filled=%s distance=%s',
                trip.id,
                trip.device_id,
                fill.start_filled,
                fill.end_filled,
                fill.distance_km,
            )
        elif (needs_start and start_fix is None) or (needs_end and end_fix is None):
            logger.debug(
                'Trip %d (device %s): no fix within %s of a missing end',
                trip.id,
                trip.device_id,
                self._window,
            )
        return fill

    def _mark_if_exhausted(self, trip: StoredTrip, now: datetime) -> bool:
        """
        Mark a trip that is still incomplete although both search windows lie
        fully in the past. Its provider history can no longer change, so
        another sweep would find nothing new.
        """
        if trip.end_time + self._window > now:
            return False

        current: StoredTrip | None = self._repository.get(trip.id)
        if current is None or not current.needs_reconciliation:
            return False

        marked: bool = self._repository.mark_reconcile_exhausted(trip.id, now)
        if marked:
            logger.debug(
                'Trip %d (device %s): no usable history, excluded from later sweeps',
                trip.id,
                trip.device_id,
            )
        return marked

    def _history_around(
        self,
        trip: StoredTrip,
        needs_start: bool,
        needs_end: bool,
    ) -> list[CanonicalSample]:
        """Normalized history near the trip ends that need a fix."""
        ranges: list[tuple[datetime, datetime]] = []
        if needs_start:
            ranges.append((trip.start_time - self._window, trip.start_time + self._window))
        if needs_end:
            ranges.append((trip.end_time - self._window, trip.end_time + self._window))

        # Merge overlapping ranges so short trips are fetched once.
        merged: list[tuple[datetime, datetime]] = []
        for range_start, range_end in sorted(ranges):
            if merged and range_start <= merged[-1][1]:
                merged[-1] = (merged[-1][0], max(merged[-1][1], range_end))
            else:
                merged.append((range_start, range_end))

        raw_samples: list[RawSample] = []
        for range_start, range_end in merged:
            raw_samples.extend(
                self._source.fetch_track_history(trip.device_id, range_start, range_end)
            )

        return self._normalizer.normalize_series(raw_samples)
