# fleet_trip_engine/persistence_gate.py
"""
Deduplication and persistence gate for derived trips.

Every candidate trip passes through the gate before it reaches storage.
Overlapping sync windows, retries and pending-trip re-derivation all produce
candidates that describe trips already stored; the gate decides per
candidate whether to insert it, skip it, or replace the stored versions.

Decision Rules:
---------------
1. A stored trip with the same (start_time, end_time) exists: SKIP.
2. Stored trips overlap the candidate by more than the tolerance: compare
   completeness keys. If the candidate is strictly more complete than every
   overlapping trip, delete them and insert the candidate in the same
   transaction (REPLACE); otherwise SKIP.
3. Nothing matches: atomic insert-if-absent on the unique key (INSERT). A
   conflict raised by a concurrent writer is reported as SKIP.

Completeness Key:
-----------------
(number of known fields among start coordinates, end coordinates and a
positive distance; duration_seconds; end_time), compared lexicographically.
A longer re-derivation of a trip that was still open at a window boundary
therefore wins over the truncated version stored earlier.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_engine.config import DedupConfig
from fleet_trip_engine.events import TripEvent, TripEventPublisher, TripEventType
from fleet_trip_engine.models import StoredTrip, Trip
from fleet_trip_engine.storage import TripRepository

__all__: list[str] = [
    'GateDecision',
    'GateOutcome',
    'GateSummary',
    'PersistenceGate',
    'completeness_key',
    'overlap_seconds',
]

logger: logging.Logger = logging.getLogger(__name__)


class GateDecision(str, Enum):
    INSERTED = 'inserted'
    SKIPPED = 'skipped'
    REPLACED = 'replaced'


class GateOutcome(BaseModel):
    """Decision taken for one candidate trip."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    trip: Trip
    decision: GateDecision
    reason: str
    trip_id: int | None = None
    replaced_trip_ids: list[int] = Field(default_factory=list)


class GateSummary(BaseModel):
    """Counts over a batch of candidates. Failed candidates are not in outcomes."""

    model_config = ConfigDict(extra='forbid')

    inserted: int = 0
    skipped: int = 0
    replaced: int = 0
    failed: int = 0
    outcomes: list[GateOutcome] = Field(default_factory=list)

    def record(self, outcome: GateOutcome) -> None:
        self.outcomes.append(outcome)
        match outcome.decision:
            case GateDecision.INSERTED:
                self.inserted += 1
            case GateDecision.REPLACED:
                self.replaced += 1
            case GateDecision.SKIPPED:
                self.skipped += 1


class _ReplaceConflict(Exception):
    """The candidate key appeared between delete and insert; roll back."""


def completeness_key(trip: Trip) -> tuple[int, int, datetime]:
    known_fields: int = (
        int(trip.has_start_coordinates)
        + int(trip.has_end_coordinates)
        + int(bool(trip.distance_km and trip.distance_km > 0))
    )
    return (known_fields, trip.duration_seconds, trip.end_time)


def overlap_seconds(first: Trip, second: Trip) -> float:
    """Length of the intersection of two trip intervals, 0 when disjoint."""
    latest_start: datetime = max(first.start_time, second.start_time)
    earliest_end: datetime = min(first.end_time, second.end_time)
    return max(0.0, (earliest_end - latest_start).total_seconds())


class PersistenceGate:
    """
    Applies the dedup rules and persists accepted trips.

    Example:
        >>> gate = PersistenceGate(trip_repository, DedupConfig(), publisher)
        >>> summary = gate.submit_many(result.segmentation.trips)
        >>> summary.inserted, summary.skipped, summary.replaced
        (2, 1, 0)
    """

    def __init__(
        self,
        trip_repository: TripRepository,
        config: DedupConfig | None = None,
        publisher: TripEventPublisher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository: TripRepository = trip_repository
        self._config: DedupConfig = config or DedupConfig()
        self._publisher: TripEventPublisher = publisher or TripEventPublisher()
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(UTC))

    @property
    def publisher(self) -> TripEventPublisher:
        return self._publisher

    def submit(self, trip: Trip) -> GateOutcome:
        """
        Decide and persist one candidate trip in its own transaction.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: On storage failures.
        """
        now: datetime = self._clock()

        try:
            outcome: GateOutcome = self._decide_and_write(trip, now)
        except _ReplaceConflict:
            outcome = GateOutcome(
                trip=trip, decision=GateDecision.SKIPPED, reason='conflict_on_replace'
            )

        logger.debug(
            'Device %s: trip %s -> %s %s (%s)',
            trip.device_id,
            trip.start_time.isoformat(),
            trip.end_time.isoformat(),
            outcome.decision.value,
            outcome.reason,
        )

        if outcome.trip_id is not None and outcome.decision is not GateDecision.SKIPPED:
            self._publisher.publish(
                TripEvent(
                    event_type=(
                        TripEventType.REPLACED
                        if outcome.decision is GateDecision.REPLACED
                        else TripEventType.INSERTED
                    ),
                    trip_id=outcome.trip_id,
                    trip=trip,
                    replaced_trip_ids=outcome.replaced_trip_ids,
                    occurred_at=now,
                )
            )

        return outcome

    def submit_many(self, trips: Iterable[Trip]) -> GateSummary:
        """
        Submit candidates one by one. A failing candidate is logged and
        counted; it never rolls back the others.
        """
        summary: GateSummary = GateSummary()
        for trip in trips:
            try:
                summary.record(self.submit(trip))
            except Exception:
                summary.failed += 1
                logger.exception(
                    'Device %s: failed to persist trip %s -> %s',
                    trip.device_id,
                    trip.start_time.isoformat(),
                    trip.end_time.isoformat(),
                )
        return summary

    def _decide_and_write(self, trip: Trip, now: datetime) -> GateOutcome:
        with self._repository.database.session() as session:
            overlapping: list[StoredTrip] = self._repository.find_overlapping(
                session, trip.device_id, trip.start_time, trip.end_time
            )

            for stored in overlapping:
                if stored.start_time == trip.start_time and stored.end_time == trip.end_time:
                    return GateOutcome(
                        trip=trip,
                        decision=GateDecision.SKIPPED,
                        reason='exact_match',
                        trip_id=stored.id,
                    )

            matches: list[StoredTrip] = [
                stored
                for stored in overlapping
                if overlap_seconds(trip, stored) > self._config.overlap_tolerance_seconds
            ]

            if matches:
                candidate_key: tuple[int, int, datetime] = completeness_key(trip)
                if not all(candidate_key > completeness_key(stored) for stored in matches):
                    return GateOutcome(
                        trip=trip,
                        decision=GateDecision.SKIPPED,
                        reason='stored_trip_more_complete',
                        trip_id=matches[0].id,
                    )

                replaced_ids: list[int] = [stored.id for stored in matches]
                self._repository.delete_ids(session, replaced_ids)
                new_id: int | None = self._repository.insert_if_absent(session, trip, now)
                if new_id is None:
                    raise _ReplaceConflict
                return GateOutcome(
                    trip=trip,
                    decision=GateDecision.REPLACED,
                    reason='more_complete',
                    trip_id=new_id,
                    replaced_trip_ids=replaced_ids,
                )

            new_id = self._repository.insert_if_absent(session, trip, now)
            if new_id is None:
                return GateOutcome(
                    trip=trip, decision=GateDecision.SKIPPED, reason='conflict'
                )
            return GateOutcome(
                trip=trip, decision=GateDecision.INSERTED, reason='new', trip_id=new_id
            )
