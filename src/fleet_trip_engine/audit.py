# fleet_trip_engine/audit.py
"""
Audit derived trips against the provider's own trip detection.

The engine derives trips from raw history instead of trusting the provider's
trip list, but the two should broadly agree. The audit pairs each provider
trip with the stored trip it overlaps most and reports the differences, so
divergence stays visible and bounded.
"""

import logging
from datetime import datetime
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_engine.models import ProviderTrip, StoredTrip
from fleet_trip_engine.storage import TripRepository

__all__: list[str] = [
    'ProviderTripSource',
    'TripAuditReport',
    'TripMatch',
    'audit_device_trips',
]

logger: logging.Logger = logging.getLogger(__name__)


class ProviderTripSource(Protocol):
    def fetch_provider_trips(
        self, device_id: str, start: datetime, end: datetime
    ) -> list[ProviderTrip]: ...


class TripMatch(BaseModel):
    """
    A provider trip paired with a stored trip.

    Deltas are stored minus provider; distance_delta_km is None when either
    side has no distance.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    provider_trip: ProviderTrip
    stored_trip: StoredTrip
    overlap_seconds: float
    start_delta_seconds: float
    end_delta_seconds: float
    distance_delta_km: float | None = None


class TripAuditReport(BaseModel):
    """Matched pairs and the trips only one side knows about."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str
    start: datetime
    end: datetime
    matches: list[TripMatch] = Field(default_factory=list)
    unmatched_provider_trips: list[ProviderTrip] = Field(default_factory=list)
    unmatched_stored_trips: list[StoredTrip] = Field(default_factory=list)

    @property
    def match_rate(self) -> float:
        """Share of provider trips that found a stored counterpart."""
        total: int = len(self.matches) + len(self.unmatched_provider_trips)
        return len(self.matches) / total if total else 1.0


def _overlap_seconds(provider_trip: ProviderTrip, stored_trip: StoredTrip) -> float:
    latest_start: datetime = max(provider_trip.start_time, stored_trip.start_time)
    earliest_end: datetime = min(provider_trip.end_time, stored_trip.end_time)
    return max(0.0, (earliest_end - latest_start).total_seconds())


def audit_device_trips(
    client: ProviderTripSource,
    trip_repository: TripRepository,
    device_id: str,
    start: datetime,
    end: datetime,
) -> TripAuditReport:
    """
    Compare the provider's trips with stored trips for one device and period.

    Each provider trip is matched to the not-yet-matched stored trip with
    the greatest time overlap; trips without any overlap stay unmatched.

    Args:
        client: Source of provider trips (the provider client).
        trip_repository: Stored trips.
        device_id: Device to audit.
        start: Period start (UTC).
        end: Period end (UTC).

    Returns:
        TripAuditReport for the period.
    """
    provider_trips: list[ProviderTrip] = sorted(
        client.fetch_provider_trips(device_id, start, end),
        key=lambda trip: trip.start_time,
    )
    stored_trips: list[StoredTrip] = trip_repository.list_trips(device_id, start, end)

    available: dict[int, StoredTrip] = {trip.id: trip for trip in stored_trips}
    matches: list[TripMatch] = []
    unmatched_provider: list[ProviderTrip] = []

    for provider_trip in provider_trips:
        best: StoredTrip | None = None
        best_overlap: float = 0.0
        for stored_trip in available.values():
            overlap: float = _overlap_seconds(provider_trip, stored_trip)
            if overlap > best_overlap:
                best, best_overlap = stored_trip, overlap

        if best is None:
            unmatched_provider.append(provider_trip)
            continue

        del available[best.id]
        distance_delta: float | None = None
        if best.distance_km is not None and provider_trip.distance_km is not None:
            distance_delta = round(best.distance_km - provider_trip.distance_km, 2)

        matches.append(
            TripMatch(
                provider_trip=provider_trip,
                stored_trip=best,
                overlap_seconds=best_overlap,
                start_delta_seconds=(best.start_time - provider_trip.start_time).total_seconds(),
                end_delta_seconds=(best.end_time - provider_trip.end_time).total_seconds(),
                distance_delta_km=distance_delta,
            )
        )

    report: TripAuditReport = TripAuditReport(
        device_id=device_id,
        start=start,
        end=end,
        matches=matches,
        unmatched_provider_trips=unmatched_provider,
        unmatched_stored_trips=sorted(available.values(), key=lambda trip: trip.start_time),
    )

    logger.info(
        'Audit of device %s %s -> %s: %d matched, %d provider-only, %d stored-only',
        device_id,
        start.isoformat(),
        end.isoformat(),
        len(report.matches),
        len(report.unmatched_provider_trips),
        len(report.unmatched_stored_trips),
    )
    return report
