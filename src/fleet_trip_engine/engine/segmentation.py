# fleet_trip_engine/engine/segmentation.py
"""
Trip segmentation state machine.

Consumes one device's cleaned, time-ordered samples for a sync window and
emits closed trips. The machine has two states, IDLE and IN_TRIP.

Mode Selection:
---------------
A device is segmented by ignition only when it reports ignition at all and
at least one sample in the window reached ignition-on with the strict
confidence threshold. Otherwise it is segmented by speed alone. The choice
is made per window, so a device whose ACC wiring fails mid-week degrades to
speed mode instead of producing no trips.

Trip Boundaries:
----------------
- IDLE -> IN_TRIP on an ignition-on sample (ignition mode) or a sample above
  the motion threshold (speed mode).
- A reporting gap longer than max_gap closes the open trip at its last
  sample. The sample after the gap is evaluated from IDLE, so no trip ever
  bridges a gap.
- The first inactive sample after the last active one is the stop
  candidate. Once inactivity lasts longer than idle_timeout (measured from
  the last active sample), the trip closes at the stop candidate.
- A trip still open at the end of the window is flushed and reported as
  open, so the caller can re-derive it next window. If it already has a stop
  candidate it ends there, as it would with more data, so a later
  re-derivation is never shorter than the stored version.

Flush Rules:
------------
- Duration must be positive and at least min_trip_duration_seconds.
- With two or more fixes, distance is the summed path length. If no fix
  gets min_trip_distance_km away from the first fix, the trip is a ghost
  (GPS jitter or engine idling) and is discarded.
- With fewer than two fixes the trip is kept with distance 0 and LOW quality
  so reconciliation can fill it in later.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_engine.common.geo import haversine_km
from fleet_trip_engine.config import SegmentationConfig
from fleet_trip_engine.models import CanonicalSample, DataQuality, Trip, TripSource

__all__: list[str] = [
    'SegmentationMode',
    'SegmentationResult',
    'TripSegmenter',
]

logger: logging.Logger = logging.getLogger(__name__)


class SegmentationMode(str, Enum):
    """Signal that drives trip boundaries for a device window."""

    IGNITION = 'ignition'
    SPEED = 'speed'


class SegmentationResult(BaseModel):
    """
    Output of segmenting one device window.

    Attributes:
        device_id: Device the trips belong to, None for an empty window.
        mode: Signal used for boundaries.
        trips: Emitted trips in time order.
        discarded: Prospective trips dropped as ghosts or too short.
        open_trip_start: Start of the trip that was still open when the
            window ended, whether or not it was emitted.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str | None = None
    mode: SegmentationMode = SegmentationMode.SPEED
    trips: list[Trip] = Field(default_factory=list)
    discarded: int = 0
    open_trip_start: datetime | None = None


class _OpenTrip:
    """Mutable accumulator for the trip currently in progress."""

    def __init__(self, first_sample: CanonicalSample) -> None:
        self.points: list[CanonicalSample] = [first_sample]
        self.last_active_time: datetime = first_sample.timestamp
        self.stop_candidate_index: int | None = None

    @property
    def start_time(self) -> datetime:
        return self.points[0].timestamp

    def add_active(self, sample: CanonicalSample) -> None:
        self.points.append(sample)
        self.last_active_time = sample.timestamp
        self.stop_candidate_index = None

    def add_inactive(self, sample: CanonicalSample) -> None:
        self.points.append(sample)
        if self.stop_candidate_index is None:
            self.stop_candidate_index = len(self.points) - 1

    def points_until_stop(self) -> list[CanonicalSample]:
        """Points up to and including the stop candidate."""
        if self.stop_candidate_index is None:
            return list(self.points)
        return self.points[: self.stop_candidate_index + 1]


class TripSegmenter:
    """
    Splits a device's sample series into trips.

    Segmentation is deterministic and never raises on malformed input: an
    empty or single-sample series simply yields no trips.

    Example:
        >>> segmenter = TripSegmenter(SegmentationConfig())
        >>> result = segmenter.segment(cleaned_samples)
        >>> [trip.distance_km for trip in result.trips]
        [5.02]
    """

    def __init__(self, config: SegmentationConfig | None = None) -> None:
        self._config: SegmentationConfig = config or SegmentationConfig()
        self._max_gap: timedelta = timedelta(minutes=self._config.max_gap_minutes)

    def select_mode(self, samples: Sequence[CanonicalSample]) -> SegmentationMode:
        """Use ignition only when it is reported and strongly confirmed."""
        reports_ignition: bool = any(sample.ignition_reported for sample in samples)
        confirmed: bool = any(
            sample.ignition_on
            and sample.ignition_confidence >= self._config.strict_ignition_confidence
            for sample in samples
        )
        if reports_ignition and confirmed:
            return SegmentationMode.IGNITION
        return SegmentationMode.SPEED

    def segment(self, samples: Sequence[CanonicalSample]) -> SegmentationResult:
        """
        Run the state machine over one device window.

        Args:
            samples: Cleaned samples of a single device. Sorted here if needed.

        Returns:
            SegmentationResult with emitted trips and the open-trip marker.
        """
        if not samples:
            return SegmentationResult()

        ordered: list[CanonicalSample] = sorted(samples, key=lambda sample: sample.timestamp)
        device_id: str = ordered[0].device_id
        mode: SegmentationMode = self.select_mode(ordered)

        trips: list[Trip] = []
        discarded: int = 0
        open_trip: _OpenTrip | None = None
        previous_time: datetime | None = None

        for sample in ordered:
            gap_exceeded: bool = (
                previous_time is not None and sample.timestamp - previous_time > self._max_gap
            )
            previous_time = sample.timestamp

            if open_trip is not None and gap_exceeded:
                logger.debug(
                    'Device %s: %s reporting gap closes trip started %s',
                    device_id,
                    sample.timestamp - open_trip.points[-1].timestamp,
                    open_trip.start_time.isoformat(),
                )
                discarded += self._flush(open_trip.points, trips)
                open_trip = None

            if open_trip is None:
                if self._opens_trip(sample, mode):
                    open_trip = _OpenTrip(sample)
                continue

            if self._is_active(sample, mode):
                open_trip.add_active(sample)
                continue

            open_trip.add_inactive(sample)
            idle_seconds: float = (sample.timestamp - open_trip.last_active_time).total_seconds()
            if idle_seconds > self._config.idle_timeout_seconds:
                discarded += self._flush(open_trip.points_until_stop(), trips)
                open_trip = None

        open_trip_start: datetime | None = None
        if open_trip is not None:
            open_trip_start = open_trip.start_time
            discarded += self._flush(open_trip.points_until_stop(), trips)

        logger.debug(
            'Device %s: segmented %d samples in %s mode into %d trip(s), %d discarded',
            device_id,
            len(ordered),
            mode.value,
            len(trips),
            discarded,
        )

        return SegmentationResult(
            device_id=device_id,
            mode=mode,
            trips=trips,
            discarded=discarded,
            open_trip_start=open_trip_start,
        )

    def _opens_trip(self, sample: CanonicalSample, mode: SegmentationMode) -> bool:
        if mode is SegmentationMode.IGNITION:
            return sample.ignition_on
        return sample.speed_kmh > self._config.motion_threshold_kmh

    def _is_active(self, sample: CanonicalSample, mode: SegmentationMode) -> bool:
        moving: bool = sample.speed_kmh > self._config.motion_threshold_kmh
        if mode is SegmentationMode.IGNITION:
            return sample.ignition_on or moving
        return moving

    def _flush(self, points: list[CanonicalSample], trips: list[Trip]) -> int:
        """
        Build a trip from points and append it if it passes the flush rules.

        Returns:
            1 if the prospective trip was discarded, else 0.
        """
        trip: Trip | None = self.build_trip(points)
        if trip is None:
            return 1
        trips.append(trip)
        return 0

    def build_trip(self, points: Sequence[CanonicalSample]) -> Trip | None:
        """
        Summarize trip points, or return None for ghost and too-short trips.
        """
        if len(points) < 2:
            return None

        first: CanonicalSample = points[0]
        last: CanonicalSample = points[-1]
        duration_seconds: int = int((last.timestamp - first.timestamp).total_seconds())

        if duration_seconds <= 0 or duration_seconds < self._config.min_trip_duration_seconds:
            logger.debug(
                'Device %s: discarding %ds trip at %s (minimum %ds)',
                first.device_id,
                duration_seconds,
                first.timestamp.isoformat(),
                self._config.min_trip_duration_seconds,
            )
            return None

        fixes: list[CanonicalSample] = [point for point in points if point.has_coordinates]

        if len(fixes) >= 2:
            origin: CanonicalSample = fixes[0]
            path_km: float = 0.0
            displacement_km: float = 0.0
            for previous, current in zip(fixes, fixes[1:], strict=False):
                path_km += haversine_km(
                    previous.latitude,  # type: ignore[arg-type]
                    previous.longitude,  # type: ignore[arg-type]
                    current.latitude,  # type: ignore[arg-type]
                    current.longitude,  # type: ignore[arg-type]
                )
                displacement_km = max(
                    displacement_km,
                    haversine_km(
                        origin.latitude,  # type: ignore[arg-type]
                        origin.longitude,  # type: ignore[arg-type]
                        current.latitude,  # type: ignore[arg-type]
                        current.longitude,  # type: ignore[arg-type]
                    ),
                )

            if displacement_km < self._config.min_trip_distance_km:
                logger.debug(
                    'Device %s: discarding ghost trip at %s (displacement %.3f km)',
                    first.device_id,
                    first.timestamp.isoformat(),
                    displacement_km,
                )
                return None

            distance_km: float = round(path_km, 2)
            quality: DataQuality = DataQuality.HIGH
        else:
            distance_km = 0.0
            quality = DataQuality.LOW

        moving_speeds: list[float] = [point.speed_kmh for point in points if point.speed_kmh > 0]

        return Trip(
            device_id=first.device_id,
            start_time=first.timestamp,
            end_time=last.timestamp,
            start_latitude=first.latitude,
            start_longitude=first.longitude,
            end_latitude=last.latitude,
            end_longitude=last.longitude,
            distance_km=distance_km,
            avg_speed_kmh=(
                round(sum(moving_speeds) / len(moving_speeds), 1) if moving_speeds else None
            ),
            max_speed_kmh=round(max(moving_speeds), 1) if moving_speeds else None,
            duration_seconds=duration_seconds,
            source=TripSource.DERIVED,
            data_quality=quality,
            sample_count=len(points),
        )
