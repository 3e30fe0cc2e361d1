# fleet_trip_engine/engine/spike_filter.py
"""
GPS spike rejection and speed smoothing.

Both passes take a time-ordered device series and return a new list in the
same order. Both are idempotent: running them on their own output changes
nothing.

Spike rejection compares each fix with the last *retained* fix, so one bad
point cannot drag the reference away and cause the next good point to be
rejected. Samples without coordinates are kept for timing and ignition
bookkeeping but never become the reference.

Speed smoothing replaces isolated implausible speeds with the average of
their plausible neighbours. Passes repeat until nothing changes, which makes
the output a fixed point of the smoother.
"""

import logging
from collections.abc import Sequence

from fleet_trip_engine.common.geo import haversine_km
from fleet_trip_engine.config import SpikeFilterConfig
from fleet_trip_engine.models import CanonicalSample

__all__: list[str] = ['SpikeFilter']

logger: logging.Logger = logging.getLogger(__name__)

SECONDS_PER_HOUR: float = 3600.0


class SpikeFilter:
    """
    Removes physically impossible fixes and smooths speed outliers.

    Example:
        >>> spike_filter = SpikeFilter(SpikeFilterConfig())
        >>> cleaned = spike_filter.clean(samples)
    """

    def __init__(self, config: SpikeFilterConfig | None = None) -> None:
        self._config: SpikeFilterConfig = config or SpikeFilterConfig()

    def clean(self, samples: Sequence[CanonicalSample]) -> list[CanonicalSample]:
        """Reject spikes, then smooth speeds."""
        retained: list[CanonicalSample] = self.reject_spikes(samples)
        return self.smooth_speeds(retained)

    def reject_spikes(
        self,
        samples: Sequence[CanonicalSample],
    ) -> list[CanonicalSample]:
        """
        Drop fixes that jump too far or imply an impossible speed.

        A fix is rejected when, relative to the last retained fix, it is
        more than max_jump_km away or its implied speed exceeds
        max_plausible_speed_kmh. The jump limit is waived after a silence of
        reanchor_gap_seconds, since a vehicle can legitimately travel far
        while not reporting; the implied-speed limit always applies.

        Args:
            samples: Time-ordered samples of one device.

        Returns:
            Retained samples in their original order.
        """
        config: SpikeFilterConfig = self._config
        retained: list[CanonicalSample] = []
        anchor: CanonicalSample | None = None
        rejected: int = 0

        for sample in samples:
            if not sample.has_coordinates:
                retained.append(sample)
                continue

            if anchor is None:
                anchor = sample
                retained.append(sample)
                continue

            if self._is_spike(anchor, sample):
                rejected += 1
                continue

            anchor = sample
            retained.append(sample)

        if rejected:
            logger.warning(
                'Rejected %d GPS spike(s) out of %d samples for device %s '
                '(max_jump=%.1f km, max_speed=%.0f km/h)',
                rejected,
                len(samples),
                samples[0].device_id,
                config.max_jump_km,
                config.max_plausible_speed_kmh,
            )

        return retained

    def _is_spike(self, anchor: CanonicalSample, sample: CanonicalSample) -> bool:
        """Judge a fix against the last retained fix."""
        config: SpikeFilterConfig = self._config

        # Both samples carry coordinates; checked by the caller.
        distance_km: float = haversine_km(
            anchor.latitude,  # type: ignore[arg-type]
            anchor.longitude,  # type: ignore[arg-type]
            sample.latitude,  # type: ignore[arg-type]
            sample.longitude,  # type: ignore[arg-type]
        )
        if distance_km == 0.0:
            return False

        elapsed_seconds: float = (sample.timestamp - anchor.timestamp).total_seconds()
        if elapsed_seconds <= 0:
            return True

        if distance_km > config.max_jump_km and elapsed_seconds < config.reanchor_gap_seconds:
            return True

        implied_speed_kmh: float = distance_km / (elapsed_seconds / SECONDS_PER_HOUR)
        return implied_speed_kmh > config.max_plausible_speed_kmh

    def smooth_speeds(
        self,
        samples: Sequence[CanonicalSample],
    ) -> list[CanonicalSample]:
        """
        Replace isolated implausible speeds with their neighbourhood average.

        A speed is replaced when it exceeds max_plausible_speed_kmh and is
        more than smoothing_factor times the mean of the plausible speeds
        around it in the centred window. Replacements are always plausible,
        so repeated passes terminate.

        Args:
            samples: Time-ordered samples of one device.

        Returns:
            Samples with outlier speeds replaced, same order and length.
        """
        config: SpikeFilterConfig = self._config
        speeds: list[float] = [sample.speed_kmh for sample in samples]
        half_window: int = config.smoothing_window // 2
        replaced_indexes: set[int] = set()

        changed: bool = True
        while changed:
            changed = False
            next_speeds: list[float] = list(speeds)

            for index, speed in enumerate(speeds):
                if speed <= config.max_plausible_speed_kmh:
                    continue

                neighbours: list[float] = [
                    speeds[other]
                    for other in range(index - half_window, index + half_window + 1)
                    if other != index
                    and 0 <= other < len(speeds)
                    and speeds[other] <= config.max_plausible_speed_kmh
                ]
                if not neighbours:
                    continue

                local_average: float = sum(neighbours) / len(neighbours)
                if speed > config.smoothing_factor * local_average:
                    next_speeds[index] = round(local_average, 1)
                    replaced_indexes.add(index)
                    changed = True

            speeds = next_speeds

        if not replaced_indexes:
            return list(samples)

        logger.debug(
            'Smoothed %d speed outlier(s) for device %s',
            len(replaced_indexes),
            samples[0].device_id,
        )

        return [
            sample.model_copy(update={'speed_kmh': speeds[index]})
            if index in replaced_indexes
            else sample
            for index, sample in enumerate(samples)
        ]
