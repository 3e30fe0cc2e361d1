# fleet_trip_engine/engine/extraction.py
"""
End-to-end trip extraction for one device window.

Chains the pure engine stages: normalize -> order and de-duplicate ->
spike filter and smoother -> segmentation. No I/O happens here; the sync
orchestrator feeds raw samples in and hands the trips to the persistence
gate.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Self

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_engine.config import EngineConfig
from fleet_trip_engine.engine.normalizer import TelemetryNormalizer
from fleet_trip_engine.engine.segmentation import SegmentationResult, TripSegmenter
from fleet_trip_engine.engine.spike_filter import SpikeFilter
from fleet_trip_engine.models import CanonicalSample, RawSample

__all__: list[str] = ['ExtractionResult', 'TripExtractor']

logger: logging.Logger = logging.getLogger(__name__)


class ExtractionResult(BaseModel):
    """
    Samples and trips produced for one device window.

    Attributes:
        samples: Cleaned canonical samples in time order.
        segmentation: Trips and the open-trip marker.
        raw_count: Raw samples received.
        spikes_rejected: Samples removed by the spike filter.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    samples: list[CanonicalSample] = Field(default_factory=list)
    segmentation: SegmentationResult = Field(default_factory=SegmentationResult)
    raw_count: int = 0
    spikes_rejected: int = 0

    @property
    def latest_sample(self) -> CanonicalSample | None:
        return self.samples[-1] if self.samples else None


class TripExtractor:
    """
    Runs the normalizer, spike filter and segmenter in sequence.

    Example:
        >>> extractor = TripExtractor.from_config(config)
        >>> result = extractor.extract(raw_samples)
        >>> result.segmentation.trips
    """

    def __init__(
        self,
        normalizer: TelemetryNormalizer | None = None,
        spike_filter: SpikeFilter | None = None,
        segmenter: TripSegmenter | None = None,
    ) -> None:
        self._normalizer: TelemetryNormalizer = normalizer or TelemetryNormalizer()
        self._spike_filter: SpikeFilter = spike_filter or SpikeFilter()
        self._segmenter: TripSegmenter = segmenter or TripSegmenter()

    @classmethod
    def from_config(cls, config: EngineConfig) -> Self:
        return cls(
            normalizer=TelemetryNormalizer(config.normalizer),
            spike_filter=SpikeFilter(config.spike_filter),
            segmenter=TripSegmenter(config.segmentation),
        )

    @property
    def normalizer(self) -> TelemetryNormalizer:
        return self._normalizer

    def extract(
        self,
        raw_samples: Iterable[RawSample],
        received_at: datetime | None = None,
    ) -> ExtractionResult:
        """
        Turn one device's raw samples into trips.

        Args:
            raw_samples: Raw samples of a single device, any order.
            received_at: Fallback timestamp for samples without one.

        Returns:
            ExtractionResult. Empty input gives an empty result.
        """
        raw_list: list[RawSample] = list(raw_samples)
        if not raw_list:
            return ExtractionResult()

        ordered: list[CanonicalSample] = self._normalizer.normalize_series(
            raw_list, received_at
        )
        cleaned: list[CanonicalSample] = self._spike_filter.clean(ordered)
        segmentation: SegmentationResult = self._segmenter.segment(cleaned)

        return ExtractionResult(
            samples=cleaned,
            segmentation=segmentation,
            raw_count=len(raw_list),
            spikes_rejected=len(ordered) - len(cleaned),
        )
