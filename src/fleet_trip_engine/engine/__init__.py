"""
Pure telemetry processing stages.

Nothing in this package performs I/O. Each stage is deterministic and safe
to call concurrently for different devices.
"""

from fleet_trip_engine.engine.battery import (
    battery_percent_from_voltage,
    resolve_battery_level,
)
from fleet_trip_engine.engine.extraction import ExtractionResult, TripExtractor
from fleet_trip_engine.engine.ignition import (
    parse_acc_text,
    parse_status_word,
    score_ignition,
)
from fleet_trip_engine.engine.normalizer import (
    TelemetryNormalizer,
    resolve_coordinates,
    resolve_signal_strength,
    resolve_speed_kmh,
    score_data_quality,
)
from fleet_trip_engine.engine.segmentation import (
    SegmentationMode,
    SegmentationResult,
    TripSegmenter,
)
from fleet_trip_engine.engine.spike_filter import SpikeFilter

__all__: list[str] = [
    'ExtractionResult',
    'SegmentationMode',
    'SegmentationResult',
    'SpikeFilter',
    'TelemetryNormalizer',
    'TripExtractor',
    'TripSegmenter',
    'battery_percent_from_voltage',
    'parse_acc_text',
    'parse_status_word',
    'resolve_battery_level',
    'resolve_coordinates',
    'resolve_signal_strength',
    'resolve_speed_kmh',
    'score_data_quality',
    'score_ignition',
]
