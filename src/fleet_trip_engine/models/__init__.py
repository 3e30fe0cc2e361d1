"""
Data models for the Fleet Trip Engine.

- raw_sample: unprocessed provider reports and timestamp parsing
- canonical: normalized samples and the tagged ignition reading
- trip: derived and stored trips
- sync_cursor: per-device sync progress
- provider_models: provider API request/response envelopes
"""

from fleet_trip_engine.models.canonical import (
    CanonicalSample,
    DataQuality,
    DetectionMethod,
    IgnitionReading,
    TimestampSource,
)
from fleet_trip_engine.models.provider_models import (
    PROVIDER_STATUS_OK,
    HTTPMethod,
    ProviderAction,
    ProviderResponse,
    ProviderTrip,
    RateLimitInfo,
    RequestSpec,
)
from fleet_trip_engine.models.raw_sample import RawSample, parse_provider_timestamp
from fleet_trip_engine.models.sync_cursor import SyncCursor, SyncStatus
from fleet_trip_engine.models.trip import StoredTrip, Trip, TripKey, TripSource

__all__: list[str] = [
    'PROVIDER_STATUS_OK',
    'CanonicalSample',
    'DataQuality',
    'DetectionMethod',
    'HTTPMethod',
    'IgnitionReading',
    'ProviderAction',
    'ProviderResponse',
    'ProviderTrip',
    'RateLimitInfo',
    'RawSample',
    'RequestSpec',
    'StoredTrip',
    'SyncCursor',
    'SyncStatus',
    'TimestampSource',
    'Trip',
    'TripKey',
    'TripSource',
    'parse_provider_timestamp',
]
