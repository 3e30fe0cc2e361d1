# fleet_trip_engine/__init__.py
"""
Fleet Trip Engine - telemetry normalization and trip extraction.

Turns raw, noisy GPS tracker reports into canonical samples and a clean,
deduplicated trip history:

1. **Engine** (pure, no I/O)
   - Unit and signal normalization with per-device battery profiles
   - Multi-signal ignition scoring with confidence and evidence
   - GPS spike rejection and speed smoothing
   - Trip segmentation by ignition or by speed

2. **Sync and Persistence**
   - SyncOrchestrator runs windowed, batched history syncs per device over
     a worker pool, sharing one token-bucket rate limiter
   - Cursors claimed with compare-and-swap, persisted backoff, watchdog
   - PersistenceGate deduplicates overlapping windows and keeps the most
     complete version of each trip
   - ReconciliationSweep backfills missing coordinates and distances

Quick Start:
    >>> from fleet_trip_engine import SyncOrchestrator
    >>>
    >>> # One-liner for cron jobs
    >>> with SyncOrchestrator.from_config('config/engine_config.yaml') as orchestrator:
    ...     summary = orchestrator.run_once()
    >>>
    >>> orchestrator.trip_repository.trips_dataframe(device_id='358899051234567')

Pure extraction without storage:
    >>> from fleet_trip_engine import TripExtractor
    >>> result = TripExtractor().extract(raw_samples)
    >>> result.segmentation.trips
"""

__version__ = '0.1.0'

from fleet_trip_engine.audit import TripAuditReport, audit_device_trips
from fleet_trip_engine.client import (
    APIError,
    AuthenticationError,
    Gps51Client,
    RateLimitError,
    TransientAPIError,
)
from fleet_trip_engine.common import TokenBucketRateLimiter, setup_logger
from fleet_trip_engine.config import EngineConfig, load_config
from fleet_trip_engine.engine import (
    SpikeFilter,
    TelemetryNormalizer,
    TripExtractor,
    TripSegmenter,
    score_ignition,
)
from fleet_trip_engine.events import TripEvent, TripEventPublisher
from fleet_trip_engine.models import CanonicalSample, RawSample, SyncCursor, Trip
from fleet_trip_engine.persistence_gate import GateDecision, PersistenceGate
from fleet_trip_engine.reconciliation import ReconciliationReport, ReconciliationSweep
from fleet_trip_engine.storage import (
    Database,
    SyncCursorRepository,
    TripRepository,
    VehicleStateRepository,
)
from fleet_trip_engine.sync import (
    DeviceSyncResult,
    SyncError,
    SyncOrchestrator,
    SyncRunSummary,
)

__all__: list[str] = [
    'APIError',
    'AuthenticationError',
    'CanonicalSample',
    'Database',
    'DeviceSyncResult',
    'EngineConfig',
    'GateDecision',
    'Gps51Client',
    'PersistenceGate',
    'RateLimitError',
    'RawSample',
    'ReconciliationReport',
    'ReconciliationSweep',
    'SpikeFilter',
    'SyncCursor',
    'SyncCursorRepository',
    'SyncError',
    'SyncOrchestrator',
    'SyncRunSummary',
    'TelemetryNormalizer',
    'TokenBucketRateLimiter',
    'TransientAPIError',
    'Trip',
    'TripAuditReport',
    'TripEvent',
    'TripEventPublisher',
    'TripExtractor',
    'TripRepository',
    'TripSegmenter',
    'VehicleStateRepository',
    '__version__',
    'audit_device_trips',
    'load_config',
    'score_ignition',
    'setup_logger',
]
