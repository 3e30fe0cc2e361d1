"""
Configuration Package for the Fleet Trip Engine.

Exposes the configuration models and the loader function.
"""

from fleet_trip_engine.config.config_models import (
    DEFAULT_BATTERY_PROFILES,
    BatteryChemistry,
    BatteryProfile,
    CompressionType,
    DedupConfig,
    EngineConfig,
    LoggingConfig,
    NormalizerConfig,
    ProviderConfig,
    RateLimitConfig,
    ReconciliationConfig,
    SegmentationConfig,
    SpikeFilterConfig,
    StorageConfig,
    SyncConfig,
)
from fleet_trip_engine.config.loader import load_config

__all__: list[str] = [
    'DEFAULT_BATTERY_PROFILES',
    'BatteryChemistry',
    'BatteryProfile',
    'CompressionType',
    'DedupConfig',
    'EngineConfig',
    'LoggingConfig',
    'NormalizerConfig',
    'ProviderConfig',
    'RateLimitConfig',
    'ReconciliationConfig',
    'SegmentationConfig',
    'SpikeFilterConfig',
    'StorageConfig',
    'SyncConfig',
    'load_config',
]
