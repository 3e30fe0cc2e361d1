# fleet_trip_engine/common/__init__.py

from fleet_trip_engine.common.geo import haversine_km, is_valid_coordinate
from fleet_trip_engine.common.logger import setup_logger
from fleet_trip_engine.common.parquet_export import TripParquetExporter
from fleet_trip_engine.common.rate_limiter import TokenBucketRateLimiter
from fleet_trip_engine.common.truststore_context import build_truststore_ssl_context

__all__: list[str] = [
    'TokenBucketRateLimiter',
    'TripParquetExporter',
    'build_truststore_ssl_context',
    'haversine_km',
    'is_valid_coordinate',
    'setup_logger',
]
