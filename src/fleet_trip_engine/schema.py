# fleet_trip_engine/schema.py
"""
Tabular schema for trip exports.

Defines the canonical column order and types of trip DataFrames, so the
repository read surface, the Parquet exporter and downstream analysis all
agree on one layout.

Design Rationale:
-----------------
The schema is flat, one row per trip, with nullable floats for coordinates
and statistics. Low-cardinality labels (source, data quality) are stored as
categories to keep Parquet files small.
"""

import logging
from typing import Final

import numpy as np
import pandas as pd

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'TRIP_COLUMNS',
    'TRIP_SORT_COLUMNS',
    'enforce_trip_schema',
]

# =============================================================================
# Schema Constants
# =============================================================================

TRIP_COLUMNS: Final[list[str]] = [
    'id',  # Surrogate key from storage
    'device_id',  # Provider device identifier
    'start_time',  # Trip start (UTC, timezone-aware)
    'end_time',  # Trip end (UTC, timezone-aware)
    'start_latitude',
    'start_longitude',
    'end_latitude',
    'end_longitude',
    'distance_km',  # Path length over GPS fixes
    'avg_speed_kmh',
    'max_speed_kmh',
    'duration_seconds',
    'source',  # 'derived' or 'reconciled'
    'data_quality',  # 'high', 'medium' or 'low'
    'sample_count',
]

TRIP_SORT_COLUMNS: Final[list[str]] = ['device_id', 'start_time']

_DATETIME_COLUMNS: Final[list[str]] = ['start_time', 'end_time']
_FLOAT_COLUMNS: Final[list[str]] = [
    'start_latitude',
    'start_longitude',
    'end_latitude',
    'end_longitude',
    'distance_km',
    'avg_speed_kmh',
    'max_speed_kmh',
]
_INTEGER_COLUMNS: Final[list[str]] = ['id', 'duration_seconds', 'sample_count']
_CATEGORICAL_COLUMNS: Final[list[str]] = ['source', 'data_quality']


# =============================================================================
# Schema Functions
# =============================================================================


def enforce_trip_schema(dataframe: pd.DataFrame) -> pd.DataFrame:
    """
    Enforce column order and types on a trip DataFrame.

    Idempotent: applying it to its own output changes nothing.

    Args:
        dataframe: DataFrame holding at least TRIP_COLUMNS.

    Returns:
        DataFrame with exactly TRIP_COLUMNS, sorted by device and start:
            - start_time/end_time: datetime64[ns, UTC]
            - coordinates, distance, speeds: float64 (NaN when unknown)
            - id/duration_seconds/sample_count: Int64 (nullable integer)
            - source/data_quality: category
            - device_id: str

    Raises:
        ValueError: If required columns are missing.
    """
    missing_columns: set[str] = set(TRIP_COLUMNS) - set(dataframe.columns)
    if missing_columns:
        raise ValueError(
            f'DataFrame missing required columns: {sorted(missing_columns)}'
        )

    result: pd.DataFrame = dataframe.copy()

    for column_name in _DATETIME_COLUMNS:
        result[column_name] = pd.to_datetime(result[column_name], utc=True, errors='coerce')

    for column_name in _FLOAT_COLUMNS:
        result[column_name] = pd.to_numeric(
            result[column_name], errors='coerce'
        ).astype(np.float64)

    for column_name in _INTEGER_COLUMNS:
        result[column_name] = pd.to_numeric(
            result[column_name], errors='coerce'
        ).astype('Int64')

    for column_name in _CATEGORICAL_COLUMNS:
        result[column_name] = result[column_name].astype('category')

    result['device_id'] = result['device_id'].astype(str)

    unordered_mask: pd.Series = result['end_time'] <= result['start_time']
    unordered_count: int = int(unordered_mask.sum())
    if unordered_count > 0:
        logger.warning(
            'Found %d trip rows whose end_time is not after start_time', unordered_count
        )

    result = result[TRIP_COLUMNS]
    return result.sort_values(TRIP_SORT_COLUMNS, kind='stable').reset_index(drop=True)
