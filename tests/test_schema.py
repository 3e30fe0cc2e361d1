"""
Tests for fleet_trip_engine.schema module.

Tests column order, type coercion, sorting and idempotence of the trip
DataFrame schema.
"""

from datetime import UTC, datetime
from typing import Any

import pandas as pd
import pytest

from fleet_trip_engine.schema import TRIP_COLUMNS, TRIP_SORT_COLUMNS, enforce_trip_schema


def _row(**overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        'id': 1,
        'device_id': '358899051234567',
        'start_time': datetime(2024, 6, 12, 8, 0, tzinfo=UTC),
        'end_time': datetime(2024, 6, 12, 8, 10, tzinfo=UTC),
        'start_latitude': 31.2,
        'start_longitude': 121.4,
        'end_latitude': 31.245,
        'end_longitude': 121.4,
        'distance_km': 5.0,
        'avg_speed_kmh': 30.0,
        'max_speed_kmh': 42.5,
        'duration_seconds': 600,
        'source': 'derived',
        'data_quality': 'high',
        'sample_count': 21,
    }
    row.update(overrides)
    return row


class TestSchemaConstants:
    """Test schema constant definitions."""

    def test_sort_columns_are_trip_columns(self) -> None:
        """TRIP_SORT_COLUMNS should be (device_id, start_time)."""
        assert TRIP_SORT_COLUMNS == ['device_id', 'start_time']
        assert all(column in TRIP_COLUMNS for column in TRIP_SORT_COLUMNS)

    def test_no_duplicate_columns(self) -> None:
        """TRIP_COLUMNS should not repeat a column."""
        assert len(TRIP_COLUMNS) == len(set(TRIP_COLUMNS))


class TestEnforceTripSchema:
    """Test enforce_trip_schema()."""

    def test_missing_columns_raise(self) -> None:
        """Should name the missing columns."""
        dataframe = pd.DataFrame([_row()]).drop(columns=['distance_km'])

        with pytest.raises(ValueError, match='distance_km'):
            enforce_trip_schema(dataframe)

    def test_orders_and_drops_columns(self) -> None:
        """Should return exactly TRIP_COLUMNS in order."""
        dataframe = pd.DataFrame([_row(extra='ignored')])
        dataframe = dataframe[list(reversed(dataframe.columns))]

        result: pd.DataFrame = enforce_trip_schema(dataframe)

        assert list(result.columns) == TRIP_COLUMNS

    def test_coerces_types(self) -> None:
        """Should coerce datetimes, floats, nullable ints and categories."""
        dataframe = pd.DataFrame(
            [
                _row(
                    start_time='2024-06-12T08:00:00Z',
                    end_latitude=None,
                    end_longitude=None,
                    distance_km='7.5',
                    avg_speed_kmh=None,
                    sample_count=None,
                )
            ]
        )

        result: pd.DataFrame = enforce_trip_schema(dataframe)

        assert isinstance(result['start_time'].dtype, pd.DatetimeTZDtype)
        assert str(result['start_time'].dt.tz) == 'UTC'
        assert result['distance_km'].dtype == 'float64'
        assert result.loc[0, 'distance_km'] == 7.5
        assert pd.isna(result.loc[0, 'end_latitude'])
        assert pd.isna(result.loc[0, 'avg_speed_kmh'])
        assert str(result['sample_count'].dtype) == 'Int64'
        assert result['sample_count'].isna().all()
        assert isinstance(result['source'].dtype, pd.CategoricalDtype)

    def test_sorts_by_device_and_start(self) -> None:
        """Should sort rows by device then start time."""
        dataframe = pd.DataFrame(
            [
                _row(id=1, device_id='b', start_time=datetime(2024, 6, 12, 7, tzinfo=UTC)),
                _row(id=2, device_id='a', start_time=datetime(2024, 6, 12, 7, tzinfo=UTC)),
                _row(id=3, device_id='a', start_time=datetime(2024, 6, 12, 6, tzinfo=UTC)),
            ]
        )

        result: pd.DataFrame = enforce_trip_schema(dataframe)

        assert result['id'].tolist() == [3, 2, 1]

    def test_idempotent(self) -> None:
        """Should leave its own output unchanged."""
        once: pd.DataFrame = enforce_trip_schema(pd.DataFrame([_row(), _row(id=2)]))
        twice: pd.DataFrame = enforce_trip_schema(once)

        pd.testing.assert_frame_equal(once, twice)

    def test_warns_on_unordered_rows(self, caplog: pytest.LogCaptureFixture) -> None:
        """Should log rows whose end is not after their start."""
        dataframe = pd.DataFrame(
            [_row(end_time=datetime(2024, 6, 12, 7, 0, tzinfo=UTC))]
        )

        enforce_trip_schema(dataframe)

        assert 'end_time is not after start_time' in caplog.text
