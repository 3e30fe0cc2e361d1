# fleet_trip_engine/common/parquet_export.py
"""
Parquet export of stored trips.

The database is the system of record; this module only writes snapshots of
the trip table for analysts and BI tools that prefer columnar files.

Design Philosophy:
------------------
- load() returns None on errors (a missing or corrupt export is recoverable)
- export() raises on errors (filesystem issues require explicit handling)
- Writes are atomic (temp file + rename) so readers never see a partial file

Usage:
------
    exporter = TripParquetExporter(Path('data/trips.parquet'))
    exporter.export(trip_repository.trips_dataframe())
"""

import logging
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import cast

import pandas as pd
from pyarrow import (
    ArrowInvalid as _ArrowInvalid,  # pyright: ignore[reportUnknownVariableType]
    ArrowIOError as _ArrowIOError,  # pyright: ignore[reportUnknownVariableType]
)

from fleet_trip_engine.config import CompressionType

# The pyarrow type stubs are incomplete; cast for use in except clauses.
ArrowInvalid: type[Exception] = cast(type[Exception], _ArrowInvalid)
ArrowIOError: type[Exception] = cast(type[Exception], _ArrowIOError)

__all__: list[str] = ['TripParquetExporter']

logger: logging.Logger = logging.getLogger(__name__)


class TripParquetExporter:
    """
    Writes trip DataFrames to a single Parquet file.

    Attributes:
        path: Target Parquet file (read-only property).
        exists: Whether the export file currently exists.
    """

    def __init__(
        self,
        export_path: Path,
        compression: CompressionType = 'snappy',
    ) -> None:
        """
        Args:
            export_path: Target file. Its parent directory is created now.
            compression: Parquet compression codec.

        Raises:
            OSError: If the parent directory cannot be created.
        """
        self._path: Path = export_path
        self._compression: CompressionType = compression

        self._path.parent.mkdir(parents=True, exist_ok=True)

        logger.debug(
            'Initialized TripParquetExporter: path=%r, compression=%r',
            self._path,
            self._compression,
        )

    @property
    def path(self) -> Path:
        """The configured Parquet file path."""
        return self._path

    @property
    def exists(self) -> bool:
        """Whether the export file currently exists on disk."""
        return self._path.exists()

    def load(self) -> pd.DataFrame | None:
        """
        Read the last export back, or None if it is missing or unreadable.
        """
        if not self._path.exists():
            return None

        try:
            dataframe: pd.DataFrame = pd.read_parquet(self._path)
        except (OSError, ArrowInvalid, ArrowIOError) as read_error:
            logger.exception('Failed to read trip export %r: %s', self._path, read_error)
            return None

        logger.debug('Loaded %d trips from %r', len(dataframe), self._path)
        return dataframe

    def export(self, dataframe: pd.DataFrame) -> None:
        """
        Atomically replace the export file with the given trips.

        Args:
            dataframe: Trips to write. An empty frame is written with a warning.

        Raises:
            OSError: File system errors (permissions, disk full).
            ArrowInvalid: DataFrame contains unserializable types.
            ArrowIOError: I/O errors during write.
        """
        if dataframe.empty:
            logger.warning('Exporting empty trip DataFrame to %r', self._path)

        temp_path: Path | None = None
        try:
            # Same directory as the target so the rename stays on one filesystem.
            with tempfile.NamedTemporaryFile(
                mode='wb',
                suffix='.parquet.tmp',
                dir=self._path.parent,
                delete=False,
            ) as temp_file:
                temp_path = Path(temp_file.name)

            dataframe.to_parquet(temp_path, index=False, compression=self._compression)
            temp_path.replace(self._path)

        except (OSError, ArrowInvalid, ArrowIOError) as write_error:
            logger.exception(
                'Failed to export %d trips to %r: %s',
                len(dataframe),
                self._path,
                write_error,
            )
            if temp_path is not None and temp_path.exists():
                with suppress(OSError):
                    temp_path.unlink()
            raise

        logger.info('Exported %d trips to %r', len(dataframe), self._path)
