# fleet_trip_engine/storage/database.py
"""
Relational persistence for trips, sync cursors and vehicle states.

Tables:
    trips           One row per trip, unique on (device_id, start_time, end_time).
    sync_cursors    One row per device, claimed with compare-and-swap updates.
    vehicle_states  Latest canonical sample per device.

Design Decisions:
-----------------
- Timestamps are stored as naive UTC and returned as aware UTC through the
  UTCDateTime type, so exact-match lookups on trip keys behave the same on
  SQLite and PostgreSQL.
- Insert-if-absent uses the dialect's native `ON CONFLICT DO NOTHING`; only
  SQLite and PostgreSQL are supported for that reason.
- In-memory SQLite databases share a single connection (StaticPool) so
  worker threads see the same data.
"""

import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Self

from sqlalchemy import (
    Boolean,
    DateTime,
    Dialect,
    Engine,
    Float,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from fleet_trip_engine.config import StorageConfig

__all__: list[str] = [
    'Base',
    'Database',
    'SyncCursorRecord',
    'TripRecord',
    'UTCDateTime',
    'VehicleStateRecord',
]

logger: logging.Logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS: int = 30


class UTCDateTime(TypeDecorator[datetime]):
    """Stores aware datetimes as naive UTC and restores the UTC tzinfo on load."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Declarative base for all engine tables."""


class TripRecord(Base):
    """Stored trip row."""

    __tablename__ = 'trips'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    start_latitude: Mapped[float | None] = mapped_column(Float)
    start_longitude: Mapped[float | None] = mapped_column(Float)
    end_latitude: Mapped[float | None] = mapped_column(Float)
    end_longitude: Mapped[float | None] = mapped_column(Float)
    distance_km: Mapped[float | None] = mapped_column(Float)
    avg_speed_kmh: Mapped[float | None] = mapped_column(Float)
    max_speed_kmh: Mapped[float | None] = mapped_column(Float)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default='derived')
    data_quality: Mapped[str] = mapped_column(String(8), nullable=False, default='high')
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # Set once a sweep searched complete history and could not finish the trip.
    reconcile_exhausted_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    __table_args__ = (
        UniqueConstraint(
            'device_id', 'start_time', 'end_time', name='uq_trips_device_start_end'
        ),
        Index('ix_trips_device_start', 'device_id', 'start_time'),
    )


class SyncCursorRecord(Base):
    """Per-device sync cursor row."""

    __tablename__ = 'sync_cursors'

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    sync_status: Mapped[str] = mapped_column(String(16), nullable=False, default='idle')
    error_message: Mapped[str | None] = mapped_column(Text)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    pending_trip_start: Mapped[datetime | None] = mapped_column(UTCDateTime)
    samples_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trips_inserted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trips_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trips_replaced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_success_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    __table_args__ = (Index('ix_sync_cursors_status', 'sync_status'),)


class VehicleStateRecord(Base):
    """Latest canonical sample per device."""

    __tablename__ = 'vehicle_states'

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    timestamp_source: Mapped[str] = mapped_column(String(8), nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)
    speed_kmh: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    heading: Mapped[float | None] = mapped_column(Float)
    altitude: Mapped[float | None] = mapped_column(Float)
    ignition_on: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ignition_confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    detection_method: Mapped[str] = mapped_column(String(16), nullable=False, default='none')
    ignition_reported: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    battery_level_pct: Mapped[int | None] = mapped_column(Integer)
    signal_strength_pct: Mapped[int | None] = mapped_column(Integer)
    is_moving: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    data_quality: Mapped[str] = mapped_column(String(8), nullable=False, default='low')
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class Database:
    """
    Engine and session factory for the engine tables.

    Example:
        >>> database = Database('sqlite:///data/fleet_trips.db')
        >>> database.create_all()
        >>> with database.session() as session:
        ...     session.execute(...)
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        """
        Args:
            database_url: SQLAlchemy URL (sqlite or postgresql).
            echo: Log emitted SQL through SQLAlchemy's logger.

        Raises:
            ValueError: For unsupported dialects.
        """
        self._engine: Engine = self._build_engine(database_url, echo)
        self._session_factory: sessionmaker[Session] = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
        )

        if self.dialect_name not in ('sqlite', 'postgresql'):
            raise ValueError(f'Unsupported database dialect: {self.dialect_name!r}')

        logger.info('Initialized Database: dialect=%s', self.dialect_name)

    @classmethod
    def from_config(cls, config: StorageConfig) -> Self:
        return cls(config.database_url)

    @staticmethod
    def _build_engine(database_url: str, echo: bool) -> Engine:
        url = make_url(database_url)

        if url.get_backend_name() != 'sqlite':
            return create_engine(url, echo=echo, pool_pre_ping=True)

        database_path: str | None = url.database
        if not database_path or database_path == ':memory:':
            return create_engine(
                url,
                echo=echo,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool,
            )

        Path(database_path).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(
            url,
            echo=echo,
            connect_args={
                'check_same_thread': False,
                'timeout': SQLITE_BUSY_TIMEOUT_SECONDS,
            },
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    def create_all(self) -> None:
        """Create missing tables. Existing tables are left untouched."""
        Base.metadata.create_all(self._engine)

    def dispose(self) -> None:
        """Release pooled connections."""
        self._engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Transactional session scope: commits on success, rolls back on error.
        """
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def insert_statement(self, record_type: type[Base]) -> Any:
        """Dialect-specific INSERT supporting ON CONFLICT clauses."""
        if self.dialect_name == 'postgresql':
            return postgresql.insert(record_type)
        return sqlite.insert(record_type)

    def insert_if_absent(
        self,
        session: Session,
        record_type: type[Base],
        values: Mapping[str, Any],
        conflict_columns: Sequence[str],
    ) -> Any | None:
        """
        Atomically insert a row unless it conflicts on the given columns.

        Returns:
            The new row's primary key, or None if a conflicting row existed.
        """
        primary_key_column: Any = record_type.__mapper__.primary_key[0]
        statement: Any = (
            self.insert_statement(record_type)
            .values(**values)
            .on_conflict_do_nothing(index_elements=list(conflict_columns))
            .returning(primary_key_column)
        )
        return session.execute(statement).scalar_one_or_none()
