"""
Persistence layer: SQLAlchemy tables and repositories.

- database: engine/session factory and table definitions
- trip_repository: trip writes for the gate and reconciliation, read surfaces
- cursor_repository: per-device sync cursors with CAS claims
- vehicle_state_repository: latest canonical sample per device
"""

from fleet_trip_engine.storage.cursor_repository import SyncCursorRepository
from fleet_trip_engine.storage.database import (
    Base,
    Database,
    SyncCursorRecord,
    TripRecord,
    UTCDateTime,
    VehicleStateRecord,
)
from fleet_trip_engine.storage.trip_repository import (
    FieldFillResult,
    MileageSummary,
    TripRepository,
)
from fleet_trip_engine.storage.vehicle_state_repository import VehicleStateRepository

__all__: list[str] = [
    'Base',
    'Database',
    'FieldFillResult',
    'MileageSummary',
    'SyncCursorRecord',
    'SyncCursorRepository',
    'TripRecord',
    'TripRepository',
    'UTCDateTime',
    'VehicleStateRecord',
    'VehicleStateRepository',
]
