# fleet_trip_engine/events.py
"""
In-process trip events.

The persistence gate publishes an event whenever a trip is inserted or
replaces stored trips. Listeners (notifications, analytics, cache busting)
subscribe to the publisher; the engine itself never depends on whether any
listener is attached, and a failing listener never affects persistence or
other listeners.
"""

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_engine.models import Trip

__all__: list[str] = [
    'TripEvent',
    'TripEventListener',
    'TripEventPublisher',
    'TripEventType',
]

logger: logging.Logger = logging.getLogger(__name__)


class TripEventType(str, Enum):
    INSERTED = 'inserted'
    REPLACED = 'replaced'


class TripEvent(BaseModel):
    """
    A trip that was newly persisted.

    Attributes:
        event_type: Plain insert or replacement of overlapping trips.
        trip_id: Storage id of the persisted trip.
        trip: The persisted trip values.
        replaced_trip_ids: Ids of the stored trips deleted by a replacement.
        occurred_at: When the gate persisted the trip.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    event_type: TripEventType
    trip_id: int
    trip: Trip
    replaced_trip_ids: list[int] = Field(default_factory=list)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


type TripEventListener = Callable[[TripEvent], None]


class TripEventPublisher:
    """Synchronous fan-out of trip events to subscribed callables."""

    def __init__(self) -> None:
        self._listeners: list[TripEventListener] = []
        self._lock: threading.Lock = threading.Lock()

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def subscribe(self, listener: TripEventListener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that removes the listener again.
        """
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: TripEvent) -> int:
        """
        Deliver the event to every listener in subscription order.

        Returns:
            Number of listeners that handled the event without raising.
        """
        with self._lock:
            listeners: list[TripEventListener] = list(self._listeners)

        delivered: int = 0
        for listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception:
                logger.exception(
                    'Trip event listener %r failed for %s trip %d of device %s',
                    listener,
                    event.event_type.value,
                    event.trip_id,
                    event.trip.device_id,
                )
        return delivered
