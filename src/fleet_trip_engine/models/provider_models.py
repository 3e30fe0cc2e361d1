# fleet_trip_engine/models/provider_models.py
"""
Request and response models for the tracking provider's open API.

The provider exposes a single `/openapi` endpoint; the operation is selected
with an `action` query parameter and its arguments travel in a JSON body.
Every response is a JSON object with a numeric `status` (0 on success), a
`cause` message, and a `records` array (sometimes nested under `data`).
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any, Final, Self

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_engine.models.raw_sample import parse_provider_timestamp

__all__: list[str] = [
    'PROVIDER_STATUS_OK',
    'HTTPMethod',
    'ProviderAction',
    'ProviderResponse',
    'ProviderTrip',
    'RateLimitInfo',
    'RequestSpec',
]

logger: logging.Logger = logging.getLogger(__name__)

PROVIDER_STATUS_OK: Final[int] = 0


class HTTPMethod(str, Enum):
    """HTTP methods used against the provider."""

    GET = 'GET'
    POST = 'POST'


class ProviderAction(str, Enum):
    """Operations of the provider API used by the engine."""

    LAST_POSITION = 'lastposition'
    QUERY_TRACK = 'querytrack'
    QUERY_TRIPS = 'querytrips'


class RequestSpec(BaseModel):
    """
    Complete specification for one provider HTTP request.

    Built by the client per action and executed by its retry layer, which
    never needs to know how the URL or body were assembled.

    Attributes:
        url: Complete URL without query string.
        method: HTTP method.
        headers: Extra headers.
        query_params: Serialized query parameters, including action and token.
        body: JSON body.
        timeout: (connect_timeout, read_timeout) in seconds.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    url: str
    method: HTTPMethod = HTTPMethod.POST
    headers: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] | None = None
    timeout: tuple[int, int] = Field(
        default=(10, 60),
        description='(connect_timeout, read_timeout) in seconds',
    )

    @property
    def action(self) -> str | None:
        """The provider action this request invokes."""
        return self.query_params.get('action')


class RateLimitInfo(BaseModel):
    """
    Rate limit metadata from an HTTP 429 response.

    Attributes:
        retry_after_seconds: Seconds to wait before retrying.
        remaining: Requests remaining in the current window, if reported.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    retry_after_seconds: float = 1.0
    remaining: int | None = None

    @classmethod
    def from_response_headers(cls, headers: Mapping[str, str]) -> Self:
        """
        Extract rate limit information from HTTP response headers.

        Header lookup is case-insensitive. A missing or non-numeric
        Retry-After falls back to one second.
        """
        normalized_headers: dict[str, str] = {
            key.lower(): value for key, value in headers.items()
        }

        try:
            retry_after: float = float(normalized_headers.get('retry-after', '1'))
        except ValueError:
            retry_after = 1.0

        remaining_raw: str | None = normalized_headers.get('x-ratelimit-remaining')
        remaining: int | None = (
            int(remaining_raw) if remaining_raw is not None and remaining_raw.isdigit() else None
        )

        return cls(retry_after_seconds=max(0.0, retry_after), remaining=remaining)


class ProviderResponse(BaseModel):
    """
    Envelope of a provider JSON response.

    Attributes:
        status: Provider status code, 0 on success.
        cause: Provider message accompanying the status.
        records: Result rows, each a raw provider mapping.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    status: int
    cause: str | None = None
    records: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_json(cls, response_json: Mapping[str, Any]) -> Self:
        """
        Parse a decoded response body.

        Records may live at the top level or under `data`; non-mapping rows
        are dropped. A missing status is treated as a failure code of -1.
        """
        raw_status: Any = response_json.get('status', -1)
        try:
            status: int = int(raw_status)
        except (TypeError, ValueError):
            status = -1

        cause: Any = response_json.get('cause') or response_json.get('message')

        records: Any = response_json.get('records')
        if records is None and isinstance(response_json.get('data'), Mapping):
            records = response_json['data'].get('records')
        if not isinstance(records, list):
            records = []

        return cls(
            status=status,
            cause=str(cause) if cause is not None else None,
            records=[dict(record) for record in records if isinstance(record, Mapping)],
        )

    @property
    def is_success(self) -> bool:
        return self.status == PROVIDER_STATUS_OK


class ProviderTrip(BaseModel):
    """
    A trip as reported by the provider's own trip detection.

    Used only to audit derived trips. Speeds arrive in metres per hour and
    distance in metres; both are converted here.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str
    start_time: datetime
    end_time: datetime
    distance_km: float | None = None
    max_speed_kmh: float | None = None
    avg_speed_kmh: float | None = None

    @classmethod
    def from_provider_record(
        cls,
        record: Mapping[str, Any],
        device_id: str,
        gmt_offset_hours: int = 8,
    ) -> Self | None:
        """
        Build a ProviderTrip, or return None if the record lacks valid times.
        """
        start_time: datetime | None = parse_provider_timestamp(
            record.get('starttime') or record.get('starttime_str'), gmt_offset_hours
        )
        end_time: datetime | None = parse_provider_timestamp(
            record.get('endtime') or record.get('endtime_str'), gmt_offset_hours
        )
        if start_time is None or end_time is None or end_time <= start_time:
            logger.debug('Dropping provider trip with invalid times: %r', record)
            return None

        distance_m: float | None = _positive_number(
            record.get('distance') or record.get('totaldistance')
        )
        max_speed_mph: float | None = _positive_number(record.get('maxspeed'))
        avg_speed_mph: float | None = _positive_number(record.get('avgspeed'))

        return cls(
            device_id=device_id,
            start_time=start_time,
            end_time=end_time,
            distance_km=round(distance_m / 1000, 2) if distance_m is not None else None,
            max_speed_kmh=round(max_speed_mph / 1000, 1) if max_speed_mph is not None else None,
            avg_speed_kmh=round(avg_speed_mph / 1000, 1) if avg_speed_mph is not None else None,
        )


def _positive_number(value: Any) -> float | None:
    """Return value as a positive float, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number: float = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None
