"""
Tests for fleet_trip_engine.client module.

Tests Gps51Client request building, provider status mapping, retries and
rate-limit handling. HTTP is mocked at the httpx.Client.request level.
"""
# pyright: reportPrivateUsage=false

from datetime import UTC, datetime
from typing import Any
from unittest.mock import Mock, patch

import httpx
import pytest

from conftest import DEVICE_ID, OTHER_DEVICE_ID, FakeClock
from fleet_trip_engine.client import (
    APIError,
    AuthenticationError,
    Gps51Client,
    RateLimitError,
    TransientAPIError,
    format_provider_time,
)
from fleet_trip_engine.common import TokenBucketRateLimiter
from fleet_trip_engine.config import ProviderConfig
from fleet_trip_engine.models import HTTPMethod, ProviderAction, ProviderTrip, RawSample

WINDOW_START = datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
WINDOW_END = datetime(2024, 1, 1, 1, 0, tzinfo=UTC)

TRACK_RECORD: dict[str, Any] = {
    'gpstime': 1704067200000,
    'callat': 31.2,
    'callon': 121.4,
    'speed': 60000,
    'status': 1,
    'strstatusen': 'ACC ON',
}


def _response(
    json_body: Any = None,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
) -> Mock:
    response = Mock(spec=httpx.Response)
    response.status_code = status_code
    response.is_success = 200 <= status_code < 300
    response.headers = headers or {}
    response.json.return_value = json_body
    response.text = str(json_body)
    return response


def _ok(records: list[dict[str, Any]]) -> Mock:
    return _response({'status': 0, 'cause': 'OK', 'records': records})


@pytest.fixture
def limiter(fake_clock: FakeClock) -> TokenBucketRateLimiter:
    """Provide a generous limiter driven by the fake clock."""
    return TokenBucketRateLimiter(
        requests_per_second=100.0,
        burst=100,
        cooldown_seconds=20.0,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )


@pytest.fixture
def client(provider_config: ProviderConfig, limiter: TokenBucketRateLimiter) -> Gps51Client:
    """Provide a client whose retries never sleep."""
    return Gps51Client(provider_config, limiter, sleep=lambda _seconds: None)


class TestInitialization:
    """Test Gps51Client construction and lifecycle."""

    def test_context_manager_closes_client(
        self, provider_config: ProviderConfig, limiter: TokenBucketRateLimiter
    ) -> None:
        """Should close the HTTP client on exit."""
        with Gps51Client(provider_config, limiter) as client:
            http_client: httpx.Client = client._http_client

        assert http_client.is_closed

    def test_request_spec_carries_action_and_token(self, client: Gps51Client) -> None:
        """Should POST to /openapi with action, token and server id as query params."""
        spec = client.build_request_spec(ProviderAction.QUERY_TRACK, {'deviceid': DEVICE_ID})

        assert spec.url == 'https://api.example.com/openapi'
        assert spec.method is HTTPMethod.POST
        assert spec.query_params == {
            'action': 'querytrack',
            'token': 'test-token',
            'serverid': '1',
        }
        assert spec.body == {'deviceid': DEVICE_ID}


class TestFetchTrackHistory:
    """Test fetch_track_history()."""

    def test_sends_provider_local_times(self, client: Gps51Client) -> None:
        """Should render the window in the provider's GMT offset."""
        with patch.object(
            client._http_client, 'request', return_value=_ok([TRACK_RECORD])
        ) as mock_request:
            client.fetch_track_history(DEVICE_ID, WINDOW_START, WINDOW_END)

        call_kwargs: dict[str, Any] = mock_request.call_args.kwargs
        assert call_kwargs['method'] == 'POST'
        assert call_kwargs['url'] == 'https://api.example.com/openapi'
        assert call_kwargs['params']['action'] == 'querytrack'
        assert call_kwargs['json'] == {
            'deviceid': DEVICE_ID,
            'starttime': '2024-01-01 08:00:00',
            'endtime': '2024-01-01 09:00:00',
            'coordsys': 'wgs84',
        }

    def test_parses_records(self, client: Gps51Client) -> None:
        """Should map provider aliases onto RawSample and fill the device id."""
        with patch.object(client._http_client, 'request', return_value=_ok([TRACK_RECORD])):
            samples: list[RawSample] = client.fetch_track_history(
                DEVICE_ID, WINDOW_START, WINDOW_END
            )

        assert len(samples) == 1
        sample: RawSample = samples[0]
        assert sample.device_id == DEVICE_ID
        assert sample.latitude == 31.2
        assert sample.speed == 60000
        assert sample.status_text == 'ACC ON'
        assert sample.device_time == WINDOW_START

    def test_reads_records_nested_under_data(self, client: Gps51Client) -> None:
        """Should accept records wrapped in a data object."""
        body: dict[str, Any] = {'status': 0, 'data': {'records': [TRACK_RECORD]}}

        with patch.object(client._http_client, 'request', return_value=_response(body)):
            samples: list[RawSample] = client.fetch_track_history(
                DEVICE_ID, WINDOW_START, WINDOW_END
            )

        assert len(samples) == 1


class TestFetchLastPositions:
    """Test fetch_last_positions()."""

    def test_queries_in_chunks(self, client: Gps51Client) -> None:
        """Should split device ids by device_chunk_size."""
        devices: list[str] = [DEVICE_ID, OTHER_DEVICE_ID, '358899051234569']
        responses: list[Mock] = [
            _ok([{**TRACK_RECORD, 'deviceid': DEVICE_ID}]),
            _ok([{**TRACK_RECORD, 'deviceid': '358899051234569'}]),
        ]

        with patch.object(
            client._http_client, 'request', side_effect=responses
        ) as mock_request:
            samples: list[RawSample] = client.fetch_last_positions(devices)

        assert mock_request.call_count == 2
        first_body: dict[str, Any] = mock_request.call_args_list[0].kwargs['json']
        assert first_body == {
            'deviceids': [DEVICE_ID, OTHER_DEVICE_ID],
            'lastquerypositiontime': 0,
        }
        assert [sample.device_id for sample in samples] == [DEVICE_ID, '358899051234569']

    def test_drops_records_without_device_id(self, client: Gps51Client) -> None:
        """Should skip records that carry no device id."""
        with patch.object(client._http_client, 'request', return_value=_ok([TRACK_RECORD])):
            samples: list[RawSample] = client.fetch_last_positions([DEVICE_ID])

        assert samples == []


class TestFetchProviderTrips:
    """Test fetch_provider_trips()."""

    def test_converts_units(self, client: Gps51Client) -> None:
        """Should convert metres and metres per hour."""
        record: dict[str, Any] = {
            'starttime': 1704067200000,
            'endtime': 1704069000000,
            'distance': 12340,
            'maxspeed': 80000,
            'avgspeed': 40000,
        }

        with patch.object(
            client._http_client, 'request', return_value=_ok([record])
        ) as mock_request:
            trips: list[ProviderTrip] = client.fetch_provider_trips(
                DEVICE_ID, WINDOW_START, WINDOW_END
            )

        assert mock_request.call_args.kwargs['json']['timezone'] == 8
        assert len(trips) == 1
        assert trips[0].distance_km == 12.34
        assert trips[0].max_speed_kmh == 80.0
        assert trips[0].avg_speed_kmh == 40.0


class TestErrorHandling:
    """Test status mapping and retries."""

    def test_token_error_is_not_retried(self, client: Gps51Client) -> None:
        """Should raise AuthenticationError on provider status 9903 without retrying."""
        body: dict[str, Any] = {'status': 9903, 'cause': 'token expired'}

        with patch.object(
            client._http_client, 'request', return_value=_response(body)
        ) as mock_request:
            with pytest.raises(AuthenticationError) as exc_info:
                client.fetch_track_history(DEVICE_ID, WINDOW_START, WINDOW_END)

        assert exc_info.value.provider_status == 9903
        assert mock_request.call_count == 1

    def test_provider_rate_limit_penalizes_and_retries(
        self,
        client: Gps51Client,
        limiter: TokenBucketRateLimiter,
        fake_clock: FakeClock,
    ) -> None:
        """Should cool down the shared limiter on status 8902 and give up after max_retries."""
        body: dict[str, Any] = {'status': 8902, 'cause': 'too frequent'}

        with patch.object(
            client._http_client, 'request', return_value=_response(body)
        ) as mock_request:
            with pytest.raises(RateLimitError) as exc_info:
                client.fetch_track_history(DEVICE_ID, WINDOW_START, WINDOW_END)

        assert mock_request.call_count == 3
        assert exc_info.value.provider_status == 8902
        assert exc_info.value.status_code is None
        assert limiter.cooldown_remaining == pytest.approx(20.0)
        assert fake_clock.sleeps == [pytest.approx(20.0), pytest.approx(20.0)]

    def test_http_429_then_success(
        self, client: Gps51Client, limiter: TokenBucketRateLimiter
    ) -> None:
        """Should honour Retry-After and succeed on the next attempt."""
        responses: list[Mock] = [
            _response({}, status_code=429, headers={'Retry-After': '7'}),
            _ok([TRACK_RECORD]),
        ]

        with patch.object(
            client._http_client, 'request', side_effect=responses
        ) as mock_request:
            samples: list[RawSample] = client.fetch_track_history(
                DEVICE_ID, WINDOW_START, WINDOW_END
            )

        assert mock_request.call_count == 2
        assert len(samples) == 1

    def test_server_error_then_success(self, client: Gps51Client) -> None:
        """Should retry 5xx responses."""
        responses: list[Mock] = [_response('oops', status_code=503), _ok([TRACK_RECORD])]

        with patch.object(
            client._http_client, 'request', side_effect=responses
        ) as mock_request:
            samples: list[RawSample] = client.fetch_track_history(
                DEVICE_ID, WINDOW_START, WINDOW_END
            )

        assert mock_request.call_count == 2
        assert len(samples) == 1

    def test_client_error_is_not_retried(self, client: Gps51Client) -> None:
        """Should raise APIError on 4xx other than 429."""
        with patch.object(
            client._http_client, 'request', return_value=_response('bad', status_code=400)
        ) as mock_request:
            with pytest.raises(APIError) as exc_info:
                client.fetch_track_history(DEVICE_ID, WINDOW_START, WINDOW_END)

        assert not isinstance(exc_info.value, TransientAPIError)
        assert exc_info.value.status_code == 400
        assert mock_request.call_count == 1

    def test_other_provider_status_is_api_error(self, client: Gps51Client) -> None:
        """Should raise APIError for unknown non-zero statuses."""
        body: dict[str, Any] = {'status': 1, 'cause': 'device not found'}

        with patch.object(client._http_client, 'request', return_value=_response(body)):
            with pytest.raises(APIError, match='device not found'):
                client.fetch_track_history(DEVICE_ID, WINDOW_START, WINDOW_END)

    def test_connection_error_exhausts_retries(self, client: Gps51Client) -> None:
        """Should raise TransientAPIError after max_retries connection failures."""
        with patch.object(
            client._http_client,
            'request',
            side_effect=httpx.ConnectError('connection refused'),
        ) as mock_request:
            with pytest.raises(TransientAPIError, match='Connection error'):
                client.fetch_track_history(DEVICE_ID, WINDOW_START, WINDOW_END)

        assert mock_request.call_count == 3

    def test_timeout_is_transient(self, client: Gps51Client) -> None:
        """Should retry a timeout and succeed."""
        with patch.object(
            client._http_client,
            'request',
            side_effect=[httpx.ReadTimeout('slow'), _ok([])],
        ) as mock_request:
            samples: list[RawSample] = client.fetch_track_history(
                DEVICE_ID, WINDOW_START, WINDOW_END
            )

        assert samples == []
        assert mock_request.call_count == 2

    def test_non_object_body_is_api_error(self, client: Gps51Client) -> None:
        """Should reject a JSON array body."""
        with patch.object(client._http_client, 'request', return_value=_response([1, 2])):
            with pytest.raises(APIError, match='Expected JSON object'):
                client.fetch_track_history(DEVICE_ID, WINDOW_START, WINDOW_END)


class TestFormatProviderTime:
    """Test format_provider_time()."""

    def test_applies_offset(self) -> None:
        """Should shift UTC into the provider's zone."""
        assert format_provider_time(WINDOW_START, 8) == '2024-01-01 08:00:00'
        assert format_provider_time(WINDOW_START, -5) == '2023-12-31 19:00:00'
