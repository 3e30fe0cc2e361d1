# fleet_trip_engine/client.py
"""
HTTP client for the tracking provider's open API.

Every operation is a POST to `{base_url}/openapi` with the action, token and
server id in the query string and the arguments as a JSON body. The client
turns provider records into RawSample / ProviderTrip models and leaves all
interpretation (units, ignition, quality) to the engine.

Rate Limiting:
--------------
Each request first acquires a token from the shared TokenBucketRateLimiter,
so all sync workers together stay inside the provider's budget. A rate-limit
signal (HTTP 429 or provider status 8902) penalizes the limiter, pausing
every worker, and is then retried once the cooldown has passed.

Retry Behavior:
---------------
- Rate limits: wait out the limiter cooldown, then retry
- Server errors (5xx), timeouts, connection errors: exponential backoff
- Token errors (provider status 9903/9906): AuthenticationError, not retried
- Other provider or 4xx errors: APIError, not retried

SSL/TLS Handling:
-----------------
verify_ssl may be True, False, or a CA bundle path; use_truststore builds
the SSLContext from the operating system trust store.
"""

import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from ssl import SSLContext
from types import TracebackType
from typing import Any, Final, Protocol, Self, cast

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from fleet_trip_engine.common import TokenBucketRateLimiter, build_truststore_ssl_context
from fleet_trip_engine.config import ProviderConfig
from fleet_trip_engine.models import (
    HTTPMethod,
    ProviderAction,
    ProviderResponse,
    ProviderTrip,
    RateLimitInfo,
    RawSample,
    RequestSpec,
)

__all__: list[str] = [
    'APIError',
    'AuthenticationError',
    'Gps51Client',
    'HistoricalSampleSource',
    'RateLimitError',
    'TransientAPIError',
    'format_provider_time',
]

logger: logging.Logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_STATUS_RATE_LIMITED: Final[int] = 429
HTTP_STATUS_SERVER_ERROR_MIN: Final[int] = 500
HTTP_STATUS_SERVER_ERROR_MAX: Final[int] = 599

# Provider status codes
PROVIDER_STATUS_RATE_LIMITED: Final[int] = 8902
PROVIDER_TOKEN_ERROR_STATUSES: Final[frozenset[int]] = frozenset({9903, 9906})

RETRY_BACKOFF_MAX_SECONDS: Final[float] = 30.0
PROVIDER_TIME_FORMAT: Final[str] = '%Y-%m-%d %H:%M:%S'
OPENAPI_PATH: Final[str] = '/openapi'


# =============================================================================
# Exception Hierarchy
# =============================================================================


class APIError(Exception):
    """
    Base exception for provider API errors.

    Attributes:
        status_code: HTTP status code if available, None for connection errors.
        provider_status: Provider `status` field when the body was parsed.
        response_body: Raw response body for debugging, None if unavailable.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code: int | None = status_code
        self.provider_status: int | None = provider_status
        self.response_body: str | None = response_body


class TransientAPIError(APIError):
    """
    Raised for errors that should be retried: timeouts, connection errors
    and 5xx responses.
    """

    pass


class RateLimitError(TransientAPIError):
    """
    Raised when the provider rejects a request for exceeding its rate limit.

    Attributes:
        rate_limit_info: Suggested wait, from Retry-After or the limiter cooldown.
    """

    def __init__(
        self,
        rate_limit_info: RateLimitInfo,
        status_code: int | None = HTTP_STATUS_RATE_LIMITED,
        provider_status: int | None = None,
    ) -> None:
        super().__init__(
            f'Rate limit exceeded, retry after {rate_limit_info.retry_after_seconds}s',
            status_code=status_code,
            provider_status=provider_status,
        )
        self.rate_limit_info: RateLimitInfo = rate_limit_info


class AuthenticationError(APIError):
    """Raised when the provider rejects the access token. Never retried."""

    pass


# =============================================================================
# Source Protocol
# =============================================================================


class HistoricalSampleSource(Protocol):
    """What the sync orchestrator and reconciliation need from a provider."""

    def fetch_track_history(
        self, device_id: str, start: datetime, end: datetime
    ) -> list[RawSample]: ...

    def fetch_last_positions(self, device_ids: Sequence[str]) -> list[RawSample]: ...


def format_provider_time(moment: datetime, gmt_offset_hours: int) -> str:
    """Render a UTC datetime as the provider's local 'yyyy-MM-dd HH:mm:ss'."""
    provider_zone: timezone = timezone(timedelta(hours=gmt_offset_hours))
    return moment.astimezone(provider_zone).strftime(PROVIDER_TIME_FORMAT)


# =============================================================================
# HTTP Client
# =============================================================================


class Gps51Client:
    """
    Provider client shared by all sync workers.

    Thread Safety:
        httpx.Client is thread-safe and the rate limiter is lock-protected,
        so one instance serves the whole worker pool.

    Example:
        >>> limiter = TokenBucketRateLimiter.from_config(config.rate_limit)
        >>> with Gps51Client(config.provider, limiter) as client:
        ...     samples = client.fetch_track_history('358899051234567', start, end)
    """

    def __init__(
        self,
        config: ProviderConfig,
        rate_limiter: TokenBucketRateLimiter,
        pool_connections: int = 5,
        pool_maxsize: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the provider client.

        Args:
            config: Provider connection settings.
            rate_limiter: Process-wide limiter shared with every other caller.
            pool_connections: Keepalive connections in the pool.
            pool_maxsize: Maximum connections in the pool.
            sleep: Sleep used between retry attempts.

        Raises:
            RuntimeError: If use_truststore is set but truststore is not installed.
        """
        self._config: ProviderConfig = config
        self._rate_limiter: TokenBucketRateLimiter = rate_limiter

        ssl_verify: SSLContext | bool | str = self._build_ssl_context()

        connect_timeout: int
        read_timeout: int
        connect_timeout, read_timeout = config.request_timeout
        default_timeout = httpx.Timeout(
            connect=connect_timeout,
            read=read_timeout,
            write=connect_timeout,
            pool=connect_timeout,
        )

        self._http_client: httpx.Client = httpx.Client(
            timeout=default_timeout,
            verify=ssl_verify,
            limits=httpx.Limits(
                max_keepalive_connections=pool_connections,
                max_connections=pool_maxsize,
            ),
        )

        self._retrying: Retrying = Retrying(
            retry=retry_if_exception_type(TransientAPIError),
            wait=self._wait_for_cooldown_or_exponential,
            stop=stop_after_attempt(config.max_retries),
            sleep=sleep,
            reraise=True,
        )

        logger.info(
            'Initialized Gps51Client: base_url=%r, pool_size=%d, max_retries=%d',
            config.base_url,
            pool_maxsize,
            config.max_retries,
        )

    def _build_ssl_context(self) -> SSLContext | bool | str:
        if self._config.use_truststore:
            logger.debug('Building SSLContext from truststore (system CA)')
            extra_bundle: str | None = (
                self._config.verify_ssl if isinstance(self._config.verify_ssl, str) else None
            )
            return build_truststore_ssl_context(extra_bundle)

        logger.debug('Using SSL verification setting: %r', self._config.verify_ssl)
        return self._config.verify_ssl

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the HTTP client. Safe to call multiple times."""
        self._http_client.close()
        logger.debug('Gps51Client closed')

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Provider Operations
    # -------------------------------------------------------------------------

    def fetch_last_positions(self, device_ids: Sequence[str]) -> list[RawSample]:
        """
        Latest report of each device, queried in chunks of device_chunk_size.

        Args:
            device_ids: Devices to query.

        Returns:
            One RawSample per record the provider returned. Records without a
            device id are dropped.
        """
        samples: list[RawSample] = []
        chunk_size: int = self._config.device_chunk_size

        for offset in range(0, len(device_ids), chunk_size):
            chunk: list[str] = list(device_ids[offset : offset + chunk_size])
            response: ProviderResponse = self._call(
                ProviderAction.LAST_POSITION,
                {'deviceids': chunk, 'lastquerypositiontime': 0},
            )
            samples.extend(self._to_raw_samples(response, device_id=None))

        logger.debug(
            'Fetched %d latest positions for %d device(s)', len(samples), len(device_ids)
        )
        return samples

    def fetch_track_history(
        self,
        device_id: str,
        start: datetime,
        end: datetime,
    ) -> list[RawSample]:
        """
        Historical track points of one device between start and end (UTC).

        Raises:
            APIError: For non-retryable failures.
            TransientAPIError: After exhausting retries.
        """
        response: ProviderResponse = self._call(
            ProviderAction.QUERY_TRACK,
            {
                'deviceid': device_id,
                'starttime': format_provider_time(start, self._config.gmt_offset_hours),
                'endtime': format_provider_time(end, self._config.gmt_offset_hours),
                'coordsys': 'wgs84',
            },
        )
        samples: list[RawSample] = self._to_raw_samples(response, device_id=device_id)

        logger.debug(
            'Device %s: fetched %d track points for %s -> %s',
            device_id,
            len(samples),
            start.isoformat(),
            end.isoformat(),
        )
        return samples

    def fetch_provider_trips(
        self,
        device_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ProviderTrip]:
        """The provider's own trip list for one device, used for auditing."""
        response: ProviderResponse = self._call(
            ProviderAction.QUERY_TRIPS,
            {
                'deviceid': device_id,
                'begintime': format_provider_time(start, self._config.gmt_offset_hours),
                'endtime': format_provider_time(end, self._config.gmt_offset_hours),
                'timezone': self._config.gmt_offset_hours,
            },
        )

        trips: list[ProviderTrip] = []
        for record in response.records:
            trip: ProviderTrip | None = ProviderTrip.from_provider_record(
                record, device_id, self._config.gmt_offset_hours
            )
            if trip is not None:
                trips.append(trip)
        return trips

    def _to_raw_samples(
        self,
        response: ProviderResponse,
        device_id: str | None,
    ) -> list[RawSample]:
        samples: list[RawSample] = []
        dropped: int = 0

        for record in response.records:
            try:
                samples.append(
                    RawSample.from_provider_record(
                        record,
                        device_id=device_id,
                        gmt_offset_hours=self._config.gmt_offset_hours,
                    )
                )
            except ValueError as error:
                dropped += 1
                logger.debug('Dropping unusable provider record: %s', error)

        if dropped:
            logger.warning('Dropped %d unusable provider record(s)', dropped)
        return samples

    # -------------------------------------------------------------------------
    # HTTP Execution Layer
    # -------------------------------------------------------------------------

    def build_request_spec(
        self,
        action: ProviderAction,
        body: dict[str, Any],
    ) -> RequestSpec:
        return RequestSpec(
            url=f'{self._config.base_url}{OPENAPI_PATH}',
            method=HTTPMethod.POST,
            headers={'Accept': 'application/json'},
            query_params={
                'action': action.value,
                'token': self._config.token.get_secret_value(),
                'serverid': self._config.server_id,
            },
            body=body,
            timeout=self._config.request_timeout,
        )

    def _call(self, action: ProviderAction, body: dict[str, Any]) -> ProviderResponse:
        request_spec: RequestSpec = self.build_request_spec(action, body)
        return self._retrying.copy()(self._execute_once, request_spec)

    def _wait_for_cooldown_or_exponential(self, retry_state: RetryCallState) -> float:
        """
        Rate limits wait on the shared limiter (its cooldown already blocks the
        next acquire); other transient errors back off exponentially.
        """
        exception: BaseException | None = (
            retry_state.outcome.exception() if retry_state.outcome else None
        )
        if isinstance(exception, RateLimitError):
            return 0.0

        exponential_wait: float = self._config.retry_backoff_factor * (
            2 ** (retry_state.attempt_number - 1)
        )
        return min(exponential_wait, RETRY_BACKOFF_MAX_SECONDS)

    def _execute_once(self, request_spec: RequestSpec) -> ProviderResponse:
        waited: float = self._rate_limiter.acquire()
        if waited > 0:
            logger.debug('Waited %.2fs for rate limiter before %s', waited, request_spec.action)

        response: httpx.Response = self._send_http_request(request_spec)
        response_json: dict[str, Any] = self._handle_response(response)
        return self._check_provider_status(response_json, response.text)

    def _send_http_request(self, request_spec: RequestSpec) -> httpx.Response:
        """
        Send the HTTP request, converting transport errors to TransientAPIError.
        """
        timeout = httpx.Timeout(
            connect=request_spec.timeout[0],
            read=request_spec.timeout[1],
            write=request_spec.timeout[0],
            pool=request_spec.timeout[0],
        )

        try:
            return self._http_client.request(
                method=request_spec.method.value,
                url=request_spec.url,
                params=request_spec.query_params,
                headers=request_spec.headers,
                json=request_spec.body,
                timeout=timeout,
            )
        except httpx.TimeoutException as error:
            logger.warning('Request timeout (will retry): action=%s', request_spec.action)
            raise TransientAPIError(f'Request timeout: {error}') from error
        except httpx.RequestError as error:
            logger.warning(
                'Connection error (will retry): action=%s - %s', request_spec.action, error
            )
            raise TransientAPIError(f'Connection error: {error}') from error

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """
        Map HTTP-level failures to exceptions and decode the JSON object.

        Raises:
            RateLimitError: On HTTP 429.
            TransientAPIError: On 5xx.
            APIError: On other 4xx or a body that is not a JSON object.
        """
        status_code: int = response.status_code

        if status_code == HTTP_STATUS_RATE_LIMITED:
            rate_limit_info: RateLimitInfo = RateLimitInfo.from_response_headers(
                dict(response.headers)
            )
            self._rate_limiter.penalize(rate_limit_info.retry_after_seconds)
            raise RateLimitError(rate_limit_info)

        if HTTP_STATUS_SERVER_ERROR_MIN <= status_code <= HTTP_STATUS_SERVER_ERROR_MAX:
            logger.warning(
                'Server error %d (will retry): %s',
                status_code,
                response.text[:200],
            )
            raise TransientAPIError(
                message=f'Server error: HTTP {status_code}',
                status_code=status_code,
                response_body=response.text,
            )

        if not response.is_success:
            logger.error(
                'Client error %d (not retryable): %s',
                status_code,
                response.text[:500],
            )
            raise APIError(
                message=f'Client error: HTTP {status_code}',
                status_code=status_code,
                response_body=response.text,
            )

        try:
            json_body: Any = response.json()
        except ValueError as parse_error:
            raise APIError(
                message=f'Invalid JSON in response: {parse_error}',
                status_code=status_code,
                response_body=response.text[:500],
            ) from parse_error

        if not isinstance(json_body, dict):
            raise APIError(
                message=(
                    f'Expected JSON object in response, got {type(json_body).__name__}. '
                    f'Content: {response.text[:200]}'
                ),
                status_code=status_code,
                response_body=response.text[:500],
            )

        return cast(dict[str, Any], json_body)

    def _check_provider_status(
        self,
        response_json: dict[str, Any],
        response_text: str,
    ) -> ProviderResponse:
        """
        Map the provider `status` field to exceptions.

        Raises:
            RateLimitError: Provider status 8902.
            AuthenticationError: Provider token errors.
            APIError: Any other non-zero status.
        """
        provider_response: ProviderResponse = ProviderResponse.from_json(response_json)
        if provider_response.is_success:
            return provider_response

        status: int = provider_response.status
        cause: str = provider_response.cause or 'unknown error'

        if status == PROVIDER_STATUS_RATE_LIMITED:
            cooldown: float = self._rate_limiter.default_cooldown
            self._rate_limiter.penalize(cooldown)
            raise RateLimitError(
                RateLimitInfo(retry_after_seconds=cooldown),
                status_code=None,
                provider_status=status,
            )

        if status in PROVIDER_TOKEN_ERROR_STATUSES:
            logger.error('Provider rejected the access token: status=%d cause=%s', status, cause)
            raise AuthenticationError(
                f'Provider token error {status}: {cause}',
                provider_status=status,
                response_body=response_text[:500],
            )

        logger.error('Provider error (not retryable): status=%d cause=%s', status, cause)
        raise APIError(
            f'Provider error {status}: {cause}',
            provider_status=status,
            response_body=response_text[:500],
        )
