# fleet_trip_engine/config/config_models.py
"""
Configuration management for the Fleet Trip Engine.

This module provides the Pydantic models for the master configuration file
that controls provider access, telemetry normalization thresholds, trip
segmentation, the sync orchestrator and persistence.

Design Decisions:
-----------------
- All models use `extra='forbid'` to catch typos and invalid fields in YAML
  configuration files early, preventing silent misconfiguration.

- Every numeric threshold used by the engine is a named field with a
  documented default. Nothing in the engine hard-codes a tuning value that
  cannot be overridden here.

- Battery profiles are data, not code. A profile is a voltage range plus a
  chemistry curve; devices are mapped to profiles by name.

- No logging occurs within this module because the logging configuration itself
  is defined here. Logging must be configured by the caller after loading config.

- SecretStr is used for the provider token to prevent accidental exposure in
  logs, repr(), or error messages. Access via `.get_secret_value()`.

Usage:
------
    import yaml
    from fleet_trip_engine.config.config_models import EngineConfig

    with open('engine_config.yaml', 'r') as config_file:
        raw_config = yaml.safe_load(config_file)

    config = EngineConfig.model_validate(raw_config)
"""

from enum import Enum
from pathlib import Path
from typing import Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

# =============================================================================
# Public API
# =============================================================================

__all__: list[str] = [
    'DEFAULT_BATTERY_PROFILES',
    'BatteryChemistry',
    'BatteryProfile',
    'CompressionType',
    'DedupConfig',
    'EngineConfig',
    'LogLevelName',
    'LoggingConfig',
    'NormalizerConfig',
    'ProviderConfig',
    'RateLimitConfig',
    'ReconciliationConfig',
    'SegmentationConfig',
    'SpikeFilterConfig',
    'StorageConfig',
    'SyncConfig',
]

# =============================================================================
# Type Aliases
# =============================================================================

# Valid logging level names recognized by Python's logging module.
LogLevelName = Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

# Numeric equivalents of log level names for validation purposes.
LOG_LEVEL_VALUES: frozenset[int] = frozenset({10, 20, 30, 40, 50})

# Mapping from level name to numeric value, avoiding import of logging module
# in the model layer.
LOG_LEVEL_NAME_TO_INT: dict[LogLevelName, int] = {
    'DEBUG': 10,
    'INFO': 20,
    'WARNING': 30,
    'ERROR': 40,
    'CRITICAL': 50,
}

# Valid compression algorithms supported by pandas.to_parquet() and pyarrow.
CompressionType = Literal['snappy', 'gzip', 'brotli', 'lz4', 'zstd'] | None


# =============================================================================
# Provider Configuration
# =============================================================================


class ProviderConfig(BaseModel):
    """Connection settings for the tracking provider's open API.

    The provider authenticates with a token passed in the query string and
    routes requests by server id. All string timestamps exchanged with the
    provider are local to a fixed GMT offset, configured here.

    Network Resilience:
        Transient failures (timeouts, 5xx, rate limits) are retried with
        exponential backoff: `delay = retry_backoff_factor * (2 ** attempt)`,
        capped at 30 seconds.

    Attributes:
        base_url: Root API URL with scheme, without trailing slash.
        token: API access token. Stored as SecretStr.
        server_id: Provider server routing id, sent with every request.
        request_timeout: [connect, read] timeout in seconds.
        max_retries: Maximum attempts per request for transient failures.
        retry_backoff_factor: Multiplier for exponential retry backoff.
        verify_ssl: False disables, True uses system CA, str is a CA bundle path
            (added on top of the OS store when use_truststore is set).
        use_truststore: Build the SSLContext from the OS trust store.
        gmt_offset_hours: Offset of the provider's local time from UTC.
        device_chunk_size: Device ids per bulk latest-position request.
    """

    model_config = ConfigDict(extra='forbid')

    base_url: str = Field(
        default='https://api.gps51.com',
        description='Root API endpoint URL with scheme, without trailing slash',
    )
    token: SecretStr = Field(
        description='API access token (masked in logs and repr)',
    )
    server_id: str = Field(
        default='',
        description='Provider server id sent as the serverid query parameter',
    )
    request_timeout: tuple[int, int] = Field(
        default=(10, 60),
        description='[connect_timeout, read_timeout] in seconds; both must be positive',
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description='Maximum attempts for transient failures (1-10)',
    )
    retry_backoff_factor: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description='Exponential backoff multiplier; delay = factor * (2 ** attempt)',
    )
    verify_ssl: bool | str = Field(
        default=True,
        description='False to disable SSL, True for system CA, or path to CA bundle',
    )
    use_truststore: bool = Field(
        default=False,
        description='Use the truststore library for OS certificate store',
    )
    gmt_offset_hours: int = Field(
        default=8,
        ge=-12,
        le=14,
        description='GMT offset of provider-local timestamp strings',
    )
    device_chunk_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description='Device ids per bulk latest-position request',
    )

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, base_url: str) -> str:
        """Validate and normalize the API base URL.

        Raises:
            ValueError: If URL is empty or missing http/https scheme.
        """
        if not base_url:
            raise ValueError('base_url cannot be empty')

        if not base_url.startswith(('http://', 'https://')):
            raise ValueError(
                f"base_url must start with 'http://' or 'https://', got: {base_url!r}"
            )

        return base_url.rstrip('/')

    @field_validator('token')
    @classmethod
    def validate_token_not_empty(cls, token: SecretStr) -> SecretStr:
        """Ensure the token is not empty or whitespace-only."""
        secret_value: str = token.get_secret_value()
        if not secret_value or not secret_value.strip():
            raise ValueError('token cannot be empty or whitespace-only')
        return token

    @field_validator('request_timeout')
    @classmethod
    def validate_timeout_values_positive(
        cls, timeout: tuple[int, int]
    ) -> tuple[int, int]:
        """Ensure both timeout values are positive integers."""
        connect_timeout, read_timeout = timeout

        if connect_timeout <= 0:
            raise ValueError(
                f'connect_timeout must be positive, got: {connect_timeout}'
            )
        if read_timeout <= 0:
            raise ValueError(f'read_timeout must be positive, got: {read_timeout}')

        return timeout

    @field_validator('verify_ssl')
    @classmethod
    def validate_ssl_configuration(cls, verify_ssl: bool | str) -> bool | str:
        """Validate that a CA bundle path, when given, is an existing file."""
        if isinstance(verify_ssl, str):
            cert_path = Path(verify_ssl)

            if not cert_path.exists():
                raise ValueError(f'SSL certificate bundle file not found: {verify_ssl}')
            if not cert_path.is_file():
                raise ValueError(
                    f'SSL certificate path must be a file, not directory: {verify_ssl}'
                )

        return verify_ssl


class RateLimitConfig(BaseModel):
    """Shared token-bucket limits for every provider call.

    One limiter instance is shared by all sync workers, so these values bound
    the aggregate request rate of the whole process, not of a single device.

    Attributes:
        requests_per_second: Sustained refill rate of the bucket.
        burst: Bucket capacity (maximum back-to-back requests).
        min_interval_seconds: Enforced spacing between any two requests.
        cooldown_seconds: Global pause applied after a provider rate-limit signal.
    """

    model_config = ConfigDict(extra='forbid')

    requests_per_second: float = Field(default=5.0, gt=0.0, le=100.0)
    burst: int = Field(default=5, ge=1, le=100)
    min_interval_seconds: float = Field(default=0.2, ge=0.0, le=10.0)
    cooldown_seconds: float = Field(default=30.0, ge=0.0, le=3600.0)


# =============================================================================
# Telemetry Engine Configuration
# =============================================================================


class BatteryChemistry(str, Enum):
    """Battery chemistries with a known state-of-charge curve."""

    LEAD_ACID = 'lead_acid'
    AGM = 'agm'
    LITHIUM = 'lithium'


class BatteryProfile(BaseModel):
    """Voltage window and discharge curve for one battery type.

    Lead-acid and AGM batteries discharge non-linearly, so their percentage
    follows `((v - min) / (max - min)) ** 1.5`. Lithium packs are close to
    linear across the usable window.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    chemistry: BatteryChemistry
    min_voltage: float = Field(gt=0.0, description='Voltage at 0 percent')
    max_voltage: float = Field(gt=0.0, description='Voltage at 100 percent')

    @model_validator(mode='after')
    def validate_voltage_window(self) -> Self:
        """Ensure the voltage window is non-empty."""
        if self.max_voltage <= self.min_voltage:
            raise ValueError(
                f'max_voltage ({self.max_voltage}) must exceed '
                f'min_voltage ({self.min_voltage})'
            )
        return self


DEFAULT_BATTERY_PROFILES: dict[str, BatteryProfile] = {
    '12v_lead_acid': BatteryProfile(
        chemistry=BatteryChemistry.LEAD_ACID, min_voltage=11.0, max_voltage=12.8
    ),
    '12v_agm': BatteryProfile(
        chemistry=BatteryChemistry.AGM, min_voltage=11.0, max_voltage=12.8
    ),
    '24v_lead_acid': BatteryProfile(
        chemistry=BatteryChemistry.LEAD_ACID, min_voltage=22.0, max_voltage=25.6
    ),
    '48v_lithium': BatteryProfile(
        chemistry=BatteryChemistry.LITHIUM, min_voltage=40.0, max_voltage=54.4
    ),
}


class NormalizerConfig(BaseModel):
    """Thresholds used to turn raw samples into canonical samples.

    Attributes:
        speed_unit_threshold: Raw speeds at or above this value are metres
            per hour and are divided by 1000.
        noise_floor_kmh: Speeds below this are GPS drift and become 0.
        max_speed_kmh: Upper clamp for resolved speed.
        motion_threshold_kmh: Speed above which a sample counts as moving.
        ignition_on_threshold: Confidence at or above which ignition is ON.
        battery_profiles: Named battery profiles.
        default_battery_profile: Profile used for devices not listed below.
        device_battery_profiles: Device id to profile name overrides.
    """

    model_config = ConfigDict(extra='forbid')

    speed_unit_threshold: float = Field(default=1000.0, gt=0.0)
    noise_floor_kmh: float = Field(default=3.0, ge=0.0, le=20.0)
    max_speed_kmh: float = Field(default=300.0, gt=0.0, le=1000.0)
    motion_threshold_kmh: float = Field(default=3.0, ge=0.0, le=50.0)
    ignition_on_threshold: float = Field(default=0.5, gt=0.0, le=1.0)
    battery_profiles: dict[str, BatteryProfile] = Field(
        default_factory=lambda: dict(DEFAULT_BATTERY_PROFILES),
    )
    default_battery_profile: str = Field(default='12v_lead_acid')
    device_battery_profiles: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode='after')
    def validate_profile_references(self) -> Self:
        """Ensure every referenced battery profile is defined."""
        known_profiles: set[str] = set(self.battery_profiles)

        if self.default_battery_profile not in known_profiles:
            raise ValueError(
                f'default_battery_profile {self.default_battery_profile!r} is not '
                f'defined. Known profiles: {sorted(known_profiles)}'
            )

        unknown: dict[str, str] = {
            device_id: profile_name
            for device_id, profile_name in self.device_battery_profiles.items()
            if profile_name not in known_profiles
        }
        if unknown:
            raise ValueError(
                f'device_battery_profiles reference unknown profiles: {unknown}'
            )

        return self

    def profile_for_device(self, device_id: str) -> BatteryProfile:
        """Return the battery profile configured for a device."""
        profile_name: str = self.device_battery_profiles.get(
            device_id, self.default_battery_profile
        )
        return self.battery_profiles[profile_name]


class SpikeFilterConfig(BaseModel):
    """Limits for GPS spike rejection and speed smoothing."""

    model_config = ConfigDict(extra='forbid')

    max_jump_km: float = Field(
        default=10.0,
        gt=0.0,
        description='Maximum distance between consecutive retained samples',
    )
    max_plausible_speed_kmh: float = Field(
        default=250.0,
        gt=0.0,
        description='Maximum implied or reported speed treated as physical',
    )
    reanchor_gap_seconds: int = Field(
        default=1800,
        ge=60,
        description='Silence after which the jump limit no longer applies',
    )
    smoothing_window: int = Field(
        default=3,
        ge=3,
        le=15,
        description='Centred window size for the speed moving average (odd)',
    )
    smoothing_factor: float = Field(
        default=2.0,
        gt=1.0,
        description='Speed above factor * local average is an outlier candidate',
    )

    @field_validator('smoothing_window')
    @classmethod
    def validate_window_is_odd(cls, window: int) -> int:
        """A centred window needs an odd size."""
        if window % 2 == 0:
            raise ValueError(f'smoothing_window must be odd, got: {window}')
        return window


class SegmentationConfig(BaseModel):
    """Trip boundary rules.

    Attributes:
        motion_threshold_kmh: Speed above which a sample is active.
        idle_timeout_seconds: Inactivity after the last active sample that
            closes a trip.
        max_gap_minutes: Reporting gap that always closes a trip.
        min_trip_distance_km: Displacement below which a trip is a ghost.
        min_trip_duration_seconds: Duration below which a trip is discarded.
        strict_ignition_confidence: Confidence an ignition-on reading must
            reach for the device to be segmented by ignition.
    """

    model_config = ConfigDict(extra='forbid')

    motion_threshold_kmh: float = Field(default=3.0, ge=0.0, le=50.0)
    idle_timeout_seconds: int = Field(default=180, ge=10, le=3600)
    max_gap_minutes: int = Field(default=30, ge=1, le=1440)
    min_trip_distance_km: float = Field(default=0.1, ge=0.0, le=10.0)
    min_trip_duration_seconds: int = Field(default=60, ge=0, le=3600)
    strict_ignition_confidence: float = Field(default=0.6, gt=0.0, le=1.0)


class DedupConfig(BaseModel):
    """Persistence gate overlap rules."""

    model_config = ConfigDict(extra='forbid')

    overlap_tolerance_seconds: int = Field(
        default=60,
        ge=0,
        le=3600,
        description='Overlap above which two trips are the same real trip',
    )


class SyncConfig(BaseModel):
    """Sync orchestrator cadence, windowing and backoff.

    Backoff Tiers:
        Ordinary failures wait `min(backoff_base * 2 ** (n - 1), backoff_max)`
        before the device is attempted again. Provider rate-limit failures use
        the separate, longer `rate_limit_backoff_*` tier.
    """

    model_config = ConfigDict(extra='forbid')

    initial_lookback_hours: float = Field(default=24.0, gt=0.0, le=720.0)
    max_lookback_hours: float = Field(default=72.0, gt=0.0, le=2160.0)
    batch_hours: float = Field(
        default=24.0,
        gt=0.0,
        le=168.0,
        description='History query size; windows are fetched in batches',
    )
    max_workers: int = Field(default=4, ge=1, le=64)
    backoff_base_seconds: float = Field(default=30.0, gt=0.0)
    backoff_max_seconds: float = Field(default=1800.0, gt=0.0)
    rate_limit_backoff_base_seconds: float = Field(default=300.0, gt=0.0)
    rate_limit_backoff_max_seconds: float = Field(default=3600.0, gt=0.0)
    stuck_timeout_minutes: float = Field(default=10.0, gt=0.0, le=1440.0)

    @model_validator(mode='after')
    def validate_windows_and_tiers(self) -> Self:
        """Ensure lookback and backoff bounds are ordered consistently."""
        if self.max_lookback_hours < self.initial_lookback_hours:
            raise ValueError(
                'max_lookback_hours must be >= initial_lookback_hours, got '
                f'{self.max_lookback_hours} < {self.initial_lookback_hours}'
            )
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError('backoff_max_seconds must be >= backoff_base_seconds')
        if self.rate_limit_backoff_max_seconds < self.rate_limit_backoff_base_seconds:
            raise ValueError(
                'rate_limit_backoff_max_seconds must be >= '
                'rate_limit_backoff_base_seconds'
            )
        return self


class ReconciliationConfig(BaseModel):
    """Backfill sweep settings."""

    model_config = ConfigDict(extra='forbid')

    search_window_minutes: int = Field(default=15, ge=1, le=240)
    lookback_days: int = Field(default=30, ge=1, le=365)
    batch_size: int = Field(default=100, ge=1, le=10000)


# =============================================================================
# Storage Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Configuration for trip, cursor and vehicle-state persistence.

    Attributes:
        database_url: SQLAlchemy URL. SQLite and PostgreSQL are supported.
        export_path: Optional Parquet file for trip exports. Extension
            .parquet is appended automatically if missing.
        parquet_compression: Compression codec for the Parquet writer.
    """

    model_config = ConfigDict(extra='forbid')

    database_url: str = Field(
        default='sqlite:///data/fleet_trips.db',
        description='SQLAlchemy database URL (sqlite or postgresql)',
    )
    export_path: Path | None = Field(
        default=None,
        description='Parquet trip export path (.parquet extension auto-added)',
    )
    parquet_compression: CompressionType = Field(
        default='snappy',
        description="Compression codec: 'snappy', 'gzip', 'brotli', 'lz4', 'zstd', or None",
    )

    @field_validator('database_url')
    @classmethod
    def validate_supported_dialect(cls, database_url: str) -> str:
        """Only dialects with native insert-if-absent are accepted."""
        if not database_url.startswith(('sqlite', 'postgresql')):
            raise ValueError(
                f'database_url must use sqlite or postgresql, got: {database_url!r}'
            )
        return database_url

    @field_validator('export_path', mode='before')
    @classmethod
    def normalize_export_path(cls, path_value: str | Path | None) -> Path | None:
        """Normalize path and ensure .parquet extension."""
        if path_value is None:
            return None

        path_string: str = str(path_value)

        if not path_string.lower().endswith('.parquet'):
            path_string = f'{path_string}.parquet'

        return Path(path_string)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Configuration for application logging output.

    Console output is always enabled. File output is enabled by providing a
    file_path; its level defaults to DEBUG.

    Attributes:
        file_path: Path to log file. None disables file logging.
            Extension .log is appended automatically if missing.
        console_level: Minimum log level for console output.
        file_level: Minimum log level for file output.
    """

    model_config = ConfigDict(extra='forbid')

    file_path: Path | None = Field(
        default=None,
        description='Log file path (.log extension auto-added). None disables file logging.',
    )
    console_level: LogLevelName | int = Field(
        default='INFO',
        description="Console log level: 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL', or int",
    )
    file_level: LogLevelName | int | None = Field(
        default=None,
        description='File log level. None disables file logging.',
    )

    @field_validator('file_path', mode='before')
    @classmethod
    def normalize_log_file_path(cls, path_value: str | Path | None) -> Path | None:
        """Normalize path and ensure .log extension."""
        if path_value is None:
            return None

        path_string: str = str(path_value)

        if not path_string.lower().endswith('.log'):
            path_string = f'{path_string}.log'

        return Path(path_string)

    @field_validator('console_level', 'file_level', mode='after')
    @classmethod
    def validate_numeric_log_level(
        cls, level_value: LogLevelName | int | None
    ) -> LogLevelName | int | None:
        """Validate numeric log levels are standard Python logging values.

        Raises:
            ValueError: If numeric level is not a standard logging value.
        """
        if level_value is None or isinstance(level_value, str):
            return level_value

        if level_value not in LOG_LEVEL_VALUES:
            raise ValueError(
                f'Numeric log level must be one of {sorted(LOG_LEVEL_VALUES)}, '
                f'got: {level_value}'
            )

        return level_value

    @model_validator(mode='after')
    def ensure_file_logging_configuration_consistency(self) -> Self:
        """Default file_level to DEBUG, and reject a file_level without a path."""
        has_file_path: bool = self.file_path is not None
        has_file_level: bool = self.file_level is not None

        if has_file_path and not has_file_level:
            self.file_level = 'DEBUG'

        if has_file_level and not has_file_path:
            raise ValueError(
                'file_level is specified but file_path is missing. '
                'Provide file_path to enable file logging, or remove file_level.'
            )

        return self

    def get_console_level_int(self) -> int:
        """Convert console_level to numeric value for logging module."""
        if isinstance(self.console_level, int):
            return self.console_level
        return LOG_LEVEL_NAME_TO_INT[self.console_level]

    def get_file_level_int(self) -> int | None:
        """Convert file_level to numeric value, or None if file logging is off."""
        if self.file_level is None:
            return None
        if isinstance(self.file_level, int):
            return self.file_level
        return LOG_LEVEL_NAME_TO_INT[self.file_level]


# =============================================================================
# Root Configuration
# =============================================================================


class EngineConfig(BaseModel):
    """Root configuration model for the Fleet Trip Engine.

    Only `provider` is required; every other section has working defaults so
    a minimal YAML file needs nothing but a token.

    Attributes:
        provider: Provider API connection settings.
        rate_limit: Shared request rate limits.
        normalizer: Sample normalization thresholds and battery profiles.
        spike_filter: Spike rejection and smoothing limits.
        segmentation: Trip boundary rules.
        dedup: Persistence gate overlap rules.
        sync: Orchestrator windowing, concurrency and backoff.
        reconciliation: Backfill sweep settings.
        storage: Database and export settings.
        logging: Application logging configuration.
        devices: Device ids synced by `run_once()`.
    """

    model_config = ConfigDict(extra='forbid')

    provider: ProviderConfig
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    spike_filter: SpikeFilterConfig = Field(default_factory=SpikeFilterConfig)
    segmentation: SegmentationConfig = Field(default_factory=SegmentationConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    devices: list[str] = Field(default_factory=list)

    @field_validator('devices')
    @classmethod
    def validate_device_ids(cls, devices: list[str]) -> list[str]:
        """Strip device ids and reject blanks and duplicates."""
        cleaned: list[str] = [device_id.strip() for device_id in devices]

        if any(not device_id for device_id in cleaned):
            raise ValueError('devices cannot contain empty ids')

        duplicates: set[str] = {
            device_id for device_id in cleaned if cleaned.count(device_id) > 1
        }
        if duplicates:
            raise ValueError(f'devices contains duplicates: {sorted(duplicates)}')

        return cleaned
