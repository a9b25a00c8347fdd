# src/tabula/core/config.py
"""
Configuration schema and loading for Tabula.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

Example YAML:
    table:
      spreadsheet_id: 1AbCdEf...
      sheet_name: records
      access_token: ${TABULA_ACCESS_TOKEN}
    substrate:
      backend: database
      url: sqlite:///./state/tabula.db
    backoff:
      base_delay_ms: 15000
      max_delay_ms: 60000
"""

import os
import re
from pathlib import Path
from typing import Any, Literal, Self

from pydantic import BaseModel, Field, model_validator

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class TableSettings(BaseModel):
    """Remote table location and HTTP client settings."""

    model_config = {"frozen": True}

    spreadsheet_id: str = Field(default="", description="Remote spreadsheet identifier")
    sheet_name: str = Field(default="records", min_length=1, description="Sheet (tab) holding the records")
    base_url: str = Field(
        default="https://sheets.googleapis.com/v4/spreadsheets",
        description="Values API base URL (spreadsheet id is appended)",
    )
    access_token: str | None = Field(default=None, description="Bearer token for the values API")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request HTTP timeout")


class BackoffSettings(BaseModel):
    """Rate-limit retry policy.

    Delay before retry i (0-based) is min(base + i * base, max).
    """

    model_config = {"frozen": True}

    base_delay_ms: int = Field(default=15000, gt=0, description="Base (and increment) of the linear backoff")
    max_delay_ms: int = Field(default=60000, gt=0, description="Backoff cap")
    max_attempts: int = Field(default=3, ge=1, description="Total attempts, including the first")
    retry_transport_errors: bool = Field(default=True, description="Retry connection failures and timeouts")

    @model_validator(mode="after")
    def _validate_delays(self) -> Self:
        if self.base_delay_ms > self.max_delay_ms:
            raise ValueError(f"base_delay_ms ({self.base_delay_ms}) cannot exceed max_delay_ms ({self.max_delay_ms})")
        return self

    def total_delay_ms(self) -> int:
        """Sum of every backoff wait one call can sleep through."""
        return sum(min(self.base_delay_ms * (i + 1), self.max_delay_ms) for i in range(self.max_attempts - 1))


class CircuitSettings(BaseModel):
    """Circuit breaker over rate-limit responses."""

    model_config = {"frozen": True}

    failure_threshold: int = Field(default=3, ge=1, description="Consecutive rate limits that trip the breaker")
    cool_down_ms: int = Field(default=60000, gt=0, description="How long the breaker stays open")
    state_ttl_seconds: int = Field(default=60, gt=0, description="TTL of the shared circuit state entry")


class CacheSettings(BaseModel):
    """Two-tier cache TTLs and limits."""

    model_config = {"frozen": True}

    record_ttl_seconds: int = Field(default=900, gt=0, description="TTL for single-record entries")
    listing_ttl_seconds: int = Field(default=1200, gt=0, description="TTL for the whole-table index")
    negative_ttl_seconds: int = Field(default=60, gt=0, description="TTL for 'not found' entries")
    max_entry_bytes: int = Field(default=100_000, gt=0, description="Largest entry written to the shared tier")
    local_max_entries: int = Field(default=512, gt=0, description="Process-local tier capacity")

    @model_validator(mode="after")
    def _validate_negative_ttl(self) -> Self:
        if self.negative_ttl_seconds >= self.record_ttl_seconds:
            raise ValueError(
                f"negative_ttl_seconds ({self.negative_ttl_seconds}) must be shorter than record_ttl_seconds ({self.record_ttl_seconds})"
            )
        return self


class LockSettings(BaseModel):
    """Distributed lock wait bounds."""

    model_config = {"frozen": True}

    record_wait_ms: int = Field(default=5000, gt=0, description="Wait bound for a single-record update lock")
    creation_wait_ms: int = Field(default=10000, gt=0, description="Wait bound for multi-step creation flows")
    lease_seconds: int = Field(default=180, gt=0, description="Lease after which a crashed holder's lock expires")
    poll_interval_ms: int = Field(default=50, gt=0, description="Polling interval while waiting (database backend)")


class SubstrateSettings(BaseModel):
    """Where shared state (cache tier 2, versions, circuit, locks) lives."""

    model_config = {"frozen": True}

    backend: Literal["memory", "database"] = Field(
        default="memory",
        description="'memory' is process-local (single process only); 'database' is shared",
    )
    # NOTE: str rather than Path - Path mangles DSNs like postgresql://user@host/db
    url: str = Field(default="sqlite:///./state/tabula.db", description="SQLAlchemy URL for the database backend")
    busy_timeout_ms: int = Field(default=5000, ge=0, description="SQLite wait on a locked database before failing")
    cache_sweep_interval_seconds: int = Field(default=300, gt=0, description="How often a cache put also deletes expired entries")


class RateLimitSettings(BaseModel):
    """Client-side pacing of outgoing table calls."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=True, description="Pace outgoing calls")
    requests_per_second: int = Field(default=5, gt=0, description="Maximum calls per second")
    requests_per_minute: int | None = Field(default=60, gt=0, description="Optional maximum calls per minute")
    persistence_path: str | None = Field(default=None, description="SQLite path for cross-process pacing")


class LoggingSettings(BaseModel):
    """Log output settings."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = False


class TabulaSettings(BaseModel):
    """Top-level Tabula configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    table: TableSettings = Field(default_factory=TableSettings)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)
    circuit: CircuitSettings = Field(default_factory=CircuitSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    locks: LockSettings = Field(default_factory=LockSettings)
    substrate: SubstrateSettings = Field(default_factory=SubstrateSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def worst_case_call_seconds(self) -> float:
        """Longest one table call can take: every attempt times out and every backoff is slept."""
        return self.backoff.total_delay_ms() / 1000 + self.backoff.max_attempts * self.table.timeout_seconds

    @model_validator(mode="after")
    def _validate_lock_lease(self) -> Self:
        # The lease is renewed right before a commit's write; it must outlive that write
        worst_case = self.worst_case_call_seconds()
        if self.locks.lease_seconds <= worst_case:
            raise ValueError(
                f"locks.lease_seconds ({self.locks.lease_seconds}) must exceed the worst-case table call "
                f"({worst_case:.0f}s: backoff waits plus {self.backoff.max_attempts} x {self.table.timeout_seconds:g}s timeouts)"
            )
        return self


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            default = match.group(2)
            if default is not None:
                return default
            # Unresolved: keep verbatim so validation reports something recognisable
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        if isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_expand_value(item) for item in value]
        return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def load_settings(config_path: Path) -> TabulaSettings:
    """Load settings from a YAML file with environment variable overrides.

    Precedence (highest first):
    1. Environment variables (TABULA_*), nested with double underscores,
       e.g. TABULA_TABLE__SPREADSHEET_ID
    2. Config file
    3. Pydantic defaults

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="TABULA",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lower_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return TabulaSettings(**raw_config)
