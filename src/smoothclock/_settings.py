"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables and/or ``.env``
files.  Variables carry the ``SMOOTHCLOCK_`` prefix and nested models
use ``__`` as the delimiter, e.g. ``SMOOTHCLOCK_SYNC__TIMEOUT_MS=2000``.

The schema covers three concerns:

* **Sync** — reference sources, query timeouts and the smooth
  correction parameters.
* **Logging** — level, format, optional file sink, rotation.
* **Relay** — WebSocket broadcast endpoint.

Offsets and correction durations are in **milliseconds** because that
is the resolution offsets are measured and reported in.  Relay
intervals are in **seconds**.

Per-call overrides passed to :meth:`SyncCoordinator.sync` go through
:func:`merge_sync_settings`, which re-validates the merged model so a
contradictory combination fails before any network I/O.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from smoothclock._errors import ConfigurationError

DEFAULT_SERVERS: tuple[str, ...] = (
    "pool.ntp.org",
    "time.google.com",
    "time.cloudflare.com",
)

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings — nested via composition)
# -------------------------------------------------------------------


class SyncSettings(BaseModel):
    """Synchronization and correction parameters.

    Instances are frozen: every ``sync()`` call works on its own merged
    copy, so a concurrent :meth:`SyncCoordinator.set_smooth_correction`
    never changes the parameters of a sync already in flight.

    Environment variables (with ``__`` nesting)::

        SMOOTHCLOCK_SYNC__SERVERS='["time.google.com", "pool.ntp.org"]'
        SMOOTHCLOCK_SYNC__TIMEOUT_MS=2000
        SMOOTHCLOCK_SYNC__SMOOTH_CORRECTION=false
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    servers: Annotated[tuple[str, ...], Field(min_length=1)] = Field(
        default=DEFAULT_SERVERS,
        description="Ordered reference sources; earlier entries have priority.",
    )
    timeout_ms: Annotated[float, Field(gt=0)] = Field(
        default=5000.0,
        description="Per-attempt query timeout.",
    )
    retries: Annotated[int, Field(ge=1)] = Field(
        default=3,
        description="Maximum query attempts per source before moving on.",
    )
    coherence_validation: bool = Field(
        default=True,
        description=(
            "Cross-check the first ``coherence_sample_limit`` sources "
            "and fall back to the median when they disagree."
        ),
    )
    coherence_threshold_ms: Annotated[float, Field(ge=0)] = Field(
        default=100.0,
        description="Spread between sampled offsets that counts as disagreement.",
    )
    coherence_sample_limit: Annotated[int, Field(ge=1)] = Field(
        default=3,
        description="Number of leading sources queried when validating coherence.",
    )
    smooth_correction: bool = Field(
        default=True,
        description="Converge gradually instead of jumping on moderate offsets.",
    )
    max_correction_jump_ms: Annotated[float, Field(ge=0)] = Field(
        default=1000.0,
        description="Offset changes up to this size are applied instantly.",
    )
    correction_rate: Annotated[float, Field(gt=0, le=1)] = Field(
        default=0.1,
        description="Fraction of the remaining error corrected per tick.",
    )
    max_offset_threshold_ms: Annotated[float, Field(gt=0)] = Field(
        default=5000.0,
        description="Offset changes at or above this size are forced instantly.",
    )
    convergence_threshold_ms: Annotated[float, Field(gt=0)] = Field(
        default=0.5,
        description="Remaining error below which a correction is complete.",
    )
    max_correction_duration_ms: Annotated[float, Field(gt=0)] = Field(
        default=30_000.0,
        description="A correction still running after this long snaps to target.",
    )
    auto_sync: bool = Field(
        default=False,
        description="Start periodic re-synchronization after a successful sync.",
    )
    auto_sync_interval_ms: Annotated[float, Field(gt=0)] = Field(
        default=300_000.0,
        description="Delay between automatic synchronizations.",
    )
    drift_warning_ms: Annotated[float, Field(gt=0)] = Field(
        default=3_600_000.0,
        description="Anchor age after which reads emit a drift warning.",
    )

    @model_validator(mode="after")
    def _check_thresholds(self) -> Self:
        if self.max_offset_threshold_ms <= self.max_correction_jump_ms:
            msg = (
                "max_offset_threshold_ms "
                f"({self.max_offset_threshold_ms}) must be greater than "
                f"max_correction_jump_ms ({self.max_correction_jump_ms})"
            )
            raise ValueError(msg)
        return self


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    The ``format`` field selects the output format:

    - ``"json"`` (default) — structured JSON lines for log aggregators.
    - ``"text"`` — human-readable timestamped lines for terminals.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format ('json' or 'text').",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


class RelaySettings(BaseModel):
    """WebSocket relay endpoint.

    Environment variables::

        SMOOTHCLOCK_RELAY__HOST=0.0.0.0
        SMOOTHCLOCK_RELAY__PORT=8080
    """

    host: str = Field(
        default="localhost",
        description="Interface the relay binds to.",
    )
    port: Annotated[int, Field(ge=0, le=65535)] = Field(
        default=8080,
        description="Relay TCP port (0 picks a free port).",
    )
    broadcast_interval: Annotated[float, Field(gt=0)] = Field(
        default=1.0,
        description="Seconds between time broadcasts to connected clients.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for smoothclock.

    Loaded from ``SMOOTHCLOCK_``-prefixed environment variables with the
    nested delimiter ``__`` and an optional ``.env`` file in the working
    directory.

    Example ``.env``::

        SMOOTHCLOCK_SYNC__TIMEOUT_MS=2000
        SMOOTHCLOCK_SYNC__AUTO_SYNC=true
        SMOOTHCLOCK_LOGGING__LEVEL=DEBUG
        SMOOTHCLOCK_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="SMOOTHCLOCK_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    sync: SyncSettings = Field(
        default_factory=SyncSettings,
        description="Synchronization and correction parameters.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
    relay: RelaySettings = Field(
        default_factory=RelaySettings,
        description="WebSocket relay configuration.",
    )


def merge_sync_settings(base: SyncSettings, overrides: dict[str, Any]) -> SyncSettings:
    """Return *base* with *overrides* applied and re-validated.

    ``model_copy(update=...)`` skips validation, so the merge goes
    through ``model_validate`` instead.

    Raises:
        ConfigurationError: If an override is unknown or the merged
            values violate a constraint.
    """
    if not overrides:
        return base
    try:
        return SyncSettings.model_validate({**base.model_dump(), **overrides})
    except ValidationError as exc:
        msg = f"Invalid sync configuration: {exc}"
        raise ConfigurationError(msg) from exc
