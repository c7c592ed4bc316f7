"""smoothclock.

An NTP-synchronized virtual clock that corrects offsets gradually
instead of jumping.
"""

from importlib.metadata import PackageNotFoundError, version

from smoothclock._clock import ClockPort, SystemClock
from smoothclock._coordinator import CorrectionConfig, SyncCoordinator, SyncResult, SyncStats
from smoothclock._correction import (
    CorrectionDecision,
    CorrectionEngine,
    CorrectionPolicy,
    CorrectionState,
)
from smoothclock._errors import (
    AllSourcesUnreachableError,
    ConfigurationError,
    ErrorPayload,
    NotSynchronizedError,
    SmoothClockError,
    SourceUnreachableError,
    build_error_payload,
)
from smoothclock._events import (
    ClockEvent,
    CoherenceWarning,
    CorrectionComplete,
    CorrectionOutcome,
    DriftWarning,
    ErrorEvent,
    EventBus,
    SourceOffset,
    SyncEvent,
)
from smoothclock._format import format_time, time_diff
from smoothclock._logging import JsonFormatter, configure_logging
from smoothclock._probe import NtpProbe, ReferenceTimeProbe
from smoothclock._relay import ClockRelay
from smoothclock._sampler import OffsetSample, OffsetSampler, SelectedOffset
from smoothclock._scheduler import LoopScheduler, SchedulerPort, TimerHandle
from smoothclock._settings import LoggingSettings, RelaySettings, Settings, SyncSettings
from smoothclock._virtual_clock import SyncAnchor, VirtualClock

try:
    __version__ = version("smoothclock")
except PackageNotFoundError:
    # Source checkout without installed metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Coordinator
    "CorrectionConfig",
    "SyncCoordinator",
    "SyncResult",
    "SyncStats",
    # Clock / scheduling ports
    "ClockPort",
    "LoopScheduler",
    "SchedulerPort",
    "SystemClock",
    "TimerHandle",
    # Probe
    "NtpProbe",
    "ReferenceTimeProbe",
    # Sampling
    "OffsetSample",
    "OffsetSampler",
    "SelectedOffset",
    # Correction
    "CorrectionDecision",
    "CorrectionEngine",
    "CorrectionPolicy",
    "CorrectionState",
    # Virtual clock
    "SyncAnchor",
    "VirtualClock",
    # Events
    "ClockEvent",
    "CoherenceWarning",
    "CorrectionComplete",
    "CorrectionOutcome",
    "DriftWarning",
    "ErrorEvent",
    "EventBus",
    "SourceOffset",
    "SyncEvent",
    # Errors
    "AllSourcesUnreachableError",
    "ConfigurationError",
    "ErrorPayload",
    "NotSynchronizedError",
    "SmoothClockError",
    "SourceUnreachableError",
    "build_error_payload",
    # Relay
    "ClockRelay",
    # Formatting
    "format_time",
    "time_diff",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # Settings
    "LoggingSettings",
    "RelaySettings",
    "Settings",
    "SyncSettings",
]
