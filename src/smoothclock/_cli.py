"""Command-line interface (Typer-based).

Commands::

    smoothclock sync   [--server HOST ...] [--timeout-ms N]   one-shot sync, JSON report
    smoothclock serve  [--server HOST ...] [--port N]         sync + auto-sync + WebSocket relay

Shared options: ``--log-level``, ``--log-format``, ``--env-file``.
Settings are loaded from the environment / ``.env`` first, then CLI
options override them.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from typing import Annotated, Any, get_args

import typer
from pydantic import ValidationError

from smoothclock import __version__
from smoothclock._clock import ClockPort
from smoothclock._coordinator import SyncCoordinator
from smoothclock._errors import AllSourcesUnreachableError, ConfigurationError, build_error_payload
from smoothclock._logging import configure_logging
from smoothclock._probe import ReferenceTimeProbe
from smoothclock._relay import ClockRelay
from smoothclock._settings import LoggingSettings, Settings, merge_sync_settings

logger = logging.getLogger(__name__)

SERVICE_NAME = "smoothclock"

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_UNREACHABLE = 2
EXIT_RUNTIME_ERROR = 3

# ---------------------------------------------------------------------------
# Allowed values (extracted from LoggingSettings Literal types)
# ---------------------------------------------------------------------------

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)

ServerOption = Annotated[
    list[str] | None,
    typer.Option("--server", "-s", help="Reference source (repeatable, in priority order)."),
]
TimeoutOption = Annotated[
    float | None,
    typer.Option("--timeout-ms", help="Per-query timeout in milliseconds."),
]
LogLevelOption = Annotated[
    str | None,
    typer.Option("--log-level", help="Override log level."),
]
LogFormatOption = Annotated[
    str | None,
    typer.Option("--log-format", help="Override log format."),
]
EnvFileOption = Annotated[
    str,
    typer.Option("--env-file", help="Path to .env file."),
]


def _load_settings(
    *,
    env_file: str,
    servers: list[str] | None,
    timeout_ms: float | None,
    log_level: str | None,
    log_format: str | None,
) -> Settings:
    """Build settings from the environment and apply CLI overrides.

    Raises:
        typer.BadParameter: For invalid log level / format values.
        ConfigurationError: If the resulting settings are invalid.
    """
    if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
        raise typer.BadParameter(
            f"Invalid log level '{log_level}'. Choose from: {', '.join(_VALID_LOG_LEVELS)}",
            param_hint="'--log-level'",
        )
    if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
        raise typer.BadParameter(
            f"Invalid log format '{log_format}'. Choose from: {', '.join(_VALID_LOG_FORMATS)}",
            param_hint="'--log-format'",
        )

    try:
        settings = Settings(_env_file=env_file)  # type: ignore[call-arg]
    except ValidationError as exc:
        msg = f"Configuration error: {exc}"
        raise ConfigurationError(msg) from exc

    overrides: dict[str, Any] = {}
    if servers:
        overrides["servers"] = tuple(servers)
    if timeout_ms is not None:
        overrides["timeout_ms"] = timeout_ms
    settings.sync = merge_sync_settings(settings.sync, overrides)

    if log_level is not None:
        settings.logging = settings.logging.model_copy(update={"level": log_level.upper()})
    if log_format is not None:
        settings.logging = settings.logging.model_copy(update={"format": log_format.lower()})
    return settings


def _exit_for(exc: Exception) -> typer.Exit:
    """Report *exc* as JSON on stdout and map it to an exit code."""
    typer.echo(build_error_payload(exc).to_json())
    if isinstance(exc, ConfigurationError):
        return typer.Exit(EXIT_CONFIG_ERROR)
    if isinstance(exc, AllSourcesUnreachableError):
        return typer.Exit(EXIT_UNREACHABLE)
    return typer.Exit(EXIT_RUNTIME_ERROR)


def _install_signal_handlers() -> asyncio.Event:
    """Install SIGTERM/SIGINT handlers. Returns the shutdown event."""
    event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, event.set)
    return event


def build_cli(
    *,
    probe: ReferenceTimeProbe | None = None,
    clock: ClockPort | None = None,
) -> typer.Typer:
    """Construct the Typer CLI.

    Args:
        probe: Probe override for every coordinator the CLI creates
            (tests inject a fake; production uses ``NtpProbe``).
        clock: Clock override, same purpose.

    Returns:
        A configured :class:`typer.Typer` ready to invoke.
    """
    cli = typer.Typer(
        help=f"{SERVICE_NAME} v{__version__} — NTP-synchronized clock with smooth correction",
        no_args_is_help=True,
    )

    def _coordinator(settings: Settings) -> SyncCoordinator:
        return SyncCoordinator(settings.sync, probe=probe, clock=clock)

    @cli.callback()
    def main(
        version_flag: Annotated[
            bool | None,
            typer.Option("--version", is_eager=True, help="Show version and exit."),
        ] = None,
    ) -> None:
        if version_flag:
            typer.echo(f"{SERVICE_NAME} v{__version__}")
            raise typer.Exit()

    @cli.command("sync")
    def sync_command(
        server: ServerOption = None,
        timeout_ms: TimeoutOption = None,
        log_level: LogLevelOption = None,
        log_format: LogFormatOption = None,
        env_file: EnvFileOption = ".env",
    ) -> None:
        """Synchronize once and print the result as JSON."""
        try:
            settings = _load_settings(
                env_file=env_file,
                servers=server,
                timeout_ms=timeout_ms,
                log_level=log_level,
                log_format=log_format,
            )
        except ConfigurationError as exc:
            raise _exit_for(exc) from exc
        configure_logging(settings.logging, service=SERVICE_NAME, version=__version__)

        async def _run() -> dict[str, object]:
            async with _coordinator(settings) as coordinator:
                result = await coordinator.sync(auto_sync=False)
                return {
                    "timestamp": coordinator.timestamp(),
                    "result": result.to_dict(),
                    "stats": coordinator.stats().to_dict(),
                }

        try:
            report = asyncio.run(_run())
        except (ConfigurationError, AllSourcesUnreachableError) as exc:
            raise _exit_for(exc) from exc
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            raise _exit_for(exc) from exc
        typer.echo(json.dumps(report, indent=2))

    @cli.command("serve")
    def serve_command(
        server: ServerOption = None,
        timeout_ms: TimeoutOption = None,
        host: Annotated[
            str | None,
            typer.Option("--host", help="Relay bind address."),
        ] = None,
        port: Annotated[
            int | None,
            typer.Option("--port", "-p", help="Relay port."),
        ] = None,
        log_level: LogLevelOption = None,
        log_format: LogFormatOption = None,
        env_file: EnvFileOption = ".env",
    ) -> None:
        """Keep the clock synchronized and relay it over WebSocket."""
        try:
            settings = _load_settings(
                env_file=env_file,
                servers=server,
                timeout_ms=timeout_ms,
                log_level=log_level,
                log_format=log_format,
            )
        except ConfigurationError as exc:
            raise _exit_for(exc) from exc

        async def _run() -> None:
            coordinator = _coordinator(settings)
            configure_logging(
                settings.logging,
                service=SERVICE_NAME,
                version=__version__,
                time_source=coordinator,
            )
            relay = ClockRelay(coordinator, broadcast_interval=settings.relay.broadcast_interval)
            shutdown = _install_signal_handlers()
            try:
                try:
                    await coordinator.sync(auto_sync=False)
                except AllSourcesUnreachableError:
                    logger.warning("Initial sync failed; relying on auto-sync")
                coordinator.start_auto_sync()
                await relay.start(
                    host if host is not None else settings.relay.host,
                    port if port is not None else settings.relay.port,
                )
                await shutdown.wait()
            finally:
                await relay.stop()
                await coordinator.aclose()

        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(_run())
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            raise _exit_for(exc) from exc

    return cli


def main() -> None:
    """Console-script entry point."""
    build_cli()()
