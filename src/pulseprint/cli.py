"""Click CLI for PulsePrint.

Entry point registered in ``pyproject.toml`` as ``pulseprint``.

Subcommands::

    pulseprint monitor [--printer NAME]          # stream status of a saved printer
    pulseprint monitor --ip IP --device-id ID --access-code CODE
    pulseprint printer add NAME --ip ... --device-id ... --access-code ...
    pulseprint printer list | remove NAME | default NAME
    pulseprint secrets init | set NAME | list
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Optional

import click
import orjson

from pulseprint import __version__
from pulseprint.channel import EventChannel, EventProcessor
from pulseprint.config import (
    AppConfig,
    ConfigError,
    LogFileConfig,
    PrinterConfig,
    default_config_path,
    load_config,
    save_config,
)
from pulseprint.connection import ReconnectSupervisor
from pulseprint.models import Message
from pulseprint.output import ConsoleSink, StdoutSink
from pulseprint.redactor import SecretRedactingFilter
from pulseprint.secrets import SecretStore
from pulseprint.transform import Transformer

logger = logging.getLogger("pulseprint")

DRY_RUN_MESSAGES = 5


# ── log formatting ──────────────────────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    fmt: str = "text",
    redactor: Optional[SecretRedactingFilter] = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """(Re)configure the root logger: stderr, optional rotating file, redaction."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if fmt == "json":
        formatter: logging.Formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file_config and log_file_config.enabled:
        log_path = Path(log_file_config.path).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                filename=log_path,
                maxBytes=log_file_config.max_size_bytes,
                backupCount=log_file_config.backup_count,
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        if redactor is not None:
            handler.addFilter(redactor)
        root.addHandler(handler)


# ── main CLI group ──────────────────────────────────────────────────


@click.group()
@click.option("-c", "--config", "config_path", default=None,
              help="Config file path (default: $PULSEPRINT_CONFIG or ~/.config/pulseprint/config.json).")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.version_option(__version__, prog_name="pulseprint")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], log_level: Optional[str]) -> None:
    """PulsePrint: monitor network-attached 3D printers over MQTT."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config_path) if config_path else default_config_path()
    ctx.obj["log_level"] = log_level or os.environ.get("PULSEPRINT_LOG_LEVEL")
    _setup_logging(ctx.obj["log_level"] or "warn")


# ── monitor ─────────────────────────────────────────────────────────


@main.command()
@click.option("-p", "--printer", "printer_name", default=None,
              help="Saved printer profile (default: the configured default).")
@click.option("--ip", default=None, help="Printer IP or hostname (ad hoc, no profile).")
@click.option("--device-id", default=None, help="Printer serial / device ID.")
@click.option("--access-code", default=None, help="Printer LAN access code.")
@click.option("--port", type=int, default=None, help="MQTT port (default: 8883).")
@click.option("--no-tls", is_flag=True, help="Connect without TLS.")
@click.option("-f", "--format", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format.")
@click.option("--pushall", is_flag=True, help="Request a full status snapshot after connecting.")
@click.option("--dry-run", is_flag=True, help=f"Exit after {DRY_RUN_MESSAGES} messages.")
@click.pass_context
def monitor(
    ctx: click.Context,
    printer_name: Optional[str],
    ip: Optional[str],
    device_id: Optional[str],
    access_code: Optional[str],
    port: Optional[int],
    no_tls: bool,
    output_format: str,
    pushall: bool,
    dry_run: bool,
) -> None:
    """Monitor a printer's status reports via MQTT."""
    try:
        cfg = load_config(ctx.obj["config_path"], secrets=_load_secrets(ctx.obj["config_path"]))
    except Exception as exc:
        raise click.ClickException(f"Config error: {exc}") from exc

    _setup_logging(
        ctx.obj["log_level"] or cfg.logging.level,
        cfg.logging.format,
        SecretRedactingFilter.from_config(cfg),
        cfg.logging.file,
    )

    try:
        printer = _resolve_printer(cfg, printer_name, ip, device_id, access_code)
    except ConfigError as exc:
        raise click.UsageError(str(exc)) from exc

    if port is not None:
        printer = replace(printer, port=port)
    if no_tls:
        printer = replace(printer, use_tls=False)
    if pushall:
        cfg.mqtt.request_full_status_on_connect = True

    logger.info("Starting pulseprint %s (printer=%s)", __version__, printer.name)
    asyncio.run(_run_monitor(cfg, printer, output_format, dry_run))


def _resolve_printer(
    cfg: AppConfig,
    printer_name: Optional[str],
    ip: Optional[str],
    device_id: Optional[str],
    access_code: Optional[str],
) -> PrinterConfig:
    """Ad hoc ``--ip`` settings win; otherwise a named or the default profile."""
    if ip:
        if not device_id or not access_code:
            raise ConfigError("--ip requires --device-id and --access-code")
        return PrinterConfig(
            name=printer_name or ip,
            ip=ip,
            device_id=device_id,
            access_code=access_code,
        )
    if printer_name:
        return cfg.get_printer(printer_name)
    return cfg.get_default_printer()


async def _run_monitor(
    cfg: AppConfig,
    printer: PrinterConfig,
    output_format: str,
    dry_run: bool,
    session_factory: Optional[Callable[[PrinterConfig], Any]] = None,
    sink: Any = None,
) -> int:
    """Supervisor task → event channel → consumer loop → sink.

    Returns the number of messages written.
    """
    loop = asyncio.get_running_loop()

    channel: EventChannel = EventChannel(cfg.mqtt.channel_capacity)
    supervisor = ReconnectSupervisor(
        printer,
        channel,
        settings=cfg.mqtt,
        reconnect=cfg.reconnect,
        session_factory=session_factory,
    )
    processor = EventProcessor(channel)
    xform = Transformer(printer.name)
    if sink is None:
        sink = StdoutSink() if output_format == "json" else ConsoleSink()

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        supervisor.request_shutdown()

    signals: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
            signals.append(sig)
        except (NotImplementedError, RuntimeError):
            pass  # Windows, or not the main thread

    message_count = 0

    def _handle_event(event: Any) -> None:
        nonlocal message_count
        is_message = isinstance(event, Message)
        # events already buffered when the dry run ended are drained, not written
        if is_message and dry_run and message_count >= DRY_RUN_MESSAGES:
            return
        try:
            sink.write(xform.transform(event))
        except BrokenPipeError:
            supervisor.request_shutdown()
            return

        if is_message:
            message_count += 1
            if dry_run and message_count >= DRY_RUN_MESSAGES:
                logger.info("Dry run complete, received %d messages", message_count)
                supervisor.request_shutdown()

    producer = asyncio.create_task(supervisor.run())
    try:
        await processor.run(_handle_event)
    finally:
        supervisor.request_shutdown()
        await producer
        sink.close()
        for sig in signals:
            loop.remove_signal_handler(sig)
        logger.info("Monitor shut down (processed %d events)", processor.processed)
    return message_count


# ── printer profiles ────────────────────────────────────────────────


def _load_for_edit(config_path: Path) -> AppConfig:
    try:
        return load_config(config_path, interpolate=False)
    except Exception as exc:
        raise click.ClickException(f"Config error: {exc}") from exc


@main.group()
def printer() -> None:
    """Manage saved printer profiles."""


@printer.command("add")
@click.argument("name")
@click.option("--ip", required=True, help="Printer IP or hostname.")
@click.option("--device-id", required=True, help="Printer serial / device ID.")
@click.option("--access-code", required=True,
              help="LAN access code, or a ${VAR} placeholder resolved at startup.")
@click.option("--port", type=int, default=8883, show_default=True, help="MQTT port.")
@click.option("--no-tls", is_flag=True, help="Connect without TLS.")
@click.option("--model", default=None, help="Printer model, for display.")
@click.pass_context
def printer_add(
    ctx: click.Context,
    name: str,
    ip: str,
    device_id: str,
    access_code: str,
    port: int,
    no_tls: bool,
    model: Optional[str],
) -> None:
    """Save a printer profile."""
    cfg = _load_for_edit(ctx.obj["config_path"])
    try:
        cfg.add_printer(PrinterConfig(
            name=name,
            ip=ip,
            device_id=device_id,
            access_code=access_code,
            port=port,
            use_tls=not no_tls,
            model=model,
        ))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(cfg, ctx.obj["config_path"])
    click.echo(f"Added: {name}")


@printer.command("remove")
@click.argument("name")
@click.pass_context
def printer_remove(ctx: click.Context, name: str) -> None:
    """Delete a printer profile."""
    cfg = _load_for_edit(ctx.obj["config_path"])
    try:
        cfg.remove_printer(name)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(cfg, ctx.obj["config_path"])
    click.echo(f"Removed: {name}")


@printer.command("list")
@click.pass_context
def printer_list(ctx: click.Context) -> None:
    """List printer profiles (access codes are never shown)."""
    cfg = _load_for_edit(ctx.obj["config_path"])
    printers = cfg.list_printers()
    if not printers:
        click.echo("No printers configured.")
        return
    for p in printers:
        marker = "*" if p.name == cfg.default_printer else " "
        model = f"  ({p.model})" if p.model else ""
        click.echo(f"{marker} {p.name}  {p.mqtt_url}  {p.device_id}{model}")


@printer.command("default")
@click.argument("name")
@click.pass_context
def printer_default(ctx: click.Context, name: str) -> None:
    """Make NAME the default printer."""
    cfg = _load_for_edit(ctx.obj["config_path"])
    try:
        cfg.set_default_printer(name)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(cfg, ctx.obj["config_path"])
    click.echo(f"Default: {name}")


# ── secrets subcommand group ────────────────────────────────────────


def _secrets_file(config_path: Path) -> Path:
    explicit = os.environ.get("PULSEPRINT_SECRETS_FILE")
    return Path(explicit).expanduser() if explicit else config_path.parent / "secrets.enc"


def _load_secrets(config_path: Path) -> dict[str, str]:
    """Secrets for ``${VAR}`` interpolation, when a key file is configured."""
    key_file = os.environ.get("PULSEPRINT_KEY_FILE")
    secrets_file = _secrets_file(config_path)
    if not key_file or not Path(key_file).exists() or not secrets_file.exists():
        return {}
    return SecretStore(secrets_file, key_file).load()


@main.group()
def secrets() -> None:
    """Manage the encrypted secrets file."""


@secrets.command("init")
@click.option("--key-file", required=True, envvar="PULSEPRINT_KEY_FILE",
              help="Path for the master key (created if missing).")
@click.pass_context
def secrets_init(ctx: click.Context, key_file: str) -> None:
    """Create an empty encrypted secrets file."""
    path = _secrets_file(ctx.obj["config_path"])
    SecretStore.init(path, key_file)
    click.echo(f"Initialized: {path} (key: {key_file})")


@secrets.command("set")
@click.argument("name")
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
@click.option("--key-file", required=True, envvar="PULSEPRINT_KEY_FILE",
              help="Path to the master key.")
@click.pass_context
def secrets_set(ctx: click.Context, name: str, value: str, key_file: str) -> None:
    """Store a secret, e.g. a printer access code."""
    SecretStore(_secrets_file(ctx.obj["config_path"]), key_file).set(name, value)
    click.echo(f"Set: {name}")


@secrets.command("list")
@click.option("--key-file", required=True, envvar="PULSEPRINT_KEY_FILE",
              help="Path to the master key.")
@click.pass_context
def secrets_list(ctx: click.Context, key_file: str) -> None:
    """List stored secret names (values are never shown)."""
    for name in SecretStore(_secrets_file(ctx.obj["config_path"]), key_file).names():
        click.echo(name)
