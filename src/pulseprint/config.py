"""Configuration loading, environment-variable interpolation, and printer profiles.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → encrypted secrets → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

Example file::

    {
      "default_printer": "x1c",
      "printers": {
        "x1c": {
          "name": "x1c",
          "ip": "192.168.1.50",
          "device_id": "01S00A000000000",
          "access_code": "${X1C_ACCESS_CODE}"
        }
      },
      "reconnect": {"initial_delay_s": 5, "max_delay_s": 60}
    }
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent / "config.schema.json"

DEFAULT_PORT = 8883


class ConfigError(Exception):
    """Base class for configuration and profile errors."""


class PrinterExistsError(ConfigError):
    """A printer profile with that name already exists."""


class PrinterNotFoundError(ConfigError):
    """No printer profile with that name."""


class NoDefaultPrinterError(ConfigError):
    """No printer was named and no default is configured."""


@dataclass(frozen=True)
class PrinterConfig:
    """Connection descriptor for one printer.

    Frozen: a session never sees its descriptor change underneath it.
    """

    name: str
    ip: str
    device_id: str
    access_code: str
    port: int = DEFAULT_PORT
    use_tls: bool = True
    model: Optional[str] = None
    firmware_version: Optional[str] = None

    @property
    def report_topic(self) -> str:
        """Topic the printer publishes status reports on."""
        return f"device/{self.device_id}/report"

    @property
    def request_topic(self) -> str:
        """Topic the printer accepts commands on."""
        return f"device/{self.device_id}/request"

    @property
    def mqtt_url(self) -> str:
        scheme = "mqtts" if self.use_tls else "mqtt"
        return f"{scheme}://{self.ip}:{self.port}"


@dataclass
class MqttSettings:
    """Transport settings shared by every printer."""

    client_id: str = "pulseprint-cli"
    username: str = "bblp"
    keep_alive_secs: int = 30
    connection_timeout_secs: int = 10
    channel_capacity: int = 100
    request_full_status_on_connect: bool = False


@dataclass
class ReconnectConfig:
    """Reconnection backoff parameters."""

    initial_delay_s: float = 5.0
    max_delay_s: float = 60.0
    backoff_multiplier: int = 2
    jitter_pct: int = 0


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True operational logs go to a rotating file in
    addition to stderr.
    """

    enabled: bool = False
    path: str = "~/.local/state/pulseprint/pulseprint.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 3


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "text"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*access_code*", "*password*", "*secret*", "*token*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration and named printer profiles."""

    printers: dict[str, PrinterConfig] = field(default_factory=dict)
    default_printer: Optional[str] = None
    mqtt: MqttSettings = field(default_factory=MqttSettings)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def add_printer(self, printer: PrinterConfig) -> None:
        """Register *printer* under its name; the first one becomes the default."""
        if printer.name in self.printers:
            raise PrinterExistsError(f"Printer '{printer.name}' already exists")
        self.printers[printer.name] = printer
        if self.default_printer is None:
            self.default_printer = printer.name

    def remove_printer(self, name: str) -> PrinterConfig:
        """Remove and return the profile *name*, reassigning the default if needed."""
        try:
            printer = self.printers.pop(name)
        except KeyError:
            raise PrinterNotFoundError(f"Printer '{name}' not found") from None
        if self.default_printer == name:
            self.default_printer = next(iter(self.printers), None)
        return printer

    def get_printer(self, name: str) -> PrinterConfig:
        try:
            return self.printers[name]
        except KeyError:
            raise PrinterNotFoundError(f"Printer '{name}' not found") from None

    def get_default_printer(self) -> PrinterConfig:
        if self.default_printer is None:
            raise NoDefaultPrinterError("No default printer configured")
        return self.get_printer(self.default_printer)

    def set_default_printer(self, name: str) -> None:
        if name not in self.printers:
            raise PrinterNotFoundError(f"Printer '{name}' not found")
        self.default_printer = name

    def list_printers(self) -> list[PrinterConfig]:
        """Profiles sorted by name."""
        return [self.printers[name] for name in sorted(self.printers)]


def default_config_path() -> Path:
    """``$PULSEPRINT_CONFIG``, else ``$XDG_CONFIG_HOME/pulseprint/config.json``."""
    explicit = os.environ.get("PULSEPRINT_CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    base = os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config"
    return Path(base) / "pulseprint" / "config.json"


def _interpolate_value(
    value: str,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if secrets and var_name in secrets:
            return secrets[var_name]
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment, "
            f"CLI overrides, or encrypted secrets"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(
    obj: Any,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides, secrets)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides, secrets) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides, secrets) for item in obj]
    return obj


def _known(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys of *raw* that are fields of dataclass *cls*."""
    return {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    logging_raw = raw.get("logging", {})

    printers: dict[str, PrinterConfig] = {}
    for name, printer_raw in raw.get("printers", {}).items():
        fields = _known(PrinterConfig, printer_raw)
        if fields.get("name", name) != name:
            logger.warning(
                "Printer profile '%s' has name '%s', using the profile key",
                name,
                fields["name"],
            )
        # the dict key is the profile's identity
        fields["name"] = name
        printers[name] = PrinterConfig(**fields)

    return AppConfig(
        printers=printers,
        default_printer=raw.get("default_printer"),
        mqtt=MqttSettings(**_known(MqttSettings, raw.get("mqtt", {}))),
        reconnect=ReconnectConfig(**_known(ReconnectConfig, raw.get("reconnect", {}))),
        logging=LoggingConfig(
            level=logging_raw.get("level", "info"),
            format=logging_raw.get("format", "text"),
            file=LogFileConfig(**_known(LogFileConfig, logging_raw.get("file", {}))),
            redact_patterns=logging_raw.get(
                "redact_patterns",
                ["*access_code*", "*password*", "*secret*", "*token*"],
            ),
        ),
    )


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
    interpolate: bool = True,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.  A missing file yields the
        default (empty) configuration.
    overrides:
        CLI-supplied variable overrides.
    secrets:
        Values from the encrypted secrets file.
    schema_path:
        Path to the JSON Schema file.  Defaults to the schema bundled with
        the package.
    interpolate:
        Resolve ``${VAR}`` placeholders.  Disable when the config will be
        edited and saved back, so placeholders are not replaced by secrets.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    p = Path(path)
    if not p.exists():
        logger.debug("Config file %s not found, using defaults", p)
        return AppConfig()

    raw: dict[str, Any] = orjson.loads(p.read_bytes())

    if interpolate:
        raw = _walk_and_interpolate(raw, overrides=overrides, secrets=secrets)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=raw, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(raw)


def save_config(cfg: AppConfig, path: str | Path) -> None:
    """Write *cfg* to *path* as indented JSON, creating parent directories."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(orjson.dumps(asdict(cfg), option=orjson.OPT_INDENT_2))
    os.chmod(p, 0o600)
    logger.info("Saved config to %s", p)
