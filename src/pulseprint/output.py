"""Output sinks for event records.

StdoutSink
    One NDJSON line per record on ``sys.stdout.buffer``.  For piping into
    other tools.

ConsoleSink
    One human-readable line per record, e.g.::

        12:04:31  x1c  printing  67%  remaining 15m00s  eta 15:30
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import Any, Optional

import click
import orjson

logger = logging.getLogger(__name__)

_STATE_COLORS = {
    "printing": "green",
    "paused": "yellow",
    "failed": "red",
    "finished": "cyan",
    "idle": None,
    "unknown": "magenta",
}


class StdoutSink:
    """Write NDJSON records directly to stdout."""

    def write(self, record: dict[str, Any]) -> None:
        """Serialize *record* and write it to ``sys.stdout.buffer``.

        Raises
        ------
        BrokenPipeError
            If the stdout consumer has gone away.
        """
        try:
            sys.stdout.buffer.write(orjson.dumps(record, option=orjson.OPT_APPEND_NEWLINE))
            sys.stdout.buffer.flush()
        except BrokenPipeError:
            logger.warning("stdout broken, consumer likely exited")
            raise

    def close(self) -> None:
        """No-op for stdout."""


class ConsoleSink:
    """Human-readable, optionally colored, one line per record."""

    def __init__(self, color: Optional[bool] = None) -> None:
        self._color = color

    def write(self, record: dict[str, Any]) -> None:
        click.echo(self.format(record), color=self._color)

    def close(self) -> None:
        """Nothing to release."""

    def format(self, record: dict[str, Any]) -> str:
        prefix = f"{_clock(record.get('received_at'))}  {record.get('printer') or '-'}"
        event_type = record.get("event_type")

        if event_type == "connected":
            return f"{prefix}  " + click.style("connected", fg="green")
        if event_type == "disconnected":
            return f"{prefix}  " + click.style(
                f"disconnected: {record.get('reason')}", fg="red"
            )

        status = record.get("status")
        if status is not None:
            return f"{prefix}  {_format_status(status, record.get('previous_state'))}"

        parts = [prefix, record.get("kind") or "message"]
        if record.get("command"):
            parts.append(f"command={record['command']}")
        if record.get("sequence_id") is not None:
            parts.append(f"seq={record['sequence_id']}")
        return "  ".join(parts)


def _format_status(status: dict[str, Any], previous: Optional[str]) -> str:
    state = status.get("state") or "unknown"
    label = status.get("raw_state") or state
    if status.get("inferred"):
        label += "?"
    parts = [click.style(label, fg=_STATE_COLORS.get(state))]

    if previous is not None and previous != state:
        parts[0] = f"{previous} → {parts[0]}"
    if status.get("progress_percent") is not None:
        parts.append(f"{status['progress_percent']}%")
    if status.get("remaining_seconds") is not None:
        parts.append(f"remaining {format_duration(status['remaining_seconds'])}")
    if status.get("total_seconds") is not None:
        parts.append(f"total {format_duration(status['total_seconds'])}")
    if status.get("eta"):
        parts.append(f"eta {status['eta']}")
    if status.get("failure_reason"):
        parts.append(click.style(f"reason: {status['failure_reason']}", fg="red"))
    return "  ".join(parts)


def format_duration(seconds: int) -> str:
    """``3725`` → ``"1h02m05s"``, ``900`` → ``"15m00s"``, ``42`` → ``"42s"``."""
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


def _clock(received_at: Optional[str]) -> str:
    if not received_at:
        return "--:--:--"
    try:
        return datetime.fromisoformat(received_at).astimezone().strftime("%H:%M:%S")
    except ValueError:
        return received_at
