"""Project a decoded message onto a normalized :class:`DeviceStatus`.

Pure functions only: no I/O, no logging, no state.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from pulseprint.models import DeviceMessage, PrintSection

# Nozzle temperature above which an unreported state is inferred as printing.
NOZZLE_ACTIVE_THRESHOLD = 50.0


class PrintState(enum.Enum):
    """Normalized printer state."""

    IDLE = "idle"
    PRINTING = "printing"
    PAUSED = "paused"
    FAILED = "failed"
    FINISHED = "finished"
    UNKNOWN = "unknown"


_STATE_TABLE = {
    "idle": PrintState.IDLE,
    "printing": PrintState.PRINTING,
    "paused": PrintState.PAUSED,
    "failed": PrintState.FAILED,
    "finished": PrintState.FINISHED,
}


@dataclass(frozen=True)
class DeviceStatus:
    """Normalized printer status.

    ``raw_state`` holds the reported string when ``state`` is
    :attr:`PrintState.UNKNOWN`.  ``inferred`` is True when no state was
    reported and ``state`` comes from the remaining-time/temperature
    heuristic instead.
    """

    state: PrintState
    progress_percent: Optional[int] = None
    eta: Optional[str] = None
    remaining_seconds: Optional[int] = None
    total_seconds: Optional[int] = None
    failure_reason: Optional[str] = None
    raw_state: Optional[str] = None
    inferred: bool = False


def parse_state(raw: str) -> PrintState:
    """Map a reported state string onto :class:`PrintState`."""
    return _STATE_TABLE.get(raw, PrintState.UNKNOWN)


def project(msg: DeviceMessage) -> Optional[DeviceStatus]:
    """Return the status carried by *msg*, or ``None`` without a ``print`` section."""
    section = msg.print
    if section is None:
        return None

    remaining = _remaining_seconds(section)

    if section.state is not None:
        state = parse_state(section.state)
        raw_state = section.state if state is PrintState.UNKNOWN else None
        inferred = False
    else:
        state = _infer_state(section, remaining)
        raw_state = None
        inferred = True

    return DeviceStatus(
        state=state,
        progress_percent=section.percent,
        eta=section.eta,
        remaining_seconds=remaining,
        total_seconds=section.total_time,
        failure_reason=section.fail_reason,
        raw_state=raw_state,
        inferred=inferred,
    )


def _remaining_seconds(section: PrintSection) -> Optional[int]:
    """Device-specific ``mc_remaining_time`` wins over ``remaining_time``."""
    if section.mc_remaining_time is not None:
        return section.mc_remaining_time
    return section.remaining_time


def _infer_state(section: PrintSection, remaining: Optional[int]) -> PrintState:
    # Heuristic fallback: a hot nozzle after a finished job still reads as
    # printing until it cools below the threshold.
    if remaining is not None and remaining > 0:
        return PrintState.PRINTING
    if section.nozzle_temper is not None and section.nozzle_temper > NOZZLE_ACTIVE_THRESHOLD:
        return PrintState.PRINTING
    return PrintState.IDLE
