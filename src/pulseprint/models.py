"""Dataclass models for decoded printer reports and subscription events.

A report payload is a JSON object with a handful of well-known sections::

    {
      "print":   {"command": "push_status", "percent": 42, ...},
      "system":  {"command": "pushall", "sequence_id": "7"},
      "info":    {...},
      "pushing": {...},
      "sequence_id": "12345",
      ...anything else...
    }

Every section keeps the fields it knows about as typed attributes and
everything else in its ``extra`` mapping, verbatim.  Nothing is dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union


@dataclass
class PrintSection:
    """The ``print`` section: job progress, temperatures and state."""

    command: Optional[str] = None
    msg: Optional[int] = None
    state: Optional[str] = None
    fail_reason: Optional[str] = None
    utc_time: Optional[int] = None
    gcode_state: Optional[str] = None
    gcode_file: Optional[str] = None
    subtask_name: Optional[str] = None
    percent: Optional[int] = None
    eta: Optional[str] = None
    total_time: Optional[int] = None
    remaining_time: Optional[int] = None
    mc_percent: Optional[int] = None
    mc_remaining_time: Optional[int] = None
    layer_num: Optional[int] = None
    total_layer_num: Optional[int] = None
    nozzle_temper: Optional[float] = None
    nozzle_target_temper: Optional[float] = None
    bed_temper: Optional[float] = None
    bed_target_temper: Optional[float] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class SystemSection:
    """The ``system`` section."""

    command: Optional[str] = None
    msg: Optional[int] = None
    sequence_id: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class InfoSection:
    """The ``info`` section (module/firmware inventory replies)."""

    command: Optional[str] = None
    sequence_id: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class PushingSection:
    """The ``pushing`` section."""

    command: Optional[str] = None
    version: Optional[int] = None
    sequence_id: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeviceMessage:
    """One decoded report payload.

    Sections that were not present in the payload are ``None``.  Unknown
    top-level keys land in ``extra``.
    """

    print: Optional[PrintSection] = None
    system: Optional[SystemSection] = None
    info: Optional[InfoSection] = None
    pushing: Optional[PushingSection] = None
    sequence_id: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


# ── subscription events ─────────────────────────────────────────────


@dataclass(frozen=True)
class Connected:
    """The session is connected and subscribed to the report topic."""


@dataclass(frozen=True)
class Disconnected:
    """A subscribed session was lost; the supervisor is backing off."""

    reason: str


@dataclass(frozen=True)
class Message:
    """A report payload that decoded successfully."""

    message: DeviceMessage


SubscriptionEvent = Union[Connected, Disconnected, Message]


@dataclass
class EventRecord:
    """Flat, serializable view of one subscription event.

    Built by :class:`pulseprint.transform.Transformer` and written by the
    output sinks.
    """

    event_type: str = ""
    received_at: str = ""
    printer: str = ""
    reason: Optional[str] = None
    kind: Optional[str] = None
    command: Optional[str] = None
    sequence_id: Optional[str] = None
    status: Optional[dict] = None
    previous_state: Optional[str] = None
    extra: Optional[dict] = None
