"""Classify decoded report messages by their embedded ``command`` fields.

Classification order (first match wins)::

    print.command   == "push_status"  → PrintStatusUpdate
    pushing.command == "pushall"      → FullStatusSnapshot
    system.command  == "pushall"      → SystemSnapshot
    first non-empty command of print, pushing, system, info
                                      → Unrecognized(command)
    otherwise                         → Unrecognized("no_command")

A message may carry several sections at once; the order above always picks
the most actionable one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional, Union

from pulseprint.models import DeviceMessage

NO_COMMAND = "no_command"


@dataclass(frozen=True)
class PrintStatusUpdate:
    """Incremental ``print.push_status`` report."""

    label: ClassVar[str] = "print_status_update"


@dataclass(frozen=True)
class FullStatusSnapshot:
    """Reply to a ``pushing.pushall`` request."""

    label: ClassVar[str] = "full_status_snapshot"


@dataclass(frozen=True)
class SystemSnapshot:
    """``system.pushall`` report."""

    label: ClassVar[str] = "system_snapshot"


@dataclass(frozen=True)
class Unrecognized:
    """Any other command, or ``"no_command"`` when none is present."""

    command: str
    label: ClassVar[str] = "unrecognized"


MessageKind = Union[PrintStatusUpdate, FullStatusSnapshot, SystemSnapshot, Unrecognized]


def classify(msg: DeviceMessage) -> MessageKind:
    """Return the :data:`MessageKind` of *msg*.

    Never stored on the message; recompute whenever it is needed.
    """
    if msg.print is not None and msg.print.command == "push_status":
        return PrintStatusUpdate()
    if msg.pushing is not None and msg.pushing.command == "pushall":
        return FullStatusSnapshot()
    if msg.system is not None and msg.system.command == "pushall":
        return SystemSnapshot()

    command = first_command(msg)
    return Unrecognized(command if command is not None else NO_COMMAND)


def first_command(msg: DeviceMessage) -> Optional[str]:
    """First non-empty ``command`` scanning print, pushing, system, info."""
    for section in (msg.print, msg.pushing, msg.system, msg.info):
        if section is not None and section.command:
            return section.command
    return None


def sequence_id(msg: DeviceMessage) -> Optional[str]:
    """Resolve the message's sequence id.

    Top level first, then ``system``, ``info`` and ``pushing``.  The first
    value present wins; values are never merged.
    """
    if msg.sequence_id is not None:
        return msg.sequence_id
    for section in (msg.system, msg.info, msg.pushing):
        if section is not None and section.sequence_id is not None:
            return section.sequence_id
    return None
