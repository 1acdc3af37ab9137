"""Turn subscription events into flat :class:`EventRecord` dicts for the sinks.

Keeps the last projected :class:`~pulseprint.status.PrintState` in memory so
each status record carries ``previous_state``.  Nothing is persisted: after a
restart the first record has ``previous_state: null``.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional

from pulseprint.classifier import classify, first_command, sequence_id
from pulseprint.models import (
    Connected,
    Disconnected,
    EventRecord,
    Message,
    SubscriptionEvent,
)
from pulseprint.status import DeviceStatus, PrintState, project


class Transformer:
    """Stateful transform: subscription event → record dict."""

    def __init__(self, printer_name: str = "") -> None:
        self._printer_name = printer_name
        self._last_state: Optional[PrintState] = None

    @property
    def last_state(self) -> Optional[PrintState]:
        return self._last_state

    def transform(self, event: SubscriptionEvent) -> dict[str, Any]:
        """Build the record for *event*.

        Raises
        ------
        TypeError
            For anything that is not a subscription event.
        """
        record = EventRecord(
            received_at=datetime.now(timezone.utc).isoformat(),
            printer=self._printer_name,
        )

        if isinstance(event, Connected):
            record.event_type = "connected"
        elif isinstance(event, Disconnected):
            record.event_type = "disconnected"
            record.reason = event.reason
        elif isinstance(event, Message):
            self._fill_message(record, event)
        else:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")

        return asdict(record)

    def _fill_message(self, record: EventRecord, event: Message) -> None:
        msg = event.message
        kind = classify(msg)

        record.event_type = "message"
        record.kind = kind.label
        record.command = first_command(msg)
        record.sequence_id = sequence_id(msg)
        record.extra = dict(msg.extra) or None

        status = project(msg)
        if status is not None:
            record.status = _status_dict(status)
            record.previous_state = (
                self._last_state.value if self._last_state is not None else None
            )
            self._last_state = status.state


def _status_dict(status: DeviceStatus) -> dict[str, Any]:
    data = asdict(status)
    data["state"] = status.state.value
    return data
