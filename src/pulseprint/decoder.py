"""Decode raw report payloads into :class:`~pulseprint.models.DeviceMessage`.

Decoding pipeline::

    raw bytes/str
      │
      ├─ not UTF-8                → PayloadEncodingError
      ├─ not JSON                 → PayloadSyntaxError
      ├─ JSON but not an object   → PayloadSyntaxError
      └─ object                   → DeviceMessage

Every known field has a fixed type.  A value of the wrong type never fails
the decode: the typed attribute stays ``None`` and the original value is
kept, verbatim, in the section's ``extra`` mapping.  Unknown keys go to
``extra`` as well.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

import orjson

from pulseprint.models import (
    DeviceMessage,
    InfoSection,
    PrintSection,
    PushingSection,
    SystemSection,
)

# Payloads at or above this many characters are truncated in diagnostics.
MAX_RAW_PAYLOAD_CHARS = 1000
TRUNCATED_EXCERPT_CHARS = 500


class DecodeError(Exception):
    """A payload could not be decoded.

    Attributes
    ----------
    raw_excerpt:
        The payload (or its first :data:`TRUNCATED_EXCERPT_CHARS`
        characters) for diagnostics.
    truncated:
        Whether ``raw_excerpt`` was cut short.
    """

    def __init__(self, detail: str, raw: str | bytes = "") -> None:
        super().__init__(detail)
        self.detail = detail
        self.raw_excerpt, self.truncated = _excerpt(raw)


class PayloadEncodingError(DecodeError):
    """The payload bytes are not valid UTF-8."""


class PayloadSyntaxError(DecodeError):
    """The payload text is not a well-formed JSON object."""


# ── field coercers ──────────────────────────────────────────────────
#
# Each returns the typed value, or None when the JSON value has the wrong
# type.


def _string(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _uint(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value >= 0 else None


def _float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


Coercer = Callable[[Any], Any]

PRINT_FIELDS: dict[str, Coercer] = {
    "command": _string,
    "msg": _uint,
    "state": _string,
    "fail_reason": _string,
    "utc_time": _uint,
    "gcode_state": _string,
    "gcode_file": _string,
    "subtask_name": _string,
    "percent": _uint,
    "eta": _string,
    "total_time": _uint,
    "remaining_time": _uint,
    "mc_percent": _uint,
    "mc_remaining_time": _uint,
    "layer_num": _uint,
    "total_layer_num": _uint,
    "nozzle_temper": _float,
    "nozzle_target_temper": _float,
    "bed_temper": _float,
    "bed_target_temper": _float,
}

SYSTEM_FIELDS: dict[str, Coercer] = {
    "command": _string,
    "msg": _uint,
    "sequence_id": _string,
}

INFO_FIELDS: dict[str, Coercer] = {
    "command": _string,
    "sequence_id": _string,
}

PUSHING_FIELDS: dict[str, Coercer] = {
    "command": _string,
    "version": _uint,
    "sequence_id": _string,
}

_SECTIONS = {
    "print": (PrintSection, PRINT_FIELDS),
    "system": (SystemSection, SYSTEM_FIELDS),
    "info": (InfoSection, INFO_FIELDS),
    "pushing": (PushingSection, PUSHING_FIELDS),
}


def decode(raw: str | bytes | bytearray) -> DeviceMessage:
    """Decode one report payload.

    Parameters
    ----------
    raw:
        Payload bytes (expected UTF-8) or already-decoded text.

    Returns
    -------
    DeviceMessage
        The decoded message.  Unknown and mistyped fields are preserved in
        the ``extra`` mappings.

    Raises
    ------
    PayloadEncodingError
        If *raw* is bytes that are not valid UTF-8.
    PayloadSyntaxError
        If the text is not JSON, or is JSON but not an object.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PayloadEncodingError(f"Payload is not valid UTF-8: {exc}", raw) from exc
    else:
        text = raw

    try:
        obj = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise PayloadSyntaxError(f"Failed to parse JSON: {exc}", text) from exc

    if not isinstance(obj, dict):
        raise PayloadSyntaxError(
            f"Expected a JSON object, got {type(obj).__name__}", text
        )

    message = DeviceMessage()
    for key, value in obj.items():
        if key in _SECTIONS:
            if isinstance(value, dict):
                cls, fields = _SECTIONS[key]
                setattr(message, key, _decode_section(cls, fields, value))
            elif value is not None:
                message.extra[key] = value
        elif key == "sequence_id":
            _assign(message, key, value, _string)
        else:
            message.extra[key] = value
    return message


# ── helpers ─────────────────────────────────────────────────────────


def _decode_section(cls: type, fields: dict[str, Coercer], obj: dict[str, Any]):
    """Bucket *obj* into the known fields of *cls* plus its ``extra`` map."""
    section = cls()
    for key, value in obj.items():
        coerce = fields.get(key)
        if coerce is None:
            section.extra[key] = value
        else:
            _assign(section, key, value, coerce)
    return section


def _assign(target: Any, key: str, value: Any, coerce: Coercer) -> None:
    if value is None:
        return
    converted = coerce(value)
    if converted is None:
        target.extra[key] = value
    else:
        setattr(target, key, converted)


def _excerpt(raw: str | bytes | bytearray) -> tuple[str, bool]:
    """Return ``(text, truncated)`` for a diagnostic dump of *raw*."""
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    if len(raw) < MAX_RAW_PAYLOAD_CHARS:
        return raw, False
    return raw[:TRUNCATED_EXCERPT_CHARS], True
