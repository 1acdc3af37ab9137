"""Tests for the decoder module."""

import orjson
import pytest

from pulseprint.decoder import (
    MAX_RAW_PAYLOAD_CHARS,
    TRUNCATED_EXCERPT_CHARS,
    DecodeError,
    PayloadEncodingError,
    PayloadSyntaxError,
    decode,
)
from pulseprint.models import DeviceMessage


PUSH_STATUS = {
    "print": {
        "command": "push_status",
        "msg": 1,
        "state": "printing",
        "percent": 45,
        "eta": "15:30",
        "remaining_time": 1800,
        "total_time": 3600,
        "nozzle_temper": 219.5,
        "bed_temper": 60,
    },
    "sequence_id": "12345",
}


def test_decode_print_push_status() -> None:
    """Known ``print`` fields are typed; the top-level sequence id is kept."""
    msg = decode(orjson.dumps(PUSH_STATUS))
    assert msg.print is not None
    assert msg.print.command == "push_status"
    assert msg.print.state == "printing"
    assert msg.print.percent == 45
    assert msg.print.remaining_time == 1800
    assert msg.print.nozzle_temper == 219.5
    assert msg.print.bed_temper == 60.0
    assert isinstance(msg.print.bed_temper, float)
    assert msg.sequence_id == "12345"
    assert msg.system is None
    assert msg.extra == {}


def test_decode_accepts_text() -> None:
    """Already-decoded text is accepted as well as bytes."""
    msg = decode('{"pushing": {"command": "pushall", "version": 1, "sequence_id": "98765"}}')
    assert msg.pushing is not None
    assert msg.pushing.command == "pushall"
    assert msg.pushing.version == 1
    assert msg.pushing.sequence_id == "98765"


def test_unknown_fields_preserved() -> None:
    """Unknown keys go to ``extra`` at both the section and top level."""
    raw = b'{"print":{"command":"push_status","custom_field":"v"},"extra_top":true}'
    msg = decode(raw)
    assert msg.print.extra == {"custom_field": "v"}
    assert msg.extra == {"extra_top": True}


def test_nested_unknown_values_kept_verbatim() -> None:
    """Nested objects and arrays in unknown fields are not interpreted."""
    raw = orjson.dumps({
        "print": {"ams": {"ams": [{"id": "0", "humidity": "4"}]}, "lights_report": []},
        "upgrade": {"status": "IDLE"},
    })
    msg = decode(raw)
    assert msg.print.extra["ams"] == {"ams": [{"id": "0", "humidity": "4"}]}
    assert msg.print.extra["lights_report"] == []
    assert msg.extra["upgrade"] == {"status": "IDLE"}


def test_empty_object() -> None:
    """``{}`` decodes to a message with every section absent."""
    msg = decode(b"{}")
    assert msg == DeviceMessage()


def test_malformed_json() -> None:
    """Non-JSON text is a syntax error."""
    with pytest.raises(PayloadSyntaxError) as excinfo:
        decode("not valid json")
    assert isinstance(excinfo.value, DecodeError)
    assert excinfo.value.raw_excerpt == "not valid json"
    assert excinfo.value.truncated is False


def test_invalid_utf8() -> None:
    """Bytes that are not UTF-8 fail before JSON parsing."""
    with pytest.raises(PayloadEncodingError):
        decode(b'{"print": "\xff\xfe"}')


def test_non_object_top_level() -> None:
    """Valid JSON that is not an object is rejected as a syntax error."""
    with pytest.raises(PayloadSyntaxError):
        decode(b"[1, 2, 3]")


def test_type_mismatch_degrades_to_absent() -> None:
    """A wrongly-typed known field is absent and kept verbatim in ``extra``."""
    raw = orjson.dumps({
        "print": {"command": "push_status", "percent": "67", "remaining_time": -5,
                  "nozzle_temper": True, "state": 3},
        "sequence_id": 42,
    })
    msg = decode(raw)
    assert msg.print.command == "push_status"
    assert msg.print.percent is None
    assert msg.print.remaining_time is None
    assert msg.print.nozzle_temper is None
    assert msg.print.state is None
    assert msg.print.extra == {
        "percent": "67",
        "remaining_time": -5,
        "nozzle_temper": True,
        "state": 3,
    }
    assert msg.sequence_id is None
    assert msg.extra == {"sequence_id": 42}


def test_section_not_an_object() -> None:
    """A known section holding a scalar is absent and kept in top-level ``extra``."""
    msg = decode(b'{"system": "pushall", "info": null}')
    assert msg.system is None
    assert msg.info is None
    assert msg.extra == {"system": "pushall"}


def test_null_known_field_is_absent() -> None:
    """``null`` on a known field means absent, not mismatched."""
    msg = decode(b'{"print": {"eta": null}}')
    assert msg.print.eta is None
    assert msg.print.extra == {}


def test_raw_excerpt_truncation() -> None:
    """Oversized payloads are truncated in the error's diagnostic excerpt."""
    raw = '{"not": "' + "x" * (MAX_RAW_PAYLOAD_CHARS + 100)  # no closing quote/brace
    with pytest.raises(PayloadSyntaxError) as excinfo:
        decode(raw)
    assert excinfo.value.truncated is True
    assert len(excinfo.value.raw_excerpt) == TRUNCATED_EXCERPT_CHARS
