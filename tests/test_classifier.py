"""Tests for the classifier module."""

import pytest

from pulseprint.classifier import (
    FullStatusSnapshot,
    PrintStatusUpdate,
    SystemSnapshot,
    Unrecognized,
    classify,
    first_command,
    sequence_id,
)
from pulseprint.decoder import decode


def test_print_push_status() -> None:
    """``print.command == push_status`` → PrintStatusUpdate."""
    msg = decode(b'{"print": {"command": "push_status"}}')
    assert classify(msg) == PrintStatusUpdate()


def test_pushing_pushall() -> None:
    """``pushing.command == pushall`` → FullStatusSnapshot."""
    msg = decode(b'{"pushing": {"command": "pushall", "version": 1}}')
    assert classify(msg) == FullStatusSnapshot()


def test_system_pushall() -> None:
    """``system.command == pushall`` → SystemSnapshot."""
    msg = decode(b'{"system": {"command": "pushall", "msg": 2}}')
    assert classify(msg) == SystemSnapshot()


def test_print_wins_over_system() -> None:
    """Rule 1 beats rule 3 when both sections carry their commands."""
    msg = decode(b'{"print": {"command": "push_status"}, "system": {"command": "pushall"}}')
    assert classify(msg) == PrintStatusUpdate()


def test_pushing_wins_over_system() -> None:
    """Rule 2 beats rule 3."""
    msg = decode(b'{"system": {"command": "pushall"}, "pushing": {"command": "pushall"}}')
    assert classify(msg) == FullStatusSnapshot()


def test_unrecognized_command() -> None:
    """Any other command is carried in Unrecognized."""
    msg = decode(b'{"info": {"command": "get_version"}}')
    kind = classify(msg)
    assert kind == Unrecognized("get_version")
    assert kind.label == "unrecognized"


@pytest.mark.parametrize(
    "raw, expected",
    [
        (b'{"print": {"command": "gcode_line"}, "system": {"command": "ledctrl"}}', "gcode_line"),
        (b'{"pushing": {"command": "start"}, "system": {"command": "ledctrl"}}', "start"),
        (b'{"system": {"command": "ledctrl"}, "info": {"command": "get_version"}}', "ledctrl"),
        (b'{"print": {"command": ""}, "info": {"command": "get_version"}}', "get_version"),
    ],
)
def test_unrecognized_scan_order(raw: bytes, expected: str) -> None:
    """Fallback command scans print, pushing, system, info and skips empties."""
    assert classify(decode(raw)) == Unrecognized(expected)


def test_empty_message_has_no_command() -> None:
    """``{}`` classifies as Unrecognized("no_command")."""
    msg = decode(b"{}")
    assert first_command(msg) is None
    assert classify(msg) == Unrecognized("no_command")


def test_sequence_id_from_system() -> None:
    """Only a system sequence id present → it is used."""
    msg = decode(b'{"system": {"sequence_id": "sys456"}}')
    assert sequence_id(msg) == "sys456"


def test_sequence_id_top_level_wins() -> None:
    """The top-level id beats every section id."""
    msg = decode(b'{"sequence_id": "top123", "system": {"sequence_id": "sys456"}}')
    assert sequence_id(msg) == "top123"


def test_sequence_id_resolution_order() -> None:
    """system → info → pushing after the top level."""
    msg = decode(b'{"info": {"sequence_id": "info1"}, "pushing": {"sequence_id": "push1"}}')
    assert sequence_id(msg) == "info1"

    msg = decode(b'{"pushing": {"sequence_id": "push1"}}')
    assert sequence_id(msg) == "push1"


def test_sequence_id_absent() -> None:
    """No id anywhere → None."""
    assert sequence_id(decode(b'{"print": {"command": "push_status"}}')) is None
