"""Tests for the output module (StdoutSink and ConsoleSink)."""

from unittest.mock import MagicMock, patch

import click
import orjson
import pytest

from pulseprint.output import ConsoleSink, StdoutSink, format_duration


class TestStdoutSink:
    """Tests for :class:`StdoutSink`."""

    def test_writes_ndjson_line(self) -> None:
        sink = StdoutSink()
        record = {"event_type": "connected", "printer": "x1c"}

        mock_stdout = MagicMock()
        with patch("pulseprint.output.sys") as mock_sys:
            mock_sys.stdout = mock_stdout
            sink.write(record)

        written = mock_stdout.buffer.write.call_args[0][0]
        assert written.endswith(b"\n")
        assert orjson.loads(written) == record
        mock_stdout.buffer.flush.assert_called_once()

    def test_broken_pipe_propagates(self) -> None:
        sink = StdoutSink()
        mock_stdout = MagicMock()
        mock_stdout.buffer.write.side_effect = BrokenPipeError
        with patch("pulseprint.output.sys") as mock_sys:
            mock_sys.stdout = mock_stdout
            with pytest.raises(BrokenPipeError):
                sink.write({"event_type": "connected"})


class TestConsoleSink:
    """Tests for :meth:`ConsoleSink.format`."""

    def _format(self, record: dict) -> str:
        return click.unstyle(ConsoleSink(color=False).format(record))

    def test_connected(self) -> None:
        line = self._format({"event_type": "connected", "printer": "x1c"})
        assert line.endswith("x1c  connected")

    def test_disconnected(self) -> None:
        line = self._format({"event_type": "disconnected", "printer": "x1c", "reason": "lost"})
        assert "disconnected: lost" in line

    def test_status_line(self) -> None:
        line = self._format({
            "event_type": "message",
            "printer": "x1c",
            "kind": "print_status_update",
            "previous_state": "idle",
            "status": {
                "state": "printing",
                "progress_percent": 67,
                "remaining_seconds": 900,
                "eta": "15:30",
                "inferred": False,
            },
        })
        assert "idle → printing" in line
        assert "67%" in line
        assert "remaining 15m00s" in line
        assert "eta 15:30" in line

    def test_inferred_and_unknown_states(self) -> None:
        inferred = self._format({"status": {"state": "printing", "inferred": True}})
        assert "printing?" in inferred

        unknown = self._format({"status": {"state": "unknown", "raw_state": "calibrating"}})
        assert "calibrating" in unknown

    def test_failure_reason(self) -> None:
        line = self._format({"status": {"state": "failed", "failure_reason": "clog"}})
        assert "reason: clog" in line

    def test_message_without_status(self) -> None:
        line = self._format({
            "event_type": "message",
            "printer": "x1c",
            "kind": "unrecognized",
            "command": "get_version",
            "sequence_id": "9",
        })
        assert line.endswith("unrecognized  command=get_version  seq=9")

    def test_missing_timestamp(self) -> None:
        assert self._format({"event_type": "connected"}).startswith("--:--:--")


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0s"), (42, "42s"), (900, "15m00s"), (3725, "1h02m05s")],
)
def test_format_duration(seconds: int, expected: str) -> None:
    assert format_duration(seconds) == expected
