"""
Tests for appxkit.logging module.

Tests console and file logging including:
- Verbosity gating of console output
- JSON-lines log file records
- Size based rotation
- Global logger configuration
"""

from __future__ import annotations

from datetime import datetime
import json
import logging

import pytest

from appxkit.logging import (
    DefaultLogger,
    LogFileSink,
    SilentLogger,
    get_global_logger,
    get_logger,
    set_global_logger,
)

pytestmark = pytest.mark.unit


class TestDefaultLogger:
    """Tests for console output."""

    def test_step_always_printed(self, capsys):
        """Test that steps print regardless of verbosity."""
        DefaultLogger().step(2, 5, "Packing...")
        assert capsys.readouterr().out == "[2/5] Packing...\n"

    def test_verbose_gated(self, capsys):
        """Test that verbose output needs verbose mode."""
        DefaultLogger().verbose("PACK", "hidden")
        DefaultLogger(verbose=True).verbose("PACK", "shown")

        out = capsys.readouterr().out
        assert "hidden" not in out
        assert "[PACK] shown" in out

    def test_debug_implies_verbose(self, capsys):
        """Test that debug mode also prints verbose output."""
        logger = DefaultLogger(debug=True)
        logger.verbose("A", "v")
        logger.debug("B", "d")

        out = capsys.readouterr().out
        assert "[A] v" in out
        assert "[B] d" in out

    def test_debug_hidden_in_verbose_mode(self, capsys):
        """Test that debug output needs debug mode."""
        DefaultLogger(verbose=True).debug("B", "secret")
        assert capsys.readouterr().out == ""

    def test_warning_and_error(self, capsys):
        """Test warning and error formatting."""
        logger = DefaultLogger()
        logger.warning("SIGN", "careful")
        logger.error("SIGN", "broken")

        out = capsys.readouterr().out
        assert "[SIGN] [WARNING] careful" in out
        assert "[SIGN] [ERROR] broken" in out


class TestLogFileSink:
    """Tests for the JSON-lines log file."""

    def test_records_written_as_json(self, tmp_path):
        """Test that every record lands in today's file as JSON."""
        sink = LogFileSink(tmp_path / "logs")
        logger = DefaultLogger(sink=sink)
        logger.verbose("PACK", "Running MakeAppx", {"artifact": "app.msix"})
        logger.debug("TOOLS", "probe")
        sink.close()

        expected = tmp_path / "logs" / f"appxkit-{datetime.now().strftime('%Y%m%d')}.log"
        assert sink.current_path == expected
        lines = expected.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2

        first = json.loads(lines[0])
        assert first["level"] == "INFO"
        assert first["prefix"] == "PACK"
        assert first["message"] == "Running MakeAppx"
        assert first["context"] == {"artifact": "app.msix"}
        assert "timestamp" in first

        second = json.loads(lines[1])
        assert second["level"] == "DEBUG"
        assert "context" not in second

    def test_file_gets_records_hidden_from_console(self, tmp_path, capsys):
        """Test that file logging ignores console verbosity."""
        sink = LogFileSink(tmp_path)
        DefaultLogger(sink=sink).verbose("X", "quiet on console")
        sink.close()

        assert capsys.readouterr().out == ""
        assert "quiet on console" in sink.current_path.read_text(encoding="utf-8")

    def test_appends_across_sinks(self, tmp_path):
        """Test that a second sink appends to the same file."""
        for message in ("one", "two"):
            sink = LogFileSink(tmp_path)
            sink.write(logging.INFO, "P", message)
            sink.close()

        lines = sink.current_path.read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["message"] for line in lines] == ["one", "two"]

    def test_rotation(self, tmp_path):
        """Test that files rotate once max_bytes is exceeded."""
        sink = LogFileSink(tmp_path, max_bytes=200, backup_count=2)
        for i in range(20):
            sink.write(logging.INFO, "ROT", f"message number {i}")
        sink.close()

        rotated = sorted(p.name for p in tmp_path.iterdir())
        base = sink.current_path.name
        assert base in rotated
        assert f"{base}.1" in rotated
        assert f"{base}.3" not in rotated


class TestGlobalLogger:
    """Tests for global logger configuration."""

    def test_default_is_silent(self):
        """Test that the global logger starts silent."""
        assert isinstance(get_global_logger(), SilentLogger)

    def test_set_global_logger(self):
        """Test replacing the global logger."""
        logger = get_logger(verbose=True)
        set_global_logger(logger)
        assert get_global_logger() is logger
