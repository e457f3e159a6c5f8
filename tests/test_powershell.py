"""
Tests for appxkit.tools.powershell module.

Tests PowerShell invocation including:
- Literal quoting and command encoding
- Command line construction
- Environment passing for secrets
- JSON output decoding
"""

from __future__ import annotations

import base64
from unittest.mock import patch

import pytest

from appxkit.exceptions import ParseError, ToolNotFoundError
from appxkit.tools import PowerShellRunner, ToolLocator, encode_command, ps_quote
from appxkit.tools.powershell import PREAMBLE
from appxkit.tools.process import ProcessResult

pytestmark = pytest.mark.unit


def ok(stdout: str = "") -> ProcessResult:
    return ProcessResult(args=("pwsh",), returncode=0, stdout=stdout, stderr="", duration=0.1)


@pytest.fixture
def runner(tmp_path) -> PowerShellRunner:
    exe = tmp_path / "pwsh"
    exe.write_bytes(b"")
    locator = ToolLocator(
        overrides={"powershell": exe}, registry_root=lambda: None, which=lambda _: None
    )
    return PowerShellRunner(locator, timeout=45)


class TestQuoting:
    """Tests for ps_quote and encode_command."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("plain", "'plain'"),
            ("O'Brien", "'O''Brien'"),
            ("$env:SECRET; Remove-Item", "'$env:SECRET; Remove-Item'"),
            (4096, "'4096'"),
        ],
    )
    def test_ps_quote(self, value, expected):
        """Test that values become inert single-quoted literals."""
        assert ps_quote(value) == expected

    def test_encode_command_is_utf16le_base64(self):
        """Test the -EncodedCommand encoding."""
        encoded = encode_command("Write-Output 'é'")
        assert base64.b64decode(encoded).decode("utf-16-le") == "Write-Output 'é'"


class TestPowerShellRunner:
    """Tests for PowerShellRunner."""

    def test_build_command(self, runner, tmp_path):
        """Test the command line shape and the script preamble."""
        cmd = runner.build_command("Get-Date")

        assert cmd[0] == str(tmp_path / "pwsh")
        assert cmd[1:6] == ["-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-EncodedCommand"]
        script = base64.b64decode(cmd[6]).decode("utf-16-le")
        assert script == PREAMBLE + "Get-Date"

    def test_missing_powershell(self):
        """Test that a missing PowerShell raises ToolNotFoundError."""
        runner = PowerShellRunner(ToolLocator(registry_root=lambda: None, which=lambda _: None))
        with pytest.raises(ToolNotFoundError):
            runner.run("Get-Date")

    def test_run_uses_default_timeout(self, runner):
        """Test that the runner timeout applies when none is given."""
        with patch("appxkit.tools.powershell.run_process", return_value=ok()) as mock_run:
            runner.run("Get-Date")

        kwargs = mock_run.call_args.kwargs
        assert kwargs["timeout"] == 45
        assert kwargs["env"] is None
        assert kwargs["encoding"] == "utf-8"

    def test_env_merged_over_current(self, runner, monkeypatch):
        """Test that secret variables are added to the inherited environment."""
        monkeypatch.setenv("APPXKIT_EXISTING", "kept")
        with patch("appxkit.tools.powershell.run_process", return_value=ok()) as mock_run:
            runner.run("Get-Date", env={"APPXKIT_PFX_PASSWORD": "pw"}, timeout=5)

        kwargs = mock_run.call_args.kwargs
        assert kwargs["timeout"] == 5
        assert kwargs["env"]["APPXKIT_PFX_PASSWORD"] == "pw"
        assert kwargs["env"]["APPXKIT_EXISTING"] == "kept"
        # The secret never appears on the command line
        assert all("pw" != part for part in mock_run.call_args.args[0])

    def test_run_json(self, runner):
        """Test decoding of JSON output."""
        with patch(
            "appxkit.tools.powershell.run_process",
            return_value=ok('{"Thumbprint": "ABC"}\n'),
        ):
            assert runner.run_json("x") == {"Thumbprint": "ABC"}

    def test_run_json_empty_output(self, runner):
        """Test that empty output decodes to None."""
        with patch("appxkit.tools.powershell.run_process", return_value=ok("  \n")):
            assert runner.run_json("x") is None

    def test_run_json_invalid(self, runner):
        """Test that invalid JSON raises ParseError."""
        with patch("appxkit.tools.powershell.run_process", return_value=ok("WARNING: nope")):
            with pytest.raises(ParseError, match="invalid JSON"):
                runner.run_json("x")
