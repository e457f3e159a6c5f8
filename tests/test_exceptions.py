"""
Tests for appxkit.exceptions module.

Tests the exception hierarchy and HRESULT classification including:
- Message formatting for tool and process errors
- HRESULT lookup from integers and tool output
- Table consistency
"""

from __future__ import annotations

import pytest

from appxkit.exceptions import (
    HRESULT_TABLE,
    AppxKitError,
    ErrorCategory,
    ExternalProcessError,
    NetworkError,
    StateConflictError,
    ToolNotFoundError,
    ValidationError,
    classify_hresult,
)

pytestmark = pytest.mark.unit


class TestExceptionMessages:
    """Test exception construction and messages."""

    def test_hierarchy(self):
        """Test all errors derive from AppxKitError."""
        for exc in (ValidationError, StateConflictError, NetworkError):
            assert issubclass(exc, AppxKitError)

    def test_tool_not_found_includes_remediation(self):
        """Test ToolNotFoundError lists the tool and remediation."""
        err = ToolNotFoundError("makeappx", "Install the Windows SDK.")

        assert err.tool_id == "makeappx"
        assert "Required tool not found: makeappx" in str(err)
        assert "Install the Windows SDK." in str(err)

    def test_tool_not_found_without_remediation(self):
        """Test ToolNotFoundError message without remediation."""
        assert str(ToolNotFoundError("signtool")) == "Required tool not found: signtool"

    def test_process_error_includes_output(self):
        """Test ExternalProcessError appends captured stdout and stderr."""
        err = ExternalProcessError(
            "SignTool failed (exit 1)",
            command=["signtool.exe", "sign"],
            returncode=1,
            stdout="Number of errors: 1",
            stderr="SignTool Error: No certificates were found",
        )

        message = str(err)
        assert message.startswith("SignTool failed (exit 1)")
        assert "--- stdout ---\nNumber of errors: 1" in message
        assert "--- stderr ---\nSignTool Error" in message
        assert err.summary == "SignTool failed (exit 1)"
        assert err.command == ("signtool.exe", "sign")
        assert err.returncode == 1
        assert err.timed_out is False

    def test_process_error_skips_blank_output(self):
        """Test blank output sections are omitted."""
        err = ExternalProcessError("timed out", timed_out=True, stdout="  \n")

        assert str(err) == "timed out"
        assert err.returncode is None


class TestClassifyHresult:
    """Test HRESULT classification."""

    def test_unsigned_int(self):
        """Test lookup by unsigned code."""
        info = classify_hresult(0x80073CF3)

        assert info is not None
        assert info.symbol == "ERROR_INSTALL_RESOLVE_DEPENDENCY_FAILED"
        assert info.category is ErrorCategory.DEPENDENCY

    def test_signed_int(self):
        """Test negative (signed) HRESULTs are masked to 32 bits."""
        info = classify_hresult(0x80073CFF - 0x100000000)

        assert info is not None
        assert info.category is ErrorCategory.POLICY

    def test_text_token(self):
        """Test the first known token in tool output is recognised."""
        text = (
            "Add-AppxPackage : Deployment failed with HRESULT: 0x80073CF9, "
            "Install failed.\nerror 0x800B0109: untrusted root"
        )

        info = classify_hresult(text)

        assert info is not None
        assert info.code == 0x80073CF9

    def test_unknown_tokens_are_skipped(self):
        """Test unknown tokens do not hide a later known one."""
        info = classify_hresult("0x12345678 then 0x800b0109")

        assert info is not None
        assert info.category is ErrorCategory.TRUST

    @pytest.mark.parametrize("source", [0, 0x12345678, "no code here", ""])
    def test_no_match(self, source):
        """Test unrecognised input returns None."""
        assert classify_hresult(source) is None

    def test_table_keys_match_codes(self):
        """Test every table row is keyed by its own code and has a hint."""
        for code, info in HRESULT_TABLE.items():
            assert code == info.code
            assert info.hint
            assert info.symbol.isupper()
