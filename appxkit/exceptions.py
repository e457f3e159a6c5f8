# Copyright 2025 Roger Cibrian
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Exception hierarchy for AppxKit.

This module defines a custom exception hierarchy that allows library users
to distinguish between different types of errors. All exceptions inherit from
AppxKitError, allowing users to catch all AppxKit errors with a single except
clause if needed.

It also carries the HRESULT lookup table used to classify deployment
failures reported by the Appx PowerShell module. The table is data: adding a
code means adding a row, never another branch.

Example:
    Catching specific error types:
        ```python
        from appxkit.build import backup_package
        from appxkit.exceptions import ExternalProcessError, ValidationError

        try:
            result = backup_package(Path("C:/Apps/MyApp"), Path("out/MyApp.msix"))
        except ValidationError as e:
            print(f"Invalid input: {e}")
        except ExternalProcessError as e:
            print(f"Tool failed with exit code {e.returncode}")
        ```

    Catching all AppxKit errors:
        ```python
        from appxkit.exceptions import AppxKitError

        try:
            result = backup_package(Path("C:/Apps/MyApp"), Path("out/MyApp.msix"))
        except AppxKitError as e:
            print(f"AppxKit error: {e}")
        ```
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import Sequence

__all__ = [
    "AppxKitError",
    "ValidationError",
    "ConfigError",
    "ToolNotFoundError",
    "ExternalProcessError",
    "ParseError",
    "StateConflictError",
    "CertificateError",
    "NetworkError",
    "ErrorCategory",
    "HResultInfo",
    "HRESULT_TABLE",
    "classify_hresult",
]


class AppxKitError(Exception):
    """Base exception for all AppxKit errors.

    All AppxKit-specific exceptions inherit from this class, allowing users
    to catch all AppxKit errors with a single except clause if needed.
    """

    pass


class ValidationError(AppxKitError):
    """Raised for invalid caller input.

    This exception is raised when there are problems with:

    - Paths (traversal segments, reserved device names, invalid characters)
    - Existing output files without an overwrite flag
    - Invalid parameter values or combinations (key length, validity years,
        certificate store names, thumbprints)

    Validation errors are surfaced immediately and never retried.
    """

    pass


class ConfigError(AppxKitError):
    """Raised for configuration-related errors.

    This exception is raised when there are problems with:

    - YAML parse errors in configuration files
    - Configuration files that are missing or not a mapping
    - Out-of-range values (timeouts, key lengths, depth caps)
    """

    pass


class ToolNotFoundError(AppxKitError):
    """Raised when a required external tool cannot be located.

    Attributes:
        tool_id: Identifier of the missing tool (e.g., "makeappx").
        remediation: Human-readable instructions for installing the tool.
    """

    def __init__(self, tool_id: str, remediation: str = "") -> None:
        self.tool_id = tool_id
        self.remediation = remediation
        message = f"Required tool not found: {tool_id}"
        if remediation:
            message += f"\n{remediation}"
        super().__init__(message)


class ExternalProcessError(AppxKitError):
    """Raised when an external tool ran but did not succeed.

    The message always includes the captured output so the operator can
    diagnose the failure without re-running with extra verbosity.

    Attributes:
        command: The command line that was executed.
        returncode: Process exit code (None when the process timed out).
        stdout: Captured standard output.
        stderr: Captured standard error.
        timed_out: True if the process was killed after its timeout.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out
        self.summary = message
        super().__init__(self._format(message))

    def _format(self, message: str) -> str:
        lines = [message]
        if self.stdout.strip():
            lines.append("--- stdout ---")
            lines.append(self.stdout.strip())
        if self.stderr.strip():
            lines.append("--- stderr ---")
            lines.append(self.stderr.strip())
        return "\n".join(lines)


class ParseError(AppxKitError):
    """Raised for malformed manifests, JSON documents, or tool output."""

    pass


class StateConflictError(AppxKitError):
    """Raised when the system is in a state that conflicts with the request.

    Example: the package is already installed and ``force`` was not given.
    This is a reported terminal state rather than a failure; orchestrators
    convert it into a result instead of letting it escape.
    """

    pass


class CertificateError(AppxKitError):
    """Raised when certificate creation, export, or store access fails."""

    pass


class NetworkError(AppxKitError):
    """Raised when a network preflight (e.g., timestamp server) fails."""

    pass


# -------------------------------
# HRESULT classification
# -------------------------------


class ErrorCategory(str, Enum):
    """Broad cause of a deployment failure."""

    PACKAGE = "package"
    DEPENDENCY = "dependency"
    TRUST = "trust"
    SIGNATURE = "signature"
    CONFLICT = "conflict"
    POLICY = "policy"
    PERMISSION = "permission"
    ENVIRONMENT = "environment"
    COMPATIBILITY = "compatibility"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class HResultInfo:
    """A known HRESULT with its category and remediation hint.

    Attributes:
        code: The HRESULT as an unsigned 32-bit integer.
        symbol: Symbolic name from the Windows SDK headers.
        category: Failure category.
        hint: Suggested remediation shown to the operator.
    """

    code: int
    symbol: str
    category: ErrorCategory
    hint: str


def _row(code: int, symbol: str, category: ErrorCategory, hint: str) -> HResultInfo:
    return HResultInfo(code=code, symbol=symbol, category=category, hint=hint)


HRESULT_TABLE: dict[int, HResultInfo] = {
    row.code: row
    for row in (
        _row(
            0x80073CF0,
            "ERROR_INSTALL_OPEN_PACKAGE_FAILED",
            ErrorCategory.PACKAGE,
            "The package file could not be opened. Check that it is a valid, "
            "complete .appx/.msix file.",
        ),
        _row(
            0x80073CF1,
            "ERROR_INSTALL_PACKAGE_NOT_FOUND",
            ErrorCategory.PACKAGE,
            "The package could not be found at the given location.",
        ),
        _row(
            0x80073CF2,
            "ERROR_INSTALL_INVALID_PACKAGE",
            ErrorCategory.PACKAGE,
            "The package data is invalid. Run 'appxkit validate-integrity'.",
        ),
        _row(
            0x80073CF3,
            "ERROR_INSTALL_RESOLVE_DEPENDENCY_FAILED",
            ErrorCategory.DEPENDENCY,
            "A required framework package is missing. Run "
            "'appxkit get-info --resolve' and install the missing dependencies.",
        ),
        _row(
            0x80073CF4,
            "ERROR_INSTALL_OUT_OF_DISK_SPACE",
            ErrorCategory.ENVIRONMENT,
            "Free disk space on the system drive and retry.",
        ),
        _row(
            0x80073CF6,
            "ERROR_INSTALL_REGISTRATION_FAILURE",
            ErrorCategory.ENVIRONMENT,
            "Package registration failed. Check the AppXDeployment-Server event log.",
        ),
        _row(
            0x80073CF9,
            "ERROR_INSTALL_FAILED",
            ErrorCategory.UNKNOWN,
            "Installation failed. Check the AppXDeployment-Server event log.",
        ),
        _row(
            0x80073CFB,
            "ERROR_PACKAGE_ALREADY_EXISTS",
            ErrorCategory.CONFLICT,
            "A package with the same identity but different contents is "
            "installed. Remove it first or bump the package version.",
        ),
        _row(
            0x80073CFD,
            "ERROR_INSTALL_PREREQUISITE_FAILED",
            ErrorCategory.COMPATIBILITY,
            "The package is not applicable to this device. Run "
            "'appxkit test-compatibility'.",
        ),
        _row(
            0x80073CFF,
            "ERROR_INSTALL_POLICY_FAILURE",
            ErrorCategory.POLICY,
            "Sideloading is not allowed by policy. Enable developer mode or "
            "sideloading in Windows settings.",
        ),
        _row(
            0x80073D02,
            "ERROR_PACKAGES_IN_USE",
            ErrorCategory.CONFLICT,
            "The application is running. Close it and retry.",
        ),
        _row(
            0x80073D06,
            "ERROR_INSTALL_PACKAGE_DOWNGRADE",
            ErrorCategory.CONFLICT,
            "A higher version of this package is already installed.",
        ),
        _row(
            0x80070005,
            "E_ACCESSDENIED",
            ErrorCategory.PERMISSION,
            "Access denied. Retry from an elevated prompt.",
        ),
        _row(
            0x8007000B,
            "ERROR_BAD_FORMAT",
            ErrorCategory.PACKAGE,
            "The package format is invalid.",
        ),
        _row(
            0x80080204,
            "APPX_E_INVALID_MANIFEST",
            ErrorCategory.PACKAGE,
            "AppxManifest.xml is invalid. Run 'appxkit get-info' to inspect it.",
        ),
        _row(
            0x80080206,
            "APPX_E_INVALID_BLOCKMAP",
            ErrorCategory.PACKAGE,
            "AppxBlockMap.xml is invalid. Repack the package.",
        ),
        _row(
            0x800B0100,
            "TRUST_E_NOSIGNATURE",
            ErrorCategory.SIGNATURE,
            "The package is not signed. Sign it with 'appxkit backup --sign'.",
        ),
        _row(
            0x800B0109,
            "CERT_E_UNTRUSTEDROOT",
            ErrorCategory.TRUST,
            "The signing certificate is not trusted. Install the companion "
            ".cer with 'appxkit install --certificate'.",
        ),
        _row(
            0x800B010A,
            "CERT_E_CHAINING",
            ErrorCategory.TRUST,
            "The certificate chain could not be built to a trusted root.",
        ),
    )
}

_HRESULT_TOKEN = re.compile(r"0x([0-9a-fA-F]{8})")


def classify_hresult(source: int | str) -> HResultInfo | None:
    """Look up a known HRESULT from a code or from tool output.

    Args:
        source: An HRESULT integer (signed or unsigned), or text containing
            one or more ``0xXXXXXXXX`` tokens (e.g., Add-AppxPackage stderr).

    Returns:
        The first recognised HResultInfo, or None if nothing matches.

    Example:
        ```python
        info = classify_hresult("Deployment failed with HRESULT: 0x80073CF3")
        print(info.category)  # ErrorCategory.DEPENDENCY
        ```
    """
    if isinstance(source, int):
        return HRESULT_TABLE.get(source & 0xFFFFFFFF)

    for token in _HRESULT_TOKEN.findall(source):
        info = HRESULT_TABLE.get(int(token, 16))
        if info is not None:
            return info
    return None
