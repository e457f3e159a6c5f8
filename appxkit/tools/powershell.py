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

"""PowerShell invocation for AppxKit.

Certificate (PKI module) and package deployment (Appx module) operations are
delegated to PowerShell. Scripts are passed with ``-EncodedCommand`` (base64
of UTF-16LE), so no script text is ever subject to command-line quoting.
Values interpolated into scripts go through ps_quote(); secrets are passed
through environment variables and read as ``$env:NAME`` inside the script.

Example:
    ```python
    from appxkit.tools import PowerShellRunner, ToolLocator, ps_quote

    runner = PowerShellRunner(ToolLocator())
    packages = runner.run_json(
        f"Get-AppxPackage -Name {ps_quote('Microsoft.VCLibs*')} | ConvertTo-Json"
    )
    ```
"""

from __future__ import annotations

import base64
import json
import os
from typing import Any, Mapping

from appxkit.exceptions import ParseError
from appxkit.tools.locator import ToolLocator
from appxkit.tools.process import ProcessResult, run_process

# Prepended to every script: fail fast, no progress bars, UTF-8 output
PREAMBLE = (
    "$ErrorActionPreference = 'Stop'\n"
    "$ProgressPreference = 'SilentlyContinue'\n"
    "[Console]::OutputEncoding = [System.Text.Encoding]::UTF8\n"
)


def ps_quote(value: object) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def encode_command(script: str) -> str:
    """Encode a script for ``powershell.exe -EncodedCommand``."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


class PowerShellRunner:
    """Runs PowerShell scripts through the located PowerShell executable.

    Attributes:
        locator: Tool locator used to find powershell.exe / pwsh.
        timeout: Default timeout in seconds.
    """

    def __init__(self, locator: ToolLocator, timeout: float = 120) -> None:
        self.locator = locator
        self.timeout = timeout

    def build_command(self, script: str) -> list[str]:
        """Build the full command line for a script."""
        exe = self.locator.require("powershell").path
        return [
            str(exe),
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-EncodedCommand",
            encode_command(PREAMBLE + script),
        ]

    def run(
        self,
        script: str,
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> ProcessResult:
        """Run a script and return its process result.

        Args:
            script: PowerShell source.
            timeout: Seconds before the process tree is killed (default:
                the runner's timeout).
            env: Extra environment variables for the child, merged over the
                current environment.
            check: If True, a non-zero exit raises ExternalProcessError.

        Raises:
            ToolNotFoundError: If PowerShell is not available.
            ExternalProcessError: On failure or timeout.
        """
        child_env = None
        if env:
            child_env = {**os.environ, **env}
        return run_process(
            self.build_command(script),
            timeout=timeout if timeout is not None else self.timeout,
            env=child_env,
            check=check,
            tool_name="PowerShell",
            encoding="utf-8",
        )

    def run_json(
        self,
        script: str,
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> Any:
        """Run a script whose output is a ConvertTo-Json document.

        Returns:
            The decoded JSON value, or None if the script printed nothing.

        Raises:
            ParseError: If the output is not valid JSON.
        """
        result = self.run(script, timeout=timeout, env=env)
        text = result.stdout.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as err:
            raise ParseError(
                f"PowerShell returned invalid JSON: {err}\n{text[:500]}"
            ) from err
