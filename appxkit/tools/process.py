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

"""External process execution for AppxKit.

Every external tool (MakeAppx.exe, SignTool.exe, PowerShell, icacls) runs
through run_process, which enforces the rules that keep tool invocation
predictable:

- stdout and stderr are drained concurrently while waiting
  (``Popen.communicate`` uses reader threads on Windows and ``select`` on
  POSIX), so a tool blocked writing to one stream can never deadlock
  against a parent blocked reading the other
- every call has a timeout; on expiry the whole process tree is killed
  (children found with psutil are killed first, then the process itself)
- success is decided by exit code only, never by matching output text

Example:
    Run a tool and raise on failure:
        ```python
        from appxkit.tools.process import run_process

        result = run_process(["signtool.exe", "verify", "/pa", "app.msix"], timeout=60)
        print(result.stdout)
        ```
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import subprocess
import sys
import time
from typing import Mapping, Sequence

import psutil

from appxkit.exceptions import ExternalProcessError, ToolNotFoundError

# Seconds to wait for a killed process tree to release its pipes
_KILL_GRACE = 10


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of one external process invocation.

    Attributes:
        args: The command line that ran.
        returncode: Exit code.
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration: Wall-clock seconds.
    """

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    duration: float

    @property
    def succeeded(self) -> bool:
        """True if the process exited with code 0."""
        return self.returncode == 0


def kill_process_tree(proc: subprocess.Popen) -> None:
    """Forcefully terminate a process and all of its children.

    Children are found with psutil and killed first, then the process
    itself. Processes that already exited are skipped; any other failure is
    logged and the remaining processes are still killed.

    Args:
        proc: A process started by run_process.
    """
    from appxkit.logging import get_global_logger

    logger = get_global_logger()
    if proc.poll() is not None:
        return
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        logger.debug("PROCESS", f"Process {proc.pid} exited before it was killed")
        return
    except psutil.Error as err:
        logger.warning("PROCESS", f"Could not list child processes of {proc.pid}: {err}")
        children = []

    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            logger.debug("PROCESS", f"Child process {child.pid} already exited")
        except psutil.Error as err:
            logger.warning("PROCESS", f"Could not kill child process {child.pid}: {err}")
    proc.kill()

    _, alive = psutil.wait_procs(children, timeout=_KILL_GRACE)
    for child in alive:
        logger.warning("PROCESS", f"Child process {child.pid} still running after kill")


def run_process(
    args: Sequence[str | Path],
    *,
    timeout: float,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    tool_name: str | None = None,
    encoding: str | None = None,
) -> ProcessResult:
    """Run an external process to completion with a timeout.

    Args:
        args: Command and arguments. Never passed through a shell.
        timeout: Seconds before the process tree is killed.
        cwd: Working directory.
        env: Full environment for the child (default: inherit).
        check: If True, a non-zero exit code raises ExternalProcessError.
        tool_name: Display name for messages (default: executable name).
        encoding: Output encoding (default: locale encoding). Undecodable
            bytes are replaced rather than raising.

    Returns:
        The process result.

    Raises:
        ToolNotFoundError: If the executable does not exist.
        ExternalProcessError: On timeout, on failure to start, or (with
            check=True) on a non-zero exit code. The error carries the
            captured output.
    """
    from appxkit.logging import get_global_logger

    logger = get_global_logger()
    cmd = [str(a) for a in args]
    name = tool_name or Path(cmd[0]).name

    popen_kwargs: dict = {}
    if sys.platform == "win32":
        popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        popen_kwargs["start_new_session"] = True

    logger.debug("PROCESS", f"Running: {' '.join(cmd)}")
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding=encoding,
            errors="replace",
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            **popen_kwargs,
        )
    except FileNotFoundError as err:
        raise ToolNotFoundError(name, f"Executable not found: {cmd[0]}") from err
    except OSError as err:
        raise ExternalProcessError(f"Failed to start {name}: {err}", command=cmd) from err

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        kill_process_tree(proc)
        try:
            stdout, stderr = proc.communicate(timeout=_KILL_GRACE)
        except subprocess.TimeoutExpired:
            stdout, stderr = "", ""
        logger.debug("PROCESS", f"{name} killed after {timeout}s")
        raise ExternalProcessError(
            f"{name} timed out after {timeout}s and was terminated",
            command=cmd,
            stdout=stdout or "",
            stderr=stderr or "",
            timed_out=True,
        ) from None

    duration = time.monotonic() - start
    result = ProcessResult(
        args=tuple(cmd),
        returncode=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration=duration,
    )
    logger.debug(
        "PROCESS",
        f"{name} exited with code {result.returncode} in {duration:.1f}s",
        {"command": cmd, "returncode": result.returncode},
    )

    if check and not result.succeeded:
        raise ExternalProcessError(
            f"{name} failed (exit code {result.returncode})",
            command=cmd,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result
