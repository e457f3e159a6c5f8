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

"""Platform tool discovery for AppxKit.

Finds the Windows SDK executables (MakeAppx.exe, SignTool.exe) and
PowerShell. Probe order for each tool:

1. Explicit override path from configuration (``tools.overrides.<id>``)
2. Windows SDK roots: the root published in the registry
   (``HKLM\\SOFTWARE\\Microsoft\\Windows Kits\\Installed Roots\\KitsRoot10``)
   first, then the configured well-known roots. Inside each root the newest
   ``bin/<version>/<arch>/`` directory wins, host architecture first.
3. The process PATH

The first match wins and is cached by the locator instance until a refresh
is requested. A miss returns None; callers that cannot continue without the
tool use require(), which raises ToolNotFoundError with remediation text.

Example:
    ```python
    from appxkit.tools import ToolLocator

    locator = ToolLocator(sdk_roots=["C:/Program Files (x86)/Windows Kits/10"])
    location = locator.locate("makeappx")
    if location is None:
        print("MakeAppx.exe is not installed")
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import platform
import shutil
import sys
from typing import Any, Callable, Iterable, Mapping

from appxkit.exceptions import ToolNotFoundError
from appxkit.versioning import PackageVersion

TOOL_EXECUTABLES: dict[str, tuple[str, ...]] = {
    "makeappx": ("makeappx.exe",),
    "signtool": ("signtool.exe",),
    "powershell": ("powershell.exe", "pwsh.exe", "pwsh", "powershell"),
}

# Tools shipped with the Windows SDK (probed under SDK roots)
SDK_TOOLS = frozenset({"makeappx", "signtool"})

REMEDIATION: dict[str, str] = {
    "makeappx": (
        "MakeAppx.exe ships with the Windows 10/11 SDK. Install the SDK "
        "(https://developer.microsoft.com/windows/downloads/windows-sdk/) or set "
        "tools.overrides.makeappx in appxkit.yaml."
    ),
    "signtool": (
        "SignTool.exe ships with the Windows 10/11 SDK. Install the SDK "
        "(https://developer.microsoft.com/windows/downloads/windows-sdk/) or set "
        "tools.overrides.signtool in appxkit.yaml."
    ),
    "powershell": (
        "Windows PowerShell (powershell.exe) or PowerShell 7 (pwsh) must be on "
        "PATH. The Appx and PKI modules are only available on Windows."
    ),
}

_KITS_KEY = r"SOFTWARE\Microsoft\Windows Kits\Installed Roots"


@dataclass(frozen=True)
class ToolLocation:
    """A located external tool.

    Attributes:
        tool_id: Tool identifier (e.g., "makeappx").
        path: Absolute path to the executable.
        method: How it was found: "override", "registry", "well_known" or "path".
    """

    tool_id: str
    path: Path
    method: str


def read_kits_root() -> Path | None:
    """Read the Windows 10 SDK root from the registry (Windows only)."""
    if sys.platform != "win32":
        return None
    import winreg

    try:
        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, _KITS_KEY) as key:
            root, _ = winreg.QueryValueEx(key, "KitsRoot10")
    except OSError:
        return None
    return Path(root) if root else None


def host_architecture_dirs() -> tuple[str, ...]:
    """SDK bin subdirectories runnable on this host, preferred first."""
    machine = platform.machine().lower()
    if machine in ("arm64", "aarch64"):
        return ("arm64", "x64", "x86")
    if machine in ("amd64", "x86_64"):
        return ("x64", "x86")
    return ("x86",)


def _version_dirs(bin_dir: Path) -> list[Path]:
    """Versioned SDK bin directories, newest first."""
    versions: list[tuple[PackageVersion, Path]] = []
    if not bin_dir.is_dir():
        return []
    for child in bin_dir.iterdir():
        if not child.is_dir():
            continue
        try:
            versions.append((PackageVersion.parse(child.name), child))
        except ValueError:
            continue
    versions.sort(key=lambda item: item[0], reverse=True)
    return [path for _, path in versions]


class ToolLocator:
    """Locates and caches external tool paths.

    Attributes:
        overrides: Tool id to explicit executable path.
        sdk_roots: Well-known Windows SDK root directories.
    """

    def __init__(
        self,
        overrides: Mapping[str, str | Path] | None = None,
        sdk_roots: Iterable[str | Path] = (),
        *,
        which: Callable[[str], str | None] = shutil.which,
        registry_root: Callable[[], Path | None] = read_kits_root,
        architectures: Iterable[str] | None = None,
    ) -> None:
        self.overrides = {k: Path(v) for k, v in (overrides or {}).items() if v}
        self.sdk_roots = [Path(r) for r in sdk_roots]
        self._which = which
        self._registry_root = registry_root
        self._architectures = tuple(architectures or host_architecture_dirs())
        self._cache: dict[str, ToolLocation | None] = {}

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ToolLocator:
        """Build a locator from the ``tools`` section of a merged config."""
        tools = config.get("tools", {})
        return cls(
            overrides=tools.get("overrides") or {},
            sdk_roots=tools.get("sdk_roots") or [],
        )

    def locate(self, tool_id: str, refresh: bool = False) -> ToolLocation | None:
        """Find a tool, using the cached result unless refresh is True.

        Args:
            tool_id: One of TOOL_EXECUTABLES.
            refresh: Discard the cached result and probe again.

        Returns:
            The tool location, or None if it is not installed.

        Raises:
            KeyError: If tool_id is unknown.
        """
        if tool_id not in TOOL_EXECUTABLES:
            raise KeyError(f"Unknown tool: {tool_id!r}")
        if not refresh and tool_id in self._cache:
            return self._cache[tool_id]

        location = self._probe(tool_id)
        self._cache[tool_id] = location
        return location

    def require(self, tool_id: str) -> ToolLocation:
        """Find a tool or raise ToolNotFoundError with remediation text."""
        location = self.locate(tool_id)
        if location is None:
            raise ToolNotFoundError(tool_id, REMEDIATION.get(tool_id, ""))
        return location

    def _probe(self, tool_id: str) -> ToolLocation | None:
        from appxkit.logging import get_global_logger

        logger = get_global_logger()

        override = self.overrides.get(tool_id)
        if override is not None:
            if override.is_file():
                logger.verbose("TOOLS", f"{tool_id}: using override {override}")
                return ToolLocation(tool_id, override, "override")
            logger.warning(
                "TOOLS", f"{tool_id}: configured override not found: {override}"
            )

        if tool_id in SDK_TOOLS:
            roots: list[tuple[Path, str]] = []
            registry_root = self._registry_root()
            if registry_root is not None:
                roots.append((registry_root, "registry"))
            roots.extend((root, "well_known") for root in self.sdk_roots)
            for root, method in roots:
                logger.debug("TOOLS", f"{tool_id}: probing SDK root {root}")
                found = self._probe_sdk_root(root, tool_id)
                if found is not None:
                    logger.verbose("TOOLS", f"{tool_id}: found {found} ({method})")
                    return ToolLocation(tool_id, found, method)

        for exe in TOOL_EXECUTABLES[tool_id]:
            hit = self._which(exe)
            if hit:
                logger.verbose("TOOLS", f"{tool_id}: found on PATH: {hit}")
                return ToolLocation(tool_id, Path(hit), "path")

        logger.verbose("TOOLS", f"{tool_id}: not found")
        return None

    def _probe_sdk_root(self, root: Path, tool_id: str) -> Path | None:
        bin_dir = root / "bin"
        candidates_dirs = _version_dirs(bin_dir) + [bin_dir]
        for base in candidates_dirs:
            for arch in self._architectures:
                for exe in TOOL_EXECUTABLES[tool_id]:
                    candidate = base / arch / exe
                    if candidate.is_file():
                        return candidate
        if tool_id == "signtool":
            candidate = root / "App Certification Kit" / "signtool.exe"
            if candidate.is_file():
                return candidate
        return None
