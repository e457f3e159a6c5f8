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

"""Installed-package registry access for AppxKit.

The registry is the seam between AppxKit and the operating system's package
database. PowerShellPackageRegistry queries it through the Appx PowerShell
module (Get-AppxPackage / Add-AppxPackage). Dependency resolution never talks
to the registry directly; it works on an immutable snapshot, which keeps the
resolver a pure function and lets tests substitute a fake registry.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Protocol

from appxkit.exceptions import ParseError
from appxkit.manifest.reader import PackageDependency
from appxkit.tools.powershell import PowerShellRunner, ps_quote

# Projection shared by every Get-AppxPackage query
_PROJECTION = r"""
$packages = @($source | ForEach-Object {
    [pscustomobject]@{
        Name            = $_.Name
        Publisher       = $_.Publisher
        Version         = $_.Version.ToString()
        Architecture    = $_.Architecture.ToString()
        IsFramework     = [bool]$_.IsFramework
        InstallLocation = $_.InstallLocation
        PackageFullName = $_.PackageFullName
        Dependencies    = @($_.Dependencies | ForEach-Object {
            [pscustomobject]@{
                Name      = $_.Name
                Publisher = $_.Publisher
                Version   = $_.Version.ToString()
            }
        })
    }
})
ConvertTo-Json -InputObject $packages -Depth 4 -Compress
"""


@dataclass(frozen=True)
class InstalledPackage:
    """A package currently registered with the operating system.

    Attributes:
        name: Package identity name.
        publisher: Publisher distinguished name.
        version: Installed version.
        architecture: Processor architecture (lowercase).
        is_framework: True for framework packages.
        dependencies: Packages this one depends on.
        install_location: Installation directory, if reported.
        full_name: Package full name, if reported.
    """

    name: str
    publisher: str
    version: str
    architecture: str = "neutral"
    is_framework: bool = False
    dependencies: tuple[PackageDependency, ...] = ()
    install_location: Path | None = None
    full_name: str | None = None


class PackageRegistry(Protocol):
    """Protocol for installed-package databases."""

    def snapshot(self) -> tuple[InstalledPackage, ...]:
        """Return every installed package at this moment."""
        ...

    def find(self, name: str) -> tuple[InstalledPackage, ...]:
        """Return installed packages with the given identity name."""
        ...

    def add_package(
        self,
        path: Path,
        *,
        dependency_paths: Iterable[Path] = (),
        force: bool = False,
        allow_unsigned: bool = False,
    ) -> None:
        """Install or update a package from an artifact."""
        ...


def _as_list(data: Any) -> list[dict[str, Any]]:
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    raise ParseError(f"Unexpected package query output: {type(data).__name__}")


def parse_package_records(data: Any) -> tuple[InstalledPackage, ...]:
    """Convert Get-AppxPackage JSON output into InstalledPackage records.

    Args:
        data: Decoded JSON (a list of objects, a single object, or None).

    Raises:
        ParseError: If a record lacks Name or Version.
    """
    packages: list[InstalledPackage] = []
    for record in _as_list(data):
        name = record.get("Name")
        version = record.get("Version")
        if not name or not version:
            raise ParseError(f"Package record missing Name or Version: {record}")
        deps = tuple(
            PackageDependency(
                name=d.get("Name", ""),
                publisher=d.get("Publisher") or "",
                min_version=d.get("Version") or "0.0.0.0",
            )
            for d in _as_list(record.get("Dependencies"))
            if d.get("Name")
        )
        location = record.get("InstallLocation")
        packages.append(
            InstalledPackage(
                name=name,
                publisher=record.get("Publisher") or "",
                version=str(version),
                architecture=str(record.get("Architecture") or "neutral").lower(),
                is_framework=bool(record.get("IsFramework")),
                dependencies=deps,
                install_location=Path(location) if location else None,
                full_name=record.get("PackageFullName"),
            )
        )
    return tuple(packages)


class PowerShellPackageRegistry:
    """Package registry backed by the Appx PowerShell module.

    Attributes:
        runner: PowerShell runner.
        install_timeout: Seconds allowed for Add-AppxPackage.
    """

    def __init__(self, runner: PowerShellRunner, install_timeout: float = 1200) -> None:
        self.runner = runner
        self.install_timeout = install_timeout

    def snapshot(self) -> tuple[InstalledPackage, ...]:
        from appxkit.logging import get_global_logger

        logger = get_global_logger()
        data = self.runner.run_json("$source = Get-AppxPackage\n" + _PROJECTION)
        packages = parse_package_records(data)
        logger.debug("REGISTRY", f"Snapshot contains {len(packages)} package(s)")
        return packages

    def find(self, name: str) -> tuple[InstalledPackage, ...]:
        data = self.runner.run_json(
            f"$source = Get-AppxPackage -Name {ps_quote(name)}\n" + _PROJECTION
        )
        return parse_package_records(data)

    def add_package(
        self,
        path: Path,
        *,
        dependency_paths: Iterable[Path] = (),
        force: bool = False,
        allow_unsigned: bool = False,
    ) -> None:
        """Run Add-AppxPackage.

        Raises:
            ExternalProcessError: If deployment fails. The error output
                carries the deployment HRESULT for classification.
        """
        from appxkit.logging import get_global_logger

        logger = get_global_logger()
        script = f"Add-AppxPackage -Path {ps_quote(path)}"
        deps = [ps_quote(p) for p in dependency_paths]
        if deps:
            script += f" -DependencyPath @({', '.join(deps)})"
        if force:
            script += " -ForceApplicationShutdown -ForceUpdateFromAnyVersion"
        if allow_unsigned:
            script += " -AllowUnsigned"
        logger.verbose("REGISTRY", f"Add-AppxPackage {path}")
        self.runner.run(script, timeout=self.install_timeout)
