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

"""Dependency resolution for AppxKit.

Resolves the PackageDependency entries of a manifest against a snapshot of
installed packages. A dependency is satisfied by an installed package with
the same name, a compatible architecture (equal, or either side "neutral")
and a version at or above the declared minimum.

With recursive resolution, each installed framework's own dependencies are
resolved too, one level deeper each time, and never beyond ``max_depth``.
There is no cycle detection: the depth cap alone bounds recursion, so a
framework that (incorrectly) lists itself as a dependency produces at most
``max_depth`` levels of records.

resolve_dependencies is a pure function. It does not query the system; the
caller takes a fresh snapshot from a PackageRegistry for every resolution.

Example:
    ```python
    from appxkit.dependencies import resolve_dependencies

    report = resolve_dependencies(manifest, registry.snapshot(), recursive=True)
    for dep in report.missing:
        print(f"missing: {dep.name} >= {dep.min_version} ({dep.reason})")
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence

from appxkit.dependencies.registry import InstalledPackage
from appxkit.exceptions import ValidationError
from appxkit.manifest.reader import PackageDependency, PackageManifest
from appxkit.results import ResolutionReport
from appxkit.versioning import PackageVersion, satisfies_minimum

# Name prefixes of Microsoft framework packages, used to classify a
# dependency that is not installed (and so has no IsFramework flag)
FRAMEWORK_PREFIXES: tuple[str, ...] = (
    "Microsoft.VCLibs",
    "Microsoft.NET.Native",
    "Microsoft.NET.CoreRuntime",
    "Microsoft.UI.Xaml",
    "Microsoft.WindowsAppRuntime",
)

DEFAULT_MAX_DEPTH = 3


class DependencyKind(str, Enum):
    PACKAGE = "package"
    FRAMEWORK = "framework"


class DependencyStatus(str, Enum):
    INSTALLED = "installed"
    MISSING = "missing"


@dataclass(frozen=True)
class Dependency:
    """Resolution record for one dependency.

    Attributes:
        name: Dependency package name.
        publisher: Declared publisher.
        min_version: Declared minimum version.
        architecture: Architecture the dependency was resolved for.
        kind: Package or framework.
        optional: True if declared optional.
        installed_version: Best installed version found, if any.
        status: Installed or missing.
        depth: 1 for declared dependencies, 2+ for transitive ones.
        reason: Why the dependency is missing ("not_installed" or
            "version_too_low"), None when installed.
        required_by: Name of the package that declared it.
    """

    name: str
    publisher: str
    min_version: str
    architecture: str
    kind: DependencyKind
    optional: bool
    installed_version: str | None
    status: DependencyStatus
    depth: int = 1
    reason: str | None = None
    required_by: str | None = None

    @property
    def is_installed(self) -> bool:
        return self.status is DependencyStatus.INSTALLED

    @property
    def is_framework(self) -> bool:
        return self.kind is DependencyKind.FRAMEWORK


def is_framework_name(name: str) -> bool:
    """True if the name matches a known framework package prefix."""
    lowered = name.lower()
    return any(lowered.startswith(prefix.lower()) for prefix in FRAMEWORK_PREFIXES)


def architecture_compatible(required: str, installed: str) -> bool:
    """True if an installed architecture satisfies a required one."""
    required, installed = required.lower(), installed.lower()
    return required == installed or "neutral" in (required, installed)


def _version_key(pkg: InstalledPackage) -> PackageVersion:
    try:
        return PackageVersion.parse(pkg.version)
    except ValueError:
        return PackageVersion((0, 0, 0, 0))


def _satisfies(pkg: InstalledPackage, minimum: str) -> bool:
    try:
        return satisfies_minimum(pkg.version, minimum)
    except ValueError:
        return False


def find_installed(
    snapshot: Iterable[InstalledPackage], name: str, architecture: str = "neutral"
) -> list[InstalledPackage]:
    """Installed packages with a matching name and compatible architecture.

    Returns:
        Matches ordered from the highest version down.
    """
    matches = [
        pkg
        for pkg in snapshot
        if pkg.name.lower() == name.lower()
        and architecture_compatible(architecture, pkg.architecture)
    ]
    return sorted(matches, key=_version_key, reverse=True)


def _resolve_one(
    declared: PackageDependency,
    architecture: str,
    snapshot: Sequence[InstalledPackage],
    depth: int,
    required_by: str,
) -> tuple[Dependency, InstalledPackage | None]:
    candidates = find_installed(snapshot, declared.name, architecture)
    match = next(
        (pkg for pkg in candidates if _satisfies(pkg, declared.min_version)), None
    )

    if match is not None:
        kind = DependencyKind.FRAMEWORK if match.is_framework else DependencyKind.PACKAGE
        record = Dependency(
            name=declared.name,
            publisher=declared.publisher,
            min_version=declared.min_version,
            architecture=architecture,
            kind=kind,
            optional=declared.optional,
            installed_version=match.version,
            status=DependencyStatus.INSTALLED,
            depth=depth,
            required_by=required_by,
        )
        return record, match

    if candidates:
        kind = (
            DependencyKind.FRAMEWORK
            if candidates[0].is_framework
            else DependencyKind.PACKAGE
        )
        installed_version: str | None = candidates[0].version
        reason = "version_too_low"
    else:
        kind = (
            DependencyKind.FRAMEWORK
            if is_framework_name(declared.name)
            else DependencyKind.PACKAGE
        )
        installed_version = None
        reason = "not_installed"

    record = Dependency(
        name=declared.name,
        publisher=declared.publisher,
        min_version=declared.min_version,
        architecture=architecture,
        kind=kind,
        optional=declared.optional,
        installed_version=installed_version,
        status=DependencyStatus.MISSING,
        depth=depth,
        reason=reason,
        required_by=required_by,
    )
    return record, None


def resolve_dependencies(
    manifest: PackageManifest,
    snapshot: Sequence[InstalledPackage],
    *,
    recursive: bool = False,
    include_optional: bool = False,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> ResolutionReport:
    """Resolve a manifest's declared dependencies against installed packages.

    Args:
        manifest: Parsed package manifest.
        snapshot: Installed packages at the time of the call.
        recursive: If True, resolve the dependencies of installed framework
            dependencies as well.
        include_optional: If True, dependencies declared optional are
            resolved and counted; otherwise they are skipped.
        max_depth: Deepest level of records produced (1 = declared only).

    Returns:
        ResolutionReport with counts over the declared dependencies and the
        transitive records listed separately.

    Raises:
        ValidationError: If max_depth is less than 1.
    """
    if max_depth < 1:
        raise ValidationError(f"max_depth must be at least 1, got {max_depth}")

    declared = [d for d in manifest.dependencies if include_optional or not d.optional]
    records: list[Dependency] = []
    transitive: list[Dependency] = []
    depth_capped = False

    # (installed framework, depth of its record)
    pending: list[tuple[InstalledPackage, int]] = []

    for dep in declared:
        record, match = _resolve_one(
            dep, manifest.architecture, snapshot, depth=1, required_by=manifest.name
        )
        records.append(record)
        if recursive and match is not None and match.is_framework:
            pending.append((match, 1))

    while pending:
        framework, depth = pending.pop(0)
        if not framework.dependencies:
            continue
        if depth >= max_depth:
            depth_capped = True
            continue
        for dep in framework.dependencies:
            record, match = _resolve_one(
                dep,
                framework.architecture,
                snapshot,
                depth=depth + 1,
                required_by=framework.name,
            )
            transitive.append(record)
            if match is not None and match.is_framework:
                pending.append((match, depth + 1))

    installed = sum(1 for r in records if r.is_installed)
    return ResolutionReport(
        package_name=manifest.name,
        total_dependencies=len(records),
        installed_count=installed,
        missing_count=len(records) - installed,
        framework_count=sum(1 for r in records if r.is_framework),
        dependencies=tuple(records),
        transitive=tuple(transitive),
        max_depth_reached=depth_capped,
    )
