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

"""Public API return types for AppxKit.

This module defines dataclasses for return values from public API functions.
These types represent the results of operations like packing, backing up,
installing, and inspecting packages.

All dataclasses are frozen (immutable) to prevent accidental mutation of
return values.

Example:
    Using result types:
        ```python
        from pathlib import Path
        from appxkit.install import install_package
        from appxkit.results import InstallOutcome

        result = install_package(Path("backups/MyApp.msix"))
        if result.outcome is InstallOutcome.ALREADY_INSTALLED:
            print("Nothing to do")
        ```

Note:
    Only public API return types belong in this module. Domain types
    (like PackageManifest or SigningCertificate) remain co-located with
    their related logic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from appxkit.certificates.manager import SigningCertificate
    from appxkit.dependencies.resolver import Dependency
    from appxkit.exceptions import ErrorCategory
    from appxkit.manifest.reader import PackageManifest


@dataclass(frozen=True)
class ArtifactInfo:
    """A package artifact produced by the packager.

    Attributes:
        path: Path to the .appx/.msix file.
        size_bytes: File size in bytes.
        sha256: SHA-256 hash of the file.
        package_name: Identity name from the manifest.
        version: Identity version from the manifest.
        architecture: Processor architecture from the manifest.
    """

    path: Path
    size_bytes: int
    sha256: str
    package_name: str
    version: str
    architecture: str


@dataclass(frozen=True)
class SignatureStatus:
    """Result from verifying a package signature.

    Attributes:
        path: The verified artifact.
        is_valid: True if SignTool reported a valid, trusted signature.
        returncode: SignTool exit code.
        output: Combined SignTool output for diagnostics.
    """

    path: Path
    is_valid: bool
    returncode: int
    output: str


@dataclass(frozen=True)
class ResolutionReport:
    """Result from resolving a manifest's dependencies.

    Counts cover the declared (depth 1) dependencies only, so
    ``installed_count + missing_count == total_dependencies`` always holds.

    Attributes:
        package_name: Identity name of the resolved manifest.
        total_dependencies: Number of declared dependencies considered.
        installed_count: Declared dependencies found installed.
        missing_count: Declared dependencies not found (or too old).
        framework_count: Declared dependencies that are framework packages.
        dependencies: Resolution records for declared dependencies.
        transitive: Records for framework dependencies found by recursion.
        max_depth_reached: True if recursion stopped at the depth cap.
    """

    package_name: str
    total_dependencies: int
    installed_count: int
    missing_count: int
    framework_count: int
    dependencies: tuple[Dependency, ...]
    transitive: tuple[Dependency, ...] = ()
    max_depth_reached: bool = False

    @property
    def missing(self) -> tuple[Dependency, ...]:
        """Declared dependencies that are not installed."""
        return tuple(d for d in self.dependencies if not d.is_installed)


@dataclass(frozen=True)
class BackupResult:
    """Result from the backup pipeline.

    Attributes:
        package_name: Identity name.
        version: Identity version.
        architecture: Processor architecture.
        publisher: Identity publisher (certificate subject when signing).
        artifact_path: Path to the produced package.
        sha256: SHA-256 of the final (signed if requested) package.
        size_bytes: Size of the final package.
        signed: True if the package was signed.
        thumbprint: Thumbprint of the signing certificate, if any.
        certificate_path: Exported public certificate (.cer), if created.
        pfx_path: Exported private key (.pfx), if requested.
        resolution: Dependency report, if resolution was requested.
        status: Always "success" for a completed backup.
    """

    package_name: str
    version: str
    architecture: str
    publisher: str
    artifact_path: Path
    sha256: str
    size_bytes: int
    signed: bool
    thumbprint: str | None
    certificate_path: Path | None
    pfx_path: Path | None
    resolution: ResolutionReport | None
    status: str


class InstallOutcome(str, Enum):
    """Terminal states of an installation run."""

    SUCCESS = "success"
    ALREADY_INSTALLED = "already_installed"
    FAILED = "failed"


@dataclass(frozen=True)
class InstallResult:
    """Result from installing a package.

    Attributes:
        outcome: Terminal state of the run.
        artifact_path: The package that was installed.
        package_name: Identity name (empty if the manifest was unreadable).
        version: Identity version.
        reason: Failure reason when outcome is FAILED.
        error_category: Classified cause of a deployment failure, if known.
        certificate_thumbprint: Thumbprint of the companion certificate.
        certificate_installed: True if the certificate was imported in this run.
        certificate_rolled_back: True if that certificate was removed again.
        verified: True if the package was found installed afterwards.
        warnings: Non-fatal issues encountered.
    """

    outcome: InstallOutcome
    artifact_path: Path
    package_name: str = ""
    version: str = ""
    reason: str | None = None
    error_category: ErrorCategory | None = None
    certificate_thumbprint: str | None = None
    certificate_installed: bool = False
    certificate_rolled_back: bool = False
    verified: bool = False
    warnings: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        """True for SUCCESS and ALREADY_INSTALLED."""
        return self.outcome is not InstallOutcome.FAILED


@dataclass(frozen=True)
class ArchiveInstallResult:
    """Result from installing every package in a dependency archive.

    Attributes:
        archive_path: The dependency archive.
        results: Per-package results in installation order.
        certificates_installed: Thumbprints imported from the archive.
    """

    archive_path: Path
    results: tuple[InstallResult, ...]
    certificates_installed: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        """True if every package succeeded or was already installed."""
        return all(r.succeeded for r in self.results)


@dataclass(frozen=True)
class IntegrityResult:
    """Result from validating a package artifact.

    Attributes:
        path: The inspected artifact.
        is_valid: True if no issues were found.
        has_manifest: AppxManifest.xml present and parseable.
        has_block_map: AppxBlockMap.xml present.
        has_content_types: [Content_Types].xml present.
        has_signature: AppxSignature.p7x present.
        signature_valid: SignTool verdict, or None if not checked.
        files_checked: Files verified against the block map.
        blocks_checked: Block hashes verified.
        issues: Problems that make the package invalid.
        warnings: Non-fatal observations.
    """

    path: Path
    is_valid: bool
    has_manifest: bool
    has_block_map: bool
    has_content_types: bool
    has_signature: bool
    signature_valid: bool | None
    files_checked: int
    blocks_checked: int
    issues: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class CompatibilityResult:
    """Result from testing whether a package can be installed on this host.

    Attributes:
        path: The inspected package.
        is_compatible: True if no blocking issues were found.
        package_architecture: Architecture declared by the package.
        host_architecture: Architecture of this host.
        os_version: Host OS version used for the comparison.
        min_os_version: Lowest MinVersion across target device families.
        device_families: Names of declared target device families.
        issues: Blocking problems.
        warnings: Non-blocking observations.
        resolution: Dependency report against the installed packages.
    """

    path: Path
    is_compatible: bool
    package_architecture: str
    host_architecture: str
    os_version: str | None
    min_os_version: str | None
    device_families: tuple[str, ...]
    issues: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    resolution: ResolutionReport | None = None


@dataclass(frozen=True)
class PackageInfoResult:
    """Result from reading a package's metadata.

    Attributes:
        path: The inspected package, directory or manifest file.
        manifest: Parsed manifest.
        size_bytes: Artifact size (0 for directories).
        sha256: Artifact hash (None for directories and loose manifests).
        has_signature: True if the artifact carries AppxSignature.p7x.
        resolution: Dependency report, if requested.
    """

    path: Path
    manifest: PackageManifest
    size_bytes: int
    sha256: str | None
    has_signature: bool
    resolution: ResolutionReport | None = None


@dataclass(frozen=True)
class DependencyExportResult:
    """Result from exporting a dependency archive.

    Attributes:
        archive_path: The written archive.
        package_name: Main package identity name.
        packaged: File names of dependency packages included.
        missing: Names of declared dependencies with no matching artifact.
        installation_order: File names in the order they must be installed.
        certificate_files: Certificate file names included.
        warnings: Non-fatal issues encountered.
    """

    archive_path: Path
    package_name: str
    packaged: tuple[str, ...]
    missing: tuple[str, ...]
    installation_order: tuple[str, ...]
    certificate_files: tuple[str, ...] = ()
    warnings: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CertificateResult:
    """Result from creating and exporting a signing certificate.

    Attributes:
        certificate: The created certificate reference.
        cer_path: Exported public certificate.
        pfx_path: Exported private key, if requested.
    """

    certificate: SigningCertificate
    cer_path: Path
    pfx_path: Path | None = None
