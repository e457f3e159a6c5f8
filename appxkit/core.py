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

"""Core inspection and certificate operations for AppxKit.

This module provides the high-level operations that do not belong to the
build or install pipelines: reading package information, validating an
artifact's integrity, testing whether a package can be installed on this
host, creating a signing certificate, locating tools and exporting a
dependency archive.

Design Principles:

- Each function has a single, clear responsibility
- Functions return structured data (dataclasses) for easy testing and extension
- Problems with the inspected package are reported on the result
  (issues/warnings); only invalid input and environment failures raise
- Every function accepts an optional AppContext; a default one is created
  from the built-in configuration when omitted

Example:
    Programmatic usage:
        ```python
        from pathlib import Path
        from appxkit.core import validate_integrity

        result = validate_integrity(Path("backups/MyApp.msix"))
        print(result.is_valid, result.blocks_checked)
        for issue in result.issues:
            print(f"  - {issue}")
        ```
"""

from __future__ import annotations

import base64
import hashlib
from pathlib import Path
import platform
import re
import sys
from urllib.parse import unquote
import xml.etree.ElementTree as ET
import zipfile
import zlib

from appxkit.build.packager import file_sha256
from appxkit.build.signer import verify_signature
from appxkit.context import AppContext, create_context
from appxkit.dependencies.archive import export_dependencies
from appxkit.dependencies.resolver import resolve_dependencies
from appxkit.exceptions import AppxKitError, ParseError
from appxkit.manifest.reader import MANIFEST_NAME, PackageManifest, read_manifest
from appxkit.results import (
    CertificateResult,
    CompatibilityResult,
    IntegrityResult,
    PackageInfoResult,
    ResolutionReport,
)
from appxkit.tools.locator import ToolLocation
from appxkit.validation import (
    validate_key_length,
    validate_output_path,
    validate_password,
    validate_path,
    validate_subject,
    validate_validity_years,
)
from appxkit.versioning import PackageVersion, compare_versions, is_valid_version

__all__ = [
    "get_package_info",
    "validate_integrity",
    "test_compatibility",
    "create_certificate",
    "locate_tool",
    "export_dependencies",
    "detect_host_architecture",
    "host_os_version",
]

BLOCK_MAP_NAME = "AppxBlockMap.xml"
CONTENT_TYPES_NAME = "[Content_Types].xml"
SIGNATURE_NAME = "AppxSignature.p7x"
BLOCK_SIZE = 64 * 1024

# Package parts that are not listed in the block map
_FOOTPRINT_PARTS = frozenset(
    {BLOCK_MAP_NAME, CONTENT_TYPES_NAME, SIGNATURE_NAME, "AppxMetadata/CodeIntegrity.cat"}
)

_HASH_METHODS = {
    "http://www.w3.org/2001/04/xmlenc#sha256": "sha256",
    "http://www.w3.org/2001/04/xmldsig-more#sha384": "sha384",
    "http://www.w3.org/2001/04/xmlenc#sha512": "sha512",
}

_MACHINE_ARCHITECTURES = {
    "amd64": "x64",
    "x86_64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "x86": "x86",
    "i386": "x86",
    "i686": "x86",
    "arm": "arm",
}

# Architectures each host can run natively or under emulation
_RUNNABLE = {
    "x64": {"x64", "x86"},
    "x86": {"x86"},
    "arm64": {"arm64", "arm", "x64", "x86"},
    "arm": {"arm"},
}

_DESKTOP_FAMILIES = {"windows.desktop", "windows.universal"}


def _context(context: AppContext | None) -> AppContext:
    return context if context is not None else create_context()


def detect_host_architecture() -> str:
    """Package-style architecture name of this host (x64, x86, arm64, arm)."""
    machine = platform.machine().lower()
    return _MACHINE_ARCHITECTURES.get(machine, machine or "unknown")


def host_os_version() -> str | None:
    """Four-part Windows version of this host, or None off Windows."""
    if sys.platform != "win32":
        return None
    info = sys.getwindowsversion()
    return f"{info.major}.{info.minor}.{info.build}.0"


def _resolve(manifest: PackageManifest, context: AppContext) -> ResolutionReport:
    dep_cfg = context.section("dependencies")
    return resolve_dependencies(
        manifest,
        context.registry.snapshot(),
        recursive=dep_cfg["recursive"],
        include_optional=dep_cfg["include_optional"],
        max_depth=dep_cfg["max_depth"],
    )


def get_package_info(
    path: Path, resolve: bool = False, *, context: AppContext | None = None
) -> PackageInfoResult:
    """Read a package's manifest and artifact metadata.

    Args:
        path: An .appx/.msix artifact, a layout directory or a manifest file.
        resolve: Also resolve dependencies against installed packages.
        context: Service context (needed for resolution).

    Returns:
        PackageInfoResult with the manifest, size, hash and signature flag.

    Raises:
        ValidationError: If the path is invalid.
        ParseError: If the manifest cannot be read.
    """
    path = validate_path(path, label="Package", must_exist=True)
    manifest = read_manifest(path)

    size = 0
    sha256: str | None = None
    has_signature = False
    if path.is_file() and zipfile.is_zipfile(path):
        size = path.stat().st_size
        sha256 = file_sha256(path)
        with zipfile.ZipFile(path) as zf:
            has_signature = SIGNATURE_NAME in zf.namelist()

    resolution = _resolve(manifest, _context(context)) if resolve else None
    return PackageInfoResult(
        path=path,
        manifest=manifest,
        size_bytes=size,
        sha256=sha256,
        has_signature=has_signature,
        resolution=resolution,
    )


def _verify_block_map(
    zf: zipfile.ZipFile, data: bytes, issues: list[str], warnings: list[str]
) -> tuple[int, int]:
    """Check every file against AppxBlockMap.xml.

    Returns:
        (files_checked, blocks_checked)
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as err:
        issues.append(f"{BLOCK_MAP_NAME} is malformed: {err}")
        return 0, 0

    method = root.get("HashMethod", "")
    algorithm = _HASH_METHODS.get(method)
    if algorithm is None:
        issues.append(f"Unsupported block map hash method: {method!r}")
        return 0, 0

    entries = {unquote(name): name for name in zf.namelist() if not name.endswith("/")}
    listed: set[str] = set()
    files_checked = 0
    blocks_checked = 0

    for file_elem in root:
        if not file_elem.tag.endswith("}File") and file_elem.tag != "File":
            continue
        name = (file_elem.get("Name") or "").replace("\\", "/")
        listed.add(name)
        zip_name = entries.get(name)
        if zip_name is None:
            issues.append(f"Block map lists {name} but the package does not contain it")
            continue

        try:
            content = zf.read(zip_name)
        except (zipfile.BadZipFile, zlib.error, EOFError) as err:
            issues.append(f"{name}: content cannot be read: {err}")
            continue
        declared_size = file_elem.get("Size")
        try:
            size = int(declared_size) if declared_size is not None else len(content)
        except ValueError:
            issues.append(f"{name}: invalid block map size {declared_size!r}")
            continue
        if size != len(content):
            issues.append(
                f"{name}: size {len(content)} does not match block map size {declared_size}"
            )
            continue

        blocks = [b for b in file_elem if b.tag.endswith("Block")]
        expected_blocks = (len(content) + BLOCK_SIZE - 1) // BLOCK_SIZE
        if len(blocks) != expected_blocks:
            issues.append(
                f"{name}: {len(blocks)} block(s) in block map, expected {expected_blocks}"
            )
            continue

        for index, block in enumerate(blocks):
            chunk = content[index * BLOCK_SIZE : (index + 1) * BLOCK_SIZE]
            digest = base64.b64encode(hashlib.new(algorithm, chunk).digest()).decode("ascii")
            if digest != block.get("Hash"):
                issues.append(f"{name}: block {index} hash mismatch")
                break
            blocks_checked += 1
        files_checked += 1

    for name in entries:
        if name not in listed and name not in _FOOTPRINT_PARTS:
            warnings.append(f"{name} is in the package but not in the block map")

    return files_checked, blocks_checked


def validate_integrity(
    path: Path,
    verify_signature: bool = False,
    *,
    context: AppContext | None = None,
) -> IntegrityResult:
    """Validate the structure and content hashes of a package artifact.

    Checks that the artifact is a readable zip, contains AppxManifest.xml,
    AppxBlockMap.xml and [Content_Types].xml, that the manifest parses, and
    that every block hash and file size in the block map matches the
    content. With verify_signature, SignTool also verifies the signature.

    Args:
        path: The .appx/.msix artifact.
        verify_signature: Run ``SignTool verify /pa`` as well.
        context: Service context (for locating SignTool).

    Returns:
        IntegrityResult; is_valid is False if any issue was found.

    Raises:
        ValidationError: If the path is invalid.
    """
    from appxkit.logging import get_global_logger

    logger = get_global_logger()
    path = validate_path(path, label="Package", must_exist=True, kind="file")
    issues: list[str] = []
    warnings: list[str] = []
    names: set[str] = set()
    files_checked = blocks_checked = 0
    has_manifest = False

    try:
        with zipfile.ZipFile(path) as zf:
            names = {unquote(n) for n in zf.namelist()}
            try:
                corrupt = zf.testzip()
            except (zlib.error, EOFError) as err:
                issues.append(f"Package content cannot be decompressed: {err}")
            else:
                if corrupt is not None:
                    issues.append(f"CRC check failed for {corrupt}")

            if MANIFEST_NAME in names:
                try:
                    read_manifest(path)
                    has_manifest = True
                except ParseError as err:
                    issues.append(str(err))
            else:
                issues.append(f"Missing {MANIFEST_NAME}")

            if BLOCK_MAP_NAME in names:
                files_checked, blocks_checked = _verify_block_map(
                    zf, zf.read(BLOCK_MAP_NAME), issues, warnings
                )
            else:
                issues.append(f"Missing {BLOCK_MAP_NAME}")
    except zipfile.BadZipFile as err:
        issues.append(f"Not a valid package archive: {err}")
    except (zlib.error, EOFError) as err:
        issues.append(f"Package content cannot be decompressed: {err}")

    if CONTENT_TYPES_NAME not in names and names:
        issues.append(f"Missing {CONTENT_TYPES_NAME}")

    has_signature = SIGNATURE_NAME in names
    signature_valid: bool | None = None
    if verify_signature:
        if has_signature:
            ctx = _context(context)
            status = _check_signature(path, ctx)
            signature_valid = status
            if not status:
                issues.append("Signature verification failed")
        else:
            signature_valid = False
            issues.append("Package is not signed")
    elif not has_signature:
        warnings.append("Package is not signed")

    logger.verbose(
        "INTEGRITY",
        f"{path.name}: {files_checked} file(s), {blocks_checked} block(s), "
        f"{len(issues)} issue(s)",
    )
    return IntegrityResult(
        path=path,
        is_valid=not issues,
        has_manifest=has_manifest,
        has_block_map=BLOCK_MAP_NAME in names,
        has_content_types=CONTENT_TYPES_NAME in names,
        has_signature=has_signature,
        signature_valid=signature_valid,
        files_checked=files_checked,
        blocks_checked=blocks_checked,
        issues=tuple(issues),
        warnings=tuple(warnings),
    )


def _check_signature(path: Path, context: AppContext) -> bool:
    """Run SignTool verification for a package using the context's locator."""
    status = verify_signature(
        path, locator=context.locator, timeout=context.timeout("verify")
    )
    if not status.is_valid:
        context.logger.verbose("INTEGRITY", status.output)
    return status.is_valid


def test_compatibility(
    path: Path,
    os_version: str | None = None,
    host_architecture: str | None = None,
    *,
    context: AppContext | None = None,
    resolve: bool = True,
) -> CompatibilityResult:
    """Test whether a package can be installed on a host.

    Compares the package architecture to the host architecture, the target
    device families' minimum versions to the host OS version, and (with
    resolve) the declared dependencies to the installed packages.

    Args:
        path: Package artifact, layout directory or manifest file.
        os_version: Host OS version (default: this machine's).
        host_architecture: Host architecture (default: this machine's).
        context: Service context (for dependency resolution).
        resolve: Check dependencies against installed packages.

    Returns:
        CompatibilityResult; is_compatible is False if any issue was found.

    Raises:
        ValidationError: If the path is invalid.
        ParseError: If the manifest cannot be read.
    """
    path = validate_path(path, label="Package", must_exist=True)
    manifest = read_manifest(path)
    issues: list[str] = []
    warnings: list[str] = []

    host_arch = (host_architecture or detect_host_architecture()).lower()
    package_arch = manifest.architecture
    if package_arch != "neutral":
        runnable = _RUNNABLE.get(host_arch, {host_arch})
        if package_arch not in runnable:
            issues.append(f"Package architecture {package_arch} cannot run on {host_arch}")
        elif package_arch != host_arch:
            warnings.append(f"Package architecture {package_arch} runs under emulation on {host_arch}")

    os_version = os_version or host_os_version()
    families = tuple(t.name for t in manifest.target_device_families)
    if families and not any(f.lower() in _DESKTOP_FAMILIES for f in families):
        issues.append(f"Package does not target desktop Windows: {', '.join(families)}")

    min_os = manifest.min_os_version
    if os_version is None:
        warnings.append("Host OS version unknown; minimum version not checked")
    elif min_os and is_valid_version(os_version):
        if compare_versions(os_version, min_os) < 0:
            issues.append(f"Requires Windows {min_os} or later (host: {os_version})")
        for tdf in manifest.target_device_families:
            tested = tdf.max_version_tested
            if tested and is_valid_version(tested):
                if PackageVersion.parse(os_version) > PackageVersion.parse(tested):
                    warnings.append(
                        f"{tdf.name} tested up to {tested}; host is newer ({os_version})"
                    )

    resolution: ResolutionReport | None = None
    if resolve and manifest.dependencies:
        ctx = _context(context)
        try:
            resolution = _resolve(manifest, ctx)
        except AppxKitError as err:
            warnings.append(f"Dependency check skipped: {err}")
        else:
            for dep in resolution.missing:
                issues.append(
                    f"Missing dependency {dep.name} >= {dep.min_version} ({dep.reason})"
                )

    return CompatibilityResult(
        path=path,
        is_compatible=not issues,
        package_architecture=package_arch,
        host_architecture=host_arch,
        os_version=os_version,
        min_os_version=min_os,
        device_families=families,
        issues=tuple(issues),
        warnings=tuple(warnings),
        resolution=resolution,
    )


_FILE_STEM = re.compile(r"[^A-Za-z0-9._-]+")


def _certificate_stem(subject: str) -> str:
    common_name = subject[3:].split(",", 1)[0].strip()
    return _FILE_STEM.sub("_", common_name).strip("_") or "certificate"


def create_certificate(
    subject: str,
    output_dir: Path,
    *,
    context: AppContext | None = None,
    name: str | None = None,
    validity_years: int | None = None,
    key_length: int | None = None,
    export_pfx: bool = False,
    password: str | None = None,
    overwrite: bool = False,
) -> CertificateResult:
    """Create a code-signing certificate and export it to files.

    The certificate is created in the configured store, then exported as a
    .cer (and, with export_pfx, a password-protected .pfx). If an export
    fails, the certificate is removed from the store again.

    Args:
        subject: Subject DN (use the package Publisher for package signing).
        output_dir: Directory for the exported files.
        context: Service context.
        name: File stem (default: derived from the subject CN).
        validity_years: Lifetime in years (default: config).
        key_length: RSA key size (default: config).
        export_pfx: Also export the private key.
        password: PFX password (required with export_pfx).
        overwrite: Replace existing files.

    Returns:
        CertificateResult with the certificate reference and file paths.

    Raises:
        ValidationError: If arguments are invalid.
        CertificateError: If creation or export fails.
    """
    ctx = _context(context)
    cert_cfg = ctx.section("certificate")
    subject = validate_subject(subject)
    years = validate_validity_years(
        cert_cfg["validity_years"] if validity_years is None else validity_years
    )
    bits = validate_key_length(
        cert_cfg["key_length"] if key_length is None else key_length
    )
    if export_pfx:
        validate_password(password)

    output_dir = validate_path(output_dir, label="Output directory", kind="dir")
    stem = name or _certificate_stem(subject)
    cer_path = validate_output_path(
        output_dir / f"{stem}.cer", overwrite=overwrite, label="Certificate path"
    )
    pfx_path = None
    if export_pfx:
        pfx_path = validate_output_path(
            output_dir / f"{stem}.pfx", overwrite=overwrite, label="PFX path"
        )

    ctx.logger.step(1, 2, "Creating certificate...")
    cert = ctx.certificates.create(subject, validity_years=years, key_length=bits)

    ctx.logger.step(2, 2, "Exporting certificate...")
    try:
        ctx.certificates.export(cert, cer_path)
        if pfx_path is not None:
            ctx.certificates.export(
                cert, pfx_path, include_private_key=True, password=password
            )
    except AppxKitError:
        ctx.logger.warning("CERT", f"Export failed; removing certificate {cert.thumbprint}")
        try:
            ctx.certificates.remove(cert.thumbprint, cert.store_location)
        except AppxKitError as err:
            ctx.logger.warning("CERT", f"Could not remove certificate: {err}")
        cer_path.unlink(missing_ok=True)
        raise

    return CertificateResult(certificate=cert, cer_path=cer_path, pfx_path=pfx_path)


def locate_tool(
    tool_id: str, refresh: bool = False, *, context: AppContext | None = None
) -> ToolLocation | None:
    """Locate an external tool (makeappx, signtool, powershell).

    Raises:
        KeyError: If tool_id is unknown.
    """
    return _context(context).locator.locate(tool_id, refresh=refresh)
