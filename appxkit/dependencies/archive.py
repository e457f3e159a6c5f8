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

"""Dependency archives for AppxKit.

A dependency archive bundles a package with the dependency packages it
needs and the certificates that sign them, so a machine without Store
access can restore the whole set in one step.

Archive layout (zip)::

    manifest.json
    Packages/<main package and dependency artifacts>
    Certificates/<.cer files>

manifest.json uses camelCase keys: schemaVersion, creator, createdAt,
mainPackage, dependencies, installationOrder, minimumOSVersion,
minimumRuntimeVersion and requiresElevation. ``installationOrder`` lists
package file names in the order they must be installed; dependencies come
first and the main package last.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import json
import os
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Sequence
import zipfile

from appxkit.dependencies.resolver import architecture_compatible
from appxkit.exceptions import ParseError, ValidationError
from appxkit.manifest.reader import PackageManifest, read_manifest
from appxkit.results import DependencyExportResult
from appxkit.validation import PACKAGE_SUFFIXES, validate_output_path, validate_path
from appxkit.versioning import PackageVersion, satisfies_minimum

SCHEMA_VERSION = "1.0"
ARCHIVE_MANIFEST = "manifest.json"
PACKAGES_DIR = "Packages"
CERTIFICATES_DIR = "Certificates"
# Windows PowerShell version needed for the Appx deployment cmdlets
MINIMUM_RUNTIME_VERSION = "5.1"


@dataclass(frozen=True)
class ArchiveEntry:
    """One package listed in a dependency archive.

    Attributes:
        name: Package identity name.
        version: Package version.
        architecture: Processor architecture.
        publisher: Publisher distinguished name.
        file: Extracted artifact path.
        certificate_file: Extracted companion certificate, if any.
        install_order: 1-based position in the installation order.
        optional: True if the main package declares it optional.
    """

    name: str
    version: str
    architecture: str
    publisher: str
    file: Path
    certificate_file: Path | None
    install_order: int
    optional: bool = False


@dataclass(frozen=True)
class DependencyArchive:
    """An extracted dependency archive.

    Attributes:
        path: The archive file.
        root: Directory the archive was extracted into.
        document: Raw manifest.json content.
        main_package: The main package entry.
        dependencies: Dependency entries in installation order.
        certificates: Every certificate file in the archive.
    """

    path: Path
    root: Path
    document: dict[str, Any]
    main_package: ArchiveEntry
    dependencies: tuple[ArchiveEntry, ...]
    certificates: tuple[Path, ...]

    @property
    def installation_order(self) -> tuple[ArchiveEntry, ...]:
        """Every package entry, dependencies first."""
        entries = (*self.dependencies, self.main_package)
        return tuple(sorted(entries, key=lambda e: e.install_order))


def _collect_artifacts(sources: Iterable[Path]) -> list[Path]:
    found: list[Path] = []
    for source in sources:
        source = validate_path(source, label="Dependency source", must_exist=True)
        if source.is_dir():
            found.extend(
                p
                for p in sorted(source.rglob("*"))
                if p.is_file() and p.suffix.lower() in PACKAGE_SUFFIXES
            )
        elif source.suffix.lower() in PACKAGE_SUFFIXES:
            found.append(source)
    return found


def _best_candidate(
    name: str,
    min_version: str,
    architecture: str,
    candidates: Sequence[tuple[Path, PackageManifest]],
) -> tuple[Path, PackageManifest] | None:
    matches = [
        (path, m)
        for path, m in candidates
        if m.name.lower() == name.lower()
        and architecture_compatible(architecture, m.architecture)
        and satisfies_minimum(m.version, min_version)
    ]
    if not matches:
        return None
    return max(matches, key=lambda item: PackageVersion.parse(item[1].version))


def _entry_document(
    manifest: PackageManifest, file_name: str, cert_name: str | None
) -> dict[str, Any]:
    return {
        "name": manifest.name,
        "version": manifest.version,
        "architecture": manifest.architecture,
        "publisher": manifest.publisher,
        "file": file_name,
        "certificateFile": cert_name,
    }


def export_dependencies(
    package: Path,
    output: Path,
    sources: Sequence[Path],
    *,
    certificate_files: Sequence[Path] = (),
    include_optional: bool = False,
    overwrite: bool = False,
) -> DependencyExportResult:
    """Write a dependency archive for a package.

    Args:
        package: The main .appx/.msix artifact.
        output: Destination .zip path.
        sources: Directories or artifacts to search for dependency packages.
        certificate_files: Extra .cer files to include. A .cer next to the
            main package (same stem) is included automatically.
        include_optional: Also bundle dependencies declared optional.
        overwrite: Replace an existing archive.

    Returns:
        DependencyExportResult describing the archive.

    Raises:
        ValidationError: If a path is invalid or the output exists.
        ParseError: If the main package manifest cannot be read.
    """
    from appxkit import __version__
    from appxkit.logging import get_global_logger

    logger = get_global_logger()

    package = validate_path(package, label="Package", must_exist=True, kind="file")
    output = validate_output_path(
        output, overwrite=overwrite, suffixes=(".zip",), label="Archive path"
    )
    manifest = read_manifest(package)
    warnings: list[str] = []

    candidates: list[tuple[Path, PackageManifest]] = []
    for artifact in _collect_artifacts(sources):
        if artifact.resolve() == package.resolve():
            continue
        try:
            candidates.append((artifact, read_manifest(artifact)))
        except ParseError as err:
            warnings.append(f"Skipped unreadable package {artifact.name}: {err}")
            logger.warning("ARCHIVE", f"Skipped {artifact.name}: {err}")

    selected: list[tuple[Path, PackageManifest, bool]] = []
    missing: list[str] = []
    for dep in manifest.dependencies:
        if dep.optional and not include_optional:
            continue
        best = _best_candidate(dep.name, dep.min_version, manifest.architecture, candidates)
        if best is None:
            missing.append(dep.name)
            logger.warning(
                "ARCHIVE", f"No package found for {dep.name} >= {dep.min_version}"
            )
            continue
        selected.append((best[0], best[1], dep.optional))

    certs: list[Path] = []
    companion = package.with_suffix(".cer")
    if companion.is_file():
        certs.append(companion)
    for cert in certificate_files:
        cert = validate_path(cert, label="Certificate", must_exist=True, kind="file")
        if cert not in certs:
            certs.append(cert)
    cert_names = [c.name for c in certs]
    main_cert = companion.name if companion.is_file() else None

    dependencies_doc: list[dict[str, Any]] = []
    order: list[str] = []
    for index, (path, dep_manifest, optional) in enumerate(selected, start=1):
        entry = _entry_document(dep_manifest, path.name, None)
        entry["installOrder"] = index
        entry["optional"] = optional
        dependencies_doc.append(entry)
        order.append(path.name)
    order.append(package.name)

    document = {
        "schemaVersion": SCHEMA_VERSION,
        "creator": f"appxkit {__version__}",
        "createdAt": datetime.now(UTC).isoformat(),
        "mainPackage": _entry_document(manifest, package.name, main_cert),
        "dependencies": dependencies_doc,
        "installationOrder": order,
        "minimumOSVersion": manifest.min_os_version,
        "minimumRuntimeVersion": MINIMUM_RUNTIME_VERSION,
        "requiresElevation": bool(certs),
    }

    output.parent.mkdir(parents=True, exist_ok=True)
    temp = output.with_name(output.name + ".partial")
    try:
        with zipfile.ZipFile(temp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(ARCHIVE_MANIFEST, json.dumps(document, indent=2))
            zf.write(package, f"{PACKAGES_DIR}/{package.name}")
            for path, _, _ in selected:
                zf.write(path, f"{PACKAGES_DIR}/{path.name}")
            for cert in certs:
                zf.write(cert, f"{CERTIFICATES_DIR}/{cert.name}")
        os.replace(temp, output)
    finally:
        temp.unlink(missing_ok=True)

    logger.verbose(
        "ARCHIVE",
        f"[OK] Wrote {output.name} ({len(selected)} dependencies, {len(certs)} certificates)",
    )
    return DependencyExportResult(
        archive_path=output,
        package_name=manifest.name,
        packaged=tuple(p.name for p, _, _ in selected),
        missing=tuple(missing),
        installation_order=tuple(order),
        certificate_files=tuple(cert_names),
        warnings=tuple(warnings),
    )


def _safe_extract(zf: zipfile.ZipFile, dest: Path) -> None:
    root = dest.resolve()
    for info in zf.infolist():
        name = PurePosixPath(info.filename.replace("\\", "/"))
        if name.is_absolute() or ".." in name.parts:
            raise ValidationError(f"Archive entry escapes the extraction directory: {info.filename}")
        target = (root / Path(*name.parts)).resolve()
        if root != target and root not in target.parents:
            raise ValidationError(f"Archive entry escapes the extraction directory: {info.filename}")
    zf.extractall(root)


def _member_name(value: Any, key: str) -> str:
    """A bare file name from manifest.json; separators and drive letters are rejected."""
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    if not value or value in (".", "..") or any(c in value for c in "/\\:"):
        raise ValidationError(
            f"{ARCHIVE_MANIFEST} {key} must be a plain file name: {value!r}"
        )
    return value


def _entry_from(doc: dict[str, Any], root: Path, default_order: int) -> ArchiveEntry:
    try:
        file_name = _member_name(doc["file"], "file")
        cert_name = doc.get("certificateFile")
        if cert_name is not None:
            cert_name = _member_name(cert_name, "certificateFile")
        return ArchiveEntry(
            name=doc["name"],
            version=doc["version"],
            architecture=doc.get("architecture", "neutral"),
            publisher=doc.get("publisher", ""),
            file=root / PACKAGES_DIR / file_name,
            certificate_file=root / CERTIFICATES_DIR / cert_name if cert_name else None,
            install_order=int(doc.get("installOrder", default_order)),
            optional=bool(doc.get("optional", False)),
        )
    except (KeyError, TypeError, ValueError) as err:
        raise ParseError(f"Invalid package entry in {ARCHIVE_MANIFEST}: {doc}") from err


def read_dependency_archive(path: Path, extract_dir: Path) -> DependencyArchive:
    """Extract a dependency archive and read its manifest.

    Args:
        path: The archive .zip.
        extract_dir: Directory to extract into (created if needed).

    Returns:
        The extracted archive description.

    Raises:
        ValidationError: If an entry or a manifest.json file name would escape
            extract_dir.
        ParseError: If the archive or its manifest.json is invalid, or a
            listed file is missing.
    """
    path = validate_path(path, label="Dependency archive", must_exist=True, kind="file")
    extract_dir.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(path) as zf:
            _safe_extract(zf, extract_dir)
    except zipfile.BadZipFile as err:
        raise ParseError(f"Not a valid dependency archive: {path}: {err}") from err

    manifest_path = extract_dir / ARCHIVE_MANIFEST
    if not manifest_path.is_file():
        raise ParseError(f"{path.name} has no {ARCHIVE_MANIFEST}")
    try:
        document = json.loads(manifest_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as err:
        raise ParseError(f"Invalid {ARCHIVE_MANIFEST} in {path.name}: {err}") from err
    if not isinstance(document, dict) or "mainPackage" not in document:
        raise ParseError(f"{ARCHIVE_MANIFEST} in {path.name} has no mainPackage")

    dependencies = tuple(
        _entry_from(doc, extract_dir, i)
        for i, doc in enumerate(document.get("dependencies") or [], start=1)
    )
    main = _entry_from(document["mainPackage"], extract_dir, len(dependencies) + 1)

    for entry in (*dependencies, main):
        if not entry.file.is_file():
            raise ParseError(f"{path.name} lists {entry.file.name} but does not contain it")

    cert_dir = extract_dir / CERTIFICATES_DIR
    certificates = tuple(sorted(cert_dir.glob("*.cer"))) if cert_dir.is_dir() else ()

    return DependencyArchive(
        path=path,
        root=extract_dir,
        document=document,
        main_package=main,
        dependencies=dependencies,
        certificates=certificates,
    )
