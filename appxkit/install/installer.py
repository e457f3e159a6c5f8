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

"""Package installation (restore) for AppxKit.

install_package runs a small state machine:

    Validate -> Detect existing -> Install certificate -> Install package
    -> Verify

Validate checks the manifest and, unless allow_unsigned is given, verifies
the signature with SignTool. A signature that is missing or fails
verification aborts the install; with force it is reported as a warning
instead. An untrusted root is accepted when a certificate is about to be
imported, since Add-AppxPackage enforces trust itself.

Terminal outcomes:
    - SUCCESS: the package was installed (verification problems are
      reported as warnings, not failures)
    - ALREADY_INSTALLED: the same or a newer version is present and force
      was not given; nothing was changed
    - FAILED: a step failed; the reason, the tool output and an error
      category derived from the deployment HRESULT are attached

Rollback:
    If package installation fails, a certificate imported earlier in the
    same run is removed again. A certificate that was already in the store
    before the run is never touched.

Invalid caller input raises ValidationError immediately; every other
AppxKitError is converted into a FAILED result after rollback.
"""

from __future__ import annotations

from pathlib import Path
import tempfile
from typing import Iterable
import zipfile

from appxkit.build.signer import verify_signature
from appxkit.certificates.manager import certificate_thumbprint
from appxkit.context import AppContext
from appxkit.dependencies.archive import read_dependency_archive
from appxkit.dependencies.resolver import architecture_compatible
from appxkit.exceptions import (
    AppxKitError,
    ExternalProcessError,
    StateConflictError,
    ValidationError,
    classify_hresult,
)
from appxkit.manifest.reader import PackageManifest, is_newer_manifest, read_manifest
from appxkit.results import ArchiveInstallResult, InstallOutcome, InstallResult
from appxkit.validation import PACKAGE_SUFFIXES, validate_path, validate_store_location

SIGNATURE_ENTRY = "AppxSignature.p7x"
# SignTool output when the chain ends in a root that is not trusted yet
UNTRUSTED_ROOT_MARKERS = ("0x800b0109", "not trusted by the trust provider")


def _validate_inputs(
    artifact: Path,
    certificate_path: Path | None,
    cert_store: str,
    dependency_paths: Iterable[Path],
) -> tuple[Path, Path | None, str, list[Path]]:
    artifact = validate_path(artifact, label="Package", must_exist=True, kind="file")
    if artifact.suffix.lower() not in PACKAGE_SUFFIXES:
        raise ValidationError(
            f"Package must be one of {', '.join(PACKAGE_SUFFIXES)}: {artifact}"
        )
    if certificate_path is not None:
        certificate_path = validate_path(
            certificate_path, label="Certificate", must_exist=True, kind="file"
        )
    cert_store = validate_store_location(cert_store)
    deps = [
        validate_path(p, label="Dependency package", must_exist=True, kind="file")
        for p in dependency_paths
    ]
    return artifact, certificate_path, cert_store, deps


def _is_signed(artifact: Path) -> bool:
    with zipfile.ZipFile(artifact) as zf:
        return SIGNATURE_ENTRY in zf.namelist()


def _signature_problem(
    artifact: Path, context: AppContext, trust_pending: bool
) -> str | None:
    """Verify the package signature with SignTool.

    Args:
        artifact: The package to check.
        context: Service context.
        trust_pending: A certificate will be imported before installation,
            so an untrusted root is expected at this point.

    Returns:
        A description of the problem, or None if the signature is usable.
    """
    if not _is_signed(artifact):
        return f"{artifact.name} is not signed"
    status = verify_signature(
        artifact, locator=context.locator, timeout=context.timeout("verify")
    )
    if status.is_valid:
        context.logger.verbose("INSTALL", f"[OK] Signature verified: {artifact.name}")
        return None
    output = status.output.lower()
    if trust_pending and any(marker in output for marker in UNTRUSTED_ROOT_MARKERS):
        context.logger.verbose(
            "INSTALL", "Signing certificate not trusted yet; it is imported next"
        )
        return None
    detail = status.output.strip() or f"SignTool exit code {status.returncode}"
    return f"Signature verification failed for {artifact.name}: {detail}"


def _detect_existing(
    manifest: PackageManifest, context: AppContext, force: bool
) -> None:
    """Raise StateConflictError if the same or a newer version is installed."""
    for pkg in context.registry.find(manifest.name):
        if not architecture_compatible(manifest.architecture, pkg.architecture):
            continue
        if not is_newer_manifest(manifest, pkg.version):
            if force:
                context.logger.verbose(
                    "INSTALL", f"{pkg.name} {pkg.version} installed; forcing reinstall"
                )
                return
            raise StateConflictError(
                f"{pkg.name} {pkg.version} is already installed "
                f"(package version {manifest.version})"
            )


def _failure_details(err: AppxKitError) -> str:
    if isinstance(err, ExternalProcessError):
        return f"{err.summary}\n{err.stderr or err.stdout}".strip()
    return str(err)


def install_package(
    artifact: Path,
    *,
    context: AppContext,
    certificate_path: Path | None = None,
    cert_store: str = "LocalMachine\\TrustedPeople",
    force: bool = False,
    allow_unsigned: bool = False,
    skip_certificate: bool = False,
    dependency_paths: Iterable[Path] = (),
) -> InstallResult:
    """Install a package artifact, importing its certificate first.

    Args:
        artifact: The .appx/.msix to install.
        context: Service context.
        certificate_path: Certificate that signed the package (default: a
            .cer with the same stem next to the artifact, if present).
        cert_store: Store that receives the certificate.
        force: Reinstall even if the same or a newer version is installed,
            and continue past a failed signature check with a warning.
        allow_unsigned: Permit installing an unsigned package.
        skip_certificate: Do not import any certificate.
        dependency_paths: Dependency packages to install alongside.

    Returns:
        InstallResult with the terminal outcome.

    Raises:
        ValidationError: If any input is invalid.
    """
    logger = context.logger
    artifact, certificate_path, cert_store, deps = _validate_inputs(
        artifact, certificate_path, cert_store, dependency_paths
    )
    if certificate_path is None and not skip_certificate:
        companion = artifact.with_suffix(".cer")
        if companion.is_file():
            certificate_path = companion

    manifest: PackageManifest | None = None
    thumbprint: str | None = None
    cert_installed = False
    rolled_back = False
    warnings: list[str] = []

    try:
        logger.step(1, 5, "Validating package...")
        manifest = read_manifest(artifact)
        if not allow_unsigned:
            trust_pending = certificate_path is not None and not skip_certificate
            problem = _signature_problem(artifact, context, trust_pending)
            if problem is not None:
                if not force:
                    raise ValidationError(
                        f"{problem}. Sign it, pass allow_unsigned, or pass force."
                    )
                warnings.append(problem)
                logger.warning("INSTALL", f"{problem}; continuing because of force")

        logger.step(2, 5, "Checking installed packages...")
        _detect_existing(manifest, context, force)

        logger.step(3, 5, "Installing certificate...")
        if skip_certificate or certificate_path is None:
            logger.verbose("INSTALL", "No certificate to install")
        else:
            thumbprint = certificate_thumbprint(certificate_path)
            if context.certificates.exists(thumbprint, cert_store):
                logger.verbose("INSTALL", f"Certificate {thumbprint} already trusted")
            else:
                context.certificates.import_certificate(certificate_path, cert_store)
                cert_installed = True
                logger.verbose("INSTALL", f"[OK] Imported certificate {thumbprint}")

        logger.step(4, 5, "Installing package...")
        try:
            context.registry.add_package(
                artifact,
                dependency_paths=deps,
                force=force,
                allow_unsigned=allow_unsigned,
            )
        except AppxKitError:
            if cert_installed and thumbprint is not None:
                rolled_back = _rollback_certificate(context, thumbprint, cert_store, warnings)
            raise

        logger.step(5, 5, "Verifying installation...")
        verified = any(
            pkg.version == manifest.version for pkg in context.registry.find(manifest.name)
        )
        if not verified:
            message = f"{manifest.name} {manifest.version} not found after installation"
            warnings.append(message)
            logger.warning("INSTALL", message)

    except StateConflictError as err:
        logger.verbose("INSTALL", str(err))
        return InstallResult(
            outcome=InstallOutcome.ALREADY_INSTALLED,
            artifact_path=artifact,
            package_name=manifest.name if manifest else "",
            version=manifest.version if manifest else "",
            reason=str(err),
            warnings=tuple(warnings),
        )
    except ValidationError:
        raise
    except AppxKitError as err:
        details = _failure_details(err)
        info = classify_hresult(details)
        reason = details
        if info is not None:
            reason = f"{details}\n{info.symbol} ({info.code:#010x}): {info.hint}"
        logger.error("INSTALL", f"Installation failed: {err}")
        return InstallResult(
            outcome=InstallOutcome.FAILED,
            artifact_path=artifact,
            package_name=manifest.name if manifest else "",
            version=manifest.version if manifest else "",
            reason=reason,
            error_category=info.category if info else None,
            certificate_thumbprint=thumbprint,
            certificate_installed=cert_installed,
            certificate_rolled_back=rolled_back,
            warnings=tuple(warnings),
        )

    logger.verbose("INSTALL", f"[OK] Installed {manifest.name} {manifest.version}")
    return InstallResult(
        outcome=InstallOutcome.SUCCESS,
        artifact_path=artifact,
        package_name=manifest.name,
        version=manifest.version,
        certificate_thumbprint=thumbprint,
        certificate_installed=cert_installed,
        verified=verified,
        warnings=tuple(warnings),
    )


def _rollback_certificate(
    context: AppContext, thumbprint: str, store: str, warnings: list[str]
) -> bool:
    """Remove a certificate imported in this run; report if it fails."""
    try:
        removed = context.certificates.remove(thumbprint, store)
    except AppxKitError as err:
        message = f"Could not roll back certificate {thumbprint}: {err}"
        warnings.append(message)
        context.logger.warning("INSTALL", message)
        return False
    context.logger.verbose("INSTALL", f"Rolled back certificate {thumbprint}")
    return removed


def install_from_archive(
    archive: Path,
    *,
    context: AppContext,
    cert_store: str = "LocalMachine\\TrustedPeople",
    force: bool = False,
    allow_unsigned: bool = False,
    extract_dir: Path | None = None,
) -> ArchiveInstallResult:
    """Install every package in a dependency archive.

    Certificates from the archive are imported first, then packages are
    installed in the archive's installation order. Packages already present
    are skipped. Installation stops at the first failure, and certificates
    imported by this run are removed again.

    Args:
        archive: Dependency archive (.zip).
        context: Service context.
        cert_store: Store that receives the certificates.
        force: Reinstall packages that are already present.
        allow_unsigned: Permit unsigned packages.
        extract_dir: Extraction directory (default: a temporary directory
            removed afterwards).

    Returns:
        ArchiveInstallResult with one InstallResult per attempted package.

    Raises:
        ValidationError: If inputs are invalid.
        ParseError: If the archive is malformed.
        CertificateError: If a certificate cannot be imported.
    """
    cert_store = validate_store_location(cert_store)
    if extract_dir is None:
        with tempfile.TemporaryDirectory(prefix="appxkit-") as tmp:
            return _install_archive(
                archive, Path(tmp), context, cert_store, force, allow_unsigned
            )
    return _install_archive(archive, extract_dir, context, cert_store, force, allow_unsigned)


def _install_archive(
    archive: Path,
    extract_dir: Path,
    context: AppContext,
    cert_store: str,
    force: bool,
    allow_unsigned: bool,
) -> ArchiveInstallResult:
    logger = context.logger
    contents = read_dependency_archive(archive, extract_dir)

    imported: list[str] = []
    results: list[InstallResult] = []
    try:
        for cer in contents.certificates:
            thumbprint = certificate_thumbprint(cer)
            if context.certificates.exists(thumbprint, cert_store):
                continue
            context.certificates.import_certificate(cer, cert_store)
            imported.append(thumbprint)
            logger.verbose("INSTALL", f"[OK] Imported certificate {cer.name}")

        for entry in contents.installation_order:
            logger.verbose("INSTALL", f"Installing {entry.name} {entry.version}")
            result = install_package(
                entry.file,
                context=context,
                cert_store=cert_store,
                force=force,
                allow_unsigned=allow_unsigned,
                skip_certificate=True,
            )
            results.append(result)
            if result.outcome is InstallOutcome.FAILED:
                break
    except AppxKitError:
        _rollback_all(context, imported, cert_store)
        raise

    if any(r.outcome is InstallOutcome.FAILED for r in results):
        _rollback_all(context, imported, cert_store)

    return ArchiveInstallResult(
        archive_path=contents.path,
        results=tuple(results),
        certificates_installed=tuple(imported),
    )


def _rollback_all(context: AppContext, thumbprints: list[str], store: str) -> None:
    for thumbprint in thumbprints:
        _rollback_certificate(context, thumbprint, store, [])
