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

"""Backup orchestration for AppxKit.

This module turns a package layout (or an installed package) into a
restorable artifact: it reads the manifest, optionally checks dependencies,
packs the artifact, optionally creates a signing certificate, and optionally
signs the artifact.

Stages (selected stages only, numbered up front):
    1. Validate inputs
    2. Read manifest
    3. Resolve dependencies (resolve=True)
    4. Pack artifact
    5. Create certificate and export .cer/.pfx beside the artifact
       (create_certificate=True)
    6. Sign artifact (sign=True)

Failure Semantics:
    - A failure during or before packing leaves nothing at the output path
    - A failure after packing (certificate, signing) keeps the complete
      unsigned artifact and propagates the error

Design Principles:
    - The certificate subject defaults to the manifest Publisher, which the
      signature must match
    - Every argument combination is validated before any work starts, so
      an invalid request never produces a partial artifact

Example:
    ```python
    from pathlib import Path
    from appxkit.build import backup_package
    from appxkit.context import create_context

    result = backup_package(
        Path("layout/MyApp"),
        Path("backups/MyApp.msix"),
        context=create_context(),
        create_certificate=True,
        sign=True,
    )
    print(result.artifact_path, result.thumbprint)
    ```
"""

from __future__ import annotations

from pathlib import Path

from appxkit.build.packager import COMPRESSION_ARGS, file_sha256, pack_package
from appxkit.build.signer import check_timestamp_server, sign_package
from appxkit.certificates.manager import SigningCertificate
from appxkit.context import AppContext
from appxkit.dependencies.registry import InstalledPackage
from appxkit.dependencies.resolver import resolve_dependencies
from appxkit.exceptions import AppxKitError, ValidationError
from appxkit.manifest.reader import read_manifest
from appxkit.results import BackupResult, ResolutionReport
from appxkit.validation import (
    PACKAGE_SUFFIXES,
    validate_key_length,
    validate_output_path,
    validate_package_name,
    validate_password,
    validate_path,
    validate_subject,
    validate_thumbprint,
    validate_validity_years,
)
from appxkit.versioning import PackageVersion


def _resolve_source(source: Path | str, context: AppContext) -> Path:
    """Map a layout directory or an installed package name to a directory.

    Raises:
        ValidationError: If the source is neither an existing directory nor
            the name of an installed package with an install location.
    """
    candidate = Path(source)
    if candidate.is_dir():
        return validate_path(candidate, label="Source directory", kind="dir")

    name = validate_package_name(str(source))
    installed: tuple[InstalledPackage, ...] = context.registry.find(name)
    located = [p for p in installed if p.install_location is not None]
    if not located:
        raise ValidationError(
            f"Source is neither a directory nor an installed package: {source}"
        )
    newest = max(located, key=lambda p: PackageVersion.parse(p.version))
    context.logger.verbose(
        "BACKUP", f"Using installed package {newest.name} {newest.version}"
    )
    return validate_path(
        Path(str(newest.install_location)), label="Install location", must_exist=True, kind="dir"
    )


def _discard_certificate(
    context: AppContext, cert: SigningCertificate, cer_path: Path
) -> None:
    """Remove a certificate created by a backup whose export failed."""
    logger = context.logger
    logger.warning("BACKUP", f"Export failed; removing certificate {cert.thumbprint}")
    try:
        context.certificates.remove(cert.thumbprint, cert.store_location)
    except AppxKitError as err:
        logger.warning("BACKUP", f"Could not remove certificate {cert.thumbprint}: {err}")
    cer_path.unlink(missing_ok=True)


def _count_stages(resolve: bool, create_certificate: bool, sign: bool) -> int:
    return 3 + int(resolve) + int(create_certificate) + int(sign)


def backup_package(
    source: Path | str,
    output_path: Path,
    *,
    context: AppContext,
    resolve: bool = False,
    create_certificate: bool = False,
    sign: bool = False,
    thumbprint: str | None = None,
    certificate_subject: str | None = None,
    validity_years: int | None = None,
    key_length: int | None = None,
    export_pfx: bool = False,
    pfx_password: str | None = None,
    timestamp_url: str | None = None,
    compression: str = "default",
    overwrite: bool = False,
) -> BackupResult:
    """Pack (and optionally certify and sign) a package.

    Args:
        source: Layout directory, or the name of an installed package.
        output_path: Destination .appx/.msix path.
        context: Service context.
        resolve: Check declared dependencies against installed packages.
        create_certificate: Create a self-signed certificate and export
            its .cer next to the artifact.
        sign: Sign the artifact (needs create_certificate or thumbprint).
        thumbprint: Existing certificate to sign with.
        certificate_subject: Subject for a created certificate (default:
            the manifest Publisher).
        validity_years: Lifetime of a created certificate (default: config).
        key_length: Key size of a created certificate (default: config).
        export_pfx: Also export the private key as a .pfx.
        pfx_password: Password for the .pfx (required with export_pfx).
        timestamp_url: Timestamp server for signing (default: config).
        compression: "default" or "none".
        overwrite: Replace an existing artifact.

    Returns:
        BackupResult describing the artifact.

    Raises:
        ValidationError: If arguments are invalid or contradictory.
        ParseError: If the manifest cannot be read.
        ToolNotFoundError: If MakeAppx or SignTool is not installed.
        ExternalProcessError: If packing or signing fails.
        CertificateError: If certificate creation or export fails.
        NetworkError: If the timestamp server is unreachable.
    """
    logger = context.logger
    cert_cfg = context.section("certificate")
    total = _count_stages(resolve, create_certificate, sign)
    step = 0

    def next_step(message: str) -> None:
        nonlocal step
        step += 1
        logger.step(step, total, message)

    # Stage: validate
    next_step("Validating inputs...")
    if compression not in COMPRESSION_ARGS:
        raise ValidationError(f"Unsupported compression: {compression!r}")
    if thumbprint and create_certificate:
        raise ValidationError("Use either an existing thumbprint or create_certificate, not both")
    if sign and not (thumbprint or create_certificate):
        raise ValidationError("Signing needs a thumbprint or create_certificate=True")
    if thumbprint:
        thumbprint = validate_thumbprint(thumbprint)
    if export_pfx:
        if not create_certificate:
            raise ValidationError("export_pfx requires create_certificate=True")
        validate_password(pfx_password)
    years = validate_validity_years(
        cert_cfg["validity_years"] if validity_years is None else validity_years
    )
    bits = validate_key_length(
        cert_cfg["key_length"] if key_length is None else key_length
    )
    timestamp_url = timestamp_url or context.section("signing").get("timestamp_url")

    source_dir = _resolve_source(source, context)
    output_path = validate_output_path(
        output_path, overwrite=overwrite, suffixes=PACKAGE_SUFFIXES
    )
    cer_path = output_path.with_suffix(".cer")
    pfx_path = output_path.with_suffix(".pfx") if export_pfx else None
    if create_certificate:
        validate_output_path(cer_path, overwrite=overwrite, label="Certificate path")
        if pfx_path is not None:
            validate_output_path(pfx_path, overwrite=overwrite, label="PFX path")

    # Stage: manifest
    next_step("Reading manifest...")
    manifest = read_manifest(source_dir)
    logger.verbose(
        "BACKUP",
        f"{manifest.name} {manifest.version} ({manifest.architecture}) "
        f"by {manifest.publisher}",
    )
    subject = certificate_subject or manifest.publisher
    if create_certificate:
        subject = validate_subject(subject)
    if create_certificate and subject != manifest.publisher:
        if sign:
            raise ValidationError(
                f"Certificate subject {subject!r} does not match the manifest "
                f"Publisher {manifest.publisher!r}; the signature would be rejected"
            )
        logger.warning("BACKUP", "Certificate subject differs from the manifest Publisher")
    if sign and timestamp_url:
        check_timestamp_server(timestamp_url)

    # Stage: resolve
    resolution: ResolutionReport | None = None
    if resolve:
        next_step("Resolving dependencies...")
        dep_cfg = context.section("dependencies")
        resolution = resolve_dependencies(
            manifest,
            context.registry.snapshot(),
            recursive=dep_cfg["recursive"],
            include_optional=dep_cfg["include_optional"],
            max_depth=dep_cfg["max_depth"],
        )
        for dep in resolution.missing:
            logger.warning(
                "BACKUP",
                f"Dependency not installed: {dep.name} >= {dep.min_version} ({dep.reason})",
            )

    # Stage: pack (cleans up after itself on failure)
    next_step("Packing artifact...")
    artifact = pack_package(
        source_dir,
        output_path,
        compression=compression,
        overwrite=overwrite,
        locator=context.locator,
        timeout=context.timeout("pack"),
    )

    # Stages after pack keep the unsigned artifact on failure
    created_pfx: Path | None = None
    created_cer: Path | None = None
    try:
        if create_certificate:
            next_step("Creating signing certificate...")
            cert = context.certificates.create(subject, validity_years=years, key_length=bits)
            thumbprint = cert.thumbprint
            try:
                created_cer = context.certificates.export(cert, cer_path)
                if pfx_path is not None:
                    created_pfx = context.certificates.export(
                        cert, pfx_path, include_private_key=True, password=pfx_password
                    )
            except AppxKitError:
                _discard_certificate(context, cert, cer_path)
                raise

        if sign:
            next_step("Signing artifact...")
            sign_package(
                artifact.path,
                str(thumbprint),
                store_location=context.certificates.store_location,
                timestamp_url=timestamp_url,
                locator=context.locator,
                timeout=context.timeout("sign"),
            )
    except AppxKitError:
        logger.warning("BACKUP", f"Unsigned package kept at {artifact.path}")
        raise

    size = artifact.path.stat().st_size
    logger.verbose("BACKUP", f"[OK] Backup complete: {artifact.path}")

    return BackupResult(
        package_name=manifest.name,
        version=manifest.version,
        architecture=manifest.architecture,
        publisher=manifest.publisher,
        artifact_path=artifact.path,
        sha256=file_sha256(artifact.path) if sign else artifact.sha256,
        size_bytes=size,
        signed=sign,
        thumbprint=thumbprint,
        certificate_path=created_cer,
        pfx_path=created_pfx,
        resolution=resolution,
        status="success",
    )
