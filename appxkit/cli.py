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

"""Command-line interface for AppxKit.

This module provides the main CLI entry point for the appxkit tool, offering
commands for backing up, signing, inspecting and restoring Windows
APPX/MSIX packages.

Commands:

    backup: Pack a layout directory (optionally certify and sign it)
    install: Install a package or a dependency archive (alias: restore)
    create-certificate: Create a code-signing certificate and export it
    validate-integrity: Check a package's structure and block hashes
    get-info: Show a package's identity, dependencies and capabilities
    export-dependencies: Bundle a package with its dependency packages
    test-compatibility: Check whether a package can be installed here
    locate-tool: Show where MakeAppx, SignTool or PowerShell was found

Example:
    Back up and sign a package layout:
        ```bash
        $ appxkit backup layout/MyApp backups/MyApp.msix --create-certificate --sign
        ```

    Restore it on another machine:
        ```bash
        $ appxkit restore backups/MyApp.msix
        ```

    Enable verbose output:
        ```bash
        $ appxkit get-info backups/MyApp.msix --resolve --verbose
        ```

Exit Codes:

- 0: Success
- 1: Error (validation, tool, or deployment failure)

Note:
    The CLI uses argparse for command parsing. Each command has its own
    handler function (cmd_<command>). Verbose mode shows full tracebacks on
    errors for debugging. Debug mode implies verbose mode and shows tool
    command lines and configuration dumps.

"""

from __future__ import annotations

import argparse
from importlib.metadata import PackageNotFoundError, version
import os
from pathlib import Path
import sys
from typing import Sequence

from appxkit import core
from appxkit.build import backup_package
from appxkit.config import load_effective_config
from appxkit.context import AppContext, create_context
from appxkit.exceptions import AppxKitError
from appxkit.install import install_from_archive, install_package
from appxkit.logging import LogFileSink, get_logger, set_global_logger
from appxkit.results import InstallOutcome, InstallResult
from appxkit.tools.locator import TOOL_EXECUTABLES

PASSWORD_ENV_VAR = "APPXKIT_PFX_PASSWORD"


def _setup(args: argparse.Namespace) -> AppContext:
    """Load configuration, configure the global logger and build a context."""
    config = load_effective_config(Path(args.config) if args.config else None)
    log_cfg = config["logging"]
    sink = None
    if log_cfg["enabled"] and log_cfg["dir"]:
        sink = LogFileSink(
            Path(log_cfg["dir"]),
            max_bytes=log_cfg["max_bytes"],
            backup_count=log_cfg["backup_count"],
        )
    logger = get_logger(verbose=args.verbose, debug=args.debug, sink=sink)
    set_global_logger(logger)
    return create_context(config, logger)


def _print_error(err: Exception, args: argparse.Namespace) -> int:
    print(f"Error: {err}")
    if args.verbose or args.debug:
        import traceback

        traceback.print_exc()
    return 1


def _password(args: argparse.Namespace) -> str | None:
    return args.pfx_password or os.environ.get(PASSWORD_ENV_VAR)


def cmd_backup(args: argparse.Namespace) -> int:
    """Handler for 'appxkit backup' command.

    Packs a layout directory (or an installed package's install location)
    into an .appx/.msix, optionally creating a certificate and signing.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    print(f"Backing up: {args.source}")
    print(f"Output:     {Path(args.output).resolve()}")
    print()

    try:
        ctx = _setup(args)
        result = backup_package(
            args.source,
            Path(args.output),
            context=ctx,
            resolve=args.resolve,
            create_certificate=args.create_certificate,
            sign=args.sign,
            thumbprint=args.thumbprint,
            certificate_subject=args.subject,
            validity_years=args.validity_years,
            key_length=args.key_length,
            export_pfx=args.export_pfx,
            pfx_password=_password(args) if args.export_pfx else None,
            timestamp_url=args.timestamp_url,
            compression=args.compression,
            overwrite=args.force,
        )
    except AppxKitError as err:
        return _print_error(err, args)

    print()
    print("=" * 70)
    print("BACKUP RESULTS")
    print("=" * 70)
    print(f"Package:      {result.package_name}")
    print(f"Version:      {result.version} ({result.architecture})")
    print(f"Publisher:    {result.publisher}")
    print(f"Artifact:     {result.artifact_path}")
    print(f"Size:         {result.size_bytes:,} bytes")
    print(f"SHA-256:      {result.sha256}")
    print(f"Signed:       {'yes' if result.signed else 'no'}")
    if result.thumbprint:
        print(f"Thumbprint:   {result.thumbprint}")
    if result.certificate_path:
        print(f"Certificate:  {result.certificate_path}")
    if result.pfx_path:
        print(f"PFX:          {result.pfx_path}")
    if result.resolution is not None:
        r = result.resolution
        print(
            f"Dependencies: {r.total_dependencies} declared, "
            f"{r.installed_count} installed, {r.missing_count} missing"
        )
    print(f"Status:       {result.status}")
    print("=" * 70)
    print()
    print("[SUCCESS] Backup created successfully!")
    return 0


def _print_install_result(result: InstallResult) -> None:
    print(f"Package:      {result.package_name or result.artifact_path.name}")
    if result.version:
        print(f"Version:      {result.version}")
    print(f"Outcome:      {result.outcome.value}")
    if result.certificate_thumbprint:
        state = "imported" if result.certificate_installed else "already trusted"
        if result.certificate_rolled_back:
            state = "rolled back"
        print(f"Certificate:  {result.certificate_thumbprint} ({state})")
    if result.error_category is not None:
        print(f"Category:     {result.error_category.value}")
    if result.reason and result.outcome is not InstallOutcome.SUCCESS:
        print(f"Reason:       {result.reason}")
    for warning in result.warnings:
        print(f"  [WARNING] {warning}")


def cmd_install(args: argparse.Namespace) -> int:
    """Handler for 'appxkit install' (and 'restore') command.

    Installs a package artifact, or every package in a dependency archive
    when given a .zip.

    Returns:
        Exit code (0 for success or already installed, 1 for failure).
    """
    package = Path(args.package)
    print(f"Installing: {package.resolve()}")
    print()

    try:
        ctx = _setup(args)
        cert_store = args.cert_store or ctx.section("certificate")["trust_store"]
        if package.suffix.lower() == ".zip":
            archive_result = install_from_archive(
                package,
                context=ctx,
                cert_store=cert_store,
                force=args.force,
                allow_unsigned=args.allow_unsigned,
            )
            results = archive_result.results
        else:
            results = (
                install_package(
                    package,
                    context=ctx,
                    certificate_path=Path(args.certificate) if args.certificate else None,
                    cert_store=cert_store,
                    force=args.force,
                    allow_unsigned=args.allow_unsigned,
                    skip_certificate=args.skip_certificate,
                    dependency_paths=[Path(p) for p in args.dependency],
                ),
            )
    except AppxKitError as err:
        return _print_error(err, args)

    print()
    print("=" * 70)
    print("INSTALL RESULTS")
    print("=" * 70)
    for index, result in enumerate(results):
        if index:
            print("-" * 70)
        _print_install_result(result)
    print("=" * 70)
    print()

    failed = [r for r in results if r.outcome is InstallOutcome.FAILED]
    if failed:
        print(f"[FAILED] {len(failed)} package(s) failed to install.")
        return 1
    if all(r.outcome is InstallOutcome.ALREADY_INSTALLED for r in results):
        print("[SUCCESS] Already installed; nothing to do.")
    else:
        print("[SUCCESS] Installation completed successfully!")
    return 0


def cmd_create_certificate(args: argparse.Namespace) -> int:
    """Handler for 'appxkit create-certificate' command."""
    try:
        ctx = _setup(args)
        result = core.create_certificate(
            args.subject,
            Path(args.output_dir),
            context=ctx,
            name=args.name,
            validity_years=args.validity_years,
            key_length=args.key_length,
            export_pfx=args.export_pfx,
            password=_password(args) if args.export_pfx else None,
            overwrite=args.force,
        )
    except AppxKitError as err:
        return _print_error(err, args)

    cert = result.certificate
    print()
    print("=" * 70)
    print("CERTIFICATE")
    print("=" * 70)
    print(f"Subject:      {cert.subject}")
    print(f"Thumbprint:   {cert.thumbprint}")
    print(f"Valid From:   {cert.not_before:%Y-%m-%d %H:%M} UTC")
    print(f"Valid To:     {cert.not_after:%Y-%m-%d %H:%M} UTC")
    print(f"Key Length:   {cert.key_length}")
    print(f"Store:        {cert.store_location}")
    print(f"CER:          {result.cer_path}")
    if result.pfx_path:
        print(f"PFX:          {result.pfx_path}")
    print("=" * 70)
    print()
    print("[SUCCESS] Certificate created successfully!")
    return 0


def cmd_validate_integrity(args: argparse.Namespace) -> int:
    """Handler for 'appxkit validate-integrity' command."""
    try:
        ctx = _setup(args)
        result = core.validate_integrity(
            Path(args.package), verify_signature=args.verify_signature, context=ctx
        )
    except AppxKitError as err:
        return _print_error(err, args)

    print("=" * 70)
    print("INTEGRITY RESULTS")
    print("=" * 70)
    print(f"Package:        {result.path}")
    print(f"Manifest:       {'ok' if result.has_manifest else 'missing/invalid'}")
    print(f"Block Map:      {'present' if result.has_block_map else 'missing'}")
    print(f"Content Types:  {'present' if result.has_content_types else 'missing'}")
    print(f"Signature:      {'present' if result.has_signature else 'none'}")
    if result.signature_valid is not None:
        print(f"Signature OK:   {'yes' if result.signature_valid else 'no'}")
    print(f"Files Checked:  {result.files_checked}")
    print(f"Blocks Checked: {result.blocks_checked}")
    print()
    if result.warnings:
        print(f"Warnings ({len(result.warnings)}):")
        for warning in result.warnings:
            print(f"  [WARNING] {warning}")
        print()
    if result.issues:
        print(f"Issues ({len(result.issues)}):")
        for issue in result.issues:
            print(f"  [X] {issue}")
        print()
    print("=" * 70)
    print()

    if result.is_valid:
        print("[SUCCESS] Package integrity verified!")
        return 0
    print(f"[FAILED] Package has {len(result.issues)} integrity issue(s).")
    return 1


def cmd_get_info(args: argparse.Namespace) -> int:
    """Handler for 'appxkit get-info' command."""
    try:
        ctx = _setup(args)
        result = core.get_package_info(Path(args.path), resolve=args.resolve, context=ctx)
    except AppxKitError as err:
        return _print_error(err, args)

    m = result.manifest
    print("=" * 70)
    print("PACKAGE INFO")
    print("=" * 70)
    print(f"Name:           {m.name}")
    print(f"Display Name:   {m.display_name or '-'}")
    print(f"Publisher:      {m.publisher}")
    print(f"Version:        {m.version}")
    print(f"Architecture:   {m.architecture}")
    print(f"Family Name:    {m.family_name}")
    print(f"Framework:      {'yes' if m.is_framework else 'no'}")
    if result.sha256:
        print(f"Size:           {result.size_bytes:,} bytes")
        print(f"SHA-256:        {result.sha256}")
        print(f"Signed:         {'yes' if result.has_signature else 'no'}")
    for tdf in m.target_device_families:
        print(f"Target:         {tdf.name} >= {tdf.min_version}")
    if m.capabilities:
        print(f"Capabilities:   {', '.join(m.capabilities)}")
    print()
    print(f"Dependencies ({len(m.dependencies)}):")
    if result.resolution is not None:
        for dep in (*result.resolution.dependencies, *result.resolution.transitive):
            indent = "  " * dep.depth
            found = dep.installed_version or "-"
            print(
                f"{indent}{dep.name} >= {dep.min_version} "
                f"[{dep.status.value}, installed: {found}]"
            )
    else:
        for dep in m.dependencies:
            optional = " (optional)" if dep.optional else ""
            print(f"  {dep.name} >= {dep.min_version}{optional}")
    print("=" * 70)
    return 0


def cmd_export_dependencies(args: argparse.Namespace) -> int:
    """Handler for 'appxkit export-dependencies' command."""
    try:
        _setup(args)
        result = core.export_dependencies(
            Path(args.package),
            Path(args.output),
            [Path(s) for s in args.source],
            certificate_files=[Path(c) for c in args.certificate],
            include_optional=args.include_optional,
            overwrite=args.force,
        )
    except AppxKitError as err:
        return _print_error(err, args)

    print("=" * 70)
    print("DEPENDENCY ARCHIVE")
    print("=" * 70)
    print(f"Archive:        {result.archive_path}")
    print(f"Package:        {result.package_name}")
    print(f"Packaged:       {len(result.packaged)}")
    print(f"Certificates:   {len(result.certificate_files)}")
    print("Install Order:")
    for index, name in enumerate(result.installation_order, start=1):
        print(f"  {index}. {name}")
    for warning in result.warnings:
        print(f"  [WARNING] {warning}")
    if result.missing:
        print(f"Missing ({len(result.missing)}):")
        for name in result.missing:
            print(f"  [X] {name}")
    print("=" * 70)
    print()

    if result.missing:
        print(f"[FAILED] {len(result.missing)} dependency package(s) not found.")
        return 1
    print("[SUCCESS] Dependency archive created successfully!")
    return 0


def cmd_test_compatibility(args: argparse.Namespace) -> int:
    """Handler for 'appxkit test-compatibility' command."""
    try:
        ctx = _setup(args)
        result = core.test_compatibility(
            Path(args.path),
            os_version=args.os_version,
            host_architecture=args.architecture,
            context=ctx,
            resolve=not args.no_resolve,
        )
    except AppxKitError as err:
        return _print_error(err, args)

    print("=" * 70)
    print("COMPATIBILITY RESULTS")
    print("=" * 70)
    print(f"Package:        {result.path}")
    print(f"Architecture:   {result.package_architecture} (host: {result.host_architecture})")
    print(f"Min OS:         {result.min_os_version or '-'} (host: {result.os_version or 'unknown'})")
    print(f"Device Families: {', '.join(result.device_families) or '-'}")
    print()
    for warning in result.warnings:
        print(f"  [WARNING] {warning}")
    for issue in result.issues:
        print(f"  [X] {issue}")
    print("=" * 70)
    print()

    if result.is_compatible:
        print("[SUCCESS] Package is compatible with this host.")
        return 0
    print(f"[FAILED] Package is not compatible ({len(result.issues)} issue(s)).")
    return 1


def cmd_locate_tool(args: argparse.Namespace) -> int:
    """Handler for 'appxkit locate-tool' command."""
    try:
        ctx = _setup(args)
        location = core.locate_tool(args.tool, refresh=args.refresh, context=ctx)
    except AppxKitError as err:
        return _print_error(err, args)

    if location is None:
        print(f"[FAILED] {args.tool} not found.")
        return 1
    print(f"{location.tool_id}: {location.path} ({location.method})")
    return 0


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show progress and high-level status updates",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Show detailed debugging output (implies --verbose)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Configuration file (default: appxkit.yaml found upward from cwd)",
    )


def _add_certificate_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--validity-years",
        type=int,
        default=None,
        help="Certificate lifetime in years, 1-10 (default: from config)",
    )
    parser.add_argument(
        "--key-length",
        type=int,
        default=None,
        choices=[2048, 3072, 4096],
        help="RSA key size (default: from config)",
    )
    parser.add_argument(
        "--export-pfx",
        action="store_true",
        help="Also export the private key as a password-protected .pfx",
    )
    parser.add_argument(
        "--pfx-password",
        default=None,
        help=f"PFX password (default: ${PASSWORD_ENV_VAR})",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all commands."""
    try:
        pkg_version = version("appxkit")
    except PackageNotFoundError:
        from appxkit import __version__ as pkg_version

    parser = argparse.ArgumentParser(
        prog="appxkit",
        description="AppxKit - back up, sign and restore Windows APPX/MSIX packages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"appxkit {pkg_version}",
    )
    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands",
        required=True,
    )

    # 'backup' command
    parser_backup = subparsers.add_parser(
        "backup",
        help="Pack a package layout into an .appx/.msix",
        description="Pack a layout directory or installed package, optionally creating a certificate and signing.",
    )
    parser_backup.add_argument(
        "source", help="Layout directory, or the name of an installed package"
    )
    parser_backup.add_argument("output", help="Destination .appx/.msix path")
    parser_backup.add_argument(
        "--resolve",
        action="store_true",
        help="Check declared dependencies against installed packages",
    )
    parser_backup.add_argument(
        "--create-certificate",
        action="store_true",
        help="Create a self-signed certificate and export its .cer beside the artifact",
    )
    parser_backup.add_argument(
        "--sign", action="store_true", help="Sign the artifact after packing"
    )
    parser_backup.add_argument(
        "--thumbprint", default=None, help="Sign with an existing certificate"
    )
    parser_backup.add_argument(
        "--subject",
        default=None,
        help="Subject of a created certificate (default: manifest Publisher)",
    )
    parser_backup.add_argument(
        "--timestamp-url", default=None, help="RFC 3161 timestamp server"
    )
    parser_backup.add_argument(
        "--compression",
        choices=["default", "none"],
        default="default",
        help="Artifact compression (default: default)",
    )
    parser_backup.add_argument(
        "--force", action="store_true", help="Overwrite existing output files"
    )
    _add_certificate_options(parser_backup)
    _add_common(parser_backup)
    parser_backup.set_defaults(func=cmd_backup)

    # 'install' command
    parser_install = subparsers.add_parser(
        "install",
        aliases=["restore"],
        help="Install a package or dependency archive",
        description="Install an .appx/.msix (importing its certificate first) or every package in a dependency archive (.zip).",
    )
    parser_install.add_argument("package", help="Package artifact or dependency archive")
    parser_install.add_argument(
        "--certificate",
        default=None,
        help="Certificate to trust (default: <package>.cer if present)",
    )
    parser_install.add_argument(
        "--cert-store",
        default=None,
        help="Store receiving the certificate (default: certificate.trust_store)",
    )
    parser_install.add_argument(
        "--dependency",
        action="append",
        default=[],
        help="Dependency package to install alongside (repeatable)",
    )
    parser_install.add_argument(
        "--force", action="store_true", help="Reinstall even if already installed"
    )
    parser_install.add_argument(
        "--allow-unsigned", action="store_true", help="Permit unsigned packages"
    )
    parser_install.add_argument(
        "--skip-certificate", action="store_true", help="Do not import any certificate"
    )
    _add_common(parser_install)
    parser_install.set_defaults(func=cmd_install)

    # 'create-certificate' command
    parser_cert = subparsers.add_parser(
        "create-certificate",
        help="Create a code-signing certificate",
        description="Create a self-signed code-signing certificate and export it as .cer (and optionally .pfx).",
    )
    parser_cert.add_argument("subject", help="Subject DN, e.g. 'CN=Contoso'")
    parser_cert.add_argument(
        "--output-dir", default=".", help="Directory for exported files (default: .)"
    )
    parser_cert.add_argument(
        "--name", default=None, help="File name stem (default: from the subject CN)"
    )
    parser_cert.add_argument(
        "--force", action="store_true", help="Overwrite existing files"
    )
    _add_certificate_options(parser_cert)
    _add_common(parser_cert)
    parser_cert.set_defaults(func=cmd_create_certificate)

    # 'validate-integrity' command
    parser_integrity = subparsers.add_parser(
        "validate-integrity",
        help="Validate a package's structure and block hashes",
    )
    parser_integrity.add_argument("package", help="Package artifact")
    parser_integrity.add_argument(
        "--verify-signature",
        action="store_true",
        help="Also verify the signature with SignTool",
    )
    _add_common(parser_integrity)
    parser_integrity.set_defaults(func=cmd_validate_integrity)

    # 'get-info' command
    parser_info = subparsers.add_parser(
        "get-info",
        help="Show package identity and dependencies",
    )
    parser_info.add_argument("path", help="Package artifact, layout directory or manifest")
    parser_info.add_argument(
        "--resolve",
        action="store_true",
        help="Resolve dependencies against installed packages",
    )
    _add_common(parser_info)
    parser_info.set_defaults(func=cmd_get_info)

    # 'export-dependencies' command
    parser_export = subparsers.add_parser(
        "export-dependencies",
        help="Bundle a package with its dependency packages",
    )
    parser_export.add_argument("package", help="Main package artifact")
    parser_export.add_argument("output", help="Destination .zip")
    parser_export.add_argument(
        "--source",
        action="append",
        default=[],
        help="Directory or artifact to search for dependencies (repeatable)",
    )
    parser_export.add_argument(
        "--certificate",
        action="append",
        default=[],
        help="Certificate file to include (repeatable)",
    )
    parser_export.add_argument(
        "--include-optional",
        action="store_true",
        help="Also bundle optional dependencies",
    )
    parser_export.add_argument(
        "--force", action="store_true", help="Overwrite an existing archive"
    )
    _add_common(parser_export)
    parser_export.set_defaults(func=cmd_export_dependencies)

    # 'test-compatibility' command
    parser_compat = subparsers.add_parser(
        "test-compatibility",
        help="Check whether a package can be installed on this host",
    )
    parser_compat.add_argument("path", help="Package artifact, layout directory or manifest")
    parser_compat.add_argument(
        "--os-version", default=None, help="Host OS version (default: this machine)"
    )
    parser_compat.add_argument(
        "--architecture",
        default=None,
        help="Host architecture (default: this machine)",
    )
    parser_compat.add_argument(
        "--no-resolve",
        action="store_true",
        help="Skip the installed-dependency check",
    )
    _add_common(parser_compat)
    parser_compat.set_defaults(func=cmd_test_compatibility)

    # 'locate-tool' command
    parser_locate = subparsers.add_parser(
        "locate-tool",
        help="Show where an external tool was found",
    )
    parser_locate.add_argument("tool", choices=sorted(TOOL_EXECUTABLES))
    parser_locate.add_argument(
        "--refresh", action="store_true", help="Ignore cached locations"
    )
    _add_common(parser_locate)
    parser_locate.set_defaults(func=cmd_locate_tool)

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point for the appxkit CLI.

    This function is registered as the 'appxkit' console script in pyproject.toml.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Call the appropriate command handler
    exit_code = args.func(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
