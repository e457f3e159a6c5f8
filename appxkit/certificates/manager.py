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

"""Code-signing certificate lifecycle for AppxKit.

Certificates are created, exported, imported and removed through the
PowerShell PKI module (New-SelfSignedCertificate, Export-Certificate,
Export-PfxCertificate, Import-Certificate). AppxKit itself holds only the
thumbprint of a created certificate; the key material stays in the
Windows certificate store until explicitly exported.

Design Principles:
    - Validity window is ``[now - 1 day, now + validity_years]`` so a freshly
      signed package is valid immediately on machines with clock skew
    - Every certificate created in a run carries a unique FriendlyName tag;
      if creation fails midway, store entries with that tag are removed
    - PFX passwords travel to PowerShell in an environment variable, never
      on the command line
    - Exported .pfx files are restricted to the current user; if that
      cannot be done the file is deleted and the error propagates

Example:
    ```python
    from pathlib import Path
    from appxkit.certificates import CertificateManager

    manager = CertificateManager(runner)
    cert = manager.create("CN=Contoso Software", validity_years=2)
    manager.export(cert, Path("out/Contoso.cer"))
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import getpass
import hashlib
import os
from pathlib import Path
import ssl
import sys
import uuid

from appxkit.exceptions import AppxKitError, CertificateError, ParseError
from appxkit.tools.powershell import PowerShellRunner, ps_quote
from appxkit.tools.process import run_process
from appxkit.validation import (
    validate_key_length,
    validate_password,
    validate_store_location,
    validate_subject,
    validate_thumbprint,
    validate_validity_years,
)

# Code signing extended key usage and empty basic constraints (end entity)
_TEXT_EXTENSIONS = (
    "'2.5.29.37={text}1.3.6.1.5.5.7.3.3'",
    "'2.5.29.19={text}'",
)
_PASSWORD_ENV = "APPXKIT_PFX_PASSWORD"
_TAG_PREFIX = "appxkit-"


@dataclass(frozen=True)
class SigningCertificate:
    """Reference to a code-signing certificate in a certificate store.

    Attributes:
        subject: Subject distinguished name (must equal the package Publisher).
        thumbprint: SHA-1 thumbprint, upper case.
        not_before: Start of validity (UTC).
        not_after: End of validity (UTC).
        key_length: RSA key size in bits.
        store_location: Store holding the private key (e.g., "CurrentUser\\My").
    """

    subject: str
    thumbprint: str
    not_before: datetime
    not_after: datetime
    key_length: int
    store_location: str


def compute_validity_window(
    validity_years: int, now: datetime | None = None
) -> tuple[datetime, datetime]:
    """Compute the validity window of a new certificate.

    Args:
        validity_years: Lifetime in whole years (1-10).
        now: Reference time (default: current UTC time).

    Returns:
        (not_before, not_after) with ``not_before < now <= not_after``.
        A February 29 start maps to February 28 in a non-leap end year.
    """
    validate_validity_years(validity_years)
    now = now or datetime.now(UTC)
    not_before = now - timedelta(days=1)
    try:
        not_after = now.replace(year=now.year + validity_years)
    except ValueError:
        not_after = now.replace(year=now.year + validity_years, day=28)
    return not_before, not_after


def certificate_thumbprint(path: Path) -> str:
    """Compute the SHA-1 thumbprint of a certificate file.

    Args:
        path: A .cer file in DER or PEM encoding.

    Returns:
        The upper-case hex thumbprint, as shown by the certificate store.

    Raises:
        ParseError: If the file is PEM but not a valid certificate block.
    """
    data = path.read_bytes()
    if data.lstrip().startswith(b"-----BEGIN"):
        try:
            data = ssl.PEM_cert_to_DER_cert(data.decode("ascii").strip())
        except (ValueError, UnicodeDecodeError) as err:
            raise ParseError(f"Invalid PEM certificate {path}: {err}") from err
    return hashlib.sha1(data).hexdigest().upper()


def restrict_to_owner(path: Path) -> None:
    """Restrict a file to the current user.

    Uses ``icacls /inheritance:r /grant:r <user>:F`` on Windows and mode
    0600 elsewhere. If the restriction fails, the file is deleted.

    Raises:
        CertificateError: If permissions could not be restricted.
    """
    try:
        if sys.platform == "win32":
            user = os.environ.get("USERNAME") or getpass.getuser()
            run_process(
                ["icacls", str(path), "/inheritance:r", "/grant:r", f"{user}:F"],
                timeout=60,
                tool_name="icacls",
            )
        else:
            os.chmod(path, 0o600)
    except (AppxKitError, OSError) as err:
        path.unlink(missing_ok=True)
        raise CertificateError(
            f"Could not restrict access to {path}; the file was deleted: {err}"
        ) from err


def _cert_path(store: str, thumbprint: str | None = None) -> str:
    base = f"Cert:\\{store}"
    return f"{base}\\{thumbprint}" if thumbprint else base


class CertificateManager:
    """Creates and manages code-signing certificates through PowerShell.

    Attributes:
        runner: PowerShell runner.
        store_location: Store receiving newly created certificates.
    """

    def __init__(
        self, runner: PowerShellRunner, store_location: str = "CurrentUser\\My"
    ) -> None:
        self.runner = runner
        self.store_location = validate_store_location(store_location)

    def create(
        self,
        subject: str,
        validity_years: int = 3,
        key_length: int = 4096,
    ) -> SigningCertificate:
        """Create a self-signed code-signing certificate in the store.

        Args:
            subject: Subject DN; for package signing this must equal the
                manifest Publisher exactly.
            validity_years: Lifetime in years (1-10).
            key_length: RSA key size (2048, 3072 or 4096).

        Returns:
            Reference to the created certificate.

        Raises:
            ValidationError: If any argument is invalid.
            CertificateError: If creation fails. Any partially created store
                entry is removed first.
        """
        from appxkit.logging import get_global_logger

        logger = get_global_logger()
        subject = validate_subject(subject)
        validate_validity_years(validity_years)
        validate_key_length(key_length)

        not_before, not_after = compute_validity_window(validity_years)
        tag = f"{_TAG_PREFIX}{uuid.uuid4().hex}"

        script = (
            "$cert = New-SelfSignedCertificate -Type Custom"
            f" -Subject {ps_quote(subject)}"
            " -KeyUsage DigitalSignature -KeyAlgorithm RSA"
            f" -KeyLength {key_length}"
            f" -FriendlyName {ps_quote(tag)}"
            f" -CertStoreLocation {ps_quote(_cert_path(self.store_location))}"
            f" -TextExtension @({', '.join(_TEXT_EXTENSIONS)})"
            " -NotBefore ([datetime]::Parse("
            f"{ps_quote(not_before.isoformat())}, $null, 'RoundtripKind'))"
            " -NotAfter ([datetime]::Parse("
            f"{ps_quote(not_after.isoformat())}, $null, 'RoundtripKind'))\n"
            "ConvertTo-Json -Compress -InputObject @{ Thumbprint = $cert.Thumbprint }\n"
        )

        logger.verbose("CERT", f"Creating certificate {subject} ({key_length}-bit)")
        try:
            data = self.runner.run_json(script)
            if not isinstance(data, dict) or not data.get("Thumbprint"):
                raise ParseError(f"New-SelfSignedCertificate returned no thumbprint: {data}")
            thumbprint = validate_thumbprint(str(data["Thumbprint"]))
        except AppxKitError as err:
            self._remove_tagged(tag)
            raise CertificateError(f"Certificate creation failed: {err}") from err

        logger.verbose("CERT", f"[OK] Created certificate {thumbprint}")
        return SigningCertificate(
            subject=subject,
            thumbprint=thumbprint,
            not_before=not_before,
            not_after=not_after,
            key_length=key_length,
            store_location=self.store_location,
        )

    def export(
        self,
        cert: SigningCertificate,
        path: Path,
        include_private_key: bool = False,
        password: str | None = None,
    ) -> Path:
        """Export a certificate from the store.

        Args:
            cert: Certificate to export.
            path: Destination (.cer for public, .pfx for private export).
            include_private_key: Export a password-protected PFX.
            password: PFX password (required with include_private_key).

        Returns:
            The written path.

        Raises:
            ValidationError: If a private export has no password.
            CertificateError: If export or permission restriction fails.
        """
        from appxkit.logging import get_global_logger

        logger = get_global_logger()
        source = ps_quote(_cert_path(cert.store_location, cert.thumbprint))
        env = None
        if include_private_key:
            password = validate_password(password)
            script = (
                f"$secure = ConvertTo-SecureString -String $env:{_PASSWORD_ENV}"
                " -Force -AsPlainText\n"
                f"Export-PfxCertificate -Cert {source} -FilePath {ps_quote(path)}"
                " -Password $secure | Out-Null\n"
            )
            env = {_PASSWORD_ENV: password}
        else:
            script = (
                f"Export-Certificate -Cert {source} -FilePath {ps_quote(path)}"
                " -Type CERT | Out-Null\n"
            )

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.runner.run(script, env=env)
        except AppxKitError as err:
            path.unlink(missing_ok=True)
            raise CertificateError(f"Certificate export to {path} failed: {err}") from err

        if include_private_key:
            restrict_to_owner(path)
        logger.verbose("CERT", f"[OK] Exported {path.name}")
        return path

    def import_certificate(
        self, cer_path: Path, store: str = "LocalMachine\\TrustedPeople"
    ) -> str:
        """Import a public certificate into a store.

        Returns:
            Thumbprint of the imported certificate.

        Raises:
            CertificateError: If the import fails.
        """
        store = validate_store_location(store)
        thumbprint = certificate_thumbprint(cer_path)
        try:
            self.runner.run(
                f"Import-Certificate -FilePath {ps_quote(cer_path)}"
                f" -CertStoreLocation {ps_quote(_cert_path(store))} | Out-Null\n"
            )
        except AppxKitError as err:
            raise CertificateError(f"Importing {cer_path.name} into {store} failed: {err}") from err
        return thumbprint

    def exists(self, thumbprint: str, store: str) -> bool:
        """True if a certificate with this thumbprint is in the store."""
        store = validate_store_location(store)
        thumbprint = validate_thumbprint(thumbprint)
        result = self.runner.run(
            f"Test-Path -Path {ps_quote(_cert_path(store, thumbprint))}\n"
        )
        return result.stdout.strip().lower() == "true"

    def remove(self, thumbprint: str, store: str) -> bool:
        """Remove a certificate from a store.

        Returns:
            True if a certificate was removed, False if it was not present.

        Raises:
            CertificateError: If removal fails.
        """
        store = validate_store_location(store)
        thumbprint = validate_thumbprint(thumbprint)
        target = ps_quote(_cert_path(store, thumbprint))
        script = (
            f"if (Test-Path -Path {target}) {{\n"
            f"    Remove-Item -Path {target} -Force\n"
            "    'removed'\n"
            "} else { 'absent' }\n"
        )
        try:
            result = self.runner.run(script)
        except AppxKitError as err:
            raise CertificateError(f"Removing certificate {thumbprint} failed: {err}") from err
        return result.stdout.strip() == "removed"

    def _remove_tagged(self, tag: str) -> None:
        """Best-effort removal of store entries carrying a run tag."""
        from appxkit.logging import get_global_logger

        logger = get_global_logger()
        script = (
            f"Get-ChildItem -Path {ps_quote(_cert_path(self.store_location))}"
            f" | Where-Object {{ $_.FriendlyName -eq {ps_quote(tag)} }}"
            " | Remove-Item -Force\n"
        )
        try:
            self.runner.run(script)
        except AppxKitError as err:
            logger.warning("CERT", f"Could not remove partial certificate {tag}: {err}")
