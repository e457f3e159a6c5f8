"""
Tests for appxkit.certificates.manager module.

Tests the certificate lifecycle including:
- Validity window computation
- Thumbprints of DER and PEM files
- Creation through New-SelfSignedCertificate and cleanup on failure
- Public and password-protected exports
- Store import, lookup and removal
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
import hashlib
import ssl
import sys
from unittest.mock import MagicMock, patch

import pytest

from appxkit.certificates import (
    CertificateManager,
    SigningCertificate,
    certificate_thumbprint,
    compute_validity_window,
    restrict_to_owner,
)
from appxkit.exceptions import CertificateError, ExternalProcessError, ValidationError
from appxkit.tools.process import ProcessResult

pytestmark = pytest.mark.unit

THUMBPRINT = "0123456789ABCDEF0123456789ABCDEF01234567"
SUBJECT = "CN=Contoso Software, O=Contoso, C=US"


def result(stdout: str = "") -> ProcessResult:
    return ProcessResult(args=("pwsh",), returncode=0, stdout=stdout, stderr="", duration=0.1)


def signing_cert() -> SigningCertificate:
    now = datetime.now(UTC)
    return SigningCertificate(
        subject=SUBJECT,
        thumbprint=THUMBPRINT,
        not_before=now - timedelta(days=1),
        not_after=now + timedelta(days=365),
        key_length=4096,
        store_location="CurrentUser\\My",
    )


class TestValidityWindow:
    """Tests for compute_validity_window."""

    @pytest.mark.parametrize("years", range(1, 11))
    def test_window_for_each_lifetime(self, years):
        """Test the window for every supported lifetime."""
        now = datetime(2025, 6, 15, 9, 30, tzinfo=UTC)

        not_before, not_after = compute_validity_window(years, now)

        assert not_before == now - timedelta(days=1)
        assert not_before < now <= not_after
        assert (not_after.year, not_after.month, not_after.day) == (2025 + years, 6, 15)

    def test_leap_day_start(self):
        """Test that Feb 29 maps to Feb 28 in a non-leap end year."""
        now = datetime(2024, 2, 29, tzinfo=UTC)

        assert compute_validity_window(1, now)[1].date().isoformat() == "2025-02-28"
        assert compute_validity_window(4, now)[1].date().isoformat() == "2028-02-29"

    @pytest.mark.parametrize("years", [0, 11, -1])
    def test_out_of_range(self, years):
        """Test that lifetimes outside 1-10 raise ValidationError."""
        with pytest.raises(ValidationError):
            compute_validity_window(years)


class TestThumbprint:
    """Tests for certificate_thumbprint."""

    def test_der(self, tmp_path):
        """Test the thumbprint of a DER file."""
        der = b"\x30\x82\x01\x0a-not-really-a-certificate"
        path = tmp_path / "c.cer"
        path.write_bytes(der)

        assert certificate_thumbprint(path) == hashlib.sha1(der).hexdigest().upper()

    def test_pem_matches_der(self, tmp_path):
        """Test that PEM and DER encodings give the same thumbprint."""
        der = b"\x30\x82\x01\x0a-certificate-bytes"
        pem = tmp_path / "c.pem"
        pem.write_text(ssl.DER_cert_to_PEM_cert(der), encoding="ascii")

        assert certificate_thumbprint(pem) == hashlib.sha1(der).hexdigest().upper()


class TestRestrictToOwner:
    """Tests for restrict_to_owner."""

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
    def test_mode_600(self, tmp_path):
        """Test that the file is readable by the owner only."""
        path = tmp_path / "key.pfx"
        path.write_bytes(b"PFX")

        restrict_to_owner(path)

        assert path.stat().st_mode & 0o777 == 0o600

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
    def test_failure_deletes_file(self, tmp_path):
        """Test that a failed restriction deletes the file."""
        path = tmp_path / "key.pfx"
        path.write_bytes(b"PFX")

        with patch("appxkit.certificates.manager.os.chmod", side_effect=OSError("denied")):
            with pytest.raises(CertificateError, match="was deleted"):
                restrict_to_owner(path)

        assert not path.exists()


class TestCreate:
    """Tests for CertificateManager.create."""

    def test_create_success(self):
        """Test a successful creation."""
        runner = MagicMock()
        runner.run_json.return_value = {"Thumbprint": THUMBPRINT.lower()}

        cert = CertificateManager(runner).create(SUBJECT, validity_years=2, key_length=2048)

        assert cert.thumbprint == THUMBPRINT
        assert cert.subject == SUBJECT
        assert cert.key_length == 2048
        assert cert.store_location == "CurrentUser\\My"
        assert cert.not_after.year - cert.not_before.year in (2, 3)

        script = runner.run_json.call_args.args[0]
        assert "New-SelfSignedCertificate" in script
        assert "-Subject 'CN=Contoso Software, O=Contoso, C=US'" in script
        assert "-KeyLength 2048" in script
        assert "1.3.6.1.5.5.7.3.3" in script
        assert "-FriendlyName 'appxkit-" in script
        assert "Cert:\\CurrentUser\\My" in script

    def test_create_failure_removes_tagged_entries(self):
        """Test that a failed creation removes partial store entries."""
        runner = MagicMock()
        runner.run_json.side_effect = ExternalProcessError("PowerShell failed (exit code 1)")

        with pytest.raises(CertificateError, match="Certificate creation failed"):
            CertificateManager(runner).create(SUBJECT)

        cleanup = runner.run.call_args.args[0]
        assert "Where-Object" in cleanup
        assert "appxkit-" in cleanup
        assert "Remove-Item" in cleanup

    def test_create_without_thumbprint(self):
        """Test that output without a thumbprint is a failure."""
        runner = MagicMock()
        runner.run_json.return_value = None

        with pytest.raises(CertificateError, match="no thumbprint"):
            CertificateManager(runner).create(SUBJECT)
        runner.run.assert_called_once()

    def test_create_rejects_bad_subject(self):
        """Test that an invalid subject fails before PowerShell runs."""
        runner = MagicMock()
        with pytest.raises(ValidationError):
            CertificateManager(runner).create("Contoso")
        runner.run_json.assert_not_called()

    def test_create_rejects_key_length(self):
        """Test that unsupported key lengths are rejected."""
        with pytest.raises(ValidationError, match="Key length"):
            CertificateManager(MagicMock()).create(SUBJECT, key_length=1024)


class TestExport:
    """Tests for CertificateManager.export."""

    def test_public_export(self, tmp_path):
        """Test a .cer export."""
        runner = MagicMock()
        target = tmp_path / "out" / "Contoso.cer"

        path = CertificateManager(runner).export(signing_cert(), target)

        assert path == target
        script = runner.run.call_args.args[0]
        assert f"Cert:\\CurrentUser\\My\\{THUMBPRINT}" in script
        assert "Export-Certificate" in script
        assert runner.run.call_args.kwargs["env"] is None

    def test_pfx_requires_password(self, tmp_path):
        """Test that a PFX export without a password is rejected."""
        with pytest.raises(ValidationError, match="password"):
            CertificateManager(MagicMock()).export(
                signing_cert(), tmp_path / "c.pfx", include_private_key=True
            )

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
    def test_pfx_password_passed_in_environment(self, tmp_path):
        """Test that the password travels in the environment only."""
        target = tmp_path / "Contoso.pfx"
        runner = MagicMock()
        runner.run.side_effect = lambda script, env=None: target.write_bytes(b"PFX")

        CertificateManager(runner).export(
            signing_cert(), target, include_private_key=True, password="s3cret!"
        )

        script = runner.run.call_args.args[0]
        assert "s3cret!" not in script
        assert "$env:APPXKIT_PFX_PASSWORD" in script
        assert runner.run.call_args.kwargs["env"] == {"APPXKIT_PFX_PASSWORD": "s3cret!"}
        assert target.stat().st_mode & 0o777 == 0o600

    def test_export_failure_removes_file(self, tmp_path):
        """Test that a failed export leaves no partial file."""
        target = tmp_path / "Contoso.cer"
        runner = MagicMock()

        def fail(script, env=None):
            target.write_bytes(b"partial")
            raise ExternalProcessError("PowerShell failed (exit code 1)")

        runner.run.side_effect = fail

        with pytest.raises(CertificateError, match="export"):
            CertificateManager(runner).export(signing_cert(), target)
        assert not target.exists()


class TestStoreOperations:
    """Tests for import, exists and remove."""

    def test_import_returns_file_thumbprint(self, tmp_path):
        """Test that import reports the thumbprint of the file."""
        cer = tmp_path / "c.cer"
        cer.write_bytes(b"DER")
        runner = MagicMock()

        thumbprint = CertificateManager(runner).import_certificate(cer)

        assert thumbprint == hashlib.sha1(b"DER").hexdigest().upper()
        assert "Cert:\\LocalMachine\\TrustedPeople" in runner.run.call_args.args[0]

    def test_import_failure(self, tmp_path):
        """Test that an import failure raises CertificateError."""
        cer = tmp_path / "c.cer"
        cer.write_bytes(b"DER")
        runner = MagicMock()
        runner.run.side_effect = ExternalProcessError("PowerShell failed (exit code 1)")

        with pytest.raises(CertificateError, match="Importing c.cer"):
            CertificateManager(runner).import_certificate(cer)

    def test_exists(self):
        """Test the store lookup."""
        runner = MagicMock()
        runner.run.return_value = result("True\r\n")
        assert CertificateManager(runner).exists(THUMBPRINT, "LocalMachine\\TrustedPeople")

        runner.run.return_value = result("False\r\n")
        assert not CertificateManager(runner).exists(THUMBPRINT, "LocalMachine\\TrustedPeople")

    def test_remove(self):
        """Test removal reporting."""
        runner = MagicMock()
        runner.run.return_value = result("removed\n")
        assert CertificateManager(runner).remove(THUMBPRINT, "CurrentUser\\My") is True

        runner.run.return_value = result("absent\n")
        assert CertificateManager(runner).remove(THUMBPRINT, "CurrentUser\\My") is False

    def test_unsupported_store(self):
        """Test that an unknown store is rejected."""
        with pytest.raises(ValidationError, match="Unsupported certificate store"):
            CertificateManager(MagicMock(), store_location="Nowhere\\Store")
