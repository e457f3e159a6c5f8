"""
Tests for appxkit.build.packager module.

Tests package artifact creation including:
- MakeAppx command construction
- Atomic placement of the artifact
- Cleanup after failed or empty packing
- Input validation

These are UNIT tests: MakeAppx.exe is replaced by a fake that writes the
requested package file.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from unittest.mock import patch
import zipfile

from conftest import failing_process
import pytest

from appxkit.build import file_sha256, pack_package
from appxkit.exceptions import ExternalProcessError, ParseError, ValidationError
from appxkit.tools.process import ProcessResult

pytestmark = pytest.mark.unit


def fake_makeappx(calls: list[list[str]] | None = None):
    """Return a run_process replacement that writes the /p target."""

    def _run(cmd, **kwargs):
        if calls is not None:
            calls.append(list(cmd))
        target = Path(cmd[cmd.index("/p") + 1])
        source = Path(cmd[cmd.index("/d") + 1])
        with zipfile.ZipFile(target, "w") as zf:
            for file in source.rglob("*"):
                if file.is_file():
                    zf.write(file, file.relative_to(source).as_posix())
        return ProcessResult(tuple(cmd), 0, "Package creation succeeded.", "", 0.2)

    return _run


class TestPackPackage:
    """Tests for pack_package."""

    def test_pack_creates_artifact(self, layout_dir, tmp_path, fake_locator, fake_tools):
        """Test that a successful pack places the artifact and reports it."""
        calls: list[list[str]] = []
        output = tmp_path / "out" / "Contoso.App_1.2.3.0_x64.msix"

        with patch("appxkit.build.packager.run_process", side_effect=fake_makeappx(calls)):
            artifact = pack_package(layout_dir, output, locator=fake_locator)

        assert artifact.path == output
        assert output.is_file()
        assert artifact.size_bytes == output.stat().st_size
        assert artifact.sha256 == hashlib.sha256(output.read_bytes()).hexdigest()
        assert (artifact.package_name, artifact.version, artifact.architecture) == (
            "Contoso.App",
            "1.2.3.0",
            "x64",
        )

        cmd = calls[0]
        assert cmd[0] == str(fake_tools["makeappx"])
        assert cmd[1:4] == ["pack", "/d", str(layout_dir)]
        assert "/o" in cmd
        assert "/nc" not in cmd
        temp = Path(cmd[cmd.index("/p") + 1])
        assert temp.parent == output.parent
        assert temp.name.startswith(".Contoso.App_1.2.3.0_x64.")
        assert temp.suffix == ".msix"
        assert not temp.exists()

    def test_no_compression_flag(self, layout_dir, tmp_path, fake_locator):
        """Test that compression="none" adds /nc."""
        calls: list[list[str]] = []
        with patch("appxkit.build.packager.run_process", side_effect=fake_makeappx(calls)):
            pack_package(layout_dir, tmp_path / "a.appx", compression="none", locator=fake_locator)

        assert calls[0][-1] == "/nc"

    def test_failure_leaves_no_artifact(self, layout_dir, tmp_path, fake_locator):
        """Test that a MakeAppx failure leaves nothing behind."""
        output = tmp_path / "out" / "app.msix"

        def _fail(cmd, **kwargs):
            Path(cmd[cmd.index("/p") + 1]).write_bytes(b"half written")
            raise failing_process("MakeAppx.exe failed (exit code 1)", "error 0x80080204")

        with patch("appxkit.build.packager.run_process", side_effect=_fail):
            with pytest.raises(ExternalProcessError, match="0x80080204"):
                pack_package(layout_dir, output, locator=fake_locator)

        assert list(output.parent.iterdir()) == []

    def test_missing_output_is_failure(self, layout_dir, tmp_path, fake_locator):
        """Test that exit code 0 without an output file is a failure."""
        ok = ProcessResult(("makeappx",), 0, "", "", 0.1)
        with patch("appxkit.build.packager.run_process", return_value=ok):
            with pytest.raises(ExternalProcessError, match="produced no package"):
                pack_package(layout_dir, tmp_path / "app.msix", locator=fake_locator)

        assert not (tmp_path / "app.msix").exists()

    def test_existing_output_requires_overwrite(self, layout_dir, tmp_path, fake_locator):
        """Test that an existing output is kept unless overwrite is set."""
        output = tmp_path / "app.msix"
        output.write_bytes(b"previous")

        with patch("appxkit.build.packager.run_process", side_effect=fake_makeappx()) as run:
            with pytest.raises(ValidationError, match="already exists"):
                pack_package(layout_dir, output, locator=fake_locator)
            run.assert_not_called()
            assert output.read_bytes() == b"previous"

            pack_package(layout_dir, output, overwrite=True, locator=fake_locator)

        assert zipfile.is_zipfile(output)

    def test_invalid_compression(self, layout_dir, tmp_path, fake_locator):
        """Test that an unknown compression choice is rejected."""
        with pytest.raises(ValidationError, match="compression"):
            pack_package(layout_dir, tmp_path / "a.msix", compression="max", locator=fake_locator)

    def test_wrong_suffix(self, layout_dir, tmp_path, fake_locator):
        """Test that the output must be a package file."""
        with pytest.raises(ValidationError):
            pack_package(layout_dir, tmp_path / "a.zip", locator=fake_locator)

    def test_layout_without_manifest(self, tmp_path, fake_locator):
        """Test that a layout without AppxManifest.xml is rejected."""
        empty = tmp_path / "empty"
        empty.mkdir()
        with pytest.raises(ParseError):
            pack_package(empty, tmp_path / "a.msix", locator=fake_locator)


class TestFileSha256:
    """Tests for file_sha256."""

    def test_matches_hashlib(self, tmp_path):
        """Test the digest of a multi-chunk file."""
        data = b"x" * (3 * 1024 * 1024 + 17)
        path = tmp_path / "big.bin"
        path.write_bytes(data)
        assert file_sha256(path) == hashlib.sha256(data).hexdigest()
