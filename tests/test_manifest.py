"""
Tests for appxkit.manifest.reader module.

Tests AppxManifest.xml parsing including:
- Identity, properties, dependencies and capabilities
- Windows 8 era namespaces
- Publisher id and package family names
- Reading from directories, packages and XML files
- Error handling for malformed manifests
"""

from __future__ import annotations

import zipfile

from conftest import PUBLISHER, manifest_xml, write_package
import pytest

from appxkit.exceptions import ParseError
from appxkit.manifest import (
    is_newer_manifest,
    parse_manifest,
    publisher_id,
    read_manifest,
)

pytestmark = pytest.mark.unit

MICROSOFT_PUBLISHER = (
    "CN=Microsoft Corporation, O=Microsoft Corporation, L=Redmond, S=Washington, C=US"
)

WIN81_MANIFEST = b"""<?xml version="1.0" encoding="utf-8"?>
<Package xmlns="http://schemas.microsoft.com/appx/2010/manifest"
         xmlns:m2="http://schemas.microsoft.com/appx/2013/manifest">
  <Identity Name="Legacy.App" Publisher="CN=Legacy" Version="2.0.0.1"/>
  <Properties>
    <DisplayName>Legacy</DisplayName>
    <PublisherDisplayName>Legacy Inc</PublisherDisplayName>
    <Logo>logo.png</Logo>
  </Properties>
  <Prerequisites>
    <OSMinVersion>6.3.0</OSMinVersion>
    <OSMaxVersionTested>6.3.0</OSMaxVersionTested>
  </Prerequisites>
  <Dependencies>
    <PackageDependency Name="Microsoft.VCLibs.120.00" MinVersion="12.0.21005.1"/>
  </Dependencies>
</Package>
"""


class TestParseManifest:
    """Tests for parse_manifest."""

    def test_identity_and_properties(self):
        """Test that identity and display properties are read."""
        manifest = parse_manifest(manifest_xml().encode("utf-8"))

        assert manifest.name == "Contoso.App"
        assert manifest.publisher == PUBLISHER
        assert manifest.version == "1.2.3.0"
        assert manifest.architecture == "x64"
        assert manifest.display_name == "Contoso App"
        assert manifest.publisher_display_name == "Contoso"
        assert manifest.logo == "Assets\\StoreLogo.png"
        assert manifest.is_framework is False

    def test_dependencies_and_optional(self):
        """Test that dependencies keep order and the Optional flag."""
        manifest = parse_manifest(
            manifest_xml(
                dependencies=[("Microsoft.VCLibs.140.00", "14.0.30704.0")],
                optional=[("Contoso.Addon", "1.0.0.0")],
            ).encode("utf-8")
        )

        assert [d.name for d in manifest.dependencies] == [
            "Microsoft.VCLibs.140.00",
            "Contoso.Addon",
        ]
        assert manifest.dependencies[0].min_version == "14.0.30704.0"
        assert manifest.dependencies[0].optional is False
        assert manifest.dependencies[1].optional is True

    def test_capabilities_across_namespaces(self):
        """Test that capabilities from extension namespaces are included."""
        manifest = parse_manifest(manifest_xml().encode("utf-8"))
        assert manifest.capabilities == ("internetClient", "runFullTrust")

    def test_target_device_families(self):
        """Test target device families and the minimum OS version."""
        manifest = parse_manifest(
            manifest_xml(
                families=[
                    ("Windows.Desktop", "10.0.19041.0", "10.0.22621.0"),
                    ("Windows.Universal", "10.0.17763.0", "10.0.22621.0"),
                ]
            ).encode("utf-8")
        )

        assert [f.name for f in manifest.target_device_families] == [
            "Windows.Desktop",
            "Windows.Universal",
        ]
        assert manifest.min_os_version == "10.0.17763.0"

    def test_architecture_defaults_to_neutral(self):
        """Test that a missing ProcessorArchitecture means neutral."""
        xml = manifest_xml().replace(' ProcessorArchitecture="x64"', "")
        assert parse_manifest(xml.encode("utf-8")).architecture == "neutral"

    def test_architecture_lowercased(self):
        """Test that the architecture is normalized to lower case."""
        manifest = parse_manifest(manifest_xml(architecture="X64").encode("utf-8"))
        assert manifest.architecture == "x64"

    def test_framework_flag(self):
        """Test that <Framework>true</Framework> is recognized."""
        manifest = parse_manifest(manifest_xml(framework=True).encode("utf-8"))
        assert manifest.is_framework is True

    def test_namespaces_recorded(self):
        """Test that used namespaces are listed, foundation first."""
        manifest = parse_manifest(manifest_xml().encode("utf-8"))

        assert manifest.namespaces[0] == manifest.foundation_namespace
        assert (
            "http://schemas.microsoft.com/appx/manifest/foundation/windows10/"
            "restrictedcapabilities"
        ) in manifest.namespaces

    def test_windows81_manifest(self):
        """Test that a 2010-namespace manifest is parsed."""
        manifest = parse_manifest(WIN81_MANIFEST)

        assert manifest.name == "Legacy.App"
        assert manifest.architecture == "neutral"
        assert manifest.foundation_namespace == "http://schemas.microsoft.com/appx/2010/manifest"
        assert manifest.dependencies[0].name == "Microsoft.VCLibs.120.00"
        assert manifest.dependencies[0].publisher == ""
        assert manifest.target_device_families == ()
        assert manifest.min_os_version == "6.3.0"


class TestParseErrors:
    """Tests for malformed manifests."""

    def test_malformed_xml(self):
        """Test that broken XML raises ParseError."""
        with pytest.raises(ParseError, match="Malformed"):
            parse_manifest(b"<Package><Identity></Package>")

    def test_wrong_root(self):
        """Test that a non-Package root raises ParseError."""
        with pytest.raises(ParseError, match="expected <Package>"):
            parse_manifest(b"<Bundle/>")

    def test_missing_identity(self):
        """Test that a missing Identity raises ParseError."""
        xml = '<Package xmlns="http://schemas.microsoft.com/appx/manifest/foundation/windows10"/>'
        with pytest.raises(ParseError, match="no <Identity>"):
            parse_manifest(xml.encode("utf-8"))

    def test_missing_identity_attribute(self):
        """Test that Identity without Publisher raises ParseError."""
        xml = manifest_xml().replace(f' Publisher="{PUBLISHER}" Version', " Version")
        with pytest.raises(ParseError, match="Publisher"):
            parse_manifest(xml.encode("utf-8"))

    def test_invalid_version(self):
        """Test that a non-numeric version raises ParseError."""
        with pytest.raises(ParseError, match="not a valid package version"):
            parse_manifest(manifest_xml(version="1.0.beta").encode("utf-8"))


class TestPublisherId:
    """Tests for publisher id and family names."""

    def test_microsoft_publisher(self):
        """Test the well-known id of the Microsoft publisher."""
        assert publisher_id(MICROSOFT_PUBLISHER) == "8wekyb3d8bbwe"

    def test_shape(self):
        """Test that ids are 13 characters from the base32 alphabet."""
        pid = publisher_id(PUBLISHER)
        assert len(pid) == 13
        assert set(pid) <= set("0123456789abcdefghjkmnpqrstvwxyz")

    def test_family_and_full_name(self):
        """Test family and full name composition."""
        manifest = parse_manifest(manifest_xml().encode("utf-8"))
        pid = publisher_id(PUBLISHER)

        assert manifest.family_name == f"Contoso.App_{pid}"
        assert manifest.full_name == f"Contoso.App_1.2.3.0_x64__{pid}"


class TestReadManifest:
    """Tests for read_manifest sources."""

    def test_from_directory(self, layout_dir):
        """Test reading from a layout directory."""
        assert read_manifest(layout_dir).name == "Contoso.App"

    def test_from_package(self, tmp_path):
        """Test reading from a package artifact."""
        package = write_package(tmp_path / "app.msix", manifest_xml(version="3.0.0.0"))
        assert read_manifest(package).version == "3.0.0.0"

    def test_from_xml_file(self, layout_dir):
        """Test reading the manifest file directly."""
        assert read_manifest(layout_dir / "AppxManifest.xml").name == "Contoso.App"

    def test_directory_without_manifest(self, tmp_path):
        """Test that a directory without a manifest raises ParseError."""
        with pytest.raises(ParseError, match="No AppxManifest.xml"):
            read_manifest(tmp_path)

    def test_package_without_manifest(self, tmp_path):
        """Test that a zip without a manifest raises ParseError."""
        package = tmp_path / "empty.msix"
        with zipfile.ZipFile(package, "w") as zf:
            zf.writestr("readme.txt", "nothing")
        with pytest.raises(ParseError, match="does not contain"):
            read_manifest(package)

    def test_missing_path(self, tmp_path):
        """Test that a missing path raises ParseError."""
        with pytest.raises(ParseError, match="not found"):
            read_manifest(tmp_path / "missing.msix")


class TestIsNewerManifest:
    """Tests for is_newer_manifest."""

    @pytest.mark.parametrize(
        "installed, expected",
        [("1.2.2.9", True), ("1.2.3.0", False), ("1.10.0.0", False)],
    )
    def test_comparison(self, installed, expected):
        """Test version comparison against an installed version."""
        manifest = parse_manifest(manifest_xml().encode("utf-8"))
        assert is_newer_manifest(manifest, installed) is expected
