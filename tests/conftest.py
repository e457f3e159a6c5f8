"""
Pytest configuration and shared fixtures for AppxKit tests.

This module provides reusable fixtures and test utilities used across
the test suite: manifest and package builders, and in-memory fakes for the
package registry and the certificate store so orchestration can be tested
on any operating system.
"""

from __future__ import annotations

import base64
import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
import hashlib
from pathlib import Path
from typing import Any, Iterable
import zipfile

import pytest
import yaml

from appxkit.certificates.manager import SigningCertificate, certificate_thumbprint
from appxkit.config import DEFAULT_CONFIG
from appxkit.context import AppContext
from appxkit.dependencies.registry import InstalledPackage
from appxkit.exceptions import CertificateError, ExternalProcessError
from appxkit.logging import SilentLogger, set_global_logger
from appxkit.manifest.reader import read_manifest
from appxkit.tools.locator import ToolLocator
from appxkit.tools.powershell import PowerShellRunner

PUBLISHER = "CN=Contoso Software, O=Contoso, C=US"
FOUNDATION_NS = "http://schemas.microsoft.com/appx/manifest/foundation/windows10"
BLOCKMAP_NS = "http://schemas.microsoft.com/appx/2010/blockmap"


def manifest_xml(
    name: str = "Contoso.App",
    version: str = "1.2.3.0",
    architecture: str = "x64",
    publisher: str = PUBLISHER,
    dependencies: Iterable[tuple[str, str]] = (),
    optional: Iterable[tuple[str, str]] = (),
    framework: bool = False,
    families: Iterable[tuple[str, str, str]] = (
        ("Windows.Desktop", "10.0.17763.0", "10.0.22621.0"),
    ),
) -> str:
    """Build an AppxManifest.xml document."""
    deps = "".join(
        f'<PackageDependency Name="{n}" MinVersion="{v}" Publisher="{PUBLISHER}"/>'
        for n, v in dependencies
    )
    deps += "".join(
        f'<PackageDependency Name="{n}" MinVersion="{v}" Publisher="{PUBLISHER}" '
        f'uap6:Optional="true"/>'
        for n, v in optional
    )
    tdfs = "".join(
        f'<TargetDeviceFamily Name="{n}" MinVersion="{mn}" MaxVersionTested="{mx}"/>'
        for n, mn, mx in families
    )
    return f"""<?xml version="1.0" encoding="utf-8"?>
<Package xmlns="{FOUNDATION_NS}"
         xmlns:uap="http://schemas.microsoft.com/appx/manifest/uap/windows10"
         xmlns:uap6="http://schemas.microsoft.com/appx/manifest/uap/windows10/6"
         xmlns:rescap="http://schemas.microsoft.com/appx/manifest/foundation/windows10/restrictedcapabilities">
  <Identity Name="{name}" Publisher="{publisher}" Version="{version}" ProcessorArchitecture="{architecture}"/>
  <Properties>
    <DisplayName>Contoso App</DisplayName>
    <PublisherDisplayName>Contoso</PublisherDisplayName>
    <Logo>Assets\\StoreLogo.png</Logo>
    {"<Framework>true</Framework>" if framework else ""}
  </Properties>
  <Dependencies>{tdfs}{deps}</Dependencies>
  <Capabilities>
    <Capability Name="internetClient"/>
    <rescap:Capability Name="runFullTrust"/>
  </Capabilities>
</Package>
"""


def block_map_xml(files: dict[str, bytes]) -> str:
    """Build an AppxBlockMap.xml for the given package files."""
    entries = []
    for name, content in files.items():
        blocks = "".join(
            '<Block Hash="{}"/>'.format(
                base64.b64encode(
                    hashlib.sha256(content[i : i + 65536]).digest()
                ).decode("ascii")
            )
            for i in range(0, len(content), 65536)
        )
        win_name = name.replace("/", "\\")
        entries.append(
            f'<File Name="{win_name}" Size="{len(content)}" LfhSize="30">{blocks}</File>'
        )
    return (
        f'<?xml version="1.0" encoding="UTF-8"?>'
        f'<BlockMap xmlns="{BLOCKMAP_NS}" '
        f'HashMethod="http://www.w3.org/2001/04/xmlenc#sha256">{"".join(entries)}</BlockMap>'
    )


CONTENT_TYPES = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="xml" ContentType="application/vnd.ms-appx.manifest+xml"/>'
    "</Types>"
)


def write_package(
    path: Path,
    manifest: str | None = None,
    *,
    files: dict[str, bytes] | None = None,
    signed: bool = False,
    block_map: str | None = None,
    content_types: bool = True,
) -> Path:
    """Write a minimal .appx/.msix zip with a valid block map."""
    manifest = manifest if manifest is not None else manifest_xml()
    payload = {"AppxManifest.xml": manifest.encode("utf-8")}
    payload.update(files or {})
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in payload.items():
            zf.writestr(name, content)
        zf.writestr(
            "AppxBlockMap.xml",
            block_map if block_map is not None else block_map_xml(payload),
        )
        if content_types:
            zf.writestr("[Content_Types].xml", CONTENT_TYPES)
        if signed:
            zf.writestr("AppxSignature.p7x", b"PKCX-signature")
    return path


class FakeRegistry:
    """In-memory package registry."""

    def __init__(self, packages: Iterable[InstalledPackage] = ()) -> None:
        self.packages: list[InstalledPackage] = list(packages)
        self.add_calls: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None
        self.register_on_add = True
        self.snapshot_calls = 0

    def snapshot(self) -> tuple[InstalledPackage, ...]:
        self.snapshot_calls += 1
        return tuple(self.packages)

    def find(self, name: str) -> tuple[InstalledPackage, ...]:
        return tuple(p for p in self.packages if p.name.lower() == name.lower())

    def add_package(
        self,
        path: Path,
        *,
        dependency_paths: Iterable[Path] = (),
        force: bool = False,
        allow_unsigned: bool = False,
    ) -> None:
        self.add_calls.append(
            {
                "path": path,
                "dependency_paths": list(dependency_paths),
                "force": force,
                "allow_unsigned": allow_unsigned,
            }
        )
        if self.fail_with is not None:
            raise self.fail_with
        if self.register_on_add:
            m = read_manifest(path)
            self.packages.append(
                InstalledPackage(
                    name=m.name,
                    publisher=m.publisher,
                    version=m.version,
                    architecture=m.architecture,
                    is_framework=m.is_framework,
                )
            )


@dataclass
class FakeCertificates:
    """In-memory certificate stores keyed by store location."""

    store_location: str = "CurrentUser\\My"
    stores: dict[str, set[str]] = field(default_factory=dict)
    calls: list[tuple[str, ...]] = field(default_factory=list)
    fail_create: bool = False
    fail_export: bool = False
    fail_import: bool = False
    fail_import_after: int | None = None
    next_thumbprint: str = "A" * 40

    def create(
        self, subject: str, validity_years: int = 3, key_length: int = 4096
    ) -> SigningCertificate:
        self.calls.append(("create", subject))
        if self.fail_create:
            raise CertificateError("Certificate creation failed: access denied")
        now = datetime.now(UTC)
        self.stores.setdefault(self.store_location, set()).add(self.next_thumbprint)
        return SigningCertificate(
            subject=subject,
            thumbprint=self.next_thumbprint,
            not_before=now - timedelta(days=1),
            not_after=now + timedelta(days=365 * validity_years),
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
        self.calls.append(("export", str(path)))
        if self.fail_export:
            raise CertificateError(f"Certificate export to {path} failed")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"PFX" if include_private_key else b"CER:" + cert.thumbprint.encode())
        return path

    def import_certificate(self, cer_path: Path, store: str = "LocalMachine\\TrustedPeople") -> str:
        self.calls.append(("import", str(cer_path), store))
        imported = sum(1 for c in self.calls if c[0] == "import") - 1
        if self.fail_import or (
            self.fail_import_after is not None and imported >= self.fail_import_after
        ):
            raise CertificateError(f"Importing {cer_path.name} failed")
        thumbprint = certificate_thumbprint(cer_path)
        self.stores.setdefault(store, set()).add(thumbprint)
        return thumbprint

    def exists(self, thumbprint: str, store: str) -> bool:
        return thumbprint in self.stores.get(store, set())

    def remove(self, thumbprint: str, store: str) -> bool:
        self.calls.append(("remove", thumbprint, store))
        present = thumbprint in self.stores.get(store, set())
        self.stores.get(store, set()).discard(thumbprint)
        return present


@pytest.fixture(autouse=True)
def silent_global_logger():
    """Reset the global logger so tests never print through a CLI logger."""
    set_global_logger(SilentLogger())
    yield
    set_global_logger(SilentLogger())


@pytest.fixture
def test_config() -> dict[str, Any]:
    """Default configuration with file logging disabled."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["logging"]["enabled"] = False
    return config


@pytest.fixture
def fake_tools(tmp_path: Path) -> dict[str, Path]:
    """Placeholder executables for MakeAppx and SignTool."""
    bin_dir = tmp_path / "sdk-bin"
    bin_dir.mkdir()
    tools = {}
    for tool_id, exe in (("makeappx", "makeappx.exe"), ("signtool", "signtool.exe")):
        path = bin_dir / exe
        path.write_bytes(b"MZ")
        tools[tool_id] = path
    return tools


@pytest.fixture
def fake_locator(fake_tools: dict[str, Path]) -> ToolLocator:
    """Locator that only knows the placeholder tools."""
    return ToolLocator(
        overrides=fake_tools,
        registry_root=lambda: None,
        which=lambda _: None,
    )


@pytest.fixture
def make_context(test_config, fake_locator):
    """
    Factory fixture for AppContext instances backed by fakes.

    Usage:
        ctx = make_context(registry=FakeRegistry([...]))
    """

    def _create(
        registry: FakeRegistry | None = None,
        certificates: FakeCertificates | None = None,
    ) -> AppContext:
        return AppContext(
            config=test_config,
            logger=SilentLogger(),
            locator=fake_locator,
            powershell=PowerShellRunner(fake_locator),
            registry=registry if registry is not None else FakeRegistry(),
            certificates=certificates if certificates is not None else FakeCertificates(),
        )

    return _create


@pytest.fixture
def layout_dir(tmp_path: Path) -> Path:
    """A package layout directory with a manifest and one asset."""
    layout = tmp_path / "layout"
    (layout / "Assets").mkdir(parents=True)
    (layout / "AppxManifest.xml").write_text(manifest_xml(), encoding="utf-8")
    (layout / "Assets" / "StoreLogo.png").write_bytes(b"\x89PNG")
    return layout


@pytest.fixture
def create_yaml_file(tmp_path: Path):
    """
    Factory fixture for creating temporary YAML files.

    Usage:
        yaml_path = create_yaml_file("appxkit.yaml", {"key": "value"})
    """

    def _create(filename: str, data: dict[str, Any]) -> Path:
        path = tmp_path / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            yaml.dump(data, f)
        return path

    return _create


def failing_process(message: str = "tool failed", stderr: str = "") -> ExternalProcessError:
    """An ExternalProcessError like the one run_process raises."""
    return ExternalProcessError(message, command=["tool"], returncode=1, stderr=stderr)
