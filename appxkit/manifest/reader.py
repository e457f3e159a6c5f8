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

"""AppxManifest.xml parsing for AppxKit.

This module reads the package identity, display metadata, dependencies,
capabilities and target device families from an AppxManifest.xml document.
Parsing is namespace-aware: the foundation namespace is taken from the root
element and, for elements not found there, each namespace in
FOUNDATION_NAMESPACES is tried in turn. This covers Windows 10/11 manifests
as well as the older Windows 8 and 8.1 schemas.

Example:
    ```python
    from pathlib import Path
    from appxkit.manifest import read_manifest

    manifest = read_manifest(Path("build/MyApp.msix"))
    print(manifest.name, manifest.version, manifest.architecture)
    for dep in manifest.dependencies:
        print(f"  needs {dep.name} >= {dep.min_version}")
    ```
"""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
from pathlib import Path
from typing import Iterable
import xml.etree.ElementTree as ET
import zipfile

from appxkit.exceptions import ParseError
from appxkit.versioning import PackageVersion, compare_versions, is_valid_version

MANIFEST_NAME = "AppxManifest.xml"

# Foundation namespaces, newest first
FOUNDATION_NAMESPACES: tuple[str, ...] = (
    "http://schemas.microsoft.com/appx/manifest/foundation/windows10",
    "http://schemas.microsoft.com/appx/2013/manifest",
    "http://schemas.microsoft.com/appx/2010/manifest",
)

# Extension namespaces by conventional prefix
EXTENSION_NAMESPACES: dict[str, str] = {
    "uap": "http://schemas.microsoft.com/appx/manifest/uap/windows10",
    "uap3": "http://schemas.microsoft.com/appx/manifest/uap/windows10/3",
    "uap6": "http://schemas.microsoft.com/appx/manifest/uap/windows10/6",
    "uap10": "http://schemas.microsoft.com/appx/manifest/uap/windows10/10",
    "rescap": (
        "http://schemas.microsoft.com/appx/manifest/foundation/windows10/"
        "restrictedcapabilities"
    ),
    "desktop": "http://schemas.microsoft.com/appx/manifest/desktop/windows10",
}

_CAPABILITY_TAGS = frozenset({"Capability", "DeviceCapability", "CustomCapability"})

_PUBLISHER_ID_ALPHABET = "0123456789abcdefghjkmnpqrstvwxyz"


@dataclass(frozen=True)
class PackageDependency:
    """A PackageDependency element as declared in the manifest.

    Attributes:
        name: Dependency package name (e.g., "Microsoft.VCLibs.140.00").
        publisher: Dependency publisher distinguished name.
        min_version: Minimum acceptable version.
        optional: True if declared Optional="true".
    """

    name: str
    publisher: str
    min_version: str
    optional: bool = False


@dataclass(frozen=True)
class TargetDeviceFamily:
    """A TargetDeviceFamily element (e.g., Windows.Desktop)."""

    name: str
    min_version: str
    max_version_tested: str | None = None


@dataclass(frozen=True)
class PackageManifest:
    """Parsed contents of an AppxManifest.xml.

    Attributes:
        name: Identity Name.
        publisher: Identity Publisher (distinguished name).
        version: Identity Version (four-part).
        architecture: Identity ProcessorArchitecture ("neutral" if absent).
        resource_id: Identity ResourceId, if any.
        display_name: Properties/DisplayName.
        publisher_display_name: Properties/PublisherDisplayName.
        description: Properties/Description.
        logo: Properties/Logo (package-relative path).
        is_framework: True for framework packages.
        dependencies: Declared package dependencies.
        capabilities: Declared capability names.
        target_device_families: Declared target device families.
        legacy_os_min_version: Prerequisites/OSMinVersion (Windows 8.x schemas).
        namespaces: Every XML namespace used by the document.
        foundation_namespace: The namespace of the root element.
    """

    name: str
    publisher: str
    version: str
    architecture: str = "neutral"
    resource_id: str | None = None
    display_name: str | None = None
    publisher_display_name: str | None = None
    description: str | None = None
    logo: str | None = None
    is_framework: bool = False
    dependencies: tuple[PackageDependency, ...] = ()
    capabilities: tuple[str, ...] = ()
    target_device_families: tuple[TargetDeviceFamily, ...] = ()
    legacy_os_min_version: str | None = None
    namespaces: tuple[str, ...] = field(default_factory=tuple)
    foundation_namespace: str = FOUNDATION_NAMESPACES[0]

    @property
    def publisher_id(self) -> str:
        """The 13-character publisher id derived from the publisher name."""
        return publisher_id(self.publisher)

    @property
    def family_name(self) -> str:
        """Package family name (``Name_PublisherId``)."""
        return f"{self.name}_{self.publisher_id}"

    @property
    def full_name(self) -> str:
        """Package full name (``Name_Version_Arch_ResourceId_PublisherId``)."""
        return "_".join(
            [
                self.name,
                self.version,
                self.architecture,
                self.resource_id or "",
                self.publisher_id,
            ]
        )

    @property
    def min_os_version(self) -> str | None:
        """Lowest minimum OS version declared by any target device family."""
        versions = [
            t.min_version
            for t in self.target_device_families
            if is_valid_version(t.min_version)
        ]
        if not versions:
            return self.legacy_os_min_version
        return min(versions, key=PackageVersion.parse)


def publisher_id(publisher: str) -> str:
    """Compute the publisher id used in package family names.

    The id is the first 64 bits of SHA-256 over the UTF-16LE publisher
    string, padded with one zero bit and written as 13 base32 characters.

    Example:
        ```python
        publisher_id("CN=Microsoft Corporation, O=Microsoft Corporation, "
                     "L=Redmond, S=Washington, C=US")
        # '8wekyb3d8bbwe'
        ```
    """
    digest = hashlib.sha256(publisher.encode("utf-16-le")).digest()[:8]
    bits = "".join(f"{byte:08b}" for byte in digest) + "0"
    return "".join(
        _PUBLISHER_ID_ALPHABET[int(bits[i : i + 5], 2)] for i in range(0, 65, 5)
    )


def _split_tag(tag: str) -> tuple[str, str]:
    if tag.startswith("{"):
        ns, _, local = tag[1:].partition("}")
        return ns, local
    return "", tag


def _namespaces_in(root: ET.Element) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for elem in root.iter():
        ns, _ = _split_tag(elem.tag)
        if ns:
            seen.setdefault(ns, None)
        for key in elem.attrib:
            ns, _ = _split_tag(key)
            if ns:
                seen.setdefault(ns, None)
    return tuple(seen)


def _find(parent: ET.Element, local: str, namespaces: Iterable[str]) -> ET.Element | None:
    for ns in namespaces:
        found = parent.find(f"{{{ns}}}{local}")
        if found is not None:
            return found
    return parent.find(local)


def _findall(parent: ET.Element, local: str, namespaces: Iterable[str]) -> list[ET.Element]:
    for ns in namespaces:
        found = parent.findall(f"{{{ns}}}{local}")
        if found:
            return found
    return parent.findall(local)


def _text(parent: ET.Element | None, local: str, namespaces: Iterable[str]) -> str | None:
    if parent is None:
        return None
    elem = _find(parent, local, namespaces)
    if elem is None or elem.text is None:
        return None
    return elem.text.strip() or None


def _attr(elem: ET.Element, local: str) -> str | None:
    """Read an attribute by local name, whatever its namespace."""
    if local in elem.attrib:
        return elem.attrib[local]
    for key, value in elem.attrib.items():
        if _split_tag(key)[1] == local:
            return value
    return None


def _is_true(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


def parse_manifest(data: bytes) -> PackageManifest:
    """Parse AppxManifest.xml content.

    Args:
        data: Raw XML bytes.

    Returns:
        The parsed manifest.

    Raises:
        ParseError: If the XML is malformed, the root element is not
            ``Package``, ``Identity`` is missing, or Identity lacks Name,
            Publisher or Version.
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as err:
        raise ParseError(f"Malformed manifest XML: {err}") from err

    root_ns, root_local = _split_tag(root.tag)
    if root_local != "Package":
        raise ParseError(f"Manifest root element is <{root_local}>, expected <Package>")

    search = (root_ns,) + tuple(ns for ns in FOUNDATION_NAMESPACES if ns != root_ns)

    identity = _find(root, "Identity", search)
    if identity is None:
        raise ParseError("Manifest has no <Identity> element")

    missing = [a for a in ("Name", "Publisher", "Version") if not identity.get(a)]
    if missing:
        raise ParseError(f"Identity is missing required attribute(s): {', '.join(missing)}")

    version = identity.get("Version", "")
    if not is_valid_version(version):
        raise ParseError(f"Identity Version is not a valid package version: {version!r}")

    properties = _find(root, "Properties", search)
    dependencies_elem = _find(root, "Dependencies", search)

    dependencies: list[PackageDependency] = []
    families: list[TargetDeviceFamily] = []
    if dependencies_elem is not None:
        for dep in _findall(dependencies_elem, "PackageDependency", search):
            name = dep.get("Name")
            if not name:
                raise ParseError("PackageDependency is missing the Name attribute")
            dependencies.append(
                PackageDependency(
                    name=name,
                    publisher=dep.get("Publisher", ""),
                    min_version=dep.get("MinVersion") or "0.0.0.0",
                    optional=_is_true(_attr(dep, "Optional")),
                )
            )
        for tdf in _findall(dependencies_elem, "TargetDeviceFamily", search):
            families.append(
                TargetDeviceFamily(
                    name=tdf.get("Name", ""),
                    min_version=tdf.get("MinVersion", ""),
                    max_version_tested=tdf.get("MaxVersionTested"),
                )
            )

    capabilities: list[str] = []
    capabilities_elem = _find(root, "Capabilities", search)
    if capabilities_elem is not None:
        for cap in capabilities_elem:
            if _split_tag(cap.tag)[1] in _CAPABILITY_TAGS and cap.get("Name"):
                capabilities.append(cap.get("Name", ""))

    prerequisites = _find(root, "Prerequisites", search)

    return PackageManifest(
        name=identity.get("Name", ""),
        publisher=identity.get("Publisher", ""),
        version=version,
        architecture=(identity.get("ProcessorArchitecture") or "neutral").lower(),
        resource_id=identity.get("ResourceId") or None,
        display_name=_text(properties, "DisplayName", search),
        publisher_display_name=_text(properties, "PublisherDisplayName", search),
        description=_text(properties, "Description", search),
        logo=_text(properties, "Logo", search),
        is_framework=_is_true(_text(properties, "Framework", search)),
        dependencies=tuple(dependencies),
        capabilities=tuple(capabilities),
        target_device_families=tuple(families),
        legacy_os_min_version=_text(prerequisites, "OSMinVersion", search),
        namespaces=_namespaces_in(root),
        foundation_namespace=root_ns,
    )


def read_manifest(path: Path) -> PackageManifest:
    """Read a manifest from a directory, a package artifact, or an XML file.

    Args:
        path: A directory containing AppxManifest.xml, an .appx/.msix file,
            or the manifest file itself.

    Returns:
        The parsed manifest.

    Raises:
        ParseError: If the manifest cannot be found or parsed.
    """
    path = Path(path)
    if path.is_dir():
        manifest_path = path / MANIFEST_NAME
        if not manifest_path.is_file():
            raise ParseError(f"No {MANIFEST_NAME} found in {path}")
        return parse_manifest(manifest_path.read_bytes())

    if not path.is_file():
        raise ParseError(f"Manifest source not found: {path}")

    if zipfile.is_zipfile(path):
        try:
            with zipfile.ZipFile(path) as archive:
                data = archive.read(MANIFEST_NAME)
        except KeyError as err:
            raise ParseError(f"{path.name} does not contain {MANIFEST_NAME}") from err
        except zipfile.BadZipFile as err:
            raise ParseError(f"Cannot read package {path}: {err}") from err
        return parse_manifest(data)

    return parse_manifest(path.read_bytes())


def is_newer_manifest(candidate: PackageManifest, installed_version: str) -> bool:
    """True if the candidate manifest's version is above an installed version."""
    return compare_versions(candidate.version, installed_version) > 0
