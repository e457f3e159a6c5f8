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

"""Dependency resolution and dependency archives for AppxKit."""

from .archive import (
    ArchiveEntry,
    DependencyArchive,
    export_dependencies,
    read_dependency_archive,
)
from .registry import (
    InstalledPackage,
    PackageRegistry,
    PowerShellPackageRegistry,
    parse_package_records,
)
from .resolver import (
    FRAMEWORK_PREFIXES,
    Dependency,
    DependencyKind,
    DependencyStatus,
    architecture_compatible,
    find_installed,
    is_framework_name,
    resolve_dependencies,
)

__all__ = [
    "ArchiveEntry",
    "DependencyArchive",
    "export_dependencies",
    "read_dependency_archive",
    "InstalledPackage",
    "PackageRegistry",
    "PowerShellPackageRegistry",
    "parse_package_records",
    "FRAMEWORK_PREFIXES",
    "Dependency",
    "DependencyKind",
    "DependencyStatus",
    "architecture_compatible",
    "find_installed",
    "is_framework_name",
    "resolve_dependencies",
]
