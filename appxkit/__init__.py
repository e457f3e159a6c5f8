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

"""
AppxKit - back up, sign and restore Windows APPX/MSIX packages.

AppxKit is a Python toolkit that packs package layouts into .appx/.msix
artifacts, creates code-signing certificates, signs artifacts, and restores
them (with their certificates and dependency packages) on other machines.
The heavy lifting is delegated to the platform: MakeAppx.exe, SignTool.exe
and the PowerShell PKI and Appx modules.

Key Features:

  - Backup pipeline: manifest -> dependency check -> pack -> certificate -> sign
  - Restore with certificate trust, existing-version detection and
    certificate rollback on failure
  - Dependency resolution against installed packages (optionally recursive)
  - Dependency archives bundling a package with its framework packages
  - Integrity validation against AppxBlockMap.xml block hashes
  - Windows SDK tool discovery (registry, well-known roots, PATH)

Quick Start
-----------
Back up a layout directory and sign it:

    $ appxkit backup layout/MyApp backups/MyApp.msix --create-certificate --sign

Restore on another machine:

    $ appxkit restore backups/MyApp.msix

For full CLI documentation:

    $ appxkit --help

Package Structure
-----------------
cli : module
    Command-line interface with argparse.
core : module
    Inspection operations (info, integrity, compatibility, certificates).
build : package
    Packing, signing and the backup pipeline.
install : package
    Installation and restore.
dependencies : package
    Installed-package registry, resolver and dependency archives.
certificates : package
    Code-signing certificate lifecycle.
manifest : package
    AppxManifest.xml parsing.
tools : package
    External tool discovery and process execution.
config : package
    YAML configuration loading and merging.

Public API
----------
    from appxkit.build import backup_package, pack_package, sign_package
    from appxkit.install import install_package, install_from_archive
    from appxkit.dependencies import resolve_dependencies
    from appxkit.manifest import read_manifest
    from appxkit.context import create_context

Project Information
-------------------
Author: Roger Cibrian
License: Apache-2.0
"""

__version__ = "0.1.0"
__author__ = "Roger Cibrian"
__license__ = "Apache-2.0"
__description__ = "AppxKit - back up, sign and restore Windows APPX/MSIX packages"

# Re-export commonly used functions for convenience
from appxkit.build import backup_package, pack_package, sign_package
from appxkit.config import load_effective_config
from appxkit.context import AppContext, create_context
from appxkit.dependencies import resolve_dependencies
from appxkit.install import install_from_archive, install_package
from appxkit.manifest import read_manifest

__all__ = [
    "__version__",
    "AppContext",
    "backup_package",
    "create_context",
    "install_from_archive",
    "install_package",
    "load_effective_config",
    "pack_package",
    "read_manifest",
    "resolve_dependencies",
    "sign_package",
]
