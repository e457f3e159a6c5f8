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

"""Package building for AppxKit.

This package packs layout directories into .appx/.msix artifacts with
MakeAppx.exe, signs them with SignTool.exe, and orchestrates the full
backup pipeline.

Public API:

- backup_package: Validate, pack, certify and sign in one run
- pack_package: Create an artifact from a layout directory
- sign_package: Sign an artifact with a stored certificate
- verify_signature: Check an artifact's signature

Example:

    from pathlib import Path
    from appxkit.build import pack_package

    artifact = pack_package(Path("layout"), Path("out/App.msix"))
    print(artifact.sha256)

"""

from .manager import backup_package
from .packager import file_sha256, pack_package
from .signer import check_timestamp_server, sign_package, verify_signature

__all__ = [
    "backup_package",
    "file_sha256",
    "pack_package",
    "check_timestamp_server",
    "sign_package",
    "verify_signature",
]
