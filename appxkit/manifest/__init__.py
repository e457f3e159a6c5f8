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

"""AppxManifest.xml reading for AppxKit."""

from .reader import (
    EXTENSION_NAMESPACES,
    FOUNDATION_NAMESPACES,
    MANIFEST_NAME,
    PackageDependency,
    PackageManifest,
    TargetDeviceFamily,
    is_newer_manifest,
    parse_manifest,
    publisher_id,
    read_manifest,
)

__all__ = [
    "EXTENSION_NAMESPACES",
    "FOUNDATION_NAMESPACES",
    "MANIFEST_NAME",
    "PackageDependency",
    "PackageManifest",
    "TargetDeviceFamily",
    "is_newer_manifest",
    "parse_manifest",
    "publisher_id",
    "read_manifest",
]
