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

"""Version handling for AppxKit.

Public API:

- PackageVersion: Parsed four-part package version
- compare_versions: Three-way comparison of version strings
- satisfies_minimum: Minimum-version check used by dependency resolution
- is_valid_version: Non-raising parse check
"""

from .keys import PackageVersion, compare_versions, is_valid_version, satisfies_minimum

__all__ = [
    "PackageVersion",
    "compare_versions",
    "is_valid_version",
    "satisfies_minimum",
]
