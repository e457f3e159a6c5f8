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

"""Configuration loading for AppxKit.

This module provides tools for loading and merging YAML-based configuration
with a layered approach:

  - Built-in defaults
  - Project configuration (appxkit.yaml, searched upward from the cwd)
  - Explicit configuration (--config or APPXKIT_CONFIG)

Public API:

- load_effective_config: Load and merge configuration
- DEFAULT_CONFIG: The built-in defaults

Example:
    Basic usage:

        from appxkit.config import load_effective_config

        config = load_effective_config()
        print(config["dependencies"]["max_depth"])  # 3

"""

from .loader import DEFAULT_CONFIG, load_effective_config

__all__ = ["DEFAULT_CONFIG", "load_effective_config"]
