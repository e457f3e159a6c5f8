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

"""Configuration loading and merging for AppxKit.

This module implements a three-layer configuration system so that tool
locations, timeouts and certificate defaults can be set once per machine or
project and overridden per invocation.

Configuration Layers:
    1. **Built-in defaults** (DEFAULT_CONFIG)
       - Timeouts, certificate parameters, dependency depth cap, logging
       - Always present

    2. **Project configuration** (appxkit.yaml)
       - Found by walking upward from the working directory
       - Optional

    3. **Explicit configuration** (--config or APPXKIT_CONFIG)
       - Optional; overrides everything else

Merge Behavior:
    The loader performs deep merging with "last wins" semantics:

    - **Dicts**: Recursively merged (keys from overlay override base)
    - **Lists**: Completely replaced (NOT appended/extended)
    - **Scalars**: Overwritten (strings, numbers, booleans)

Path Resolution:
    Relative paths are resolved against the directory of the file that
    declared them. Currently resolved paths:

    - tools.overrides.<tool_id>
    - tools.sdk_roots[]
    - logging.dir

Error Handling:
    - ConfigError: Missing explicit file, YAML parse errors, non-mapping
        documents, or out-of-range values
    - All errors are chained with "from err" for better debugging

Example:
    Basic usage:
        ```python
        from pathlib import Path
        from appxkit.config import load_effective_config

        cfg = load_effective_config()
        print(cfg["timeouts"]["pack"])  # Output: 1800
        ```

    Explicit file:
        ```python
        cfg = load_effective_config(Path("ci/appxkit.yaml"))
        ```

Note:
    The loaded dict is held by an AppContext for the lifetime of a run; this
    module keeps no module-level cache.
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml

from appxkit.exceptions import ConfigError
from appxkit.validation import ALLOWED_KEY_LENGTHS, STORE_LOCATIONS

CONFIG_FILENAME = "appxkit.yaml"
CONFIG_ENV_VAR = "APPXKIT_CONFIG"


def _default_log_dir() -> str:
    base = os.environ.get("LOCALAPPDATA")
    if base:
        return str(Path(base) / "appxkit" / "logs")
    return str(Path.home() / ".appxkit" / "logs")


DEFAULT_CONFIG: dict[str, Any] = {
    "tools": {
        "overrides": {},
        "sdk_roots": [
            "C:\\Program Files (x86)\\Windows Kits\\10",
            "C:\\Program Files\\Windows Kits\\10",
        ],
    },
    # seconds
    "timeouts": {
        "pack": 1800,
        "sign": 300,
        "verify": 60,
        "install": 1200,
        "powershell": 120,
    },
    "certificate": {
        "validity_years": 3,
        "key_length": 4096,
        "store_location": "CurrentUser\\My",
        "trust_store": "LocalMachine\\TrustedPeople",
    },
    "signing": {
        "timestamp_url": None,
    },
    "dependencies": {
        "recursive": False,
        "include_optional": False,
        "max_depth": 3,
    },
    "logging": {
        "enabled": True,
        "dir": None,
        "max_bytes": 5 * 1024 * 1024,
        "backup_count": 5,
    },
}


# -------------------------------
# YAML helpers
# -------------------------------


def _load_yaml_file(p: Path) -> dict[str, Any]:
    """Loads a YAML configuration file.

    Args:
        p: Path to the YAML file to load.

    Returns:
        The parsed mapping. An empty file yields an empty dict.

    Raises:
        ConfigError: When the file does not exist, is invalid YAML, or is not
            a mapping.
    """
    if not p.exists():
        raise ConfigError(f"config file not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as err:
        raise ConfigError(f"Error parsing YAML: {p}: {err}") from err
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"top-level YAML must be a mapping (dict): {p}")
    return data


# -------------------------------
# Merge logic
# -------------------------------


def _deep_merge_dicts(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep-merges two dicts with "overlay wins" semantics.

    Merge behavior:

    - dict + dict -> deep merge
    - list + list -> overlay REPLACES base (not concatenated)
    - everything else -> overlay overwrites base

    This function does not mutate inputs; returns a new dict.

    Args:
        base: The base dictionary.
        overlay: The overlay dictionary that takes precedence.

    Returns:
        A new dictionary with the merged contents.
    """
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge_dicts(result[k], v)
        else:
            # Replace lists and scalars entirely
            result[k] = v
    return result


# -------------------------------
# Project config discovery
# -------------------------------


def _find_project_config(start_dir: Path) -> Path | None:
    """Walks upward from start_dir looking for an appxkit.yaml file.

    Args:
        start_dir: The directory to start searching from.

    Returns:
        Path to the first appxkit.yaml found, None otherwise.
    """
    for parent in [start_dir] + list(start_dir.parents):
        candidate = parent / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


# -------------------------------
# Path resolution
# -------------------------------


def _resolve_relative(raw: Any, base_dir: Path) -> Any:
    if isinstance(raw, str) and raw:
        p = Path(raw)
        if not p.is_absolute():
            return str((base_dir / p).resolve())
    return raw


def _resolve_known_paths(layer: dict[str, Any], base_dir: Path) -> dict[str, Any]:
    """Resolves relative path fields of one layer against its file's directory.

    Returns a copy; the input layer is not modified.

    Args:
        layer: A single parsed configuration file.
        base_dir: Directory containing that file.

    Returns:
        The layer with tools.overrides, tools.sdk_roots and logging.dir
        made absolute.
    """
    resolved = copy.deepcopy(layer)
    tools = resolved.get("tools")
    if isinstance(tools, dict):
        overrides = tools.get("overrides")
        if isinstance(overrides, dict):
            for tool_id, raw_path in overrides.items():
                overrides[tool_id] = _resolve_relative(raw_path, base_dir)
        roots = tools.get("sdk_roots")
        if isinstance(roots, list):
            tools["sdk_roots"] = [_resolve_relative(r, base_dir) for r in roots]
    log_cfg = resolved.get("logging")
    if isinstance(log_cfg, dict) and "dir" in log_cfg:
        log_cfg["dir"] = _resolve_relative(log_cfg["dir"], base_dir)
    return resolved


# -------------------------------
# Validation
# -------------------------------


def _validate_config(cfg: dict[str, Any]) -> None:
    """Checks value ranges of the merged configuration.

    Args:
        cfg: The merged configuration.

    Raises:
        ConfigError: If a value is missing or out of range.
    """
    timeouts = cfg.get("timeouts", {})
    for key, value in timeouts.items():
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
            raise ConfigError(f"timeouts.{key} must be a positive number (got {value!r})")

    cert = cfg.get("certificate", {})
    if cert.get("key_length") not in ALLOWED_KEY_LENGTHS:
        raise ConfigError(
            f"certificate.key_length must be one of {ALLOWED_KEY_LENGTHS} "
            f"(got {cert.get('key_length')!r})"
        )
    years = cert.get("validity_years")
    if not isinstance(years, int) or not 1 <= years <= 10:
        raise ConfigError(f"certificate.validity_years must be 1-10 (got {years!r})")
    for key in ("store_location", "trust_store"):
        store = str(cert.get(key, "")).replace("/", "\\")
        if store.lower() not in {s.lower() for s in STORE_LOCATIONS}:
            raise ConfigError(f"certificate.{key} is not a supported store: {store!r}")

    depth = cfg.get("dependencies", {}).get("max_depth")
    if not isinstance(depth, int) or isinstance(depth, bool) or depth < 1:
        raise ConfigError(f"dependencies.max_depth must be an integer >= 1 (got {depth!r})")

    overrides = cfg.get("tools", {}).get("overrides", {})
    if not isinstance(overrides, dict):
        raise ConfigError("tools.overrides must be a mapping of tool id to path")


# -------------------------------
# Public API
# -------------------------------


def load_effective_config(
    config_path: Path | None = None,
    *,
    start_dir: Path | None = None,
    use_project_config: bool = True,
) -> dict[str, Any]:
    """Loads and merges the effective configuration.

    Performs the following operations:

    1. Start from DEFAULT_CONFIG
    2. Find appxkit.yaml by scanning upwards from start_dir (default: cwd)
    3. Load the explicit file (argument, else APPXKIT_CONFIG)
    4. Merge: defaults -> project -> explicit (dicts deep-merge, lists replace)
    5. Resolve relative paths per layer
    6. Fill the default log directory and validate value ranges

    Args:
        config_path: Optional explicit configuration file.
        start_dir: Directory to begin the project config search from.
        use_project_config: Set False to skip the upward search.

    Returns:
        A merged configuration dict.

    Raises:
        ConfigError: On YAML parse errors, invalid structure, a missing
            explicit file, or invalid values.
    """
    from appxkit.logging import get_global_logger

    logger = get_global_logger()
    merged = copy.deepcopy(DEFAULT_CONFIG)
    layers_merged = 1

    if use_project_config:
        project_path = _find_project_config((start_dir or Path.cwd()).resolve())
        if project_path is not None:
            logger.verbose("CONFIG", f"Loading: {project_path}")
            layer = _load_yaml_file(project_path)
            merged = _deep_merge_dicts(
                merged, _resolve_known_paths(layer, project_path.parent)
            )
            layers_merged += 1

    if config_path is None and os.environ.get(CONFIG_ENV_VAR):
        config_path = Path(os.environ[CONFIG_ENV_VAR])

    if config_path is not None:
        config_path = config_path.resolve()
        logger.verbose("CONFIG", f"Loading: {config_path}")
        layer = _load_yaml_file(config_path)
        merged = _deep_merge_dicts(
            merged, _resolve_known_paths(layer, config_path.parent)
        )
        layers_merged += 1

    logger.verbose("CONFIG", f"Deep merged {layers_merged} layer(s)")

    if not merged["logging"].get("dir"):
        merged["logging"]["dir"] = _default_log_dir()

    _validate_config(merged)
    logger.debug("CONFIG", yaml.safe_dump(merged, default_flow_style=False, sort_keys=False))
    return merged
