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

"""Package artifact creation for AppxKit.

This module turns a package layout directory (a directory containing
AppxManifest.xml and the package payload) into an .appx/.msix artifact by
running MakeAppx.exe.

Design Principles:
    - MakeAppx writes to a temporary sibling of the output path; the
      artifact only appears at the output path once packing succeeded
    - A failed or timed-out pack never leaves a file at the output path
    - Success is decided by MakeAppx's exit code, not by its output text

Example:
    Basic usage:
        ```python
        from pathlib import Path
        from appxkit.build.packager import pack_package

        artifact = pack_package(
            source_dir=Path("layout/MyApp"),
            output_path=Path("backups/MyApp_1.2.0.0_x64.msix"),
        )
        print(f"Package: {artifact.path} ({artifact.size_bytes} bytes)")
        ```
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
import uuid

from appxkit.exceptions import ExternalProcessError, ValidationError
from appxkit.manifest.reader import read_manifest
from appxkit.results import ArtifactInfo
from appxkit.tools.locator import ToolLocator
from appxkit.tools.process import run_process
from appxkit.validation import PACKAGE_SUFFIXES, validate_output_path, validate_path

# Compression choice -> extra MakeAppx arguments
COMPRESSION_ARGS: dict[str, tuple[str, ...]] = {
    "default": (),
    "none": ("/nc",),
}

_CHUNK = 1024 * 1024


def file_sha256(path: Path) -> str:
    """Compute the SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _temp_output(output_path: Path) -> Path:
    # Keeps the package suffix so MakeAppx picks the same format
    return output_path.with_name(
        f".{output_path.stem}.{uuid.uuid4().hex[:8]}.partial{output_path.suffix}"
    )


def pack_package(
    source_dir: Path,
    output_path: Path,
    compression: str = "default",
    overwrite: bool = False,
    *,
    locator: ToolLocator | None = None,
    timeout: float = 1800,
) -> ArtifactInfo:
    """Create a package artifact from a layout directory.

    Runs ``MakeAppx.exe pack /d <source_dir> /p <output> /o`` (plus ``/nc``
    when compression is "none").

    Args:
        source_dir: Directory containing AppxManifest.xml and the payload.
        output_path: Destination .appx/.msix path.
        compression: "default" or "none".
        overwrite: Replace an existing file at output_path.
        locator: Tool locator (default: one built from default config).
        timeout: Seconds allowed for MakeAppx.

    Returns:
        ArtifactInfo dataclass with the following fields:

            - path (Path): The created artifact.
            - size_bytes (int): Artifact size.
            - sha256 (str): Artifact hash.
            - package_name (str): Identity name from the manifest.
            - version (str): Identity version.
            - architecture (str): Processor architecture.

    Raises:
        ValidationError: If paths or the compression choice are invalid.
        ParseError: If the layout's AppxManifest.xml is missing or invalid.
        ToolNotFoundError: If MakeAppx.exe cannot be located.
        ExternalProcessError: If MakeAppx fails or times out.
    """
    from appxkit.config import DEFAULT_CONFIG
    from appxkit.logging import get_global_logger

    logger = get_global_logger()

    if compression not in COMPRESSION_ARGS:
        raise ValidationError(
            f"Unsupported compression {compression!r}. "
            f"Expected one of: {', '.join(COMPRESSION_ARGS)}"
        )
    source_dir = validate_path(
        source_dir, label="Source directory", must_exist=True, kind="dir"
    )
    output_path = validate_output_path(
        output_path, overwrite=overwrite, suffixes=PACKAGE_SUFFIXES
    )
    manifest = read_manifest(source_dir)

    locator = locator or ToolLocator.from_config(DEFAULT_CONFIG)
    makeappx = locator.require("makeappx").path

    output_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = _temp_output(output_path)
    cmd = [
        str(makeappx),
        "pack",
        "/d",
        str(source_dir),
        "/p",
        str(temp_path),
        "/o",
        *COMPRESSION_ARGS[compression],
    ]

    logger.verbose("PACK", f"Packing {manifest.name} {manifest.version}")
    try:
        result = run_process(cmd, timeout=timeout, tool_name="MakeAppx.exe")
        for line in result.stdout.strip().splitlines():
            logger.debug("PACK", f"  {line}")
        if not temp_path.is_file():
            raise ExternalProcessError(
                f"MakeAppx.exe completed but produced no package at {temp_path}",
                command=result.args,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        os.replace(temp_path, output_path)
    finally:
        temp_path.unlink(missing_ok=True)

    size = output_path.stat().st_size
    logger.verbose("PACK", f"[OK] Created: {output_path.name} ({size} bytes)")

    return ArtifactInfo(
        path=output_path,
        size_bytes=size,
        sha256=file_sha256(output_path),
        package_name=manifest.name,
        version=manifest.version,
        architecture=manifest.architecture,
    )
