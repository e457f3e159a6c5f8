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

"""Package signing and signature verification for AppxKit.

Signing runs ``SignTool.exe sign`` with SHA-256 file digests, selecting the
certificate by thumbprint from a Windows certificate store. The signing
certificate's subject must equal the Publisher in the package manifest, or
SignTool rejects the package.

Before signing with a timestamp server, the server is probed over HTTP so an
unreachable server fails fast with a NetworkError instead of a long SignTool
timeout.
"""

from __future__ import annotations

from pathlib import Path
from urllib.parse import urlparse

import requests

from appxkit.exceptions import NetworkError, ValidationError
from appxkit.results import SignatureStatus
from appxkit.tools.locator import ToolLocator
from appxkit.tools.process import run_process
from appxkit.validation import (
    validate_path,
    validate_store_location,
    validate_thumbprint,
)


def check_timestamp_server(url: str, timeout: float = 10) -> None:
    """Check that a timestamp server answers HTTP requests.

    Any HTTP response counts as reachable (RFC 3161 servers commonly answer
    a HEAD with 4xx); only connection-level failures are errors.

    Args:
        url: Timestamp server URL (http or https).
        timeout: Request timeout in seconds.

    Raises:
        ValidationError: If the URL is not http(s).
        NetworkError: If the server cannot be reached.
    """
    from appxkit.logging import get_global_logger

    logger = get_global_logger()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Timestamp URL must be an http(s) URL: {url!r}")

    logger.verbose("SIGN", f"Checking timestamp server: {url}")
    try:
        response = requests.head(url, timeout=timeout, allow_redirects=True)
    except requests.RequestException as err:
        raise NetworkError(f"Timestamp server unreachable: {url}: {err}") from err
    logger.debug("SIGN", f"Timestamp server answered HTTP {response.status_code}")


def build_sign_command(
    signtool: Path,
    artifact: Path,
    thumbprint: str,
    store_location: str,
    timestamp_url: str | None = None,
) -> list[str]:
    """Build the SignTool command line for signing a package."""
    location, store = validate_store_location(store_location).split("\\", 1)
    cmd = [
        str(signtool),
        "sign",
        "/fd",
        "SHA256",
        "/sha1",
        thumbprint,
        "/s",
        store,
    ]
    if location == "LocalMachine":
        cmd.append("/sm")
    if timestamp_url:
        cmd += ["/tr", timestamp_url, "/td", "SHA256"]
    cmd.append(str(artifact))
    return cmd


def sign_package(
    artifact: Path,
    thumbprint: str,
    store_location: str = "CurrentUser\\My",
    timestamp_url: str | None = None,
    *,
    locator: ToolLocator | None = None,
    timeout: float = 300,
) -> None:
    """Sign a package artifact in place.

    Args:
        artifact: The .appx/.msix to sign.
        thumbprint: SHA-1 thumbprint of the signing certificate.
        store_location: Store holding the certificate and private key.
        timestamp_url: Optional RFC 3161 timestamp server.
        locator: Tool locator (default: one built from default config).
        timeout: Seconds allowed for SignTool.

    Raises:
        ValidationError: If arguments are invalid.
        NetworkError: If the timestamp server is unreachable.
        ToolNotFoundError: If SignTool.exe cannot be located.
        ExternalProcessError: If signing fails or times out.
    """
    from appxkit.config import DEFAULT_CONFIG
    from appxkit.logging import get_global_logger

    logger = get_global_logger()
    artifact = validate_path(artifact, label="Package", must_exist=True, kind="file")
    thumbprint = validate_thumbprint(thumbprint)

    if timestamp_url:
        check_timestamp_server(timestamp_url)

    locator = locator or ToolLocator.from_config(DEFAULT_CONFIG)
    signtool = locator.require("signtool").path
    cmd = build_sign_command(signtool, artifact, thumbprint, store_location, timestamp_url)

    logger.verbose("SIGN", f"Signing {artifact.name} with {thumbprint}")
    result = run_process(cmd, timeout=timeout, tool_name="SignTool.exe")
    for line in result.stdout.strip().splitlines():
        logger.debug("SIGN", f"  {line}")
    logger.verbose("SIGN", f"[OK] Signed: {artifact.name}")


def verify_signature(
    artifact: Path,
    *,
    locator: ToolLocator | None = None,
    timeout: float = 60,
) -> SignatureStatus:
    """Verify a package signature with ``SignTool verify /pa``.

    A non-zero exit is reported in the result rather than raised; it means
    the package is unsigned, tampered with, or signed by an untrusted
    certificate.

    Raises:
        ToolNotFoundError: If SignTool.exe cannot be located.
        ExternalProcessError: If SignTool times out or cannot start.
    """
    from appxkit.config import DEFAULT_CONFIG

    locator = locator or ToolLocator.from_config(DEFAULT_CONFIG)
    signtool = locator.require("signtool").path
    result = run_process(
        [str(signtool), "verify", "/pa", str(artifact)],
        timeout=timeout,
        check=False,
        tool_name="SignTool.exe",
    )
    output = "\n".join(s for s in (result.stdout.strip(), result.stderr.strip()) if s)
    return SignatureStatus(
        path=artifact,
        is_valid=result.succeeded,
        returncode=result.returncode,
        output=output,
    )
