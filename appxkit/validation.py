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

"""Input validation for AppxKit.

Every path and parameter that reaches an external tool passes through one of
these checks first. Failures raise ValidationError immediately, before any
tool is invoked or any file is written.

Validation Checks:

- Paths: no NUL bytes, no ``..`` segments, no reserved device names
  (CON, PRN, AUX, NUL, COM1-9, LPT1-9), no characters Windows rejects
- Output paths: allowed suffix, no silent overwrite
- Certificates: subject syntax, key length, validity years, thumbprint
  format, store location
- Package names: identity-name syntax

Example:
    Validate an output path:
        ```python
        from pathlib import Path
        from appxkit.validation import validate_output_path

        out = validate_output_path(
            Path("backups/MyApp.msix"), overwrite=False, suffixes=(".msix", ".appx")
        )
        ```
"""

from __future__ import annotations

from pathlib import Path
import re
from typing import Iterable

from appxkit.exceptions import ValidationError

__all__ = [
    "ALLOWED_KEY_LENGTHS",
    "PACKAGE_SUFFIXES",
    "STORE_LOCATIONS",
    "validate_path",
    "validate_output_path",
    "validate_key_length",
    "validate_validity_years",
    "validate_subject",
    "validate_thumbprint",
    "validate_store_location",
    "validate_password",
    "validate_package_name",
]

ALLOWED_KEY_LENGTHS: tuple[int, ...] = (2048, 3072, 4096)
MIN_VALIDITY_YEARS = 1
MAX_VALIDITY_YEARS = 10
PACKAGE_SUFFIXES: tuple[str, ...] = (".appx", ".msix")

# Canonical "<Location>\<Store>" names accepted for certificate operations
STORE_LOCATIONS: tuple[str, ...] = (
    "CurrentUser\\My",
    "LocalMachine\\My",
    "CurrentUser\\TrustedPeople",
    "LocalMachine\\TrustedPeople",
    "CurrentUser\\Root",
    "LocalMachine\\Root",
)

_RESERVED_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)
_INVALID_CHARS = set('<>"|?*')
_DRIVE = re.compile(r"^[A-Za-z]:$")
_THUMBPRINT = re.compile(r"^[0-9A-F]{40}$")
_PACKAGE_NAME = re.compile(r"^[A-Za-z0-9.\-]{3,50}$")


def _segments(raw: str) -> list[str]:
    return [s for s in re.split(r"[\\/]+", raw) if s]


def validate_path(
    path: Path | str,
    *,
    label: str = "Path",
    must_exist: bool = False,
    kind: str = "any",
) -> Path:
    """Validate a user-supplied filesystem path.

    Args:
        path: The path to check.
        label: Name used in error messages (e.g., "Source directory").
        must_exist: If True, the path must exist.
        kind: "file", "dir", or "any"; only enforced when the path exists.

    Returns:
        The path as a Path object (not resolved).

    Raises:
        ValidationError: If any check fails.
    """
    raw = str(path)
    if not raw.strip():
        raise ValidationError(f"{label} is empty")
    if "\x00" in raw:
        raise ValidationError(f"{label} contains a NUL character: {raw!r}")

    segments = _segments(raw)
    for index, segment in enumerate(segments):
        if segment == "..":
            raise ValidationError(f"{label} must not contain '..' segments: {raw}")
        if index == 0 and _DRIVE.match(segment):
            continue
        bad = sorted(_INVALID_CHARS.intersection(segment))
        if bad or ":" in segment:
            chars = "".join(bad) or ":"
            raise ValidationError(f"{label} contains invalid characters {chars!r}: {raw}")
        stem = segment.split(".", 1)[0].rstrip(" ").upper()
        if stem in _RESERVED_NAMES:
            raise ValidationError(f"{label} uses a reserved device name {segment!r}: {raw}")

    p = Path(path)
    if must_exist and not p.exists():
        raise ValidationError(f"{label} not found: {p}")
    if p.exists():
        if kind == "file" and not p.is_file():
            raise ValidationError(f"{label} is not a file: {p}")
        if kind == "dir" and not p.is_dir():
            raise ValidationError(f"{label} is not a directory: {p}")
    return p


def validate_output_path(
    path: Path | str,
    *,
    overwrite: bool = False,
    suffixes: Iterable[str] = (),
    label: str = "Output path",
) -> Path:
    """Validate a path that a tool will write to.

    Args:
        path: Destination path.
        overwrite: If False, an existing file is rejected.
        suffixes: Allowed file suffixes (case-insensitive); empty allows any.
        label: Name used in error messages.

    Returns:
        The validated path.

    Raises:
        ValidationError: If the path is invalid, has the wrong suffix, is an
            existing directory, or exists without overwrite.
    """
    p = validate_path(path, label=label)
    allowed = tuple(s.lower() for s in suffixes)
    if allowed and p.suffix.lower() not in allowed:
        raise ValidationError(
            f"{label} must end with one of {', '.join(allowed)}: {p}"
        )
    if p.is_dir():
        raise ValidationError(f"{label} is an existing directory: {p}")
    if p.exists() and not overwrite:
        raise ValidationError(
            f"{label} already exists: {p}\nUse --force to overwrite it."
        )
    return p


def validate_key_length(bits: int) -> int:
    """Validate an RSA key length against the supported set."""
    if bits not in ALLOWED_KEY_LENGTHS:
        allowed = ", ".join(str(b) for b in ALLOWED_KEY_LENGTHS)
        raise ValidationError(f"Key length must be one of {allowed} (got {bits})")
    return bits


def validate_validity_years(years: int) -> int:
    """Validate a certificate lifetime in years (1-10)."""
    if not MIN_VALIDITY_YEARS <= years <= MAX_VALIDITY_YEARS:
        raise ValidationError(
            f"Validity must be between {MIN_VALIDITY_YEARS} and "
            f"{MAX_VALIDITY_YEARS} years (got {years})"
        )
    return years


def validate_subject(subject: str) -> str:
    """Validate a certificate subject distinguished name.

    The subject must start with ``CN=`` and must not contain characters that
    would break out of a quoted PowerShell string or a command line.
    """
    subject = subject.strip()
    if not subject.upper().startswith("CN="):
        raise ValidationError(f"Certificate subject must start with 'CN=': {subject!r}")
    if len(subject) <= 3:
        raise ValidationError("Certificate subject has an empty common name")
    if any(c in subject for c in "\r\n\x00`$"):
        raise ValidationError(f"Certificate subject contains forbidden characters: {subject!r}")
    return subject


def validate_thumbprint(thumbprint: str) -> str:
    """Validate and normalise a SHA-1 certificate thumbprint.

    Returns:
        The thumbprint in upper case without spaces.
    """
    normalised = thumbprint.replace(" ", "").upper()
    if not _THUMBPRINT.match(normalised):
        raise ValidationError(f"Thumbprint must be 40 hex characters: {thumbprint!r}")
    return normalised


def validate_store_location(store: str) -> str:
    """Validate a certificate store location.

    Accepts ``LocalMachine\\TrustedPeople``, ``LocalMachine/TrustedPeople`` or
    ``Cert:\\LocalMachine\\TrustedPeople`` in any case.

    Returns:
        The canonical ``<Location>\\<Store>`` spelling.
    """
    cleaned = store.strip().replace("/", "\\")
    if cleaned.lower().startswith("cert:\\"):
        cleaned = cleaned[len("cert:\\") :]
    for candidate in STORE_LOCATIONS:
        if candidate.lower() == cleaned.lower():
            return candidate
    raise ValidationError(
        f"Unsupported certificate store {store!r}. "
        f"Expected one of: {', '.join(STORE_LOCATIONS)}"
    )


def validate_password(password: str | None) -> str:
    """Require a non-empty password for private-key export."""
    if not password:
        raise ValidationError("A password is required to export a private key")
    return password


def validate_package_name(name: str) -> str:
    """Validate a package identity name (3-50 of A-Z, a-z, 0-9, '.', '-')."""
    if not _PACKAGE_NAME.match(name):
        raise ValidationError(f"Invalid package name: {name!r}")
    return name
