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

"""Package version parsing and comparison for AppxKit.

This module is format-agnostic: it does NOT read files. It parses and
compares the four-part versions used by package identities
(``Major.Minor.Build.Revision``, each 0-65535) and the OS versions declared
by target device families (``10.0.17763.0``).

Missing trailing components are treated as zero, so ``"10.0"`` equals
``"10.0.0.0"``.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import total_ordering
import re

_NUM_SEP = re.compile(r"[.]")
_MAX_COMPONENT = 65535


def _ints_from_text(text: str) -> tuple[int, ...]:
    """Parse numeric components only.

    Raises ValueError if any non-numeric token is encountered to avoid
    silently mapping "1.2a" -> (1, 2, 0).
    """
    parts = [p for p in _NUM_SEP.split(text.strip()) if p]
    nums: list[int] = []
    for p in parts:
        if not p.isdigit():
            raise ValueError(f"non-numeric version component {p!r} in {text!r}")
        nums.append(int(p))
    if not nums:
        raise ValueError(f"empty version string: {text!r}")
    return tuple(nums)


def _pad(nums: tuple[int, ...], width: int = 4) -> tuple[int, ...]:
    """Pad tuples with zeros so they align for element-wise comparison."""
    return nums + (0,) * (width - len(nums))


@total_ordering
@dataclass(frozen=True)
class PackageVersion:
    """A four-part package version.

    Attributes:
        parts: Exactly four integer components.
    """

    parts: tuple[int, int, int, int]

    @classmethod
    def parse(cls, text: str) -> PackageVersion:
        """Parse a dotted version string.

        Args:
            text: Version such as "1.2.3.4" or "10.0.17763".

        Returns:
            The parsed version with missing components set to zero.

        Raises:
            ValueError: If the string has non-numeric parts, more than four
                parts, or a component above 65535.
        """
        nums = _ints_from_text(text)
        if len(nums) > 4:
            raise ValueError(f"version has more than four components: {text!r}")
        if any(n > _MAX_COMPONENT for n in nums):
            raise ValueError(f"version component exceeds {_MAX_COMPONENT}: {text!r}")
        padded = _pad(nums)
        return cls(parts=(padded[0], padded[1], padded[2], padded[3]))

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PackageVersion):
            return NotImplemented
        return self.parts < other.parts

    def __str__(self) -> str:
        return ".".join(str(p) for p in self.parts)


def is_valid_version(text: str) -> bool:
    """Return True if text parses as a package version."""
    try:
        PackageVersion.parse(text)
    except ValueError:
        return False
    return True


def compare_versions(a: str, b: str) -> int:
    """Compare two version strings.

    Args:
        a: First version.
        b: Second version.

    Returns:
        -1 if a < b, 0 if equal, 1 if a > b.

    Raises:
        ValueError: If either version cannot be parsed.
    """
    va, vb = PackageVersion.parse(a), PackageVersion.parse(b)
    return (va > vb) - (va < vb)


def satisfies_minimum(installed: str, minimum: str | None) -> bool:
    """Return True if installed >= minimum (no minimum always satisfies)."""
    if not minimum:
        return True
    return compare_versions(installed, minimum) >= 0
