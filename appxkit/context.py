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

"""Service context for AppxKit operations.

An AppContext bundles the collaborators every orchestration needs: the
effective configuration, the logger, the tool locator (and its cache), the
PowerShell runner, the installed-package registry and the certificate
manager. Operations receive the context explicitly, so tests can swap any
collaborator for a fake and two contexts never share caches.

Example:
    ```python
    from appxkit.context import create_context
    from appxkit.build import backup_package

    ctx = create_context()
    result = backup_package(Path("layout"), Path("out/App.msix"), context=ctx)
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from appxkit.certificates.manager import CertificateManager
from appxkit.config import DEFAULT_CONFIG
from appxkit.dependencies.registry import PackageRegistry, PowerShellPackageRegistry
from appxkit.logging import Logger, get_global_logger
from appxkit.tools.locator import ToolLocator
from appxkit.tools.powershell import PowerShellRunner


@dataclass
class AppContext:
    """Collaborators shared by one run of AppxKit.

    Attributes:
        config: Effective merged configuration.
        logger: Logger for progress and diagnostics.
        locator: Tool locator (caches tool paths).
        powershell: PowerShell runner.
        registry: Installed-package registry.
        certificates: Certificate manager.
    """

    config: dict[str, Any]
    logger: Logger
    locator: ToolLocator
    powershell: PowerShellRunner
    registry: PackageRegistry
    certificates: CertificateManager

    def timeout(self, name: str) -> float:
        """Configured timeout in seconds for an operation ("pack", "sign", ...)."""
        return float(self.config["timeouts"][name])

    def section(self, name: str) -> dict[str, Any]:
        """A top-level configuration section."""
        return self.config.get(name, {})


def create_context(
    config: dict[str, Any] | None = None,
    logger: Logger | None = None,
    *,
    locator: ToolLocator | None = None,
    registry: PackageRegistry | None = None,
    certificates: CertificateManager | None = None,
) -> AppContext:
    """Build a context from configuration, creating default collaborators.

    Args:
        config: Effective configuration (default: built-in defaults).
        logger: Logger (default: the global logger).
        locator: Tool locator override.
        registry: Package registry override.
        certificates: Certificate manager override.

    Returns:
        A ready-to-use AppContext.
    """
    config = config if config is not None else DEFAULT_CONFIG
    logger = logger or get_global_logger()
    locator = locator or ToolLocator.from_config(config)
    powershell = PowerShellRunner(locator, timeout=config["timeouts"]["powershell"])
    registry = registry or PowerShellPackageRegistry(
        powershell, install_timeout=config["timeouts"]["install"]
    )
    certificates = certificates or CertificateManager(
        powershell, store_location=config["certificate"]["store_location"]
    )
    return AppContext(
        config=config,
        logger=logger,
        locator=locator,
        powershell=powershell,
        registry=registry,
        certificates=certificates,
    )
