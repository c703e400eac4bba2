"""Discovery of installed FHIR packages on local storage.

Packages live in a cache directory using the FHIR package cache convention::

        <cache>/<packageId>#<version>/package/*.json

The catalog enumerates what is installed, orders versions with
``packaging.version`` semantics and resolves ``packageId#latest`` to the newest
installed release. It never downloads anything.

Example:
        from fsh_structdef.package_catalog import get_package_catalog
        catalog = get_package_catalog()
        print(catalog.get_available_versions("hl7.fhir.r4.core"))
        installed = catalog.resolve("hl7.fhir.r4.core#latest")
        defs = read_package_definitions(installed.path) if installed else []

Design notes:
* The cache directory comes from an explicit argument, then the
    ``FSH_PACKAGE_CACHE`` environment variable, then ``~/.fhir/packages``.
* Versions that are not PEP 440 parseable (``current``, ``dev``) are kept
    but sort after every release version.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from packaging import version

logger = logging.getLogger(__name__)

CACHE_ENV_VAR = "FSH_PACKAGE_CACHE"
_SKIPPED_FILES = {"package.json", ".index.json"}


@dataclass
class InstalledPackage:
    """A package found in the cache."""

    package_id: str
    version: str
    path: Path

    @property
    def full_name(self) -> str:
        return f"{self.package_id}#{self.version}"


def _version_key(version_str: str) -> Tuple[int, Any]:
    try:
        return (1, version.parse(version_str))
    except version.InvalidVersion:
        return (0, version_str)


class PackageCatalog:
    """Enumerate and resolve packages installed in a cache directory."""

    def __init__(self, cache_dir: Optional[Path] = None):
        """Initialize the catalog.

        Args:
            cache_dir: Package cache directory. If None, uses the environment
                       variable or ``~/.fhir/packages``.
        """
        self.cache_dir = Path(cache_dir) if cache_dir else self._discover_cache_directory()
        self.packages: Dict[str, Dict[str, InstalledPackage]] = {}
        self._load_catalog()

    def _discover_cache_directory(self) -> Path:
        env_dir = os.getenv(CACHE_ENV_VAR)
        if env_dir:
            return Path(env_dir)
        return Path.home() / ".fhir" / "packages"

    def _load_catalog(self) -> None:
        if not self.cache_dir.exists() or not self.cache_dir.is_dir():
            logger.debug(f"Package cache {self.cache_dir} does not exist")
            return
        try:
            for entry in self.cache_dir.iterdir():
                if not entry.is_dir() or "#" not in entry.name:
                    continue
                package_id, _, version_str = entry.name.partition("#")
                package_dir = entry / "package"
                if package_dir.is_dir():
                    self.packages.setdefault(package_id, {})[version_str] = InstalledPackage(
                        package_id=package_id, version=version_str, path=package_dir
                    )
        except OSError as e:
            logger.warning(f"Could not read package cache {self.cache_dir}: {e}")

    def refresh(self) -> None:
        """Re-scan the cache directory."""
        self.packages.clear()
        self._load_catalog()

    def get_available_packages(self) -> List[str]:
        return sorted(self.packages)

    def get_available_versions(self, package_id: str) -> List[str]:
        """Return installed versions of a package sorted newest to oldest."""
        return sorted(self.packages.get(package_id, {}), key=_version_key, reverse=True)

    def is_installed(self, package: str) -> bool:
        return self.resolve(package) is not None

    def resolve(self, package: str) -> Optional[InstalledPackage]:
        """Resolve ``packageId#version`` (or ``#latest``) to an installed package."""
        package_id, _, version_str = package.partition("#")
        versions = self.packages.get(package_id)
        if not versions:
            return None
        if version_str in ("", "latest"):
            newest = self.get_available_versions(package_id)[0]
            return versions[newest]
        return versions.get(version_str)


def read_package_definitions(package_dir: Path) -> List[Dict[str, Any]]:
    """Read every FHIR resource JSON file in a package directory.

    Files that are not JSON objects carrying a ``resourceType`` are skipped.
    """
    definitions: List[Dict[str, Any]] = []
    if not package_dir.is_dir():
        return definitions
    for file in sorted(package_dir.glob("*.json")):
        if file.name in _SKIPPED_FILES:
            continue
        try:
            with open(file, encoding="utf-8") as f:
                content = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping invalid JSON file {file}: {e}")
            continue
        if isinstance(content, dict) and content.get("resourceType"):
            definitions.append(content)
    return definitions


def read_package_json(package_dir: Path) -> Optional[Dict[str, Any]]:
    manifest = package_dir / "package.json"
    if not manifest.exists():
        return None
    with open(manifest, encoding="utf-8") as f:
        return json.load(f)


# Global package catalog instance
_package_catalog: Optional[PackageCatalog] = None


def get_package_catalog() -> PackageCatalog:
    """Return the process-wide singleton PackageCatalog instance."""
    global _package_catalog
    if _package_catalog is None:
        _package_catalog = PackageCatalog()
    return _package_catalog
