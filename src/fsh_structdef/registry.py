"""Definition registry: indexed lookup of conformance artifacts.

The registry stores raw FHIR JSON definitions (StructureDefinitions, ValueSets,
CodeSystems, ImplementationGuides) classified into kind maps and indexed by
``id``, ``url`` and ``name`` simultaneously. Lookups ("fishing") walk the
registry and its child registries breadth-first and always hand back a deep
copy so callers can mutate results freely.

Key capabilities:
* Deterministic search order across kinds (``FISHING_ORDER``), narrowed by
    an explicit kind filter
* ``item|version`` pinning: a versioned lookup only matches that exact version
* Supplemental registries for cross-version lookups and on-demand
    materialization of implied extensions
* Async package loading from the local package cache

Example:
        registry = DefinitionRegistry()
        registry.add(observation_json)
        sd = registry.fish_for_fhir("Observation", DefinitionKind.RESOURCE)
        meta = registry.fish_for_metadata("http://hl7.org/fhir/StructureDefinition/Observation")
        print(meta.sd_type, meta.parent)

Design notes:
* Missing items are never an error here; lookups return ``None`` and the
    caller decides whether that is fatal.
* Once loading completes the registry is treated as read-only, with the
    exception of the implied extension cache.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Union

from .errors import PackageLoadError
from .package_catalog import (
    PackageCatalog,
    get_package_catalog,
    read_package_definitions,
    read_package_json,
)

logger = logging.getLogger(__name__)

IMPOSE_PROFILE_EXTENSION = "http://hl7.org/fhir/StructureDefinition/structuredefinition-imposeProfile"
TYPE_CHARACTERISTICS_EXTENSION = "http://hl7.org/fhir/tools/StructureDefinition/type-characteristics"
LOGICAL_TARGET_EXTENSION = "http://hl7.org/fhir/tools/StructureDefinition/logical-target"
ELEMENT_URL = "http://hl7.org/fhir/StructureDefinition/Element"


class DefinitionKind(str, Enum):
    """Kinds of artifacts that can be fished for."""

    PROFILE = "Profile"
    EXTENSION = "Extension"
    VALUE_SET = "ValueSet"
    CODE_SYSTEM = "CodeSystem"
    INSTANCE = "Instance"
    RESOURCE = "Resource"
    TYPE = "Type"
    LOGICAL = "Logical"


FISHING_ORDER: List[DefinitionKind] = [
    DefinitionKind.RESOURCE,
    DefinitionKind.LOGICAL,
    DefinitionKind.TYPE,
    DefinitionKind.PROFILE,
    DefinitionKind.EXTENSION,
    DefinitionKind.VALUE_SET,
    DefinitionKind.CODE_SYSTEM,
]

_KIND_TO_MAP = {
    DefinitionKind.RESOURCE: "resources",
    DefinitionKind.LOGICAL: "logicals",
    DefinitionKind.TYPE: "types",
    DefinitionKind.PROFILE: "profiles",
    DefinitionKind.EXTENSION: "extensions",
    DefinitionKind.VALUE_SET: "value_sets",
    DefinitionKind.CODE_SYSTEM: "code_systems",
}

_MAP_NAMES = (
    "resources",
    "logicals",
    "profiles",
    "extensions",
    "types",
    "value_sets",
    "code_systems",
    "implementation_guides",
)


@dataclass
class Metadata:
    """Commonly needed facts about a definition, without the full JSON."""

    id: Optional[str] = None
    name: Optional[str] = None
    sd_type: Optional[str] = None
    url: Optional[str] = None
    parent: Optional[str] = None
    abstract: Optional[bool] = None
    version: Optional[str] = None
    resource_type: Optional[str] = None
    impose_profiles: List[str] = field(default_factory=list)
    can_bind: bool = False
    can_be_target: Optional[bool] = None

    @classmethod
    def from_definition(cls, definition: Dict[str, Any]) -> "Metadata":
        characteristics = [
            ext.get("valueCode")
            for ext in definition.get("extension", [])
            if ext.get("url") == TYPE_CHARACTERISTICS_EXTENSION
        ]
        impose_profiles = [
            ext.get("valueCanonical")
            for ext in definition.get("extension", [])
            if ext.get("url") == IMPOSE_PROFILE_EXTENSION and ext.get("valueCanonical")
        ]
        can_be_target = None
        if definition.get("kind") == "logical":
            can_be_target = "can-be-target" in characteristics or any(
                ext.get("url") == LOGICAL_TARGET_EXTENSION and ext.get("valueBoolean") is True
                for ext in definition.get("extension", [])
            )
        return cls(
            id=definition.get("id"),
            name=definition.get("name"),
            sd_type=definition.get("type"),
            url=definition.get("url"),
            parent=definition.get("baseDefinition"),
            abstract=definition.get("abstract"),
            version=definition.get("version"),
            resource_type=definition.get("resourceType"),
            impose_profiles=impose_profiles,
            can_bind="can-bind" in characteristics,
            can_be_target=can_be_target,
        )


class Fishable(Protocol):
    """Anything that can resolve definitions by id, name or url."""

    def fish_for_fhir(self, item: str, *kinds: DefinitionKind) -> Optional[Dict[str, Any]]: ...

    def fish_for_metadata(self, item: str, *kinds: DefinitionKind) -> Optional[Metadata]: ...


def _ordered_kinds(kinds: Sequence[DefinitionKind]) -> List[DefinitionKind]:
    if not kinds:
        return list(FISHING_ORDER)
    return sorted(
        (k for k in kinds if k in FISHING_ORDER), key=FISHING_ORDER.index
    )


def _unique_values(defs: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Values of an id/url/name index, each definition once."""
    seen = set()
    values = []
    for definition in defs.values():
        if id(definition) not in seen:
            seen.add(id(definition))
            values.append(definition)
    return values


class DefinitionRegistry:
    """Registry of FHIR definitions with chained and supplemental lookups."""

    def __init__(self, package: str = ""):
        """Create an empty registry.

        Args:
            package: ``packageId#version`` of the package this registry holds,
                or empty for an aggregate registry.
        """
        self.package = package
        self.child_registries: List[DefinitionRegistry] = []
        self.supplemental_registries: Dict[str, DefinitionRegistry] = {}
        self.unsuccessful_load = False
        self.package_jsons: Dict[str, Dict[str, Any]] = {}
        self._maps: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in _MAP_NAMES}
        self._implied_extensions: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Population
    # ------------------------------------------------------------------
    def add(self, definition: Dict[str, Any]) -> None:
        """Classify a definition into its kind map and index it."""
        resource_type = definition.get("resourceType")
        target: Optional[str] = None
        if resource_type == "StructureDefinition":
            kind = definition.get("kind")
            if definition.get("type") == "Extension" and definition.get("baseDefinition") != ELEMENT_URL:
                target = "extensions"
            elif kind in ("primitive-type", "complex-type", "datatype"):
                target = "types"
            elif kind == "resource":
                target = "profiles" if definition.get("derivation") == "constraint" else "resources"
            elif kind == "logical":
                target = "logicals" if definition.get("derivation") == "specialization" else "profiles"
        elif resource_type == "ValueSet":
            target = "value_sets"
        elif resource_type == "CodeSystem":
            target = "code_systems"
        elif resource_type == "ImplementationGuide":
            target = "implementation_guides"
        if target is None:
            logger.debug(f"Ignoring unsupported definition {definition.get('id')} ({resource_type})")
            return
        index = self._maps[target]
        for key in ("id", "url", "name"):
            if definition.get(key):
                index[definition[key]] = definition

    def add_all(self, definitions: Iterable[Dict[str, Any]]) -> None:
        for definition in definitions:
            self.add(definition)

    def add_package_json(self, package_id: str, package_json: Dict[str, Any]) -> None:
        self.package_jsons[package_id] = package_json

    def get_package_json(self, package_id: str) -> Optional[Dict[str, Any]]:
        return self.package_jsons.get(package_id)

    def add_child_registry(self, registry: "DefinitionRegistry") -> None:
        self.child_registries.append(registry)

    def add_supplemental_registry(self, registry: "DefinitionRegistry") -> None:
        """Register a registry used only for cross-version lookups."""
        self.supplemental_registries[registry.package] = registry

    def get_supplemental_registry(self, package: str) -> Optional["DefinitionRegistry"]:
        """Return the supplemental registry for ``packageId#version``.

        A ``#current`` request matches any loaded version of the package.
        Registries whose load failed are treated as absent.
        """
        registry = self.supplemental_registries.get(package)
        if registry is None and package.endswith("#current"):
            package_id = package.split("#", 1)[0]
            registry = next(
                (r for key, r in self.supplemental_registries.items() if key.split("#", 1)[0] == package_id),
                None,
            )
        if registry is None or registry.unsuccessful_load:
            return None
        return registry

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------
    def size(self) -> int:
        own = sum(len(_unique_values(self._maps[name])) for name in _MAP_NAMES)
        return own + sum(child.size() for child in self.child_registries)

    def _collect(self, map_name: str, package: Optional[str]) -> List[Dict[str, Any]]:
        collected: List[Dict[str, Any]] = []
        if package is None or self.package == package:
            collected.extend(copy.deepcopy(v) for v in _unique_values(self._maps[map_name]))
        for child in self.child_registries:
            collected.extend(child._collect(map_name, package))
        return collected

    def _all(self, map_name: str, package: Optional[str]) -> List[Dict[str, Any]]:
        collected = self._collect(map_name, package)
        if not self.child_registries:
            return collected
        unique: List[Dict[str, Any]] = []
        for definition in collected:
            if definition not in unique:
                unique.append(definition)
        return unique

    def all_resources(self, package: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._all("resources", package)

    def all_logicals(self, package: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._all("logicals", package)

    def all_profiles(self, package: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._all("profiles", package)

    def all_extensions(self, package: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._all("extensions", package)

    def all_types(self, package: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._all("types", package)

    def all_value_sets(self, package: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._all("value_sets", package)

    def all_code_systems(self, package: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._all("code_systems", package)

    def all_implementation_guides(self, package: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._all("implementation_guides", package)

    def all_packages(self, package: Optional[str] = None) -> List[str]:
        packages: List[str] = []
        for child in self.child_registries:
            packages.extend(p for p in child.all_packages(package) if p not in packages)
        if self.package and (package is None or package == self.package) and self.package not in packages:
            packages.append(self.package)
        return packages

    def all_unsuccessful_package_loads(self, package: Optional[str] = None) -> List[str]:
        failed: List[str] = []
        for child in self.child_registries:
            failed.extend(p for p in child.all_unsuccessful_package_loads(package) if p not in failed)
        if self.unsuccessful_load and (package is None or package == self.package) and self.package not in failed:
            failed.append(self.package)
        return failed

    # ------------------------------------------------------------------
    # Fishing
    # ------------------------------------------------------------------
    def _get_definition(self, item: str, map_name: str) -> Optional[Dict[str, Any]]:
        """Breadth-first search of this registry and its children."""
        base, _, version = (item or "").partition("|")
        queue: List[DefinitionRegistry] = [self]
        while queue:
            current = queue.pop(0)
            definition = current._maps[map_name].get(base)
            if definition is not None and (not version or version == definition.get("version")):
                return definition
            queue.extend(current.child_registries)
        return None

    def fish_for_fhir(self, item: str, *kinds: DefinitionKind) -> Optional[Dict[str, Any]]:
        """Return a deep copy of the first definition matching ``item``.

        Args:
            item: id, name or canonical url, optionally suffixed with ``|version``.
            *kinds: Kinds to search; all fishable kinds when omitted.

        Returns:
            The definition JSON or ``None``.
        """
        return self._fish(item, kinds, True)

    find = fish_for_fhir

    def _fish(self, item: str, kinds: Sequence[DefinitionKind], implied: bool) -> Optional[Dict[str, Any]]:
        ordered = _ordered_kinds(kinds)
        for kind in ordered:
            definition = self._get_definition(item, _KIND_TO_MAP[kind])
            if definition is not None:
                return copy.deepcopy(definition)
        if implied and DefinitionKind.EXTENSION in ordered:
            materialized = self._fish_implied_extension(item)
            if materialized is not None:
                return copy.deepcopy(materialized)
        return None

    def fish_for_metadata(self, item: str, *kinds: DefinitionKind) -> Optional[Metadata]:
        definition = self.fish_for_fhir(item, *kinds)
        if definition is None:
            return None
        return Metadata.from_definition(definition)

    def _fish_implied_extension(self, item: str) -> Optional[Dict[str, Any]]:
        from .implied_extensions import is_implied_extension, materialize_implied_extension

        if not item or not is_implied_extension(item.split("|", 1)[0]):
            return None
        url = item.split("|", 1)[0]
        if url not in self._implied_extensions:
            materialized = materialize_implied_extension(url, self)
            if materialized is None:
                return None
            self._implied_extensions[url] = materialized
        return self._implied_extensions[url]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    async def load_package(
        self,
        package_id: str,
        path: Optional[Union[str, Path]] = None,
        catalog: Optional[PackageCatalog] = None,
        supplemental: bool = False,
    ) -> "DefinitionRegistry":
        """Load an installed package into a new child (or supplemental) registry.

        Args:
            package_id: ``packageId#version``; ``#latest`` resolves to the newest
                installed version.
            path: Directory holding the package's JSON files. Resolved through
                the package catalog when omitted.
            catalog: Catalog used to resolve ``path``.
            supplemental: Register the result as a supplemental registry instead
                of a child registry.

        Returns:
            The registry holding the package. Its ``unsuccessful_load`` flag is
            set when nothing could be loaded.
        """
        registry = await _read_package(package_id, path, catalog or get_package_catalog())
        self._attach(registry, supplemental)
        return registry

    async def load_packages(
        self,
        package_ids: Sequence[str],
        catalog: Optional[PackageCatalog] = None,
        supplemental: bool = False,
    ) -> List["DefinitionRegistry"]:
        """Load several packages concurrently, keeping their declared order."""
        catalog = catalog or get_package_catalog()
        registries = await asyncio.gather(
            *(_read_package(package_id, None, catalog) for package_id in package_ids)
        )
        for registry in registries:
            self._attach(registry, supplemental)
        return list(registries)

    def _attach(self, registry: "DefinitionRegistry", supplemental: bool) -> None:
        if supplemental:
            self.add_supplemental_registry(registry)
        else:
            self.add_child_registry(registry)


async def _read_package(
    package_id: str, path: Optional[Union[str, Path]], catalog: PackageCatalog
) -> DefinitionRegistry:
    if path is None:
        installed = catalog.resolve(package_id)
        if installed is not None:
            package_id = installed.full_name
            path = installed.path
    registry = DefinitionRegistry(package_id)
    try:
        if path is None:
            raise PackageLoadError(package_id)
        definitions = await asyncio.to_thread(read_package_definitions, Path(path))
        if not definitions:
            raise PackageLoadError(package_id)
        registry.add_all(definitions)
        package_json = await asyncio.to_thread(read_package_json, Path(path))
        if package_json is not None:
            registry.add_package_json(package_id, package_json)
        logger.info(f"Loaded package {package_id} ({registry.size()} definitions)")
    except PackageLoadError as e:
        registry.unsuccessful_load = True
        logger.error(str(e))
    except (OSError, ValueError) as e:
        registry.unsuccessful_load = True
        logger.error(f"Failed to load {package_id}: {e}")
    return registry


class ChainedFisher:
    """Fish in locally exported definitions first, then in the registry.

    Local definitions shadow registry entries of the same id, name or url.
    """

    def __init__(self, local: Optional[DefinitionRegistry] = None, registry: Optional[DefinitionRegistry] = None):
        self.local = local if local is not None else DefinitionRegistry()
        self.registry = registry if registry is not None else DefinitionRegistry()

    @property
    def default_fhir_version(self) -> Optional[str]:
        core = self.registry.fish_for_fhir("StructureDefinition", DefinitionKind.RESOURCE)
        return core.get("fhirVersion") if core else None

    def fish_for_fhir(self, item: str, *kinds: DefinitionKind) -> Optional[Dict[str, Any]]:
        result = self.local._fish(item, kinds, False)
        if result is None:
            result = self.registry.fish_for_fhir(item, *kinds)
        return result

    def fish_for_metadata(self, item: str, *kinds: DefinitionKind) -> Optional[Metadata]:
        local = self.local._fish(item, kinds, False)
        result = Metadata.from_definition(local) if local is not None else None
        if result is None:
            result = self.registry.fish_for_metadata(item, *kinds)
        return result


def fish_for_fhir_best_version(
    fisher: Optional[Fishable], item: Optional[str], *kinds: DefinitionKind
) -> Optional[Dict[str, Any]]:
    """Fish for ``item``; if a ``|version`` lookup misses, take any version."""
    if fisher is None or item is None:
        return None
    result = fisher.fish_for_fhir(item, *kinds)
    if result is None and "|" in item:
        base, _, version = item.partition("|")
        result = fisher.fish_for_fhir(base, *kinds)
        if version and result is not None and result.get("version") is not None and result["version"] != version:
            logger.warning(
                f"The {base} definition was specified with version {version}, "
                f"but found version {result['version']}"
            )
    return result


def fish_for_metadata_best_version(
    fisher: Optional[Fishable], item: Optional[str], *kinds: DefinitionKind
) -> Optional[Metadata]:
    """Metadata counterpart of :func:`fish_for_fhir_best_version`."""
    if fisher is None or item is None:
        return None
    result = fisher.fish_for_metadata(item, *kinds)
    if result is None and "|" in item:
        base, _, version = item.partition("|")
        result = fisher.fish_for_metadata(base, *kinds)
        if version and result is not None and result.version is not None and result.version != version:
            logger.warning(
                f"The {base} definition was specified with version {version}, "
                f"but found version {result.version}"
            )
    return result
