"""StructureDefinition: an ordered element sequence plus resource metadata.

Key capabilities:
* Load from and serialize to FHIR JSON (snapshot and differential)
* Insert elements so that every subtree stays contiguous
* Resolve FSH paths to elements, unfolding types, materializing choice
    slices and adding slices on demand
* Validate and set values on the definition itself (``^`` caret paths)

Example:
        sd = StructureDefinition.from_json(registry.fish_for_fhir("Observation"))
        quantity = sd.find_element_by_path("valueQuantity", registry)
        print(quantity.id)  # Observation.value[x]:valueQuantity
        sd.set_instance_property_by_path("status", FshCode("draft"), registry)

Design notes:
* The first element is always the root; its id is the definition's type.
* Path resolution may add elements as a side effect. A failed resolution does
    not undo unfolding done for earlier path segments.
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from .element import (
    ElementDefinition,
    ElementDefinitionType,
    fhir_property,
    is_reference_type,
    max_exceeds_one,
    upper_first,
)
from .errors import (
    CannotResolvePathError,
    InvalidElementAccessError,
    MissingSnapshotError,
    TypeNotFoundError,
)
from .models import PathPart
from .paths import get_array_index, parse_fsh_path
from .primitives import is_primitive_code
from .registry import DefinitionKind, Fishable

logger = logging.getLogger(__name__)

SD_PROPS = [
    "id",
    "meta",
    "implicitRules",
    "language",
    "text",
    "contained",
    "extension",
    "modifierExtension",
    "url",
    "identifier",
    "version",
    "name",
    "title",
    "status",
    "experimental",
    "date",
    "publisher",
    "contact",
    "description",
    "useContext",
    "jurisdiction",
    "purpose",
    "copyright",
    "keyword",
    "fhirVersion",
    "mapping",
    "kind",
    "abstract",
    "context",
    "contextInvariant",
    "type",
    "baseDefinition",
    "derivation",
]
_SD_PROPS_AND_UNDERPROPS = [p for prop in SD_PROPS for p in (prop, f"_{prop}")]

_SIGNED_INT_RE = re.compile(r"^[-+]?\d+$")
_EXTENSION_ELEMENTS = ("extension", "modifierExtension")


def _in_subtree(element_id: str, root_id: str) -> bool:
    return element_id == root_id or element_id.startswith(f"{root_id}.") or element_id.startswith(f"{root_id}:")


def set_property_on_instance(instance: Dict[str, Any], path_parts: List[PathPart], value: Any) -> None:
    """Write ``value`` into a JSON object along already validated path parts.

    Arrays are padded with ``None`` up to the requested index. A primitive
    part that is not the last one writes to its ``_name`` sibling, which is
    where FHIR JSON keeps extensions and ids of primitives.
    """
    if value is None:
        return
    current: Any = instance
    for i, part in enumerate(path_parts):
        last = i == len(path_parts) - 1
        key = f"_{part.base}" if part.primitive and not last else part.base
        index = get_array_index(part)
        if index is not None:
            array = current.get(key)
            if not isinstance(array, list):
                array = []
                current[key] = array
            while len(array) <= index:
                array.append(None)
            if last:
                array[index] = value
            else:
                if array[index] is None:
                    array[index] = {}
                current = array[index]
        elif last:
            current[key] = value
        else:
            if current.get(key) is None:
                current[key] = {}
            current = current[key]


class StructureDefinition:
    """A FHIR StructureDefinition being constrained."""

    id = fhir_property("id")
    name = fhir_property("name")
    url = fhir_property("url")
    version = fhir_property("version")
    title = fhir_property("title")
    status = fhir_property("status")
    description = fhir_property("description")
    publisher = fhir_property("publisher")
    fhir_version = fhir_property("fhirVersion")
    kind = fhir_property("kind")
    abstract = fhir_property("abstract")
    context = fhir_property("context")
    type = fhir_property("type")
    base_definition = fhir_property("baseDefinition")
    derivation = fhir_property("derivation")

    def __init__(self):
        self.props: Dict[str, Any] = {}
        self.elements: List[ElementDefinition] = []
        root = ElementDefinition("")
        root.structure_definition = self
        root.min = 0
        root.max = "*"
        root.must_support = False
        root.is_modifier = False
        root.is_summary = False
        self.add_element(root)

    def __repr__(self) -> str:
        return f"StructureDefinition({self.name or self.id!r})"

    @property
    def path_type(self) -> str:
        """Type name used as the first path segment; logical models may use a URL type."""
        sd_type = self.type or ""
        if sd_type.startswith("http"):
            return sd_type[sd_type.rfind("/") + 1:]
        return sd_type

    # ------------------------------------------------------------------
    # Element sequence
    # ------------------------------------------------------------------
    def add_element(self, element: ElementDefinition) -> None:
        """Insert ``element`` after the last element of the subtree it belongs to."""
        last_match_id = ""
        for i, current in enumerate(self.elements):
            if element.id.startswith(f"{current.id}.") or element.id.startswith(f"{current.id}:"):
                last_match_id = current.id
            elif last_match_id and not _in_subtree(current.id, last_match_id):
                self.elements.insert(i, element)
                break
        else:
            self.elements.append(element)
        element.structure_definition = self

    def add_elements(self, elements: List[ElementDefinition]) -> None:
        for element in elements:
            self.add_element(element)

    def new_element(self, name: str = "$UNKNOWN") -> ElementDefinition:
        element = self.elements[0].new_child_element(name)
        self.add_element(element)
        return element

    def find_element(self, element_id: str) -> Optional[ElementDefinition]:
        if not element_id:
            return None
        return next((e for e in self.elements if e.id == element_id), None)

    def capture_original_elements(self) -> None:
        for element in self.elements:
            element.capture_original()

    def clear_original_elements(self) -> None:
        for element in self.elements:
            element.clear_original()

    # ------------------------------------------------------------------
    # Path resolution
    # ------------------------------------------------------------------
    def find_element_by_path(self, path: str, fisher: Fishable) -> Optional[ElementDefinition]:
        """Resolve a FSH path (``component[SystolicBP].value[x]``) to an element.

        Returns None when the path names something that cannot exist. May add
        elements to the definition: unfolded children, choice slices such as
        ``value[x]:valueQuantity`` and slices of already sliced elements.
        """
        if path in ("", "."):
            return self.elements[0]
        full_path = f"{self.path_type}.{path}"
        existing = next((e for e in self.elements if e.path == full_path and ":" not in e.id), None)
        if existing is not None:
            return existing

        fhir_path = self.path_type
        matching = list(self.elements)
        for part in parse_fsh_path(path):
            fhir_path = f"{fhir_path}.{part.base}"
            brackets = list(part.brackets or [])
            if brackets and _SIGNED_INT_RE.match(brackets[-1]):
                if get_array_index(part) is None:
                    return None
                brackets = brackets[:-1]

            new_matching = [e for e in matching if e.path == fhir_path or e.path.startswith(f"{fhir_path}.")]
            if not new_matching and len(matching) == 1:
                unfolded = matching[0].unfold(fisher)
                new_matching = [e for e in unfolded if e.path == fhir_path or e.path.startswith(f"{fhir_path}.")]
                matching = matching + unfolded

            choice_slice = None
            if not new_matching:
                choice_slice = self._slice_matching_value_x(fhir_path, matching)
                if choice_slice is None:
                    return None
                fhir_path = choice_slice.path
                new_matching = [choice_slice, *choice_slice.children()]

            if brackets:
                target = self._find_matching_slice(fhir_path, brackets, new_matching, fisher)
                if target is None:
                    target = self._find_matching_ref(fhir_path, brackets[-1], new_matching)
                if target is None:
                    target = self._add_slice_on_demand(fhir_path, brackets, new_matching, fisher)
                if target is None:
                    return None
                new_matching = [target, *target.children()]
            elif choice_slice is None:
                depth = len(fhir_path.split("."))
                new_matching = [e for e in new_matching if ":" not in e.id.split(".")[depth - 1]]
            matching = new_matching

        found = [e for e in matching if e.path == fhir_path]
        return found[0] if len(found) == 1 else None

    def _slice_matching_value_x(
        self, fhir_path: str, elements: List[ElementDefinition]
    ) -> Optional[ElementDefinition]:
        """Resolve a type-specific choice name such as ``valueQuantity``.

        A choice with exactly one type and no slices resolves to itself.
        Otherwise the choice is sliced by type and a slice named after the
        type-specific name is returned (created if needed).
        """
        candidates: List[ElementDefinition] = []
        matching_type: Optional[ElementDefinitionType] = None
        for element in elements:
            if not element.path.endswith("[x]"):
                continue
            for t in element.type or []:
                if f"{element.path[:-3]}{upper_first(t.code)}" == fhir_path:
                    candidates.append(element)
                    if matching_type is None:
                        matching_type = t
                    break
        if not candidates:
            return None
        slice_name = fhir_path[fhir_path.rfind(".") + 1:]
        existing = next((c for c in candidates if c.slice_name == slice_name), None)
        if existing is not None:
            return existing
        choice = candidates[0]
        if len(choice.type) == 1 and not choice.get_slices() and not choice.slice_name:
            return choice
        choice.slice_it("type", "$this", False, "open")
        return choice.add_slice(slice_name, matching_type)

    def _find_matching_slice(
        self, fhir_path: str, brackets: List[str], elements: List[ElementDefinition], fisher: Fishable
    ) -> Optional[ElementDefinition]:
        slice_name = "/".join(brackets)
        for element in elements:
            if element.path == fhir_path and element.slice_name == slice_name:
                return element
        if fhir_path.split(".")[-1] in _EXTENSION_ELEMENTS and len(brackets) == 1:
            # extension slices may also be named by the extension's url or name
            extension = fisher.fish_for_metadata(brackets[0], DefinitionKind.EXTENSION)
            url = extension.url if extension is not None else brackets[0]
            for element in elements:
                if (
                    element.path == fhir_path
                    and element.slice_name
                    and element.type
                    and url in (element.type[0].profile or [])
                ):
                    return element
        return None

    @staticmethod
    def _find_matching_ref(
        fhir_path: str, name: str, elements: List[ElementDefinition]
    ) -> Optional[ElementDefinition]:
        for element in elements:
            if element.path != fhir_path or element.slice_name:
                continue
            for t in element.type or []:
                if not (is_reference_type(t.code) or t.code == "canonical"):
                    continue
                for target_profile in t.target_profile or []:
                    if target_profile.split("|", 1)[0].split("/")[-1] == name:
                        return element
        return None

    def _add_slice_on_demand(
        self, fhir_path: str, brackets: List[str], elements: List[ElementDefinition], fisher: Fishable
    ) -> Optional[ElementDefinition]:
        """Add a slice named by the last bracket to an already sliced element.

        Extension elements are sliced by url automatically when the bracket
        names a known extension, and the new slice is profiled with it.
        """
        if len(brackets) > 1:
            parent = self._find_matching_slice(fhir_path, brackets[:-1], elements, fisher)
        else:
            depth = len(fhir_path.split("."))
            parent = next(
                (e for e in elements if e.path == fhir_path and ":" not in e.id.split(".")[depth - 1]),
                None,
            )
        if parent is None:
            return None
        slice_name = brackets[-1]
        if fhir_path.split(".")[-1] in _EXTENSION_ELEMENTS and len(brackets) == 1:
            extension = fisher.fish_for_metadata(slice_name, DefinitionKind.EXTENSION)
            if extension is not None:
                if not parent.slicing:
                    parent.slice_it("value", "url", False, "open")
                logger.debug(f"Adding extension slice {slice_name} to {parent.id}")
                return parent.add_slice(slice_name, ElementDefinitionType("Extension").with_profiles(extension.url))
        if parent.slicing:
            return parent.add_slice(slice_name)
        return None

    def get_reference_name(self, path: str, element: ElementDefinition) -> Optional[str]:
        """Return the reference target named in the last bracket of ``path``, if any."""
        parts = parse_fsh_path(path) if path else []
        if not parts or not parts[-1].brackets:
            return None
        name = parts[-1].brackets[-1]
        for t in element.type or []:
            if not (is_reference_type(t.code) or t.code == "canonical"):
                continue
            for target_profile in t.target_profile or []:
                if target_profile.split("|", 1)[0].split("/")[-1] == name:
                    return name
        return None

    def find_obsolete_choices(
        self, element: ElementDefinition, old_types: List[ElementDefinitionType]
    ) -> List[str]:
        """Names of changed choice slices whose type ``old_types`` removes."""
        if not element.path.endswith("[x]"):
            return []
        base_name = element.path[element.path.rfind(".") + 1: -3]
        obsolete = []
        for t in old_types:
            slice_name = f"{base_name}{upper_first(t.code)}"
            choice_slice = self.find_element(f"{element.id}:{slice_name}")
            if choice_slice is not None and choice_slice.has_diff():
                obsolete.append(slice_name)
        return obsolete

    # ------------------------------------------------------------------
    # Caret paths
    # ------------------------------------------------------------------
    def validate_value_at_path(self, path: str, value: Any, fisher: Fishable) -> Tuple[Any, List[PathPart]]:
        """Check that ``value`` may be assigned at ``path`` of an instance of this type.

        Returns:
            The FHIR JSON form of the value and the path parts, with array
            indexes made explicit and primitive parts marked.

        Raises:
            CannotResolvePathError: The path does not exist, is prohibited
                (max 0), or indexes beyond the element's max.
        """
        parts = parse_fsh_path(path)
        current_path = ""
        element: Optional[ElementDefinition] = None
        for part in parts:
            brackets = list(part.brackets or [])
            index = get_array_index(part)
            if brackets and _SIGNED_INT_RE.match(brackets[-1]) and index is None:
                raise CannotResolvePathError(path)
            slice_brackets = brackets[:-1] if index is not None else brackets
            current_path = f"{current_path}.{part.base}" if current_path else part.base
            current_path += "".join(f"[{b}]" for b in slice_brackets)

            element = self.find_element_by_path(current_path, fisher)
            if element is None or element.max == "0":
                raise CannotResolvePathError(path)
            base_max = (element.base or {}).get("max")
            if index is not None and element.max not in (None, "*"):
                # A singleton only keeps array form when its base is an array
                if index >= int(element.max) or (element.max == "1" and not max_exceeds_one(base_max)):
                    raise CannotResolvePathError(path)
            if index is None and (max_exceeds_one(element.max) or max_exceeds_one(base_max)):
                part.brackets = [*brackets, "0"]
            if element.type and len(element.type) == 1 and is_primitive_code(element.type[0].code):
                part.primitive = True

        if element is None:
            raise CannotResolvePathError(path)
        candidate = element.clone()
        candidate.assign_value(value, exactly=True, fisher=fisher)
        fixed_key = next((k for k in candidate.props if k.startswith("fixed")), None)
        return candidate.props.get(fixed_key), parts

    def set_instance_property_by_path(self, path: str, value: Any, fisher: Fishable) -> None:
        """Set a metadata property of this definition (``status``, ``contact[0].name``)."""
        if path.startswith("snapshot") or path.startswith("differential"):
            raise InvalidElementAccessError(path)
        sd_json = fisher.fish_for_fhir("StructureDefinition", DefinitionKind.RESOURCE)
        if sd_json is None:
            raise TypeNotFoundError("StructureDefinition")
        fixed_value, path_parts = StructureDefinition.from_json(sd_json).validate_value_at_path(path, value, fisher)
        set_property_on_instance(self.props, path_parts, fixed_value)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_json(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"resourceType": "StructureDefinition"}
        for prop in _SD_PROPS_AND_UNDERPROPS:
            if self.props.get(prop) is not None:
                result[prop] = copy.deepcopy(self.props[prop])
        result["snapshot"] = {"element": [e.to_json() for e in self.elements]}
        result["differential"] = {
            "element": [e.calculate_diff().to_json() for e in self.elements if e.has_diff()]
        }
        return result

    @classmethod
    def from_json(cls, json_obj: Dict[str, Any], capture_original: bool = True) -> "StructureDefinition":
        """Build a definition from FHIR JSON.

        Raises:
            MissingSnapshotError: The JSON carries no snapshot elements.
        """
        snapshot = (json_obj.get("snapshot") or {}).get("element")
        if not snapshot:
            raise MissingSnapshotError(json_obj.get("url"))
        sd = cls()
        sd.elements = []
        for prop in _SD_PROPS_AND_UNDERPROPS:
            if json_obj.get(prop) is not None:
                sd.props[prop] = copy.deepcopy(json_obj[prop])
        for element_json in snapshot:
            element = ElementDefinition.from_json(element_json, capture_original)
            element.structure_definition = sd
            sd.elements.append(element)
        return sd
