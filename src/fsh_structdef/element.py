"""Element tree nodes of a structure definition.

An :class:`ElementDefinition` is one row of a StructureDefinition snapshot.
Elements do not hold pointers to their parents or children. Every relation
(parent, children, slices, the sliced element, connected elements) is derived
from the element's slice-qualified id and the ordered element sequence of the
owning :class:`~fsh_structdef.structure_definition.StructureDefinition`.

Key capabilities:
* Narrowing-only cardinality with slice sum and slice max checks
* Slicing (``slice_it``/``add_slice``) with the open < openAtEnd < closed lattice
* Type constraints through the type lineage of the registry, including
    profile and target profile narrowing and supertype replacement
* Flags, value set bindings, invariants and mappings
* ``fixed[x]``/``pattern[x]`` assignment for every value wrapper in
    :mod:`fsh_structdef.models`, with idempotence and conflict detection
* Unfolding of complex types and content references
* Baseline capture and differential calculation

Example:
        sd = StructureDefinition.from_json(registry.fish_for_fhir("Observation"))
        status = sd.find_element("Observation.status")
        status.constrain_cardinality(1, "1")
        status.assign_value(FshCode("final"), exactly=True, fisher=registry)
        print(status.calculate_diff().to_json())

Design notes:
* FHIR JSON properties other than ``id``, ``path`` and ``type`` live in
    ``props`` keyed by their JSON names, so every ``fixed[x]``, ``pattern[x]``
    and ``defaultValue[x]`` variant round-trips without special cases.
* Mutating operations run all of their checks before changing anything, so a
    raised error leaves the element as it was.
"""

from __future__ import annotations

import copy
import json
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple, Union

from .errors import (
    AmbiguousTypeError,
    AssignmentToCodeableReferenceError,
    BindingStrengthError,
    CannotResolvePathError,
    CodedTypeNotFoundError,
    DisableFlagError,
    DuplicateSliceError,
    FixedToPatternError,
    FshStructDefError,
    InvalidCanonicalUrlError,
    InvalidCardinalityError,
    InvalidChoiceTypeRulePathError,
    InvalidFHIRIdError,
    InvalidMappingError,
    InvalidMaxOfSliceError,
    InvalidMustSupportError,
    InvalidSumOfSliceMinsError,
    InvalidTypeError,
    InvalidUriError,
    MismatchedBindingTypeError,
    MismatchedTypeError,
    MultipleStandardsStatusError,
    NarrowingRootCardinalityError,
    NonAbstractParentOfSpecializationError,
    NoSingleTypeError,
    SliceTypeRemovalError,
    SlicingDefinitionError,
    SlicingNotDefinedError,
    TypeNotFoundError,
    ValueAlreadyAssignedError,
    ValueConflictsWithClosedSlicingError,
    WideningCardinalityError,
)
from .models import (
    FshCanonical,
    FshCode,
    FshQuantity,
    FshRatio,
    FshReference,
    InstanceDefinition,
    Invariant,
)
from .paths import split_on_path_periods
from .primitives import BINDABLE_TYPES, BINDING_STRENGTHS, is_uri, is_valid_id, number_matches_type, string_matches_type
from .registry import (
    DefinitionKind,
    Fishable,
    Metadata,
    fish_for_fhir_best_version,
    fish_for_metadata_best_version,
)
from .rules import OnlyRuleType

if TYPE_CHECKING:
    from .structure_definition import StructureDefinition

logger = logging.getLogger(__name__)

FHIR_TYPE_EXTENSION = "http://hl7.org/fhir/StructureDefinition/structuredefinition-fhir-type"
STANDARDS_STATUS_EXTENSION = "http://hl7.org/fhir/StructureDefinition/structuredefinition-standards-status"
PROFILE_ELEMENT_EXTENSION = "http://hl7.org/fhir/StructureDefinition/elementdefinition-profile-element"
QUANTITY_URL = "http://hl7.org/fhir/StructureDefinition/Quantity"

_FHIRPATH_PRIMITIVE = re.compile(r"^http://hl7\.org/fhirpath/System\.")

# Serialization order of ElementDefinition properties.
ED_PROPS = [
    "id",
    "extension",
    "modifierExtension",
    "path",
    "representation",
    "sliceName",
    "sliceIsConstraining",
    "label",
    "code",
    "slicing",
    "short",
    "definition",
    "comment",
    "requirements",
    "alias",
    "min",
    "max",
    "base",
    "contentReference",
    "type",
    "defaultValue[x]",
    "meaningWhenMissing",
    "orderMeaning",
    "fixed[x]",
    "pattern[x]",
    "example",
    "minValue[x]",
    "maxValue[x]",
    "maxLength",
    "condition",
    "constraint",
    "mustSupport",
    "isModifier",
    "isModifierReason",
    "isSummary",
    "binding",
    "mapping",
]
_PROPS_AND_UNDERPROPS = [p for prop in ED_PROPS for p in (prop, f"_{prop}")]
ADDITIVE_PROPS = ("mapping", "constraint")


def upper_first(value: str) -> str:
    return value[:1].upper() + value[1:]


def is_reference_type(code: Optional[str]) -> bool:
    return code in ("Reference", "CodeableReference")


def is_modifier_extension(extension_json: Dict[str, Any]) -> bool:
    """True when the root element of an Extension definition is a modifier."""
    elements = (extension_json.get("snapshot") or {}).get("element") or []
    root = next((e for e in elements if e.get("id") == "Extension"), None)
    return bool(root and root.get("isModifier"))


def is_match(obj: Any, source: Any) -> bool:
    """Partial deep comparison: does ``obj`` contain everything in ``source``?

    Dicts match when every key of ``source`` matches in ``obj``. Lists match
    when every item of ``source`` matches some item of ``obj``. Anything else
    is compared for equality.
    """
    if isinstance(source, dict):
        if not isinstance(obj, dict):
            return False
        return all(key in obj and is_match(obj[key], value) for key, value in source.items())
    if isinstance(source, list):
        if not isinstance(obj, list):
            return False
        return all(any(is_match(candidate, item) for candidate in obj) for item in source)
    return obj == source


def subtree_range(ids: Sequence[str], index: int) -> Tuple[int, int]:
    """Return the ``[start, end)`` range of the subtree rooted at ``ids[index]``.

    The subtree is the element itself plus the contiguous run of following
    entries whose ids extend it with ``.`` (children) or ``:`` (slices).
    """
    root = ids[index]
    end = index + 1
    while end < len(ids) and (ids[end].startswith(f"{root}.") or ids[end].startswith(f"{root}:")):
        end += 1
    return index, end


def max_exceeds_one(value: Optional[str]) -> bool:
    return value == "*" or (value is not None and value.isdigit() and int(value) > 1)


def _flatten(values: List[Any]) -> List[Any]:
    flat: List[Any] = []
    for value in values:
        if isinstance(value, list):
            flat.extend(value)
        else:
            flat.append(value)
    return flat


@dataclass
class ElementDefinitionType:
    """One entry of ``ElementDefinition.type``.

    ``code`` reports the FHIR type named by a ``structuredefinition-fhir-type``
    extension when one is present (used by FHIRPath primitive codes such as
    ``http://hl7.org/fhirpath/System.String``); ``actual_code`` always holds
    the serialized code.
    """

    actual_code: str
    profile: Optional[List[str]] = None
    target_profile: Optional[List[str]] = None
    aggregation: Optional[List[str]] = None
    versioning: Optional[str] = None
    extension: Optional[List[Dict[str, Any]]] = None
    primitive_ext: Dict[str, Any] = field(default_factory=dict)

    _JSON_FIELDS = (
        ("profile", "profile"),
        ("targetProfile", "target_profile"),
        ("aggregation", "aggregation"),
        ("versioning", "versioning"),
    )

    @property
    def code(self) -> str:
        for ext in self.extension or []:
            if ext.get("url") == FHIR_TYPE_EXTENSION:
                override = ext.get("valueUrl") or ext.get("valueUri")
                if override:
                    return override
        return self.actual_code

    @code.setter
    def code(self, value: str) -> None:
        self.actual_code = value

    def with_profiles(self, *profiles: str) -> "ElementDefinitionType":
        self.profile = list(profiles)
        return self

    def with_target_profiles(self, *target_profiles: str) -> "ElementDefinitionType":
        self.target_profile = list(target_profiles)
        return self

    def to_json(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"code": self.actual_code}
        if "_code" in self.primitive_ext:
            result["_code"] = copy.deepcopy(self.primitive_ext["_code"])
        for json_name, attr in self._JSON_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                result[json_name] = copy.deepcopy(value)
            if f"_{json_name}" in self.primitive_ext:
                result[f"_{json_name}"] = copy.deepcopy(self.primitive_ext[f"_{json_name}"])
        if self.extension is not None:
            result["extension"] = copy.deepcopy(self.extension)
        return result

    @classmethod
    def from_json(cls, json_obj: Dict[str, Any]) -> "ElementDefinitionType":
        edt = cls(json_obj.get("code"))
        for json_name, attr in cls._JSON_FIELDS:
            if json_obj.get(json_name) is not None:
                setattr(edt, attr, copy.deepcopy(json_obj[json_name]))
        for key in ("_code", "_profile", "_targetProfile", "_aggregation", "_versioning"):
            if key in json_obj:
                edt.primitive_ext[key] = copy.deepcopy(json_obj[key])
        if json_obj.get("extension") is not None:
            edt.extension = copy.deepcopy(json_obj["extension"])
        return edt


@dataclass
class TypeMatch:
    """How one constraining type maps onto an element type."""

    metadata: Metadata
    code: str
    type_name: str


def fhir_property(name: str) -> property:
    def getter(self: "ElementDefinition") -> Any:
        return self.props.get(name)

    def setter(self: "ElementDefinition", value: Any) -> None:
        if value is None:
            self.props.pop(name, None)
        else:
            self.props[name] = value

    return property(getter, setter, doc=f"``{name}`` JSON property")


class ElementDefinition:
    """A single element of a structure definition."""

    min = fhir_property("min")
    max = fhir_property("max")
    slice_name = fhir_property("sliceName")
    slicing = fhir_property("slicing")
    content_reference = fhir_property("contentReference")
    must_support = fhir_property("mustSupport")
    is_modifier = fhir_property("isModifier")
    is_modifier_reason = fhir_property("isModifierReason")
    is_summary = fhir_property("isSummary")
    binding = fhir_property("binding")
    constraint = fhir_property("constraint")
    mapping = fhir_property("mapping")
    base = fhir_property("base")
    extension = fhir_property("extension")
    short = fhir_property("short")
    definition = fhir_property("definition")
    comment = fhir_property("comment")
    requirements = fhir_property("requirements")

    def __init__(self, id: str = ""):
        self.props: Dict[str, Any] = {}
        self.type: Optional[List[ElementDefinitionType]] = None
        self.structure_definition: Optional["StructureDefinition"] = None
        self._original: Optional[ElementDefinition] = None
        self.id = id

    def __repr__(self) -> str:
        return f"ElementDefinition({self.id!r})"

    @property
    def id(self) -> str:
        return self._id

    @id.setter
    def id(self, value: str) -> None:
        self._id = value
        # the path is the id with slice names removed
        self.path = ".".join(part.split(":", 1)[0] for part in value.split("."))

    # ------------------------------------------------------------------
    # Generic property access
    # ------------------------------------------------------------------
    def _get(self, prop: str) -> Any:
        if prop == "id":
            return self._id
        if prop == "path":
            return self.path
        if prop == "type":
            return self.type
        return self.props.get(prop)

    def _set(self, prop: str, value: Any) -> None:
        if prop == "id":
            self.id = value
        elif prop == "path":
            self.path = value
        elif prop == "type":
            self.type = value
        elif value is None:
            self.props.pop(prop, None)
        else:
            self.props[prop] = value

    def _keys(self) -> List[str]:
        keys = ["id", "path"]
        if self.type is not None:
            keys.append("type")
        return keys + list(self.props)

    def _concrete_key(self, prop: str, *others: "ElementDefinition") -> Optional[str]:
        """Map ``fixed[x]`` style names onto the key actually present."""
        if not prop.endswith("[x]"):
            return prop
        pattern = re.compile(rf"^{re.escape(prop[:-3])}[A-Z].*$")
        for candidate in (self, *others):
            key = next((k for k in candidate._keys() if pattern.match(k)), None)
            if key is not None:
                return key
        return None

    def assigned_key(self) -> Optional[str]:
        """Name of the ``fixed[x]``/``pattern[x]`` property in use, if any."""
        return next(
            (k for k, v in self.props.items() if (k.startswith("fixed") or k.startswith("pattern")) and v is not None),
            None,
        )

    def _elements(self) -> List["ElementDefinition"]:
        return self.structure_definition.elements if self.structure_definition is not None else []

    def _find(self, element_id: str) -> Optional["ElementDefinition"]:
        if self.structure_definition is None:
            return None
        return self.structure_definition.find_element(element_id)

    # ------------------------------------------------------------------
    # Basic facts
    # ------------------------------------------------------------------
    def is_array_or_choice(self) -> bool:
        base_max = (self.base or {}).get("max")
        return max_exceeds_one(self.max) or max_exceeds_one(base_max) or self.id.endswith("[x]")

    def is_primitive(self, fisher: Fishable) -> bool:
        types = self.type
        if types is None and self.content_reference is not None:
            referenced = self._find(self._content_reference_id())
            types = referenced.type if referenced is not None else None
        if types is not None and len(types) == 1:
            type_sd = fisher.fish_for_fhir(types[0].code, DefinitionKind.TYPE)
            return bool(type_sd) and type_sd.get("kind") == "primitive-type"
        return False

    def get_path_without_base(self) -> str:
        return self.path[len(self.structure_definition.path_type) + 1:]

    def find_types_by_code(self, *codes: str) -> List[ElementDefinitionType]:
        return [t for t in self.type or [] if t.code in codes]

    def new_child_element(self, name: str = "$UNKNOWN") -> "ElementDefinition":
        child = ElementDefinition(f"{self.id}.{name}")
        child.structure_definition = self.structure_definition
        return child

    # ------------------------------------------------------------------
    # Baseline and differential
    # ------------------------------------------------------------------
    def capture_original(self) -> None:
        self._original = self.clone()
        self._original.structure_definition = None

    def clear_original(self) -> None:
        self._original = None

    def has_diff(self) -> bool:
        """True when this element differs from its captured baseline.

        Slices and sliced elements also count as changed when any of their
        children changed, so they always accompany those children in a
        differential.
        """
        original = self._original if self._original is not None else ElementDefinition()
        for prop in _PROPS_AND_UNDERPROPS:
            key = self._concrete_key(prop, original)
            if key is not None and self._get(key) != original._get(key):
                return True
        if self.slice_name or self.get_slices():
            return any(child.has_diff() for child in self.children())
        return False

    def calculate_diff(self) -> "ElementDefinition":
        """Return a new element holding only what changed since the baseline."""
        original = self._original if self._original is not None else ElementDefinition()
        diff = ElementDefinition(self.id)
        diff.structure_definition = self.structure_definition
        for prop in _PROPS_AND_UNDERPROPS:
            key = self._concrete_key(prop, original)
            if key is None:
                continue
            current, before = self._get(key), original._get(key)
            if current != before:
                if key in ADDITIVE_PROPS:
                    added = [item for item in current or [] if item not in (before or [])]
                    if added:
                        diff._set(key, copy.deepcopy(added))
                else:
                    diff._set(key, copy.deepcopy(current))
            elif key == "type" and self.slice_name and self.path.endswith("[x]"):
                # type slices of a choice always carry their type
                diff._set(key, copy.deepcopy(current))
        if original.slice_name and diff.slice_name is None:
            diff.slice_name = original.slice_name
        return diff

    # ------------------------------------------------------------------
    # Derived relations
    # ------------------------------------------------------------------
    def parent(self) -> Optional["ElementDefinition"]:
        index = self.id.rfind(".")
        if index <= 0:
            return None
        return self._find(self.id[:index])

    def get_all_parents(self) -> List["ElementDefinition"]:
        """Ancestors ordered from the direct parent up to the root."""
        parents = []
        parent = self.parent()
        while parent is not None:
            parents.append(parent)
            parent = parent.parent()
        return parents

    def children(self, direct_only: bool = False) -> List["ElementDefinition"]:
        depth = len(self.path.split("."))
        return [
            e
            for e in self._elements()
            if e is not self
            and e.id.startswith(f"{self.id}.")
            and (not direct_only or len(e.path.split(".")) == depth + 1)
        ]

    def subtree_range(self) -> Tuple[int, int]:
        elements = self._elements()
        index = next(i for i, e in enumerate(elements) if e is self)
        return subtree_range([e.id for e in elements], index)

    def get_assignable_descendents(self) -> List["ElementDefinition"]:
        required = [c for c in self.children(True) if (c.min or 0) > 0]
        descendents: List[ElementDefinition] = []
        for child in required:
            descendents.extend(child.get_assignable_descendents())
        return required + descendents

    def sliced_element(self) -> Optional["ElementDefinition"]:
        if self.slice_name:
            return self._find(self.id[: self.id.rfind(":")])
        return None

    def get_slices(self) -> List["ElementDefinition"]:
        separator = "/" if self.slice_name else ":"
        prefix = f"{self.id}{separator}"
        return [
            e for e in self._elements() if e.id != self.id and e.path == self.path and e.id.startswith(prefix)
        ]

    def find_connected_elements(self, post_path: str = "") -> List["ElementDefinition"]:
        """Elements that must stay consistent with this one.

        For ``Observation.component.code`` these are the ``code`` children of
        every ``component`` slice, found by walking up the ancestors and
        looking at each ancestor's slices.
        """
        connected = []
        for slice_element in self.get_slices():
            if slice_element.max == "0":
                continue
            element = self._find(f"{slice_element.id}{post_path}")
            if element is not None:
                connected.append(element)
        parent = self.parent()
        if parent is not None:
            last_part = split_on_path_periods(self.id)[-1]
            connected.extend(parent.find_connected_elements(f".{last_part}{post_path}"))
        return connected

    def find_connected_slice_element(self, post_path: str = "") -> Optional["ElementDefinition"]:
        slicing_root = self.sliced_element()
        if slicing_root is not None:
            return self._find(f"{slicing_root.id}{post_path}")
        parent = self.parent()
        if parent is not None:
            return parent.find_connected_slice_element(f".{self.path.split('.')[-1]}{post_path}")
        return None

    def find_parent_slice(self) -> Optional["ElementDefinition"]:
        """For a reslice such as ``Lab/Chem``, return the ``Lab`` slice."""
        if not self.slice_name:
            return None
        sliced = self.sliced_element()
        name_parts = self.slice_name.split("/")[:-1]
        candidates = ["/".join(name_parts[: i + 1]) for i in range(len(name_parts))]
        for name in reversed(candidates):
            for element in self._elements():
                if element.slice_name == name and element.sliced_element() is sliced:
                    return element
        return None

    def is_part_of_complex_extension(self) -> bool:
        if self.structure_definition is None or self.structure_definition.type != "Extension":
            return False
        chain = [self, *self.get_all_parents()[:-1]]
        return all(
            e.type is not None and len(e.type) == 1 and e.type[0].code == "Extension" and e.slice_name is not None
            for e in chain
        )

    # ------------------------------------------------------------------
    # Cardinality
    # ------------------------------------------------------------------
    def _check_sum_of_slice_mins(self, new_max: str, slice_min_increase: int = 0) -> int:
        total = slice_min_increase + sum(s.min or 0 for s in self.get_slices())
        if new_max != "*" and total > int(new_max):
            raise InvalidSumOfSliceMinsError(total, new_max, self.id)
        return total

    def constrain_cardinality(self, new_min: Optional[int], new_max: Optional[str] = "") -> None:
        """Narrow this element's cardinality.

        Args:
            new_min: New minimum, or None to keep the current one.
            new_max: New maximum (``"*"`` for unbounded), or an empty string to
                keep the current one.

        Raises:
            InvalidCardinalityError: min is greater than max.
            WideningCardinalityError: the new bounds are wider than the current ones.
            InvalidSumOfSliceMinsError: slice minimums would exceed a sliced element's max.
            InvalidMaxOfSliceError: a slice max would exceed its sliced element's max.
            NarrowingRootCardinalityError: a connected slice element cannot take the new bounds.
        """
        if new_min is None:
            new_min = self.min
        if not new_max:
            new_max = self.max
        unbounded = new_max == "*"
        max_int = None if unbounded or new_max is None else int(new_max)

        if max_int is not None and new_min is not None and new_min > max_int:
            raise InvalidCardinalityError(new_min, new_max)
        if self.min is not None and new_min is not None and new_min < self.min:
            raise WideningCardinalityError(self.min, self.max, new_min, new_max)
        if self.max is not None and self.max != "*" and (unbounded or (max_int is not None and max_int > int(self.max))):
            raise WideningCardinalityError(self.min, self.max, new_min, new_max)

        over_max_slices: List[ElementDefinition] = []
        if self.slicing and max_int is not None:
            self._check_sum_of_slice_mins(new_max)
            over_max_slices = [s for s in self.get_slices() if s.max == "*" or int(s.max) > max_int]

        # slices of this element may legitimately have a smaller min
        connected = [
            ce for ce in self.find_connected_elements() if not (ce.path == self.path and ce.id.startswith(self.id))
        ]
        for ce in connected:
            if (ce.max is not None and ce.max != "*" and new_min is not None and new_min > int(ce.max)) or (
                ce.min is not None and max_int is not None and max_int < ce.min
            ):
                raise NarrowingRootCardinalityError(self.path, ce.id, new_min, new_max, ce.min, ce.max or "*")

        raise_parent_min: Optional[Tuple[ElementDefinition, int]] = None
        sliced = self.sliced_element()
        if sliced is not None:
            parent_slice = self.find_parent_slice()
            siblings = [
                e
                for e in self._elements()
                if e is not self and e.sliced_element() is sliced and e.find_parent_slice() is parent_slice
            ]
            new_parent_min = (new_min or 0) + sum(e.min or 0 for e in siblings)
            parent_element = parent_slice if parent_slice is not None else sliced
            if parent_element.max not in (None, "*"):
                if new_parent_min > int(parent_element.max):
                    raise InvalidSumOfSliceMinsError(new_parent_min, parent_element.max, parent_element.id)
                if unbounded or (max_int is not None and max_int > int(parent_element.max)):
                    raise InvalidMaxOfSliceError(new_max, self.slice_name, parent_element.max)
            if new_parent_min > (parent_element.min or 0):
                raise_parent_min = (parent_element, new_parent_min)

        # all checks passed; apply
        if raise_parent_min is not None:
            raise_parent_min[0].constrain_cardinality(raise_parent_min[1], "")
        for ce in connected:
            ce_min = max(new_min or 0, ce.min or 0)
            ce_max = new_max
            if unbounded:
                ce_max = ce.max
            elif ce.max not in (None, "*"):
                ce_max = str(min(max_int, int(ce.max)))
            ce.constrain_cardinality(ce_min, ce_max)
        if over_max_slices:
            for slice_element in over_max_slices:
                slice_element.max = new_max
            logger.warning(
                f"At least one slice of {self.id} has a max greater than the overall element max. "
                f"The max of the following slice(s) has been reduced to match the max of {self.id}: "
                f"{','.join(s.slice_name for s in over_max_slices)}"
            )
        self.min = new_min
        self.max = new_max

    # ------------------------------------------------------------------
    # Types
    # ------------------------------------------------------------------
    def _get_target_type(self, target: Optional[str], fisher: Fishable) -> Optional[ElementDefinitionType]:
        if not target:
            return None
        target_md = fisher.fish_for_metadata(
            target,
            DefinitionKind.RESOURCE,
            DefinitionKind.LOGICAL,
            DefinitionKind.TYPE,
            DefinitionKind.PROFILE,
            DefinitionKind.EXTENSION,
        )
        if target_md is None:
            raise TypeNotFoundError(target)
        match = next(
            (
                t
                for t in self.type or []
                if t.code == target_md.id
                or target_md.url in (t.profile or [])
                or target_md.url in (t.target_profile or [])
            ),
            None,
        )
        if match is None:
            raise InvalidTypeError(target, self.type or [])
        target_type = copy.deepcopy(match)
        if target_md.url in (target_type.profile or []):
            target_type.profile = [target_md.url]
        elif target_md.url in (target_type.target_profile or []):
            target_type.target_profile = [target_md.url]
        return target_type

    def get_type_lineage(
        self,
        type_name: str,
        fisher: Fishable,
        include_impose_profiles: bool = False,
        seen_urls: Optional[List[str]] = None,
    ) -> List[Metadata]:
        """Walk ``baseDefinition`` links from ``type_name`` up to the root type."""
        seen_urls = [] if seen_urls is None else seen_urls
        results: List[Metadata] = []
        current: Optional[str] = type_name
        while current is not None:
            if current in seen_urls:
                break
            result = fisher.fish_for_metadata(current)
            if result is None:
                name, _, version = current.partition("|")
                result = fisher.fish_for_metadata(name)
                if result is not None and version and result.version is not None and result.version != version:
                    logger.warning(f"{type_name} is based on {name} version {version}, but found version {result.version}")
            if result is not None:
                if result.url:
                    if result.url in seen_urls:
                        break
                    seen_urls.append(result.url)
                results.append(result)
            current = result.parent if result is not None else None

        if include_impose_profiles:
            impose_profiles: List[str] = []
            for md in results:
                for url in md.impose_profiles:
                    if url and url not in impose_profiles and url not in seen_urls:
                        impose_profiles.append(url)
            for url in impose_profiles:
                results.extend(self.get_type_lineage(url, fisher, True, seen_urls))
        return results

    def _find_type_match(
        self, rule_type: OnlyRuleType, target_types: List[ElementDefinitionType], fisher: Fishable
    ) -> TypeMatch:
        type_name = rule_type.type.split("|", 1)[0] if rule_type.is_canonical else rule_type.type
        lineage = self.get_type_lineage(type_name, fisher, True)
        if not lineage:
            raise TypeNotFoundError(rule_type.type)

        def accepts_target(t: ElementDefinitionType, code: str, md: Metadata) -> bool:
            return t.code == code and (t.target_profile is None or md.url in t.target_profile)

        is_logical = self.structure_definition is not None and self.structure_definition.kind == "logical"
        matched: Optional[ElementDefinitionType] = None
        specialization_of_non_abstract = False
        for md in lineage:
            if rule_type.is_reference:
                matched = next((t for t in target_types if accepts_target(t, "Reference", md)), None)
                if matched is None:
                    matched = next((t for t in target_types if accepts_target(t, "CodeableReference", md)), None)
            elif rule_type.is_canonical:
                matched = next((t for t in target_types if accepts_target(t, "canonical", md)), None)
            elif rule_type.is_codeable_reference:
                matched = next((t for t in target_types if accepts_target(t, "CodeableReference", md)), None)
            else:
                for t in target_types:
                    unprofiled = t.code == md.id and not t.profile
                    profiled = md.url in (t.profile or []) and any(
                        ancestor.sd_type == t.code for ancestor in self.get_type_lineage(md.sd_type, fisher)
                    )
                    logical = is_logical and bool(t.code) and t.code == md.sd_type
                    specialization_of_non_abstract = (
                        unprofiled and not md.abstract and md.id != lineage[0].id and md.id != lineage[0].sd_type
                    )
                    if unprofiled or profiled or logical:
                        matched = t
                        break
            if matched is not None:
                break

        if matched is None:
            raise InvalidTypeError(str(rule_type), target_types)
        if specialization_of_non_abstract:
            raise NonAbstractParentOfSpecializationError(rule_type.type, matched.code)
        return TypeMatch(metadata=lineage[0], code=matched.code, type_name=type_name)

    def _apply_profiles(
        self, new_type: ElementDefinitionType, target_type: Optional[ElementDefinitionType], matches: List[TypeMatch]
    ) -> None:
        is_logical = self.structure_definition is not None and self.structure_definition.kind == "logical"
        profiles: List[str] = []
        target_profiles: List[str] = []
        for match in matches:
            md = match.metadata
            if md.id == new_type.code:
                continue
            if is_reference_type(match.code) and not is_reference_type(md.sd_type):
                target_profiles.append(md.url)
            elif match.code == "canonical" and md.sd_type != "canonical":
                target_profiles.append(md.url)
            elif is_logical and new_type.code == md.sd_type and md.sd_type == md.url:
                # logical model types are already named by url
                continue
            else:
                profiles.append(md.url)

        if target_type is not None:
            if target_profiles:
                anchor = (target_type.target_profile or [None])[0]
                existing = new_type.target_profile or []
                if anchor in existing:
                    index = existing.index(anchor)
                    new_type.target_profile = existing[:index] + target_profiles + existing[index + 1:]
                else:
                    new_type.target_profile = list(new_type.profile or []) + target_profiles
            if profiles:
                anchor = (target_type.profile or [None])[0]
                existing = new_type.profile or []
                if anchor in existing:
                    index = existing.index(anchor)
                    new_type.profile = existing[:index] + profiles + existing[index + 1:]
                else:
                    new_type.profile = list(existing) + profiles
        else:
            if target_profiles:
                new_type.target_profile = target_profiles
            if profiles:
                new_type.profile = profiles

    def _apply_type_intersection(
        self, element_type: ElementDefinitionType, target_type: Optional[ElementDefinitionType], matches: List[TypeMatch]
    ) -> List[ElementDefinitionType]:
        """Replace ``element_type`` by one type per matched code.

        A ``Resource`` type constrained to ``Condition`` and ``Procedure``
        becomes two types, ``Condition`` and ``Procedure``.
        """
        grouped: Dict[str, List[TypeMatch]] = {}
        for match in matches:
            if is_reference_type(match.code) or match.code == "canonical":
                key = match.code
            else:
                key = match.metadata.sd_type
            grouped.setdefault(key, []).append(match)
        intersection = []
        for code, group in grouped.items():
            new_type = copy.deepcopy(element_type)
            if not _FHIRPATH_PRIMITIVE.match(element_type.actual_code or ""):
                new_type.code = code
            self._apply_profiles(new_type, target_type, group)
            intersection.append(new_type)
        return intersection

    def _find_type_intersection(
        self,
        left_types: List[ElementDefinitionType],
        right_types: List[ElementDefinitionType],
        target_type: Optional[ElementDefinitionType],
        fisher: Fishable,
    ) -> List[ElementDefinitionType]:
        intersection: List[ElementDefinitionType] = []
        for left in left_types:
            matches = []
            for candidate in left.profile or [left.code]:
                try:
                    matches.append(self._find_type_match(OnlyRuleType(type=candidate), right_types, fisher))
                except FshStructDefError:
                    # no match for this candidate
                    continue
            intersection.extend(self._apply_type_intersection(left, target_type, matches))
        return intersection

    def constrain_type(self, rule: Any, fisher: Fishable, target: Optional[str] = None) -> None:
        """Restrict the element's types to those named by an ``only`` rule.

        Args:
            rule: A rule with ``types`` (:class:`OnlyRuleType` items), ``path``
                and ``source_info``.
            fisher: Resolves type names to definitions.
            target: Restrict only the reference or profile named here, as in
                ``performer[Practitioner] only PractitionerProfile``.

        Raises:
            TypeNotFoundError: A named type cannot be resolved.
            InvalidTypeError: A named type does not fit any current type.
            NonAbstractParentOfSpecializationError: The type specializes a concrete type.
            SliceTypeRemovalError: A connected slice would be left without types.
        """
        source_info = getattr(rule, "source_info", None)
        target_type = self._get_target_type(target, fisher)
        target_types = [target_type] if target_type is not None else list(self.type or [])

        if (
            any(t.code == "CodeableReference" for t in target_types)
            and not any(t.code == "Reference" for t in target_types)
            and any(t.is_reference for t in rule.types)
        ):
            logger.warning(
                "The CodeableReference() keyword should be used to constrain references of a CodeableReference"
            )
        parent = self.parent()
        if (
            self.type is not None
            and len(self.type) == 1
            and self.type[0].code == "Reference"
            and self.path.endswith(".reference")
            and parent is not None
            and parent.type
            and parent.type[0].code == "CodeableReference"
        ):
            logger.error(
                "Constraining references on a CodeableReference element's underlying .reference path is not "
                "allowed. Instead, constrain the references directly on the CodeableReference element."
            )

        type_matches: Dict[str, List[TypeMatch]] = {t.code: [] for t in target_types}
        for rule_type in rule.types:
            match = self._find_type_match(rule_type, target_types, fisher)
            if (rule_type.is_canonical or rule_type.is_reference or rule_type.is_codeable_reference) and "|" in rule_type.type:
                match.metadata.url = f"{match.metadata.url}|{rule_type.type.split('|', 1)[1]}"
            type_matches[match.code].append(match)

        invalid_targets = [
            m
            for code in ("Reference", "CodeableReference")
            for m in type_matches.get(code, [])
            if m.metadata.can_be_target is False
        ]
        if len(invalid_targets) > 1:
            type_list = ", ".join(m.type_name for m in invalid_targets)
            logger.warning(f"Referenced types {type_list} do not specify that they can be the targets of a reference.")
        elif len(invalid_targets) == 1:
            logger.warning(
                f"Referenced type {invalid_targets[0].type_name} does not specify that it can be the target of a reference."
            )

        new_types: List[ElementDefinitionType] = []
        old_types: List[ElementDefinitionType] = []
        for element_type in self.type or []:
            if element_type.code not in type_matches:
                new_types.append(copy.deepcopy(element_type))
                continue
            matches = type_matches[element_type.code]
            if not matches:
                old_types.append(element_type)
                continue
            new_types.extend(self._apply_type_intersection(element_type, target_type, matches))

        # keep _profile/_targetProfile entries aligned with their profiles
        for new_type in new_types:
            original_type = next((t for t in self.type or [] if t.code == new_type.code), None)
            for json_name, attr in (("profile", "profile"), ("targetProfile", "target_profile")):
                key = f"_{json_name}"
                new_type.primitive_ext.pop(key, None)
                original_ext = original_type.primitive_ext.get(key) if original_type is not None else None
                if original_ext:
                    original_values = getattr(original_type, attr) or []
                    aligned = [
                        original_ext[original_values.index(v)]
                        if v in original_values and original_values.index(v) < len(original_ext)
                        else None
                        for v in getattr(new_type, attr) or []
                    ]
                    if any(e is not None for e in aligned):
                        new_type.primitive_ext[key] = aligned

        sd = self.structure_definition
        obsolete = sd.find_obsolete_choices(self, old_types) if sd is not None else []
        if obsolete:
            logger.error(
                f"Type constraint on {self.path} makes rules in {sd.name} obsolete for choices: {', '.join(obsolete)}"
            )

        connected = self.find_connected_elements()
        if self.path.endswith("[x]"):
            # type slices of this choice may lose their type
            connected = [ce for ce in connected if ce.id.endswith("[x]")]
        changes: List[Tuple[ElementDefinition, List[ElementDefinitionType]]] = []
        for ce in connected:
            intersection = self._find_type_intersection(new_types, ce.type or [], target_type, fisher)
            if intersection:
                changes.append((ce, intersection))
                continue
            obsolete_connections = sd.find_obsolete_choices(ce, old_types) if sd is not None else []
            if obsolete_connections:
                logger.error(
                    f"Type constraint on {rule.path} makes rules in {sd.name} obsolete for choices: "
                    f"{', '.join(obsolete_connections)}"
                )
            else:
                raise SliceTypeRemovalError(rule.path, ce.id)
        if len(changes) == len(connected):
            for ce, ce_types in changes:
                ce.type = ce_types

        self.type = new_types

        extension_matches = type_matches.get("Extension") or []
        if extension_matches:
            modifier_path = self.path.endswith(".modifierExtension")
            for match in extension_matches:
                full_extension = fisher.fish_for_fhir(match.metadata.url, DefinitionKind.EXTENSION)
                if full_extension is None:
                    continue
                modifier = is_modifier_extension(full_extension)
                if modifier and not modifier_path:
                    logger.error(
                        f"Modifier extension {match.metadata.name} used to constrain extension element. "
                        "Modifier extensions should only be used with modifierExtension elements."
                    )
                elif not modifier and modifier_path:
                    logger.error(
                        f"Non-modifier extension {match.metadata.name} used to constrain modifierExtension element. "
                        "Non-modifier extensions should only be used with extension elements."
                    )
        if source_info is not None:
            logger.debug(f"Applied type constraint on {self.id} from {source_info.describe()}")

    # ------------------------------------------------------------------
    # New elements for logical models and resources
    # ------------------------------------------------------------------
    def apply_add_element_rule(self, rule: Any, fisher: Fishable) -> None:
        """Initialize a newly added element from an ``add_element`` rule."""
        if self.parent() is None:
            raise CannotResolvePathError(rule.path)
        self.base = {"path": f"{self.structure_definition.path_type}.{rule.path}", "min": rule.min, "max": rule.max}

        element_sd = fisher.fish_for_fhir("Element", DefinitionKind.TYPE)
        if element_sd is not None:
            root_constraints = ((element_sd.get("snapshot") or {}).get("element") or [{}])[0].get("constraint") or []
            for constraint in root_constraints:
                constraint["source"] = element_sd.get("url")
            if root_constraints:
                self.constraint = root_constraints

        # changes from here on make up the differential
        self.capture_original()

        if rule.types:
            self.type = self._initialize_element_type(rule, fisher)
            target = self.structure_definition.get_reference_name(rule.path, self)
            self.constrain_type(rule, fisher, target)
        else:
            self.content_reference = rule.content_reference

        self.constrain_cardinality(rule.min, rule.max)
        self.apply_flags(rule.must_support, rule.summary, rule.modifier, rule.trial_use, rule.normative, rule.draft)
        if rule.short:
            self.short = rule.short
        if rule.definition:
            self.definition = rule.definition
        elif rule.short:
            self.definition = rule.short

    def _initialize_element_type(self, rule: Any, fisher: Fishable) -> List[ElementDefinitionType]:
        if len(rule.types) > 1 and not rule.path.endswith("[x]"):
            if not (
                all(t.is_reference for t in rule.types)
                or all(t.is_canonical for t in rule.types)
                or all(t.is_codeable_reference for t in rule.types)
            ):
                raise InvalidChoiceTypeRulePathError(rule.path, self.structure_definition.name)

        reference_count = canonical_count = codeable_reference_count = 0
        types: List[ElementDefinitionType] = []
        for rule_type in rule.types:
            if rule_type.is_reference:
                reference_count += 1
            elif rule_type.is_canonical:
                canonical_count += 1
            elif rule_type.is_codeable_reference:
                codeable_reference_count += 1
            else:
                metadata = fisher.fish_for_metadata(rule_type.type)
                if metadata is None:
                    raise TypeNotFoundError(rule_type.type)
                candidate = ElementDefinitionType(metadata.sd_type)
                if candidate not in types:
                    types.append(candidate)
        if reference_count:
            types.append(ElementDefinitionType("Reference"))
        if canonical_count:
            types.append(ElementDefinitionType("canonical"))
        if codeable_reference_count:
            types.append(ElementDefinitionType("CodeableReference"))

        collapsed = sum(max(count - 1, 0) for count in (reference_count, canonical_count, codeable_reference_count))
        if len(rule.types) != len(types) + collapsed:
            logger.warning(f"{rule.path} includes duplicate types. Duplicates have been ignored.")
        return types

    # ------------------------------------------------------------------
    # Flags, bindings, invariants, mappings
    # ------------------------------------------------------------------
    def apply_flags(
        self,
        must_support: Optional[bool] = None,
        summary: Optional[bool] = None,
        modifier: Optional[bool] = None,
        trial_use: Optional[bool] = None,
        normative: Optional[bool] = None,
        draft: Optional[bool] = None,
    ) -> None:
        """Set flags on this element and propagate them to connected elements.

        Flags only move from unset or false to true. Passing ``False`` for a
        must-support or modifier flag that is already true raises
        :class:`DisableFlagError`; is-summary may be toggled freely.
        """
        status: Optional[str] = None
        for code, requested in (("trial-use", trial_use), ("normative", normative), ("draft", draft)):
            if requested:
                if status is not None:
                    raise MultipleStandardsStatusError(self.id)
                status = code

        disabled = []
        if must_support is False and self.must_support:
            disabled.append("MS")
        if modifier is False and self.is_modifier:
            disabled.append("?!")
        if disabled:
            raise DisableFlagError(disabled)

        sd = self.structure_definition
        if must_support is True and sd is not None and sd.derivation == "specialization":
            raise InvalidMustSupportError(sd.name, self.id)

        connected = self.find_connected_elements()
        if must_support is True:
            self.must_support = True
            # a must-support element does not make unrelated slices must-support
            for ce in connected:
                if ce.slice_name is None or ce.slice_name == self.slice_name:
                    ce.must_support = True
        if summary is not None:
            self.is_summary = summary
            if summary:
                for ce in connected:
                    ce.is_summary = True
        if modifier is True:
            self.is_modifier = True
            for ce in connected:
                ce.is_modifier = True
        if status is not None:
            status_extension = {"url": STANDARDS_STATUS_EXTENSION, "valueCode": status}
            extensions = self.extension or []
            index = next((i for i, e in enumerate(extensions) if e.get("url") == STANDARDS_STATUS_EXTENSION), None)
            if index is None:
                extensions.append(status_extension)
            else:
                extensions[index] = status_extension
            self.extension = extensions

    def bind_to_value_set(
        self,
        uri: Optional[str],
        strength: str,
        source_info: Optional[Any] = None,
        fisher: Optional[Fishable] = None,
    ) -> None:
        """Bind a value set with the given strength.

        Raises:
            CodedTypeNotFoundError: The element has no bindable type.
            BindingStrengthError: The strength is weaker than an existing binding.
            InvalidUriError: The value set reference is not a URI.
        """
        logical_types: List[Metadata] = []
        if fisher is not None:
            for t in self.type or []:
                md = fisher.fish_for_metadata(t.code, DefinitionKind.LOGICAL)
                if md is not None:
                    logical_types.append(md)
        bindable = bool(self.find_types_by_code(*BINDABLE_TYPES)) or any(md.can_bind for md in logical_types)
        if not bindable:
            if logical_types:
                logger.warning(
                    "Bindings can only be applied to logical model types with the #can-bind characteristic. "
                    "Update the target logical model to declare the #can-bind characteristic or remove the "
                    f"binding from {self.id}."
                )
            else:
                raise CodedTypeNotFoundError([t.code for t in self.type or []])

        parent = self.parent()
        if (
            self.type is not None
            and len(self.type) == 1
            and self.type[0].code == "CodeableConcept"
            and self.path.endswith(".concept")
            and parent is not None
            and parent.type
            and parent.type[0].code == "CodeableReference"
        ):
            logger.error(
                "Applying value set bindings to a CodeableReference element's underlying .concept path is not "
                "allowed. Instead, apply the binding directly to the CodeableReference element."
            )

        current = (self.binding or {}).get("strength")
        if current and BINDING_STRENGTHS.index(strength) < BINDING_STRENGTHS.index(current):
            raise BindingStrengthError(current, strength)
        list_element = self.sliced_element()
        list_binding = (list_element.binding or {}) if list_element is not None else {}
        if (
            list_binding.get("strength")
            and list_binding.get("valueSet") == uri
            and BINDING_STRENGTHS.index(strength) < BINDING_STRENGTHS.index(list_binding["strength"])
        ):
            raise BindingStrengthError(list_binding["strength"], strength)
        if uri is not None and not is_uri(uri.split("|")[0]):
            raise InvalidUriError(uri)

        for ce in self.find_connected_elements():
            if (ce.binding or {}).get("valueSet") == uri:
                try:
                    ce.bind_to_value_set(uri, strength, None, fisher)
                except BindingStrengthError:
                    # a slice may keep a stronger binding than its list element
                    continue

        self.binding = {"strength": strength} if uri is None else {"strength": strength, "valueSet": uri}

    def apply_constraint(self, invariant: Invariant, source: Optional[str] = None) -> int:
        """Append an invariant to ``constraint`` and return its index."""
        constraint: Dict[str, Any] = {}
        if invariant.name:
            constraint["key"] = invariant.name
        if invariant.severity is not None:
            constraint["severity"] = invariant.severity.code
        if invariant.description:
            constraint["human"] = invariant.description
        if invariant.expression:
            constraint["expression"] = invariant.expression
        if invariant.xpath:
            constraint["xpath"] = invariant.xpath
        if source:
            constraint["source"] = source
        constraints = self.constraint or []
        constraints.append(constraint)
        self.constraint = constraints
        return len(constraints) - 1

    def apply_mapping(
        self,
        identity: Optional[str],
        map_: Optional[str],
        comment: Optional[str] = None,
        language: Optional[FshCode] = None,
    ) -> None:
        if identity is None or map_ is None:
            raise InvalidMappingError()
        if not is_valid_id(identity):
            raise InvalidFHIRIdError(identity)
        mapping: Dict[str, Any] = {"identity": identity, "map": map_}
        if comment:
            mapping["comment"] = comment
        if language is not None:
            mapping["language"] = language.code
        mappings = self.mapping or []
        mappings.append(mapping)
        self.mapping = mappings

    # ------------------------------------------------------------------
    # Value assignment
    # ------------------------------------------------------------------
    @staticmethod
    def _value_kind(value: Any) -> str:
        if isinstance(value, FshCode):
            return "Code"
        if isinstance(value, FshQuantity):
            return "Quantity"
        if isinstance(value, FshRatio):
            return "Ratio"
        if isinstance(value, FshReference):
            return "Reference"
        if isinstance(value, FshCanonical):
            return "Canonical"
        if isinstance(value, InstanceDefinition):
            return "InstanceDefinition"
        if isinstance(value, bool):
            return "boolean"
        if isinstance(value, (int, float)):
            return "number"
        if isinstance(value, str):
            return "string"
        return type(value).__name__

    @staticmethod
    def _type_accepts(kind: str, value: Any, code: str) -> bool:
        if kind == "boolean":
            return code == "boolean"
        if kind == "number":
            return number_matches_type(value, code) or (code == "integer64" and isinstance(value, int))
        if kind == "string":
            return string_matches_type(value, code) or code == "xhtml"
        if kind == "Code":
            return code in ("code", "string", "uri", "Coding", "CodeableConcept", "Quantity")
        if kind == "Quantity":
            return code == "Quantity"
        if kind == "Ratio":
            return code == "Ratio"
        if kind == "Reference":
            return code == "Reference"
        if kind == "Canonical":
            return code in ("canonical", "uri", "url", "string")
        if kind == "InstanceDefinition":
            return code in (value.instance_meta.get("sd_type"), value.resource_type)
        return False

    def _assignment_type(self, kind: str, value: Any) -> ElementDefinitionType:
        """Pick the declared type a value is assigned as.

        A single declared type is always used. With several, exactly one of
        them must accept the value.
        """
        types = self.type or []
        if len(types) == 1:
            return types[0]
        candidates = [t for t in types if self._type_accepts(kind, value, t.code)]
        if len(candidates) > 1:
            raise AmbiguousTypeError(kind, [t.code for t in candidates])
        if not candidates:
            raise NoSingleTypeError(kind)
        return candidates[0]

    def assign_value(self, value: Any, exactly: bool = False, fisher: Optional[Fishable] = None) -> None:
        """Assign a value as ``fixed[x]`` (``exactly``) or ``pattern[x]``.

        Assigning a value equal to, or containing, the current value succeeds
        and leaves the element unchanged apart from the added detail.

        Raises:
            NoSingleTypeError: No declared type accepts the value.
            AmbiguousTypeError: More than one declared type accepts the value.
            FixedToPatternError: A pattern would loosen an existing fixed value.
            MismatchedTypeError: The value does not fit the element type.
            ValueAlreadyAssignedError: A different value is already assigned.
        """
        kind = self._value_kind(value)
        element_type = self._assignment_type(kind, value)
        code = element_type.code

        if not exactly:
            fixed_key = next((k for k, v in self.props.items() if k.startswith("fixed") and v is not None), None)
            if fixed_key is not None:
                raise FixedToPatternError(fixed_key)

        if kind == "boolean":
            self._assign_fhir_value(str(value).lower(), value, exactly, "boolean")
        elif kind == "number":
            self._assign_number(value, exactly, code)
        elif kind == "string":
            self._assign_string(value, exactly, code)
        elif kind == "Code":
            self._assign_fsh_code(value, exactly, code, fisher)
        elif kind == "Quantity":
            provided_type = "Quantity"
            if code != "Quantity" and fisher is not None:
                actual_sd = fisher.fish_for_fhir(code, DefinitionKind.TYPE)
                # every Quantity specialization (Age, Duration, ...) accepts a quantity
                if actual_sd and actual_sd.get("baseDefinition") == QUANTITY_URL:
                    provided_type = code
            self._assign_fhir_value(str(value), value.to_quantity(), exactly, provided_type)
        elif kind == "Ratio":
            self._assign_fhir_value(str(value), value.to_ratio(), exactly, "Ratio")
        elif kind == "Reference":
            if code == "CodeableReference":
                raise AssignmentToCodeableReferenceError("reference", value, "reference")
            parent = self.parent()
            constraining = (
                parent
                if code == "Reference" and parent is not None and parent.type and parent.type[0].code == "CodeableReference"
                else self
            )
            if not constraining._type_satisfies_target_profile(value.sd_type, fisher):
                raise InvalidTypeError(f"Reference({value.sd_type})", constraining.type or [])
            self._assign_fhir_value(str(value), value.to_reference(), exactly, "Reference")
        elif kind == "Canonical":
            self._assign_canonical(value, exactly, code, fisher)
        elif kind == "InstanceDefinition":
            self._assign_fhir_value(
                str(dict(value)),
                value.to_json(),
                exactly,
                value.instance_meta.get("sd_type") or value.resource_type,
                fisher,
            )
        else:
            raise MismatchedTypeError(kind, value, code)

        # an element named by a value or pattern discriminator must be present in its slice
        for parent_slice in [e for e in [self, *reversed(self.get_all_parents())] if e.slice_name]:
            sliced = parent_slice.sliced_element()
            discriminators = ((sliced.slicing or {}).get("discriminator") or []) if sliced is not None else []
            if (
                any(
                    d.get("path") != "$this"
                    and f"{sliced.path}.{d.get('path')}" == self.path
                    and d.get("type") in ("value", "pattern")
                    for d in discriminators
                )
                and self.min == 0
            ):
                self.constrain_cardinality(1, "")

    def _assign_canonical(self, value: FshCanonical, exactly: bool, code: str, fisher: Optional[Fishable]) -> None:
        metadata = fisher.fish_for_metadata(value.entity_name) if fisher is not None else None
        resource_type = metadata.resource_type if metadata is not None else None
        if not self._type_satisfies_target_profile(resource_type, fisher):
            raise InvalidTypeError(f"Canonical({resource_type})", self.type or [])
        if metadata is None or not metadata.url:
            raise InvalidCanonicalUrlError(value.entity_name)
        url = metadata.url
        if value.version:
            url += f"|{value.version}"
        self._assign_string(url, exactly, code)

    def _assign_number(self, value: Union[int, float], exactly: bool, code: str) -> None:
        if number_matches_type(value, code):
            number = int(value) if code != "decimal" and isinstance(value, float) else value
            self._assign_fhir_value(str(value), number, exactly, code)
        elif code == "integer64" and isinstance(value, int):
            # integer64 is serialized as a JSON string
            self._assign_fhir_value(str(value), str(value), exactly, code)
        else:
            raise MismatchedTypeError("number", value, code)

    def _assign_string(self, value: str, exactly: bool, code: str) -> None:
        if string_matches_type(value, code):
            self._assign_fhir_value(f'"{value}"', value, exactly, code)
        elif code == "xhtml" and self._check_xhtml(value):
            minified = re.sub(r">\s+<", "><", re.sub(r"\s+", " ", value)).strip()
            self._assign_fhir_value(f'"{value}"', minified, exactly, code)
        else:
            raise MismatchedTypeError("string", value, code)

    def _check_xhtml(self, value: str) -> bool:
        if self.path.endswith(".div"):
            starts = re.match(r"^\s*<\s*div[\s>]", value) is not None
            ends = re.search(r"<\s*/\s*div\s*>\s*$", value) is not None
            if not starts or not ends:
                logger.warning(f"xhtml div elements should start and end with <div> tags for {self.id}")
        try:
            ET.fromstring(value)
        except ET.ParseError:
            return False
        return True

    def _assign_fsh_code(self, code: FshCode, exactly: bool, type_code: str, fisher: Optional[Fishable]) -> None:
        plain_target = type_code in ("code", "string", "uri")
        if code.system:
            value_set = fish_for_metadata_best_version(fisher, code.system, DefinitionKind.VALUE_SET)
            if value_set is not None and value_set.url:
                if plain_target:
                    logger.warning(
                        f"The fully qualified code {code.system}#{code.code} is invalid because the specified system "
                        f"is a ValueSet. Since {self.path} is a {type_code}, the system will not be used, but this "
                        "issue should be corrected by updating the system to refer to a proper CodeSystem or by "
                        f"specifying a code only (e.g., #{code.code})."
                    )
                else:
                    raise MismatchedBindingTypeError(code.system, self.path, "CodeSystem")
            elif not is_uri(code.system.split("|")[0]):
                if plain_target:
                    logger.warning(
                        f"The fully qualified code {code.system}#{code.code} is invalid because the specified system "
                        f"is not a URI. Since {self.path} is a {type_code}, the system will not be used, but this "
                        "issue should be corrected by updating the system to refer to a proper CodeSystem or by "
                        f"specifying a code only (e.g., #{code.code})."
                    )
                else:
                    raise InvalidUriError(code.system)

        if plain_target:
            self._assign_fhir_value(str(code), code.code, exactly, type_code)
        elif type_code == "CodeableConcept":
            self._assign_fhir_value(str(code), code.to_codeable_concept(), exactly, "CodeableConcept")
        elif type_code == "Coding":
            self._assign_fhir_value(str(code), code.to_coding(), exactly, "Coding")
        elif self._is_quantity_type(type_code, fisher):
            # keep a value or comparator that is already assigned
            existing = self.props.get("fixedQuantity") or self.props.get("patternQuantity") or self.assigned_by_any_parent()
            quantity = code.to_quantity()
            if isinstance(existing, dict):
                if existing.get("value") is not None:
                    quantity["value"] = existing["value"]
                if existing.get("comparator") is not None:
                    quantity["comparator"] = existing["comparator"]
            self._assign_fhir_value(str(code), quantity, exactly, type_code)
        elif type_code == "CodeableReference":
            raise AssignmentToCodeableReferenceError("code", code, "concept")
        else:
            raise MismatchedTypeError("code", code, type_code)

    @staticmethod
    def _is_quantity_type(type_code: str, fisher: Optional[Fishable]) -> bool:
        if type_code == "Quantity":
            return True
        type_sd = fisher.fish_for_fhir(type_code, DefinitionKind.TYPE) if fisher is not None else None
        return bool(type_sd) and type_sd.get("baseDefinition") == QUANTITY_URL

    def _type_satisfies_target_profile(self, sd_type: Optional[str], fisher: Optional[Fishable]) -> bool:
        """False only when target profiles exist and ``sd_type`` fits none of them."""
        if not sd_type or not self.type or not self.type[0].target_profile or fisher is None:
            return True
        valid_types = []
        for target_profile in self.type[0].target_profile:
            md = fish_for_metadata_best_version(fisher, target_profile)
            if md is not None and md.sd_type:
                valid_types.append(md.sd_type)
        return any(md.sd_type in valid_types for md in self.get_type_lineage(sd_type, fisher))

    def _assign_fhir_value(
        self,
        fsh_value: str,
        fhir_value: Any,
        exactly: bool,
        type_code: str,
        fisher: Optional[Fishable] = None,
    ) -> None:
        lineage = [md.sd_type for md in self.get_type_lineage(type_code, fisher)] if fisher is not None else []
        if not any(t.code == type_code or t.code in lineage for t in self.type or []):
            raise MismatchedTypeError(type_code, fsh_value, self.type[0].code if self.type else None)

        fixed_key = f"fixed{upper_first(type_code)}"
        pattern_key = f"pattern{upper_first(type_code)}"
        current = self.props.get(fixed_key)
        if current is None:
            current = self.props.get(pattern_key)
        if current is None:
            current = self.assigned_by_any_parent()
        if current is not None and not isinstance(current, list):
            matches = is_match(fhir_value, current) if isinstance(fhir_value, dict) else fhir_value == current
            if not matches:
                raise ValueAlreadyAssignedError(fsh_value, type_code, _to_json_text(current))

        self._check_assigned_value_against_children(self, fhir_value)
        sliced = self.sliced_element()
        if sliced is not None:
            sliced._check_assigned_value_against_children(sliced, fhir_value)

        if exactly:
            self.props[fixed_key] = fhir_value
            self.props.pop(pattern_key, None)
        else:
            self.props[pattern_key] = fhir_value

    def _check_assigned_value_against_children(self, current_child: "ElementDefinition", fhir_value: Any) -> None:
        direct_children = current_child.children(True)
        i = 0
        while i < len(direct_children):
            child = direct_children[i]
            self._check_assigned_value_against_child(child, fhir_value)
            self._check_assigned_value_against_children(child, fhir_value)
            slices = child.get_slices() if child.slicing else []
            if (child.slicing or {}).get("rules") == "closed":
                invalid = 0
                for slice_element in slices:
                    try:
                        self._check_assigned_value_against_child(slice_element, fhir_value)
                        self._check_assigned_value_against_children(slice_element, fhir_value)
                    except ValueAlreadyAssignedError:
                        invalid += 1
                if invalid >= len(slices):
                    raise ValueConflictsWithClosedSlicingError(_to_json_text(fhir_value))
            # slices of an open slicing need no check; closed ones were handled above
            i += len(slices) + 1

    def _check_assigned_value_against_child(self, child: "ElementDefinition", fhir_value: Any) -> None:
        if not child.type:
            return
        child_type = child.type[0].code
        current = child.props.get(f"fixed{upper_first(child_type)}")
        if current is None:
            current = child.props.get(f"pattern{upper_first(child_type)}")
        if current is None:
            return
        # arrays inside complex values (CodeableConcept.coding) are flattened along the way
        candidates = [fhir_value]
        for part in child.path.replace(f"{self.path}.", "", 1).split("."):
            candidates = _flatten([c.get(part) if isinstance(c, dict) else None for c in candidates])
        for candidate in candidates:
            if candidate is None:
                continue
            matches = is_match(candidate, current) if isinstance(candidate, dict) else candidate == current
            if not matches:
                raise ValueAlreadyAssignedError(candidate, child_type, _to_json_text(current))

    def assigned_by_direct_parent(self) -> Any:
        parent = self.parent()
        if parent is None:
            return None
        key = next((k for k in parent.props if k.startswith("fixed") or k.startswith("pattern")), None)
        if key is None:
            return None
        assigned = parent.props[key]
        if not isinstance(assigned, dict):
            return None
        return assigned.get(self.path.replace(f"{parent.path}.", "", 1))

    def assigned_by_any_parent(self) -> Any:
        """The value any ancestor's ``fixed[x]``/``pattern[x]`` implies for this element.

        When an ancestor value is an array whose items disagree, the list of
        their values is returned so that no single value can match it.
        """
        parent = self.parent()
        if parent is None:
            return None
        assigned = self.assigned_by_direct_parent()
        if assigned is not None:
            return assigned
        parent_value = parent.assigned_by_any_parent()
        child_key = self.path.replace(f"{parent.path}.", "", 1)
        if isinstance(parent_value, list):
            values = [pv.get(child_key) if isinstance(pv, dict) else None for pv in parent_value]
            if values and all(v == values[0] for v in values):
                return values[0]
            return values
        if isinstance(parent_value, dict):
            return parent_value.get(child_key)
        return None

    def check_assign_inline_instance(self, value: InstanceDefinition, fisher: Fishable) -> InstanceDefinition:
        """Check that an inline instance could be assigned here, without assigning it."""
        instance_type = value.resource_type or value.instance_meta.get("sd_type")
        lineage = [md.sd_type for md in self.get_type_lineage(instance_type, fisher)]
        if not any(t.code in lineage for t in self.type or []):
            raise MismatchedTypeError(
                instance_type,
                value.instance_meta.get("name") or value.get("id"),
                ", ".join(t.code for t in self.type or []),
            )
        saved = copy.deepcopy(self.props)
        try:
            self._assign_fhir_value(
                str(dict(value)),
                value.to_json(),
                True,
                value.instance_meta.get("sd_type") or value.resource_type,
                fisher,
            )
        finally:
            self.props = saved
        return value

    # ------------------------------------------------------------------
    # Slicing
    # ------------------------------------------------------------------
    def slice_it(
        self,
        discriminator_type: str,
        discriminator_path: str,
        ordered: Optional[bool] = None,
        rules: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create or narrow the slicing of this element.

        ``rules`` may only move open -> openAtEnd -> closed and ``ordered``
        only false -> true.
        """
        if self.slice_name:
            logger.warning(f"{self.id} is a slice. Slices should not have slicing info added to them.")
        slicing = self.slicing
        if not slicing or not slicing.get("discriminator"):
            self.slicing = {
                "discriminator": [{"type": discriminator_type, "path": discriminator_path}],
                "ordered": ordered if ordered is not None else False,
                "rules": rules if rules is not None else "open",
            }
            return self.slicing

        if slicing.get("ordered") and ordered is False:
            raise SlicingDefinitionError("ordered", True, False)
        current_rules = slicing.get("rules")
        if (current_rules == "closed" and rules != "closed") or (current_rules == "openAtEnd" and rules == "open"):
            raise SlicingDefinitionError("rules", current_rules, rules)
        if ordered is not None:
            slicing["ordered"] = ordered
        if rules is not None:
            slicing["rules"] = rules
        discriminator = {"type": discriminator_type, "path": discriminator_path}
        if not any(d.get("type") == discriminator_type and d.get("path") == discriminator_path for d in slicing["discriminator"]):
            slicing["discriminator"].append(discriminator)
        return slicing

    def add_slice(self, name: str, slice_type: Optional[ElementDefinitionType] = None) -> "ElementDefinition":
        """Add a slice named ``name`` right after the existing slices.

        Slicing a slice composes names with ``/`` (``Lab/Chem``).
        """
        if not self.slicing and not self.slice_name:
            raise SlicingNotDefinedError(self.id, name)

        new_slice = self.clone(True)
        new_slice.slicing = None
        new_slice.id = f"{self.id}/{name}" if self.slice_name else f"{self.id}:{name}"
        if self._find(new_slice.id) is not None:
            raise DuplicateSliceError(self.structure_definition.name, self.id, name)

        # min and max always appear in the differential of a new slice
        new_slice.min = None
        new_slice.max = None
        new_slice.must_support = None
        new_slice.capture_original()
        new_slice.slice_name = f"{self.slice_name}/{name}" if self.slice_name else name

        discriminator = ((self.slicing or {}).get("discriminator") or [{}])[0]
        if (
            self.path.endswith("[x]")
            and self.type is not None
            and len(self.type) == 1
            and discriminator.get("type") == "type"
            and discriminator.get("path") == "$this"
        ):
            # a choice that is already down to one type is not really being split
            new_slice.min = self.min
        else:
            new_slice.min = 0
        new_slice.max = self.max
        if slice_type is not None:
            new_slice.type = [copy.deepcopy(slice_type)]
        self.structure_definition.add_element(new_slice)
        return new_slice

    # ------------------------------------------------------------------
    # Unfolding
    # ------------------------------------------------------------------
    def _content_reference_id(self) -> Optional[str]:
        if self.content_reference:
            return self.content_reference[self.content_reference.find("#") + 1:]
        return None

    def _clone_children(
        self, target: Optional["ElementDefinition"], recapture_slice_extensions: bool = True
    ) -> List["ElementDefinition"]:
        if target is None:
            return []
        clones = []
        for child in target.children():
            capture = recapture_slice_extensions or child.slice_name is None or not child.path.endswith(".extension")
            clone = child.clone(capture)
            clone.id = clone.id.replace(target.id, self.id, 1)
            clone.structure_definition = self.structure_definition
            if capture:
                clone.capture_original()
            clones.append(clone)
        return clones

    def _has_profile_element_extension(self, profile_json: Dict[str, Any]) -> bool:
        element_id = self._content_reference_id()
        differential = (profile_json.get("differential") or {}).get("element") or []
        element = next((e for e in differential if e.get("id") == element_id), None)
        element_type = ((element or {}).get("type") or [None])[0]
        if not element_type or not element_type.get("profile") or not element_type.get("_profile"):
            return False
        for index, underscore in enumerate(element_type["_profile"]):
            for ext in (underscore or {}).get("extension") or []:
                if ext.get("url") == PROFILE_ELEMENT_EXTENSION and "valueString" in ext:
                    return (
                        element_type["profile"][index] == self.structure_definition.url
                        and ext["valueString"] == element_id
                    )
        return False

    def unfold(self, fisher: Fishable) -> List["ElementDefinition"]:
        """Materialize the children of this element's type.

        Returns the new elements, already inserted into the structure
        definition, or an empty list when nothing could be unfolded.
        """
        from .structure_definition import StructureDefinition

        sd = self.structure_definition
        single_type = self.type is not None and len(self.type) == 1
        choice = self.id.endswith("[x]")
        if not ((single_type and (not choice or len(self.type[0].profile or []) <= 1)) or self.content_reference):
            return []

        profile_to_use: Optional[str] = None
        available = (self.type[0].profile or []) if single_type else []
        if len(available) > 1:
            logger.warning(
                f"Multiple profiles present on element {self.id}. Base element type will be used instead of any profiles."
            )
        elif len(available) == 1:
            profile_to_use = available[0]

        new_elements: List[ElementDefinition] = []
        if self.content_reference:
            referenced_id = self._content_reference_id()
            profile_json = fisher.fish_for_fhir(sd.id, DefinitionKind.PROFILE) if sd.id else None
            if profile_json and self._has_profile_element_extension(profile_json):
                referenced = sd.find_element(referenced_id)
            else:
                base_json = fisher.fish_for_fhir(sd.type, DefinitionKind.RESOURCE, DefinitionKind.LOGICAL)
                referenced = StructureDefinition.from_json(base_json).find_element(referenced_id) if base_json else None
            new_elements = self._clone_children(referenced)
            if new_elements:
                self.type = copy.deepcopy(referenced.type)
                self.content_reference = None
        elif self.slice_name:
            sliced = self.sliced_element()
            sliced_profiles = (sliced.type[0].profile or []) if sliced is not None and sliced.type and len(sliced.type) == 1 else []
            if profile_to_use is None or sliced_profiles == [profile_to_use]:
                new_elements = self._clone_children(sliced, False)

        if not new_elements and single_type:
            type_name = profile_to_use or self.type[0].code
            kinds = [DefinitionKind.RESOURCE, DefinitionKind.TYPE, DefinitionKind.PROFILE, DefinitionKind.EXTENSION]
            if sd is not None and sd.kind == "logical":
                kinds.insert(0, DefinitionKind.LOGICAL)
            type_json = fish_for_fhir_best_version(fisher, type_name, *kinds)
            if type_json is None and profile_to_use:
                logger.warning(
                    f"Could not find profile {type_name}; the base type {self.type[0].code} will be used instead"
                )
                type_json = fisher.fish_for_fhir(self.type[0].code, *kinds)
            if type_json is not None:
                type_sd = StructureDefinition.from_json(type_json)
                new_elements = self._clone_subtree(type_sd)

        if new_elements:
            sd.add_elements(new_elements)
        return new_elements

    def _clone_subtree(self, type_sd: "StructureDefinition") -> List["ElementDefinition"]:
        clones = []
        for element in type_sd.elements[1:]:
            clone = element.clone()
            clone.id = clone.id.replace(type_sd.path_type, self.id, 1)
            clone.structure_definition = self.structure_definition
            # the differential only shows changes made after unfolding
            clone.capture_original()
            clones.append(clone)
        return clones

    def unfold_choice_element_types(self, fisher: Fishable) -> List["ElementDefinition"]:
        """Unfold a choice element using the closest ancestor all its types share."""
        from .structure_definition import StructureDefinition

        names: List[str] = []
        for t in self.type or []:
            names.extend(t.profile if t.profile else [t.code])
        ancestries = [[md.url for md in self.get_type_lineage(name, fisher)] for name in names]
        shared = [url for url in ancestries[0] if all(url in other for other in ancestries[1:])] if ancestries else []
        if not shared:
            logger.error(f"Could not unfold choice element {self.id}: choices have no common ancestor.")
            return []
        ancestor_json = fisher.fish_for_fhir(shared[0])
        if ancestor_json is None:
            return []
        new_elements = self._clone_subtree(StructureDefinition.from_json(ancestor_json))
        self.structure_definition.add_elements(new_elements)
        return new_elements

    # ------------------------------------------------------------------
    # Caret rules on elements
    # ------------------------------------------------------------------
    def set_instance_property_by_path(self, path: str, value: Any, fisher: Fishable) -> None:
        """Set a property of this element by ``ElementDefinition`` path (``short``, ``code[0]``)."""
        from .structure_definition import StructureDefinition, set_property_on_instance

        ed_json = fisher.fish_for_fhir("ElementDefinition", DefinitionKind.TYPE)
        if ed_json is None:
            raise TypeNotFoundError("ElementDefinition")
        fixed_value, path_parts = StructureDefinition.from_json(ed_json).validate_value_at_path(path, value, fisher)
        data = self.to_json()
        set_property_on_instance(data, path_parts, fixed_value)
        self._load_json(data)

    # ------------------------------------------------------------------
    # Copying and serialization
    # ------------------------------------------------------------------
    def clone(self, clear_original: bool = True) -> "ElementDefinition":
        """Deep copy this element; the copy keeps the structure definition link."""
        sd = self.structure_definition
        self.structure_definition = None
        try:
            duplicate = copy.deepcopy(self)
        finally:
            self.structure_definition = sd
        duplicate.structure_definition = sd
        if clear_original:
            duplicate.clear_original()
        return duplicate

    def to_json(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for prop in _PROPS_AND_UNDERPROPS:
            key = self._concrete_key(prop)
            if key is None:
                continue
            value = self._get(key)
            if value is None:
                continue
            if key == "type":
                result["type"] = [t.to_json() for t in value]
            else:
                result[key] = copy.deepcopy(value)
        return result

    def _load_json(self, json_obj: Dict[str, Any]) -> None:
        self.props = {}
        self.type = None
        self.id = json_obj.get("id", "")
        for prop in _PROPS_AND_UNDERPROPS:
            if prop.endswith("[x]"):
                pattern = re.compile(rf"^{re.escape(prop[:-3])}[A-Z].*$")
                key = next((k for k in json_obj if pattern.match(k)), None)
            else:
                key = prop
            if key is None or key == "id" or json_obj.get(key) is None:
                continue
            if key == "type":
                self.type = [ElementDefinitionType.from_json(t) for t in json_obj["type"]]
            else:
                self._set(key, copy.deepcopy(json_obj[key]))

    @classmethod
    def from_json(cls, json_obj: Dict[str, Any], capture_original: bool = True) -> "ElementDefinition":
        element = cls()
        element._load_json(json_obj)
        if capture_original:
            element.capture_original()
        return element


def _to_json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))
