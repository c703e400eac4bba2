"""Value wrappers and small records consumed by the constraint engine.

The rule feed hands the engine already-parsed values. Plain Python ``bool``,
``int``, ``float`` and ``str`` cover the primitive kinds; the classes below
cover the structured kinds that need conversion into FHIR JSON before they can
be stored as ``fixed[x]`` / ``pattern[x]`` on an element.

Overview:
        * ``FshCode`` - ``system#code "display"``; expands to ``code``, ``Coding``,
          ``CodeableConcept`` or ``Quantity`` depending on the target element type.
        * ``FshQuantity`` / ``FshRatio`` - numeric value with optional UCUM unit.
        * ``FshReference`` - ``Reference(target) "display"``.
        * ``FshCanonical`` - ``Canonical(Name|version)`` resolved through the registry.
        * ``InstanceDefinition`` - an inline resource or data type instance.
        * ``Invariant`` - an ``obeys`` constraint.
        * ``SourceInfo`` - file and line span used when reporting diagnostics.
        * ``PathPart`` - one parsed segment of a FSH path.

Example:
        >>> code = FshCode("8480-6", "http://loinc.org", "Systolic blood pressure")
        >>> code.to_coding()
        {'code': '8480-6', 'system': 'http://loinc.org', 'display': 'Systolic blood pressure'}
        >>> str(FshQuantity(120, FshCode("mm[Hg]", "http://unitsofmeasure.org")))
        "120 'mm[Hg]'"
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

UCUM_SYSTEM = "http://unitsofmeasure.org"


@dataclass
class TextLocation:
    line: int
    column: int


@dataclass
class SourceInfo:
    """Location of a rule or definition in authored FSH source."""

    file: Optional[str] = None
    start: Optional[TextLocation] = None
    end: Optional[TextLocation] = None

    def describe(self) -> str:
        parts = []
        if self.file:
            parts.append(f"File: {self.file}")
        if self.start is not None:
            end_line = self.end.line if self.end is not None else self.start.line
            if end_line != self.start.line:
                parts.append(f"Line: {self.start.line} - {end_line}")
            else:
                parts.append(f"Line: {self.start.line}")
        return "\n  ".join(parts)


@dataclass
class FshCode:
    """A code, optionally qualified by system (``system|version`` allowed) and display."""

    code: str
    system: Optional[str] = None
    display: Optional[str] = None
    source_info: Optional[SourceInfo] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        code = f'"{self.code}"' if re.search(r"\s", self.code or "") else self.code
        text = f"{self.system or ''}#{code}"
        return f'{text} "{self.display}"' if self.display else text

    def to_coding(self) -> Dict[str, Any]:
        coding: Dict[str, Any] = {}
        if self.code:
            coding["code"] = self.code
        if self.system:
            if "|" in self.system:
                system, _, version = self.system.partition("|")
                coding["system"] = system
                coding["version"] = version
            else:
                coding["system"] = self.system
        if self.display:
            coding["display"] = self.display
        return coding

    def to_codeable_concept(self) -> Dict[str, Any]:
        return {"coding": [self.to_coding()]}

    def to_quantity(self) -> Dict[str, Any]:
        quantity: Dict[str, Any] = {}
        if self.code:
            quantity["code"] = self.code
        if self.system:
            quantity["system"] = self.system
        if self.display:
            quantity["unit"] = self.display
        return quantity


@dataclass
class FshQuantity:
    """A numeric value with an optional unit code."""

    value: float
    unit: Optional[FshCode] = None
    source_info: Optional[SourceInfo] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        text = str(self.value)
        if self.unit is not None and self.unit.code is not None:
            text += f" '{self.unit.code}'"
        return text

    def to_quantity(self) -> Dict[str, Any]:
        quantity: Dict[str, Any] = {}
        if self.value is not None:
            quantity["value"] = self.value
        if self.unit is not None:
            if self.unit.display:
                quantity["unit"] = self.unit.display
            if self.unit.system:
                quantity["system"] = self.unit.system
            if self.unit.code:
                quantity["code"] = self.unit.code
        return quantity


@dataclass
class FshRatio:
    numerator: FshQuantity
    denominator: FshQuantity

    def __str__(self) -> str:
        return f"{self.numerator} : {self.denominator}"

    def to_ratio(self) -> Dict[str, Any]:
        return {
            "numerator": self.numerator.to_quantity(),
            "denominator": self.denominator.to_quantity(),
        }


@dataclass
class FshReference:
    """A reference to another resource.

    ``sd_type`` is the resolved resource type of the target, when known. It is
    used to check the reference against the element's target profiles.
    """

    reference: str
    display: Optional[str] = None
    sd_type: Optional[str] = None
    source_info: Optional[SourceInfo] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        display = f' "{self.display}"' if self.display else ""
        return f"Reference({self.reference}){display}"

    def to_reference(self) -> Dict[str, Any]:
        reference: Dict[str, Any] = {"reference": self.reference}
        if self.display:
            reference["display"] = self.display
        return reference


@dataclass
class FshCanonical:
    entity_name: str
    version: Optional[str] = None
    source_info: Optional[SourceInfo] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        version = f"|{self.version}" if self.version else ""
        return f"Canonical({self.entity_name}{version})"


@dataclass
class Invariant:
    """An ``obeys`` constraint applied to ``ElementDefinition.constraint``.

    ``name`` maps to ``constraint.key`` and ``description`` to ``constraint.human``.
    """

    name: str
    description: Optional[str] = None
    expression: Optional[str] = None
    xpath: Optional[str] = None
    severity: Optional[FshCode] = None


class InstanceDefinition(dict):
    """An inline FHIR instance.

    Behaves as the instance's JSON object. ``instance_meta`` carries
    bookkeeping that is not part of the FHIR representation (``name``,
    ``sd_type``, ``usage``).
    """

    ORDERED_KEYS = ("resourceType", "_resourceType", "id", "_id", "meta", "_meta")

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.instance_meta: Dict[str, Any] = {}

    @property
    def resource_type(self) -> Optional[str]:
        return self.get("resourceType")

    def to_json(self) -> Dict[str, Any]:
        keys = [k for k in self.ORDERED_KEYS if self.get(k) is not None]
        keys += [k for k in self.keys() if k not in keys]
        return _ordered_clone(self, keys)

    @classmethod
    def from_json(cls, json_obj: Dict[str, Any]) -> "InstanceDefinition":
        instance = cls(copy.deepcopy(json_obj))
        if json_obj.get("id") is not None:
            instance.instance_meta["name"] = json_obj["id"]
        return instance


def _ordered_clone(value: Any, keys: Optional[List[str]] = None) -> Any:
    """Deep copy ``value`` placing each ``_key`` right after its ``key``."""
    if isinstance(value, list):
        return [_ordered_clone(v) for v in value]
    if not isinstance(value, dict):
        return copy.deepcopy(value)
    keys = list(value.keys()) if keys is None else keys
    underscore = [k for k in keys if k.startswith("_")]
    ordered: List[str] = []
    for key in keys:
        if key.startswith("_"):
            continue
        ordered.append(key)
        if f"_{key}" in underscore:
            ordered.append(f"_{key}")
            underscore.remove(f"_{key}")
    ordered.extend(underscore)
    return {k: _ordered_clone(value[k]) for k in ordered}


@dataclass
class PathPart:
    """One segment of a FSH path such as ``component[SystolicBP]``.

    Attributes:
        base: The element name (``value[x]`` keeps its choice marker).
        brackets: Bracket contents in order: slice names, numeric indexes,
            soft indexes (``+``/``=``) or reference target names.
        primitive: Set while resolving a path when the element is a FHIR primitive.
        slices: Slice names seen so far on the path, used for soft indexing.
        prefix: The assembled path preceding this part, used for soft indexing.
    """

    base: str
    brackets: Optional[List[str]] = None
    primitive: bool = False
    slices: Optional[List[str]] = None
    prefix: Optional[str] = None
