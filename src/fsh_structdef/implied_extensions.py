"""Cross-version "implied" extensions.

FHIR defines an extension for every element of every other FHIR release,
addressed by a URL of the form::

        http://hl7.org/fhir/<1.0|3.0|4.0|5.0>/StructureDefinition/extension-<Path>

These extensions are never published; they are built on demand from the
element definition in the matching release, which must be loaded as a
supplemental registry (``hl7.fhir.r4.core#4.0.1`` for ``4.0`` and so on).

Example:
        registry.add_supplemental_registry(r3_registry)
        ext = registry.fish_for_fhir(
            "http://hl7.org/fhir/3.0/StructureDefinition/extension-Patient.animal",
            DefinitionKind.EXTENSION,
        )

Design notes:
* Elements with a single known type become simple extensions (``value[x]``);
    backbone elements and types unknown to the current release become complex
    extensions with one sub-extension per child element.
* Types, profiles and reference targets the current release does not know are
    dropped, and renamed resources are mapped to their current name.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .element import ElementDefinition, ElementDefinitionType
from .registry import DefinitionKind
from .structure_definition import StructureDefinition

if TYPE_CHECKING:
    from .registry import DefinitionRegistry

logger = logging.getLogger(__name__)

IMPLIED_EXTENSION_REGEX = re.compile(
    r"^http://hl7\.org/fhir/([1345]\.0)/StructureDefinition/extension-(([^./]+)\.[^/]+)$"
)

VERSION_TO_PACKAGE_MAP = {
    "1.0": "hl7.fhir.r2.core#1.0.2",
    "3.0": "hl7.fhir.r3.core#3.0.2",
    "4.0": "hl7.fhir.r4.core#4.0.1",
    "5.0": "hl7.fhir.r5.core#current",
}

# Resources renamed between releases; only used for reference targets.
RESOURCE_RENAMES = {
    "BodySite": "BodyStructure",
    "Conformance": "CapabilityStatement",
    "DeviceComponent": "DeviceDefinition",
    "DeviceUseRequest": "DeviceRequest",
    "DiagnosticOrder": "ServiceRequest",
    "EligibilityRequest": "CoverageEligibilityRequest",
    "EligibilityResponse": "CoverageEligibilityResponse",
    "MedicationOrder": "MedicationRequest",
    "ProcedureRequest": "ServiceRequest",
    "ReferralRequest": "ServiceRequest",
    "DeviceUseStatement": "DeviceUsage",
    "MedicationStatement": "MedicationUsage",
    "MedicinalProduct": "MedicinalProductDefinition",
    "MedicinalProductAuthorization": "RegulatedAuthorization",
    "MedicinalProductContraindication": "ClinicalUseIssue",
    "MedicinalProductIndication": "ClinicalUseIssue",
    "MedicinalProductIngredient": "Ingredient",
    "MedicinalProductInteraction": "ClinicalUseIssue",
    "MedicinalProductManufactured": "ManufacturedItemDefinition",
    "MedicinalProductPackaged": "PackagedProductDefinition",
    "MedicinalProductPharmaceutical": "AdministrableProductDefinition",
    "MedicinalProductUndesirableEffect": "ClinicalUseIssue",
    "SubstanceSpecification": "SubstanceDefinition",
    "AdministrableProductDefinition": "MedicinalProductPharmaceutical",
    "CapabilityStatement2": "CapabilityStatement",
    "DeviceUsage": "DeviceUseStatement",
    "Ingredient": "MedicinalProductIngredient",
    "ManufacturedItemDefinition": "MedicinalProductManufactured",
    "MedicationUsage": "MedicationUseStatement",
    "MedicinalProductDefinition": "MedicinalProduct",
    "PackagedProductDefinition": "MedicinalProductPackaged",
    "RegulatedAuthorization": "MedicinalProductAuthorization",
    "SubstanceDefinition": "SubstanceSpecification",
}

_IGNORED_CHILDREN = ("id", "extension", "modifierExtension")
_CORE_SD_PREFIX = re.compile(r"^http://hl7\.org/fhir/StructureDefinition/(.+)$")


def is_implied_extension(url: str) -> bool:
    return IMPLIED_EXTENSION_REGEX.match(url or "") is not None


def materialize_implied_extension(url: str, registry: "DefinitionRegistry") -> Optional[Dict[str, Any]]:
    """Build the Extension StructureDefinition JSON for an implied extension URL.

    Returns None, after logging why, when the extension cannot be built.
    """
    match = IMPLIED_EXTENSION_REGEX.match(url)
    if match is None:
        logger.error(
            f"Cannot materialize implied extension ({url}) since the URL does not match the implied extension "
            "pattern http://hl7.org/fhir/[version]/StructureDefinition/extension-[Path] with version 1.0, 3.0, "
            "4.0, or 5.0."
        )
        return None

    version, element_id, type_name = match.group(1), match.group(2), match.group(3)
    supplemental_package = VERSION_TO_PACKAGE_MAP[version]
    supplemental = registry.get_supplemental_registry(supplemental_package)
    if supplemental is None:
        release = "r2" if version == "1.0" else f"r{version[0]}"
        core = registry.fish_for_fhir("StructureDefinition", DefinitionKind.RESOURCE)
        fhir_version = core.get("fhirVersion") if core else None
        logger.error(
            f"Cannot materialize implied extension: {url}.\n"
            f"To fix this, load the supplemental package hl7.fhir.extensions.{release}#{fhir_version}"
        )
        return None

    source_sd = supplemental.fish_for_fhir(type_name)
    if source_sd is None:
        logger.error(
            f"Cannot materialize implied extension ({url}) since {type_name} is not a valid resource or data type "
            f"in {supplemental_package}"
        )
        return None

    # DSTU2 elements have no id; fall back to the path
    source_ed = next(
        (e for e in (source_sd.get("snapshot") or {}).get("element", []) if (e.get("id") or e.get("path")) == element_id),
        None,
    )
    if source_ed is None:
        logger.error(f"Cannot materialize implied extension ({url}) since {element_id} is not a valid id in {type_name}")
        return None
    if any(t.get("code") == "Resource" for t in source_ed.get("type") or []):
        logger.error(f"Cannot materialize implied extension ({url}) since its type is Resource")
        return None

    extension_json = registry.fish_for_fhir("Extension", DefinitionKind.TYPE)
    if extension_json is None:
        logger.error(f"Cannot materialize implied extension ({url}) since the Extension type is not loaded")
        return None
    ext = StructureDefinition.from_json(extension_json)
    _apply_metadata_to_extension(ext, source_sd, source_ed, version)
    root = ext.find_element("Extension")
    _apply_metadata_to_element(root, source_ed)
    _apply_content(source_sd, source_ed, version, ext, root, [], registry, supplemental)
    return ext.to_json()


def _is_complex(ed: Dict[str, Any], registry: "DefinitionRegistry") -> bool:
    codes = list(dict.fromkeys(t.get("code") for t in ed.get("type") or []))
    if len(codes) != 1:
        # a choice cannot be a complex extension
        return False
    if codes[0] in ("BackboneElement", "Element"):
        return True
    return registry.fish_for_fhir(codes[0], DefinitionKind.RESOURCE, DefinitionKind.TYPE) is None


def _apply_metadata_to_extension(
    ext: StructureDefinition, source_sd: Dict[str, Any], source_ed: Dict[str, Any], version: str
) -> None:
    element_id = source_ed.get("id") or source_ed.get("path")
    ext.id = f"extension-{element_id}"
    ext.url = f"http://hl7.org/fhir/{version}/StructureDefinition/{ext.id}"
    ext.version = source_sd.get("fhirVersion")
    ext.name = f"Extension_{re.sub(r'[^A-Za-z0-9]', '_', element_id)}"
    ext.title = ext.description = f"Implied extension for {element_id}"
    ext.props["date"] = datetime.now(timezone.utc).isoformat()
    ext.context = [{"expression": "Element", "type": "element"}]
    ext.base_definition = "http://hl7.org/fhir/StructureDefinition/Extension"
    ext.derivation = "constraint"


def _apply_metadata_to_element(element: ElementDefinition, source_ed: Dict[str, Any]) -> None:
    element.constrain_cardinality(source_ed.get("min"), source_ed.get("max"))
    if source_ed.get("short"):
        element.short = source_ed["short"]
    if source_ed.get("definition"):
        element.definition = source_ed["definition"]
    comment = source_ed.get("comment") or source_ed.get("comments")
    if comment:
        element.comment = comment
    if source_ed.get("requirements"):
        element.requirements = source_ed["requirements"]
    if source_ed.get("isModifier"):
        element.is_modifier = source_ed["isModifier"]
    if source_ed.get("isModifierReason"):
        element.is_modifier_reason = source_ed["isModifierReason"]


def _apply_content(
    source_sd: Dict[str, Any],
    source_ed: Dict[str, Any],
    version: str,
    ext: StructureDefinition,
    base: ElementDefinition,
    visited_types: List[str],
    registry: "DefinitionRegistry",
    supplemental: "DefinitionRegistry",
) -> None:
    ext.find_element(f"{base.id}.url").assign_value(base.slice_name or ext.url, exactly=True)
    value_ed = ext.find_element(f"{base.id}.value[x]")
    extension_ed = ext.find_element(f"{base.id}.extension")
    if _is_complex(source_ed, registry):
        _apply_to_extension_element(
            source_sd, source_ed, version, ext, extension_ed, list(visited_types), registry, supplemental
        )
        value_ed.constrain_cardinality(0, "0")
    else:
        _apply_to_value_x_element(source_ed, version, ext, value_ed, registry)
        extension_ed.constrain_cardinality(0, "0")


def _apply_to_value_x_element(
    source_ed: Dict[str, Any],
    version: str,
    ext: StructureDefinition,
    value_ed: ElementDefinition,
    registry: "DefinitionRegistry",
) -> None:
    value_ed.type = get_types(source_ed, version)
    binding = source_ed.get("binding")
    if binding:
        # DSTU2 and STU3 name the value set differently
        value_set = (
            binding.get("valueSet")
            or binding.get("valueSetUri")
            or (binding.get("valueSetReference") or {}).get("reference")
        )
        value_ed.bind_to_value_set(value_set, binding.get("strength"))
        if binding.get("description"):
            value_ed.binding["description"] = binding["description"]
    _filter_and_fix_types(ext, value_ed, registry)


def _apply_to_extension_element(
    source_sd: Dict[str, Any],
    source_ed: Dict[str, Any],
    version: str,
    ext: StructureDefinition,
    extension_ed: ElementDefinition,
    visited_types: List[str],
    registry: "DefinitionRegistry",
    supplemental: "DefinitionRegistry",
) -> None:
    ed_id = source_ed.get("id") or source_ed.get("path")
    children = [
        e for e in (source_sd.get("snapshot") or {}).get("element", []) if (e.get("id") or e.get("path")).startswith(f"{ed_id}.")
    ]
    if not children:
        # a type unknown to the current release; use the type's own children
        types = get_types(source_ed, version)
        if len(types) == 1:
            type_sd = supplemental.fish_for_fhir(types[0].code, DefinitionKind.RESOURCE, DefinitionKind.TYPE)
            if type_sd:
                if type_sd.get("url") in visited_types:
                    parent_id = re.sub(r"\.extension$", "", extension_ed.id)
                    logger.warning(
                        f"Implied extension ({ext.url}) is incomplete because {parent_id} causes sub-extension recursion."
                    )
                    return
                visited_types.append(type_sd.get("url"))
                ed_id = type_sd.get("id") or type_sd.get("path")
                children = (type_sd.get("snapshot") or {}).get("element", [])[1:]

    if children and not extension_ed.slicing:
        extension_ed.slice_it("value", "url", False, "open")
    for child in children:
        tail = (child.get("id") or child.get("path"))[len(ed_id) + 1:]
        if "." in tail or tail in _IGNORED_CHILDREN:
            continue
        sub_extension = extension_ed.add_slice(tail)
        _apply_metadata_to_element(sub_extension, child)
        sub_extension.type = [ElementDefinitionType("Extension")]
        sub_extension.unfold(registry)
        _apply_content(source_sd, child, version, ext, sub_extension, list(visited_types), registry, supplemental)

    # R5 CodeableReference keeps bindings and targets on itself, not on concept/reference
    source_type = (source_ed.get("type") or [{}])[0]
    if source_type.get("code") == "CodeableReference":
        binding = source_ed.get("binding")
        if binding:
            concept = ext.find_element(f"{extension_ed.id}:concept.value[x]")
            if concept is not None:
                concept.bind_to_value_set(binding.get("valueSet"), binding.get("strength"))
                if binding.get("description"):
                    concept.binding["description"] = binding["description"]
        if source_type.get("targetProfile"):
            reference = ext.find_element(f"{extension_ed.id}:reference.value[x]")
            if reference is not None and reference.type:
                reference.type[0].target_profile = list(source_type["targetProfile"])
                _filter_and_fix_types(ext, reference, registry)


def get_types(ed: Dict[str, Any], version: str) -> List[ElementDefinitionType]:
    """Convert element types of any release to the current representation.

    STU3 repeats a type code once per profile and DSTU2 keeps reference
    targets in ``profile``; both are merged into one type per code.
    """
    raw_types = ed.get("type") or []
    if not raw_types:
        return []
    if version in ("4.0", "5.0"):
        return [ElementDefinitionType.from_json(t) for t in raw_types]

    merged: List[ElementDefinitionType] = []
    for raw in raw_types:
        current = next((t for t in merged if t.code == raw.get("code")), None)
        if current is None:
            current = ElementDefinitionType(raw.get("code"))
            merged.append(current)
        if version == "3.0":
            if raw.get("profile") is not None:
                current.profile = _union(current.profile, [raw["profile"]])
            if raw.get("targetProfile") is not None:
                current.target_profile = _union(current.target_profile, [raw["targetProfile"]])
            if raw.get("versioning") is not None:
                current.versioning = raw["versioning"]
        elif raw.get("profile") is not None:
            if raw.get("code") == "Reference":
                current.target_profile = _union(current.target_profile, raw["profile"])
            else:
                current.profile = _union(current.profile, raw["profile"])
        if raw.get("aggregation") is not None:
            current.aggregation = _union(current.aggregation, raw["aggregation"])
    return merged


def _union(existing: Optional[List[str]], new: List[str]) -> List[str]:
    return list(dict.fromkeys([*(existing or []), *new]))


def _filter_and_fix_types(ext: StructureDefinition, ed: ElementDefinition, registry: "DefinitionRegistry") -> None:
    unsupported: List[str] = []
    kept: List[ElementDefinitionType] = []
    for t in ed.type or []:
        if t.code is None:
            kept.append(t)
            continue
        if registry.fish_for_fhir(t.code, DefinitionKind.RESOURCE, DefinitionKind.TYPE) is None:
            unsupported.append(t.code)
            continue
        if t.profile is not None:
            known = []
            for profile in t.profile:
                if registry.fish_for_fhir(profile, DefinitionKind.PROFILE, DefinitionKind.EXTENSION) is None:
                    unsupported.append(profile)
                else:
                    known.append(profile)
            # an empty list would forbid everything; leave the type open instead
            t.profile = known or None
        if t.target_profile is not None:
            targets = []
            for target in t.target_profile:
                if registry.fish_for_fhir(target, DefinitionKind.RESOURCE, DefinitionKind.PROFILE):
                    targets.append(target)
                    continue
                core_match = _CORE_SD_PREFIX.match(target)
                renamed = RESOURCE_RENAMES.get(core_match.group(1)) if core_match else None
                if renamed:
                    targets.append(f"http://hl7.org/fhir/StructureDefinition/{renamed}")
                else:
                    unsupported.append(target)
            t.target_profile = targets or None
        kept.append(t)
    ed.type = kept
    if unsupported:
        types_have = "type has" if len(unsupported) == 1 else "types have"
        logger.warning(
            f"Implied extension ({ext.url}) is incomplete since the following {types_have} no equivalent in "
            f"FHIR {ext.fhir_version}: {', '.join(unsupported)}."
        )
