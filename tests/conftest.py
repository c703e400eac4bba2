"""Shared fixtures: a small, hand-built slice of the FHIR R4 core definitions.

Only the elements the tests touch are present, which keeps every definition
readable while still exercising unfolding, choices, slicing and references.
"""

import copy

import pytest

from fsh_structdef.registry import DefinitionRegistry

CORE = "http://hl7.org/fhir/StructureDefinition"
FHIR_VERSION = "4.0.1"

EXTENSION_SLICING = {
    "discriminator": [{"type": "value", "path": "url"}],
    "description": "Extensions are always sliced by (at least) url",
    "rules": "open",
}

ELE_1 = {
    "key": "ele-1",
    "severity": "error",
    "human": "All FHIR elements must have a @value or children",
    "expression": "hasValue() or (children().count() > id.count())",
}


def element(element_id, min_=0, max_="1", types=None, **extra):
    """Build a snapshot element whose base matches its own cardinality."""
    path = ".".join(part.split(":", 1)[0] for part in element_id.split("."))
    ed = {
        "id": element_id,
        "path": path,
        "min": min_,
        "max": max_,
        "base": {"path": path, "min": min_, "max": max_},
    }
    if types:
        ed["type"] = [{"code": t} if isinstance(t, str) else t for t in types]
    ed.update(extra)
    return ed


def structure_definition(name, kind, elements, base=None, derivation="specialization", **extra):
    sd = {
        "resourceType": "StructureDefinition",
        "id": name,
        "url": f"{CORE}/{name}",
        "version": FHIR_VERSION,
        "name": name,
        "status": "active",
        "fhirVersion": FHIR_VERSION,
        "kind": kind,
        "abstract": False,
        "type": name,
        "derivation": derivation,
        "snapshot": {"element": elements},
    }
    if base is not None:
        sd["baseDefinition"] = f"{CORE}/{base}"
    sd.update(extra)
    return sd


def element_children(type_name):
    return [
        element(f"{type_name}.id", types=["string"]),
        element(f"{type_name}.extension", 0, "*", ["Extension"], slicing=copy.deepcopy(EXTENSION_SLICING)),
    ]


def primitive(name, base="Element"):
    return structure_definition(
        name,
        "primitive-type",
        [element(name, 0, "*", constraint=[dict(ELE_1)]), *element_children(name)],
        base=base,
    )


def complex_type(name, children, base="Element", **extra):
    return structure_definition(
        name,
        "complex-type",
        [element(name, 0, "*", constraint=[dict(ELE_1)]), *element_children(name), *children],
        base=base,
        **extra,
    )


def resource(name, children, base="DomainResource", **extra):
    elements = [
        element(name, 0, "*"),
        element(f"{name}.id", types=["id"]),
        element(f"{name}.extension", 0, "*", ["Extension"], slicing=copy.deepcopy(EXTENSION_SLICING)),
        element(f"{name}.modifierExtension", 0, "*", ["Extension"], slicing=copy.deepcopy(EXTENSION_SLICING)),
        *children,
    ]
    return structure_definition(name, "resource", elements, base=base, **extra)


def build_core_definitions():
    """Return fresh copies of every core definition used by the tests."""
    definitions = [
        structure_definition(
            "Element",
            "complex-type",
            [element("Element", 0, "*", constraint=[dict(ELE_1)]), *element_children("Element")],
            abstract=True,
        ),
        primitive("string"),
        primitive("boolean"),
        primitive("decimal"),
        primitive("integer"),
        primitive("uri"),
        primitive("date"),
        primitive("dateTime"),
        primitive("code", base="string"),
        primitive("id", base="string"),
        primitive("markdown", base="string"),
        primitive("canonical", base="uri"),
        complex_type(
            "Quantity",
            [
                element("Quantity.value", types=["decimal"]),
                element("Quantity.comparator", types=["code"]),
                element("Quantity.unit", types=["string"]),
                element("Quantity.system", types=["uri"]),
                element("Quantity.code", types=["code"]),
            ],
        ),
        complex_type(
            "Age",
            [
                element("Age.value", types=["decimal"]),
                element("Age.unit", types=["string"]),
                element("Age.system", types=["uri"]),
                element("Age.code", types=["code"]),
            ],
            base="Quantity",
            derivation="constraint",
            type="Quantity",
        ),
        complex_type(
            "Coding",
            [
                element("Coding.system", types=["uri"]),
                element("Coding.version", types=["string"]),
                element("Coding.code", types=["code"]),
                element("Coding.display", types=["string"]),
            ],
        ),
        complex_type(
            "CodeableConcept",
            [
                element("CodeableConcept.coding", 0, "*", ["Coding"]),
                element("CodeableConcept.text", types=["string"]),
            ],
        ),
        complex_type(
            "Reference",
            [
                element("Reference.reference", types=["string"]),
                element("Reference.type", types=["uri"]),
                element("Reference.display", types=["string"]),
            ],
        ),
        complex_type(
            "BackboneElement",
            [element("BackboneElement.modifierExtension", 0, "*", ["Extension"])],
            abstract=True,
        ),
        complex_type(
            "Extension",
            [
                element("Extension.url", 1, "1", ["uri"]),
                element(
                    "Extension.value[x]",
                    types=["boolean", "string", "code", "Quantity", "CodeableConcept", "Reference"],
                ),
            ],
        ),
        complex_type(
            "ElementDefinition",
            [
                element("ElementDefinition.short", types=["string"]),
                element("ElementDefinition.definition", types=["markdown"]),
                element("ElementDefinition.comment", types=["markdown"]),
                element("ElementDefinition.code", 0, "*", ["Coding"]),
                element("ElementDefinition.mustSupport", types=["boolean"]),
            ],
            base="BackboneElement",
        ),
        structure_definition(
            "Resource",
            "resource",
            [element("Resource", 0, "*"), element("Resource.id", types=["id"])],
            abstract=True,
        ),
        resource("DomainResource", [], base="Resource", abstract=True),
        resource(
            "Patient",
            [
                element("Patient.active", types=["boolean"]),
                element("Patient.name", 0, "*", ["string"]),
                element("Patient.birthDate", types=["date"]),
            ],
        ),
        resource(
            "Observation",
            [
                element("Observation.status", 1, "1", ["code"], isModifier=True, isSummary=True),
                element("Observation.code", 1, "1", ["CodeableConcept"]),
                element(
                    "Observation.subject",
                    types=[{"code": "Reference", "targetProfile": [f"{CORE}/Patient"]}],
                ),
                element("Observation.value[x]", types=["Quantity", "CodeableConcept", "string", "boolean"]),
                element("Observation.component", 0, "*", ["BackboneElement"]),
                element("Observation.component.id", types=["string"]),
                element("Observation.component.extension", 0, "*", ["Extension"]),
                element("Observation.component.modifierExtension", 0, "*", ["Extension"]),
                element("Observation.component.code", 1, "1", ["CodeableConcept"]),
                element("Observation.component.value[x]", types=["Quantity", "CodeableConcept", "string"]),
            ],
        ),
        resource(
            "Questionnaire",
            [
                element("Questionnaire.item", 0, "*", ["BackboneElement"]),
                element("Questionnaire.item.linkId", 1, "1", ["string"]),
                element("Questionnaire.item.item", 0, "*", contentReference="#Questionnaire.item"),
            ],
        ),
        resource(
            "StructureDefinition",
            [
                element("StructureDefinition.url", 1, "1", ["uri"]),
                element("StructureDefinition.name", 1, "1", ["string"]),
                element("StructureDefinition.title", types=["string"]),
                element("StructureDefinition.status", 1, "1", ["code"]),
                element("StructureDefinition.experimental", types=["boolean"]),
                element("StructureDefinition.publisher", types=["string"]),
                element("StructureDefinition.description", types=["markdown"]),
                element("StructureDefinition.keyword", 0, "*", ["Coding"]),
                element("StructureDefinition.snapshot", types=["BackboneElement"]),
            ],
        ),
        {
            "resourceType": "StructureDefinition",
            "id": "body-position",
            "url": "http://example.org/StructureDefinition/body-position",
            "name": "BodyPosition",
            "kind": "complex-type",
            "abstract": False,
            "type": "Extension",
            "baseDefinition": f"{CORE}/Extension",
            "derivation": "constraint",
            "context": [{"type": "element", "expression": "Observation"}],
            "snapshot": {
                "element": [
                    element("Extension", 0, "*"),
                    element("Extension.extension", 0, "0", ["Extension"]),
                    element("Extension.url", 1, "1", ["uri"], fixedUri="http://example.org/StructureDefinition/body-position"),
                    element("Extension.value[x]", types=["CodeableConcept"]),
                ]
            },
        },
        {
            "resourceType": "StructureDefinition",
            "id": "data-absent",
            "url": "http://example.org/StructureDefinition/data-absent",
            "name": "DataAbsent",
            "kind": "complex-type",
            "abstract": False,
            "type": "Extension",
            "baseDefinition": f"{CORE}/Extension",
            "derivation": "constraint",
            "snapshot": {
                "element": [
                    element("Extension", 0, "*", isModifier=True),
                    element("Extension.extension", 0, "0", ["Extension"]),
                    element("Extension.url", 1, "1", ["uri"], fixedUri="http://example.org/StructureDefinition/data-absent"),
                    element("Extension.value[x]", types=["code"]),
                ]
            },
        },
        {
            "resourceType": "ValueSet",
            "id": "observation-status",
            "url": "http://hl7.org/fhir/ValueSet/observation-status",
            "version": FHIR_VERSION,
            "name": "ObservationStatus",
            "status": "active",
        },
        {
            "resourceType": "CodeSystem",
            "id": "observation-status-cs",
            "url": "http://hl7.org/fhir/observation-status",
            "name": "ObservationStatusCodes",
            "status": "active",
            "content": "complete",
        },
    ]
    return definitions


@pytest.fixture
def core_definitions():
    return build_core_definitions()


@pytest.fixture
def registry(core_definitions):
    registry = DefinitionRegistry("hl7.fhir.r4.core#4.0.1")
    registry.add_all(core_definitions)
    return registry
