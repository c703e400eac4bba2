"""Tests for implied (cross-version) extensions."""

import pytest

from fsh_structdef.implied_extensions import get_types, is_implied_extension
from fsh_structdef.registry import DefinitionKind, DefinitionRegistry
from fsh_structdef.structure_definition import StructureDefinition

STU3_URL = "http://hl7.org/fhir/3.0/StructureDefinition"


def _stu3_patient():
    def element(element_id, min_, max_, types=None, **extra):
        ed = {"id": element_id, "path": element_id, "min": min_, "max": max_}
        if types:
            ed["type"] = [{"code": t} for t in types]
        ed.update(extra)
        return ed

    return {
        "resourceType": "StructureDefinition",
        "id": "Patient",
        "url": "http://hl7.org/fhir/StructureDefinition/Patient",
        "name": "Patient",
        "fhirVersion": "3.0.2",
        "kind": "resource",
        "type": "Patient",
        "derivation": "specialization",
        "snapshot": {
            "element": [
                element("Patient", 0, "*"),
                element("Patient.active", 0, "1", ["boolean"], short="Whether this patient's record is in active use"),
                element("Patient.contact", 0, "*", ["BackboneElement"]),
                element("Patient.contact.name", 0, "1", ["string"]),
                element("Patient.photo", 0, "*", ["Attachment"]),
            ]
        },
    }


@pytest.mark.parametrize(
    "url,expected",
    [
        (f"{STU3_URL}/extension-Patient.active", True),
        ("http://hl7.org/fhir/5.0/StructureDefinition/extension-Observation.component.value", True),
        ("http://hl7.org/fhir/2.0/StructureDefinition/extension-Patient.active", False),
        (f"{STU3_URL}/extension-Patient", False),
        ("http://example.org/StructureDefinition/extension-Patient.active", False),
    ],
)
def test_is_implied_extension(url, expected):
    """Test recognition of implied extension URLs."""
    assert is_implied_extension(url) is expected


def test_get_types_merges_stu3_profiles():
    """Test that STU3 types repeated per target become one type."""
    ed = {
        "type": [
            {"code": "Reference", "targetProfile": "http://hl7.org/fhir/StructureDefinition/Patient"},
            {"code": "Reference", "targetProfile": "http://hl7.org/fhir/StructureDefinition/Group"},
        ]
    }
    types = get_types(ed, "3.0")

    assert len(types) == 1
    assert types[0].target_profile == [
        "http://hl7.org/fhir/StructureDefinition/Patient",
        "http://hl7.org/fhir/StructureDefinition/Group",
    ]


class TestImpliedExtensions:
    """Test materializing implied extensions through the registry."""

    @pytest.fixture(autouse=True)
    def setup(self, registry):
        self.registry = registry
        self.supplemental = DefinitionRegistry("hl7.fhir.r3.core#3.0.2")
        self.supplemental.add(_stu3_patient())

    def test_missing_supplemental_package(self, caplog):
        """Test that nothing is built without the other release loaded."""
        assert self.registry.fish_for_fhir(f"{STU3_URL}/extension-Patient.active") is None
        assert "hl7.fhir.extensions.r3" in caplog.text

    def test_simple_extension(self):
        """Test an implied extension for a primitive element."""
        self.registry.add_supplemental_registry(self.supplemental)
        url = f"{STU3_URL}/extension-Patient.active"

        ext_json = self.registry.fish_for_fhir(url)
        ext = StructureDefinition.from_json(ext_json)

        assert ext.url == url
        assert ext.id == "extension-Patient.active"
        assert ext.name == "Extension_Patient_active"
        assert ext.context == [{"expression": "Element", "type": "element"}]
        assert ext.find_element("Extension").short == "Whether this patient's record is in active use"
        assert ext.find_element("Extension").max == "1"
        assert ext.find_element("Extension.url").props["fixedUri"] == url
        assert [t.code for t in ext.find_element("Extension.value[x]").type] == ["boolean"]
        assert ext.find_element("Extension.extension").max == "0"

    def test_only_fished_as_extension(self):
        """Test that implied extensions are only found when extensions are searched."""
        self.registry.add_supplemental_registry(self.supplemental)
        url = f"{STU3_URL}/extension-Patient.active"

        assert self.registry.fish_for_fhir(url, DefinitionKind.RESOURCE) is None
        assert self.registry.fish_for_fhir(url, DefinitionKind.EXTENSION) is not None
        assert self.registry.fish_for_metadata(url).sd_type == "Extension"

    def test_complex_extension(self):
        """Test that a backbone element becomes a complex extension."""
        self.registry.add_supplemental_registry(self.supplemental)
        ext = StructureDefinition.from_json(self.registry.fish_for_fhir(f"{STU3_URL}/extension-Patient.contact"))

        name = ext.find_element("Extension.extension:name")
        assert name is not None
        assert ext.find_element("Extension.extension:name.url").props["fixedUri"] == "name"
        assert [t.code for t in ext.find_element("Extension.extension:name.value[x]").type] == ["string"]
        assert ext.find_element("Extension.value[x]").max == "0"

    def test_unknown_element(self, caplog):
        """Test an element that does not exist in the other release."""
        self.registry.add_supplemental_registry(self.supplemental)

        assert self.registry.fish_for_fhir(f"{STU3_URL}/extension-Patient.nope") is None
        assert "is not a valid id in Patient" in caplog.text

    def test_type_missing_from_current_release(self):
        """Test that a type only known to the other release is expanded from its definition there."""
        self.supplemental.add(
            {
                "resourceType": "StructureDefinition",
                "id": "Attachment",
                "url": "http://hl7.org/fhir/StructureDefinition/Attachment",
                "name": "Attachment",
                "kind": "complex-type",
                "type": "Attachment",
                "baseDefinition": "http://hl7.org/fhir/StructureDefinition/Element",
                "derivation": "specialization",
                "snapshot": {
                    "element": [
                        {"id": "Attachment", "path": "Attachment", "min": 0, "max": "*"},
                        {"id": "Attachment.contentType", "path": "Attachment.contentType", "min": 0, "max": "1", "type": [{"code": "code"}]},
                        {"id": "Attachment.title", "path": "Attachment.title", "min": 0, "max": "1", "type": [{"code": "string"}]},
                    ]
                },
            }
        )
        self.registry.add_supplemental_registry(self.supplemental)
        ext = StructureDefinition.from_json(self.registry.fish_for_fhir(f"{STU3_URL}/extension-Patient.photo"))

        slices = ext.find_element("Extension.extension").get_slices()
        assert [s.slice_name for s in slices] == ["contentType", "title"]
        assert [t.code for t in ext.find_element("Extension.extension:contentType.value[x]").type] == ["code"]
        assert ext.find_element("Extension.value[x]").max == "0"
