"""Tests for the definition registry and fishing."""

import pytest

from fsh_structdef.registry import (
    ChainedFisher,
    DefinitionKind,
    DefinitionRegistry,
    fish_for_fhir_best_version,
    fish_for_metadata_best_version,
)


def _observation(version, name="Observation"):
    return {
        "resourceType": "StructureDefinition",
        "id": name,
        "url": f"http://hl7.org/fhir/StructureDefinition/{name}",
        "name": name,
        "version": version,
        "kind": "resource",
        "type": name,
        "derivation": "specialization",
    }


class TestClassification:
    """Test how definitions are classified when added."""

    @pytest.fixture(autouse=True)
    def setup(self, registry, core_definitions):
        self.registry = registry
        self.definitions = core_definitions

    def test_size_counts_each_definition_once(self):
        """Test that indexing by id, name and url does not inflate the size."""
        assert self.registry.size() == len(self.definitions)

    def test_kinds(self):
        """Test that each definition lands in the expected kind."""
        assert self.registry.fish_for_fhir("Observation", DefinitionKind.RESOURCE) is not None
        assert self.registry.fish_for_fhir("Observation", DefinitionKind.TYPE) is None
        assert self.registry.fish_for_fhir("Extension", DefinitionKind.TYPE) is not None
        assert self.registry.fish_for_fhir("Extension", DefinitionKind.EXTENSION) is None
        assert self.registry.fish_for_fhir("BodyPosition", DefinitionKind.EXTENSION) is not None
        assert self.registry.fish_for_fhir("Age", DefinitionKind.TYPE) is not None
        assert self.registry.fish_for_fhir("ObservationStatus", DefinitionKind.VALUE_SET) is not None
        assert self.registry.fish_for_fhir("ObservationStatus", DefinitionKind.RESOURCE) is None

    def test_enumeration(self):
        """Test listing definitions by kind."""
        resources = {d["name"] for d in self.registry.all_resources()}

        assert resources == {"Resource", "DomainResource", "Patient", "Observation", "Questionnaire", "StructureDefinition"}
        assert {d["id"] for d in self.registry.all_extensions()} == {"body-position", "data-absent"}
        assert len(self.registry.all_value_sets()) == 1
        assert len(self.registry.all_code_systems()) == 1
        assert self.registry.all_profiles() == []

    def test_unsupported_resources_are_ignored(self):
        """Test that instances of other resource types are not indexed."""
        self.registry.add({"resourceType": "Patient", "id": "example"})
        assert self.registry.size() == len(self.definitions)

    def test_constraint_on_resource_is_a_profile(self):
        """Test that a resource with constraint derivation is a profile."""
        profile = _observation("1.0.0", "MyObservation")
        profile["derivation"] = "constraint"
        profile["type"] = "Observation"
        self.registry.add(profile)

        assert self.registry.fish_for_fhir("MyObservation", DefinitionKind.PROFILE)["type"] == "Observation"
        assert [d["id"] for d in self.registry.all_profiles()] == ["MyObservation"]


class TestFishing:
    """Test fish_for_fhir and fish_for_metadata."""

    @pytest.fixture(autouse=True)
    def setup(self, registry):
        self.registry = registry

    def test_lookup_by_id_name_and_url(self):
        """Test that a definition can be found by each of its keys."""
        by_id = self.registry.fish_for_fhir("body-position")
        by_name = self.registry.fish_for_fhir("BodyPosition")
        by_url = self.registry.fish_for_fhir("http://example.org/StructureDefinition/body-position")

        assert by_id == by_name == by_url
        assert self.registry.find("body-position") == by_id

    def test_results_are_copies(self):
        """Test that callers cannot change the stored definition."""
        result = self.registry.fish_for_fhir("Observation")
        result["name"] = "Changed"
        result["snapshot"]["element"].clear()

        fresh = self.registry.fish_for_fhir("Observation")
        assert fresh["name"] == "Observation"
        assert fresh["snapshot"]["element"]

    def test_version_pinning(self):
        """Test item|version lookups."""
        assert self.registry.fish_for_fhir("Observation|4.0.1") is not None
        assert self.registry.fish_for_fhir("Observation|3.0.2") is None

    def test_best_version_falls_back(self):
        """Test that the best-version helpers accept any version on a miss."""
        assert fish_for_fhir_best_version(self.registry, "Observation|3.0.2")["version"] == "4.0.1"
        assert fish_for_metadata_best_version(self.registry, "Observation|3.0.2").name == "Observation"
        assert fish_for_fhir_best_version(None, "Observation") is None

    def test_metadata(self):
        """Test the metadata summary of a definition."""
        md = self.registry.fish_for_metadata("Observation")

        assert md.id == "Observation"
        assert md.sd_type == "Observation"
        assert md.url == "http://hl7.org/fhir/StructureDefinition/Observation"
        assert md.parent == "http://hl7.org/fhir/StructureDefinition/DomainResource"
        assert md.abstract is False
        assert md.resource_type == "StructureDefinition"
        assert md.can_bind is False

    def test_type_characteristics(self):
        """Test that logical model characteristics are read from extensions."""
        self.registry.add(
            {
                "resourceType": "StructureDefinition",
                "id": "CodedThing",
                "url": "http://example.org/StructureDefinition/CodedThing",
                "name": "CodedThing",
                "kind": "logical",
                "type": "http://example.org/StructureDefinition/CodedThing",
                "derivation": "specialization",
                "extension": [
                    {"url": "http://hl7.org/fhir/tools/StructureDefinition/type-characteristics", "valueCode": "can-bind"},
                    {"url": "http://hl7.org/fhir/tools/StructureDefinition/type-characteristics", "valueCode": "can-be-target"},
                ],
            }
        )

        md = self.registry.fish_for_metadata("CodedThing", DefinitionKind.LOGICAL)
        assert md.can_bind is True
        assert md.can_be_target is True


class TestChainedRegistries:
    """Test child and supplemental registries."""

    def setup_method(self):
        """Set up a parent registry with two child packages."""
        self.parent = DefinitionRegistry()
        self.first = DefinitionRegistry("first.fhir#1.0.0")
        self.first.add(_observation("1.0"))
        self.second = DefinitionRegistry("second.fhir#2.0.0")
        self.second.add(_observation("2.0"))
        self.parent.add_child_registry(self.first)
        self.parent.add_child_registry(self.second)

    def test_first_child_wins(self):
        """Test breadth-first search order."""
        assert self.parent.fish_for_fhir("Observation")["version"] == "1.0"

    def test_own_definitions_win(self):
        """Test that a registry's own definitions shadow its children."""
        self.parent.add(_observation("0.5"))
        assert self.parent.fish_for_fhir("Observation")["version"] == "0.5"

    def test_version_selects_child(self):
        """Test that a version pin finds a later child."""
        assert self.parent.fish_for_fhir("Observation|2.0")["version"] == "2.0"
        assert self.parent.fish_for_fhir("Observation|3.0") is None

    def test_all_packages(self):
        """Test listing the packages of the chain."""
        assert self.parent.all_packages() == ["first.fhir#1.0.0", "second.fhir#2.0.0"]
        assert self.parent.all_packages("second.fhir#2.0.0") == ["second.fhir#2.0.0"]

    def test_enumeration_removes_duplicates(self):
        """Test that identical definitions from several children are listed once."""
        self.second.add(_observation("1.0", "Observation"))
        assert len(self.parent.all_resources()) == 1

    def test_size_includes_children(self):
        """Test that the size sums the chain."""
        assert self.parent.size() == 2

    def test_supplemental_lookup(self):
        """Test supplemental registry lookup, including #current."""
        supplemental = DefinitionRegistry("hl7.fhir.r5.core#5.0.0")
        self.parent.add_supplemental_registry(supplemental)

        assert self.parent.get_supplemental_registry("hl7.fhir.r5.core#5.0.0") is supplemental
        assert self.parent.get_supplemental_registry("hl7.fhir.r5.core#current") is supplemental
        assert self.parent.get_supplemental_registry("hl7.fhir.r3.core#3.0.2") is None

    def test_failed_supplemental_is_absent(self):
        """Test that a supplemental registry whose load failed is not returned."""
        supplemental = DefinitionRegistry("hl7.fhir.r5.core#5.0.0")
        supplemental.unsuccessful_load = True
        self.parent.add_supplemental_registry(supplemental)

        assert self.parent.get_supplemental_registry("hl7.fhir.r5.core#5.0.0") is None


class TestChainedFisher:
    """Test ChainedFisher."""

    @pytest.fixture(autouse=True)
    def setup(self, registry):
        self.local = DefinitionRegistry()
        self.local.add(_observation("local"))
        self.fisher = ChainedFisher(self.local, registry)

    def test_local_shadows_registry(self):
        """Test that locally exported definitions are found first."""
        assert self.fisher.fish_for_fhir("Observation")["version"] == "local"
        assert self.fisher.fish_for_metadata("Observation").version == "local"

    def test_falls_back_to_registry(self):
        """Test that other definitions come from the registry."""
        assert self.fisher.fish_for_fhir("Patient")["name"] == "Patient"
        assert self.fisher.fish_for_metadata("Patient").sd_type == "Patient"

    def test_default_fhir_version(self):
        """Test that the FHIR version comes from the loaded core package."""
        assert self.fisher.default_fhir_version == "4.0.1"
