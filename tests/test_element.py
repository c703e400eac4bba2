"""Tests for ElementDefinition constraint operations."""

import pytest

from fsh_structdef.element import (
    STANDARDS_STATUS_EXTENSION,
    ElementDefinitionType,
    is_match,
    max_exceeds_one,
    subtree_range,
)
from fsh_structdef.errors import (
    AmbiguousTypeError,
    BindingStrengthError,
    CodedTypeNotFoundError,
    DisableFlagError,
    DuplicateSliceError,
    FixedToPatternError,
    InvalidCardinalityError,
    InvalidFHIRIdError,
    InvalidMappingError,
    InvalidMustSupportError,
    InvalidSumOfSliceMinsError,
    InvalidTypeError,
    InvalidUriError,
    MultipleStandardsStatusError,
    NarrowingRootCardinalityError,
    NoSingleTypeError,
    SlicingDefinitionError,
    SlicingNotDefinedError,
    TypeNotFoundError,
    ValueAlreadyAssignedError,
    WideningCardinalityError,
)
from fsh_structdef.models import FshCode, FshQuantity, FshReference, Invariant
from fsh_structdef.rules import OnlyRule, OnlyRuleType
from fsh_structdef.structure_definition import StructureDefinition

CORE = "http://hl7.org/fhir/StructureDefinition"
OBSERVATION_STATUS_VS = "http://hl7.org/fhir/ValueSet/observation-status"


class TestCardinality:
    """Test constrain_cardinality."""

    @pytest.fixture(autouse=True)
    def setup(self, registry):
        self.registry = registry
        self.sd = StructureDefinition.from_json(registry.fish_for_fhir("Observation"))
        self.sd.derivation = "constraint"
        self.component = self.sd.find_element("Observation.component")

    def test_narrowing(self):
        """Test narrowing then failing to widen again."""
        subject = self.sd.find_element("Observation.subject")
        subject.constrain_cardinality(1, "1")
        assert (subject.min, subject.max) == (1, "1")

        with pytest.raises(WideningCardinalityError):
            subject.constrain_cardinality(0, "1")
        assert (subject.min, subject.max) == (1, "1")

    def test_widening_max(self):
        """Test that an unbounded max cannot follow a bounded one."""
        self.component.constrain_cardinality(0, "5")
        with pytest.raises(WideningCardinalityError):
            self.component.constrain_cardinality(0, "*")
        assert self.component.max == "5"

    def test_min_greater_than_max(self):
        """Test that min may not exceed max."""
        with pytest.raises(InvalidCardinalityError):
            self.component.constrain_cardinality(3, "2")
        assert (self.component.min, self.component.max) == (0, "*")

    def test_keep_current_min(self):
        """Test that a missing min keeps the current value."""
        self.component.constrain_cardinality(None, "1")
        assert (self.component.min, self.component.max) == (0, "1")

    def test_slice_mins_raise_sliced_min(self):
        """Test that required slices raise the min of their sliced element."""
        self.component.slice_it("pattern", "code")
        systolic = self.component.add_slice("Systolic")
        diastolic = self.component.add_slice("Diastolic")

        systolic.constrain_cardinality(1, "1")
        assert self.component.min == 1
        diastolic.constrain_cardinality(1, "1")
        assert self.component.min == 2

    def test_sum_of_slice_mins(self):
        """Test that slice minimums may not add up past the sliced max."""
        self.component.slice_it("pattern", "code")
        self.component.constrain_cardinality(0, "2")
        first = self.component.add_slice("A")
        second = self.component.add_slice("B")

        first.constrain_cardinality(2, "")
        assert self.component.min == 2
        with pytest.raises(InvalidSumOfSliceMinsError):
            second.constrain_cardinality(1, "")
        assert second.min == 0

    def test_over_max_slices_are_reduced(self, caplog):
        """Test that slices wider than a new max are cut down to it."""
        self.component.slice_it("pattern", "code")
        first = self.component.add_slice("A")
        assert first.max == "*"

        self.component.constrain_cardinality(0, "2")

        assert first.max == "2"
        assert "has been reduced to match the max" in caplog.text

    def test_narrowing_root_blocked_by_slice_element(self):
        """Test that a base element cannot require what a slice prohibits."""
        self.component.slice_it("pattern", "code")
        self.component.add_slice("SystolicBP")
        slice_value = self.sd.find_element_by_path("component[SystolicBP].value[x]", self.registry)
        slice_value.constrain_cardinality(0, "0")

        with pytest.raises(NarrowingRootCardinalityError):
            self.sd.find_element("Observation.component.value[x]").constrain_cardinality(1, "1")


class TestChoiceAndSlicePaths:
    """Test choice and slice handling reached through paths."""

    @pytest.fixture(autouse=True)
    def setup(self, registry):
        self.registry = registry
        self.sd = StructureDefinition.from_json(registry.fish_for_fhir("Observation"))
        self.sd.derivation = "constraint"

    def test_type_specific_choice_name_creates_slice(self):
        """Test that valueQuantity slices value[x] by type."""
        value = self.sd.find_element("Observation.value[x]")
        quantity = self.sd.find_element_by_path("valueQuantity", self.registry)

        assert quantity.id == "Observation.value[x]:valueQuantity"
        assert [t.code for t in quantity.type] == ["Quantity"]
        assert (quantity.min, quantity.max) == (0, "1")
        assert len(value.type) == 4
        assert value.slicing == {"discriminator": [{"type": "type", "path": "$this"}], "ordered": False, "rules": "open"}
        assert self.sd.find_element_by_path("valueQuantity", self.registry) is quantity

    def test_child_of_choice_slice(self):
        """Test resolving into a choice slice unfolds its type."""
        element = self.sd.find_element_by_path("valueQuantity.value", self.registry)
        assert element.id == "Observation.value[x]:valueQuantity.value"

    def test_single_type_choice_resolves_to_itself(self):
        """Test that a choice down to one type is not sliced."""
        value = self.sd.find_element("Observation.value[x]")
        value.type = [ElementDefinitionType("Quantity")]

        assert self.sd.find_element_by_path("valueQuantity", self.registry) is value
        assert self.sd.find_element_by_path("valueString", self.registry) is None
        assert value.slicing is None

    def test_flags_reach_slice_children(self):
        """Test that must-support on a base child reaches the same child in slices."""
        component = self.sd.find_element("Observation.component")
        component.slice_it("pattern", "code")
        component.add_slice("SystolicBP")
        slice_code = self.sd.find_element_by_path("component[SystolicBP].code", self.registry)
        assert slice_code.id == "Observation.component:SystolicBP.code"

        self.sd.find_element("Observation.component.code").apply_flags(must_support=True)

        assert slice_code.must_support is True

    def test_numeric_indexes(self):
        """Test numeric brackets on arrays."""
        assert self.sd.find_element_by_path("component[0].code", self.registry).id == "Observation.component.code"
        assert self.sd.find_element_by_path("component[-1]", self.registry) is None

    def test_unknown_slice_name(self):
        """Test a bracket on an element that is not sliced."""
        assert self.sd.find_element_by_path("code[foo]", self.registry) is None

    def test_unresolved_child_keeps_unfolded_elements(self):
        """Test that a failed lookup leaves the elements it unfolded."""
        assert self.sd.find_element_by_path("status.foo", self.registry) is None
        assert self.sd.find_element("Observation.status.id") is not None

    def test_extension_by_id_or_name(self):
        """Test that an extension slice can be named by id or by name."""
        position = self.sd.find_element_by_path("extension[body-position]", self.registry)

        assert position.id == "Observation.extension:body-position"
        assert position.type[0].profile == ["http://example.org/StructureDefinition/body-position"]
        assert self.sd.find_element_by_path("extension[BodyPosition]", self.registry) is position

    def test_reference_target_bracket(self):
        """Test that a reference target in brackets names the reference element."""
        subject = self.sd.find_element("Observation.subject")
        assert self.sd.find_element_by_path("subject[Patient]", self.registry) is subject

    def test_unfold_and_subtree(self):
        """Test that unfolded children land inside their parent's subtree."""
        self.sd.find_element_by_path("code.coding", self.registry)
        code = self.sd.find_element("Observation.code")
        start, end = code.subtree_range()

        assert [e.id for e in self.sd.elements[start:end]] == [
            "Observation.code",
            "Observation.code.id",
            "Observation.code.extension",
            "Observation.code.coding",
            "Observation.code.text",
        ]

    def test_unfold_alone_leaves_no_differential(self):
        """Test that unfolded children are not differential changes."""
        self.sd.find_element_by_path("code.coding", self.registry)
        assert self.sd.to_json()["differential"]["element"] == []

    def test_differential_after_constraint(self):
        """Test that only the changed property appears in the differential."""
        self.sd.find_element("Observation.subject").constrain_cardinality(1, "1")
        differential = self.sd.to_json()["differential"]["element"]

        assert [e["id"] for e in differential] == ["Observation.subject"]
        assert differential[0]["min"] == 1
        assert "max" not in differential[0]

    def test_content_reference(self, registry):
        """Test unfolding through a content reference."""
        questionnaire = StructureDefinition.from_json(registry.fish_for_fhir("Questionnaire"))
        link_id = questionnaire.find_element_by_path("item.item.linkId", registry)

        assert link_id.id == "Questionnaire.item.item.linkId"
        nested = questionnaire.find_element("Questionnaire.item.item")
        assert nested.content_reference is None
        assert [t.code for t in nested.type] == ["BackboneElement"]

    def test_unfold_choice_element_types(self):
        """Test unfolding a choice through the ancestor its types share."""
        value = self.sd.find_element("Observation.value[x]")
        new_elements = value.unfold_choice_element_types(self.registry)

        assert [e.id for e in new_elements] == ["Observation.value[x].id", "Observation.value[x].extension"]


class TestSlicing:
    """Test slice_it and add_slice."""

    @pytest.fixture(autouse=True)
    def setup(self, registry):
        self.sd = StructureDefinition.from_json(registry.fish_for_fhir("Observation"))
        self.component = self.sd.find_element("Observation.component")

    def test_slice_defaults(self):
        """Test default slicing values."""
        slicing = self.component.slice_it("pattern", "code")
        assert slicing == {"discriminator": [{"type": "pattern", "path": "code"}], "ordered": False, "rules": "open"}

    def test_new_discriminator_is_appended(self):
        """Test that a second discriminator is added to the first."""
        self.component.slice_it("pattern", "code")
        slicing = self.component.slice_it("value", "code.coding.system")
        assert len(slicing["discriminator"]) == 2

    def test_rules_cannot_open_up(self):
        """Test that closed slicing cannot become open."""
        self.component.slice_it("pattern", "code", rules="closed")
        with pytest.raises(SlicingDefinitionError) as exc_info:
            self.component.slice_it("pattern", "code", rules="open")
        assert exc_info.value.property == "rules"

    def test_ordered_cannot_be_unset(self):
        """Test that ordered slicing stays ordered."""
        self.component.slice_it("pattern", "code", ordered=True)
        with pytest.raises(SlicingDefinitionError):
            self.component.slice_it("pattern", "code", ordered=False)

    def test_add_slice(self):
        """Test that a new slice sits after the sliced element's subtree."""
        self.component.slice_it("pattern", "code")
        systolic = self.component.add_slice("SystolicBP")
        ids = [e.id for e in self.sd.elements]

        assert systolic.slice_name == "SystolicBP"
        assert (systolic.min, systolic.max) == (0, "*")
        assert ids.index("Observation.component:SystolicBP") == ids.index("Observation.component.value[x]") + 1
        assert self.component.get_slices() == [systolic]
        assert systolic.sliced_element() is self.component

    def test_new_slice_cardinality_is_in_differential(self):
        """Test that a new slice always shows its name and cardinality."""
        self.component.slice_it("pattern", "code")
        self.component.add_slice("SystolicBP")
        differential = {e["id"]: e for e in self.sd.to_json()["differential"]["element"]}
        slice_diff = differential["Observation.component:SystolicBP"]

        assert slice_diff["sliceName"] == "SystolicBP"
        assert slice_diff["min"] == 0
        assert slice_diff["max"] == "*"

    def test_reslice(self):
        """Test slicing a slice."""
        self.component.slice_it("pattern", "code")
        lab = self.component.add_slice("A")
        reslice = lab.add_slice("B")

        assert reslice.id == "Observation.component:A/B"
        assert reslice.slice_name == "A/B"
        assert reslice.find_parent_slice() is lab
        assert lab.get_slices() == [reslice]

    def test_duplicate_slice(self):
        """Test that slice names are unique."""
        self.component.slice_it("pattern", "code")
        self.component.add_slice("A")
        with pytest.raises(DuplicateSliceError):
            self.component.add_slice("A")

    def test_slice_without_slicing(self):
        """Test that slicing must be defined first."""
        with pytest.raises(SlicingNotDefinedError) as exc_info:
            self.component.add_slice("SystolicBP")
        assert exc_info.value.message == "Cannot create SystolicBP slice. No slicing found for Observation.component."


class TestAssignment:
    """Test assign_value."""

    @pytest.fixture(autouse=True)
    def setup(self, registry):
        self.registry = registry
        self.sd = StructureDefinition.from_json(registry.fish_for_fhir("Observation"))
        self.status = self.sd.find_element("Observation.status")
        self.value = self.sd.find_element("Observation.value[x]")

    def test_pattern_code(self):
        """Test assigning a code as a pattern, repeatedly."""
        self.status.assign_value(FshCode("final"))
        self.status.assign_value(FshCode("final"))
        assert self.status.props["patternCode"] == "final"

    def test_conflicting_value(self):
        """Test that a different value cannot replace an assigned one."""
        self.status.assign_value(FshCode("final"))
        with pytest.raises(ValueAlreadyAssignedError):
            self.status.assign_value(FshCode("amended"))
        assert self.status.props["patternCode"] == "final"

    def test_exactly_replaces_pattern(self):
        """Test that a fixed value replaces a matching pattern."""
        self.status.assign_value(FshCode("final"))
        self.status.assign_value(FshCode("final"), exactly=True)

        assert self.status.props["fixedCode"] == "final"
        assert "patternCode" not in self.status.props

        with pytest.raises(FixedToPatternError):
            self.status.assign_value(FshCode("final"))

    def test_choice_type_selection(self):
        """Test that the value decides the type of a choice."""
        self.value.assign_value(True)
        assert self.value.props["patternBoolean"] is True

    def test_choice_string(self):
        """Test a string assigned to a choice."""
        self.value.assign_value("abc")
        assert self.value.props["patternString"] == "abc"

    def test_choice_quantity(self):
        """Test a quantity assigned to a choice."""
        self.value.assign_value(FshQuantity(5))
        assert self.value.props["patternQuantity"] == {"value": 5}

    def test_ambiguous_choice(self):
        """Test that a code fits several types of the choice."""
        with pytest.raises(AmbiguousTypeError) as exc_info:
            self.value.assign_value(FshCode("abc"))
        assert set(exc_info.value.candidates) == {"Quantity", "CodeableConcept", "string"}

    @pytest.mark.parametrize("value", [5, FshReference("Patient/1")])
    def test_no_accepting_type(self, value):
        """Test values that no type of the choice accepts."""
        with pytest.raises(NoSingleTypeError):
            self.value.assign_value(value)

    def test_codeable_concept_containment(self):
        """Test that a value containing the current one is accepted."""
        code = self.sd.find_element("Observation.code")
        code.assign_value(FshCode("8480-6", "http://loinc.org"), fisher=self.registry)
        assert code.props["patternCodeableConcept"] == {"coding": [{"code": "8480-6", "system": "http://loinc.org"}]}

        code.assign_value(FshCode("8480-6", "http://loinc.org", "Systolic blood pressure"), fisher=self.registry)
        assert code.props["patternCodeableConcept"]["coding"][0]["display"] == "Systolic blood pressure"

    def test_reference_target(self):
        """Test that a reference must point at an allowed target type."""
        subject = self.sd.find_element("Observation.subject")
        subject.assign_value(FshReference("Patient/1", sd_type="Patient"), fisher=self.registry)
        assert subject.props["patternReference"] == {"reference": "Patient/1"}

        other = StructureDefinition.from_json(self.registry.fish_for_fhir("Observation")).find_element("Observation.subject")
        with pytest.raises(InvalidTypeError):
            other.assign_value(FshReference("Observation/1", sd_type="Observation"), fisher=self.registry)


class TestFlagsAndBindings:
    """Test flags, bindings, constraints and mappings."""

    @pytest.fixture(autouse=True)
    def setup(self, registry):
        self.registry = registry
        self.sd = StructureDefinition.from_json(registry.fish_for_fhir("Observation"))
        self.sd.derivation = "constraint"
        self.status = self.sd.find_element("Observation.status")

    def test_modifier_cannot_be_disabled(self):
        """Test that an enabled modifier flag stays enabled."""
        with pytest.raises(DisableFlagError):
            self.status.apply_flags(modifier=False)
        assert self.status.is_modifier is True

    def test_summary_may_be_toggled(self):
        """Test that is-summary can be turned off."""
        self.status.apply_flags(summary=False)
        assert self.status.is_summary is False

    def test_must_support_cannot_be_disabled(self):
        """Test that must-support cannot be turned off once on."""
        self.status.apply_flags(must_support=True)
        with pytest.raises(DisableFlagError):
            self.status.apply_flags(must_support=False)

    def test_standards_status(self):
        """Test that one standards status is recorded as an extension."""
        with pytest.raises(MultipleStandardsStatusError):
            self.status.apply_flags(trial_use=True, normative=True)

        self.status.apply_flags(trial_use=True)
        assert self.status.extension == [{"url": STANDARDS_STATUS_EXTENSION, "valueCode": "trial-use"}]

    def test_must_support_on_specialization(self):
        """Test that a new type cannot declare must-support."""
        self.sd.derivation = "specialization"
        with pytest.raises(InvalidMustSupportError):
            self.status.apply_flags(must_support=True)

    def test_binding_strength_cannot_weaken(self):
        """Test binding and then weakening."""
        self.status.bind_to_value_set(OBSERVATION_STATUS_VS, "required")
        assert self.status.binding == {"strength": "required", "valueSet": OBSERVATION_STATUS_VS}

        with pytest.raises(BindingStrengthError):
            self.status.bind_to_value_set(OBSERVATION_STATUS_VS, "extensible")

    def test_binding_needs_coded_type(self):
        """Test binding an element that cannot be coded."""
        with pytest.raises(CodedTypeNotFoundError):
            self.sd.find_element("Observation.subject").bind_to_value_set(OBSERVATION_STATUS_VS, "required")

    def test_binding_needs_uri(self):
        """Test binding to something that is not a URI."""
        with pytest.raises(InvalidUriError):
            self.status.bind_to_value_set("not a uri", "required")

    def test_apply_constraint(self):
        """Test adding an invariant."""
        invariant = Invariant("obs-1", "Must have a status", "status.exists()", severity=FshCode("error"))
        index = self.status.apply_constraint(invariant, "http://example.org/StructureDefinition/MyObs")

        assert index == 0
        assert self.status.constraint == [
            {
                "key": "obs-1",
                "severity": "error",
                "human": "Must have a status",
                "expression": "status.exists()",
                "source": "http://example.org/StructureDefinition/MyObs",
            }
        ]

    def test_apply_mapping(self):
        """Test adding a mapping and its validation."""
        self.status.apply_mapping("v2", "OBX-11", "Result status")
        assert self.status.mapping == [{"identity": "v2", "map": "OBX-11", "comment": "Result status"}]

        with pytest.raises(InvalidFHIRIdError):
            self.status.apply_mapping("bad id", "OBX-11")
        with pytest.raises(InvalidMappingError):
            self.status.apply_mapping(None, "OBX-11")

    def test_caret_on_element(self):
        """Test setting an ElementDefinition property by path."""
        self.status.set_instance_property_by_path("short", "Status of the result", self.registry)
        assert self.status.short == "Status of the result"


class TestConstrainType:
    """Test constrain_type."""

    @pytest.fixture(autouse=True)
    def setup(self, registry):
        self.registry = registry
        self.sd = StructureDefinition.from_json(registry.fish_for_fhir("Observation"))
        self.value = self.sd.find_element("Observation.value[x]")

    def _only(self, path, *types, is_reference=False):
        return OnlyRule(path=path, types=[OnlyRuleType(type=t, is_reference=is_reference) for t in types])

    def test_only_one_type(self):
        """Test restricting a choice to one of its types."""
        self.value.constrain_type(self._only("value[x]", "Quantity"), self.registry)
        assert [t.code for t in self.value.type] == ["Quantity"]

    def test_only_profile_of_type(self):
        """Test that a profile of an allowed type becomes a profiled type."""
        self.value.constrain_type(self._only("value[x]", "Age"), self.registry)

        assert [t.code for t in self.value.type] == ["Quantity"]
        assert self.value.type[0].profile == [f"{CORE}/Age"]

    def test_type_not_allowed(self):
        """Test a type the element does not allow."""
        with pytest.raises(InvalidTypeError):
            self.value.constrain_type(self._only("value[x]", "Patient"), self.registry)

    def test_unknown_type(self):
        """Test a type that cannot be found."""
        with pytest.raises(TypeNotFoundError):
            self.value.constrain_type(self._only("value[x]", "Nope"), self.registry)

    def test_reference_target_not_allowed(self):
        """Test a reference target outside the allowed targets."""
        subject = self.sd.find_element("Observation.subject")
        with pytest.raises(InvalidTypeError):
            subject.constrain_type(self._only("subject", "Observation", is_reference=True), self.registry)


class TestElementDefinitionType:
    """Test ElementDefinitionType."""

    def test_fhir_type_extension_overrides_code(self):
        """Test that the fhir-type extension names the type."""
        edt = ElementDefinitionType.from_json(
            {
                "code": "http://hl7.org/fhirpath/System.String",
                "extension": [
                    {"url": "http://hl7.org/fhir/StructureDefinition/structuredefinition-fhir-type", "valueUrl": "id"}
                ],
            }
        )
        assert edt.code == "id"
        assert edt.actual_code == "http://hl7.org/fhirpath/System.String"

    def test_round_trip_keeps_profiles(self):
        """Test that profiles and target profiles survive serialization."""
        edt = ElementDefinitionType("Reference").with_target_profiles(f"{CORE}/Patient")
        data = edt.to_json()

        assert data == {"code": "Reference", "targetProfile": [f"{CORE}/Patient"]}
        assert ElementDefinitionType.from_json(data) == edt


def test_subtree_range():
    """Test the subtree of an id, including slices."""
    ids = ["A", "A.b", "A.b.c", "A.b:s", "A.b:s.c", "A.d"]
    assert subtree_range(ids, 1) == (1, 5)
    assert subtree_range(ids, 5) == (5, 6)


@pytest.mark.parametrize(
    "obj,source,expected",
    [
        ({"a": 1, "b": 2}, {"a": 1}, True),
        ({"a": 1}, {"a": 1, "b": 2}, False),
        ({"coding": [{"code": "x", "system": "s"}]}, {"coding": [{"code": "x"}]}, True),
        ({"coding": [{"code": "y"}]}, {"coding": [{"code": "x"}]}, False),
        ("final", "final", True),
    ],
)
def test_is_match(obj, source, expected):
    """Test partial deep matching."""
    assert is_match(obj, source) is expected


@pytest.mark.parametrize("value,expected", [("*", True), ("2", True), ("1", False), ("0", False), (None, False)])
def test_max_exceeds_one(value, expected):
    """Test detection of array maximums."""
    assert max_exceeds_one(value) is expected


class TestAddElementOrdering:
    """Test element insertion next to siblings whose names share a prefix."""

    @pytest.fixture(autouse=True)
    def setup(self, registry):
        self.registry = registry

        def ed(element_id, max_="1", types=None):
            data = {"id": element_id, "path": element_id, "min": 0, "max": max_}
            if types:
                data["type"] = [{"code": t} for t in types]
            return data

        self.sd = StructureDefinition.from_json(
            {
                "resourceType": "StructureDefinition",
                "id": "Thing",
                "url": "http://example.org/StructureDefinition/Thing",
                "name": "Thing",
                "kind": "resource",
                "type": "Thing",
                "derivation": "specialization",
                "snapshot": {
                    "element": [
                        ed("Thing", "*"),
                        ed("Thing.count", types=["Quantity"]),
                        ed("Thing.countMax", types=["decimal"]),
                        ed("Thing.other", types=["string"]),
                    ]
                },
            }
        )

    def test_unfolded_children_follow_their_parent(self):
        """Test that unfolding count puts its children before countMax."""
        assert self.sd.find_element_by_path("count.value", self.registry).id == "Thing.count.value"

        ids = [e.id for e in self.sd.elements]
        count_max = ids.index("Thing.countMax")
        assert all(i.startswith("Thing.count.") for i in ids[2:count_max])
        assert "Thing.count.value" in ids[2:count_max]
        assert ids[count_max:] == ["Thing.countMax", "Thing.other"]
        assert self.sd.find_element("Thing.count").subtree_range() == (1, count_max)

    def test_child_of_prefixed_sibling(self):
        """Test that a child of countMax lands under countMax, not count."""
        self.sd.add_element(self.sd.find_element("Thing.countMax").new_child_element("id"))
        ids = [e.id for e in self.sd.elements]

        assert ids == ["Thing", "Thing.count", "Thing.countMax", "Thing.countMax.id", "Thing.other"]
