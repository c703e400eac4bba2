"""Exception hierarchy for structure definition resolution and constraint application.

Every failure raised by the engine derives from :class:`FshStructDefError`. Five
category bases group the concrete errors by recovery policy:

* :class:`ResolutionError` - a path, slice, type or definition could not be found.
* :class:`TypeMismatchError` - a value or type does not fit the element's declared types.
* :class:`ConflictError` - a value, flag or binding is already set to something incompatible.
* :class:`NarrowingError` - a cardinality or slicing rule would widen a prior constraint.
* :class:`DefinitionInvariantError` - the definition itself is unusable; fatal for its export.

The first four are user-correctable: the exporter reports them against the
offending rule and moves on. The last abandons the current definition.

Example:
        from fsh_structdef.errors import NarrowingError, WideningCardinalityError

        try:
            element.constrain_cardinality(0, "*")
        except NarrowingError as exc:
            print(exc)  # Cardinality constraints cannot widen the cardinality. ...
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional


class FshStructDefError(Exception):
    """Base class for all engine errors.

    Attributes:
        source_info: Optional location of the rule or definition that triggered the error.
        fhir_references: Links to the relevant FHIR documentation.
    """

    fhir_references: List[str] = []

    def __init__(self, message: str, source_info: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.source_info = source_info

    def with_source(self, source_info: Any) -> "FshStructDefError":
        """Attach a source location when one has not already been recorded."""
        if self.source_info is None:
            self.source_info = source_info
        return self


class ResolutionError(FshStructDefError):
    """A path, slice, type or definition does not resolve."""


class TypeMismatchError(FshStructDefError):
    """A candidate value or type does not match the element's declared types."""


class ConflictError(FshStructDefError):
    """A value, flag or binding is already fixed to something incompatible."""


class NarrowingError(FshStructDefError):
    """A cardinality or slicing constraint would loosen an earlier constraint."""


class DefinitionInvariantError(FshStructDefError):
    """A definition cannot be processed at all."""


# Resolution -----------------------------------------------------------------


class CannotResolvePathError(ResolutionError):
    def __init__(self, path: str):
        super().__init__(f"Cannot resolve path {path} to an element")
        self.path = path


class TypeNotFoundError(ResolutionError):
    def __init__(self, unfound_type: str):
        super().__init__(f'No definition for the type "{unfound_type}" could be found.')
        self.unfound_type = unfound_type


class SlicingNotDefinedError(ResolutionError):
    fhir_references = ["http://hl7.org/fhir/R4/profiling.html#slicing"]

    def __init__(self, element_id: str, slice_name: str):
        super().__init__(f"Cannot create {slice_name} slice. No slicing found for {element_id}.")
        self.element_id = element_id
        self.slice_name = slice_name


class InvalidCanonicalUrlError(ResolutionError):
    def __init__(self, entity_name: str):
        super().__init__(
            f"Cannot use canonical URL of {entity_name} because it does not exist. "
            f"Be sure that {entity_name} exists and it has a URL."
        )
        self.entity_name = entity_name


class InvalidExtensionSliceError(ResolutionError):
    fhir_references = ["http://hl7.org/fhir/R4/profiling.html#slicing"]

    def __init__(self, slice_name: str):
        super().__init__(
            f"The slice {slice_name} on extension must reference an existing extension, "
            "or fix a url if the extension is defined inline."
        )
        self.slice_name = slice_name


class InvalidElementAccessError(ResolutionError):
    def __init__(self, path: str):
        super().__init__(
            f"Cannot directly access differential or snapshot with path: {path}. "
            "Elements should be targeted for modification by their path."
        )
        self.path = path


class ValidationError(ResolutionError):
    """Raised when a value cannot be placed at a caret path of a definition."""

    def __init__(self, issue: str, fsh_path: str):
        super().__init__(f"{fsh_path}: {issue}")
        self.issue = issue
        self.fsh_path = fsh_path


class InvalidChoiceTypeRulePathError(ResolutionError):
    fhir_references = ["http://hl7.org/fhir/R4/formats.html#choice"]

    def __init__(self, path: str, rule_name: str):
        super().__init__(
            f"As a FHIR choice data type, the specified {path} for {rule_name} must end with '[x]'."
        )
        self.path = path


# Type mismatch ---------------------------------------------------------------


def allowed_types_to_string(allowed_types: Iterable[Any]) -> str:
    """Render element types as ``A or B`` / ``Reference(X | Y)`` choices."""
    rendered = []
    for t in allowed_types:
        code = getattr(t, "code", t)
        targets = getattr(t, "target_profile", None) or []
        profiles = getattr(t, "profile", None) or []
        if targets:
            rendered.append(f"{code}({' | '.join(targets)})")
        elif profiles:
            rendered.append(" or ".join(profiles))
        else:
            rendered.append(str(code))
    if len(rendered) <= 1:
        return "".join(rendered)
    return f"{', '.join(rendered[:-1])} or {rendered[-1]}"


class InvalidTypeError(TypeMismatchError):
    fhir_references = ["http://hl7.org/fhir/R4/elementdefinition-definitions.html#ElementDefinition.type"]

    def __init__(self, invalid_type: str, allowed_types: Iterable[Any]):
        allowed = list(allowed_types)
        super().__init__(
            f'The type "{invalid_type}" does not match any of the allowed types: '
            f"{allowed_types_to_string(allowed)}"
        )
        self.invalid_type = invalid_type
        self.allowed_types = allowed


class MismatchedTypeError(TypeMismatchError):
    def __init__(self, value_type: str, value: Any, element_type: str):
        super().__init__(
            f"Cannot fix {value_type} value: {value}. Value does not match element type: {element_type}"
        )
        self.value_type = value_type
        self.value = value
        self.element_type = element_type


class NoSingleTypeError(TypeMismatchError):
    def __init__(self, type_name: str):
        super().__init__(
            f"Cannot assign {type_name} value on this element since this element does not have a single type"
        )
        self.type_name = type_name


class AmbiguousTypeError(TypeMismatchError):
    """Several declared types accept the value and no type-specific path picked one."""

    def __init__(self, value_type: str, candidates: Iterable[str]):
        names = list(candidates)
        super().__init__(
            f"Cannot assign {value_type} value; it is compatible with more than one type: "
            f"{', '.join(names)}. Use a type-specific path to choose one."
        )
        self.candidates = names


class NonAbstractParentOfSpecializationError(TypeMismatchError):
    def __init__(self, invalid_type: str, non_abstract_parent: str):
        super().__init__(
            f"The type {non_abstract_parent} is not abstract, so it cannot be constrained "
            f"to the specialization {invalid_type}."
        )


class CodedTypeNotFoundError(TypeMismatchError):
    def __init__(self, found_types: Iterable[str]):
        super().__init__(
            f"Cannot bind value set to {','.join(found_types)}; must be coded "
            "(code, Coding, CodeableConcept, Quantity), or the data types (string, uri)."
        )


class MismatchedBindingTypeError(TypeMismatchError):
    def __init__(self, identifier: str, path: str, corrected_type: str):
        verb = "assign" if corrected_type == "CodeSystem" else "bind"
        super().__init__(f"Cannot {verb} {identifier} at path {path}. A {corrected_type} must be used.")


class AssignmentToCodeableReferenceError(TypeMismatchError):
    fhir_references = ["https://build.fhir.org/references.html#CodeableReference"]

    def __init__(self, value_type: str, value: Any, child_path: str):
        super().__init__(
            f"Cannot assign {value_type} value: {value} to CodeableReference. "
            f"Assign to CodeableReference.{child_path} instead"
        )


class InvalidUriError(TypeMismatchError):
    def __init__(self, not_uri: str):
        super().__init__(f'Resolved value "{not_uri}" is not a valid URI.')


class InvalidFHIRIdError(TypeMismatchError):
    fhir_references = ["https://www.hl7.org/fhir/datatypes.html#id"]

    def __init__(self, bad_id: str):
        super().__init__(
            f'The string "{bad_id}" does not represent a valid FHIR id. FHIR ids may contain any '
            "combination of upper- or lower-case ASCII letters ('A'..'Z', and 'a'..'z'), numerals "
            "('0'..'9'), '-' and '.', with a length limit of 64 characters."
        )


class InvalidMappingError(TypeMismatchError):
    def __init__(self):
        super().__init__("Invalid mapping, mapping.identity and mapping.map are 1..1 and must be set.")


class InvalidUnitsError(TypeMismatchError):
    def __init__(self, element_id: str):
        super().__init__(f'Invalid use of "units" keyword on non-Quantity element: {element_id}')


class InvalidResourceTypeError(TypeMismatchError):
    def __init__(self, resource_type: str, element_type: str):
        super().__init__(
            f"A resourceType of {resource_type} cannot be set on an element of type {element_type}."
        )


class FixingNonResourceError(TypeMismatchError):
    def __init__(self, resource_type: str, instance_id: str):
        super().__init__(
            f"Instance {instance_id} of type {resource_type} is not an Instance of a Resource. "
            "Only Instances of Resources may be assigned to other Instances."
        )


# Conflicts -------------------------------------------------------------------


class ValueAlreadyAssignedError(ConflictError):
    def __init__(self, requested_value: Any, element_type: str, found_value: Any):
        super().__init__(
            f"Cannot assign {requested_value} to this element; a different {element_type} "
            f"is already assigned: {found_value}."
        )
        self.requested_value = requested_value
        self.found_value = found_value


class FixedToPatternError(ConflictError):
    def __init__(self, fixed_property: str):
        super().__init__(
            "Cannot assign this element using a pattern; as it is already assigned in the "
            f"StructureDefinition using {fixed_property}. Since fixed[x] requires exact matches, "
            "while pattern[x] allows for variation in unspecified properties, fixed[x] cannot be "
            "replaced by pattern[x] since it would loosen the constraint."
        )


class ValueConflictsWithClosedSlicingError(ConflictError):
    def __init__(self, requested_value: Any):
        super().__init__(
            f"Cannot assign {requested_value} to this element since it conflicts with all "
            "values of the closed slicing."
        )


class BindingStrengthError(ConflictError):
    fhir_references = ["http://hl7.org/fhir/R4/terminologies.html#strength"]

    def __init__(self, found_strength: str, requested_strength: str):
        super().__init__(
            f"Cannot override {found_strength} binding with {requested_strength} binding."
        )
        self.found_strength = found_strength
        self.requested_strength = requested_strength


class DisableFlagError(ConflictError):
    def __init__(self, disabled_flags: Iterable[str]):
        flags = list(disabled_flags)
        super().__init__(f"Cannot disable these flags when they are enabled: {', '.join(flags)}")
        self.disabled_flags = flags


class InvalidMustSupportError(ConflictError):
    fhir_references = ["http://hl7.org/fhir/R4/profiling.html#mustsupport"]

    def __init__(self, struct_def: str, element: str):
        super().__init__(
            f"The MustSupport flag is not permitted on element {element} of {struct_def} "
            "(allowed only in Profiles)."
        )


class MultipleStandardsStatusError(ConflictError):
    def __init__(self, element: str):
        super().__init__(f"Cannot apply multiple standards status on {element}")


class DuplicateSliceError(ConflictError):
    def __init__(self, struct_def: str, element: str, slice_name: str):
        super().__init__(f"Slice named {slice_name} already exists on element {element} of {struct_def}")
        self.slice_name = slice_name


class ElementAlreadyDefinedError(ConflictError):
    def __init__(self, element_id: str):
        super().__init__(f"Cannot define element {element_id} because it has already been defined")


class SliceTypeRemovalError(ConflictError):
    def __init__(self, root_path: str, slice_id: str):
        super().__init__(f"Type constraint on {root_path} would eliminate all types on slice {slice_id}")


# Narrowing -------------------------------------------------------------------


class InvalidCardinalityError(NarrowingError):
    fhir_references = ["http://hl7.org/fhir/R4/elementdefinition-definitions.html#ElementDefinition.min"]

    def __init__(self, min_: int, max_: str):
        super().__init__(f"The min must be <= max, but min {min_} is > max {max_}.")
        self.min = min_
        self.max = max_


class WideningCardinalityError(NarrowingError):
    fhir_references = ["http://hl7.org/fhir/R4/profiling.html#cardinality"]

    def __init__(self, original_min: int, original_max: str, new_min: int, new_max: str):
        super().__init__(
            "Cardinality constraints cannot widen the cardinality.  "
            f"{new_min}..{new_max} is wider than {original_min}..{original_max}."
        )
        self.original_min = original_min
        self.original_max = original_max
        self.new_min = new_min
        self.new_max = new_max


class NarrowingRootCardinalityError(NarrowingError):
    fhir_references = ["http://hl7.org/fhir/R4/profiling.html#cardinality"]

    def __init__(
        self,
        root_element: str,
        existing_slice: str,
        new_min: int,
        new_max: str,
        slice_min: int,
        slice_max: str,
    ):
        super().__init__(
            f"Cardinality on {root_element} cannot be narrowed to {new_min}..{new_max} due to "
            f"existing slice {existing_slice} with cardinality {slice_min}..{slice_max}."
        )


class InvalidSumOfSliceMinsError(NarrowingError):
    fhir_references = ["http://www.hl7.org/fhir/profiling.html#slice-cardinality"]

    def __init__(self, sum_mins: int, max_: str, sliced_element_id: str):
        super().__init__(
            "The sum of mins of slices must be <= max of sliced element, but sum of mins "
            f"({sum_mins}) > max ({max_}) of {sliced_element_id}."
        )
        self.sum_mins = sum_mins
        self.max = max_
        self.sliced_element_id = sliced_element_id


class InvalidMaxOfSliceError(NarrowingError):
    fhir_references = ["http://www.hl7.org/fhir/profiling.html#slice-cardinality"]

    def __init__(self, slice_max: str, slice_name: str, sliced_element_max: str):
        super().__init__(
            f"No individual slice may have max > max of sliced element, but max of slice "
            f"{slice_name} ({slice_max}) > max of sliced element ({sliced_element_max})."
        )


class SlicingDefinitionError(NarrowingError):
    fhir_references = ["http://hl7.org/fhir/R4/profiling.html#reslicing"]

    def __init__(self, prop: str, old_value: Any, new_value: Any):
        super().__init__(f"Cannot constraint slicing property '{prop}' from {old_value} to {new_value}.")
        self.property = prop
        self.old_value = old_value
        self.new_value = new_value


class InvalidElementForSlicingError(NarrowingError):
    def __init__(self, path: str):
        super().__init__(
            f"Cannot slice element '{path}' since FHIR only allows slicing on choice elements "
            "(e.g., value[x]) or elements with max > 1"
        )


# Definition invariants -------------------------------------------------------


class MissingSnapshotError(DefinitionInvariantError):
    def __init__(self, url: str):
        super().__init__(f"Structure Definition {url} is missing a snapshot. Snapshot is required for import.")


class ParentNotDefinedError(DefinitionInvariantError):
    def __init__(self, child_name: str, parent_name: str, source_info: Optional[Any] = None):
        super().__init__(f"Parent {parent_name} not found for {child_name}", source_info)


class ParentNotProvidedError(DefinitionInvariantError):
    def __init__(self, name: str, source_info: Optional[Any] = None):
        super().__init__(f"The definition for {name} does not include a Parent", source_info)


class InvalidExtensionParentError(DefinitionInvariantError):
    def __init__(self, child_name: str, parent_name: str, source_info: Optional[Any] = None):
        super().__init__(
            f"Invalid parent {parent_name} specified for extension {child_name}. The parent of an "
            "extension must be the base Extension or another defined extension.",
            source_info,
        )


class InvalidProfileParentError(DefinitionInvariantError):
    def __init__(self, child_name: str, parent_name: str, source_info: Optional[Any] = None):
        super().__init__(
            f"Invalid parent {parent_name} specified for profile {child_name}. The parent of a "
            "profile must be a resource or another profile.",
            source_info,
        )


class InvalidLogicalParentError(DefinitionInvariantError):
    def __init__(self, child_name: str, parent_name: str, source_info: Optional[Any] = None):
        super().__init__(
            f"Invalid parent {parent_name} specified for logical model {child_name}. The parent of "
            "a logical model must be Element, Base, another logical model, a resource, or a type.",
            source_info,
        )


class InvalidResourceParentError(DefinitionInvariantError):
    def __init__(self, child_name: str, parent_name: str, source_info: Optional[Any] = None):
        super().__init__(
            f"Invalid parent {parent_name} specified for resource {child_name}. The parent of a "
            "resource must be Resource or DomainResource.",
            source_info,
        )


class ParentDeclaredAsNameError(DefinitionInvariantError):
    def __init__(self, kind: str, name: str, source_info: Optional[Any] = None):
        super().__init__(f'{kind} "{name}" cannot declare itself as a Parent.', source_info)


class PackageLoadError(DefinitionInvariantError):
    def __init__(self, full_package_name: str):
        super().__init__(f"The package {full_package_name} could not be loaded locally.")
        self.full_package_name = full_package_name


class RuleSetNotFoundError(ResolutionError):
    def __init__(self, rule_set: str):
        super().__init__(f"Unable to find definition for RuleSet {rule_set}.")
        self.rule_set = rule_set


class RuleSetRecursionError(ResolutionError):
    def __init__(self, rule_set: str):
        super().__init__(f"Cannot insert rule set {rule_set} because it inserts itself.")
        self.rule_set = rule_set


class InvalidRuleSetParametersError(ResolutionError):
    def __init__(self, rule_set: str, issue: str):
        super().__init__(f"Cannot insert rule set {rule_set}: {issue}")
        self.rule_set = rule_set


class InvalidAddElementRuleError(ResolutionError):
    def __init__(self, path: str, struct_def: str):
        super().__init__(
            f"Cannot add element {path} to {struct_def}. New elements can only be added to logical models and resources."
        )
        self.path = path
