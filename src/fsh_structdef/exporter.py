"""Structure definition exporter.

Turns authored profiles, extensions, logical models and resources into
:class:`~fsh_structdef.structure_definition.StructureDefinition` objects by
loading the parent definition from the registry, applying metadata and then
applying every rule in declared order.

Key capabilities:
* Parent resolution with the parent rules of each definition kind
* One handler per rule kind, looked up in a table that is checked against
    :data:`~fsh_structdef.rules.RULE_KINDS` when the exporter is built
* Insert rules expanded from named (optionally parameterized) rule sets
* Contains rules on extension elements resolve the named extension and
    profile the new slice with it
* Batch export where each finished definition becomes available as a parent
    of the definitions after it

Example:
        exporter = StructureDefinitionExporter(registry, ExporterConfig(canonical="http://example.org/fhir"))
        authored = AuthoredDefinition(kind="profile", name="BPProfile", parent="Observation")
        result = exporter.export_structure_definition(authored, [
            CardRule(path="component", min=2, max="*"),
            AssignmentRule(path="status", value=FshCode("final")),
        ])
        if not result.failed:
            print(to_serializable(result.structure_definition)["differential"])

Design notes:
* A rule that fails is reported as an error diagnostic carrying the rule's
    source location and skipped. Element operations check before they mutate,
    so the definition keeps the state it had before the failing rule.
* A :class:`~fsh_structdef.errors.DefinitionInvariantError` (unknown or
    invalid parent, parent without a snapshot) abandons the definition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from .config import ExporterConfig
from .diagnostics import Diagnostic, DiagnosticCollector
from .element import ElementDefinition, ElementDefinitionType, is_modifier_extension
from .errors import (
    CannotResolvePathError,
    DefinitionInvariantError,
    ElementAlreadyDefinedError,
    FshStructDefError,
    InvalidAddElementRuleError,
    InvalidExtensionParentError,
    InvalidExtensionSliceError,
    InvalidLogicalParentError,
    InvalidProfileParentError,
    InvalidResourceParentError,
    ParentDeclaredAsNameError,
    ParentNotDefinedError,
    ParentNotProvidedError,
)
from .models import SourceInfo
from .registry import ChainedFisher, DefinitionKind, DefinitionRegistry
from .rules import (
    RULE_KINDS,
    AddElementRule,
    AssignmentRule,
    BaseRule,
    BindingRule,
    CardRule,
    CaretValueRule,
    ContainsItem,
    ContainsRule,
    FlagRule,
    InsertRule,
    MappingRule,
    ObeysRule,
    OnlyRule,
    ParamRuleSet,
    Rule,
    RuleSet,
    expand_insert,
    parse_rule,
)
from .structure_definition import StructureDefinition

logger = logging.getLogger(__name__)

# Properties of a parent definition that describe the parent itself
_UNINHERITED_PROPS = (
    "meta",
    "implicitRules",
    "language",
    "text",
    "contained",
    "extension",
    "modifierExtension",
    "identifier",
    "version",
    "title",
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
)
_RESOURCE_PARENTS = ("Resource", "DomainResource")
_LOGICAL_BASE_PARENTS = ("Base", "Element")
_DEFAULT_PARENTS = {"extension": "Extension", "logical": "Base", "resource": "DomainResource"}
_EXTENSION_ELEMENTS = (".extension", ".modifierExtension")

RuleHandler = Callable[[StructureDefinition, Any], None]


class AuthoredDefinition(BaseModel):
    """A profile, extension, logical model or resource as written by an author."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal["profile", "extension", "logical", "resource"] = Field(..., description="What is being defined")
    name: str
    id: Optional[str] = Field(None, description="Defaults to the name")
    parent: Optional[str] = Field(None, description="Parent name, id or url")
    title: Optional[str] = None
    description: Optional[str] = None
    context: Optional[List[Dict[str, Any]]] = Field(None, description="Extension contexts")
    rules: List[Rule] = Field(default_factory=list)
    source_info: Optional[SourceInfo] = None

    @property
    def definition_id(self) -> str:
        return self.id or self.name


@dataclass
class ExportResult:
    """Outcome of exporting one authored definition.

    Attributes:
        structure_definition: The exported definition, or None when the export
            was abandoned.
        diagnostics: Problems reported while exporting this definition.
        failed: True when the definition was abandoned.
    """

    structure_definition: Optional[StructureDefinition]
    diagnostics: List[Diagnostic] = field(default_factory=list)
    failed: bool = False

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "error"]


def to_serializable(sd: StructureDefinition) -> Dict[str, List[Dict[str, Any]]]:
    """Return the snapshot and differential element lists of ``sd``."""
    return {
        "snapshot": [element.to_json() for element in sd.elements],
        "differential": [element.calculate_diff().to_json() for element in sd.elements if element.has_diff()],
    }


class StructureDefinitionExporter:
    """Apply authored rules to structure definitions.

    The exporter looks definitions up in its own local registry (definitions it
    exported earlier) before the registry it was given.

    Example::

        exporter = StructureDefinitionExporter(registry, rule_sets={"Common": common_rules})
        results = exporter.export_all([extension, profile])
        for result in results:
            print(result.structure_definition, len(result.errors))
    """

    def __init__(
        self,
        registry: DefinitionRegistry,
        config: Optional[ExporterConfig] = None,
        rule_sets: Optional[Dict[str, Union[RuleSet, ParamRuleSet]]] = None,
        diagnostics: Optional[DiagnosticCollector] = None,
    ):
        """Initialize the exporter.

        Args:
            registry: Definitions authored rules refer to (parents, types,
                extensions, value sets).
            config: Metadata settings; defaults to :class:`ExporterConfig`.
            rule_sets: Rule sets available to insert rules, keyed by name.
            diagnostics: Sink for reported problems; a new collector by default.

        Raises:
            NotImplementedError: A rule kind has no handler.
        """
        self.registry = registry
        self.config = config or ExporterConfig()
        self.rule_sets: Dict[str, Union[RuleSet, ParamRuleSet]] = dict(rule_sets or {})
        self.diagnostics = diagnostics or DiagnosticCollector()
        self.local = DefinitionRegistry("local")
        self.fisher = ChainedFisher(self.local, registry)
        self.structure_definitions: List[StructureDefinition] = []

        self.handlers: Dict[str, RuleHandler] = {}
        self._register_rule_handlers()
        missing = [kind for kind in RULE_KINDS if kind not in self.handlers]
        if missing:
            raise NotImplementedError(f"No handler registered for rule kind(s): {', '.join(missing)}")

    def _register_rule_handlers(self) -> None:
        self.handlers.update(
            {
                "card": self._apply_card_rule,
                "flag": self._apply_flag_rule,
                "only": self._apply_only_rule,
                "assignment": self._apply_assignment_rule,
                "caret": self._apply_caret_rule,
                "binding": self._apply_binding_rule,
                "contains": self._apply_contains_rule,
                "obeys": self._apply_obeys_rule,
                "insert": self._apply_insert_rule,
                "mapping": self._apply_mapping_rule,
                "add_element": self._apply_add_element_rule,
            }
        )

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------
    def export_structure_definition(
        self, authored: AuthoredDefinition, rules: Optional[Sequence[Any]] = None
    ) -> ExportResult:
        """Export one authored definition.

        Args:
            authored: The definition to export.
            rules: Rules to apply in order; ``authored.rules`` when None. Plain
                dicts are validated into rules by their ``kind``.

        Returns:
            ExportResult with the definition (possibly only partly constrained
            when rules failed) and the diagnostics reported for it.
        """
        mark = len(self.diagnostics.diagnostics)
        try:
            sd = self._initialize(authored)
        except DefinitionInvariantError as e:
            self.diagnostics.error(e.message, e.source_info or authored.source_info)
            return ExportResult(None, self.diagnostics.since(mark), failed=True)

        for rule in authored.rules if rules is None else rules:
            self.apply_rule(sd, parse_rule(rule))

        if authored.kind == "extension":
            self._finish_extension(sd, authored)
        logger.info(f"Exported {authored.kind} {authored.name} with {len(sd.elements)} element(s)")
        self.structure_definitions.append(sd)
        return ExportResult(sd, self.diagnostics.since(mark))

    def export_all(self, authored_definitions: Sequence[AuthoredDefinition]) -> List[ExportResult]:
        """Export definitions in order, registering each for the ones after it."""
        results = []
        for authored in authored_definitions:
            mark = len(self.diagnostics.diagnostics)
            try:
                result = self.export_structure_definition(authored)
            except Exception as e:
                logger.debug(f"Export of {authored.name} failed", exc_info=True)
                self.diagnostics.error(f"Unable to export {authored.kind} {authored.name}: {e}", authored.source_info)
                results.append(ExportResult(None, self.diagnostics.since(mark), failed=True))
                continue
            if result.structure_definition is not None:
                self.local.add(result.structure_definition.to_json())
            results.append(result)
        failed = sum(1 for r in results if r.failed)
        logger.info(f"Exported {len(results) - failed} of {len(results)} structure definition(s)")
        return results

    def apply_rule(self, sd: StructureDefinition, rule: BaseRule, active_rule_sets: Sequence[str] = ()) -> bool:
        """Apply one rule, reporting rather than raising a failure.

        Returns:
            True if the rule was applied.
        """
        try:
            if isinstance(rule, InsertRule):
                self._apply_insert_rule(sd, rule, active_rule_sets)
            else:
                self.handlers[rule.kind](sd, rule)
        except FshStructDefError as e:
            self.diagnostics.error(e.message, e.source_info or rule.source_info)
            return False
        return True

    # ------------------------------------------------------------------
    # Parent and metadata
    # ------------------------------------------------------------------
    def _initialize(self, authored: AuthoredDefinition) -> StructureDefinition:
        parent_name = authored.parent or _DEFAULT_PARENTS.get(authored.kind)
        if parent_name is None:
            raise ParentNotProvidedError(authored.name, authored.source_info)
        if parent_name in (authored.name, authored.id):
            raise ParentDeclaredAsNameError(authored.kind.capitalize(), authored.name, authored.source_info)
        parent_json = self._find_parent(authored, parent_name)
        sd = StructureDefinition.from_json(parent_json)
        self._set_metadata(sd, authored, parent_json)
        return sd

    def _find_parent(self, authored: AuthoredDefinition, parent_name: str) -> Dict[str, Any]:
        name, source_info = authored.name, authored.source_info
        if authored.kind == "extension":
            parent_json = self.fisher.fish_for_fhir(parent_name, DefinitionKind.EXTENSION, DefinitionKind.TYPE)
            if parent_json is not None and parent_json.get("type") != "Extension":
                raise InvalidExtensionParentError(name, parent_name, source_info)
        elif authored.kind == "profile":
            parent_json = self.fisher.fish_for_fhir(
                parent_name, DefinitionKind.RESOURCE, DefinitionKind.TYPE, DefinitionKind.PROFILE, DefinitionKind.LOGICAL
            )
            if parent_json is None and self.fisher.fish_for_fhir(parent_name, DefinitionKind.EXTENSION) is not None:
                raise InvalidProfileParentError(name, parent_name, source_info)
        elif authored.kind == "resource":
            parent_json = self.fisher.fish_for_fhir(parent_name, DefinitionKind.RESOURCE)
            if parent_json is not None and parent_json.get("name") not in _RESOURCE_PARENTS:
                raise InvalidResourceParentError(name, parent_name, source_info)
        else:
            parent_json = self.fisher.fish_for_fhir(
                parent_name, DefinitionKind.LOGICAL, DefinitionKind.TYPE, DefinitionKind.RESOURCE, DefinitionKind.PROFILE
            )
            if (
                parent_json is not None
                and parent_json.get("derivation") == "constraint"
                and parent_json.get("name") not in _LOGICAL_BASE_PARENTS
            ):
                raise InvalidLogicalParentError(name, parent_name, source_info)
        if parent_json is None:
            raise ParentNotDefinedError(name, parent_name, source_info)
        return parent_json

    def _set_metadata(self, sd: StructureDefinition, authored: AuthoredDefinition, parent_json: Dict[str, Any]) -> None:
        for prop in _UNINHERITED_PROPS:
            sd.props.pop(prop, None)
            sd.props.pop(f"_{prop}", None)

        sd.id = authored.definition_id
        sd.name = authored.name
        sd.url = f"{self.config.canonical}/StructureDefinition/{sd.id}"
        if authored.title:
            sd.title = authored.title
        if authored.description:
            sd.description = authored.description
        if self.config.version:
            sd.version = self.config.version
        if self.config.publisher:
            sd.publisher = self.config.publisher
        sd.status = self.config.status
        fhir_version = self.config.fhir_version or self.fisher.default_fhir_version
        if fhir_version:
            sd.fhir_version = fhir_version
        sd.base_definition = parent_json.get("url")
        sd.abstract = False

        if authored.kind in ("profile", "extension"):
            sd.derivation = "constraint"
        else:
            sd.derivation = "specialization"
            sd.kind = "logical" if authored.kind == "logical" else "resource"
            sd.type = sd.url if authored.kind == "logical" else authored.name
            self._rebase_elements(sd, parent_json)

        if authored.kind == "extension":
            sd.context = authored.context or parent_json.get("context") or [{"type": "element", "expression": "Element"}]
        else:
            sd.props.pop("context", None)
            sd.props.pop("contextInvariant", None)

    def _rebase_elements(self, sd: StructureDefinition, parent_json: Dict[str, Any]) -> None:
        """Re-root inherited elements under the new type of a specialization."""
        old_type = parent_json.get("type", "")
        old_type = old_type[old_type.rfind("/") + 1:]
        new_type = sd.path_type
        for element in sd.elements:
            element.id = f"{new_type}{element.id[len(old_type):]}"
        root = sd.elements[0]
        root.base = {"path": new_type, "min": 0, "max": "*"}
        sd.capture_original_elements()
        # the new type's root always appears in the differential
        root.clear_original()
        if sd.title:
            root.short = sd.title
        if sd.description:
            root.definition = sd.description

    def _finish_extension(self, sd: StructureDefinition, authored: AuthoredDefinition) -> None:
        """Fix the extension's url and decide between a simple and a complex extension."""
        root = sd.elements[0]
        if self.config.apply_extension_metadata_to_root:
            if sd.title:
                root.short = sd.title
            if sd.description:
                root.definition = sd.description

        url_element = sd.find_element("Extension.url")
        if url_element is not None and url_element.props.get("fixedUri") != sd.url:
            url_element.props.pop("fixedUri", None)
            self._report_failure(lambda: url_element.assign_value(sd.url, exactly=True, fisher=self.fisher), authored)

        extension_element = sd.find_element("Extension.extension")
        value_element = sd.find_element("Extension.value[x]")
        if extension_element is None or value_element is None:
            return
        if extension_element.get_slices():
            # complex extension
            if value_element.max != "0":
                self._report_failure(lambda: value_element.constrain_cardinality(0, "0"), authored)
        elif value_element.max != "0" and extension_element.max != "0":
            self._report_failure(lambda: extension_element.constrain_cardinality(0, "0"), authored)

    def _report_failure(self, action: Callable[[], None], authored: AuthoredDefinition) -> None:
        try:
            action()
        except FshStructDefError as e:
            self.diagnostics.error(e.message, e.source_info or authored.source_info)

    # ------------------------------------------------------------------
    # Rule handlers
    # ------------------------------------------------------------------
    def _element_at(self, sd: StructureDefinition, rule: BaseRule) -> ElementDefinition:
        element = sd.find_element_by_path(rule.path, self.fisher)
        if element is None:
            raise CannotResolvePathError(rule.path)
        return element

    def _apply_card_rule(self, sd: StructureDefinition, rule: CardRule) -> None:
        self._element_at(sd, rule).constrain_cardinality(rule.min, rule.max or "")

    def _apply_flag_rule(self, sd: StructureDefinition, rule: FlagRule) -> None:
        self._element_at(sd, rule).apply_flags(
            rule.must_support, rule.summary, rule.modifier, rule.trial_use, rule.normative, rule.draft
        )

    def _apply_only_rule(self, sd: StructureDefinition, rule: OnlyRule) -> None:
        element = self._element_at(sd, rule)
        target = sd.get_reference_name(rule.path, element)
        element.constrain_type(rule, self.fisher, target)

    def _apply_assignment_rule(self, sd: StructureDefinition, rule: AssignmentRule) -> None:
        self._element_at(sd, rule).assign_value(rule.value, rule.exactly, self.fisher)

    def _apply_caret_rule(self, sd: StructureDefinition, rule: CaretValueRule) -> None:
        if rule.path in ("", "."):
            sd.set_instance_property_by_path(rule.caret_path, rule.value, self.fisher)
        else:
            self._element_at(sd, rule).set_instance_property_by_path(rule.caret_path, rule.value, self.fisher)

    def _apply_binding_rule(self, sd: StructureDefinition, rule: BindingRule) -> None:
        element = self._element_at(sd, rule)
        value_set = self.fisher.fish_for_metadata(rule.value_set, DefinitionKind.VALUE_SET) if rule.value_set else None
        uri = value_set.url if value_set is not None and value_set.url else rule.value_set
        element.bind_to_value_set(uri, rule.strength, rule.source_info, self.fisher)

    def _apply_contains_rule(self, sd: StructureDefinition, rule: ContainsRule) -> None:
        element = self._element_at(sd, rule)
        is_extension = element.path.endswith(_EXTENSION_ELEMENTS)
        for item in rule.items:
            try:
                if is_extension:
                    new_slice = self._add_extension_slice(element, item)
                else:
                    new_slice = element.add_slice(item.name)
                if item.min is not None or item.max:
                    new_slice.constrain_cardinality(item.min, item.max or "")
            except FshStructDefError as e:
                self.diagnostics.error(e.message, e.source_info or rule.source_info)

    def _add_extension_slice(self, element: ElementDefinition, item: ContainsItem) -> ElementDefinition:
        extension_name = item.type or item.name
        extension_json = self.fisher.fish_for_fhir(extension_name, DefinitionKind.EXTENSION)
        if extension_json is None:
            if item.type is None and element.path.endswith(".extension") and element.structure_definition.type == "Extension":
                return self._add_inline_extension_slice(element, item.name)
            raise InvalidExtensionSliceError(item.name)
        modifier = is_modifier_extension(extension_json)
        if modifier and element.path.endswith(".extension"):
            self.diagnostics.warning(
                f"Modifier extension {extension_name} assigned to extension path. "
                "Modifier extensions should only be assigned to modifierExtension paths."
            )
        elif not modifier and element.path.endswith(".modifierExtension"):
            self.diagnostics.warning(
                f"Non-modifier extension {extension_name} assigned to modifierExtension path. "
                "Non-modifier extensions should only be assigned to extension paths."
            )
        if not element.slicing:
            element.slice_it("value", "url", False, "open")
        return element.add_slice(item.name, ElementDefinitionType("Extension").with_profiles(extension_json["url"]))

    def _add_inline_extension_slice(self, element: ElementDefinition, name: str) -> ElementDefinition:
        """Add a sub-extension of a complex extension, identified by its slice name."""
        if not element.slicing:
            element.slice_it("value", "url", False, "open")
        new_slice = element.add_slice(name, ElementDefinitionType("Extension"))
        new_slice.unfold(self.fisher)
        url_element = new_slice.structure_definition.find_element(f"{new_slice.id}.url")
        if url_element is not None:
            url_element.assign_value(name, exactly=True, fisher=self.fisher)
        return new_slice

    def _apply_obeys_rule(self, sd: StructureDefinition, rule: ObeysRule) -> None:
        self._element_at(sd, rule).apply_constraint(rule.invariant, sd.url)

    def _apply_insert_rule(self, sd: StructureDefinition, rule: InsertRule, active_rule_sets: Sequence[str] = ()) -> None:
        inserted = expand_insert(rule, self.rule_sets, active_rule_sets)
        nested_active = (*active_rule_sets, rule.rule_set)
        for inserted_rule in inserted:
            if inserted_rule.source_info is None and rule.source_info is not None:
                inserted_rule = inserted_rule.model_copy(update={"source_info": rule.source_info})
            self.apply_rule(sd, inserted_rule, nested_active)

    def _apply_mapping_rule(self, sd: StructureDefinition, rule: MappingRule) -> None:
        self._element_at(sd, rule).apply_mapping(rule.id, rule.map, rule.comment, rule.language)
        mappings = sd.props.get("mapping") or []
        if rule.id and not any(m.get("identity") == rule.id for m in mappings):
            mappings.append({"identity": rule.id})
            sd.props["mapping"] = mappings

    def _apply_add_element_rule(self, sd: StructureDefinition, rule: AddElementRule) -> None:
        if sd.derivation != "specialization":
            raise InvalidAddElementRuleError(rule.path, sd.name)
        element_id = f"{sd.path_type}.{rule.path}"
        if sd.find_element(element_id) is not None:
            raise ElementAlreadyDefinedError(element_id)
        element = ElementDefinition(element_id)
        sd.add_element(element)
        try:
            element.apply_add_element_rule(rule, self.fisher)
        except FshStructDefError:
            sd.elements.remove(element)
            raise
