"""FSH Structure Definition Engine
================================

Resolution and constraint engine for FHIR StructureDefinitions authored in
FHIR Shorthand (FSH). Parsing FSH text is left to a separate front end; this
package consumes already parsed rules.

Key capabilities
----------------
- Index FHIR definitions from installed packages and look them up by id, name
  or url (:class:`~fsh_structdef.registry.DefinitionRegistry`).
- Element trees with snapshot/differential bookkeeping, slicing and choice
  handling (:class:`~fsh_structdef.element.ElementDefinition`).
- Path resolution that unfolds types and adds slices on demand
  (:meth:`~fsh_structdef.structure_definition.StructureDefinition.find_element_by_path`).
- Narrowing-only cardinality, flags, bindings, type constraints and
  ``fixed[x]``/``pattern[x]`` assignment.
- An exporter that applies authored rules and reports failures as diagnostics.

Design principles
-----------------
1. **Narrowing only** - Constraints may tighten an inherited definition, never
   widen it. Every operation checks before it mutates.
2. **Explicit dependencies** - Registries, configuration and the diagnostics
   sink are passed in; there are no module-level registries.
3. **Report and continue** - One bad rule yields one diagnostic; the rest of
   the definition and the batch are still exported.

Minimal quick start
-------------------
>>> from fsh_structdef import DefinitionRegistry, StructureDefinitionExporter, AuthoredDefinition, CardRule
>>> registry = DefinitionRegistry()
>>> registry.add_all(core_definitions)
>>> exporter = StructureDefinitionExporter(registry)
>>> result = exporter.export_structure_definition(
...     AuthoredDefinition(kind="profile", name="MyObservation", parent="Observation"),
...     [CardRule(path="subject", min=1)],
... )
>>> to_serializable(result.structure_definition)["differential"]

Public surface
--------------
Only a curated subset is exported at the package level; other modules can be
imported explicitly.
"""

__version__ = "0.1.0"

from .config import ExporterConfig
from .diagnostics import Diagnostic, DiagnosticCollector
from .element import ElementDefinition, ElementDefinitionType
from .errors import FshStructDefError
from .exporter import AuthoredDefinition, ExportResult, StructureDefinitionExporter, to_serializable
from .models import FshCanonical, FshCode, FshQuantity, FshRatio, FshReference, InstanceDefinition, Invariant, SourceInfo
from .registry import ChainedFisher, DefinitionKind, DefinitionRegistry
from .rules import (
    AddElementRule,
    AssignmentRule,
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
    OnlyRuleType,
    ParamRuleSet,
    RuleSet,
    parse_rule,
)
from .structure_definition import StructureDefinition

__all__ = [
    "AddElementRule",
    "AssignmentRule",
    "AuthoredDefinition",
    "BindingRule",
    "CardRule",
    "CaretValueRule",
    "ChainedFisher",
    "ContainsItem",
    "ContainsRule",
    "DefinitionKind",
    "DefinitionRegistry",
    "Diagnostic",
    "DiagnosticCollector",
    "ElementDefinition",
    "ElementDefinitionType",
    "ExportResult",
    "ExporterConfig",
    "FlagRule",
    "FshCanonical",
    "FshCode",
    "FshQuantity",
    "FshRatio",
    "FshReference",
    "FshStructDefError",
    "InsertRule",
    "InstanceDefinition",
    "Invariant",
    "MappingRule",
    "ObeysRule",
    "OnlyRule",
    "OnlyRuleType",
    "ParamRuleSet",
    "RuleSet",
    "SourceInfo",
    "StructureDefinition",
    "StructureDefinitionExporter",
    "parse_rule",
    "to_serializable",
]
