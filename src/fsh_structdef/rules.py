"""Rule records consumed by the exporter.

Each rule kind is a frozen pydantic model carrying a literal ``kind`` tag, so
the :data:`Rule` union is closed and discriminated: a rule arriving as a plain
dict (for example from JSON) is validated into exactly one variant by
:func:`parse_rule`.

Overview:
        * ``CardRule`` (``card``) - ``* component 1..*``
        * ``FlagRule`` (``flag``) - ``* status MS SU``
        * ``OnlyRule`` (``only``) - ``* value[x] only Quantity``
        * ``AssignmentRule`` (``assignment``) - ``* code = LNC#8480-6``
        * ``CaretValueRule`` (``caret``) - ``* ^status = #active``
        * ``BindingRule`` (``binding``) - ``* code from MyVS (required)``
        * ``ContainsRule`` (``contains``) - ``* component contains SystolicBP 0..1``
        * ``ObeysRule`` (``obeys``) - ``* obeys inv-1``
        * ``InsertRule`` (``insert``) - ``* insert MyRuleSet(a, b)``
        * ``MappingRule`` (``mapping``) - ``* -> "OBX-5"``
        * ``AddElementRule`` (``add_element``) - ``* weight 0..1 Quantity "Weight"``

Example:
        >>> rule = parse_rule({"kind": "card", "path": "component", "min": 1, "max": "*"})
        >>> rule.to_fsh()
        '* component 1..*'
        >>> OnlyRule(path="subject", types=[OnlyRuleType(type="Patient", is_reference=True)]).to_fsh()
        '* subject only Reference(Patient)'

Design notes:
* Rules are immutable. Insert expansion and path prefixing produce copies.
* Values (``AssignmentRule.value``) are the wrappers from
    :mod:`fsh_structdef.models` or plain ``bool``/``int``/``float``/``str``.
"""

from __future__ import annotations

import logging
import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import InvalidRuleSetParametersError, RuleSetNotFoundError, RuleSetRecursionError
from .models import FshCode, Invariant, SourceInfo

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


class OnlyRuleType(BaseModel):
    """One type of an ``only`` rule: ``Quantity``, ``Reference(Patient)``, ``Canonical(VS)``."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="Type, profile or resource name, or url")
    is_reference: bool = Field(False, description="Wrapped in Reference()")
    is_canonical: bool = Field(False, description="Wrapped in Canonical()")
    is_codeable_reference: bool = Field(False, description="Wrapped in CodeableReference()")

    def __str__(self) -> str:
        if self.is_reference:
            return f"Reference({self.type})"
        if self.is_canonical:
            return f"Canonical({self.type})"
        if self.is_codeable_reference:
            return f"CodeableReference({self.type})"
        return self.type


class BaseRule(BaseModel):
    """Fields shared by every rule."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    path: str = Field("", description="FSH path of the element the rule applies to")
    source_info: Optional[SourceInfo] = Field(None, description="Location of the rule in FSH source")

    def _prefix(self) -> str:
        return f"* {self.path} " if self.path else "* "


class CardRule(BaseRule):
    kind: Literal["card"] = "card"
    min: Optional[int] = Field(None, ge=0)
    max: Optional[str] = None

    def to_fsh(self) -> str:
        minimum = "" if self.min is None else str(self.min)
        return f"{self._prefix()}{minimum}..{self.max or ''}"


class FlagRule(BaseRule):
    kind: Literal["flag"] = "flag"
    must_support: Optional[bool] = None
    summary: Optional[bool] = None
    modifier: Optional[bool] = None
    trial_use: Optional[bool] = None
    normative: Optional[bool] = None
    draft: Optional[bool] = None

    def flags(self) -> List[str]:
        flags = []
        if self.must_support:
            flags.append("MS")
        if self.modifier:
            flags.append("?!")
        if self.summary:
            flags.append("SU")
        if self.draft:
            flags.append("D")
        elif self.trial_use:
            flags.append("TU")
        elif self.normative:
            flags.append("N")
        return flags

    def to_fsh(self) -> str:
        return f"{self._prefix()}{' '.join(self.flags())}"


class OnlyRule(BaseRule):
    kind: Literal["only"] = "only"
    types: List[OnlyRuleType] = Field(default_factory=list)

    def to_fsh(self) -> str:
        return f"{self._prefix()}only {' or '.join(str(t) for t in self.types)}"


class AssignmentRule(BaseRule):
    """``* path = value (exactly)``; ``exactly`` selects ``fixed[x]`` over ``pattern[x]``."""

    kind: Literal["assignment"] = "assignment"
    value: Any = None
    exactly: bool = False
    is_instance: bool = False

    def to_fsh(self) -> str:
        exactly = " (exactly)" if self.exactly else ""
        return f"{self._prefix()}= {_render_value(self.value)}{exactly}"


class CaretValueRule(BaseRule):
    """``* path ^caret_path = value``; an empty path targets the definition itself."""

    kind: Literal["caret"] = "caret"
    caret_path: str = ""
    value: Any = None
    is_instance: bool = False

    def to_fsh(self) -> str:
        return f"{self._prefix()}^{self.caret_path} = {_render_value(self.value)}"


class BindingRule(BaseRule):
    kind: Literal["binding"] = "binding"
    value_set: Optional[str] = None
    strength: Literal["example", "preferred", "extensible", "required"] = "required"

    def to_fsh(self) -> str:
        return f"{self._prefix()}from {self.value_set} ({self.strength})"


class ContainsItem(BaseModel):
    """A slice named by a ``contains`` rule, with its cardinality when given."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: Optional[str] = Field(None, description="Extension (or other definition) the slice is named after")
    min: Optional[int] = Field(None, ge=0)
    max: Optional[str] = None


class ContainsRule(BaseRule):
    kind: Literal["contains"] = "contains"
    items: List[ContainsItem] = Field(default_factory=list)

    def to_fsh(self) -> str:
        rendered = []
        for item in self.items:
            text = f"{item.type} named {item.name}" if item.type else item.name
            if item.min is not None or item.max is not None:
                text += f" {'' if item.min is None else item.min}..{item.max or ''}"
            rendered.append(text)
        return f"{self._prefix()}contains {' and '.join(rendered)}"


class ObeysRule(BaseRule):
    kind: Literal["obeys"] = "obeys"
    invariant: Invariant

    def to_fsh(self) -> str:
        return f"{self._prefix()}obeys {self.invariant.name}"


class InsertRule(BaseRule):
    kind: Literal["insert"] = "insert"
    rule_set: str
    params: List[str] = Field(default_factory=list)

    def to_fsh(self) -> str:
        if not self.params:
            return f"{self._prefix()}insert {self.rule_set}"
        escaped = [p.replace("\\", "\\\\").replace(",", "\\,").replace(")", "\\)") for p in self.params]
        return f"{self._prefix()}insert {self.rule_set}({', '.join(escaped)})"


class MappingRule(BaseRule):
    kind: Literal["mapping"] = "mapping"
    id: Optional[str] = Field(None, description="Mapping identity")
    map: Optional[str] = None
    comment: Optional[str] = None
    language: Optional[FshCode] = None

    def to_fsh(self) -> str:
        text = f'{self._prefix()}-> "{self.map}"'
        if self.comment:
            text += f' "{self.comment}"'
        if self.language is not None:
            text += f" {self.language}"
        return text


class AddElementRule(BaseRule):
    """Defines a new element of a logical model or custom resource."""

    kind: Literal["add_element"] = "add_element"
    min: int = Field(0, ge=0)
    max: str = "*"
    types: List[OnlyRuleType] = Field(default_factory=list)
    content_reference: Optional[str] = None
    must_support: Optional[bool] = None
    summary: Optional[bool] = None
    modifier: Optional[bool] = None
    trial_use: Optional[bool] = None
    normative: Optional[bool] = None
    draft: Optional[bool] = None
    short: Optional[str] = None
    definition: Optional[str] = None

    def to_fsh(self) -> str:
        target = " or ".join(str(t) for t in self.types) if self.types else f"contentReference {self.content_reference}"
        short = f' "{self.short}"' if self.short else ""
        return f"{self._prefix()}{self.min}..{self.max} {target}{short}"


Rule = Annotated[
    Union[
        CardRule,
        FlagRule,
        OnlyRule,
        AssignmentRule,
        CaretValueRule,
        BindingRule,
        ContainsRule,
        ObeysRule,
        InsertRule,
        MappingRule,
        AddElementRule,
    ],
    Field(discriminator="kind"),
]

RULE_KINDS = ("card", "flag", "only", "assignment", "caret", "binding", "contains", "obeys", "insert", "mapping", "add_element")

_rule_adapter: TypeAdapter = TypeAdapter(Rule)


def parse_rule(data: Union[Dict[str, Any], BaseRule]) -> BaseRule:
    """Validate a dict into the rule variant named by its ``kind``."""
    if isinstance(data, BaseRule):
        return data
    return _rule_adapter.validate_python(data)


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, str):
        return f'"{value}"'
    return str(value)


class RuleSet(BaseModel):
    """A named, reusable list of rules."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    rules: List[Rule] = Field(default_factory=list)
    source_info: Optional[SourceInfo] = None


class ParamRuleSet(BaseModel):
    """A rule set whose rules are templates with ``{parameter}`` placeholders.

    ``rules`` hold rule dicts; every string inside them may reference a
    parameter. Substitution happens on insert, then the dicts are validated
    into rules.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    parameters: List[str] = Field(default_factory=list)
    rules: List[Dict[str, Any]] = Field(default_factory=list)
    source_info: Optional[SourceInfo] = None

    def instantiate(self, values: Sequence[str]) -> List[BaseRule]:
        if len(values) != len(self.parameters):
            raise InvalidRuleSetParametersError(
                self.name, f"expected {len(self.parameters)} parameter(s), got {len(values)}"
            )
        substitutions = dict(zip(self.parameters, values))
        try:
            return [parse_rule(_substitute(rule, substitutions)) for rule in self.rules]
        except PydanticValidationError as e:
            raise InvalidRuleSetParametersError(self.name, str(e)) from e


def _substitute(template: Any, substitutions: Dict[str, str]) -> Any:
    if isinstance(template, str):
        return _PLACEHOLDER_RE.sub(lambda m: substitutions.get(m.group(1), m.group(0)), template)
    if isinstance(template, dict):
        return {key: _substitute(value, substitutions) for key, value in template.items()}
    if isinstance(template, list):
        return [_substitute(value, substitutions) for value in template]
    return template


def with_path_context(rule: BaseRule, context_path: str) -> BaseRule:
    """Prefix ``rule.path`` with the path an insert rule was applied at."""
    if not context_path:
        return rule
    if rule.path in ("", "."):
        return rule.model_copy(update={"path": context_path})
    return rule.model_copy(update={"path": f"{context_path}.{rule.path}"})


def expand_insert(
    rule: InsertRule,
    rule_sets: Dict[str, Union[RuleSet, ParamRuleSet]],
    active: Sequence[str] = (),
) -> List[BaseRule]:
    """Return the rules an insert rule stands for, with its path applied.

    Nested inserts are returned unexpanded; callers expand them with
    ``active`` extended by ``rule.rule_set``.

    Raises:
        RuleSetNotFoundError: No rule set has that name.
        RuleSetRecursionError: The rule set is already being inserted.
    """
    if rule.rule_set in active:
        raise RuleSetRecursionError(rule.rule_set)
    rule_set = rule_sets.get(rule.rule_set)
    if rule_set is None:
        raise RuleSetNotFoundError(rule.rule_set)
    if isinstance(rule_set, ParamRuleSet):
        inserted = rule_set.instantiate(rule.params)
    else:
        inserted = list(rule_set.rules)
    logger.debug(f"Inserting {len(inserted)} rule(s) from {rule.rule_set}")
    return [with_path_context(r, rule.path) for r in inserted]
