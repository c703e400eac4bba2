"""Lexical rules for FHIR primitive types.

``string_matches_type`` answers whether a string literal may be assigned to an
element of a given primitive type; ``number_matches_type`` does the same for
numeric literals. Both are pure functions used by the value validator.
"""

from __future__ import annotations

import re
from typing import Union

_YEAR = r"([0-9]([0-9]([0-9][1-9]|[1-9]0)|[1-9]00)|[1-9]000)"
_TZ = r"(Z|(\+|-)((0[0-9]|1[0-3]):[0-5][0-9]|14:00))"
_TIME = r"([01][0-9]|2[0-3]):[0-5][0-9]:([0-5][0-9]|60)(\.[0-9]+)?"

INSTANT_RE = re.compile(rf"^{_YEAR}-(0[1-9]|1[0-2])-(0[1-9]|[1-2][0-9]|3[0-1])T{_TIME}{_TZ}$")
DATE_RE = re.compile(rf"^{_YEAR}(-(0[1-9]|1[0-2])(-(0[1-9]|[1-2][0-9]|3[0-1]))?)?$")
DATE_TIME_RE = re.compile(
    rf"^{_YEAR}(-(0[1-9]|1[0-2])(-(0[1-9]|[1-2][0-9]|3[0-1])(T{_TIME}{_TZ})?)?)?$"
)
TIME_RE = re.compile(rf"^{_TIME}$")
OID_RE = re.compile(r"^urn:oid:[0-2](\.(0|[1-9][0-9]*))+$")
ID_RE = re.compile(r"^[A-Za-z0-9\-\.]{1,64}$")
NO_WHITESPACE_RE = re.compile(r"^\S*$")
INTEGER64_RE = re.compile(r"^[-]?\d+$")
_BASE64_PART = re.compile(r"\s*([0-9a-zA-Z\+/=]){4}\s*")
_URI_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:[^\s]*$")

# Element types that can carry a value set binding.
BINDABLE_TYPES = ("code", "Coding", "CodeableConcept", "CodeableReference", "Quantity", "string", "uri")

# Order of binding strengths, weakest first.
BINDING_STRENGTHS = ("example", "preferred", "extensible", "required")


def is_valid_base64(value: str) -> bool:
    pos = 0
    while pos < len(value):
        match = _BASE64_PART.match(value, pos)
        if match is None or match.end() == pos:
            return False
        pos = match.end()
    return True


def is_uri(value: str) -> bool:
    """Return True for absolute URIs (``scheme:rest``) without whitespace."""
    return bool(value) and _URI_RE.match(value) is not None


def is_valid_id(value: str) -> bool:
    return ID_RE.match(value) is not None


def is_primitive_code(code: str) -> bool:
    """Primitive type codes, and only those, start with a lower case letter."""
    return bool(code) and code[0] == code[0].lower()


def string_matches_type(value: str, type_code: str) -> bool:
    if type_code in ("string", "uuid"):
        return True
    if type_code in ("uri", "url", "canonical"):
        return NO_WHITESPACE_RE.match(value) is not None
    if type_code == "base64Binary":
        return is_valid_base64(value) or value.startswith("ig-loader-")
    if type_code == "instant":
        return INSTANT_RE.match(value) is not None
    if type_code == "date":
        return DATE_RE.match(value) is not None
    if type_code == "dateTime":
        return DATE_TIME_RE.match(value) is not None
    if type_code == "time":
        return TIME_RE.match(value) is not None
    if type_code == "oid":
        return OID_RE.match(value) is not None
    if type_code == "id":
        return ID_RE.match(value) is not None
    if type_code == "markdown":
        return True
    if type_code == "integer64":
        return INTEGER64_RE.match(value) is not None
    return False


def number_matches_type(value: Union[int, float], type_code: str) -> bool:
    is_integer = isinstance(value, int) or (isinstance(value, float) and value.is_integer())
    if type_code == "decimal":
        return True
    if type_code == "integer":
        return is_integer
    if type_code == "unsignedInt":
        return is_integer and value >= 0
    if type_code == "positiveInt":
        return is_integer and value > 0
    return False
