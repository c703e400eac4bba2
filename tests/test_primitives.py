"""Tests for primitive type lexical checks."""

import pytest

from fsh_structdef.primitives import (
    is_primitive_code,
    is_uri,
    is_valid_id,
    number_matches_type,
    string_matches_type,
)


@pytest.mark.parametrize(
    "value,type_code,expected",
    [
        ("anything at all", "string", True),
        ("2024-01-15", "date", True),
        ("2024-01", "date", True),
        ("2024-13-01", "date", False),
        ("2024-01-15T10:30:00Z", "dateTime", True),
        ("2024-01-15T10:30:00", "dateTime", False),
        ("2024-01-15T10:30:00.123+05:00", "instant", True),
        ("2024-01-15", "instant", False),
        ("10:30:00", "time", True),
        ("25:00:00", "time", False),
        ("urn:oid:2.16.840.1", "oid", True),
        ("urn:oid:3.1", "oid", False),
        ("abc-123.x", "id", True),
        ("a b", "id", False),
        ("a" * 65, "id", False),
        ("http://example.org/a", "uri", True),
        ("http://example.org/a b", "uri", False),
        ("SGVsbG8=", "base64Binary", True),
        ("abc", "base64Binary", False),
        ("ig-loader-image.png", "base64Binary", True),
        ("-123", "integer64", True),
        ("12.5", "integer64", False),
        ("**bold**", "markdown", True),
        ("text", "Quantity", False),
    ],
)
def test_string_matches_type(value, type_code, expected):
    """Test string literals against primitive types."""
    assert string_matches_type(value, type_code) is expected


@pytest.mark.parametrize(
    "value,type_code,expected",
    [
        (3.14, "decimal", True),
        (2, "integer", True),
        (2.0, "integer", True),
        (1.5, "integer", False),
        (0, "unsignedInt", True),
        (-1, "unsignedInt", False),
        (0, "positiveInt", False),
        (1, "positiveInt", True),
        (1, "string", False),
    ],
)
def test_number_matches_type(value, type_code, expected):
    """Test numeric literals against primitive types."""
    assert number_matches_type(value, type_code) is expected


def test_is_uri():
    """Test absolute URI detection."""
    assert is_uri("http://example.org")
    assert is_uri("urn:uuid:53fefa32-fcbb-4ff8-8a92-55ee120877b7")
    assert not is_uri("not a uri")
    assert not is_uri("ObservationStatus")
    assert not is_uri("")


def test_is_valid_id():
    """Test FHIR id validation."""
    assert is_valid_id("my-profile.1")
    assert not is_valid_id("my_profile")


def test_is_primitive_code():
    """Test that primitive codes are told apart by their leading letter."""
    assert is_primitive_code("string")
    assert is_primitive_code("dateTime")
    assert not is_primitive_code("Quantity")
