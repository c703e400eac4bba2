"""Exporter configuration."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class ExporterConfig:
    """Settings applied to every exported structure definition.

    Args:
        canonical: Base URL of authored definitions. Each definition gets the
            url ``<canonical>/StructureDefinition/<id>``.
        version: Business version written to ``StructureDefinition.version``.
        fhir_version: Written to ``fhirVersion``. When None, the version of the
            core package in the registry is used.
        status: Publication status of exported definitions.
        publisher: Written to ``publisher`` when set.
        apply_extension_metadata_to_root: Copy an extension's title and
            description onto its root element's ``short`` and ``definition``.
    """

    canonical: str = "http://example.org"
    version: Optional[str] = None
    fhir_version: Optional[str] = None
    status: str = "draft"  # draft | active | retired | unknown
    publisher: Optional[str] = None
    apply_extension_metadata_to_root: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
