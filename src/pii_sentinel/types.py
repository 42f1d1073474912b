"""Core types."""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class EntityType(str, Enum):
    """Entity types produced by the built-in engines.

    Engines may emit extension types (custom patterns, Presidio types
    with no mapping); those travel as plain strings.
    """
    SSN = "SSN"
    CREDIT_CARD = "CREDIT_CARD"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    IP_ADDRESS = "IP_ADDRESS"
    PERSON = "PERSON"
    ORGANIZATION = "ORGANIZATION"
    LOCATION = "LOCATION"
    MEDICAL_RECORD_NUMBER = "MEDICAL_RECORD_NUMBER"
    CASE_NUMBER = "CASE_NUMBER"
    DATE = "DATE"


class SourceEngine(str, Enum):
    PATTERN = "Pattern"
    LOCAL_NER = "LocalNER"
    EXTERNAL_NER = "ExternalNER"
    MULTI_ENGINE = "MultiEngine"   # corroborated by two or more engines


@dataclass(frozen=True, slots=True)
class PIIEntity:
    """A single detected PII span.  ``start``/``end`` are half-open."""
    entity_type: str       # an EntityType value or an engine extension type
    text: str
    start: int
    end: int
    confidence: float      # 0.0–1.0
    source_engine: str     # a SourceEngine value
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def length(self) -> int:
        return self.end - self.start

    def with_confidence(self, confidence: float) -> PIIEntity:
        return replace(
            self,
            confidence=min(1.0, max(0.0, confidence)),
            metadata=dict(self.metadata),
        )

    def shifted(self, offset: int) -> PIIEntity:
        return replace(
            self,
            start=self.start + offset,
            end=self.end + offset,
            metadata=dict(self.metadata),
        )


@dataclass(slots=True)
class LayerDiagnostics:
    """Per-layer observability data for one call."""
    layer: str
    latency_ms: float = 0.0
    candidate_count: int = 0
    error: str | None = None


@dataclass(slots=True)
class DetectionResult:
    """Result of one orchestrated detection call."""
    entities: list[PIIEntity] = field(default_factory=list)
    diagnostics: dict[str, LayerDiagnostics] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LayerStatus:
    pattern: bool
    local_ner: bool
    external: bool

    def as_dict(self) -> dict[str, bool]:
        return {"pattern": self.pattern, "local_ner": self.local_ner, "external": self.external}


@dataclass(slots=True)
class AnonymizedText:
    """Result of anonymizing a piece of text."""
    text: str                     # input with placeholders substituted
    mapping: dict[str, str]       # placeholder → original value
    entities: list[PIIEntity] = field(default_factory=list)
