"""Layer 1 — deterministic patterns for structured PII.

Always on and near-zero cost.  Catches the deterministic stuff (SSNs,
card numbers, emails, phones, IPs, case and record numbers) plus
capitalisation heuristics for names and organizations.  The heuristic
rules score low on purpose: the exclusion lists and the context
enhancer correct them downstream.
"""

from __future__ import annotations
import re
import threading
from dataclasses import dataclass
from typing import Callable

from .errors import InvalidConfigError
from .types import EntityType, PIIEntity, SourceEngine

CUSTOM_PATTERN_CONFIDENCE = 0.85


def luhn_valid(number: str) -> bool:
    """Mod-10 checksum over the digits of *number* (13–19 digits)."""
    digits = [int(c) for c in number if c.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for i, d in enumerate(reversed(digits)):
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


# Capitalised pairs that are almost never people.
_NAME_FALSE_POSITIVES = frozenset({
    "United States", "New York", "Los Angeles", "San Francisco",
    "First Amendment", "Second Circuit", "Third Party", "Fourth Quarter",
    "Fifth Avenue", "Sixth Street", "Federal Court", "Supreme Court",
    "District Court", "Circuit Court",
})


def _not_false_positive_name(text: str) -> bool:
    return text not in _NAME_FALSE_POSITIVES


@dataclass(frozen=True, slots=True)
class PatternRule:
    """One compiled matcher.  ``group`` selects the reported span."""
    name: str
    entity_type: str
    regex: re.Pattern
    confidence: float
    group: int = 0
    validator: Callable[[str], bool] | None = None


_ORG_SUFFIXES = "Inc|LLC|LLP|Corp|Corporation|Company|Partners|Group|Associates|Firm|LTD|Limited"

_CATALOG: tuple[PatternRule, ...] = (
    PatternRule("ssn", EntityType.SSN.value, re.compile(
        r"\b\d{3}-\d{2}-\d{4}\b"
    ), 1.0),

    # 16-digit groups of four, or 15-digit Amex layout; Luhn decides
    PatternRule("credit_card", EntityType.CREDIT_CARD.value, re.compile(
        r"\b(?:(?:\d{4}[-\s]?){3}\d{4}|3[47]\d{2}[-\s]?\d{6}[-\s]?\d{5})\b"
    ), 1.0, validator=luhn_valid),

    PatternRule("email", EntityType.EMAIL.value, re.compile(
        r"\b[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}\b"
    ), 1.0),

    # North American numbers, optional +1 and separators
    PatternRule("phone", EntityType.PHONE.value, re.compile(
        r"(?<![\w-])(?:\+?1[-.\s]?)?(?:\(\d{3}\)|\d{3})[-.\s]?\d{3}[-.\s]?\d{4}\b"
    ), 0.95),

    PatternRule("ipv4", EntityType.IP_ADDRESS.value, re.compile(
        r"\b(?:(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.){3}"
        r"(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\b"
    ), 0.9),

    PatternRule("case_number", EntityType.CASE_NUMBER.value, re.compile(
        r"\b(?:Case\s*(?:No\.?|Number)?:?\s*)?(\d{2,4}[-\s]?[A-Z]{2,4}[-\s]?\d{3,6})\b"
    ), 0.9, group=1),

    PatternRule("medical_record", EntityType.MEDICAL_RECORD_NUMBER.value, re.compile(
        r"\b(?:MRN|Medical Record(?:\s*Number)?):?\s*([A-Z0-9]{6,12})\b"
    ), 0.9, group=1),

    PatternRule("titled_name", EntityType.PERSON.value, re.compile(
        r"\b(?:Mr\.|Mrs\.|Ms\.|Dr\.|Prof\.|Judge|Attorney|Counselor)\s+"
        r"([A-Z][a-z]+(?: [A-Z][a-z]+)?)\b"
    ), 0.9, group=1),

    PatternRule("capitalized_name", EntityType.PERSON.value, re.compile(
        r"\b([A-Z][a-z]+ (?:[A-Z]\. )?[A-Z][a-z]+)\b"
    ), 0.75, validator=_not_false_positive_name),

    PatternRule("corporate_suffix", EntityType.ORGANIZATION.value, re.compile(
        rf"\b((?:[A-Z][A-Za-z&]*\s)+(?:{_ORG_SUFFIXES}))\b"
    ), 0.85),

    PatternRule("legal_firm", EntityType.ORGANIZATION.value, re.compile(
        r"\b(?:Law (?:Office|Firm) of |The )([A-Z][a-z]+ (?:& )?[A-Z][a-z]+)\b"
    ), 0.9, group=1),
)


class PatternEngine:
    """Compiled pattern catalog plus runtime-registered custom patterns."""

    name = "pattern"

    def __init__(self, rules: tuple[PatternRule, ...] = _CATALOG) -> None:
        self._rules = rules
        self._custom: dict[str, PatternRule] = {}
        self._lock = threading.Lock()

    def add_custom_pattern(
        self,
        name: str,
        pattern: str,
        *,
        confidence: float = CUSTOM_PATTERN_CONFIDENCE,
    ) -> None:
        """Register (or replace) a custom matcher.  *name* becomes the entity type."""
        if not name:
            raise InvalidConfigError("custom pattern name must not be empty")
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise InvalidConfigError(f"invalid custom pattern {name!r}: {e}") from e
        rule = PatternRule(name, name, regex, confidence)
        with self._lock:
            custom = dict(self._custom)
            custom[name] = rule
            self._custom = custom

    @property
    def custom_patterns(self) -> list[str]:
        return list(self._custom)

    def scan(self, text: str) -> list[PIIEntity]:
        """Run every rule against *text*.

        Identical spans of the same type collapse to the higher score;
        overlaps between different rules are left for the reconciler.
        """
        best: dict[tuple[str, int, int], PIIEntity] = {}
        for rule in (*self._rules, *self._custom.values()):
            for m in rule.regex.finditer(text):
                start, end = m.span(rule.group)
                if start < 0 or start == end:
                    continue
                value = m.group(rule.group)
                if rule.validator is not None and not rule.validator(value):
                    continue
                key = (rule.entity_type, start, end)
                prev = best.get(key)
                if prev is not None and prev.confidence >= rule.confidence:
                    continue
                best[key] = PIIEntity(
                    entity_type=rule.entity_type,
                    text=value,
                    start=start,
                    end=end,
                    confidence=rule.confidence,
                    source_engine=SourceEngine.PATTERN.value,
                    metadata={"pattern": rule.name},
                )
        return sorted(best.values(), key=lambda e: (e.start, -e.confidence))


_default_engine = PatternEngine()


def scan_patterns(text: str) -> list[PIIEntity]:
    """Scan with the shared built-in catalog (no custom patterns)."""
    return _default_engine.scan(text)
