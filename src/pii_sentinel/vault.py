"""Vault — stable placeholders for anonymization.

The same value of the same type always gets the same placeholder within
one Vault, and counters run per type in the order values are first
seen: ``PERSON_001``, ``PERSON_002``, ``EMAIL_001``...
"""

from __future__ import annotations
import re
from collections import defaultdict


_PLACEHOLDER_FMT = "{type}_{idx:03d}"


class Vault:
    """Bidirectional value ↔ placeholder store for one anonymization scope."""

    __slots__ = ("_to_placeholder", "_to_value", "_counters")

    def __init__(self) -> None:
        self._to_placeholder: dict[tuple[str, str], str] = {}   # (PERSON, "John Smith") → PERSON_001
        self._to_value: dict[str, str] = {}                     # PERSON_001 → "John Smith"
        self._counters: dict[str, int] = defaultdict(int)

    def placeholder_for(self, entity_type: str, value: str) -> str:
        """Return the placeholder for *value*, assigning the next one if new."""
        key = (entity_type, value)
        existing = self._to_placeholder.get(key)
        if existing is not None:
            return existing

        self._counters[entity_type] += 1
        placeholder = _PLACEHOLDER_FMT.format(type=entity_type, idx=self._counters[entity_type])
        self._to_placeholder[key] = placeholder
        self._to_value[placeholder] = value
        return placeholder

    def rehydrate(self, text: str) -> str:
        """Put original values back in place of known placeholders."""
        if not self._to_value:
            return text
        # word boundaries keep PERSON_001 from matching inside PERSON_0010
        alternatives = "|".join(
            re.escape(p) for p in sorted(self._to_value, key=len, reverse=True)
        )
        return re.sub(rf"\b(?:{alternatives})\b", lambda m: self._to_value[m.group(0)], text)

    def lookup(self, placeholder: str) -> str | None:
        return self._to_value.get(placeholder)

    @property
    def size(self) -> int:
        return len(self._to_value)

    @property
    def mapping(self) -> dict[str, str]:
        """Copy of the placeholder → value mapping."""
        return dict(self._to_value)

    def clear(self) -> None:
        self._to_placeholder.clear()
        self._to_value.clear()
        self._counters.clear()
