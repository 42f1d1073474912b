"""Keyword-window confidence adjustment.

Looks at ``window`` characters either side of each entity (clamped to
the text, case-folded) and applies type-specific rules.  A rule either
multiplies the confidence or pins it to a fixed value; the result is
always clamped to [0, 1].
"""

from __future__ import annotations
import re
from dataclasses import dataclass

from .types import EntityType, PIIEntity


@dataclass(frozen=True, slots=True)
class ContextRule:
    entity_type: str
    keywords: re.Pattern
    factor: float | None = None   # multiply confidence
    set_to: float | None = None   # or pin it
    after_only: bool = False      # match only the text right after the span
    description: str = ""


def _words(*words: str) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b")


DEFAULT_RULES: tuple[ContextRule, ...] = (
    ContextRule(
        EntityType.PERSON.value,
        _words("plaintiff", "defendant", "attorney", "client", "witness", "judge"),
        factor=1.2,
        description="party or officer of the court nearby",
    ),
    ContextRule(
        EntityType.PERSON.value,
        re.compile(r"^\s*(?:street|st\.|avenue|ave\.?|road|rd\.|boulevard|blvd\.?|"
                   r"inc\.?|llc|corp\.?|ltd\.?)(?:\W|$)"),
        factor=0.7,
        after_only=True,
        description="street or company suffix follows the name",
    ),
    ContextRule(
        EntityType.ORGANIZATION.value,
        _words("company", "corporation", "firm", "agency"),
        factor=1.15,
        description="organization keyword nearby",
    ),
    ContextRule(
        EntityType.SSN.value,
        _words("social security", "ssn"),
        set_to=1.0,
    ),
    ContextRule(
        EntityType.CREDIT_CARD.value,
        _words("credit", "card"),
        set_to=1.0,
    ),
)


class ContextEnhancer:
    """Applies ContextRules to a merged candidate list."""

    def __init__(self, rules: tuple[ContextRule, ...] = DEFAULT_RULES) -> None:
        self._rules: dict[str, list[ContextRule]] = {}
        for rule in rules:
            self._rules.setdefault(rule.entity_type, []).append(rule)

    def enhance(self, text: str, entities: list[PIIEntity], window: int = 50) -> list[PIIEntity]:
        out: list[PIIEntity] = []
        for entity in entities:
            rules = self._rules.get(entity.entity_type)
            if not rules:
                out.append(entity)
                continue
            before = text[max(0, entity.start - window):entity.start].casefold()
            after = text[entity.end:min(len(text), entity.end + window)].casefold()
            around = f"{before} {after}"

            confidence = entity.confidence
            applied: list[str] = []
            for rule in rules:
                haystack = after if rule.after_only else around
                if not rule.keywords.search(haystack):
                    continue
                if rule.set_to is not None:
                    confidence = rule.set_to
                elif rule.factor is not None:
                    confidence *= rule.factor
                applied.append(rule.description or rule.keywords.pattern)
            confidence = min(1.0, max(0.0, confidence))

            if confidence == entity.confidence:
                out.append(entity)
            else:
                enhanced = entity.with_confidence(confidence)
                enhanced.metadata["context_rules"] = applied
                enhanced.metadata["base_confidence"] = entity.confidence
                out.append(enhanced)
        return out


_default_enhancer = ContextEnhancer()


def enhance(text: str, entities: list[PIIEntity], window: int = 50) -> list[PIIEntity]:
    """Enhance with the default rule set."""
    return _default_enhancer.enhance(text, entities, window)
