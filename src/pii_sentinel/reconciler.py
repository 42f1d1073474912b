"""Reconciliation — one authoritative entity list from many layers.

Order of operations:

1. drop candidates whose text is on an exclusion list (any category)
2. fuse corroborated candidates (two or more engines, overlapping spans,
   near-identical text) into one "multi-engine" entity
3. drop candidates below the confidence threshold
4. sort by start, ties by confidence then length (both descending)
5. left-to-right sweep: on overlap the strictly more confident entity
   replaces the kept one, otherwise the kept one stays
"""

from __future__ import annotations
from dataclasses import replace
from typing import Iterable

from rapidfuzz.distance import Levenshtein

from .exclusions import ExclusionSet
from .types import PIIEntity, SourceEngine

AGREEMENT_BONUS = 0.1
SIMILARITY_THRESHOLD = 0.9


def overlaps(a: PIIEntity, b: PIIEntity) -> bool:
    return a.start < b.end and b.start < a.end


def text_similarity(a: str, b: str) -> float:
    """Normalised edit-distance similarity, case-folded, 0.0–1.0."""
    return Levenshtein.normalized_similarity(a.strip().casefold(), b.strip().casefold())


def engines_of(entity: PIIEntity) -> frozenset[str]:
    if entity.source_engine == SourceEngine.MULTI_ENGINE.value:
        return frozenset(entity.metadata.get("engines", ()))
    return frozenset({entity.source_engine})


def resolve_overlaps(entities: Iterable[PIIEntity]) -> list[PIIEntity]:
    """Keep non-overlapping entities; the most confident wins each overlap."""
    ordered = sorted(entities, key=lambda e: (e.start, -e.confidence, -e.length))
    kept: list[PIIEntity] = []
    last_end = 0
    for entity in ordered:
        if entity.start >= last_end or not kept:
            kept.append(entity)
            last_end = entity.end
        elif entity.confidence > kept[-1].confidence:
            kept[-1] = entity
            last_end = entity.end
    return kept


def fuse_corroborated(
    entities: list[PIIEntity],
    *,
    bonus: float = AGREEMENT_BONUS,
    similarity: float = SIMILARITY_THRESHOLD,
) -> list[PIIEntity]:
    """Merge cross-engine agreements.

    Candidates from different engines that overlap and whose texts are
    at least *similarity* alike form a group.  Each group becomes its most
    confident member, with confidence ``max + bonus`` (capped at 1.0) and
    source ``MultiEngine``.  Candidates in no group pass through unchanged.
    """
    n = len(entities)
    parent = list(range(n))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(n):
        a = entities[i]
        for j in range(i + 1, n):
            b = entities[j]
            if len(engines_of(a) | engines_of(b)) < 2:
                continue
            if not overlaps(a, b):
                continue
            if text_similarity(a.text, b.text) < similarity:
                continue
            parent[find(j)] = find(i)

    groups: dict[int, list[PIIEntity]] = {}
    for i, entity in enumerate(entities):
        groups.setdefault(find(i), []).append(entity)

    fused: list[PIIEntity] = []
    for members in groups.values():
        if len(members) == 1:
            fused.append(members[0])
            continue
        engines = frozenset().union(*(engines_of(m) for m in members))
        best = max(members, key=lambda e: (e.confidence, e.length))
        metadata = dict(best.metadata)
        metadata["engines"] = sorted(engines)
        metadata["corroborated_by"] = len(members)
        fused.append(replace(
            best,
            confidence=min(1.0, best.confidence + bonus),
            source_engine=SourceEngine.MULTI_ENGINE.value,
            metadata=metadata,
        ))
    return sorted(fused, key=lambda e: (e.start, -e.confidence))


def reconcile(
    entities: list[PIIEntity],
    exclusions: ExclusionSet | None,
    threshold: float,
    *,
    agreement_bonus: float = AGREEMENT_BONUS,
    similarity: float = SIMILARITY_THRESHOLD,
) -> list[PIIEntity]:
    """Exclusion → fusion → threshold → overlap sweep.  Deterministic."""
    if exclusions is not None:
        entities = [e for e in entities if not exclusions.is_excluded(e.text, e.entity_type)]
    entities = fuse_corroborated(entities, bonus=agreement_bonus, similarity=similarity)
    entities = [e for e in entities if e.confidence >= threshold]
    return resolve_overlaps(entities)
