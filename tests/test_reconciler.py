"""Tests for reconciliation — exclusion, fusion, threshold, overlap sweep."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import random

import pytest

from pii_sentinel import ExclusionSet, ExclusionStore, PIIEntity, reconcile
from pii_sentinel.reconciler import fuse_corroborated, resolve_overlaps


def _e(start, end, conf, entity_type="PERSON", text=None, engine="Pattern"):
    return PIIEntity(entity_type, text or f"t{start}-{end}", start, end, conf, engine)


NO_EXCLUSIONS = ExclusionSet.empty()


# ── Overlap sweep ────────────────────────────────────────────────────

def test_more_confident_overlap_wins():
    a = _e(0, 10, 0.7)
    b = _e(5, 15, 0.9)
    assert reconcile([a, b], NO_EXCLUSIONS, 0.0) == [b]


def test_equal_confidence_keeps_the_earlier_span():
    a = _e(0, 10, 0.9)
    b = _e(5, 15, 0.9)
    assert reconcile([b, a], NO_EXCLUSIONS, 0.0) == [a]


def test_same_start_prefers_confidence_then_length():
    short = _e(0, 4, 0.9)
    long = _e(0, 10, 0.9)
    weak = _e(0, 12, 0.5)
    assert resolve_overlaps([weak, short, long]) == [long]


def test_adjacent_spans_both_kept():
    a = _e(0, 5, 0.9)
    b = _e(5, 9, 0.9)
    assert reconcile([b, a], NO_EXCLUSIONS, 0.0) == [a, b]


def test_output_is_sorted_and_non_overlapping():
    rng = random.Random(7)
    entities = []
    for _ in range(60):
        start = rng.randrange(0, 200)
        entities.append(_e(start, start + rng.randrange(1, 15), round(rng.random(), 2)))
    kept = reconcile(entities, NO_EXCLUSIONS, 0.0)
    for left, right in zip(kept, kept[1:]):
        assert left.end <= right.start


def test_reconcile_is_deterministic():
    rng = random.Random(3)
    entities = [_e(s, s + 6, round(rng.random(), 2)) for s in range(0, 100, 4)]
    expected = reconcile(entities, NO_EXCLUSIONS, 0.2)
    for _ in range(5):
        shuffled = entities[:]
        rng.shuffle(shuffled)
        assert reconcile(shuffled, NO_EXCLUSIONS, 0.2) == expected


# ── Threshold ────────────────────────────────────────────────────────

def test_threshold_drops_weak_candidates():
    keep = _e(0, 5, 0.85)
    drop = _e(10, 15, 0.84)
    assert reconcile([keep, drop], NO_EXCLUSIONS, 0.85) == [keep]


def test_threshold_monotonicity():
    rng = random.Random(11)
    entities = []
    for _ in range(80):
        start = rng.randrange(0, 300)
        entities.append(_e(start, start + rng.randrange(1, 20), round(rng.random(), 2)))
    counts = [
        len(reconcile(entities, NO_EXCLUSIONS, t / 20)) for t in range(21)
    ]
    assert all(a >= b for a, b in zip(counts, counts[1:]))


# ── Exclusions ───────────────────────────────────────────────────────

def test_excluded_text_never_returned():
    store = ExclusionStore(["en"])
    court = _e(0, 13, 0.95, "ORGANIZATION", "Supreme Court")
    assert reconcile([court], store.snapshot, 0.0) == []


def test_exclusion_applies_across_categories():
    store = ExclusionStore(["en"])
    # a location term reported as a PERSON is still excluded
    city = _e(0, 8, 0.99, "PERSON", "New York")
    assert reconcile([city], store.snapshot, 0.0) == []


def test_exclusion_is_skipped_when_none():
    court = _e(0, 13, 0.95, "ORGANIZATION", "Supreme Court")
    assert reconcile([court], None, 0.0) == [court]


# ── Fusion ───────────────────────────────────────────────────────────

def test_cross_engine_agreement_fuses_and_boosts():
    pattern = _e(4, 14, 0.75, text="John Smith", engine="Pattern")
    local = _e(4, 14, 0.8, text="John Smith", engine="LocalNER")
    [fused] = reconcile([pattern, local], NO_EXCLUSIONS, 0.85)
    assert fused.confidence == pytest.approx(0.9)
    assert fused.source_engine == "MultiEngine"
    assert fused.metadata["engines"] == ["LocalNER", "Pattern"]
    assert fused.metadata["corroborated_by"] == 2


def test_fusion_caps_at_one():
    a = _e(0, 10, 0.95, text="John Smith", engine="Pattern")
    b = _e(0, 10, 1.0, text="John Smith", engine="ExternalNER")
    [fused] = fuse_corroborated([a, b])
    assert fused.confidence == 1.0


def test_near_identical_text_fuses():
    a = _e(0, 10, 0.8, text="John Smith", engine="LocalNER")
    b = _e(0, 11, 0.7, text="John Smith,", engine="ExternalNER")
    [fused] = fuse_corroborated([a, b])
    assert fused.text == "John Smith"
    assert fused.confidence == pytest.approx(0.9)


def test_same_engine_never_fuses():
    a = _e(0, 10, 0.8, text="John Smith", engine="Pattern")
    b = _e(0, 10, 0.7, text="John Smith", engine="Pattern")
    assert len(fuse_corroborated([a, b])) == 2


def test_dissimilar_overlap_does_not_fuse():
    a = _e(0, 10, 0.8, text="John Smith", engine="Pattern")
    b = _e(5, 27, 0.7, text="Smith & Wesson Holdings", engine="LocalNER")
    fused = fuse_corroborated([a, b])
    assert {e.source_engine for e in fused} == {"Pattern", "LocalNER"}


def test_three_engines_fuse_once():
    entities = [
        _e(0, 10, 0.75, text="John Smith", engine="Pattern"),
        _e(0, 10, 0.8, text="John Smith", engine="LocalNER"),
        _e(0, 10, 0.85, text="John Smith", engine="ExternalNER"),
    ]
    [fused] = fuse_corroborated(entities)
    assert fused.confidence == pytest.approx(0.95)
    assert fused.metadata["corroborated_by"] == 3
    assert fused.metadata["engines"] == ["ExternalNER", "LocalNER", "Pattern"]
