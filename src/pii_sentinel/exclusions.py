"""Regional false-positive exclusion lists.

Each region ships as a YAML document with named string-list sections
and a ``settings`` block:

    region: en
    settings:
      case_sensitive: false
      fuzzy_matching: false
      min_confidence: 0.7
    locations:
      - New York
    legal_terms:
      - Supreme Court
    organizations: []
    time_terms: []
    custom: []

Enabled regions are merged by union: a term excluded in any region is
excluded everywhere.  A missing or unparseable region never crashes the
store; it degrades to an empty set with a loud, user-visible warning.
"""

from __future__ import annotations
import logging
import threading
import warnings
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

import yaml
from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from .errors import ConfigLoadError, ExclusionConfigWarning
from .types import EntityType

logger = logging.getLogger(__name__)

CATEGORIES = ("locations", "legal_terms", "organizations", "time_terms", "custom")
DEFAULT_FUZZY_THRESHOLD = 0.90

_NON_TERM_KEYS = frozenset({"region", "description", "settings"})

# Categories worth checking first for a given entity type.
_CATEGORY_HINTS: dict[str, tuple[str, ...]] = {
    EntityType.PERSON.value: ("legal_terms", "time_terms", "locations"),
    EntityType.ORGANIZATION.value: ("organizations", "legal_terms"),
    EntityType.LOCATION.value: ("locations",),
    EntityType.DATE.value: ("time_terms",),
}


def _normalize(term: str, case_sensitive: bool) -> str:
    term = " ".join(term.split())
    return term if case_sensitive else term.casefold()


@dataclass(frozen=True, slots=True)
class RegionExclusions:
    """One parsed region file."""
    region: str
    terms: Mapping[str, tuple[str, ...]]
    case_sensitive: bool = False
    fuzzy_matching: bool = False
    min_confidence: float = 0.0


@dataclass(frozen=True)
class ExclusionSet:
    """Immutable merged view of all enabled regions."""
    categories: Mapping[str, frozenset[str]] = field(default_factory=dict)
    case_sensitive: bool = False
    fuzzy_matching: bool = False
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD
    min_confidence: float = 0.0
    regions: tuple[str, ...] = ()
    version: int = 0

    def __post_init__(self) -> None:
        all_terms = frozenset().union(*self.categories.values()) if self.categories else frozenset()
        object.__setattr__(self, "_all_terms", all_terms)
        object.__setattr__(self, "_choices", sorted(all_terms))

    @classmethod
    def empty(cls) -> ExclusionSet:
        return cls()

    @property
    def size(self) -> int:
        return len(self._all_terms)

    def terms(self, category: str) -> frozenset[str]:
        return self.categories.get(category, frozenset())

    def match(self, candidate_text: str, category_hint: str | None = None) -> str | None:
        """Return the category that excludes *candidate_text*, or None."""
        key = _normalize(candidate_text, self.case_sensitive)
        if not key:
            return None

        if key in self._all_terms:
            preferred = _CATEGORY_HINTS.get(category_hint or "", ())
            ordered = (*preferred, *(c for c in self.categories if c not in preferred))
            for category in ordered:
                if key in self.categories.get(category, ()):
                    return category

        if self.fuzzy_matching and self._choices:
            hit = process.extractOne(
                key,
                self._choices,
                scorer=Levenshtein.normalized_similarity,
                score_cutoff=self.fuzzy_threshold,
            )
            if hit is not None:
                term = hit[0]
                for category, members in self.categories.items():
                    if term in members:
                        return category
        return None

    def is_excluded(self, candidate_text: str, category_hint: str | None = None) -> bool:
        return self.match(candidate_text, category_hint) is not None


def _bundled_region(region: str) -> str | None:
    resource = resources.files(__package__).joinpath("regions", f"{region}.yaml")
    if not resource.is_file():
        return None
    return resource.read_text(encoding="utf-8")


def parse_region(region: str, raw: str) -> RegionExclusions:
    """Parse one region document.  Raises ConfigLoadError on bad content."""
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigLoadError(region, f"unparseable YAML ({e})") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigLoadError(region, "top level must be a mapping")

    settings = data.get("settings") or {}
    if not isinstance(settings, dict):
        raise ConfigLoadError(region, "'settings' must be a mapping")

    terms: dict[str, tuple[str, ...]] = {}
    for key, values in data.items():
        if key in _NON_TERM_KEYS:
            continue
        if values is None:
            values = []
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ConfigLoadError(region, f"section {key!r} must be a list of strings")
        terms[str(key)] = tuple(values)

    try:
        min_confidence = float(settings.get("min_confidence", 0.0))
    except (TypeError, ValueError) as e:
        raise ConfigLoadError(region, "settings.min_confidence must be a number") from e

    return RegionExclusions(
        region=region,
        terms=MappingProxyType(terms),
        case_sensitive=bool(settings.get("case_sensitive", False)),
        fuzzy_matching=bool(settings.get("fuzzy_matching", False)),
        min_confidence=min_confidence,
    )


def load_region(region: str, search_paths: Iterable[str | Path] = ()) -> RegionExclusions:
    """Load *region* from the first search path that has it, else package data."""
    for base in search_paths:
        path = Path(base).expanduser() / f"{region}.yaml"
        if path.is_file():
            try:
                raw = path.read_text(encoding="utf-8")
            except OSError as e:
                raise ConfigLoadError(region, f"cannot read {path}: {e}") from e
            return parse_region(region, raw)

    raw = _bundled_region(region)
    if raw is None:
        raise ConfigLoadError(region, "no region file found")
    return parse_region(region, raw)


def merge_regions(
    loaded: list[RegionExclusions],
    *,
    fuzzy_matching: bool | None = None,
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
    extra_terms: Mapping[str, Iterable[str]] | None = None,
    version: int = 0,
) -> ExclusionSet:
    """Union all regions into one ExclusionSet."""
    case_sensitive = bool(loaded) and all(r.case_sensitive for r in loaded)
    if fuzzy_matching is None:
        fuzzy_matching = any(r.fuzzy_matching for r in loaded)

    merged: dict[str, set[str]] = {c: set() for c in CATEGORIES}
    sources = [r.terms for r in loaded]
    if extra_terms:
        sources.append({k: tuple(v) for k, v in extra_terms.items()})
    for terms in sources:
        for category, values in terms.items():
            bucket = merged.setdefault(category, set())
            bucket.update(n for n in (_normalize(v, case_sensitive) for v in values) if n)

    return ExclusionSet(
        categories=MappingProxyType({c: frozenset(v) for c, v in merged.items()}),
        case_sensitive=case_sensitive,
        fuzzy_matching=fuzzy_matching,
        fuzzy_threshold=fuzzy_threshold,
        min_confidence=max((r.min_confidence for r in loaded), default=0.0),
        regions=tuple(r.region for r in loaded),
        version=version,
    )


class ExclusionStore:
    """Holds the current ExclusionSet and swaps it atomically on reload.

    Readers grab ``snapshot`` without locking; the reference swap is
    atomic.  Reloads are serialised by a writer lock.
    """

    def __init__(
        self,
        regions: Iterable[str] = ("en",),
        *,
        search_paths: Iterable[str | Path] = (),
        fuzzy_matching: bool | None = None,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
        extra_terms: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self._regions = tuple(regions)
        self._search_paths = tuple(search_paths)
        self._fuzzy_matching = fuzzy_matching
        self._fuzzy_threshold = fuzzy_threshold
        self._extra_terms = extra_terms
        self._write_lock = threading.Lock()
        self._snapshot = ExclusionSet.empty()
        self.notices: list[str] = []
        self.reload()

    @property
    def snapshot(self) -> ExclusionSet:
        return self._snapshot

    @property
    def regions(self) -> tuple[str, ...]:
        return self._regions

    def is_excluded(self, candidate_text: str, category_hint: str | None = None) -> bool:
        return self._snapshot.is_excluded(candidate_text, category_hint)

    def reload(self, regions: Iterable[str] | None = None) -> ExclusionSet:
        """Re-read region files and publish a new snapshot."""
        with self._write_lock:
            if regions is not None:
                self._regions = tuple(regions)
            loaded: list[RegionExclusions] = []
            for region in self._regions:
                try:
                    loaded.append(load_region(region, self._search_paths))
                except ConfigLoadError as e:
                    self._warn_loudly(
                        f"PII exclusion list for region {region!r} could not be loaded "
                        f"({e.reason}); using an EMPTY list for this region. "
                        "Legal terms, places and organizations from it may now be "
                        "reported as PII."
                    )
            snapshot = merge_regions(
                loaded,
                fuzzy_matching=self._fuzzy_matching,
                fuzzy_threshold=self._fuzzy_threshold,
                extra_terms=self._extra_terms,
                version=self._snapshot.version + 1,
            )
            self._snapshot = snapshot
        logger.info(
            "Exclusion lists loaded: regions=%s terms=%d fuzzy=%s (version %d)",
            ",".join(snapshot.regions) or "-", snapshot.size,
            snapshot.fuzzy_matching, snapshot.version,
        )
        return snapshot

    def _warn_loudly(self, message: str) -> None:
        logger.warning(message)
        warnings.warn(message, ExclusionConfigWarning, stacklevel=3)
        self.notices.append(message)
