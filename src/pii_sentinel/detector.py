"""PIIDetector — the main API.  Layered: patterns, local NER, loopback Presidio.

Usage:
    from pii_sentinel import PIIDetector, DetectionConfig, LayerMode

    detector = PIIDetector(DetectionConfig(layer_mode=LayerMode.PATTERN_PLUS_LOCAL))

    entities = await detector.detect_pii("SSN: 123-45-6789")
    print(await detector.redact_pii("Call John Smith at 555-123-4567"))
    # "Call [PERSON] at [PHONE]"

    result = await detector.anonymize_pii("John Smith met John Smith")
    print(result.text, result.mapping)
    # "PERSON_001 met PERSON_001" {"PERSON_001": "John Smith"}

    await detector.aclose()   # stops the loopback process, if one was started

Layer 1 always runs.  Layers 2 and 3 run concurrently, each under its own
timeout; a layer that fails or times out contributes nothing and the call
carries on.  The only exception ``detect`` raises is InvalidConfigError.
"""

from __future__ import annotations
import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Iterable, Mapping

from .bridge import PRESIDIO_TYPE_MAP, AnalysisBridge
from .context import ContextEnhancer
from .errors import EngineUnavailable, InvalidConfigError, InvalidSpan
from .exclusions import ExclusionSet, ExclusionStore
from .local_ner import LocalEntityRecognizer
from .patterns import PatternEngine
from .reconciler import reconcile
from .types import (
    AnonymizedText, DetectionResult, LayerDiagnostics, LayerStatus, PIIEntity,
)
from .vault import Vault

logger = logging.getLogger(__name__)


class LayerMode(str, Enum):
    PATTERN_ONLY = "PatternOnly"
    PATTERN_PLUS_LOCAL = "PatternPlusLocal"
    FULL_STACK = "FullStack"


class ExternalMode(str, Enum):
    DISABLED = "Disabled"
    LITE = "Lite"     # small spaCy pipeline
    FULL = "Full"     # large spaCy pipeline

    @property
    def profile(self) -> str:
        return self.value.lower()


@dataclass(frozen=True)
class DetectionConfig:
    """Immutable detection settings.  Swap the whole object to change them."""
    layer_mode: LayerMode = LayerMode.PATTERN_ONLY
    local_ner_enabled: bool = True
    external_mode: ExternalMode = ExternalMode.DISABLED
    confidence_threshold: float = 0.85
    # Entity type → enabled.  Types not listed are enabled.
    per_type_enable: Mapping[str, bool] = field(default_factory=dict)
    context_window_chars: int = 50
    language: str = "en"
    use_context_enhancement: bool = True
    layer_timeout: float = 10.0          # seconds, per optional layer

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "layer_mode", LayerMode(self.layer_mode))
            object.__setattr__(self, "external_mode", ExternalMode(self.external_mode))
        except ValueError as e:
            raise InvalidConfigError(str(e)) from e
        for name in ("confidence_threshold", "context_window_chars", "layer_timeout"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidConfigError(f"{name} must be a number, got {value!r}")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise InvalidConfigError(
                f"confidence_threshold must be within [0, 1], got {self.confidence_threshold}"
            )
        if self.context_window_chars < 0:
            raise InvalidConfigError(
                f"context_window_chars must be >= 0, got {self.context_window_chars}"
            )
        if self.layer_timeout <= 0:
            raise InvalidConfigError(f"layer_timeout must be > 0, got {self.layer_timeout}")
        object.__setattr__(
            self, "per_type_enable",
            MappingProxyType({str(k): bool(v) for k, v in self.per_type_enable.items()}),
        )

    @property
    def runs_local(self) -> bool:
        return self.local_ner_enabled and self.layer_mode in (
            LayerMode.PATTERN_PLUS_LOCAL, LayerMode.FULL_STACK,
        )

    @property
    def runs_external(self) -> bool:
        return (
            self.layer_mode is LayerMode.FULL_STACK
            and self.external_mode is not ExternalMode.DISABLED
        )

    def type_enabled(self, entity_type: str) -> bool:
        return self.per_type_enable.get(entity_type, True)


def check_span(text: str, entity: PIIEntity) -> None:
    """Raise InvalidSpan unless *entity* is a valid slice of *text*."""
    if not 0 <= entity.start < entity.end <= len(text):
        raise InvalidSpan(
            f"{entity.entity_type} span [{entity.start}, {entity.end}) outside text of "
            f"length {len(text)}"
        )
    if text[entity.start:entity.end] != entity.text:
        raise InvalidSpan(
            f"{entity.entity_type} span [{entity.start}, {entity.end}) does not match "
            f"its reported text"
        )


class PIIDetector:
    """Layered PII detector.

    Layer 1: Pattern engine (regex + checksums), always on
    Layer 2: GLiNER, in-process, optional
    Layer 3: Presidio in a supervised loopback process, optional
    """

    def __init__(
        self,
        config: DetectionConfig | None = None,
        *,
        patterns: PatternEngine | None = None,
        exclusions: ExclusionStore | None = None,
        local_ner: LocalEntityRecognizer | None = None,
        bridge: AnalysisBridge | None = None,
        enhancer: ContextEnhancer | None = None,
    ) -> None:
        self.config = config or DetectionConfig()
        self.patterns = patterns or PatternEngine()
        self.exclusions = exclusions if exclusions is not None else ExclusionStore()
        self.local_ner = local_ner or LocalEntityRecognizer(timeout=self.config.layer_timeout)
        self.enhancer = enhancer or ContextEnhancer()
        self._bridge = bridge

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def detect(
        self,
        text: str,
        config: DetectionConfig | None = None,
        *,
        timeout: float | None = None,
    ) -> DetectionResult:
        """Run every enabled layer and reconcile.

        *timeout* bounds the whole call; optional layers still running when
        it expires are abandoned and the call returns what it has.
        """
        cfg = config if config is not None else self.config
        if not isinstance(cfg, DetectionConfig):
            raise InvalidConfigError(f"expected DetectionConfig, got {type(cfg).__name__}")
        if timeout is not None and timeout < 0:
            raise InvalidConfigError(f"timeout must be >= 0, got {timeout}")

        result = DetectionResult()
        if not text:
            return result
        loop_deadline = None if timeout is None else time.monotonic() + timeout

        # --- Layer 1: patterns (cheap, deterministic) ---
        diag = result.diagnostics["pattern"] = LayerDiagnostics("pattern")
        started = time.perf_counter()
        candidates = self.patterns.scan(text)
        diag.latency_ms = (time.perf_counter() - started) * 1000
        diag.candidate_count = len(candidates)

        # --- Layers 2 + 3: fan out, fan in ---
        optional: dict[str, Awaitable[list[PIIEntity]]] = {}
        if cfg.runs_local:
            optional[self.local_ner.name] = self.local_ner.scan(text)
        if cfg.runs_external:
            bridge = self._get_bridge(cfg)
            optional[bridge.name] = bridge.analyze(
                text,
                cfg.language,
                entity_filter=self._external_filter(cfg),
                profile=cfg.external_mode.profile,
            )
        if optional:
            layer_timeout = cfg.layer_timeout
            if loop_deadline is not None:
                layer_timeout = max(0.0, min(layer_timeout, loop_deadline - time.monotonic()))
            found = await asyncio.gather(*(
                self._run_layer(name, work, layer_timeout, result)
                for name, work in optional.items()
            ))
            for name, entities in zip(optional, found):
                candidates.extend(self._valid_spans(text, entities, name))

        # --- Filter, enhance, reconcile ---
        candidates = [e for e in candidates if cfg.type_enabled(e.entity_type)]
        if cfg.use_context_enhancement:
            candidates = self.enhancer.enhance(text, candidates, cfg.context_window_chars)
        snapshot = self.exclusions.snapshot
        result.entities = reconcile(candidates, snapshot, self._threshold(cfg, snapshot))
        return result

    async def detect_pii(self, text: str, config: DetectionConfig | None = None) -> list[PIIEntity]:
        """Detect PII.  Never fails because an engine did; see ``detect``."""
        return (await self.detect(text, config)).entities

    async def redact_pii(self, text: str, config: DetectionConfig | None = None) -> str:
        """Replace each detected span with ``[TYPE]``."""
        entities = await self.detect_pii(text, config)
        result = text
        for entity in sorted(entities, key=lambda e: e.start, reverse=True):
            result = result[:entity.start] + f"[{entity.entity_type}]" + result[entity.end:]
        return result

    async def anonymize_pii(
        self,
        text: str,
        config: DetectionConfig | None = None,
        vault: Vault | None = None,
    ) -> AnonymizedText:
        """Replace spans with stable per-type placeholders (``PERSON_001``...).

        Pass the same *vault* across calls to keep placeholders stable for
        a whole conversation; ``vault.rehydrate`` reverses the mapping.
        """
        vault = vault if vault is not None else Vault()
        entities = await self.detect_pii(text, config)

        # numbering follows reading order
        placeholders = [vault.placeholder_for(e.entity_type, e.text) for e in entities]
        mapping: dict[str, str] = {}
        result = text
        for entity, placeholder in sorted(
            zip(entities, placeholders), key=lambda pair: pair[0].start, reverse=True,
        ):
            mapping[placeholder] = entity.text
            result = result[:entity.start] + placeholder + result[entity.end:]
        return AnonymizedText(text=result, mapping=mapping, entities=entities)

    async def get_statistics(self, text: str, config: DetectionConfig | None = None) -> dict[str, int]:
        """Count detected entities per type."""
        return dict(Counter(e.entity_type for e in await self.detect_pii(text, config)))

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    async def _run_layer(
        self,
        name: str,
        work: Awaitable[list[PIIEntity]],
        timeout: float,
        result: DetectionResult,
    ) -> list[PIIEntity]:
        diag = result.diagnostics[name] = LayerDiagnostics(name)
        started = time.perf_counter()
        found: list[PIIEntity] = []
        try:
            found = await asyncio.wait_for(work, timeout)
        except asyncio.TimeoutError:
            diag.error = f"timed out after {timeout:.2f}s"
            logger.warning("%s layer timed out after %.2fs; continuing without it", name, timeout)
        except EngineUnavailable as e:
            diag.error = str(e)
            logger.warning("%s layer unavailable (%s); continuing without it", name, e.reason)
        except Exception as e:
            diag.error = f"{type(e).__name__}: {e}"
            logger.warning("%s layer failed; continuing without it", name, exc_info=True)
        diag.latency_ms = (time.perf_counter() - started) * 1000
        diag.candidate_count = len(found)
        return found

    @staticmethod
    def _valid_spans(text: str, entities: Iterable[PIIEntity], layer: str) -> list[PIIEntity]:
        valid: list[PIIEntity] = []
        for entity in entities:
            try:
                check_span(text, entity)
            except InvalidSpan as e:
                logger.error("Discarding entity from %s layer: %s", layer, e)
                continue
            valid.append(entity)
        return valid

    @staticmethod
    def _threshold(cfg: DetectionConfig, snapshot: ExclusionSet) -> float:
        return max(cfg.confidence_threshold, snapshot.min_confidence)

    @staticmethod
    def _external_filter(cfg: DetectionConfig) -> list[str] | None:
        if all(cfg.per_type_enable.values()):
            return None
        return [t for t in PRESIDIO_TYPE_MAP.values() if cfg.type_enabled(t)]

    def _get_bridge(self, cfg: DetectionConfig) -> AnalysisBridge:
        if self._bridge is None:
            self._bridge = AnalysisBridge(language=cfg.language)
        return self._bridge

    # ------------------------------------------------------------------
    # Runtime control
    # ------------------------------------------------------------------

    async def set_detection_layer(self, mode: LayerMode | str) -> None:
        """Switch layer mode.  FullStack with the external layer off turns on Lite."""
        try:
            mode = LayerMode(mode)
        except ValueError as e:
            raise InvalidConfigError(str(e)) from e
        changes: dict[str, Any] = {"layer_mode": mode}
        if mode is LayerMode.FULL_STACK and self.config.external_mode is ExternalMode.DISABLED:
            changes["external_mode"] = ExternalMode.LITE
        await self.update_config(replace(self.config, **changes))

    async def update_config(self, config: DetectionConfig) -> None:
        """Replace the config snapshot; stops the loopback process if no longer used."""
        if not isinstance(config, DetectionConfig):
            raise InvalidConfigError(f"expected DetectionConfig, got {type(config).__name__}")
        previous, self.config = self.config, config
        logger.info(
            "Detection config updated: layer_mode=%s external_mode=%s threshold=%.2f",
            config.layer_mode.value, config.external_mode.value, config.confidence_threshold,
        )
        if previous.runs_external and not config.runs_external and self._bridge is not None:
            await self._bridge.aclose()

    def get_layer_status(self) -> LayerStatus:
        """Which layers would contribute right now (configured *and* working)."""
        cfg = self.config
        return LayerStatus(
            pattern=True,
            local_ner=cfg.runs_local and self.local_ner.available,
            external=cfg.runs_external and self._bridge is not None and self._bridge.available,
        )

    def add_custom_pattern(self, name: str, pattern: str) -> None:
        """Add a runtime pattern; its matches are reported with type *name*."""
        self.patterns.add_custom_pattern(name, pattern)
        logger.info("Custom pattern added: %s", name)

    def reload_exclusions(self, regions: Iterable[str] | None = None) -> ExclusionSet:
        return self.exclusions.reload(regions)

    async def aclose(self) -> None:
        if self._bridge is not None:
            await self._bridge.aclose()

    async def __aenter__(self) -> PIIDetector:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
