"""Presidio analysis — runs inside the loopback analysis process.

Two capability profiles:

    lite  spaCy ``<lang>_core_web_sm`` (~40 MB, fast)
    full  spaCy ``<lang>_core_web_lg`` (~560 MB, more accurate)

Never imported by the main process; the bridge talks to it over HTTP.
"""

from __future__ import annotations
import threading
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from presidio_analyzer import AnalyzerEngine

PROFILES = {
    "lite": "{lang}_core_web_sm",
    "full": "{lang}_core_web_lg",
}

# Default entity types to detect (Presidio's full set is much larger)
DEFAULT_ENTITIES = [
    "PERSON",
    "ORGANIZATION",
    "LOCATION",
    "EMAIL_ADDRESS",
    "PHONE_NUMBER",
    "US_SSN",
    "CREDIT_CARD",
    "IP_ADDRESS",
    "MEDICAL_LICENSE",
]

# Lazy singleton: spaCy loads on first use
_engine: AnalyzerEngine | None = None
_engine_key: tuple[str, str] = ("", "")
_engine_lock = threading.Lock()


def get_engine(language: str = "en", profile: str = "lite") -> AnalyzerEngine:
    """Lazy-init the Presidio analyzer engine for *language* and *profile*."""
    global _engine, _engine_key
    if profile not in PROFILES:
        raise ValueError(f"unknown profile {profile!r}")
    with _engine_lock:
        if _engine is None or _engine_key != (language, profile):
            from presidio_analyzer import AnalyzerEngine
            from presidio_analyzer.nlp_engine import NlpEngineProvider

            provider = NlpEngineProvider(nlp_configuration={
                "nlp_engine_name": "spacy",
                "models": [{
                    "lang_code": language,
                    "model_name": PROFILES[profile].format(lang=language),
                }],
            })
            nlp_engine = provider.create_engine()
            _engine = AnalyzerEngine(nlp_engine=nlp_engine, supported_languages=[language])
            _engine_key = (language, profile)
        return _engine


def analyze(
    text: str,
    *,
    language: str = "en",
    profile: str = "lite",
    entities: list[str] | None = None,
    score_threshold: float = 0.0,
) -> list[dict[str, Any]]:
    """Run Presidio and return wire-format entity dicts."""
    engine = get_engine(language, profile)
    results = engine.analyze(
        text=text,
        language=language,
        entities=entities or DEFAULT_ENTITIES,
        score_threshold=score_threshold,
    )
    return sorted(
        (
            {
                "type": r.entity_type,
                "text": text[r.start:r.end],
                "start": r.start,
                "end": r.end,
                "score": r.score,
            }
            for r in results
        ),
        key=lambda e: e["start"],
    )
