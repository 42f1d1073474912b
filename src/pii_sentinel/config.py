"""YAML/dict config loader for pii-sentinel.

Supports loading from a YAML file or a plain dict (for embedding in a
larger application config).

Example YAML:

    pii_detection:
      layer_mode: PatternPlusLocal      # PatternOnly | PatternPlusLocal | FullStack
      local_ner_enabled: true
      external_mode: Disabled           # Disabled | Lite | Full
      confidence_threshold: 0.85
      context_window_chars: 50
      language: en
      use_context_enhancement: true
      layer_timeout: 10.0
      per_type_enable:
        DATE: false
      exclusions:
        regions: [en, eu]
        search_paths: [~/.pii-sentinel/regions]
        fuzzy_matching: false
        fuzzy_threshold: 0.9
        custom: [Acme Holdings]
      local_ner:
        model: urchade/gliner_multi_pii-v1
        threshold: 0.5
      external:
        startup_timeout: 10.0
        request_timeout: 15.0
        max_failures: 3
      custom_patterns:
        EMPLOYEE_ID: 'EMP-\\d{6}'
"""

from __future__ import annotations
from pathlib import Path
from typing import Any

import yaml

from .bridge import AnalysisBridge
from .detector import DetectionConfig, PIIDetector
from .errors import InvalidConfigError
from .exclusions import DEFAULT_FUZZY_THRESHOLD, ExclusionStore
from .local_ner import DEFAULT_MODEL, LocalEntityRecognizer

_CONFIG_KEYS = (
    "layer_mode",
    "local_ner_enabled",
    "external_mode",
    "confidence_threshold",
    "per_type_enable",
    "context_window_chars",
    "language",
    "use_context_enhancement",
    "layer_timeout",
)


def _section(data: dict[str, Any]) -> dict[str, Any]:
    # Support nested under "pii_detection" key or flat
    if "pii_detection" in data:
        data = data["pii_detection"]
    if not isinstance(data, dict):
        raise InvalidConfigError("pii_detection config must be a mapping")
    return data


def load_config(data: dict[str, Any]) -> DetectionConfig:
    """Build a DetectionConfig from a config dict (from YAML or inline)."""
    data = _section(data or {})
    try:
        return DetectionConfig(**{k: data[k] for k in _CONFIG_KEYS if k in data})
    except TypeError as e:
        raise InvalidConfigError(f"invalid detection config: {e}") from e


def read_yaml(path: str | Path) -> dict[str, Any]:
    with open(Path(path).expanduser(), encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise InvalidConfigError(f"{path}: top level must be a mapping")
    return data


def load_from_yaml(path: str | Path) -> DetectionConfig:
    """Load config from a YAML file."""
    return load_config(read_yaml(path))


def create_detector(config: dict[str, Any]) -> PIIDetector:
    """Create a fully configured detector from a config dict."""
    data = _section(config or {})
    detection = load_config(data)

    excl = data.get("exclusions", {})
    extra = excl.get("custom")
    exclusions = ExclusionStore(
        excl.get("regions", ["en"]),
        search_paths=[Path(p).expanduser() for p in excl.get("search_paths", [])],
        fuzzy_matching=excl.get("fuzzy_matching"),
        fuzzy_threshold=excl.get("fuzzy_threshold", DEFAULT_FUZZY_THRESHOLD),
        extra_terms={"custom": extra} if extra else None,
    )

    ner = data.get("local_ner", {})
    local_ner = LocalEntityRecognizer(
        ner.get("model", DEFAULT_MODEL),
        threshold=ner.get("threshold", 0.5),
        timeout=detection.layer_timeout,
    )

    ext = data.get("external", {})
    bridge = AnalysisBridge(
        language=detection.language,
        startup_timeout=ext.get("startup_timeout", 10.0),
        request_timeout=ext.get("request_timeout", 15.0),
        max_failures=ext.get("max_failures", 3),
    )

    detector = PIIDetector(detection, exclusions=exclusions, local_ner=local_ner, bridge=bridge)
    for name, pattern in (data.get("custom_patterns") or {}).items():
        detector.add_custom_pattern(name, pattern)
    return detector
