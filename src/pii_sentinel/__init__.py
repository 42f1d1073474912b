"""PII Sentinel — offline, layered PII detection for legal and financial text."""

from .detector import PIIDetector, DetectionConfig, LayerMode, ExternalMode
from .vault import Vault
from .patterns import PatternEngine, luhn_valid
from .exclusions import ExclusionSet, ExclusionStore
from .context import ContextEnhancer, ContextRule
from .reconciler import reconcile
from .local_ner import LocalEntityRecognizer
from .bridge import AnalysisBridge, ServiceState
from .config import create_detector, load_config, load_from_yaml
from .errors import (
    PIISentinelError, EngineUnavailable, LayerTimeout, ConfigLoadError,
    InvalidSpan, InvalidConfigError, ExclusionConfigWarning,
)
from .types import (
    PIIEntity, EntityType, SourceEngine, DetectionResult, LayerDiagnostics,
    LayerStatus, AnonymizedText,
)

__all__ = [
    "PIIDetector", "DetectionConfig", "LayerMode", "ExternalMode",
    "Vault",
    "PatternEngine", "luhn_valid",
    "ExclusionSet", "ExclusionStore",
    "ContextEnhancer", "ContextRule",
    "reconcile",
    "LocalEntityRecognizer",
    "AnalysisBridge", "ServiceState",
    "create_detector", "load_config", "load_from_yaml",
    "PIISentinelError", "EngineUnavailable", "LayerTimeout", "ConfigLoadError",
    "InvalidSpan", "InvalidConfigError", "ExclusionConfigWarning",
    "PIIEntity", "EntityType", "SourceEngine", "DetectionResult", "LayerDiagnostics",
    "LayerStatus", "AnonymizedText",
]
__version__ = "0.1.0"
