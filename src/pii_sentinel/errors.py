"""Error taxonomy.

Only ``InvalidConfigError`` ever escapes ``PIIDetector.detect_pii``;
everything else is recovered inside the pipeline.
"""

from __future__ import annotations


class PIISentinelError(Exception):
    """Base class for all pii-sentinel errors."""


class EngineUnavailable(PIISentinelError):
    """An optional detection layer could not produce results."""

    def __init__(self, layer: str, reason: str) -> None:
        super().__init__(f"{layer} unavailable: {reason}")
        self.layer = layer
        self.reason = reason


class LayerTimeout(EngineUnavailable):
    """A layer (or the whole call) ran past its deadline."""

    def __init__(self, layer: str, timeout: float) -> None:
        super().__init__(layer, f"timed out after {timeout:.2f}s")
        self.timeout = timeout


class ConfigLoadError(PIISentinelError):
    """An exclusion region file is missing or malformed."""

    def __init__(self, region: str, reason: str) -> None:
        super().__init__(f"exclusion region {region!r}: {reason}")
        self.region = region
        self.reason = reason


class InvalidSpan(PIISentinelError, ValueError):
    """An entity's offsets do not fit the text it was detected in."""


class InvalidConfigError(PIISentinelError, ValueError):
    """Caller-supplied configuration is invalid."""


class ExclusionConfigWarning(UserWarning):
    """Exclusion lists fell back to an empty set.  Detection may over-report."""
