"""Layer 2 — in-process zero-shot entity recognition with GLiNER.

The model is loaded lazily on first use and runs in a worker thread
under a hard timeout; nothing here touches the network (model files must
already be in the local Hugging Face cache or a local directory).

Inputs longer than the token budget are split into overlapping windows
of whitespace tokens.  Predictions are shifted back to offsets in the
original text and overlaps between windows are resolved with the same
rule the reconciler uses.
"""

from __future__ import annotations
import asyncio
import importlib.util
import logging
import re
import sys
import threading
from typing import TYPE_CHECKING, Any

from .errors import EngineUnavailable, LayerTimeout
from .reconciler import resolve_overlaps
from .types import EntityType, PIIEntity, SourceEngine

if TYPE_CHECKING:
    from gliner import GLiNER

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "urchade/gliner_multi_pii-v1"
MAX_WINDOW_TOKENS = 300
WINDOW_OVERLAP_TOKENS = 50

# GLiNER label prompt → entity type
LABEL_MAP: dict[str, str] = {
    "person": EntityType.PERSON.value,
    "organization": EntityType.ORGANIZATION.value,
    "location": EntityType.LOCATION.value,
    "email": EntityType.EMAIL.value,
    "phone number": EntityType.PHONE.value,
    "social security number": EntityType.SSN.value,
    "credit card number": EntityType.CREDIT_CARD.value,
    "ip address": EntityType.IP_ADDRESS.value,
    "medical record number": EntityType.MEDICAL_RECORD_NUMBER.value,
    "case number": EntityType.CASE_NUMBER.value,
}

_TOKEN = re.compile(r"\S+")


def sliding_windows(
    text: str,
    max_tokens: int = MAX_WINDOW_TOKENS,
    overlap: int = WINDOW_OVERLAP_TOKENS,
) -> list[tuple[int, int]]:
    """Character ranges ``(start, end)`` of overlapping token windows.

    Every token of *text* falls inside at least one window, and adjacent
    windows share *overlap* tokens.
    """
    if overlap >= max_tokens:
        raise ValueError("overlap must be smaller than max_tokens")
    tokens = [m.span() for m in _TOKEN.finditer(text)]
    if not tokens:
        return []
    if len(tokens) <= max_tokens:
        return [(0, len(text))]

    step = max_tokens - overlap
    windows: list[tuple[int, int]] = []
    for first in range(0, len(tokens), step):
        last = min(first + max_tokens, len(tokens)) - 1
        windows.append((tokens[first][0], tokens[last][1]))
        if last == len(tokens) - 1:
            break
    return windows


def _gliner_installed() -> bool:
    if "gliner" in sys.modules:
        return True
    try:
        return importlib.util.find_spec("gliner") is not None
    except (ImportError, ValueError):
        return False


class LocalEntityRecognizer:
    """GLiNER wrapper with lazy load, circuit breaker and timeout."""

    name = "local_ner"

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        *,
        labels: dict[str, str] | None = None,
        threshold: float = 0.5,
        timeout: float = 10.0,
        max_tokens: int = MAX_WINDOW_TOKENS,
        overlap: int = WINDOW_OVERLAP_TOKENS,
        load_kwargs: dict[str, Any] | None = None,
        model: Any = None,
    ) -> None:
        self.model_name = model_name
        self.labels = labels or LABEL_MAP
        self.threshold = threshold
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.overlap = overlap
        self._load_kwargs = {"local_files_only": True, **(load_kwargs or {})}
        self._model = model
        self._load_error: str | None = None
        self._load_lock = threading.Lock()

    @property
    def available(self) -> bool:
        """True while a model is loaded, or gliner is importable and loading has not failed."""
        if self._load_error is not None:
            return False
        return self._model is not None or _gliner_installed()

    def _get_model(self) -> GLiNER:
        if self._model is not None:
            return self._model
        with self._load_lock:
            if self._model is not None:
                return self._model
            if self._load_error is not None:
                raise EngineUnavailable(self.name, self._load_error)
            try:
                from gliner import GLiNER

                logger.info("Loading GLiNER model: %s", self.model_name)
                self._model = GLiNER.from_pretrained(self.model_name, **self._load_kwargs)
                logger.info("GLiNER model loaded.")
            except Exception as e:
                self._load_error = f"model load failed: {e}"
                logger.warning(
                    "GLiNER not available (%s). Local NER layer disabled.", e, exc_info=True,
                )
                raise EngineUnavailable(self.name, self._load_error) from e
            return self._model

    def scan_sync(self, text: str) -> list[PIIEntity]:
        """Blocking scan.  Raises EngineUnavailable if the model can't load."""
        model = self._get_model()
        prompts = list(self.labels)
        found: list[PIIEntity] = []
        for win_start, win_end in sliding_windows(text, self.max_tokens, self.overlap):
            chunk = text[win_start:win_end]
            try:
                predictions = model.predict_entities(
                    chunk, prompts, threshold=self.threshold, flat_ner=True,
                )
            except Exception as e:
                raise EngineUnavailable(self.name, f"inference failed: {e}") from e
            for pred in predictions:
                entity_type = self.labels.get(pred["label"])
                if entity_type is None:
                    continue
                start = win_start + int(pred["start"])
                end = win_start + int(pred["end"])
                found.append(PIIEntity(
                    entity_type=entity_type,
                    text=text[start:end],
                    start=start,
                    end=end,
                    confidence=float(pred["score"]),
                    source_engine=SourceEngine.LOCAL_NER.value,
                    metadata={"label": pred["label"]},
                ))
        return resolve_overlaps(found)

    async def scan(self, text: str) -> list[PIIEntity]:
        """Scan in a worker thread.  On timeout the thread is abandoned, not killed."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.scan_sync, text), self.timeout)
        except asyncio.TimeoutError as e:
            raise LayerTimeout(self.name, self.timeout) from e
