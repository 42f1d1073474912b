"""Tests for the detector — orchestration, redaction, anonymization, vault."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import asyncio
import importlib.util
import logging
import time

import httpx
import pytest

from pii_sentinel import (
    AnalysisBridge, DetectionConfig, ExternalMode, InvalidConfigError, LayerMode,
    LocalEntityRecognizer, PIIDetector, Vault,
)


class FakeModel:
    def __init__(self, names, score=0.8, delay=0.0, bad_offsets=False):
        self.names = names
        self.score = score
        self.delay = delay
        self.bad_offsets = bad_offsets

    def predict_entities(self, chunk, labels, threshold=0.5, flat_ner=True):
        if self.delay:
            time.sleep(self.delay)
        out = []
        for name, label in self.names.items():
            start = chunk.find(name)
            if start >= 0:
                end = 10_000 if self.bad_offsets else start + len(name)
                out.append({"start": start, "end": end, "text": name,
                            "label": label, "score": self.score})
        return out


class FakeProcess:
    pid = 4242

    def __init__(self):
        self.returncode = None

    def terminate(self):
        self.returncode = -15

    def kill(self):
        self.returncode = -9

    async def wait(self):
        return self.returncode


def _bridge(entities=(), fail=None):
    launched = []

    async def launcher(profile, language):
        if fail is not None:
            raise fail
        proc = FakeProcess()
        launched.append(proc)
        return proc, "http://127.0.0.1:5555"

    def handler(request):
        if request.url.path == "/analyze":
            return httpx.Response(200, json={"entities": list(entities)})
        return httpx.Response(200, json={"status": "ok"})

    bridge = AnalysisBridge(
        launcher=launcher, transport=httpx.MockTransport(handler),
        startup_timeout=1.0, poll_interval=0.01,
    )
    bridge.launched = launched
    return bridge


def _detector(config=None, *, names=None, bridge=None, **model_kwargs):
    local = LocalEntityRecognizer(model=FakeModel(names or {}, **model_kwargs), timeout=5.0)
    return PIIDetector(config, local_ner=local, bridge=bridge)


FULL_STACK = DetectionConfig(layer_mode=LayerMode.FULL_STACK, external_mode=ExternalMode.LITE)


# ── Pattern-only detection ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_detect_ssn():
    [entity] = await _detector().detect_pii("SSN: 123-45-6789")
    assert entity.entity_type == "SSN"
    assert entity.text == "123-45-6789"
    assert entity.confidence == 1.0


@pytest.mark.asyncio
async def test_empty_text():
    result = await _detector().detect("")
    assert result.entities == []


@pytest.mark.asyncio
async def test_plaintiff_context_lifts_name_over_threshold():
    text = "The plaintiff, John Smith, filed the motion."
    [person] = await _detector().detect_pii(text)
    assert person.entity_type == "PERSON"
    assert person.text == "John Smith"
    assert person.confidence > person.metadata["base_confidence"]


@pytest.mark.asyncio
async def test_name_without_context_stays_below_threshold():
    assert await _detector().detect_pii("Lunch with John Smith at noon.") == []


@pytest.mark.asyncio
async def test_context_enhancement_can_be_disabled():
    cfg = DetectionConfig(use_context_enhancement=False)
    text = "The plaintiff, John Smith, filed the motion."
    assert await _detector().detect_pii(text, cfg) == []


@pytest.mark.asyncio
async def test_per_type_disable():
    cfg = DetectionConfig(per_type_enable={"EMAIL": False})
    found = await _detector().detect_pii("SSN 123-45-6789, mail a@b.com", cfg)
    assert [e.entity_type for e in found] == ["SSN"]


@pytest.mark.asyncio
async def test_threshold_monotonicity():
    text = (
        "The plaintiff, John Smith, of Acme Corporation (a@b.com, 555-123-4567, "
        "192.168.1.100) met Dr. Jane Doe about Case No. 2023-CV-12345."
    )
    detector = _detector()
    counts = []
    for t in (0.0, 0.5, 0.8, 0.85, 0.9, 0.95, 1.0):
        counts.append(len(await detector.detect_pii(text, DetectionConfig(confidence_threshold=t))))
    assert all(a >= b for a, b in zip(counts, counts[1:]))
    assert counts[0] > counts[-1]


@pytest.mark.asyncio
async def test_invalid_config_is_the_only_error():
    detector = _detector()
    with pytest.raises(InvalidConfigError):
        await detector.detect("x", config="PatternOnly")
    with pytest.raises(InvalidConfigError):
        await detector.detect("x", timeout=-1)


# ── Redaction ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_redact_email():
    assert await _detector().redact_pii("Email me at john@acme.com") == "Email me at [EMAIL]"


@pytest.mark.asyncio
async def test_redact_multiple():
    redacted = await _detector().redact_pii("Call 555-123-4567 or email a@b.com")
    assert redacted == "Call [PHONE] or email [EMAIL]"


@pytest.mark.asyncio
async def test_redaction_is_idempotent():
    detector = _detector()
    text = "SSN 123-45-6789, card 4532015112830366, mail a@b.com, ip 10.0.0.1"
    once = await detector.redact_pii(text)
    assert "123-45-6789" not in once
    assert await detector.redact_pii(once) == once


# ── Anonymization ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_anonymize_reuses_placeholders():
    result = await _detector().anonymize_pii("Mail a@x.com then b@y.com then a@x.com")
    assert result.text == "Mail EMAIL_001 then EMAIL_002 then EMAIL_001"
    assert result.mapping == {"EMAIL_001": "a@x.com", "EMAIL_002": "b@y.com"}


@pytest.mark.asyncio
async def test_anonymize_shares_vault_across_calls():
    detector = _detector()
    vault = Vault()
    first = await detector.anonymize_pii("From a@x.com", vault=vault)
    second = await detector.anonymize_pii("To b@y.com, cc a@x.com", vault=vault)
    assert first.text == "From EMAIL_001"
    assert second.text == "To EMAIL_002, cc EMAIL_001"
    assert vault.rehydrate(second.text) == "To b@y.com, cc a@x.com"


# ── Layers 2 and 3 ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_local_layer_adds_entities():
    cfg = DetectionConfig(layer_mode=LayerMode.PATTERN_PLUS_LOCAL)
    detector = _detector(cfg, names={"Initech": "organization"}, score=0.9)
    result = await detector.detect("We audited Initech last year.")
    assert [(e.entity_type, e.text) for e in result.entities] == [("ORGANIZATION", "Initech")]
    assert result.diagnostics["local_ner"].candidate_count == 1
    assert result.diagnostics["local_ner"].error is None


@pytest.mark.asyncio
async def test_graceful_degradation_when_external_refuses_to_start():
    bridge = _bridge(fail=OSError("spawn failed"))
    detector = _detector(FULL_STACK, bridge=bridge)

    [entity] = await detector.detect_pii("SSN: 123-45-6789")

    assert entity.entity_type == "SSN"
    assert entity.confidence == 1.0
    assert detector.get_layer_status().external is False


@pytest.mark.asyncio
async def test_slow_local_layer_is_abandoned():
    cfg = DetectionConfig(layer_mode=LayerMode.PATTERN_PLUS_LOCAL, layer_timeout=0.05)
    detector = _detector(cfg, names={"Initech": "organization"}, delay=0.5)
    result = await detector.detect("SSN: 123-45-6789 at Initech")
    assert [e.entity_type for e in result.entities] == ["SSN"]
    assert "timed out" in result.diagnostics["local_ner"].error


@pytest.mark.asyncio
async def test_call_timeout_bounds_optional_layers():
    cfg = DetectionConfig(layer_mode=LayerMode.PATTERN_PLUS_LOCAL)
    detector = _detector(cfg, names={"Initech": "organization"}, delay=0.5)
    started = time.monotonic()
    result = await detector.detect("SSN: 123-45-6789 at Initech", timeout=0.05)
    assert time.monotonic() - started < 0.4
    assert [e.entity_type for e in result.entities] == ["SSN"]


@pytest.mark.asyncio
async def test_out_of_bounds_span_is_discarded(caplog):
    cfg = DetectionConfig(layer_mode=LayerMode.PATTERN_PLUS_LOCAL)
    detector = _detector(cfg, names={"Initech": "organization"}, bad_offsets=True)
    with caplog.at_level(logging.ERROR, logger="pii_sentinel.detector"):
        result = await detector.detect("SSN: 123-45-6789 at Initech")
    assert [e.entity_type for e in result.entities] == ["SSN"]
    assert any("Discarding entity" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_three_engines_agreeing_fuse():
    external = [{"type": "PERSON", "text": "John Smith", "start": 13, "end": 23, "score": 0.85}]
    detector = _detector(FULL_STACK, names={"John Smith": "person"}, score=0.8,
                         bridge=_bridge(external))

    result = await detector.detect("Meeting with John Smith tomorrow.")

    [person] = result.entities
    assert person.source_engine == "MultiEngine"
    assert person.confidence == pytest.approx(0.95)
    assert person.metadata["engines"] == ["ExternalNER", "LocalNER", "Pattern"]
    assert set(result.diagnostics) == {"pattern", "local_ner", "external"}
    assert detector.get_layer_status().external is True
    await detector.aclose()


# ── Runtime control ──────────────────────────────────────────────────

def test_layer_status_reflects_config():
    status = _detector().get_layer_status()
    assert status.as_dict() == {"pattern": True, "local_ner": False, "external": False}


def test_layer_status_reports_missing_local_model(monkeypatch):
    monkeypatch.delitem(sys.modules, "gliner", raising=False)
    monkeypatch.setattr(importlib.util, "find_spec", lambda name, *args: None)
    detector = PIIDetector(DetectionConfig(layer_mode=LayerMode.PATTERN_PLUS_LOCAL))
    assert detector.get_layer_status().local_ner is False


@pytest.mark.asyncio
async def test_set_detection_layer():
    bridge = _bridge()
    detector = _detector(bridge=bridge)

    await detector.set_detection_layer(LayerMode.FULL_STACK)
    assert detector.config.external_mode is ExternalMode.LITE
    await detector.detect_pii("hello there")
    assert bridge.available

    await detector.set_detection_layer("PatternOnly")
    assert not bridge.available
    assert bridge.launched[0].returncode is not None
    assert detector.get_layer_status().external is False

    with pytest.raises(InvalidConfigError):
        await detector.set_detection_layer("Everything")


@pytest.mark.asyncio
async def test_update_config():
    detector = _detector()
    await detector.update_config(DetectionConfig(confidence_threshold=0.7))
    found = await detector.detect_pii("Lunch with John Smith at noon.")
    assert [e.text for e in found] == ["John Smith"]


@pytest.mark.asyncio
async def test_add_custom_pattern():
    detector = _detector()
    detector.add_custom_pattern("EMPLOYEE_ID", r"EMP-\d{6}")
    found = await detector.detect_pii("badge EMP-123456")
    assert [(e.entity_type, e.confidence) for e in found] == [("EMPLOYEE_ID", 0.85)]


@pytest.mark.asyncio
async def test_get_statistics():
    stats = await _detector().get_statistics("SSN 123-45-6789 and 987-65-4321, mail a@b.com")
    assert stats == {"SSN": 2, "EMAIL": 1}


@pytest.mark.asyncio
async def test_reload_exclusions():
    detector = _detector(DetectionConfig(confidence_threshold=0.7))
    # a capitalised place name looks like a person until eu terms are loaded
    assert [e.text for e in await detector.detect_pii("visit The Hague")] == ["The Hague"]
    snapshot = detector.reload_exclusions(["en", "eu"])
    assert snapshot.regions == ("en", "eu")
    assert await detector.detect_pii("visit The Hague") == []


@pytest.mark.asyncio
async def test_concurrent_calls_share_one_detector():
    detector = _detector()
    texts = [f"SSN 123-45-67{i:02d}" for i in range(20)]
    results = await asyncio.gather(*(detector.detect_pii(t) for t in texts))
    assert all(len(r) == 1 for r in results)


# ── Vault ────────────────────────────────────────────────────────────

def test_vault_deterministic():
    v = Vault()
    assert v.placeholder_for("EMAIL", "a@b.com") == "EMAIL_001"
    assert v.placeholder_for("EMAIL", "a@b.com") == "EMAIL_001"
    assert v.size == 1


def test_vault_counters_per_type():
    v = Vault()
    assert v.placeholder_for("EMAIL", "a@b.com") == "EMAIL_001"
    assert v.placeholder_for("PERSON", "John Smith") == "PERSON_001"
    assert v.placeholder_for("EMAIL", "c@d.com") == "EMAIL_002"


def test_vault_rehydrate_respects_word_boundaries():
    v = Vault()
    v.placeholder_for("PERSON", "Ann")
    assert v.rehydrate("PERSON_001 and PERSON_0010") == "Ann and PERSON_0010"
    assert v.lookup("PERSON_001") == "Ann"
    v.clear()
    assert v.rehydrate("PERSON_001") == "PERSON_001"
