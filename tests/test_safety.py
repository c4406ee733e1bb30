from __future__ import annotations

import pytest

from iskylar.config import SafetyConfig
from iskylar.harness.safety import CRISIS_RESOURCES, SafetyInterceptor
from iskylar.types import SESSION_START_SENTINEL


class _StubEngine:
    def __init__(self, reply: str = "You matter, and I'm here with you.", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[dict] = []

    async def complete(self, system_prompt, text, temperature=None, max_tokens=None):
        self.calls.append({"text": text, "temperature": temperature, "max_tokens": max_tokens})
        if self.error:
            raise self.error
        return self.reply


@pytest.mark.asyncio
async def test_no_crisis_means_no_intervention(safety_config):
    engine = _StubEngine()
    interceptor = SafetyInterceptor(safety_config, engine)

    assert await interceptor.check("Can you book me a flight to Denver?") == ""
    assert engine.calls == []


@pytest.mark.asyncio
async def test_session_start_sentinel_bypasses_check():
    config = SafetyConfig(ISKYLAR_CRISIS_PHRASES="iskylar_session_start")
    interceptor = SafetyInterceptor(config, _StubEngine())
    assert await interceptor.check(SESSION_START_SENTINEL) == ""


@pytest.mark.asyncio
async def test_crisis_response_has_message_and_resources(safety_config):
    engine = _StubEngine()
    interceptor = SafetyInterceptor(safety_config, engine)

    response = await interceptor.check("Honestly I just want to DIE lately")

    assert response.startswith("You matter")
    assert response.endswith(CRISIS_RESOURCES)
    assert "988" in response and "741741" in response and "911" in response
    assert engine.calls[0]["temperature"] == 0.6
    assert engine.calls[0]["max_tokens"] == 150
    assert interceptor.interventions == 1


@pytest.mark.asyncio
async def test_generation_failure_still_returns_resources(safety_config):
    interceptor = SafetyInterceptor(safety_config, _StubEngine(error=RuntimeError("model down")))

    response = await interceptor.check("I feel hopeless")

    assert response
    assert CRISIS_RESOURCES in response


@pytest.mark.asyncio
async def test_classification_fault_propagates(safety_config):
    interceptor = SafetyInterceptor(safety_config, _StubEngine())
    with pytest.raises(AttributeError):
        await interceptor.check(None)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_disabled_interceptor_never_intervenes():
    interceptor = SafetyInterceptor(SafetyConfig(ISKYLAR_SAFETY_ENABLED=False), _StubEngine())
    assert await interceptor.check("I want to kill myself") == ""


def test_phrases_match_inside_longer_words(safety_config):
    interceptor = SafetyInterceptor(safety_config)
    assert interceptor.classify("I've been self-harming again").matched == "self-harm"
    assert interceptor.classify("pure hopelessness").triggered
    assert interceptor.classify("thinking about suicides").triggered
    result = interceptor.classify("some days I want   to die")
    assert result.triggered
    assert result.matched == "want to die"


def test_custom_phrase_list_is_lowercased():
    config = SafetyConfig(ISKYLAR_CRISIS_PHRASES="Give Up,Can't Go On")
    interceptor = SafetyInterceptor(config)
    assert config.crisis_phrases == ["give up", "can't go on"]
    assert interceptor.classify("I want to give up").triggered
