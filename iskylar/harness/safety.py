"""
Safety Interceptor — the crisis check that runs alongside every turn.

For each user input the interceptor decides whether the turn shows crisis
signals. When it does, it produces a short supportive message followed by a
fixed block of crisis resources, and that response replaces whatever the
normal reasoning path would have said.

The contract is deliberately small:
- an empty string means "no intervention"
- a non-empty string is the complete reply for the turn
- a fault during classification propagates; the caller treats it as no
  intervention (a classifier error is never a safety trigger)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from iskylar.config import SafetyConfig
from iskylar.types import SESSION_START_SENTINEL

logger = structlog.get_logger(__name__)

CRISIS_RESOURCES = (
    "If you are in immediate danger or thinking about ending your life, "
    "please reach out right now:\n"
    "- 988 Suicide & Crisis Lifeline: call or text 988 (US)\n"
    "- Crisis Text Line: text HELLO to 741741\n"
    "- Emergency Services: call 911\n\n"
    "I am an AI companion, not a replacement for professional help."
)

_RESPONSE_INSTRUCTIONS = (
    "You are a calm, compassionate crisis-support companion. The user may be "
    "at risk. In two or three short sentences, acknowledge what they shared, "
    "tell them they are not alone, and gently encourage them to contact the "
    "resources that will be listed after your message. Do not diagnose, do "
    "not list resources yourself, and do not ask more than one question."
)

_STATIC_SUPPORT = (
    "I'm really glad you told me, and I'm so sorry you're carrying this. "
    "You don't have to face it alone, and talking to someone right now can help."
)


@dataclass
class SafetyCheckResult:
    """Outcome of one classification, kept for logging and tests."""
    triggered: bool = False
    matched: Optional[str] = None


class SafetyInterceptor:
    """
    Keyword classifier plus a model-written supportive message.

    ``engine`` only needs an async ``complete(system_prompt, text,
    temperature=..., max_tokens=...)`` method.
    """

    def __init__(self, config: SafetyConfig, engine: Any = None):
        self._config = config
        self._engine = engine
        self._phrases = [phrase for phrase in config.crisis_phrases if phrase]
        self._interventions = 0

        logger.info(
            "safety_interceptor.initialized",
            enabled=config.enabled,
            phrases=len(self._phrases),
        )

    def classify(self, user_input: str) -> SafetyCheckResult:
        """Case-insensitive substring match over whitespace-normalized text.

        Inflected forms count: "self-harming" matches "self-harm".
        """
        normalized = " ".join(user_input.lower().split())
        for phrase in self._phrases:
            if phrase in normalized:
                return SafetyCheckResult(triggered=True, matched=phrase)
        return SafetyCheckResult()

    async def check(self, user_input: str) -> str:
        """Return the crisis response for this input, or "" for no intervention."""
        if not self._config.enabled or user_input == SESSION_START_SENTINEL:
            return ""

        result = self.classify(user_input)
        if not result.triggered:
            return ""

        self._interventions += 1
        logger.warning("safety_interceptor.crisis_detected", matched=result.matched)
        support = await self._supportive_message(user_input)
        return f"{support}\n\n{CRISIS_RESOURCES}"

    async def _supportive_message(self, user_input: str) -> str:
        if self._engine is None:
            return _STATIC_SUPPORT
        try:
            text = await self._engine.complete(
                _RESPONSE_INSTRUCTIONS,
                user_input,
                temperature=self._config.response_temperature,
                max_tokens=self._config.response_max_tokens,
            )
        except Exception as exc:
            # The input was already classified as a crisis; the resources still go out.
            logger.error(
                "safety_interceptor.generation_failed",
                error=f"{type(exc).__name__}: {exc}",
            )
            return _STATIC_SUPPORT
        return text.strip() or _STATIC_SUPPORT

    @property
    def interventions(self) -> int:
        return self._interventions
