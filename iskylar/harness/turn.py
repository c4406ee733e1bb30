"""
Turn Coordination — one user utterance in, one reply out.

The coordinator owns the per-turn choreography around the graph:

1. The safety check and the graph run concurrently over the same input.
2. A non-empty safety response wins outright: the graph task is cancelled,
   its output is never shown or spoken, and the turn leaves the session's
   history untouched.
3. A safety fault fails open: it is logged and the graph's reply is used.
4. A handoff reported by the graph is applied to the session after the run,
   so the new persona answers from the next turn on.

Every run works on its own copy of the history and commits back to the
session only when its reply is the one delivered.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import structlog

from iskylar.harness.graph import GraphResult, OrchestrationGraph
from iskylar.harness.safety import SafetyInterceptor
from iskylar.memory.session_memory import (
    SessionMemoryStore,
    SessionSummary,
    detect_circular_themes,
    extract_session_summary,
)
from iskylar.personas import DEFAULT_PERSONA_ID, PERSONAS, AgentPersona, get_persona
from iskylar.types import SESSION_START_SENTINEL, ConversationState, Message

logger = structlog.get_logger(__name__)

SESSION_START_PROMPT = (
    "[The session has just started. Greet the user warmly and briefly, in character.]"
)


@dataclass
class SessionContext:
    """Per-session state. The active persona lives here and nowhere else."""

    user_id: str
    persona_id: str = DEFAULT_PERSONA_ID
    language: str = "en"
    state: ConversationState = field(default_factory=ConversationState)
    prior_summary: Optional[SessionSummary] = None
    circular_themes: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    turns: int = 0

    @property
    def persona(self) -> AgentPersona:
        return get_persona(self.persona_id)


@dataclass
class TurnResult:
    text: str
    persona_id: str
    status: str                          # "done", "inconclusive" or "safety"
    is_safety_response: bool = False
    target_agent_id: Optional[str] = None
    graph_result: Optional[GraphResult] = None


SpeechHook = Callable[[str, AgentPersona], Any]


class TurnCoordinator:
    def __init__(
        self,
        graph: OrchestrationGraph,
        safety: Optional[SafetyInterceptor] = None,
        memory_store: Optional[SessionMemoryStore] = None,
        speak: Optional[SpeechHook] = None,
        recent_sessions: int = 3,
    ):
        self._graph = graph
        self._safety = safety
        self._memory = memory_store
        self._speak = speak
        self._recent_sessions = max(1, recent_sessions)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(
        self,
        user_id: str,
        persona_id: str = DEFAULT_PERSONA_ID,
        language: str = "en",
    ) -> SessionContext:
        persona = get_persona(persona_id)
        recent: list[SessionSummary] = []
        if self._memory is not None:
            try:
                recent = await self._memory.recent(user_id, limit=self._recent_sessions)
            except Exception as exc:
                logger.warning("turn_coordinator.memory_load_failed", error=str(exc))

        prior = recent[0] if recent else None
        circular = [
            theme for theme in (prior.conversational_themes if prior else [])
            if detect_circular_themes(theme, recent)
        ]

        logger.info(
            "turn_coordinator.session_started",
            persona=persona.id,
            has_prior_summary=prior is not None,
            circular_themes=len(circular),
        )
        return SessionContext(
            user_id=user_id,
            persona_id=persona.id,
            language=language,
            prior_summary=prior,
            circular_themes=circular,
        )

    async def end_session(
        self,
        session: SessionContext,
        summary: Union[SessionSummary, dict[str, Any], str, None] = None,
    ) -> bool:
        """
        Persist the session summary; False when nothing could be stored.

        ``summary`` may be a SessionSummary, a dict of its fields, or the
        client's session-state JSON (camelCase keys), which is parsed with
        extract_session_summary().
        """
        if self._memory is None:
            return False
        if isinstance(summary, str):
            summary = SessionSummary.model_validate(extract_session_summary(summary))
        elif summary is None:
            summary = SessionSummary()
        elif isinstance(summary, dict):
            summary = SessionSummary.model_validate(summary)
        summary = summary.model_copy(update={
            "user_id": session.user_id,
            "duration": max(0.0, time.time() - session.started_at),
        })
        try:
            saved = await self._memory.save(session.user_id, summary)
        except Exception as exc:
            logger.warning("turn_coordinator.memory_save_failed", error=str(exc))
            return False
        logger.info("turn_coordinator.session_ended", turns=session.turns, saved=saved)
        return saved

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def respond(self, session: SessionContext, user_input: str) -> TurnResult:
        """
        Produce the reply for one user utterance.

        Raises:
            ModelInferenceError: the graph failed and safety did not intervene.
        """
        session.turns += 1
        persona = session.persona
        is_session_start = user_input == SESSION_START_SENTINEL

        run_state = ConversationState(session.state.messages)
        base_len = len(run_state)
        run_state.append(
            Message.user(SESSION_START_PROMPT if is_session_start else user_input),
            sender="user",
        )
        prior_text = self._prior_text(session)

        graph_task = asyncio.create_task(
            self._graph.run(run_state, persona, language=session.language, prior_summary=prior_text)
        )
        safety_task: Optional[asyncio.Task] = None
        if self._safety is not None and not is_session_start:
            safety_task = asyncio.create_task(self._safety.check(user_input))

        try:
            safety_text = await self._await_safety(safety_task)
            if safety_text:
                await self._cancel(graph_task)
                logger.warning("turn_coordinator.safety_override", persona=persona.id)
                return TurnResult(
                    text=safety_text,
                    persona_id=persona.id,
                    status="safety",
                    is_safety_response=True,
                )
            result = await graph_task
        finally:
            for task in (graph_task, safety_task):
                if task is not None and not task.done():
                    task.cancel()

        session.state.append(*run_state.since(base_len), sender=run_state.sender)
        target = self._apply_handoff(session, result.handoff_target)
        await self._invoke_speak(result.text, persona)

        return TurnResult(
            text=result.text,
            persona_id=persona.id,
            status=result.status,
            target_agent_id=target,
            graph_result=result,
        )

    @staticmethod
    def _prior_text(session: SessionContext) -> Optional[str]:
        if session.prior_summary is None:
            return None
        text = session.prior_summary.to_prompt_text()
        if session.circular_themes:
            text += "\nRecurring themes (2+ recent sessions): " + ", ".join(session.circular_themes)
        return text or None

    @staticmethod
    async def _await_safety(task: Optional[asyncio.Task]) -> str:
        if task is None:
            return ""
        try:
            verdict = await task
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "turn_coordinator.safety_check_failed",
                error=f"{type(exc).__name__}: {exc}",
            )
            return ""
        return verdict if isinstance(verdict, str) else ""

    @staticmethod
    async def _cancel(task: asyncio.Task) -> None:
        task.cancel()
        # The discarded run's outcome, including any model error, is dropped.
        await asyncio.gather(task, return_exceptions=True)

    @staticmethod
    def _apply_handoff(session: SessionContext, target: Optional[str]) -> Optional[str]:
        if not target:
            return None
        if target not in PERSONAS:
            logger.warning("turn_coordinator.unknown_handoff_target", target=target)
            return None
        if target != session.persona_id:
            logger.info("turn_coordinator.handoff", source=session.persona_id, target=target)
            session.persona_id = target
        return target

    async def _invoke_speak(self, text: str, persona: AgentPersona) -> None:
        if self._speak is None or not text:
            return
        try:
            maybe_awaitable = self._speak(text, persona)
            if inspect.isawaitable(maybe_awaitable):
                await maybe_awaitable
        except Exception as exc:
            logger.warning("turn_coordinator.speak_failed", error=str(exc))
