"""
Session Memory — what a companion remembers between sessions.

At the end of a session the caller hands over a short summary (themes,
emotional patterns, insights). At the start of the next one the most recent
summary is loaded and woven into the system prompt. The store itself is an
external collaborator; this module defines the contract and ships two
adapters:

- InMemorySessionMemory: process-local, for tests and the CLI
- JsonFileSessionMemory: one JSON file per user under the data directory,
  keeping the most recent N summaries

Only uses: pydantic, structlog and the standard library. No iskylar imports.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger(__name__)


class SessionSummary(BaseModel):
    """One ended session, as remembered."""

    session_id: str = Field(default_factory=lambda: f"sess-{uuid.uuid4().hex[:12]}")
    user_id: str = ""
    timestamp: float = Field(default_factory=time.time)
    conversational_themes: list[str] = Field(default_factory=list)
    emotional_patterns: list[str] = Field(default_factory=list)
    key_insights: list[str] = Field(default_factory=list)
    duration: float = 0.0
    privacy_level: str = "standard"

    def to_prompt_text(self) -> str:
        lines = []
        if self.conversational_themes:
            lines.append("Themes: " + ", ".join(self.conversational_themes))
        if self.emotional_patterns:
            lines.append("Emotional patterns: " + ", ".join(self.emotional_patterns))
        if self.key_insights:
            lines.append("Insights: " + "; ".join(self.key_insights))
        return "\n".join(lines)


@runtime_checkable
class SessionMemoryStore(Protocol):
    async def load(self, user_id: str) -> Optional[SessionSummary]:
        """Most recent summary for the user, or None."""
        ...

    async def save(self, user_id: str, summary: SessionSummary) -> bool:
        """Persist a summary; returns False when it could not be stored."""
        ...

    async def recent(self, user_id: str, limit: int = 3) -> list[SessionSummary]:
        """Newest-first summaries, at most ``limit``."""
        ...


class InMemorySessionMemory:
    def __init__(self, max_per_user: int = 20) -> None:
        self._max_per_user = max(1, max_per_user)
        self._by_user: dict[str, list[SessionSummary]] = {}

    async def load(self, user_id: str) -> Optional[SessionSummary]:
        history = self._by_user.get(user_id)
        return history[-1] if history else None

    async def save(self, user_id: str, summary: SessionSummary) -> bool:
        history = self._by_user.setdefault(user_id, [])
        history.append(summary.model_copy(update={"user_id": user_id}))
        del history[: -self._max_per_user]
        return True

    async def recent(self, user_id: str, limit: int = 3) -> list[SessionSummary]:
        history = self._by_user.get(user_id, [])
        return list(reversed(history[-limit:])) if limit > 0 else []


class JsonFileSessionMemory:
    """
    Per-user JSON files under ``data_dir/session_memory``.

    File names are a hash of the user id, so arbitrary ids never become
    paths. Disk access runs in a worker thread.
    """

    def __init__(self, data_dir: Path, max_per_user: int = 20) -> None:
        self.memory_dir = Path(data_dir) / "session_memory"
        self.max_per_user = max(1, max_per_user)
        self.memory_dir.mkdir(parents=True, exist_ok=True)
        self._best_effort_chmod(self.memory_dir, 0o700)

    def _path_for(self, user_id: str) -> Path:
        digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:32]
        return self.memory_dir / f"{digest}.json"

    def _read(self, user_id: str) -> list[SessionSummary]:
        path = self._path_for(user_id)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("session_memory.read_failed", path=str(path), error=str(e))
            return []

        summaries: list[SessionSummary] = []
        for entry in raw.get("sessions", []) if isinstance(raw, dict) else []:
            try:
                summaries.append(SessionSummary.model_validate(entry))
            except ValidationError:
                logger.warning("session_memory.corrupted_entry_skipped", path=str(path))
        return summaries

    def _write(self, user_id: str, summaries: list[SessionSummary]) -> bool:
        path = self._path_for(user_id)
        payload = {"sessions": [s.model_dump() for s in summaries[-self.max_per_user:]]}
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            self._best_effort_chmod(tmp_path, 0o600)
            tmp_path.replace(path)
        except OSError as e:
            logger.error("session_memory.write_failed", path=str(path), error=str(e))
            return False
        return True

    async def load(self, user_id: str) -> Optional[SessionSummary]:
        summaries = await asyncio.to_thread(self._read, user_id)
        return summaries[-1] if summaries else None

    async def save(self, user_id: str, summary: SessionSummary) -> bool:
        def _append() -> bool:
            summaries = self._read(user_id)
            summaries.append(summary.model_copy(update={"user_id": user_id}))
            return self._write(user_id, summaries)

        saved = await asyncio.to_thread(_append)
        if saved:
            logger.info("session_memory.saved", session_id=summary.session_id)
        return saved

    async def recent(self, user_id: str, limit: int = 3) -> list[SessionSummary]:
        summaries = await asyncio.to_thread(self._read, user_id)
        return list(reversed(summaries[-limit:])) if limit > 0 else []

    @staticmethod
    def _best_effort_chmod(path: Path, mode: int) -> None:
        try:
            path.chmod(mode)
        except OSError:
            logger.debug("session_memory.chmod_skipped", path=str(path), mode=oct(mode))


def extract_session_summary(session_state_json: Optional[str]) -> dict[str, list[str]]:
    """
    Pull the remembered fields out of a client's session-state JSON.

    Missing, empty or unparseable input yields empty lists.
    """
    empty: dict[str, list[str]] = {
        "conversational_themes": [],
        "emotional_patterns": [],
        "key_insights": [],
    }
    if not session_state_json:
        return empty
    try:
        state: Any = json.loads(session_state_json)
    except json.JSONDecodeError:
        return empty
    if not isinstance(state, dict):
        return empty

    def _strings(key: str) -> list[str]:
        value = state.get(key)
        return [str(v) for v in value] if isinstance(value, list) else []

    return {
        "conversational_themes": _strings("conversationalThemes"),
        "emotional_patterns": _strings("emotionalPatterns"),
        "key_insights": _strings("keyInsights"),
    }


def detect_circular_themes(current_theme: str, past: list[SessionSummary]) -> bool:
    """True when the theme shows up in two or more of the given sessions.

    Matching is case-insensitive substring containment in either direction.
    Callers pass the recent window (three sessions by default).
    """
    needle = current_theme.strip().lower()
    if not needle:
        return False
    hits = 0
    for summary in past:
        for theme in summary.conversational_themes:
            theme_l = theme.lower()
            if theme_l and (needle in theme_l or theme_l in needle):
                hits += 1
                break
    return hits >= 2
