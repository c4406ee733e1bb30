from __future__ import annotations

import json

import pytest

from iskylar.memory.session_memory import (
    InMemorySessionMemory,
    JsonFileSessionMemory,
    SessionMemoryStore,
    SessionSummary,
    detect_circular_themes,
    extract_session_summary,
)


def _summary(*themes: str, **extra) -> SessionSummary:
    return SessionSummary(conversational_themes=list(themes), **extra)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_in_memory_store_keeps_latest_first():
    store = InMemorySessionMemory(max_per_user=2)
    assert isinstance(store, SessionMemoryStore)
    assert await store.load("u1") is None

    for theme in ("sleep", "work", "family"):
        await store.save("u1", _summary(theme))

    latest = await store.load("u1")
    assert latest.conversational_themes == ["family"]
    assert latest.user_id == "u1"
    assert [s.conversational_themes[0] for s in await store.recent("u1", limit=5)] == ["family", "work"]
    assert await store.load("someone-else") is None


@pytest.mark.asyncio
async def test_json_store_persists_across_instances(tmp_path):
    first = JsonFileSessionMemory(tmp_path)
    assert await first.save("user@example.com", _summary("work stress", key_insights=["needs breaks"]))

    second = JsonFileSessionMemory(tmp_path)
    loaded = await second.load("user@example.com")

    assert loaded.conversational_themes == ["work stress"]
    assert loaded.key_insights == ["needs breaks"]
    files = list((tmp_path / "session_memory").glob("*.json"))
    assert len(files) == 1
    assert "example.com" not in files[0].name


@pytest.mark.asyncio
async def test_json_store_trims_to_max_per_user(tmp_path):
    store = JsonFileSessionMemory(tmp_path, max_per_user=3)
    for i in range(5):
        await store.save("u1", _summary(f"theme-{i}"))

    recent = await store.recent("u1", limit=10)
    assert [s.conversational_themes[0] for s in recent] == ["theme-4", "theme-3", "theme-2"]


@pytest.mark.asyncio
async def test_json_store_skips_corrupted_entries(tmp_path):
    store = JsonFileSessionMemory(tmp_path)
    await store.save("u1", _summary("good"))
    path = store._path_for("u1")
    data = json.loads(path.read_text(encoding="utf-8"))
    data["sessions"].append({"timestamp": "not-a-number"})
    path.write_text(json.dumps(data), encoding="utf-8")

    loaded = await store.load("u1")
    assert loaded.conversational_themes == ["good"]


@pytest.mark.asyncio
async def test_json_store_unreadable_file_is_empty(tmp_path):
    store = JsonFileSessionMemory(tmp_path)
    store._path_for("u1").write_text("{not json", encoding="utf-8")
    assert await store.load("u1") is None
    assert await store.recent("u1") == []


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_prompt_text_lists_each_field():
    text = SessionSummary(
        conversational_themes=["work", "sleep"],
        emotional_patterns=["anxious mornings"],
        key_insights=["walks help"],
    ).to_prompt_text()
    assert "Themes: work, sleep" in text
    assert "Emotional patterns: anxious mornings" in text
    assert "Insights: walks help" in text
    assert SessionSummary().to_prompt_text() == ""


def test_extract_session_summary_reads_camel_case_keys():
    raw = json.dumps({
        "conversationalThemes": ["loneliness"],
        "emotionalPatterns": ["sad evenings"],
        "keyInsights": ["calls with mom help"],
        "other": 1,
    })
    assert extract_session_summary(raw) == {
        "conversational_themes": ["loneliness"],
        "emotional_patterns": ["sad evenings"],
        "key_insights": ["calls with mom help"],
    }


@pytest.mark.parametrize("raw", [None, "", "not json", "[1, 2]"])
def test_extract_session_summary_bad_input_is_empty(raw):
    result = extract_session_summary(raw)
    assert result == {"conversational_themes": [], "emotional_patterns": [], "key_insights": []}


def test_circular_theme_needs_two_sessions():
    past = [_summary("Work stress"), _summary("sleep"), _summary("work stress again")]
    assert detect_circular_themes("work stress", past)
    assert not detect_circular_themes("sleep", past)
    assert not detect_circular_themes("", past)


def test_circular_theme_matches_substrings_both_ways():
    past = [_summary("stress"), _summary("exam stress and deadlines")]
    assert detect_circular_themes("exam stress", past)
