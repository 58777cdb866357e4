"""
Tests for chat modes and context windowing
"""

from app.db.models import Memory, Message
from app.services.prompt_builder import (
    HISTORY_FETCH_LIMIT,
    RECENT_MESSAGES_WITH_SUMMARY,
    SUMMARY_THRESHOLD,
    SYSTEM_PROMPTS,
    ChatMode,
    build_messages,
    build_summary_messages,
    system_prompt_for,
    window_history,
)


def make_history(count: int):
    roles = ["user", "assistant"]
    return [Message(role=roles[i % 2], content=f"message {i}") for i in range(count)]


# ============ Modes ============

def test_parse_known_modes():
    assert ChatMode.parse("chat") is ChatMode.CHAT
    assert ChatMode.parse("CONCEPT") is ChatMode.CONCEPT
    assert ChatMode.parse("deep") is ChatMode.DEEP


def test_unknown_mode_defaults_to_chat():
    assert ChatMode.parse("poetry") is ChatMode.CHAT
    assert ChatMode.parse(None) is ChatMode.CHAT
    assert ChatMode.parse("") is ChatMode.CHAT


def test_every_mode_has_a_prompt():
    for mode in ChatMode:
        assert system_prompt_for(mode) == SYSTEM_PROMPTS[mode]
        assert system_prompt_for(mode)


def test_only_deep_mode_filters_reasoning():
    assert ChatMode.DEEP.filters_reasoning
    assert not ChatMode.CHAT.filters_reasoning
    assert not ChatMode.CONCEPT.filters_reasoning


# ============ Windowing ============

def test_window_keeps_everything_at_threshold():
    history = make_history(SUMMARY_THRESHOLD)
    assert window_history(history, "a summary") == history


def test_window_cuts_to_recent_above_threshold():
    history = make_history(SUMMARY_THRESHOLD + 1)
    windowed = window_history(history, "a summary")
    assert windowed == history[-RECENT_MESSAGES_WITH_SUMMARY:]


def test_window_without_summary_keeps_fetched_history():
    history = make_history(HISTORY_FETCH_LIMIT + 5)
    assert window_history(history, None) == history[-HISTORY_FETCH_LIMIT:]


# ============ Message assembly ============

def test_build_messages_layout_without_summary():
    history = make_history(4)
    messages = build_messages(ChatMode.CHAT, "new question", history)

    assert messages[0] == {"role": "system", "content": SYSTEM_PROMPTS[ChatMode.CHAT]}
    assert [m["content"] for m in messages[1:-1]] == [f"message {i}" for i in range(4)]
    assert messages[-1] == {"role": "user", "content": "new question"}


def test_summary_is_ignored_while_history_is_short():
    history = make_history(SUMMARY_THRESHOLD)
    messages = build_messages(ChatMode.CHAT, "q", history, summary="old stuff")

    assert not any("old stuff" in m["content"] for m in messages)
    assert len(messages) == SUMMARY_THRESHOLD + 2


def test_summary_replaces_older_turns():
    history = make_history(SUMMARY_THRESHOLD + 1)
    messages = build_messages(ChatMode.DEEP, "q", history, summary="old stuff")

    assert messages[0]["content"] == SYSTEM_PROMPTS[ChatMode.DEEP]
    assert messages[1]["role"] == "system"
    assert "old stuff" in messages[1]["content"]
    raw = messages[2:-1]
    assert len(raw) == RECENT_MESSAGES_WITH_SUMMARY
    assert raw[-1]["content"] == f"message {SUMMARY_THRESHOLD}"


def test_memories_are_injected_before_history():
    memories = [
        Memory(content="Ana", kind="fact"),
        Memory(content="answer briefly", kind="preference"),
    ]
    messages = build_messages(ChatMode.CHAT, "q", make_history(2), memories=memories)

    block = messages[1]
    assert block["role"] == "system"
    assert "- (fact) Ana" in block["content"]
    assert "- (preference) answer briefly" in block["content"]
    assert messages[2]["content"] == "message 0"


def test_empty_history_messages_are_skipped():
    history = [Message(role="user", content="hi"), Message(role="assistant", content="")]
    messages = build_messages(ChatMode.CHAT, "again", history)
    assert [m["content"] for m in messages] == [SYSTEM_PROMPTS[ChatMode.CHAT], "hi", "again"]


def test_summary_prompt_contains_transcript():
    messages = build_summary_messages(make_history(2))
    assert messages[0]["role"] == "system"
    assert "user: message 0" in messages[1]["content"]
    assert "assistant: message 1" in messages[1]["content"]
