"""
Prompt Builder Service - assembles the message list sent to the provider

The context is built in layers:
1. System prompt for the chat mode
2. Conversation summary (only once history is long, see windowing below)
3. User memories
4. Trailing raw history
5. The new user message

Windowing: at most HISTORY_FETCH_LIMIT previous messages are loaded. When
a summary exists and more than SUMMARY_THRESHOLD messages were loaded, the
summary stands in for older turns and only the last
RECENT_MESSAGES_WITH_SUMMARY raw messages are kept.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Sequence

from app.db.models import Memory, Message

logger = logging.getLogger(__name__)

HISTORY_FETCH_LIMIT = 20
SUMMARY_THRESHOLD = 10
RECENT_MESSAGES_WITH_SUMMARY = 5


class ChatMode(str, Enum):
    CHAT = "chat"
    CONCEPT = "concept"
    DEEP = "deep"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ChatMode":
        """Unknown or missing modes fall back to chat."""
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.CHAT

    @property
    def filters_reasoning(self) -> bool:
        return self is ChatMode.DEEP


_CHAT_PROMPT = "You are Turion, a helpful AI assistant. Be clear, friendly, and concise."

_CONCEPT_PROMPT = """You are Turion, a highly helpful full-stack architect and engineer who helps beginners turn vague ideas into well-structured, scalable projects. You are patient, communicate clearly and make technical concepts accessible through concrete examples and analogies.

Your responsibilities:
- Help people with little or no technical background
- Turn vague concepts into concrete, actionable project plans
- Explain technical decisions in simple, jargon-free language
- Propose clean, scalable folder structures
- Give practical, specific advice with real-world examples
- Ask clarifying questions when information is missing

You MUST respond in the same language the user writes in.

Your response must follow EXACTLY 5 sections:
1) Understanding of the Idea (2-4 lines)
2) Essential Questions (3-5 short, direct questions with context)
3) Proposed Project Structure (tree + brief explanations)
4) Implementation Checklist (6-10 numbered steps)
5) Clean Code & Scalability Observations (3-5 practical tips with examples)"""

_DEEP_PROMPT = """You are Turion Deep Agent. Convert the provided plan into concrete technical steps and code-ready structure. Be precise, avoid fluff, and follow best practices for scalable systems.

Reason privately inside <think>...</think> before answering, then put the answer for the user inside <final>...</final>."""

SYSTEM_PROMPTS: Dict[ChatMode, str] = {
    ChatMode.CHAT: _CHAT_PROMPT,
    ChatMode.CONCEPT: _CONCEPT_PROMPT,
    ChatMode.DEEP: _DEEP_PROMPT,
}

SUMMARY_SYSTEM_PROMPT = "You are a helpful assistant that creates concise summaries."


def system_prompt_for(mode: ChatMode) -> str:
    return SYSTEM_PROMPTS.get(mode, SYSTEM_PROMPTS[ChatMode.CHAT])


def window_history(
    history: Sequence[Message],
    summary: Optional[str],
) -> List[Message]:
    """Trailing raw history to send alongside the summary (if any)."""
    history = list(history)[-HISTORY_FETCH_LIMIT:]
    if summary and len(history) > SUMMARY_THRESHOLD:
        return history[-RECENT_MESSAGES_WITH_SUMMARY:]
    return history


def format_memories(memories: Sequence[Memory]) -> str:
    lines = [f"- ({m.kind}) {m.content}" for m in memories]
    return "What you know about the user:\n" + "\n".join(lines)


def build_messages(
    mode: ChatMode,
    user_content: str,
    history: Sequence[Message],
    summary: Optional[str] = None,
    memories: Sequence[Memory] = (),
) -> List[Dict[str, str]]:
    """Build the provider message list for one turn."""
    messages = [{"role": "system", "content": system_prompt_for(mode)}]

    windowed = window_history(history, summary)
    if summary and len(windowed) < len(list(history)[-HISTORY_FETCH_LIMIT:]):
        messages.append({
            "role": "system",
            "content": f"Summary of the earlier conversation:\n{summary}",
        })

    if memories:
        messages.append({"role": "system", "content": format_memories(memories)})

    for msg in windowed:
        # Failed turns can leave empty assistant messages behind
        if not msg.content:
            continue
        messages.append({"role": msg.role, "content": msg.content})

    messages.append({"role": "user", "content": user_content})
    return messages


def build_summary_messages(history: Sequence[Message]) -> List[Dict[str, str]]:
    transcript = "\n\n".join(f"{m.role}: {m.content}" for m in history if m.content)
    prompt = (
        "Summarize this conversation between a user and an AI assistant.\n\n"
        "Focus on:\n"
        "1. The user's goals and ideas\n"
        "2. Key requirements and decisions\n"
        "3. Technology choices\n"
        "4. Open questions\n\n"
        "Keep it concise (under 500 words).\n\n"
        f"Conversation:\n{transcript}"
    )
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
