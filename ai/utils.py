"""Utility constants and instruction text for realtime session handling."""

from __future__ import annotations

import re
from typing import Iterable

BASE_SESSION_INSTRUCTIONS = """You are a friendly voice assistant having a live spoken conversation.
Respond conversationally and keep responses concise unless asked for detail.
When you use a tool, briefly tell the user what you are doing (for example "Let me check the weather").
Use web_search for current events, news or anything you are not sure about.
Use get_time when the user asks for the time or date anywhere in the world.
When the user shares personal information, preferences, interests or goals, save it with remember_user_info.
"""

PREFIX_PADDING_MS = 300
SILENCE_THRESHOLD = 0.5
SILENCE_DURATION_MS = 500

DEFAULT_STOP_PHRASES = (
    "stop",
    "goodbye",
    "good bye",
    "hang up",
    "disconnect",
    "end session",
)


def build_session_instructions(*blocks: str | None) -> str:
    instruction_blocks = [BASE_SESSION_INSTRUCTIONS]
    instruction_blocks.extend(block for block in blocks if block)
    return "\n".join(instruction_blocks)


def find_stop_phrase(text: str, phrases: Iterable[str]) -> str | None:
    """Return the first stop phrase found in ``text`` on word boundaries."""

    if not text:
        return None
    lowered = text.lower()
    for phrase in phrases:
        needle = phrase.strip().lower()
        if not needle:
            continue
        pattern = r"\b" + r"\s+".join(re.escape(part) for part in needle.split()) + r"\b"
        if re.search(pattern, lowered):
            return phrase
    return None
