"""Transcript aggregation from streaming realtime deltas."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
import itertools
from typing import Any, Callable, Iterable

from core.logging import logger


class Speaker(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ToolInvocation:
    tool: str
    arguments: dict[str, Any]
    call_id: str
    timestamp: datetime
    result: Any = None
    resolved: bool = False

    def with_result(self, result: Any) -> "ToolInvocation":
        if self.resolved:
            raise ValueError(f"Tool invocation {self.call_id} already resolved")
        return replace(self, result=result, resolved=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "args": dict(self.arguments),
            "callId": self.call_id,
            "result": self.result,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class TranscriptMessage:
    id: str
    speaker: Speaker
    text: str
    timestamp: datetime
    tool_calls: tuple[ToolInvocation, ...] | None = None
    is_complete: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "speaker": self.speaker.value,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
            "toolCalls": [call.to_dict() for call in self.tool_calls] if self.tool_calls else None,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TranscriptAggregator:
    """Accumulate per-speaker deltas into an append-only message list.

    Deltas live in a scratch buffer per speaker until ``finalize``. The
    authoritative full text from the protocol wins over the concatenated
    deltas. Tool calls are attached to the most recent assistant message that
    has none yet; otherwise they are held for the next assistant message.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._messages: list[TranscriptMessage] = []
        self._buffers: dict[Speaker, list[str]] = {Speaker.USER: [], Speaker.ASSISTANT: []}
        self._held_tool_calls: list[ToolInvocation] = []
        self._ids = itertools.count(1)

    @property
    def messages(self) -> tuple[TranscriptMessage, ...]:
        return tuple(self._messages)

    @property
    def held_tool_calls(self) -> tuple[ToolInvocation, ...]:
        return tuple(self._held_tool_calls)

    def append_delta(self, speaker: Speaker, text: str) -> None:
        if text:
            self._buffers[speaker].append(text)

    def partial(self, speaker: Speaker) -> str:
        return "".join(self._buffers[speaker])

    def discard(self, speaker: Speaker) -> None:
        self._buffers[speaker].clear()

    def finalize(
        self,
        speaker: Speaker,
        full_text: str | None = None,
        tool_calls: Iterable[ToolInvocation] | None = None,
    ) -> TranscriptMessage | None:
        buffered = self.partial(speaker)
        self._buffers[speaker].clear()
        text = (full_text if full_text is not None and full_text.strip() else buffered).strip()

        calls = list(tool_calls or ())
        if speaker is Speaker.ASSISTANT and self._held_tool_calls:
            calls = self._held_tool_calls + calls
            self._held_tool_calls = []

        if not text and not calls:
            return None

        message = TranscriptMessage(
            id=f"msg-{next(self._ids)}",
            speaker=speaker,
            text=text,
            timestamp=self._next_timestamp(),
            tool_calls=tuple(calls) if calls else None,
        )
        self._messages.append(message)
        return message

    def attach_tool_calls(self, tool_calls: Iterable[ToolInvocation]) -> TranscriptMessage | None:
        """Back-patch the latest assistant message, or hold the calls."""

        calls = tuple(tool_calls)
        if not calls:
            return None
        if self._messages:
            last = self._messages[-1]
            if last.speaker is Speaker.ASSISTANT and not last.tool_calls:
                patched = replace(last, tool_calls=calls)
                self._messages[-1] = patched
                return patched
        self.hold_tool_calls(calls)
        return None

    def hold_tool_calls(self, tool_calls: Iterable[ToolInvocation]) -> None:
        """Keep calls for the next finalized assistant message."""

        calls = list(tool_calls)
        self._held_tool_calls.extend(calls)
        logger.debug("Holding %d tool call(s) for the next assistant message", len(calls))

    def clear(self) -> None:
        self._messages.clear()

    def reset_buffers(self) -> None:
        for buffer in self._buffers.values():
            buffer.clear()
        self._held_tool_calls.clear()

    def export(self) -> dict[str, Any]:
        return {
            "timestamp": self._clock().isoformat(),
            "conversation": [message.to_dict() for message in self._messages],
        }

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if self._messages and now < self._messages[-1].timestamp:
            return self._messages[-1].timestamp
        return now
