"""Typed control events exchanged with the realtime endpoint."""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Union


@dataclass(frozen=True)
class FunctionCallRequest:
    call_id: str
    name: str
    arguments: str = ""


@dataclass(frozen=True)
class SessionCreated:
    session_id: str | None = None


@dataclass(frozen=True)
class SessionUpdated:
    pass


@dataclass(frozen=True)
class SpeechStarted:
    item_id: str | None = None


@dataclass(frozen=True)
class SpeechStopped:
    item_id: str | None = None


@dataclass(frozen=True)
class FunctionCallDelta:
    call_id: str
    name: str = ""
    delta: str = ""
    response_id: str | None = None


@dataclass(frozen=True)
class FunctionCallDone:
    call_id: str
    name: str = ""
    arguments: str | None = None
    response_id: str | None = None


@dataclass(frozen=True)
class AudioDelta:
    response_id: str | None = None
    audio: str = ""


@dataclass(frozen=True)
class AssistantTextDelta:
    """Partial assistant text, from an audio transcript or a text response."""

    text: str
    response_id: str | None = None


@dataclass(frozen=True)
class AssistantTextDone:
    text: str | None
    response_id: str | None = None


@dataclass(frozen=True)
class ResponseDone:
    response_id: str | None = None
    function_calls: tuple[FunctionCallRequest, ...] = ()


@dataclass(frozen=True)
class ResponseCancelled:
    response_id: str | None = None


@dataclass(frozen=True)
class UserTranscriptDelta:
    text: str
    item_id: str | None = None


@dataclass(frozen=True)
class UserTranscriptCompleted:
    transcript: str
    item_id: str | None = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    code: str | None = None


@dataclass(frozen=True)
class UnknownEvent:
    kind: str


@dataclass(frozen=True)
class MalformedEvent:
    reason: str


# Local lifecycle facts, fed through the same reducer as wire events.


@dataclass(frozen=True)
class ChannelOpened:
    pass


@dataclass(frozen=True)
class ChannelClosed:
    pass


@dataclass(frozen=True)
class ToolResultDelivered:
    call_id: str


@dataclass(frozen=True)
class TextMessageSent:
    text: str


InboundEvent = Union[
    SessionCreated,
    SessionUpdated,
    SpeechStarted,
    SpeechStopped,
    FunctionCallDelta,
    FunctionCallDone,
    AudioDelta,
    AssistantTextDelta,
    AssistantTextDone,
    ResponseDone,
    ResponseCancelled,
    UserTranscriptDelta,
    UserTranscriptCompleted,
    ErrorEvent,
    UnknownEvent,
    MalformedEvent,
]

LocalEvent = Union[ChannelOpened, ChannelClosed, ToolResultDelivered, TextMessageSent]

SessionEvent = Union[InboundEvent, LocalEvent]

MALFORMED = "malformed"


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _response_id(event: dict[str, Any]) -> str | None:
    rid = _opt_str(event.get("response_id"))
    if rid:
        return rid
    response = event.get("response")
    if isinstance(response, dict):
        return _opt_str(response.get("id"))
    return None


def _function_calls(response: dict[str, Any]) -> tuple[FunctionCallRequest, ...]:
    calls: list[FunctionCallRequest] = []
    for item in response.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "function_call":
            continue
        call_id = _str(item.get("call_id"))
        if not call_id:
            continue
        calls.append(
            FunctionCallRequest(
                call_id=call_id,
                name=_str(item.get("name")),
                arguments=_str(item.get("arguments")),
            )
        )
    return tuple(calls)


def _parse_output_item_added(event: dict[str, Any]) -> InboundEvent:
    item = event.get("item")
    if isinstance(item, dict) and item.get("type") == "function_call" and item.get("call_id"):
        return FunctionCallDelta(
            call_id=_str(item.get("call_id")),
            name=_str(item.get("name")),
            delta="",
            response_id=_response_id(event),
        )
    return UnknownEvent(kind=_str(event.get("type")))


def _parse_response_done(event: dict[str, Any]) -> InboundEvent:
    response = event.get("response") if isinstance(event.get("response"), dict) else {}
    if response.get("status") == "cancelled":
        return ResponseCancelled(response_id=_response_id(event))
    return ResponseDone(response_id=_response_id(event), function_calls=_function_calls(response))


def _parse_error(event: dict[str, Any]) -> InboundEvent:
    error = event.get("error")
    if isinstance(error, dict):
        message = _str(error.get("message")) or "Unknown error"
        return ErrorEvent(message=message, code=_opt_str(error.get("code")) or _opt_str(error.get("type")))
    if isinstance(error, str) and error:
        return ErrorEvent(message=error)
    return ErrorEvent(message=_str(event.get("message")) or "Unknown error")


_FUNCTION_CALL_DELTA = {"response.function_call_delta", "response.function_call_arguments.delta"}
_FUNCTION_CALL_DONE = {"response.function_call_done", "response.function_call_arguments.done"}
_AUDIO_DELTA = {"response.audio.delta", "response.output_audio.delta"}
_TRANSCRIPT_DELTA = {
    "response.audio_transcript.delta",
    "response.output_audio_transcript.delta",
    "response.text.delta",
    "response.output_text.delta",
}
_TRANSCRIPT_DONE = {
    "response.audio_transcript.done": "transcript",
    "response.output_audio_transcript.done": "transcript",
    "response.text.done": "text",
    "response.output_text.done": "text",
}


def parse_payload(event: dict[str, Any]) -> InboundEvent:
    """Classify a decoded control event. Never raises."""

    event_type = event.get("type")
    if not isinstance(event_type, str) or not event_type:
        return MalformedEvent(reason="missing event type")

    if event_type == "session.created":
        session = event.get("session") if isinstance(event.get("session"), dict) else {}
        return SessionCreated(session_id=_opt_str(session.get("id")))
    if event_type == "session.updated":
        return SessionUpdated()
    if event_type == "input_audio_buffer.speech_started":
        return SpeechStarted(item_id=_opt_str(event.get("item_id")))
    if event_type == "input_audio_buffer.speech_stopped":
        return SpeechStopped(item_id=_opt_str(event.get("item_id")))
    if event_type in _FUNCTION_CALL_DELTA:
        return FunctionCallDelta(
            call_id=_str(event.get("call_id")),
            name=_str(event.get("name")),
            delta=_str(event.get("delta")),
            response_id=_response_id(event),
        )
    if event_type in _FUNCTION_CALL_DONE:
        arguments = event.get("arguments")
        return FunctionCallDone(
            call_id=_str(event.get("call_id")),
            name=_str(event.get("name")),
            arguments=arguments if isinstance(arguments, str) else None,
            response_id=_response_id(event),
        )
    if event_type == "response.output_item.added":
        return _parse_output_item_added(event)
    if event_type in _AUDIO_DELTA:
        return AudioDelta(response_id=_response_id(event), audio=_str(event.get("delta")))
    if event_type in _TRANSCRIPT_DELTA:
        return AssistantTextDelta(text=_str(event.get("delta")), response_id=_response_id(event))
    if event_type in _TRANSCRIPT_DONE:
        text = event.get(_TRANSCRIPT_DONE[event_type])
        return AssistantTextDone(text=text if isinstance(text, str) else None, response_id=_response_id(event))
    if event_type == "response.done":
        return _parse_response_done(event)
    if event_type == "response.cancelled":
        return ResponseCancelled(response_id=_response_id(event))
    if event_type == "conversation.item.input_audio_transcription.delta":
        return UserTranscriptDelta(text=_str(event.get("delta")), item_id=_opt_str(event.get("item_id")))
    if event_type == "conversation.item.input_audio_transcription.completed":
        return UserTranscriptCompleted(
            transcript=_str(event.get("transcript")),
            item_id=_opt_str(event.get("item_id")),
        )
    if event_type == "error":
        return _parse_error(event)
    return UnknownEvent(kind=event_type)


def decode_event(raw: str | bytes | dict[str, Any]) -> tuple[str, InboundEvent]:
    """Return ``(wire name, typed event)`` for a raw control message."""

    if isinstance(raw, dict):
        payload: Any = raw
    else:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError, UnicodeDecodeError) as exc:
            return MALFORMED, MalformedEvent(reason=f"invalid JSON: {exc}")
    if not isinstance(payload, dict):
        return MALFORMED, MalformedEvent(reason="event is not a JSON object")
    event = parse_payload(payload)
    name = payload.get("type") if isinstance(payload.get("type"), str) and payload.get("type") else MALFORMED
    return name, event


# Outbound builders.


def session_update(session: dict[str, Any]) -> dict[str, Any]:
    return {"type": "session.update", "session": session}


def response_create() -> dict[str, Any]:
    return {"type": "response.create"}


def function_call_output(call_id: str, output: Any) -> dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "function_call_output",
            "call_id": call_id,
            "output": json.dumps(output, default=str),
        },
    }


def user_text_message(text: str) -> dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": text}],
        },
    }


def input_audio_append(audio_b64: str) -> dict[str, Any]:
    return {"type": "input_audio_buffer.append", "audio": audio_b64}
