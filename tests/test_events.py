"""Tests for decoding realtime control events."""

from __future__ import annotations

import json

from ai.events import (
    AssistantTextDelta,
    AssistantTextDone,
    AudioDelta,
    ErrorEvent,
    FunctionCallDelta,
    FunctionCallDone,
    MalformedEvent,
    ResponseCancelled,
    ResponseDone,
    SpeechStarted,
    UnknownEvent,
    UserTranscriptCompleted,
    decode_event,
    function_call_output,
    user_text_message,
)


def test_decode_speech_started() -> None:
    name, event = decode_event(json.dumps({"type": "input_audio_buffer.speech_started", "item_id": "i1"}))

    assert name == "input_audio_buffer.speech_started"
    assert event == SpeechStarted(item_id="i1")


def test_decode_function_call_wire_aliases() -> None:
    _, short_delta = decode_event({"type": "response.function_call_delta", "call_id": "c1", "name": "get_time", "delta": "{"})
    _, long_delta = decode_event(
        {"type": "response.function_call_arguments.delta", "call_id": "c1", "delta": "}", "response_id": "r1"}
    )
    _, done = decode_event(
        {"type": "response.function_call_arguments.done", "call_id": "c1", "name": "get_time", "arguments": "{}"}
    )

    assert short_delta == FunctionCallDelta(call_id="c1", name="get_time", delta="{")
    assert long_delta == FunctionCallDelta(call_id="c1", delta="}", response_id="r1")
    assert done == FunctionCallDone(call_id="c1", name="get_time", arguments="{}")


def test_output_item_added_for_function_call_starts_a_call() -> None:
    _, event = decode_event(
        {
            "type": "response.output_item.added",
            "response_id": "r1",
            "item": {"type": "function_call", "call_id": "c9", "name": "web_search"},
        }
    )

    assert event == FunctionCallDelta(call_id="c9", name="web_search", delta="", response_id="r1")


def test_output_item_added_for_message_is_unknown() -> None:
    _, event = decode_event({"type": "response.output_item.added", "item": {"type": "message"}})

    assert event == UnknownEvent(kind="response.output_item.added")


def test_audio_and_transcript_events() -> None:
    assert decode_event({"type": "response.audio.delta", "response_id": "r", "delta": "AAA="})[1] == AudioDelta(
        response_id="r", audio="AAA="
    )
    assert decode_event({"type": "response.audio_transcript.delta", "delta": "Hi"})[1] == AssistantTextDelta(text="Hi")
    assert decode_event({"type": "response.text.delta", "delta": "Yo"})[1] == AssistantTextDelta(text="Yo")
    assert decode_event({"type": "response.audio_transcript.done", "transcript": "Hi there"})[1] == AssistantTextDone(
        text="Hi there"
    )
    assert decode_event({"type": "response.text.done", "text": "Done"})[1] == AssistantTextDone(text="Done")


def test_response_done_collects_function_calls() -> None:
    _, event = decode_event(
        {
            "type": "response.done",
            "response": {
                "id": "r1",
                "status": "completed",
                "output": [
                    {"type": "message", "content": []},
                    {"type": "function_call", "call_id": "c1", "name": "get_weather", "arguments": '{"location": "Austin"}'},
                ],
            },
        }
    )

    assert isinstance(event, ResponseDone)
    assert event.response_id == "r1"
    assert [call.call_id for call in event.function_calls] == ["c1"]
    assert event.function_calls[0].arguments == '{"location": "Austin"}'


def test_cancelled_response_done_is_a_cancellation() -> None:
    _, event = decode_event({"type": "response.done", "response": {"id": "r2", "status": "cancelled"}})

    assert event == ResponseCancelled(response_id="r2")


def test_user_transcription_completed() -> None:
    _, event = decode_event(
        {"type": "conversation.item.input_audio_transcription.completed", "item_id": "u1", "transcript": "hello"}
    )

    assert event == UserTranscriptCompleted(transcript="hello", item_id="u1")


def test_error_event_carries_message_and_code() -> None:
    _, event = decode_event({"type": "error", "error": {"message": "bad request", "code": "invalid_value"}})

    assert event == ErrorEvent(message="bad request", code="invalid_value")


def test_malformed_payloads_never_raise() -> None:
    for raw in ("{}", "not json", "[1, 2]", b"\xff\xfe", json.dumps({"type": ""})):
        name, event = decode_event(raw)
        assert name == "malformed"
        assert isinstance(event, MalformedEvent)


def test_unknown_event_type_is_preserved() -> None:
    name, event = decode_event({"type": "rate_limits.updated"})

    assert name == "rate_limits.updated"
    assert event == UnknownEvent(kind="rate_limits.updated")


def test_outbound_builders() -> None:
    output = function_call_output("c1", {"ok": True})
    message = user_text_message("hi")

    assert output["type"] == "conversation.item.create"
    assert output["item"] == {"type": "function_call_output", "call_id": "c1", "output": '{"ok": true}'}
    assert message["item"]["content"] == [{"type": "input_text", "text": "hi"}]
