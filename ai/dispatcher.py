"""Protocol state machine as a pure ``(state, event) -> (state, effects)`` reducer."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Union

from ai.events import (
    AssistantTextDelta,
    AssistantTextDone,
    AudioDelta,
    ChannelClosed,
    ChannelOpened,
    ErrorEvent,
    FunctionCallDelta,
    FunctionCallDone,
    FunctionCallRequest,
    MalformedEvent,
    ResponseCancelled,
    ResponseDone,
    SessionCreated,
    SessionEvent,
    SessionUpdated,
    SpeechStarted,
    SpeechStopped,
    TextMessageSent,
    ToolResultDelivered,
    UnknownEvent,
    UserTranscriptCompleted,
    UserTranscriptDelta,
)
from ai.transcript import Speaker
from ai.utils import DEFAULT_STOP_PHRASES, find_stop_phrase
from interaction.state import AssistantMode


@dataclass(frozen=True)
class AppendDelta:
    speaker: Speaker
    text: str


@dataclass(frozen=True)
class FinalizeMessage:
    speaker: Speaker
    text: str | None
    # resolved tool calls that belong on this message
    tool_call_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class AttachToolCalls:
    """Place resolved calls whose response already finalized, or had no text yet."""

    call_ids: tuple[str, ...]
    patch_latest: bool


@dataclass(frozen=True)
class DiscardPartial:
    speaker: Speaker


@dataclass(frozen=True)
class ExecuteTool:
    call_id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class SurfaceError:
    message: str
    code: str | None = None


@dataclass(frozen=True)
class RequestDisconnect:
    phrase: str


Effect = Union[
    AppendDelta,
    FinalizeMessage,
    AttachToolCalls,
    DiscardPartial,
    ExecuteTool,
    SurfaceError,
    RequestDisconnect,
]


@dataclass(frozen=True)
class PendingCall:
    """Function call whose arguments are still streaming."""

    call_id: str
    name: str
    response_id: str | None
    arguments: str = ""


@dataclass(frozen=True)
class DeferredFinal:
    response_id: str
    text: str | None


@dataclass(frozen=True)
class SessionState:
    """Reducer-owned protocol state for one connection."""

    mode: AssistantMode = AssistantMode.IDLE
    tool_in_flight: str | None = None
    pending: Mapping[str, PendingCall] = field(default_factory=lambda: MappingProxyType({}))
    dispatched: frozenset[str] = frozenset()
    # call_id -> response_id for calls whose result has not been delivered yet
    outstanding: Mapping[str, str | None] = field(default_factory=lambda: MappingProxyType({}))
    # (call_id, response_id) delivered but not yet placed on a message
    resolved: tuple[tuple[str, str | None], ...] = ()
    tool_responses: frozenset[str] = frozenset()
    deferred: tuple[DeferredFinal, ...] = ()
    last_assistant_response: str | None = None
    stop_phrases: tuple[str, ...] = DEFAULT_STOP_PHRASES

    def fresh(self, mode: AssistantMode) -> "SessionState":
        return SessionState(mode=mode, stop_phrases=self.stop_phrases)

    def awaiting_response(self, response_id: str | None) -> bool:
        return response_id is not None and response_id in self.outstanding.values()


Reduction = tuple[SessionState, tuple[Effect, ...]]


def _frozen(mapping: dict) -> Mapping:
    return MappingProxyType(mapping)


def _dispatch(state: SessionState, calls: list[FunctionCallRequest], response_id: str | None) -> Reduction:
    """Emit ``ExecuteTool`` once per call id and record the calls as outstanding."""

    effects: list[Effect] = []
    dispatched = set(state.dispatched)
    outstanding = dict(state.outstanding)
    pending = dict(state.pending)
    tool_responses = set(state.tool_responses)
    for call in calls:
        pending.pop(call.call_id, None)
        if not call.call_id or call.call_id in dispatched:
            continue
        dispatched.add(call.call_id)
        outstanding[call.call_id] = response_id
        if response_id:
            tool_responses.add(response_id)
        effects.append(ExecuteTool(call_id=call.call_id, name=call.name, arguments=call.arguments))
    new_state = replace(
        state,
        pending=_frozen(pending),
        dispatched=frozenset(dispatched),
        outstanding=_frozen(outstanding),
        tool_responses=frozenset(tool_responses),
    )
    return new_state, tuple(effects)


def _on_function_call_delta(state: SessionState, event: FunctionCallDelta) -> Reduction:
    if not event.call_id or event.call_id in state.dispatched:
        return replace(state, mode=AssistantMode.PROCESSING), ()
    existing = state.pending.get(event.call_id)
    name = event.name or (existing.name if existing else "")
    call = PendingCall(
        call_id=event.call_id,
        name=name,
        response_id=event.response_id or (existing.response_id if existing else None),
        arguments=(existing.arguments if existing else "") + event.delta,
    )
    pending = dict(state.pending)
    pending[event.call_id] = call
    tool_responses = state.tool_responses
    if call.response_id:
        tool_responses = tool_responses | {call.response_id}
    return (
        replace(
            state,
            mode=AssistantMode.PROCESSING,
            tool_in_flight=name or state.tool_in_flight,
            pending=_frozen(pending),
            tool_responses=tool_responses,
        ),
        (),
    )


def _on_function_call_done(state: SessionState, event: FunctionCallDone) -> Reduction:
    cleared = replace(state, tool_in_flight=None)
    if not event.call_id or event.call_id in state.dispatched:
        return cleared, ()
    existing = state.pending.get(event.call_id)
    name = event.name or (existing.name if existing else "")
    arguments = event.arguments if event.arguments is not None else (existing.arguments if existing else "")
    response_id = event.response_id or (existing.response_id if existing else None)
    call = FunctionCallRequest(call_id=event.call_id, name=name, arguments=arguments)
    return _dispatch(cleared, [call], response_id)


def _on_text_done(state: SessionState, event: AssistantTextDone) -> Reduction:
    rid = event.response_id
    if rid is not None and rid in state.tool_responses and (
        state.awaiting_response(rid) or any(call.response_id == rid for call in state.pending.values())
    ):
        deferred = state.deferred + (DeferredFinal(response_id=rid, text=event.text),)
        return replace(state, mode=AssistantMode.PROCESSING, deferred=deferred), ()
    return (
        replace(state, mode=AssistantMode.LISTENING, last_assistant_response=rid),
        (FinalizeMessage(speaker=Speaker.ASSISTANT, text=event.text),),
    )


def _on_response_done(state: SessionState, event: ResponseDone) -> Reduction:
    unresolved = [call for call in event.function_calls if call.call_id not in state.dispatched]
    new_state, effects = _dispatch(state, unresolved, event.response_id)
    # arguments that never completed within a finished response are abandoned
    new_state = replace(new_state, pending=_frozen({}), tool_in_flight=None)
    if new_state.outstanding:
        return replace(new_state, mode=AssistantMode.PROCESSING), effects
    deferred = new_state.deferred
    released = tuple(FinalizeMessage(Speaker.ASSISTANT, item.text) for item in deferred)
    last = deferred[-1].response_id if deferred else new_state.last_assistant_response
    return (
        replace(new_state, mode=AssistantMode.LISTENING, deferred=(), last_assistant_response=last),
        effects + released,
    )


def _on_tool_result(state: SessionState, event: ToolResultDelivered) -> Reduction:
    """Release the calling response's deferred text together with its resolved calls."""

    if event.call_id not in state.outstanding:
        return state, ()
    outstanding = dict(state.outstanding)
    response_id = outstanding.pop(event.call_id)
    resolved = state.resolved + ((event.call_id, response_id),)
    new_state = replace(state, outstanding=_frozen(outstanding), resolved=resolved)
    if response_id is not None and response_id in outstanding.values():
        return new_state, ()

    call_ids = tuple(call_id for call_id, rid in resolved if rid == response_id)
    new_state = replace(new_state, resolved=tuple(item for item in resolved if item[1] != response_id))
    deferred = [item for item in state.deferred if response_id is not None and item.response_id == response_id]
    if not deferred:
        patch_latest = response_id is None or state.last_assistant_response == response_id
        return new_state, (AttachToolCalls(call_ids=call_ids, patch_latest=patch_latest),)

    released = tuple(
        FinalizeMessage(Speaker.ASSISTANT, item.text, tool_call_ids=call_ids if index == 0 else ())
        for index, item in enumerate(deferred)
    )
    remaining = tuple(item for item in state.deferred if item.response_id != response_id)
    return replace(new_state, deferred=remaining, last_assistant_response=response_id), released


def _on_user_transcript(state: SessionState, event: UserTranscriptCompleted) -> Reduction:
    effects: list[Effect] = [FinalizeMessage(speaker=Speaker.USER, text=event.transcript)]
    phrase = find_stop_phrase(event.transcript, state.stop_phrases)
    if phrase is not None:
        effects.append(RequestDisconnect(phrase=phrase))
    return state, tuple(effects)


def reduce(state: SessionState, event: SessionEvent) -> Reduction:
    """Advance the session state by one event. Pure; never raises."""

    if isinstance(event, SpeechStarted):
        return replace(state, mode=AssistantMode.LISTENING, tool_in_flight=None), ()
    if isinstance(event, SpeechStopped):
        return replace(state, mode=AssistantMode.PROCESSING), ()
    if isinstance(event, FunctionCallDelta):
        return _on_function_call_delta(state, event)
    if isinstance(event, FunctionCallDone):
        return _on_function_call_done(state, event)
    if isinstance(event, AudioDelta):
        return replace(state, mode=AssistantMode.SPEAKING), ()
    if isinstance(event, AssistantTextDelta):
        return (
            replace(state, mode=AssistantMode.SPEAKING),
            (AppendDelta(speaker=Speaker.ASSISTANT, text=event.text),) if event.text else (),
        )
    if isinstance(event, AssistantTextDone):
        return _on_text_done(state, event)
    if isinstance(event, ResponseDone):
        return _on_response_done(state, event)
    if isinstance(event, ResponseCancelled):
        return (
            replace(state, mode=AssistantMode.LISTENING, tool_in_flight=None),
            (DiscardPartial(speaker=Speaker.ASSISTANT),),
        )
    if isinstance(event, UserTranscriptDelta):
        return state, (AppendDelta(speaker=Speaker.USER, text=event.text),) if event.text else ()
    if isinstance(event, UserTranscriptCompleted):
        return _on_user_transcript(state, event)
    if isinstance(event, ErrorEvent):
        return state, (SurfaceError(message=event.message, code=event.code),)
    if isinstance(event, ToolResultDelivered):
        return _on_tool_result(state, event)
    if isinstance(event, TextMessageSent):
        return (
            replace(state, mode=AssistantMode.PROCESSING),
            (FinalizeMessage(speaker=Speaker.USER, text=event.text),),
        )
    if isinstance(event, ChannelOpened):
        return state.fresh(AssistantMode.LISTENING), ()
    if isinstance(event, ChannelClosed):
        return state.fresh(AssistantMode.IDLE), ()
    if isinstance(event, (SessionCreated, SessionUpdated, UnknownEvent, MalformedEvent)):
        return state, ()
    return state, ()
