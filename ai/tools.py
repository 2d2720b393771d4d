"""Tool declarations and execution for realtime function calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, Awaitable, Callable

from ai.events import function_call_output, response_create
from ai.transcript import ToolInvocation
from core.errors import ToolProviderError, TransportError, tool_error_payload
from core.logging import log_error, log_tool_call, log_warning, logger
from services.capabilities import MEMORY_TYPES, CapabilityProviders


SendFn = Callable[[dict[str, Any]], Awaitable[None]]
CompletionFn = Callable[[ToolInvocation], None]


@dataclass(frozen=True)
class ToolCallContext:
    """Everything a tool call needs, captured when the call is issued."""

    send: SendFn
    on_complete: CompletionFn | None = None
    location: str = ""
    temperature_unit: str = "F"
    timezone: str | None = None


ToolFn = Callable[..., Awaitable[Any]]

function_map: dict[str, ToolFn] = {}

tools: list[dict[str, Any]] = []


async def get_weather(
    providers: CapabilityProviders,
    context: ToolCallContext,
    location: str | None = None,
    unit: str | None = None,
) -> dict[str, Any]:
    """Current conditions, defaulting to the user's own location and unit."""

    location = (location or "").strip() or context.location
    if not location:
        raise ToolProviderError("No location given and no default location configured")
    payload = await providers.weather.current(location, unit or context.temperature_unit)
    return {
        "location": payload.get("location", location),
        "currentWeather": payload.get("currentWeather"),
    }


async def web_search(
    providers: CapabilityProviders,
    context: ToolCallContext,
    query: str,
    num_results: int | None = None,
) -> dict[str, Any]:
    return await providers.search.search(query, num_results)


async def get_time(
    providers: CapabilityProviders,
    context: ToolCallContext,
    timezone: str | None = None,
) -> dict[str, Any]:
    return await providers.time.now(timezone or context.timezone)


async def remember_user_info(
    providers: CapabilityProviders,
    context: ToolCallContext,
    memory_type: str,
    content: str,
    importance: int = 5,
) -> dict[str, Any]:
    return await providers.memory.remember(memory_type, content, importance)


tools.append(
    {
        "type": "function",
        "name": "get_weather",
        "description": (
            "Get current weather conditions for a location. If the user does not name a "
            "location, omit it and the user's own location is used."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "location": {
                    "type": "string",
                    "description": 'City name, address, or coordinates (e.g., "Austin", "Paris, France")',
                },
                "unit": {
                    "type": "string",
                    "enum": ["celsius", "fahrenheit"],
                    "description": "Temperature unit; defaults to the user's preference",
                },
            },
            "required": [],
        },
    }
)

function_map["get_weather"] = get_weather

tools.append(
    {
        "type": "function",
        "name": "web_search",
        "description": "Search the web for current information, news, facts, or any topic",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query"},
                "num_results": {
                    "type": "integer",
                    "description": "Number of results (1-5)",
                    "minimum": 1,
                    "maximum": 5,
                },
            },
            "required": ["query"],
        },
    }
)

function_map["web_search"] = web_search

tools.append(
    {
        "type": "function",
        "name": "get_time",
        "description": "Get the current time and date, optionally for a specific timezone",
        "parameters": {
            "type": "object",
            "properties": {
                "timezone": {
                    "type": "string",
                    "description": 'IANA timezone name (e.g., "America/New_York"); omit for local time',
                },
            },
            "required": [],
        },
    }
)

function_map["get_time"] = get_time

tools.append(
    {
        "type": "function",
        "name": "remember_user_info",
        "description": "Remember important information about the user for future conversations",
        "parameters": {
            "type": "object",
            "properties": {
                "memory_type": {
                    "type": "string",
                    "description": "Type of memory",
                    "enum": list(MEMORY_TYPES),
                },
                "content": {"type": "string", "description": "The information to remember about the user"},
                "importance": {
                    "type": "integer",
                    "description": "Importance level 1-10",
                    "minimum": 1,
                    "maximum": 10,
                },
            },
            "required": ["memory_type", "content"],
        },
    }
)

function_map["remember_user_info"] = remember_user_info

TOOL_DISPLAY_NAMES = {
    "get_weather": "Getting weather",
    "web_search": "Searching web",
    "get_time": "Getting time",
    "remember_user_info": "Saving memory",
}


def tool_display_name(name: str | None) -> str | None:
    if not name:
        return None
    return TOOL_DISPLAY_NAMES.get(name, name.replace("_", " ").capitalize())


def parse_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolProviderError(f"Invalid tool arguments: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise ToolProviderError("Tool arguments must be a JSON object")
    return parsed


class ToolExecutor:
    """Run tool calls in the background and deliver exactly one result each."""

    def __init__(
        self,
        providers: CapabilityProviders,
        *,
        timeout_s: float = 20.0,
        registry: dict[str, ToolFn] | None = None,
    ) -> None:
        self._providers = providers
        self._timeout_s = float(timeout_s)
        self._registry = registry if registry is not None else function_map
        self._seen: set[str] = set()
        self._tasks: dict[str, asyncio.Task[ToolInvocation | None]] = {}

    @property
    def in_flight(self) -> tuple[str, ...]:
        return tuple(call_id for call_id, task in self._tasks.items() if not task.done())

    def execute(
        self,
        tool_name: str,
        args: str | dict[str, Any] | None,
        call_id: str,
        *,
        context: ToolCallContext,
    ) -> asyncio.Task[ToolInvocation | None] | None:
        if call_id in self._seen:
            logger.info("Ignoring duplicate tool call %s (%s)", call_id, tool_name)
            return None
        self._seen.add(call_id)
        task = asyncio.get_running_loop().create_task(
            self.run(tool_name, args, call_id, context=context),
            name=f"tool:{tool_name}:{call_id}",
        )
        self._tasks[call_id] = task
        task.add_done_callback(lambda _task: self._tasks.pop(call_id, None))
        return task

    async def run(
        self,
        tool_name: str,
        args: str | dict[str, Any] | None,
        call_id: str,
        *,
        context: ToolCallContext,
    ) -> ToolInvocation | None:
        started = datetime.now(timezone.utc)
        try:
            arguments = parse_arguments(args)
        except ToolProviderError as exc:
            arguments = {}
            result: Any = tool_error_payload(str(exc))
        else:
            result = await self._invoke(tool_name, arguments, context)

        invocation = ToolInvocation(tool=tool_name, arguments=arguments, call_id=call_id, timestamp=started)
        resolved = invocation.with_result(result)
        log_tool_call(tool_name, arguments, result)

        try:
            await context.send(function_call_output(call_id, result))
            await context.send(response_create())
        except TransportError as exc:
            log_warning(f"Dropping result for tool call {call_id} ({tool_name}): {exc}")
            return None

        if context.on_complete is not None:
            context.on_complete(resolved)
        return resolved

    async def _invoke(self, tool_name: str, arguments: dict[str, Any], context: ToolCallContext) -> Any:
        handler = self._registry.get(tool_name)
        if handler is None:
            message = f"Unknown tool '{tool_name}'"
            log_error(message)
            return tool_error_payload(message)
        try:
            return await asyncio.wait_for(handler(self._providers, context, **arguments), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            message = f"Tool '{tool_name}' timed out after {self._timeout_s:g}s"
        except ToolProviderError as exc:
            message = str(exc)
        except TypeError as exc:
            message = f"Invalid arguments for '{tool_name}': {exc}"
        except Exception as exc:
            logger.exception("Tool '%s' failed", tool_name)
            message = f"Error executing function '{tool_name}': {exc}"
        log_error(message)
        return tool_error_payload(message)

    async def drain(self) -> None:
        """Wait until every scheduled tool call has finished."""

        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()

    def reset(self) -> None:
        self.cancel_all()
        self._seen.clear()
