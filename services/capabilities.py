"""Capability providers backing the declared realtime tools."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.errors import BackendError, ToolProviderError
from services.backend_client import BackendClient

MEMORY_TYPES = ("preference", "personal_info", "interest", "goal", "context", "important_fact")


def _normalize_unit(unit: str | None, default: str = "F") -> str:
    value = (unit or default).strip().lower()
    if value in {"c", "celsius", "metric"}:
        return "C"
    if value in {"f", "fahrenheit", "imperial"}:
        return "F"
    raise ToolProviderError(f"Unsupported temperature unit: {unit}")


class WeatherProvider:
    """``GET /weather?location=&unit=``."""

    def __init__(self, client: BackendClient) -> None:
        self._client = client

    async def current(self, location: str, unit: str | None = None) -> dict[str, Any]:
        location = (location or "").strip()
        if not location:
            raise ToolProviderError("A location is required for weather lookups")
        params = {"location": location, "unit": _normalize_unit(unit)}
        try:
            payload = await asyncio.to_thread(self._client.get_json, "/weather", params)
        except BackendError as exc:
            raise ToolProviderError(f"Weather lookup failed: {exc}") from exc
        if "currentWeather" not in payload:
            raise ToolProviderError("Weather response did not include current conditions")
        return payload


class SearchProvider:
    """``POST /search {query, num_results}``."""

    def __init__(self, client: BackendClient, *, max_results: int = 5) -> None:
        self._client = client
        self._max_results = max(1, int(max_results))

    async def search(self, query: str, num_results: int | None = None) -> dict[str, Any]:
        query = (query or "").strip()
        if not query:
            raise ToolProviderError("A search query is required")
        count = self._max_results if num_results is None else int(num_results)
        count = min(self._max_results, max(1, count))
        try:
            payload = await asyncio.to_thread(
                self._client.post_json,
                "/search",
                {"query": query, "num_results": count},
            )
        except BackendError as exc:
            raise ToolProviderError(f"Web search failed: {exc}") from exc
        results = payload.get("results") or []
        return {
            "query": query,
            "results": [
                {
                    "title": item.get("title"),
                    "url": item.get("url"),
                    "snippet": item.get("snippet"),
                    "source": item.get("source"),
                }
                for item in results
                if isinstance(item, dict)
            ],
            "total_results": payload.get("total_results", len(results)),
        }


class MemoryProvider:
    """``POST /memories`` for writes and ``GET /memories`` for context."""

    def __init__(self, client: BackendClient) -> None:
        self._client = client

    async def remember(self, memory_type: str, content: str, importance: int = 5) -> dict[str, Any]:
        if memory_type not in MEMORY_TYPES:
            raise ToolProviderError(f"Unknown memory type: {memory_type}")
        content = (content or "").strip()
        if not content:
            raise ToolProviderError("Memory content must not be empty")
        importance = min(10, max(1, int(importance)))
        try:
            payload = await asyncio.to_thread(
                self._client.post_json,
                "/memories",
                {"memoryType": memory_type, "content": content, "importance": importance},
            )
        except BackendError as exc:
            raise ToolProviderError(f"Saving memory failed: {exc}") from exc
        memory = payload.get("memory") or {}
        return {
            "saved": True,
            "memory_id": memory.get("id"),
            "memory_type": memory_type,
            "importance": importance,
        }

    async def recent(self, *, limit: int = 8, importance_min: int = 6) -> list[dict[str, Any]]:
        try:
            payload = await asyncio.to_thread(
                self._client.get_json,
                "/memories",
                {"limit": limit, "importance_min": importance_min},
            )
        except BackendError as exc:
            raise ToolProviderError(f"Loading memories failed: {exc}") from exc
        memories = payload.get("memories") or []
        return [item for item in memories if isinstance(item, dict)][:limit]


@dataclass
class TimeProvider:
    """Local wall clock rendered in an IANA timezone."""

    clock: Callable[[], datetime] = lambda: datetime.now(dt_timezone.utc)
    default_timezone: str | None = None

    async def now(self, timezone: str | None = None) -> dict[str, Any]:
        utc_now = self.clock().astimezone(dt_timezone.utc)
        requested = timezone or self.default_timezone
        label = requested or "local"
        try:
            local = utc_now.astimezone(ZoneInfo(requested)) if requested else utc_now.astimezone()
        except (ZoneInfoNotFoundError, ValueError):
            local = utc_now.astimezone()
            label = f"local (invalid timezone '{requested}')"
        return {
            "current_time": local.strftime("%I:%M %p").lstrip("0"),
            "timezone": label,
            "utc_time": utc_now.isoformat(),
            "unix_timestamp": int(utc_now.timestamp()),
            "day_of_week": local.strftime("%A"),
            "date": local.strftime("%Y-%m-%d"),
        }


@dataclass
class CapabilityProviders:
    weather: WeatherProvider
    search: SearchProvider
    memory: MemoryProvider
    time: TimeProvider

    @classmethod
    def from_config(cls, config: dict[str, Any], client: BackendClient | None = None) -> "CapabilityProviders":
        client = client or BackendClient.from_config(config)
        tools_cfg = config.get("tools") or {}
        context_cfg = config.get("context") or {}
        return cls(
            weather=WeatherProvider(client),
            search=SearchProvider(client, max_results=int(tools_cfg.get("max_search_results", 5))),
            memory=MemoryProvider(client),
            time=TimeProvider(default_timezone=context_cfg.get("timezone")),
        )
