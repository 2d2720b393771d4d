"""Ephemeral credential bootstrap for the realtime endpoint."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from core.errors import BackendError, TransportError
from core.logging import logger
from services.backend_client import BackendClient


@dataclass(frozen=True)
class EphemeralSession:
    session_id: str
    token: str
    details: dict[str, Any] = field(default_factory=dict)


class TokenIssuer(Protocol):
    async def create_session(self, voice: str, model: str) -> EphemeralSession:
        """Mint a one-time credential for a realtime connection."""


class SessionTokenClient:
    """Fetches ephemeral tokens from ``POST /realtime/session``."""

    def __init__(self, client: BackendClient) -> None:
        self._client = client

    async def create_session(self, voice: str, model: str) -> EphemeralSession:
        try:
            payload = await asyncio.to_thread(
                self._client.post_json,
                "/realtime/session",
                {"voice": voice, "model": model},
            )
        except BackendError as exc:
            raise TransportError(f"Failed to obtain ephemeral token: {exc}") from exc
        session = parse_session_payload(payload)
        logger.info("Realtime session minted: %s", session.session_id or "<unknown>")
        return session


def parse_session_payload(payload: dict[str, Any]) -> EphemeralSession:
    token = payload.get("ephemeralToken")
    if isinstance(token, dict):
        token = token.get("value")
    if not token or not isinstance(token, str):
        raise TransportError("No ephemeral token in session response")
    details = payload.get("sessionDetails")
    return EphemeralSession(
        session_id=str(payload.get("sessionId") or ""),
        token=token,
        details=details if isinstance(details, dict) else {},
    )
