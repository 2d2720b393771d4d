"""Error taxonomy for the realtime voice session."""

from __future__ import annotations

from typing import Any, Dict


class VoiceSessionError(Exception):
    """Base class for every error surfaced by the session manager."""

    code = "session_error"

    def to_payload(self) -> Dict[str, Any]:
        return {"error": {"code": self.code, "message": str(self)}}


class DeviceError(VoiceSessionError):
    """Capture device missing, permission denied or already held."""

    code = "device_error"


class TransportError(VoiceSessionError):
    """Signaling, ICE or control-channel failure."""

    code = "transport_error"


class ProtocolError(VoiceSessionError):
    """Error event received from the remote endpoint."""

    code = "protocol_error"

    def __init__(self, message: str, *, remote_code: str | None = None) -> None:
        super().__init__(message)
        self.remote_code = remote_code

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.remote_code:
            payload["error"]["details"] = {"remote_code": self.remote_code}
        return payload


class ToolProviderError(VoiceSessionError):
    """A capability provider failed; converted into a tool result payload."""

    code = "tool_provider_error"


class BackendError(VoiceSessionError):
    """Non-2xx, network or decoding failure talking to a backend collaborator."""

    code = "backend_error"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def tool_error_payload(message: str) -> Dict[str, Any]:
    return {"error": True, "message": message}
