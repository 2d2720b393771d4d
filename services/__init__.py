"""Backend collaborators used by the realtime session."""

from services.backend_client import BackendClient
from services.capabilities import CapabilityProviders
from services.session_tokens import SessionTokenClient

__all__ = ["BackendClient", "CapabilityProviders", "SessionTokenClient"]
