"""Outbound header assembly for calls to the backend."""
from enum import Enum
from typing import Dict, Mapping, Optional

from .config import Config

PROTOCOL_OPENAI = "openai"
PROTOCOL_OLLAMA = "ollama"


class HeaderPurpose(str, Enum):
    MODELS = "models"
    SHOW = "show"
    TAGS = "tags"
    CHAT = "chat"


# Purposes that may carry OpenRouter-style attribution headers
ATTRIBUTION_PURPOSES = {HeaderPurpose.CHAT, HeaderPurpose.MODELS}


def _client_authorization(client_auth: Optional[str], client_headers: Optional[Mapping[str, str]]) -> Optional[str]:
    if client_auth:
        return client_auth
    if client_headers:
        for name, value in client_headers.items():
            if name.lower() == "authorization" and value:
                return value
    return None


def build_backend_headers(
    config: Config,
    client_auth: Optional[str],
    client_headers: Optional[Mapping[str, str]],
    purpose: HeaderPurpose,
    protocol: Optional[str] = None,
    forward_client_auth: bool = True,
) -> Dict[str, str]:
    """
    Build the header set for one backend call.

    A client-supplied Authorization header is forwarded untouched when
    ``forward_client_auth`` is set, so clients can rotate their own backend
    keys. Otherwise the server's configured key is used, if any.
    """
    purpose = HeaderPurpose(purpose)
    protocol = protocol or (PROTOCOL_OLLAMA if config.is_ollama_mode else PROTOCOL_OPENAI)

    headers: Dict[str, str] = {"Content-Type": "application/json"}
    if purpose is not HeaderPurpose.CHAT:
        headers["Accept"] = "application/json"

    forwarded = _client_authorization(client_auth, client_headers) if forward_client_auth else None
    if forwarded:
        headers["Authorization"] = forwarded
    elif config.backend_api_key:
        headers["Authorization"] = f"Bearer {config.backend_api_key}"

    if purpose in ATTRIBUTION_PURPOSES and protocol == PROTOCOL_OPENAI:
        if config.referer:
            headers["HTTP-Referer"] = config.referer
        if config.title:
            headers["X-Title"] = config.title

    return headers
