from __future__ import annotations

from typing import Dict, Type

from streamguard.core.providers.base import BaseProvider, ServerConfig
from streamguard.core.providers.jellyfin import JellyfinProvider
from streamguard.core.providers.plex import PlexProvider
from streamguard.db_utils import loads_json

_PROVIDERS: Dict[str, Type[BaseProvider]] = {
    "plex": PlexProvider,
    "jellyfin": JellyfinProvider,
}

DEFAULT_TIMEOUTS = {
    "plex": 8,
    "jellyfin": 15,
}


def register_provider(server_type: str, cls: Type[BaseProvider]) -> None:
    _PROVIDERS[server_type.lower()] = cls


def _coerce_server(server):
    if isinstance(server, ServerConfig):
        return server

    # Cas courant: dict venant de la DB
    if isinstance(server, dict):
        return ServerConfig(
            id=int(server.get("id") or 0),
            type=str(server.get("type") or ""),
            name=str(server.get("name") or ""),
            url=server.get("url"),
            local_url=server.get("local_url"),
            public_url=server.get("public_url"),
            token=server.get("token"),
            server_identifier=str(server.get("server_identifier") or ""),
            settings_json=server.get("settings_json"),
        )

    return server


def get_provider(server) -> BaseProvider:
    srv = _coerce_server(server)
    t = (getattr(srv, "type", None) or "").lower()

    cls = _PROVIDERS.get(t)
    if cls is None:
        raise ValueError(f"Unsupported provider type: {t}")

    settings = loads_json(getattr(srv, "settings_json", None))
    timeout = settings.get("request_timeout_sec") or DEFAULT_TIMEOUTS.get(t, 10)
    return cls(srv, timeout=int(timeout))
