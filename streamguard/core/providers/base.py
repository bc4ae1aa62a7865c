from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from streamguard.errors import ProviderError


@dataclass
class ServerConfig:
    id: int
    type: str              # 'plex' | 'jellyfin'
    name: str
    url: Optional[str]
    local_url: Optional[str]
    public_url: Optional[str]
    token: Optional[str]
    server_identifier: str
    settings_json: Optional[str]


def resolution_from_height(height: Optional[int]) -> Optional[str]:
    if not height:
        return None
    h = int(height)
    if h >= 2000:
        return "4K"
    if h >= 1000:
        return "1080p"
    if h >= 700:
        return "720p"
    if h >= 470:
        return "480p"
    return "SD"


def to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    s = str(value).strip()
    if s.isdigit():
        return int(s)
    try:
        return int(float(s))
    except ValueError:
        return None


class BaseProvider:
    provider_name: str  # 'plex' | 'jellyfin'

    def __init__(self, server: ServerConfig, timeout: int = 8) -> None:
        self.server = server
        self.timeout = timeout

    def _candidate_bases(self) -> List[str]:
        """
        IMPORTANT: url > local_url > public_url
        """
        bases: List[str] = []
        invalid_literals = {"none", "null", "undefined", ""}

        for u in (
            getattr(self.server, "url", None),
            getattr(self.server, "local_url", None),
            getattr(self.server, "public_url", None),
        ):
            if not u:
                continue

            b = str(u).strip().rstrip("/")
            if b.lower() in invalid_literals:
                continue

            # Évite les "192.168.1.60:32400" sans schéma
            if not (b.startswith("http://") or b.startswith("https://")):
                continue

            if b not in bases:
                bases.append(b)

        return bases

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> requests.Response:
        """
        Essaie chaque URL candidate ; la première réponse 2xx gagne.
        Lève ProviderError avec la liste des tentatives sinon.
        """
        bases = self._candidate_bases()
        if not bases:
            raise ProviderError(f"{self.provider_name} server URL missing")

        last_exc: Optional[Exception] = None
        errors: List[str] = []

        for base in bases:
            url = f"{base}{path}"
            try:
                r = requests.request(
                    method,
                    url,
                    params=params,
                    headers=headers,
                    json=json_body,
                    timeout=self.timeout,
                )
                r.raise_for_status()
                return r
            except requests.exceptions.RequestException as e:
                last_exc = e
                code = getattr(getattr(e, "response", None), "status_code", None)
                errors.append(f"{method} {url} -> {code or type(e).__name__}")
                continue

        raise ProviderError(
            f"{self.provider_name} unreachable via any URL. Attempts: {', '.join(errors)}"
        ) from last_exc

    def get_active_sessions(self) -> List[Dict[str, Any]]:
        """
        Retourne une liste de sessions NORMALISÉES (clés de RawSession),
        pas le raw du provider.
        """
        raise NotImplementedError

    def send_session_message(self, session_key: str, title: str, text: str, timeout_ms: int = 8000) -> bool:
        return False

    def terminate_session(self, session_key: str, reason: str = "") -> bool:
        raise NotImplementedError
