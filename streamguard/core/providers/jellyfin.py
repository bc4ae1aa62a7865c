from __future__ import annotations

from typing import Any, Dict, List, Optional

from streamguard.core.providers.base import BaseProvider, resolution_from_height, to_int

# Jellyfin compte en ticks de 100ns
TICKS_PER_MS = 10_000


def _ticks_to_ms(ticks: Any) -> Optional[int]:
    v = to_int(ticks)
    return v // TICKS_PER_MS if v is not None else None


def _media_type(item_type: Optional[str]) -> str:
    t = (item_type or "").lower()
    if t == "movie":
        return "movie"
    if t == "episode":
        return "episode"
    if t == "audio":
        return "track"
    return "other"


def _video_height(item: dict) -> Optional[int]:
    h = to_int(item.get("Height"))
    if h:
        return h
    for st in item.get("MediaStreams") or []:
        if isinstance(st, dict) and st.get("Type") == "Video":
            h2 = to_int(st.get("Height"))
            if h2:
                return h2
    return None


def normalize_session(s: dict) -> Optional[Dict[str, Any]]:
    item = s.get("NowPlayingItem")
    if not isinstance(item, dict):
        # Session ouverte sans lecture en cours
        return None

    play_state = s.get("PlayState") or {}
    transcoding = s.get("TranscodingInfo") or {}

    method = (play_state.get("PlayMethod") or "").lower()
    is_transcode = method == "transcode"

    video_direct = transcoding.get("IsVideoDirect")
    audio_direct = transcoding.get("IsAudioDirect")
    if transcoding:
        video_decision = "copy" if video_direct else "transcode"
        audio_decision = "copy" if audio_direct else "transcode"
    else:
        video_decision = "directplay" if method in ("directplay", "") else method
        audio_decision = video_decision

    source_resolution = resolution_from_height(_video_height(item))
    output_resolution = source_resolution
    if is_transcode:
        output_resolution = resolution_from_height(to_int(transcoding.get("Height"))) or source_resolution

    quality = output_resolution or "unknown"
    if is_transcode and source_resolution and output_resolution != source_resolution:
        quality = f"{source_resolution} → {output_resolution}"

    bitrate = to_int(transcoding.get("Bitrate")) or to_int(item.get("Bitrate"))

    return {
        "session_key": str(s.get("Id") or ""),
        "external_user_id": s.get("UserId"),
        "username": s.get("UserName"),
        "user_thumb": None,
        "rating_key": item.get("Id"),
        "media_type": _media_type(item.get("Type")),
        "title": item.get("Name"),
        "grandparent_title": item.get("SeriesName"),
        "state": "paused" if play_state.get("IsPaused") else "playing",
        "progress_ms": _ticks_to_ms(play_state.get("PositionTicks")),
        "total_duration_ms": _ticks_to_ms(item.get("RunTimeTicks")),
        "ip_address": s.get("RemoteEndPoint"),
        "player_name": s.get("DeviceName"),
        "device_id": s.get("DeviceId"),
        "product": s.get("Client"),
        "device": s.get("DeviceName"),
        "platform": s.get("Client"),
        "quality": quality,
        "is_transcode": is_transcode,
        "video_decision": video_decision,
        "audio_decision": audio_decision,
        # Jellyfin donne des bps, on stocke des kbps comme Plex
        "bitrate": bitrate // 1000 if bitrate and bitrate > 100_000 else bitrate,
        "source_resolution": source_resolution,
        "output_resolution": output_resolution,
    }


class JellyfinProvider(BaseProvider):
    provider_name = "jellyfin"

    def _headers(self) -> dict:
        return {
            "X-Emby-Token": self.server.token or "",
            "Accept": "application/json",
        }

    def get_active_sessions(self) -> List[Dict[str, Any]]:
        r = self._request("GET", "/Sessions", headers=self._headers())
        data = r.json()
        sessions: List[Dict[str, Any]] = []
        for s in data if isinstance(data, list) else []:
            if not isinstance(s, dict):
                continue
            norm = normalize_session(s)
            if norm:
                sessions.append(norm)
        return sessions

    def send_session_message(self, session_key: str, title: str, text: str, timeout_ms: int = 8000) -> bool:
        session_id = str(session_key).split(":", 1)[0]
        payload = {
            "Header": title,
            "Text": text,
            "TimeoutMs": int(timeout_ms),
        }
        self._request("POST", f"/Sessions/{session_id}/Message", headers=self._headers(), json_body=payload)
        return True

    def terminate_session(self, session_key: str, reason: str = "") -> bool:
        session_id = str(session_key).split(":", 1)[0]
        self._request("POST", f"/Sessions/{session_id}/Playing/Stop", headers=self._headers(), json_body={})
        return True
