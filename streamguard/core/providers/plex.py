from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

from streamguard.core.providers.base import BaseProvider, resolution_from_height, to_int


def _first_attr(node: ET.Element, attr: str) -> Optional[str]:
    # Media > Part > TranscodeSession
    for m in node.findall("Media"):
        v = m.attrib.get(attr)
        if v:
            return v
    for p in node.findall(".//Part"):
        v = p.attrib.get(attr)
        if v:
            return v
    ts = node.find("TranscodeSession")
    if ts is not None:
        v = ts.attrib.get(attr)
        if v:
            return v
    return None


def _normalize_decision(v: Optional[str]) -> Optional[str]:
    if not v:
        return None
    # "direct play" / "direct_play" -> "directplay"
    v = str(v).strip().lower().replace(" ", "").replace("_", "").replace("-", "")
    return v or None


def _media_type(plex_type: Optional[str]) -> str:
    if plex_type == "movie":
        return "movie"
    if plex_type == "episode":
        return "episode"
    if plex_type == "track":
        return "track"
    return "other"


def _source_resolution(node: ET.Element) -> Optional[str]:
    media = node.find("Media")
    if media is None:
        return None
    vr = (media.attrib.get("videoResolution") or "").lower()
    if vr in ("4k", "uhd"):
        return "4K"
    if vr.isdigit():
        return resolution_from_height(int(vr))
    if vr == "sd":
        return "SD"
    return resolution_from_height(to_int(media.attrib.get("height")))


def parse_sessions_xml(xml_text: str) -> List[Dict[str, Any]]:
    root = ET.fromstring(xml_text)
    sessions: List[Dict[str, Any]] = []

    for node in root:
        session_key = node.attrib.get("sessionKey") or node.attrib.get("sessionId")
        if not session_key:
            continue

        user = node.find("User")
        player = node.find("Player")
        transcode = node.find("TranscodeSession")

        video_decision = _normalize_decision(_first_attr(node, "videoDecision"))
        audio_decision = _normalize_decision(_first_attr(node, "audioDecision"))
        decisions = {d for d in (video_decision, audio_decision) if d}
        is_transcode = "transcode" in decisions

        source_resolution = _source_resolution(node)
        output_resolution = source_resolution
        if is_transcode and transcode is not None:
            output_resolution = (
                resolution_from_height(to_int(transcode.attrib.get("height")))
                or source_resolution
            )

        bitrate = None
        if transcode is not None:
            bitrate = transcode.attrib.get("bandwidth") or transcode.attrib.get("peakBandwidth")
        if not bitrate:
            bitrate = node.attrib.get("bandwidth") or node.attrib.get("bitrate")
        if not bitrate:
            bitrate = _first_attr(node, "bitrate")

        quality = output_resolution or "unknown"
        if is_transcode and source_resolution and output_resolution != source_resolution:
            quality = f"{source_resolution} → {output_resolution}"

        sessions.append({
            "session_key": str(session_key),
            "external_user_id": user.attrib.get("id") if user is not None else None,
            "username": user.attrib.get("title") if user is not None else None,
            "user_thumb": user.attrib.get("thumb") if user is not None else None,
            "rating_key": node.attrib.get("ratingKey"),
            "media_type": _media_type(node.attrib.get("type")),
            "title": node.attrib.get("title"),
            "grandparent_title": node.attrib.get("grandparentTitle"),
            "state": (player.attrib.get("state") if player is not None else None) or "playing",
            "progress_ms": to_int(node.attrib.get("viewOffset")),
            "total_duration_ms": to_int(node.attrib.get("duration")),
            "ip_address": player.attrib.get("address") if player is not None else None,
            "player_name": player.attrib.get("title") if player is not None else None,
            "device_id": player.attrib.get("machineIdentifier") if player is not None else None,
            "product": player.attrib.get("product") if player is not None else None,
            "device": player.attrib.get("device") if player is not None else None,
            "platform": player.attrib.get("platform") if player is not None else None,
            "quality": quality,
            "is_transcode": is_transcode,
            "video_decision": video_decision,
            "audio_decision": audio_decision,
            "bitrate": to_int(bitrate),
            "source_resolution": source_resolution,
            "output_resolution": output_resolution,
        })

    return sessions


class PlexProvider(BaseProvider):
    provider_name = "plex"

    def _params(self, extra: Optional[dict] = None) -> dict:
        p = {"X-Plex-Token": self.server.token}
        if extra:
            p.update(extra)
        return p

    def get_active_sessions(self) -> List[Dict[str, Any]]:
        r = self._request("GET", "/status/sessions", params=self._params())
        return parse_sessions_xml(r.text)

    def terminate_session(self, session_key: str, reason: str = "") -> bool:
        """
        Plex: /status/sessions/terminate attend sessionId (= <Session id="...">),
        qui n'est pas toujours égal au sessionKey.
        """
        r = self._request("GET", "/status/sessions", params=self._params())
        root = ET.fromstring(r.text)

        target_session_id = None
        for node in root:
            sk = node.attrib.get("sessionKey") or node.attrib.get("sessionId")
            if str(sk) != str(session_key):
                continue
            sess = node.find("Session")
            if sess is not None and sess.attrib.get("id"):
                target_session_id = str(sess.attrib["id"])
                break

        params = {"sessionId": target_session_id or str(session_key)}
        if reason:
            params["reason"] = reason[:120]

        self._request("GET", "/status/sessions/terminate", params=self._params(params))
        return True
