"""
Field resolvers for condition trees.

Each resolver reads the evaluation context and returns the field value, or
None when there is nothing to compare (no session, no coordinates, ...).
Resolvers may also record evidence on the context; the engine copies the
evidence of matched conditions into the violation data.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from streamguard.core.geoip import haversine_km, is_private_ip
from streamguard.db_utils import parse_sql_ts

DEFAULT_WINDOW_HOURS = 24
MIN_TRAVEL_HOURS = 1 / 60

RESOLUTION_RANK = {
    "sd": 0,
    "480p": 1,
    "576p": 1,
    "720p": 2,
    "1080p": 3,
    "4k": 4,
    "2160p": 4,
}


class EvaluationContext:
    def __init__(
        self,
        session: Optional[dict],
        recent_sessions: Optional[List[dict]] = None,
        active_sessions: Optional[List[dict]] = None,
        user: Optional[dict] = None,
        now: Optional[datetime] = None,
    ):
        self.session = session
        self.recent_sessions = list(recent_sessions or [])
        self.active_sessions = list(active_sessions or [])
        self.user = user
        self.now = now or datetime.now(timezone.utc)
        self.evidence: Dict[str, dict] = {}
        self._cache: Dict[Tuple[str, tuple], Any] = {}

    @property
    def user_id(self) -> Optional[int]:
        if self.user and self.user.get("id") is not None:
            return int(self.user["id"])
        if self.session and self.session.get("user_id") is not None:
            return int(self.session["user_id"])
        return None

    @property
    def server_id(self) -> Optional[int]:
        if self.session and self.session.get("server_id") is not None:
            return int(self.session["server_id"])
        if self.user and self.user.get("server_id") is not None:
            return int(self.user["server_id"])
        return None

    def session_value(self, key: str) -> Any:
        return self.session.get(key) if self.session else None

    def record(self, field_name: str, **data) -> None:
        self.evidence.setdefault(field_name, {}).update(data)

    def resolve(self, field_name: str, params: Optional[dict] = None) -> Any:
        params = params or {}
        cache_key = (field_name, tuple(sorted((k, repr(v)) for k, v in params.items())))
        if cache_key not in self._cache:
            self._cache[cache_key] = FIELD_RESOLVERS[field_name](self, params)
        return self._cache[cache_key]


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _coords(s: Optional[dict]) -> Optional[Tuple[float, float]]:
    if not s:
        return None
    lat, lon = s.get("geo_lat"), s.get("geo_lon")
    if lat is None or lon is None:
        return None
    return float(lat), float(lon)


def _same_session(a: dict, b: dict) -> bool:
    if a.get("id") is not None and b.get("id") is not None:
        return a["id"] == b["id"]
    return (a.get("server_id"), a.get("session_key")) == (b.get("server_id"), b.get("session_key"))


def _location_label(s: dict) -> str:
    parts = [p for p in (s.get("geo_city"), s.get("geo_country")) if p]
    return ", ".join(parts) if parts else (s.get("ip_address") or "unknown")


def _window_hours(params: dict) -> float:
    try:
        return float(params.get("window_hours") or DEFAULT_WINDOW_HOURS)
    except (TypeError, ValueError):
        return DEFAULT_WINDOW_HOURS


def _sessions_in_window(ctx: EvaluationContext, hours: float) -> List[dict]:
    since = ctx.now - timedelta(hours=hours)
    out = []
    for s in ctx.recent_sessions:
        started = parse_sql_ts(s.get("started_at"))
        if started is not None and started >= since:
            out.append(s)
    if ctx.session:
        out.append(ctx.session)
    return out


def _user_active_sessions(ctx: EvaluationContext) -> List[dict]:
    """Sessions actives de l'utilisateur, dédupliquées, session courante incluse."""
    uid = ctx.user_id
    out: List[dict] = []
    for s in ctx.active_sessions:
        if uid is None or s.get("user_id") != uid:
            continue
        if any(_same_session(s, o) for o in out):
            continue
        out.append(s)
    if ctx.session and not any(_same_session(ctx.session, o) for o in out):
        out.append(ctx.session)
    return out


def resolution_rank(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    return RESOLUTION_RANK.get(str(value).strip().lower())


# -------------------------------------------------------------------
# Détections
# -------------------------------------------------------------------

def travel_speed_kmh(ctx: EvaluationContext, params: dict) -> Optional[float]:
    cur = ctx.session
    cur_coords = _coords(cur)
    if cur_coords is None:
        return None
    cur_started = parse_sql_ts(cur.get("started_at")) or ctx.now

    previous = None
    for s in ctx.recent_sessions:
        if _same_session(s, cur) or _coords(s) is None:
            continue
        started = parse_sql_ts(s.get("started_at"))
        if started is None or started > cur_started:
            continue
        previous = s
        break
    if previous is None:
        return None

    prev_coords = _coords(previous)
    distance = haversine_km(prev_coords[0], prev_coords[1], cur_coords[0], cur_coords[1])
    elapsed_h = (cur_started - parse_sql_ts(previous.get("started_at"))).total_seconds() / 3600
    elapsed_h = max(elapsed_h, MIN_TRAVEL_HOURS)
    speed = distance / elapsed_h

    ctx.record(
        "travel_speed_kmh",
        from_city=_location_label(previous),
        to_city=_location_label(cur),
        from_session_id=previous.get("id"),
        distance_km=round(distance, 1),
        time_diff_hours=round(elapsed_h, 3),
        calculated_speed_kmh=round(speed, 1),
    )
    return speed


def location_distance_km(ctx: EvaluationContext, params: dict) -> Optional[float]:
    cur = ctx.session
    cur_coords = _coords(cur)
    if cur_coords is None:
        return None

    others = [s for s in _user_active_sessions(ctx) if not _same_session(s, cur) and _coords(s)]
    if not others:
        return None

    distance = max(haversine_km(*cur_coords, *_coords(s)) for s in others)
    locations = [_location_label(cur)] + [_location_label(s) for s in others]
    ctx.record(
        "location_distance_km",
        locations=locations,
        location_count=len(set(locations)),
        distance=round(distance, 1),
        related_session_ids=[s.get("id") for s in others],
    )
    return distance


def unique_ips_in_window(ctx: EvaluationContext, params: dict) -> Optional[int]:
    hours = _window_hours(params)
    ips = sorted({s.get("ip_address") for s in _sessions_in_window(ctx, hours) if s.get("ip_address")})
    ctx.record("unique_ips_in_window", ip_count=len(ips), ip_addresses=ips, window_hours=hours)
    return len(ips)


def unique_devices_in_window(ctx: EvaluationContext, params: dict) -> Optional[int]:
    hours = _window_hours(params)
    devices = sorted({
        s.get("device_id") or s.get("player_name")
        for s in _sessions_in_window(ctx, hours)
        if s.get("device_id") or s.get("player_name")
    })
    ctx.record("unique_devices_in_window", device_count=len(devices), devices=devices, window_hours=hours)
    return len(devices)


def concurrent_streams(ctx: EvaluationContext, params: dict) -> Optional[int]:
    if ctx.user_id is None:
        return None
    streams = _user_active_sessions(ctx)
    ctx.record(
        "concurrent_streams",
        stream_count=len(streams),
        related_session_ids=[s.get("id") for s in streams if s.get("id") is not None],
    )
    return len(streams)


def inactive_days(ctx: EvaluationContext, params: dict) -> Optional[float]:
    if ctx.user is None:
        return None
    last = parse_sql_ts(ctx.user.get("last_activity_at"))
    if last is None:
        ctx.record("inactive_days", inactive_days=None, never_active=True, last_activity_at=None)
        return math.inf
    days = max(0, int((ctx.now - last).total_seconds() // 86400))
    ctx.record("inactive_days", inactive_days=days, never_active=False, last_activity_at=last.isoformat())
    return days


# -------------------------------------------------------------------
# Transcode
# -------------------------------------------------------------------

def is_transcoding(ctx: EvaluationContext, params: dict) -> Optional[bool]:
    if not ctx.session:
        return None
    return bool(ctx.session.get("is_transcode"))


def is_transcode_downgrade(ctx: EvaluationContext, params: dict) -> Optional[bool]:
    if not ctx.session:
        return None
    src = resolution_rank(ctx.session.get("source_resolution"))
    out = resolution_rank(ctx.session.get("output_resolution"))
    downgrade = bool(ctx.session.get("is_transcode")) and src is not None and out is not None and out < src
    if downgrade:
        ctx.record(
            "is_transcode_downgrade",
            source_resolution=ctx.session.get("source_resolution"),
            output_resolution=ctx.session.get("output_resolution"),
        )
    return downgrade


def _session_field(key: str) -> Callable[[EvaluationContext, dict], Any]:
    def resolver(ctx: EvaluationContext, params: dict) -> Any:
        return ctx.session_value(key)
    return resolver


def _is_local_network(ctx: EvaluationContext, params: dict) -> Optional[bool]:
    ip = ctx.session_value("ip_address")
    if not ip:
        return None
    return is_private_ip(ip)


def _trust_score(ctx: EvaluationContext, params: dict) -> Optional[int]:
    if ctx.user is None or ctx.user.get("trust_score") is None:
        return None
    return int(ctx.user["trust_score"])


def _server_id(ctx: EvaluationContext, params: dict) -> Optional[int]:
    return ctx.server_id


FIELD_RESOLVERS: Dict[str, Callable[[EvaluationContext, dict], Any]] = {
    # détections
    "travel_speed_kmh": travel_speed_kmh,
    "location_distance_km": location_distance_km,
    "unique_ips_in_window": unique_ips_in_window,
    "unique_devices_in_window": unique_devices_in_window,
    "concurrent_streams": concurrent_streams,
    # géo
    "country": _session_field("geo_country"),
    "city": _session_field("geo_city"),
    "ip_address": _session_field("ip_address"),
    "is_local_network": _is_local_network,
    # compte
    "inactive_days": inactive_days,
    "trust_score": _trust_score,
    # session
    "media_type": _session_field("media_type"),
    "platform": _session_field("platform"),
    "product": _session_field("product"),
    "device": _session_field("device"),
    "server_id": _server_id,
    "bitrate": _session_field("bitrate"),
    # transcode
    "is_transcoding": is_transcoding,
    "is_transcode_downgrade": is_transcode_downgrade,
    "output_resolution": _session_field("output_resolution"),
    "source_resolution": _session_field("source_resolution"),
    "video_decision": _session_field("video_decision"),
    "audio_decision": _session_field("audio_decision"),
}

KNOWN_FIELDS = frozenset(FIELD_RESOLVERS)

TRANSCODE_FIELDS = frozenset({
    "is_transcoding",
    "is_transcode_downgrade",
    "output_resolution",
    "source_resolution",
    "video_decision",
    "audio_decision",
})

# champs calculés sur l'ensemble des sessions du user (un match = un événement par user)
USER_AGGREGATE_FIELDS = frozenset({
    "concurrent_streams",
    "location_distance_km",
    "unique_ips_in_window",
    "unique_devices_in_window",
})
