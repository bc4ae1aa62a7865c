from __future__ import annotations

from typing import Any, Dict, List, Optional

from streamguard.core.geoip import GeoIPResolver, GeoLocation, UNKNOWN_LOCATION
from streamguard.core.providers.base import to_int
from streamguard.db_utils import to_sql_ts
from streamguard.logging_utils import get_logger

logger = get_logger("monitoring.mappers")


class MalformedSession(ValueError):
    pass


# Champs texte recopiés tels quels depuis le provider
_TEXT_FIELDS = (
    "rating_key",
    "media_type",
    "title",
    "grandparent_title",
    "ip_address",
    "player_name",
    "device_id",
    "product",
    "device",
    "platform",
    "quality",
    "video_decision",
    "audio_decision",
    "source_resolution",
    "output_resolution",
)

_INT_FIELDS = ("progress_ms", "total_duration_ms", "bitrate")


def normalize_state(state: Any) -> str:
    s = str(state or "").strip().lower()
    if s == "paused":
        return "paused"
    # buffering / unknown : on considère la lecture en cours
    return "playing"


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def parse_raw_session(raw: Any) -> Dict[str, Any]:
    """
    Valide une session normalisée venant d'un provider.
    Raises MalformedSession when the identity fields are missing.
    """
    if not isinstance(raw, dict):
        raise MalformedSession(f"session payload is {type(raw).__name__}, expected dict")

    session_key = _text(raw.get("session_key"))
    if not session_key:
        raise MalformedSession("missing session_key")

    external_user_id = _text(raw.get("external_user_id"))
    if not external_user_id:
        raise MalformedSession(f"missing external_user_id (session_key={session_key})")

    out: Dict[str, Any] = {
        "session_key": session_key,
        "external_user_id": external_user_id,
        "username": _text(raw.get("username")) or external_user_id,
        "user_thumb": _text(raw.get("user_thumb")),
        "state": normalize_state(raw.get("state")),
        "is_transcode": bool(raw.get("is_transcode")),
    }
    for key in _TEXT_FIELDS:
        out[key] = _text(raw.get(key))
    for key in _INT_FIELDS:
        out[key] = to_int(raw.get(key))

    if out["progress_ms"] is not None and out["progress_ms"] < 0:
        raise MalformedSession(f"negative progress_ms (session_key={session_key})")

    return out


def parse_raw_sessions(raw_sessions: Any, server_id: int) -> List[Dict[str, Any]]:
    """Drops malformed entries (logged) and duplicate keys (first one wins)."""
    if not isinstance(raw_sessions, list):
        logger.warning(f"[server {server_id}] adapter returned {type(raw_sessions).__name__}, ignoring")
        return []

    out: List[Dict[str, Any]] = []
    seen = set()
    for raw in raw_sessions:
        try:
            parsed = parse_raw_session(raw)
        except MalformedSession as e:
            logger.warning(f"[server {server_id}] dropping malformed session: {e}")
            continue
        if parsed["session_key"] in seen:
            logger.warning(f"[server {server_id}] duplicate session_key {parsed['session_key']}, ignoring")
            continue
        seen.add(parsed["session_key"])
        out.append(parsed)
    return out


# -------------------------------------------------------------------
# Users
# -------------------------------------------------------------------

def resolve_user(db, server_id: int, raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Retourne la ligne users pour (server_id, external_id), créée si besoin.
    Username / thumb sont rafraîchis s'ils ont changé côté serveur.
    """
    external_id = raw["external_user_id"]
    username = raw.get("username") or external_id
    thumb = raw.get("user_thumb")

    row = db.query_one(
        "SELECT * FROM users WHERE server_id = ? AND external_id = ?",
        (server_id, external_id),
    )
    if row is None:
        db.execute(
            """
            INSERT OR IGNORE INTO users (server_id, external_id, username, thumb_url)
            VALUES (?, ?, ?, ?)
            """,
            (server_id, external_id, username, thumb),
        )
        row = db.query_one(
            "SELECT * FROM users WHERE server_id = ? AND external_id = ?",
            (server_id, external_id),
        )
        logger.info(f"[server {server_id}] new user {username} (external_id={external_id})")
        return dict(row)

    user = dict(row)
    if user.get("username") != username or (thumb and user.get("thumb_url") != thumb):
        db.execute(
            """
            UPDATE users
            SET username = ?, thumb_url = COALESCE(?, thumb_url), updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (username, thumb, user["id"]),
        )
        user["username"] = username
        if thumb:
            user["thumb_url"] = thumb
    return user


def touch_user_activity(db, user_id: int, now) -> None:
    db.execute(
        "UPDATE users SET last_activity_at = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (to_sql_ts(now), user_id),
    )


# -------------------------------------------------------------------
# Observation (colonnes sessions)
# -------------------------------------------------------------------

def geo_columns(location: GeoLocation) -> Dict[str, Any]:
    return {
        "geo_city": location.city,
        "geo_region": location.region,
        "geo_country": location.country,
        "geo_lat": location.lat,
        "geo_lon": location.lon,
    }


def build_observation(
    parsed: Dict[str, Any],
    server_id: int,
    user_id: int,
    geoip: Optional[GeoIPResolver] = None,
) -> Dict[str, Any]:
    location = geoip.lookup(parsed.get("ip_address")) if geoip else UNKNOWN_LOCATION

    observed = {k: v for k, v in parsed.items() if k not in ("external_user_id", "username", "user_thumb")}
    observed["server_id"] = server_id
    observed["user_id"] = user_id
    observed.update(geo_columns(location))
    return observed
