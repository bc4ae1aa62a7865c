"""
SQL side of the session tracker.

Rows come back as dicts with timestamps parsed into aware UTC datetimes and
``watched`` / ``is_transcode`` as bools, so they can be fed straight back to
``tracker.apply_observation``.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from streamguard.constants import (
    MAX_RECENT_SESSIONS_PER_USER,
    RECENT_SESSIONS_WINDOW_HOURS,
    RESUME_WINDOW_HOURS,
)
from streamguard.db_utils import normalize_bool, parse_sql_ts, placeholders, to_sql_ts
from streamguard.logging_utils import get_logger

logger = get_logger("monitoring.store")

SESSION_COLUMNS = (
    "server_id", "user_id", "session_key",
    "state", "media_type", "rating_key", "title", "grandparent_title",
    "started_at", "stopped_at", "last_seen_at",
    "total_duration_ms", "progress_ms", "duration_ms",
    "paused_duration_ms", "last_paused_at", "reference_id", "watched",
    "ip_address", "geo_city", "geo_region", "geo_country", "geo_lat", "geo_lon",
    "player_name", "device_id", "product", "device", "platform",
    "quality", "is_transcode", "video_decision", "audio_decision", "bitrate",
    "source_resolution", "output_resolution",
)

_TS_COLUMNS = ("started_at", "stopped_at", "last_seen_at", "last_paused_at")
_BOOL_COLUMNS = ("watched", "is_transcode")


def _to_row_values(session: Dict[str, Any], columns: Iterable[str]) -> List[Any]:
    values = []
    for col in columns:
        v = session.get(col)
        if col in _TS_COLUMNS:
            v = to_sql_ts(parse_sql_ts(v))
        elif col in _BOOL_COLUMNS:
            v = normalize_bool(v)
        elif col == "paused_duration_ms":
            v = int(v or 0)
        values.append(v)
    return values


def hydrate(row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    d = dict(row)
    for col in _TS_COLUMNS:
        if col in d:
            d[col] = parse_sql_ts(d[col])
    for col in _BOOL_COLUMNS:
        if col in d:
            d[col] = bool(d[col])
    return d


# -------------------------------------------------------------------
# Lecture
# -------------------------------------------------------------------


def find_open_session(db, server_id: int, session_key: str) -> Optional[Dict[str, Any]]:
    row = db.query_one(
        """
        SELECT * FROM sessions
        WHERE server_id = ? AND session_key = ? AND stopped_at IS NULL
        LIMIT 1
        """,
        (server_id, str(session_key)),
    )
    return hydrate(row)


def open_sessions_for_server(db, server_id: int) -> Dict[str, Dict[str, Any]]:
    rows = db.query(
        "SELECT * FROM sessions WHERE server_id = ? AND stopped_at IS NULL ORDER BY id",
        (server_id,),
    )
    return {str(r["session_key"]): hydrate(r) for r in rows}


def find_resume_candidate(
    db,
    user_id: int,
    rating_key: Optional[str],
    now: datetime,
    window_hours: int = RESUME_WINDOW_HOURS,
) -> Optional[Dict[str, Any]]:
    """Dernière session arrêtée du même (user, média) dans la fenêtre, non vue."""
    if not rating_key:
        return None
    row = db.query_one(
        """
        SELECT * FROM sessions
        WHERE user_id = ?
          AND rating_key = ?
          AND stopped_at IS NOT NULL
          AND stopped_at >= ?
          AND watched = 0
        ORDER BY stopped_at DESC, id DESC
        LIMIT 1
        """,
        (user_id, str(rating_key), to_sql_ts(now - timedelta(hours=window_hours))),
    )
    return hydrate(row)


def recent_sessions_for_user(
    db,
    user_id: int,
    now: datetime,
    exclude_id: Optional[int] = None,
    window_hours: int = RECENT_SESSIONS_WINDOW_HOURS,
    limit: int = MAX_RECENT_SESSIONS_PER_USER,
) -> List[Dict[str, Any]]:
    """Most recent first."""
    rows = db.query(
        """
        SELECT * FROM sessions
        WHERE user_id = ?
          AND started_at >= ?
          AND id != ?
        ORDER BY started_at DESC, id DESC
        LIMIT ?
        """,
        (user_id, to_sql_ts(now - timedelta(hours=window_hours)), exclude_id or 0, int(limit)),
    )
    return [hydrate(r) for r in rows]


def find_stale_sessions(db, now: datetime, timeout_sec: int) -> List[Dict[str, Any]]:
    rows = db.query(
        """
        SELECT * FROM sessions
        WHERE stopped_at IS NULL
          AND last_seen_at < ?
        ORDER BY id
        """,
        (to_sql_ts(now - timedelta(seconds=int(timeout_sec))),),
    )
    return [hydrate(r) for r in rows]


# -------------------------------------------------------------------
# Écriture
# -------------------------------------------------------------------

def insert_session(db, session: Dict[str, Any]) -> Dict[str, Any]:
    """
    INSERT OR IGNORE sur l'index (server_id, session_key) ouvert : si une
    ligne ouverte existe déjà on la renvoie telle quelle.
    """
    cols = SESSION_COLUMNS
    cur = db.execute(
        f"INSERT OR IGNORE INTO sessions ({', '.join(cols)}) VALUES ({placeholders(len(cols))})",
        _to_row_values(session, cols),
    )
    if cur.rowcount == 0:
        logger.debug(
            f"Open session already exists for server={session.get('server_id')} key={session.get('session_key')}"
        )
        return find_open_session(db, session["server_id"], session["session_key"])

    out = dict(session)
    out["id"] = int(cur.lastrowid)
    return out


def update_session(db, session: Dict[str, Any]) -> None:
    cols = [c for c in SESSION_COLUMNS if c not in ("server_id", "session_key", "started_at")]
    assignments = ", ".join(f"{c} = ?" for c in cols)
    db.execute(
        f"UPDATE sessions SET {assignments} WHERE id = ?",
        _to_row_values(session, cols) + [session["id"]],
    )


def stop_session(db, session: Dict[str, Any]) -> bool:
    """
    Ferme une session ouverte. False si elle était déjà fermée
    (poll et sweep concurrents).
    """
    cur = db.execute(
        """
        UPDATE sessions
        SET state = 'stopped', stopped_at = ?, last_seen_at = ?, duration_ms = ?,
            paused_duration_ms = ?, last_paused_at = NULL, watched = ?, progress_ms = ?
        WHERE id = ? AND stopped_at IS NULL
        """,
        (
            to_sql_ts(session["stopped_at"]),
            to_sql_ts(parse_sql_ts(session.get("last_seen_at")) or session["stopped_at"]),
            session.get("duration_ms"),
            int(session.get("paused_duration_ms") or 0),
            normalize_bool(session.get("watched")),
            session.get("progress_ms"),
            session["id"],
        ),
    )
    return cur.rowcount > 0


# -------------------------------------------------------------------
# ActiveSession (projection cache)
# -------------------------------------------------------------------

def to_active_session(session: Dict[str, Any], user: Dict[str, Any], server: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(session)
    out["user"] = {
        "id": user.get("id"),
        "username": user.get("username"),
        "thumb_url": user.get("thumb_url"),
    }
    out["server"] = {
        "id": server.get("id"),
        "name": server.get("name"),
        "type": server.get("type"),
    }
    return out


def rebuild_active_sessions(db, server_ids: Optional[Iterable[int]] = None) -> List[Dict[str, Any]]:
    """Reconstruit la projection depuis les lignes ouvertes de ``sessions``."""
    sql = """
        SELECT s.*,
               u.username AS _username, u.thumb_url AS _thumb_url,
               sv.name AS _server_name, sv.type AS _server_type
        FROM sessions s
        JOIN users u ON u.id = s.user_id
        JOIN servers sv ON sv.id = s.server_id
        WHERE s.stopped_at IS NULL
    """
    params: List[Any] = []
    ids = list(server_ids or [])
    if ids:
        sql += f" AND s.server_id IN ({placeholders(len(ids))})"
        params.extend(ids)
    sql += " ORDER BY s.id"

    out = []
    for r in db.query(sql, params):
        d = hydrate(r)
        user = {"id": d["user_id"], "username": d.pop("_username"), "thumb_url": d.pop("_thumb_url")}
        server = {"id": d["server_id"], "name": d.pop("_server_name"), "type": d.pop("_server_type")}
        out.append(to_active_session(d, user, server))
    return out
