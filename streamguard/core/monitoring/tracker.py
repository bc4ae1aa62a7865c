"""
Session lifecycle: pure state transitions.

Nothing in here touches the database. Sessions are plain dicts using the
column names of the ``sessions`` table; timestamps are aware UTC datetimes.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from streamguard.constants import WATCH_COMPLETION_THRESHOLD
from streamguard.db_utils import ms_between, parse_sql_ts

# Champs figés après la création de la session
IDENTITY_KEYS = ("id", "server_id", "user_id", "session_key", "started_at", "reference_id")

TRANSCODE_STATE_KEYS = (
    "is_transcode",
    "video_decision",
    "audio_decision",
    "output_resolution",
    "quality",
)


def compute_session_events(prev: Optional[Dict[str, Any]], cur: Optional[Dict[str, Any]]) -> List[str]:
    if prev is None and cur is not None:
        return ["start"]
    if prev is not None and cur is None:
        return ["stop"]
    if prev is None or cur is None:
        return []

    prev_state = (prev.get("state") or "unknown").lower()
    cur_state = (cur.get("state") or "unknown").lower()

    if prev_state == cur_state:
        return []

    if cur_state == "paused":
        return ["pause"]
    if prev_state == "paused" and cur_state == "playing":
        return ["resume"]

    return ["state_change"]


def transcode_changed(prev: Dict[str, Any], cur: Dict[str, Any]) -> bool:
    for key in TRANSCODE_STATE_KEYS:
        a, b = prev.get(key), cur.get(key)
        if key == "is_transcode":
            a, b = bool(a), bool(b)
        if a != b:
            return True
    return False


# -------------------------------------------------------------------
# Pause / stop / watched
# -------------------------------------------------------------------

def calculate_pause_accumulation(
    previous_state: str,
    new_state: str,
    last_paused_at: Optional[datetime],
    paused_duration_ms: int,
    now: datetime,
) -> Tuple[Optional[datetime], int]:
    """
    playing -> paused : on ouvre l'intervalle de pause
    paused -> playing : on le referme et on cumule
    sinon             : rien ne change
    Returns (last_paused_at, paused_duration_ms).
    """
    paused_duration_ms = int(paused_duration_ms or 0)

    if previous_state == "playing" and new_state == "paused":
        return now, paused_duration_ms

    if previous_state == "paused" and new_state == "playing":
        if last_paused_at is not None:
            paused_duration_ms += max(0, ms_between(last_paused_at, now))
        return None, paused_duration_ms

    return last_paused_at, paused_duration_ms


def check_watch_completion(progress_ms: Optional[int], total_duration_ms: Optional[int]) -> bool:
    if not progress_ms or not total_duration_ms or total_duration_ms <= 0:
        return False
    return progress_ms / total_duration_ms >= WATCH_COMPLETION_THRESHOLD


def calculate_stop_duration(
    started_at: datetime,
    last_paused_at: Optional[datetime],
    paused_duration_ms: int,
    stopped_at: datetime,
) -> Tuple[int, int]:
    """
    Returns (duration_ms, final_paused_duration_ms). A pause still open at
    stop time is folded into the paused total first.
    """
    final_paused = int(paused_duration_ms or 0)
    if last_paused_at is not None:
        final_paused += max(0, ms_between(last_paused_at, stopped_at))

    total_elapsed = ms_between(started_at, stopped_at)
    return max(0, total_elapsed - final_paused), final_paused


def resolve_reference_id(candidate: Optional[Dict[str, Any]], progress_ms: Optional[int]) -> Optional[int]:
    """
    Chaînage des reprises : si la nouvelle lecture reprend au moins là où
    la précédente s'était arrêtée, on pointe vers la tête de chaîne.
    """
    if not candidate or candidate.get("watched"):
        return None
    if (progress_ms or 0) >= (candidate.get("progress_ms") or 0):
        return candidate.get("reference_id") or candidate.get("id")
    return None


# -------------------------------------------------------------------
# Observation -> session
# -------------------------------------------------------------------

def _ts(value: Any) -> Optional[datetime]:
    return parse_sql_ts(value)


def apply_observation(
    existing: Optional[Dict[str, Any]],
    observed: Dict[str, Any],
    now: datetime,
    resume_candidate: Optional[Dict[str, Any]] = None,
) -> Tuple[Dict[str, Any], bool]:
    """
    Returns (session, is_new). ``observed`` carries the normalized session
    fields plus server_id, user_id and geo columns.
    """
    if existing is None:
        session = dict(observed)
        session.update({
            "started_at": now,
            "last_seen_at": now,
            "stopped_at": None,
            "duration_ms": None,
            "paused_duration_ms": 0,
            "last_paused_at": now if observed.get("state") == "paused" else None,
            "reference_id": resolve_reference_id(resume_candidate, observed.get("progress_ms")),
            "watched": check_watch_completion(
                observed.get("progress_ms"), observed.get("total_duration_ms")
            ),
        })
        return session, True

    previous_state = existing.get("state") or "playing"
    new_state = observed.get("state") or previous_state

    last_paused_at, paused_duration_ms = calculate_pause_accumulation(
        previous_state,
        new_state,
        _ts(existing.get("last_paused_at")),
        int(existing.get("paused_duration_ms") or 0),
        now,
    )

    session = dict(existing)
    for key, value in observed.items():
        if key in IDENTITY_KEYS:
            continue
        session[key] = value

    session["state"] = new_state
    session["started_at"] = _ts(existing.get("started_at"))
    session["last_seen_at"] = now
    session["last_paused_at"] = last_paused_at
    # jamais de retour en arrière
    session["paused_duration_ms"] = max(int(existing.get("paused_duration_ms") or 0), paused_duration_ms)
    session["watched"] = bool(existing.get("watched")) or check_watch_completion(
        observed.get("progress_ms"), observed.get("total_duration_ms")
    )
    return session, False


def finalize_stop(session: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    started_at = _ts(session.get("started_at")) or now
    last_paused_at = _ts(session.get("last_paused_at")) if session.get("state") == "paused" else None

    duration_ms, final_paused = calculate_stop_duration(
        started_at,
        last_paused_at,
        int(session.get("paused_duration_ms") or 0),
        now,
    )

    stopped = dict(session)
    stopped.update({
        "state": "stopped",
        "started_at": started_at,
        "stopped_at": now,
        "duration_ms": duration_ms,
        "paused_duration_ms": max(int(session.get("paused_duration_ms") or 0), final_paused),
        "last_paused_at": None,
        "watched": bool(session.get("watched")) or check_watch_completion(
            session.get("progress_ms"), session.get("total_duration_ms")
        ),
    })
    return stopped
