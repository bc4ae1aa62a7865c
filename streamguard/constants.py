"""Shared constants (event names, thresholds, penalty table)."""

# -------------------------------------------------------------------
# Pub/sub events
# -------------------------------------------------------------------

EVENT_SESSION_STARTED = "session:started"
EVENT_SESSION_UPDATED = "session:updated"
EVENT_SESSION_STOPPED = "session:stopped"
EVENT_VIOLATION_NEW = "violation:new"

# -------------------------------------------------------------------
# Sessions
# -------------------------------------------------------------------

SESSION_STATES = ("playing", "paused", "stopped")

# 85 % = seuil "vu" (borne incluse)
WATCH_COMPLETION_THRESHOLD = 0.85

# Fenêtre de reprise : une session arrêtée depuis moins de 24h peut être chaînée
RESUME_WINDOW_HOURS = 24

MAX_RECENT_SESSIONS_PER_USER = 100
RECENT_SESSIONS_WINDOW_HOURS = 24 * 7

# -------------------------------------------------------------------
# Violations / trust score
# -------------------------------------------------------------------

SEVERITIES = ("low", "warning", "high")

TRUST_SCORE_PENALTIES = {
    "high": 20,
    "warning": 10,
    "low": 5,
}

DEFAULT_TRUST_SCORE = 100

EARTH_RADIUS_KM = 6371.0
