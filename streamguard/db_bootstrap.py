from streamguard.logging_utils import get_logger

logger = get_logger("db_bootstrap")

# ---------------------------------------------------------
# Utility: checks
# ---------------------------------------------------------

def table_exists(db, table):
    row = db.query_one(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table,),
    )
    return row is not None


def column_exists(db, table, column):
    rows = db.query(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in rows)


def ensure_column(db, table, column, definition):
    if not column_exists(db, table, column):
        logger.info(f"🛠 Ajout de la colonne manquante : {table}.{column}")
        db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


# ---------------------------------------------------------
# SCHEMA
# ---------------------------------------------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS servers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  type TEXT NOT NULL,                 -- 'plex' | 'jellyfin'
  url TEXT,
  local_url TEXT,
  public_url TEXT,
  token TEXT,
  server_identifier TEXT,
  settings_json TEXT,
  status TEXT DEFAULT 'unknown',
  last_checked TIMESTAMP
);

CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  server_id INTEGER NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
  external_id TEXT NOT NULL,
  username TEXT NOT NULL,
  thumb_url TEXT,
  trust_score INTEGER NOT NULL DEFAULT 100 CHECK (trust_score >= 0),
  last_activity_at TIMESTAMP,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  UNIQUE (server_id, external_id)
);

CREATE TABLE IF NOT EXISTS sessions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  server_id INTEGER NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
  user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  session_key TEXT NOT NULL,

  state TEXT NOT NULL,                -- 'playing' | 'paused' | 'stopped'
  media_type TEXT,
  rating_key TEXT,
  title TEXT,
  grandparent_title TEXT,

  started_at TIMESTAMP NOT NULL,
  stopped_at TIMESTAMP,
  last_seen_at TIMESTAMP NOT NULL,
  total_duration_ms INTEGER,
  progress_ms INTEGER,
  duration_ms INTEGER,
  paused_duration_ms INTEGER NOT NULL DEFAULT 0,
  last_paused_at TIMESTAMP,
  reference_id INTEGER REFERENCES sessions(id),
  watched INTEGER NOT NULL DEFAULT 0,

  ip_address TEXT,
  geo_city TEXT,
  geo_region TEXT,
  geo_country TEXT,
  geo_lat REAL,
  geo_lon REAL,
  player_name TEXT,
  device_id TEXT,
  product TEXT,
  device TEXT,
  platform TEXT,

  quality TEXT,
  is_transcode INTEGER NOT NULL DEFAULT 0,
  video_decision TEXT,
  audio_decision TEXT,
  bitrate INTEGER,
  source_resolution TEXT,
  output_resolution TEXT
);

CREATE TABLE IF NOT EXISTS rules (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  type TEXT,                          -- legacy rule type (NULL for custom trees)
  user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
  server_id INTEGER REFERENCES servers(id) ON DELETE CASCADE,
  is_active INTEGER NOT NULL DEFAULT 1,
  conditions_json TEXT NOT NULL,
  actions_json TEXT NOT NULL,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS violations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  rule_id INTEGER NOT NULL REFERENCES rules(id) ON DELETE CASCADE,
  user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  session_id INTEGER REFERENCES sessions(id) ON DELETE SET NULL,
  severity TEXT NOT NULL CHECK (severity IN ('low', 'warning', 'high')),
  data_json TEXT,
  acknowledged_at TIMESTAMP,
  created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT UNIQUE NOT NULL,
  description TEXT,
  schedule TEXT,
  enabled INTEGER DEFAULT 1,
  status TEXT DEFAULT 'idle',
  last_run TIMESTAMP,
  next_run TIMESTAMP,
  last_error TEXT,
  attempts INTEGER NOT NULL DEFAULT 0,
  queued_count INTEGER NOT NULL DEFAULT 0,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

INDEXES = [
    # Une seule session ouverte par (server_id, session_key)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_sessions_open_key
    ON sessions(server_id, session_key) WHERE stopped_at IS NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_user_started ON sessions(user_id, started_at)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_resume ON sessions(user_id, rating_key, stopped_at)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_last_seen ON sessions(last_seen_at)",
    # Dedup : une seule violation non acquittée par (rule, user, session-or-null)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_violations_open_dedup
    ON violations(rule_id, user_id, COALESCE(session_id, 0)) WHERE acknowledged_at IS NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_violations_user ON violations(user_id, created_at)",
]

DEFAULT_TASKS = [
    {
        "name": "inactivity_check",
        "description": "Detect accounts without playback activity",
        "schedule": "0 * * * *",
    },
    {
        "name": "sweep_stale_sessions",
        "description": "Force-stop sessions not seen for too long",
        "schedule": "* * * * *",
    },
]


# ---------------------------------------------------------
# MIGRATIONS
# ---------------------------------------------------------

def run_migrations(db, task_schedules=None):
    """
    Idempotent : crée les tables manquantes, les index, les colonnes
    ajoutées après coup et les lignes de tasks.
    """
    logger.info("🔧 Running DB migrations…")

    db.executescript(SCHEMA)

    for ddl in INDEXES:
        db.execute(ddl)

    # Colonnes ajoutées après la première version
    ensure_column(db, "sessions", "source_resolution", "TEXT")
    ensure_column(db, "sessions", "output_resolution", "TEXT")
    ensure_column(db, "tasks", "attempts", "INTEGER NOT NULL DEFAULT 0")

    schedules = task_schedules or {}
    for task in DEFAULT_TASKS:
        values = dict(task)
        if task["name"] in schedules:
            values["schedule"] = schedules[task["name"]]
        row = db.query_one("SELECT id FROM tasks WHERE name = ?", (task["name"],))
        if row is None:
            db.execute(
                "INSERT INTO tasks (name, description, schedule) VALUES (?, ?, ?)",
                (values["name"], values["description"], values["schedule"]),
            )
        elif task["name"] in schedules:
            db.execute(
                "UPDATE tasks SET schedule = ? WHERE id = ?",
                (values["schedule"], row["id"]),
            )

    logger.info("✔ Schema verified (servers, users, sessions, rules, violations, tasks).")
