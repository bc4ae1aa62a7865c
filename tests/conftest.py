import time
from datetime import datetime, timezone

import pytest

from streamguard.app import build_runtime
from streamguard.config import Config
from streamguard.core.geoip import StaticGeoIPResolver
from streamguard.core.providers.base import BaseProvider
from streamguard.core.providers.registry import register_provider
from streamguard.core.rules.engine import Rule
from streamguard.db_bootstrap import run_migrations
from streamguard.db_manager import DBManager
from streamguard.db_utils import dumps_json, to_sql_ts


class FakeProvider(BaseProvider):
    """Provider en mémoire : sessions servies par server_id."""

    provider_name = "fake"

    sessions_by_server = {}
    delay_by_server = {}
    killed = []
    messages = []

    @classmethod
    def reset(cls):
        cls.sessions_by_server = {}
        cls.delay_by_server = {}
        cls.killed = []
        cls.messages = []

    def get_active_sessions(self):
        delay = self.delay_by_server.get(self.server.id)
        if delay:
            time.sleep(delay)
        value = self.sessions_by_server.get(self.server.id, [])
        if isinstance(value, Exception):
            raise value
        return [dict(s) if isinstance(s, dict) else s for s in value]

    def terminate_session(self, session_key, reason=""):
        self.killed.append((self.server.id, session_key, reason))
        return True

    def send_session_message(self, session_key, title, text, timeout_ms=8000):
        self.messages.append((self.server.id, session_key, title, text))
        return True


class SandboxConfig(Config):
    DATABASE = ":memory:"
    LOG_DIR = None
    DEBUG = False
    ADAPTER_TIMEOUT_SEC = 5
    TASK_BACKOFF_SEC = 0
    START_BACKGROUND = False


GEO_TABLE = {
    "81.2.69.160": {"city": "London", "country": "GB", "lat": 51.5074, "lon": -0.1278},
    "8.8.8.8": {"city": "New York", "country": "US", "lat": 40.7128, "lon": -74.0060},
    "1.1.1.1": {"city": "Sydney", "country": "AU", "lat": -33.8688, "lon": 151.2093},
    "9.9.9.9": {"city": "Paris", "country": "FR", "lat": 48.8566, "lon": 2.3522},
}


@pytest.fixture
def db(tmp_path):
    d = DBManager(str(tmp_path / "streamguard-test.db"))
    run_migrations(d)
    yield d
    d.close()


@pytest.fixture
def fake_provider():
    register_provider("fake", FakeProvider)
    FakeProvider.reset()
    yield FakeProvider
    FakeProvider.reset()


@pytest.fixture
def runtime(db, fake_provider):
    rt = build_runtime(SandboxConfig, db=db, geoip=StaticGeoIPResolver(GEO_TABLE))
    yield rt
    rt.poller.stop(timeout=1)
    rt.scheduler.stop(timeout=1)


@pytest.fixture
def make_server(db):
    def _make(name="srv", type="fake", settings=None):
        cur = db.execute(
            "INSERT INTO servers (name, type, url, token, server_identifier, settings_json) VALUES (?, ?, ?, ?, ?, ?)",
            (name, type, "http://media.local:32400", "tok", name, dumps_json(settings) if settings else None),
        )
        return int(cur.lastrowid)
    return _make


@pytest.fixture
def make_user(db):
    def _make(server_id, external_id="u1", username=None, trust_score=100, last_activity_at=None):
        cur = db.execute(
            """
            INSERT INTO users (server_id, external_id, username, trust_score, last_activity_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (server_id, external_id, username or external_id, trust_score, to_sql_ts(last_activity_at)),
        )
        return dict(db.query_one("SELECT * FROM users WHERE id = ?", (cur.lastrowid,)))
    return _make


@pytest.fixture
def make_rule(db):
    def _make(conditions, actions=None, name="rule", user_id=None, server_id=None, type=None, is_active=1):
        if actions is None:
            actions = [{"type": "create_violation", "severity": "warning"}]
        cur = db.execute(
            """
            INSERT INTO rules (name, type, user_id, server_id, is_active, conditions_json, actions_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (name, type, user_id, server_id, is_active, dumps_json(conditions), dumps_json({"actions": actions})),
        )
        return Rule.from_row(db.query_one("SELECT * FROM rules WHERE id = ?", (cur.lastrowid,)))
    return _make


@pytest.fixture
def make_session(db):
    """Ligne sessions ouverte minimale (pour les violations)."""
    def _make(server_id, user_id, session_key="sk-1", **overrides):
        now = overrides.pop("now", datetime.now(timezone.utc))
        values = {
            "server_id": server_id,
            "user_id": user_id,
            "session_key": session_key,
            "state": "playing",
            "started_at": to_sql_ts(now),
            "last_seen_at": to_sql_ts(now),
        }
        values.update(overrides)
        cols = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        cur = db.execute(f"INSERT INTO sessions ({cols}) VALUES ({marks})", list(values.values()))
        row = dict(db.query_one("SELECT * FROM sessions WHERE id = ?", (cur.lastrowid,)))
        return row
    return _make


def raw_session(session_key, user="u1", **overrides):
    s = {
        "session_key": session_key,
        "external_user_id": user,
        "username": user,
        "rating_key": f"rk-{session_key}",
        "media_type": "movie",
        "title": f"Movie {session_key}",
        "state": "playing",
        "progress_ms": 1000,
        "total_duration_ms": 100_000,
        "ip_address": "81.2.69.160",
        "player_name": "Living room",
        "device_id": f"dev-{session_key}",
        "product": "Plex Web",
        "platform": "Chrome",
        "quality": "1080p",
        "is_transcode": False,
        "video_decision": "directplay",
        "audio_decision": "directplay",
        "bitrate": 8000,
        "source_resolution": "1080p",
        "output_resolution": "1080p",
    }
    s.update(overrides)
    return s


@pytest.fixture
def raw():
    return raw_session
