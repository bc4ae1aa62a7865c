import json

import pytest

from streamguard.app import create_app, load_geoip
from streamguard.core.geoip import NullGeoIPResolver, StaticGeoIPResolver
from streamguard.core.rules.engine import RuleResult
from tests.conftest import SandboxConfig


@pytest.fixture
def client(runtime):
    app = create_app(SandboxConfig, runtime=runtime, start_background=False)
    app.config["TESTING"] = True
    return app.test_client()


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.get_json()["ok"] is True


def test_trigger_poll(client, fake_provider, make_server, raw):
    sid = make_server()
    fake_provider.sessions_by_server[sid] = [raw("s1")]

    r = client.post("/api/poll/trigger")
    assert r.status_code == 200
    body = r.get_json()
    assert body["ok"] is True
    assert body["report"]["new"] == 1


def test_trigger_poll_failure(client, runtime, monkeypatch):
    def broken():
        raise RuntimeError("db gone")

    monkeypatch.setattr(runtime.orchestrator, "poll_servers", broken)
    r = client.post("/api/poll/trigger")
    assert r.status_code == 500
    assert r.get_json()["ok"] is False


def test_list_tasks(client):
    r = client.get("/api/tasks/list")
    assert r.status_code == 200
    names = [t["name"] for t in r.get_json()["tasks"]]
    assert "inactivity_check" in names
    assert "sweep_stale_sessions" in names


def test_run_task(client, runtime):
    r = client.post("/api/tasks/inactivity_check/run", json={"rule_id": 3})
    assert r.status_code == 202
    assert runtime.scheduler.pending() == 1


def test_run_task_errors(client, runtime):
    assert client.post("/api/tasks/nope/run").status_code == 404
    assert client.post("/api/tasks/inactivity_check/run", json={"rule_id": "x"}).status_code == 400

    runtime.db.execute("UPDATE tasks SET enabled = 0 WHERE name = 'sweep_stale_sessions'")
    assert client.post("/api/tasks/sweep_stale_sessions/run").status_code == 409


def test_acknowledge_violation(client, runtime, make_server, make_user, make_rule):
    sid = make_server()
    user = make_user(sid)
    rule = make_rule({"groups": [{"conditions": [{"field": "inactive_days", "operator": "gt", "value": 1}]}]})
    v = runtime.pipeline.create_violation(rule, user["id"], None, RuleResult(rule_id=rule.id, matched=True))

    r = client.post(f"/api/violations/{v['id']}/acknowledge")
    assert r.status_code == 200
    assert r.get_json() == {"ok": True}

    r = client.post(f"/api/violations/{v['id']}/acknowledge")
    assert r.get_json()["already_acknowledged"] is True

    assert client.post("/api/violations/9999/acknowledge").status_code == 404


def test_logs_endpoint(client):
    r = client.get("/api/logs?limit=5")
    assert r.status_code == 200
    assert isinstance(r.get_json()["lines"], list)


# -------------------------------------------------------------------
# Table GeoIP au démarrage
# -------------------------------------------------------------------

def _geo_config(path):
    return type("GeoConfig", (SandboxConfig,), {"GEOIP_TABLE_PATH": str(path)})


def test_load_geoip_reads_table(tmp_path):
    path = tmp_path / "geo.json"
    path.write_text(json.dumps({"8.8.8.8": {"city": "New York", "country": "US"}}), encoding="utf-8")
    resolver = load_geoip(_geo_config(path))
    assert isinstance(resolver, StaticGeoIPResolver)
    assert resolver.lookup("8.8.8.8").city == "New York"


@pytest.mark.parametrize("content", [
    "{not json",
    json.dumps({"8.8.8.8": {"city": "New York", "timezone": "America/New_York"}}),
    json.dumps({"300.1.2.0/24": {"city": "Nowhere"}}),
    json.dumps(["8.8.8.8"]),
])
def test_unusable_geoip_table_falls_back_to_null_resolver(tmp_path, content):
    path = tmp_path / "geo.json"
    path.write_text(content, encoding="utf-8")
    assert isinstance(load_geoip(_geo_config(path)), NullGeoIPResolver)


def test_missing_geoip_table_falls_back_to_null_resolver(tmp_path):
    assert isinstance(load_geoip(_geo_config(tmp_path / "absent.json")), NullGeoIPResolver)
