from datetime import timedelta

from streamguard.db_utils import utcnow
from streamguard.tasks import inactivity_check

INACTIVE_30 = {"groups": [{"conditions": [{"field": "inactive_days", "operator": "gt", "value": 30}]}]}


def _violations(db):
    return [dict(r) for r in db.query("SELECT * FROM violations ORDER BY user_id")]


def test_inactive_and_never_active_users_are_flagged(runtime, make_server, make_user, make_rule):
    sid = make_server()
    never = make_user(sid, "never")
    idle = make_user(sid, "idle", last_activity_at=utcnow() - timedelta(days=40))
    make_user(sid, "busy", last_activity_at=utcnow() - timedelta(days=2))
    make_rule(INACTIVE_30, actions=[{"type": "create_violation", "severity": "low"}], type="account_inactivity")

    out = inactivity_check.run(1, runtime)

    assert out == {"rules": 1, "users": 2, "violations": 2}
    rows = _violations(runtime.db)
    assert [v["user_id"] for v in rows] == [never["id"], idle["id"]]
    assert all(v["session_id"] is None for v in rows)
    assert all(v["severity"] == "low" for v in rows)


def test_rerun_does_not_duplicate(runtime, make_server, make_user, make_rule):
    sid = make_server()
    user = make_user(sid, "never")
    make_rule(INACTIVE_30)

    inactivity_check.run(1, runtime)
    out = inactivity_check.run(1, runtime)

    assert out["violations"] == 0
    assert len(_violations(runtime.db)) == 1
    # une seule pénalité
    assert runtime.db.query_one("SELECT trust_score FROM users WHERE id = ?", (user["id"],))["trust_score"] == 90


def test_single_rule_run(runtime, make_server, make_user, make_rule):
    sid = make_server()
    make_user(sid, "never")
    first = make_rule(INACTIVE_30, name="first")
    make_rule(INACTIVE_30, name="second")

    out = inactivity_check.run(1, runtime, rule_id=first.id)

    assert out["rules"] == 1
    assert [v["rule_id"] for v in _violations(runtime.db)] == [first.id]


def test_rule_scope_limits_users(runtime, make_server, make_user, make_rule):
    a = make_server("a")
    b = make_server("b")
    make_user(a, "never-a")
    user_b = make_user(b, "never-b")
    make_rule(INACTIVE_30, server_id=b)

    out = inactivity_check.run(1, runtime)

    assert out["users"] == 1
    assert [v["user_id"] for v in _violations(runtime.db)] == [user_b["id"]]


def test_no_inactivity_rule(runtime, make_server, make_user, make_rule):
    sid = make_server()
    make_user(sid, "never")
    make_rule({"groups": [{"conditions": [{"field": "concurrent_streams", "operator": "gt", "value": 3}]}]})

    assert inactivity_check.run(1, runtime) == {"rules": 0, "users": 0, "violations": 0}


def test_runs_through_the_scheduler(runtime, make_server, make_user, make_rule):
    sid = make_server()
    make_user(sid, "never")
    make_rule(INACTIVE_30)

    assert runtime.scheduler.run_task("inactivity_check") is True
    row = runtime.db.query_one("SELECT status, last_run, last_error FROM tasks WHERE name = 'inactivity_check'")
    assert row["status"] == "idle"
    assert row["last_run"] is not None
    assert row["last_error"] is None
    assert len(_violations(runtime.db)) == 1


def test_upper_bound_rule_sees_recently_active_users(runtime, make_server, make_user, make_rule):
    sid = make_server()
    make_user(sid, "never")
    make_user(sid, "idle", last_activity_at=utcnow() - timedelta(days=40))
    busy = make_user(sid, "busy", last_activity_at=utcnow() - timedelta(days=2))
    make_rule({"groups": [{"conditions": [{"field": "inactive_days", "operator": "lte", "value": 7}]}]})

    out = inactivity_check.run(1, runtime)

    # pas de pré-filtre SQL : les trois users sont évalués
    assert out == {"rules": 1, "users": 3, "violations": 1}
    assert [v["user_id"] for v in _violations(runtime.db)] == [busy["id"]]


def test_or_group_without_inactivity_bound_is_not_prefiltered(runtime, make_server, make_user, make_rule):
    sid = make_server()
    low_trust = make_user(sid, "low-trust", trust_score=5, last_activity_at=utcnow() - timedelta(days=1))
    make_user(sid, "regular", last_activity_at=utcnow() - timedelta(days=1))
    make_rule({"groups": [
        {"conditions": [{"field": "inactive_days", "operator": "gt", "value": 30}]},
        {"conditions": [{"field": "trust_score", "operator": "lt", "value": 10}]},
    ]})

    out = inactivity_check.run(1, runtime)

    assert out["violations"] == 1
    assert [v["user_id"] for v in _violations(runtime.db)] == [low_trust["id"]]
