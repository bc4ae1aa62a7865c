"""Tests for rule evaluation (detections, scoping, group semantics)."""

from datetime import datetime, timedelta, timezone

from streamguard.core.rules.conditions import parse_conditions
from streamguard.core.rules.engine import (
    Rule,
    evaluate,
    extract_inactive_days,
    filter_transcode_rules,
    has_inactivity_condition,
    is_user_aggregate_rule,
    load_active_rules,
)
from streamguard.db_utils import dumps_json

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

LONDON = {"geo_city": "London", "geo_country": "GB", "geo_lat": 51.5074, "geo_lon": -0.1278}
NEW_YORK = {"geo_city": "New York", "geo_country": "US", "geo_lat": 40.7128, "geo_lon": -74.0060}
PARIS = {"geo_city": "Paris", "geo_country": "FR", "geo_lat": 48.8566, "geo_lon": 2.3522}


def _rule(conditions, rule_id=1, severity="warning", **kw):
    return Rule(
        id=rule_id,
        name=kw.pop("name", f"rule-{rule_id}"),
        conditions=parse_conditions(conditions),
        actions=kw.pop("actions", [{"type": "create_violation", "severity": severity}]),
        **kw,
    )


def _single(field, operator, value, **params):
    cond = {"field": field, "operator": operator, "value": value}
    if params:
        cond["params"] = params
    return {"groups": [{"conditions": [cond]}]}


def _session(sid, user_id=7, server_id=1, started_at=NOW, **kw):
    s = {"id": sid, "user_id": user_id, "server_id": server_id, "session_key": f"sk-{sid}",
         "started_at": started_at, "ip_address": "81.2.69.160"}
    s.update(kw)
    return s


USER = {"id": 7, "server_id": 1, "trust_score": 100, "last_activity_at": None}


# -------------------------------------------------------------------
# Détections
# -------------------------------------------------------------------

def test_concurrent_streams_counts_current_session():
    active = [_session(i) for i in (1, 2, 3)]
    current = _session(4)
    rule = _rule(_single("concurrent_streams", "gt", 3))

    [r] = evaluate(current, [], active, [rule], user=USER, now=NOW)
    assert r.matched
    assert r.data["stream_count"] == 4


def test_concurrent_streams_ignores_duplicates_and_other_users():
    current = _session(1)
    active = [current, _session(1), _session(2, user_id=99), _session(3)]
    rule = _rule(_single("concurrent_streams", "gt", 2))

    [r] = evaluate(current, [], active, [rule], user=USER, now=NOW)
    assert not r.matched


def test_impossible_travel_london_to_new_york_in_one_hour():
    prev = _session(1, started_at=NOW - timedelta(hours=1), **LONDON)
    cur = _session(2, started_at=NOW, **NEW_YORK)
    rule = _rule(_single("travel_speed_kmh", "gt", 500), type="impossible_travel", severity="high")

    [r] = evaluate(cur, [prev], [], [rule], user=USER, now=NOW)
    assert r.matched
    assert r.severity == "high"
    assert r.data["from_city"] == "London, GB"
    assert r.data["to_city"] == "New York, US"
    assert 5500 < r.data["distance_km"] < 5600
    assert r.data["calculated_speed_kmh"] > 5000
    assert r.data["rule_type"] == "impossible_travel"


def test_travel_time_is_clamped_to_one_minute():
    prev = _session(1, started_at=NOW, **LONDON)
    cur = _session(2, started_at=NOW, **PARIS)
    rule = _rule(_single("travel_speed_kmh", "gt", 500))

    [r] = evaluate(cur, [prev], [], [rule], user=USER, now=NOW)
    assert r.matched
    assert r.data["time_diff_hours"] == round(1 / 60, 3)


def test_travel_without_coordinates_never_matches():
    prev = _session(1, started_at=NOW - timedelta(hours=1))
    cur = _session(2, **NEW_YORK)
    rule = _rule(_single("travel_speed_kmh", "gt", 0))

    [r] = evaluate(cur, [prev], [], [rule], user=USER, now=NOW)
    assert not r.matched


def test_simultaneous_locations():
    other = _session(1, **NEW_YORK)
    cur = _session(2, **LONDON)
    rule = _rule(_single("location_distance_km", "gt", 100))

    [r] = evaluate(cur, [], [other], [rule], user=USER, now=NOW)
    assert r.matched
    assert r.data["location_count"] == 2
    assert set(r.data["locations"]) == {"London, GB", "New York, US"}


def test_unique_ips_respects_window():
    recent = [
        _session(1, started_at=NOW - timedelta(hours=2), ip_address="10.0.0.1"),
        _session(2, started_at=NOW - timedelta(hours=3), ip_address="10.0.0.2"),
        _session(3, started_at=NOW - timedelta(hours=30), ip_address="10.0.0.3"),
    ]
    cur = _session(4, ip_address="10.0.0.4")

    wide = _rule(_single("unique_ips_in_window", "gte", 4, window_hours=48), rule_id=1)
    narrow = _rule(_single("unique_ips_in_window", "gte", 4, window_hours=24), rule_id=2)

    by_id = {r.rule_id: r for r in evaluate(cur, recent, [], [wide, narrow], user=USER, now=NOW)}
    assert by_id[1].matched
    assert by_id[1].data["ip_count"] == 4
    assert not by_id[2].matched


def test_inactive_days_never_active_is_infinite():
    rule = _rule(_single("inactive_days", "gt", 30))
    [r] = evaluate(None, [], [], [rule], user=USER, now=NOW)
    assert r.matched
    assert r.data["never_active"] is True
    assert r.data["threshold_days"] == 30


def test_inactive_days_counts_whole_days():
    user = dict(USER, last_activity_at=NOW - timedelta(days=40, hours=3))
    rule = _rule(_single("inactive_days", "gt", 30))
    [r] = evaluate(None, [], [], [rule], user=user, now=NOW)
    assert r.matched
    assert r.data["inactive_days"] == 40

    recent_user = dict(USER, last_activity_at=NOW - timedelta(days=2))
    [r] = evaluate(None, [], [], [rule], user=recent_user, now=NOW)
    assert not r.matched


def test_transcode_downgrade():
    cur = _session(1, is_transcode=True, source_resolution="4k", output_resolution="720p")
    rule = _rule(_single("is_transcode_downgrade", "eq", True))
    [r] = evaluate(cur, [], [], [rule], user=USER, now=NOW)
    assert r.matched
    assert r.data["source_resolution"] == "4k"


# -------------------------------------------------------------------
# Groupes / scope
# -------------------------------------------------------------------

def test_groups_are_or_conditions_are_and():
    cur = _session(1, media_type="movie", **LONDON)
    conditions = {"groups": [
        {"conditions": [
            {"field": "country", "operator": "eq", "value": "gb"},
            {"field": "media_type", "operator": "eq", "value": "episode"},
        ]},
        {"conditions": [{"field": "country", "operator": "in", "value": ["FR", "GB"]}]},
    ]}
    [r] = evaluate(cur, [], [], [_rule(conditions)], user=USER, now=NOW)
    assert r.matched
    assert r.matched_groups == [1]


def test_empty_group_never_matches():
    cur = _session(1)
    [r] = evaluate(cur, [], [], [_rule({"groups": [{"conditions": []}]})], user=USER, now=NOW)
    assert not r.matched
    [r] = evaluate(cur, [], [], [_rule({"groups": []})], user=USER, now=NOW)
    assert not r.matched


def test_scoped_rules_only_apply_to_their_user_and_server():
    cur = _session(1)
    rules = [
        _rule(_single("concurrent_streams", "gte", 1), rule_id=1),
        _rule(_single("concurrent_streams", "gte", 1), rule_id=2, user_id=7),
        _rule(_single("concurrent_streams", "gte", 1), rule_id=3, user_id=8),
        _rule(_single("concurrent_streams", "gte", 1), rule_id=4, server_id=2),
        _rule(_single("concurrent_streams", "gte", 1), rule_id=5, is_active=False),
    ]
    results = evaluate(cur, [], [], rules, user=USER, now=NOW)
    assert [r.rule_id for r in results] == [1, 2]
    assert all(r.matched for r in results)


def test_unmatched_result_carries_no_actions():
    [r] = evaluate(_session(1), [], [], [_rule(_single("concurrent_streams", "gt", 5))], user=USER, now=NOW)
    assert not r.matched
    assert r.actions == []
    assert r.severity is None


def test_filter_transcode_rules():
    a = _rule(_single("is_transcoding", "eq", True), rule_id=1)
    b = _rule(_single("concurrent_streams", "gt", 2), rule_id=2)
    c = _rule({"groups": [{"conditions": [
        {"field": "country", "operator": "eq", "value": "US"},
        {"field": "output_resolution", "operator": "eq", "value": "480p"},
    ]}]}, rule_id=3)
    assert [r.id for r in filter_transcode_rules([a, b, c])] == [1, 3]


def test_inactive_threshold_helpers():
    rule = _rule({"groups": [
        {"conditions": [{"field": "inactive_days", "operator": "gt", "value": 60}]},
        {"conditions": [{"field": "inactive_days", "operator": "gte", "value": 45}]},
    ]})
    assert has_inactivity_condition(rule)
    assert extract_inactive_days(rule) == 45
    assert extract_inactive_days(_rule(_single("country", "eq", "US"))) is None


def test_inactive_threshold_only_for_lower_bounds():
    assert extract_inactive_days(_rule(_single("inactive_days", "lte", 7))) is None
    assert extract_inactive_days(_rule(_single("inactive_days", "eq", 10))) is None
    # AND : la borne la plus stricte du groupe
    both = _rule({"groups": [{"conditions": [
        {"field": "inactive_days", "operator": "gt", "value": 10},
        {"field": "inactive_days", "operator": "gte", "value": 20},
    ]}]})
    assert extract_inactive_days(both) == 20
    # OR avec une branche sans borne : pas de pré-filtre possible
    mixed = _rule({"groups": [
        {"conditions": [{"field": "inactive_days", "operator": "gt", "value": 30}]},
        {"conditions": [{"field": "trust_score", "operator": "lt", "value": 10}]},
    ]})
    assert extract_inactive_days(mixed) is None


def test_user_aggregate_rules():
    assert is_user_aggregate_rule(_rule(_single("concurrent_streams", "gt", 3)))
    assert is_user_aggregate_rule(_rule(_single("unique_ips_in_window", "gt", 5, window_hours=24)))
    assert not is_user_aggregate_rule(_rule(_single("country", "in", ["US"])))
    assert not is_user_aggregate_rule(_rule(_single("travel_speed_kmh", "gt", 500)))


def test_severity_defaults_to_warning_and_none_without_violation_action():
    r = _rule(_single("country", "eq", "US"), actions=[{"type": "create_violation"}])
    assert r.severity == "warning"
    r = _rule(_single("country", "eq", "US"), actions=[{"type": "kill_stream"}])
    assert r.severity is None
    assert r.side_effects == [{"type": "kill_stream"}]


# -------------------------------------------------------------------
# Chargement
# -------------------------------------------------------------------

def test_legacy_rule_row_is_converted(db):
    db.execute(
        "INSERT INTO rules (name, type, is_active, conditions_json, actions_json) VALUES (?, ?, 1, ?, ?)",
        ("travel", "impossible_travel", dumps_json({"params": {"maxSpeedKmh": 800}}), "[]"),
    )
    [rule] = load_active_rules(db)
    cond = rule.conditions.groups[0].conditions[0]
    assert (cond.field, cond.operator, cond.value) == ("travel_speed_kmh", "gt", 800)
    assert rule.severity == "high"


def test_invalid_rule_is_skipped(db, make_rule):
    make_rule(_single("concurrent_streams", "gt", 3), name="good")
    db.execute(
        "INSERT INTO rules (name, is_active, conditions_json, actions_json) VALUES (?, 1, ?, ?)",
        ("bad", dumps_json(_single("shoe_size", "gt", 3)), dumps_json({"actions": []})),
    )
    rules = load_active_rules(db)
    assert [r.name for r in rules] == ["good"]


def test_inactive_days_inf_compares_above_any_threshold():
    rule = _rule(_single("inactive_days", "gte", 100000))
    [r] = evaluate(None, [], [], [rule], user=USER, now=NOW)
    assert r.matched
    assert r.data["inactive_days"] is None
