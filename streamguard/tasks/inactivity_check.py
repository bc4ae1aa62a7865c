"""
Account inactivity detection.

Runs outside the poll loop: no session, so violations are created with
session_id = NULL and dedup on (rule, user) until acknowledged.
"""
import math
from datetime import timedelta

from streamguard.core.rules.engine import (
    evaluate,
    extract_inactive_days,
    get_rule,
    has_inactivity_condition,
    load_active_rules,
)
from streamguard.db_utils import to_sql_ts, utcnow
from streamguard.tasks_engine import task_logs


def _users_in_scope(db, rule, now):
    sql = "SELECT * FROM users WHERE 1=1"
    params = []
    if rule.user_id is not None:
        sql += " AND id = ?"
        params.append(rule.user_id)
    if rule.server_id is not None:
        sql += " AND server_id = ?"
        params.append(rule.server_id)

    # pré-filtre SQL seulement si chaque groupe exige inactive_days gt/gte
    # (l'évaluation reste faite par le moteur)
    threshold = extract_inactive_days(rule)
    if threshold is not None and math.isfinite(threshold) and threshold > 0:
        sql += " AND (last_activity_at IS NULL OR last_activity_at < ?)"
        params.append(to_sql_ts(now - timedelta(days=threshold)))

    sql += " ORDER BY id"
    return [dict(r) for r in db.query(sql, params)]


def run(task_id, ctx, rule_id=None):
    db = ctx.db
    pipeline = ctx.pipeline
    now = utcnow()

    if rule_id is not None:
        rule = get_rule(db, int(rule_id))
        rules = [rule] if rule is not None and rule.is_active else []
    else:
        rules = load_active_rules(db)
    rules = [r for r in rules if has_inactivity_condition(r)]

    if not rules:
        task_logs(task_id, "info", "inactivity_check: no inactivity rule")
        return {"rules": 0, "users": 0, "violations": 0}

    checked = 0
    created = 0
    for rule in rules:
        users = _users_in_scope(db, rule, now)
        task_logs(task_id, "info", f"inactivity_check: rule {rule.id} ({rule.name}) -> {len(users)} candidate user(s)")
        for user in users:
            checked += 1
            for result in evaluate(None, [], [], [rule], user=user, now=now):
                if result.matched and pipeline.process_rule_result(rule, result, user["id"], session=None, now=now):
                    created += 1

    task_logs(task_id, "info", f"inactivity_check: {checked} user(s) checked, {created} new violation(s)")
    return {"rules": len(rules), "users": checked, "violations": created}
