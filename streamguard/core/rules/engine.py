"""
Rule evaluation.

evaluate() is pure: it reads the session, the user's recent sessions, the
active-session snapshot and the rules, and returns one RuleResult per rule
that applies to the user and server. Persistence is the pipeline's job.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from streamguard.constants import SEVERITIES
from streamguard.core.rules.conditions import RuleConditions, compare, parse_conditions
from streamguard.core.rules.fields import TRANSCODE_FIELDS, USER_AGGREGATE_FIELDS, EvaluationContext
from streamguard.core.rules.legacy import LEGACY_TYPES, convert_legacy_rule
from streamguard.db_utils import loads_json, utcnow
from streamguard.errors import RuleConfigError
from streamguard.logging_utils import get_logger

logger = get_logger("rules.engine")

ACTION_TYPES = ("create_violation", "kill_stream", "message_client", "log_only")
SIDE_EFFECT_ACTIONS = ("kill_stream", "message_client", "log_only")


def _parse_actions(raw: Any) -> List[Dict[str, Any]]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise RuleConfigError(f"Invalid actions JSON: {e}") from e
    if isinstance(raw, dict):
        raw = raw.get("actions") or []
    if not isinstance(raw, list):
        raise RuleConfigError("Actions must be a list")

    actions = []
    for a in raw:
        if not isinstance(a, dict) or a.get("type") not in ACTION_TYPES:
            raise RuleConfigError(f"Unknown action: {a!r}")
        if a["type"] == "create_violation" and a.get("severity", "warning") not in SEVERITIES:
            raise RuleConfigError(f"Unknown severity: {a.get('severity')}")
        actions.append(dict(a))
    return actions


@dataclass
class Rule:
    id: int
    name: str
    conditions: RuleConditions
    actions: List[Dict[str, Any]]
    user_id: Optional[int] = None
    server_id: Optional[int] = None
    is_active: bool = True
    type: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Rule":
        d = dict(row)
        rule_type = d.get("type") or None
        conditions_raw = d.get("conditions_json")
        actions_raw = d.get("actions_json")

        if rule_type in LEGACY_TYPES:
            # params / severity stockés dans conditions_json pour les anciennes règles
            legacy = loads_json(conditions_raw)
            if not legacy.get("groups"):
                conditions_raw, legacy_actions = convert_legacy_rule(
                    rule_type, legacy.get("params"), legacy.get("severity")
                )
                if not _parse_actions(actions_raw):
                    actions_raw = legacy_actions

        return cls(
            id=int(d["id"]),
            name=d.get("name") or f"rule-{d['id']}",
            conditions=parse_conditions(conditions_raw),
            actions=_parse_actions(actions_raw),
            user_id=d.get("user_id"),
            server_id=d.get("server_id"),
            is_active=bool(d.get("is_active", 1)),
            type=rule_type,
        )

    @property
    def violation_action(self) -> Optional[Dict[str, Any]]:
        for a in self.actions:
            if a["type"] == "create_violation":
                return a
        return None

    @property
    def severity(self) -> Optional[str]:
        a = self.violation_action
        return (a.get("severity") or "warning") if a else None

    @property
    def side_effects(self) -> List[Dict[str, Any]]:
        return [a for a in self.actions if a["type"] in SIDE_EFFECT_ACTIONS]


@dataclass
class RuleResult:
    rule_id: int
    matched: bool
    matched_groups: List[int] = field(default_factory=list)
    actions: List[Dict[str, Any]] = field(default_factory=list)
    severity: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "matched": self.matched,
            "matched_groups": list(self.matched_groups),
            "actions": list(self.actions),
            "severity": self.severity,
            "data": dict(self.data),
        }


# -------------------------------------------------------------------
# Chargement
# -------------------------------------------------------------------

def load_active_rules(db, server_id: Optional[int] = None) -> List[Rule]:
    """Invalid rules are logged and skipped; the others still load."""
    rows = db.query("SELECT * FROM rules WHERE is_active = 1 ORDER BY id")
    rules = []
    for row in rows:
        try:
            rule = Rule.from_row(row)
        except RuleConfigError as e:
            logger.error(f"Rule {row['id']} ({row['name']}) ignored: {e}")
            continue
        if server_id is not None and not rule_applies_to_server(rule, server_id):
            continue
        rules.append(rule)
    return rules


def get_rule(db, rule_id: int) -> Optional[Rule]:
    row = db.query_one("SELECT * FROM rules WHERE id = ?", (rule_id,))
    return Rule.from_row(row) if row else None


# -------------------------------------------------------------------
# Scope / filtres
# -------------------------------------------------------------------

def rule_applies_to_user(rule: Rule, user_id: Optional[int]) -> bool:
    return rule.user_id is None or (user_id is not None and int(rule.user_id) == int(user_id))


def rule_applies_to_server(rule: Rule, server_id: Optional[int]) -> bool:
    return rule.server_id is None or (server_id is not None and int(rule.server_id) == int(server_id))


def filter_transcode_rules(rules: Iterable[Rule]) -> List[Rule]:
    return [r for r in rules if r.conditions.referenced_fields() & TRANSCODE_FIELDS]


def has_inactivity_condition(rule: Rule) -> bool:
    return "inactive_days" in rule.conditions.referenced_fields()


def is_user_aggregate_rule(rule: Rule) -> bool:
    return bool(rule.conditions.referenced_fields() & USER_AGGREGATE_FIELDS)


def extract_inactive_days(rule: Rule) -> Optional[float]:
    """
    Borne basse d'inactivité (en jours) garantie par toutes les branches du rule.

    None dès qu'un groupe peut matcher un user actif récemment : pas de
    condition inactive_days gt/gte dans ce groupe (lte, eq, autre champ...).
    """
    bounds = []
    for g in rule.conditions.groups:
        if not g.conditions:
            continue
        values = []
        for c in g.conditions:
            if c.field != "inactive_days" or c.operator not in ("gt", "gte"):
                continue
            try:
                values.append(float(c.value))
            except (TypeError, ValueError):
                continue
        if not values:
            return None
        # conditions en AND : la plus stricte du groupe
        bounds.append(max(values))
    return min(bounds) if bounds else None


# -------------------------------------------------------------------
# Évaluation
# -------------------------------------------------------------------

def evaluate_rule(rule: Rule, ctx: EvaluationContext) -> RuleResult:
    matched_groups: List[int] = []
    data: Dict[str, Any] = {}

    for idx, group in enumerate(rule.conditions.groups):
        # groupe vide = jamais vrai
        if not group.conditions:
            continue
        ok = True
        for cond in group.conditions:
            actual = ctx.resolve(cond.field, cond.params)
            if not compare(cond.operator, actual, cond.value):
                ok = False
                break
        if not ok:
            continue

        matched_groups.append(idx)
        for cond in group.conditions:
            evidence = dict(ctx.evidence.get(cond.field, {}))
            if cond.field == "inactive_days":
                evidence["threshold_days"] = cond.value
            data.update(evidence)
            data.setdefault("conditions", []).append(cond.to_dict())

    matched = bool(matched_groups)
    if matched:
        data["rule_name"] = rule.name
        if rule.type:
            data["rule_type"] = rule.type

    return RuleResult(
        rule_id=rule.id,
        matched=matched,
        matched_groups=matched_groups,
        actions=list(rule.actions) if matched else [],
        severity=rule.severity if matched else None,
        data=data,
    )


def evaluate(
    session: Optional[dict],
    recent_sessions: Optional[List[dict]],
    active_sessions: Optional[List[dict]],
    rules: Iterable[Rule],
    user: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> List[RuleResult]:
    ctx = EvaluationContext(session, recent_sessions, active_sessions, user, now or utcnow())

    results = []
    for rule in rules:
        if not rule.is_active:
            continue
        if not rule_applies_to_user(rule, ctx.user_id):
            continue
        if not rule_applies_to_server(rule, ctx.server_id):
            continue
        result = evaluate_rule(rule, ctx)
        if result.matched:
            logger.debug(f"Rule {rule.id} ({rule.name}) matched for user {ctx.user_id}: groups={result.matched_groups}")
        results.append(result)
    return results
