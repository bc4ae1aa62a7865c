"""
Violation pipeline.

create_violation() is the only writer of ``violations`` and the only place a
trust score goes down. Dedup key: (rule_id, user_id, session_id or NULL) while
unacknowledged. The check runs under a per-key lock inside a BEGIN IMMEDIATE
transaction, and the partial unique index catches anything that slips past
(other process, old row).
"""
from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from streamguard.constants import EVENT_VIOLATION_NEW, TRUST_SCORE_PENALTIES
from streamguard.core.enforcement import ActionExecutor
from streamguard.core.rules.engine import Rule, RuleResult
from streamguard.db_utils import dumps_json, loads_json, parse_sql_ts, to_sql_ts, utcnow
from streamguard.errors import ViolationPipelineError
from streamguard.logging_utils import get_logger

logger = get_logger("violations")

DedupKey = Tuple[int, int, Optional[int]]


def penalty_for(severity: str) -> int:
    return TRUST_SCORE_PENALTIES.get(severity, TRUST_SCORE_PENALTIES["warning"])


def describe_violation(rule_type: Optional[str], data: Dict[str, Any], rule_name: Optional[str] = None) -> str:
    """Résumé lisible d'une violation (notifications, logs)."""
    data = data or {}
    if rule_type == "impossible_travel" and "calculated_speed_kmh" in data:
        return (
            f"Traveled from {data.get('from_city') or 'unknown location'} to "
            f"{data.get('to_city') or 'unknown location'} at {data['calculated_speed_kmh']} km/h"
        )
    if rule_type == "simultaneous_locations" and data.get("locations"):
        locs = data["locations"]
        more = "..." if len(locs) > 2 else ""
        return f"Active from {len(locs)} locations: {', '.join(locs[:2])}{more}"
    if rule_type == "device_velocity" and "ip_count" in data:
        return f"{data['ip_count']} different IPs used in {data.get('window_hours')}h window"
    if rule_type == "concurrent_streams" and "stream_count" in data:
        return f"{data['stream_count']} concurrent streams"
    if rule_type == "geo_restriction":
        return "Streaming from a blocked location"
    if rule_type == "account_inactivity" or "never_active" in data:
        if data.get("never_active"):
            return "Account has never been active"
        days = data.get("inactive_days")
        if days == 1:
            return "Account has been inactive for 1 day"
        if days is not None:
            return f"Account has been inactive for {days} days"
        return "Account has been inactive"
    if rule_name:
        return f"Triggered rule: {rule_name}"
    return "Rule violation detected"


def _find_open_violation(db, key: DedupKey) -> Optional[dict]:
    row = db.query_one(
        """
        SELECT * FROM violations
        WHERE rule_id = ? AND user_id = ? AND session_id IS ? AND acknowledged_at IS NULL
        LIMIT 1
        """,
        key,
    )
    return dict(row) if row else None


def _insert_violation(db, key: DedupKey, severity: str, data: Dict[str, Any], now: datetime) -> Optional[int]:
    cur = db.execute(
        """
        INSERT OR IGNORE INTO violations (rule_id, user_id, session_id, severity, data_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (key[0], key[1], key[2], severity, dumps_json(data), to_sql_ts(now)),
    )
    if cur.rowcount == 0:
        return None
    return int(cur.lastrowid)


def _apply_penalty(db, user_id: int, severity: str) -> None:
    cur = db.execute(
        """
        UPDATE users
        SET trust_score = MAX(0, trust_score - ?), updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (penalty_for(severity), user_id),
    )
    if cur.rowcount == 0:
        raise ViolationPipelineError(f"user {user_id} not found")


class ViolationPipeline:
    def __init__(self, db, pubsub=None, notifier=None, executor: Optional[ActionExecutor] = None):
        self.db = db
        self.pubsub = pubsub
        self.notifier = notifier
        self.executor = executor or ActionExecutor(db)
        self._locks_guard = threading.Lock()
        self._locks: Dict[DedupKey, threading.Lock] = {}

    def _lock_for(self, key: DedupKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    # ----------------------------
    # Transaction
    # ----------------------------

    def create_violation(
        self,
        rule: Rule,
        user_id: int,
        session_id: Optional[int],
        result: RuleResult,
        session: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Optional[dict]:
        """
        Returns the new violation, or None on a dedup hit. Raises
        ViolationPipelineError when the transaction had to be rolled back.
        Side effects run after commit in both cases.
        """
        now = now or utcnow()
        severity = result.severity or rule.severity or "warning"
        key: DedupKey = (int(rule.id), int(user_id), int(session_id) if session_id is not None else None)

        violation_id = None
        with self._lock_for(key):
            try:
                with self.db.transaction():
                    if _find_open_violation(self.db, key) is not None:
                        logger.debug(f"Dedup hit rule={key[0]} user={key[1]} session={key[2]}")
                    else:
                        violation_id = _insert_violation(self.db, key, severity, result.data, now)
                        if violation_id is None:
                            logger.debug(f"Dedup hit (unique index) rule={key[0]} user={key[1]} session={key[2]}")
                        else:
                            _apply_penalty(self.db, key[1], severity)
            except ViolationPipelineError:
                logger.error(f"Violation rolled back rule={key[0]} user={key[1]} session={key[2]}", exc_info=True)
                raise
            except sqlite3.Error as e:
                logger.error(f"Violation rolled back rule={key[0]} user={key[1]} session={key[2]}: {e}", exc_info=True)
                raise ViolationPipelineError(str(e)) from e

        violation = None
        if violation_id is not None:
            violation = self.get_violation(violation_id)
            logger.info(
                f"🚨 Violation #{violation_id} rule={rule.id} ({rule.name}) user={user_id} "
                f"session={session_id} severity={severity} (-{penalty_for(severity)} trust)"
            )
            self._broadcast(rule, violation, session)

        self.enforce(rule, user_id, session)
        return violation

    def process_rule_result(
        self,
        rule: Rule,
        result: RuleResult,
        user_id: int,
        session: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Optional[dict]:
        """
        Point d'entrée des appelants (poller, inactivity check).
        Les erreurs du pipeline sont loguées, jamais propagées.
        """
        if not result.matched:
            return None

        if rule.violation_action is None:
            self.enforce(rule, user_id, session)
            return None

        session_id = (session or {}).get("id")
        try:
            return self.create_violation(rule, user_id, session_id, result, session=session, now=now)
        except ViolationPipelineError:
            # déjà logué, pas de retry dans le cycle
            return None

    def enforce(self, rule: Rule, user_id: int, session: Optional[dict] = None) -> List[Dict[str, Any]]:
        """Actions kill/message/log du rule, sans créer de violation."""
        return self.executor.execute(rule.side_effects, session, rule_id=rule.id, user_id=user_id)

    # ----------------------------
    # Après commit (best effort)
    # ----------------------------

    def _broadcast(self, rule: Rule, violation: dict, session: Optional[dict]) -> None:
        try:
            payload = self._event_payload(rule, violation, session)
        except Exception:
            logger.exception(f"Could not build violation:new payload for #{violation['id']}")
            return

        if self.pubsub is not None:
            try:
                self.pubsub.publish(EVENT_VIOLATION_NEW, payload)
            except Exception:
                logger.exception(f"Publish failed for violation #{violation['id']}")

        if self.notifier is not None:
            try:
                self.notifier.enqueue("violation", payload)
            except Exception:
                logger.exception(f"Notification enqueue failed for violation #{violation['id']}")

    def _event_payload(self, rule: Rule, violation: dict, session: Optional[dict]) -> Dict[str, Any]:
        user = self.db.query_one(
            "SELECT id, username, thumb_url, trust_score, server_id FROM users WHERE id = ?",
            (violation["user_id"],),
        )
        server_id = (session or {}).get("server_id") or (user["server_id"] if user else None)
        server = self.db.query_one("SELECT id, name, type FROM servers WHERE id = ?", (server_id,))

        return {
            "violation": violation,
            "rule": {"id": rule.id, "name": rule.name, "type": rule.type},
            "user": dict(user) if user else {"id": violation["user_id"]},
            "server": dict(server) if server else None,
            "description": describe_violation(rule.type, violation.get("data") or {}, rule.name),
        }

    # ----------------------------
    # Lecture / acquittement
    # ----------------------------

    def get_violation(self, violation_id: int) -> Optional[dict]:
        row = self.db.query_one("SELECT * FROM violations WHERE id = ?", (violation_id,))
        if row is None:
            return None
        v = dict(row)
        v["data"] = loads_json(v.pop("data_json", None))
        v["created_at"] = parse_sql_ts(v.get("created_at"))
        v["acknowledged_at"] = parse_sql_ts(v.get("acknowledged_at"))
        return v

    def acknowledge(self, violation_id: int, now: Optional[datetime] = None) -> bool:
        """Rouvre la fenêtre de dédup pour la clé de cette violation."""
        cur = self.db.execute(
            "UPDATE violations SET acknowledged_at = ? WHERE id = ? AND acknowledged_at IS NULL",
            (to_sql_ts(now or utcnow()), violation_id),
        )
        if cur.rowcount:
            logger.info(f"Violation #{violation_id} acknowledged")
        return cur.rowcount > 0
