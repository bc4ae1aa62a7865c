from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from streamguard.constants import (
    EVENT_SESSION_STARTED,
    EVENT_SESSION_STOPPED,
    EVENT_SESSION_UPDATED,
)
from streamguard.core.monitoring.mappers import (
    build_observation,
    parse_raw_sessions,
    resolve_user,
    touch_user_activity,
)
from streamguard.core.monitoring.store import (
    find_resume_candidate,
    find_stale_sessions,
    insert_session,
    open_sessions_for_server,
    rebuild_active_sessions,
    recent_sessions_for_user,
    stop_session,
    to_active_session,
    update_session,
)
from streamguard.core.monitoring.tracker import (
    apply_observation,
    compute_session_events,
    finalize_stop,
    transcode_changed,
)
from streamguard.core.providers.registry import get_provider
from streamguard.core.rules.engine import (
    Rule,
    evaluate,
    filter_transcode_rules,
    has_inactivity_condition,
    is_user_aggregate_rule,
    load_active_rules,
)
from streamguard.db_utils import loads_json, to_sql_ts, utcnow
from streamguard.errors import ProviderTimeout
from streamguard.logging_utils import get_logger

logger = get_logger("monitoring.collector")


def _load_all_servers(db) -> List[Dict[str, Any]]:
    rows = db.query("SELECT * FROM servers ORDER BY id")
    return [dict(r) for r in rows]


def _set_server_status(db, server_id: int, status: str) -> None:
    db.execute(
        "UPDATE servers SET last_checked=CURRENT_TIMESTAMP, status=? WHERE id=?",
        (status, server_id),
    )


class PollOrchestrator:
    """
    Un cycle = tous les serveurs, chacun isolé : un serveur en erreur est
    marqué 'down' et les autres continuent.
    Seul écrivain du cache des sessions actives.
    """

    def __init__(
        self,
        db,
        cache,
        pipeline,
        pubsub=None,
        geoip=None,
        adapter_timeout_sec: int = 20,
        provider_factory=get_provider,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.cache = cache
        self.pipeline = pipeline
        self.pubsub = pubsub
        self.geoip = geoip
        self.adapter_timeout_sec = adapter_timeout_sec
        self._provider_factory = provider_factory
        self.clock = clock
        self._lock = threading.RLock()

    # ----------------------------
    # Helpers
    # ----------------------------

    def _publish(self, event: str, payload: Any) -> None:
        if self.pubsub is None:
            return
        try:
            self.pubsub.publish(event, payload)
        except Exception:
            logger.exception(f"Publish failed ({event})")

    def _snapshot(self) -> List[dict]:
        snap = self.cache.get_active_sessions()
        if snap is None:
            snap = rebuild_active_sessions(self.db)
            logger.info(f"Active-session cache rebuilt from database ({len(snap)} sessions)")
            self.cache.set_active_sessions(snap)
        return snap

    def _timeout_for(self, server: dict) -> float:
        settings = loads_json(server.get("settings_json"))
        return float(settings.get("adapter_timeout_sec") or self.adapter_timeout_sec)

    def _fetch_sessions(self, server: dict) -> Any:
        """Appel adapter borné dans le temps (thread + join)."""
        provider = self._provider_factory(server)
        box: Dict[str, Any] = {}

        def target():
            try:
                box["sessions"] = provider.get_active_sessions()
            except BaseException as e:
                box["error"] = e

        t = threading.Thread(target=target, daemon=True, name=f"adapter-{server['id']}")
        t.start()
        timeout = self._timeout_for(server)
        t.join(timeout)
        if t.is_alive():
            raise ProviderTimeout(f"server {server['id']} did not answer within {timeout:g}s")
        if "error" in box:
            raise box["error"]
        return box.get("sessions")

    def _process_results(self, results, rules_by_id: Dict[int, Rule], user_id: int, session: dict,
                         fired: Set[Tuple[int, int]], now) -> int:
        created = 0
        for r in results:
            if not r.matched:
                continue
            rule = rules_by_id[r.rule_id]
            if is_user_aggregate_rule(rule):
                # règle sur l'ensemble des sessions du user : une violation par cycle,
                # les sessions suivantes ne reçoivent que les actions
                if (r.rule_id, user_id) in fired:
                    self.pipeline.enforce(rule, user_id, session)
                    continue
                fired.add((r.rule_id, user_id))
            if self.pipeline.process_rule_result(rule, r, user_id, session=session, now=now):
                created += 1
        return created

    # ----------------------------
    # Cycle
    # ----------------------------

    def poll_servers(self) -> Dict[str, Any]:
        with self._lock:
            report: Dict[str, Any] = {
                "servers": 0, "ok": 0, "failed": 0,
                "new": 0, "updated": 0, "stopped": 0, "violations": 0,
                "errors": [],
            }

            servers = _load_all_servers(self.db)
            report["servers"] = len(servers)
            snapshot = self._snapshot()
            rules = load_active_rules(self.db)
            fired: Set[Tuple[int, int]] = set()

            next_snapshot: List[dict] = []
            for server in servers:
                sid = int(server["id"])
                try:
                    active = self._poll_server(server, snapshot, rules, fired, report)
                    _set_server_status(self.db, sid, "up")
                    report["ok"] += 1
                    next_snapshot.extend(active)
                except Exception as e:
                    logger.exception(f"Poll failed for server {sid} ({server.get('name')})")
                    _set_server_status(self.db, sid, "down")
                    report["failed"] += 1
                    report["errors"].append({"server_id": sid, "error": str(e)})
                    # on garde l'état connu du serveur en panne
                    next_snapshot.extend(s for s in snapshot if s.get("server_id") == sid)

            self.cache.set_active_sessions(next_snapshot)
            logger.debug(f"Poll cycle done: {report}")
            return report

    def _poll_server(self, server: dict, snapshot: List[dict], rules: List[Rule],
                     fired: Set[Tuple[int, int]], report: Dict[str, Any]) -> List[dict]:
        sid = int(server["id"])
        now = self.clock()

        raw = self._fetch_sessions(server)
        parsed = parse_raw_sessions(raw, sid)

        db_open = open_sessions_for_server(self.db, sid)
        cached = {str(s["session_key"]): s for s in snapshot if s.get("server_id") == sid}
        known_keys = set(db_open) | set(cached)

        # les règles d'inactivité tournent dans tasks/inactivity_check (session_id NULL)
        server_rules = [
            r for r in rules
            if (r.server_id is None or int(r.server_id) == sid) and not has_inactivity_condition(r)
        ]
        transcode_rules = filter_transcode_rules(server_rules)
        rules_by_id = {r.id: r for r in server_rules}

        others = [s for s in snapshot if s.get("server_id") != sid]
        current: List[dict] = []
        seen_keys: Set[str] = set()

        for p in parsed:
            key = p["session_key"]
            seen_keys.add(key)
            user = resolve_user(self.db, sid, p)
            observed = build_observation(p, sid, user["id"], self.geoip)
            existing = db_open.get(key)

            if existing is None:
                candidate = find_resume_candidate(self.db, user["id"], observed.get("rating_key"), now)
                session, _ = apply_observation(None, observed, now, resume_candidate=candidate)
                session = insert_session(self.db, session)
                touch_user_activity(self.db, user["id"], now)
                user["last_activity_at"] = to_sql_ts(now)

                projection = to_active_session(session, user, server)
                current.append(projection)
                self._cache_session(projection)
                report["new"] += 1

                recent = recent_sessions_for_user(self.db, user["id"], now, exclude_id=session["id"])
                results = evaluate(session, recent, others + current, server_rules, user=user, now=now)
                report["violations"] += self._process_results(results, rules_by_id, user["id"], session, fired, now)

                self._publish(EVENT_SESSION_STARTED, projection)
                continue

            session, _ = apply_observation(existing, observed, now)
            update_session(self.db, session)
            touch_user_activity(self.db, user["id"], now)
            user["last_activity_at"] = to_sql_ts(now)

            projection = to_active_session(session, user, server)
            current.append(projection)
            self._cache_session(projection)
            report["updated"] += 1

            changed = transcode_changed(existing, session)
            if changed and transcode_rules:
                logger.info(f"[server {sid}] transcode change on session {key}, re-evaluating {len(transcode_rules)} rule(s)")
                recent = recent_sessions_for_user(self.db, user["id"], now, exclude_id=session["id"])
                results = evaluate(session, recent, others + current, transcode_rules, user=user, now=now)
                report["violations"] += self._process_results(results, rules_by_id, user["id"], session, fired, now)

            if changed or compute_session_events(existing, session) or existing.get("progress_ms") != session.get("progress_ms"):
                self._publish(EVENT_SESSION_UPDATED, projection)

        for key in sorted(known_keys - seen_keys):
            existing = db_open.get(key)
            if existing is None:
                # clé connue du cache seulement (déjà fermée en base)
                self._uncache_session(cached[key])
                continue
            stopped = finalize_stop(existing, now)
            if stop_session(self.db, stopped):
                report["stopped"] += 1
                self._uncache_session(stopped)
                self._publish(EVENT_SESSION_STOPPED, stopped)

        return current

    # ----------------------------
    # Index secondaires du cache
    # ----------------------------

    def _cache_session(self, projection: dict) -> None:
        self.cache.set_session_by_id(projection["id"], projection)
        self.cache.add_user_session(projection["user_id"], projection["id"])

    def _uncache_session(self, session: dict) -> None:
        if session.get("id") is None:
            return
        self.cache.delete_session_by_id(session["id"])
        self.cache.remove_user_session(session["user_id"], session["id"])

    # ----------------------------
    # Stale sweep
    # ----------------------------

    def sweep_stale_sessions(self, timeout_sec: int) -> int:
        """Force l'arrêt des sessions non vues depuis timeout_sec."""
        with self._lock:
            now = self.clock()
            stale = find_stale_sessions(self.db, now, timeout_sec)
            stopped_ids = set()
            for s in stale:
                stopped = finalize_stop(s, now)
                if stop_session(self.db, stopped):
                    stopped_ids.add(s["id"])
                    self._uncache_session(stopped)
                    self._publish(EVENT_SESSION_STOPPED, stopped)
                    logger.info(f"Stale session {s['id']} (server {s['server_id']}, key {s['session_key']}) force-stopped")

            if stopped_ids:
                snap = self.cache.get_active_sessions()
                if snap is not None:
                    self.cache.set_active_sessions([x for x in snap if x.get("id") not in stopped_ids])
            return len(stopped_ids)


class SessionPoller:
    """Timer du poll. Pas d'annulation d'un cycle en cours : stop() attend sa fin."""

    def __init__(self, orchestrator: PollOrchestrator, interval_sec: int = 15):
        self.orchestrator = orchestrator
        self.interval_sec = interval_sec
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cycle_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="session-poller")
        self._thread.start()
        logger.info(f"Session poller started (every {self.interval_sec}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Session poller stopped")

    def trigger_now(self) -> Optional[Dict[str, Any]]:
        return self._run_cycle()

    def _run_cycle(self) -> Optional[Dict[str, Any]]:
        with self._cycle_lock:
            try:
                return self.orchestrator.poll_servers()
            except Exception:
                logger.exception("Poll cycle failed")
                return None

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._run_cycle()
            self._stop.wait(self.interval_sec)
