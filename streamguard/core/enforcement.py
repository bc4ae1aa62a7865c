"""
Side-effect actions of a matched rule: kill_stream, message_client, log_only.

They run after the violation transaction is committed. A failing action is
logged and reported in the results; it never undoes the violation.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from streamguard.core.providers.registry import get_provider
from streamguard.logging_utils import get_logger

logger = get_logger("enforcement")

DEFAULT_KILL_REASON = "This stream has been terminated by the server administrator."
DEFAULT_MESSAGE_TITLE = "StreamGuard"
DEFAULT_MESSAGE_TEXT = "Your account activity triggered a sharing rule."


class ActionExecutor:
    def __init__(self, db, provider_factory=get_provider):
        self.db = db
        self._provider_factory = provider_factory

    def _load_server(self, server_id: int) -> Optional[dict]:
        row = self.db.query_one("SELECT * FROM servers WHERE id = ?", (server_id,))
        return dict(row) if row else None

    def _provider_for(self, session: dict):
        server = self._load_server(int(session["server_id"]))
        if server is None:
            raise LookupError(f"server {session['server_id']} not found")
        return self._provider_factory(server)

    def _kill(self, action: dict, session: dict) -> bool:
        reason = action.get("message") or DEFAULT_KILL_REASON
        return bool(self._provider_for(session).terminate_session(str(session["session_key"]), reason=reason))

    def _message(self, action: dict, session: dict) -> bool:
        return bool(self._provider_for(session).send_session_message(
            str(session["session_key"]),
            action.get("title") or DEFAULT_MESSAGE_TITLE,
            action.get("message") or DEFAULT_MESSAGE_TEXT,
        ))

    def execute(
        self,
        actions: List[Dict[str, Any]],
        session: Optional[dict],
        rule_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        results = []
        for action in actions:
            kind = action.get("type")
            if kind not in ("kill_stream", "message_client", "log_only"):
                continue

            if kind == "log_only":
                logger.warning(
                    f"[rule {rule_id}] log_only: user={user_id} "
                    f"session={(session or {}).get('session_key')} {action.get('message') or ''}".rstrip()
                )
                results.append({"type": kind, "ok": True})
                continue

            if not session or not session.get("session_key"):
                logger.info(f"[rule {rule_id}] {kind} skipped: no live session (user={user_id})")
                results.append({"type": kind, "ok": False, "skipped": True})
                continue

            try:
                ok = self._kill(action, session) if kind == "kill_stream" else self._message(action, session)
            except Exception as e:
                logger.error(
                    f"[rule {rule_id}] {kind} failed server={session.get('server_id')} "
                    f"session={session.get('session_key')}: {e}",
                    exc_info=True,
                )
                results.append({"type": kind, "ok": False, "error": str(e)})
                continue

            if ok:
                logger.warning(f"[rule {rule_id}] {kind} done server={session.get('server_id')} session={session.get('session_key')}")
            else:
                logger.warning(f"[rule {rule_id}] {kind} not supported or refused by server {session.get('server_id')}")
            results.append({"type": kind, "ok": ok})
        return results
