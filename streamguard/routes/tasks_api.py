from flask import current_app, jsonify, request

from streamguard.logging_utils import get_logger, read_last_logs

task_logger = get_logger("tasks_api")


def _runtime():
    return current_app.extensions["streamguard"]


def register(app):
    @app.route("/api/poll/trigger", methods=["POST"])
    def api_poll_trigger():
        rt = _runtime()
        report = rt.poller.trigger_now()
        if report is None:
            return jsonify({"ok": False, "error": "poll cycle failed"}), 500
        return jsonify({"ok": True, "report": report})

    @app.route("/api/tasks/list", methods=["GET"])
    def api_tasks_list():
        rt = _runtime()
        tasks = []
        for r in rt.scheduler.list_tasks():
            tasks.append({
                "id": r["id"],
                "name": r["name"],
                "description": r["description"],
                "schedule": r["schedule"],
                "status": r["status"],
                "enabled": bool(r["enabled"]),
                "last_run": r["last_run"],
                "next_run": r["next_run"],
                "last_error": r["last_error"],
                "attempts": r["attempts"],
                "queued_count": r["queued_count"],
            })
        return jsonify({"tasks": tasks})

    @app.route("/api/tasks/<name>/run", methods=["POST"])
    def api_tasks_run(name):
        rt = _runtime()
        payload = request.get_json(silent=True) or {}

        kwargs = {}
        if name == "inactivity_check" and payload.get("rule_id") is not None:
            try:
                kwargs["rule_id"] = int(payload["rule_id"])
            except (TypeError, ValueError):
                return jsonify({"ok": False, "error": "rule_id must be an integer"}), 400

        if name not in rt.scheduler.task_names:
            return jsonify({"ok": False, "error": f"unknown task: {name}"}), 404

        if not rt.scheduler.enqueue(name, **kwargs):
            return jsonify({"ok": False, "error": f"task {name} is disabled"}), 409

        task_logger.info(f"Tâche '{name}' lancée manuellement {kwargs or ''}".rstrip())
        return jsonify({"ok": True, "queued": name}), 202

    @app.route("/api/violations/<int:violation_id>/acknowledge", methods=["POST"])
    def api_violation_acknowledge(violation_id):
        rt = _runtime()
        violation = rt.pipeline.get_violation(violation_id)
        if violation is None:
            return jsonify({"ok": False, "error": "violation not found"}), 404
        if not rt.pipeline.acknowledge(violation_id):
            return jsonify({"ok": True, "already_acknowledged": True})
        return jsonify({"ok": True})

    @app.route("/api/logs", methods=["GET"])
    def api_logs():
        limit = request.args.get("limit", default=100, type=int)
        limit = max(1, min(limit or 100, 5000))
        return jsonify({"lines": [line.rstrip("\n") for line in read_last_logs(limit)]})
