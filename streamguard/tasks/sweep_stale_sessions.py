from streamguard.tasks_engine import task_logs


def run(task_id, ctx, timeout_sec=None):
    timeout = int(timeout_sec or ctx.config.STALE_SESSION_TIMEOUT_SEC)
    stopped = ctx.orchestrator.sweep_stale_sessions(timeout)
    if stopped:
        task_logs(task_id, "info", f"sweep_stale_sessions: {stopped} session(s) force-stopped (> {timeout}s)")
    return {"stopped": stopped}
