import threading
from datetime import datetime, timedelta, timezone

import pytest

from streamguard.db_utils import to_sql_ts
from streamguard.tasks_engine import TaskScheduler


@pytest.fixture
def scheduler(db):
    db.execute("INSERT INTO tasks (name, description, schedule) VALUES ('demo', 'demo task', '*/5 * * * *')")
    s = TaskScheduler(db, ctx={"hello": "world"}, max_attempts=3, backoff_sec=0, tick_sec=0.05)
    yield s
    s.stop(timeout=2)


def _task(db, name="demo"):
    return dict(db.query_one("SELECT * FROM tasks WHERE name = ?", (name,)))


def test_run_passes_task_id_and_context(db, scheduler):
    calls = []
    scheduler.register("demo", func=lambda task_id, ctx, **kw: calls.append((task_id, ctx, kw)))

    assert scheduler.run_task("demo", rule_id=4) is True
    assert calls == [(_task(db)["id"], {"hello": "world"}, {"rule_id": 4})]


def test_retry_until_success(db, scheduler):
    attempts = []

    def flaky(task_id, ctx):
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("temporary")
        return "ok"

    scheduler.register("demo", func=flaky)

    assert scheduler.run_task("demo") is True
    row = _task(db)
    assert len(attempts) == 3
    assert row["status"] == "idle"
    assert row["attempts"] == 3
    assert row["last_error"] is None
    assert row["last_run"] is not None


def test_exhausted_retries_end_in_error(db, scheduler):
    def broken(task_id, ctx):
        raise RuntimeError("boom")

    scheduler.register("demo", func=broken, max_attempts=2)

    assert scheduler.run_task("demo") is False
    row = _task(db)
    assert row["status"] == "error"
    assert row["attempts"] == 2
    assert row["last_error"] == "RuntimeError: boom"


def test_enqueue_unknown_or_disabled(db, scheduler):
    assert scheduler.enqueue("nope") is False

    scheduler.register("demo", func=lambda task_id, ctx: None)
    db.execute("UPDATE tasks SET enabled = 0 WHERE name = 'demo'")
    assert scheduler.enqueue("demo") is False
    assert scheduler.pending() == 0


def test_enqueue_marks_task_queued(db, scheduler):
    scheduler.register("demo", func=lambda task_id, ctx: None)
    assert scheduler.enqueue("demo") is True
    row = _task(db)
    assert row["status"] == "queued"
    assert row["queued_count"] == 1
    assert scheduler.pending() == 1


def test_tick_schedules_then_enqueues(db, scheduler):
    scheduler.register("demo", func=lambda task_id, ctx: None)
    now = datetime(2026, 5, 1, 10, 2, tzinfo=timezone.utc)

    # premier passage : calcule seulement next_run
    assert scheduler.tick(now) == []
    assert _task(db)["next_run"] == to_sql_ts(datetime(2026, 5, 1, 10, 5, tzinfo=timezone.utc))

    assert scheduler.tick(now + timedelta(minutes=1)) == []
    assert scheduler.tick(now + timedelta(minutes=4)) == ["demo"]
    assert _task(db)["next_run"] == to_sql_ts(datetime(2026, 5, 1, 10, 10, tzinfo=timezone.utc))

    # déjà en file : l'occurrence suivante est ignorée
    assert scheduler.tick(now + timedelta(minutes=9)) == []
    assert scheduler.pending() == 1


def test_compute_next_run(scheduler):
    base = datetime(2026, 5, 1, 10, 30, tzinfo=timezone.utc)
    assert scheduler.compute_next_run("0 * * * *", base) == datetime(2026, 5, 1, 11, 0, tzinfo=timezone.utc)


def test_worker_runs_enqueued_task(db, scheduler):
    done = threading.Event()
    scheduler.register("demo", func=lambda task_id, ctx: done.set())

    scheduler.start()
    assert scheduler.enqueue("demo") is True
    assert done.wait(5)


def test_delayed_enqueue_waits(db, scheduler):
    done = threading.Event()
    scheduler.register("demo", func=lambda task_id, ctx: done.set())

    scheduler.start()
    scheduler.enqueue("demo", delay=0.3)
    assert not done.wait(0.05)
    assert done.wait(5)


def test_recover_stuck_tasks(db, scheduler):
    db.execute("UPDATE tasks SET status = 'running', queued_count = 2 WHERE name = 'demo'")
    assert scheduler.recover_stuck_tasks() >= 1
    row = _task(db)
    assert row["status"] == "idle"
    assert row["queued_count"] == 0
    assert "Watchdog" in row["last_error"]


def test_default_task_modules_register(db):
    s = TaskScheduler(db)
    s.register("inactivity_check")
    s.register("sweep_stale_sessions")
    assert s.task_names == ["inactivity_check", "sweep_stale_sessions"]


def test_sweep_task_uses_configured_timeout(runtime, fake_provider, make_server, raw):
    sid = make_server()
    fake_provider.sessions_by_server[sid] = [raw("s1")]
    runtime.poller.trigger_now()

    later = datetime.now(timezone.utc) + timedelta(seconds=runtime.config.STALE_SESSION_TIMEOUT_SEC + 60)
    runtime.orchestrator.clock = lambda: later

    assert runtime.scheduler.run_task("sweep_stale_sessions") is True
    assert runtime.db.query_one("SELECT COUNT(*) AS n FROM sessions WHERE stopped_at IS NULL")["n"] == 0
