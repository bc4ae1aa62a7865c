import heapq
import importlib
import itertools
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter

from streamguard.db_utils import parse_sql_ts, to_sql_ts, utcnow
from streamguard.logging_utils import get_logger

logger = get_logger("tasks_engine")


# -------------------------------------------------------------------
# Logging unifié des tâches
# -------------------------------------------------------------------
def task_logs(task_id, status, message):
    status_l = str(status).lower().strip()
    log_msg = f"[TASK {task_id}] {status_l.upper()}: {message}"

    if status_l in ("error", "failed"):
        logger.error(log_msg)
    elif status_l in ("warn", "warning", "retry"):
        logger.warning(log_msg)
    else:
        logger.info(log_msg)


@dataclass
class TaskSpec:
    name: str
    func: Callable[..., Any]
    max_attempts: int
    backoff_sec: float


class TaskScheduler:
    """
    - 1 thread scheduler : cron (croniter) -> enqueue
    - 1 thread worker    : exécution séquentielle (concurrence 1)
    - état dans la table tasks (status, last_run, next_run, last_error, ...)
    - retry : max_attempts essais, backoff exponentiel (b, 2b, 4b, ...)
    """

    def __init__(
        self,
        db,
        ctx: Any = None,
        max_attempts: int = 3,
        backoff_sec: float = 10,
        tick_sec: float = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.ctx = ctx
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_sec = backoff_sec
        self.tick_sec = tick_sec
        self._clock = clock

        self._specs: Dict[str, TaskSpec] = {}
        self._queue: List[tuple] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # ----------------------------
    # Enregistrement
    # ----------------------------

    def register(
        self,
        name: str,
        func: Optional[Callable[..., Any]] = None,
        max_attempts: Optional[int] = None,
        backoff_sec: Optional[float] = None,
    ) -> None:
        """Sans func : streamguard.tasks.<name>.run"""
        if func is None:
            module = importlib.import_module(f"streamguard.tasks.{name}")
            if not hasattr(module, "run"):
                raise AttributeError(f"Le module streamguard.tasks.{name} n'expose pas run()")
            func = module.run

        self._specs[name] = TaskSpec(
            name=name,
            func=func,
            max_attempts=max(1, int(max_attempts or self.max_attempts)),
            backoff_sec=self.backoff_sec if backoff_sec is None else backoff_sec,
        )

    @property
    def task_names(self) -> List[str]:
        return sorted(self._specs)

    def _row(self, name: str):
        return self.db.query_one("SELECT * FROM tasks WHERE name = ?", (name,))

    def list_tasks(self) -> List[dict]:
        return [dict(r) for r in self.db.query("SELECT * FROM tasks ORDER BY name")]

    # ----------------------------
    # File d'attente
    # ----------------------------

    def enqueue(self, name: str, delay: float = 0, **kwargs) -> bool:
        row = self._row(name)
        if not row or name not in self._specs:
            logger.error(f"Tâche inconnue : {name}")
            return False
        if not row["enabled"]:
            logger.warning(f"Tâche désactivée : {name}")
            return False

        self.db.execute(
            """
            UPDATE tasks
            SET queued_count = queued_count + 1,
                status = CASE WHEN status IN ('idle', 'error') THEN 'queued' ELSE status END,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (row["id"],),
        )

        due = time.monotonic() + max(0.0, float(delay))
        with self._cond:
            heapq.heappush(self._queue, (due, next(self._seq), name, kwargs))
            self._cond.notify()

        if delay:
            logger.info(f"Tâche '{name}' planifiée dans {delay:g}s")
        return True

    def _next_job(self):
        with self._cond:
            while not self._stop.is_set():
                if self._queue:
                    due = self._queue[0][0]
                    wait = due - time.monotonic()
                    if wait <= 0:
                        _, _, name, kwargs = heapq.heappop(self._queue)
                        return name, kwargs
                    self._cond.wait(wait)
                else:
                    self._cond.wait()
        return None

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            job = self._next_job()
            if job is None:
                return
            name, kwargs = job
            try:
                self.run_task(name, **kwargs)
            except Exception:
                logger.error(f"[WORKER] Erreur exécution task {name}", exc_info=True)

    # ----------------------------
    # Exécution
    # ----------------------------

    def run_task(self, name: str, **kwargs) -> bool:
        row = self._row(name)
        spec = self._specs.get(name)
        if row is None or spec is None:
            logger.error(f"Tâche {name} introuvable.")
            return False

        task_id = row["id"]
        self.db.execute(
            """
            UPDATE tasks
            SET status = 'running',
                attempts = 0,
                queued_count = CASE WHEN queued_count > 0 THEN queued_count - 1 ELSE 0 END,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (task_id,),
        )
        task_logs(task_id, "start", f"Lancement tâche '{name}'")

        last_error = None
        for attempt in range(1, spec.max_attempts + 1):
            try:
                result = spec.func(task_id, self.ctx, **kwargs)
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.error(f"[TASK {task_id}] '{name}' attempt {attempt}/{spec.max_attempts} failed", exc_info=True)
                self.db.execute(
                    "UPDATE tasks SET attempts = ?, last_error = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (attempt, last_error, task_id),
                )
                if attempt < spec.max_attempts:
                    delay = spec.backoff_sec * (2 ** (attempt - 1))
                    task_logs(task_id, "retry", f"nouvel essai dans {delay:g}s")
                    if delay and self._stop.wait(delay):
                        break
                continue

            self.db.execute(
                """
                UPDATE tasks
                SET status = CASE WHEN queued_count > 0 THEN 'queued' ELSE 'idle' END,
                    last_run = ?,
                    last_error = NULL,
                    attempts = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (to_sql_ts(self._clock()), attempt, task_id),
            )
            task_logs(task_id, "success", f"Tâche '{name}' terminée ({result})" if result is not None else f"Tâche '{name}' terminée")
            return True

        self.db.execute(
            """
            UPDATE tasks
            SET status = CASE WHEN queued_count > 0 THEN 'queued' ELSE 'error' END,
                last_run = ?,
                last_error = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (to_sql_ts(self._clock()), last_error, task_id),
        )
        task_logs(task_id, "error", f"Tâche '{name}' en échec : {last_error}")
        return False

    # ----------------------------
    # Cron
    # ----------------------------

    def compute_next_run(self, schedule: str, base: datetime) -> datetime:
        return croniter(schedule, base).get_next(datetime)

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Enqueue les tâches dues ; retourne leurs noms."""
        now = now or self._clock()
        due = []
        rows = self.db.query("SELECT id, name, schedule, next_run, status FROM tasks WHERE enabled = 1")
        for row in rows:
            name, schedule = row["name"], row["schedule"]
            if not schedule or name not in self._specs:
                continue

            next_exec = parse_sql_ts(row["next_run"])
            if next_exec is None:
                next_exec = self.compute_next_run(schedule, now)
                self.db.execute("UPDATE tasks SET next_run = ? WHERE id = ?", (to_sql_ts(next_exec), row["id"]))
                continue

            if next_exec > now:
                continue

            # la prochaine exécution est planifiée même si celle-ci échoue
            self.db.execute(
                "UPDATE tasks SET next_run = ? WHERE id = ?",
                (to_sql_ts(self.compute_next_run(schedule, now)), row["id"]),
            )
            if row["status"] in ("running", "queued"):
                logger.info(f"Tâche '{name}' déjà en cours/en file, occurrence ignorée")
                continue
            logger.info(f"Tâche programmée/en retard : {name}")
            if self.enqueue(name):
                due.append(name)
        return due

    def _scheduler_loop(self) -> None:
        logger.info("Scheduler démarré…")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Erreur scheduler (global): {e}", exc_info=True)
            self._stop.wait(self.tick_sec)

    # ----------------------------
    # Watchdog / cycle de vie
    # ----------------------------

    def recover_stuck_tasks(self) -> int:
        cur = self.db.execute(
            """
            UPDATE tasks
            SET status = 'idle',
                queued_count = 0,
                last_error = 'Watchdog: task was stuck in running state',
                updated_at = CURRENT_TIMESTAMP
            WHERE status IN ('running', 'queued')
            """
        )
        if cur.rowcount:
            logger.warning(f"[WATCHDOG] {cur.rowcount} tâche(s) remise(s) à idle")
        return cur.rowcount

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        self.recover_stuck_tasks()
        for target, tname in ((self._scheduler_loop, "task-scheduler"), (self._worker_loop, "task-worker")):
            t = threading.Thread(target=target, name=tname, daemon=True)
            t.start()
            self._threads.append(t)
        logger.info(f"TaskScheduler démarré ({', '.join(self.task_names)})")

    def stop(self, timeout: Optional[float] = 5) -> None:
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        logger.info("TaskScheduler arrêté")

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)
