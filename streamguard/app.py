import json
from dataclasses import dataclass
from typing import Any, Optional

from flask import Flask

from streamguard import __version__
from streamguard.config import Config
from streamguard.core.cache import InMemoryNotificationQueue, LocalPubSub, MemoryActiveSessionStore
from streamguard.core.enforcement import ActionExecutor
from streamguard.core.geoip import NullGeoIPResolver, StaticGeoIPResolver
from streamguard.core.monitoring.collector import PollOrchestrator, SessionPoller
from streamguard.core.providers.registry import get_provider
from streamguard.core.violations import ViolationPipeline
from streamguard.db_bootstrap import run_migrations
from streamguard.db_manager import DBManager
from streamguard.logging_utils import get_logger, setup_logging
from streamguard.routes import tasks_api
from streamguard.tasks_engine import TaskScheduler

logger = get_logger("app")

REGISTERED_TASKS = ("inactivity_check", "sweep_stale_sessions")


@dataclass
class Runtime:
    config: Any
    db: DBManager
    cache: MemoryActiveSessionStore
    pubsub: LocalPubSub
    notifier: InMemoryNotificationQueue
    pipeline: ViolationPipeline
    orchestrator: PollOrchestrator
    poller: SessionPoller
    scheduler: TaskScheduler

    def start(self) -> None:
        self.poller.start()
        self.scheduler.start()
        delay = self.config.INACTIVITY_STARTUP_DELAY_SEC
        if delay is not None and delay >= 0:
            self.scheduler.enqueue("inactivity_check", delay=delay)

    def stop(self) -> None:
        self.poller.stop()
        self.scheduler.stop()


def load_geoip(config):
    path = getattr(config, "GEOIP_TABLE_PATH", "")
    if not path:
        return NullGeoIPResolver()
    try:
        with open(path, "r", encoding="utf-8") as f:
            table = json.load(f)
        resolver = StaticGeoIPResolver(table)
    except (OSError, ValueError, TypeError, AttributeError) as e:
        # fichier illisible ou entrée invalide (clé inconnue, CIDR faux, pas un objet)
        logger.error(f"GeoIP table {path} unusable, geo fields disabled: {e}")
        return NullGeoIPResolver()
    logger.info(f"GeoIP table loaded ({len(table)} entries)")
    return resolver


def build_runtime(config=Config, db: Optional[DBManager] = None, geoip=None, provider_factory=get_provider) -> Runtime:
    db = db or DBManager(config.DATABASE)
    run_migrations(db, task_schedules={"inactivity_check": config.INACTIVITY_SCHEDULE})

    cache = MemoryActiveSessionStore(ttl_sec=max(60, config.STALE_SESSION_TIMEOUT_SEC))
    pubsub = LocalPubSub()
    notifier = InMemoryNotificationQueue()

    pipeline = ViolationPipeline(
        db,
        pubsub=pubsub,
        notifier=notifier,
        executor=ActionExecutor(db, provider_factory=provider_factory),
    )
    orchestrator = PollOrchestrator(
        db,
        cache,
        pipeline,
        pubsub=pubsub,
        geoip=geoip if geoip is not None else load_geoip(config),
        adapter_timeout_sec=config.ADAPTER_TIMEOUT_SEC,
        provider_factory=provider_factory,
    )
    poller = SessionPoller(orchestrator, interval_sec=config.POLL_INTERVAL_SEC)
    scheduler = TaskScheduler(
        db,
        max_attempts=config.TASK_MAX_ATTEMPTS,
        backoff_sec=config.TASK_BACKOFF_SEC,
    )

    runtime = Runtime(
        config=config,
        db=db,
        cache=cache,
        pubsub=pubsub,
        notifier=notifier,
        pipeline=pipeline,
        orchestrator=orchestrator,
        poller=poller,
        scheduler=scheduler,
    )
    scheduler.ctx = runtime
    for name in REGISTERED_TASKS:
        scheduler.register(name)
    return runtime


def create_app(config=Config, runtime: Optional[Runtime] = None, start_background: Optional[bool] = None):
    setup_logging(config.LOG_DIR, debug=config.DEBUG)

    app = Flask(__name__)
    app.config.from_object(config)

    runtime = runtime or build_runtime(config)
    app.extensions["streamguard"] = runtime

    tasks_api.register(app)

    @app.route("/api/health", methods=["GET"])
    def api_health():
        return {"ok": True, "version": __version__}

    if start_background is None:
        start_background = config.START_BACKGROUND
    if start_background:
        runtime.start()
        logger.info(f"StreamGuard {__version__} started")

    return app


def main():
    app = create_app()
    app.run(host=Config.HOST, port=Config.PORT)


if __name__ == "__main__":
    main()
