import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    # Chemin vers la base SQLite (dans le conteneur)
    DATABASE = os.environ.get("DATABASE_PATH", "/appdata/streamguard.db")

    # Clé secrète Flask (change-la en prod)
    SECRET_KEY = os.environ.get("STREAMGUARD_SECRET_KEY", "change-me")

    # Mode debug (0/1) : désactive aussi l'anonymisation des logs
    DEBUG = bool(_env_int("STREAMGUARD_DEBUG", 0))

    LOG_DIR = os.environ.get("STREAMGUARD_LOG_DIR", "/logs")

    # Poller (secondes)
    POLL_INTERVAL_SEC = max(5, _env_int("POLL_INTERVAL_SEC", 15))
    ADAPTER_TIMEOUT_SEC = _env_int("ADAPTER_TIMEOUT_SEC", 20)
    STALE_SESSION_TIMEOUT_SEC = _env_int("STALE_SESSION_TIMEOUT_SEC", 300)

    # Inactivity check
    INACTIVITY_SCHEDULE = os.environ.get("INACTIVITY_SCHEDULE", "0 * * * *")
    INACTIVITY_STARTUP_DELAY_SEC = _env_int("INACTIVITY_STARTUP_DELAY_SEC", 300)

    # Retry policy of scheduled tasks
    TASK_MAX_ATTEMPTS = _env_int("TASK_MAX_ATTEMPTS", 3)
    TASK_BACKOFF_SEC = _env_int("TASK_BACKOFF_SEC", 10)

    # Start the poller / scheduler threads with the app
    START_BACKGROUND = bool(_env_int("STREAMGUARD_START_BACKGROUND", 1))

    # Table GeoIP statique (JSON {"ip ou cidr": {"city":..., "country":..., "lat":..., "lon":...}})
    GEOIP_TABLE_PATH = os.environ.get("GEOIP_TABLE_PATH", "")

    HOST = os.environ.get("STREAMGUARD_HOST", "0.0.0.0")
    PORT = _env_int("STREAMGUARD_PORT", 5000)
