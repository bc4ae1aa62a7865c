import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler

# -------------------------------------------------------------------
# CONFIG
# -------------------------------------------------------------------

LOG_FILE_NAME = "streamguard.log"

_STATE = {
    "configured": False,
    "debug": False,
    "log_file": None,
}

# -------------------------------------------------------------------
# LOGGER ROOT
# -------------------------------------------------------------------

logger = logging.getLogger("streamguard")
logger.setLevel(logging.DEBUG)  # On capture tout, filtrage via handlers
logger.propagate = False

formatter = logging.Formatter(
    "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
)


def is_debug_mode_enabled() -> bool:
    return bool(_STATE["debug"])


# -------------------------------------------------------------------
# LOG FILTER (ANONYMISATION)
# -------------------------------------------------------------------

class AnonymizeFilter(logging.Filter):
    """
    - Masque la partie locale des emails (avant @)
    - Masque les tokens (X-Plex-Token, X-Emby-Token, Authorization, Bearer)
    - Désactivé si le mode debug est actif
    """

    EMAIL_REGEX = re.compile(
        r'([a-zA-Z0-9._%+-])([a-zA-Z0-9._%+-]*)(@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})'
    )

    TOKEN_REGEX = re.compile(
        r'(?i)\b(x-plex-token|x-emby-token|api_key|token|authorization|bearer)\b\s*[:=]\s*[a-z0-9\-._]+'
    )

    def filter(self, record: logging.LogRecord) -> bool:
        if is_debug_mode_enabled():
            return True

        msg = record.getMessage()

        msg = self.EMAIL_REGEX.sub(
            lambda m: f"{m.group(1)}{'*' * len(m.group(2))}{m.group(3)}",
            msg
        )

        msg = self.TOKEN_REGEX.sub(
            lambda m: f"{m.group(1)}=***REDACTED***",
            msg
        )

        record.msg = msg
        record.args = ()

        return True


def setup_logging(log_dir: str | None = None, debug: bool = False) -> None:
    """
    Attache les handlers (fichier rotatif + stderr) au logger racine.
    Idempotent : un second appel ne met à jour que le mode debug.
    """
    _STATE["debug"] = bool(debug)

    if _STATE["configured"]:
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(AnonymizeFilter())
    logger.addHandler(stream_handler)

    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            log_file = os.path.join(log_dir, LOG_FILE_NAME)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=5_000_000,   # 5 Mo
                backupCount=5,
                encoding="utf-8"
            )
            file_handler.setFormatter(formatter)
            file_handler.addFilter(AnonymizeFilter())
            logger.addHandler(file_handler)
            _STATE["log_file"] = log_file
        except OSError as e:
            logger.warning(f"File logging disabled ({log_dir}): {e}")

    _STATE["configured"] = True


def read_last_logs(limit=10):
    """
    Retourne les N dernières lignes du fichier de log.
    """
    log_file = _STATE["log_file"]
    if not log_file:
        return []
    try:
        with open(log_file, "r", encoding="utf-8") as f:
            return f.readlines()[-limit:]
    except FileNotFoundError:
        return []


# -------------------------------------------------------------------
# PUBLIC API
# -------------------------------------------------------------------

def get_logger(name: str):
    """
    Retourne un logger enfant :
    ex: streamguard.monitoring.collector, streamguard.tasks_engine
    """
    return logger.getChild(name)
