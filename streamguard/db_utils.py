import json
from datetime import datetime, timezone
from typing import Any, Optional

# ⚠️ AUCUNE ouverture de connexion SQLite ici
# Ce module ne fait que des helpers

SQL_TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def placeholders(count: int) -> str:
    """
    Génère des placeholders SQL (?, ?, ?, ...)
    """
    return ",".join("?" for _ in range(count))


def normalize_bool(value: Any) -> int:
    return 1 if bool(value) else 0


def loads_json(s: Optional[str], default: Any = None) -> Any:
    if not s:
        return {} if default is None else default
    try:
        return json.loads(s)
    except (TypeError, ValueError):
        return {} if default is None else default


def dumps_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


# -------------------------------------------------------------------
# Timestamps (UTC, naive en base, précision milliseconde)
# -------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_sql_ts(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(SQL_TS_FORMAT)[:-3]


def parse_sql_ts(ts: Any) -> Optional[datetime]:
    """
    Accepte "YYYY-MM-DD HH:MM:SS[.fff]" (CURRENT_TIMESTAMP inclus),
    un ISO 8601 ou un datetime. Retourne un datetime UTC aware.
    """
    if ts is None or ts == "":
        return None
    if isinstance(ts, datetime):
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)

    s = str(ts).strip()
    for fmt in ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(s, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def ms_between(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() * 1000))
