import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional

from streamguard.logging_utils import get_logger

logger = get_logger("db_manager")


class DBManager:
    """
    DBManager est l'autorité UNIQUE pour l'accès SQLite.
    - 1 seule connexion par base
    - 1 seul writer (verrou réentrant)
    - WAL configuré une seule fois
    - transaction() garde le verrou pendant toute la transaction
    """

    def __init__(self, db_path: str | None = None):
        if not db_path:
            db_path = os.environ.get("DATABASE_PATH", "/appdata/streamguard.db")

        self.db_path = db_path
        self._lock = threading.RLock()
        self._in_transaction = False

        # isolation_level=None : on pilote BEGIN/COMMIT nous-mêmes
        self.conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
        )
        self.conn.row_factory = sqlite3.Row

        self._configure_connection()

        logger.info(f"DBManager initialized ({self.db_path})")

    def _configure_connection(self) -> None:
        cur = self.conn.cursor()
        cur.execute("PRAGMA foreign_keys = ON;")
        if self.db_path != ":memory:":
            cur.execute("PRAGMA journal_mode = WAL;")
        cur.execute("PRAGMA synchronous = NORMAL;")
        cur.execute("PRAGMA busy_timeout = 5000;")
        cur.close()

    # ----------------------------
    # API publique
    # ----------------------------

    def execute(
        self,
        sql: str,
        params: Iterable[Any] = (),
    ) -> sqlite3.Cursor:
        """
        Exécute une requête WRITE (INSERT/UPDATE/DELETE).
        Hors transaction : autocommit. Dans transaction() : fait partie du lot.
        """
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(sql, tuple(params))
            return cur

    def executescript(self, script: str) -> None:
        with self._lock:
            self.conn.executescript(script)

    def query(
        self,
        sql: str,
        params: Iterable[Any] = ()
    ) -> list[sqlite3.Row]:
        """
        Exécute une requête READ (même connexion, safe avec WAL).
        """
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(sql, tuple(params))
            rows = cur.fetchall()
            cur.close()
            return rows

    def query_one(
        self,
        sql: str,
        params: Iterable[Any] = ()
    ) -> Optional[sqlite3.Row]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    @contextmanager
    def transaction(self) -> Iterator["DBManager"]:
        """
        BEGIN IMMEDIATE ... COMMIT, ROLLBACK sur exception.
        Les transactions imbriquées sont absorbées par la transaction externe.
        """
        with self._lock:
            if self._in_transaction:
                yield self
                return

            self.conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield self
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                try:
                    self.conn.execute("COMMIT")
                except sqlite3.Error:
                    self.conn.execute("ROLLBACK")
                    raise
            finally:
                self._in_transaction = False

    def close(self) -> None:
        with self._lock:
            self.conn.close()
            logger.info("DBManager connection closed")
