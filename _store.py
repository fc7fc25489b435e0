from __future__ import annotations
import copy, json, logging, os, sqlite3, threading
from contextlib import closing
from typing import Any, Callable, Dict, TypeVar

log = logging.getLogger("telegraph-publisher")

T = TypeVar("T")

CONFIG_KEY = "config"


class PersistenceError(Exception):
    """The durable copy of the configuration could not be written."""


def default_document(channel: str = "") -> Dict[str, Any]:
    return {
        "channel": channel,
        "banned": [],
        "stats": {"requests": 0, "users": {}},
        "referrals": {},
        "recovery_tokens": {},
        "grants": {},
        "started": [],
        "history": {},
    }


class ConfigStore:
    """
    Process-wide configuration document kept in memory and mirrored to SQLite.

    Every mutate() runs under one lock, writes the whole document and only then
    replaces the in-memory copy, so a failed write leaves memory as it was.
    """

    def __init__(self, path: str, channel: str = ""):
        self.path = path
        self._defaults = default_document(channel)
        self._doc: Dict[str, Any] = copy.deepcopy(self._defaults)
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=3.0)

    def _init_db(self) -> None:
        db_dir = os.path.dirname(self.path) or "."
        os.makedirs(db_dir, exist_ok=True)
        with closing(self._connect()) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key   TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def load(self) -> Dict[str, Any]:
        self._init_db()
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT value FROM settings WHERE key=?", (CONFIG_KEY,)).fetchone()
        doc = copy.deepcopy(self._defaults)
        if row:
            try:
                stored = json.loads(row[0])
            except ValueError:
                log.exception("CONFIG: stored document is not valid JSON, using defaults")
                stored = {}
            if isinstance(stored, dict):
                doc.update(stored)
        # missing keys from older documents
        for k, v in self._defaults.items():
            doc.setdefault(k, copy.deepcopy(v))
        with self._lock:
            self._doc = doc
        log.info("CONFIG: loaded from %s (channel=%s banned=%s requests=%s)",
                 self.path, doc.get("channel"), len(doc.get("banned", [])), doc["stats"].get("requests", 0))
        return self.snapshot()

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._doc)

    def read(self, fn: Callable[[Dict[str, Any]], T]) -> T:
        with self._lock:
            return fn(self._doc)

    def _write(self, doc: Dict[str, Any]) -> None:
        payload = json.dumps(doc, ensure_ascii=False, sort_keys=True)
        try:
            with closing(self._connect()) as conn:
                conn.execute(
                    "INSERT INTO settings(key,value) VALUES(?,?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                    (CONFIG_KEY, payload),
                )
                conn.commit()
        except sqlite3.Error as e:
            log.error("CONFIG: write to %s failed: %s", self.path, e)
            raise PersistenceError(str(e)) from e

    def mutate(self, fn: Callable[[Dict[str, Any]], T]) -> T:
        with self._lock:
            draft = copy.deepcopy(self._doc)
            result = fn(draft)
            self._write(draft)
            self._doc = draft
            return result

    def flush(self) -> None:
        with self._lock:
            self._write(self._doc)


def user_key(user_id: int) -> str:
    return str(int(user_id))
