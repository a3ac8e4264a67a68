from __future__ import annotations
from typing import Optional, Dict, Any, List
import json, sqlite3, os, threading
from mykeys_core.storage.provider import StorageProvider
from mykeys_core.utils import now_ts


class SQLiteStorage(StorageProvider):
    def __init__(self, path="db/mykeys_state.db"):
        # If no directory, default to current working directory
        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)
        self.db = sqlite3.connect(path, check_same_thread=False)
        # one connection shared across request threads
        self._lock = threading.Lock()

        self._init()

    def _init(self) -> None:
        c = self.db.cursor()

        c.execute("""CREATE TABLE IF NOT EXISTS kv(
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS audit(
            ts TEXT,
            event_type TEXT,
            payload TEXT
        )""")

        self.db.commit()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            cur = self.db.execute("SELECT value FROM kv WHERE key=?", (key,))
            row = cur.fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self.db.execute(
                "INSERT INTO kv(key,value) VALUES(?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value)
            )
            self.db.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self.db.execute("DELETE FROM kv WHERE key=?", (key,))
            self.db.commit()

    def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        with self._lock:
            if expected is None:
                cur = self.db.execute("INSERT OR IGNORE INTO kv(key,value) VALUES(?,?)", (key, value))
            else:
                cur = self.db.execute("UPDATE kv SET value=? WHERE key=? AND value=?", (value, key, expected))
            self.db.commit()
            return cur.rowcount == 1

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            cur = self.db.execute("SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                                  (len(prefix), prefix))
            return [r[0] for r in cur.fetchall()]

    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.db.execute("INSERT INTO audit(ts,event_type,payload) VALUES(?,?,?)",
                            (now_ts(), event_type, json.dumps(payload, separators=(",", ":"), sort_keys=True)))
            self.db.commit()

    def list_events(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            if event_type is None:
                cur = self.db.execute("SELECT ts,event_type,payload FROM audit ORDER BY rowid")
            else:
                cur = self.db.execute("SELECT ts,event_type,payload FROM audit WHERE event_type=? ORDER BY rowid",
                                      (event_type,))
            rows = cur.fetchall()
        return [{"ts": ts, "event_type": et, "payload": json.loads(p)} for ts, et, p in rows]

    def close(self):
        self.db.close()
