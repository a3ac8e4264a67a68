import threading
from typing import Optional, Dict, Any, List
from mykeys_core.storage.provider import StorageProvider
from mykeys_core.utils import now_ts


class InMemoryStorage(StorageProvider):
    """Process-local namespace for tests and single-process tools."""

    def __init__(self):
        self.kv: Dict[str, str] = {}
        self.audit: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        return self.kv.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self.kv[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self.kv.pop(key, None)

    def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        with self._lock:
            if self.kv.get(key) != expected:
                return False
            self.kv[key] = value
            return True

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self.kv if k.startswith(prefix))

    # audit
    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.audit.append({"ts": now_ts(), "event_type": event_type, "payload": dict(payload)})

    def list_events(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return [dict(e) for e in self.audit if event_type is None or e["event_type"] == event_type]
