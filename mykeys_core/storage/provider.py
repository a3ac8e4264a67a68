"""
mykeys_core.storage.provider
----------------------------
Key-value storage contract consumed by every core component.

Values are opaque serialized records (canonical JSON strings). Beyond plain
get/set/delete a provider must offer ``compare_and_set``: write ``value`` only
if the currently stored raw value equals ``expected`` (``None`` meaning
"absent"). Versioned records (see ``mykeys_core.records``) build their
optimistic-concurrency contract on top of it.

The audit trail is append-only and lives beside the namespace.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional


class StorageProvider:
    # Interface
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...

    def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        """
        Fallback CAS for plain get/set backends.

        Not atomic on its own; backends shared between processes must
        override it with a native conditional write (SQL ``UPDATE ... WHERE``,
        Redis ``WATCH``/``MULTI``, etc.).
        """
        if self.get(key) != expected:
            return False
        self.set(key, value)
        return True

    # audit
    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None: ...
    def list_events(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]: ...

    def close(self) -> None:
        return
