"""
mykeys_core.records
-------------------
Versioned records over a non-transactional key-value namespace.

Every stored record carries a ``revision`` counter. A component reads a
``Snapshot``, computes the proposed post-state, validates it, and commits with
``VersionedStore.write`` which only succeeds if the stored bytes are still the
ones it read. A lost race raises ``ConcurrentModification``; callers re-run the
whole read-check-write through ``retry_on_conflict`` so invariants are always
checked against fresh state.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar
import json

from .errors import ConcurrentModification, RetryExhausted
from .logger import get_logger
from .storage.provider import StorageProvider
from .utils import canonical_json

log = get_logger("MyKeys.Records")

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3


@dataclass(frozen=True)
class Snapshot:
    key: str
    data: Optional[Dict[str, Any]]
    raw: Optional[str]

    @property
    def exists(self) -> bool:
        return self.raw is not None

    @property
    def revision(self) -> int:
        return int((self.data or {}).get("revision", 0))


class VersionedStore:
    def __init__(self, storage: StorageProvider):
        self.storage = storage

    def read(self, key: str) -> Snapshot:
        raw = self.storage.get(key)
        return Snapshot(key=key, data=json.loads(raw) if raw is not None else None, raw=raw)

    def write(self, snapshot: Snapshot, data: Dict[str, Any]) -> Dict[str, Any]:
        """Commit ``data`` as the successor of ``snapshot``; returns the stored record."""
        record = dict(data)
        record["revision"] = snapshot.revision + 1
        if not self.storage.compare_and_set(snapshot.key, snapshot.raw, canonical_json(record)):
            log.info(f"[RECORDS] conflict on {snapshot.key} at revision {snapshot.revision}")
            raise ConcurrentModification(snapshot.key)
        return record

    def delete(self, key: str) -> None:
        self.storage.delete(key)


def retry_on_conflict(fn: Callable[[], T], key: str, attempts: int = DEFAULT_ATTEMPTS) -> T:
    """
    Run ``fn`` until it commits without a conflict.

    Only ``ConcurrentModification`` is retried; invariant violations and other
    errors propagate unchanged on the first occurrence. ``attempts=1`` surfaces
    the conflict itself instead of ``RetryExhausted``.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConcurrentModification:
            if attempts == 1:
                raise
            log.debug(f"[RECORDS] retrying {key} ({attempt}/{attempts})")
    raise RetryExhausted(key, attempts)
