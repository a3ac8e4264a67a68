"""
mykeys_core.audit
-----------------
Append-only audit trail for grant, revoke, transfer and membership changes.

Events are written once through the storage provider's ``log_event`` and are
never updated; ``events`` is the read API used for external reporting.
"""

from __future__ import annotations
from typing import List, Optional

from .logger import get_logger
from .models import AuditEvent
from .storage.provider import StorageProvider

log = get_logger("MyKeys.Audit")

EVENT_TYPE = "mykeys.audit"


class AuditLog:
    def __init__(self, storage: StorageProvider):
        self.storage = storage

    def record(self, actor: str, action: str, target: str, outcome: str, **detail) -> AuditEvent:
        event = AuditEvent(actor=actor, action=action, target=target, outcome=outcome, detail=detail)
        self.storage.log_event(EVENT_TYPE, event.to_dict())
        log.info(f"[AUDIT] {action} by {actor} on {target}: {outcome}")
        return event

    def events(self, actor: Optional[str] = None, action: Optional[str] = None,
               target: Optional[str] = None) -> List[AuditEvent]:
        out = []
        for row in self.storage.list_events(EVENT_TYPE):
            event = AuditEvent.from_dict(row["payload"])
            if actor is not None and event.actor != actor:
                continue
            if action is not None and event.action != action:
                continue
            if target is not None and event.target != target:
                continue
            out.append(event)
        return out
