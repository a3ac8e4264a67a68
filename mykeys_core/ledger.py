"""
mykeys_core.ledger
------------------
Key Visibility Ledger: the sole writer of per-key visibility metadata.

Every ring-scoped secret has a ``KeyRecord`` naming its creator and whether it
is shared with the ring or private to the creator. Visibility only ever moves
from private to shared (``grant_access``); there is no way back.

Keys stored before visibility records existed have no record at all and are
treated as shared by every read path. Every write path here registers an
explicit record.

Copy and move duplicate the secret value through the ``SecretStore``
collaborator. A move writes and confirms the target before it touches the
source, so a failure part-way leaves the secret in the source ring rather than
in neither.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional

from .audit import AuditLog
from .constants import ROLE_ADMIN, KEY_VISIBILITY_KEY, KEY_REQUESTS_KEY, RING_KEYS_LIST_KEY
from .errors import (
    KeyNotFound, KeyAlreadyExists, NotKeyCreator, NotRingMember, InsufficientRole,
    ValidationError, ConcurrentModification,
)
from .logger import get_logger
from .models import AccessRequest, KeyRecord
from .records import VersionedStore, retry_on_conflict, DEFAULT_ATTEMPTS
from .rings import RingRepository
from .storage.provider import StorageProvider
from .storage.secrets import SecretStore
from .utils import normalize_identifier, now_ts

log = get_logger("MyKeys.Ledger")

COPIED = "copied"
MOVED = "moved"
COPIED_NOT_MOVED = "copied_not_moved"


@dataclass
class AccessRequestResult:
    ring_id: str
    key_name: str
    already_visible: bool = False
    requested: bool = False
    request: Optional[AccessRequest] = None


@dataclass
class TransferResult:
    source_ring_id: str
    target_ring_id: str
    source_key_name: str
    target_key_name: str
    status: str
    key: KeyRecord

    @property
    def moved(self) -> bool:
        return self.status == MOVED


class KeyVisibilityLedger:
    def __init__(self, storage: StorageProvider, rings: RingRepository, secrets: SecretStore,
                 audit: Optional[AuditLog] = None, max_retries: int = DEFAULT_ATTEMPTS):
        self.records = VersionedStore(storage)
        self.rings = rings
        self.secrets = secrets
        self.audit = audit
        self.max_retries = max_retries

    @staticmethod
    def visibility_key(ring_id: str, key_name: str) -> str:
        return KEY_VISIBILITY_KEY.format(ring_id=ring_id, key_name=key_name)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def find_key(self, ring_id: str, key_name: str) -> Optional[KeyRecord]:
        snap = self.records.read(self.visibility_key(ring_id, key_name))
        return KeyRecord.from_dict(snap.data) if snap.exists else None

    def get_key(self, ring_id: str, key_name: str) -> KeyRecord:
        record = self.find_key(ring_id, key_name)
        if record is None:
            raise KeyNotFound(ring_id, key_name)
        return record

    def list_keys(self, ring_id: str) -> List[str]:
        snap = self.records.read(RING_KEYS_LIST_KEY.format(ring_id=ring_id))
        return list((snap.data or {}).get("keys", []))

    def count_keys(self, ring_id: str) -> int:
        return len(self.list_keys(ring_id))

    def can_view(self, actor: str, ring_id: str, key_name: str) -> bool:
        actor = normalize_identifier(actor)
        if not self.rings.is_member(ring_id, actor):
            return False
        record = self.find_key(ring_id, key_name)
        if record is None:
            return True  # legacy key without a visibility record
        return record.is_shared or record.creator == actor

    def list_visible_keys(self, actor: str, ring_id: str) -> List[str]:
        return [k for k in self.list_keys(ring_id) if self.can_view(actor, ring_id, k)]

    def pending_requests(self, ring_id: str, key_name: str, actor: str) -> List[AccessRequest]:
        """Pending access requests, readable only by the key's creator."""
        actor = normalize_identifier(actor)
        record = self.get_key(ring_id, key_name)
        if record.creator != actor:
            raise NotKeyCreator(ring_id, key_name, actor)
        return [r for r in self._read_requests(ring_id, key_name) if r.status == "pending"]

    # ------------------------------------------------------------------
    # Registration / visibility
    # ------------------------------------------------------------------
    def register_key(self, ring_id: str, key_name: str, creator: str, is_shared: bool = True) -> KeyRecord:
        """First registration of (ring, name) wins; later calls return the existing record."""
        creator = normalize_identifier(creator)
        if not key_name:
            raise ValidationError("Key name is required")
        self.rings.get_ring(ring_id)
        if not self.rings.is_member(ring_id, creator):
            raise NotRingMember(ring_id, creator)

        existing = self.find_key(ring_id, key_name)
        if existing is not None:
            return existing
        try:
            record = self._create_record(KeyRecord(ring_id=ring_id, name=key_name, creator=creator,
                                                   is_shared=is_shared))
        except KeyAlreadyExists:
            return self.get_key(ring_id, key_name)
        log.info(f"[LEDGER] registered {ring_id}/{key_name} shared={is_shared}")
        return record

    def request_access(self, ring_id: str, key_name: str, actor: str, reason: str = "") -> AccessRequestResult:
        """
        Ask the creator of a private key to share it. Admin-only.

        Records a pending request the creator can see; never grants anything.
        """
        actor = normalize_identifier(actor)
        self._require_admin(ring_id, actor)

        record = self.find_key(ring_id, key_name)
        if record is None:
            if self.secrets.get_secret(ring_id, key_name) is None:
                raise KeyNotFound(ring_id, key_name)
            return AccessRequestResult(ring_id, key_name, already_visible=True)
        if record.is_shared or record.creator == actor:
            return AccessRequestResult(ring_id, key_name, already_visible=True)

        key = KEY_REQUESTS_KEY.format(ring_id=ring_id, key_name=key_name)
        request = AccessRequest(requester=actor, reason=reason or "")

        def attempt() -> AccessRequest:
            snap = self.records.read(key)
            requests = [AccessRequest.from_dict(r) for r in (snap.data or {}).get("requests", [])]
            for existing in requests:
                if existing.requester == actor and existing.status == "pending":
                    return existing
            requests.append(request)
            self.records.write(snap, {"requests": [r.to_dict() for r in requests]})
            return request

        stored = retry_on_conflict(attempt, key, self.max_retries)
        log.info(f"[LEDGER] access to {ring_id}/{key_name} requested by {actor}")
        self._audit(actor, "key.request_access", f"{ring_id}/{key_name}")
        return AccessRequestResult(ring_id, key_name, requested=True, request=stored)

    def grant_access(self, ring_id: str, key_name: str, actor: str) -> KeyRecord:
        """Flip a private key to shared. Creator-only, idempotent, one-way."""
        actor = normalize_identifier(actor)
        key = self.visibility_key(ring_id, key_name)

        def attempt() -> KeyRecord:
            snap = self.records.read(key)
            if not snap.exists:
                raise KeyNotFound(ring_id, key_name)
            record = KeyRecord.from_dict(snap.data)
            if record.creator != actor:
                raise NotKeyCreator(ring_id, key_name, actor)
            if record.is_shared:
                return record
            record.is_shared = True
            record.shared_at = now_ts()
            return KeyRecord.from_dict(self.records.write(snap, record.to_dict()))

        record = retry_on_conflict(attempt, key, self.max_retries)
        self._resolve_requests(ring_id, key_name)
        log.info(f"[LEDGER] {ring_id}/{key_name} granted to ring by {actor}")
        self._audit(actor, "key.grant", f"{ring_id}/{key_name}")
        return record

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------
    def copy_key(self, source_ring: str, key_name: str, target_ring: str, actor: str,
                 new_name: Optional[str] = None) -> TransferResult:
        return self._transfer(source_ring, key_name, target_ring, actor, new_name, move=False)

    def move_key(self, source_ring: str, key_name: str, target_ring: str, actor: str,
                 new_name: Optional[str] = None) -> TransferResult:
        return self._transfer(source_ring, key_name, target_ring, actor, new_name, move=True)

    def delete_key(self, ring_id: str, key_name: str, actor: str) -> bool:
        """Remove a key and its value. Allowed for the creator or a ring admin."""
        actor = normalize_identifier(actor)
        role = self.rings.member_role(ring_id, actor)
        if role is None:
            self.rings.get_ring(ring_id)
            raise NotRingMember(ring_id, actor)
        record = self.find_key(ring_id, key_name)
        if record is None and self.secrets.get_secret(ring_id, key_name) is None:
            raise KeyNotFound(ring_id, key_name)
        if role != ROLE_ADMIN and (record is None or record.creator != actor):
            raise InsufficientRole(ring_id, actor, ROLE_ADMIN)
        self._delete_everything(ring_id, key_name)
        log.info(f"[LEDGER] {ring_id}/{key_name} deleted by {actor}")
        self._audit(actor, "key.delete", f"{ring_id}/{key_name}")
        return True

    def _transfer(self, source_ring: str, key_name: str, target_ring: str, actor: str,
                  new_name: Optional[str], move: bool) -> TransferResult:
        actor = normalize_identifier(actor)
        target_name = new_name or key_name
        action = "key.move" if move else "key.copy"
        if source_ring == target_ring and target_name == key_name:
            raise ValidationError("Source and target are the same key", ring_id=source_ring, key_name=key_name)
        self._require_admin(source_ring, actor)
        self._require_admin(target_ring, actor)

        # a private key the actor cannot see must not be confirmed to exist
        if not self.can_view(actor, source_ring, key_name):
            raise KeyNotFound(source_ring, key_name)
        source = self.find_key(source_ring, key_name)
        value = self.secrets.get_secret(source_ring, key_name)
        if value is None:
            raise KeyNotFound(source_ring, key_name)
        if self.secrets.get_secret(target_ring, target_name) is not None:
            raise KeyAlreadyExists(target_ring, target_name)

        # claim the target name first so concurrent transfers cannot both write it
        record = self._create_record(KeyRecord(
            ring_id=target_ring,
            name=target_name,
            creator=actor,
            is_shared=source.is_shared if source else True,
            copied_from=f"{source_ring}/{key_name}",
        ))
        try:
            self.secrets.put_secret(target_ring, target_name, value)
        except Exception:
            log.exception(f"[LEDGER] writing {target_ring}/{target_name} failed; releasing the name")
            self._delete_everything(target_ring, target_name)
            raise

        status = COPIED
        if move:
            if self.secrets.get_secret(target_ring, target_name) != value:
                log.error(f"[LEDGER] {target_ring}/{target_name} not confirmed; keeping source")
                status = COPIED_NOT_MOVED
            else:
                try:
                    self._delete_everything(source_ring, key_name)
                    status = MOVED
                except Exception:
                    log.exception(f"[LEDGER] deleting source {source_ring}/{key_name} failed")
                    status = COPIED_NOT_MOVED

        log.info(f"[LEDGER] {action} {source_ring}/{key_name} -> {target_ring}/{target_name}: {status}")
        if self.audit:
            self.audit.record(actor, action, f"{source_ring}/{key_name}",
                              "partial" if status == COPIED_NOT_MOVED else "ok",
                              destination=f"{target_ring}/{target_name}")
        return TransferResult(source_ring, target_ring, key_name, target_name, status, record)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_admin(self, ring_id: str, actor: str) -> None:
        role = self.rings.member_role(ring_id, actor)
        if role is None:
            self.rings.get_ring(ring_id)  # RingNotFound wins over membership
            raise NotRingMember(ring_id, actor)
        if role != ROLE_ADMIN:
            raise InsufficientRole(ring_id, actor, ROLE_ADMIN)

    def _create_record(self, record: KeyRecord) -> KeyRecord:
        snap = self.records.read(self.visibility_key(record.ring_id, record.name))
        if snap.exists:
            raise KeyAlreadyExists(record.ring_id, record.name)
        try:
            stored = KeyRecord.from_dict(self.records.write(snap, record.to_dict()))
        except ConcurrentModification:
            raise KeyAlreadyExists(record.ring_id, record.name)
        self._update_list(record.ring_id, lambda keys: keys + [record.name] if record.name not in keys else None)
        return stored

    def _delete_everything(self, ring_id: str, key_name: str) -> None:
        self.secrets.delete_secret(ring_id, key_name)
        self.records.delete(self.visibility_key(ring_id, key_name))
        self.records.delete(KEY_REQUESTS_KEY.format(ring_id=ring_id, key_name=key_name))
        self._update_list(ring_id, lambda keys: [k for k in keys if k != key_name] if key_name in keys else None)

    def _update_list(self, ring_id: str, change) -> None:
        key = RING_KEYS_LIST_KEY.format(ring_id=ring_id)

        def attempt() -> None:
            snap = self.records.read(key)
            updated = change(list((snap.data or {}).get("keys", [])))
            if updated is not None:
                self.records.write(snap, {"ring_id": ring_id, "keys": updated})

        retry_on_conflict(attempt, key, self.max_retries)

    def _read_requests(self, ring_id: str, key_name: str) -> List[AccessRequest]:
        snap = self.records.read(KEY_REQUESTS_KEY.format(ring_id=ring_id, key_name=key_name))
        return [AccessRequest.from_dict(r) for r in (snap.data or {}).get("requests", [])]

    def _resolve_requests(self, ring_id: str, key_name: str) -> None:
        key = KEY_REQUESTS_KEY.format(ring_id=ring_id, key_name=key_name)

        def attempt() -> None:
            snap = self.records.read(key)
            requests = [AccessRequest.from_dict(r) for r in (snap.data or {}).get("requests", [])]
            if not any(r.status == "pending" for r in requests):
                return
            for r in requests:
                r.status = "resolved"
            self.records.write(snap, {"requests": [r.to_dict() for r in requests]})

        retry_on_conflict(attempt, key, self.max_retries)

    def _audit(self, actor: str, action: str, target: str, **detail) -> None:
        if self.audit:
            self.audit.record(actor, action, target, "ok", **detail)
