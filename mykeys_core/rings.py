"""
mykeys_core.rings
-----------------
Ring Repository: the sole writer of ring records and their membership.

A ring is an isolated tenant space. Its one hard invariant is that at least
one member holds the ``admin`` role in every stored revision, and that the
creator cannot be removed while it is the sole admin.

Every mutation is a read-modify-write of the whole ring record:

1. read the current revision,
2. apply the change to a fresh copy,
3. validate the *proposed post-state*,
4. commit with a conditional write (``VersionedStore.write``).

A conflicting concurrent write restarts the cycle from step 1, so two
requests each demoting or removing "one of the last two admins" can never both
pass validation against stale state.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .audit import AuditLog
from .constants import (
    ROLES, ROLE_ADMIN, ROLE_MEMBER, ENTITY_TYPES, ENTITY_PERSON,
    RING_KEY, MEMBER_RINGS_KEY,
)
from .errors import (
    RingNotFound, RingAlreadyExists, InvalidRingComposition, WouldInvalidateRing,
    CannotRemoveCreator, NotRingMember, InsufficientRole, ValidationError,
    ConcurrentModification,
)
from .logger import get_logger
from .models import Member, Ring
from .records import VersionedStore, retry_on_conflict, DEFAULT_ATTEMPTS
from .storage.provider import StorageProvider
from .utils import new_id, normalize_identifier, now_ts, slugify

log = get_logger("MyKeys.Rings")

MemberSpec = Union[str, Mapping[str, Any], Member]


class RingRepository:
    def __init__(self, storage: StorageProvider, audit: Optional[AuditLog] = None,
                 max_retries: int = DEFAULT_ATTEMPTS):
        self.records = VersionedStore(storage)
        self.audit = audit
        self.max_retries = max_retries

    @staticmethod
    def ring_key(ring_id: str) -> str:
        return RING_KEY.format(ring_id=ring_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def find_ring(self, ring_id: str) -> Optional[Ring]:
        if not ring_id:
            return None
        snap = self.records.read(self.ring_key(ring_id))
        return Ring.from_dict(snap.data) if snap.exists else None

    def get_ring(self, ring_id: str) -> Ring:
        ring = self.find_ring(ring_id)
        if ring is None:
            raise RingNotFound(ring_id)
        return ring

    def member_role(self, ring_id: str, identifier: str) -> Optional[str]:
        ring = self.find_ring(ring_id)
        return ring.role_of(normalize_identifier(identifier)) if ring else None

    def is_member(self, ring_id: str, identifier: str) -> bool:
        return self.member_role(ring_id, identifier) is not None

    def is_admin(self, ring_id: str, identifier: str) -> bool:
        return self.member_role(ring_id, identifier) == ROLE_ADMIN

    def rings_for(self, identifier: str) -> List[Ring]:
        """Rings the identifier currently belongs to, via the member index."""
        identifier = normalize_identifier(identifier)
        snap = self.records.read(MEMBER_RINGS_KEY.format(identifier=identifier))
        rings = []
        for ring_id in (snap.data or {}).get("rings", []):
            ring = self.find_ring(ring_id)
            # the index is advisory; membership is decided by the ring record
            if ring and identifier in ring.members:
                rings.append(ring)
        return rings

    def count_rings_created_by(self, identifier: str) -> int:
        identifier = normalize_identifier(identifier)
        return sum(1 for r in self.rings_for(identifier) if r.created_by == identifier)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_ring(self, creator: str, initial_members: Union[Mapping[str, MemberSpec], Iterable[Member]],
                    ring_id: Optional[str] = None) -> Ring:
        """
        Create a ring from ``initial_members``.

        ``initial_members`` maps identifier -> role string, ``{"role", "entity_type"}``
        dict, or ``Member``; a plain iterable of ``Member`` works too. The
        creator joins as a plain member when not listed. At least one admin is
        required (``InvalidRingComposition``).
        """
        creator = normalize_identifier(creator)
        if not creator:
            raise ValidationError("Ring creator is required")
        ring_id = ring_id or f"ring-{new_id()[:16]}"

        members = self._normalize_members(initial_members)
        if creator not in members:
            members[creator] = Member(identifier=creator, role=ROLE_MEMBER)

        ring = Ring(id=ring_id, created_by=creator, members=members)
        if not ring.admins():
            raise InvalidRingComposition("Ring must have at least one admin", ring_id=ring_id)

        snap = self.records.read(self.ring_key(ring_id))
        if snap.exists:
            raise RingAlreadyExists(ring_id)
        try:
            stored = Ring.from_dict(self.records.write(snap, ring.to_dict()))
        except ConcurrentModification:
            # someone else created the same id in between
            raise RingAlreadyExists(ring_id)

        for identifier in stored.members:
            self._index_add(identifier, ring_id)
        log.info(f"[RING] created {ring_id} by {creator} with {len(stored.members)} member(s)")
        self._audit(creator, "ring.create", ring_id)
        return stored

    def ensure_personal_ring(self, identifier: str) -> Ring:
        """Return the first ring the identifier belongs to, creating one on first use."""
        identifier = normalize_identifier(identifier)
        existing = self.rings_for(identifier)
        if existing:
            return existing[0]
        ring_id = f"ring-{slugify(identifier) or 'user'}-{new_id()[:8]}"
        return self.create_ring(identifier, {identifier: ROLE_ADMIN}, ring_id=ring_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add_member(self, ring_id: str, identifier: str, role: str, actor: str,
                   entity_type: str = ENTITY_PERSON) -> Ring:
        identifier = normalize_identifier(identifier)
        actor = normalize_identifier(actor)
        if not identifier:
            raise ValidationError("Member identifier is required")
        self._check_role(role)
        self._check_entity_type(entity_type)

        def change(ring: Ring) -> Optional[Ring]:
            self._require_member(ring, actor)
            if role == ROLE_ADMIN and ring.role_of(actor) != ROLE_ADMIN:
                raise InsufficientRole(ring.id, actor, ROLE_ADMIN)
            if identifier in ring.members:
                return None
            ring.members[identifier] = Member(identifier=identifier, role=role, entity_type=entity_type)
            return ring

        ring = self._mutate(ring_id, change)
        self._index_add(identifier, ring_id)
        log.info(f"[RING] {actor} added {identifier} to {ring_id} as {role}")
        self._audit(actor, "ring.add_member", ring_id, member=identifier, role=role)
        return ring

    def remove_member(self, ring_id: str, identifier: str, actor: str) -> Ring:
        identifier = normalize_identifier(identifier)
        actor = normalize_identifier(actor)

        def change(ring: Ring) -> Ring:
            self._require_member(ring, actor)
            if identifier not in ring.members:
                raise NotRingMember(ring.id, identifier)
            if actor != identifier and ring.role_of(actor) != ROLE_ADMIN:
                raise InsufficientRole(ring.id, actor, ROLE_ADMIN)
            if identifier == ring.created_by and ring.admins() == [identifier]:
                raise CannotRemoveCreator("The ring creator is the only admin and cannot be removed",
                                          ring_id=ring.id, identifier=identifier)
            del ring.members[identifier]
            return ring

        ring = self._mutate(ring_id, change)
        self._index_remove(identifier, ring_id)
        log.info(f"[RING] {actor} removed {identifier} from {ring_id}")
        self._audit(actor, "ring.remove_member", ring_id, member=identifier)
        return ring

    def update_roles(self, ring_id: str, role_map: Mapping[str, str], actor: str) -> Ring:
        """Atomically apply ``role_map`` (identifier -> role) to existing members."""
        actor = normalize_identifier(actor)
        roles = {normalize_identifier(i): r for i, r in role_map.items()}
        for role in roles.values():
            self._check_role(role)

        def change(ring: Ring) -> Ring:
            self._require_member(ring, actor)
            if ring.role_of(actor) != ROLE_ADMIN:
                raise InsufficientRole(ring.id, actor, ROLE_ADMIN)
            for identifier, role in roles.items():
                if identifier not in ring.members:
                    raise NotRingMember(ring.id, identifier)
                ring.members[identifier].role = role
            return ring

        ring = self._mutate(ring_id, change)
        log.info(f"[RING] {actor} updated {len(roles)} role(s) in {ring_id}")
        self._audit(actor, "ring.update_roles", ring_id, roles=roles)
        return ring

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _mutate(self, ring_id: str, change: Callable[[Ring], Optional[Ring]]) -> Ring:
        key = self.ring_key(ring_id)

        def attempt() -> Ring:
            snap = self.records.read(key)
            if not snap.exists:
                raise RingNotFound(ring_id)
            current = Ring.from_dict(snap.data)
            proposed = change(Ring.from_dict(snap.data))
            if proposed is None:
                return current
            if not proposed.admins():
                raise WouldInvalidateRing("Change would leave the ring without an admin", ring_id=ring_id)
            proposed.updated_at = now_ts()
            return Ring.from_dict(self.records.write(snap, proposed.to_dict()))

        return retry_on_conflict(attempt, key, self.max_retries)

    def _normalize_members(self, initial_members) -> Dict[str, Member]:
        if isinstance(initial_members, Mapping):
            items = list(initial_members.items())
        else:
            items = [(m.identifier, m) for m in initial_members]

        members: Dict[str, Member] = {}
        for raw_id, given in items:
            identifier = normalize_identifier(raw_id)
            if not identifier:
                raise ValidationError("Member identifier is required")
            if isinstance(given, Member):
                role, entity_type = given.role, given.entity_type
            elif isinstance(given, Mapping):
                role = given.get("role", ROLE_MEMBER)
                entity_type = given.get("entity_type", ENTITY_PERSON)
            else:
                role, entity_type = given, ENTITY_PERSON
            self._check_role(role)
            self._check_entity_type(entity_type)
            members[identifier] = Member(identifier=identifier, role=role, entity_type=entity_type)
        return members

    @staticmethod
    def _require_member(ring: Ring, actor: str) -> None:
        if actor not in ring.members:
            raise NotRingMember(ring.id, actor)

    @staticmethod
    def _check_role(role: str) -> None:
        if role not in ROLES:
            raise ValidationError(f"Invalid role: {role}. Valid roles are: {', '.join(ROLES)}", role=role)

    @staticmethod
    def _check_entity_type(entity_type: str) -> None:
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(f"Invalid entity type: {entity_type}", entity_type=entity_type)

    def _index_add(self, identifier: str, ring_id: str) -> None:
        self._update_index(identifier, lambda rings: rings + [ring_id] if ring_id not in rings else None)

    def _index_remove(self, identifier: str, ring_id: str) -> None:
        self._update_index(identifier, lambda rings: [r for r in rings if r != ring_id] if ring_id in rings else None)

    def _update_index(self, identifier: str, change: Callable[[List[str]], Optional[List[str]]]) -> None:
        key = MEMBER_RINGS_KEY.format(identifier=identifier)

        def attempt() -> None:
            snap = self.records.read(key)
            rings = list((snap.data or {}).get("rings", []))
            updated = change(rings)
            if updated is not None:
                self.records.write(snap, {"identifier": identifier, "rings": updated})

        retry_on_conflict(attempt, key, self.max_retries)

    def _audit(self, actor: str, action: str, target: str, **detail) -> None:
        if self.audit:
            self.audit.record(actor, action, target, "ok", **detail)
