"""
mykeys_core.access
------------------
Access Decision Function: one read-only evaluation per request.

``evaluate(actor, ring_id, operation, target)`` walks the checks in a fixed
order and stops at the first failure:

1. identity   - resolve the actor; agents need a live delegation from a
                still-verified human and, when they were given explicit
                capabilities, the operation's feature among them
2. persona    - classify the account (bounded by the delegator for agents)
                and gate the operation's feature
3. ring       - ring existence, membership and role
4. target     - key visibility from the ledger, vault ownership

The result is ``Allow(context)`` or ``Deny(reason, error)``. Nothing is
written here; denials are audited by the caller.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Union

from .constants import ROLE_ADMIN
from .delegation import DelegationManager
from .errors import (
    MyKeysError, CapabilityNotDelegated, FeatureNotAvailableForPersona, RingNotFound,
    NotRingMember, InsufficientRole, KeyNotFound, KeyAlreadyExists, NotKeyCreator,
    VaultEntryNotFound, ValidationError,
)
from .ledger import KeyVisibilityLedger
from .logger import get_logger
from .models import Account, Ring
from . import persona as personas
from .persona import Persona
from .rings import RingRepository
from .utils import normalize_identifier

log = get_logger("MyKeys.Access")


class Operation(str, Enum):
    DISCOVER = "discover"
    STORE_KEY = "store_key"
    READ_KEY = "read_key"
    LIST_KEYS = "list_keys"
    DELETE_KEY = "delete_key"
    REQUEST_ACCESS = "request_access"
    GRANT_ACCESS = "grant_access"
    COPY_KEY = "copy_key"
    MOVE_KEY = "move_key"
    CREATE_RING = "create_ring"
    ADD_MEMBER = "add_member"
    REMOVE_MEMBER = "remove_member"
    UPDATE_ROLES = "update_roles"
    VAULT_STORE = "vault_store"
    VAULT_GET = "vault_get"
    VAULT_LIST = "vault_list"
    VAULT_DELETE = "vault_delete"
    DELEGATE_AGENT = "delegate_agent"
    REVOKE_AGENT = "revoke_agent"
    UPDATE_PROFILE = "update_profile"


# Revocation is open to every persona; authority is decided by the delegation manager.
# Granting is gated like key creation: whoever may create a private key may share it.
FEATURE_FOR: Dict[Operation, Optional[str]] = {
    Operation.DISCOVER: personas.DISCOVER,
    Operation.STORE_KEY: personas.CREATE_KEY,
    Operation.READ_KEY: personas.READ_KEY,
    Operation.LIST_KEYS: personas.LIST_KEYS,
    Operation.DELETE_KEY: personas.CREATE_KEY,
    Operation.REQUEST_ACCESS: personas.SHARE_KEY,
    Operation.GRANT_ACCESS: personas.CREATE_KEY,
    Operation.COPY_KEY: personas.TRANSFER_KEY,
    Operation.MOVE_KEY: personas.TRANSFER_KEY,
    Operation.CREATE_RING: personas.CREATE_RING,
    Operation.ADD_MEMBER: personas.MANAGE_RING,
    Operation.REMOVE_MEMBER: personas.MANAGE_RING,
    Operation.UPDATE_ROLES: personas.MANAGE_RING,
    Operation.VAULT_STORE: personas.USE_VAULT,
    Operation.VAULT_GET: personas.USE_VAULT,
    Operation.VAULT_LIST: personas.USE_VAULT,
    Operation.VAULT_DELETE: personas.USE_VAULT,
    Operation.DELEGATE_AGENT: personas.DELEGATE_AGENT,
    Operation.REVOKE_AGENT: None,
    Operation.UPDATE_PROFILE: personas.MANAGE_PROFILE,
}

RING_SCOPED = {
    Operation.STORE_KEY, Operation.READ_KEY, Operation.LIST_KEYS, Operation.DELETE_KEY,
    Operation.REQUEST_ACCESS, Operation.GRANT_ACCESS, Operation.COPY_KEY, Operation.MOVE_KEY,
    Operation.ADD_MEMBER, Operation.REMOVE_MEMBER, Operation.UPDATE_ROLES,
    Operation.VAULT_STORE, Operation.VAULT_GET, Operation.VAULT_LIST, Operation.VAULT_DELETE,
}
ADMIN_ONLY = {Operation.REQUEST_ACCESS, Operation.COPY_KEY, Operation.MOVE_KEY, Operation.UPDATE_ROLES}
EXISTING_KEY = {
    Operation.READ_KEY, Operation.DELETE_KEY, Operation.REQUEST_ACCESS, Operation.GRANT_ACCESS,
    Operation.COPY_KEY, Operation.MOVE_KEY, Operation.VAULT_STORE,
}
VISIBLE_KEY = {Operation.READ_KEY, Operation.COPY_KEY, Operation.MOVE_KEY, Operation.VAULT_STORE}


@dataclass(frozen=True)
class Target:
    """What an operation acts on besides the ring itself."""
    key_name: Optional[str] = None
    target_ring_id: Optional[str] = None
    target_key_name: Optional[str] = None
    member: Optional[str] = None
    role: Optional[str] = None
    owner: Optional[str] = None
    vault_secret_name: Optional[str] = None

    def describe(self, ring_id: Optional[str]) -> str:
        parts = [p for p in (ring_id, self.key_name or self.member) if p]
        return "/".join(parts) or "-"


@dataclass(frozen=True)
class AccessContext:
    actor: str
    operation: Operation
    persona: Persona
    account: Optional[Account] = None
    delegator: Optional[Account] = None
    ring: Optional[Ring] = None
    role: Optional[str] = None
    target: Target = field(default_factory=Target)

    @property
    def ring_id(self) -> Optional[str]:
        return self.ring.id if self.ring else None

    @property
    def limits(self) -> personas.PersonaLimits:
        return personas.limits(self.persona)


@dataclass(frozen=True)
class Allow:
    context: AccessContext
    allowed: bool = True

    def raise_for_deny(self) -> AccessContext:
        return self.context


@dataclass(frozen=True)
class Deny:
    reason: str
    error: MyKeysError
    allowed: bool = False

    def raise_for_deny(self) -> AccessContext:
        raise self.error


Decision = Union[Allow, Deny]


class AccessDecisionFunction:
    def __init__(self, rings: RingRepository, ledger: KeyVisibilityLedger, delegation: DelegationManager):
        self.rings = rings
        self.ledger = ledger
        self.delegation = delegation

    def evaluate(self, actor: str, ring_id: Optional[str], operation: Operation,
                 target: Optional[Target] = None) -> Decision:
        operation = Operation(operation)
        target = target or Target()
        actor = normalize_identifier(actor)
        try:
            context = self._evaluate(actor, ring_id, operation, target)
        except MyKeysError as e:
            log.info(f"[ACCESS] deny {operation.value} for {actor or 'anonymous'} "
                     f"on {target.describe(ring_id)}: {e.kind}")
            return Deny(reason=e.kind, error=e)
        log.debug(f"[ACCESS] allow {operation.value} for {actor or 'anonymous'} on {target.describe(ring_id)}")
        return Allow(context)

    # ------------------------------------------------------------------
    # Checks, in order
    # ------------------------------------------------------------------
    def _evaluate(self, actor: str, ring_id: Optional[str], operation: Operation,
                  target: Target) -> AccessContext:
        feature = FEATURE_FOR[operation]
        # any member may leave a ring
        if operation == Operation.REMOVE_MEMBER and actor and normalize_identifier(target.member) == actor:
            feature = None

        # 1. identity
        resolved = self.delegation.resolve(actor) if actor else None
        account = resolved.account if resolved else None
        delegator = resolved.delegator if resolved else None
        if account is not None and account.is_agent and account.capabilities and feature:
            if feature not in account.capabilities:
                raise CapabilityNotDelegated(actor, feature)

        # 2. persona
        persona = personas.classify(account)
        if delegator is not None:
            persona = personas.effective_persona(persona, personas.classify(delegator))
        if feature and not personas.can_access_feature(persona, feature):
            raise FeatureNotAvailableForPersona(persona.value, feature)

        context = AccessContext(actor=actor, operation=operation, persona=persona,
                                account=account, delegator=delegator, target=target)
        if operation not in RING_SCOPED:
            return context

        # 3. ring
        if not ring_id:
            raise ValidationError("Ring ID is required", operation=operation.value)
        ring = self._ring_role(ring_id, actor, admin=operation in ADMIN_ONLY)
        role = ring.role_of(actor)
        if operation == Operation.ADD_MEMBER and target.role == ROLE_ADMIN and role != ROLE_ADMIN:
            raise InsufficientRole(ring_id, actor, ROLE_ADMIN)
        if operation == Operation.REMOVE_MEMBER and role != ROLE_ADMIN \
                and normalize_identifier(target.member) != actor:
            raise InsufficientRole(ring_id, actor, ROLE_ADMIN)
        if operation in (Operation.COPY_KEY, Operation.MOVE_KEY):
            if not target.target_ring_id:
                raise ValidationError("Target ring ID is required", operation=operation.value)
            self._ring_role(target.target_ring_id, actor, admin=True)

        # 4. target
        self._check_key(actor, ring, role, operation, target)
        self._check_vault(actor, ring_id, operation, target)

        return AccessContext(actor=actor, operation=operation, persona=persona, account=account,
                             delegator=delegator, ring=ring, role=role, target=target)

    def _ring_role(self, ring_id: str, actor: str, admin: bool) -> Ring:
        ring = self.rings.find_ring(ring_id)
        if ring is None:
            raise RingNotFound(ring_id)
        role = ring.role_of(actor)
        if role is None:
            raise NotRingMember(ring_id, actor)
        if admin and role != ROLE_ADMIN:
            raise InsufficientRole(ring_id, actor, ROLE_ADMIN)
        return ring

    def _check_key(self, actor: str, ring: Ring, role: Optional[str], operation: Operation,
                   target: Target) -> None:
        if operation not in EXISTING_KEY and operation != Operation.STORE_KEY:
            return
        key_name = target.key_name
        if not key_name:
            raise ValidationError("Key name is required", operation=operation.value)

        record = self.ledger.find_key(ring.id, key_name)
        exists = record is not None or self.ledger.secrets.get_secret(ring.id, key_name) is not None
        visible = record is None or record.is_shared or record.creator == actor

        if operation == Operation.STORE_KEY:
            # writing over a private key belongs to its creator alone
            if exists and not visible:
                raise KeyAlreadyExists(ring.id, key_name)
            return
        if not exists:
            raise KeyNotFound(ring.id, key_name)
        if operation in VISIBLE_KEY and not visible:
            raise KeyNotFound(ring.id, key_name)
        if operation == Operation.GRANT_ACCESS and record is not None and record.creator != actor:
            raise NotKeyCreator(ring.id, key_name, actor)
        if operation == Operation.DELETE_KEY and role != ROLE_ADMIN \
                and (record is None or record.creator != actor):
            raise InsufficientRole(ring.id, actor, ROLE_ADMIN)

    @staticmethod
    def _check_vault(actor: str, ring_id: str, operation: Operation, target: Target) -> None:
        if operation != Operation.VAULT_GET:
            return
        owner = normalize_identifier(target.owner) or actor
        if owner != actor:
            raise VaultEntryNotFound(ring_id, target.key_name or "", target.vault_secret_name or "")
