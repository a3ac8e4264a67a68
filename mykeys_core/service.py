"""
mykeys_core.service
-------------------
KeyringService: the request-facing entry point.

``execute`` evaluates the request with the Access Decision Function, raises
the typed error of a denial (after auditing it), and otherwise dispatches to
the handler registered for the operation. Handlers enforce persona limits at
the points where something new is created: keys in a ring, rings, ring
members.

The registry is an explicit ``Operation -> handler`` mapping built in
``__init__``; there is no dynamic handler discovery.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .access import AccessContext, AccessDecisionFunction, Deny, Operation, Target
from .audit import AuditLog
from .config import Settings
from .constants import ROLE_MEMBER, ENTITY_PERSON
from .delegation import DelegationManager, IdentityVerifier
from .errors import KeyAlreadyExists, KeyNotFound, LimitExceeded
from .ledger import KeyVisibilityLedger, AccessRequestResult, TransferResult
from .logger import get_logger
from .models import Account, KeyRecord, Ring
from . import persona as personas
from .records import DEFAULT_ATTEMPTS
from .rings import RingRepository
from .storage import load_storage_provider
from .storage.provider import StorageProvider
from .storage.secrets import SecretStore, KVSecretStore
from .utils import normalize_identifier
from .vault import PrivacyVault, VaultStoreResult

log = get_logger("MyKeys.Service")

Handler = Callable[[AccessContext, Dict[str, Any]], Any]


class KeyringService:
    def __init__(self, storage: StorageProvider, secrets: Optional[SecretStore] = None,
                 master_key: Optional[str] = None, verifier: Optional[IdentityVerifier] = None,
                 max_retries: int = DEFAULT_ATTEMPTS):
        self.storage = storage
        self.audit = AuditLog(storage)
        self.secrets = secrets or KVSecretStore(storage)
        self.rings = RingRepository(storage, audit=self.audit, max_retries=max_retries)
        self.ledger = KeyVisibilityLedger(storage, self.rings, self.secrets, audit=self.audit,
                                          max_retries=max_retries)
        self.vault = PrivacyVault(storage, self.rings, master_key=master_key, audit=self.audit,
                                  max_retries=max_retries)
        self.delegation = DelegationManager(storage, self.rings, verifier=verifier, audit=self.audit,
                                            max_retries=max_retries)
        self.access = AccessDecisionFunction(self.rings, self.ledger, self.delegation)

        self.handlers: Dict[Operation, Handler] = {
            Operation.DISCOVER: self._discover,
            Operation.STORE_KEY: self._store_key,
            Operation.READ_KEY: self._read_key,
            Operation.LIST_KEYS: self._list_keys,
            Operation.DELETE_KEY: self._delete_key,
            Operation.REQUEST_ACCESS: self._request_access,
            Operation.GRANT_ACCESS: self._grant_access,
            Operation.COPY_KEY: self._copy_key,
            Operation.MOVE_KEY: self._move_key,
            Operation.CREATE_RING: self._create_ring,
            Operation.ADD_MEMBER: self._add_member,
            Operation.REMOVE_MEMBER: self._remove_member,
            Operation.UPDATE_ROLES: self._update_roles,
            Operation.VAULT_STORE: self._vault_store,
            Operation.VAULT_GET: self._vault_get,
            Operation.VAULT_LIST: self._vault_list,
            Operation.VAULT_DELETE: self._vault_delete,
            Operation.DELEGATE_AGENT: self._delegate_agent,
            Operation.REVOKE_AGENT: self._revoke_agent,
            Operation.UPDATE_PROFILE: self._update_profile,
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def execute(self, actor: str, operation: Operation, ring_id: Optional[str] = None,
                target: Optional[Target] = None, **params: Any) -> Any:
        operation = Operation(operation)
        target = target or Target()
        decision = self.access.evaluate(actor, ring_id, operation, target)
        if isinstance(decision, Deny):
            self.audit.record(normalize_identifier(actor) or "anonymous", operation.value,
                              target.describe(ring_id), "denied",
                              kind=decision.reason)
            decision.raise_for_deny()
        context = decision.context
        return self.handlers[operation](context, dict(params, ring_id=ring_id))

    # ------------------------------------------------------------------
    # Convenience API
    # ------------------------------------------------------------------
    def persona_info(self, actor: str) -> Dict[str, Any]:
        return self.execute(actor, Operation.DISCOVER)

    def store_key(self, actor: str, ring_id: str, key_name: str, value: str,
                  is_shared: bool = True) -> KeyRecord:
        return self.execute(actor, Operation.STORE_KEY, ring_id, Target(key_name=key_name),
                            value=value, is_shared=is_shared)

    def read_key(self, actor: str, ring_id: str, key_name: str) -> str:
        return self.execute(actor, Operation.READ_KEY, ring_id, Target(key_name=key_name))

    def list_keys(self, actor: str, ring_id: str) -> List[str]:
        return self.execute(actor, Operation.LIST_KEYS, ring_id)

    def delete_key(self, actor: str, ring_id: str, key_name: str) -> bool:
        return self.execute(actor, Operation.DELETE_KEY, ring_id, Target(key_name=key_name))

    def request_access(self, actor: str, ring_id: str, key_name: str, reason: str = "") -> AccessRequestResult:
        return self.execute(actor, Operation.REQUEST_ACCESS, ring_id, Target(key_name=key_name), reason=reason)

    def grant_access(self, actor: str, ring_id: str, key_name: str) -> KeyRecord:
        return self.execute(actor, Operation.GRANT_ACCESS, ring_id, Target(key_name=key_name))

    def copy_key(self, actor: str, source_ring: str, key_name: str, target_ring: str,
                 new_name: Optional[str] = None) -> TransferResult:
        return self.execute(actor, Operation.COPY_KEY, source_ring,
                            Target(key_name=key_name, target_ring_id=target_ring, target_key_name=new_name))

    def move_key(self, actor: str, source_ring: str, key_name: str, target_ring: str,
                 new_name: Optional[str] = None) -> TransferResult:
        return self.execute(actor, Operation.MOVE_KEY, source_ring,
                            Target(key_name=key_name, target_ring_id=target_ring, target_key_name=new_name))

    def create_ring(self, actor: str, initial_members: Optional[Mapping[str, Any]] = None,
                    ring_id: Optional[str] = None) -> Ring:
        return self.execute(actor, Operation.CREATE_RING, None,
                            initial_members=initial_members, new_ring_id=ring_id)

    def add_member(self, actor: str, ring_id: str, identifier: str, role: str = ROLE_MEMBER,
                   entity_type: str = ENTITY_PERSON) -> Ring:
        return self.execute(actor, Operation.ADD_MEMBER, ring_id, Target(member=identifier, role=role),
                            entity_type=entity_type)

    def remove_member(self, actor: str, ring_id: str, identifier: str) -> Ring:
        return self.execute(actor, Operation.REMOVE_MEMBER, ring_id, Target(member=identifier))

    def update_roles(self, actor: str, ring_id: str, role_map: Mapping[str, str]) -> Ring:
        return self.execute(actor, Operation.UPDATE_ROLES, ring_id, role_map=dict(role_map))

    def vault_store(self, actor: str, ring_id: str, key_name: str, vault_secret_name: str,
                    value: str, master_key: Optional[str] = None) -> VaultStoreResult:
        return self.execute(actor, Operation.VAULT_STORE, ring_id,
                            Target(key_name=key_name, vault_secret_name=vault_secret_name),
                            value=value, master_key=master_key)

    def vault_get(self, actor: str, ring_id: str, key_name: str, vault_secret_name: str,
                  owner: Optional[str] = None, master_key: Optional[str] = None) -> str:
        return self.execute(actor, Operation.VAULT_GET, ring_id,
                            Target(key_name=key_name, vault_secret_name=vault_secret_name, owner=owner),
                            master_key=master_key)

    def vault_list(self, actor: str, ring_id: str, key_name: str, owner: Optional[str] = None) -> List[str]:
        return self.execute(actor, Operation.VAULT_LIST, ring_id, Target(key_name=key_name, owner=owner))

    def vault_delete(self, actor: str, ring_id: str, key_name: str, vault_secret_name: str,
                     owner: Optional[str] = None) -> bool:
        return self.execute(actor, Operation.VAULT_DELETE, ring_id,
                            Target(key_name=key_name, vault_secret_name=vault_secret_name, owner=owner))

    def delegate_agent(self, actor: str, agent_name: str, capabilities: Optional[Iterable[str]] = None,
                       agent_identifier: Optional[str] = None) -> Account:
        return self.execute(actor, Operation.DELEGATE_AGENT, None, agent_name=agent_name,
                            capabilities=capabilities, agent_identifier=agent_identifier)

    def revoke_agent(self, actor: str, agent_identifier: str, ring_id: Optional[str] = None) -> bool:
        return self.execute(actor, Operation.REVOKE_AGENT, None, Target(member=agent_identifier),
                            admin_ring_id=ring_id)

    def update_profile(self, actor: str, name: Optional[str] = None, email: Optional[str] = None,
                       profile: Optional[Dict[str, Any]] = None) -> Account:
        return self.execute(actor, Operation.UPDATE_PROFILE, None, name=name, email=email, profile=profile)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def _discover(self, ctx: AccessContext, params: Dict[str, Any]) -> Dict[str, Any]:
        info = personas.persona_info(ctx.account)
        # an agent's reported persona is the bounded one
        info["persona"] = ctx.persona.value
        info["features"] = sorted(personas.FEATURES[ctx.persona])
        info["limits"] = ctx.limits.to_dict()
        return info

    def _store_key(self, ctx: AccessContext, params: Dict[str, Any]) -> KeyRecord:
        ring_id, key_name = ctx.ring_id, ctx.target.key_name
        record = self.ledger.find_key(ring_id, key_name)
        if record is None:
            is_new = self.secrets.get_secret(ring_id, key_name) is None
            if is_new:
                self._check_limit("keys", self.ledger.count_keys(ring_id), ctx)
            # legacy values are shared by definition
            record = self.ledger.register_key(ring_id, key_name, ctx.actor,
                                              is_shared=params.get("is_shared", True) if is_new else True)
        # another member may have registered the name as private since the decision
        if not record.is_shared and record.creator != ctx.actor:
            raise KeyAlreadyExists(ring_id, key_name)
        self.secrets.put_secret(ring_id, key_name, params["value"])
        log.info(f"[LEDGER] value stored for {ring_id}/{key_name} by {ctx.actor}")
        return record

    def _read_key(self, ctx: AccessContext, params: Dict[str, Any]) -> str:
        value = self.secrets.get_secret(ctx.ring_id, ctx.target.key_name)
        if value is None:
            raise KeyNotFound(ctx.ring_id, ctx.target.key_name)
        return value

    def _list_keys(self, ctx: AccessContext, params: Dict[str, Any]) -> List[str]:
        return self.ledger.list_visible_keys(ctx.actor, ctx.ring_id)

    def _delete_key(self, ctx: AccessContext, params: Dict[str, Any]) -> bool:
        return self.ledger.delete_key(ctx.ring_id, ctx.target.key_name, ctx.actor)

    def _request_access(self, ctx: AccessContext, params: Dict[str, Any]) -> AccessRequestResult:
        return self.ledger.request_access(ctx.ring_id, ctx.target.key_name, ctx.actor, params.get("reason", ""))

    def _grant_access(self, ctx: AccessContext, params: Dict[str, Any]) -> KeyRecord:
        if self.ledger.find_key(ctx.ring_id, ctx.target.key_name) is None:
            # a legacy key is already shared; record that explicitly
            return self.ledger.register_key(ctx.ring_id, ctx.target.key_name, ctx.actor, is_shared=True)
        return self.ledger.grant_access(ctx.ring_id, ctx.target.key_name, ctx.actor)

    def _copy_key(self, ctx: AccessContext, params: Dict[str, Any]) -> TransferResult:
        self._check_transfer_limit(ctx)
        t = ctx.target
        return self.ledger.copy_key(ctx.ring_id, t.key_name, t.target_ring_id, ctx.actor, t.target_key_name)

    def _move_key(self, ctx: AccessContext, params: Dict[str, Any]) -> TransferResult:
        self._check_transfer_limit(ctx)
        t = ctx.target
        return self.ledger.move_key(ctx.ring_id, t.key_name, t.target_ring_id, ctx.actor, t.target_key_name)

    def _create_ring(self, ctx: AccessContext, params: Dict[str, Any]) -> Ring:
        self._check_limit("rings", self.rings.count_rings_created_by(ctx.actor), ctx)
        members = params.get("initial_members") or {ctx.actor: "admin"}
        joining = {normalize_identifier(i) for i in members} | {ctx.actor}
        self._check_limit("members", len(joining) - 1, ctx)
        return self.rings.create_ring(ctx.actor, members, ring_id=params.get("new_ring_id"))

    def _add_member(self, ctx: AccessContext, params: Dict[str, Any]) -> Ring:
        if normalize_identifier(ctx.target.member) not in ctx.ring.members:
            self._check_limit("members", len(ctx.ring.members), ctx)
        return self.rings.add_member(ctx.ring_id, ctx.target.member, ctx.target.role or ROLE_MEMBER,
                                     ctx.actor, entity_type=params.get("entity_type", ENTITY_PERSON))

    def _remove_member(self, ctx: AccessContext, params: Dict[str, Any]) -> Ring:
        return self.rings.remove_member(ctx.ring_id, ctx.target.member, ctx.actor)

    def _update_roles(self, ctx: AccessContext, params: Dict[str, Any]) -> Ring:
        return self.rings.update_roles(ctx.ring_id, params["role_map"], ctx.actor)

    def _vault_store(self, ctx: AccessContext, params: Dict[str, Any]) -> VaultStoreResult:
        t = ctx.target
        return self.vault.store(ctx.ring_id, t.key_name, ctx.actor, t.vault_secret_name, params["value"],
                                master_key=params.get("master_key"))

    def _vault_get(self, ctx: AccessContext, params: Dict[str, Any]) -> str:
        t = ctx.target
        return self.vault.get(ctx.ring_id, t.key_name, t.owner or ctx.actor, t.vault_secret_name,
                              master_key=params.get("master_key"), actor=ctx.actor)

    def _vault_list(self, ctx: AccessContext, params: Dict[str, Any]) -> List[str]:
        t = ctx.target
        return self.vault.list(ctx.ring_id, t.key_name, t.owner or ctx.actor, actor=ctx.actor)

    def _vault_delete(self, ctx: AccessContext, params: Dict[str, Any]) -> bool:
        t = ctx.target
        return self.vault.delete(ctx.ring_id, t.key_name, t.owner or ctx.actor, t.vault_secret_name,
                                 actor=ctx.actor)

    def _delegate_agent(self, ctx: AccessContext, params: Dict[str, Any]) -> Account:
        return self.delegation.delegate_agent(ctx.actor, params["agent_name"], params.get("capabilities"),
                                              agent_identifier=params.get("agent_identifier"))

    def _revoke_agent(self, ctx: AccessContext, params: Dict[str, Any]) -> bool:
        return self.delegation.revoke(ctx.target.member, ctx.actor, ring_id=params.get("admin_ring_id"))

    def _update_profile(self, ctx: AccessContext, params: Dict[str, Any]) -> Account:
        return self.delegation.update_profile(ctx.actor, name=params.get("name"), email=params.get("email"),
                                              profile=params.get("profile"))

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------
    def _check_limit(self, resource: str, current: int, ctx: AccessContext) -> None:
        limit = getattr(ctx.limits, resource)
        if current >= limit:
            log.info(f"[ACCESS] {resource} limit {limit} reached for {ctx.actor} ({ctx.persona.value})")
            raise LimitExceeded(resource, limit, ctx.persona.value)

    def _check_transfer_limit(self, ctx: AccessContext) -> None:
        t = ctx.target
        if self.secrets.get_secret(t.target_ring_id, t.target_key_name or t.key_name) is None:
            self._check_limit("keys", self.ledger.count_keys(t.target_ring_id), ctx)


def build_service(settings: Optional[Settings] = None, verifier: Optional[IdentityVerifier] = None) -> KeyringService:
    """Wire a service from configuration (``Settings.from_env()`` when omitted)."""
    settings = settings or Settings.from_env()
    storage = load_storage_provider(settings.storage_config())
    log.info(f"[SERVICE] using {settings.provider} storage")
    return KeyringService(storage, master_key=settings.master_key, verifier=verifier,
                          max_retries=settings.max_retries)
