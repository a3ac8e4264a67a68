"""
mykeys_core.delegation
----------------------
Accounts, human verification and agent delegation.

Only a verified human may delegate an agent. An agent's authority is borrowed:
it lasts while the agent is unrevoked *and* its delegator is still a verified
human allowed to delegate. ``resolve`` re-reads both records on every call, so
a revocation (of the agent, or of the human's verification) takes effect on
the agent's very next request.

Verification proofs are never stored; only a fingerprint is kept so a repeated
proof can be recognised.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from .audit import AuditLog
from .constants import ACCOUNT_KEY, ENTITY_AGENT, ENTITY_PERSON, VERIFICATION_METHODS
from .crypto import compute_fingerprint
from .errors import (
    AccountNotFound, AgentCannotBeVerified, DelegationNotAllowed, DelegationRevoked,
    VerificationFailed, ValidationError, ConcurrentModification,
)
from .logger import get_logger
from .models import Account, Profile
from .persona import FEATURES, Persona
from .records import VersionedStore, retry_on_conflict, DEFAULT_ATTEMPTS
from .rings import RingRepository
from .storage.provider import StorageProvider
from .utils import new_id, normalize_identifier, now_ts, slugify

log = get_logger("MyKeys.Delegation")

KNOWN_FEATURES = FEATURES[Persona.PROFILED]


class IdentityVerifier(Protocol):
    def verify(self, identifier: str, method: str, proof: str) -> bool: ...


@dataclass(frozen=True)
class ResolvedIdentity:
    account: Account
    delegator: Optional[Account] = None

    @property
    def is_agent(self) -> bool:
        return self.account.is_agent


class DelegationManager:
    def __init__(self, storage: StorageProvider, rings: RingRepository,
                 verifier: Optional[IdentityVerifier] = None, audit: Optional[AuditLog] = None,
                 max_retries: int = DEFAULT_ATTEMPTS):
        self.records = VersionedStore(storage)
        self.rings = rings
        self.verifier = verifier
        self.audit = audit
        self.max_retries = max_retries

    @staticmethod
    def account_key(identifier: str) -> str:
        return ACCOUNT_KEY.format(identifier=identifier)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def find_account(self, identifier: str) -> Optional[Account]:
        identifier = normalize_identifier(identifier)
        if not identifier:
            return None
        snap = self.records.read(self.account_key(identifier))
        return Account.from_dict(snap.data) if snap.exists else None

    def get_account(self, identifier: str) -> Account:
        account = self.find_account(identifier)
        if account is None:
            raise AccountNotFound(normalize_identifier(identifier))
        return account

    def create_account(self, identifier: str, name: Optional[str] = None, email: Optional[str] = None,
                       entity_type: str = ENTITY_PERSON) -> Account:
        """Create a person account, or return the existing one unchanged."""
        identifier = normalize_identifier(identifier)
        if not identifier:
            raise ValidationError("Identifier is required")
        if entity_type == ENTITY_AGENT:
            raise DelegationNotAllowed("Agent accounts must be delegated by a verified human",
                                       identifier=identifier)
        if entity_type != ENTITY_PERSON:
            raise ValidationError(f"Invalid entity type: {entity_type}", entity_type=entity_type)

        existing = self.find_account(identifier)
        if existing is not None:
            return existing
        account = Account(identifier=identifier, name=name, email=normalize_identifier(email) or None)
        try:
            stored = self._insert(account)
        except ConcurrentModification:
            return self.get_account(identifier)
        log.info(f"[DELEGATION] account created for {identifier}")
        return stored

    def update_profile(self, identifier: str, name: Optional[str] = None, email: Optional[str] = None,
                       profile: Optional[Dict[str, Any]] = None) -> Account:
        """
        Update identity and business-profile fields.

        A changed email drops ``email_verified``; ``profile`` keys are
        ``complete``, ``business_entity``, ``domain`` and ``company``.
        """
        new_email = normalize_identifier(email) if email else None

        def change(account: Account) -> Account:
            if name is not None:
                if account.is_agent:
                    account.agent_name = name
                else:
                    account.name = name
            if new_email and new_email != account.email:
                account.email = new_email
                account.email_verified = False
            if profile:
                unknown = set(profile) - set(Profile.__dataclass_fields__)
                if unknown:
                    raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
                merged = account.profile.to_dict()
                merged.update(profile)
                account.profile = Profile.from_dict(merged)
            return account

        account = self._mutate(identifier, change)
        log.info(f"[DELEGATION] profile updated for {account.identifier}")
        return account

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------
    def verify_human(self, identifier: str, method: str, proof: str) -> Account:
        identifier = normalize_identifier(identifier)
        if method not in VERIFICATION_METHODS:
            raise ValidationError(f"Verification method must be one of: {', '.join(VERIFICATION_METHODS)}",
                                  method=method)
        if not proof:
            raise ValidationError("Verification proof is required")
        account = self.get_account(identifier)
        if account.is_agent:
            raise AgentCannotBeVerified(identifier)
        if self.verifier is not None and not self.verifier.verify(identifier, method, proof):
            log.warning(f"[DELEGATION] {method} verification rejected for {identifier}")
            raise VerificationFailed(f"{method} verification failed", identifier=identifier, method=method)

        fingerprint = compute_fingerprint(f"{method}:{proof}")

        def change(account: Account) -> Account:
            if account.is_agent:
                raise AgentCannotBeVerified(identifier)
            account.verified = True
            account.verification_method = method
            account.verification_fingerprint = fingerprint
            account.verified_at = now_ts()
            account.can_delegate = True
            if method == "email":
                account.email_verified = True
            return account

        account = self._mutate(identifier, change)
        log.info(f"[DELEGATION] {identifier} verified via {method}")
        self._audit(identifier, "account.verify", identifier, method=method)
        return account

    def revoke_verification(self, identifier: str) -> Account:
        """Downgrade a human; every agent it delegated stops resolving."""

        def change(account: Account) -> Account:
            account.verified = False
            account.can_delegate = False
            account.verified_at = None
            account.verification_method = None
            account.verification_fingerprint = None
            return account

        account = self._mutate(identifier, change)
        log.info(f"[DELEGATION] verification revoked for {account.identifier}; "
                 f"{len(account.delegated_agents)} agent(s) affected")
        self._audit(account.identifier, "account.unverify", account.identifier,
                    agents=list(account.delegated_agents))
        return account

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------
    def delegate_agent(self, human: str, agent_name: str, capabilities: Optional[Iterable[str]] = None,
                       agent_identifier: Optional[str] = None) -> Account:
        human = normalize_identifier(human)
        if not agent_name:
            raise ValidationError("Agent name is required")
        caps = sorted(set(capabilities or []))
        unknown = [c for c in caps if c not in KNOWN_FEATURES]
        if unknown:
            raise ValidationError(f"Unknown capabilities: {', '.join(unknown)}", capabilities=unknown)

        delegator = self.get_account(human)
        if delegator.is_agent or not (delegator.verified and delegator.can_delegate):
            raise DelegationNotAllowed("Only verified humans may delegate agents", identifier=human)

        agent_id = normalize_identifier(agent_identifier) or f"agent:{slugify(agent_name) or 'agent'}-{new_id()[:8]}"
        agent = Account(
            identifier=agent_id,
            entity_type=ENTITY_AGENT,
            agent_name=agent_name,
            delegated_by=human,
            delegated_at=now_ts(),
            capabilities=caps,
            can_delegate=False,
        )
        try:
            stored = self._insert(agent)
        except ConcurrentModification:
            raise ValidationError(f"Account {agent_id} already exists", identifier=agent_id)

        self._mutate(human, lambda account: self._track_agent(account, agent_id))
        log.info(f"[DELEGATION] {human} delegated agent {agent_id} with {len(caps)} capability(ies)")
        self._audit(human, "delegation.create", agent_id, capabilities=caps)
        return stored

    def revoke(self, agent_identifier: str, actor: str, ring_id: Optional[str] = None) -> bool:
        """
        Revoke an agent. Allowed for its delegator, or for an admin of
        ``ring_id`` when the agent is a member of that ring. Returns False when
        the agent was already revoked.
        """
        agent_id = normalize_identifier(agent_identifier)
        actor = normalize_identifier(actor)
        agent = self.get_account(agent_id)
        if not agent.is_agent:
            raise ValidationError(f"{agent_id} is not an agent", identifier=agent_id)

        allowed = actor == agent.delegated_by
        if not allowed and ring_id:
            allowed = self.rings.is_admin(ring_id, actor) and self.rings.is_member(ring_id, agent_id)
        if not allowed:
            raise DelegationNotAllowed("Only the delegating human or a ring admin may revoke this agent",
                                       identifier=agent_id)

        changed = []

        def change(account: Account) -> Optional[Account]:
            changed.clear()
            if account.revoked:
                return None
            account.revoked = True
            account.revoked_at = now_ts()
            account.revoked_by = actor
            changed.append(True)
            return account

        self._mutate(agent_id, change)
        if not changed:
            return False
        log.info(f"[DELEGATION] agent {agent_id} revoked by {actor}")
        self._audit(actor, "delegation.revoke", agent_id, ring_id=ring_id)
        return True

    def resolve(self, identifier: str) -> Optional[ResolvedIdentity]:
        """
        Fresh view of who ``identifier`` is. ``None`` for unknown identifiers;
        ``DelegationRevoked`` for an agent whose delegation no longer holds.
        """
        account = self.find_account(identifier)
        if account is None:
            return None
        if not account.is_agent:
            return ResolvedIdentity(account)
        if account.revoked:
            raise DelegationRevoked(account.identifier, "revoked")
        delegator = self.find_account(account.delegated_by) if account.delegated_by else None
        if delegator is None:
            raise DelegationRevoked(account.identifier, "delegator_missing")
        if delegator.is_agent or not (delegator.verified and delegator.can_delegate):
            raise DelegationRevoked(account.identifier, "delegator_unverified")
        return ResolvedIdentity(account, delegator)

    def list_delegated_agents(self, human: str) -> List[Account]:
        account = self.get_account(human)
        agents = []
        for agent_id in account.delegated_agents:
            agent = self.find_account(agent_id)
            if agent is not None:
                agents.append(agent)
        return agents

    def delegation_info(self, identifier: str) -> Dict[str, Any]:
        account = self.get_account(identifier)
        if account.is_agent:
            return {
                "identifier": account.identifier,
                "entity_type": account.entity_type,
                "delegated_by": account.delegated_by,
                "delegated_at": account.delegated_at,
                "capabilities": list(account.capabilities),
                "revoked": account.revoked,
                "can_delegate": False,
            }
        return {
            "identifier": account.identifier,
            "entity_type": account.entity_type,
            "verified": account.verified,
            "verification_method": account.verification_method,
            "can_delegate": account.can_delegate,
            "delegated_agents": list(account.delegated_agents),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _track_agent(account: Account, agent_id: str) -> Optional[Account]:
        if agent_id in account.delegated_agents:
            return None
        account.delegated_agents.append(agent_id)
        return account

    def _insert(self, account: Account) -> Account:
        snap = self.records.read(self.account_key(account.identifier))
        if snap.exists:
            raise ConcurrentModification(snap.key, f"Account {account.identifier} already exists")
        return Account.from_dict(self.records.write(snap, account.to_dict()))

    def _mutate(self, identifier: str, change: Callable[[Account], Optional[Account]]) -> Account:
        identifier = normalize_identifier(identifier)
        key = self.account_key(identifier)

        def attempt() -> Account:
            snap = self.records.read(key)
            if not snap.exists:
                raise AccountNotFound(identifier)
            proposed = change(Account.from_dict(snap.data))
            if proposed is None:
                return Account.from_dict(snap.data)
            proposed.updated_at = now_ts()
            return Account.from_dict(self.records.write(snap, proposed.to_dict()))

        return retry_on_conflict(attempt, key, self.max_retries)

    def _audit(self, actor: str, action: str, target: str, **detail) -> None:
        if self.audit:
            self.audit.record(actor, action, target, "ok", **detail)
