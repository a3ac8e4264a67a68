# mykeys_core/models.py
"""
Storage-level records for rings, keys, vault entries, accounts and audit events.

Records are storage-agnostic dataclasses; every persisted one carries the
``revision`` counter maintained by ``mykeys_core.records``.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional

from .constants import ROLE_ADMIN, ROLE_MEMBER, ENTITY_PERSON, ENTITY_AGENT
from .utils import now_ts


@dataclass
class Member:
    identifier: str
    role: str = ROLE_MEMBER          # admin | member
    entity_type: str = ENTITY_PERSON  # person | agent
    added_at: str = field(default_factory=now_ts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Member":
        return cls(
            identifier=data["identifier"],
            role=data.get("role", ROLE_MEMBER),
            entity_type=data.get("entity_type", ENTITY_PERSON),
            added_at=data.get("added_at") or now_ts(),
        )


@dataclass
class Ring:
    id: str
    created_by: str
    created_at: str = field(default_factory=now_ts)
    updated_at: str = field(default_factory=now_ts)
    members: Dict[str, Member] = field(default_factory=dict)
    revision: int = 0

    def role_of(self, identifier: str) -> Optional[str]:
        member = self.members.get(identifier)
        return member.role if member else None

    def admins(self) -> List[str]:
        return sorted(i for i, m in self.members.items() if m.role == ROLE_ADMIN)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "members": {i: m.to_dict() for i, m in self.members.items()},
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ring":
        return cls(
            id=data["id"],
            created_by=data["created_by"],
            created_at=data.get("created_at") or now_ts(),
            updated_at=data.get("updated_at") or now_ts(),
            members={i: Member.from_dict(m) for i, m in (data.get("members") or {}).items()},
            revision=int(data.get("revision", 0)),
        )


@dataclass
class KeyRecord:
    """Visibility metadata for a ring-scoped secret; the value lives in the secret store."""
    ring_id: str
    name: str
    creator: str
    is_shared: bool = True
    created_at: str = field(default_factory=now_ts)
    shared_at: Optional[str] = None
    copied_from: Optional[str] = None   # "{ringId}/{keyName}" of the source
    revision: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyRecord":
        return cls(
            ring_id=data["ring_id"],
            name=data["name"],
            creator=data["creator"],
            is_shared=bool(data.get("is_shared", True)),
            created_at=data.get("created_at") or now_ts(),
            shared_at=data.get("shared_at"),
            copied_from=data.get("copied_from"),
            revision=int(data.get("revision", 0)),
        )


@dataclass
class AccessRequest:
    requester: str
    reason: str = ""
    requested_at: str = field(default_factory=now_ts)
    status: str = "pending"   # pending | resolved

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessRequest":
        return cls(
            requester=data["requester"],
            reason=data.get("reason", ""),
            requested_at=data.get("requested_at") or now_ts(),
            status=data.get("status", "pending"),
        )


@dataclass
class VaultEntry:
    ring_id: str
    key_name: str
    owner: str
    vault_secret_name: str
    nonce: str            # base64
    ciphertext: str       # base64
    algorithm: str
    created_at: str = field(default_factory=now_ts)
    updated_at: str = field(default_factory=now_ts)
    revision: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultEntry":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass
class Profile:
    complete: bool = False
    business_entity: Optional[str] = None
    domain: Optional[str] = None
    company: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Profile":
        data = data or {}
        return cls(
            complete=bool(data.get("complete", False)),
            business_entity=data.get("business_entity"),
            domain=data.get("domain"),
            company=data.get("company"),
        )


@dataclass
class Account:
    identifier: str
    entity_type: str = ENTITY_PERSON
    verified: bool = False
    verification_method: Optional[str] = None
    verification_fingerprint: Optional[str] = None
    verified_at: Optional[str] = None
    can_delegate: bool = False
    delegated_by: Optional[str] = None
    delegated_at: Optional[str] = None
    capabilities: List[str] = field(default_factory=list)
    revoked: bool = False
    revoked_at: Optional[str] = None
    revoked_by: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    email_verified: bool = False
    agent_name: Optional[str] = None
    profile: Profile = field(default_factory=Profile)
    delegated_agents: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_ts)
    updated_at: str = field(default_factory=now_ts)
    revision: int = 0

    @property
    def is_agent(self) -> bool:
        return self.entity_type == ENTITY_AGENT

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["profile"] = self.profile.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        fields = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        fields["profile"] = Profile.from_dict(data.get("profile"))
        fields["capabilities"] = list(data.get("capabilities", []))
        fields["delegated_agents"] = list(data.get("delegated_agents", []))
        return cls(**fields)


@dataclass(frozen=True)
class AuditEvent:
    actor: str
    action: str
    target: str
    outcome: str                  # allowed | denied | ok | partial | failed
    timestamp: str = field(default_factory=now_ts)
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            actor=data.get("actor", ""),
            action=data.get("action", ""),
            target=data.get("target", ""),
            outcome=data.get("outcome", ""),
            timestamp=data.get("timestamp") or now_ts(),
            detail=dict(data.get("detail") or {}),
        )
