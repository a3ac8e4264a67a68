"""
mykeys_core.persona
-------------------
Progressive personas: anonymous -> logged -> named -> profiled.

Pure functions over an ``Account`` record. A persona is recomputed on every
request and never stored, so a change of identity data or verification takes
effect immediately.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .models import Account


class Persona(str, Enum):
    ANONYMOUS = "anonymous"
    LOGGED = "logged"
    NAMED = "named"
    PROFILED = "profiled"

    @property
    def rank(self) -> int:
        return ORDER.index(self)


ORDER = [Persona.ANONYMOUS, Persona.LOGGED, Persona.NAMED, Persona.PROFILED]

# --------- Features ----------
DISCOVER = "discover"
READ_PUBLIC = "read-public"
CREATE_KEY = "create-key"
READ_KEY = "read-key"
LIST_KEYS = "list-keys"
USE_VAULT = "use-vault"
JOIN_RING = "join-ring"
CREATE_RING = "create-ring"
MANAGE_RING = "manage-ring"
MANAGE_PROFILE = "manage-profile"
SHARE_KEY = "share-key"
TRANSFER_KEY = "transfer-key"
DELEGATE_AGENT = "delegate-agent"

_ANONYMOUS = frozenset({DISCOVER, READ_PUBLIC})
_LOGGED = _ANONYMOUS | {CREATE_KEY, READ_KEY, LIST_KEYS, USE_VAULT}
_NAMED = _LOGGED | {JOIN_RING, CREATE_RING, MANAGE_RING, MANAGE_PROFILE, SHARE_KEY, TRANSFER_KEY, DELEGATE_AGENT}
_PROFILED = _NAMED | {"automated-infrastructure", "business-features", "domain-management", "entity-management"}

FEATURES: Dict[Persona, FrozenSet[str]] = {
    Persona.ANONYMOUS: _ANONYMOUS,
    Persona.LOGGED: _LOGGED,
    Persona.NAMED: _NAMED,
    Persona.PROFILED: _PROFILED,
}


@dataclass(frozen=True)
class PersonaLimits:
    keys: int                  # keys per ring
    rings: int                 # rings created
    members: int               # members per ring
    api_calls_per_hour: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


LIMITS: Dict[Persona, PersonaLimits] = {
    Persona.ANONYMOUS: PersonaLimits(keys=0, rings=0, members=0, api_calls_per_hour=10),
    Persona.LOGGED: PersonaLimits(keys=10, rings=1, members=5, api_calls_per_hour=100),
    Persona.NAMED: PersonaLimits(keys=100, rings=10, members=50, api_calls_per_hour=1000),
    Persona.PROFILED: PersonaLimits(keys=10000, rings=100, members=1000, api_calls_per_hour=10000),
}

UPGRADE_REQUIREMENTS: Dict[Persona, List[Dict[str, str]]] = {
    Persona.ANONYMOUS: [],
    Persona.LOGGED: [{"field": "identifier", "description": "An account"}],
    Persona.NAMED: [
        {"field": "name", "description": "Name or agent name"},
        {"field": "verified_contact", "description": "Verified email or identity provider login"},
    ],
    Persona.PROFILED: [
        {"field": "name", "description": "Name or agent name"},
        {"field": "verified_contact", "description": "Verified email or identity provider login"},
        {"field": "profile", "description": "Completed profile"},
        {"field": "business_entity", "description": "Business entity ID or domain name"},
    ],
}


def _has_identity(account: Account) -> bool:
    return bool(account.name or account.agent_name)


def _has_verified_contact(account: Account) -> bool:
    if account.is_agent:
        return bool(account.delegated_by)
    return bool(account.email_verified or account.verified)


def _has_business_profile(account: Account) -> bool:
    profile = account.profile
    return bool(profile.complete and (profile.business_entity or profile.domain))


def classify(account: Optional[Account]) -> Persona:
    if account is None:
        return Persona.ANONYMOUS
    if not (_has_identity(account) and _has_verified_contact(account)):
        return Persona.LOGGED
    if _has_business_profile(account):
        return Persona.PROFILED
    return Persona.NAMED


def can_access_feature(persona: Persona, feature: str) -> bool:
    return feature in FEATURES.get(Persona(persona), frozenset())


def limits(persona: Persona) -> PersonaLimits:
    return LIMITS[Persona(persona)]


def effective_persona(agent_persona: Persona, delegator_persona: Persona) -> Persona:
    """An agent never operates above the human that delegated it."""
    return min(Persona(agent_persona), Persona(delegator_persona), key=lambda p: p.rank)


def upgrade_requirements(target: Persona) -> List[Dict[str, str]]:
    return [dict(r) for r in UPGRADE_REQUIREMENTS[Persona(target)]]


def missing_requirements(account: Optional[Account], target: Persona) -> List[Dict[str, str]]:
    """Requirements of ``target`` that ``account`` does not meet yet."""
    met = {
        "identifier": account is not None,
        "name": account is not None and _has_identity(account),
        "verified_contact": account is not None and _has_verified_contact(account),
        "profile": account is not None and account.profile.complete,
        "business_entity": account is not None and _has_business_profile(account),
    }
    return [r for r in upgrade_requirements(target) if not met[r["field"]]]


def persona_info(account: Optional[Account]) -> Dict[str, Any]:
    persona = classify(account)
    following = ORDER[persona.rank + 1] if persona.rank + 1 < len(ORDER) else None
    return {
        "identifier": account.identifier if account else None,
        "persona": persona.value,
        "features": sorted(FEATURES[persona]),
        "limits": limits(persona).to_dict(),
        "next_persona": following.value if following else None,
        "upgrade_requirements": missing_requirements(account, following) if following else [],
        "can_upgrade": following is not None,
    }
