"""
mykeys_core.errors
------------------
Typed failures for every core operation.

Each error carries a stable ``kind`` plus a ``details`` dict holding only the
identifiers the caller already supplied, so a front end can render a specific
message without leaking other members or vault contents.

``ConcurrentModification`` (and ``RetryExhausted``) are the only retryable
errors; everything else is terminal for the request.
"""

from __future__ import annotations
from typing import Any, Dict


class MyKeysError(Exception):
    """Base exception for the MyKeys core."""

    kind: str = "MyKeysError"
    retryable: bool = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.kind)
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self), "details": dict(self.details)}


# --------- Rings ----------
class RingNotFound(MyKeysError):
    kind = "RingNotFound"

    def __init__(self, ring_id: str):
        super().__init__(f"Ring {ring_id} not found", ring_id=ring_id)


class RingAlreadyExists(MyKeysError):
    kind = "RingAlreadyExists"

    def __init__(self, ring_id: str):
        super().__init__(f"Ring {ring_id} already exists", ring_id=ring_id)


class InvalidRingComposition(MyKeysError):
    kind = "InvalidRingComposition"


class WouldInvalidateRing(MyKeysError):
    kind = "WouldInvalidateRing"


class CannotRemoveCreator(WouldInvalidateRing):
    """The creator is the sole admin; removing it would leave the ring headless."""
    kind = "CannotRemoveCreator"


class NotRingMember(MyKeysError):
    kind = "NotRingMember"

    def __init__(self, ring_id: str, identifier: str):
        super().__init__(f"{identifier} is not a member of ring {ring_id}",
                         ring_id=ring_id, identifier=identifier)


class InsufficientRole(MyKeysError):
    kind = "InsufficientRole"

    def __init__(self, ring_id: str, identifier: str, required: str = "admin"):
        super().__init__(f"{identifier} needs role '{required}' in ring {ring_id}",
                         ring_id=ring_id, identifier=identifier, required=required)


# --------- Keys ----------
class KeyNotFound(MyKeysError):
    kind = "KeyNotFound"

    def __init__(self, ring_id: str, key_name: str):
        super().__init__(f"Key {key_name} not found in ring {ring_id}",
                         ring_id=ring_id, key_name=key_name)


class KeyAlreadyExists(MyKeysError):
    kind = "KeyAlreadyExists"

    def __init__(self, ring_id: str, key_name: str):
        super().__init__(f"Key {key_name} already exists in ring {ring_id}",
                         ring_id=ring_id, key_name=key_name)


class NotKeyCreator(MyKeysError):
    kind = "NotKeyCreator"

    def __init__(self, ring_id: str, key_name: str, identifier: str):
        super().__init__(f"Only the creator of {key_name} may change its visibility",
                         ring_id=ring_id, key_name=key_name, identifier=identifier)


# --------- Vault ----------
class VaultEntryNotFound(MyKeysError):
    """Raised for missing entries and for every non-owner access alike."""
    kind = "VaultEntryNotFound"

    def __init__(self, ring_id: str, key_name: str, vault_secret_name: str):
        super().__init__(f"Vault entry {vault_secret_name} not found",
                         ring_id=ring_id, key_name=key_name,
                         vault_secret_name=vault_secret_name)


# --------- Accounts / delegation ----------
class AccountNotFound(MyKeysError):
    kind = "AccountNotFound"

    def __init__(self, identifier: str):
        super().__init__(f"Account {identifier} not found", identifier=identifier)


class DelegationNotAllowed(MyKeysError):
    kind = "DelegationNotAllowed"


class AgentCannotBeVerified(MyKeysError):
    kind = "AgentCannotBeVerified"

    def __init__(self, identifier: str):
        super().__init__("Agent accounts cannot be verified; they must be delegated by a verified human",
                         identifier=identifier)


class VerificationFailed(MyKeysError):
    kind = "VerificationFailed"


class DelegationRevoked(MyKeysError):
    kind = "DelegationRevoked"

    def __init__(self, identifier: str, reason: str = "revoked"):
        super().__init__(f"Delegation for {identifier} is no longer valid ({reason})",
                         identifier=identifier, reason=reason)


class CapabilityNotDelegated(MyKeysError):
    kind = "CapabilityNotDelegated"

    def __init__(self, identifier: str, feature: str):
        super().__init__(f"Agent {identifier} was not delegated '{feature}'",
                         identifier=identifier, feature=feature)


# --------- Persona ----------
class FeatureNotAvailableForPersona(MyKeysError):
    kind = "FeatureNotAvailableForPersona"

    def __init__(self, persona: str, feature: str):
        super().__init__(f"Feature '{feature}' is not available for persona '{persona}'",
                         persona=persona, feature=feature)


class LimitExceeded(MyKeysError):
    kind = "LimitExceeded"

    def __init__(self, resource: str, limit: int, persona: str):
        super().__init__(f"{resource} limit of {limit} reached for persona '{persona}'",
                         resource=resource, limit=limit, persona=persona)


# --------- Concurrency ----------
class ConcurrentModification(MyKeysError):
    kind = "ConcurrentModification"
    retryable = True

    def __init__(self, key: str, message: str = ""):
        super().__init__(message or f"Record {key} changed since it was read", key=key)


class RetryExhausted(ConcurrentModification):
    kind = "RetryExhausted"

    def __init__(self, key: str, attempts: int):
        super().__init__(key, f"Gave up on {key} after {attempts} conflicting attempts")
        self.details["attempts"] = attempts


# --------- Input / setup ----------
class ValidationError(MyKeysError):
    kind = "ValidationError"


class ConfigurationError(MyKeysError):
    kind = "ConfigurationError"
