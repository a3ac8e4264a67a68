import pytest

from mykeys_core.delegation import DelegationManager
from mykeys_core.errors import (
    AccountNotFound, AgentCannotBeVerified, DelegationNotAllowed, DelegationRevoked,
    VerificationFailed, ValidationError,
)


class StubVerifier:
    def __init__(self, accept=True):
        self.accept = accept
        self.calls = []

    def verify(self, identifier, method, proof):
        self.calls.append((identifier, method, proof))
        return self.accept


@pytest.fixture
def manager(storage, rings, audit):
    return DelegationManager(storage, rings, audit=audit)


@pytest.fixture
def alice(manager):
    manager.create_account("alice@example.com", name="Alice")
    return manager.verify_human("alice@example.com", "google", "google-sub-1")


def test_create_account_is_idempotent(manager):
    first = manager.create_account("Alice@Example.com", name="Alice")
    assert first.identifier == "alice@example.com"
    assert manager.create_account("alice@example.com", name="Other").name == "Alice"


def test_agents_cannot_self_register(manager):
    with pytest.raises(DelegationNotAllowed):
        manager.create_account("agent:ci", entity_type="agent")


def test_verify_human_stores_fingerprint_only(alice, storage):
    assert alice.verified and alice.can_delegate
    assert alice.verification_method == "google"
    assert alice.verification_fingerprint
    assert "google-sub-1" not in storage.get("persona:alice@example.com")


def test_verify_rejects_unknown_method_and_account(manager):
    manager.create_account("alice@example.com")
    with pytest.raises(ValidationError):
        manager.verify_human("alice@example.com", "myspace", "proof")
    with pytest.raises(AccountNotFound):
        manager.verify_human("ghost@example.com", "google", "proof")


def test_verifier_must_accept(storage, rings):
    verifier = StubVerifier(accept=False)
    manager = DelegationManager(storage, rings, verifier=verifier)
    manager.create_account("alice@example.com")
    with pytest.raises(VerificationFailed):
        manager.verify_human("alice@example.com", "microsoft", "token")
    assert verifier.calls == [("alice@example.com", "microsoft", "token")]
    assert not manager.get_account("alice@example.com").verified


def test_email_verification_marks_email(manager):
    manager.create_account("bob@example.com", name="Bob", email="bob@example.com")
    bob = manager.verify_human("bob@example.com", "email", "code-123")
    assert bob.email_verified


def test_delegate_agent(manager, alice):
    agent = manager.delegate_agent("alice@example.com", "CI bot", ["read-key", "list-keys"],
                                   agent_identifier="agent:ci")
    assert agent.is_agent and agent.delegated_by == "alice@example.com"
    assert not agent.can_delegate
    assert agent.capabilities == ["list-keys", "read-key"]
    assert manager.get_account("alice@example.com").delegated_agents == ["agent:ci"]
    assert [a.identifier for a in manager.list_delegated_agents("alice@example.com")] == ["agent:ci"]
    with pytest.raises(AgentCannotBeVerified):
        manager.verify_human("agent:ci", "google", "proof")


def test_unverified_human_cannot_delegate(manager):
    manager.create_account("bob@example.com", name="Bob")
    with pytest.raises(DelegationNotAllowed):
        manager.delegate_agent("bob@example.com", "bot")


def test_agent_cannot_delegate(manager, alice):
    manager.delegate_agent("alice@example.com", "CI bot", agent_identifier="agent:ci")
    with pytest.raises(DelegationNotAllowed):
        manager.delegate_agent("agent:ci", "sub-bot")


def test_unknown_capability(manager, alice):
    with pytest.raises(ValidationError):
        manager.delegate_agent("alice@example.com", "bot", ["launch-missiles"])


def test_resolve_and_revoke(manager, alice, audit):
    manager.delegate_agent("alice@example.com", "CI bot", agent_identifier="agent:ci")
    resolved = manager.resolve("agent:ci")
    assert resolved.is_agent and resolved.delegator.identifier == "alice@example.com"

    with pytest.raises(DelegationNotAllowed):
        manager.revoke("agent:ci", actor="mallory@example.com")
    assert manager.revoke("agent:ci", actor="alice@example.com")
    assert not manager.revoke("agent:ci", actor="alice@example.com")

    with pytest.raises(DelegationRevoked) as exc:
        manager.resolve("agent:ci")
    assert exc.value.details["reason"] == "revoked"
    assert audit.events(action="delegation.revoke")[0].target == "agent:ci"


def test_ring_admin_may_revoke_member_agent(manager, alice, rings):
    manager.delegate_agent("alice@example.com", "CI bot", agent_identifier="agent:ci")
    rings.create_ring("carol@example.com", {"carol@example.com": "admin", "agent:ci": "member"}, ring_id="r1")
    rings.create_ring("dave@example.com", {"dave@example.com": "admin"}, ring_id="r2")

    with pytest.raises(DelegationNotAllowed):
        manager.revoke("agent:ci", actor="dave@example.com", ring_id="r2")
    assert manager.revoke("agent:ci", actor="carol@example.com", ring_id="r1")
    assert manager.get_account("agent:ci").revoked_by == "carol@example.com"


def test_revoking_human_verification_invalidates_agents(manager, alice):
    manager.delegate_agent("alice@example.com", "CI bot", agent_identifier="agent:ci")
    manager.revoke_verification("alice@example.com")
    with pytest.raises(DelegationRevoked) as exc:
        manager.resolve("agent:ci")
    assert exc.value.details["reason"] == "delegator_unverified"


def test_resolve_unknown_is_none(manager):
    assert manager.resolve("nobody@example.com") is None


def test_update_profile(manager):
    manager.create_account("alice@example.com", name="Alice", email="alice@example.com")
    manager.verify_human("alice@example.com", "email", "code")
    account = manager.update_profile("alice@example.com", profile={"complete": True, "domain": "example.com"})
    assert account.profile.domain == "example.com"
    account = manager.update_profile("alice@example.com", email="alice@new.example.com")
    assert not account.email_verified
    with pytest.raises(ValidationError):
        manager.update_profile("alice@example.com", profile={"shoe_size": 42})


def test_delegation_info(manager, alice):
    manager.delegate_agent("alice@example.com", "CI bot", ["read-key"], agent_identifier="agent:ci")
    assert manager.delegation_info("alice@example.com")["delegated_agents"] == ["agent:ci"]
    info = manager.delegation_info("agent:ci")
    assert info["delegated_by"] == "alice@example.com" and info["capabilities"] == ["read-key"]
