import pytest

from mykeys_core.config import Settings
from mykeys_core.errors import (
    KeyNotFound, KeyAlreadyExists, DelegationRevoked, LimitExceeded, VaultEntryNotFound, CapabilityNotDelegated,
    WouldInvalidateRing, ValidationError, FeatureNotAvailableForPersona,
)
from mykeys_core.ledger import MOVED
from mykeys_core.service import build_service
from mykeys_core.storage import InMemoryStorage

ALICE = "alice@example.com"
BOB = "bob@example.com"


@pytest.fixture
def people(service, named):
    named(ALICE)
    named(BOB)
    return service


def test_private_key_grant_scenario(people):
    svc = people
    svc.create_ring(ALICE, {ALICE: "admin", BOB: "member"}, ring_id="r1")
    record = svc.store_key(ALICE, "r1", "db-pass", "s3cret", is_shared=False)
    assert record.creator == ALICE and not record.is_shared

    with pytest.raises(KeyNotFound):
        svc.read_key(BOB, "r1", "db-pass")
    assert svc.list_keys(BOB, "r1") == []

    svc.grant_access(ALICE, "r1", "db-pass")
    assert svc.read_key(BOB, "r1", "db-pass") == "s3cret"
    assert svc.list_keys(BOB, "r1") == ["db-pass"]

    denial = svc.audit.events(actor=BOB, action="read_key")[0]
    assert denial.outcome == "denied" and denial.detail["kind"] == "KeyNotFound"


def test_copy_scenario(people):
    svc = people
    svc.create_ring(BOB, {BOB: "admin"}, ring_id="r1")
    svc.create_ring(BOB, {BOB: "admin"}, ring_id="r2")
    svc.store_key(BOB, "r1", "api-key", "sk-live-1")

    result = svc.copy_key(BOB, "r1", "api-key", "r2", new_name="api-key-copy")
    assert result.target_key_name == "api-key-copy"
    assert svc.read_key(BOB, "r1", "api-key") == "sk-live-1"
    assert svc.read_key(BOB, "r2", "api-key-copy") == "sk-live-1"


def test_move_scenario(people):
    svc = people
    svc.create_ring(ALICE, {ALICE: "admin"}, ring_id="r1")
    svc.create_ring(ALICE, {ALICE: "admin"}, ring_id="r2")
    svc.store_key(ALICE, "r1", "k", "value-1")

    assert svc.move_key(ALICE, "r1", "k", "r2").status == MOVED
    with pytest.raises(KeyNotFound):
        svc.ledger.get_key("r1", "k")
    with pytest.raises(KeyNotFound):
        svc.read_key(ALICE, "r1", "k")
    assert svc.read_key(ALICE, "r2", "k") == "value-1"


def test_revoked_agent_scenario(people):
    svc = people
    svc.create_ring(ALICE, {ALICE: "admin"}, ring_id="r1")
    svc.store_key(ALICE, "r1", "api-key", "sk-1")
    agent = svc.delegate_agent(ALICE, "deploy bot", ["read-key"], agent_identifier="agent:deploy")
    svc.add_member(ALICE, "r1", agent.identifier, entity_type="agent")

    assert svc.read_key("agent:deploy", "r1", "api-key") == "sk-1"
    with pytest.raises(CapabilityNotDelegated):
        svc.store_key("agent:deploy", "r1", "other", "x")

    assert svc.revoke_agent(ALICE, "agent:deploy")
    with pytest.raises(DelegationRevoked):
        svc.read_key("agent:deploy", "r1", "api-key")


def test_last_admin_cannot_leave(people):
    svc = people
    svc.create_ring(ALICE, {ALICE: "admin", BOB: "admin"}, ring_id="r1")
    svc.remove_member(BOB, "r1", BOB)
    with pytest.raises(WouldInvalidateRing):
        svc.remove_member(ALICE, "r1", ALICE)
    assert svc.rings.get_ring("r1").admins() == [ALICE]


def test_vault_through_service(people):
    svc = people
    svc.create_ring(ALICE, {ALICE: "admin", BOB: "member"}, ring_id="r1")
    svc.store_key(ALICE, "r1", "db-pass", "s3cret")
    svc.vault_store(BOB, "r1", "db-pass", "note", "rotate monthly")

    assert svc.vault_get(BOB, "r1", "db-pass", "note") == "rotate monthly"
    assert svc.vault_list(BOB, "r1", "db-pass") == ["note"]
    with pytest.raises(VaultEntryNotFound):
        svc.vault_get(ALICE, "r1", "db-pass", "note", owner=BOB)
    assert svc.vault_list(ALICE, "r1", "db-pass", owner=BOB) == []
    assert svc.vault_delete(BOB, "r1", "db-pass", "note")


def test_key_limit_for_logged_persona(people):
    svc = people
    svc.delegation.create_account("carol@example.com")
    svc.create_ring(ALICE, {ALICE: "admin"}, ring_id="r1")
    svc.add_member(ALICE, "r1", "carol@example.com")
    for i in range(10):
        svc.store_key("carol@example.com", "r1", f"key-{i}", "v")
    with pytest.raises(LimitExceeded) as exc:
        svc.store_key("carol@example.com", "r1", "key-10", "v")
    assert exc.value.details["persona"] == "logged"
    # updating an existing value is not a new key
    svc.store_key("carol@example.com", "r1", "key-0", "v2")
    assert svc.read_key("carol@example.com", "r1", "key-0") == "v2"


def test_ring_and_member_limits(people):
    svc = people
    for i in range(10):
        svc.create_ring(ALICE, ring_id=f"r{i}")
    with pytest.raises(LimitExceeded):
        svc.create_ring(ALICE, ring_id="r10")

    crowd = {f"user{i}@example.com": "member" for i in range(50)}
    crowd[BOB] = "admin"
    with pytest.raises(LimitExceeded):
        svc.create_ring(BOB, crowd, ring_id="big")


def test_persona_info(people):
    svc = people
    assert svc.persona_info(ALICE)["persona"] == "named"
    assert svc.persona_info("")["persona"] == "anonymous"


def test_update_profile_upgrades_persona(people):
    svc = people
    svc.update_profile(ALICE, profile={"complete": True, "business_entity": "ACME-LLC"})
    assert svc.persona_info(ALICE)["persona"] == "profiled"


def test_build_service_from_env(monkeypatch):
    monkeypatch.setenv("MYKEYS_STORAGE_PROVIDER", "memory")
    monkeypatch.setenv("MYKEYS_MASTER_KEY", "env-master")
    svc = build_service()
    assert isinstance(svc.storage, InMemoryStorage)
    assert svc.vault.master_key == "env-master"


def test_build_service_sqlite(tmp_path):
    settings = Settings(provider="sqlite", sqlite_path=str(tmp_path / "svc.db"), master_key="m")
    svc = build_service(settings)
    svc.delegation.create_account(ALICE, name="Alice")
    svc.delegation.verify_human(ALICE, "google", "sub-1")
    svc.create_ring(ALICE, ring_id="r1")
    svc.store_key(ALICE, "r1", "k", "v")
    assert svc.read_key(ALICE, "r1", "k") == "v"
    svc.storage.close()


def test_store_refuses_private_key_registered_after_decision(people, monkeypatch):
    svc = people
    svc.create_ring(ALICE, {ALICE: "admin", BOB: "member"}, ring_id="r1")
    evaluate = svc.access.evaluate
    pending = []

    def interleaved(actor, *args, **kwargs):
        decision = evaluate(actor, *args, **kwargs)
        if actor == BOB and not pending:
            pending.append(actor)
            svc.store_key(ALICE, "r1", "db-pass", "alice-secret", is_shared=False)
        return decision

    monkeypatch.setattr(svc.access, "evaluate", interleaved)
    with pytest.raises(KeyAlreadyExists):
        svc.store_key(BOB, "r1", "db-pass", "bob-value")
    assert svc.read_key(ALICE, "r1", "db-pass") == "alice-secret"
    assert svc.ledger.get_key("r1", "db-pass").creator == ALICE


def test_logged_creator_can_grant_own_private_key(people):
    svc = people
    carol = "carol@example.com"
    svc.delegation.create_account(carol)
    svc.create_ring(ALICE, {ALICE: "admin", BOB: "member"}, ring_id="r1")
    svc.add_member(ALICE, "r1", carol)
    svc.store_key(carol, "r1", "mine", "carol-value", is_shared=False)
    assert svc.persona_info(carol)["persona"] == "logged"

    with pytest.raises(KeyNotFound):
        svc.read_key(BOB, "r1", "mine")
    assert svc.grant_access(carol, "r1", "mine").is_shared
    assert svc.read_key(BOB, "r1", "mine") == "carol-value"


def test_logged_member_can_leave_but_not_remove_others(people):
    svc = people
    carol = "carol@example.com"
    svc.delegation.create_account(carol)
    svc.create_ring(ALICE, {ALICE: "admin", BOB: "member"}, ring_id="r1")
    svc.add_member(ALICE, "r1", carol)

    with pytest.raises(FeatureNotAvailableForPersona):
        svc.remove_member(carol, "r1", BOB)
    ring = svc.remove_member(carol, "r1", carol)
    assert carol not in ring.members
    assert BOB in ring.members


def test_add_member_rejects_blank_identifier(people):
    svc = people
    svc.create_ring(ALICE, {ALICE: "admin"}, ring_id="r1")
    with pytest.raises(ValidationError):
        svc.add_member(ALICE, "r1", "   ")
    assert list(svc.rings.get_ring("r1").members) == [ALICE]
