import pytest

from mykeys_core.errors import (
    KeyNotFound, KeyAlreadyExists, NotKeyCreator, NotRingMember, InsufficientRole,
)
from mykeys_core.ledger import KeyVisibilityLedger, COPIED, MOVED, COPIED_NOT_MOVED
from mykeys_core.storage import KVSecretStore


@pytest.fixture
def ledger(storage, rings, secrets, audit):
    rings.create_ring("alice@example.com", {"alice@example.com": "admin", "bob@example.com": "member"},
                      ring_id="r1")
    rings.create_ring("alice@example.com", {"alice@example.com": "admin"}, ring_id="r2")
    return KeyVisibilityLedger(storage, rings, secrets, audit=audit)


def store(ledger, ring_id, name, creator, value, shared=True):
    record = ledger.register_key(ring_id, name, creator, is_shared=shared)
    ledger.secrets.put_secret(ring_id, name, value)
    return record


def test_private_key_visible_to_creator_only(ledger):
    store(ledger, "r1", "db-pass", "alice@example.com", "s3cret", shared=False)
    assert ledger.can_view("alice@example.com", "r1", "db-pass")
    assert not ledger.can_view("bob@example.com", "r1", "db-pass")
    assert not ledger.can_view("mallory@example.com", "r1", "db-pass")
    assert ledger.list_visible_keys("bob@example.com", "r1") == []


def test_legacy_key_without_record_is_shared(ledger):
    ledger.secrets.put_secret("r1", "old-key", "v")
    assert ledger.can_view("bob@example.com", "r1", "old-key")


def test_register_first_write_wins(ledger):
    first = ledger.register_key("r1", "api-key", "alice@example.com", is_shared=False)
    second = ledger.register_key("r1", "api-key", "bob@example.com", is_shared=True)
    assert second == first
    assert ledger.list_keys("r1") == ["api-key"]


def test_register_requires_membership(ledger):
    with pytest.raises(NotRingMember):
        ledger.register_key("r2", "api-key", "bob@example.com")


def test_grant_access_is_creator_only_and_idempotent(ledger, audit):
    store(ledger, "r1", "db-pass", "alice@example.com", "s3cret", shared=False)
    with pytest.raises(NotKeyCreator):
        ledger.grant_access("r1", "db-pass", "bob@example.com")

    record = ledger.grant_access("r1", "db-pass", "alice@example.com")
    assert record.is_shared and record.shared_at
    again = ledger.grant_access("r1", "db-pass", "alice@example.com")
    assert again.revision == record.revision
    assert ledger.can_view("bob@example.com", "r1", "db-pass")
    assert [e.action for e in audit.events(action="key.grant")] == ["key.grant", "key.grant"]


def test_grant_unknown_key(ledger):
    with pytest.raises(KeyNotFound):
        ledger.grant_access("r1", "nope", "alice@example.com")


def test_request_access_flow(ledger, rings):
    rings.update_roles("r1", {"bob@example.com": "admin"}, actor="alice@example.com")
    store(ledger, "r1", "db-pass", "alice@example.com", "s3cret", shared=False)

    result = ledger.request_access("r1", "db-pass", "bob@example.com", reason="deploy")
    assert result.requested and not result.already_visible
    dup = ledger.request_access("r1", "db-pass", "bob@example.com")
    assert dup.request == result.request

    pending = ledger.pending_requests("r1", "db-pass", "alice@example.com")
    assert [r.requester for r in pending] == ["bob@example.com"]
    with pytest.raises(NotKeyCreator):
        ledger.pending_requests("r1", "db-pass", "bob@example.com")

    ledger.grant_access("r1", "db-pass", "alice@example.com")
    assert ledger.pending_requests("r1", "db-pass", "alice@example.com") == []
    assert ledger.request_access("r1", "db-pass", "bob@example.com").already_visible


def test_request_access_is_admin_only(ledger):
    store(ledger, "r1", "db-pass", "alice@example.com", "s3cret", shared=False)
    with pytest.raises(InsufficientRole):
        ledger.request_access("r1", "db-pass", "bob@example.com")


def test_copy_key(ledger):
    store(ledger, "r1", "api-key", "bob@example.com", "sk-1", shared=True)
    result = ledger.copy_key("r1", "api-key", "r2", "alice@example.com", new_name="api-key-copy")
    assert result.status == COPIED
    assert result.key.creator == "alice@example.com"
    assert result.key.copied_from == "r1/api-key"
    assert ledger.secrets.get_secret("r1", "api-key") == "sk-1"
    assert ledger.secrets.get_secret("r2", "api-key-copy") == "sk-1"


def test_transfer_is_audited_with_destination(ledger, audit):
    store(ledger, "r1", "api-key", "alice@example.com", "sk-1")
    ledger.copy_key("r1", "api-key", "r2", "alice@example.com", new_name="api-key-copy")
    ledger.move_key("r1", "api-key", "r2", "alice@example.com")
    copied = audit.events(action="key.copy")[0]
    moved = audit.events(action="key.move")[0]
    assert copied.target == "r1/api-key" and copied.detail == {"destination": "r2/api-key-copy"}
    assert moved.outcome == "ok" and moved.detail == {"destination": "r2/api-key"}


def test_copy_refuses_existing_target(ledger):
    store(ledger, "r1", "api-key", "alice@example.com", "sk-1")
    store(ledger, "r2", "api-key", "alice@example.com", "other")
    with pytest.raises(KeyAlreadyExists):
        ledger.copy_key("r1", "api-key", "r2", "alice@example.com")
    assert ledger.secrets.get_secret("r2", "api-key") == "other"


def test_copy_hides_private_keys_of_others(ledger, rings):
    rings.update_roles("r1", {"bob@example.com": "admin"}, actor="alice@example.com")
    rings.add_member("r2", "bob@example.com", "admin", actor="alice@example.com")
    store(ledger, "r1", "db-pass", "alice@example.com", "s3cret", shared=False)
    with pytest.raises(KeyNotFound):
        ledger.copy_key("r1", "db-pass", "r2", "bob@example.com")


def test_copy_requires_admin_in_both_rings(ledger):
    store(ledger, "r1", "api-key", "alice@example.com", "sk-1")
    with pytest.raises(InsufficientRole):
        ledger.copy_key("r1", "api-key", "r2", "bob@example.com")


def test_move_key(ledger):
    store(ledger, "r1", "api-key", "alice@example.com", "sk-1")
    result = ledger.move_key("r1", "api-key", "r2", "alice@example.com")
    assert result.status == MOVED and result.moved
    with pytest.raises(KeyNotFound):
        ledger.get_key("r1", "api-key")
    assert ledger.secrets.get_secret("r1", "api-key") is None
    assert ledger.secrets.get_secret("r2", "api-key") == "sk-1"
    assert ledger.list_keys("r1") == []


class FlakyDeleteSecrets(KVSecretStore):
    def delete_secret(self, ring_id, key_name):
        if ring_id == "r1":
            raise IOError("backend unavailable")
        super().delete_secret(ring_id, key_name)


def test_move_reports_copied_not_moved(storage, rings, audit):
    rings.create_ring("alice@example.com", {"alice@example.com": "admin"}, ring_id="r1")
    rings.create_ring("alice@example.com", {"alice@example.com": "admin"}, ring_id="r2")
    ledger = KeyVisibilityLedger(storage, rings, FlakyDeleteSecrets(storage), audit=audit)
    store(ledger, "r1", "api-key", "alice@example.com", "sk-1")

    result = ledger.move_key("r1", "api-key", "r2", "alice@example.com")
    assert result.status == COPIED_NOT_MOVED
    assert ledger.secrets.get_secret("r1", "api-key") == "sk-1"
    assert ledger.secrets.get_secret("r2", "api-key") == "sk-1"
    assert audit.events(action="key.move")[0].outcome == "partial"


def test_delete_key_permissions(ledger):
    store(ledger, "r1", "api-key", "alice@example.com", "sk-1")
    store(ledger, "r1", "bob-key", "bob@example.com", "b")
    with pytest.raises(InsufficientRole):
        ledger.delete_key("r1", "api-key", "bob@example.com")
    assert ledger.delete_key("r1", "bob-key", "bob@example.com")
    assert ledger.delete_key("r1", "api-key", "alice@example.com")
    assert ledger.list_keys("r1") == []
    with pytest.raises(KeyNotFound):
        ledger.delete_key("r1", "api-key", "alice@example.com")
