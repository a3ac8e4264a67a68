from mykeys_core.config import Settings
from mykeys_core.errors import (
    MyKeysError, CannotRemoveCreator, WouldInvalidateRing, ConcurrentModification,
    RetryExhausted, KeyNotFound, LimitExceeded, VaultEntryNotFound,
)


def test_error_carries_kind_and_details():
    err = KeyNotFound("r1", "db-pass")
    assert isinstance(err, MyKeysError)
    assert err.to_dict() == {
        "kind": "KeyNotFound",
        "message": "Key db-pass not found in ring r1",
        "details": {"ring_id": "r1", "key_name": "db-pass"},
    }
    assert not err.retryable


def test_error_hierarchy():
    assert issubclass(CannotRemoveCreator, WouldInvalidateRing)
    assert issubclass(RetryExhausted, ConcurrentModification)
    assert RetryExhausted("ring:r1", 3).retryable


def test_vault_error_names_only_supplied_ids():
    err = VaultEntryNotFound("r1", "db-pass", "note")
    assert set(err.details) == {"ring_id", "key_name", "vault_secret_name"}


def test_limit_exceeded_message():
    err = LimitExceeded("rings", 1, "logged")
    assert err.details == {"resource": "rings", "limit": 1, "persona": "logged"}
    assert "logged" in str(err)


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("MYKEYS_STORAGE_PROVIDER", "memory")
    monkeypatch.setenv("MYKEYS_MASTER_KEY", "from-env")
    monkeypatch.setenv("MYKEYS_MAX_RETRIES", "5")
    s = Settings.from_env()
    assert s.provider == "memory"
    assert s.master_key == "from-env"
    assert s.max_retries == 5


def test_settings_dict_wins(monkeypatch):
    monkeypatch.setenv("MYKEYS_STORAGE_PROVIDER", "memory")
    monkeypatch.delenv("MYKEYS_MASTER_KEY", raising=False)
    s = Settings.from_env({"provider": "sqlite", "sqlite_path": "x.db"})
    assert s.storage_config() == {"provider": "sqlite", "sqlite_path": "x.db"}
    assert s.master_key is None
