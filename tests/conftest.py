import pytest

from mykeys_core.audit import AuditLog
from mykeys_core.rings import RingRepository
from mykeys_core.service import KeyringService
from mykeys_core.storage import InMemoryStorage, KVSecretStore

MASTER_KEY = "test-master-key-0123456789"


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit(storage):
    return AuditLog(storage)


@pytest.fixture
def rings(storage, audit):
    return RingRepository(storage, audit=audit)


@pytest.fixture
def secrets(storage):
    return KVSecretStore(storage)


@pytest.fixture
def service(storage):
    return KeyringService(storage, master_key=MASTER_KEY)


@pytest.fixture
def named(service):
    """Create a verified, named person account and return its identifier."""
    def make(identifier, name=None):
        service.delegation.create_account(identifier, name=name or identifier.split("@")[0].title())
        service.delegation.verify_human(identifier, "google", f"google-sub-{identifier}")
        return identifier
    return make
