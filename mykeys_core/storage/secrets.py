"""
mykeys_core.storage.secrets
---------------------------
Secret-value store collaborator.

The core never decides *how* secret bytes are protected at rest; it only moves
values between (ring, key) slots when keys are stored, copied or moved. A
deployment can plug an external secret manager in by implementing
``SecretStore``; ``KVSecretStore`` keeps values in the shared namespace under
``ring:{ringId}:secret:{keyName}``.
"""

from __future__ import annotations
import json
from typing import Optional
from mykeys_core.storage.provider import StorageProvider
from mykeys_core.utils import canonical_json, now_ts


class SecretStore:
    # Interface
    def get_secret(self, ring_id: str, key_name: str) -> Optional[str]: ...
    def put_secret(self, ring_id: str, key_name: str, value: str) -> None: ...
    def delete_secret(self, ring_id: str, key_name: str) -> None: ...


class KVSecretStore(SecretStore):
    def __init__(self, storage: StorageProvider):
        self.storage = storage

    @staticmethod
    def secret_key(ring_id: str, key_name: str) -> str:
        return f"ring:{ring_id}:secret:{key_name}"

    def get_secret(self, ring_id: str, key_name: str) -> Optional[str]:
        raw = self.storage.get(self.secret_key(ring_id, key_name))
        if raw is None:
            return None
        return json.loads(raw)["value"]

    def put_secret(self, ring_id: str, key_name: str, value: str) -> None:
        self.storage.set(self.secret_key(ring_id, key_name),
                         canonical_json({"value": value, "updated_at": now_ts()}))

    def delete_secret(self, ring_id: str, key_name: str) -> None:
        self.storage.delete(self.secret_key(ring_id, key_name))
