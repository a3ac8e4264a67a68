"""
mykeys_core.vault
-----------------
Privacy Vault: per-user encrypted overlay attached to a ring key.

A vault entry belongs to exactly one owner. It is independent of the key's
ring visibility: even ring admins, and even for a shared key, cannot read,
list or discover another member's vault. Every non-owner access is answered
exactly like a missing entry.

Values are sealed with AES-256-GCM under a key derived by HKDF from
``(master_key, owner, ring_id, key_name)``; the entry coordinates are bound as
associated data, so a ciphertext copied to another slot will not decrypt.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidTag

from .audit import AuditLog
from .constants import VAULT_ENTRY_KEY, VAULT_LIST_KEY, VAULT_ALGORITHM
from .crypto import derive_vault_key, encrypt_value, decrypt_value
from .errors import VaultEntryNotFound, NotRingMember, ValidationError, ConfigurationError
from .logger import get_logger
from .models import VaultEntry
from .records import VersionedStore, retry_on_conflict, DEFAULT_ATTEMPTS
from .rings import RingRepository
from .storage.provider import StorageProvider
from .utils import normalize_identifier, now_ts

log = get_logger("MyKeys.Vault")


@dataclass
class VaultStoreResult:
    ring_id: str
    key_name: str
    owner: str
    vault_secret_name: str
    created: bool


class PrivacyVault:
    def __init__(self, storage: StorageProvider, rings: RingRepository,
                 master_key: Optional[str] = None, audit: Optional[AuditLog] = None,
                 max_retries: int = DEFAULT_ATTEMPTS):
        self.records = VersionedStore(storage)
        self.rings = rings
        self.master_key = master_key
        self.audit = audit
        self.max_retries = max_retries

    @staticmethod
    def entry_key(ring_id: str, key_name: str, owner: str, name: str) -> str:
        return VAULT_ENTRY_KEY.format(ring_id=ring_id, key_name=key_name, owner=owner, name=name)

    @staticmethod
    def list_key(ring_id: str, key_name: str, owner: str) -> str:
        return VAULT_LIST_KEY.format(ring_id=ring_id, key_name=key_name, owner=owner)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def store(self, ring_id: str, key_name: str, owner: str, vault_secret_name: str, value: str,
              master_key: Optional[str] = None) -> VaultStoreResult:
        owner = normalize_identifier(owner)
        if not (ring_id and key_name and owner and vault_secret_name):
            raise ValidationError("Ring ID, key name, owner, and vault secret name are required")
        self.rings.get_ring(ring_id)
        if not self.rings.is_member(ring_id, owner):
            raise NotRingMember(ring_id, owner)

        key = self._derive(owner, ring_id, key_name, master_key)
        sealed = encrypt_value(value, key, aad_fields=self._aad(ring_id, key_name, owner, vault_secret_name))
        entry_key = self.entry_key(ring_id, key_name, owner, vault_secret_name)

        def attempt() -> bool:
            snap = self.records.read(entry_key)
            created_at = (snap.data or {}).get("created_at") or now_ts()
            entry = VaultEntry(
                ring_id=ring_id,
                key_name=key_name,
                owner=owner,
                vault_secret_name=vault_secret_name,
                nonce=sealed["nonce"],
                ciphertext=sealed["ciphertext"],
                algorithm=VAULT_ALGORITHM,
                created_at=created_at,
                updated_at=now_ts(),
            )
            self.records.write(snap, entry.to_dict())
            return not snap.exists

        created = retry_on_conflict(attempt, entry_key, self.max_retries)
        self._update_list(ring_id, key_name, owner,
                          lambda names: names + [vault_secret_name] if vault_secret_name not in names else None)
        log.info(f"[VAULT] {'stored' if created else 'updated'} entry for {owner} on {ring_id}/{key_name}")
        if self.audit:
            self.audit.record(owner, "vault.store", f"{ring_id}/{key_name}", "ok")
        return VaultStoreResult(ring_id, key_name, owner, vault_secret_name, created)

    def get(self, ring_id: str, key_name: str, owner: str, vault_secret_name: str,
            *, actor: str, master_key: Optional[str] = None) -> str:
        """Plaintext for the owner; ``VaultEntryNotFound`` for everyone and everything else."""
        owner = normalize_identifier(owner)
        if not self._is_owner(owner, actor):
            raise VaultEntryNotFound(ring_id, key_name, vault_secret_name)

        snap = self.records.read(self.entry_key(ring_id, key_name, owner, vault_secret_name))
        if not snap.exists:
            raise VaultEntryNotFound(ring_id, key_name, vault_secret_name)
        entry = VaultEntry.from_dict(snap.data)
        key = self._derive(owner, ring_id, key_name, master_key)
        try:
            return decrypt_value({"nonce": entry.nonce, "ciphertext": entry.ciphertext}, key,
                                 aad_fields=self._aad(ring_id, key_name, owner, vault_secret_name))
        except InvalidTag:
            log.warning(f"[VAULT] decryption failed for {owner} on {ring_id}/{key_name}")
            raise VaultEntryNotFound(ring_id, key_name, vault_secret_name)

    def list(self, ring_id: str, key_name: str, owner: str, *, actor: str) -> List[str]:
        owner = normalize_identifier(owner)
        if not self._is_owner(owner, actor):
            return []
        snap = self.records.read(self.list_key(ring_id, key_name, owner))
        return list((snap.data or {}).get("names", []))

    def delete(self, ring_id: str, key_name: str, owner: str, vault_secret_name: str,
               *, actor: str) -> bool:
        owner = normalize_identifier(owner)
        if not self._is_owner(owner, actor):
            return False
        entry_key = self.entry_key(ring_id, key_name, owner, vault_secret_name)
        if not self.records.read(entry_key).exists:
            return False
        self.records.delete(entry_key)
        self._update_list(ring_id, key_name, owner,
                          lambda names: [n for n in names if n != vault_secret_name] if vault_secret_name in names else None)
        log.info(f"[VAULT] deleted entry for {owner} on {ring_id}/{key_name}")
        if self.audit:
            self.audit.record(owner, "vault.delete", f"{ring_id}/{key_name}", "ok")
        return True

    def has_vault(self, ring_id: str, key_name: str, owner: str, *, actor: str) -> bool:
        return bool(self.list(ring_id, key_name, owner, actor=actor))

    def metadata(self, ring_id: str, key_name: str, owner: str, *, actor: str) -> Dict[str, Any]:
        """Entry names and timestamps, without decrypting anything."""
        owner = normalize_identifier(owner)
        names = self.list(ring_id, key_name, owner, actor=actor)
        secrets = []
        for name in names:
            snap = self.records.read(self.entry_key(ring_id, key_name, owner, name))
            if snap.exists:
                secrets.append({"name": name,
                                "created_at": snap.data.get("created_at"),
                                "updated_at": snap.data.get("updated_at")})
        return {"ring_id": ring_id, "key_name": key_name, "owner": owner,
                "secret_count": len(secrets), "secrets": secrets}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _is_owner(owner: str, actor: Optional[str]) -> bool:
        return bool(owner) and normalize_identifier(actor) == owner

    @staticmethod
    def _aad(ring_id: str, key_name: str, owner: str, name: str) -> Dict[str, str]:
        return {"ring_id": ring_id, "key_name": key_name, "owner": owner, "vault_secret_name": name}

    def _derive(self, owner: str, ring_id: str, key_name: str, master_key: Optional[str]) -> bytes:
        material = master_key or self.master_key
        if not material:
            raise ConfigurationError("No vault master key supplied and MYKEYS_MASTER_KEY is not set")
        return derive_vault_key(material, owner, ring_id, key_name)

    def _update_list(self, ring_id: str, key_name: str, owner: str, change) -> None:
        key = self.list_key(ring_id, key_name, owner)

        def attempt() -> None:
            snap = self.records.read(key)
            updated = change(list((snap.data or {}).get("names", [])))
            if updated is not None:
                self.records.write(snap, {"names": updated})

        retry_on_conflict(attempt, key, self.max_retries)
