"""
mykeys_core.crypto
------------------
Key derivation and authenticated encryption for the privacy vault:

- HKDF-SHA256: derives one 256-bit key per (owner, ring, key name) from a master key
- AES-GCM: encrypts vault values, binding the entry coordinates as associated data
- Fingerprints: stable digests for proofs we must recognise but never store

No primitives are implemented here; everything comes from ``cryptography``.
"""

from __future__ import annotations
from typing import Tuple, Optional, Dict, Any
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
import os, hashlib
from .constants import VAULT_KDF_INFO
from .utils import b64e, b64d, canonical_json

# --------- HKDF ----------
def derive_vault_key(master_key: str | bytes, owner: str, ring_id: str, key_name: str,
                     info: bytes = VAULT_KDF_INFO) -> bytes:
    """
    Deterministic per (master_key, owner, ring_id, key_name).

    The salt is a digest of the coordinates, so two owners (or two keys)
    sharing a master key never derive the same vault key.
    """
    if isinstance(master_key, str):
        master_key = master_key.encode("utf-8")
    coords = canonical_json({"owner": owner, "ring_id": ring_id, "key_name": key_name}).encode("utf-8")
    salt = hashlib.sha256(coords).digest()
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=info + b"|" + coords)
    return hkdf.derive(master_key)  # 256-bit AEAD key

# --------- AES-GCM ----------
def aead_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    aes = AESGCM(key)
    nonce = os.urandom(12)
    ct = aes.encrypt(nonce, plaintext, aad)
    return nonce, ct

def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    aes = AESGCM(key)
    return aes.decrypt(nonce, ciphertext, aad)

# --------- Value helpers ----------
def encrypt_value(value: str, key: bytes, aad_fields: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    aad = canonical_json(aad_fields).encode("utf-8") if aad_fields else None
    nonce, ct = aead_encrypt(key, value.encode("utf-8"), aad=aad)
    return {"nonce": b64e(nonce), "ciphertext": b64e(ct)}

def decrypt_value(enc: Dict[str, str], key: bytes, aad_fields: Optional[Dict[str, Any]] = None) -> str:
    """Raises ``cryptography.exceptions.InvalidTag`` on a wrong key or tampered entry."""
    aad = canonical_json(aad_fields).encode("utf-8") if aad_fields else None
    pt = aead_decrypt(key, b64d(enc["nonce"]), b64d(enc["ciphertext"]), aad=aad)
    return pt.decode("utf-8")

def compute_fingerprint(value: str) -> str:
    """
    Compute a stable fingerprint for a verification proof.

    - Input: the raw proof (token, provider user id, ...)
    - Output: hex-encoded SHA256 hash truncated to 32 chars
    """
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:32]
